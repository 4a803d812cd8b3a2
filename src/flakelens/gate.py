"""CI gate decisions derived from current classifications."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, Field

from flakelens.analysis.classifier import FlakeClassifier
from flakelens.exceptions import UnknownRunError
from flakelens.models.classification import Classification
from flakelens.models.config import GateConfig
from flakelens.persistence.store import HistoryStore

logger = logging.getLogger(__name__)


class GateDecision(str, Enum):
    """Verdict returned to the CI system."""

    PASS = "pass"
    WARN = "warn"
    BLOCK = "block"


class GateOffender(BaseModel):
    """A test that contributed to a warn or block decision."""

    fingerprint: str
    title: str
    classification: Classification
    flake_score: float


class GateResult(BaseModel):
    """Gate decision for one run."""

    run_id: str
    decision: GateDecision
    reasons: list[str] = Field(default_factory=list)
    offenders: list[GateOffender] = Field(default_factory=list)


class CIGate:
    """Evaluates the gate policy for the tests of a run."""

    def __init__(
        self,
        store: HistoryStore,
        classifier: FlakeClassifier,
        config: GateConfig | None = None,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._config = config or GateConfig()

    def evaluate(self, run_id: str) -> GateResult:
        """Decide whether a run's commit may proceed.

        Quarantined tests never contribute to the decision.

        Raises:
            UnknownRunError: If the run was never ingested.
        """
        info = self._store.run_info(run_id)
        if info is None:
            msg = f"Unknown run: {run_id}"
            raise UnknownRunError(msg)

        blocking: list[GateOffender] = []
        warning: list[GateOffender] = []
        flaky_count = 0
        for fingerprint in info.fingerprints:
            state = self._classifier.state(fingerprint)
            if state is None or state.classification == Classification.QUARANTINED:
                continue
            offender = GateOffender(
                fingerprint=fingerprint,
                title=state.title,
                classification=state.classification,
                flake_score=state.flake_score,
            )
            if state.classification == Classification.FLAKY:
                flaky_count += 1
            if state.classification in self._config.block_on:
                blocking.append(offender)
            elif state.classification in self._config.warn_on:
                warning.append(offender)

        reasons: list[str] = []
        decision = GateDecision.PASS
        if blocking:
            decision = GateDecision.BLOCK
            classes = sorted({o.classification.value for o in blocking})
            reasons.append(f"{len(blocking)} test(s) classified as {', '.join(classes)}")
        if self._config.max_flaky is not None and flaky_count > self._config.max_flaky:
            decision = GateDecision.BLOCK
            reasons.append(
                f"{flaky_count} flaky test(s) exceeds the limit of {self._config.max_flaky}"
            )
        if warning:
            if decision is GateDecision.PASS:
                decision = GateDecision.WARN
            classes = sorted({o.classification.value for o in warning})
            reasons.append(f"{len(warning)} test(s) classified as {', '.join(classes)}")

        logger.info("Gate for run %s: %s", run_id, decision.value)
        return GateResult(
            run_id=run_id,
            decision=decision,
            reasons=reasons,
            offenders=blocking + warning,
        )
