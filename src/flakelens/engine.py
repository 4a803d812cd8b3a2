"""Engine facade wiring ingestion, history, classification and queries."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from flakelens.analysis.aggregates import RollingAggregates
from flakelens.analysis.classifier import FlakeClassifier, TransitionListener
from flakelens.analysis.query import AggregationQueryService
from flakelens.config.loader import FileConfig
from flakelens.gate import CIGate, GateResult
from flakelens.identity.resolver import IdentityResolver
from flakelens.ingest.ingestor import IngestReceipt, RunIngestor
from flakelens.models.classification import ClassificationState, ClassificationTransition
from flakelens.models.config import RetentionPolicy
from flakelens.models.run import RunRecord
from flakelens.persistence.archive import RunArchive
from flakelens.persistence.store import HistoryStore, PruneReport

logger = logging.getLogger(__name__)


class FlakeEngine:
    """Single entry point for submitting runs and asking questions about them."""

    def __init__(
        self,
        config: FileConfig | None = None,
        archive: RunArchive | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Settings; defaults when omitted.
            archive: Run archive for durability. In-memory only when omitted.
        """
        self._config = config or FileConfig()
        self._archive = archive
        self.resolver = IdentityResolver()
        self.store = HistoryStore(archive)
        self.classifier = FlakeClassifier(self._config.classifier, self._config.quarantine)
        self.aggregates = RollingAggregates()
        self.ingestor = RunIngestor(self.resolver, self.store, self.classifier, self.aggregates)
        self.query = AggregationQueryService(self.classifier, self.aggregates)
        self.gate = CIGate(self.store, self.classifier, self._config.gate)

    @classmethod
    def open(cls, results_dir: Path, config: FileConfig | None = None) -> FlakeEngine:
        """Create an engine backed by an archive directory and replay it."""
        engine = cls(config, RunArchive(results_dir))
        engine.replay()
        return engine

    @property
    def config(self) -> FileConfig:
        return self._config

    def ingest(self, record: RunRecord, cancel: threading.Event | None = None) -> IngestReceipt:
        """Ingest a run record. See :meth:`RunIngestor.ingest`."""
        return self.ingestor.ingest(record, cancel)

    def ingest_payload(
        self,
        payload: dict[str, Any] | str | bytes,
        cancel: threading.Event | None = None,
    ) -> IngestReceipt:
        """Validate and ingest a raw run payload."""
        return self.ingestor.ingest_payload(payload, cancel)

    def replay(self) -> int:
        """Rebuild history and derived state from the archive.

        Runs are re-ingested in their original ingestion order, then the
        configured retention policy is re-applied.

        Returns:
            Number of runs replayed.
        """
        if self._archive is None:
            return 0
        replayed = 0
        for entry, record in self._archive.iter_runs():
            if record is None:
                self.store.restore_run(entry.summary, entry.digest)
                self.aggregates.record_run(entry.summary)
                continue
            self.ingestor.ingest(record, archive=False)
            replayed += 1
        logger.debug("Replayed %d archived runs", replayed)
        if self._has_retention(self._config.retention):
            self.prune()
        return replayed

    @staticmethod
    def _has_retention(policy: RetentionPolicy) -> bool:
        return policy.max_age_days is not None or policy.stale_after_runs is not None

    def rebuild(self) -> int:
        """Recompute all classification states from stored history."""
        return self.classifier.rebuild(self.store)

    def prune(
        self,
        policy: RetentionPolicy | None = None,
        now: datetime | None = None,
    ) -> PruneReport:
        """Apply a retention policy to history and the archive.

        The classification window is always preserved for active tests.
        """
        policy = policy or self._config.retention
        report = self.store.prune(
            policy,
            keep_recent=self.classifier.config.window_size,
            is_active=lambda fingerprint: self.classifier.state(fingerprint) is not None,
            on_remove=self._forget,
            now=now,
        )
        if self._archive is not None and report.emptied_runs:
            self._archive.mark_pruned(report.emptied_runs)
        return report

    def _forget(self, fingerprint: str) -> None:
        self.classifier.forget(fingerprint)
        self.aggregates.forget(fingerprint)
        self.resolver.forget(fingerprint)

    def set_quarantined(self, title: str, quarantined: bool = True) -> ClassificationTransition | None:
        """Quarantine (or release) a test by title.

        Returns:
            The resulting transition, if any. None for unknown tests.
        """
        identity = self.resolver.lookup(title)
        if identity is None:
            return None
        with self.store.locked(identity.fingerprint):
            return self.classifier.set_quarantined(identity, quarantined)

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a classification-transition listener."""
        return self.classifier.subscribe(listener)

    def state_for(self, title: str) -> ClassificationState | None:
        """Current classification of a test by title."""
        identity = self.resolver.lookup(title)
        if identity is None:
            return None
        return self.classifier.state(identity.fingerprint)

    def evaluate_gate(self, run_id: str) -> GateResult:
        return self.gate.evaluate(run_id)
