"""Run record ingestor.

Validates a RunRecord, resolves test identities and hands the whole run to
the history store as one atomic batch. Classification and aggregates are
updated while the touched identities are still locked, so derived state is
current as of the last committed run.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from flakelens.exceptions import DuplicateRun, EmptyRun, IngestCancelled, InvalidRun
from flakelens.identity.resolver import IdentityResolver, canonical_title
from flakelens.ingest.signatures import normalize_error
from flakelens.models.classification import ClassificationTransition
from flakelens.models.history import HistoryEntry, RunSummary
from flakelens.models.identity import TestIdentity
from flakelens.models.run import RunRecord, TestResult, TestStatus
from flakelens.persistence.store import HistoryStore, RunBatch

if TYPE_CHECKING:
    from flakelens.analysis.aggregates import RollingAggregates
    from flakelens.analysis.classifier import FlakeClassifier

logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    """Outcome of a successful ingest call."""

    INGESTED = "ingested"
    DUPLICATE = "duplicate"


class IngestReceipt(BaseModel):
    """Result returned to the submitter of a run."""

    run_id: str
    status: IngestStatus
    test_count: int = 0
    flaky_count: int = 0
    out_of_order: bool = False
    transitions: list[ClassificationTransition] = Field(default_factory=list)


def summarize_run(record: RunRecord) -> RunSummary:
    """Compute per-run counters for a record."""
    passed = failed = skipped = flaky = failures = 0
    total_duration = 0.0
    for result in record.results:
        if result.status == TestStatus.PASSED:
            passed += 1
        elif result.status == TestStatus.FAILED:
            failed += 1
        else:
            skipped += 1
            continue
        if result.is_flaky:
            flaky += 1
        if result.is_failure:
            failures += 1
        total_duration += result.final_duration
    return RunSummary(
        run_id=record.run_id,
        branch=record.branch,
        commit=record.commit,
        started_at=record.started_at,
        total=len(record.results),
        passed=passed,
        failed=failed,
        skipped=skipped,
        flaky=flaky,
        failures=failures,
        total_duration_seconds=total_duration,
    )


class RunIngestor:
    """Validates and ingests run records."""

    def __init__(
        self,
        resolver: IdentityResolver,
        store: HistoryStore,
        classifier: FlakeClassifier | None = None,
        aggregates: RollingAggregates | None = None,
    ) -> None:
        """Initialize the ingestor.

        Args:
            resolver: Identity resolver.
            store: History store receiving the entries.
            classifier: Classifier updated on every committed entry.
            aggregates: Rolling aggregates updated on every committed run.
        """
        self._resolver = resolver
        self._store = store
        self._classifier = classifier
        self._aggregates = aggregates

    def ingest_payload(
        self,
        payload: dict[str, Any] | str | bytes,
        cancel: threading.Event | None = None,
    ) -> IngestReceipt:
        """Validate raw data into a RunRecord and ingest it.

        Raises:
            InvalidRun: If the payload does not describe a valid run.
        """
        try:
            if isinstance(payload, dict):
                record = RunRecord.model_validate(payload)
            else:
                record = RunRecord.model_validate_json(payload)
        except ValidationError as e:
            run_id = payload.get("run_id", "<unknown>") if isinstance(payload, dict) else "<unknown>"
            raise InvalidRun(str(run_id), f"invalid run payload: {e}") from e
        return self.ingest(record, cancel)

    def ingest(
        self,
        record: RunRecord,
        cancel: threading.Event | None = None,
        *,
        archive: bool = True,
    ) -> IngestReceipt:
        """Ingest one run record.

        Args:
            record: The run to ingest.
            cancel: Event checked during validation; once set, ingestion stops
                before anything is appended.
            archive: Whether to write the run to the store's archive (false
                when replaying from the archive).

        Returns:
            Receipt with status ``ingested`` or ``duplicate``.

        Raises:
            EmptyRun: The run has no results.
            InvalidRun: A result has an empty title or a test appears twice.
            ConflictingRun: The run id is known with different content.
            IngestCancelled: ``cancel`` was set before the append phase.
            RunInProgress: Another ingest of the run id did not settle in time.
            PartialIngestFailure: Storage failed; nothing was committed.
        """
        run_id = record.run_id
        self._validate(record)
        self._check_cancelled(cancel, run_id)

        digest = record.content_digest()
        try:
            self._store.reserve_run(run_id, digest)
        except DuplicateRun as e:
            logger.info("Skipping duplicate run %s (%s)", run_id, e.reason)
            return IngestReceipt(
                run_id=run_id,
                status=IngestStatus.DUPLICATE,
                test_count=len(record.results),
            )

        try:
            receipt = self._append(record, digest, cancel, archive=archive)
        except BaseException:
            # No-op once the run is committed
            self._store.release_run(run_id)
            raise
        return receipt

    def _append(
        self,
        record: RunRecord,
        digest: str,
        cancel: threading.Event | None,
        *,
        archive: bool,
    ) -> IngestReceipt:
        """Append phase of :meth:`ingest`, run while the run id is reserved."""
        run_id = record.run_id
        self._check_cancelled(cancel, run_id)

        latest = self._store.latest_start(record.branch)
        out_of_order = latest is not None and record.started_at < latest
        if out_of_order:
            logger.warning(
                "Run %s on branch %r started at %s, before latest ingested run (%s)",
                run_id,
                record.branch,
                record.started_at.isoformat(),
                latest.isoformat() if latest else "",
            )

        summary = summarize_run(record)
        try:
            items = [
                (
                    self._resolver.resolve(result.title_path, result.file_path),
                    self._project(record, result),
                )
                for result in record.results
            ]
        except ValueError as e:
            raise InvalidRun(run_id, str(e)) from e
        batch = RunBatch(
            run_id=run_id,
            digest=digest,
            branch=record.branch,
            started_at=record.started_at,
            items=items,
            summary=summary,
            record=record if archive else None,
        )

        transitions: list[ClassificationTransition] = []

        def on_commit(committed: list[tuple[TestIdentity, HistoryEntry]]) -> None:
            for identity, entry in committed:
                # Retention may have dropped the identity since it was resolved
                self._resolver.register(identity)
                if self._classifier is not None:
                    transition = self._classifier.update(identity, entry)
                    if transition is not None:
                        transitions.append(transition)
                if self._aggregates is not None:
                    self._aggregates.record_entry(identity, entry)
            if self._aggregates is not None:
                self._aggregates.record_run(summary)

        self._store.append_run(batch, on_commit)
        logger.info(
            "Ingested run %s: %d results, %d flaky, %d transitions",
            run_id,
            summary.total,
            summary.flaky,
            len(transitions),
        )
        return IngestReceipt(
            run_id=run_id,
            status=IngestStatus.INGESTED,
            test_count=summary.total,
            flaky_count=summary.flaky,
            out_of_order=out_of_order,
            transitions=transitions,
        )

    def _validate(self, record: RunRecord) -> None:
        if not record.results:
            raise EmptyRun(record.run_id, "run contains no test results")
        seen: set[str] = set()
        for result in record.results:
            title = canonical_title(result.title_path)
            if not title:
                raise InvalidRun(record.run_id, "test result has an empty title path")
            if title in seen:
                raise InvalidRun(record.run_id, f"test {title!r} appears more than once")
            seen.add(title)

    @staticmethod
    def _check_cancelled(cancel: threading.Event | None, run_id: str) -> None:
        if cancel is not None and cancel.is_set():
            raise IngestCancelled(run_id, "cancelled before append")

    @staticmethod
    def _project(record: RunRecord, result: TestResult) -> HistoryEntry:
        signature = "" if result.status == TestStatus.PASSED else normalize_error(result.first_error)
        return HistoryEntry(
            run_id=record.run_id,
            status=result.status,
            was_retried=result.was_retried,
            duration_seconds=result.final_duration,
            error_signature=signature,
            timestamp=record.started_at,
            branch=record.branch,
            commit=record.commit,
        )
