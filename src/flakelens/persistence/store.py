"""History store implementation.

Append-only, per-identity history of test outcomes. Entries of one identity
are kept in append order; appends to different identities never block each
other. Committed history is held in immutable tuples that are swapped on
write, so readers never need a lock.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field

from flakelens.exceptions import (
    ConflictingRun,
    DuplicateRun,
    PartialIngestFailure,
    RunInProgress,
    StorageError,
)
from flakelens.models.config import RetentionPolicy
from flakelens.models.history import HistoryEntry, RunSummary, TimeRange
from flakelens.models.identity import TestIdentity
from flakelens.models.run import RunRecord, TestStatus
from flakelens.persistence.archive import RunArchive
from flakelens.persistence.locks import KeyedLocks

logger = logging.getLogger(__name__)

CommitCallback = Callable[[list[tuple[TestIdentity, HistoryEntry]]], None]

# Seconds a second submitter of a run waits for the first one to settle
PENDING_TIMEOUT_SECONDS = 30.0


@dataclass
class RunBatch:
    """Everything needed to append one run atomically."""

    run_id: str
    digest: str
    branch: str
    started_at: datetime
    items: list[tuple[TestIdentity, HistoryEntry]]
    summary: RunSummary | None = None
    # Only set when the run should be written to the archive
    record: RunRecord | None = None


@dataclass
class RunInfo:
    """Registry entry for an ingested run."""

    run_id: str
    digest: str
    branch: str
    started_at: datetime
    ordinal: int
    fingerprints: tuple[str, ...] = ()
    live_entries: int = 0


class PruneReport(BaseModel):
    """Outcome of a pruning pass."""

    removed_entries: int = 0
    removed_identities: list[str] = Field(default_factory=list)
    emptied_runs: list[str] = Field(default_factory=list)
    clamped: bool = False


class HistoryStore:
    """Thread-safe, append-only multimap of TestIdentity -> HistoryEntry."""

    def __init__(
        self,
        archive: RunArchive | None = None,
        pending_timeout: float = PENDING_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the history store.

        Args:
            archive: Optional run archive written as part of each run commit.
            pending_timeout: How long :meth:`reserve_run` waits for an
                in-flight ingest of the same run id.
        """
        self._archive = archive
        self._pending_timeout = pending_timeout
        self._locks = KeyedLocks()
        self._meta_lock = threading.Lock()
        # Signalled whenever a reservation is committed or released
        self._settled = threading.Condition(self._meta_lock)
        self._sequence = itertools.count(1)

        self._entries: dict[str, tuple[HistoryEntry, ...]] = {}
        self._identities: dict[str, TestIdentity] = {}
        self._last_seen: dict[str, int] = {}

        self._runs: dict[str, RunInfo] = {}
        self._pending: dict[str, str] = {}
        self._branch_latest: dict[str, datetime] = {}
        self._run_counter = 0

    # Run registry

    def reserve_run(self, run_id: str, digest: str) -> None:
        """Claim a run id before appending its entries.

        If another caller holds the reservation, waits for it to commit or
        release before deciding.

        Raises:
            DuplicateRun: The run was already ingested with identical content.
            ConflictingRun: The run id is known with different content.
            RunInProgress: The other ingest did not settle in time.
        """
        with self._settled:
            settled = self._settled.wait_for(
                lambda: run_id not in self._pending, timeout=self._pending_timeout
            )
            if not settled:
                raise RunInProgress(run_id, "another ingest of this run is still in progress")
            known = self._runs.get(run_id)
            if known is not None:
                if known.digest == digest:
                    raise DuplicateRun(run_id, "already ingested with identical content")
                raise ConflictingRun(run_id, "run id already ingested with different content")
            self._pending[run_id] = digest

    def release_run(self, run_id: str) -> None:
        """Give up a reservation that did not lead to a commit."""
        with self._settled:
            self._pending.pop(run_id, None)
            self._settled.notify_all()

    def restore_run(self, summary: RunSummary, digest: str) -> None:
        """Register a run whose history is entirely pruned (archive replay)."""
        with self._meta_lock:
            self._run_counter += 1
            self._runs[summary.run_id] = RunInfo(
                run_id=summary.run_id,
                digest=digest,
                branch=summary.branch,
                started_at=summary.started_at,
                ordinal=self._run_counter,
            )
            self._note_branch_start(summary.branch, summary.started_at)

    def has_run(self, run_id: str) -> bool:
        return run_id in self._runs

    def run_info(self, run_id: str) -> RunInfo | None:
        return self._runs.get(run_id)

    def run_count(self) -> int:
        return self._run_counter

    def latest_start(self, branch: str) -> datetime | None:
        """Latest start time of a committed run on a branch."""
        return self._branch_latest.get(branch)

    def _note_branch_start(self, branch: str, started_at: datetime) -> None:
        latest = self._branch_latest.get(branch)
        if latest is None or started_at > latest:
            self._branch_latest[branch] = started_at

    # Appends

    def _stage(
        self,
        identity: TestIdentity,
        entry: HistoryEntry,
        staged: dict[str, tuple[HistoryEntry, ...]],
    ) -> HistoryEntry:
        """Stage one entry on top of committed (or already staged) history."""
        fingerprint = identity.fingerprint
        base = staged.get(fingerprint, self._entries.get(fingerprint, ()))
        stamped = entry.model_copy(update={"sequence": next(self._sequence)})
        staged[fingerprint] = (*base, stamped)
        return stamped

    def append_run(
        self,
        batch: RunBatch,
        on_commit: CommitCallback | None = None,
    ) -> list[tuple[TestIdentity, HistoryEntry]]:
        """Append all entries of a run, all-or-nothing.

        This is the only way entries enter the store; a lone entry is a
        one-item batch.

        The run must have been reserved with :meth:`reserve_run`. Locks of all
        touched identities are held until ``on_commit`` returns, so callbacks
        observe each identity's history in commit order.

        Returns:
            The committed (identity, entry) pairs.

        Raises:
            PartialIngestFailure: Staging or archiving failed; nothing was
                committed and the reservation was released.
        """
        fingerprints = [identity.fingerprint for identity, _ in batch.items]
        with self._locks.hold_many(fingerprints):
            staged: dict[str, tuple[HistoryEntry, ...]] = {}
            committed: list[tuple[TestIdentity, HistoryEntry]] = []
            try:
                for identity, entry in batch.items:
                    committed.append((identity, self._stage(identity, entry, staged)))
                if self._archive is not None and batch.record is not None:
                    summary = batch.summary or RunSummary(
                        run_id=batch.run_id, started_at=batch.started_at
                    )
                    self._archive.save(batch.record, batch.digest, summary)
            except (StorageError, OSError) as e:
                logger.error(
                    "Rolling back %d staged entries of run %s: %s",
                    len(committed),
                    batch.run_id,
                    e,
                )
                self.release_run(batch.run_id)
                raise PartialIngestFailure(batch.run_id, str(e), staged=len(committed)) from e

            self._publish(batch, staged, committed)
            if on_commit is not None:
                on_commit(committed)
        return committed

    def _publish(
        self,
        batch: RunBatch,
        staged: dict[str, tuple[HistoryEntry, ...]],
        committed: list[tuple[TestIdentity, HistoryEntry]],
    ) -> None:
        with self._meta_lock:
            self._run_counter += 1
            ordinal = self._run_counter
            self._runs[batch.run_id] = RunInfo(
                run_id=batch.run_id,
                digest=batch.digest,
                branch=batch.branch,
                started_at=batch.started_at,
                ordinal=ordinal,
                fingerprints=tuple(staged),
                live_entries=len(committed),
            )
            self._pending.pop(batch.run_id, None)
            self._settled.notify_all()
            self._note_branch_start(batch.branch, batch.started_at)
            for identity, _ in committed:
                self._last_seen[identity.fingerprint] = ordinal
        for identity, _ in committed:
            self._identities.setdefault(identity.fingerprint, identity)
        for fingerprint, entries in staged.items():
            self._entries[fingerprint] = entries

    # Reads

    def query(
        self,
        fingerprint: str,
        limit: int | None = None,
        time_range: TimeRange | None = None,
    ) -> list[HistoryEntry]:
        """Entries for an identity, newest first.

        Args:
            fingerprint: Identity to query.
            limit: Maximum number of entries (run-count window).
            time_range: Only entries whose timestamp falls in this range.

        Returns:
            Matching entries; empty for unknown identities.
        """
        entries = self._entries.get(fingerprint, ())
        result: list[HistoryEntry] = []
        for entry in reversed(entries):
            if time_range is not None and not time_range.contains(entry.timestamp):
                continue
            result.append(entry)
            if limit is not None and len(result) >= limit:
                break
        return result

    def entries(self, fingerprint: str) -> tuple[HistoryEntry, ...]:
        """All entries of an identity in append order (oldest first)."""
        return self._entries.get(fingerprint, ())

    def window(self, fingerprint: str, size: int) -> list[HistoryEntry]:
        """The most recent ``size`` non-skipped entries, oldest first."""
        picked: list[HistoryEntry] = []
        for entry in reversed(self._entries.get(fingerprint, ())):
            if entry.status == TestStatus.SKIPPED:
                continue
            picked.append(entry)
            if len(picked) >= size:
                break
        picked.reverse()
        return picked

    def locked(self, fingerprint: str) -> AbstractContextManager[None]:
        """Hold an identity's lock, for derived-state changes outside of appends."""
        return self._locks.hold(fingerprint)

    def identity(self, fingerprint: str) -> TestIdentity | None:
        return self._identities.get(fingerprint)

    def identities(self) -> list[TestIdentity]:
        return [self._identities[fp] for fp in list(self._entries) if fp in self._identities]

    def __len__(self) -> int:
        return sum(len(entries) for entries in list(self._entries.values()))

    # Retention

    @staticmethod
    def _protected_start(entries: Sequence[HistoryEntry], floor: int) -> int:
        """Index from which entries must be kept to retain ``floor`` executed entries."""
        if floor <= 0:
            return len(entries)
        executed = 0
        for index in range(len(entries) - 1, -1, -1):
            if entries[index].status != TestStatus.SKIPPED:
                executed += 1
                if executed >= floor:
                    return index
        return 0

    def prune(
        self,
        policy: RetentionPolicy,
        *,
        keep_recent: int = 0,
        is_active: Callable[[str], bool] | None = None,
        on_remove: Callable[[str], None] | None = None,
        now: datetime | None = None,
    ) -> PruneReport:
        """Remove entries older than the retention horizon.

        Active identities always keep their ``max(policy.min_entries,
        keep_recent)`` most recent executed entries, however old. Identities
        absent from the last ``policy.stale_after_runs`` runs are removed
        entirely.

        Args:
            policy: Retention policy.
            keep_recent: Entries a classification window needs.
            is_active: Whether a fingerprint has an active classification
                state. Checked while the identity is locked.
            on_remove: Called with each removed stale fingerprint while its
                lock is still held, to drop derived state.
            now: Reference time for the age horizon.

        Returns:
            Report of what was removed.
        """
        horizon = policy.horizon(now)
        report = PruneReport()
        removed_per_run: dict[str, int] = {}
        with self._meta_lock:
            run_counter = self._run_counter

        for fingerprint in list(self._entries):
            with self._locks.hold(fingerprint):
                entries = self._entries.get(fingerprint)
                if entries is None:
                    continue

                last_seen = self._last_seen.get(fingerprint, 0)
                if (
                    policy.stale_after_runs is not None
                    and run_counter - last_seen >= policy.stale_after_runs
                ):
                    del self._entries[fingerprint]
                    self._identities.pop(fingerprint, None)
                    self._last_seen.pop(fingerprint, None)
                    if on_remove is not None:
                        on_remove(fingerprint)
                    report.removed_identities.append(fingerprint)
                    report.removed_entries += len(entries)
                    for entry in entries:
                        removed_per_run[entry.run_id] = removed_per_run.get(entry.run_id, 0) + 1
                    continue

                if horizon is None:
                    continue

                floor = policy.min_entries
                if is_active is not None and is_active(fingerprint):
                    floor = max(floor, keep_recent)
                keep_from = self._protected_start(entries, floor)

                kept: list[HistoryEntry] = []
                for index, entry in enumerate(entries):
                    if entry.timestamp >= horizon:
                        kept.append(entry)
                    elif index >= keep_from:
                        kept.append(entry)
                        report.clamped = True
                    else:
                        removed_per_run[entry.run_id] = removed_per_run.get(entry.run_id, 0) + 1
                        report.removed_entries += 1
                if len(kept) != len(entries):
                    self._entries[fingerprint] = tuple(kept)

        with self._meta_lock:
            for run_id, count in removed_per_run.items():
                info = self._runs.get(run_id)
                if info is None:
                    continue
                info.live_entries -= count
                if info.live_entries <= 0:
                    report.emptied_runs.append(run_id)

        if report.clamped:
            logger.info("Retention horizon clamped to keep classification windows intact")
        logger.debug(
            "Pruned %d entries, %d identities, %d runs emptied",
            report.removed_entries,
            len(report.removed_identities),
            len(report.emptied_runs),
        )
        return report
