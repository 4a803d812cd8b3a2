"""Rolling aggregates maintained on every commit.

Per-identity totals, per-identity hourly rollups and per-run summaries let
queries answer without scanning history. All are published as immutable
snapshots, so readers never lock. Ranged per-test queries resolve to whole
UTC hours: an hour counts when it overlaps the range.
"""

from __future__ import annotations

import bisect
import threading
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict

from flakelens.models.history import HistoryEntry, RunSummary, TimeRange
from flakelens.models.identity import TestIdentity
from flakelens.models.run import TestStatus


class IdentityAggregate(BaseModel):
    """All-time counters of one test identity."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    title: str
    executed: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    flaky: int = 0
    total_duration_seconds: float = 0.0
    max_duration_seconds: float = 0.0
    first_seen: datetime | None = None
    last_seen: datetime | None = None

    @property
    def avg_duration_seconds(self) -> float:
        return self.total_duration_seconds / self.executed if self.executed else 0.0

    @property
    def flake_rate(self) -> float:
        return self.flaky / self.executed if self.executed else 0.0


class Rollup(BaseModel):
    """Counters of one test's executions within one hour (or a span of hours)."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    executed: int = 0
    flaky: int = 0
    total_duration_seconds: float = 0.0
    max_duration_seconds: float = 0.0

    @property
    def avg_duration_seconds(self) -> float:
        return self.total_duration_seconds / self.executed if self.executed else 0.0


def bucket_start(moment: datetime) -> datetime:
    """Start of the UTC hour holding ``moment``."""
    return moment.astimezone(UTC).replace(minute=0, second=0, microsecond=0)


def _add_to_rollup(rollup: Rollup, entry: HistoryEntry) -> Rollup:
    return rollup.model_copy(
        update={
            "executed": rollup.executed + 1,
            "flaky": rollup.flaky + entry.is_flaky,
            "total_duration_seconds": rollup.total_duration_seconds + entry.duration_seconds,
            "max_duration_seconds": max(rollup.max_duration_seconds, entry.duration_seconds),
        }
    )


def _fold(aggregate: IdentityAggregate, entry: HistoryEntry) -> IdentityAggregate:
    first_seen = aggregate.first_seen
    last_seen = aggregate.last_seen
    if first_seen is None or entry.timestamp < first_seen:
        first_seen = entry.timestamp
    if last_seen is None or entry.timestamp > last_seen:
        last_seen = entry.timestamp

    if entry.status == TestStatus.SKIPPED:
        return aggregate.model_copy(
            update={
                "skipped": aggregate.skipped + 1,
                "first_seen": first_seen,
                "last_seen": last_seen,
            }
        )
    return aggregate.model_copy(
        update={
            "executed": aggregate.executed + 1,
            "passed": aggregate.passed + (entry.status == TestStatus.PASSED),
            "failed": aggregate.failed + (entry.status == TestStatus.FAILED),
            "flaky": aggregate.flaky + entry.is_flaky,
            "total_duration_seconds": aggregate.total_duration_seconds + entry.duration_seconds,
            "max_duration_seconds": max(aggregate.max_duration_seconds, entry.duration_seconds),
            "first_seen": first_seen,
            "last_seen": last_seen,
        }
    )


class RollingAggregates:
    """Incrementally maintained counters for the query service."""

    def __init__(self) -> None:
        self._identities: dict[str, IdentityAggregate] = {}
        # Per identity: (hour starts, rollups), both sorted by hour
        self._hourly: dict[str, tuple[tuple[datetime, ...], tuple[Rollup, ...]]] = {}
        self._runs_lock = threading.Lock()
        # (start times, summaries), both sorted by start time, swapped together
        self._runs: tuple[tuple[datetime, ...], tuple[RunSummary, ...]] = ((), ())

    def record_entry(self, identity: TestIdentity, entry: HistoryEntry) -> None:
        """Fold one committed entry into its identity's counters.

        Called with the identity's store lock held.
        """
        current = self._identities.get(identity.fingerprint) or IdentityAggregate(
            fingerprint=identity.fingerprint,
            title=identity.title,
        )
        self._identities[identity.fingerprint] = _fold(current, entry)
        if entry.status != TestStatus.SKIPPED:
            self._record_hourly(identity.fingerprint, entry)

    def _record_hourly(self, fingerprint: str, entry: HistoryEntry) -> None:
        hour = bucket_start(entry.timestamp)
        starts, rollups = self._hourly.get(fingerprint, ((), ()))
        position = bisect.bisect_left(starts, hour)
        if position < len(starts) and starts[position] == hour:
            updated = _add_to_rollup(rollups[position], entry)
            self._hourly[fingerprint] = (
                starts,
                (*rollups[:position], updated, *rollups[position + 1 :]),
            )
            return
        created = _add_to_rollup(Rollup(start=hour), entry)
        self._hourly[fingerprint] = (
            (*starts[:position], hour, *starts[position:]),
            (*rollups[:position], created, *rollups[position:]),
        )

    def record_run(self, summary: RunSummary) -> None:
        """Insert a run summary, keeping summaries ordered by start time."""
        with self._runs_lock:
            starts, summaries = self._runs
            position = bisect.bisect_right(starts, summary.started_at)
            self._runs = (
                (*starts[:position], summary.started_at, *starts[position:]),
                (*summaries[:position], summary, *summaries[position:]),
            )

    def identity(self, fingerprint: str) -> IdentityAggregate | None:
        return self._identities.get(fingerprint)

    def identities(self) -> list[IdentityAggregate]:
        return list(self._identities.values())

    def range_totals(self, fingerprint: str, time_range: TimeRange) -> Rollup | None:
        """Executions of one test in the hours overlapping a range.

        Returns:
            Summed counters, or None when the test has no executions there.
        """
        starts, rollups = self._hourly.get(fingerprint, ((), ()))
        low, high = 0, len(starts)
        if time_range.start is not None:
            low = bisect.bisect_left(starts, bucket_start(time_range.start))
        if time_range.end is not None:
            high = bisect.bisect_left(starts, time_range.end)
        selected = rollups[low:high]
        if not selected:
            return None
        return Rollup(
            start=selected[0].start,
            executed=sum(r.executed for r in selected),
            flaky=sum(r.flaky for r in selected),
            total_duration_seconds=sum(r.total_duration_seconds for r in selected),
            max_duration_seconds=max(r.max_duration_seconds for r in selected),
        )

    def forget(self, fingerprint: str) -> None:
        self._identities.pop(fingerprint, None)
        self._hourly.pop(fingerprint, None)

    def runs(
        self,
        time_range: TimeRange | None = None,
        branch: str | None = None,
    ) -> list[RunSummary]:
        """Run summaries whose start time falls in the range, oldest first."""
        starts, summaries = self._runs
        low, high = 0, len(summaries)
        if time_range is not None:
            if time_range.start is not None:
                low = bisect.bisect_left(starts, time_range.start)
            if time_range.end is not None:
                high = bisect.bisect_left(starts, time_range.end)
        selected = summaries[low:high]
        if branch is not None:
            return [s for s in selected if s.branch == branch]
        return list(selected)
