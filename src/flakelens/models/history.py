"""History data models.

HistoryEntry is the per-(test, run) projection kept by the history store.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flakelens.models.run import TestStatus


class HistoryEntry(BaseModel):
    """Immutable outcome of one test in one run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    sequence: int = 0
    status: TestStatus
    was_retried: bool = False
    duration_seconds: float = Field(default=0.0, ge=0.0)
    error_signature: str = ""
    timestamp: datetime
    branch: str = ""
    commit: str = ""

    @property
    def is_flaky(self) -> bool:
        """Needed a retry to pass."""
        return self.was_retried and self.status == TestStatus.PASSED

    @property
    def is_failure(self) -> bool:
        """Failed, or needed a retry."""
        return self.status == TestStatus.FAILED or self.was_retried


class TimeRange(BaseModel):
    """Half-open time interval [start, end). Either bound may be open."""

    model_config = ConfigDict(frozen=True)

    start: datetime | None = None
    end: datetime | None = None

    @field_validator("start", "end")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def contains(self, moment: datetime) -> bool:
        """Check whether a timestamp falls inside the range."""
        if self.start is not None and moment < self.start:
            return False
        return not (self.end is not None and moment >= self.end)

    @property
    def is_empty(self) -> bool:
        """True when the bounds cannot contain any timestamp."""
        return self.start is not None and self.end is not None and self.start >= self.end


class RunSummary(BaseModel):
    """Per-run counters kept for range and trend queries."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    branch: str = ""
    commit: str = ""
    started_at: datetime
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    flaky: int = 0
    # Failed or retried, the numerator of the fail rate
    failures: int = 0
    total_duration_seconds: float = 0.0

    @property
    def executed(self) -> int:
        """Results that were not skipped."""
        return self.total - self.skipped

