"""Analysis data models."""

from enum import Enum

from pydantic import BaseModel, Field

from flakelens.models.history import TimeRange


class TrendDirection(str, Enum):
    """Direction of a metric trend."""

    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


class TrendMetric(str, Enum):
    """Metrics supported by trend comparisons."""

    PASS_RATE = "pass_rate"
    FAIL_RATE = "fail_rate"
    FLAKE_RATE = "flake_rate"
    AVG_DURATION = "avg_duration"

    @property
    def higher_is_better(self) -> bool:
        return self is TrendMetric.PASS_RATE


class FlakeRateReport(BaseModel):
    """Flake rate of one test, or of all tests, over a time range."""

    fingerprint: str | None = None
    title: str | None = None
    time_range: TimeRange | None = None
    executed: int = 0
    flaky: int = 0
    rate: float = Field(default=0.0, ge=0.0, le=1.0)
    # Flake rate of the current classification window (single test only)
    window_rate: float | None = None


class SlowTest(BaseModel):
    """Duration statistics of one test."""

    fingerprint: str
    title: str
    avg_duration_seconds: float
    max_duration_seconds: float
    samples: int


class TrendDelta(BaseModel):
    """Change of a metric between a baseline range and a current range."""

    metric: TrendMetric
    branch: str | None = None
    previous_value: float
    current_value: float
    delta: float
    change_percent: float | None = None
    direction: TrendDirection
    previous_runs: int
    current_runs: int
