"""Classification data models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Classification(str, Enum):
    """Derived stability class of a test."""

    STABLE = "stable"
    FLAKY = "flaky"
    UNSTABLE = "unstable"
    CONSISTENTLY_FAILING = "consistently-failing"
    INSUFFICIENT_DATA = "insufficient-data"
    QUARANTINED = "quarantined"


class WindowStats(BaseModel):
    """Statistics computed over one classification window."""

    model_config = ConfigDict(frozen=True)

    window_size: int
    fail_rate: float = Field(ge=0.0, le=1.0)
    flake_rate: float = Field(ge=0.0, le=1.0)
    flake_score: float = Field(ge=0.0, le=1.0)
    consecutive_fail_streak: int = 0
    avg_duration_seconds: float = 0.0
    classification: Classification


class ClassificationState(BaseModel):
    """Current classification of one test identity.

    Always re-derivable from history; replaced wholesale on every update.
    """

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    title: str
    classification: Classification
    base_classification: Classification
    flake_score: float = 0.0
    flake_rate: float = 0.0
    fail_rate: float = 0.0
    consecutive_fail_streak: int = 0
    window_size: int = 0
    avg_duration_seconds: float = 0.0
    updated_at: datetime
    last_run_id: str | None = None


class ClassificationTransition(BaseModel):
    """Emitted when a test's classification changes between recomputations."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    title: str
    previous: Classification
    current: Classification
    flake_score: float
    run_id: str | None = None
    occurred_at: datetime
