"""Configuration data models.

Thresholds here are defaults chosen for testability; every one of them can be
overridden from the configuration file.
"""

from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, Field, model_validator

from flakelens.models.classification import Classification


class ClassifierConfig(BaseModel):
    """Sliding-window classification settings."""

    window_size: int = Field(default=20, ge=1)
    min_runs: int = Field(default=5, ge=1)
    flaky_threshold: float = Field(default=0.10, gt=0.0, le=1.0)
    failing_streak: int = Field(default=3, ge=1)
    # Weight multiplier per step back in time for the flake score
    score_decay: float = Field(default=0.85, gt=0.0, le=1.0)
    transition_log_size: int = Field(default=200, ge=0)

    @model_validator(mode="after")
    def _check_min_runs(self) -> "ClassifierConfig":
        if self.min_runs > self.window_size:
            msg = f"min_runs ({self.min_runs}) cannot exceed window_size ({self.window_size})"
            raise ValueError(msg)
        return self


class RetentionPolicy(BaseModel):
    """History retention settings used by pruning."""

    max_age_days: float | None = Field(default=None, gt=0)
    min_entries: int = Field(default=0, ge=0)
    stale_after_runs: int | None = Field(default=None, ge=1)

    def horizon(self, now: datetime | None = None) -> datetime | None:
        """Oldest timestamp that is still retained, or None for no age limit."""
        if self.max_age_days is None:
            return None
        current = now or datetime.now(UTC)
        return current - timedelta(days=self.max_age_days)


class GateConfig(BaseModel):
    """CI gate policy."""

    block_on: list[Classification] = Field(
        default_factory=lambda: [Classification.CONSISTENTLY_FAILING]
    )
    warn_on: list[Classification] = Field(
        default_factory=lambda: [Classification.FLAKY, Classification.UNSTABLE]
    )
    # Block when more than this many tests in the run are flaky
    max_flaky: int | None = Field(default=None, ge=0)
