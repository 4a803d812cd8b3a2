"""Inbound run data models.

A RunRecord is one CI execution; each TestResult is the outcome of one
logical test inside it. Both are immutable once constructed.
"""

import hashlib
import json
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TestStatus(str, Enum):
    """Final (or per-attempt) outcome of a test."""

    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class AttemptResult(BaseModel):
    """A single attempt (initial run or retry) of a test."""

    model_config = ConfigDict(frozen=True)

    status: TestStatus
    duration_seconds: float = Field(default=0.0, ge=0.0)
    error: str | None = None


class TestResult(BaseModel):
    """Outcome of one test within one run, as reported by the producer."""

    __test__ = False

    model_config = ConfigDict(frozen=True)

    title_path: list[str] = Field(..., min_length=1)
    file_path: str = ""
    status: TestStatus
    attempts: list[AttemptResult] = Field(default_factory=list)
    duration_seconds: float = Field(default=0.0, ge=0.0)
    error: str | None = None

    @field_validator("title_path", mode="before")
    @classmethod
    def _wrap_title(cls, value: object) -> object:
        # A single string is split into segments by the identity resolver
        if isinstance(value, str):
            return [value]
        return value

    @model_validator(mode="after")
    def _check_final_status(self) -> "TestResult":
        if self.attempts and self.attempts[-1].status != self.status:
            msg = (
                f"final status {self.status.value!r} does not match "
                f"last attempt status {self.attempts[-1].status.value!r}"
            )
            raise ValueError(msg)
        return self

    @property
    def was_retried(self) -> bool:
        """Whether the test needed more than one attempt."""
        return len(self.attempts) > 1

    @property
    def is_flaky(self) -> bool:
        """Passed, but only after a retry. Same rule as ``HistoryEntry.is_flaky``."""
        return self.was_retried and self.status == TestStatus.PASSED

    @property
    def is_failure(self) -> bool:
        """Failed, or needed a retry."""
        return self.status == TestStatus.FAILED or self.was_retried

    @property
    def final_duration(self) -> float:
        """Reported duration, falling back to the last attempt's duration."""
        if not self.duration_seconds and self.attempts:
            return self.attempts[-1].duration_seconds
        return self.duration_seconds

    @property
    def first_error(self) -> str | None:
        """The error to use for the signature: final error, else first failed attempt."""
        if self.error:
            return self.error
        for attempt in self.attempts:
            if attempt.error:
                return attempt.error
        return None


class RunRecord(BaseModel):
    """One CI execution with all of its test results."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(..., min_length=1)
    commit: str = ""
    branch: str = ""
    started_at: datetime
    environment: dict[str, str] = Field(default_factory=dict)
    results: list[TestResult] = Field(default_factory=list)

    @field_validator("started_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def content_digest(self) -> str:
        """SHA-256 over the canonical JSON form of the record."""
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(canonical.encode()).hexdigest()
