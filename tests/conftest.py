"""Shared fixtures for flakelens tests."""

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

import pytest

from flakelens.models.run import AttemptResult, RunRecord, TestResult, TestStatus

BASE_TIME = datetime(2026, 1, 10, 12, 0, tzinfo=UTC)

DEFAULT_ERROR = "Error: expect(received).toBe(expected)"

ResultFactory = Callable[..., TestResult]
RunFactory = Callable[..., RunRecord]


def build_result(
    title: str | Sequence[str],
    status: str = "passed",
    *,
    retried: bool = False,
    file_path: str = "tests/app.spec.ts",
    duration: float = 1.0,
    error: str | None = None,
) -> TestResult:
    """Build a TestResult. ``retried`` prepends a failed first attempt."""
    final = TestStatus(status)
    if final == TestStatus.FAILED and error is None:
        error = DEFAULT_ERROR
    attempts = [AttemptResult(status=final, duration_seconds=duration, error=error)]
    if retried:
        attempts.insert(
            0, AttemptResult(status=TestStatus.FAILED, duration_seconds=duration, error=DEFAULT_ERROR)
        )
    return TestResult(
        title_path=[title] if isinstance(title, str) else list(title),
        file_path=file_path,
        status=final,
        attempts=attempts,
        duration_seconds=duration,
        error=error if final == TestStatus.FAILED else None,
    )


def build_run(
    run_id: str,
    results: Sequence[TestResult],
    *,
    index: int = 0,
    branch: str = "main",
    commit: str | None = None,
    started_at: datetime | None = None,
) -> RunRecord:
    """Build a RunRecord started ``index`` hours after BASE_TIME."""
    return RunRecord(
        run_id=run_id,
        commit=commit if commit is not None else f"c{index:04d}",
        branch=branch,
        started_at=started_at or BASE_TIME + timedelta(hours=index),
        results=list(results),
    )


@pytest.fixture
def make_result() -> ResultFactory:
    """Factory for test results."""
    return build_result


@pytest.fixture
def make_run() -> RunFactory:
    """Factory for run records."""
    return build_run
