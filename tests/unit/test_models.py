"""Tests for run, history and configuration models."""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from flakelens.models import (
    AttemptResult,
    ClassifierConfig,
    HistoryEntry,
    RetentionPolicy,
    RunRecord,
    TestResult,
    TestStatus,
    TimeRange,
)

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=UTC)


class TestTestResult:
    """Tests for the TestResult model."""

    def test_final_status_must_match_last_attempt(self) -> None:
        """A result whose final status contradicts its last attempt is rejected."""
        with pytest.raises(ValidationError, match="does not match"):
            TestResult(
                title_path=["login"],
                status=TestStatus.PASSED,
                attempts=[AttemptResult(status=TestStatus.FAILED)],
            )

    def test_string_title_is_wrapped(self) -> None:
        """A plain string title becomes a single-segment path."""
        result = TestResult(title_path="Auth › login", status=TestStatus.PASSED)
        assert result.title_path == ["Auth › login"]

    def test_retry_then_pass_is_flaky(self) -> None:
        """Fail followed by pass within a run is flaky."""
        result = TestResult(
            title_path=["login"],
            status=TestStatus.PASSED,
            attempts=[
                AttemptResult(status=TestStatus.FAILED, error="timeout"),
                AttemptResult(status=TestStatus.PASSED),
            ],
        )
        assert result.was_retried
        assert result.is_flaky
        assert result.first_error == "timeout"

    def test_retry_then_fail_is_not_flaky(self) -> None:
        """Failing every attempt is a failure, not a flake."""
        result = TestResult(
            title_path=["login"],
            status=TestStatus.FAILED,
            attempts=[
                AttemptResult(status=TestStatus.FAILED),
                AttemptResult(status=TestStatus.FAILED),
            ],
        )
        assert result.was_retried
        assert not result.is_flaky

    def test_final_duration_falls_back_to_last_attempt(self) -> None:
        """Missing top-level duration uses the last attempt's."""
        result = TestResult(
            title_path=["login"],
            status=TestStatus.PASSED,
            attempts=[
                AttemptResult(status=TestStatus.FAILED, duration_seconds=4.0),
                AttemptResult(status=TestStatus.PASSED, duration_seconds=1.5),
            ],
        )
        assert result.final_duration == 1.5

    def test_negative_duration_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TestResult(title_path=["login"], status=TestStatus.PASSED, duration_seconds=-1.0)


class TestRunRecord:
    """Tests for the RunRecord model."""

    def test_naive_start_is_utc(self) -> None:
        """Naive timestamps are interpreted as UTC."""
        record = RunRecord(run_id="r1", started_at=datetime(2026, 1, 10, 12, 0))
        assert record.started_at.tzinfo is UTC

    def test_empty_run_id_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RunRecord(run_id="", started_at=NOW)

    def test_digest_is_stable(self) -> None:
        """Equal content gives equal digests."""
        results = [TestResult(title_path=["a"], status=TestStatus.PASSED)]
        first = RunRecord(run_id="r1", started_at=NOW, results=results)
        second = RunRecord(run_id="r1", started_at=NOW, results=list(results))
        assert first.content_digest() == second.content_digest()

    def test_digest_changes_with_content(self) -> None:
        """Any content change changes the digest."""
        passed = RunRecord(
            run_id="r1",
            started_at=NOW,
            results=[TestResult(title_path=["a"], status=TestStatus.PASSED)],
        )
        failed = RunRecord(
            run_id="r1",
            started_at=NOW,
            results=[TestResult(title_path=["a"], status=TestStatus.FAILED)],
        )
        assert passed.content_digest() != failed.content_digest()


class TestHistoryEntry:
    """Tests for HistoryEntry flags."""

    def test_retried_pass_is_flaky_and_failure(self) -> None:
        entry = HistoryEntry(run_id="r1", status=TestStatus.PASSED, was_retried=True, timestamp=NOW)
        assert entry.is_flaky
        assert entry.is_failure

    def test_plain_failure(self) -> None:
        entry = HistoryEntry(run_id="r1", status=TestStatus.FAILED, timestamp=NOW)
        assert not entry.is_flaky
        assert entry.is_failure

    def test_clean_pass(self) -> None:
        entry = HistoryEntry(run_id="r1", status=TestStatus.PASSED, timestamp=NOW)
        assert not entry.is_flaky
        assert not entry.is_failure


class TestTimeRange:
    """Tests for TimeRange."""

    def test_half_open(self) -> None:
        """Start is inclusive, end is exclusive."""
        time_range = TimeRange(start=NOW, end=NOW + timedelta(hours=1))
        assert time_range.contains(NOW)
        assert time_range.contains(NOW + timedelta(minutes=59))
        assert not time_range.contains(NOW + timedelta(hours=1))
        assert not time_range.contains(NOW - timedelta(seconds=1))

    def test_open_bounds(self) -> None:
        assert TimeRange().contains(NOW)
        assert TimeRange(start=NOW).contains(NOW + timedelta(days=365))
        assert TimeRange(end=NOW).contains(NOW - timedelta(days=365))

    def test_empty_range(self) -> None:
        assert TimeRange(start=NOW, end=NOW).is_empty
        assert TimeRange(start=NOW, end=NOW - timedelta(hours=1)).is_empty
        assert not TimeRange(start=NOW).is_empty


class TestClassifierConfig:
    """Tests for ClassifierConfig defaults and validation."""

    def test_defaults(self) -> None:
        config = ClassifierConfig()
        assert config.window_size == 20
        assert config.min_runs == 5
        assert config.flaky_threshold == pytest.approx(0.10)
        assert config.failing_streak == 3

    def test_min_runs_cannot_exceed_window(self) -> None:
        with pytest.raises(ValidationError, match="cannot exceed"):
            ClassifierConfig(window_size=4, min_runs=5)


class TestRetentionPolicy:
    """Tests for RetentionPolicy."""

    def test_no_age_limit(self) -> None:
        assert RetentionPolicy().horizon(NOW) is None

    def test_horizon(self) -> None:
        policy = RetentionPolicy(max_age_days=7)
        assert policy.horizon(NOW) == NOW - timedelta(days=7)
