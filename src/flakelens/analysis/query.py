"""Aggregation query service.

Read-only queries for dashboards and CI collaborators. Answers come from
classification states and rolling aggregates, never from a scan of the
history store.
"""

from __future__ import annotations

from collections.abc import Sequence

from flakelens.analysis.aggregates import RollingAggregates
from flakelens.analysis.classifier import FlakeClassifier
from flakelens.analysis.models import (
    FlakeRateReport,
    SlowTest,
    TrendDelta,
    TrendDirection,
    TrendMetric,
)
from flakelens.models.classification import (
    Classification,
    ClassificationState,
    ClassificationTransition,
)
from flakelens.models.history import RunSummary, TimeRange

# Changes at or below these are reported as stable
RATE_TOLERANCE = 0.01
DURATION_TOLERANCE = 0.05


def _combined(metric: TrendMetric, runs: Sequence[RunSummary]) -> float | None:
    """Metric over several runs, weighted by executed test count."""
    executed = sum(r.executed for r in runs)
    if executed == 0:
        return None
    if metric is TrendMetric.PASS_RATE:
        return sum(r.passed for r in runs) / executed
    if metric is TrendMetric.FAIL_RATE:
        return sum(r.failures for r in runs) / executed
    if metric is TrendMetric.FLAKE_RATE:
        return sum(r.flaky for r in runs) / executed
    return sum(r.total_duration_seconds for r in runs) / executed


class AggregationQueryService:
    """Answers flake-rate, duration and trend queries."""

    def __init__(
        self,
        classifier: FlakeClassifier,
        aggregates: RollingAggregates,
    ) -> None:
        self._classifier = classifier
        self._aggregates = aggregates

    def flake_rate(
        self,
        fingerprint: str | None = None,
        time_range: TimeRange | None = None,
    ) -> FlakeRateReport | None:
        """Fraction of executions that needed a retry to pass.

        Args:
            fingerprint: A single test, or None for all tests.
            time_range: Restrict to executions in this range.

        Returns:
            The report, or None for an unknown test or an empty range.
        """
        if time_range is not None and time_range.is_empty:
            return None

        if fingerprint is None:
            runs = self._aggregates.runs(time_range)
            executed = sum(r.executed for r in runs)
            if executed == 0:
                return None
            flaky = sum(r.flaky for r in runs)
            return FlakeRateReport(
                time_range=time_range,
                executed=executed,
                flaky=flaky,
                rate=flaky / executed,
            )

        aggregate = self._aggregates.identity(fingerprint)
        if aggregate is None:
            return None
        state = self._classifier.state(fingerprint)
        window_rate = state.flake_rate if state is not None else None

        if time_range is None:
            executed, flaky = aggregate.executed, aggregate.flaky
        else:
            totals = self._aggregates.range_totals(fingerprint, time_range)
            if totals is None:
                return None
            executed, flaky = totals.executed, totals.flaky
        if executed == 0:
            return None
        return FlakeRateReport(
            fingerprint=fingerprint,
            title=aggregate.title,
            time_range=time_range,
            executed=executed,
            flaky=flaky,
            rate=flaky / executed,
            window_rate=window_rate,
        )

    def slowest_tests(self, n: int, time_range: TimeRange | None = None) -> list[SlowTest]:
        """The ``n`` tests with the highest average duration."""
        if n <= 0 or (time_range is not None and time_range.is_empty):
            return []

        slow: list[SlowTest] = []
        for aggregate in self._aggregates.identities():
            if time_range is None:
                if aggregate.executed == 0:
                    continue
                slow.append(
                    SlowTest(
                        fingerprint=aggregate.fingerprint,
                        title=aggregate.title,
                        avg_duration_seconds=aggregate.avg_duration_seconds,
                        max_duration_seconds=aggregate.max_duration_seconds,
                        samples=aggregate.executed,
                    )
                )
                continue

            totals = self._aggregates.range_totals(aggregate.fingerprint, time_range)
            if totals is None:
                continue
            slow.append(
                SlowTest(
                    fingerprint=aggregate.fingerprint,
                    title=aggregate.title,
                    avg_duration_seconds=totals.avg_duration_seconds,
                    max_duration_seconds=totals.max_duration_seconds,
                    samples=totals.executed,
                )
            )

        slow.sort(key=lambda s: (-s.avg_duration_seconds, s.title))
        return slow[:n]

    def trend_delta(
        self,
        metric: TrendMetric | str,
        branch: str | None,
        compare_range: tuple[TimeRange, TimeRange],
    ) -> TrendDelta | None:
        """Compare a metric between a baseline range and a current range.

        Args:
            metric: Metric to compare.
            branch: Branch to restrict to, or None for all branches.
            compare_range: (baseline, current) time ranges.

        Returns:
            The delta, or None when either range has no executed tests.
        """
        metric = TrendMetric(metric)
        baseline_range, current_range = compare_range
        baseline_runs = self._aggregates.runs(baseline_range, branch)
        current_runs = self._aggregates.runs(current_range, branch)

        previous = _combined(metric, baseline_runs)
        current = _combined(metric, current_runs)
        if previous is None or current is None:
            return None

        delta = current - previous
        change_percent = (delta / previous) * 100 if previous else None
        return TrendDelta(
            metric=metric,
            branch=branch,
            previous_value=previous,
            current_value=current,
            delta=delta,
            change_percent=change_percent,
            direction=self._direction(metric, previous, delta),
            previous_runs=len(baseline_runs),
            current_runs=len(current_runs),
        )

    @staticmethod
    def _direction(metric: TrendMetric, previous: float, delta: float) -> TrendDirection:
        if metric is TrendMetric.AVG_DURATION:
            significant = abs(delta) > DURATION_TOLERANCE * previous if previous else delta != 0
        else:
            significant = abs(delta) > RATE_TOLERANCE
        if not significant:
            return TrendDirection.STABLE
        improved = delta > 0 if metric.higher_is_better else delta < 0
        return TrendDirection.IMPROVING if improved else TrendDirection.DEGRADING

    def classification_snapshot(
        self,
        classification: Classification | None = None,
    ) -> list[ClassificationState]:
        """Current states, highest flake score first."""
        states = self._classifier.states()
        if classification is not None:
            states = [s for s in states if s.classification == classification]
        return sorted(states, key=lambda s: (-s.flake_score, s.title))

    def classification_counts(self) -> dict[Classification, int]:
        counts = {c: 0 for c in Classification}
        for state in self._classifier.states():
            counts[state.classification] += 1
        return counts

    def recent_transitions(self, time_range: TimeRange | None = None) -> list[ClassificationTransition]:
        transitions = self._classifier.recent_transitions()
        if time_range is None:
            return transitions
        return [t for t in transitions if time_range.contains(t.occurred_at)]
