"""Data models for FlakeLens."""

from flakelens.models.classification import (
    Classification,
    ClassificationState,
    ClassificationTransition,
    WindowStats,
)
from flakelens.models.config import ClassifierConfig, GateConfig, RetentionPolicy
from flakelens.models.history import HistoryEntry, RunSummary, TimeRange
from flakelens.models.identity import TestIdentity
from flakelens.models.run import AttemptResult, RunRecord, TestResult, TestStatus

__all__ = [
    "AttemptResult",
    "Classification",
    "ClassificationState",
    "ClassificationTransition",
    "ClassifierConfig",
    "GateConfig",
    "HistoryEntry",
    "RetentionPolicy",
    "RunRecord",
    "RunSummary",
    "TestIdentity",
    "TestResult",
    "TestStatus",
    "TimeRange",
    "WindowStats",
]
