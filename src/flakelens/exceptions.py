"""Custom exception hierarchy for FlakeLens.

All exceptions inherit from FlakeLensError for easy catching at the top level.
Rejected ingestions always carry the run id and a human-readable reason.
"""


class FlakeLensError(Exception):
    """Base exception for all FlakeLens errors."""


class ConfigurationError(FlakeLensError):
    """Configuration-related errors."""


class IngestError(FlakeLensError):
    """A run record was not ingested."""

    def __init__(self, run_id: str, reason: str) -> None:
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Run {run_id!r} rejected: {reason}")


class DuplicateRun(IngestError):
    """Run was already ingested with identical content (benign, skipped)."""


class ConflictingRun(IngestError):
    """Run id was already ingested with different content."""


class EmptyRun(IngestError):
    """Run contains no test results."""


class InvalidRun(IngestError):
    """Run payload failed validation."""


class IngestCancelled(IngestError):
    """Ingestion was cancelled during validation, before any append."""


class RunInProgress(IngestError):
    """Another ingest of the same run id has not settled yet (retryable)."""


class PartialIngestFailure(IngestError):
    """Storage failed mid-batch; all staged appends were rolled back."""

    def __init__(self, run_id: str, reason: str, staged: int = 0) -> None:
        self.staged = staged
        super().__init__(run_id, reason)


class ClassificationError(FlakeLensError):
    """Classification errors."""


class InsufficientHistory(ClassificationError):
    """Classification was requested over an empty window."""


class StorageError(FlakeLensError):
    """Run archive read/write errors."""


class UnknownRunError(FlakeLensError):
    """Referenced run id has never been ingested."""


class ReportParseError(FlakeLensError):
    """Failed to parse an external test report."""
