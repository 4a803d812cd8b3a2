"""FlakeLens - flaky-test detection and aggregation for CI test history."""

__version__ = "0.1.0"
