"""Machine-readable exports for dashboards."""

from flakelens.reporting.snapshot import SnapshotExporter

__all__ = ["SnapshotExporter"]
