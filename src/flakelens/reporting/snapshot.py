"""JSON snapshot exporter for dashboards.

Exports current classifications and recent transitions for programmatic
access and integration.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from flakelens import __version__

if TYPE_CHECKING:
    from flakelens.analysis.query import AggregationQueryService
    from flakelens.models.classification import ClassificationState


class SnapshotExporter:
    """Builds and writes classification snapshots."""

    def __init__(self, query: AggregationQueryService) -> None:
        self._query = query

    def generate(
        self,
        output_path: Path,
        include_transitions: bool = True,
    ) -> None:
        """Write a JSON snapshot.

        Args:
            output_path: Path to write the snapshot to.
            include_transitions: Whether to include recent transitions.
        """
        snapshot = self.build(include_transitions)
        output_path.write_text(json.dumps(snapshot, indent=2, default=str))

    def build(self, include_transitions: bool = True) -> dict[str, Any]:
        """Build the snapshot dictionary."""
        states = self._query.classification_snapshot()
        overall = self._query.flake_rate()
        counts = self._query.classification_counts()

        snapshot: dict[str, Any] = {
            "metadata": {
                "generated_at": datetime.now(UTC).isoformat(),
                "flakelens_version": __version__,
                "total_tests": len(states),
                "overall_flake_rate": overall.rate if overall else None,
                "classifications": {c.value: n for c, n in counts.items()},
            },
            "tests": [self._build_state_entry(s) for s in states],
        }
        if include_transitions:
            snapshot["transitions"] = [
                t.model_dump(mode="json") for t in self._query.recent_transitions()
            ]
        return snapshot

    def _build_state_entry(self, state: ClassificationState) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "fingerprint": state.fingerprint,
            "title": state.title,
            "classification": state.classification.value,
            "flake_score": round(state.flake_score, 4),
            "flake_rate": round(state.flake_rate, 4),
            "fail_rate": round(state.fail_rate, 4),
            "consecutive_fail_streak": state.consecutive_fail_streak,
            "window_size": state.window_size,
            "avg_duration_seconds": round(state.avg_duration_seconds, 3),
            "updated_at": state.updated_at.isoformat(),
        }
        if state.base_classification != state.classification:
            entry["base_classification"] = state.base_classification.value
        if state.last_run_id:
            entry["last_run_id"] = state.last_run_id
        return entry
