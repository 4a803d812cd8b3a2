"""Tests for the JSON snapshot exporter."""

import json
from pathlib import Path

import pytest

from flakelens import __version__
from flakelens.config import FileConfig
from flakelens.engine import FlakeEngine
from flakelens.reporting import SnapshotExporter


@pytest.fixture
def engine(make_run, make_result) -> FlakeEngine:
    """An engine with one flaky and one quarantined test."""
    engine = FlakeEngine(FileConfig(quarantine=["checkout"]))
    for i in range(5):
        engine.ingest(
            make_run(
                f"r{i}",
                [
                    make_result("login", retried=i in (1, 3)),
                    make_result("checkout", "failed" if i >= 2 else "passed"),
                ],
                index=i,
            )
        )
    return engine


class TestSnapshotExporter:
    """Tests for SnapshotExporter."""

    def test_metadata(self, engine: FlakeEngine) -> None:
        snapshot = SnapshotExporter(engine.query).build()
        metadata = snapshot["metadata"]

        assert metadata["flakelens_version"] == __version__
        assert metadata["total_tests"] == 2
        assert metadata["overall_flake_rate"] == pytest.approx(0.2)
        assert metadata["classifications"]["flaky"] == 1
        assert metadata["classifications"]["quarantined"] == 1

    def test_tests_entries(self, engine: FlakeEngine) -> None:
        tests = SnapshotExporter(engine.query).build()["tests"]
        by_title = {t["title"]: t for t in tests}

        assert tests[0]["title"] == "login"
        assert by_title["login"]["classification"] == "flaky"
        assert by_title["login"]["last_run_id"] == "r4"
        assert "base_classification" not in by_title["login"]
        assert by_title["checkout"]["classification"] == "quarantined"
        assert by_title["checkout"]["base_classification"] == "consistently-failing"

    def test_transitions_optional(self, engine: FlakeEngine) -> None:
        exporter = SnapshotExporter(engine.query)
        assert [t["current"] for t in exporter.build()["transitions"]] == ["flaky"]
        assert "transitions" not in exporter.build(include_transitions=False)

    def test_generate_writes_json(self, engine: FlakeEngine, tmp_path: Path) -> None:
        output = tmp_path / "snapshot.json"
        SnapshotExporter(engine.query).generate(output)

        data = json.loads(output.read_text())
        assert data["metadata"]["total_tests"] == 2
        assert len(data["tests"]) == 2

    def test_empty_engine(self) -> None:
        snapshot = SnapshotExporter(FlakeEngine().query).build()
        assert snapshot["metadata"]["overall_flake_rate"] is None
        assert snapshot["tests"] == []
