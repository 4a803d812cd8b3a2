"""Tests for the run archive."""

import json
from pathlib import Path

import pytest

from flakelens.exceptions import StorageError
from flakelens.ingest import summarize_run
from flakelens.models import RunRecord
from flakelens.persistence import RunArchive


@pytest.fixture
def temp_results_dir(tmp_path: Path) -> Path:
    """Create a temporary results directory."""
    return tmp_path / "flake-results"


@pytest.fixture
def sample_run(make_run, make_result) -> RunRecord:
    """Create a sample run with one flaky and one failing test."""
    return make_run(
        "ci/1234",
        [
            make_result("Auth › login", retried=True),
            make_result("Cart › checkout", "failed"),
        ],
    )


class TestRunArchive:
    """Tests for RunArchive."""

    def test_empty_index_when_missing(self, temp_results_dir: Path) -> None:
        archive = RunArchive(temp_results_dir)
        assert archive.load_index().entries == []
        assert list(archive.iter_runs()) == []

    def test_save_creates_file_and_index(
        self, temp_results_dir: Path, sample_run: RunRecord
    ) -> None:
        archive = RunArchive(temp_results_dir)
        path = archive.save(sample_run, "digest", summarize_run(sample_run))

        assert path.exists()
        assert path.parent == temp_results_dir / "runs"
        assert path.name == "2026-01-10T12-00-00_ci_1234_digest.json"

        index = archive.load_index()
        assert len(index.entries) == 1
        assert index.entries[0].run_id == "ci/1234"
        assert index.entries[0].digest == "digest"
        assert index.entries[0].summary.flaky == 1
        assert index.entries[0].summary.failed == 1

    def test_load_run_roundtrip(self, temp_results_dir: Path, sample_run: RunRecord) -> None:
        archive = RunArchive(temp_results_dir)
        archive.save(sample_run, "digest", summarize_run(sample_run))

        [(entry, record)] = list(archive.iter_runs())
        assert record == sample_run
        assert record.content_digest() == sample_run.content_digest()

    def test_no_temp_files_left(self, temp_results_dir: Path, sample_run: RunRecord) -> None:
        archive = RunArchive(temp_results_dir)
        archive.save(sample_run, "digest", summarize_run(sample_run))

        leftovers = [p for p in temp_results_dir.rglob("*") if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_corrupt_index_raises(self, temp_results_dir: Path) -> None:
        temp_results_dir.mkdir(parents=True)
        (temp_results_dir / "index.json").write_text("{not json")

        with pytest.raises(StorageError, match="index"):
            RunArchive(temp_results_dir).load_index()

    def test_unreadable_run_is_skipped(
        self, temp_results_dir: Path, sample_run: RunRecord
    ) -> None:
        archive = RunArchive(temp_results_dir)
        path = archive.save(sample_run, "digest", summarize_run(sample_run))
        path.write_text(json.dumps({"run_id": 1}))

        [(_, record)] = list(archive.iter_runs())
        assert record is None

    def test_mark_pruned_keeps_index_entry(
        self, temp_results_dir: Path, sample_run: RunRecord
    ) -> None:
        """Pruned runs lose their file but keep digest and summary."""
        archive = RunArchive(temp_results_dir)
        path = archive.save(sample_run, "digest", summarize_run(sample_run))

        assert archive.mark_pruned(["ci/1234", "unknown"]) == 1
        assert not path.exists()

        [(entry, record)] = list(archive.iter_runs())
        assert entry.pruned
        assert entry.digest == "digest"
        assert entry.summary.total == 2
        assert record is None

    def test_mark_pruned_empty(self, temp_results_dir: Path) -> None:
        assert RunArchive(temp_results_dir).mark_pruned([]) == 0

    def test_save_failure_raises_storage_error(
        self, tmp_path: Path, sample_run: RunRecord
    ) -> None:
        """A results path that is a file cannot hold the archive."""
        blocker = tmp_path / "blocked"
        blocker.write_text("")
        archive = RunArchive(blocker)

        with pytest.raises(StorageError, match="ci/1234"):
            archive.save(sample_run, "digest", summarize_run(sample_run))

    def test_sanitized_ids_get_distinct_files(
        self, temp_results_dir: Path, make_run, make_result
    ) -> None:
        """Run ids that sanitize to the same text never share a file."""
        archive = RunArchive(temp_results_dir)
        slash = make_run("ci/1", [make_result("a")])
        underscore = make_run("ci_1", [make_result("b")])

        first = archive.save(slash, slash.content_digest(), summarize_run(slash))
        second = archive.save(underscore, underscore.content_digest(), summarize_run(underscore))

        assert first != second
        assert first.exists()
        assert second.exists()
        loaded = {entry.run_id: record for entry, record in archive.iter_runs()}
        assert loaded["ci/1"] == slash
        assert loaded["ci_1"] == underscore

    def test_mismatched_run_file_is_skipped(
        self, temp_results_dir: Path, sample_run: RunRecord, make_run, make_result
    ) -> None:
        """A run file holding a different run is never replayed under the entry's id."""
        archive = RunArchive(temp_results_dir)
        path = archive.save(sample_run, "digest", summarize_run(sample_run))
        path.write_text(make_run("other", [make_result("a")]).model_dump_json())

        [(entry, record)] = list(archive.iter_runs())
        assert entry.run_id == "ci/1234"
        assert record is None
