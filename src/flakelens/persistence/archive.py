"""Run archive implementation.

Stores every accepted RunRecord as a JSON file so that history and all
derived state can be rebuilt by replay.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from flakelens.exceptions import StorageError
from flakelens.models.history import RunSummary
from flakelens.models.run import RunRecord
from flakelens.persistence.models import ArchiveEntry, ArchiveIndex

logger = logging.getLogger(__name__)

DIGEST_PREFIX_LENGTH = 12


def _atomic_write(path: Path, content: str) -> None:
    """Write a file so readers never observe a partial document."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class RunArchive:
    """Handles saving and loading archived runs on the filesystem."""

    def __init__(self, results_dir: Path) -> None:
        """Initialize the run archive.

        Args:
            results_dir: Directory to store runs in.
        """
        self._results_dir = results_dir
        self._runs_dir = results_dir / "runs"
        self._index_path = results_dir / "index.json"
        self._lock = threading.Lock()

    @property
    def results_dir(self) -> Path:
        return self._results_dir

    def _ensure_dirs(self) -> None:
        self._runs_dir.mkdir(parents=True, exist_ok=True)

    def _generate_filename(self, record: RunRecord, digest: str) -> str:
        """Generate a filename for a run.

        Format: YYYY-MM-DDTHH-MM-SS_<safe run id>_<digest prefix>.json

        Sanitizing can map different run ids to the same text, so the content
        digest keeps filenames of distinct runs apart.
        """
        timestamp_str = record.started_at.strftime("%Y-%m-%dT%H-%M-%S")
        safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in record.run_id)
        return f"{timestamp_str}_{safe_id}_{digest[:DIGEST_PREFIX_LENGTH]}.json"

    def load_index(self) -> ArchiveIndex:
        """Load the archive index.

        Returns:
            The archive index, or an empty index if none exists.

        Raises:
            StorageError: If the index exists but cannot be parsed.
        """
        if not self._index_path.exists():
            return ArchiveIndex()
        try:
            return ArchiveIndex.model_validate_json(self._index_path.read_text())
        except (OSError, ValidationError) as e:
            msg = f"Failed to read archive index {self._index_path}: {e}"
            raise StorageError(msg) from e

    def _write_index(self, index: ArchiveIndex) -> None:
        index.last_updated = datetime.now(UTC)
        _atomic_write(self._index_path, index.model_dump_json(indent=2))

    def save(self, record: RunRecord, digest: str, summary: RunSummary) -> Path:
        """Save a run and add it to the index.

        Args:
            record: The run to archive.
            digest: Content digest of the run.
            summary: Per-run counters stored in the index.

        Returns:
            Path to the saved run file.

        Raises:
            StorageError: If the run cannot be written.
        """
        filename = self._generate_filename(record, digest)
        run_path = self._runs_dir / filename
        with self._lock:
            written = False
            try:
                self._ensure_dirs()
                _atomic_write(run_path, record.model_dump_json(indent=2))
                written = True
                index = self.load_index()
                index.entries = [e for e in index.entries if e.run_id != record.run_id]
                index.entries.append(
                    ArchiveEntry(
                        run_id=record.run_id,
                        digest=digest,
                        filename=filename,
                        ingested_at=datetime.now(UTC),
                        summary=summary,
                    )
                )
                self._write_index(index)
            except OSError as e:
                if written:
                    run_path.unlink(missing_ok=True)
                msg = f"Failed to archive run {record.run_id}: {e}"
                raise StorageError(msg) from e
        return run_path

    def mark_pruned(self, run_ids: list[str]) -> int:
        """Delete the files of runs whose history was fully pruned.

        Index entries are kept (flagged as pruned) so their digests and
        summaries survive.

        Returns:
            Number of run files removed.
        """
        if not run_ids:
            return 0
        targets = set(run_ids)
        removed = 0
        with self._lock:
            index = self.load_index()
            for entry in index.entries:
                if entry.run_id in targets and not entry.pruned:
                    (self._runs_dir / entry.filename).unlink(missing_ok=True)
                    entry.pruned = True
                    removed += 1
            self._write_index(index)
        return removed

    def load_run(self, entry: ArchiveEntry) -> RunRecord | None:
        """Load a single archived run; None if its file is gone or unreadable."""
        run_path = self._runs_dir / entry.filename
        if not run_path.exists():
            return None
        try:
            record = RunRecord.model_validate_json(run_path.read_text())
        except (OSError, ValidationError, json.JSONDecodeError) as e:
            logger.warning("Skipping unreadable archived run %s: %s", entry.run_id, e)
            return None
        if record.run_id != entry.run_id:
            logger.warning(
                "Skipping archived run %s: %s holds run %s",
                entry.run_id,
                entry.filename,
                record.run_id,
            )
            return None
        return record

    def iter_runs(self) -> Iterator[tuple[ArchiveEntry, RunRecord | None]]:
        """Yield index entries with their runs, in ingestion order.

        Pruned entries are yielded with ``None`` as the run.
        """
        for entry in self.load_index().entries:
            if entry.pruned:
                yield entry, None
            else:
                yield entry, self.load_run(entry)
