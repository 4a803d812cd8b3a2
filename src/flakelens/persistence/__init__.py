"""Persistence module for test history and archived runs."""

from flakelens.persistence.archive import RunArchive
from flakelens.persistence.locks import KeyedLocks
from flakelens.persistence.models import ArchiveEntry, ArchiveIndex
from flakelens.persistence.store import HistoryStore, PruneReport, RunBatch, RunInfo

__all__ = [
    "ArchiveEntry",
    "ArchiveIndex",
    "HistoryStore",
    "KeyedLocks",
    "PruneReport",
    "RunArchive",
    "RunBatch",
    "RunInfo",
]
