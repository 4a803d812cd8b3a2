"""Persistence data models.

Defines the structure of the run archive index.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from flakelens.models.history import RunSummary


class ArchiveEntry(BaseModel):
    """Entry in the archive index, one per ingested run."""

    run_id: str
    digest: str
    filename: str
    ingested_at: datetime
    summary: RunSummary
    # Run file removed by retention; kept so resubmissions are still detected
    pruned: bool = False


class ArchiveIndex(BaseModel):
    """Index of all archived runs, in ingestion order."""

    entries: list[ArchiveEntry] = Field(default_factory=list)
    last_updated: datetime | None = None
