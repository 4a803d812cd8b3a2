"""Ingestion of run records and external test reports."""

from flakelens.ingest.ingestor import IngestReceipt, IngestStatus, RunIngestor, summarize_run
from flakelens.ingest.playwright import load_playwright_report, parse_playwright_report
from flakelens.ingest.signatures import categorize_error, normalize_error

__all__ = [
    "IngestReceipt",
    "IngestStatus",
    "RunIngestor",
    "categorize_error",
    "load_playwright_report",
    "normalize_error",
    "parse_playwright_report",
    "summarize_run",
]
