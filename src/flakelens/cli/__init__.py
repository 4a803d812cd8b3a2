"""Command-line interface for flakelens."""
