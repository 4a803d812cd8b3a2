"""FlakeLens CLI implementation.

Provides the command-line interface for ingesting runs and querying flake
statistics.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from flakelens.analysis.models import TrendDirection, TrendMetric
from flakelens.config import CLIOverrides, ConfigLoader, FileConfig
from flakelens.engine import FlakeEngine
from flakelens.exceptions import FlakeLensError, IngestError
from flakelens.gate import GateDecision
from flakelens.ingest.ingestor import IngestStatus
from flakelens.ingest.playwright import load_playwright_report
from flakelens.models.classification import Classification
from flakelens.models.history import TimeRange
from flakelens.models.run import RunRecord, TestStatus

# Pattern for relative time strings like "1h", "30m", "1d"
RELATIVE_TIME_PATTERN = re.compile(r"^(\d+)([hmd])$", re.IGNORECASE)

CLASSIFICATION_STYLES = {
    Classification.STABLE: "green",
    Classification.FLAKY: "yellow",
    Classification.UNSTABLE: "magenta",
    Classification.CONSISTENTLY_FAILING: "red",
    Classification.INSUFFICIENT_DATA: "dim",
    Classification.QUARANTINED: "blue",
}

TREND_ARROWS = {
    TrendDirection.IMPROVING: "[green]↑ improving[/green]",
    TrendDirection.DEGRADING: "[red]↓ degrading[/red]",
    TrendDirection.STABLE: "[dim]→ stable[/dim]",
}


def _parse_duration(value: str) -> timedelta:
    """Parse a relative duration such as '1h', '30m' or '7d'.

    Raises:
        typer.BadParameter: If the format is invalid.
    """
    match = RELATIVE_TIME_PATTERN.match(value.strip())
    if not match:
        msg = f"Invalid duration: '{value}'. Use relative format (1h, 30m, 7d)."
        raise typer.BadParameter(msg)
    amount = int(match.group(1))
    unit = match.group(2).lower()
    if unit == "h":
        return timedelta(hours=amount)
    if unit == "m":
        return timedelta(minutes=amount)
    return timedelta(days=amount)


def _parse_since(since_str: str) -> datetime:
    """Parse a since string into a datetime.

    Args:
        since_str: Time value - ISO format, date, or relative (1h, 30m, 1d).

    Returns:
        Parsed datetime in UTC.

    Raises:
        typer.BadParameter: If the format is invalid.
    """
    if RELATIVE_TIME_PATTERN.match(since_str.strip()):
        return datetime.now(UTC) - _parse_duration(since_str)

    try:
        dt = datetime.fromisoformat(since_str)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt
    except ValueError:
        pass

    try:
        dt = datetime.strptime(since_str, "%Y-%m-%d")
        return dt.replace(tzinfo=UTC)
    except ValueError:
        pass

    msg = (
        f"Invalid time format: '{since_str}'. "
        "Use ISO format (2026-01-18T13:00:00), date (2026-01-18), "
        "or relative (1h, 30m, 1d)."
    )
    raise typer.BadParameter(msg)


app = typer.Typer(
    name="flakelens",
    help="Flaky-test detection and aggregation for CI test history.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to flakelens.yaml configuration file."),
]
ResultsDirOption = Annotated[
    Path | None,
    typer.Option("--results-dir", "-d", help="Directory holding the run archive."),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging."),
]


def _configure_logging(level: str, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _open_engine(
    config_file: Path | None,
    results_dir: Path | None,
    *,
    verbose: bool = False,
    cli_overrides: CLIOverrides | None = None,
    must_exist: bool = True,
) -> FlakeEngine:
    """Load configuration and open the engine, replaying the archive."""
    try:
        file_config = ConfigLoader.load_config(config_file) or FileConfig()
        classifier = ConfigLoader.resolve_classifier_config(file_config, cli_overrides)
        storage = ConfigLoader.resolve_storage_config(
            file_config,
            cli_dir=str(results_dir) if results_dir is not None else None,
        )
    except FlakeLensError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e

    _configure_logging(file_config.log_level, verbose)
    config = file_config.model_copy(update={"classifier": classifier, "storage": storage})

    if not storage.persist:
        return FlakeEngine(config)
    archive_dir = Path(storage.dir)
    if must_exist and not archive_dir.exists():
        console.print(f"[red]Error:[/red] Results directory not found: {archive_dir}")
        raise typer.Exit(code=1)
    try:
        return FlakeEngine.open(archive_dir, config)
    except FlakeLensError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e


def _load_records(
    path: Path,
    report_format: str,
    run_id: str | None,
    branch: str,
    commit: str,
) -> list[RunRecord]:
    if report_format == "playwright":
        return [load_playwright_report(path, run_id=run_id, branch=branch, commit=commit)]
    data: Any = json.loads(path.read_text())
    payloads = data if isinstance(data, list) else [data]
    return [RunRecord.model_validate(p) for p in payloads]


@app.command()
def ingest(  # noqa: PLR0913 - Typer requires CLI args as function parameters
    paths: Annotated[
        list[Path],
        typer.Argument(help="Run record JSON files (or Playwright JSON reports).", exists=True),
    ],
    report_format: Annotated[
        str,
        typer.Option("--format", "-f", help="Input format: record or playwright."),
    ] = "record",
    run_id: Annotated[
        str | None,
        typer.Option("--run-id", help="Run id for Playwright reports (random if omitted)."),
    ] = None,
    branch: Annotated[
        str,
        typer.Option("--branch", "-b", help="Branch for Playwright reports."),
    ] = "",
    commit: Annotated[
        str,
        typer.Option("--commit", help="Commit hash for Playwright reports."),
    ] = "",
    config_file: ConfigOption = None,
    results_dir: ResultsDirOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Ingest test runs into the history.

    Example:
        flakelens ingest runs/*.json
        flakelens ingest report.json --format playwright --branch main --commit abc123
    """
    if report_format not in ("record", "playwright"):
        console.print(f"[red]Error:[/red] Unknown format: {report_format}")
        console.print("Valid options: record, playwright")
        raise typer.Exit(code=1)

    engine = _open_engine(config_file, results_dir, verbose=verbose, must_exist=False)
    rejected = 0
    for path in paths:
        try:
            records = _load_records(path, report_format, run_id, branch, commit)
        except (FlakeLensError, ValueError) as e:
            console.print(f"[red]✗[/red] {path}: {e}")
            rejected += 1
            continue

        for record in records:
            try:
                receipt = engine.ingest(record)
            except IngestError as e:
                console.print(f"[red]✗[/red] {e.run_id}: {e.reason}")
                rejected += 1
                continue
            if receipt.status is IngestStatus.DUPLICATE:
                console.print(f"[dim]= {receipt.run_id}: already ingested[/dim]")
                continue
            note = " [yellow](out of order)[/yellow]" if receipt.out_of_order else ""
            console.print(
                f"[green]✓[/green] {receipt.run_id}: {receipt.test_count} result(s), "
                f"{receipt.flaky_count} flaky{note}"
            )
            for t in receipt.transitions:
                console.print(f"    {t.title}: {t.previous.value} → {t.current.value}")

    if rejected:
        console.print(f"\n[red]{rejected} input(s) rejected[/red]")
        raise typer.Exit(code=1)


@app.command()
def status(  # noqa: PLR0913 - Typer requires CLI args as function parameters
    classification: Annotated[
        Classification | None,
        typer.Option("--classification", "-k", help="Only show tests with this classification."),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of tests to show."),
    ] = 50,
    window_size: Annotated[
        int | None,
        typer.Option("--window-size", help="Override the classification window size."),
    ] = None,
    flaky_threshold: Annotated[
        float | None,
        typer.Option("--flaky-threshold", help="Override the flake-rate threshold."),
    ] = None,
    config_file: ConfigOption = None,
    results_dir: ResultsDirOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show the current classification of tests.

    Example:
        flakelens status --classification flaky --window-size 30
    """
    overrides = CLIOverrides(window_size=window_size, flaky_threshold=flaky_threshold)
    engine = _open_engine(config_file, results_dir, verbose=verbose, cli_overrides=overrides)
    states = engine.query.classification_snapshot(classification)
    if not states:
        console.print("[yellow]No classified tests.[/yellow]")
        raise typer.Exit(code=0)

    table = Table(title="Test Classification")
    table.add_column("Test", style="cyan")
    table.add_column("Class", justify="center")
    table.add_column("Flake Score", justify="right")
    table.add_column("Flake Rate", justify="right")
    table.add_column("Fail Streak", justify="right")
    table.add_column("Window", justify="right")

    for s in states[:limit]:
        style = CLASSIFICATION_STYLES[s.classification]
        table.add_row(
            s.title,
            f"[{style}]{s.classification.value}[/{style}]",
            f"{s.flake_score:.2f}",
            f"{s.flake_rate:.0%}",
            str(s.consecutive_fail_streak),
            str(s.window_size),
        )
    console.print(table)

    counts = engine.query.classification_counts()
    summary = ", ".join(f"{n} {c.value}" for c, n in counts.items() if n)
    console.print(f"\n[blue]{sum(counts.values())} test(s): {summary}[/blue]")


@app.command()
def flaky(
    config_file: ConfigOption = None,
    results_dir: ResultsDirOption = None,
    fail_on_flaky: Annotated[
        bool,
        typer.Option("--fail-on-flaky", help="Exit with error code if flaky tests are detected."),
    ] = False,
    verbose: VerboseOption = False,
) -> None:
    """List tests currently classified as flaky.

    Example:
        flakelens flaky --fail-on-flaky
    """
    engine = _open_engine(config_file, results_dir, verbose=verbose)
    flaky_states = engine.query.classification_snapshot(Classification.FLAKY)

    if not flaky_states:
        console.print("[green]No flaky tests detected.[/green]")
        raise typer.Exit(code=0)

    table = Table(title="Flaky Tests")
    table.add_column("Test", style="cyan")
    table.add_column("Flake Rate", justify="right")
    table.add_column("Flake Score", justify="right")
    table.add_column("Runs", justify="right")
    table.add_column("Files")

    for s in flaky_states:
        table.add_row(
            s.title,
            f"{s.flake_rate:.0%}",
            f"{s.flake_score:.2f}",
            str(s.window_size),
            ", ".join(engine.resolver.file_paths(s.fingerprint)),
        )

    console.print(table)
    console.print(f"\n[yellow]Found {len(flaky_states)} flaky test(s)[/yellow]")

    if fail_on_flaky:
        raise typer.Exit(code=1)


@app.command()
def history(
    title: Annotated[str, typer.Argument(help="Test title path (e.g. 'Auth › Login flow').")],
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Number of recent runs to show."),
    ] = 20,
    config_file: ConfigOption = None,
    results_dir: ResultsDirOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show the recent history and classification of one test.

    Example:
        flakelens history "checkout › pays with card" -n 10
    """
    engine = _open_engine(config_file, results_dir, verbose=verbose)
    identity = engine.resolver.lookup(title)
    if identity is None:
        console.print(f"[yellow]Unknown test: {title}[/yellow]")
        raise typer.Exit(code=0)

    state = engine.classifier.state(identity.fingerprint)
    console.print(Panel(f"[bold]{identity.title}[/bold]"))
    if state is not None:
        style = CLASSIFICATION_STYLES[state.classification]
        console.print(
            f"Classification: [{style}]{state.classification.value}[/{style}] "
            f"(flake rate {state.flake_rate:.0%}, fail rate {state.fail_rate:.0%}, "
            f"window {state.window_size})"
        )

    table = Table()
    table.add_column("Run", style="cyan")
    table.add_column("Started")
    table.add_column("Branch")
    table.add_column("Status", justify="center")
    table.add_column("Duration", justify="right")
    table.add_column("Error")

    status_styles = {TestStatus.PASSED: "green", TestStatus.FAILED: "red", TestStatus.SKIPPED: "dim"}
    for entry in engine.store.query(identity.fingerprint, limit=limit):
        style = status_styles[entry.status]
        label = entry.status.value + (" (retried)" if entry.was_retried else "")
        table.add_row(
            entry.run_id,
            entry.timestamp.strftime("%Y-%m-%d %H:%M"),
            entry.branch,
            f"[{style}]{label}[/{style}]",
            f"{entry.duration_seconds:.2f}s",
            entry.error_signature,
        )
    console.print(table)


@app.command()
def slowest(
    count: Annotated[
        int,
        typer.Option("--count", "-n", help="Number of tests to show."),
    ] = 10,
    since: Annotated[
        str | None,
        typer.Option(
            "--since",
            "-s",
            help=(
                "Only consider runs after this time. "
                "Accepts ISO format (2026-01-18T13:00:00), date (2026-01-18), "
                "or relative (1h, 30m, 1d)."
            ),
        ),
    ] = None,
    config_file: ConfigOption = None,
    results_dir: ResultsDirOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show the slowest tests by average duration.

    Example:
        flakelens slowest -n 5 --since 7d
    """
    engine = _open_engine(config_file, results_dir, verbose=verbose)
    time_range = TimeRange(start=_parse_since(since)) if since else None
    slow = engine.query.slowest_tests(count, time_range)

    if not slow:
        console.print("[yellow]No duration data available.[/yellow]")
        raise typer.Exit(code=0)

    table = Table(title="Slowest Tests")
    table.add_column("Test", style="cyan")
    table.add_column("Avg", justify="right")
    table.add_column("Max", justify="right")
    table.add_column("Samples", justify="right")
    for s in slow:
        table.add_row(
            s.title,
            f"{s.avg_duration_seconds:.2f}s",
            f"{s.max_duration_seconds:.2f}s",
            str(s.samples),
        )
    console.print(table)


@app.command()
def trend(
    metric: Annotated[
        TrendMetric,
        typer.Argument(help="Metric: pass_rate, fail_rate, flake_rate or avg_duration."),
    ],
    branch: Annotated[
        str | None,
        typer.Option("--branch", "-b", help="Branch to analyze (all if not specified)."),
    ] = None,
    window: Annotated[
        str,
        typer.Option(
            "--window",
            "-w",
            help="Length of the current period; compared with the period before it.",
        ),
    ] = "7d",
    config_file: ConfigOption = None,
    results_dir: ResultsDirOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Compare a metric between the current period and the previous one.

    Example:
        flakelens trend flake_rate --branch main --window 7d
    """
    engine = _open_engine(config_file, results_dir, verbose=verbose)
    length = _parse_duration(window)
    now = datetime.now(UTC)
    baseline = TimeRange(start=now - 2 * length, end=now - length)
    current = TimeRange(start=now - length, end=now)

    delta = engine.query.trend_delta(metric, branch, (baseline, current))
    if delta is None:
        console.print("[yellow]Not enough runs in both periods to compare.[/yellow]")
        raise typer.Exit(code=0)

    def fmt(value: float) -> str:
        return f"{value:.2f}s" if metric is TrendMetric.AVG_DURATION else f"{value:.1%}"

    table = Table(show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Metric", metric.value)
    table.add_row("Branch", branch or "(all)")
    table.add_row("Previous", f"{fmt(delta.previous_value)} ({delta.previous_runs} runs)")
    table.add_row("Current", f"{fmt(delta.current_value)} ({delta.current_runs} runs)")
    if delta.change_percent is not None:
        table.add_row("Change", f"{delta.change_percent:+.1f}%")
    table.add_row("Trend", TREND_ARROWS[delta.direction])
    console.print(table)


@app.command()
def gate(
    run_id: Annotated[str, typer.Argument(help="Run id to evaluate.")],
    strict: Annotated[
        bool,
        typer.Option("--strict", help="Also fail on a 'warn' decision."),
    ] = False,
    config_file: ConfigOption = None,
    results_dir: ResultsDirOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Evaluate the CI gate for a run.

    Exits with code 1 when the run is blocked.

    Example:
        flakelens gate ci-1234 --strict
    """
    engine = _open_engine(config_file, results_dir, verbose=verbose)
    try:
        result = engine.evaluate_gate(run_id)
    except FlakeLensError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e

    colors = {GateDecision.PASS: "green", GateDecision.WARN: "yellow", GateDecision.BLOCK: "red"}
    color = colors[result.decision]
    console.print(f"[{color}]Gate: {result.decision.value.upper()}[/{color}]")
    for reason in result.reasons:
        console.print(f"  - {reason}")
    for offender in result.offenders:
        style = CLASSIFICATION_STYLES[offender.classification]
        console.print(f"    [{style}]{offender.classification.value}[/{style}] {offender.title}")

    if result.decision is GateDecision.BLOCK or (strict and result.decision is GateDecision.WARN):
        raise typer.Exit(code=1)


@app.command()
def prune(
    max_age_days: Annotated[
        float | None,
        typer.Option("--max-age-days", help="Remove history older than this many days."),
    ] = None,
    stale_after_runs: Annotated[
        int | None,
        typer.Option("--stale-after-runs", help="Forget tests absent from this many runs."),
    ] = None,
    config_file: ConfigOption = None,
    results_dir: ResultsDirOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Apply the retention policy to stored history.

    Classification windows of active tests are always kept.

    Example:
        flakelens prune --max-age-days 30 --stale-after-runs 50
    """
    engine = _open_engine(config_file, results_dir, verbose=verbose)
    try:
        policy = ConfigLoader.resolve_retention_policy(
            engine.config,
            cli_max_age_days=max_age_days,
            cli_stale_after_runs=stale_after_runs,
        )
    except FlakeLensError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e

    report = engine.prune(policy)
    console.print(
        f"[green]Removed {report.removed_entries} entries, "
        f"{len(report.removed_identities)} test(s), "
        f"{len(report.emptied_runs)} fully pruned run(s)[/green]"
    )
    if report.clamped:
        console.print("[yellow]Some old entries were kept to preserve classification windows.[/yellow]")


@app.command()
def export(
    output: Annotated[
        Path,
        typer.Option("--output", "-o", help="Output file path for the snapshot."),
    ] = Path("flake-snapshot.json"),
    config_file: ConfigOption = None,
    results_dir: ResultsDirOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Export a JSON classification snapshot for dashboards.

    Example:
        flakelens export --output snapshot.json
    """
    from flakelens.reporting import SnapshotExporter  # noqa: PLC0415

    engine = _open_engine(config_file, results_dir, verbose=verbose)
    SnapshotExporter(engine.query).generate(output)
    console.print(f"[green]Snapshot written: {output}[/green]")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
