"""Playwright JSON reporter adapter.

Converts the output of Playwright's ``json`` reporter into a RunRecord. The
top-level suite of every file is titled with the file path; it is left out of
the title path so that moving a spec file does not change test identity.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from flakelens.exceptions import ReportParseError
from flakelens.models.run import AttemptResult, RunRecord, TestResult, TestStatus

# Playwright result statuses -> attempt status
_STATUS_MAP = {
    "passed": TestStatus.PASSED,
    "failed": TestStatus.FAILED,
    "timedOut": TestStatus.FAILED,
    "interrupted": TestStatus.FAILED,
    "skipped": TestStatus.SKIPPED,
}


def _parse_start_time(report: dict[str, Any]) -> datetime:
    stats = report.get("stats") or {}
    start = stats.get("startTime")
    if not start:
        return datetime.now(UTC)
    try:
        parsed = datetime.fromisoformat(str(start).replace("Z", "+00:00"))
    except ValueError as e:
        msg = f"Invalid stats.startTime in Playwright report: {start!r}"
        raise ReportParseError(msg) from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _attempt_error(result: dict[str, Any]) -> str | None:
    error = result.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    for item in result.get("errors") or []:
        if isinstance(item, dict) and item.get("message"):
            return str(item["message"])
    return None


def _convert_test(
    test: dict[str, Any],
    spec: dict[str, Any],
    parents: list[str],
    file_path: str,
) -> TestResult:
    raw_results = sorted(test.get("results") or [], key=lambda r: r.get("retry", 0))
    attempts = [
        AttemptResult(
            status=_STATUS_MAP.get(str(r.get("status")), TestStatus.FAILED),
            duration_seconds=max(float(r.get("duration") or 0), 0.0) / 1000,
            error=_attempt_error(r),
        )
        for r in raw_results
    ]
    status = attempts[-1].status if attempts else TestStatus.SKIPPED

    title_path: list[str] = []
    if test.get("projectName"):
        title_path.append(str(test["projectName"]))
    title_path.extend(parents)
    title_path.append(str(spec.get("title", "")))

    return TestResult(
        title_path=title_path,
        file_path=str(spec.get("file") or file_path),
        status=status,
        attempts=attempts,
        duration_seconds=attempts[-1].duration_seconds if attempts else 0.0,
        error=attempts[-1].error if attempts else None,
    )


def _walk_suite(
    suite: dict[str, Any],
    parents: list[str],
    file_path: str,
    out: list[TestResult],
) -> None:
    for spec in suite.get("specs") or []:
        for test in spec.get("tests") or []:
            out.append(_convert_test(test, spec, parents, file_path))
    for child in suite.get("suites") or []:
        _walk_suite(child, [*parents, str(child.get("title", ""))], file_path, out)


def parse_playwright_report(
    report: dict[str, Any],
    *,
    run_id: str | None = None,
    branch: str = "",
    commit: str = "",
    environment: dict[str, str] | None = None,
) -> RunRecord:
    """Convert a Playwright JSON report into a RunRecord.

    Args:
        report: Parsed JSON reporter output.
        run_id: Run id to assign; a random UUID when omitted.
        branch: Branch the run was executed on.
        commit: Commit hash the run was executed against.
        environment: Extra environment descriptors merged over the ones
            read from the report config.

    Returns:
        The converted run.

    Raises:
        ReportParseError: If the report structure is not recognized.
    """
    suites = report.get("suites")
    if not isinstance(suites, list):
        msg = "Playwright report has no 'suites' list"
        raise ReportParseError(msg)

    env: dict[str, str] = {}
    config = report.get("config") or {}
    if config.get("version"):
        env["playwright_version"] = str(config["version"])
    if config.get("workers") is not None:
        env["workers"] = str(config["workers"])
    env.update(environment or {})

    results: list[TestResult] = []
    try:
        for file_suite in suites:
            file_path = str(file_suite.get("file") or file_suite.get("title", ""))
            _walk_suite(file_suite, [], file_path, results)
        return RunRecord(
            run_id=run_id or str(uuid.uuid4()),
            commit=commit,
            branch=branch,
            started_at=_parse_start_time(report),
            environment=env,
            results=results,
        )
    except (AttributeError, TypeError, ValueError, ValidationError) as e:
        msg = f"Malformed Playwright report: {e}"
        raise ReportParseError(msg) from e


def load_playwright_report(path: Path, **kwargs: Any) -> RunRecord:
    """Read a Playwright JSON report file and convert it."""
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        msg = f"Failed to read Playwright report {path}: {e}"
        raise ReportParseError(msg) from e
    if not isinstance(data, dict):
        msg = f"Playwright report {path} is not a JSON object"
        raise ReportParseError(msg)
    return parse_playwright_report(data, **kwargs)
