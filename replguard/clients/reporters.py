"""
ReplGuard — File Reporters

JSON summary and per-issue CSV, written under one output directory.
The JSON report doubles as the input to a later verify run.
"""

from __future__ import annotations

import asyncio
import csv
import io
from pathlib import Path
from typing import Any

import orjson
import structlog
from pydantic import ValidationError

from replguard.core.errors import ReplGuardError
from replguard.primitives.issue import Issue
from replguard.systems.orchestrator.types import RunSummary

logger = structlog.get_logger("replguard.clients.reporters")


def _default(obj: Any) -> Any:
    # Opaque actuator state may hold anything; keep it readable
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    return str(obj)


def report_stem(summary: RunSummary) -> str:
    stamp = summary.started_at.strftime("%Y%m%dT%H%M%SZ")
    return f"replguard-{summary.mode.value}-{stamp}-{summary.run_id}"


class JsonReporter:
    """Whole summary as one JSON document."""

    name = "json"

    def __init__(self, output_dir: str | Path) -> None:
        self._dir = Path(output_dir)

    async def publish(self, summary: RunSummary) -> None:
        doc = summary.model_dump()
        doc["headline"] = summary.headline()
        payload = orjson.dumps(
            doc,
            default=_default,
            option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS,
        )
        path = self._dir / f"{report_stem(summary)}.json"
        await asyncio.to_thread(_write_bytes, path, payload)
        logger.info("report_written", reporter=self.name, path=str(path))

    @staticmethod
    def load_issues(path: str | Path) -> list[Issue]:
        """Issues reported by an earlier run, for verify mode."""
        try:
            doc = orjson.loads(Path(path).read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            raise ReplGuardError(f"Cannot read previous report {path}: {exc}") from exc
        if not isinstance(doc, dict):
            raise ReplGuardError(f"Previous report {path} is not a run summary")
        try:
            return [Issue.model_validate(i) for i in doc.get("issues", [])]
        except ValidationError as exc:
            raise ReplGuardError(f"Previous report {path} has malformed issues: {exc}") from exc


CSV_COLUMNS = (
    "node",
    "category",
    "severity",
    "partner",
    "description",
    "actionable",
    "remaining",
    "remedy",
    "action_state",
    "action_outcome",
    "detected_at",
    "fingerprint",
)


class CsvReporter:
    """One row per issue, joined with the healing action taken on it."""

    name = "csv"

    def __init__(self, output_dir: str | Path) -> None:
        self._dir = Path(output_dir)

    async def publish(self, summary: RunSummary) -> None:
        path = self._dir / f"{report_stem(summary)}.csv"
        await asyncio.to_thread(_write_bytes, path, render_csv(summary).encode())
        logger.info("report_written", reporter=self.name, path=str(path), rows=len(summary.issues))


def render_csv(summary: RunSummary) -> str:
    actions = {a.issue.id: a for a in summary.actions}
    remaining = {i.id for i in summary.remaining_issues}

    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    for issue in summary.issues:
        action = actions.get(issue.id)
        writer.writerow({
            "node": issue.node,
            "category": issue.category.value,
            "severity": issue.severity.value,
            "partner": issue.partner,
            "description": issue.description,
            "actionable": issue.actionable,
            "remaining": issue.id in remaining,
            "remedy": action.remedy.value if action and action.remedy else "",
            "action_state": action.state.value if action else "",
            "action_outcome": action.outcome.value if action else "",
            "detected_at": issue.detected_at.isoformat(),
            "fingerprint": issue.fingerprint,
        })
    return buf.getvalue()


def _write_bytes(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)


def latest_report(output_dir: str | Path) -> Path | None:
    """Most recent JSON report in ``output_dir``, if any."""
    reports = sorted(
        Path(output_dir).glob("replguard-*.json"),
        key=lambda p: p.stat().st_mtime,
    )
    return reports[-1] if reports else None
