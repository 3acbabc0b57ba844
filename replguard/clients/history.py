"""
ReplGuard — Run History Store

Append-only JSON-lines files under one directory:

  scores.jsonl   — one HealthScore per scored phase of every run
  metrics.jsonl  — metric points flushed by the MetricCollector

Records are written once and never rewritten.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import orjson
import structlog

from replguard.systems.scoring.types import HealthScore

logger = structlog.get_logger("replguard.clients.history")

SCORES_FILE = "scores.jsonl"
METRICS_FILE = "metrics.jsonl"


class RunHistoryStore:
    """ScoreHistory and MetricSink backed by JSON-lines files."""

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._lock = asyncio.Lock()
        self._logger = logger.bind(component="run_history", path=str(self._dir))

    @property
    def directory(self) -> Path:
        return self._dir

    async def append_score(self, run_id: str, mode: str, score: HealthScore) -> None:
        record = {"run_id": run_id, "phase": mode, **score.model_dump(mode="json")}
        await self._append(SCORES_FILE, [record])
        self._logger.debug("score_recorded", run_id=run_id, phase=mode, value=score.value)

    async def write_metrics(self, batch: list[dict[str, Any]]) -> None:
        await self._append(METRICS_FILE, batch)

    async def load_scores(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Score records, oldest first. Unparseable lines are skipped."""
        lines = await asyncio.to_thread(self._read_lines, SCORES_FILE)
        records: list[dict[str, Any]] = []
        for line in lines:
            try:
                records.append(orjson.loads(line))
            except orjson.JSONDecodeError:
                self._logger.warning("history_line_unparseable", file=SCORES_FILE)
        return records[-limit:] if limit else records

    async def _append(self, name: str, records: list[dict[str, Any]]) -> None:
        if not records:
            return
        payload = b"".join(orjson.dumps(r) + b"\n" for r in records)
        async with self._lock:
            await asyncio.to_thread(self._write, name, payload)

    def _write(self, name: str, payload: bytes) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        with open(self._dir / name, "ab") as f:
            f.write(payload)

    def _read_lines(self, name: str) -> list[bytes]:
        try:
            return [ln for ln in (self._dir / name).read_bytes().splitlines() if ln.strip()]
        except FileNotFoundError:
            return []
