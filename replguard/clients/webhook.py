"""
ReplGuard — Webhook Notifier

Posts a compact run summary to chat-style incoming webhooks. The body
carries a human-readable ``text`` field plus the structured headline.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from replguard.core.errors import TransientRemoteError
from replguard.systems.orchestrator.types import RunSummary

logger = structlog.get_logger("replguard.clients.webhook")

# Per-message cap on listed items
_MAX_LINES = 10


def render_text(summary: RunSummary) -> str:
    score = summary.final_score
    lines = [
        f"ReplGuard {summary.mode.value}: {summary.outcome.label}",
        f"nodes={len(summary.nodes)} issues={len(summary.issues)} "
        f"remaining={len(summary.remaining_issues)}"
        + (f" score={score.value} ({score.grade})" if score else ""),
    ]
    if summary.dry_run and summary.previews:
        lines.append(f"dry run: {len(summary.previews)} remedies would be applied")
    if summary.error:
        lines.append(f"error: {summary.error}")

    flagged = summary.escalations + summary.unresolved_failures
    for action in flagged[:_MAX_LINES]:
        lines.append(
            f"- {action.node}: {action.issue.category.value} "
            f"[{action.state.value}] {action.issue.description}"
        )
    if len(flagged) > _MAX_LINES:
        lines.append(f"... and {len(flagged) - _MAX_LINES} more")
    return "\n".join(lines)


class WebhookNotifier:
    """Notifier posting to one or more webhook URLs."""

    name = "webhook"

    def __init__(
        self,
        urls: list[str],
        *,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._urls = list(urls)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s, connect=5.0))
        self._logger = logger.bind(component="webhook_notifier")

    async def notify(self, summary: RunSummary) -> None:
        """Deliver to every URL. Raises if any delivery failed."""
        body: dict[str, Any] = {"text": render_text(summary), "summary": summary.headline()}
        failed: list[str] = []
        for url in self._urls:
            try:
                resp = await self._client.post(url, json=body)
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                failed.append(url)
                self._logger.warning("webhook_delivery_failed", url=_redact(url), error=str(exc))
            else:
                self._logger.debug("webhook_delivered", url=_redact(url), status=resp.status_code)
        if failed:
            raise TransientRemoteError(f"{len(failed)} of {len(self._urls)} webhook deliveries failed")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _redact(url: str) -> str:
    # Webhook URLs embed their secret in the path
    parsed = httpx.URL(url)
    return f"{parsed.scheme}://{parsed.host}/..."
