"""
ReplGuard — Run Event Types
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field

from replguard.primitives.common import FrozenModel, new_id, utc_now


class RunEventType(enum.StrEnum):
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_CANCELLED = "run_cancelled"
    NODE_SKIPPED = "node_skipped"
    NODE_COLLECTED = "node_collected"
    COLLECTION_FAILED = "collection_failed"
    RETRY_ATTEMPT = "retry_attempt"
    ISSUE_DETECTED = "issue_detected"
    HEALING_DECIDED = "healing_decided"
    HEALING_APPLIED = "healing_applied"
    HEALING_COMMITTED = "healing_committed"
    HEALING_ROLLED_BACK = "healing_rolled_back"
    HEALING_FAILED = "healing_failed"
    HEALING_ESCALATED = "healing_escalated"


class RunEvent(FrozenModel):
    """A typed event emitted by any engine component during a run."""

    id: str = Field(default_factory=new_id)
    event_type: RunEventType
    timestamp: datetime = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = "orchestrator"
