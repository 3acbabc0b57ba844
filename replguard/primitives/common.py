"""
ReplGuard — Common Primitives

Shared base model and utilities used across all systems.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


# ─── Base Models ──────────────────────────────────────────────────


class ReplGuardModel(BaseModel):
    """Base model for all ReplGuard data contracts."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class FrozenModel(ReplGuardModel):
    """Read-only contract: never mutated after creation."""

    model_config = {"populate_by_name": True, "from_attributes": True, "frozen": True}
