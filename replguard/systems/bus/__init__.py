"""
ReplGuard — Run Event Bus

Typed progress and telemetry events shared by every engine component.
"""

from replguard.systems.bus.event_bus import EventCallback, RunEventBus
from replguard.systems.bus.types import RunEvent, RunEventType

__all__ = ["EventCallback", "RunEvent", "RunEventBus", "RunEventType"]
