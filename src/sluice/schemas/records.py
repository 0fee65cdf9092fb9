"""Audit and notification record schemas.

PromotionRecord is the append-only audit entry written for every lifecycle
transition; it is never mutated after creation and doubles as the duplicate
event index. NotificationRecord is the structured payload handed to the
Notification Dispatcher, which owns rendering and delivery.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from sluice.schemas.change import LifecycleState
from sluice.schemas.events import AUTOMATED, Actor, EventType


class PromotionRecord(BaseModel):
    """Append-only audit entry for one lifecycle transition.

    Attributes:
        record_id: Unique record identifier.
        change_id: Change that transitioned.
        from_state: State before the transition.
        to_state: State after the transition.
        event_id: Inbound (or synthesized) event that triggered the transition.
        event_type: Type of the triggering event.
        actor: Automated pipeline or chat command originator.
        fast_track: True when the transition belongs to a fast-track run.
        detail: Diagnostic or context for the transition.
        timestamp: When the transition was committed (UTC).

    Examples:
        >>> record = PromotionRecord(
        ...     change_id="PR-42",
        ...     from_state=LifecycleState.OPENED,
        ...     to_state=LifecycleState.LINTED,
        ...     event_id="evt-1",
        ...     event_type=EventType.PUSH,
        ...     timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
        ... )
        >>> record.actor.kind.value
        'automated'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    record_id: UUID = Field(default_factory=uuid4, description="Record identifier")
    change_id: str = Field(..., description="Change that transitioned")
    from_state: LifecycleState | None = Field(
        default=None,
        description="State before the transition (None on creation)",
    )
    to_state: LifecycleState = Field(..., description="State after the transition")
    event_id: str = Field(..., description="Triggering event id")
    event_type: EventType = Field(..., description="Triggering event type")
    actor: Actor = Field(default=AUTOMATED, description="Originator")
    fast_track: bool = Field(default=False, description="Part of a fast-track run")
    detail: str | None = Field(default=None, description="Diagnostic or context")
    timestamp: datetime = Field(..., description="Commit time (UTC)")

    def to_log_dict(self) -> dict[str, Any]:
        """Flatten the record for structured logging."""
        return {
            "record_id": str(self.record_id),
            "change_id": self.change_id,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "actor": self.actor.kind.value,
            "actor_identity": self.actor.identity,
            "fast_track": self.fast_track,
            "detail": self.detail,
        }


class NotificationStatus(str, Enum):
    """Status reported in a notification record."""

    STARTED = "started"
    SUCCESS = "success"
    FAILURE = "failure"


class NotificationRecord(BaseModel):
    """Structured lifecycle notification for the Notification Dispatcher.

    Attributes:
        change_id: Change the notification is about.
        stage: Pipeline stage or lifecycle step (e.g. ``lint``, ``production``, ``fast_track``).
        status: started, success or failure.
        detail: Diagnostic or context.
        fast_track: True for fast-track runs, so operators can tell the paths apart.
        timestamp: When the notification was emitted.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    change_id: str
    stage: str
    status: NotificationStatus
    detail: str = ""
    fast_track: bool = False
    timestamp: datetime


__all__ = [
    "NotificationRecord",
    "NotificationStatus",
    "PromotionRecord",
]
