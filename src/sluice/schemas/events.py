"""Inbound change-event schemas.

Events are emitted by the Change Event Source (forge webhooks, chat bots,
deployment controllers) and consumed by the promotion state machine. Only the
shape is defined here; wire formats belong to the external collaborators.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Inbound event types.

    Examples:
        >>> EventType("release_pr_merged")
        <EventType.RELEASE_PR_MERGED: 'release_pr_merged'>
    """

    PUSH = "push"
    PR_OPENED = "pr_opened"
    PR_MERGED = "pr_merged"
    PR_CLOSED = "pr_closed"
    CHAT_COMMAND = "chat_command"
    RELEASE_PR_MERGED = "release_pr_merged"
    DEPLOY_RESULT = "deploy_result"


class ActorKind(str, Enum):
    """Who triggered an event or transition."""

    AUTOMATED = "automated"
    CHAT_COMMAND = "chat_command"
    WEBHOOK = "webhook"


class Actor(BaseModel):
    """Originator of an event, recorded on every PromotionRecord.

    Attributes:
        kind: Automated pipeline, chat command or forge webhook.
        identity: User or system identity, when known.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ActorKind = Field(default=ActorKind.AUTOMATED, description="Actor kind")
    identity: str | None = Field(default=None, description="User or system identity")


AUTOMATED = Actor()


class ChangeEvent(BaseModel):
    """A discrete inbound event for a Change.

    Payload keys by type:
        - ``pr_opened``: ``source_branch``, ``target_branch``, ``commits``
        - ``push``: ``commits`` (new commits, appended)
        - ``chat_command``: ``command``, ``user``
        - ``deploy_result``: ``status`` (``success``/``failure``), ``detail``
        - ``pr_merged``, ``pr_closed``, ``release_pr_merged``: no required keys

    Commits are ``{"sha": ..., "message": ..., "classification": ...}``
    mappings; the classification is optional and derived from the message when
    absent.

    Attributes:
        event_id: Unique delivery identifier used for idempotence.
        type: Event type.
        change_id: The Change this event targets.
        payload: Type-specific data.
        actor: Who triggered the event.

    Examples:
        >>> event = ChangeEvent(
        ...     event_id="evt-1",
        ...     type=EventType.PR_MERGED,
        ...     change_id="PR-42",
        ... )
        >>> event.actor.kind
        <ActorKind.AUTOMATED: 'automated'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: str = Field(..., min_length=1, description="Unique delivery identifier")
    type: EventType = Field(..., description="Event type")
    change_id: str = Field(..., min_length=1, description="Target Change identifier")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event data")
    actor: Actor = Field(default=AUTOMATED, description="Who triggered the event")

    def derive(self, suffix: str, type: EventType) -> ChangeEvent:
        """Synthesize a follow-up event with a deterministic derived id."""
        return ChangeEvent(
            event_id=f"{self.event_id}:{suffix}",
            type=type,
            change_id=self.change_id,
            payload={},
            actor=self.actor,
        )


__all__ = [
    "AUTOMATED",
    "Actor",
    "ActorKind",
    "ChangeEvent",
    "EventType",
]
