"""Pydantic v2 schemas for sluice.

Key Components:
    Change, CommitRecord, LifecycleState: the Change under promotion
    ChangeEvent, EventType, Actor: inbound events
    GateResult, Finding, GateStage: gate evaluation outcomes
    Namespace, Environment: deployment targets
    ReleaseDescriptor, SemanticVersion: computed releases
    PromotionRecord, NotificationRecord: audit trail and notifications
"""

from __future__ import annotations

from sluice.schemas.change import (
    Change,
    CommitClassification,
    CommitRecord,
    LifecycleState,
)
from sluice.schemas.environment import (
    DeploymentOutcome,
    DeploymentTarget,
    Environment,
    Namespace,
    NamespaceStatus,
)
from sluice.schemas.events import AUTOMATED, Actor, ActorKind, ChangeEvent, EventType
from sluice.schemas.gates import Finding, GateResult, GateStage, Severity
from sluice.schemas.records import (
    NotificationRecord,
    NotificationStatus,
    PromotionRecord,
)
from sluice.schemas.release import (
    ChangelogEntry,
    ReleaseDescriptor,
    ReleaseStatus,
    SemanticVersion,
    VersionBump,
)

__all__ = [
    "AUTOMATED",
    "Actor",
    "ActorKind",
    "Change",
    "ChangeEvent",
    "ChangelogEntry",
    "CommitClassification",
    "CommitRecord",
    "DeploymentOutcome",
    "DeploymentTarget",
    "Environment",
    "EventType",
    "Finding",
    "GateResult",
    "GateStage",
    "LifecycleState",
    "Namespace",
    "NamespaceStatus",
    "NotificationRecord",
    "NotificationStatus",
    "PromotionRecord",
    "ReleaseDescriptor",
    "ReleaseStatus",
    "SemanticVersion",
    "Severity",
    "VersionBump",
]
