"""sluice: release-promotion orchestrator.

Moves a code change from an open pull request to a production release
through a fixed sequence of gated stages: lint, unit tests, an ephemeral
namespace with sandbox checks, merge, staging, semantic versioning, a release
PR, and a serialized production deployment.

This package provides:
- PromotionStateMachine: Consumes ChangeEvents and drives Changes through the lifecycle
- GateEvaluator: Runs the checks registered for a stage
- VersioningEngine: Commit classification to semantic release
- EnvironmentManager: Ephemeral namespaces, the production lane, deployments
- PromotionStore: SQLAlchemy persistence of Changes, records and releases
- Schemas: Pydantic models for every entity (sluice.schemas)

Example:
    >>> from sluice import PromotionStateMachine, PromotionStore, load_config
    >>> config = load_config(Path("sluice.yaml"))
    >>> machine = PromotionStateMachine.from_config(config, PromotionStore.from_url(config.database_url))
    >>> machine.handle(ChangeEvent(event_id="e1", type=EventType.PR_OPENED, change_id="PR-1"))

See Also:
    - sluice.machine: Lifecycle and concurrency rules
    - sluice.cli: Command-line entry point
"""

from __future__ import annotations

__version__ = "0.1.0"

from sluice.config import PipelineConfig, load_config, resolve_config
from sluice.environments import EnvironmentManager, NamespaceManager, ProductionLane
from sluice.errors import (
    ConfigurationError,
    ConflictError,
    DeploymentError,
    DeploymentTimeoutError,
    GateFailure,
    InfrastructureError,
    InvalidTransitionError,
    SluiceError,
    VersionConflict,
)
from sluice.gates import GateEvaluator
from sluice.machine import PromotionStateMachine
from sluice.notifications import InMemoryNotificationSink, NotificationSink
from sluice.schemas import (
    Change,
    ChangeEvent,
    EventType,
    GateResult,
    GateStage,
    LifecycleState,
    NotificationRecord,
    PromotionRecord,
    ReleaseDescriptor,
)
from sluice.store import PromotionStore
from sluice.versioning import VersioningEngine

__all__ = [
    "Change",
    "ChangeEvent",
    "ConfigurationError",
    "ConflictError",
    "DeploymentError",
    "DeploymentTimeoutError",
    "EnvironmentManager",
    "EventType",
    "GateEvaluator",
    "GateFailure",
    "GateResult",
    "GateStage",
    "InMemoryNotificationSink",
    "InfrastructureError",
    "InvalidTransitionError",
    "LifecycleState",
    "NamespaceManager",
    "NotificationRecord",
    "NotificationSink",
    "PipelineConfig",
    "ProductionLane",
    "PromotionRecord",
    "PromotionStateMachine",
    "PromotionStore",
    "ReleaseDescriptor",
    "SluiceError",
    "VersionConflict",
    "VersioningEngine",
    "__version__",
    "load_config",
    "resolve_config",
]
