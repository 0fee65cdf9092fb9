"""Environment and namespace schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Environment(str, Enum):
    """Deployment environments.

    Sandbox instances are ephemeral and keyed by Change id. Production is a
    singleton target guarded by the production lane.
    """

    SANDBOX = "sandbox"
    STAGING = "staging"
    PRODUCTION = "production"


class NamespaceStatus(str, Enum):
    """Lifecycle of an ephemeral namespace."""

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    TEARING_DOWN = "tearing-down"
    DESTROYED = "destroyed"

    @property
    def is_live(self) -> bool:
        """True while the namespace holds resources."""
        return self is not NamespaceStatus.DESTROYED


class Namespace(BaseModel):
    """An isolated deployment target bound 1:1 to an open Change.

    Attributes:
        key: Deterministic key derived from the Change id.
        change_id: Owning Change.
        route: Host binding (``{key}.{base_domain}``).
        created_at: When provisioning started.
        status: Namespace lifecycle status.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    key: str = Field(..., min_length=1, max_length=63, description="Namespace key")
    change_id: str = Field(..., description="Owning Change")
    route: str = Field(..., description="Host binding")
    created_at: datetime = Field(..., description="Provisioning start time")
    status: NamespaceStatus = Field(
        default=NamespaceStatus.PROVISIONING,
        description="Namespace status",
    )


class DeploymentTarget(BaseModel):
    """What to deploy where, handed to a Deployer.

    Attributes:
        environment: Target environment.
        change_id: Change being deployed.
        artifact_ref: Artifact reference (commit sha or release version).
        version: Release version, for production deployments.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: Environment
    change_id: str
    artifact_ref: str
    version: str | None = None


class DeploymentOutcome(BaseModel):
    """Deployment confirmation.

    Produced synchronously by a Deployer, or built from a ``deploy_result``
    event when confirmation arrives asynchronously.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    detail: str = ""
    event_id: str | None = None


__all__ = [
    "DeploymentOutcome",
    "DeploymentTarget",
    "Environment",
    "Namespace",
    "NamespaceStatus",
]
