"""Exception hierarchy for sluice.

All exceptions inherit from SluiceError, the base exception class. The
promotion state machine catches these at its boundary and converts them into
a ``Failed`` transition plus a failure notification; the CLI maps them to
exit codes.

Exception Hierarchy:
    SluiceError (base)
    ├── GateFailure              # A check completed and failed
    ├── InfrastructureError      # A dependency could not be reached
    │   └── DeploymentTimeoutError  # No deployment confirmation in time
    ├── DeploymentError          # A deployment completed and reported failure
    ├── ConflictError            # Namespace or lane already held
    ├── VersionConflict          # Computed version collides with a released one
    ├── InvalidTransitionError   # Transition not allowed from current state
    └── ConfigurationError       # Pipeline configuration is invalid

Exit Codes:
    0 - Success
    1 - General error (SluiceError)
    2 - Configuration error (ConfigurationError)
    5 - Infrastructure error (InfrastructureError, DeploymentTimeoutError)
    6 - Deployment failure (DeploymentError)
    7 - Conflict (ConflictError)
    8 - Gate failure (GateFailure)
    9 - Invalid transition (InvalidTransitionError)
    10 - Version conflict (VersionConflict)

Example:
    >>> from sluice.errors import VersionConflict
    >>> raise VersionConflict("1.2.3", "1.2.3")
    Traceback (most recent call last):
        ...
    VersionConflict: Release version 1.2.3 does not advance past released version 1.2.3...
"""

from __future__ import annotations


class SluiceError(Exception):
    """Base exception for all sluice errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class GateFailure(SluiceError):
    """Raised when a gate stage completed and at least one blocking check failed.

    Recoverable: push a fix and the Change re-enters the pipeline from the
    owning state.

    Attributes:
        change_id: The Change the gate ran against.
        stage: The gate stage name.
        details: First blocking diagnostic.
        exit_code: CLI exit code (8).
    """

    exit_code: int = 8

    def __init__(self, change_id: str, stage: str, details: str) -> None:
        """Initialize GateFailure.

        Args:
            change_id: The Change the gate ran against.
            stage: The gate stage name.
            details: First blocking diagnostic.
        """
        self.change_id = change_id
        self.stage = stage
        self.details = details
        super().__init__(f"Gate '{stage}' failed for {change_id}: {details}")


class InfrastructureError(SluiceError):
    """Raised when a dependency (runner, cluster, registry) could not be reached.

    Retried with backoff up to the configured bound before it is surfaced as a
    failure.

    Attributes:
        component: The dependency that failed.
        reason: Description of the failure.
        exit_code: CLI exit code (5).
    """

    exit_code: int = 5

    def __init__(self, component: str, reason: str) -> None:
        """Initialize InfrastructureError.

        Args:
            component: The dependency that failed.
            reason: Description of the failure.
        """
        self.component = component
        self.reason = reason
        super().__init__(f"{component} unavailable: {reason}")


class DeploymentTimeoutError(InfrastructureError):
    """Raised when a deployment confirmation does not arrive within the window.

    Attributes:
        environment: Target environment of the deployment.
        timeout_seconds: How long the confirmation was awaited.
    """

    def __init__(self, environment: str, timeout_seconds: float) -> None:
        self.environment = environment
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{environment} deployment",
            f"no confirmation within {timeout_seconds}s",
        )


class DeploymentError(SluiceError):
    """Raised when a deployment completed and reported failure.

    Attributes:
        environment: Target environment.
        detail: Failure detail reported by the deployer or controller.
        exit_code: CLI exit code (6).
    """

    exit_code: int = 6

    def __init__(self, environment: str, detail: str) -> None:
        self.environment = environment
        self.detail = detail
        super().__init__(f"{environment} deployment failed: {detail}")


class ConflictError(SluiceError):
    """Raised when a namespace key or the production lane is already held.

    Conflicts are resolved by reuse or queuing, never by silent overwrite.

    Attributes:
        resource: The contended resource (namespace key or lane name).
        holder: Current holder of the resource.
        exit_code: CLI exit code (7).

    Example:
        >>> raise ConflictError("pr-feature-a-1b2c3d4e", "feature/b")
        Traceback (most recent call last):
            ...
        ConflictError: pr-feature-a-1b2c3d4e is held by feature/b
    """

    exit_code: int = 7

    def __init__(self, resource: str, holder: str, reason: str | None = None) -> None:
        """Initialize ConflictError.

        Args:
            resource: The contended resource.
            holder: Current holder of the resource.
            reason: Optional extra context.
        """
        self.resource = resource
        self.holder = holder
        self.reason = reason

        msg = f"{resource} is held by {holder}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class VersionConflict(SluiceError):
    """Raised when a release version does not advance past the released version.

    Fatal: requires manual intervention and is never auto-resolved.

    Attributes:
        version: The offending release version.
        released_version: The latest released version.
        exit_code: CLI exit code (10).
    """

    exit_code: int = 10

    def __init__(self, version: str, released_version: str) -> None:
        """Initialize VersionConflict.

        Args:
            version: The offending release version.
            released_version: The latest released version.
        """
        self.version = version
        self.released_version = released_version
        super().__init__(
            f"Release version {version} does not advance past released version "
            f"{released_version}. Manual intervention required."
        )


class InvalidTransitionError(SluiceError):
    """Raised when a lifecycle transition is not allowed.

    Attributes:
        change_id: The Change being transitioned.
        from_state: Current lifecycle state.
        to_state: Requested lifecycle state.
        exit_code: CLI exit code (9).
    """

    exit_code: int = 9

    def __init__(self, change_id: str, from_state: str, to_state: str) -> None:
        """Initialize InvalidTransitionError.

        Args:
            change_id: The Change being transitioned.
            from_state: Current lifecycle state.
            to_state: Requested lifecycle state.
        """
        self.change_id = change_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition for {change_id}: {from_state} -> {to_state}"
        )


class ConfigurationError(SluiceError):
    """Raised when the pipeline configuration cannot be loaded or is invalid.

    Attributes:
        exit_code: CLI exit code (2).
    """

    exit_code: int = 2


__all__ = [
    "ConfigurationError",
    "ConflictError",
    "DeploymentError",
    "DeploymentTimeoutError",
    "GateFailure",
    "InfrastructureError",
    "InvalidTransitionError",
    "SluiceError",
    "VersionConflict",
]
