"""Environment manager.

Facade over the namespace manager, the production lane and the deployer used
by the promotion state machine.

Key Components:
    Deployer: Protocol for deploying to and rolling back shared environments
    NullDeployer: Confirms every deployment immediately
    CommandDeployer: Runs configured deploy/rollback commands
    EnvironmentManager: provision/teardown, lane acquire/release, deploy, rollback

Deployment confirmation:
    ``Deployer.deploy`` returns a DeploymentOutcome when it knows the result
    synchronously, or None when confirmation will arrive later as a
    ``deploy_result`` event.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

import structlog

from sluice.commands import run_command, run_or_raise, tail
from sluice.config import EnvironmentCommands, PipelineConfig
from sluice.environments.lane import ProductionLane
from sluice.environments.namespaces import (
    CommandProvisioner,
    NamespaceManager,
    NullProvisioner,
    Provisioner,
)
from sluice.resilience import RetryPolicy
from sluice.schemas.environment import (
    DeploymentOutcome,
    DeploymentTarget,
    Environment,
    Namespace,
)
from sluice.store import PromotionStore
from sluice.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


class Deployer(Protocol):
    """Deploys artifacts to shared environments."""

    def deploy(self, target: DeploymentTarget) -> DeploymentOutcome | None: ...

    def rollback(self, environment: Environment, to_version: str | None) -> None: ...


class NullDeployer:
    """Deployer that only logs and reports success."""

    def deploy(self, target: DeploymentTarget) -> DeploymentOutcome | None:
        logger.info(
            "deploy_skipped",
            environment=target.environment.value,
            change_id=target.change_id,
            artifact_ref=target.artifact_ref,
        )
        return DeploymentOutcome(success=True, detail="no deployer configured")

    def rollback(self, environment: Environment, to_version: str | None) -> None:
        logger.info("rollback_skipped", environment=environment.value, to_version=to_version)


class CommandDeployer:
    """Runs the configured deploy and rollback commands.

    Commands may reference ``${CHANGE_ID}``, ``${ARTIFACT_REF}``,
    ``${VERSION}`` and ``${ENVIRONMENT}``. A production environment without a
    deploy command expects its confirmation as a ``deploy_result`` event.
    """

    def __init__(
        self,
        commands: Mapping[Environment, EnvironmentCommands],
        *,
        timeout: float | None = None,
    ) -> None:
        self.commands = dict(commands)
        self.timeout = timeout

    def deploy(self, target: DeploymentTarget) -> DeploymentOutcome | None:
        command = self.commands.get(target.environment, EnvironmentCommands()).deploy_command
        if command is None:
            if target.environment is Environment.PRODUCTION:
                return None
            return DeploymentOutcome(success=True, detail="no deploy command")

        result = run_command(
            command,
            {
                "CHANGE_ID": target.change_id,
                "ARTIFACT_REF": target.artifact_ref,
                "VERSION": target.version or "",
                "ENVIRONMENT": target.environment.value,
            },
            timeout=self.timeout,
        )
        if result.returncode == 0:
            return DeploymentOutcome(success=True, detail=tail(result.stdout))
        return DeploymentOutcome(
            success=False,
            detail=f"exit code {result.returncode}: {tail(result.stderr) or tail(result.stdout)}",
        )

    def rollback(self, environment: Environment, to_version: str | None) -> None:
        command = self.commands.get(environment, EnvironmentCommands()).rollback_command
        if command is None:
            logger.warning("rollback_not_configured", environment=environment.value)
            return
        run_or_raise(
            command,
            {"VERSION": to_version or "", "ENVIRONMENT": environment.value},
            component=f"{environment.value} rollback",
            timeout=self.timeout,
        )


class EnvironmentManager:
    """Namespace, lane and deployment operations for the state machine.

    Args:
        namespaces: Ephemeral namespace manager.
        deployer: Deployer for staging and production.
        lane: Production lane (defaults to one persisted in the namespace store).
        retry_policy: Applied to deployments that cannot reach the platform.
    """

    def __init__(
        self,
        namespaces: NamespaceManager,
        deployer: Deployer | None = None,
        lane: ProductionLane | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.namespaces = namespaces
        self.deployer = deployer or NullDeployer()
        self.lane = lane or ProductionLane(namespaces.store)
        self._retry = retry_policy or RetryPolicy()
        self._log = logger.bind(component="environment_manager")

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        store: PromotionStore,
        *,
        provisioner: Provisioner | None = None,
        deployer: Deployer | None = None,
        lane: ProductionLane | None = None,
    ) -> EnvironmentManager:
        """Wire command-backed collaborators from configuration."""
        retry = RetryPolicy(config.retry)
        if provisioner is None:
            ns = config.namespaces
            provisioner = (
                CommandProvisioner(ns.create_command, ns.destroy_command)
                if ns.create_command or ns.destroy_command
                else NullProvisioner()
            )
        if deployer is None:
            deployer = (
                CommandDeployer(config.environments) if config.environments else NullDeployer()
            )
        if lane is None:
            lane = ProductionLane(store, poll_interval=config.timeouts.poll_interval_seconds)
        namespaces = NamespaceManager(
            store,
            provisioner,
            config.namespaces,
            retry_policy=retry,
        )
        return cls(namespaces, deployer, lane, retry_policy=retry)

    # -- Namespaces ----------------------------------------------------------

    def namespace_key(self, change_id: str) -> str:
        return self.namespaces.key_for(change_id)

    def provision(self, key: str, change_id: str) -> Namespace:
        return self.namespaces.provision(key, change_id)

    def teardown(self, key: str) -> Namespace | None:
        return self.namespaces.teardown(key)

    # -- Production lane -----------------------------------------------------

    def acquire_production_lane(self, release_id: str, timeout: float | None = None) -> None:
        self.lane.acquire(release_id, timeout)

    def release_production_lane(self, release_id: str) -> bool:
        return self.lane.release(release_id)

    # -- Deployment ----------------------------------------------------------

    def deploy(
        self,
        environment: Environment,
        target: DeploymentTarget,
    ) -> DeploymentOutcome | None:
        """Deploy ``target`` to ``environment``.

        Returns:
            The outcome, or None if confirmation arrives asynchronously.

        Raises:
            InfrastructureError: If the platform cannot be reached after retries.
        """
        if target.environment is not environment:
            target = target.model_copy(update={"environment": environment})

        self._log.info(
            "deployment_started",
            environment=environment.value,
            change_id=target.change_id,
            artifact_ref=target.artifact_ref,
            version=target.version,
        )
        with create_span(
            "sluice.deploy",
            attributes={
                "sluice.environment": environment.value,
                "sluice.change_id": target.change_id,
                "sluice.version": target.version,
            },
        ):
            outcome = self._retry.call(
                lambda: self.deployer.deploy(target),
                operation=f"deploy.{environment.value}",
            )

        if outcome is None:
            self._log.info("deployment_awaiting_confirmation", environment=environment.value)
        elif outcome.success:
            self._log.info("deployment_succeeded", environment=environment.value)
        else:
            self._log.warning(
                "deployment_failed",
                environment=environment.value,
                detail=outcome.detail,
            )
        return outcome

    def rollback(self, environment: Environment, to_version: str | None) -> None:
        """Request a rollback of ``environment`` to ``to_version``."""
        self._log.warning(
            "rollback_requested",
            environment=environment.value,
            to_version=to_version,
        )
        self._retry.call(
            lambda: self.deployer.rollback(environment, to_version),
            operation=f"rollback.{environment.value}",
        )


__all__ = [
    "CommandDeployer",
    "CommandProvisioner",
    "Deployer",
    "EnvironmentManager",
    "NamespaceManager",
    "NullDeployer",
    "NullProvisioner",
    "ProductionLane",
    "Provisioner",
]
