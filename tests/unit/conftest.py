"""Unit test fixtures for sluice.

Unit tests run without external services: gate checks, the provisioner and
the deployer are in-process fakes that record their calls, and the store is
in-memory SQLite.

For shared fixtures across all test tiers, see ../conftest.py.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

import pytest

from sluice.config import PipelineConfig, TimeoutConfig
from sluice.environments import EnvironmentManager, NamespaceManager, ProductionLane
from sluice.errors import InfrastructureError
from sluice.gates import CallableCheck, GateEvaluator, GateTarget
from sluice.machine import PromotionStateMachine
from sluice.notifications import InMemoryNotificationSink
from sluice.resilience import RetryPolicy
from sluice.schemas import (
    ChangeEvent,
    DeploymentOutcome,
    DeploymentTarget,
    Environment,
    EventType,
    GateStage,
    Namespace,
    PromotionRecord,
)
from sluice.store import PromotionStore


class RecordingProvisioner:
    """Provisioner fake recording created and destroyed keys."""

    def __init__(self) -> None:
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.fail_destroy = False

    def create(self, namespace: Namespace) -> None:
        self.created.append(namespace.key)

    def destroy(self, namespace: Namespace) -> None:
        if self.fail_destroy:
            raise InfrastructureError("namespace provisioner", "cluster unreachable")
        self.destroyed.append(namespace.key)


class RecordingDeployer:
    """Deployer fake returning a configurable outcome per environment.

    An outcome of None means confirmation arrives as a ``deploy_result`` event.
    """

    def __init__(self) -> None:
        self.deploys: list[DeploymentTarget] = []
        self.rollbacks: list[tuple[Environment, str | None]] = []
        self.outcomes: dict[Environment, DeploymentOutcome | None] = {
            Environment.STAGING: DeploymentOutcome(success=True),
            Environment.PRODUCTION: DeploymentOutcome(success=True),
        }

    def deploy(self, target: DeploymentTarget) -> DeploymentOutcome | None:
        self.deploys.append(target)
        return self.outcomes[target.environment]

    def rollback(self, environment: Environment, to_version: str | None) -> None:
        self.rollbacks.append((environment, to_version))

    def deployed(self, environment: Environment) -> list[str]:
        return [t.change_id for t in self.deploys if t.environment is environment]


class GateScript:
    """Scripted verdict per stage plus a log of gate calls.

    ``hooks`` run inside the check before the verdict is returned, so a test
    can block a gate while it acts on the machine from another thread.
    """

    def __init__(self) -> None:
        self.verdicts: dict[GateStage, bool] = {stage: True for stage in GateStage}
        self.hooks: dict[GateStage, Callable[[GateTarget], None]] = {}
        self.calls: list[tuple[GateStage, str]] = []

    def check(self, stage: GateStage) -> Callable[[GateTarget], bool]:
        def run(target: GateTarget) -> bool:
            self.calls.append((stage, target.change_id))
            hook = self.hooks.get(stage)
            if hook is not None:
                hook(target)
            return self.verdicts[stage]

        return run

    def calls_for(self, change_id: str) -> list[GateStage]:
        return [stage for stage, cid in self.calls if cid == change_id]


@dataclass
class Harness:
    """State machine wired to recording fakes."""

    machine: PromotionStateMachine
    store: PromotionStore
    gates: GateScript
    evaluator: GateEvaluator
    provisioner: RecordingProvisioner
    deployer: RecordingDeployer
    sink: InMemoryNotificationSink
    lane: ProductionLane
    _ids: Any = field(default_factory=lambda: itertools.count(1))

    def event(self, type: EventType, change_id: str, **payload: Any) -> ChangeEvent:
        return ChangeEvent(
            event_id=f"{change_id}-{type.value}-{next(self._ids)}",
            type=type,
            change_id=change_id,
            payload=payload,
        )

    def send(self, type: EventType, change_id: str, **payload: Any) -> list[PromotionRecord]:
        return self.machine.handle(self.event(type, change_id, **payload))

    def open(self, change_id: str, *messages: str) -> list[PromotionRecord]:
        commits = [
            {"sha": f"{change_id.lower()}-{i}", "message": m}
            for i, m in enumerate(messages or ("feat: initial",))
        ]
        return self.send(EventType.PR_OPENED, change_id, commits=commits, source_branch=change_id)

    def to_release_pending(self, change_id: str, *messages: str) -> None:
        self.open(change_id, *messages)
        self.send(EventType.PR_MERGED, change_id)

    def state(self, change_id: str) -> Any:
        change = self.store.get_change(change_id)
        return change.state if change else None


@pytest.fixture
def gate_script() -> GateScript:
    return GateScript()


@pytest.fixture
def evaluator(gate_script: GateScript, fast_retry: RetryPolicy) -> Iterator[GateEvaluator]:
    """One scripted check per stage; the production check verifies signatures."""
    evaluator = GateEvaluator(retry_policy=fast_retry, check_timeout_seconds=5.0)
    for stage in GateStage:
        evaluator.register(
            stage,
            CallableCheck(
                f"{stage.value}-check",
                gate_script.check(stage),
                is_signature=stage is GateStage.PRODUCTION,
            ),
        )
    yield evaluator
    evaluator.close()


@pytest.fixture
def make_harness(
    store: PromotionStore,
    gate_script: GateScript,
    evaluator: GateEvaluator,
    fast_retry: RetryPolicy,
    clock: Callable[..., Any],
) -> Callable[..., Harness]:
    """Factory building a Harness; keyword arguments override TimeoutConfig."""

    def _make(
        *,
        store_override: PromotionStore | None = None,
        **timeouts: float,
    ) -> Harness:
        target_store = store_override or store
        provisioner = RecordingProvisioner()
        deployer = RecordingDeployer()
        sink = InMemoryNotificationSink()
        config = PipelineConfig(
            timeouts=TimeoutConfig(
                **{
                    "deployment_confirmation_seconds": 5.0,
                    "lane_wait_seconds": 10.0,
                    "poll_interval_seconds": 0.02,
                    **timeouts,
                }
            )
        )
        lane = ProductionLane(target_store, poll_interval=config.timeouts.poll_interval_seconds)
        environments = EnvironmentManager(
            NamespaceManager(target_store, provisioner, config.namespaces, retry_policy=fast_retry),
            deployer,
            lane,
            retry_policy=fast_retry,
        )
        machine = PromotionStateMachine(
            target_store,
            evaluator,
            environments,
            notifier=sink,
            config=config,
            clock=clock,
        )
        return Harness(
            machine=machine,
            store=target_store,
            gates=gate_script,
            evaluator=evaluator,
            provisioner=provisioner,
            deployer=deployer,
            sink=sink,
            lane=lane,
        )

    return _make


@pytest.fixture
def harness(make_harness: Callable[..., Harness]) -> Harness:
    return make_harness()
