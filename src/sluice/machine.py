"""Promotion state machine.

Consumes ChangeEvents and drives each Change through its lifecycle:

    Opened -> Linted -> Tested -> EphemeralDeployed -> MergeReady -> Merged
    -> StagingDeployed -> ReleasePending -> ReleaseMerged
    -> ProductionDeploying -> Released

with ``Failed`` and ``Closed`` as alternates. The machine invokes the gate
evaluator, the versioning engine and the environment manager at the right
transitions, persists every transition as a PromotionRecord, and emits a
NotificationRecord for every start, success and failure.

Concurrency:
    - Events for one Change are serialized by a per-Change lock; Changes
      progress independently.
    - The production lane wait and the deployment confirmation wait run
      outside the per-Change lock. They are the only blocking waits.
    - A ``pr_closed`` event raises a cancellation flag before taking the
      lock, so a running pre-merge or staging pipeline stops at its next
      step and issues no further gate calls.

Idempotence:
    An event whose id (or a fast-track id derived from it) already produced a
    PromotionRecord is a no-op.

Error boundary:
    Errors raised by gates, versioning or environments are caught here and
    turned into a ``Failed`` transition plus a failure notification; they
    never escape :meth:`PromotionStateMachine.handle`.

Example:
    >>> machine = PromotionStateMachine(store, gates, environments, notifier=sink)
    >>> machine.handle(ChangeEvent(event_id="e1", type=EventType.PR_OPENED, change_id="PR-7"))
    [PromotionRecord(...), ...]
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from sluice.config import PipelineConfig
from sluice.environments.manager import Deployer, EnvironmentManager
from sluice.environments.namespaces import Provisioner
from sluice.errors import (
    ConfigurationError,
    DeploymentError,
    DeploymentTimeoutError,
    GateFailure,
    InvalidTransitionError,
    SluiceError,
    VersionConflict,
)
from sluice.gates.checks import GateTarget
from sluice.gates.evaluator import GateEvaluator
from sluice.notifications import LogNotificationSink, NotificationSink, dispatch
from sluice.schemas.change import Change, CommitRecord, LifecycleState
from sluice.schemas.environment import DeploymentOutcome, DeploymentTarget, Environment
from sluice.schemas.events import AUTOMATED, ChangeEvent, EventType
from sluice.schemas.gates import GateResult, GateStage
from sluice.schemas.records import NotificationRecord, NotificationStatus, PromotionRecord
from sluice.schemas.release import ReleaseDescriptor, ReleaseStatus
from sluice.store import PromotionStore
from sluice.telemetry.tracing import create_span, sanitize_error_message
from sluice.transitions import require_transition
from sluice.versioning import VersioningEngine, classify_commit

logger = structlog.get_logger(__name__)

S = LifecycleState
N = NotificationStatus

FAST_TRACK_STAGE = "fast_track"
FAST_TRACK_FAILED = "Fast-Track Failed"

MERGE_SUFFIX = "merge"
RELEASE_MERGE_SUFFIX = "release-merge"

FAST_TRACK_STATES = frozenset(
    {
        S.OPENED,
        S.LINTED,
        S.TESTED,
        S.EPHEMERAL_DEPLOYED,
        S.MERGE_READY,
        S.MERGED,
        S.STAGING_DEPLOYED,
        S.RELEASE_PENDING,
    }
)
RESUMABLE_STATES = (S.RELEASE_MERGED, S.PRODUCTION_DEPLOYING)

_SUCCESS_STATUSES = frozenset({"success", "succeeded", "ok"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_commits(raw: Iterable[Any]) -> list[CommitRecord]:
    """Build CommitRecords from event payload entries.

    Entries without a classification are classified from their message.
    """
    commits: list[CommitRecord] = []
    for item in raw:
        if isinstance(item, CommitRecord):
            commits.append(item)
            continue
        data = dict(item)
        if not data.get("classification"):
            data["classification"] = classify_commit(data.get("message", ""))
        commits.append(CommitRecord.model_validate(data))
    return commits


class PipelineCancelled(Exception):
    """Raised inside a pipeline run once its Change has been closed."""


class ConfirmationBoard:
    """Rendezvous between production promotions and ``deploy_result`` events.

    Slots live in the PromotionStore, so a ``deploy_result`` handled by any
    process sharing the database reaches the waiting promotion. A slot is
    opened before the deployment starts, so a confirmation that arrives before
    the waiter is still delivered. Unknown and duplicate confirmations are
    refused.
    """

    def __init__(self, store: PromotionStore, *, poll_interval: float = 0.5) -> None:
        self._store = store
        self._poll_interval = poll_interval
        self._delivered = threading.Condition()

    def open(self, change_id: str) -> None:
        self._store.open_confirmation(change_id)

    def deliver(self, change_id: str, outcome: DeploymentOutcome) -> bool:
        if not self._store.deliver_confirmation(change_id, outcome):
            return False
        with self._delivered:
            self._delivered.notify_all()
        return True

    def wait(self, change_id: str, timeout: float | None) -> DeploymentOutcome | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            outcome = self._store.confirmation_outcome(change_id)
            if outcome is not None:
                return outcome
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return None
            pause = self._poll_interval
            if remaining is not None:
                pause = min(pause, remaining)
            with self._delivered:
                self._delivered.wait(pause)

    def close(self, change_id: str) -> None:
        self._store.close_confirmation(change_id)

    def pending(self) -> list[str]:
        return self._store.awaiting_confirmation()


@dataclass
class _Run:
    """Mutable context of one handled event."""

    event: ChangeEvent
    records: list[PromotionRecord] = field(default_factory=list)
    fast_track: bool = False
    stage: str = "event"
    current: ChangeEvent | None = None
    production: bool = False

    def __post_init__(self) -> None:
        if self.current is None:
            self.current = self.event

    @property
    def change_id(self) -> str:
        return self.event.change_id


class PromotionStateMachine:
    """Drives Changes through the promotion lifecycle.

    Args:
        store: Persistence for Changes, PromotionRecords and releases.
        gates: Gate evaluator; the production stage must register a
            signature-verification check.
        environments: Namespace, lane and deployment operations.
        versioning: Versioning engine (defaults to the configured initial version).
        notifier: Notification sink (defaults to the structured log).
        config: Pipeline configuration (timeouts and chat command words).
        clock: Time source for records and notifications.

    Raises:
        ConfigurationError: If the production gate has no signature check.
    """

    def __init__(
        self,
        store: PromotionStore,
        gates: GateEvaluator,
        environments: EnvironmentManager,
        *,
        versioning: VersioningEngine | None = None,
        notifier: NotificationSink | None = None,
        config: PipelineConfig | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if not gates.has_signature_check(GateStage.PRODUCTION):
            raise ConfigurationError(
                "The production gate must register a signature-verification check"
            )
        self._config = config or PipelineConfig()
        self._store = store
        self._gates = gates
        self._environments = environments
        self._versioning = versioning or VersioningEngine(self._config.initial_version)
        self._notifier = notifier or LogNotificationSink()
        self._clock = clock

        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()
        self._cancelled: set[str] = set()
        self._release_lock = threading.Lock()
        self._confirmations = ConfirmationBoard(
            store, poll_interval=self._config.timeouts.poll_interval_seconds
        )
        self._log = logger.bind(component="promotion_state_machine")

        self._handlers: dict[EventType, Callable[[_Run], None]] = {
            EventType.PR_OPENED: self._on_pr_opened,
            EventType.PUSH: self._on_push,
            EventType.PR_MERGED: self._on_pr_merged,
            EventType.PR_CLOSED: self._on_pr_closed,
            EventType.CHAT_COMMAND: self._on_chat_command,
            EventType.RELEASE_PR_MERGED: self._on_release_pr_merged,
        }

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        store: PromotionStore,
        *,
        notifier: NotificationSink | None = None,
        provisioner: Provisioner | None = None,
        deployer: Deployer | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> PromotionStateMachine:
        """Wire a machine from configuration."""
        return cls(
            store,
            GateEvaluator.from_config(config),
            EnvironmentManager.from_config(
                config, store, provisioner=provisioner, deployer=deployer
            ),
            notifier=notifier,
            config=config,
            clock=clock,
        )

    def close(self) -> None:
        """Release the gate evaluator's workers. The store is left open."""
        self._gates.close()

    # -- Queries -------------------------------------------------------------

    def get_change(self, change_id: str) -> Change | None:
        return self._store.get_change(change_id)

    def list_changes(self, states: Iterable[LifecycleState] | None = None) -> list[Change]:
        return self._store.list_changes(states)

    def history(self, change_id: str) -> list[PromotionRecord]:
        """Audit trail of a Change in commit order."""
        return self._store.records_for(change_id)

    def cancellation_requested(self, change_id: str) -> bool:
        with self._guard:
            return change_id in self._cancelled

    def awaiting_confirmation(self) -> list[str]:
        """Changes whose production deployment awaits a ``deploy_result``."""
        return self._confirmations.pending()

    # -- Event handling ------------------------------------------------------

    def handle(self, event: ChangeEvent) -> list[PromotionRecord]:
        """Apply one event and return the PromotionRecords it produced.

        Blocks while a triggered production promotion waits for the lane and
        for deployment confirmation.
        """
        log = self._log.bind(
            change_id=event.change_id,
            event_id=event.event_id,
            event_type=event.type.value,
        )
        with create_span(
            "sluice.handle",
            attributes={
                "sluice.change_id": event.change_id,
                "sluice.event_id": event.event_id,
                "sluice.event_type": event.type.value,
            },
        ):
            if event.type is EventType.DEPLOY_RESULT:
                self._on_deploy_result(event)
                return []
            if self._already_processed(event):
                log.info("duplicate_event_ignored")
                return []

            run = _Run(event=event)
            closing = event.type is EventType.PR_CLOSED
            if closing:
                self._request_cancel(event.change_id)
            try:
                with self._lock_for(event.change_id):
                    if self._already_processed(event):
                        log.info("duplicate_event_ignored")
                        return []
                    log.info("event_received")
                    self._apply(run)
            finally:
                if closing:
                    self._clear_cancel(event.change_id)

            if run.production:
                self._promote_production(run)
            return run.records

    def resume(self) -> list[PromotionRecord]:
        """Drive Changes left in ReleaseMerged or ProductionDeploying.

        Called after a restart; each promotion re-queues for the production
        lane in id order.
        """
        records: list[PromotionRecord] = []
        for change in self._store.list_changes(RESUMABLE_STATES):
            history = self._store.records_for(change.change_id)
            last = history[-1] if history else None
            event = ChangeEvent(
                event_id=last.event_id if last else f"resume:{change.change_id}",
                type=last.event_type if last else EventType.RELEASE_PR_MERGED,
                change_id=change.change_id,
                actor=last.actor if last else AUTOMATED,
            )
            run = _Run(event=event, fast_track=change.fast_track, production=True)
            self._log.info(
                "promotion_resumed",
                change_id=change.change_id,
                state=change.state.value,
            )
            self._promote_production(run)
            records.extend(run.records)
        return records

    def _apply(self, run: _Run) -> None:
        try:
            self._handlers[run.event.type](run)
        except PipelineCancelled:
            self._log.info("pipeline_cancelled", change_id=run.change_id, stage=run.stage)
        except InvalidTransitionError as e:
            self._reject(run, e)
        except Exception as e:
            self._guarded_fail(run, e)

    def _already_processed(self, event: ChangeEvent) -> bool:
        ids = [event.event_id]
        if event.type is EventType.CHAT_COMMAND:
            ids += [f"{event.event_id}:{MERGE_SUFFIX}", f"{event.event_id}:{RELEASE_MERGE_SUFFIX}"]
        return any(self._store.has_event(i) for i in ids)

    def _lock_for(self, change_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(change_id)
            if lock is None:
                lock = self._locks[change_id] = threading.RLock()
            return lock

    def _request_cancel(self, change_id: str) -> None:
        with self._guard:
            self._cancelled.add(change_id)

    def _clear_cancel(self, change_id: str) -> None:
        with self._guard:
            self._cancelled.discard(change_id)

    def _checkpoint(self, run: _Run) -> None:
        if self.cancellation_requested(run.change_id) and run.event.type is not EventType.PR_CLOSED:
            raise PipelineCancelled(run.change_id)

    # -- Handlers ------------------------------------------------------------

    def _on_pr_opened(self, run: _Run) -> None:
        payload = run.event.payload
        commits = parse_commits(payload.get("commits", []))
        change = self._store.get_change(run.change_id)

        if change is None:
            change = self._create(run, commits)
        elif change.state is S.CLOSED:
            generation = change.generation + 1
            change = self._transition(
                run,
                change,
                S.OPENED,
                detail=f"reopened (generation {generation})",
                generation=generation,
                source_branch=payload.get("source_branch", change.source_branch),
                target_branch=payload.get("target_branch", change.target_branch),
                commits=commits or change.commits,
                namespace_key=None,
                route=None,
                merged_at=None,
                fast_track=False,
                blocked_reason=None,
                release_version=None,
                failure_detail=None,
            )
        else:
            self._log.info("pr_opened_ignored", change_id=run.change_id, state=change.state.value)
            return

        self._run_pre_merge(run, change)

    def _on_push(self, run: _Run) -> None:
        commits = parse_commits(run.event.payload.get("commits", []))
        change = self._store.get_change(run.change_id)
        if change is None:
            self._run_pre_merge(run, self._create(run, commits))
            return

        known = {c.sha for c in change.commits}
        added = [c for c in commits if c.sha not in known]
        if not added:
            self._log.info("push_ignored", change_id=run.change_id, reason="no new commits")
            return
        change = change.model_copy(update={"commits": [*change.commits, *added]})

        if change.state.is_pre_merge or (change.state is S.FAILED and not change.has_merged):
            change = self._transition(
                run,
                change,
                S.OPENED,
                detail=f"{len(added)} new commit(s)",
                failure_detail=None,
                fast_track=False,
            )
            self._run_pre_merge(run, change)
        elif change.state is S.CLOSED:
            self._log.info("push_ignored", change_id=run.change_id, reason="change closed")
        else:
            self._store.save_change(change)
            self._log.info(
                "push_recorded",
                change_id=run.change_id,
                state=change.state.value,
                commits=len(added),
            )

    def _on_pr_merged(self, run: _Run) -> None:
        change = self._require(run, {S.MERGE_READY}, S.MERGED.value)
        change = self._merge(run, change)
        self._stage_release(run, change)

    def _on_release_pr_merged(self, run: _Run) -> None:
        change = self._require(run, {S.RELEASE_PENDING}, S.RELEASE_MERGED.value)
        self._merge_release(run, change)

    def _on_pr_closed(self, run: _Run) -> None:
        change = self._store.get_change(run.change_id)
        if change is None or change.state is S.CLOSED:
            self._log.info("close_ignored", change_id=run.change_id)
            return
        if change.state is S.PRODUCTION_DEPLOYING:
            self._log.warning("close_rejected", change_id=run.change_id)
            self._notify(
                run,
                "close",
                N.FAILURE,
                "Production deployment in progress; close rejected, promotion runs to completion",
            )
            return

        previous = change.state
        self._teardown(run, change)
        self._transition(run, change, S.CLOSED, detail="closed", fast_track=False)
        self._notify(run, "close", N.SUCCESS, f"closed from {previous.value}")

    def _on_chat_command(self, run: _Run) -> None:
        command = str(run.event.payload.get("command", ""))
        words = self._config.fast_track
        if words.is_fast_track(command):
            self._fast_track(run)
        elif words.is_retry(command):
            change = self._require(run, {S.MERGED}, S.STAGING_DEPLOYED.value)
            self._stage_release(run, change)
        else:
            self._log.info("chat_command_ignored", change_id=run.change_id, command=command)

    def _on_deploy_result(self, event: ChangeEvent) -> None:
        status = str(event.payload.get("status", "")).lower()
        outcome = DeploymentOutcome(
            success=status in _SUCCESS_STATUSES,
            detail=str(event.payload.get("detail", "")),
            event_id=event.event_id,
        )
        if self._confirmations.deliver(event.change_id, outcome):
            self._log.info(
                "deploy_result_delivered",
                change_id=event.change_id,
                event_id=event.event_id,
                success=outcome.success,
            )
        else:
            self._log.warning(
                "deploy_result_ignored",
                change_id=event.change_id,
                event_id=event.event_id,
                reason="no deployment awaiting confirmation",
            )

    def _fast_track(self, run: _Run) -> None:
        change = self._require(run, FAST_TRACK_STATES, "fast-track")
        run.fast_track = True
        self._notify(run, FAST_TRACK_STAGE, N.STARTED, f"requested from {change.state.value}")
        change = change.model_copy(update={"fast_track": True, "updated_at": self._clock()})
        self._store.save_change(change)

        if change.state.is_pre_merge:
            change = self._run_pre_merge(run, change)
            run.current = run.event.derive(MERGE_SUFFIX, EventType.PR_MERGED)
            change = self._merge(run, change)
        if change.state is S.MERGED:
            change = self._stage_release(run, change)
        if change.state is S.STAGING_DEPLOYED:
            change = self._cut_release(run, change)
        if change.state is S.RELEASE_PENDING:
            run.current = run.event.derive(RELEASE_MERGE_SUFFIX, EventType.RELEASE_PR_MERGED)
            self._merge_release(run, change)
            return

        self._store.save_change(change.model_copy(update={"fast_track": False}))
        self._notify(
            run, FAST_TRACK_STAGE, N.SUCCESS, "finished without a release: no releasable commits"
        )

    # -- Pipeline steps ------------------------------------------------------

    def _run_pre_merge(self, run: _Run, change: Change) -> Change:
        """Run the remaining pre-merge steps from the Change's current state."""
        if change.state is S.OPENED:
            self._pass_gate(run, change, GateStage.LINT)
            change = self._transition(run, change, S.LINTED)
        if change.state is S.LINTED:
            self._pass_gate(run, change, GateStage.UNIT_TEST)
            change = self._transition(run, change, S.TESTED)
        if change.state is S.TESTED:
            change = self._provision(run, change)
        if change.state is S.EPHEMERAL_DEPLOYED:
            self._pass_gate(run, change, GateStage.SANDBOX)
            change = self._transition(run, change, S.MERGE_READY, detail=change.route)
        return change

    def _provision(self, run: _Run, change: Change) -> Change:
        self._checkpoint(run)
        run.stage = "provision"
        self._notify(run, "provision", N.STARTED)
        key = change.namespace_key or self._environments.namespace_key(change.change_id)
        namespace = self._environments.provision(key, change.change_id)
        self._checkpoint(run)
        change = self._transition(
            run,
            change,
            S.EPHEMERAL_DEPLOYED,
            detail=namespace.route,
            namespace_key=namespace.key,
            route=namespace.route,
        )
        self._notify(run, "provision", N.SUCCESS, namespace.route)
        return change

    def _merge(self, run: _Run, change: Change) -> Change:
        change = self._transition(run, change, S.MERGED, merged_at=self._clock())
        self._teardown(run, change)
        return change

    def _teardown(self, run: _Run, change: Change) -> None:
        """Tear down the Change's namespace; failures are reported, not raised."""
        key = change.namespace_key or self._environments.namespace_key(change.change_id)
        try:
            if self._environments.teardown(key) is not None:
                self._notify(run, "teardown", N.SUCCESS, key)
        except Exception as e:
            detail = sanitize_error_message(str(e))
            self._log.warning(
                "namespace_teardown_failed", change_id=change.change_id, key=key, error=detail
            )
            self._notify(run, "teardown", N.FAILURE, detail)

    def _stage_release(self, run: _Run, change: Change) -> Change:
        """Deploy to staging and run the staging gate.

        A failure leaves the Change in Merged with ``blocked_reason`` set; on a
        fast-track run it is raised instead.
        """
        self._checkpoint(run)
        run.stage = GateStage.STAGING.value
        try:
            outcome = self._environments.deploy(
                Environment.STAGING,
                DeploymentTarget(
                    environment=Environment.STAGING,
                    change_id=change.change_id,
                    artifact_ref=change.head_sha or "",
                ),
            )
            if outcome is None or not outcome.success:
                raise DeploymentError(
                    Environment.STAGING.value,
                    outcome.detail if outcome else "no confirmation",
                )
            self._pass_gate(run, change, GateStage.STAGING)
        except PipelineCancelled:
            raise
        except SluiceError as e:
            if run.fast_track:
                raise
            return self._block(run, change, sanitize_error_message(str(e)))

        change = self._transition(run, change, S.STAGING_DEPLOYED, blocked_reason=None)
        return self._cut_release(run, change)

    def _block(self, run: _Run, change: Change, detail: str) -> Change:
        """Hold the Change in Merged and record why, so a redelivered retry is a no-op."""
        change = change.model_copy(update={"blocked_reason": detail, "updated_at": self._clock()})
        self._record(run, change, change.state, f"blocked: {detail}")
        self._log.warning("release_candidate_blocked", change_id=change.change_id, detail=detail)
        self._notify(
            run, GateStage.STAGING.value, N.FAILURE, f"release candidate blocked: {detail}"
        )
        return change

    def _cut_release(self, run: _Run, change: Change) -> Change:
        run.stage = "versioning"
        with self._release_lock:
            descriptor = self._versioning.compute_release(
                change.commits,
                self._store.head_version(),
                change_id=change.change_id,
                created_at=self._clock(),
            )
            if descriptor is None:
                self._notify(
                    run, "versioning", N.SUCCESS, "no releasable commits; release not required"
                )
                return change
            self._store.save_release(descriptor)

        change = self._transition(
            run,
            change,
            S.RELEASE_PENDING,
            detail=f"{descriptor.tag} ({descriptor.bump.value})",
            release_version=str(descriptor.version),
        )
        self._notify(run, "versioning", N.SUCCESS, descriptor.render_changelog())
        return change

    def _merge_release(self, run: _Run, change: Change) -> Change:
        descriptor = self._release_for(change)
        self._store.save_release(descriptor.model_copy(update={"status": ReleaseStatus.MERGED}))
        change = self._transition(run, change, S.RELEASE_MERGED, detail=descriptor.tag)
        run.production = True
        return change

    # -- Production ----------------------------------------------------------

    def _promote_production(self, run: _Run) -> None:
        """Acquire the lane, run the production gate, deploy and await confirmation."""
        change_id = run.change_id
        lock = self._lock_for(change_id)
        change = self._store.get_change(change_id)
        if change is None:
            return
        release_id = f"{change_id}@{change.release_version}"
        run.stage = GateStage.PRODUCTION.value

        with create_span(
            "sluice.production",
            attributes={"sluice.change_id": change_id, "sluice.release_id": release_id},
        ):
            self._notify(run, "production_lane", N.STARTED, f"queued as {release_id}")
            try:
                self._environments.acquire_production_lane(
                    release_id, self._config.timeouts.lane_wait_seconds
                )
            except Exception as e:
                with lock:
                    self._guarded_fail(run, e)
                return

            deploying = False
            try:
                with lock:
                    change = self._store.get_change(change_id)
                    if change is None or change.state not in RESUMABLE_STATES:
                        self._log.info("production_promotion_cancelled", change_id=change_id)
                        return
                    descriptor = self._finalize_release(run, change)
                    version = str(descriptor.version)
                    if change.state is S.RELEASE_MERGED:
                        change = self._transition(
                            run,
                            change,
                            S.PRODUCTION_DEPLOYING,
                            detail=release_id
                            if version == change.release_version
                            else f"{release_id} as {descriptor.tag}",
                            release_version=version,
                        )
                    elif version != change.release_version:
                        change = change.model_copy(update={"release_version": version})
                        self._store.save_change(change)
                    self._confirmations.open(change_id)
                deploying = True
                self._deploy_production(run, change, descriptor)
            except Exception as e:
                with lock:
                    self._guarded_fail(run, e)
                if deploying:
                    self._rollback(run)
            finally:
                self._confirmations.close(change_id)
                self._environments.release_production_lane(release_id)

    def _deploy_production(self, run: _Run, change: Change, descriptor: ReleaseDescriptor) -> None:
        result = self._run_gate(run, change, GateStage.PRODUCTION, artifact_ref=descriptor.tag)
        if not result.passed:
            raise GateFailure(change.change_id, GateStage.PRODUCTION.value, result.summary())

        run.stage = "deploy"
        outcome = self._environments.deploy(
            Environment.PRODUCTION,
            DeploymentTarget(
                environment=Environment.PRODUCTION,
                change_id=change.change_id,
                artifact_ref=descriptor.tag,
                version=str(descriptor.version),
            ),
        )
        if outcome is None:
            timeout = self._config.timeouts.deployment_confirmation_seconds
            outcome = self._confirmations.wait(change.change_id, timeout)
            if outcome is None:
                raise DeploymentTimeoutError(Environment.PRODUCTION.value, timeout)
        if not outcome.success:
            raise DeploymentError(
                Environment.PRODUCTION.value, outcome.detail or "reported failure"
            )

        with self._lock_for(change.change_id):
            self._store.save_release(
                descriptor.model_copy(update={"status": ReleaseStatus.DEPLOYED})
            )
            current = self._store.get_change(change.change_id) or change
            self._transition(run, current, S.RELEASED, detail=descriptor.tag, fast_track=False)
        self._notify(run, GateStage.PRODUCTION.value, N.SUCCESS, f"released {descriptor.tag}")
        if run.fast_track:
            self._notify(run, FAST_TRACK_STAGE, N.SUCCESS, f"released {descriptor.tag}")

    def _release_for(self, change: Change) -> ReleaseDescriptor:
        descriptor = (
            self._store.get_release(change.release_version) if change.release_version else None
        )
        if descriptor is None:
            raise SluiceError(f"No release descriptor recorded for {change.change_id}")
        return descriptor

    def _finalize_release(self, run: _Run, change: Change) -> ReleaseDescriptor:
        """Fix the version a release deploys as, once it holds the lane.

        Releases deploy in lane order, not in the order they were cut. A
        release overtaken by one that reached production first is re-based on
        the last released version; if that version is already allocated, on
        the highest allocated one. The overtaken version stays allocated.

        Raises:
            VersionConflict: If no version past the released one can be derived.
        """
        descriptor = self._release_for(change)
        released = self._store.last_released_version()
        if released is None or descriptor.version > released:
            return descriptor

        with self._release_lock:
            rebased = self._versioning.compute_release(
                change.commits, released, change_id=change.change_id, created_at=self._clock()
            )
            if rebased is not None and self._store.get_release(str(rebased.version)) is not None:
                rebased = self._versioning.compute_release(
                    change.commits,
                    self._store.head_version(),
                    change_id=change.change_id,
                    created_at=self._clock(),
                )
            if rebased is None:
                raise VersionConflict(str(descriptor.version), str(released))
            rebased = rebased.model_copy(update={"status": ReleaseStatus.MERGED})
            self._check_version(rebased)
            self._store.save_release(
                descriptor.model_copy(update={"status": ReleaseStatus.SUPERSEDED})
            )
            self._store.save_release(rebased)

        self._log.info(
            "release_rebased",
            change_id=change.change_id,
            from_version=str(descriptor.version),
            to_version=str(rebased.version),
            released_version=str(released),
        )
        self._notify(
            run,
            "versioning",
            N.SUCCESS,
            f"{descriptor.tag} overtaken by v{released}; deploying as {rebased.tag}",
        )
        return rebased

    def _check_version(self, descriptor: ReleaseDescriptor) -> None:
        released = self._store.last_released_version()
        if released is not None and descriptor.version <= released:
            raise VersionConflict(str(descriptor.version), str(released))

    def _rollback(self, run: _Run) -> None:
        released = self._store.last_released_version()
        to_version = str(released) if released else None
        try:
            self._environments.rollback(Environment.PRODUCTION, to_version)
        except Exception as e:
            detail = sanitize_error_message(str(e))
            self._log.error("rollback_failed", change_id=run.change_id, error=detail)
            self._notify(run, "rollback", N.FAILURE, detail)
            return
        target = to_version or "previous deployment"
        self._notify(run, "rollback", N.SUCCESS, f"rollback to {target} requested")

    # -- Gates ---------------------------------------------------------------

    def _run_gate(
        self,
        run: _Run,
        change: Change,
        stage: GateStage,
        *,
        artifact_ref: str | None = None,
    ) -> GateResult:
        cancellable = stage is not GateStage.PRODUCTION
        if cancellable:
            self._checkpoint(run)
        run.stage = stage.value
        self._notify(run, stage.value, N.STARTED)
        result = self._gates.run_gate(
            GateTarget(
                change_id=change.change_id,
                stage=stage,
                artifact_ref=artifact_ref or change.head_sha or "",
                route=change.route,
            ),
            stage,
        )
        if cancellable:
            self._checkpoint(run)
        if result.passed:
            self._notify(run, stage.value, N.SUCCESS, result.summary())
        elif not result.mandatory:
            self._notify(run, stage.value, N.FAILURE, f"advisory: {result.summary()}")
        return result

    def _pass_gate(self, run: _Run, change: Change, stage: GateStage) -> GateResult:
        result = self._run_gate(run, change, stage)
        if result.blocks_promotion:
            raise GateFailure(change.change_id, stage.value, result.summary())
        return result

    # -- Records and notifications -------------------------------------------

    def _require(self, run: _Run, states: Iterable[LifecycleState], target: str) -> Change:
        change = self._store.get_change(run.change_id)
        if change is None:
            raise InvalidTransitionError(run.change_id, "<unknown>", target)
        if change.state not in states:
            raise InvalidTransitionError(run.change_id, change.state.value, target)
        return change

    def _create(self, run: _Run, commits: list[CommitRecord]) -> Change:
        payload = run.event.payload
        now = self._clock()
        change = Change(
            change_id=run.change_id,
            source_branch=payload.get("source_branch", ""),
            target_branch=payload.get("target_branch") or "main",
            commits=commits,
            created_at=now,
            updated_at=now,
        )
        self._commit(run, change, None, "created")
        return change

    def _transition(
        self,
        run: _Run,
        change: Change,
        to_state: LifecycleState,
        *,
        detail: str | None = None,
        **updates: Any,
    ) -> Change:
        updated = change.model_copy(
            update={"state": to_state, "updated_at": self._clock(), **updates}
        )
        self._commit(run, updated, change.state, detail)
        return updated

    def _commit(
        self,
        run: _Run,
        change: Change,
        from_state: LifecycleState | None,
        detail: str | None,
    ) -> None:
        require_transition(change.change_id, from_state, change.state)
        self._record(run, change, from_state, detail)

    def _record(
        self,
        run: _Run,
        change: Change,
        from_state: LifecycleState | None,
        detail: str | None,
    ) -> None:
        event = run.current or run.event
        record = PromotionRecord(
            change_id=change.change_id,
            from_state=from_state,
            to_state=change.state,
            event_id=event.event_id,
            event_type=event.type,
            actor=run.event.actor,
            fast_track=run.fast_track,
            detail=detail,
            timestamp=change.updated_at or self._clock(),
        )
        self._store.commit_transition(change, record)
        run.records.append(record)
        self._log.info("transition_committed", **record.to_log_dict())

    def _notify(self, run: _Run, stage: str, status: NotificationStatus, detail: str = "") -> None:
        dispatch(
            self._notifier,
            NotificationRecord(
                change_id=run.change_id,
                stage=stage,
                status=status,
                detail=detail,
                fast_track=run.fast_track,
                timestamp=self._clock(),
            ),
        )

    def _reject(self, run: _Run, error: InvalidTransitionError) -> None:
        self._log.warning(
            "event_rejected",
            change_id=run.change_id,
            event_type=run.event.type.value,
            from_state=error.from_state,
            to_state=error.to_state,
        )
        self._notify(run, run.event.type.value, N.FAILURE, str(error))

    def _fail(self, run: _Run, error: Exception) -> None:
        stage = error.stage if isinstance(error, GateFailure) else run.stage
        detail = sanitize_error_message(str(error))
        self._log.warning(
            "promotion_failed",
            change_id=run.change_id,
            stage=stage,
            error_type=type(error).__name__,
            error=detail,
            fast_track=run.fast_track,
        )
        change = self._store.get_change(run.change_id)
        if change is not None and not change.state.is_terminal:
            self._transition(
                run, change, S.FAILED, detail=f"{stage}: {detail}", failure_detail=detail
            )
        if run.fast_track:
            self._notify(
                run, FAST_TRACK_STAGE, N.FAILURE, f"{FAST_TRACK_FAILED} at {stage}: {detail}"
            )
        else:
            self._notify(run, stage, N.FAILURE, detail)

    def _guarded_fail(self, run: _Run, error: Exception) -> None:
        try:
            self._fail(run, error)
        except Exception:
            self._log.exception("failure_not_recorded", change_id=run.change_id, error=str(error))


__all__ = [
    "FAST_TRACK_FAILED",
    "FAST_TRACK_STAGE",
    "ConfirmationBoard",
    "PipelineCancelled",
    "PromotionStateMachine",
    "parse_commits",
]
