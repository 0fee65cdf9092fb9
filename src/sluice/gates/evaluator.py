"""Gate evaluator.

Runs the ordered checks registered for a stage and produces a GateResult.

Evaluation rules:
    - Checks run in registration order.
    - The first failing blocking check stops evaluation.
    - Non-blocking failures become WARNING findings and evaluation continues.
    - A check that cannot complete (infrastructure error or timeout) is
      retried through RetryPolicy, then reported as a failing finding
      prefixed ``infrastructure:``.
    - Any other exception raised by a check is reported as a failing finding
      without retry.

Example:
    >>> evaluator = GateEvaluator()
    >>> evaluator.register(GateStage.LINT, CallableCheck("noop", lambda t: True))
    >>> result = evaluator.run_gate(
    ...     GateTarget(change_id="PR-1", stage=GateStage.LINT), GateStage.LINT
    ... )
    >>> result.passed
    True
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

import structlog

from sluice.config import PipelineConfig
from sluice.gates.checks import Check, CheckReport, GateTarget, build_checks
from sluice.resilience import RetryPolicy
from sluice.schemas.gates import Finding, GateResult, GateStage, Severity
from sluice.telemetry.tracing import create_span, sanitize_error_message

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_CHECK_TIMEOUT_SECONDS = 600.0
DEFAULT_MAX_WORKERS = 8


def call_with_timeout(
    executor: Executor,
    func: Callable[[], T],
    timeout: float | None,
    *,
    name: str,
) -> T:
    """Run ``func`` on ``executor`` and wait at most ``timeout`` seconds.

    A check that overruns is abandoned, not killed; its worker stays busy
    until the check returns.

    Raises:
        TimeoutError: If ``func`` does not return in time.
    """
    if timeout is None:
        return func()

    future = executor.submit(func)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as e:
        if future.done():
            raise
        future.cancel()
        raise TimeoutError(f"check '{name}' did not complete within {timeout}s") from e


class GateEvaluator:
    """Runs registered checks per stage.

    Checks run on a thread pool owned by the evaluator so that a per-check
    timeout can be enforced; call :meth:`close` to shut it down.

    Attributes:
        retry_policy: Policy applied to checks that cannot complete.
        check_timeout_seconds: Default per-check timeout.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        check_timeout_seconds: float | None = DEFAULT_CHECK_TIMEOUT_SECONDS,
        mandatory: dict[GateStage, bool] | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self.check_timeout_seconds = check_timeout_seconds
        self._mandatory = dict(mandatory or {})
        self._checks: dict[GateStage, list[Check]] = {stage: [] for stage in GateStage}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="sluice-check"
        )
        self._log = logger.bind(component="gate_evaluator")

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> GateEvaluator:
        """Build an evaluator with the checks declared in configuration."""
        evaluator = cls(
            retry_policy=retry_policy or RetryPolicy(config.retry),
            check_timeout_seconds=config.timeouts.check_seconds,
            mandatory={stage: config.stage(stage).mandatory for stage in GateStage},
        )
        for stage in GateStage:
            for check in build_checks(config.stage(stage)):
                evaluator.register(stage, check)
        return evaluator

    def close(self) -> None:
        """Stop accepting checks; overrunning checks are not waited for."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def register(self, stage: GateStage, check: Check) -> None:
        """Append a check to a stage's ordered list."""
        with self._lock:
            self._checks[stage].append(check)
        self._log.debug("check_registered", stage=stage.value, check=check.name)

    def checks_for(self, stage: GateStage) -> list[Check]:
        with self._lock:
            return list(self._checks[stage])

    def is_mandatory(self, stage: GateStage) -> bool:
        return self._mandatory.get(stage, True)

    def has_signature_check(self, stage: GateStage = GateStage.PRODUCTION) -> bool:
        """True when the stage verifies artifact signatures."""
        return any(check.is_signature for check in self.checks_for(stage))

    def run_gate(self, target: GateTarget, stage: GateStage) -> GateResult:
        """Run all checks registered for ``stage`` against ``target``.

        Args:
            target: Change or artifact reference handed to each check.
            stage: Stage whose checks run.

        Returns:
            GateResult; ``passed`` is False when any blocking finding was produced.
        """
        checks = self.checks_for(stage)
        findings: list[Finding] = []
        checks_run: list[str] = []
        passed = True
        start = time.monotonic()

        log = self._log.bind(change_id=target.change_id, stage=stage.value)
        log.info("gate_execution_started", check_count=len(checks))

        with create_span(
            "sluice.gate",
            attributes={
                "sluice.change_id": target.change_id,
                "sluice.stage": stage.value,
                "sluice.check_count": len(checks),
            },
        ) as span:
            for check in checks:
                checks_run.append(check.name)
                check_findings, failed = self._evaluate(check, target, log)
                findings.extend(check_findings)
                if failed and check.blocking:
                    passed = False
                    log.info("gate_stopped", check=check.name)
                    break

            duration_ms = int((time.monotonic() - start) * 1000)
            span.set_attribute("sluice.passed", passed)
            span.set_attribute("sluice.duration_ms", duration_ms)

        result = GateResult(
            stage=stage,
            passed=passed,
            mandatory=self.is_mandatory(stage),
            findings=findings,
            checks_run=checks_run,
            duration_ms=duration_ms,
        )
        if passed:
            log.info("gate_passed", duration_ms=duration_ms, findings=len(findings))
        else:
            log.warning("gate_failed", duration_ms=duration_ms, summary=result.summary())
        return result

    def _evaluate(
        self,
        check: Check,
        target: GateTarget,
        log: structlog.stdlib.BoundLogger,
    ) -> tuple[list[Finding], bool]:
        """Run one check; return its findings and whether it failed."""
        failure_severity = Severity.BLOCKING if check.blocking else Severity.WARNING
        timeout = check.timeout_seconds or self.check_timeout_seconds

        try:
            report: CheckReport = self.retry_policy.call(
                lambda: call_with_timeout(
                    self._executor, lambda: check.run(target), timeout, name=check.name
                ),
                operation=f"check.{check.name}",
            )
        except Exception as e:
            reason = sanitize_error_message(str(e))
            if self.retry_policy.should_retry(e):
                message = f"infrastructure: {reason}"
            else:
                message = f"error: {type(e).__name__}: {reason}"
            log.warning("check_errored", check=check.name, error=message)
            return [Finding(check=check.name, severity=failure_severity, message=message)], True

        findings = [
            Finding(check=check.name, severity=Severity.INFO, message=note)
            for note in report.notes
        ]
        if report.passed:
            log.debug("check_passed", check=check.name)
            return findings, False

        log.info("check_failed", check=check.name, blocking=check.blocking)
        findings.insert(
            0,
            Finding(
                check=check.name,
                severity=failure_severity,
                message=report.message or "check failed",
            ),
        )
        return findings, True


__all__ = ["GateEvaluator", "call_with_timeout"]
