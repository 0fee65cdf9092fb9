"""Unit tests for gate checks and the gate evaluator."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor

import pytest

from sluice.config import CheckConfig, CheckKind, PipelineConfig, StageConfig
from sluice.errors import InfrastructureError
from sluice.gates import (
    CallableCheck,
    CheckReport,
    CommandCheck,
    GateEvaluator,
    GateTarget,
    SignatureCheck,
    ThresholdCheck,
    build_check,
)
from sluice.gates.evaluator import call_with_timeout
from sluice.resilience import RetryPolicy
from sluice.schemas import GateStage, Severity


@pytest.fixture
def target() -> GateTarget:
    return GateTarget(change_id="PR-1", stage=GateStage.LINT, artifact_ref="abc123")


class TestCommandCheck:
    """Tests for command-backed checks."""

    def test_exit_zero_passes(self, target: GateTarget) -> None:
        report = CommandCheck("echo", "echo ok").run(target)

        assert report.passed is True
        assert report.message == "ok"

    def test_non_zero_exit_fails_with_output(self, target: GateTarget) -> None:
        report = CommandCheck("fail", "sh -c 'echo broken >&2; exit 3'").run(target)

        assert report.passed is False
        assert report.message == "exit code 3: broken"

    def test_placeholders_are_substituted(self, target: GateTarget) -> None:
        report = CommandCheck("ref", "echo ${CHANGE_ID} ${ARTIFACT_REF} ${STAGE}").run(target)

        assert report.message == "PR-1 abc123 lint"

    def test_missing_executable_is_infrastructure_error(self, target: GateTarget) -> None:
        with pytest.raises(InfrastructureError, match="executable not found"):
            CommandCheck("missing", "sluice-no-such-binary --flag").run(target)


class TestThresholdCheck:
    """Tests for threshold checks."""

    def test_value_within_budget_passes(self, target: GateTarget) -> None:
        assert ThresholdCheck("latency", lambda t: 120.0, max_value=250.0).run(target).passed

    def test_value_over_budget_fails(self, target: GateTarget) -> None:
        report = ThresholdCheck("latency", lambda t: 300.0, max_value=250.0).run(target)

        assert report.passed is False
        assert "exceeds threshold" in report.message

    def test_command_metric_reads_last_line(self, target: GateTarget) -> None:
        check = build_check(
            CheckConfig(
                name="p95",
                kind=CheckKind.THRESHOLD,
                command="printf 'warming up\\n180.5\\n'",
                max_value=200.0,
            )
        )

        report = check.run(target)

        assert report.passed is True

    def test_command_metric_rejects_non_numeric_output(self, target: GateTarget) -> None:
        check = build_check(
            CheckConfig(name="p95", kind=CheckKind.THRESHOLD, command="echo fast", max_value=1.0)
        )

        with pytest.raises(InfrastructureError, match="not a number"):
            check.run(target)


class TestBuildCheck:
    def test_signature_kind_builds_signature_check(self) -> None:
        check = build_check(
            CheckConfig(name="cosign", kind=CheckKind.SIGNATURE, command="cosign verify ${ARTIFACT_REF}")
        )

        assert isinstance(check, SignatureCheck)
        assert check.is_signature is True

    def test_default_kind_is_command(self) -> None:
        check = build_check(CheckConfig(name="ruff", command="ruff check .", blocking=False))

        assert type(check) is CommandCheck
        assert check.blocking is False


@pytest.fixture
def executor() -> Iterator[ThreadPoolExecutor]:
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=False, cancel_futures=True)


class TestCallWithTimeout:
    def test_returns_result(self, executor: ThreadPoolExecutor) -> None:
        assert call_with_timeout(executor, lambda: 42, 1.0, name="answer") == 42

    def test_propagates_exceptions(self, executor: ThreadPoolExecutor) -> None:
        def boom() -> None:
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            call_with_timeout(executor, boom, 1.0, name="boom")

    def test_overrun_raises_timeout(self, executor: ThreadPoolExecutor) -> None:
        release = threading.Event()

        with pytest.raises(TimeoutError, match="did not complete"):
            call_with_timeout(executor, lambda: release.wait(5), 0.05, name="slow")
        release.set()

    def test_evaluator_closes_its_pool(self, fast_retry: RetryPolicy) -> None:
        evaluator = GateEvaluator(retry_policy=fast_retry)
        evaluator.close()

        with pytest.raises(RuntimeError):
            call_with_timeout(evaluator._executor, lambda: 1, 1.0, name="late")


class TestGateEvaluator:
    """Tests for ordered gate evaluation."""

    def test_all_checks_pass(self, target: GateTarget, fast_retry: RetryPolicy) -> None:
        evaluator = GateEvaluator(retry_policy=fast_retry)
        evaluator.register(GateStage.LINT, CallableCheck("a", lambda t: True))
        evaluator.register(GateStage.LINT, CallableCheck("b", lambda t: True))

        result = evaluator.run_gate(target, GateStage.LINT)

        assert result.passed is True
        assert result.checks_run == ["a", "b"]
        assert result.blocks_promotion is False

    def test_blocking_failure_stops_evaluation(
        self, target: GateTarget, fast_retry: RetryPolicy
    ) -> None:
        calls: list[str] = []
        evaluator = GateEvaluator(retry_policy=fast_retry)
        evaluator.register(
            GateStage.LINT,
            CallableCheck("a", lambda t: calls.append("a") or CheckReport(passed=False, message="E501")),
        )
        evaluator.register(GateStage.LINT, CallableCheck("b", lambda t: calls.append("b") or True))

        result = evaluator.run_gate(target, GateStage.LINT)

        assert result.passed is False
        assert calls == ["a"]
        assert result.blocking_findings[0].message == "E501"
        assert result.summary() == "lint failed: a: E501"

    def test_non_blocking_failure_is_warning(
        self, target: GateTarget, fast_retry: RetryPolicy
    ) -> None:
        evaluator = GateEvaluator(retry_policy=fast_retry)
        evaluator.register(GateStage.LINT, CallableCheck("style", lambda t: False, blocking=False))
        evaluator.register(GateStage.LINT, CallableCheck("types", lambda t: True))

        result = evaluator.run_gate(target, GateStage.LINT)

        assert result.passed is True
        assert [f.severity for f in result.findings] == [Severity.WARNING]
        assert result.checks_run == ["style", "types"]

    def test_notes_become_info_findings(
        self, target: GateTarget, fast_retry: RetryPolicy
    ) -> None:
        evaluator = GateEvaluator(retry_policy=fast_retry)
        evaluator.register(
            GateStage.LINT,
            CallableCheck("a", lambda t: CheckReport(passed=True, notes=["3 files skipped"])),
        )

        result = evaluator.run_gate(target, GateStage.LINT)

        assert [(f.severity, f.message) for f in result.findings] == [
            (Severity.INFO, "3 files skipped")
        ]

    def test_infrastructure_error_is_retried(
        self, target: GateTarget, fast_retry: RetryPolicy
    ) -> None:
        attempts: list[int] = []

        def flaky(t: GateTarget) -> bool:
            attempts.append(1)
            if len(attempts) == 1:
                raise InfrastructureError("runner", "connection reset")
            return True

        evaluator = GateEvaluator(retry_policy=fast_retry)
        evaluator.register(GateStage.LINT, CallableCheck("flaky", flaky))

        assert evaluator.run_gate(target, GateStage.LINT).passed is True
        assert len(attempts) == 2

    def test_exhausted_retries_fail_with_infrastructure_finding(
        self, target: GateTarget, fast_retry: RetryPolicy
    ) -> None:
        def down(t: GateTarget) -> bool:
            raise InfrastructureError("runner", "connection refused")

        evaluator = GateEvaluator(retry_policy=fast_retry)
        evaluator.register(GateStage.LINT, CallableCheck("down", down))

        result = evaluator.run_gate(target, GateStage.LINT)

        assert result.passed is False
        assert result.findings[0].message.startswith("infrastructure:")

    def test_unexpected_error_is_not_retried(
        self, target: GateTarget, fast_retry: RetryPolicy
    ) -> None:
        attempts: list[int] = []

        def buggy(t: GateTarget) -> bool:
            attempts.append(1)
            raise KeyError("missing")

        evaluator = GateEvaluator(retry_policy=fast_retry)
        evaluator.register(GateStage.LINT, CallableCheck("buggy", buggy))

        result = evaluator.run_gate(target, GateStage.LINT)

        assert len(attempts) == 1
        assert result.findings[0].message.startswith("error: KeyError")

    def test_timeout_fails_check(self, target: GateTarget, fast_retry: RetryPolicy) -> None:
        release = threading.Event()
        evaluator = GateEvaluator(retry_policy=fast_retry, check_timeout_seconds=0.05)
        evaluator.register(GateStage.LINT, CallableCheck("slow", lambda t: release.wait(5)))

        result = evaluator.run_gate(target, GateStage.LINT)
        release.set()

        assert result.passed is False
        assert "did not complete" in result.findings[0].message

    def test_empty_stage_passes(self, target: GateTarget) -> None:
        assert GateEvaluator().run_gate(target, GateStage.SANDBOX).passed is True

    def test_from_config_registers_checks(self) -> None:
        config = PipelineConfig(
            stages={
                GateStage.LINT: StageConfig(checks=[CheckConfig(name="ruff", command="ruff check .")]),
                GateStage.PRODUCTION: StageConfig(
                    checks=[
                        CheckConfig(name="cosign", kind=CheckKind.SIGNATURE, command="cosign verify x")
                    ]
                ),
                GateStage.STAGING: StageConfig(mandatory=False),
            }
        )

        evaluator = GateEvaluator.from_config(config)

        assert [c.name for c in evaluator.checks_for(GateStage.LINT)] == ["ruff"]
        assert evaluator.has_signature_check(GateStage.PRODUCTION) is True
        assert evaluator.is_mandatory(GateStage.STAGING) is False
        assert evaluator.is_mandatory(GateStage.LINT) is True
