"""Gate checks.

A check inspects one Change or artifact and reports whether it passed. A
check that *cannot complete* (runner missing, network down, timeout) raises
an infrastructure error instead of reporting a failure, so the evaluator can
retry it.

Key Components:
    GateTarget: What a check runs against
    CheckReport: Outcome of one completed check
    Check: Base class for all checks
    CommandCheck: Runs a command; exit code 0 passes
    SignatureCheck: Command check that verifies the artifact signature
    ThresholdCheck: Compares a measured number with an upper bound (e.g. p95 latency)
    CallableCheck: In-process function check
    build_checks: Build checks from StageConfig
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, Field

from sluice.commands import run_command, tail
from sluice.config import CheckConfig, CheckKind, StageConfig
from sluice.errors import InfrastructureError
from sluice.schemas.gates import GateStage


class GateTarget(BaseModel):
    """Reference handed to every check.

    Attributes:
        change_id: Change under evaluation.
        stage: Stage being evaluated.
        artifact_ref: Commit sha or release version being validated.
        route: Host binding of the ephemeral namespace (sandbox stage).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    change_id: str
    stage: GateStage
    artifact_ref: str = ""
    route: str | None = None

    def substitutions(self) -> dict[str, str]:
        return {
            "CHANGE_ID": self.change_id,
            "STAGE": self.stage.value,
            "ARTIFACT_REF": self.artifact_ref,
            "ROUTE": self.route or "",
        }


class CheckReport(BaseModel):
    """Outcome of a check that completed.

    Attributes:
        passed: Whether the check passed.
        message: Primary diagnostic.
        notes: Additional non-blocking diagnostics.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    passed: bool
    message: str = ""
    notes: list[str] = Field(default_factory=list)


class Check(ABC):
    """Base class for gate checks.

    Attributes:
        name: Check name, used in findings.
        blocking: A failure fails the gate and stops evaluation.
        timeout_seconds: Per-check timeout override.
    """

    is_signature: bool = False

    def __init__(
        self,
        name: str,
        *,
        blocking: bool = True,
        timeout_seconds: float | None = None,
    ) -> None:
        self.name = name
        self.blocking = blocking
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def run(self, target: GateTarget) -> CheckReport:
        """Run the check.

        Raises:
            InfrastructureError: If the check could not complete.
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, blocking={self.blocking})"


class CommandCheck(Check):
    """Runs a command; exit code 0 passes.

    Example:
        >>> check = CommandCheck("ruff", "ruff check --output-format concise .")
    """

    def __init__(
        self,
        name: str,
        command: str,
        *,
        blocking: bool = True,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(name, blocking=blocking, timeout_seconds=timeout_seconds)
        self.command = command

    def run(self, target: GateTarget) -> CheckReport:
        result = run_command(
            self.command, target.substitutions(), timeout=self.timeout_seconds
        )
        if result.returncode == 0:
            return CheckReport(passed=True, message=tail(result.stdout))
        detail = tail(result.stderr) or tail(result.stdout)
        message = f"exit code {result.returncode}"
        if detail:
            message = f"{message}: {detail}"
        return CheckReport(passed=False, message=message)


class SignatureCheck(CommandCheck):
    """Command check that verifies the artifact signature (e.g. ``cosign verify``)."""

    is_signature = True


class ThresholdCheck(Check):
    """Passes when a measured value is at or below ``max_value``.

    Used for non-functional staging checks such as a latency budget.

    Example:
        >>> check = ThresholdCheck("p95-latency-ms", lambda t: 180.0, max_value=250.0)
        >>> check.run(GateTarget(change_id="PR-1", stage=GateStage.STAGING)).passed
        True
    """

    def __init__(
        self,
        name: str,
        measure: Callable[[GateTarget], float],
        max_value: float,
        *,
        blocking: bool = True,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(name, blocking=blocking, timeout_seconds=timeout_seconds)
        self.measure = measure
        self.max_value = max_value

    def run(self, target: GateTarget) -> CheckReport:
        value = self.measure(target)
        if value <= self.max_value:
            return CheckReport(passed=True, message=f"{value} <= {self.max_value}")
        return CheckReport(
            passed=False,
            message=f"{value} exceeds threshold {self.max_value}",
        )


def command_metric(command: str, timeout: float | None = None) -> Callable[[GateTarget], float]:
    """Build a measurement reading a number from the last output line of a command."""

    def measure(target: GateTarget) -> float:
        result = run_command(command, target.substitutions(), timeout=timeout)
        if result.returncode != 0:
            raise InfrastructureError(
                "threshold metric",
                f"exit code {result.returncode}: {tail(result.stderr)}",
            )
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise InfrastructureError("threshold metric", "no output")
        try:
            return float(lines[-1].strip())
        except ValueError as e:
            raise InfrastructureError("threshold metric", f"not a number: {lines[-1]!r}") from e

    return measure


class CallableCheck(Check):
    """Wraps a function returning a bool or a CheckReport."""

    def __init__(
        self,
        name: str,
        func: Callable[[GateTarget], bool | CheckReport],
        *,
        blocking: bool = True,
        timeout_seconds: float | None = None,
        is_signature: bool = False,
    ) -> None:
        super().__init__(name, blocking=blocking, timeout_seconds=timeout_seconds)
        self.func = func
        self.is_signature = is_signature

    def run(self, target: GateTarget) -> CheckReport:
        outcome = self.func(target)
        if isinstance(outcome, CheckReport):
            return outcome
        return CheckReport(passed=bool(outcome))


def build_check(config: CheckConfig) -> Check:
    """Build a check from its configuration."""
    if config.kind == CheckKind.SIGNATURE:
        return SignatureCheck(
            config.name,
            config.command,
            blocking=config.blocking,
            timeout_seconds=config.timeout_seconds,
        )
    if config.kind == CheckKind.THRESHOLD:
        return ThresholdCheck(
            config.name,
            command_metric(config.command, config.timeout_seconds),
            max_value=config.max_value if config.max_value is not None else 0.0,
            blocking=config.blocking,
            timeout_seconds=config.timeout_seconds,
        )
    return CommandCheck(
        config.name,
        config.command,
        blocking=config.blocking,
        timeout_seconds=config.timeout_seconds,
    )


def build_checks(stage: StageConfig) -> list[Check]:
    """Build the ordered checks of a stage."""
    return [build_check(c) for c in stage.checks]


__all__ = [
    "CallableCheck",
    "Check",
    "CheckReport",
    "CommandCheck",
    "GateTarget",
    "SignatureCheck",
    "ThresholdCheck",
    "build_check",
    "build_checks",
    "command_metric",
]
