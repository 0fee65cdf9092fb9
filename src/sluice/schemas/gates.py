"""Gate evaluation schemas.

Key Components:
    GateStage: Pipeline stages a gate can run at
    Severity: Finding severity (blocking, warning, info)
    Finding: A single diagnostic produced by a check
    GateResult: Outcome of running all checks registered for a stage
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class GateStage(str, Enum):
    """Pipeline stages with registered checks.

    Attributes:
        LINT: Static analysis, gates Opened -> Linted.
        UNIT_TEST: Unit tests, gates Linted -> Tested.
        SANDBOX: Checks against the ephemeral namespace, gates EphemeralDeployed -> MergeReady.
        STAGING: Integration and non-functional checks on shared staging.
        PRODUCTION: Pre-release checks; must include signature verification.
    """

    LINT = "lint"
    UNIT_TEST = "unit_test"
    SANDBOX = "sandbox"
    STAGING = "staging"
    PRODUCTION = "production"


class Severity(str, Enum):
    """Finding severity.

    A BLOCKING finding fails the gate; WARNING and INFO are aggregated into
    the result without failing it.
    """

    BLOCKING = "blocking"
    WARNING = "warning"
    INFO = "info"


class Finding(BaseModel):
    """A single diagnostic produced by a check.

    Attributes:
        check: Name of the check that produced the finding.
        severity: Finding severity.
        message: Human-readable diagnostic.

    Examples:
        >>> Finding(check="ruff", severity=Severity.WARNING, message="E501").severity
        <Severity.WARNING: 'warning'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    check: str = Field(..., description="Check that produced the finding")
    severity: Severity = Field(..., description="Finding severity")
    message: str = Field(..., description="Diagnostic message")


class GateResult(BaseModel):
    """Outcome of running the gate evaluator for one stage.

    Attributes:
        stage: Stage the gate ran at.
        passed: False when any blocking finding was produced.
        mandatory: Whether a failure blocks forward transitions.
        findings: All findings, in check order.
        checks_run: Names of checks that ran (stops at the first blocking failure).
        duration_ms: Total evaluation time in milliseconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage: GateStage = Field(..., description="Stage the gate ran at")
    passed: bool = Field(..., description="No blocking findings")
    mandatory: bool = Field(default=True, description="Failure blocks promotion")
    findings: list[Finding] = Field(default_factory=list, description="Diagnostics")
    checks_run: list[str] = Field(default_factory=list, description="Checks executed")
    duration_ms: int = Field(default=0, ge=0, description="Evaluation time in ms")

    @property
    def blocks_promotion(self) -> bool:
        """True when the result must stop forward transitions."""
        return self.mandatory and not self.passed

    @property
    def blocking_findings(self) -> list[Finding]:
        """Findings with BLOCKING severity."""
        return [f for f in self.findings if f.severity == Severity.BLOCKING]

    def summary(self) -> str:
        """One-line diagnostic suitable for notifications and audit detail."""
        if self.passed:
            warnings = len(self.findings)
            return f"{self.stage.value} passed ({warnings} finding(s))"
        first = self.blocking_findings[0] if self.blocking_findings else None
        if first is None:
            return f"{self.stage.value} failed"
        return f"{self.stage.value} failed: {first.check}: {first.message}"


__all__ = [
    "Finding",
    "GateResult",
    "GateStage",
    "Severity",
]
