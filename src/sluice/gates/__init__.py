"""Gate evaluation: ordered checks per pipeline stage."""

from __future__ import annotations

from sluice.gates.checks import (
    CallableCheck,
    Check,
    CheckReport,
    CommandCheck,
    GateTarget,
    SignatureCheck,
    ThresholdCheck,
    build_check,
    build_checks,
)
from sluice.gates.evaluator import GateEvaluator

__all__ = [
    "CallableCheck",
    "Check",
    "CheckReport",
    "CommandCheck",
    "GateEvaluator",
    "GateTarget",
    "SignatureCheck",
    "ThresholdCheck",
    "build_check",
    "build_checks",
]
