"""Tracing and logging for sluice.

Key Components:
    create_span, traced: OpenTelemetry spans around promotion operations
    configure_logging, add_trace_context: structlog setup with trace correlation
"""

from __future__ import annotations

from sluice.telemetry.logging import add_trace_context, configure_logging
from sluice.telemetry.tracing import (
    create_span,
    get_tracer,
    sanitize_error_message,
    set_tracer,
    traced,
)

__all__ = [
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_tracer",
    "sanitize_error_message",
    "set_tracer",
    "traced",
]
