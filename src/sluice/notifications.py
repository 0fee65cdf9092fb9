"""Notification dispatch.

The state machine emits a NotificationRecord for every start, success and
failure; rendering and delivery belong to the sink. Sink errors are logged and
never fail a promotion.

Key Components:
    NotificationSink: Protocol implemented by every sink
    LogNotificationSink: Emits records as structured log events
    InMemoryNotificationSink: Collects records (tests, CLI output)
    WebhookNotificationSink: POSTs records as JSON with retry
    CompositeNotificationSink: Fans out to several sinks
    dispatch: Deliver a record to a sink, swallowing sink errors

Example:
    >>> sink = InMemoryNotificationSink()
    >>> dispatch(sink, record)
    >>> sink.records[-1].status
    <NotificationStatus.FAILURE: 'failure'>
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from sluice.config import WebhookConfig
from sluice.schemas.records import NotificationRecord, NotificationStatus
from sluice.telemetry.tracing import create_span, sanitize_error_message

logger = structlog.get_logger(__name__)

BACKOFF_BASE_SECONDS = 1.0
"""Base delay for webhook retries (doubles each retry)."""


class NotificationSink(Protocol):
    """Receives lifecycle notifications."""

    def send(self, record: NotificationRecord) -> None: ...


class LogNotificationSink:
    """Writes notifications to the structured log."""

    def send(self, record: NotificationRecord) -> None:
        log = logger.warning if record.status is NotificationStatus.FAILURE else logger.info
        log(
            "notification",
            change_id=record.change_id,
            stage=record.stage,
            status=record.status.value,
            detail=record.detail,
            fast_track=record.fast_track,
        )


class InMemoryNotificationSink:
    """Thread-safe collector of notification records."""

    def __init__(self) -> None:
        self._records: list[NotificationRecord] = []
        self._lock = threading.Lock()

    def send(self, record: NotificationRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> list[NotificationRecord]:
        with self._lock:
            return list(self._records)

    def for_change(self, change_id: str) -> list[NotificationRecord]:
        return [r for r in self.records if r.change_id == change_id]

    def failures(self) -> list[NotificationRecord]:
        return [r for r in self.records if r.status is NotificationStatus.FAILURE]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class WebhookDeliveryResult(BaseModel):
    """Result of a webhook delivery attempt.

    Attributes:
        success: Whether the record was delivered.
        status_code: Last HTTP status code, if a response was received.
        url: Target URL.
        error: Last error, if delivery failed.
        attempts: Number of attempts made.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    status_code: int | None = None
    url: str
    error: str | None = None
    attempts: int = Field(default=1, ge=1)


class WebhookNotificationSink:
    """POSTs notification records to a webhook endpoint.

    Server errors, timeouts and transport errors are retried with exponential
    backoff; client errors are not.

    Args:
        config: Endpoint, headers, timeout, retry count and status filter.
        client: Optional pre-built httpx.Client (tests use httpx.MockTransport).
        sleep: Sleep function, replaceable in tests.
    """

    def __init__(
        self,
        config: WebhookConfig,
        *,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._client = client
        self._sleep = sleep

    def should_send(self, record: NotificationRecord) -> bool:
        return record.status.value in self.config.statuses

    @staticmethod
    def build_payload(record: NotificationRecord) -> dict[str, Any]:
        return {"event_type": "sluice.notification", **record.model_dump(mode="json")}

    def send(self, record: NotificationRecord) -> None:
        if self.should_send(record):
            self.deliver(record)

    def deliver(self, record: NotificationRecord) -> WebhookDeliveryResult:
        """Deliver one record, retrying transient failures."""
        url = self.config.url
        max_attempts = 1 + self.config.retry_count
        payload = self.build_payload(record)
        last_status: int | None = None
        last_error: str | None = None

        with create_span(
            "sluice.webhook.notify",
            attributes={"sluice.change_id": record.change_id, "sluice.stage": record.stage},
        ) as span:
            for attempt in range(1, max_attempts + 1):
                retryable = True
                try:
                    response = self._post(url, payload)
                    last_status = response.status_code
                    if response.status_code < 400:
                        span.set_attribute("sluice.webhook.attempts", attempt)
                        logger.info(
                            "webhook_notification_sent",
                            url=url,
                            change_id=record.change_id,
                            status_code=response.status_code,
                            attempts=attempt,
                        )
                        return WebhookDeliveryResult(
                            success=True,
                            status_code=response.status_code,
                            url=url,
                            attempts=attempt,
                        )
                    if response.status_code >= 500:
                        last_error = f"Server error: {response.status_code}"
                    else:
                        last_error = f"Client error: {response.status_code}"
                        retryable = False
                except httpx.TimeoutException:
                    last_error = "Request timed out"
                except httpx.RequestError as e:
                    last_error = sanitize_error_message(str(e))

                if not retryable or attempt == max_attempts:
                    return self._failed(url, last_status, last_error, attempt)

                backoff = BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    "webhook_notification_retry",
                    url=url,
                    error=last_error,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    backoff_seconds=backoff,
                )
                self._sleep(backoff)

        return self._failed(url, last_status, last_error, max_attempts)  # pragma: no cover

    def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        headers = self.config.headers or {}
        if self._client is not None:
            return self._client.post(url, json=payload, headers=headers)
        with httpx.Client(timeout=self.config.timeout_seconds) as client:
            return client.post(url, json=payload, headers=headers)

    @staticmethod
    def _failed(
        url: str,
        status_code: int | None,
        error: str | None,
        attempts: int,
    ) -> WebhookDeliveryResult:
        logger.error(
            "webhook_notification_failed",
            url=url,
            status_code=status_code,
            error=error,
            attempts=attempts,
        )
        return WebhookDeliveryResult(
            success=False,
            status_code=status_code,
            url=url,
            error=error,
            attempts=attempts,
        )


class CompositeNotificationSink:
    """Delivers each record to every sink, isolating sink failures."""

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self.sinks = list(sinks)

    def send(self, record: NotificationRecord) -> None:
        for sink in self.sinks:
            dispatch(sink, record)


def dispatch(sink: NotificationSink, record: NotificationRecord) -> None:
    """Send ``record`` to ``sink``; sink errors are logged, never raised."""
    try:
        sink.send(record)
    except Exception as e:
        logger.error(
            "notification_dispatch_failed",
            sink=type(sink).__name__,
            change_id=record.change_id,
            stage=record.stage,
            error=sanitize_error_message(str(e)),
        )


def build_sink(webhooks: Sequence[WebhookConfig]) -> NotificationSink:
    """Log sink plus one webhook sink per configured endpoint."""
    sinks: list[NotificationSink] = [LogNotificationSink()]
    sinks.extend(WebhookNotificationSink(w) for w in webhooks)
    return CompositeNotificationSink(sinks) if len(sinks) > 1 else sinks[0]


__all__ = [
    "CompositeNotificationSink",
    "InMemoryNotificationSink",
    "LogNotificationSink",
    "NotificationSink",
    "WebhookDeliveryResult",
    "WebhookNotificationSink",
    "build_sink",
    "dispatch",
]
