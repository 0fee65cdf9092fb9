"""Ephemeral namespace management.

Every open Change gets an isolated namespace with a deterministic key and a
route. Keys are unique across simultaneously open Changes; a reopened Change
reuses its key only after the previous namespace has been destroyed.

Key Components:
    namespace_key: Deterministic DNS-1123 label from a Change id
    Provisioner: Protocol for creating and destroying namespace resources
    NullProvisioner: Logs only
    CommandProvisioner: Runs configured create/destroy commands
    NamespaceManager: Idempotent provision and teardown with conflict detection

Example:
    >>> namespace_key("PR-42").startswith("pr-pr-42-")
    True
"""

from __future__ import annotations

import hashlib
import re
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol

import structlog

from sluice.commands import run_or_raise
from sluice.config import NamespaceConfig
from sluice.errors import ConflictError
from sluice.resilience import RetryPolicy
from sluice.schemas.environment import Namespace, NamespaceStatus
from sluice.store import PromotionStore

logger = structlog.get_logger(__name__)

MAX_KEY_LENGTH = 63
_DIGEST_LENGTH = 8
_INVALID_CHARS = re.compile(r"[^a-z0-9]+")


def namespace_key(change_id: str, prefix: str = "pr") -> str:
    """Derive the namespace key for a Change id.

    The key is ``{prefix}-{slug}-{digest}``: a readable slug of the id plus
    the first 8 hex characters of its SHA-256, truncated to a valid DNS-1123
    label. Distinct ids that slug identically still get distinct keys.

    Examples:
        >>> namespace_key("feature/Login").startswith("pr-feature-login-")
        True
        >>> namespace_key("a") == namespace_key("a")
        True
    """
    digest = hashlib.sha256(change_id.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    slug = _INVALID_CHARS.sub("-", change_id.lower()).strip("-")
    budget = MAX_KEY_LENGTH - len(prefix) - len(digest) - 2
    slug = slug[:budget].rstrip("-")
    if not slug:
        return f"{prefix}-{digest}"
    return f"{prefix}-{slug}-{digest}"


class Provisioner(Protocol):
    """Creates and destroys the resources behind a namespace.

    Implementations raise InfrastructureError when the platform cannot be
    reached; the manager retries.
    """

    def create(self, namespace: Namespace) -> None: ...

    def destroy(self, namespace: Namespace) -> None: ...


class NullProvisioner:
    """Provisioner that only logs. Used when no commands are configured."""

    def create(self, namespace: Namespace) -> None:
        logger.info("namespace_create_skipped", key=namespace.key, route=namespace.route)

    def destroy(self, namespace: Namespace) -> None:
        logger.info("namespace_destroy_skipped", key=namespace.key)


class CommandProvisioner:
    """Runs the configured create and destroy commands.

    Commands may reference ``${NAMESPACE}``, ``${ROUTE}`` and ``${CHANGE_ID}``.
    """

    def __init__(
        self,
        create_command: str | None,
        destroy_command: str | None,
        *,
        timeout: float | None = None,
    ) -> None:
        self.create_command = create_command
        self.destroy_command = destroy_command
        self.timeout = timeout

    @staticmethod
    def _substitutions(namespace: Namespace) -> dict[str, str]:
        return {
            "NAMESPACE": namespace.key,
            "ROUTE": namespace.route,
            "CHANGE_ID": namespace.change_id,
        }

    def create(self, namespace: Namespace) -> None:
        if self.create_command:
            run_or_raise(
                self.create_command,
                self._substitutions(namespace),
                component="namespace provisioner",
                timeout=self.timeout,
            )

    def destroy(self, namespace: Namespace) -> None:
        if self.destroy_command:
            run_or_raise(
                self.destroy_command,
                self._substitutions(namespace),
                component="namespace provisioner",
                timeout=self.timeout,
            )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NamespaceManager:
    """Provision and tear down ephemeral namespaces.

    Namespace state is persisted in the PromotionStore so that ownership
    survives restarts. Operations on one key are serialized; different keys
    provision and tear down independently.

    Args:
        store: Persistence for namespace state.
        provisioner: Creates and destroys the underlying resources.
        config: Key prefix and route domain.
        retry_policy: Applied to provisioner calls.
        clock: Time source.
    """

    def __init__(
        self,
        store: PromotionStore,
        provisioner: Provisioner | None = None,
        config: NamespaceConfig | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._provisioner = provisioner or NullProvisioner()
        self._config = config or NamespaceConfig()
        self._retry = retry_policy or RetryPolicy()
        self._clock = clock
        self._guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._log = logger.bind(component="namespace_manager")

    @property
    def store(self) -> PromotionStore:
        return self._store

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def key_for(self, change_id: str) -> str:
        return namespace_key(change_id, self._config.prefix)

    def route_for(self, key: str) -> str:
        return f"{key}.{self._config.base_domain}"

    def get(self, key: str) -> Namespace | None:
        return self._store.get_namespace(key)

    def live(self) -> list[Namespace]:
        """Namespaces that still hold resources."""
        return [ns for ns in self._store.list_namespaces() if ns.status.is_live]

    def provision(self, key: str, change_id: str) -> Namespace:
        """Provision the namespace ``key`` for ``change_id``.

        Idempotent for the same owner: an active namespace is returned as is,
        and one left provisioning by an interrupted attempt is resumed.

        Raises:
            ConflictError: If the key is live for another Change or is still
                tearing down.
            InfrastructureError: If provisioning fails after retries.
        """
        with self._lock_for(key):
            existing = self._store.get_namespace(key)
            if existing is not None and existing.status.is_live:
                if existing.change_id != change_id:
                    raise ConflictError(key, existing.change_id)
                if existing.status is NamespaceStatus.TEARING_DOWN:
                    raise ConflictError(key, existing.change_id, "teardown in progress")
                if existing.status is NamespaceStatus.ACTIVE:
                    self._log.debug("namespace_reused", key=key, change_id=change_id)
                    return existing
                namespace = existing
            else:
                namespace = Namespace(
                    key=key,
                    change_id=change_id,
                    route=self.route_for(key),
                    created_at=self._clock(),
                    status=NamespaceStatus.PROVISIONING,
                )
                self._store.save_namespace(namespace)

            self._log.info("namespace_provisioning", key=key, change_id=change_id)
            self._retry.call(
                lambda: self._provisioner.create(namespace),
                operation="namespace.create",
            )
            namespace = namespace.model_copy(update={"status": NamespaceStatus.ACTIVE})
            self._store.save_namespace(namespace)
            self._log.info("namespace_active", key=key, route=namespace.route)
            return namespace

    def teardown(self, key: str) -> Namespace | None:
        """Release the namespace's resources.

        No-op when the namespace is absent or already destroyed. A failed
        teardown leaves the namespace tearing down so that it can be retried.

        Returns:
            The destroyed namespace, or None when there was nothing to do.

        Raises:
            InfrastructureError: If teardown fails after retries.
        """
        with self._lock_for(key):
            existing = self._store.get_namespace(key)
            if existing is None or not existing.status.is_live:
                self._log.debug("namespace_teardown_noop", key=key)
                return None

            tearing = existing.model_copy(update={"status": NamespaceStatus.TEARING_DOWN})
            self._store.save_namespace(tearing)
            self._log.info("namespace_tearing_down", key=key, change_id=existing.change_id)
            self._retry.call(
                lambda: self._provisioner.destroy(tearing),
                operation="namespace.destroy",
            )
            destroyed = tearing.model_copy(update={"status": NamespaceStatus.DESTROYED})
            self._store.save_namespace(destroyed)
            self._log.info("namespace_destroyed", key=key)
            return destroyed


__all__ = [
    "CommandProvisioner",
    "NamespaceManager",
    "NullProvisioner",
    "Provisioner",
    "namespace_key",
]
