"""Promotion store backed by SQLAlchemy.

Persists Changes, PromotionRecords, ReleaseDescriptors and Namespaces so that
in-flight Changes resume from their last committed state after a restart. A
lifecycle transition is committed atomically: the new Change snapshot and its
PromotionRecord are written in one transaction.

The store is also the coordination point between processes sharing one
database: the production lane queue and pending deployment confirmations live
here. SQLite transactions start with ``BEGIN IMMEDIATE`` so a read-then-write
sequence holds the database write lock throughout; other backends lock the
head lane row with ``SELECT ... FOR UPDATE``.

Example:
    >>> store = PromotionStore.from_url("sqlite://")
    >>> store.get_change("PR-1") is None
    True
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import Engine, Select, create_engine, delete, event, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sluice.schemas.change import Change, LifecycleState
from sluice.schemas.environment import DeploymentOutcome, Namespace
from sluice.schemas.records import PromotionRecord
from sluice.schemas.release import ReleaseDescriptor, ReleaseStatus, SemanticVersion
from sluice.store.models import (
    Base,
    ChangeModel,
    ConfirmationModel,
    LaneRequestModel,
    NamespaceModel,
    PromotionRecordModel,
    ReleaseModel,
)

logger = structlog.get_logger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30.0


def create_store_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine for the store.

    In-memory SQLite databases share one connection across threads so every
    session sees the same data. SQLite transactions take the write lock when
    they begin.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    kwargs: dict[str, Any] = {
        "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
    }
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PromotionStore:
    """Synchronous repository for promotion state.

    Access is serialized with a process-local lock; each public method runs in
    its own transaction, so lane hand-off and confirmation delivery are atomic
    across processes too.

    Args:
        engine: SQLAlchemy engine. Tables are created if missing.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        self._lock = threading.RLock()
        self._log = logger.bind(component="promotion_store")
        Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str) -> PromotionStore:
        return cls(create_store_engine(url))

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._lock, self._sessions.begin() as session:
            yield session

    def close(self) -> None:
        self._engine.dispose()

    # -- Changes -------------------------------------------------------------

    def get_change(self, change_id: str) -> Change | None:
        with self._transaction() as session:
            row = session.get(ChangeModel, change_id)
            return Change.model_validate(row.document) if row else None

    def list_changes(self, states: Iterable[LifecycleState] | None = None) -> list[Change]:
        """Return Changes, optionally filtered by state, ordered by id."""
        stmt = select(ChangeModel).order_by(ChangeModel.change_id)
        if states is not None:
            stmt = stmt.where(ChangeModel.state.in_([s.value for s in states]))
        with self._transaction() as session:
            rows = session.scalars(stmt).all()
            return [Change.model_validate(row.document) for row in rows]

    def save_change(self, change: Change) -> None:
        with self._transaction() as session:
            session.merge(_change_row(change))

    def commit_transition(self, change: Change, record: PromotionRecord) -> None:
        """Persist a Change snapshot and its PromotionRecord atomically."""
        with self._transaction() as session:
            session.merge(_change_row(change))
            session.add(_record_row(record))
        self._log.debug(
            "transition_committed",
            change_id=change.change_id,
            to_state=record.to_state.value,
            event_id=record.event_id,
        )

    # -- PromotionRecords ----------------------------------------------------

    def has_event(self, event_id: str) -> bool:
        """True if any PromotionRecord was produced by ``event_id``."""
        stmt = select(PromotionRecordModel.seq).where(
            PromotionRecordModel.event_id == event_id
        )
        with self._transaction() as session:
            return session.scalars(stmt.limit(1)).first() is not None

    def records_for(self, change_id: str) -> list[PromotionRecord]:
        """Return the audit trail of a Change in commit order."""
        stmt = (
            select(PromotionRecordModel)
            .where(PromotionRecordModel.change_id == change_id)
            .order_by(PromotionRecordModel.seq)
        )
        with self._transaction() as session:
            return [PromotionRecord.model_validate(r.document) for r in session.scalars(stmt)]

    def records_for_event(self, event_id: str) -> list[PromotionRecord]:
        stmt = (
            select(PromotionRecordModel)
            .where(PromotionRecordModel.event_id == event_id)
            .order_by(PromotionRecordModel.seq)
        )
        with self._transaction() as session:
            return [PromotionRecord.model_validate(r.document) for r in session.scalars(stmt)]

    # -- Releases ------------------------------------------------------------

    def save_release(self, descriptor: ReleaseDescriptor) -> None:
        with self._transaction() as session:
            session.merge(
                ReleaseModel(
                    version=str(descriptor.version),
                    major=descriptor.version.major,
                    minor=descriptor.version.minor,
                    patch=descriptor.version.patch,
                    status=descriptor.status.value,
                    change_id=descriptor.change_id,
                    document=descriptor.model_dump(mode="json"),
                )
            )

    def get_release(self, version: str) -> ReleaseDescriptor | None:
        with self._transaction() as session:
            row = session.get(ReleaseModel, version)
            return ReleaseDescriptor.model_validate(row.document) if row else None

    def list_releases(self) -> list[ReleaseDescriptor]:
        """Return all descriptors, highest version first."""
        stmt = select(ReleaseModel).order_by(
            ReleaseModel.major.desc(), ReleaseModel.minor.desc(), ReleaseModel.patch.desc()
        )
        with self._transaction() as session:
            return [ReleaseDescriptor.model_validate(r.document) for r in session.scalars(stmt)]

    def head_version(self) -> SemanticVersion | None:
        """Highest version ever allocated, whatever its status."""
        return self._max_version(None)

    def last_released_version(self) -> SemanticVersion | None:
        """Highest version that reached production."""
        return self._max_version(ReleaseStatus.DEPLOYED)

    def _max_version(self, status: ReleaseStatus | None) -> SemanticVersion | None:
        stmt = select(ReleaseModel.major, ReleaseModel.minor, ReleaseModel.patch).order_by(
            ReleaseModel.major.desc(), ReleaseModel.minor.desc(), ReleaseModel.patch.desc()
        )
        if status is not None:
            stmt = stmt.where(ReleaseModel.status == status.value)
        with self._transaction() as session:
            row = session.execute(stmt.limit(1)).first()
        if row is None:
            return None
        return SemanticVersion(major=row.major, minor=row.minor, patch=row.patch)

    # -- Namespaces ----------------------------------------------------------

    def save_namespace(self, namespace: Namespace) -> None:
        with self._transaction() as session:
            session.merge(
                NamespaceModel(
                    key=namespace.key,
                    change_id=namespace.change_id,
                    status=namespace.status.value,
                    document=namespace.model_dump(mode="json"),
                )
            )

    def get_namespace(self, key: str) -> Namespace | None:
        with self._transaction() as session:
            row = session.get(NamespaceModel, key)
            return Namespace.model_validate(row.document) if row else None

    def list_namespaces(self) -> list[Namespace]:
        stmt = select(NamespaceModel).order_by(NamespaceModel.key)
        with self._transaction() as session:
            return [Namespace.model_validate(r.document) for r in session.scalars(stmt)]

    # -- Production lane -----------------------------------------------------

    def enqueue_lane(self, lane: str, release_id: str) -> bool:
        """Append ``release_id`` to the lane queue.

        Returns:
            False if the request was already queued (or holds the lane).
        """
        stmt = select(LaneRequestModel.seq).where(
            LaneRequestModel.lane == lane, LaneRequestModel.release_id == release_id
        )
        with self._transaction() as session:
            if session.scalars(stmt).first() is not None:
                return False
            session.add(LaneRequestModel(lane=lane, release_id=release_id, requested_at=_utc_now()))
            return True

    def try_acquire_lane(self, lane: str, release_id: str) -> bool:
        """Make ``release_id`` the lane holder if it heads the queue.

        Returns:
            True if ``release_id`` holds the lane after the call.
        """
        with self._transaction() as session:
            head = session.scalars(_lane_head(lane).with_for_update()).first()
            if head is None or head.release_id != release_id:
                return False
            head.holder = True
            return True

    def release_lane(self, lane: str, release_id: str) -> bool:
        """Remove the holder's request, letting the next request through.

        Returns:
            False if ``release_id`` was not the holder.
        """
        with self._transaction() as session:
            head = session.scalars(_lane_head(lane).with_for_update()).first()
            if head is None or not head.holder or head.release_id != release_id:
                return False
            session.delete(head)
            return True

    def withdraw_lane(self, lane: str, release_id: str) -> None:
        """Drop a queued request that stopped waiting."""
        with self._transaction() as session:
            session.execute(
                delete(LaneRequestModel).where(
                    LaneRequestModel.lane == lane,
                    LaneRequestModel.release_id == release_id,
                    LaneRequestModel.holder.is_(False),
                )
            )

    def lane_holder(self, lane: str) -> str | None:
        with self._transaction() as session:
            head = session.scalars(_lane_head(lane)).first()
            return head.release_id if head is not None and head.holder else None

    def lane_waiting(self, lane: str) -> list[str]:
        """Queued release ids in service order, excluding the holder."""
        stmt = (
            select(LaneRequestModel.release_id)
            .where(LaneRequestModel.lane == lane, LaneRequestModel.holder.is_(False))
            .order_by(LaneRequestModel.seq)
        )
        with self._transaction() as session:
            return list(session.scalars(stmt))

    # -- Deployment confirmations --------------------------------------------

    def open_confirmation(self, change_id: str) -> None:
        """Start awaiting a ``deploy_result`` for ``change_id``."""
        with self._transaction() as session:
            session.merge(
                ConfirmationModel(change_id=change_id, opened_at=_utc_now(), outcome=None)
            )

    def deliver_confirmation(self, change_id: str, outcome: DeploymentOutcome) -> bool:
        """Record the outcome of an awaited deployment.

        Returns:
            False if nothing awaits confirmation for ``change_id`` or an
            outcome was already delivered.
        """
        with self._transaction() as session:
            row = session.get(ConfirmationModel, change_id)
            if row is None or row.outcome is not None:
                return False
            row.outcome = outcome.model_dump(mode="json")
            return True

    def confirmation_outcome(self, change_id: str) -> DeploymentOutcome | None:
        with self._transaction() as session:
            row = session.get(ConfirmationModel, change_id)
            if row is None or row.outcome is None:
                return None
            return DeploymentOutcome.model_validate(row.outcome)

    def close_confirmation(self, change_id: str) -> None:
        with self._transaction() as session:
            session.execute(
                delete(ConfirmationModel).where(ConfirmationModel.change_id == change_id)
            )

    def awaiting_confirmation(self) -> list[str]:
        """Change ids whose production deployment awaits a ``deploy_result``."""
        stmt = (
            select(ConfirmationModel.change_id)
            .where(ConfirmationModel.outcome.is_(None))
            .order_by(ConfirmationModel.change_id)
        )
        with self._transaction() as session:
            return list(session.scalars(stmt))


def _lane_head(lane: str) -> Select[tuple[LaneRequestModel]]:
    return (
        select(LaneRequestModel)
        .where(LaneRequestModel.lane == lane)
        .order_by(LaneRequestModel.seq)
        .limit(1)
    )


def _change_row(change: Change) -> ChangeModel:
    return ChangeModel(
        change_id=change.change_id,
        state=change.state.value,
        generation=change.generation,
        updated_at=change.updated_at,
        document=change.model_dump(mode="json"),
    )


def _record_row(record: PromotionRecord) -> PromotionRecordModel:
    return PromotionRecordModel(
        record_id=str(record.record_id),
        change_id=record.change_id,
        event_id=record.event_id,
        from_state=record.from_state.value if record.from_state else None,
        to_state=record.to_state.value,
        fast_track=record.fast_track,
        timestamp=record.timestamp,
        document=record.model_dump(mode="json"),
    )


__all__ = ["PromotionStore", "create_store_engine"]
