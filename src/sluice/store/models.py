"""SQLAlchemy models for the promotion store.

Each table keeps the indexed columns the store queries on plus the full
Pydantic document in a JSON column, so schema additions do not require a
migration of the indexed layout.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all store models."""

    pass


class ChangeModel(Base):
    """Current snapshot of a Change."""

    __tablename__ = "changes"

    change_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    state: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class PromotionRecordModel(Base):
    """Append-only audit entry. ``seq`` gives the commit order."""

    __tablename__ = "promotion_records"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    change_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    from_state: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_state: Mapped[str] = mapped_column(String(32), nullable=False)
    fast_track: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (Index("ix_records_change_seq", "change_id", "seq"),)


class ReleaseModel(Base):
    """ReleaseDescriptor keyed by version string."""

    __tablename__ = "releases"

    version: Mapped[str] = mapped_column(String(64), primary_key=True)
    major: Mapped[int] = mapped_column(Integer, nullable=False)
    minor: Mapped[int] = mapped_column(Integer, nullable=False)
    patch: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    change_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (Index("ix_releases_semver", "major", "minor", "patch"),)


class NamespaceModel(Base):
    """Ephemeral namespace keyed by its deterministic key."""

    __tablename__ = "namespaces"

    key: Mapped[str] = mapped_column(String(63), primary_key=True)
    change_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class LaneRequestModel(Base):
    """Production lane request.

    Requests are served in ``seq`` order; the lowest row of a lane is the only
    one that may hold it.
    """

    __tablename__ = "lane_requests"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lane: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    release_id: Mapped[str] = mapped_column(String(255), nullable=False)
    holder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (UniqueConstraint("lane", "release_id", name="uq_lane_release"),)


class ConfirmationModel(Base):
    """Production deployment awaiting, or holding, its ``deploy_result``."""

    __tablename__ = "deployment_confirmations"

    change_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    outcome: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )


__all__ = [
    "Base",
    "ChangeModel",
    "ConfirmationModel",
    "LaneRequestModel",
    "NamespaceModel",
    "PromotionRecordModel",
    "ReleaseModel",
]
