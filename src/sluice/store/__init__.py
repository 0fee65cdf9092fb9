"""Persistence for promotion state (SQLAlchemy)."""

from __future__ import annotations

from sluice.store.repository import PromotionStore, create_store_engine

__all__ = ["PromotionStore", "create_store_engine"]
