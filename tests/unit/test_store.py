"""Unit tests for the SQLAlchemy promotion store."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from sluice.schemas import (
    Change,
    DeploymentOutcome,
    EventType,
    LifecycleState,
    PromotionRecord,
    ReleaseDescriptor,
    ReleaseStatus,
    SemanticVersion,
    VersionBump,
)
from sluice.store import PromotionStore

NOW = datetime(2026, 2, 1, tzinfo=timezone.utc)


def _change(change_id: str, state: LifecycleState = LifecycleState.OPENED) -> Change:
    return Change(change_id=change_id, state=state, created_at=NOW)


def _record(
    change_id: str,
    to_state: LifecycleState,
    event_id: str,
    from_state: LifecycleState | None = None,
) -> PromotionRecord:
    return PromotionRecord(
        change_id=change_id,
        from_state=from_state,
        to_state=to_state,
        event_id=event_id,
        event_type=EventType.PR_OPENED,
        timestamp=NOW,
    )


def _append(store: PromotionStore, record: PromotionRecord) -> None:
    store.commit_transition(_change(record.change_id, record.to_state), record)


def _release(version: str, status: ReleaseStatus = ReleaseStatus.PENDING) -> ReleaseDescriptor:
    return ReleaseDescriptor(
        version=SemanticVersion.parse(version),
        previous_version=SemanticVersion.parse("0.0.0"),
        bump=VersionBump.PATCH,
        status=status,
        change_id="PR-1",
    )


class TestChanges:
    """Tests for Change persistence."""

    def test_missing_change_is_none(self, store: PromotionStore) -> None:
        assert store.get_change("PR-404") is None

    def test_save_and_get_round_trip(self, store: PromotionStore) -> None:
        change = _change("PR-1").model_copy(update={"namespace_key": "pr-pr-1-abc"})

        store.save_change(change)

        assert store.get_change("PR-1") == change

    def test_save_overwrites_snapshot(self, store: PromotionStore) -> None:
        store.save_change(_change("PR-1"))
        store.save_change(_change("PR-1", LifecycleState.LINTED))

        stored = store.get_change("PR-1")
        assert stored is not None
        assert stored.state is LifecycleState.LINTED

    def test_list_changes_filters_by_state(self, store: PromotionStore) -> None:
        store.save_change(_change("PR-2", LifecycleState.MERGED))
        store.save_change(_change("PR-1", LifecycleState.OPENED))
        store.save_change(_change("PR-3", LifecycleState.RELEASED))

        assert [c.change_id for c in store.list_changes()] == ["PR-1", "PR-2", "PR-3"]
        merged = store.list_changes([LifecycleState.MERGED, LifecycleState.RELEASED])
        assert [c.change_id for c in merged] == ["PR-2", "PR-3"]


class TestRecords:
    """Tests for the audit trail."""

    def test_commit_transition_writes_both(self, store: PromotionStore) -> None:
        change = _change("PR-1", LifecycleState.LINTED)
        record = _record("PR-1", LifecycleState.LINTED, "evt-1", LifecycleState.OPENED)

        store.commit_transition(change, record)

        assert store.get_change("PR-1") == change
        assert store.records_for("PR-1") == [record]

    def test_has_event(self, store: PromotionStore) -> None:
        _append(store, _record("PR-1", LifecycleState.OPENED, "evt-1"))

        assert store.has_event("evt-1") is True
        assert store.has_event("evt-2") is False

    def test_records_keep_commit_order(self, store: PromotionStore) -> None:
        states = [LifecycleState.OPENED, LifecycleState.LINTED, LifecycleState.TESTED]
        for i, state in enumerate(states):
            _append(store, _record("PR-1", state, f"evt-{i}"))
        _append(store, _record("PR-2", LifecycleState.OPENED, "evt-x"))

        assert [r.to_state for r in store.records_for("PR-1")] == states
        assert [r.event_id for r in store.records_for("PR-2")] == ["evt-x"]

    def test_records_for_event(self, store: PromotionStore) -> None:
        _append(store, _record("PR-1", LifecycleState.OPENED, "evt-1"))
        _append(store, _record("PR-1", LifecycleState.LINTED, "evt-1"))
        _append(store, _record("PR-1", LifecycleState.TESTED, "evt-2"))

        assert [r.to_state for r in store.records_for_event("evt-1")] == [
            LifecycleState.OPENED,
            LifecycleState.LINTED,
        ]


class TestReleases:
    """Tests for release descriptors and version queries."""

    def test_empty_store_has_no_versions(self, store: PromotionStore) -> None:
        assert store.head_version() is None
        assert store.last_released_version() is None

    def test_head_version_counts_every_status(self, store: PromotionStore) -> None:
        store.save_release(_release("0.1.0", ReleaseStatus.DEPLOYED))
        store.save_release(_release("0.2.0", ReleaseStatus.PENDING))

        assert str(store.head_version()) == "0.2.0"
        assert str(store.last_released_version()) == "0.1.0"

    def test_versions_compare_numerically(self, store: PromotionStore) -> None:
        store.save_release(_release("0.9.0", ReleaseStatus.DEPLOYED))
        store.save_release(_release("0.10.0", ReleaseStatus.DEPLOYED))

        assert str(store.last_released_version()) == "0.10.0"
        assert [str(r.version) for r in store.list_releases()] == ["0.10.0", "0.9.0"]

    def test_save_release_updates_status(self, store: PromotionStore) -> None:
        store.save_release(_release("1.0.0"))
        store.save_release(_release("1.0.0", ReleaseStatus.MERGED))

        stored = store.get_release("1.0.0")
        assert stored is not None
        assert stored.status is ReleaseStatus.MERGED
        assert len(store.list_releases()) == 1


class TestLaneQueue:
    """Tests for the persisted production lane queue."""

    def test_head_of_queue_acquires(self, store: PromotionStore) -> None:
        assert store.enqueue_lane("production", "a") is True
        assert store.enqueue_lane("production", "b") is True

        assert store.try_acquire_lane("production", "b") is False
        assert store.try_acquire_lane("production", "a") is True
        assert store.lane_holder("production") == "a"
        assert store.lane_waiting("production") == ["b"]

    def test_enqueue_is_idempotent(self, store: PromotionStore) -> None:
        store.enqueue_lane("production", "a")

        assert store.enqueue_lane("production", "a") is False
        assert store.lane_waiting("production") == ["a"]

    def test_release_hands_over_in_order(self, store: PromotionStore) -> None:
        for release_id in ("a", "b", "c"):
            store.enqueue_lane("production", release_id)
        store.try_acquire_lane("production", "a")

        assert store.release_lane("production", "b") is False
        assert store.release_lane("production", "a") is True
        assert store.lane_holder("production") is None
        assert store.try_acquire_lane("production", "b") is True

    def test_withdraw_keeps_holder(self, store: PromotionStore) -> None:
        store.enqueue_lane("production", "a")
        store.enqueue_lane("production", "b")
        store.try_acquire_lane("production", "a")

        store.withdraw_lane("production", "a")
        store.withdraw_lane("production", "b")

        assert store.lane_holder("production") == "a"
        assert store.lane_waiting("production") == []

    def test_lanes_are_independent(self, store: PromotionStore) -> None:
        store.enqueue_lane("production", "a")
        store.enqueue_lane("canary", "b")

        assert store.try_acquire_lane("canary", "b") is True
        assert store.lane_holder("production") is None


class TestConfirmations:
    """Tests for persisted deployment confirmations."""

    def test_deliver_requires_open_slot(self, store: PromotionStore) -> None:
        assert store.deliver_confirmation("PR-1", DeploymentOutcome(success=True)) is False

    def test_deliver_once(self, store: PromotionStore) -> None:
        store.open_confirmation("PR-1")
        assert store.awaiting_confirmation() == ["PR-1"]

        assert store.deliver_confirmation("PR-1", DeploymentOutcome(success=True, detail="ok"))
        assert not store.deliver_confirmation("PR-1", DeploymentOutcome(success=False))
        assert store.confirmation_outcome("PR-1") == DeploymentOutcome(success=True, detail="ok")
        assert store.awaiting_confirmation() == []

    def test_close_discards_slot(self, store: PromotionStore) -> None:
        store.open_confirmation("PR-1")

        store.close_confirmation("PR-1")

        assert store.confirmation_outcome("PR-1") is None
        assert store.awaiting_confirmation() == []


class TestDurability:
    def test_state_survives_reopen(self, tmp_path: Path) -> None:
        url = f"sqlite:///{tmp_path / 'sluice.db'}"
        first = PromotionStore.from_url(url)
        first.commit_transition(
            _change("PR-1", LifecycleState.MERGED),
            _record("PR-1", LifecycleState.MERGED, "evt-1"),
        )
        first.close()

        second = PromotionStore.from_url(url)
        try:
            change = second.get_change("PR-1")
            assert change is not None
            assert change.state is LifecycleState.MERGED
            assert second.has_event("evt-1")
        finally:
            second.close()

    @pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
    def test_in_memory_store_is_shared_across_threads(self, url: str) -> None:
        store = PromotionStore.from_url(url)
        thread = threading.Thread(target=lambda: store.save_change(_change("PR-1")))
        thread.start()
        thread.join()

        assert store.get_change("PR-1") is not None
        store.close()

    def test_handles_on_one_file_share_lane_and_confirmations(self, tmp_path: Path) -> None:
        url = f"sqlite:///{tmp_path / 'sluice.db'}"
        first = PromotionStore.from_url(url)
        second = PromotionStore.from_url(url)
        try:
            first.enqueue_lane("production", "a")
            first.try_acquire_lane("production", "a")
            second.enqueue_lane("production", "b")
            first.open_confirmation("PR-1")

            assert second.try_acquire_lane("production", "b") is False
            assert second.deliver_confirmation("PR-1", DeploymentOutcome(success=True))
            assert first.confirmation_outcome("PR-1") is not None

            first.release_lane("production", "a")
            assert second.try_acquire_lane("production", "b") is True
        finally:
            first.close()
            second.close()
