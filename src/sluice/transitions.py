"""Allowed lifecycle transitions.

Every transition the promotion state machine commits is checked against this
table. ``Failed`` is reachable from every non-terminal state and ``Closed``
from every state except ``ProductionDeploying``, which must run to
completion. ``Opened`` is re-entered when new commits arrive before the merge
and when a closed Change id is reopened.
"""

from __future__ import annotations

from sluice.errors import InvalidTransitionError
from sluice.schemas.change import PRE_MERGE_STATES, LifecycleState

S = LifecycleState

_FORWARD: dict[LifecycleState, frozenset[LifecycleState]] = {
    S.OPENED: frozenset({S.LINTED}),
    S.LINTED: frozenset({S.TESTED}),
    S.TESTED: frozenset({S.EPHEMERAL_DEPLOYED}),
    S.EPHEMERAL_DEPLOYED: frozenset({S.MERGE_READY}),
    S.MERGE_READY: frozenset({S.MERGED}),
    S.MERGED: frozenset({S.STAGING_DEPLOYED}),
    S.STAGING_DEPLOYED: frozenset({S.RELEASE_PENDING}),
    S.RELEASE_PENDING: frozenset({S.RELEASE_MERGED}),
    S.RELEASE_MERGED: frozenset({S.PRODUCTION_DEPLOYING}),
    S.PRODUCTION_DEPLOYING: frozenset({S.RELEASED}),
    S.RELEASED: frozenset(),
    S.FAILED: frozenset({S.OPENED}),
    S.CLOSED: frozenset({S.OPENED}),
}


def _build_table() -> dict[LifecycleState, frozenset[LifecycleState]]:
    table: dict[LifecycleState, frozenset[LifecycleState]] = {}
    for state, forward in _FORWARD.items():
        allowed = set(forward)
        if not state.is_terminal:
            allowed.add(S.FAILED)
        if state is not S.PRODUCTION_DEPLOYING and state is not S.CLOSED:
            allowed.add(S.CLOSED)
        if state in PRE_MERGE_STATES:
            allowed.add(S.OPENED)
        table[state] = frozenset(allowed)
    return table


ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = _build_table()


def can_transition(current: LifecycleState | None, nxt: LifecycleState) -> bool:
    """True if ``current -> nxt`` is allowed. ``None`` means the Change is new."""
    if current is None:
        return nxt is S.OPENED
    return nxt in ALLOWED_TRANSITIONS[current]


def require_transition(
    change_id: str,
    current: LifecycleState | None,
    nxt: LifecycleState,
) -> None:
    """Raise InvalidTransitionError unless ``current -> nxt`` is allowed."""
    if not can_transition(current, nxt):
        raise InvalidTransitionError(
            change_id,
            current.value if current else "<new>",
            nxt.value,
        )


__all__ = ["ALLOWED_TRANSITIONS", "can_transition", "require_transition"]
