"""Change lifecycle schemas.

Defines the Change under promotion, its commits, and the lifecycle states the
promotion state machine drives it through.

Key Components:
    LifecycleState: Promotion lifecycle states (Opened ... Released, Failed, Closed)
    CommitClassification: Conventional-commit classification (fix, feature, breaking, other)
    CommitRecord: A single commit with its classification
    Change: A proposed unit of work tracked through the lifecycle
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

# =============================================================================
# Enums
# =============================================================================


class LifecycleState(str, Enum):
    """Promotion lifecycle states.

    The forward path is Opened -> Linted -> Tested -> EphemeralDeployed ->
    MergeReady -> Merged -> StagingDeployed -> ReleasePending -> ReleaseMerged
    -> ProductionDeploying -> Released. Failed is reachable from any
    non-terminal state and Closed from any state when the Change is abandoned.

    Examples:
        >>> LifecycleState.MERGE_READY.value
        'MergeReady'
    """

    OPENED = "Opened"
    LINTED = "Linted"
    TESTED = "Tested"
    EPHEMERAL_DEPLOYED = "EphemeralDeployed"
    MERGE_READY = "MergeReady"
    MERGED = "Merged"
    STAGING_DEPLOYED = "StagingDeployed"
    RELEASE_PENDING = "ReleasePending"
    RELEASE_MERGED = "ReleaseMerged"
    PRODUCTION_DEPLOYING = "ProductionDeploying"
    RELEASED = "Released"
    FAILED = "Failed"
    CLOSED = "Closed"

    @property
    def is_pre_merge(self) -> bool:
        """True for states before the merge point."""
        return self in PRE_MERGE_STATES

    @property
    def is_terminal(self) -> bool:
        """True for Released, Failed and Closed."""
        return self in (
            LifecycleState.RELEASED,
            LifecycleState.FAILED,
            LifecycleState.CLOSED,
        )


PRE_MERGE_STATES = frozenset(
    {
        LifecycleState.OPENED,
        LifecycleState.LINTED,
        LifecycleState.TESTED,
        LifecycleState.EPHEMERAL_DEPLOYED,
        LifecycleState.MERGE_READY,
    }
)


class CommitClassification(str, Enum):
    """Conventional-commit classification of a single commit.

    Precedence for version bumps is fixed: breaking > feature > fix > other.

    Examples:
        >>> CommitClassification("feature")
        <CommitClassification.FEATURE: 'feature'>
    """

    FIX = "fix"
    FEATURE = "feature"
    BREAKING = "breaking"
    OTHER = "other"


# =============================================================================
# Pydantic Models
# =============================================================================


class CommitRecord(BaseModel):
    """A commit on a Change with its classification.

    Attributes:
        sha: Commit identifier.
        message: Full commit message.
        classification: Conventional-commit classification.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    sha: str = Field(..., min_length=1, description="Commit identifier")
    message: str = Field(default="", description="Full commit message")
    classification: CommitClassification = Field(
        default=CommitClassification.OTHER,
        description="Conventional-commit classification",
    )

    @property
    def subject(self) -> str:
        """First line of the commit message."""
        return self.message.splitlines()[0] if self.message else ""


class Change(BaseModel):
    """A proposed unit of work (branch or pull request) under promotion.

    Changes are immutable snapshots; the state machine produces the next
    snapshot with ``model_copy(update=...)`` and persists it together with the
    PromotionRecord describing the transition.

    Attributes:
        change_id: Unique Change identifier.
        source_branch: Branch the work lives on.
        target_branch: Branch the work merges into.
        commits: Ordered commits on the Change.
        state: Current lifecycle state.
        created_at: When the Change was first reported.
        updated_at: When the Change last transitioned.
        generation: Incremented each time a closed Change id is reopened.
        namespace_key: Key of the bound ephemeral namespace, if any.
        route: Host binding of the ephemeral namespace, if any.
        merged_at: When the Change merged (one-way).
        fast_track: True while a fast-track run owns the Change.
        blocked_reason: Why the release candidate is blocked (staging failure).
        release_version: Version of the ReleaseDescriptor cut for this Change.
        failure_detail: Diagnostic for the last failure.

    Examples:
        >>> change = Change(
        ...     change_id="PR-42",
        ...     source_branch="feature/login",
        ...     created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        ... )
        >>> change.state
        <LifecycleState.OPENED: 'Opened'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    change_id: str = Field(..., min_length=1, description="Unique Change identifier")
    source_branch: str = Field(default="", description="Source branch name")
    target_branch: str = Field(default="main", description="Target branch name")
    commits: list[CommitRecord] = Field(
        default_factory=list,
        description="Ordered commits on the Change",
    )
    state: LifecycleState = Field(
        default=LifecycleState.OPENED,
        description="Current lifecycle state",
    )
    created_at: datetime = Field(..., description="When the Change was reported")
    updated_at: datetime | None = Field(
        default=None,
        description="When the Change last transitioned",
    )
    generation: int = Field(default=1, ge=1, description="Reopen counter")
    namespace_key: str | None = Field(default=None, description="Bound namespace key")
    route: str | None = Field(default=None, description="Namespace host binding")
    merged_at: datetime | None = Field(default=None, description="Merge time")
    fast_track: bool = Field(default=False, description="Fast-track run in progress")
    blocked_reason: str | None = Field(
        default=None,
        description="Why the release candidate is blocked",
    )
    release_version: str | None = Field(
        default=None,
        description="Version of the ReleaseDescriptor for this Change",
    )
    failure_detail: str | None = Field(
        default=None,
        description="Diagnostic for the last failure",
    )

    @field_validator("change_id")
    @classmethod
    def validate_change_id(cls, v: str) -> str:
        """Reject identifiers that are blank after stripping."""
        if not v.strip():
            raise ValueError("change_id must not be blank")
        return v

    @property
    def has_merged(self) -> bool:
        """True once the Change passed the one-way merge transition."""
        return self.merged_at is not None

    @property
    def head_sha(self) -> str | None:
        """Sha of the most recent commit, if any."""
        return self.commits[-1].sha if self.commits else None


__all__ = [
    "PRE_MERGE_STATES",
    "Change",
    "CommitClassification",
    "CommitRecord",
    "LifecycleState",
]
