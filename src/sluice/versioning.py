"""Versioning engine: commit classification to semantic release.

Classifies the commits since the last release point into a semantic version
bump and produces the next ReleaseDescriptor. The computation is pure and
replayable: the only inputs are the commit list, the last version and the
timestamp handed in by the caller.

Bump Rules:
    - major if any commit is breaking
    - else minor if any commit is a feature
    - else patch if any commit is a fix
    - else no release (None)

Precedence is fixed (breaking > feature > fix > other) regardless of commit
order.

Example:
    >>> from sluice.schemas.change import CommitClassification as C
    >>> determine_bump([C.FIX, C.FEATURE])
    <VersionBump.MINOR: 'minor'>
    >>> next_version("1.2.3", [C.FEATURE, C.BREAKING])
    '2.0.0'
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import datetime

import structlog

from sluice.schemas.change import CommitClassification, CommitRecord
from sluice.schemas.release import (
    ChangelogEntry,
    ReleaseDescriptor,
    ReleaseStatus,
    SemanticVersion,
    VersionBump,
)
from sluice.telemetry.tracing import traced

logger = structlog.get_logger(__name__)

# type(scope)!: subject
_HEADER_PATTERN = re.compile(r"^(?P<type>[a-zA-Z]+)(?:\([^)]*\))?(?P<bang>!)?:\s*\S")
_BREAKING_FOOTER = re.compile(r"^BREAKING[ -]CHANGE:", re.MULTILINE)

_TYPE_MAP: dict[str, CommitClassification] = {
    "feat": CommitClassification.FEATURE,
    "feature": CommitClassification.FEATURE,
    "fix": CommitClassification.FIX,
    "perf": CommitClassification.FIX,
}

_PRECEDENCE: tuple[CommitClassification, ...] = (
    CommitClassification.BREAKING,
    CommitClassification.FEATURE,
    CommitClassification.FIX,
    CommitClassification.OTHER,
)

_BUMPS: dict[CommitClassification, VersionBump] = {
    CommitClassification.BREAKING: VersionBump.MAJOR,
    CommitClassification.FEATURE: VersionBump.MINOR,
    CommitClassification.FIX: VersionBump.PATCH,
}


def classify_commit(message: str) -> CommitClassification:
    """Classify a commit message using the Conventional Commits header.

    Examples:
        >>> classify_commit("feat(api): add search")
        <CommitClassification.FEATURE: 'feature'>
        >>> classify_commit("fix!: drop legacy flag")
        <CommitClassification.BREAKING: 'breaking'>
        >>> classify_commit("Merge branch 'main'")
        <CommitClassification.OTHER: 'other'>
    """
    if _BREAKING_FOOTER.search(message):
        return CommitClassification.BREAKING

    header = message.splitlines()[0] if message else ""
    match = _HEADER_PATTERN.match(header)
    if match is None:
        return CommitClassification.OTHER
    if match.group("bang"):
        return CommitClassification.BREAKING
    return _TYPE_MAP.get(match.group("type").lower(), CommitClassification.OTHER)


def determine_bump(classifications: Iterable[CommitClassification]) -> VersionBump | None:
    """Return the bump for a set of classifications, or None for no release."""
    present = set(classifications)
    for classification in _PRECEDENCE:
        if classification in present and classification in _BUMPS:
            return _BUMPS[classification]
    return None


def next_version(
    last_version: str,
    classifications: Sequence[CommitClassification],
) -> str | None:
    """Return the next version string, or None when no release is due."""
    bump = determine_bump(classifications)
    if bump is None:
        return None
    return str(SemanticVersion.parse(last_version).bump(bump))


def _changelog(commits: Sequence[CommitRecord]) -> list[ChangelogEntry]:
    # Grouped by precedence, commit order preserved within a group
    entries: list[ChangelogEntry] = []
    for classification in _PRECEDENCE:
        if classification is CommitClassification.OTHER:
            continue
        for commit in commits:
            if commit.classification is classification:
                entries.append(
                    ChangelogEntry(
                        classification=classification,
                        sha=commit.sha,
                        summary=commit.subject,
                    )
                )
    return entries


def compute_release(
    commits: Sequence[CommitRecord],
    last_version: SemanticVersion | str,
    *,
    change_id: str | None = None,
    created_at: datetime | None = None,
) -> ReleaseDescriptor | None:
    """Compute the next ReleaseDescriptor for the commits since the last release.

    Args:
        commits: Commits since the last release point, in order.
        last_version: Version to bump from (the highest version already allocated).
        change_id: Change the release is cut for.
        created_at: Timestamp recorded on the descriptor.

    Returns:
        A pending ReleaseDescriptor, or None if no commit warrants a release.
    """
    previous = (
        last_version
        if isinstance(last_version, SemanticVersion)
        else SemanticVersion.parse(last_version)
    )
    bump = determine_bump(c.classification for c in commits)
    if bump is None:
        logger.info(
            "release_not_required",
            change_id=change_id,
            commit_count=len(commits),
            last_version=str(previous),
        )
        return None

    version = previous.bump(bump)
    commit_range = f"{commits[0].sha}..{commits[-1].sha}" if commits else ""
    descriptor = ReleaseDescriptor(
        version=version,
        previous_version=previous,
        bump=bump,
        changelog=_changelog(commits),
        commit_range=commit_range,
        status=ReleaseStatus.PENDING,
        change_id=change_id,
        created_at=created_at,
    )
    logger.info(
        "release_computed",
        change_id=change_id,
        version=str(version),
        previous_version=str(previous),
        bump=bump.value,
    )
    return descriptor


class VersioningEngine:
    """Stateless wrapper used by the state machine.

    Holds only the project's initial version; the last allocated version is
    passed in on every call so the engine never carries hidden state.
    """

    def __init__(self, initial_version: str = "0.0.0") -> None:
        self.initial_version = SemanticVersion.parse(initial_version)

    @traced("sluice.versioning.compute_release")
    def compute_release(
        self,
        commits: Sequence[CommitRecord],
        last_version: SemanticVersion | None = None,
        *,
        change_id: str | None = None,
        created_at: datetime | None = None,
    ) -> ReleaseDescriptor | None:
        return compute_release(
            commits,
            last_version or self.initial_version,
            change_id=change_id,
            created_at=created_at,
        )


__all__ = [
    "VersioningEngine",
    "classify_commit",
    "compute_release",
    "determine_bump",
    "next_version",
]
