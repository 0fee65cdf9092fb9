"""Release descriptor schemas.

Key Components:
    SemanticVersion: MAJOR.MINOR.PATCH version with ordering and bumping
    VersionBump: Bump kind derived from commit classifications
    ChangelogEntry: One line of a release changelog
    ReleaseStatus: pending -> merged -> deployed, or superseded
    ReleaseDescriptor: Computed version plus changelog for a batch of commits
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from functools import total_ordering

from pydantic import BaseModel, ConfigDict, Field

from sluice.schemas.change import CommitClassification

_VERSION_PATTERN = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")


class VersionBump(str, Enum):
    """Semantic version bump kinds, in increasing precedence order."""

    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"


@total_ordering
class SemanticVersion(BaseModel):
    """A MAJOR.MINOR.PATCH version.

    Examples:
        >>> v = SemanticVersion.parse("1.2.3")
        >>> str(v.bump(VersionBump.MINOR))
        '1.3.0'
        >>> SemanticVersion.parse("v2.0.0") > v
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    major: int = Field(default=0, ge=0)
    minor: int = Field(default=0, ge=0)
    patch: int = Field(default=0, ge=0)

    @classmethod
    def parse(cls, value: str) -> SemanticVersion:
        """Parse ``X.Y.Z`` (optionally ``v``-prefixed).

        Raises:
            ValueError: If the string is not a valid version.
        """
        match = _VERSION_PATTERN.match(value.strip())
        if match is None:
            raise ValueError(
                f"Invalid version format: {value!r}. Expected X.Y.Z format (e.g., '1.2.3')."
            )
        major, minor, patch = (int(part) for part in match.groups())
        return cls(major=major, minor=minor, patch=patch)

    def bump(self, kind: VersionBump) -> SemanticVersion:
        """Return the next version for the given bump kind."""
        if kind is VersionBump.MAJOR:
            return SemanticVersion(major=self.major + 1)
        if kind is VersionBump.MINOR:
            return SemanticVersion(major=self.major, minor=self.minor + 1)
        return SemanticVersion(major=self.major, minor=self.minor, patch=self.patch + 1)

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self.as_tuple() < other.as_tuple()

    def __hash__(self) -> int:
        return hash(self.as_tuple())


class ChangelogEntry(BaseModel):
    """One changelog line.

    Attributes:
        classification: Commit classification the entry is grouped under.
        sha: Commit identifier.
        summary: Commit subject line.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    classification: CommitClassification
    sha: str
    summary: str


class ReleaseStatus(str, Enum):
    """Release descriptor status.

    A release overtaken in the production lane is superseded by a re-based
    descriptor; its version stays allocated.
    """

    PENDING = "pending"
    MERGED = "merged"
    DEPLOYED = "deployed"
    SUPERSEDED = "superseded"


class ReleaseDescriptor(BaseModel):
    """A computed semantic version plus changelog.

    Versions strictly increase across successive descriptors of one project.
    A descriptor becomes DEPLOYED only after the production gate and the
    production deployment both succeed.

    Attributes:
        version: The release version.
        previous_version: Version the bump was computed from.
        bump: Bump kind applied.
        changelog: Entries grouped by classification precedence.
        commit_range: ``first_sha..last_sha`` of the commits in the release.
        status: Descriptor status.
        change_id: Change the descriptor was cut for.
        created_at: When the descriptor was computed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: SemanticVersion
    previous_version: SemanticVersion
    bump: VersionBump
    changelog: list[ChangelogEntry] = Field(default_factory=list)
    commit_range: str = Field(default="", description="first_sha..last_sha")
    status: ReleaseStatus = Field(default=ReleaseStatus.PENDING)
    change_id: str | None = Field(default=None)
    created_at: datetime | None = Field(default=None)

    @property
    def tag(self) -> str:
        """Git tag name for the release."""
        return f"v{self.version}"

    def render_changelog(self) -> str:
        """Render the changelog as Markdown bullet lines."""
        lines = [f"## {self.tag}"]
        for entry in self.changelog:
            lines.append(f"- {entry.classification.value}: {entry.summary} ({entry.sha[:7]})")
        return "\n".join(lines)


__all__ = [
    "ChangelogEntry",
    "ReleaseDescriptor",
    "ReleaseStatus",
    "SemanticVersion",
    "VersionBump",
]
