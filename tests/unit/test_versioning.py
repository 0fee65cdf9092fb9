"""Unit tests for commit classification and release computation."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from sluice.schemas import CommitClassification, CommitRecord, ReleaseStatus
from sluice.schemas.release import SemanticVersion, VersionBump
from sluice.versioning import (
    VersioningEngine,
    classify_commit,
    compute_release,
    determine_bump,
    next_version,
)

C = CommitClassification


def _commits(*classifications: CommitClassification) -> list[CommitRecord]:
    return [
        CommitRecord(sha=f"{i:040x}", message=f"{c.value}: change {i}", classification=c)
        for i, c in enumerate(classifications, start=1)
    ]


class TestClassifyCommit:
    """Tests for Conventional Commits classification."""

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("feat: add search", C.FEATURE),
            ("feat(api): add search", C.FEATURE),
            ("fix: handle empty cart", C.FIX),
            ("perf: cache lookups", C.FIX),
            ("feat!: drop v1 endpoints", C.BREAKING),
            ("refactor(core)!: rename module", C.BREAKING),
            ("chore: bump deps\n\nBREAKING CHANGE: requires Python 3.11", C.BREAKING),
            ("chore: bump deps", C.OTHER),
            ("docs: fix typo", C.OTHER),
            ("Merge branch 'main' into feature", C.OTHER),
            ("", C.OTHER),
        ],
    )
    def test_classification(self, message: str, expected: CommitClassification) -> None:
        assert classify_commit(message) is expected


class TestDetermineBump:
    """Tests for bump precedence."""

    def test_breaking_wins_regardless_of_order(self) -> None:
        assert determine_bump([C.FIX, C.BREAKING, C.FEATURE]) is VersionBump.MAJOR

    def test_feature_beats_fix(self) -> None:
        assert determine_bump([C.FIX, C.FEATURE]) is VersionBump.MINOR

    def test_only_other_means_no_release(self) -> None:
        assert determine_bump([C.OTHER, C.OTHER]) is None

    def test_empty_means_no_release(self) -> None:
        assert determine_bump([]) is None


class TestComputeRelease:
    """Tests for release descriptors from commit lists."""

    def test_fixes_bump_patch(self) -> None:
        """Test that two fixes after 1.2.3 yield 1.2.4."""
        release = compute_release(_commits(C.FIX, C.FIX), "1.2.3")

        assert release is not None
        assert str(release.version) == "1.2.4"
        assert release.bump is VersionBump.PATCH

    def test_feature_bumps_minor(self) -> None:
        """Test that a fix and a feature after 1.2.3 yield 1.3.0."""
        release = compute_release(_commits(C.FIX, C.FEATURE), "1.2.3")

        assert release is not None
        assert str(release.version) == "1.3.0"

    def test_breaking_bumps_major(self) -> None:
        """Test that a feature and a breaking change after 1.2.3 yield 2.0.0."""
        release = compute_release(_commits(C.FEATURE, C.BREAKING), "1.2.3")

        assert release is not None
        assert str(release.version) == "2.0.0"
        assert release.tag == "v2.0.0"

    def test_no_release_for_other_commits(self) -> None:
        assert compute_release(_commits(C.OTHER), "1.2.3") is None

    def test_descriptor_fields(self) -> None:
        """Test that the descriptor records its range, changelog and provenance."""
        commits = _commits(C.OTHER, C.FIX, C.FEATURE)
        created = datetime(2026, 3, 1, tzinfo=timezone.utc)

        release = compute_release(commits, "0.4.1", change_id="PR-7", created_at=created)

        assert release is not None
        assert release.previous_version == SemanticVersion.parse("0.4.1")
        assert release.commit_range == f"{commits[0].sha}..{commits[-1].sha}"
        assert release.status is ReleaseStatus.PENDING
        assert release.change_id == "PR-7"
        assert release.created_at == created
        assert [e.classification for e in release.changelog] == [C.FEATURE, C.FIX]

    def test_changelog_renders_markdown(self) -> None:
        release = compute_release(_commits(C.FIX), "1.0.0")

        assert release is not None
        rendered = release.render_changelog().splitlines()
        assert rendered[0] == "## v1.0.1"
        assert rendered[1].startswith("- fix: fix: change 1 (")

    def test_invalid_last_version_raises(self) -> None:
        with pytest.raises(ValueError, match="Invalid version format"):
            compute_release(_commits(C.FIX), "1.2")

    def test_is_replayable(self) -> None:
        """Test that the same inputs always produce the same descriptor."""
        commits = _commits(C.FEATURE, C.FIX)
        created = datetime(2026, 3, 1, tzinfo=timezone.utc)

        first = compute_release(commits, "2.0.0", created_at=created)
        second = compute_release(commits, "2.0.0", created_at=created)

        assert first == second


class TestVersioningEngine:
    """Tests for the engine wrapper used by the state machine."""

    def test_first_release_bumps_initial_version(self) -> None:
        engine = VersioningEngine("1.0.0")

        release = engine.compute_release(_commits(C.FEATURE))

        assert release is not None
        assert str(release.version) == "1.1.0"

    def test_last_version_overrides_initial(self) -> None:
        engine = VersioningEngine()

        release = engine.compute_release(_commits(C.FIX), SemanticVersion.parse("3.4.5"))

        assert release is not None
        assert str(release.version) == "3.4.6"


class TestNextVersion:
    def test_next_version_string(self) -> None:
        assert next_version("v1.2.3", [C.FEATURE]) == "1.3.0"

    def test_no_release(self) -> None:
        assert next_version("1.2.3", [C.OTHER]) is None
