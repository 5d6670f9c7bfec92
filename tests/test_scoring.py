"""Tests for complexity scoring."""

from __future__ import annotations

import pytest

from repo_migration_planner.models import ComplexityTier, Repository
from repo_migration_planner.scoring import (
    DEFAULT_ACTIVITY_THRESHOLDS,
    GIB,
    MIB,
    ActivityThresholds,
    activity_measure,
    activity_points,
    activity_thresholds_from_population,
    score_repository,
    size_points,
    tier_for_score,
)


@pytest.mark.unit
class TestSizePoints:
    @pytest.mark.parametrize(
        ("size", "points"),
        [
            (None, 0),
            (0, 0),
            (100 * MIB - 1, 0),
            (100 * MIB, 3),
            (1 * GIB, 6),
            (5 * GIB - 1, 6),
            (5 * GIB, 9),
            (50 * GIB, 9),
        ],
    )
    def test_tiers(self, size: int | None, points: int) -> None:
        assert size_points(size) == points


@pytest.mark.unit
class TestTierForScore:
    @pytest.mark.parametrize(
        ("score", "tier"),
        [
            (0, ComplexityTier.SIMPLE),
            (5, ComplexityTier.SIMPLE),
            (6, ComplexityTier.MEDIUM),
            (10, ComplexityTier.MEDIUM),
            (11, ComplexityTier.COMPLEX),
            (17, ComplexityTier.COMPLEX),
            (18, ComplexityTier.VERY_COMPLEX),
        ],
    )
    def test_boundaries(self, score: int, tier: ComplexityTier) -> None:
        assert tier_for_score(score) is tier


@pytest.mark.unit
class TestActivity:
    def test_measure_weighs_open_conversations_double(self) -> None:
        repo = Repository(full_name="acme/app", commit_count=10, branch_count=2, open_issue_count=3, open_pr_count=1)
        assert activity_measure(repo) == 10 + 2 + 2 * 4

    def test_default_thresholds(self) -> None:
        assert activity_points(Repository(full_name="a/b", commit_count=100)) == 0
        assert activity_points(Repository(full_name="a/b", commit_count=101)) == 2
        assert activity_points(Repository(full_name="a/b", commit_count=1001)) == 4

    def test_custom_thresholds(self) -> None:
        thresholds = ActivityThresholds(medium=5, high=10)
        assert activity_points(Repository(full_name="a/b", commit_count=6), thresholds) == 2

    def test_population_thresholds(self) -> None:
        repos = [Repository(full_name=f"acme/r{i}", commit_count=i) for i in range(1, 101)]

        thresholds = activity_thresholds_from_population(repos)

        assert 70 < thresholds.medium < 80
        assert 90 < thresholds.high <= 100
        assert thresholds.high >= thresholds.medium

    def test_population_too_small_uses_defaults(self) -> None:
        assert activity_thresholds_from_population([Repository(full_name="a/b")]) is DEFAULT_ACTIVITY_THRESHOLDS


@pytest.mark.unit
class TestScoreRepository:
    def test_plain_repository_scores_zero(self) -> None:
        result = score_repository(Repository(full_name="acme/app"))
        assert result.score == 0
        assert result.tier is ComplexityTier.SIMPLE
        assert len(result.breakdown) == 21

    def test_breakdown_sums_to_score(self) -> None:
        repo = Repository(
            full_name="acme/big",
            total_size=2 * GIB,
            has_large_files=True,
            environment_count=2,
            secret_count=1,
            has_packages=True,
            has_self_hosted_runners=True,
            variable_count=3,
            has_discussions=True,
            release_count=4,
            has_lfs=True,
            has_submodules=True,
            installed_apps_count=1,
            has_projects=True,
            has_dependabot=True,
            webhook_count=1,
            branch_protections=2,
            has_rulesets=True,
            visibility="public",
            has_codeowners=True,
            commit_count=5000,
        )

        result = score_repository(repo)

        assert result.score == sum(result.breakdown.values())
        assert result.breakdown["size"] == 6
        assert result.breakdown["large_files"] == 4
        assert result.breakdown["security"] == 1
        assert result.breakdown["internal_visibility"] == 0
        assert result.breakdown["activity"] == 4
        assert result.score == 6 + 4 + 3 * 4 + 2 * 7 + 1 * 6 + 4
        assert result.tier is ComplexityTier.VERY_COMPLEX

    def test_security_counted_once(self) -> None:
        repo = Repository(
            full_name="acme/app", has_code_scanning=True, has_dependabot=True, has_secret_scanning=True
        )
        assert score_repository(repo).score == 1

    def test_internal_visibility(self) -> None:
        result = score_repository(Repository(full_name="acme/app", visibility="internal"))
        assert result.breakdown["internal_visibility"] == 1
        assert result.breakdown["public_visibility"] == 0

    def test_pure_function(self) -> None:
        repo = Repository(full_name="acme/app", total_size=200 * MIB, secret_count=1)
        assert score_repository(repo) == score_repository(repo)
