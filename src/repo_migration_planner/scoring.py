"""Complexity scoring for repositories.

``score_repository`` is a pure function of a repository's discovery and
platform-feature facts. Each signal contributes a fixed number of points;
the per-signal breakdown always sums to the score.
"""

from __future__ import annotations

import statistics
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from .models import ComplexityTier

if TYPE_CHECKING:
    from .models import Repository

MIB: Final = 1024 * 1024
GIB: Final = 1024 * MIB

# (minimum size in bytes, points); boundaries are inclusive
SIZE_TIERS: Final = ((5 * GIB, 9), (1 * GIB, 6), (100 * MIB, 3))

# High impact: features that do not migrate or need coordination
LARGE_FILES_POINTS: Final = 4
ENVIRONMENTS_POINTS: Final = 3
SECRETS_POINTS: Final = 3
PACKAGES_POINTS: Final = 3
SELF_HOSTED_RUNNERS_POINTS: Final = 3

# Moderate impact
VARIABLES_POINTS: Final = 2
DISCUSSIONS_POINTS: Final = 2
RELEASES_POINTS: Final = 2
LFS_POINTS: Final = 2
SUBMODULES_POINTS: Final = 2
APPS_POINTS: Final = 2
PROJECTS_POINTS: Final = 2

# Low impact
SECURITY_POINTS: Final = 1
WEBHOOKS_POINTS: Final = 1
BRANCH_PROTECTIONS_POINTS: Final = 1
RULESETS_POINTS: Final = 1
PUBLIC_VISIBILITY_POINTS: Final = 1
INTERNAL_VISIBILITY_POINTS: Final = 1
CODEOWNERS_POINTS: Final = 1

MEDIUM_ACTIVITY_POINTS: Final = 2
HIGH_ACTIVITY_POINTS: Final = 4

# Upper score bound of each tier; anything above the last is very complex
TIER_LIMITS: Final = (
    (5, ComplexityTier.SIMPLE),
    (10, ComplexityTier.MEDIUM),
    (17, ComplexityTier.COMPLEX),
)


@dataclass(frozen=True)
class ActivityThresholds:
    """Activity measure above ``medium`` earns 2 points, above ``high`` earns 4."""

    medium: float = 100
    high: float = 1000


DEFAULT_ACTIVITY_THRESHOLDS: Final = ActivityThresholds()


@dataclass(frozen=True)
class ComplexityResult:
    score: int
    tier: ComplexityTier
    breakdown: dict[str, int]


def size_points(total_size: int | None) -> int:
    if not total_size:
        return 0
    for minimum, points in SIZE_TIERS:
        if total_size >= minimum:
            return points
    return 0


def activity_measure(repo: Repository) -> int:
    """Blend history and collaboration volume into one number.

    Open issues and pull requests weigh double: each one is a conversation
    with people who must be told about the move.
    """
    return repo.commit_count + repo.branch_count + 2 * (repo.open_issue_count + repo.open_pr_count)


def activity_points(repo: Repository, thresholds: ActivityThresholds = DEFAULT_ACTIVITY_THRESHOLDS) -> int:
    measure = activity_measure(repo)
    if measure > thresholds.high:
        return HIGH_ACTIVITY_POINTS
    if measure > thresholds.medium:
        return MEDIUM_ACTIVITY_POINTS
    return 0


def activity_thresholds_from_population(
    repos: Iterable[Repository],
    *,
    medium_quantile: float = 0.75,
    high_quantile: float = 0.95,
) -> ActivityThresholds:
    """Derive activity thresholds from the measures of a repository population.

    Falls back to the fixed defaults when fewer than two repositories are given.
    """
    measures = [activity_measure(repo) for repo in repos]
    if len(measures) < 2:
        return DEFAULT_ACTIVITY_THRESHOLDS
    cut_points = statistics.quantiles(measures, n=100, method="inclusive")
    medium = cut_points[round(medium_quantile * 100) - 1]
    high = max(cut_points[round(high_quantile * 100) - 1], medium)
    return ActivityThresholds(medium=medium, high=high)


def tier_for_score(score: int) -> ComplexityTier:
    for limit, tier in TIER_LIMITS:
        if score <= limit:
            return tier
    return ComplexityTier.VERY_COMPLEX


def score_repository(
    repo: Repository,
    thresholds: ActivityThresholds = DEFAULT_ACTIVITY_THRESHOLDS,
) -> ComplexityResult:
    """Score a repository's migration complexity.

    Args:
        repo: Repository with discovery and platform-feature facts
        thresholds: Activity thresholds, fixed or derived from the population

    Returns:
        ComplexityResult whose breakdown values sum exactly to the score
    """
    has_security = repo.has_code_scanning or repo.has_dependabot or repo.has_secret_scanning
    breakdown = {
        "size": size_points(repo.total_size),
        "large_files": LARGE_FILES_POINTS if repo.has_large_files else 0,
        "environments": ENVIRONMENTS_POINTS if repo.environment_count > 0 else 0,
        "secrets": SECRETS_POINTS if repo.secret_count > 0 else 0,
        "packages": PACKAGES_POINTS if repo.has_packages else 0,
        "self_hosted_runners": SELF_HOSTED_RUNNERS_POINTS if repo.has_self_hosted_runners else 0,
        "variables": VARIABLES_POINTS if repo.variable_count > 0 else 0,
        "discussions": DISCUSSIONS_POINTS if repo.has_discussions else 0,
        "releases": RELEASES_POINTS if repo.release_count > 0 else 0,
        "lfs": LFS_POINTS if repo.has_lfs else 0,
        "submodules": SUBMODULES_POINTS if repo.has_submodules else 0,
        "apps": APPS_POINTS if repo.installed_apps_count > 0 else 0,
        "projects": PROJECTS_POINTS if repo.has_projects else 0,
        "security": SECURITY_POINTS if has_security else 0,
        "webhooks": WEBHOOKS_POINTS if repo.webhook_count > 0 else 0,
        "branch_protections": BRANCH_PROTECTIONS_POINTS if repo.branch_protections > 0 else 0,
        "rulesets": RULESETS_POINTS if repo.has_rulesets else 0,
        "public_visibility": PUBLIC_VISIBILITY_POINTS if repo.visibility == "public" else 0,
        "internal_visibility": INTERNAL_VISIBILITY_POINTS if repo.visibility == "internal" else 0,
        "codeowners": CODEOWNERS_POINTS if repo.has_codeowners else 0,
        "activity": activity_points(repo, thresholds),
    }
    score = sum(breakdown.values())
    return ComplexityResult(score=score, tier=tier_for_score(score), breakdown=breakdown)
