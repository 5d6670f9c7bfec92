"""Platform feature profiling for a single repository.

Each feature is gathered by an independent sub-check. Sub-checks run
concurrently and never abort each other: a failing sub-check yields its
"feature absent" default together with a degraded flag, so callers (and tests)
can see exactly which facts are guesses without parsing logs.

Packages, ProjectsV2 boards and installed apps come from the organization's
warmed caches (see ``org_cache.py``). When a cache is unavailable the
configured ``CacheMissPolicy`` decides between reporting the feature absent
and running a per-repository fallback query.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields
from functools import partial
from typing import TYPE_CHECKING, Any, Final

from . import git_utils
from .codeowners import CODEOWNERS_PATHS, parse_codeowners
from .config import CacheMissPolicy
from .exceptions import CommandCancelledError, DiscoveryError, PlatformError
from .org_cache import CACHE_ERRORS

if TYPE_CHECKING:
    from .models import ContentItem, IssueItem, ReleaseItem, Repository, RepositoryMetadata
    from .org_cache import OrgCaches
    from .protocols import PlatformClient

logger: logging.Logger = logging.getLogger(__name__)

TOP_CONTRIBUTORS: Final = 5

# Runner names containing one of these (case-insensitive) are platform-hosted
HOSTED_RUNNER_MARKERS: Final = ("github actions", "hosted agent", "azure pipelines")

SECURITY_FEATURES: Final = {
    "code_scanning": "code-scanning",
    "dependabot": "dependabot",
    "secret_scanning": "secret-scanning",
}

_NOT_FOUND: Final = 404


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one sub-check: the value, and whether it is a degraded default."""

    value: Any
    degraded: bool = False
    error: str | None = None


@dataclass
class FeatureProfile:
    """Every platform-feature fact the profiler owns, from one profiling pass."""

    visibility: str = "private"
    has_actions: bool = False
    workflow_count: int = 0
    has_wiki: bool = False
    has_discussions: bool = False
    environment_count: int = 0
    secret_count: int = 0
    variable_count: int = 0
    webhook_count: int = 0
    branch_protections: int = 0
    has_rulesets: bool = False
    has_code_scanning: bool = False
    has_dependabot: bool = False
    has_secret_scanning: bool = False
    has_codeowners: bool = False
    codeowners_content: str | None = None
    codeowners_teams: list[str] = field(default_factory=list)
    codeowners_users: list[str] = field(default_factory=list)
    has_self_hosted_runners: bool = False
    collaborator_count: int = 0
    installed_apps_count: int = 0
    installed_apps: list[str] = field(default_factory=list)
    release_count: int = 0
    has_release_assets: bool = False
    contributor_count: int = 0
    top_contributors: list[str] = field(default_factory=list)
    tag_count: int = 0
    issue_count: int = 0
    open_issue_count: int = 0
    pull_request_count: int = 0
    open_pr_count: int = 0
    has_packages: bool = False
    has_projects: bool = False

    def apply_to(self, repo: Repository) -> None:
        """Overwrite all profiler-owned fields of *repo* with this profile."""
        for f in fields(self):
            value = getattr(self, f.name)
            setattr(repo, f.name, list(value) if isinstance(value, list) else value)


@dataclass
class ProfileReport:
    full_name: str
    profile: FeatureProfile
    checks: dict[str, CheckResult]
    releases: list[ReleaseItem] | None = None  # None when the release listing failed

    @property
    def degraded(self) -> dict[str, str]:
        """Map of degraded sub-check name to its error."""
        return {name: result.error or "" for name, result in self.checks.items() if result.degraded}


def is_hosted_runner(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in HOSTED_RUNNER_MARKERS)


def wiki_clone_url(source_url: str) -> str:
    """Derive the wiki repository URL, e.g. ``https://host/o/r.git`` -> ``https://host/o/r.wiki.git``."""
    return source_url.removesuffix(".git") + ".wiki.git"


def split_full_name(full_name: str) -> tuple[str, str]:
    """Split ``org/name`` into its parts.

    Raises:
        DiscoveryError: If *full_name* has no organization part
    """
    org, sep, name = full_name.partition("/")
    if not sep or not org or not name:
        msg = f"Invalid full_name format: {full_name} (expected: org/repo)"
        raise DiscoveryError(msg)
    return org, name


class FeatureProfiler:
    """Profiles platform features of repositories through a PlatformClient."""

    _platform: PlatformClient
    _token: str | None
    _workers: int
    _cache_miss_policy: CacheMissPolicy
    _command_timeout: float | None

    def __init__(
        self,
        platform: PlatformClient,
        *,
        token: str | None = None,
        workers: int = 8,
        cache_miss_policy: CacheMissPolicy = CacheMissPolicy.ABSENT,
        command_timeout: float | None = None,
    ) -> None:
        self._platform = platform
        self._token = token
        self._workers = workers
        self._cache_miss_policy = cache_miss_policy
        self._command_timeout = command_timeout

    def profile(
        self,
        repo: Repository,
        caches: OrgCaches | None,
        *,
        cancel: threading.Event | None = None,
    ) -> ProfileReport:
        """Run one profiling pass and write the resulting facts to *repo*.

        Args:
            repo: Repository to profile; its profiler-owned fields are replaced
            caches: Warmed caches for the repository's organization, or None
            cancel: Event that aborts the wiki probe subprocess when set

        Returns:
            ProfileReport with the profile and the per-sub-check results

        Raises:
            DiscoveryError: If the repository itself cannot be fetched
            CommandCancelledError: If the pass was cancelled
        """
        org, name = split_full_name(repo.full_name)
        logger.debug(f"Profiling features of {repo.full_name}")
        try:
            metadata = self._platform.get_repository(org, name)
        except CACHE_ERRORS as e:
            msg = f"Failed to get repository {repo.full_name}: {e}"
            raise DiscoveryError(msg) from e

        p = self._platform
        source_url = repo.source_url or metadata.clone_url
        sub_checks: dict[str, tuple[Callable[[], Any], Any]] = {
            "workflows": (partial(p.count_workflows, org, name), 0),
            "branch_protections": (partial(p.count_protected_branches, org, name), 0),
            "rulesets": (partial(p.count_rulesets, org, name), 0),
            "environments": (partial(p.count_environments, org, name), 0),
            "secrets": (partial(p.count_secrets, org, name), 0),
            "variables": (partial(p.count_variables, org, name), 0),
            "webhooks": (partial(p.count_webhooks, org, name), 0),
            "contributors": (partial(p.list_contributors, org, name), []),
            "tags": (partial(p.count_tags, org, name), 0),
            "codeowners": (partial(self._find_codeowners, org, name), None),
            "runners": (partial(self._has_self_hosted_runner, org, name), False),
            "collaborators": (partial(p.count_outside_collaborators, org, name), 0),
            "releases": (partial(p.list_releases, org, name), None),
            "issues": (partial(p.list_issues, org, name), []),
            "pull_requests": (partial(p.list_pull_request_states, org, name), []),
            "wiki": (partial(self._wiki_has_content, metadata, source_url, cancel), False),
        }
        for key, feature in SECURITY_FEATURES.items():
            sub_checks[key] = (partial(self._probe_security, org, name, feature), False)

        cached, fallback_needed = self._cached_features(repo.full_name, name, caches)
        if fallback_needed:
            sub_checks["org_features_fallback"] = (
                partial(p.query_repository_packages_and_projects, org, name),
                (False, False),
            )

        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="profile") as pool:
            futures = {
                key: pool.submit(self._run_check, repo.full_name, key, check, default)
                for key, (check, default) in sub_checks.items()
            }
            checks = {key: future.result() for key, future in futures.items()}

        if fallback_needed:
            fallback = checks.pop("org_features_fallback")
            has_packages, has_projects = fallback.value
            for key, value in (("packages", has_packages), ("projects", has_projects)):
                cached.setdefault(key, CheckResult(value, fallback.degraded, fallback.error))
        checks.update(cached)

        profile = self._build_profile(metadata, checks)
        profile.apply_to(repo)
        report = ProfileReport(
            full_name=repo.full_name,
            profile=profile,
            checks=checks,
            releases=None if checks["releases"].degraded else checks["releases"].value,
        )
        logger.info(
            f"Features profiled for {repo.full_name}: actions={profile.has_actions} wiki={profile.has_wiki} "
            f"packages={profile.has_packages} apps={profile.installed_apps_count} "
            f"issues={profile.issue_count} prs={profile.pull_request_count} degraded={sorted(report.degraded)}"
        )
        return report

    def _run_check(self, full_name: str, key: str, check: Callable[[], Any], default: Any) -> CheckResult:  # noqa: ANN401
        try:
            return CheckResult(check())
        except CommandCancelledError:
            raise
        except Exception as e:  # noqa: BLE001 - every sub-check degrades independently
            logger.debug(f"Sub-check {key} failed for {full_name}, defaulting to absent: {e}")
            return CheckResult(default, degraded=True, error=str(e))

    def _cached_features(
        self, full_name: str, name: str, caches: OrgCaches | None
    ) -> tuple[dict[str, CheckResult], bool]:
        """Resolve packages, projects and apps from the org caches.

        Returns:
            The resolved checks, and whether a per-repository fallback query is needed
        """
        results: dict[str, CheckResult] = {}
        if caches is not None and caches.packages is not None:
            results["packages"] = CheckResult(caches.packages.has_packages(name))
        if caches is not None and caches.projects is not None:
            results["projects"] = CheckResult(caches.projects.has_projects(name))
        if caches is not None and caches.installations is not None:
            results["apps"] = CheckResult(caches.installations.apps_for(full_name))
        else:
            results["apps"] = CheckResult([], degraded=True, error="installation cache not loaded")

        missing = [key for key in ("packages", "projects") if key not in results]
        if not missing:
            return results, False
        if self._cache_miss_policy is CacheMissPolicy.JUST_IN_TIME:
            return results, True
        for key in missing:
            results[key] = CheckResult(False, degraded=True, error=f"{key} cache not loaded")
        return results, False

    def _probe_security(self, org: str, name: str, feature: str) -> bool:
        # Reachability is what counts, not whether any alert exists
        status = self._platform.security_alerts_status(org, name, feature)
        if status == _NOT_FOUND:
            return False
        if status >= 400:
            msg = f"{feature} alerts probe returned HTTP {status}"
            raise PlatformError(msg)
        return True

    def _find_codeowners(self, org: str, name: str) -> ContentItem | None:
        last_error: Exception | None = None
        for path in CODEOWNERS_PATHS:
            try:
                item = self._platform.get_content(org, name, path)
            except CACHE_ERRORS as e:
                logger.debug(f"CODEOWNERS check failed for {org}/{name} at {path}: {e}")
                last_error = e
                continue
            if item is not None and item.type == "file":
                return item
        if last_error is not None:
            raise last_error
        return None

    def _has_self_hosted_runner(self, org: str, name: str) -> bool:
        return any(not is_hosted_runner(runner) for runner in self._platform.list_runner_names(org, name))

    def _wiki_has_content(self, metadata: RepositoryMetadata, source_url: str, cancel: threading.Event | None) -> bool:
        # An enabled but never-edited wiki has no refs and does not count
        if not metadata.has_wiki:
            return False
        output = git_utils.ls_remote(
            wiki_clone_url(source_url), self._token, cancel=cancel, timeout=self._command_timeout
        )
        return bool(output.strip())

    @staticmethod
    def _build_profile(metadata: RepositoryMetadata, checks: dict[str, CheckResult]) -> FeatureProfile:
        contributors: list[str] = checks["contributors"].value
        releases: list[ReleaseItem] = checks["releases"].value or []
        issues: list[IssueItem] = [item for item in checks["issues"].value if not item.is_pull_request]
        pull_states: list[str] = checks["pull_requests"].value
        apps: list[str] = checks["apps"].value
        codeowners: ContentItem | None = checks["codeowners"].value
        refs = parse_codeowners(codeowners.content or "") if codeowners else None

        return FeatureProfile(
            visibility=metadata.visibility,
            has_actions=checks["workflows"].value > 0,
            workflow_count=checks["workflows"].value,
            has_wiki=checks["wiki"].value,
            has_discussions=metadata.has_discussions,
            environment_count=checks["environments"].value,
            secret_count=checks["secrets"].value,
            variable_count=checks["variables"].value,
            webhook_count=checks["webhooks"].value,
            branch_protections=checks["branch_protections"].value,
            has_rulesets=checks["rulesets"].value > 0,
            has_code_scanning=checks["code_scanning"].value,
            has_dependabot=checks["dependabot"].value,
            has_secret_scanning=checks["secret_scanning"].value,
            has_codeowners=codeowners is not None,
            codeowners_content=codeowners.content if codeowners else None,
            codeowners_teams=list(refs.teams) if refs else [],
            codeowners_users=list(refs.users) if refs else [],
            has_self_hosted_runners=checks["runners"].value,
            collaborator_count=checks["collaborators"].value,
            installed_apps_count=len(apps),
            installed_apps=list(apps),
            release_count=len(releases),
            has_release_assets=any(release.asset_count > 0 for release in releases),
            contributor_count=len(contributors),
            top_contributors=contributors[:TOP_CONTRIBUTORS],
            tag_count=checks["tags"].value,
            issue_count=len(issues),
            open_issue_count=sum(1 for issue in issues if issue.state == "open"),
            pull_request_count=len(pull_states),
            open_pr_count=sum(1 for state in pull_states if state == "open"),
            has_packages=checks["packages"].value,
            has_projects=checks["projects"].value,
        )
