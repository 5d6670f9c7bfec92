"""Discovery pipeline that turns source repositories into scored planning records.

Pipeline Flow
-------------
Phase 1: Expansion
    - Each target is either ``org`` (every repository of the organization)
      or ``org/repo``
    - Existing records are reused; discovery writes only its own fact
      groups, so lifecycle facts (status, batch, destination override)
      survive re-discovery even while a dry run or migration is running

Phase 2: Organization caches (barrier)
    - Packages, ProjectsV2 boards and app installations are loaded once per
      organization before any repository of it is profiled
    - A failed cache is recorded as a warning; profiling then follows the
      configured cache-miss policy

Phase 3: Per repository (concurrently across repositories)
    a. Clone (full clone with working tree, credential in the URL)
    b. Structural analysis (git-sizer, disk probe, LFS, submodules)
    c. Feature profiling (independent sub-checks, degraded where they fail)
    d. Metadata size estimate (reuses the profiler's release listing)
    e. Complexity score
    f. Persist this pass's fact groups only, then remove the clone

Error Handling
--------------
- git-sizer failure, clone failure or an unreachable repository fails that
  repository only; nothing is written for it
- Degraded sub-checks do not fail a repository; they are listed per
  repository in the report
- Cancellation aborts running subprocesses and marks the repository cancelled
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Final

from . import git_utils
from .analyzer import StructuralAnalyzer
from .config import PlannerConfig
from .exceptions import CommandCancelledError, DiscoveryError
from .metadata_size import estimate_metadata_size
from .models import (
    DERIVED_FACT_FIELDS,
    DISCOVERY_FACT_FIELDS,
    FEATURE_FACT_FIELDS,
    Repository,
    RepositoryStatus,
    field_values,
)
from .org_cache import CACHE_ERRORS, OrgCacheRegistry
from .profiler import FeatureProfiler, split_full_name
from .scoring import (
    DEFAULT_ACTIVITY_THRESHOLDS,
    ActivityThresholds,
    ComplexityResult,
    activity_thresholds_from_population,
    score_repository,
)

if TYPE_CHECKING:
    from .protocols import PlatformClient, RepositoryStore

logger: logging.Logger = logging.getLogger(__name__)

# Everything one discovery pass writes; status and batch membership are never among them
DISCOVERY_WRITE_FIELDS: Final = (
    "source_url",
    "source_project",
    *DISCOVERY_FACT_FIELDS,
    *FEATURE_FACT_FIELDS,
    *DERIVED_FACT_FIELDS,
    "discovered_at",
)


@dataclass
class RepositoryOutcome:
    """Discovery result of one repository."""

    full_name: str
    success: bool
    repository_id: int | None = None
    complexity_score: int | None = None
    complexity_tier: str | None = None
    total_size: int | None = None
    estimated_metadata_size: int | None = None
    problems: list[str] = field(default_factory=list)
    degraded: dict[str, str] = field(default_factory=dict)
    error: str | None = None


@dataclass
class DiscoveryReport:
    outcomes: list[RepositoryOutcome] = field(default_factory=list)
    cache_warnings: dict[str, list[str]] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[RepositoryOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> list[RepositoryOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "discovered": len(self.succeeded),
            "failed": len(self.failed),
            "cache_warnings": self.cache_warnings,
            "repositories": [asdict(outcome) for outcome in self.outcomes],
        }


class DiscoveryPipeline:
    """Discovers, profiles, scores and persists source repositories.

    Usage:
        pipeline = DiscoveryPipeline(platform, store, config=PlannerConfig.from_env())
        report = pipeline.discover(["acme", "other-org/service"])
    """

    def __init__(
        self,
        platform: PlatformClient,
        store: RepositoryStore,
        *,
        config: PlannerConfig,
        analyzer: StructuralAnalyzer | None = None,
        profiler: FeatureProfiler | None = None,
        registry: OrgCacheRegistry | None = None,
        activity_thresholds: ActivityThresholds | None = DEFAULT_ACTIVITY_THRESHOLDS,
    ) -> None:
        """
        Args:
            platform: Platform API client
            store: Repository persistence
            config: Planner configuration
            analyzer: Structural analyzer, built from config if omitted
            profiler: Feature profiler, built from config if omitted
            registry: Organization cache registry for this run
            activity_thresholds: Fixed activity thresholds, or None to derive
                them from the discovered population after all repositories ran
        """
        self.platform = platform
        self.store = store
        self.config = config
        self.analyzer = analyzer or StructuralAnalyzer(config.git_sizer_path, timeout=config.command_timeout)
        self.profiler = profiler or FeatureProfiler(
            platform,
            token=config.github_token,
            workers=config.profile_workers,
            cache_miss_policy=config.cache_miss_policy,
            command_timeout=config.command_timeout,
        )
        self.registry = registry or OrgCacheRegistry(platform)
        self.activity_thresholds = activity_thresholds

    def expand_targets(self, targets: Iterable[str]) -> tuple[list[Repository], list[RepositoryOutcome]]:
        """Resolve ``org`` and ``org/repo`` targets to repository records.

        Returns:
            The repositories to discover and a failed outcome for every
            organization that could not be listed
        """
        repositories: dict[str, Repository] = {}
        failures: list[RepositoryOutcome] = []
        for target in targets:
            target = target.strip().strip("/")
            if "/" in target:
                repositories.setdefault(target, self._record_for(target))
                continue
            try:
                listed = self.platform.list_org_repositories(target)
            except CACHE_ERRORS as e:
                logger.error(f"Failed to list repositories of {target}: {e}")
                failures.append(RepositoryOutcome(full_name=target, success=False, error=str(e)))
                continue
            logger.info(f"Found {len(listed)} repositories in {target}")
            for metadata in listed:
                repo = repositories.setdefault(metadata.full_name, self._record_for(metadata.full_name))
                repo.source_url = repo.source_url or metadata.clone_url
                repo.visibility = metadata.visibility
        return list(repositories.values()), failures

    def _record_for(self, full_name: str) -> Repository:
        return self.store.get_repository_by_name(full_name) or Repository(full_name=full_name)

    def discover(self, targets: Iterable[str], *, cancel: threading.Event | None = None) -> DiscoveryReport:
        repositories, failures = self.expand_targets(targets)
        report = self.discover_repositories(repositories, cancel=cancel)
        report.outcomes[:0] = failures
        return report

    def warm_caches(self, organizations: Iterable[str]) -> dict[str, list[str]]:
        """Warm every organization's caches and wait for all of them."""
        organizations = sorted(set(organizations))
        if not organizations:
            return {}
        with ThreadPoolExecutor(max_workers=self.config.discovery_workers, thread_name_prefix="warm") as pool:
            snapshots = list(pool.map(self.registry.warm, organizations))
        return {caches.org: list(caches.warnings) for caches in snapshots if caches.warnings}

    def discover_repositories(
        self, repositories: list[Repository], *, cancel: threading.Event | None = None
    ) -> DiscoveryReport:
        """Run discovery for already-resolved repository records."""
        by_org: dict[str, list[Repository]] = defaultdict(list)
        for repo in repositories:
            by_org[repo.organization].append(repo)

        report = DiscoveryReport(cache_warnings=self.warm_caches(by_org))

        with ThreadPoolExecutor(max_workers=self.config.discovery_workers, thread_name_prefix="discover") as pool:
            futures = [pool.submit(self.discover_repository, repo, cancel=cancel) for repo in repositories]
            report.outcomes = [future.result() for future in futures]

        if self.activity_thresholds is None:
            self._rescore_population(report)

        logger.info(f"Discovery complete: {len(report.succeeded)} succeeded, {len(report.failed)} failed")
        return report

    def discover_repository(self, repo: Repository, *, cancel: threading.Event | None = None) -> RepositoryOutcome:
        """Discover one repository and persist its facts; never raises."""
        try:
            return self._discover(repo, cancel)
        except CommandCancelledError:
            logger.warning(f"Discovery of {repo.full_name} was cancelled")
            return RepositoryOutcome(full_name=repo.full_name, success=False, error="cancelled")
        except DiscoveryError as e:
            logger.error(f"Discovery failed for {repo.full_name}: {e}")
            return RepositoryOutcome(full_name=repo.full_name, success=False, error=str(e))

    def _clone_url(self, repo: Repository) -> str:
        if repo.source_url:
            return repo.source_url
        org, name = split_full_name(repo.full_name)
        try:
            return self.platform.get_repository(org, name).clone_url
        except CACHE_ERRORS as e:
            msg = f"Failed to get repository {repo.full_name}: {e}"
            raise DiscoveryError(msg) from e

    def _discover(self, repo: Repository, cancel: threading.Event | None) -> RepositoryOutcome:
        repo.source_url = self._clone_url(repo)
        clone_path = git_utils.clone_repository(
            repo.source_url,
            self.config.github_token,
            cancel=cancel,
            timeout=self.config.command_timeout,
            clone_root=self.config.clone_root,
        )
        try:
            analysis = self.analyzer.analyze(repo, clone_path, cancel=cancel)
        finally:
            git_utils.cleanup_git_clone(clone_path)

        profile = self.profiler.profile(repo, self.registry.get(repo.organization), cancel=cancel)
        estimate = estimate_metadata_size(repo, profile.releases)
        estimate.apply_to(repo)
        complexity = self._score(repo, self.activity_thresholds or DEFAULT_ACTIVITY_THRESHOLDS)

        repo.discovered_at = datetime.now(UTC)
        saved = self._persist(repo)

        for problem in analysis.problems:
            logger.warning(f"{repo.full_name}: {problem}")
        return RepositoryOutcome(
            full_name=saved.full_name,
            success=True,
            repository_id=saved.id,
            complexity_score=saved.complexity_score,
            complexity_tier=complexity.tier.value,
            total_size=saved.total_size,
            estimated_metadata_size=saved.estimated_metadata_size,
            problems=list(analysis.problems),
            degraded=profile.degraded,
        )

    def _persist(self, repo: Repository) -> Repository:
        """Write this pass's facts and mark a pending record discovered.

        New records are inserted whole. Existing records only get the fields
        discovery owns, so a dry run or migration moving the same record
        meanwhile keeps its status, batch and error.
        """
        if repo.id is None:
            if repo.status is RepositoryStatus.PENDING:
                repo.status = RepositoryStatus.DISCOVERED
            try:
                return self.store.add_repository(repo)
            except ValueError:
                existing = self.store.get_repository_by_name(repo.full_name)
                if existing is None:
                    raise
                logger.debug(f"{repo.full_name} was recorded concurrently, updating it instead")
                repo.id = existing.id
        assert repo.id is not None

        saved = self.store.update_repository(repo.id, field_values(repo, DISCOVERY_WRITE_FIELDS))
        if saved is None:
            msg = f"Repository {repo.full_name} was removed during discovery"
            raise DiscoveryError(msg)
        if self.store.compare_and_set_repository_status(
            repo.id, {RepositoryStatus.PENDING}, RepositoryStatus.DISCOVERED
        ):
            saved.status = RepositoryStatus.DISCOVERED
        return saved

    @staticmethod
    def _score(repo: Repository, thresholds: ActivityThresholds) -> ComplexityResult:
        result = score_repository(repo, thresholds)
        repo.complexity_score = result.score
        repo.complexity_breakdown = json.dumps(result.breakdown)
        return result

    def _rescore_population(self, report: DiscoveryReport) -> None:
        """Re-score the discovered repositories with thresholds derived from their activity."""
        records = [
            repo
            for outcome in report.succeeded
            if outcome.repository_id is not None
            and (repo := self.store.get_repository(outcome.repository_id)) is not None
        ]
        thresholds = activity_thresholds_from_population(records)
        logger.info(f"Activity thresholds from population: medium={thresholds.medium} high={thresholds.high}")
        by_id = {outcome.repository_id: outcome for outcome in report.succeeded}
        for repo in records:
            assert repo.id is not None
            complexity = self._score(repo, thresholds)
            self.store.update_repository(repo.id, field_values(repo, ("complexity_score", "complexity_breakdown")))
            outcome = by_id[repo.id]
            outcome.complexity_score = complexity.score
            outcome.complexity_tier = complexity.tier.value
