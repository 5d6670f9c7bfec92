"""Organization-level caches consulted by the feature profiler.

Packages, ProjectsV2 boards and app installations are expensive to query per
repository, so they are loaded once per organization with bulk queries and
frozen into immutable indexes. An ``OrgCacheRegistry`` lives for exactly one
discovery run; nothing here is module-level state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final, TypeVar

import requests
from github import GithubException

from .exceptions import PlannerError

if TYPE_CHECKING:
    from collections.abc import Callable

    from .protocols import PlatformClient

logger: logging.Logger = logging.getLogger(__name__)

IndexT = TypeVar("IndexT")

PACKAGE_TYPES: Final = ("npm", "maven", "rubygems", "docker", "nuget", "container")

# Errors a bulk query may raise; anything else is a bug and propagates
CACHE_ERRORS: Final = (GithubException, requests.RequestException, PlannerError)


@dataclass(frozen=True)
class PackageIndex:
    """Names of repositories in one organization that own at least one package."""

    repositories: frozenset[str] = frozenset()

    def has_packages(self, name: str) -> bool:
        return name in self.repositories


@dataclass(frozen=True)
class ProjectIndex:
    """Names of repositories linked to at least one ProjectsV2 board."""

    repositories: frozenset[str] = frozenset()

    def has_projects(self, name: str) -> bool:
        return name in self.repositories


@dataclass(frozen=True)
class InstallationInfo:
    app_slug: str
    repository_selection: str
    selected_repositories: frozenset[str] = frozenset()

    def has_access(self, full_name: str) -> bool:
        """Return True if the app can access the repository *full_name*."""
        if self.repository_selection == "all":
            return True
        return self.repository_selection == "selected" and full_name in self.selected_repositories


@dataclass(frozen=True)
class InstallationIndex:
    installations: tuple[InstallationInfo, ...] = ()

    def apps_for(self, full_name: str) -> list[str]:
        """Return slugs of apps with access to *full_name*, in installation order."""
        return [i.app_slug for i in self.installations if i.app_slug and i.has_access(full_name)]


@dataclass(frozen=True)
class OrgCaches:
    """Snapshot of the three caches for one organization.

    An index is None when its bulk query failed; the profiler then applies
    its cache-miss policy for the affected feature.
    """

    org: str
    packages: PackageIndex | None = None
    projects: ProjectIndex | None = None
    installations: InstallationIndex | None = None
    warnings: tuple[str, ...] = field(default=())

    @property
    def fully_loaded(self) -> bool:
        return self.packages is not None and self.projects is not None and self.installations is not None


def load_packages(platform: PlatformClient, org: str) -> PackageIndex:
    """Build the package index for *org*.

    Package types the token cannot list are skipped; a type failing is not
    a reason to lose the others.

    Raises:
        PlannerError: If every package type failed
    """
    repositories: set[str] = set()
    failed_types: list[str] = []
    for package_type in PACKAGE_TYPES:
        try:
            names = platform.list_org_package_repositories(org, package_type)
        except CACHE_ERRORS as e:
            logger.debug(f"Failed to list {package_type} packages for {org} (continuing with other types): {e}")
            failed_types.append(package_type)
            continue
        repositories.update(names)

    if len(failed_types) == len(PACKAGE_TYPES):
        msg = f"Could not list packages of any type for organization {org}"
        raise PlannerError(msg)

    logger.info(f"Package cache loaded for {org}: {len(repositories)} repositories with packages")
    return PackageIndex(repositories=frozenset(repositories))


def load_projects(platform: PlatformClient, org: str) -> ProjectIndex:
    repositories = platform.list_org_project_repositories(org)
    logger.info(f"ProjectsV2 map loaded for {org}: {len(repositories)} repositories with projects")
    return ProjectIndex(repositories=frozenset(repositories))


def load_installations(platform: PlatformClient, org: str) -> InstallationIndex:
    """Build the app installation index for *org*.

    The repository list of each "selected" installation is fetched once here.
    A failure to fetch it (usually missing permission) leaves the list empty.
    """
    infos: list[InstallationInfo] = []
    for installation in platform.list_org_installations(org):
        selected: frozenset[str] = frozenset()
        if installation.repository_selection == "selected":
            try:
                selected = frozenset(platform.list_installation_repositories(installation.id))
            except CACHE_ERRORS as e:
                logger.debug(f"Could not fetch repositories for installation {installation.app_slug}: {e}")
        infos.append(
            InstallationInfo(
                app_slug=installation.app_slug,
                repository_selection=installation.repository_selection,
                selected_repositories=selected,
            )
        )
    logger.info(f"Org installations loaded for {org}: {len(infos)} installations")
    return InstallationIndex(installations=tuple(infos))


class OrgCacheRegistry:
    """Run-scoped registry of warmed organization caches.

    Warming is exclusive per organization: concurrent ``warm`` calls for the
    same org perform the bulk queries once and share the result. Reads need no
    lock beyond the registry's own, since published snapshots are immutable.
    """

    _platform: PlatformClient
    _lock: threading.Lock
    _org_locks: dict[str, threading.Lock]
    _caches: dict[str, OrgCaches]

    def __init__(self, platform: PlatformClient) -> None:
        self._platform = platform
        self._lock = threading.Lock()
        self._org_locks = {}
        self._caches = {}

    def _org_lock(self, org: str) -> threading.Lock:
        with self._lock:
            return self._org_locks.setdefault(org, threading.Lock())

    def warm(self, org: str) -> OrgCaches:
        """Load all three caches for *org* unless already loaded in this run.

        Failures are tolerated: the failing index stays None and a warning is
        recorded on the returned snapshot.
        """
        with self._org_lock(org):
            cached = self.get(org)
            if cached is not None:
                return cached

            logger.info(f"Warming organization caches for {org}")
            warnings: list[str] = []

            def attempt(label: str, loader: Callable[[PlatformClient, str], IndexT]) -> IndexT | None:
                try:
                    return loader(self._platform, org)
                except CACHE_ERRORS as e:
                    warning = f"Failed to load {label} cache for {org}: {e}"
                    logger.warning(warning)
                    warnings.append(warning)
                    return None

            caches = OrgCaches(
                org=org,
                packages=attempt("package", load_packages),
                projects=attempt("projects", load_projects),
                installations=attempt("installations", load_installations),
                warnings=tuple(warnings),
            )
            with self._lock:
                self._caches[org] = caches
            return caches

    def get(self, org: str) -> OrgCaches | None:
        """Return the warmed snapshot for *org*, or None if it was never warmed."""
        with self._lock:
            return self._caches.get(org)
