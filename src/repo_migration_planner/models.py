"""Data models shared by discovery, scoring and the batch lifecycle.

These models are intentionally plain dataclasses so the persistence layer
can map them however it likes. Status values are closed enums; the allowed
moves between them live in ``lifecycle.py``.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Final


class RepositoryStatus(StrEnum):
    """Per-repository migration status."""

    PENDING = "pending"
    DISCOVERED = "discovered"
    DRY_RUN_QUEUED = "dry_run_queued"
    DRY_RUN_IN_PROGRESS = "dry_run_in_progress"
    DRY_RUN_COMPLETE = "dry_run_complete"
    DRY_RUN_FAILED = "dry_run_failed"
    QUEUED_FOR_MIGRATION = "queued_for_migration"
    PRE_MIGRATION = "pre_migration"
    MIGRATING_CONTENT = "migrating_content"
    ARCHIVE_GENERATING = "archive_generating"
    POST_MIGRATION = "post_migration"
    COMPLETE = "complete"
    MIGRATION_FAILED = "migration_failed"
    ROLLED_BACK = "rolled_back"


class BatchStatus(StrEnum):
    """Aggregate batch status."""

    PENDING = "pending"
    READY = "ready"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ComplexityTier(StrEnum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


class DestinationSource(StrEnum):
    """Where a resolved destination name came from."""

    CUSTOM = "custom"
    BATCH_DEFAULT = "batch_default"
    SOURCE = "source"


@dataclass
class Repository:
    """One source repository under migration.

    Discovery facts are written by the structural analyzer, platform-feature
    facts by the feature profiler. Each group is replaced as a whole by its
    own pass, and only that group is written back to the store. Status and
    batch membership belong to the lifecycle and change only through the
    store's compare-and-set and assignment operations.
    """

    full_name: str  # org/name, or org/project/name for project-scoped sources
    source_url: str = ""
    id: int | None = None
    source_project: str | None = None  # Set for project-scoped sources (e.g. Azure DevOps)
    visibility: str = "private"

    # Discovery facts
    total_size: int | None = None
    largest_file: str | None = None
    largest_file_size: int | None = None
    largest_commit: str | None = None
    largest_commit_size: int | None = None
    commit_count: int = 0
    branch_count: int = 0
    last_commit_sha: str | None = None
    has_lfs: bool = False
    has_submodules: bool = False
    has_large_files: bool = False
    large_file_count: int = 0

    # Platform-feature facts
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

    # Derived facts
    complexity_score: int | None = None
    complexity_breakdown: str | None = None  # JSON object: signal -> points
    estimated_metadata_size: int | None = None
    metadata_size_details: str | None = None  # JSON object: category -> bytes

    # Lifecycle facts
    status: RepositoryStatus = RepositoryStatus.PENDING
    batch_id: int | None = None
    destination_full_name: str | None = None  # Explicit per-repository override
    exclude_releases: bool = False
    exclude_attachments: bool = False
    last_error: str | None = None
    discovered_at: datetime | None = None
    migrated_at: datetime | None = None

    @property
    def organization(self) -> str:
        return self.full_name.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.full_name.rsplit("/", 1)[-1]

    def complexity_breakdown_dict(self) -> dict[str, int]:
        if not self.complexity_breakdown:
            return {}
        return json.loads(self.complexity_breakdown)


DISCOVERY_FACT_FIELDS: Final = (
    "total_size",
    "largest_file",
    "largest_file_size",
    "largest_commit",
    "largest_commit_size",
    "commit_count",
    "branch_count",
    "last_commit_sha",
    "has_lfs",
    "has_submodules",
    "has_large_files",
    "large_file_count",
)
FEATURE_FACT_FIELDS: Final = (
    "visibility",
    "has_actions",
    "workflow_count",
    "has_wiki",
    "has_discussions",
    "environment_count",
    "secret_count",
    "variable_count",
    "webhook_count",
    "branch_protections",
    "has_rulesets",
    "has_code_scanning",
    "has_dependabot",
    "has_secret_scanning",
    "has_codeowners",
    "codeowners_content",
    "codeowners_teams",
    "codeowners_users",
    "has_self_hosted_runners",
    "collaborator_count",
    "installed_apps_count",
    "installed_apps",
    "release_count",
    "has_release_assets",
    "contributor_count",
    "top_contributors",
    "tag_count",
    "issue_count",
    "open_issue_count",
    "pull_request_count",
    "open_pr_count",
    "has_packages",
    "has_projects",
)
DERIVED_FACT_FIELDS: Final = (
    "complexity_score",
    "complexity_breakdown",
    "estimated_metadata_size",
    "metadata_size_details",
)


def field_values(record: object, names: Iterable[str]) -> dict[str, Any]:
    """Pick the named fields of *record* for a field-scoped store write."""
    return {name: getattr(record, name) for name in names}


class AssignmentOutcome(StrEnum):
    """Result of assigning a repository to a batch in one store transaction."""

    ASSIGNED = "assigned"
    REPOSITORY_NOT_FOUND = "repository_not_found"
    BATCH_NOT_FOUND = "batch_not_found"
    BATCH_LOCKED = "batch_locked"  # Batch status does not allow membership changes
    OTHER_BATCH = "other_batch"
    INELIGIBLE = "ineligible"


@dataclass
class Batch:
    """A named group of repositories migrated together."""

    name: str
    id: int | None = None
    description: str = ""
    destination_org: str | None = None
    migration_api: str = "GEI"
    exclude_releases: bool = False
    exclude_attachments: bool = False
    scheduled_at: datetime | None = None
    status: BatchStatus = BatchStatus.PENDING
    owner: str | None = None  # Lifecycle holding the batch in progress for a dry run or migration
    created_at: datetime | None = None
    last_dry_run_at: datetime | None = None
    last_migration_attempt_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class ResolvedDestination:
    """Effective destination of a repository and how it was derived."""

    full_name: str
    source: DestinationSource

    @property
    def is_custom(self) -> bool:
        return self.source is DestinationSource.CUSTOM


@dataclass(frozen=True)
class ImportRequest:
    """Everything the external importer needs for one repository."""

    repository: Repository
    destination: str
    migration_api: str
    exclude_releases: bool
    exclude_attachments: bool


@dataclass(frozen=True)
class ImportOutcome:
    """Pass/fail result reported by the external importer."""

    success: bool
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


# Platform records: the minimal read-only views the profiler consumes


@dataclass(frozen=True)
class RepositoryMetadata:
    full_name: str
    visibility: str
    clone_url: str
    has_wiki: bool = False
    has_discussions: bool = False
    has_projects: bool = False


@dataclass(frozen=True)
class IssueItem:
    """An entry of the combined issues listing; pull requests carry a linkage."""

    state: str
    is_pull_request: bool = False


@dataclass(frozen=True)
class ReleaseItem:
    tag_name: str
    asset_count: int = 0
    asset_size: int = 0


@dataclass(frozen=True)
class ContentItem:
    """A resolved repository path. ``content`` is only set for files."""

    path: str
    type: str  # "file", "dir", "symlink" or "submodule"
    content: str | None = None


@dataclass(frozen=True)
class InstallationItem:
    id: int
    app_slug: str
    repository_selection: str  # "all" or "selected"
