"""Protocols defining the contracts for the planner's collaborators.

The planner core separates concerns into three external collaborators:

1. PlatformClient: Read-only access to the source platform's API
2. RepositoryStore / BatchStore / PlannerStore: Persistence of repository and batch records
3. Importer: The migration engine that actually moves data

This separation allows:
- Testing discovery, scoring and the batch lifecycle with in-memory fakes
- Swapping the persistence layer without touching lifecycle rules
- Treating the importer as a black box that only reports pass/fail
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .models import (
        AssignmentOutcome,
        Batch,
        BatchStatus,
        ContentItem,
        ImportOutcome,
        ImportRequest,
        InstallationItem,
        IssueItem,
        ReleaseItem,
        Repository,
        RepositoryMetadata,
        RepositoryStatus,
    )


class PlatformClient(Protocol):
    """Protocol for read-only platform API access.

    Every method raises on failure (``github.GithubException``,
    ``requests.RequestException`` or ``PlatformError``). Callers decide whether
    a failure is fatal or degrades to a default.

    Paginated listings return the fully walked result: implementations must
    follow the continuation links until the platform reports no further page.
    """

    def get_repository(self, org: str, name: str) -> RepositoryMetadata:
        """Return repository metadata (visibility, wiki/discussions/projects flags)."""
        ...

    def list_org_repositories(self, org: str) -> list[RepositoryMetadata]:
        """Return metadata of every repository the caller can see in *org*."""
        ...

    def count_workflows(self, org: str, name: str) -> int: ...

    def count_protected_branches(self, org: str, name: str) -> int: ...

    def count_rulesets(self, org: str, name: str) -> int:
        """Count rulesets defined on the repository itself, excluding inherited ones."""
        ...

    def count_environments(self, org: str, name: str) -> int: ...

    def count_secrets(self, org: str, name: str) -> int:
        """Count repository secrets. Secret values are never read."""
        ...

    def count_variables(self, org: str, name: str) -> int: ...

    def count_webhooks(self, org: str, name: str) -> int: ...

    def list_contributors(self, org: str, name: str) -> list[str]:
        """Return contributor logins, most active first."""
        ...

    def count_tags(self, org: str, name: str) -> int: ...

    def security_alerts_status(self, org: str, name: str, feature: str) -> int:
        """Probe an alerts endpoint and return its HTTP status code.

        Args:
            feature: One of ``code-scanning``, ``dependabot``, ``secret-scanning``
        """
        ...

    def get_content(self, org: str, name: str, path: str) -> ContentItem | None:
        """Resolve *path* in the default branch, or None if it does not exist."""
        ...

    def list_runner_names(self, org: str, name: str) -> list[str]: ...

    def count_outside_collaborators(self, org: str, name: str) -> int: ...

    def list_releases(self, org: str, name: str) -> list[ReleaseItem]: ...

    def list_issues(self, org: str, name: str) -> list[IssueItem]:
        """Return every entry of the combined issues listing, in any state."""
        ...

    def list_pull_request_states(self, org: str, name: str) -> list[str]: ...

    def list_org_package_repositories(self, org: str, package_type: str) -> list[str]:
        """Return names of repositories owning packages of *package_type*."""
        ...

    def list_org_project_repositories(self, org: str) -> set[str]:
        """Return names of repositories linked to any organization ProjectsV2 board."""
        ...

    def list_org_installations(self, org: str) -> list[InstallationItem]: ...

    def list_installation_repositories(self, installation_id: int) -> list[str]:
        """Return full names of repositories a "selected" installation can access."""
        ...

    def query_repository_packages_and_projects(self, org: str, name: str) -> tuple[bool, bool]:
        """Per-repository fallback for packages and ProjectsV2 presence."""
        ...


class RepositoryStore(Protocol):
    """Protocol for repository persistence.

    Implementations return copies: mutating a returned record has no effect
    on the store. Stored records are never replaced as a whole; each writer
    names the fields it owns, so concurrent writers of different field
    groups cannot undo each other.
    """

    def get_repository(self, repository_id: int) -> Repository | None: ...

    def get_repository_by_name(self, full_name: str) -> Repository | None: ...

    def list_repositories(self, *, batch_id: int | None = None) -> list[Repository]: ...

    def add_repository(self, repository: Repository) -> Repository:
        """Insert a new repository and return it with its assigned id.

        Raises:
            ValueError: If a repository with the same full name exists
        """
        ...

    def update_repository(self, repository_id: int, values: Mapping[str, Any]) -> Repository | None:
        """Atomically write only the named fields and return the updated record.

        ``status`` and ``batch_id`` are refused; they change through
        compare-and-set and batch assignment.

        Returns:
            The updated record, or None if the repository does not exist
        """
        ...

    def compare_and_set_repository_status(
        self,
        repository_id: int,
        expected: Iterable[RepositoryStatus],
        new_status: RepositoryStatus,
        values: Mapping[str, Any] | None = None,
    ) -> bool:
        """Atomically move a repository to *new_status* if it is in one of *expected*.

        *values* (e.g. ``last_error``) are written in the same step, and only
        if the status changed.
        """
        ...


class BatchStore(Protocol):
    """Protocol for batch persistence."""

    def get_batch(self, batch_id: int) -> Batch | None: ...

    def get_batch_by_name(self, name: str) -> Batch | None: ...

    def list_batches(self) -> list[Batch]: ...

    def add_batch(self, batch: Batch) -> Batch:
        """Insert a new batch, assigning its id and ``created_at`` if unset.

        Raises:
            ValueError: If a batch with the same name exists
        """
        ...

    def update_batch(self, batch_id: int, values: Mapping[str, Any]) -> Batch | None:
        """Atomically write only the named fields; ``status`` and ``owner`` are refused."""
        ...

    def delete_batch(self, batch_id: int) -> None: ...

    def compare_and_set_batch_status(
        self,
        batch_id: int,
        expected: Iterable[BatchStatus],
        new_status: BatchStatus,
        *,
        owner: str | None = None,
    ) -> bool:
        """Atomically move a batch to *new_status* if it is in one of *expected*.

        The batch's owner is set to *owner* in the same step: a lifecycle
        claiming the batch for an operation passes its own token, every
        other change clears it.

        Returns:
            True if the status was changed, False if the batch was in another state
        """
        ...

    def release_batch(self, batch_id: int, owner: str) -> bool:
        """Clear the batch's owner if it is still *owner*."""
        ...


class PlannerStore(RepositoryStore, BatchStore, Protocol):
    """Repository and batch persistence sharing one transaction scope.

    Membership changes check the batch's status in the same transaction that
    writes the repository, so a batch claimed by a running operation can
    never gain or lose members.
    """

    def assign_repository_to_batch(
        self,
        repository_id: int,
        batch_id: int,
        *,
        batch_statuses: Iterable[BatchStatus],
        repository_statuses: Iterable[RepositoryStatus],
    ) -> AssignmentOutcome:
        """Assign a repository if the batch is in *batch_statuses* and the repository is eligible.

        A repository already in this batch is assigned again (subject to the
        same checks); one in another batch is refused.
        """
        ...

    def unassign_repository(self, repository_id: int, batch_id: int, *, batch_statuses: Iterable[BatchStatus]) -> bool:
        """Remove a repository from *batch_id* if it is a member and the batch is in *batch_statuses*."""
        ...


class Importer(Protocol):
    """Protocol for the external migration engine.

    The planner decides when to call the importer and how to interpret its
    result; it never inspects how data is moved.
    """

    def dry_run(self, request: ImportRequest) -> ImportOutcome:
        """Validate that the repository can be migrated, without moving data."""
        ...

    def migrate(
        self,
        request: ImportRequest,
        progress: Callable[[RepositoryStatus], None] | None = None,
    ) -> ImportOutcome:
        """Run the production migration.

        Args:
            request: Repository, resolved destination and exclusion flags
            progress: Called with each intermediate migration status as the
                importer advances (pre_migration, migrating_content, ...)
        """
        ...
