"""Batch lifecycle: dry run, readiness, migration and retry.

Repository and batch statuses are closed enums. Every status change goes
through ``validate_transition`` against the tables below, and every
operation that moves a batch into ``in_progress`` does so with a
compare-and-set on the stored status, so two concurrent operations on the
same batch can never both pass their precondition checks. The claim records
the claiming lifecycle as the batch's owner in the store; an owned
``in_progress`` batch is left alone by every status refresh until its owner
releases it, whichever process the refresh runs in.

Batch status is an aggregate of member statuses (``aggregate_batch_status``):

    no members                          -> pending
    any member queued or running        -> in_progress
    every member has a migration result -> completed | completed_with_errors | failed
    every member passed its dry run     -> ready
    anything else                       -> pending

A future ``scheduled_at`` turns pending/ready into scheduled, and
``cancelled`` is sticky.

Retry is per repository and follows the repository's own failure:
``dry_run_failed`` is retried as a dry run, ``migration_failed`` as a
production migration.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Final

from .exceptions import BatchNotFoundError, InvalidTransitionError, LifecycleError, RepositoryNotFoundError
from .models import (
    AssignmentOutcome,
    Batch,
    BatchStatus,
    DestinationSource,
    ImportOutcome,
    ImportRequest,
    Repository,
    RepositoryStatus,
    ResolvedDestination,
)

if TYPE_CHECKING:
    from .config import PlannerConfig
    from .protocols import Importer, PlannerStore

logger: logging.Logger = logging.getLogger(__name__)

RS = RepositoryStatus
BS = BatchStatus

REPOSITORY_TRANSITIONS: Final[dict[RepositoryStatus, frozenset[RepositoryStatus]]] = {
    RS.PENDING: frozenset({RS.DISCOVERED, RS.DRY_RUN_QUEUED, RS.QUEUED_FOR_MIGRATION}),
    RS.DISCOVERED: frozenset({RS.PENDING, RS.DRY_RUN_QUEUED, RS.QUEUED_FOR_MIGRATION}),
    RS.DRY_RUN_QUEUED: frozenset({RS.DRY_RUN_IN_PROGRESS, RS.DRY_RUN_FAILED, RS.QUEUED_FOR_MIGRATION}),
    RS.DRY_RUN_IN_PROGRESS: frozenset({RS.DRY_RUN_COMPLETE, RS.DRY_RUN_FAILED}),
    RS.DRY_RUN_COMPLETE: frozenset({RS.DRY_RUN_QUEUED, RS.QUEUED_FOR_MIGRATION}),
    RS.DRY_RUN_FAILED: frozenset({RS.DRY_RUN_QUEUED, RS.QUEUED_FOR_MIGRATION}),
    RS.QUEUED_FOR_MIGRATION: frozenset({RS.PRE_MIGRATION, RS.COMPLETE, RS.MIGRATION_FAILED}),
    RS.PRE_MIGRATION: frozenset(
        {RS.ARCHIVE_GENERATING, RS.MIGRATING_CONTENT, RS.POST_MIGRATION, RS.COMPLETE, RS.MIGRATION_FAILED}
    ),
    RS.ARCHIVE_GENERATING: frozenset({RS.MIGRATING_CONTENT, RS.POST_MIGRATION, RS.COMPLETE, RS.MIGRATION_FAILED}),
    RS.MIGRATING_CONTENT: frozenset({RS.ARCHIVE_GENERATING, RS.POST_MIGRATION, RS.COMPLETE, RS.MIGRATION_FAILED}),
    RS.POST_MIGRATION: frozenset({RS.COMPLETE, RS.MIGRATION_FAILED}),
    RS.COMPLETE: frozenset({RS.ROLLED_BACK}),
    RS.MIGRATION_FAILED: frozenset({RS.DRY_RUN_QUEUED, RS.QUEUED_FOR_MIGRATION, RS.ROLLED_BACK}),
    RS.ROLLED_BACK: frozenset({RS.PENDING, RS.DRY_RUN_QUEUED, RS.QUEUED_FOR_MIGRATION}),
}

_SETTLED_BATCH_TARGETS: Final = frozenset({BS.PENDING, BS.READY, BS.SCHEDULED, BS.IN_PROGRESS, BS.CANCELLED})

BATCH_TRANSITIONS: Final[dict[BatchStatus, frozenset[BatchStatus]]] = {
    BS.PENDING: _SETTLED_BATCH_TARGETS,
    BS.READY: _SETTLED_BATCH_TARGETS,
    BS.SCHEDULED: _SETTLED_BATCH_TARGETS,
    BS.IN_PROGRESS: frozenset(
        {BS.PENDING, BS.READY, BS.SCHEDULED, BS.COMPLETED, BS.COMPLETED_WITH_ERRORS, BS.FAILED}
    ),
    BS.COMPLETED: frozenset({BS.IN_PROGRESS, BS.PENDING, BS.COMPLETED_WITH_ERRORS, BS.FAILED}),
    BS.COMPLETED_WITH_ERRORS: frozenset({BS.IN_PROGRESS, BS.PENDING, BS.COMPLETED, BS.FAILED}),
    BS.FAILED: frozenset({BS.IN_PROGRESS, BS.PENDING, BS.COMPLETED, BS.COMPLETED_WITH_ERRORS}),
    BS.CANCELLED: frozenset(),
}

IN_PROGRESS_STATUSES: Final = frozenset(
    {
        RS.DRY_RUN_QUEUED,
        RS.DRY_RUN_IN_PROGRESS,
        RS.QUEUED_FOR_MIGRATION,
        RS.PRE_MIGRATION,
        RS.MIGRATING_CONTENT,
        RS.ARCHIVE_GENERATING,
        RS.POST_MIGRATION,
    }
)
MIGRATION_OUTCOME_STATUSES: Final = frozenset({RS.COMPLETE, RS.MIGRATION_FAILED, RS.ROLLED_BACK})
FAILED_STATUSES: Final = frozenset({RS.DRY_RUN_FAILED, RS.MIGRATION_FAILED, RS.ROLLED_BACK})

# Re-validated by a dry run restricted to members that need one
NEEDS_DRY_RUN_STATUSES: Final = frozenset(
    {RS.PENDING, RS.DISCOVERED, RS.DRY_RUN_FAILED, RS.MIGRATION_FAILED, RS.ROLLED_BACK}
)
# Never re-validated, even by a full dry run
DRY_RUN_EXCLUDED_STATUSES: Final = IN_PROGRESS_STATUSES | {RS.COMPLETE}
MIGRATABLE_STATUSES: Final = frozenset(
    {
        RS.PENDING,
        RS.DISCOVERED,
        RS.DRY_RUN_QUEUED,
        RS.DRY_RUN_FAILED,
        RS.DRY_RUN_COMPLETE,
        RS.MIGRATION_FAILED,
        RS.ROLLED_BACK,
    }
)
BATCH_ELIGIBLE_STATUSES: Final = frozenset(
    {RS.PENDING, RS.DISCOVERED, RS.DRY_RUN_COMPLETE, RS.DRY_RUN_FAILED, RS.MIGRATION_FAILED, RS.ROLLED_BACK}
)

DRY_RUN_ALLOWED_BATCH_STATUSES: Final = frozenset({BS.PENDING, BS.READY, BS.SCHEDULED})
START_ALLOWED_BATCH_STATUSES: Final = frozenset({BS.PENDING, BS.READY, BS.SCHEDULED})
EDITABLE_BATCH_STATUSES: Final = frozenset({BS.PENDING, BS.READY, BS.SCHEDULED})
FINISHED_BATCH_STATUSES: Final = frozenset({BS.COMPLETED, BS.COMPLETED_WITH_ERRORS, BS.FAILED})
RETRY_TAKEOVER_BATCH_STATUSES: Final = frozenset(
    {BS.PENDING, BS.READY, BS.SCHEDULED, BS.COMPLETED, BS.COMPLETED_WITH_ERRORS, BS.FAILED}
)


def validate_transition(current: RepositoryStatus | BatchStatus, new: RepositoryStatus | BatchStatus) -> None:
    """Check a status change against the transition table.

    Raises:
        InvalidTransitionError: If the change is not listed
    """
    table = REPOSITORY_TRANSITIONS if isinstance(current, RepositoryStatus) else BATCH_TRANSITIONS
    if new not in table[current]:  # type: ignore[index]
        msg = f"Invalid status transition: {current} -> {new}"
        raise InvalidTransitionError(msg)


def aggregate_batch_status(statuses: Iterable[RepositoryStatus]) -> BatchStatus:
    """Derive a batch's status from its members' statuses (schedule and cancellation aside)."""
    members = list(statuses)
    if not members:
        return BS.PENDING
    if any(status in IN_PROGRESS_STATUSES for status in members):
        return BS.IN_PROGRESS
    if all(status in MIGRATION_OUTCOME_STATUSES for status in members):
        completed = sum(1 for status in members if status is RS.COMPLETE)
        if completed == len(members):
            return BS.COMPLETED
        return BS.FAILED if completed == 0 else BS.COMPLETED_WITH_ERRORS
    if all(status is RS.DRY_RUN_COMPLETE for status in members):
        return BS.READY
    return BS.PENDING


def sanitize_repository_name(name: str) -> str:
    return name.replace(" ", "-")


def default_destination(repo: Repository, batch: Batch | None) -> str | None:
    """``<destination_org>/<name>``, or ``<destination_org>/<project>-<name>`` for project-scoped sources."""
    if batch is None or not batch.destination_org:
        return None
    name = f"{repo.source_project}-{repo.name}" if repo.source_project else repo.name
    return f"{batch.destination_org}/{sanitize_repository_name(name)}"


def resolve_destination(repo: Repository, batch: Batch | None) -> ResolvedDestination:
    """Resolve where *repo* lands: explicit override, then batch default, then source name.

    An override equal to the batch default is reported as the batch default.
    """
    default = default_destination(repo, batch)
    if repo.destination_full_name:
        if repo.destination_full_name == default:
            return ResolvedDestination(default, DestinationSource.BATCH_DEFAULT)
        return ResolvedDestination(repo.destination_full_name, DestinationSource.CUSTOM)
    if default:
        return ResolvedDestination(default, DestinationSource.BATCH_DEFAULT)
    return ResolvedDestination(repo.full_name, DestinationSource.SOURCE)


@dataclass
class RepositoryResult:
    repository_id: int
    full_name: str
    success: bool
    status: RepositoryStatus
    destination: str | None = None
    error: str | None = None


@dataclass
class AddRepositoryResult:
    repository_id: int
    full_name: str | None
    added: bool
    reason: str | None = None


@dataclass
class BatchOperationResult:
    """Aggregate outcome of a batch operation with per-repository detail."""

    batch_id: int
    operation: str
    batch_status: BatchStatus
    results: list[RepositoryResult] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)  # full_name -> reason

    @property
    def succeeded(self) -> list[RepositoryResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[RepositoryResult]:
        return [r for r in self.results if not r.success]

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class BatchProgress:
    total: int
    completed: int
    in_progress: int
    pending: int
    failed: int

    @property
    def percent_complete(self) -> float:
        return self.completed / self.total * 100 if self.total else 0.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BatchLifecycle:
    """Coordinates dry runs, migrations and retries for batches of repositories.

    Usage:
        lifecycle = BatchLifecycle.from_config(config, store=store, importer=importer)
        batch = lifecycle.create_batch("wave-1", destination_org="dest")
        lifecycle.add_repositories(batch.id, [1, 2, 3])
        lifecycle.run_dry_run(batch.id)
        lifecycle.start_migration(batch.id)
    """

    _store: PlannerStore
    _importer: Importer
    _workers: int
    _clock: Callable[[], datetime]
    _owner: str

    def __init__(
        self,
        *,
        store: PlannerStore,
        importer: Importer,
        workers: int = 4,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._importer = importer
        self._workers = workers
        self._clock = clock
        self._owner = uuid.uuid4().hex

    @classmethod
    def from_config(cls, config: PlannerConfig, *, store: PlannerStore, importer: Importer) -> BatchLifecycle:
        """Build a lifecycle running ``config.migration_workers`` repositories at a time."""
        return cls(store=store, importer=importer, workers=config.migration_workers)

    # Lookup helpers

    def _require_batch(self, batch_id: int) -> Batch:
        batch = self._store.get_batch(batch_id)
        if batch is None:
            msg = f"Batch not found: {batch_id}"
            raise BatchNotFoundError(msg)
        return batch

    def _require_repository(self, repository_id: int) -> Repository:
        repo = self._store.get_repository(repository_id)
        if repo is None:
            msg = f"Repository not found: {repository_id}"
            raise RepositoryNotFoundError(msg)
        return repo

    def _members(self, batch_id: int) -> list[Repository]:
        return self._store.list_repositories(batch_id=batch_id)

    # Batch status ownership

    @contextmanager
    def _own_batch(self, batch: Batch, allowed: frozenset[BatchStatus], operation: str) -> Iterator[None]:
        """Claim *batch* as in_progress under this lifecycle's owner token for the block.

        Raises:
            LifecycleError: If the batch is not in an allowed status any more
        """
        assert batch.id is not None
        if not self._store.compare_and_set_batch_status(batch.id, allowed, BS.IN_PROGRESS, owner=self._owner):
            current = self._require_batch(batch.id).status
            msg = f"Cannot {operation} batch '{batch.name}': status is '{current}'"
            raise LifecycleError(msg)
        try:
            yield
        finally:
            self._store.release_batch(batch.id, self._owner)
            self._settle_batch(batch.id)

    def _settle_batch(self, batch_id: int) -> BatchStatus:
        """Recompute the batch status from its members and store it.

        An in_progress batch with an owner is held by a running operation and
        is left alone; so is a cancelled batch.
        """
        batch = self._require_batch(batch_id)
        if batch.status is BS.CANCELLED or (batch.status is BS.IN_PROGRESS and batch.owner is not None):
            return batch.status

        aggregate = aggregate_batch_status(repo.status for repo in self._members(batch_id))
        if batch.status in EDITABLE_BATCH_STATUSES and aggregate in FINISHED_BATCH_STATUSES:
            # A batch that never ran has no migration result of its own
            aggregate = BS.PENDING
        target = aggregate
        if aggregate in (BS.PENDING, BS.READY) and batch.scheduled_at and batch.scheduled_at > self._clock():
            target = BS.SCHEDULED
        if target is batch.status:
            return target

        validate_transition(batch.status, target)
        if not self._store.compare_and_set_batch_status(batch_id, {batch.status}, target):
            # Someone else moved it first; theirs is the newer truth
            return self._require_batch(batch_id).status

        if target in FINISHED_BATCH_STATUSES:
            self._update_batch(batch_id, completed_at=self._clock())
        logger.info(f"Batch {batch.name} status: {batch.status} -> {target}")
        return target

    def _update_batch(self, batch_id: int, **changes: Any) -> Batch:  # noqa: ANN401
        batch = self._store.update_batch(batch_id, changes)
        if batch is None:
            msg = f"Batch not found: {batch_id}"
            raise BatchNotFoundError(msg)
        return batch

    # Repository status helpers

    def _move(self, repo: Repository, new_status: RepositoryStatus, *, error: str | None = None) -> Repository:
        """Move *repo* on from the status it was read with, together with its error and timestamps.

        Raises:
            InvalidTransitionError: If the change is not listed
            LifecycleError: If the stored status changed since *repo* was read
        """
        assert repo.id is not None
        validate_transition(repo.status, new_status)
        values: dict[str, Any] = {"last_error": error}
        if new_status is RS.COMPLETE:
            values["migrated_at"] = self._clock()
        if not self._store.compare_and_set_repository_status(repo.id, {repo.status}, new_status, values):
            msg = f"Repository {repo.full_name} changed status concurrently"
            raise LifecycleError(msg)
        repo.status = new_status
        for name, value in values.items():
            setattr(repo, name, value)
        return repo

    def _queue(self, repo: Repository, new_status: RepositoryStatus) -> bool:
        """Claim *repo* for an operation by moving it to a queued status."""
        assert repo.id is not None
        validate_transition(repo.status, new_status)
        if not self._store.compare_and_set_repository_status(repo.id, {repo.status}, new_status):
            return False
        repo.status = new_status
        return True

    def _request(self, repo: Repository, batch: Batch | None) -> ImportRequest:
        destination = resolve_destination(repo, batch)
        return ImportRequest(
            repository=repo,
            destination=destination.full_name,
            migration_api=batch.migration_api if batch else "GEI",
            exclude_releases=repo.exclude_releases or (batch.exclude_releases if batch else False),
            exclude_attachments=repo.exclude_attachments or (batch.exclude_attachments if batch else False),
        )

    def _call_importer(self, call: Callable[[], ImportOutcome], full_name: str) -> ImportOutcome:
        try:
            return call()
        except Exception as e:  # noqa: BLE001 - the importer is a black box; any error is a failed run
            logger.exception(f"Importer raised for {full_name}")
            return ImportOutcome(success=False, error=str(e) or type(e).__name__)

    def _record_outcome(
        self,
        repo: Repository,
        outcome: ImportOutcome,
        destination: str,
        targets: tuple[RepositoryStatus, RepositoryStatus],
        label: str,
    ) -> RepositoryResult:
        """Store the importer's verdict as the passed or failed status of *targets*."""
        assert repo.id is not None
        passed, failed = targets
        try:
            repo = self._move(repo, passed if outcome.success else failed, error=outcome.error)
        except LifecycleError as e:
            logger.warning(f"{label} result for {repo.full_name} was not recorded: {e.reason}")
            current = self._require_repository(repo.id).status
            return RepositoryResult(repo.id, repo.full_name, False, current, destination, e.reason)
        if not outcome.success:
            logger.warning(f"{label} failed for {repo.full_name}: {outcome.error}")
        return RepositoryResult(repo.id, repo.full_name, outcome.success, repo.status, destination, outcome.error)

    def _execute_dry_run(self, repo: Repository, batch: Batch | None) -> RepositoryResult:
        request = self._request(repo, batch)
        repo = self._move(repo, RS.DRY_RUN_IN_PROGRESS)
        outcome = self._call_importer(lambda: self._importer.dry_run(request), repo.full_name)
        return self._record_outcome(
            repo, outcome, request.destination, (RS.DRY_RUN_COMPLETE, RS.DRY_RUN_FAILED), "Dry run"
        )

    def _execute_migration(self, repo: Repository, batch: Batch | None) -> RepositoryResult:
        request = self._request(repo, batch)
        state = {"repo": repo}

        def progress(status: RepositoryStatus) -> None:
            current = state["repo"]
            try:
                state["repo"] = self._move(current, status)
            except LifecycleError as e:
                logger.debug(f"Ignoring progress report for {current.full_name}: {e.reason}")

        outcome = self._call_importer(lambda: self._importer.migrate(request, progress), repo.full_name)
        return self._record_outcome(
            state["repo"], outcome, request.destination, (RS.COMPLETE, RS.MIGRATION_FAILED), "Migration"
        )

    def _run_all(
        self, work: list[tuple[Repository, Callable[[Repository, Batch | None], RepositoryResult]]], batch: Batch | None
    ) -> list[RepositoryResult]:
        if not work:
            return []
        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="lifecycle") as pool:
            futures = [pool.submit(execute, repo, batch) for repo, execute in work]
            return [future.result() for future in futures]

    # Batch management

    def create_batch(
        self,
        name: str,
        *,
        description: str = "",
        destination_org: str | None = None,
        migration_api: str = "GEI",
        exclude_releases: bool = False,
        exclude_attachments: bool = False,
        scheduled_at: datetime | None = None,
        repository_ids: Iterable[int] = (),
    ) -> Batch:
        """Create a batch, optionally with an initial repository set.

        Raises:
            LifecycleError: If a batch with the same name exists
        """
        try:
            batch = self._store.add_batch(
                Batch(
                    name=name,
                    description=description,
                    destination_org=destination_org,
                    migration_api=migration_api,
                    exclude_releases=exclude_releases,
                    exclude_attachments=exclude_attachments,
                    scheduled_at=scheduled_at,
                    created_at=self._clock(),
                )
            )
        except ValueError as e:
            msg = f"Batch name '{name}' already exists"
            raise LifecycleError(msg) from e
        assert batch.id is not None
        logger.info(f"Created batch {name} (id {batch.id})")
        ids = list(repository_ids)
        if ids:
            for result in self.add_repositories(batch.id, ids):
                if not result.added:
                    logger.warning(f"Repository {result.full_name or result.repository_id} not added: {result.reason}")
        else:
            self._settle_batch(batch.id)
        return self._require_batch(batch.id)

    def _rejection_reason(self, outcome: AssignmentOutcome, repository_id: int, batch_id: int) -> str:
        if outcome is AssignmentOutcome.REPOSITORY_NOT_FOUND:
            return "repository not found"
        if outcome is AssignmentOutcome.OTHER_BATCH:
            return "repository is already in another batch"
        if outcome is AssignmentOutcome.INELIGIBLE:
            repo = self._store.get_repository(repository_id)
            return f"status '{repo.status if repo else 'unknown'}' is not eligible"
        batch = self._store.get_batch(batch_id)
        return f"batch status is '{batch.status}'" if batch else "batch not found"

    def add_repositories(self, batch_id: int, repository_ids: Iterable[int]) -> list[AddRepositoryResult]:
        """Assign repositories to a batch, reporting per repository why any were rejected.

        Each assignment re-checks the batch status in the store, so members
        added after a dry run or migration claimed the batch are rejected.

        Raises:
            LifecycleError: If the batch's membership is frozen
        """
        batch = self._require_batch(batch_id)
        if batch.status not in EDITABLE_BATCH_STATUSES:
            msg = f"Cannot add repositories to batch with status '{batch.status}'"
            raise LifecycleError(msg)

        results: list[AddRepositoryResult] = []
        for repository_id in repository_ids:
            outcome = self._store.assign_repository_to_batch(
                repository_id,
                batch_id,
                batch_statuses=EDITABLE_BATCH_STATUSES,
                repository_statuses=BATCH_ELIGIBLE_STATUSES,
            )
            repo = self._store.get_repository(repository_id)
            full_name = repo.full_name if repo else None
            if outcome is AssignmentOutcome.ASSIGNED:
                results.append(AddRepositoryResult(repository_id, full_name, added=True))
            else:
                reason = self._rejection_reason(outcome, repository_id, batch_id)
                results.append(AddRepositoryResult(repository_id, full_name, added=False, reason=reason))

        self._settle_batch(batch_id)
        logger.info(f"Added {sum(r.added for r in results)} of {len(results)} repositories to batch {batch.name}")
        return results

    def remove_repositories(self, batch_id: int, repository_ids: Iterable[int]) -> int:
        """Unassign repositories from a batch and return how many were removed.

        Raises:
            LifecycleError: If the batch's membership is frozen
        """
        batch = self._require_batch(batch_id)
        if batch.status not in EDITABLE_BATCH_STATUSES:
            msg = f"Cannot remove repositories from batch with status '{batch.status}'"
            raise LifecycleError(msg)

        removed = sum(
            self._store.unassign_repository(repository_id, batch_id, batch_statuses=EDITABLE_BATCH_STATUSES)
            for repository_id in repository_ids
        )
        self._settle_batch(batch_id)
        return removed

    def schedule_batch(self, batch_id: int, scheduled_at: datetime | None) -> Batch:
        """Set or clear the batch's scheduled start time.

        Raises:
            LifecycleError: If the batch already started, finished or was cancelled
        """
        batch = self._require_batch(batch_id)
        if batch.status not in EDITABLE_BATCH_STATUSES:
            msg = f"Cannot schedule batch with status '{batch.status}'"
            raise LifecycleError(msg)
        self._update_batch(batch_id, scheduled_at=scheduled_at)
        self._settle_batch(batch_id)
        return self._require_batch(batch_id)

    def cancel_batch(self, batch_id: int) -> Batch:
        """Cancel a batch that has not started.

        Raises:
            LifecycleError: If the batch is running or already finished
        """
        batch = self._require_batch(batch_id)
        if not self._store.compare_and_set_batch_status(batch_id, EDITABLE_BATCH_STATUSES, BS.CANCELLED):
            current = self._require_batch(batch_id).status
            msg = f"Cannot cancel batch with status '{current}'"
            raise LifecycleError(msg)
        logger.info(f"Cancelled batch {batch.name}")
        return self._require_batch(batch_id)

    def delete_batch(self, batch_id: int) -> int:
        """Delete a batch and return its former members to the available pool.

        Returns:
            Number of repositories unassigned

        Raises:
            LifecycleError: If the batch is in progress
        """
        batch = self._require_batch(batch_id)
        if batch.status is BS.IN_PROGRESS:
            msg = f"Cannot delete batch '{batch.name}' while it is in progress"
            raise LifecycleError(msg)
        # Claim the batch so no operation can start while members are unassigned
        if batch.status is not BS.CANCELLED and not self._store.compare_and_set_batch_status(
            batch_id, {batch.status}, BS.CANCELLED
        ):
            msg = f"Cannot delete batch '{batch.name}': its status changed concurrently"
            raise LifecycleError(msg)

        unassigned = sum(
            self._store.unassign_repository(repo.id, batch_id, batch_statuses={BS.CANCELLED})
            for repo in self._members(batch_id)
            if repo.id is not None
        )
        self._store.delete_batch(batch_id)
        logger.info(f"Deleted batch {batch.name}, {unassigned} repositories unassigned")
        return unassigned

    # Dry run and migration

    def run_dry_run(self, batch_id: int, *, only_pending: bool = True) -> BatchOperationResult:
        """Validate batch members with the importer's dry run.

        Args:
            batch_id: Batch to validate
            only_pending: Re-validate only members that need it (pending or
                failed); otherwise every member not already migrated or running

        Raises:
            LifecycleError: If the batch cannot run a dry run now or nothing needs one
        """
        batch = self._require_batch(batch_id)
        if batch.status not in DRY_RUN_ALLOWED_BATCH_STATUSES:
            msg = f"Cannot run dry run for batch with status '{batch.status}'"
            raise LifecycleError(msg)

        members = self._members(batch_id)
        if not members:
            msg = f"Batch '{batch.name}' has no repositories"
            raise LifecycleError(msg)
        if only_pending:
            selected = [repo for repo in members if repo.status in NEEDS_DRY_RUN_STATUSES]
        else:
            selected = [repo for repo in members if repo.status not in DRY_RUN_EXCLUDED_STATUSES]
        if not selected:
            msg = f"No repositories in batch '{batch.name}' need a dry run"
            raise LifecycleError(msg)

        result = BatchOperationResult(batch_id=batch_id, operation="dry_run", batch_status=batch.status)
        with self._own_batch(batch, DRY_RUN_ALLOWED_BATCH_STATUSES, "run dry run for"):
            self._update_batch(batch_id, last_dry_run_at=self._clock())
            work = []
            for repo in selected:
                if self._queue(repo, RS.DRY_RUN_QUEUED):
                    work.append((repo, self._execute_dry_run))
                else:
                    result.skipped[repo.full_name] = "status changed concurrently"
            logger.info(f"Running dry run for {len(work)} repositories in batch {batch.name}")
            result.results = self._run_all(work, batch)

        result.batch_status = self._require_batch(batch_id).status
        return result

    def start_migration(self, batch_id: int, *, skip_dry_run: bool = False) -> BatchOperationResult:
        """Run the production migration for a batch.

        Args:
            batch_id: Batch to migrate
            skip_dry_run: Operator acknowledgment to start without every member
                having passed a dry run

        Raises:
            LifecycleError: If the batch is not ready and skip_dry_run is not set,
                or it cannot start from its current status
        """
        batch = self._require_batch(batch_id)
        if batch.status not in START_ALLOWED_BATCH_STATUSES:
            msg = f"Cannot start batch with status '{batch.status}'"
            raise LifecycleError(msg)

        members = self._members(batch_id)
        if not members:
            msg = f"Batch '{batch.name}' has no repositories"
            raise LifecycleError(msg)
        ready = aggregate_batch_status(repo.status for repo in members) is BS.READY
        if not ready and not skip_dry_run:
            unvalidated = sum(1 for repo in members if repo.status is not RS.DRY_RUN_COMPLETE)
            msg = (
                f"Batch '{batch.name}' is not ready: {unvalidated} repositories have not passed a dry run. "
                "Run a dry run first or start with skip_dry_run."
            )
            raise LifecycleError(msg)

        selected = [repo for repo in members if repo.status in MIGRATABLE_STATUSES]
        if not selected:
            msg = f"No repositories in batch '{batch.name}' can be migrated"
            raise LifecycleError(msg)

        result = BatchOperationResult(batch_id=batch_id, operation="migration", batch_status=batch.status)
        with self._own_batch(batch, START_ALLOWED_BATCH_STATUSES, "start"):
            now = self._clock()
            self._update_batch(batch_id, started_at=batch.started_at or now, last_migration_attempt_at=now)
            work = []
            for repo in selected:
                if self._queue(repo, RS.QUEUED_FOR_MIGRATION):
                    work.append((repo, self._execute_migration))
                else:
                    result.skipped[repo.full_name] = "status changed concurrently"
            logger.info(f"Starting migration of {len(work)} repositories in batch {batch.name}")
            result.results = self._run_all(work, batch)

        result.batch_status = self._require_batch(batch_id).status
        return result

    # Retry

    def _claim_retry(self, repo: Repository) -> Callable[[Repository, Batch | None], RepositoryResult]:
        """Queue a failed repository on the path matching its failure."""
        if repo.status is RS.DRY_RUN_FAILED:
            queued, execute = RS.DRY_RUN_QUEUED, self._execute_dry_run
        elif repo.status is RS.MIGRATION_FAILED:
            queued, execute = RS.QUEUED_FOR_MIGRATION, self._execute_migration
        else:
            msg = f"Repository {repo.full_name} cannot be retried from status '{repo.status}'"
            raise LifecycleError(msg)
        if not self._queue(repo, queued):
            msg = f"Repository {repo.full_name} changed status concurrently"
            raise LifecycleError(msg)
        return execute

    def _mark_batch_running(self, batch_id: int) -> None:
        # Not an owning claim: a batch already in progress keeps its owner
        self._store.compare_and_set_batch_status(batch_id, RETRY_TAKEOVER_BATCH_STATUSES, BS.IN_PROGRESS)

    def retry_repository(self, repository_id: int) -> RepositoryResult:
        """Retry one failed repository along its own failure path.

        Raises:
            LifecycleError: If the repository is not in a failed state or its batch was cancelled
        """
        repo = self._require_repository(repository_id)
        batch = self._store.get_batch(repo.batch_id) if repo.batch_id is not None else None
        if batch is not None and batch.status is BS.CANCELLED:
            msg = f"Cannot retry {repo.full_name}: batch '{batch.name}' is cancelled"
            raise LifecycleError(msg)

        execute = self._claim_retry(repo)
        if batch is None:
            return execute(repo, None)

        assert batch.id is not None
        self._mark_batch_running(batch.id)
        try:
            return execute(repo, batch)
        finally:
            self._settle_batch(batch.id)

    def retry_failures(self, batch_id: int, repository_ids: Iterable[int] | None = None) -> BatchOperationResult:
        """Retry every failed member of a batch, or only the given subset.

        Raises:
            LifecycleError: If the batch is cancelled or no selected member has failed
        """
        batch = self._require_batch(batch_id)
        if batch.status is BS.CANCELLED:
            msg = f"Cannot retry repositories of cancelled batch '{batch.name}'"
            raise LifecycleError(msg)

        wanted = set(repository_ids) if repository_ids is not None else None
        candidates = [
            repo
            for repo in self._members(batch_id)
            if repo.status in (RS.DRY_RUN_FAILED, RS.MIGRATION_FAILED) and (wanted is None or repo.id in wanted)
        ]
        if not candidates:
            msg = f"No failed repositories to retry in batch '{batch.name}'"
            raise LifecycleError(msg)

        result = BatchOperationResult(batch_id=batch_id, operation="retry", batch_status=batch.status)
        work = []
        for repo in candidates:
            try:
                work.append((repo, self._claim_retry(repo)))
            except LifecycleError as e:
                result.skipped[repo.full_name] = e.reason

        self._mark_batch_running(batch_id)
        try:
            self._update_batch(batch_id, last_migration_attempt_at=self._clock())
            result.results = self._run_all(work, batch)
        finally:
            result.batch_status = self._settle_batch(batch_id)
        return result

    # Status and scheduling

    def refresh_batch_status(self, batch_id: int) -> BatchStatus:
        """Recompute and store the batch status from its members."""
        return self._settle_batch(batch_id)

    def get_batch_progress(self, batch_id: int) -> BatchProgress:
        self._require_batch(batch_id)
        statuses = [repo.status for repo in self._members(batch_id)]
        completed = sum(1 for status in statuses if status is RS.COMPLETE)
        in_progress = sum(1 for status in statuses if status in IN_PROGRESS_STATUSES)
        failed = sum(1 for status in statuses if status in FAILED_STATUSES)
        return BatchProgress(
            total=len(statuses),
            completed=completed,
            in_progress=in_progress,
            pending=len(statuses) - completed - in_progress - failed,
            failed=failed,
        )

    def execute_scheduled_batches(self, now: datetime | None = None) -> list[BatchOperationResult]:
        """Start every ready batch whose scheduled time has passed.

        Batches that are due but not ready are skipped and stay scheduled for
        the operator to resolve.
        """
        now = now or self._clock()
        results: list[BatchOperationResult] = []
        for batch in self._store.list_batches():
            if batch.scheduled_at is None or batch.scheduled_at > now:
                continue
            if batch.status not in START_ALLOWED_BATCH_STATUSES:
                continue
            assert batch.id is not None
            members = self._members(batch.id)
            if not members or aggregate_batch_status(repo.status for repo in members) is not BS.READY:
                logger.warning(f"Scheduled batch {batch.name} is due but not ready, skipping")
                continue
            try:
                results.append(self.start_migration(batch.id))
            except LifecycleError as e:
                logger.warning(f"Could not start scheduled batch {batch.name}: {e.reason}")
        return results
