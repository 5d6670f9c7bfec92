"""In-memory implementation of the planner store.

Used by tests and single-process runs. Records are copied on the way in and
out, so callers never share mutable state with the store. After insertion a
record is only ever changed field by field: facts through ``update_*``,
status through compare-and-set and membership through the assignment
operations, each under one lock.
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections.abc import Iterable, Mapping
from dataclasses import fields
from datetime import UTC, datetime
from typing import Any, Final

from .models import AssignmentOutcome, Batch, BatchStatus, Repository, RepositoryStatus

REPOSITORY_FIELDS: Final = frozenset(f.name for f in fields(Repository))
BATCH_FIELDS: Final = frozenset(f.name for f in fields(Batch))

# Written only by the dedicated compare-and-set and assignment operations
PROTECTED_REPOSITORY_FIELDS: Final = frozenset({"id", "full_name", "status", "batch_id"})
PROTECTED_BATCH_FIELDS: Final = frozenset({"id", "name", "status", "owner"})


def _check_fields(values: Mapping[str, Any], known: frozenset[str], protected: frozenset[str]) -> None:
    unknown = set(values) - known
    if unknown:
        msg = f"Unknown fields: {', '.join(sorted(unknown))}"
        raise ValueError(msg)
    refused = set(values) & protected
    if refused:
        msg = f"Fields cannot be written directly: {', '.join(sorted(refused))}"
        raise ValueError(msg)


class InMemoryStore:
    """Thread-safe store satisfying PlannerStore."""

    _lock: threading.RLock
    _repositories: dict[int, Repository]
    _batches: dict[int, Batch]

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._repositories = {}
        self._batches = {}
        self._repository_ids = itertools.count(1)
        self._batch_ids = itertools.count(1)

    # Repositories

    def get_repository(self, repository_id: int) -> Repository | None:
        with self._lock:
            repo = self._repositories.get(repository_id)
            return copy.deepcopy(repo) if repo else None

    def get_repository_by_name(self, full_name: str) -> Repository | None:
        with self._lock:
            for repo in self._repositories.values():
                if repo.full_name == full_name:
                    return copy.deepcopy(repo)
            return None

    def list_repositories(self, *, batch_id: int | None = None) -> list[Repository]:
        with self._lock:
            return [
                copy.deepcopy(repo)
                for repo in self._repositories.values()
                if batch_id is None or repo.batch_id == batch_id
            ]

    def add_repository(self, repository: Repository) -> Repository:
        with self._lock:
            if repository.id is not None:
                msg = f"Repository {repository.full_name} already has id {repository.id}"
                raise ValueError(msg)
            if self.get_repository_by_name(repository.full_name) is not None:
                msg = f"Repository {repository.full_name} already exists"
                raise ValueError(msg)
            stored = copy.deepcopy(repository)
            stored.id = next(self._repository_ids)
            self._repositories[stored.id] = stored
            return copy.deepcopy(stored)

    def update_repository(self, repository_id: int, values: Mapping[str, Any]) -> Repository | None:
        _check_fields(values, REPOSITORY_FIELDS, PROTECTED_REPOSITORY_FIELDS)
        with self._lock:
            repo = self._repositories.get(repository_id)
            if repo is None:
                return None
            for name, value in values.items():
                setattr(repo, name, copy.deepcopy(value))
            return copy.deepcopy(repo)

    def compare_and_set_repository_status(
        self,
        repository_id: int,
        expected: Iterable[RepositoryStatus],
        new_status: RepositoryStatus,
        values: Mapping[str, Any] | None = None,
    ) -> bool:
        values = values or {}
        _check_fields(values, REPOSITORY_FIELDS, PROTECTED_REPOSITORY_FIELDS)
        with self._lock:
            repo = self._repositories.get(repository_id)
            if repo is None or repo.status not in set(expected):
                return False
            repo.status = new_status
            for name, value in values.items():
                setattr(repo, name, copy.deepcopy(value))
            return True

    # Membership

    def assign_repository_to_batch(
        self,
        repository_id: int,
        batch_id: int,
        *,
        batch_statuses: Iterable[BatchStatus],
        repository_statuses: Iterable[RepositoryStatus],
    ) -> AssignmentOutcome:
        with self._lock:
            repo = self._repositories.get(repository_id)
            if repo is None:
                return AssignmentOutcome.REPOSITORY_NOT_FOUND
            batch = self._batches.get(batch_id)
            if batch is None:
                return AssignmentOutcome.BATCH_NOT_FOUND
            if batch.status not in set(batch_statuses):
                return AssignmentOutcome.BATCH_LOCKED
            if repo.batch_id is not None and repo.batch_id != batch_id:
                return AssignmentOutcome.OTHER_BATCH
            if repo.status not in set(repository_statuses):
                return AssignmentOutcome.INELIGIBLE
            repo.batch_id = batch_id
            return AssignmentOutcome.ASSIGNED

    def unassign_repository(self, repository_id: int, batch_id: int, *, batch_statuses: Iterable[BatchStatus]) -> bool:
        with self._lock:
            repo = self._repositories.get(repository_id)
            batch = self._batches.get(batch_id)
            if repo is None or batch is None or repo.batch_id != batch_id:
                return False
            if batch.status not in set(batch_statuses):
                return False
            repo.batch_id = None
            return True

    # Batches

    def get_batch(self, batch_id: int) -> Batch | None:
        with self._lock:
            batch = self._batches.get(batch_id)
            return copy.deepcopy(batch) if batch else None

    def get_batch_by_name(self, name: str) -> Batch | None:
        with self._lock:
            for batch in self._batches.values():
                if batch.name == name:
                    return copy.deepcopy(batch)
            return None

    def list_batches(self) -> list[Batch]:
        with self._lock:
            return [copy.deepcopy(batch) for batch in self._batches.values()]

    def add_batch(self, batch: Batch) -> Batch:
        with self._lock:
            if batch.id is not None:
                msg = f"Batch {batch.name} already has id {batch.id}"
                raise ValueError(msg)
            if self.get_batch_by_name(batch.name) is not None:
                msg = f"Batch name '{batch.name}' already exists"
                raise ValueError(msg)
            stored = copy.deepcopy(batch)
            stored.id = next(self._batch_ids)
            if stored.created_at is None:
                stored.created_at = datetime.now(UTC)
            self._batches[stored.id] = stored
            return copy.deepcopy(stored)

    def update_batch(self, batch_id: int, values: Mapping[str, Any]) -> Batch | None:
        _check_fields(values, BATCH_FIELDS, PROTECTED_BATCH_FIELDS)
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return None
            for name, value in values.items():
                setattr(batch, name, copy.deepcopy(value))
            return copy.deepcopy(batch)

    def delete_batch(self, batch_id: int) -> None:
        with self._lock:
            self._batches.pop(batch_id, None)

    def compare_and_set_batch_status(
        self,
        batch_id: int,
        expected: Iterable[BatchStatus],
        new_status: BatchStatus,
        *,
        owner: str | None = None,
    ) -> bool:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.status not in set(expected):
                return False
            batch.status = new_status
            batch.owner = owner
            return True

    def release_batch(self, batch_id: int, owner: str) -> bool:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.owner != owner:
                return False
            batch.owner = None
            return True
