"""
Repository migration planner.

Discovers source repositories, profiles their platform features, scores their
migration complexity and drives batches of them through dry run and migration.
"""

from __future__ import annotations

from .discovery import DiscoveryPipeline, DiscoveryReport
from .exceptions import (
    BatchNotFoundError,
    CommandCancelledError,
    DiscoveryError,
    InvalidTransitionError,
    LifecycleError,
    PlannerError,
    PlatformError,
    RepositoryNotFoundError,
)
from .lifecycle import BatchLifecycle, aggregate_batch_status, resolve_destination
from .models import Batch, BatchStatus, ComplexityTier, Repository, RepositoryStatus
from .scoring import score_repository
from .storage import InMemoryStore

__version__ = "0.1.0"
__all__ = [
    "Batch",
    "BatchLifecycle",
    "BatchNotFoundError",
    "BatchStatus",
    "CommandCancelledError",
    "ComplexityTier",
    "DiscoveryError",
    "DiscoveryPipeline",
    "DiscoveryReport",
    "InMemoryStore",
    "InvalidTransitionError",
    "LifecycleError",
    "PlannerError",
    "PlatformError",
    "Repository",
    "RepositoryNotFoundError",
    "RepositoryStatus",
    "aggregate_batch_status",
    "resolve_destination",
    "score_repository",
]
