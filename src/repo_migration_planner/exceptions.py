"""
Custom exception classes for the repository migration planner.
"""

from __future__ import annotations


class PlannerError(Exception):
    """Base exception for planner errors."""


class DiscoveryError(PlannerError):
    """Raised when discovery of a single repository cannot complete.

    No partial facts are written for a repository whose discovery raised this.
    """


class CommandCancelledError(PlannerError):
    """Raised when an external command was aborted by its cancellation event."""


class LifecycleError(PlannerError):
    """Raised when a batch operation violates a state precondition."""

    reason: str

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InvalidTransitionError(LifecycleError):
    """Raised when a status change is not listed in the transition table."""


class BatchNotFoundError(LifecycleError):
    """Raised when a batch id does not resolve to a stored batch."""


class RepositoryNotFoundError(LifecycleError):
    """Raised when a repository id does not resolve to a stored repository."""


class PlatformError(PlannerError):
    """Raised when the platform API answers with something the planner cannot use."""
