"""Configuration for discovery runs and batch execution."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final

from . import github_utils

_API_URL_ENV_VAR: Final[str] = "GITHUB_API_URL"
_CACHE_MISS_POLICY_ENV_VAR: Final[str] = "REPO_PLANNER_CACHE_MISS_POLICY"
_GIT_SIZER_ENV_VAR: Final[str] = "GIT_SIZER_PATH"


class CacheMissPolicy(StrEnum):
    """What the profiler does for cached features when an org cache is unavailable."""

    ABSENT = "absent"  # Report the feature as absent and mark the check degraded
    JUST_IN_TIME = "just_in_time"  # Run a per-repository fallback query


@dataclass
class PlannerConfig:
    """Settings shared by the discovery pipeline and the batch lifecycle."""

    github_token: str | None = None
    api_url: str = github_utils.DEFAULT_API_URL
    per_page: int = 100
    profile_workers: int = 8  # Concurrent sub-checks per repository
    discovery_workers: int = 4  # Repositories discovered concurrently
    migration_workers: int = 4  # Repositories dry-run or migrated concurrently
    git_sizer_path: str = "git-sizer"
    command_timeout: float | None = 3600.0
    cache_miss_policy: CacheMissPolicy = CacheMissPolicy.ABSENT
    clone_root: str | None = None

    def __post_init__(self) -> None:
        self.api_url = self.api_url.rstrip("/")
        self.cache_miss_policy = CacheMissPolicy(self.cache_miss_policy)
        if not 1 <= self.per_page <= 100:
            msg = f"per_page must be between 1 and 100, got {self.per_page}"
            raise ValueError(msg)
        for name in ("profile_workers", "discovery_workers", "migration_workers"):
            if getattr(self, name) < 1:
                msg = f"{name} must be at least 1"
                raise ValueError(msg)
        if self.command_timeout is not None and self.command_timeout <= 0:
            msg = "command_timeout must be positive"
            raise ValueError(msg)

    @classmethod
    def from_env(cls, **overrides: Any) -> PlannerConfig:  # noqa: ANN401
        """Create configuration from environment variables; non-None overrides win."""
        values: dict[str, Any] = {
            "api_url": os.environ.get(_API_URL_ENV_VAR, github_utils.DEFAULT_API_URL),
            "cache_miss_policy": os.environ.get(_CACHE_MISS_POLICY_ENV_VAR, CacheMissPolicy.ABSENT),
            "git_sizer_path": os.environ.get(_GIT_SIZER_ENV_VAR, "git-sizer"),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        if "github_token" not in values:
            values["github_token"] = github_utils.get_token()
        return cls(**values)
