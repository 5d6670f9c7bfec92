"""Estimate of a repository's metadata export size.

The importer refuses archives above a fixed ceiling, so operators are warned
when the estimate gets close. The estimate is advisory and never blocks.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Final

if TYPE_CHECKING:
    from .models import ReleaseItem, Repository

logger: logging.Logger = logging.getLogger(__name__)

KIB: Final = 1024
MIB: Final = 1024 * KIB
GIB: Final = 1024 * MIB

AVG_ISSUE_SIZE: Final = 5 * KIB  # Includes comments
AVG_PR_SIZE: Final = 10 * KIB  # Includes reviews and comments
ATTACHMENT_RATIO: Final = 0.1  # Share of issue/PR data that is attachments
METADATA_OVERHEAD: Final = 50 * MIB  # Labels, collaborators, milestones, ...
RELEASE_METADATA_SIZE: Final = 10 * KIB  # Release notes and descriptions
FALLBACK_RELEASE_SIZE: Final = 1 * MIB  # Per release when assets could not be measured

IMPORT_SIZE_LIMIT: Final = 40 * GIB
WARNING_THRESHOLD: Final = 35 * GIB
LARGE_RELEASES_THRESHOLD: Final = 10 * GIB


@dataclass(frozen=True)
class ReleaseAssets:
    tag_name: str
    asset_count: int
    asset_size_bytes: int


@dataclass(frozen=True)
class MetadataSizeEstimate:
    issues_estimate_bytes: int
    prs_estimate_bytes: int
    attachments_estimate_bytes: int
    releases_bytes: int
    overhead_bytes: int
    total_bytes: int
    releases: list[ReleaseAssets] = field(default_factory=list)
    releases_measured: bool = True

    @property
    def near_limit(self) -> bool:
        return self.total_bytes > WARNING_THRESHOLD

    @property
    def exceeds_limit(self) -> bool:
        return self.total_bytes > IMPORT_SIZE_LIMIT

    def details(self) -> dict[str, Any]:
        """Per-category breakdown; ``releases`` lists only releases carrying assets."""
        data = asdict(self)
        data.pop("releases_measured")
        return data

    def to_json(self) -> str:
        return json.dumps(self.details())

    def apply_to(self, repo: Repository) -> None:
        repo.estimated_metadata_size = self.total_bytes
        repo.metadata_size_details = self.to_json()


def estimate_metadata_size(repo: Repository, releases: list[ReleaseItem] | None) -> MetadataSizeEstimate:
    """Estimate the metadata export size of *repo*.

    Args:
        repo: Repository with issue, pull request and release counts
        releases: Fully walked release listing, or None if it could not be fetched;
            the estimate then assumes a fixed size per release

    Returns:
        MetadataSizeEstimate with the per-category breakdown
    """
    issues_bytes = repo.issue_count * AVG_ISSUE_SIZE
    prs_bytes = repo.pull_request_count * AVG_PR_SIZE
    attachments_bytes = int((issues_bytes + prs_bytes) * ATTACHMENT_RATIO)

    release_assets: list[ReleaseAssets] = []
    if releases is None:
        releases_bytes = repo.release_count * FALLBACK_RELEASE_SIZE
    else:
        releases_bytes = 0
        for release in releases:
            releases_bytes += release.asset_size + RELEASE_METADATA_SIZE
            if release.asset_count > 0 or release.asset_size > 0:
                release_assets.append(ReleaseAssets(release.tag_name, release.asset_count, release.asset_size))

    total = METADATA_OVERHEAD + issues_bytes + prs_bytes + attachments_bytes + releases_bytes
    estimate = MetadataSizeEstimate(
        issues_estimate_bytes=issues_bytes,
        prs_estimate_bytes=prs_bytes,
        attachments_estimate_bytes=attachments_bytes,
        releases_bytes=releases_bytes,
        overhead_bytes=METADATA_OVERHEAD,
        total_bytes=total,
        releases=release_assets,
        releases_measured=releases is not None,
    )

    if estimate.near_limit:
        logger.warning(
            f"Metadata estimate for {repo.full_name} is {total / GIB:.1f} GiB, approaching the "
            f"{IMPORT_SIZE_LIMIT // GIB} GiB import limit"
            + ("; consider excluding releases" if releases_bytes > LARGE_RELEASES_THRESHOLD else "")
        )
    elif total > GIB:
        logger.info(f"Metadata estimate for {repo.full_name}: {total / GIB:.1f} GiB")
    return estimate
