"""
Command-line interface for repository migration planning.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from . import github_utils
from .config import CacheMissPolicy, PlannerConfig
from .discovery import DiscoveryPipeline
from .scoring import DEFAULT_ACTIVITY_THRESHOLDS
from .storage import InMemoryStore
from .utils import setup_logging


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Discover, profile and score repositories for migration planning")
    subparsers = parser.add_subparsers(dest="command", required=True)

    discover = subparsers.add_parser("discover", help="Discover and score repositories")
    _ = discover.add_argument("targets", nargs="+", help="Organization (org) or repository (org/repo)")
    _ = discover.add_argument("--api-url", help="Platform API URL (default: $GITHUB_API_URL or https://api.github.com)")
    _ = discover.add_argument(
        "--pass-token", help="Path for the platform token in pass utility (default: $GITHUB_TOKEN or github/cli/token)"
    )
    _ = discover.add_argument(
        "--cache-miss-policy",
        choices=[policy.value for policy in CacheMissPolicy],
        help="Behavior when an organization cache is unavailable",
    )
    _ = discover.add_argument("--git-sizer", dest="git_sizer_path", help="Path to the git-sizer executable")
    _ = discover.add_argument("--workers", type=int, help="Repositories discovered concurrently")
    _ = discover.add_argument("--clone-root", help="Directory for temporary clones")
    _ = discover.add_argument(
        "--population-thresholds",
        action="store_true",
        help="Derive activity scoring thresholds from the discovered repositories",
    )
    _ = discover.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser.parse_args(argv)


def run_discover(args: argparse.Namespace) -> int:
    token = github_utils.get_token(args.pass_token) if args.pass_token else None
    config = PlannerConfig.from_env(
        github_token=token,
        api_url=args.api_url,
        cache_miss_policy=args.cache_miss_policy,
        git_sizer_path=args.git_sizer_path,
        discovery_workers=args.workers,
        clone_root=args.clone_root,
    )
    platform = github_utils.get_platform(config.github_token, base_url=config.api_url, per_page=config.per_page)
    pipeline = DiscoveryPipeline(
        platform,
        InMemoryStore(),
        config=config,
        activity_thresholds=None if args.population_thresholds else DEFAULT_ACTIVITY_THRESHOLDS,
    )
    report = pipeline.discover(args.targets)
    print(json.dumps(report.to_dict(), indent=2))  # noqa: T201
    return 0 if report.success else 1


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        sys.exit(run_discover(args))
    except Exception:
        logger = logging.getLogger(__name__)
        logger.exception("Discovery failed")
        sys.exit(1)
