"""Structural analysis of a cloned repository.

Runs ``git-sizer`` for history statistics and ``git count-objects`` for the
on-disk footprint, then derives LFS, submodule and branch facts from the
working tree. Facts are collected first and written to the repository record
only once the whole analysis succeeded, so a failed run never leaves a mix of
old and new discovery facts behind.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from . import git_utils
from .exceptions import DiscoveryError

if TYPE_CHECKING:
    from .models import Repository

logger: logging.Logger = logging.getLogger(__name__)

MIB: Final = 1024 * 1024
GIB: Final = 1024 * MIB

# Largest blob above this marks the repository as carrying large files
LARGE_FILE_THRESHOLD: Final = 100 * MIB

# Problem-detection thresholds, following git-sizer's levels of concern
COMMIT_SIZE_LIMIT: Final = 100 * MIB
BLOB_SIZE_WARNING: Final = 50 * MIB
REPOSITORY_SIZE_WARNING: Final = 5 * GIB
HISTORY_DEPTH_WARNING: Final = 100_000
TREE_ENTRIES_WARNING: Final = 10_000
CHECKOUT_FILES_WARNING: Final = 100_000

_LFS_POINTER_MARKER: Final = "version https://git-lfs.github.com/spec/"


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass(frozen=True)
class GitSizerMetric:
    """A single metric from git-sizer's JSON (version 2) output."""

    value: int = 0
    object_name: str = ""
    object_description: str = ""

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> GitSizerMetric:
        if not data:
            return cls()
        return cls(
            value=int(data.get("value", 0)),
            object_name=data.get("objectName", "") or "",
            object_description=data.get("objectDescription", "") or "",
        )


@dataclass(frozen=True)
class GitSizerOutput:
    """Parsed ``git-sizer --json --json-version=2`` output.

    Field names are the snake_case form of git-sizer's camelCase keys.
    Metrics missing from the output default to zero.
    """

    unique_commit_count: GitSizerMetric = GitSizerMetric()
    unique_commit_size: GitSizerMetric = GitSizerMetric()
    unique_tree_count: GitSizerMetric = GitSizerMetric()
    unique_tree_size: GitSizerMetric = GitSizerMetric()
    unique_blob_count: GitSizerMetric = GitSizerMetric()
    unique_blob_size: GitSizerMetric = GitSizerMetric()
    unique_tag_count: GitSizerMetric = GitSizerMetric()
    max_commit_size: GitSizerMetric = GitSizerMetric()
    max_tree_entries: GitSizerMetric = GitSizerMetric()
    max_blob_size: GitSizerMetric = GitSizerMetric()
    max_history_depth: GitSizerMetric = GitSizerMetric()
    max_tag_depth: GitSizerMetric = GitSizerMetric()
    max_checkout_path_depth: GitSizerMetric = GitSizerMetric()
    max_checkout_path_length: GitSizerMetric = GitSizerMetric()
    max_checkout_tree_count: GitSizerMetric = GitSizerMetric()
    max_checkout_blob_count: GitSizerMetric = GitSizerMetric()
    max_checkout_blob_size: GitSizerMetric = GitSizerMetric()
    max_checkout_link_count: GitSizerMetric = GitSizerMetric()
    max_checkout_submodule_count: GitSizerMetric = GitSizerMetric()

    @classmethod
    def from_json(cls, payload: str) -> GitSizerOutput:
        """Parse git-sizer's JSON output.

        Raises:
            ValueError: If the payload is not a JSON object or a metric value is not numeric
        """
        data = json.loads(payload)
        if not isinstance(data, dict):
            msg = "git-sizer output is not a JSON object"
            raise ValueError(msg)
        return cls(**{f.name: GitSizerMetric.from_json(data.get(_camel_case(f.name))) for f in fields(cls)})

    @property
    def unique_object_size(self) -> int:
        """Blob + tree + commit bytes, the fallback estimate of repository size."""
        return self.unique_blob_size.value + self.unique_tree_size.value + self.unique_commit_size.value


@dataclass(frozen=True)
class BlobDescriptor:
    """A git-sizer blob annotation of the form ``<hash> (<ref>:<path>)``."""

    object_hash: str
    ref: str
    path: str


def parse_blob_descriptor(description: str) -> BlobDescriptor | None:
    """Parse a ``<hash> (<ref>:<path>)`` annotation.

    The format is not guaranteed by git-sizer, so anything that does not fit
    returns None instead of raising. The path is taken after the last colon,
    since refs such as ``refs/heads/main`` never contain one while ``<rev>:<path>``
    always does.
    """
    object_hash, sep, annotation = description.strip().partition(" (")
    if not sep:
        return None
    annotation = annotation.removesuffix(")")
    ref, colon, path = annotation.rpartition(":")
    if not colon or not path:
        return None
    return BlobDescriptor(object_hash=object_hash, ref=ref, path=path)


def extract_commit_sha(commit_info: str) -> str:
    """Return the commit SHA from a git-sizer object name.

    The name is cut at the first space and never longer than 40 characters.
    """
    return commit_info.split(" ", 1)[0][:40]


class DiskProber:
    """Measures the on-disk object storage of a clone."""

    def measure(self, repo_path: str, *, cancel: threading.Event | None = None) -> int:
        """Return loose + packed object bytes.

        Raises:
            DiscoveryError: If ``git count-objects`` fails
        """
        return git_utils.count_objects_size(repo_path, cancel=cancel)


@dataclass(frozen=True)
class StructuralFacts:
    """Discovery facts produced by one analysis run."""

    total_size: int
    largest_file: str | None
    largest_file_size: int
    largest_commit: str | None
    largest_commit_size: int
    commit_count: int
    branch_count: int
    last_commit_sha: str | None
    has_lfs: bool
    has_submodules: bool
    has_large_files: bool
    large_file_count: int
    disk_probe_failed: bool = False

    def apply_to(self, repo: Repository) -> None:
        """Replace the repository's discovery facts with this snapshot."""
        repo.total_size = self.total_size
        repo.largest_file = self.largest_file
        repo.largest_file_size = self.largest_file_size
        repo.largest_commit = self.largest_commit
        repo.largest_commit_size = self.largest_commit_size
        repo.commit_count = self.commit_count
        repo.branch_count = self.branch_count
        repo.last_commit_sha = self.last_commit_sha
        repo.has_lfs = self.has_lfs
        repo.has_submodules = self.has_submodules
        repo.has_large_files = self.has_large_files
        repo.large_file_count = self.large_file_count


@dataclass(frozen=True)
class AnalysisResult:
    facts: StructuralFacts
    sizer: GitSizerOutput
    problems: list[str]


def detect_lfs(repo_path: str, *, cancel: threading.Event | None = None) -> bool:
    """Return True if the clone uses Git LFS.

    Any one signal is enough: an LFS filter in ``.gitattributes``, tracked LFS
    files, an LFS filter in the clone's git config, or committed pointer files.
    """
    root = Path(repo_path)
    gitattributes = root / ".gitattributes"
    if gitattributes.is_file() and "filter=lfs" in gitattributes.read_text(errors="replace"):
        logger.debug(f"LFS detected via .gitattributes in {repo_path}")
        return True

    if git_utils.list_lfs_files(repo_path, cancel=cancel).strip():
        logger.debug(f"LFS detected via git lfs ls-files in {repo_path}")
        return True

    git_config = root / ".git" / "config"
    if git_config.is_file() and '[filter "lfs"]' in git_config.read_text(errors="replace"):
        logger.debug(f"LFS detected via .git/config in {repo_path}")
        return True

    # git grep -q exits 0 only when the pattern is found
    result = git_utils.run_command(["git", "grep", "-q", _LFS_POINTER_MARKER], cwd=repo_path, cancel=cancel)
    if result.ok:
        logger.debug(f"LFS detected via pointer files in {repo_path}")
        return True
    return False


def detect_submodules(repo_path: str, *, cancel: threading.Event | None = None) -> bool:
    """Return True if the clone defines submodules."""
    root = Path(repo_path)
    if (root / ".gitmodules").exists():
        logger.debug(f"Submodules detected via .gitmodules in {repo_path}")
        return True

    if git_utils.submodule_status(repo_path, cancel=cancel).strip():
        logger.debug(f"Submodules detected via git submodule status in {repo_path}")
        return True

    git_config = root / ".git" / "config"
    return git_config.is_file() and "[submodule" in git_config.read_text(errors="replace")


def check_repository_problems(output: GitSizerOutput) -> list[str]:
    """Classify git-sizer output against fixed thresholds.

    Returns human-readable warnings. The result informs risk triage only and
    never blocks a migration.
    """
    problems: list[str] = []

    if output.max_commit_size.value > COMMIT_SIZE_LIMIT:
        problems.append(
            f"Commit exceeds GitHub limit: {output.max_commit_size.value // MIB} MB "
            f"(limit: {COMMIT_SIZE_LIMIT // MIB} MB)"
        )
    if output.max_blob_size.value > BLOB_SIZE_WARNING:
        problems.append(f"Very large file detected: {output.max_blob_size.value // MIB} MB")
    if output.unique_object_size > REPOSITORY_SIZE_WARNING:
        problems.append(f"Very large repository: {output.unique_object_size // GIB} GB")
    if output.max_history_depth.value > HISTORY_DEPTH_WARNING:
        problems.append(f"Very deep history: {output.max_history_depth.value} commits")
    if output.max_tree_entries.value > TREE_ENTRIES_WARNING:
        problems.append(f"Very large directory: {output.max_tree_entries.value} entries")
    if output.max_checkout_blob_count.value > CHECKOUT_FILES_WARNING:
        problems.append(f"Very large checkout: {output.max_checkout_blob_count.value} files")

    return problems


class StructuralAnalyzer:
    """Derives size, history, LFS and submodule facts from a local clone."""

    _git_sizer_path: str
    _disk_prober: DiskProber
    _timeout: float | None

    def __init__(
        self,
        git_sizer_path: str = "git-sizer",
        *,
        disk_prober: DiskProber | None = None,
        timeout: float | None = None,
    ) -> None:
        self._git_sizer_path = git_sizer_path
        self._disk_prober = disk_prober or DiskProber()
        self._timeout = timeout

    def run_git_sizer(self, repo_path: str, *, cancel: threading.Event | None = None) -> GitSizerOutput:
        """Run git-sizer and parse its JSON output.

        Raises:
            DiscoveryError: If git-sizer cannot run, exits non-zero or prints unparseable output
            CommandCancelledError: If *cancel* is set while git-sizer runs
        """
        args = [self._git_sizer_path, "--json", "--json-version=2"]
        try:
            result = git_utils.run_command(args, cwd=repo_path, cancel=cancel, timeout=self._timeout)
        except OSError as e:
            msg = f"git-sizer could not be started: {e}"
            raise DiscoveryError(msg) from e

        if not result.ok:
            msg = f"git-sizer failed with exit code {result.returncode}: {result.stderr.strip()}"
            raise DiscoveryError(msg)

        try:
            return GitSizerOutput.from_json(result.stdout)
        except (ValueError, TypeError) as e:
            msg = f"Failed to parse git-sizer output: {e}"
            raise DiscoveryError(msg) from e

    def analyze(
        self,
        repo: Repository,
        repo_path: str,
        *,
        cancel: threading.Event | None = None,
    ) -> AnalysisResult:
        """Analyze the clone at *repo_path* and write the discovery facts to *repo*.

        Args:
            repo: Repository record to annotate
            repo_path: Path to a full clone with working tree
            cancel: Event that aborts any running subprocess when set

        Returns:
            AnalysisResult with the facts, the raw git-sizer output and detected problems

        Raises:
            DiscoveryError: If git-sizer fails; no facts are written in that case
            CommandCancelledError: If the analysis was cancelled
        """
        disk_probe_failed = False
        try:
            disk_size = self._disk_prober.measure(repo_path, cancel=cancel)
        except DiscoveryError as e:
            logger.warning(f"Disk size probe failed for {repo.full_name}, using git-sizer estimate: {e}")
            disk_size = 0
            disk_probe_failed = True

        sizer = self.run_git_sizer(repo_path, cancel=cancel)

        # A zero probe result means an empty or unmeasurable object store
        total_size = disk_size if disk_size > 0 else sizer.unique_object_size

        blob = parse_blob_descriptor(sizer.max_blob_size.object_description)
        largest_commit = extract_commit_sha(sizer.max_commit_size.object_name) if sizer.max_commit_size.object_name else None
        has_large_files = sizer.max_blob_size.value > LARGE_FILE_THRESHOLD

        facts = StructuralFacts(
            total_size=total_size,
            largest_file=blob.path if blob else None,
            largest_file_size=sizer.max_blob_size.value,
            largest_commit=largest_commit,
            largest_commit_size=sizer.max_commit_size.value,
            commit_count=sizer.unique_commit_count.value,
            branch_count=git_utils.count_remote_branches(repo_path, cancel=cancel),
            last_commit_sha=git_utils.head_commit_sha(repo_path, cancel=cancel),
            has_lfs=detect_lfs(repo_path, cancel=cancel),
            has_submodules=detect_submodules(repo_path, cancel=cancel),
            # git-sizer reports only the largest blob, so at most one large file is known
            has_large_files=has_large_files,
            large_file_count=1 if has_large_files else 0,
            disk_probe_failed=disk_probe_failed,
        )
        if has_large_files:
            logger.warning(
                f"Large file detected in {repo.full_name}: {facts.largest_file_size // MIB} MB ({facts.largest_file})"
            )

        facts.apply_to(repo)
        problems = check_repository_problems(sizer)
        logger.info(
            f"Git analysis complete for {repo.full_name}: size={facts.total_size} commits={facts.commit_count} "
            f"branches={facts.branch_count} lfs={facts.has_lfs} submodules={facts.has_submodules}"
        )
        return AnalysisResult(facts=facts, sizer=sizer, problems=problems)


