"""Git and external-tool operations using subprocesses.

Every command runs with ``GIT_TERMINAL_PROMPT=0`` so a missing or wrong
credential fails fast instead of blocking on a prompt, and every command
accepts an optional ``threading.Event`` that aborts it when set.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from .exceptions import CommandCancelledError, DiscoveryError

logger: logging.Logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.1

_SIZE_UNITS: dict[str, int] = {
    "bytes": 1,
    "byte": 1,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}


@dataclass
class CommandResult:
    """Output of a finished external command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _inject_token(url: str, token: str | None, prefix: str = "") -> str:
    """Inject authentication token into HTTPS URL.

    Args:
        url: The URL to modify
        token: Token to inject (if None, returns original URL)
        prefix: Prefix before token (e.g., "x-access-token:")

    Returns:
        URL with token injected, or original if not HTTPS or no token
    """
    if not token or not url.startswith("https://"):
        return url
    parts = urlsplit(url)
    host = parts.netloc.rsplit("@", 1)[-1]
    netloc = f"{prefix}{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _sanitize_error(error: str, tokens: list[str | None]) -> str:
    """Remove tokens from error message to prevent leakage.

    Args:
        error: Error message that may contain tokens
        tokens: List of tokens to redact (None values are ignored)

    Returns:
        Error message with tokens replaced by ***TOKEN***
    """
    result = error
    for token in tokens:
        if token:
            result = result.replace(token, "***TOKEN***")
    return result


def _git_env() -> dict[str, str]:
    return os.environ.copy() | {"GIT_TERMINAL_PROMPT": "0"}


def run_command(
    args: list[str],
    *,
    cwd: str | Path | None = None,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run an external command, aborting it if *cancel* is set or *timeout* elapses.

    Args:
        args: Command and arguments
        cwd: Working directory
        cancel: Event that, once set, terminates the process
        timeout: Maximum runtime in seconds

    Returns:
        CommandResult with exit code and decoded output. A non-zero exit code is
        returned, not raised.

    Raises:
        CommandCancelledError: If the command was cancelled or timed out
        OSError: If the executable cannot be started
    """
    if cancel is not None and cancel.is_set():
        msg = f"Command cancelled before start: {args[0]}"
        raise CommandCancelledError(msg)

    deadline = time.monotonic() + timeout if timeout is not None else None
    process = subprocess.Popen(  # noqa: S603
        args,
        cwd=cwd,
        env=_git_env(),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    while True:
        try:
            stdout, stderr = process.communicate(timeout=_POLL_INTERVAL_SECONDS)
            return CommandResult(returncode=process.returncode, stdout=stdout, stderr=stderr)
        except subprocess.TimeoutExpired:
            cancelled = cancel is not None and cancel.is_set()
            expired = deadline is not None and time.monotonic() >= deadline
            if cancelled or expired:
                process.kill()
                process.communicate()
                reason = "cancelled" if cancelled else f"timed out after {timeout}s"
                msg = f"Command {reason}: {args[0]}"
                raise CommandCancelledError(msg) from None


def count_nonblank_lines(output: str) -> int:
    return sum(1 for line in output.splitlines() if line.strip())


def clone_repository(
    clone_url: str,
    token: str | None,
    *,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
    clone_root: str | None = None,
) -> str:
    """Create a temporary full clone (with working tree) for analysis.

    A full clone is required: the statistics tool needs complete history and
    LFS/submodule detection reads files from the working tree.

    Returns:
        Path to the temporary clone directory. The caller removes it with
        ``cleanup_git_clone``.

    Raises:
        DiscoveryError: If cloning fails
    """
    temp_clone_path = tempfile.mkdtemp(prefix="repo_discovery_", dir=clone_root)
    url = _inject_token(clone_url, token, prefix="x-access-token:")
    try:
        result = run_command(
            ["git", "clone", "--no-single-branch", url, temp_clone_path], cancel=cancel, timeout=timeout
        )
    except (CommandCancelledError, OSError) as e:
        cleanup_git_clone(temp_clone_path)
        msg = f"Failed to clone repository: {_sanitize_error(str(e), [token])}"
        raise DiscoveryError(msg) from e

    if not result.ok:
        cleanup_git_clone(temp_clone_path)
        msg = f"Failed to clone repository: {_sanitize_error(result.stderr.strip(), [token])}"
        raise DiscoveryError(msg)
    return temp_clone_path


def cleanup_git_clone(clone_path: str) -> None:
    """Clean up temporary git clone directory.

    Args:
        clone_path: Path to the git clone directory to remove
    """
    if clone_path and Path(clone_path).exists():
        try:
            shutil.rmtree(clone_path)
            logger.debug(f"Cleaned up git clone at {clone_path}")
        except OSError as e:
            logger.warning(f"Failed to clean up git clone at {clone_path}: {e}")


def count_remote_branches(repo_path: str, *, cancel: threading.Event | None = None) -> int:
    """Count branches by listing remote branches (one non-blank line per branch)."""
    result = run_command(["git", "branch", "-r"], cwd=repo_path, cancel=cancel)
    if not result.ok:
        logger.warning(f"Failed to list remote branches: {result.stderr.strip()}")
        return 0
    return count_nonblank_lines(result.stdout)


def head_commit_sha(repo_path: str, *, cancel: threading.Event | None = None) -> str | None:
    result = run_command(["git", "rev-parse", "HEAD"], cwd=repo_path, cancel=cancel)
    if not result.ok:
        logger.debug(f"Failed to resolve HEAD: {result.stderr.strip()}")
        return None
    return result.stdout.strip() or None


def list_lfs_files(repo_path: str, *, cancel: threading.Event | None = None) -> str:
    """Return ``git lfs ls-files`` output, or an empty string if the command fails."""
    try:
        result = run_command(["git", "lfs", "ls-files"], cwd=repo_path, cancel=cancel)
    except OSError as e:
        logger.debug(f"git lfs unavailable: {e}")
        return ""
    return result.stdout if result.ok else ""


def submodule_status(repo_path: str, *, cancel: threading.Event | None = None) -> str:
    """Return ``git submodule status`` output, or an empty string if the command fails."""
    result = run_command(["git", "submodule", "status"], cwd=repo_path, cancel=cancel)
    return result.stdout if result.ok else ""


def ls_remote(
    url: str,
    token: str | None,
    *,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
) -> str:
    """List refs of a remote repository without cloning it.

    Returns:
        Raw ``git ls-remote`` output; empty when the remote is empty, missing or
        unreachable.
    """
    authenticated_url = _inject_token(url, token, prefix="x-access-token:")
    try:
        result = run_command(["git", "ls-remote", authenticated_url], cancel=cancel, timeout=timeout)
    except OSError as e:
        logger.debug(f"git ls-remote could not start: {_sanitize_error(str(e), [token])}")
        return ""
    if not result.ok:
        logger.debug(f"git ls-remote failed: {_sanitize_error(result.stderr.strip(), [token])}")
        return ""
    return result.stdout


def parse_human_size(value: str) -> int:
    """Parse a size such as ``1.84 MiB`` or ``0 bytes`` into bytes.

    Raises:
        ValueError: If the number or unit is not recognised
    """
    parts = value.split()
    if not parts:
        msg = "empty size value"
        raise ValueError(msg)
    if len(parts) == 1:
        return int(parts[0])
    unit = parts[1].lower()
    if unit not in _SIZE_UNITS:
        msg = f"unknown size unit: {parts[1]}"
        raise ValueError(msg)
    return int(float(parts[0]) * _SIZE_UNITS[unit])


def parse_count_objects(output: str) -> dict[str, int]:
    """Parse ``git count-objects -vH`` output into a key -> bytes/count mapping.

    Unparseable lines are skipped.
    """
    values: dict[str, int] = {}
    for line in output.splitlines():
        key, sep, raw = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        raw = raw.strip()
        try:
            values[key] = parse_human_size(raw) if "size" in key else int(raw)
        except ValueError:
            logger.debug(f"Skipping unparseable count-objects line: {line!r}")
    return values


def count_objects_size(repo_path: str, *, cancel: threading.Event | None = None) -> int:
    """Measure on-disk object storage (loose + packed) in bytes.

    Raises:
        DiscoveryError: If the measurement cannot be taken
    """
    try:
        result = run_command(["git", "count-objects", "-vH"], cwd=repo_path, cancel=cancel)
    except OSError as e:
        msg = f"git count-objects could not start: {e}"
        raise DiscoveryError(msg) from e
    if not result.ok:
        msg = f"git count-objects failed: {result.stderr.strip()}"
        raise DiscoveryError(msg)
    values = parse_count_objects(result.stdout)
    return values.get("size", 0) + values.get("size-pack", 0)
