"""
Pytest configuration and fixtures.

This module configures pytest behavior for different test types:
- Integration tests: Fail on any warnings from the code under test
- Unit tests: Allow warnings

Shared fakes for the platform API, the external importer and repository
records live here too.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, override

import pytest

from repo_migration_planner.models import (
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
from repo_migration_planner.storage import InMemoryStore

if TYPE_CHECKING:
    from collections.abc import Generator

# Store warning records during test execution
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Custom logging handler to capture warnings during integration tests."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    @override
    def emit(self, record: logging.LogRecord) -> None:
        """Capture WARNING and above level logs."""
        if self.test_nodeid not in _integration_test_warnings:
            _integration_test_warnings[self.test_nodeid] = []
        _integration_test_warnings[self.test_nodeid].append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """
    Automatically fail integration tests if any WARNING level logs are emitted from the code under test.

    This fixture captures logging output and fails the test if any WARNING or ERROR
    level logs are detected during integration tests. These would come from logger.warning()
    or logger.error() calls in the source code.

    Warnings from the test code itself (via warnings.warn()) are allowed, as they are
    just informational output. This fixture specifically targets logger warnings which
    indicate issues in the code under test.

    Warnings are acceptable when running the tool as a user, but in the test context
    we don't expect any warnings from the planner code and treat them as test failures.
    """
    # Check if this is an integration test
    is_integration_test = request.node.get_closest_marker("integration") is not None

    if not is_integration_test:
        # For unit tests and other tests, don't check for warnings
        yield
        return

    # For integration tests, set up warning capture
    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []

    # Add handler to root logger to capture all warnings
    handler = IntegrationTestWarningHandler(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    try:
        yield
    finally:
        # Clean up - remove the handler
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    """
    Hook to check for warnings after test execution and mark test as failed if warnings were detected.

    This runs after the test completes but before pytest generates the final report.
    """
    # Execute the test and get the report
    outcome = yield
    report = outcome.get_result()

    # Only check during the test call phase (not setup or teardown)
    if call.when == "call" and report.outcome == "passed":
        # Check if this test has any captured warnings
        test_nodeid = item.nodeid
        warning_records = _integration_test_warnings.get(test_nodeid, [])

        if warning_records:
            # Format warning messages for better readability
            warning_messages = [
                f"{record.levelname}: {record.getMessage()} (in {record.name}:{record.lineno})"
                for record in warning_records
            ]

            # Mark the test as failed
            report.outcome = "failed"
            report.longrepr = f"Integration test failed: {len(warning_records)} warning(s) detected:\n" + "\n".join(
                f"  - {msg}" for msg in warning_messages
            )

        # Clean up the warnings for this test
        _integration_test_warnings.pop(test_nodeid, None)


class FakePlatform:
    """In-memory PlatformClient. Set ``failures[method] = exc`` to make a method raise."""

    def __init__(self) -> None:
        self.repositories: dict[str, RepositoryMetadata] = {}
        self.org_repositories: dict[str, list[str]] = {}
        self.counts: dict[str, int] = defaultdict(int)
        self.contributors: list[str] = []
        self.runner_names: list[str] = []
        self.releases: list[ReleaseItem] = []
        self.issues: list[IssueItem] = []
        self.pull_request_states: list[str] = []
        self.contents: dict[str, ContentItem] = {}
        self.security_status: dict[str, int] = {}
        self.org_packages: dict[str, list[str]] = {}
        self.org_projects: set[str] = set()
        self.installations: list[InstallationItem] = []
        self.installation_repositories: dict[int, list[str]] = {}
        self.repository_features: tuple[bool, bool] = (False, False)
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._lock = threading.Lock()

    def add_repository(self, full_name: str, **kwargs: Any) -> RepositoryMetadata:
        kwargs.setdefault("visibility", "private")
        kwargs.setdefault("clone_url", f"https://github.com/{full_name}.git")
        metadata = RepositoryMetadata(full_name=full_name, **kwargs)
        self.repositories[full_name] = metadata
        self.org_repositories.setdefault(full_name.split("/")[0], []).append(full_name)
        return metadata

    def _call(self, method: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((method, args))
        if method in self.failures:
            raise self.failures[method]

    def called(self, method: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == method)

    def get_repository(self, org: str, name: str) -> RepositoryMetadata:
        self._call("get_repository", org, name)
        return self.repositories[f"{org}/{name}"]

    def list_org_repositories(self, org: str) -> list[RepositoryMetadata]:
        self._call("list_org_repositories", org)
        return [self.repositories[full_name] for full_name in self.org_repositories.get(org, [])]

    def _count(self, method: str, org: str, name: str) -> int:
        self._call(method, org, name)
        return self.counts[method]

    def count_workflows(self, org: str, name: str) -> int:
        return self._count("count_workflows", org, name)

    def count_protected_branches(self, org: str, name: str) -> int:
        return self._count("count_protected_branches", org, name)

    def count_rulesets(self, org: str, name: str) -> int:
        return self._count("count_rulesets", org, name)

    def count_environments(self, org: str, name: str) -> int:
        return self._count("count_environments", org, name)

    def count_secrets(self, org: str, name: str) -> int:
        return self._count("count_secrets", org, name)

    def count_variables(self, org: str, name: str) -> int:
        return self._count("count_variables", org, name)

    def count_webhooks(self, org: str, name: str) -> int:
        return self._count("count_webhooks", org, name)

    def count_tags(self, org: str, name: str) -> int:
        return self._count("count_tags", org, name)

    def count_outside_collaborators(self, org: str, name: str) -> int:
        return self._count("count_outside_collaborators", org, name)

    def list_contributors(self, org: str, name: str) -> list[str]:
        self._call("list_contributors", org, name)
        return list(self.contributors)

    def security_alerts_status(self, org: str, name: str, feature: str) -> int:
        self._call("security_alerts_status", org, name, feature)
        return self.security_status.get(feature, 404)

    def get_content(self, org: str, name: str, path: str) -> ContentItem | None:
        self._call("get_content", org, name, path)
        return self.contents.get(path)

    def list_runner_names(self, org: str, name: str) -> list[str]:
        self._call("list_runner_names", org, name)
        return list(self.runner_names)

    def list_releases(self, org: str, name: str) -> list[ReleaseItem]:
        self._call("list_releases", org, name)
        return list(self.releases)

    def list_issues(self, org: str, name: str) -> list[IssueItem]:
        self._call("list_issues", org, name)
        return list(self.issues)

    def list_pull_request_states(self, org: str, name: str) -> list[str]:
        self._call("list_pull_request_states", org, name)
        return list(self.pull_request_states)

    def list_org_package_repositories(self, org: str, package_type: str) -> list[str]:
        self._call("list_org_package_repositories", org, package_type)
        return list(self.org_packages.get(package_type, []))

    def list_org_project_repositories(self, org: str) -> set[str]:
        self._call("list_org_project_repositories", org)
        return set(self.org_projects)

    def list_org_installations(self, org: str) -> list[InstallationItem]:
        self._call("list_org_installations", org)
        return list(self.installations)

    def list_installation_repositories(self, installation_id: int) -> list[str]:
        self._call("list_installation_repositories", installation_id)
        return list(self.installation_repositories.get(installation_id, []))

    def query_repository_packages_and_projects(self, org: str, name: str) -> tuple[bool, bool]:
        self._call("query_repository_packages_and_projects", org, name)
        return self.repository_features


class FakeImporter:
    """Importer double that fails for configured repositories.

    ``progress_steps`` are reported through the progress callback before a
    migration outcome is returned.
    """

    def __init__(self) -> None:
        self.dry_run_failures: dict[str, str] = {}
        self.migration_failures: dict[str, str] = {}
        self.progress_steps: list[RepositoryStatus] = []
        self.dry_run_requests: list[ImportRequest] = []
        self.migrate_requests: list[ImportRequest] = []
        self.on_migrate: Callable[[ImportRequest], None] | None = None
        self._lock = threading.Lock()

    def dry_run(self, request: ImportRequest) -> ImportOutcome:
        with self._lock:
            self.dry_run_requests.append(request)
        error = self.dry_run_failures.get(request.repository.full_name)
        return ImportOutcome(success=error is None, error=error)

    def migrate(
        self, request: ImportRequest, progress: Callable[[RepositoryStatus], None] | None = None
    ) -> ImportOutcome:
        with self._lock:
            self.migrate_requests.append(request)
        if self.on_migrate is not None:
            self.on_migrate(request)
        if progress is not None:
            for status in self.progress_steps:
                progress(status)
        error = self.migration_failures.get(request.repository.full_name)
        return ImportOutcome(success=error is None, error=error)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def importer() -> FakeImporter:
    return FakeImporter()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def make_repository(store: InMemoryStore) -> Callable[..., Repository]:
    """Create and persist a repository record."""

    def factory(full_name: str = "acme/app", **kwargs: Any) -> Repository:
        return store.add_repository(Repository(full_name=full_name, **kwargs))

    return factory
