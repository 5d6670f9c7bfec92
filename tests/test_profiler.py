"""Tests for platform feature profiling."""

from __future__ import annotations

from dataclasses import fields
from unittest.mock import patch

import pytest
from github import GithubException

from repo_migration_planner.config import CacheMissPolicy
from repo_migration_planner.exceptions import CommandCancelledError, DiscoveryError
from repo_migration_planner.models import (
    FEATURE_FACT_FIELDS,
    ContentItem,
    InstallationItem,
    IssueItem,
    ReleaseItem,
    Repository,
)
from repo_migration_planner.org_cache import OrgCacheRegistry
from repo_migration_planner.profiler import (
    FeatureProfile,
    FeatureProfiler,
    is_hosted_runner,
    split_full_name,
    wiki_clone_url,
)

FORBIDDEN = GithubException(403, {"message": "Resource not accessible by integration"}, None)


@pytest.fixture
def source(platform):
    """Platform with one repository and its organization's caches populated."""
    platform.add_repository("acme/app", has_discussions=True)
    platform.org_packages = {"npm": ["app"]}
    platform.org_projects = {"app"}
    platform.installations = [
        InstallationItem(id=1, app_slug="ci-bot", repository_selection="all"),
        InstallationItem(id=2, app_slug="deployer", repository_selection="selected"),
    ]
    platform.installation_repositories = {2: ["acme/other"]}
    return platform


def _profile(platform, *, caches=True, policy=CacheMissPolicy.ABSENT, repo=None):
    repo = repo or Repository(full_name="acme/app")
    org_caches = OrgCacheRegistry(platform).warm("acme") if caches else None
    report = FeatureProfiler(platform, workers=4, cache_miss_policy=policy).profile(repo, org_caches)
    return repo, report


@pytest.mark.unit
class TestHelpers:
    def test_wiki_clone_url(self) -> None:
        assert wiki_clone_url("https://github.com/acme/app.git") == "https://github.com/acme/app.wiki.git"
        assert wiki_clone_url("https://github.com/acme/app") == "https://github.com/acme/app.wiki.git"

    def test_split_full_name(self) -> None:
        assert split_full_name("acme/app") == ("acme", "app")
        with pytest.raises(DiscoveryError, match="expected: org/repo"):
            split_full_name("app")

    @pytest.mark.parametrize(
        ("name", "hosted"),
        [("GitHub Actions 12", True), ("Hosted Agent", True), ("build-box-01", False)],
    )
    def test_is_hosted_runner(self, name: str, hosted: bool) -> None:
        assert is_hosted_runner(name) is hosted


@pytest.mark.unit
class TestCachedFeatures:
    def test_cache_present(self, source) -> None:
        repo, report = _profile(source)

        assert repo.has_packages
        assert repo.has_projects
        assert repo.installed_apps == ["ci-bot"]
        assert repo.installed_apps_count == 1
        assert report.degraded == {}
        assert source.called("query_repository_packages_and_projects") == 0

    def test_repository_missing_from_warmed_package_index_has_no_packages(self, source) -> None:
        source.add_repository("acme/c")
        source.org_packages = {"npm": ["a"], "maven": ["b"]}

        repo, report = _profile(source, repo=Repository(full_name="acme/c"))

        assert not repo.has_packages
        assert "packages" not in report.degraded
        assert source.called("query_repository_packages_and_projects") == 0

    def test_cache_failed_reports_absent_and_degraded(self, source) -> None:
        source.failures["list_org_package_repositories"] = FORBIDDEN
        source.failures["list_org_project_repositories"] = FORBIDDEN
        source.failures["list_org_installations"] = FORBIDDEN

        repo, report = _profile(source)

        assert not repo.has_packages
        assert not repo.has_projects
        assert repo.installed_apps == []
        assert set(report.degraded) == {"packages", "projects", "apps"}
        assert source.called("query_repository_packages_and_projects") == 0

    def test_cache_missing_with_just_in_time_fallback(self, source) -> None:
        source.repository_features = (True, False)

        repo, report = _profile(source, caches=False, policy=CacheMissPolicy.JUST_IN_TIME)

        assert repo.has_packages
        assert not repo.has_projects
        assert source.called("query_repository_packages_and_projects") == 1
        # Apps have no per-repository fallback
        assert set(report.degraded) == {"apps"}

    def test_partial_cache_only_falls_back_for_missing_index(self, source) -> None:
        source.failures["list_org_project_repositories"] = FORBIDDEN
        source.repository_features = (False, True)

        repo, report = _profile(source, policy=CacheMissPolicy.JUST_IN_TIME)

        # Packages still come from the cache
        assert repo.has_packages
        assert repo.has_projects
        assert report.degraded == {}

    def test_failed_fallback_is_degraded(self, source) -> None:
        source.failures["query_repository_packages_and_projects"] = FORBIDDEN

        repo, report = _profile(source, caches=False, policy=CacheMissPolicy.JUST_IN_TIME)

        assert not repo.has_packages
        assert {"packages", "projects"} <= set(report.degraded)


@pytest.mark.unit
class TestFeatureProfiler:
    def test_counts_and_flags(self, source) -> None:
        source.counts.update(
            {
                "count_workflows": 3,
                "count_protected_branches": 2,
                "count_rulesets": 1,
                "count_environments": 2,
                "count_secrets": 5,
                "count_variables": 4,
                "count_webhooks": 1,
                "count_tags": 9,
                "count_outside_collaborators": 2,
            }
        )
        source.contributors = ["a", "b", "c", "d", "e", "f", "g"]

        repo, _ = _profile(source)

        assert repo.has_actions
        assert repo.workflow_count == 3
        assert repo.branch_protections == 2
        assert repo.has_rulesets
        assert (repo.environment_count, repo.secret_count, repo.variable_count) == (2, 5, 4)
        assert repo.webhook_count == 1
        assert repo.tag_count == 9
        assert repo.collaborator_count == 2
        assert repo.has_discussions
        assert repo.contributor_count == 7
        assert repo.top_contributors == ["a", "b", "c", "d", "e"]

    def test_issue_listing_excludes_pull_requests(self, source) -> None:
        source.issues = [
            IssueItem(state="open"),
            IssueItem(state="closed"),
            IssueItem(state="open", is_pull_request=True),
        ]
        source.pull_request_states = ["open", "closed", "closed"]

        repo, _ = _profile(source)

        assert (repo.issue_count, repo.open_issue_count) == (2, 1)
        assert (repo.pull_request_count, repo.open_pr_count) == (3, 1)

    def test_releases(self, source) -> None:
        source.releases = [ReleaseItem("v1"), ReleaseItem("v2", asset_count=1, asset_size=1024)]

        repo, report = _profile(source)

        assert repo.release_count == 2
        assert repo.has_release_assets
        assert report.releases == source.releases

    def test_failed_release_listing_is_not_reused(self, source) -> None:
        source.failures["list_releases"] = FORBIDDEN

        repo, report = _profile(source)

        assert repo.release_count == 0
        assert report.releases is None
        assert "releases" in report.degraded

    def test_codeowners_path_order(self, source) -> None:
        source.contents = {
            ".github/CODEOWNERS": ContentItem(".github/CODEOWNERS", "file", "* @acme/platform @alice\n"),
            "CODEOWNERS": ContentItem("CODEOWNERS", "file", "* @bob\n"),
        }

        repo, _ = _profile(source)

        assert repo.has_codeowners
        assert repo.codeowners_teams == ["@acme/platform"]
        assert repo.codeowners_users == ["@alice"]

    def test_codeowners_directory_is_ignored(self, source) -> None:
        source.contents = {".github/CODEOWNERS": ContentItem(".github/CODEOWNERS", "dir")}

        repo, _ = _profile(source)

        assert not repo.has_codeowners
        assert repo.codeowners_content is None

    def test_security_probes(self, source) -> None:
        source.security_status = {"code-scanning": 200, "dependabot": 403}

        repo, report = _profile(source)

        assert repo.has_code_scanning
        assert not repo.has_dependabot
        assert not repo.has_secret_scanning
        assert "dependabot" in report.degraded
        assert "secret_scanning" not in report.degraded

    @pytest.mark.parametrize(
        ("runners", "expected"),
        [(["GitHub Actions 1", "build-box"], True), (["GitHub Actions 1"], False), ([], False)],
    )
    def test_self_hosted_runners(self, source, runners: list[str], expected: bool) -> None:
        source.runner_names = runners

        repo, _ = _profile(source)

        assert repo.has_self_hosted_runners is expected

    def test_enabled_but_empty_wiki_does_not_count(self, source) -> None:
        source.add_repository("acme/docs", has_wiki=True)
        with patch("repo_migration_planner.git_utils.ls_remote", return_value="") as mock_ls:
            repo, _ = _profile(source, repo=Repository(full_name="acme/docs"))

        assert not repo.has_wiki
        assert mock_ls.call_args.args[0] == "https://github.com/acme/docs.wiki.git"

    def test_wiki_with_content(self, source) -> None:
        source.add_repository("acme/docs", has_wiki=True)
        with patch("repo_migration_planner.git_utils.ls_remote", return_value="abc\tHEAD\n"):
            repo, _ = _profile(source, repo=Repository(full_name="acme/docs"))

        assert repo.has_wiki

    def test_disabled_wiki_is_not_probed(self, source) -> None:
        with patch("repo_migration_planner.git_utils.ls_remote") as mock_ls:
            repo, _ = _profile(source)

        assert not repo.has_wiki
        mock_ls.assert_not_called()

    def test_failing_sub_check_degrades_only_itself(self, source) -> None:
        source.counts["count_webhooks"] = 3
        source.failures["count_workflows"] = FORBIDDEN

        repo, report = _profile(source)

        assert repo.workflow_count == 0
        assert not repo.has_actions
        assert repo.webhook_count == 3
        assert set(report.degraded) == {"workflows"}
        assert "403" in report.degraded["workflows"]

    def test_profiling_is_idempotent(self, source) -> None:
        source.counts["count_workflows"] = 2
        source.contributors = ["a"]
        repo = Repository(full_name="acme/app")

        _, first = _profile(source, repo=repo)
        _, second = _profile(source, repo=repo)

        assert first.profile == second.profile
        assert repo.workflow_count == 2
        assert repo.contributor_count == 1

    def test_profile_replaces_stale_values(self, source) -> None:
        repo = Repository(full_name="acme/app", webhook_count=7, installed_apps=["old-app"])

        _profile(source, repo=repo)

        assert repo.webhook_count == 0
        assert repo.installed_apps == ["ci-bot"]

    def test_profile_covers_exactly_the_feature_fact_group(self) -> None:
        assert {f.name for f in fields(FeatureProfile)} == set(FEATURE_FACT_FIELDS)

    def test_repository_fetch_failure_raises(self, source) -> None:
        source.failures["get_repository"] = FORBIDDEN

        with pytest.raises(DiscoveryError, match="Failed to get repository acme/app"):
            _profile(source)

    def test_cancellation_propagates(self, source) -> None:
        source.add_repository("acme/docs", has_wiki=True)
        with (
            patch("repo_migration_planner.git_utils.ls_remote", side_effect=CommandCancelledError("cancelled")),
            pytest.raises(CommandCancelledError),
        ):
            _profile(source, repo=Repository(full_name="acme/docs"))
