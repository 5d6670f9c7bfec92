from __future__ import annotations

import logging
import os
from typing import Any, Final

from github import Auth, Github, UnknownObjectException
from github.Repository import Repository
from requests.utils import parse_header_links

from . import utils
from .exceptions import PlatformError
from .models import ContentItem, InstallationItem, IssueItem, ReleaseItem, RepositoryMetadata

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

_TOKEN_ENV_VAR: Final[str] = "GITHUB_TOKEN"  # noqa: S105
_DEFAULT_TOKEN_PASS_PATH: Final[str] = "github/cli/token"  # noqa: S105
DEFAULT_API_URL: Final[str] = "https://api.github.com"

_PROJECTS_QUERY: Final[str] = """
query($owner: String!, $cursor: String) {
  organization(login: $owner) {
    projectsV2(first: 100, after: $cursor) {
      nodes {
        title
        repositories(first: 100) {
          nodes { name }
        }
      }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""

_REPOSITORY_FEATURES_QUERY: Final[str] = """
query($owner: String!, $name: String!) {
  repository(owner: $owner, name: $name) {
    packages(first: 1) { totalCount }
    projectsV2(first: 1) { totalCount }
  }
}
"""


def get_token(pass_path: str | None = None) -> str | None:
    """Get GitHub token from pass path, env var GITHUB_TOKEN, or default pass location."""
    if pass_path:
        return utils.get_pass_value(pass_path)

    token: str | None = os.environ.get(_TOKEN_ENV_VAR)
    if token:
        return token

    try:
        return utils.get_pass_value(_DEFAULT_TOKEN_PASS_PATH)
    except (ValueError, utils.PassError, OSError):
        logger.warning("No GitHub token specified nor found")
        return None


def get_client(token: str | None = None, base_url: str = DEFAULT_API_URL, per_page: int = 100) -> Github:
    """Get a GitHub client using the token."""
    auth = Auth.Token(token) if token else None
    return Github(auth=auth, base_url=base_url, per_page=per_page)


def _graphql_url(base_url: str) -> str:
    """GraphQL endpoint for a REST base URL (GitHub.com or GitHub Enterprise Server)."""
    base = base_url.rstrip("/")
    if base.endswith("/api/v3"):
        return base.removesuffix("/v3") + "/graphql"
    return base + "/graphql"


def _metadata(repo: Repository) -> RepositoryMetadata:
    visibility = repo.visibility or ("private" if repo.private else "public")
    return RepositoryMetadata(
        full_name=repo.full_name,
        visibility=visibility,
        clone_url=repo.clone_url,
        has_wiki=bool(repo.has_wiki),
        has_discussions=bool(repo.has_discussions),
        has_projects=bool(repo.has_projects),
    )


class GitHubPlatform:
    """PlatformClient backed by PyGithub.

    Endpoints PyGithub models are walked through its ``PaginatedList``. The
    rest (rulesets, org packages, installations, alert probes, GraphQL) go
    through the client's requester so they share authentication and rate
    limit handling, with pagination following the ``Link`` header.
    """

    _client: Github
    _base_url: str
    _per_page: int

    def __init__(self, client: Github, *, base_url: str = DEFAULT_API_URL, per_page: int = 100) -> None:
        self._client = client
        self._base_url = base_url
        self._per_page = per_page

    def _repo(self, org: str, name: str) -> Repository:
        return self._client.get_repo(f"{org}/{name}", lazy=True)

    def _get_json(self, url: str, parameters: dict[str, Any] | None = None) -> tuple[dict[str, Any], Any]:
        return self._client.requester.requestJsonAndCheck("GET", url, parameters=parameters)

    def _paginate(self, url: str, parameters: dict[str, Any] | None = None, item_key: str | None = None) -> list[Any]:
        """Collect all items of a REST listing, following ``rel="next"`` links."""
        items: list[Any] = []
        next_url: str | None = url
        params: dict[str, Any] | None = {"per_page": self._per_page, **(parameters or {})}
        while next_url:
            headers, data = self._get_json(next_url, params)
            page = data.get(item_key, []) if item_key else data
            items.extend(page or [])
            # The next link already carries the query string
            params = None
            next_url = None
            for link in parse_header_links(headers.get("link", "")):
                if link.get("rel") == "next":
                    next_url = link["url"]
        return items

    def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        _, data = self._client.requester.requestJsonAndCheck(
            "POST", _graphql_url(self._base_url), input={"query": query, "variables": variables}
        )
        if data.get("errors"):
            msg = f"GraphQL query failed: {data['errors']}"
            raise PlatformError(msg)
        return data.get("data") or {}

    def get_repository(self, org: str, name: str) -> RepositoryMetadata:
        return _metadata(self._client.get_repo(f"{org}/{name}"))

    def list_org_repositories(self, org: str) -> list[RepositoryMetadata]:
        return [_metadata(repo) for repo in self._client.get_organization(org).get_repos(type="all")]

    def count_workflows(self, org: str, name: str) -> int:
        return self._repo(org, name).get_workflows().totalCount

    def count_protected_branches(self, org: str, name: str) -> int:
        return sum(1 for branch in self._repo(org, name).get_branches() if branch.protected)

    def count_rulesets(self, org: str, name: str) -> int:
        return len(self._paginate(f"/repos/{org}/{name}/rulesets", {"includes_parents": "false"}))

    def count_environments(self, org: str, name: str) -> int:
        return self._repo(org, name).get_environments().totalCount

    def count_secrets(self, org: str, name: str) -> int:
        return self._repo(org, name).get_secrets().totalCount

    def count_variables(self, org: str, name: str) -> int:
        return self._repo(org, name).get_variables().totalCount

    def count_webhooks(self, org: str, name: str) -> int:
        return self._repo(org, name).get_hooks().totalCount

    def list_contributors(self, org: str, name: str) -> list[str]:
        return [contributor.login for contributor in self._repo(org, name).get_contributors()]

    def count_tags(self, org: str, name: str) -> int:
        return self._repo(org, name).get_tags().totalCount

    def security_alerts_status(self, org: str, name: str, feature: str) -> int:
        status, _, _ = self._client.requester.requestJson(
            "GET", f"/repos/{org}/{name}/{feature}/alerts", parameters={"per_page": 1}
        )
        return status

    def get_content(self, org: str, name: str, path: str) -> ContentItem | None:
        try:
            contents = self._repo(org, name).get_contents(path)
        except UnknownObjectException:
            return None
        if isinstance(contents, list):
            return ContentItem(path=path, type="dir")
        content = contents.decoded_content.decode("utf-8", errors="replace") if contents.type == "file" else None
        return ContentItem(path=path, type=contents.type, content=content)

    def list_runner_names(self, org: str, name: str) -> list[str]:
        return [runner.name for runner in self._repo(org, name).get_self_hosted_runners()]

    def count_outside_collaborators(self, org: str, name: str) -> int:
        return self._repo(org, name).get_collaborators(affiliation="outside").totalCount

    def list_releases(self, org: str, name: str) -> list[ReleaseItem]:
        releases: list[ReleaseItem] = []
        for release in self._repo(org, name).get_releases():
            assets = list(release.get_assets())
            releases.append(
                ReleaseItem(
                    tag_name=release.tag_name,
                    asset_count=len(assets),
                    asset_size=sum(asset.size or 0 for asset in assets),
                )
            )
        return releases

    def list_issues(self, org: str, name: str) -> list[IssueItem]:
        return [
            IssueItem(state=issue.state, is_pull_request=issue.pull_request is not None)
            for issue in self._repo(org, name).get_issues(state="all")
        ]

    def list_pull_request_states(self, org: str, name: str) -> list[str]:
        return [pull.state for pull in self._repo(org, name).get_pulls(state="all")]

    def list_org_package_repositories(self, org: str, package_type: str) -> list[str]:
        packages = self._paginate(f"/orgs/{org}/packages", {"package_type": package_type})
        return [pkg["repository"]["name"] for pkg in packages if pkg.get("repository")]

    def list_org_project_repositories(self, org: str) -> set[str]:
        repositories: set[str] = set()
        cursor: str | None = None
        while True:
            data = self._graphql(_PROJECTS_QUERY, {"owner": org, "cursor": cursor})
            projects = (data.get("organization") or {}).get("projectsV2") or {}
            for project in projects.get("nodes") or []:
                for repo in (project.get("repositories") or {}).get("nodes") or []:
                    repositories.add(repo["name"])
            page_info = projects.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                return repositories
            cursor = page_info.get("endCursor")

    def list_org_installations(self, org: str) -> list[InstallationItem]:
        installations = self._paginate(f"/orgs/{org}/installations", item_key="installations")
        return [
            InstallationItem(
                id=installation["id"],
                app_slug=installation.get("app_slug", ""),
                repository_selection=installation.get("repository_selection", ""),
            )
            for installation in installations
        ]

    def list_installation_repositories(self, installation_id: int) -> list[str]:
        repositories = self._paginate(f"/user/installations/{installation_id}/repositories", item_key="repositories")
        return [repo["full_name"] for repo in repositories]

    def query_repository_packages_and_projects(self, org: str, name: str) -> tuple[bool, bool]:
        data = self._graphql(_REPOSITORY_FEATURES_QUERY, {"owner": org, "name": name})
        repository = data.get("repository")
        if repository is None:
            msg = f"Repository {org}/{name} not found via GraphQL"
            raise PlatformError(msg)
        return (
            repository["packages"]["totalCount"] > 0,
            repository["projectsV2"]["totalCount"] > 0,
        )


def get_platform(token: str | None, base_url: str = DEFAULT_API_URL, per_page: int = 100) -> GitHubPlatform:
    """Build a GitHubPlatform for the given token and API URL."""
    client = get_client(token, base_url=base_url, per_page=per_page)
    return GitHubPlatform(client, base_url=base_url, per_page=per_page)
