"""
Tests for CLI module.
"""

from __future__ import annotations

import json
from collections.abc import Generator
from unittest.mock import MagicMock, patch

import pytest

from repo_migration_planner.cli import main, parse_arguments
from repo_migration_planner.config import CacheMissPolicy
from repo_migration_planner.discovery import DiscoveryReport, RepositoryOutcome
from repo_migration_planner.scoring import DEFAULT_ACTIVITY_THRESHOLDS


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch) -> Generator[dict[str, MagicMock]]:
    """Patch logging setup, platform construction and the pipeline."""
    monkeypatch.setenv("GITHUB_TOKEN", "env-token")
    monkeypatch.delenv("GITHUB_API_URL", raising=False)
    monkeypatch.delenv("REPO_PLANNER_CACHE_MISS_POLICY", raising=False)
    with (
        patch("repo_migration_planner.cli.setup_logging") as setup_logging,
        patch("repo_migration_planner.github_utils.get_platform") as get_platform,
        patch("repo_migration_planner.cli.DiscoveryPipeline") as pipeline_cls,
    ):
        yield {"setup_logging": setup_logging, "get_platform": get_platform, "pipeline_cls": pipeline_cls}


@pytest.mark.unit
class TestParseArguments:
    def test_discover_defaults(self) -> None:
        args = parse_arguments(["discover", "acme"])

        assert args.command == "discover"
        assert args.targets == ["acme"]
        assert args.cache_miss_policy is None
        assert args.workers is None
        assert not args.population_thresholds
        assert not args.verbose

    def test_discover_options(self) -> None:
        args = parse_arguments(
            [
                "discover",
                "acme",
                "globex/site",
                "--cache-miss-policy",
                "just_in_time",
                "--git-sizer",
                "/opt/bin/git-sizer",
                "--workers",
                "8",
                "--population-thresholds",
                "-v",
            ]
        )

        assert args.targets == ["acme", "globex/site"]
        assert args.cache_miss_policy == "just_in_time"
        assert args.git_sizer_path == "/opt/bin/git-sizer"
        assert args.workers == 8
        assert args.population_thresholds
        assert args.verbose

    def test_invalid_cache_miss_policy(self) -> None:
        with pytest.raises(SystemExit):
            parse_arguments(["discover", "acme", "--cache-miss-policy", "sometimes"])

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            parse_arguments([])


@pytest.mark.unit
class TestMain:
    def test_successful_discovery(self, cli_env: dict[str, MagicMock], capsys: pytest.CaptureFixture[str]) -> None:
        pipeline = cli_env["pipeline_cls"].return_value
        pipeline.discover.return_value = DiscoveryReport(
            outcomes=[RepositoryOutcome(full_name="acme/app", success=True, repository_id=1, complexity_score=3)]
        )

        with pytest.raises(SystemExit) as exc_info:
            main(["discover", "acme/app", "--cache-miss-policy", "just_in_time"])

        assert exc_info.value.code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["discovered"] == 1
        assert output["repositories"][0]["full_name"] == "acme/app"

        cli_env["get_platform"].assert_called_once_with("env-token", base_url="https://api.github.com", per_page=100)
        config = cli_env["pipeline_cls"].call_args.kwargs["config"]
        assert config.cache_miss_policy is CacheMissPolicy.JUST_IN_TIME
        assert cli_env["pipeline_cls"].call_args.kwargs["activity_thresholds"] is DEFAULT_ACTIVITY_THRESHOLDS
        pipeline.discover.assert_called_once_with(["acme/app"])

    def test_failed_repository_exits_nonzero(self, cli_env: dict[str, MagicMock]) -> None:
        cli_env["pipeline_cls"].return_value.discover.return_value = DiscoveryReport(
            outcomes=[RepositoryOutcome(full_name="acme/app", success=False, error="clone failed")]
        )

        with pytest.raises(SystemExit) as exc_info:
            main(["discover", "acme/app"])

        assert exc_info.value.code == 1

    def test_population_thresholds(self, cli_env: dict[str, MagicMock]) -> None:
        cli_env["pipeline_cls"].return_value.discover.return_value = DiscoveryReport()

        with pytest.raises(SystemExit):
            main(["discover", "acme", "--population-thresholds", "--verbose"])

        assert cli_env["pipeline_cls"].call_args.kwargs["activity_thresholds"] is None
        cli_env["setup_logging"].assert_called_once_with(verbose=True)

    def test_pass_token(self, cli_env: dict[str, MagicMock]) -> None:
        cli_env["pipeline_cls"].return_value.discover.return_value = DiscoveryReport()

        with (
            patch("repo_migration_planner.utils.get_pass_value", return_value="pass-token"),
            pytest.raises(SystemExit),
        ):
            main(["discover", "acme", "--pass-token", "github/planner"])

        assert cli_env["get_platform"].call_args.args[0] == "pass-token"

    def test_unexpected_error_is_logged(
        self, cli_env: dict[str, MagicMock], caplog: pytest.LogCaptureFixture
    ) -> None:
        cli_env["pipeline_cls"].return_value.discover.side_effect = RuntimeError("boom")

        with pytest.raises(SystemExit) as exc_info:
            main(["discover", "acme"])

        assert exc_info.value.code == 1
        assert "Discovery failed" in caplog.text
