"""Smoke tests for the CLI.

These tests verify CLI functionality without network access or a real
toolchain. Paths and the cache index are redirected to a temp directory.
"""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from cross_release import __version__
from cross_release.cli import app

runner = CliRunner()

# CI variables that would otherwise leak into context detection
CI_VARS = {
    name: None
    for name in (
        "TRAVIS_EVENT_TYPE",
        "TRAVIS_BRANCH",
        "TRAVIS_TAG",
        "TRAVIS_RUST_VERSION",
        "GITHUB_EVENT_NAME",
        "GITHUB_REF",
        "GITHUB_HEAD_REF",
        "RUST_CHANNEL",
        "CRATE_NAME",
        "CROSS_RELEASE_RELEASE_REPO",
        "CROSS_RELEASE_RELEASE_TOKEN",
    )
}


@pytest.fixture
def cli_env(tmp_path) -> dict[str, str | None]:
    """Environment pointing every path at tmp_path."""
    return {
        **CI_VARS,
        "CROSS_RELEASE_CACHE_DIR": str(tmp_path / "cache"),
        "CROSS_RELEASE_WORK_DIR": str(tmp_path / "work"),
        "CROSS_RELEASE_DIST_DIR": str(tmp_path / "dist"),
        "CROSS_RELEASE_DB_URL": f"sqlite:///{tmp_path / 'index.sqlite'}",
        "CROSS_RELEASE_HOST_CLASS": "linux",
        "CROSS_RELEASE_TRACKED_REFS": "[]",
        "CROSS_RELEASE_LOG_LEVEL": "ERROR",
    }


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Cross-release" in result.stdout

    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_sections(self, cli_env) -> None:
        result = runner.invoke(app, ["config"], env=cli_env)
        assert result.exit_code == 0
        for section in ("Paths:", "Operational:", "Toolchain:", "Release host:"):
            assert section in result.stdout
        assert "(not set)" in result.stdout

    def test_config_json(self, cli_env) -> None:
        result = runner.invoke(app, ["config", "--json"], env=cli_env)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["host_class"] == "linux"
        assert data["tracked_refs"] == []

    def test_config_json_masks_token(self, cli_env) -> None:
        env = {**cli_env, "CROSS_RELEASE_RELEASE_TOKEN": "s3cret"}
        result = runner.invoke(app, ["config", "--json"], env=env)
        assert result.exit_code == 0
        assert "s3cret" not in result.stdout

    def test_invalid_settings_exit_nonzero(self, cli_env) -> None:
        env = {**cli_env, "CROSS_RELEASE_TRACKED_REFS": '["("]'}
        result = runner.invoke(app, ["config"], env=env)
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestCLITargets:
    def test_list_json(self) -> None:
        result = runner.invoke(app, ["targets", "list", "--host", "darwin", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [d["triple"] for d in data] == ["i686-apple-darwin", "x86_64-apple-darwin"]
        assert all(d["publish_eligible"] for d in data)

    def test_list_conformance(self) -> None:
        result = runner.invoke(app, ["targets", "list", "--channel", "nightly", "--json"])
        data = json.loads(result.stdout)
        assert data
        assert not any(d["publish_eligible"] for d in data)
        assert all("+" in d["leg_id"] for d in data)

    def test_list_text(self) -> None:
        result = runner.invoke(app, ["targets", "list"])
        assert result.exit_code == 0
        assert "x86_64-unknown-linux-musl" in result.stdout


class TestCLIGate:
    def test_stable_tag_allowed(self) -> None:
        result = runner.invoke(app, ["gate", "--event", "push-tag", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {
            "event_kind": "push-tag",
            "channel": "stable",
            "publish": True,
        }

    def test_nightly_tag_denied(self) -> None:
        result = runner.invoke(app, ["gate", "-e", "push-tag", "-c", "nightly"])
        assert result.exit_code == 0
        assert "denied" in result.stdout

    def test_branch_denied(self) -> None:
        result = runner.invoke(app, ["gate", "-e", "push-branch", "--json"])
        assert json.loads(result.stdout)["publish"] is False


class TestCLIName:
    def test_name(self, cli_env) -> None:
        result = runner.invoke(
            app, ["name", "svd2rust", "v1.2.0", "x86_64-apple-darwin"], env=cli_env
        )
        assert result.exit_code == 0
        assert result.stdout.strip() == "svd2rust-v1.2.0-x86_64-apple-darwin.tar.gz"

    def test_name_with_extension(self, cli_env) -> None:
        result = runner.invoke(
            app,
            ["name", "svd2rust", "v1.2.0", "x86_64-apple-darwin", "--ext", "zip"],
            env=cli_env,
        )
        assert result.stdout.strip() == "svd2rust-v1.2.0-x86_64-apple-darwin.zip"


class TestCLIRun:
    """Test CLI run command with a fake toolchain."""

    def test_branch_run_json(self, tmp_path, cli_env, fake_build) -> None:
        project = tmp_path / "project"
        project.mkdir()

        with patch("cross_release.orchestrator.build", fake_build()):
            result = runner.invoke(
                app,
                [
                    "run",
                    "--crate",
                    "svd2rust",
                    "--event",
                    "push-branch",
                    "--ref",
                    "auto",
                    "--project-dir",
                    str(project),
                    "--json",
                ],
                env=cli_env,
            )

        assert result.exit_code == 0
        report = json.loads(result.stdout)
        assert report["status"] == "success"
        assert report["publish_allowed"] is False
        assert len(report["legs"]) == 4
        assert all(leg["artifact"].startswith("svd2rust-auto-") for leg in report["legs"])

    def test_run_from_travis_env(self, tmp_path, cli_env, fake_build) -> None:
        project = tmp_path / "project"
        project.mkdir()
        env = {
            **cli_env,
            "TRAVIS_EVENT_TYPE": "push",
            "TRAVIS_BRANCH": "try",
            "TRAVIS_RUST_VERSION": "nightly",
            "CRATE_NAME": "svd2rust",
        }

        with patch("cross_release.orchestrator.build", fake_build()):
            result = runner.invoke(
                app, ["run", "--project-dir", str(project), "--no-cache", "--json"], env=env
            )

        assert result.exit_code == 0
        report = json.loads(result.stdout)
        assert report["channel"] == "nightly"
        assert all(leg["vendor_tag"] for leg in report["legs"])

    def test_failed_leg_exits_nonzero(self, tmp_path, cli_env, fake_build) -> None:
        project = tmp_path / "project"
        project.mkdir()

        with patch(
            "cross_release.orchestrator.build",
            fake_build(failing={"x86_64-unknown-linux-gnu"}),
        ):
            result = runner.invoke(
                app,
                [
                    "run",
                    "--crate",
                    "svd2rust",
                    "-e",
                    "pull-request",
                    "-r",
                    "master",
                    "-p",
                    str(project),
                    "--no-cache",
                ],
                env=cli_env,
            )

        assert result.exit_code == 1
        assert "x86_64-unknown-linux-gnu" in result.output

    def test_missing_context_exits_nonzero(self, cli_env) -> None:
        result = runner.invoke(app, ["run", "--crate", "svd2rust"], env=cli_env)
        assert result.exit_code == 1
        assert "No CI event" in result.output

    def test_invalid_context_exits_nonzero(self, cli_env) -> None:
        result = runner.invoke(
            app, ["run", "-e", "push-tag", "-r", "v1.0.0"], env=cli_env
        )
        assert result.exit_code == 1

    def test_event_without_ref_is_rejected(self, cli_env, fake_build) -> None:
        calls: list = []
        with patch("cross_release.orchestrator.build", fake_build(calls=calls)):
            result = runner.invoke(
                app, ["run", "--crate", "svd2rust", "-e", "push-tag"], env=cli_env
            )
        assert result.exit_code == 2
        assert calls == []

    def test_ref_without_event_is_rejected(self, cli_env) -> None:
        env = {**cli_env, "TRAVIS_EVENT_TYPE": "push", "TRAVIS_BRANCH": "auto"}
        result = runner.invoke(app, ["run", "--crate", "svd2rust", "-r", "auto"], env=env)
        assert result.exit_code == 2

    def test_invalid_tracked_refs_exits_nonzero(self, cli_env) -> None:
        env = {**cli_env, "CROSS_RELEASE_TRACKED_REFS": '["("]'}
        result = runner.invoke(
            app, ["run", "--crate", "svd2rust", "-e", "push-branch", "-r", "auto"], env=env
        )
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
        assert "Traceback" not in result.output


class TestCLICache:
    def test_empty(self, cli_env) -> None:
        result = runner.invoke(app, ["cache", "list"], env=cli_env)
        assert result.exit_code == 0
        assert "No cache entries found" in result.stdout

    def test_empty_json(self, cli_env) -> None:
        result = runner.invoke(app, ["cache", "list", "--json"], env=cli_env)
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_lists_after_run(self, tmp_path, cli_env, fake_build) -> None:
        project = tmp_path / "project"
        project.mkdir()
        (project / "Cargo.lock").write_text("lock")

        with patch("cross_release.orchestrator.build", fake_build()):
            run = runner.invoke(
                app,
                [
                    "run",
                    "--crate",
                    "svd2rust",
                    "-e",
                    "push-branch",
                    "-r",
                    "auto",
                    "-p",
                    str(project),
                ],
                env=cli_env,
            )
        assert run.exit_code == 0

        result = runner.invoke(app, ["cache", "list", "--json"], env=cli_env)
        entries = json.loads(result.stdout)
        assert len(entries) == 1
        assert entries[0]["channel"] == "stable"
        assert entries[0]["permissions"] == "a+rX"
        assert entries[0]["persist_count"] == 4
