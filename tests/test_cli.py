"""Tests for the command line interface."""

import json

import pytest
from click.testing import CliRunner

from tccsync.backends.transfer import MigrationReport
from tccsync.cli import main
from tccsync.core.local_store import LocalStore


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, state_dir, *args, input=None):
    return runner.invoke(main, ["--state-dir", str(state_dir), *args], input=input)


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "tccsync" in result.output


def test_configure_github_and_show_masked(runner, state_dir):
    result = invoke(runner, state_dir, "config", "github",
                    "--token", "ghp_abcdefgh1234", "--owner", "octo", "--repo", "data")
    assert result.exit_code == 0

    saved = json.loads((state_dir / "mytcc2_github_config.json").read_text())
    assert saved["token"] == "ghp_abcdefgh1234"
    assert saved["data_path"] == "data/tasks.json"

    shown = invoke(runner, state_dir, "config", "show")
    assert shown.exit_code == 0
    assert "Active backend: github" in shown.output
    assert "ghp_****1234" in shown.output
    assert "ghp_abcdefgh1234" not in shown.output


def test_clear_single_backend(runner, state_dir):
    invoke(runner, state_dir, "config", "github", "--token", "t", "--owner", "o", "--repo", "r")
    invoke(runner, state_dir, "config", "cloudflare", "--api-url", "https://sync.example.com")

    result = invoke(runner, state_dir, "config", "clear", "--backend", "github")

    assert result.exit_code == 0
    assert not (state_dir / "mytcc2_github_config.json").exists()
    assert "Active backend: cloudflare" in invoke(runner, state_dir, "config", "show").output


def test_sync_without_backend_is_skipped(runner, state_dir):
    LocalStore(str(state_dir)).tasks.add({"title": "local only"})

    result = invoke(runner, state_dir, "sync")

    assert result.exit_code == 0
    assert result.output.startswith("skipped:")


def test_status_reports_counts(runner, state_dir):
    store = LocalStore(str(state_dir))
    task = store.tasks.add({})
    store.tasks.add({})
    store.tasks.delete(task.id)

    result = invoke(runner, state_dir, "status")

    assert result.exit_code == 0
    assert "Backend:     none" in result.output
    assert "Last synced: never" in result.output
    line = next(line for line in result.output.splitlines() if line.strip().startswith("tasks"))
    assert line.split()[1:] == ["1", "active", "1", "deleted"]


def test_migrate_requires_github_config(runner, state_dir):
    result = invoke(runner, state_dir, "migrate", "github-to-cloudflare", "--api-url", "https://sync.example.com")

    assert result.exit_code == 1
    assert "GitHub backend is not configured" in result.output


def test_migrate_requires_cloudflare_url(runner, state_dir):
    invoke(runner, state_dir, "config", "github", "--token", "t", "--owner", "o", "--repo", "r")

    result = invoke(runner, state_dir, "migrate", "github-to-cloudflare")

    assert result.exit_code == 1
    assert "Cloudflare api url is required" in result.output


def test_migrate_prints_counts(runner, state_dir, monkeypatch):
    calls = []

    async def fake_run(github, cloudflare, timeout):
        calls.append((github.repo, cloudflare.api_url, cloudflare.api_key))
        return MigrationReport(source_counts={"tasks": 3}, target_counts={"tasks": 3})

    monkeypatch.setattr("tccsync.cli._run_migration", fake_run)
    invoke(runner, state_dir, "config", "github", "--token", "t", "--owner", "o", "--repo", "r")
    invoke(runner, state_dir, "config", "cloudflare", "--api-url", "https://sync.example.com", "--api-key", "saved")

    result = invoke(runner, state_dir, "migrate", "github-to-cloudflare", "--api-key", "override")

    assert result.exit_code == 0
    assert calls == [("r", "https://sync.example.com", "override")]
    assert "Migration completed." in result.output
    line = next(line for line in result.output.splitlines() if line.strip().startswith("tasks"))
    assert line.split()[1:] == ["3", "->", "3"]


def test_migrate_count_mismatch_fails(runner, state_dir, monkeypatch):
    async def fake_run(github, cloudflare, timeout):
        return MigrationReport(source_counts={"tasks": 3}, target_counts={"tasks": 2})

    monkeypatch.setattr("tccsync.cli._run_migration", fake_run)
    invoke(runner, state_dir, "config", "github", "--token", "t", "--owner", "o", "--repo", "r")

    result = invoke(runner, state_dir, "migrate", "github-to-cloudflare", "--api-url", "https://sync.example.com")

    assert result.exit_code == 1
    assert "mismatched record counts" in result.output
