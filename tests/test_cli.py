"""End-to-end tests for the blynkcli command line."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from conftest import CLI_REPO, SERVER_REPO, FakeReleaseProvider, FakeSupervisor, make_release
from typer.testing import CliRunner, Result

from blynkcli import __version__, cli
from blynkcli.bootstrap.shim import SelfUpdatePlan
from blynkcli.providers import NetworkFailure

runner = CliRunner()


@pytest.fixture
def cli_env(
    tmp_path: Path,
    config_overrides: dict[str, object],
    supervisor: FakeSupervisor,
    releases: FakeReleaseProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> dict[str, str]:
    """Write a config file and wire the CLI to the fake providers."""
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config_overrides), encoding="utf-8")
    monkeypatch.setattr(cli, "SubprocessSupervisor", lambda: supervisor)
    monkeypatch.setattr(cli, "ReleaseProvider", lambda **kwargs: releases)
    return {"BLYNKCLI_CONFIG_FILE": str(config_path), "COLUMNS": "200"}


def _invoke(env: dict[str, str], *args: str) -> Result:
    return runner.invoke(cli.app, list(args), env=env)


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_no_arguments_prints_help(cli_env: dict[str, str]) -> None:
    """Running without a command shows help and exits 0."""
    result = _invoke(cli_env)

    assert result.exit_code == 0
    assert "server" in result.stdout
    assert "self-update" in result.stdout


def test_server_group_without_command_prints_help(cli_env: dict[str, str]) -> None:
    """The server group shows its own help."""
    result = _invoke(cli_env, "server")

    assert result.exit_code == 0
    assert "restore" in result.stdout


def test_version_flag_and_command(cli_env: dict[str, str]) -> None:
    """Both --version and the version command print the CLI version."""
    flag = _invoke(cli_env, "--version")
    command = _invoke(cli_env, "version")

    assert flag.exit_code == 0
    assert flag.stdout.strip() == f"v{__version__}"
    assert command.exit_code == 0
    assert command.stdout.strip() == f"v{__version__}"


def test_invalid_config_exits_with_failure(tmp_path: Path) -> None:
    """Configuration errors are reported with exit code 1."""
    config_path = tmp_path / "config.yml"
    config_path.write_text("unknown_key: 1\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["--config-file", str(config_path), "server", "status"])

    assert result.exit_code == 1
    assert "Unknown configuration keys" in result.stdout


def test_status_json_before_install(cli_env: dict[str, str]) -> None:
    """Status works before install and reports offline."""
    result = _invoke(cli_env, "server", "status", "--json")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["state"] == "offline"
    assert payload["installed"] is False


def test_server_lifecycle(
    cli_env: dict[str, str],
    tmp_path: Path,
    supervisor: FakeSupervisor,
) -> None:
    """install, start, status, stop and their failure modes."""
    assert _invoke(cli_env, "server", "start").exit_code == 1

    installed = _invoke(cli_env, "server", "install")
    assert installed.exit_code == 0, installed.stdout
    assert "Blynk successfully installed" in installed.stdout

    again = _invoke(cli_env, "server", "install")
    assert again.exit_code == 1
    assert "already installed" in again.stdout

    started = _invoke(cli_env, "server", "start")
    assert started.exit_code == 0
    pid = supervisor.next_pid - 1
    assert f"pid {pid}" in started.stdout

    duplicate = _invoke(cli_env, "server", "start")
    assert duplicate.exit_code == 1
    assert "already running" in duplicate.stdout
    assert len(supervisor.spawned) == 1

    status = _invoke(cli_env, "server", "status", "--json")
    assert json.loads(status.stdout)["state"] == "online"

    human = _invoke(cli_env, "server", "status")
    assert "online" in human.stdout

    assert _invoke(cli_env, "server", "stop").exit_code == 0
    offline = _invoke(cli_env, "server", "stop")
    assert offline.exit_code == 1
    assert "already offline" in offline.stdout

    restarted = _invoke(cli_env, "server", "restart")
    assert restarted.exit_code == 0
    assert "already offline" in restarted.stdout

    records = _operations(tmp_path)
    commands = [record["command"] for record in records]
    assert "server install" in commands
    failed = [
        record for record in records
        if isinstance(record["result"], dict) and record["result"]["status"] == "error"
    ]
    assert failed, "failed commands are logged as errors"
    assert all(record["result"]["rc"] == 1 for record in failed)  # type: ignore[index]


def test_update_reports_when_nothing_is_new(
    cli_env: dict[str, str], releases: FakeReleaseProvider
) -> None:
    """No new release is a warning with exit code 0; a new release swaps the jar."""
    assert _invoke(cli_env, "server", "install").exit_code == 0

    unchanged = _invoke(cli_env, "server", "update")
    assert unchanged.exit_code == 0
    assert "No update available" in unchanged.stdout

    releases.releases[SERVER_REPO] = make_release("v0.41.17")
    updated = _invoke(cli_env, "server", "update")
    assert updated.exit_code == 0
    assert "server-0.41.17.jar" in updated.stdout


def test_update_network_failure_exits_non_zero(
    cli_env: dict[str, str], releases: FakeReleaseProvider
) -> None:
    """Network failures are reported and fail the command."""
    assert _invoke(cli_env, "server", "install").exit_code == 0
    releases.failure = NetworkFailure("GET https://api.github.com failed [503]")

    result = _invoke(cli_env, "server", "update")

    assert result.exit_code == 1
    assert "[503]" in result.stdout


def test_backup_list_and_restore(cli_env: dict[str, str], tmp_path: Path) -> None:
    """Backups can be created, listed and restored by prefix."""
    assert _invoke(cli_env, "server", "install").exit_code == 0
    data_dir = tmp_path / "blynk" / "data"
    (data_dir / "users").mkdir(parents=True, exist_ok=True)
    (data_dir / "users" / "admin.user").write_text("original", encoding="utf-8")

    created = _invoke(cli_env, "server", "backup", "nightly")
    assert created.exit_code == 0, created.stdout

    listing = _invoke(cli_env, "server", "backups", "--json")
    assert listing.exit_code == 0
    backups = json.loads(listing.stdout)["backups"]
    assert [entry["label"] for entry in backups] == ["nightly"]

    table = _invoke(cli_env, "server", "backups")
    assert "nightly" in table.stdout

    (data_dir / "users" / "admin.user").write_text("broken", encoding="utf-8")
    restored = _invoke(cli_env, "server", "restore", "night")
    assert restored.exit_code == 0, restored.stdout
    assert (data_dir / "users" / "admin.user").read_text(encoding="utf-8") == "original"
    assert json.loads(_invoke(cli_env, "server", "status", "--json").stdout)["state"] == "online"


def test_backup_without_name_uses_timestamp(cli_env: dict[str, str], tmp_path: Path) -> None:
    """Non-interactive backups without a name are timestamp-only."""
    assert _invoke(cli_env, "server", "install").exit_code == 0

    result = _invoke(cli_env, "server", "backup")

    assert result.exit_code == 0, result.stdout
    names = [p.name for p in (tmp_path / "blynk" / "backup").iterdir()]
    assert len(names) == 1
    assert names[0][0].isdigit()


def test_backup_invalid_name(cli_env: dict[str, str], tmp_path: Path) -> None:
    """Invalid backup names fail without creating anything."""
    assert _invoke(cli_env, "server", "install").exit_code == 0

    result = _invoke(cli_env, "server", "backup", "not_allowed")

    assert result.exit_code == 1
    assert "Invalid name" in result.stdout
    assert list((tmp_path / "blynk" / "backup").iterdir()) == []


def test_restore_errors(cli_env: dict[str, str], tmp_path: Path) -> None:
    """Missing, unknown and ambiguous identifiers all fail with exit 1."""
    assert _invoke(cli_env, "server", "install").exit_code == 0
    backup_root = tmp_path / "blynk" / "backup"
    (backup_root / "nightly_2020-01-01_00-00-00").mkdir()
    (backup_root / "nightly-old_2019-01-01_00-00-00").mkdir()

    missing = _invoke(cli_env, "server", "restore")
    assert missing.exit_code == 1
    assert "You must provide the name of a backup" in missing.stdout

    unknown = _invoke(cli_env, "server", "restore", "weekly")
    assert unknown.exit_code == 1
    assert "no backup" in unknown.stdout

    ambiguous = _invoke(cli_env, "server", "restore", "nightly")
    assert ambiguous.exit_code == 1
    assert "more than one backup" in ambiguous.stdout


def test_uninstall(cli_env: dict[str, str], tmp_path: Path) -> None:
    """Uninstall removes the server root and fails when nothing is installed."""
    assert _invoke(cli_env, "server", "install").exit_code == 0
    assert _invoke(cli_env, "server", "start").exit_code == 0

    result = _invoke(cli_env, "server", "uninstall")

    assert result.exit_code == 0
    assert not (tmp_path / "blynk").exists()
    assert _invoke(cli_env, "server", "uninstall").exit_code == 1


def test_setup_and_remove_shim(cli_env: dict[str, str], tmp_path: Path) -> None:
    """setup installs the shim once; remove deletes it once."""
    shim = tmp_path / "bin" / "blynkcli"

    assert _invoke(cli_env, "setup").exit_code == 0
    assert shim.exists()
    again = _invoke(cli_env, "setup")
    assert again.exit_code == 1
    assert "already installed" in again.stdout

    assert _invoke(cli_env, "remove").exit_code == 0
    assert not shim.exists()
    assert _invoke(cli_env, "remove").exit_code == 1


def test_self_update(
    cli_env: dict[str, str],
    releases: FakeReleaseProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """self-update is a no-op on the latest version and installs newer ones."""
    applied: list[SelfUpdatePlan] = []
    monkeypatch.setattr(cli, "apply_self_update", lambda plan: applied.append(plan))

    releases.releases[CLI_REPO] = make_release(f"v{__version__}")
    current = _invoke(cli_env, "self-update")
    assert current.exit_code == 0
    assert "No update available" in current.stdout
    assert applied == []

    releases.releases[CLI_REPO] = make_release("v99.0.0")
    newer = _invoke(cli_env, "self-update")
    assert newer.exit_code == 0
    assert "Update complete" in newer.stdout
    assert [plan.latest for plan in applied] == ["v99.0.0"]


def test_stop_timeout_fails_and_keeps_server_online(
    cli_env: dict[str, str], supervisor: FakeSupervisor
) -> None:
    """A server ignoring the stop signal is reported and stays recorded."""
    assert _invoke(cli_env, "server", "install").exit_code == 0
    assert _invoke(cli_env, "server", "start").exit_code == 0
    supervisor.ignores_signals = True

    stopped = _invoke(cli_env, "server", "stop")
    assert stopped.exit_code == 1
    assert "still running" in stopped.stdout

    restarted = _invoke(cli_env, "server", "restart")
    assert restarted.exit_code == 1
    assert len(supervisor.spawned) == 1
    assert json.loads(_invoke(cli_env, "server", "status", "--json").stdout)["state"] == "online"
