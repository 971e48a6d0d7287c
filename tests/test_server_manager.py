"""Tests for the server lifecycle manager."""
from __future__ import annotations

import signal
from pathlib import Path

import pytest
from conftest import SERVER_REPO, FakeReleaseProvider, FakeSupervisor, make_release

from blynkcli.config import load_config
from blynkcli.locking import LockManager, LockTimeoutError
from blynkcli.providers import NetworkFailure, PidFile
from blynkcli.server import (
    AlreadyInstalled,
    AlreadyRunning,
    AlreadyStopped,
    NotInstalled,
    ServerManager,
    StopTimeout,
)
from blynkcli.state import StateRegistry


def test_status_before_install_is_offline(manager: ServerManager) -> None:
    """Status is a pure read that works without an installation."""
    status = manager.status()

    assert status.installed is False
    assert status.state == "offline"
    assert status.to_dict()["artifact"] is None
    assert not manager.config.state_dir.exists()


def test_install_provisions_layout(
    manager: ServerManager, releases: FakeReleaseProvider
) -> None:
    """Install downloads the jar, writes server.properties and records the artifact."""
    record = manager.install()

    server = manager.config.server
    assert record.artifact == server.root / "server-0.41.16.jar"
    assert record.artifact.read_bytes() == b"\xca\xfe\xba\xbe"
    assert record.release == "v0.41.16"
    for path in (server.data_dir, server.logs_dir, manager.config.backups.root):
        assert path.is_dir()
    properties = server.config_file.read_text(encoding="utf-8")
    assert "admin.email=admin@blynk.cc" in properties
    assert f"logs.folder={server.logs_dir}" in properties
    assert manager.installation() == manager.registry.read_installation()
    assert releases.downloads == [record.artifact]


def test_install_twice_is_refused(manager: ServerManager, releases: FakeReleaseProvider) -> None:
    """A second install fails without downloading anything."""
    manager.install()

    with pytest.raises(AlreadyInstalled):
        manager.install()

    assert len(releases.downloads) == 1


def test_install_network_failure_records_nothing(
    manager: ServerManager, releases: FakeReleaseProvider
) -> None:
    """When the release source is unreachable no installation is recorded."""
    releases.failure = NetworkFailure("offline")

    with pytest.raises(NetworkFailure):
        manager.install()

    assert manager.registry.read_installation() is None


def test_start_requires_installation(manager: ServerManager, supervisor: FakeSupervisor) -> None:
    """Nothing is launched before install."""
    with pytest.raises(NotInstalled, match="blynkcli server install"):
        manager.start()

    assert supervisor.spawned == []


def test_start_records_pid_and_refuses_second_start(
    manager: ServerManager, supervisor: FakeSupervisor
) -> None:
    """At most one live server process is ever recorded."""
    manager.install()
    pid = manager.start()

    assert PidFile(manager.config.server.pid_file).read() == pid
    assert manager.status().online

    with pytest.raises(AlreadyRunning, match=str(pid)):
        manager.start()

    assert len(supervisor.spawned) == 1
    assert PidFile(manager.config.server.pid_file).read() == pid


def test_command_line_points_at_data_and_properties(
    manager: ServerManager, supervisor: FakeSupervisor
) -> None:
    """The java command references the artifact, data folder and properties."""
    record = manager.install()
    manager.start()

    server = manager.config.server
    assert supervisor.spawned[0] == [
        "java",
        "-jar",
        str(record.artifact),
        "-dataFolder",
        str(server.data_dir),
        "-serverConfig",
        str(server.config_file),
    ]


def test_stale_pid_file_is_replaced_on_start(
    manager: ServerManager, supervisor: FakeSupervisor
) -> None:
    """A pid file whose process died does not block start."""
    manager.install()
    PidFile(manager.config.server.pid_file).write(31337)

    assert manager.status().online is False
    pid = manager.start()

    assert pid != 31337
    assert PidFile(manager.config.server.pid_file).read() == pid


def test_stop_sends_graceful_signal_and_clears_pid(
    manager: ServerManager, supervisor: FakeSupervisor
) -> None:
    """Stop signals the recorded pid and removes the pid file."""
    manager.install()
    pid = manager.start()

    assert manager.stop() == pid

    assert supervisor.signals == [(pid, signal.SIGTERM, 1.0)]
    assert not manager.config.server.pid_file.exists()
    with pytest.raises(AlreadyStopped):
        manager.stop()


def test_stop_with_stale_pid_reports_offline(manager: ServerManager) -> None:
    """Stopping a dead process reports offline and clears the stale file."""
    manager.install()
    PidFile(manager.config.server.pid_file).write(31337)

    with pytest.raises(AlreadyStopped):
        manager.stop()

    assert not manager.config.server.pid_file.exists()


def test_restart_from_stopped_and_running(manager: ServerManager) -> None:
    """Restart tolerates an offline server and replaces a running one."""
    manager.install()

    first = manager.restart()
    assert first.stopped_pid is None

    second = manager.restart()
    assert second.stopped_pid == first.pid
    assert manager.running_pid() == second.pid


def test_update_without_new_release(
    manager: ServerManager, releases: FakeReleaseProvider
) -> None:
    """The same asset name means there is nothing to update."""
    record = manager.install()

    result = manager.update()

    assert result.updated is False
    assert result.artifact == record.artifact
    assert len(releases.downloads) == 1


def test_update_swaps_artifact(manager: ServerManager, releases: FakeReleaseProvider) -> None:
    """A new release replaces the artifact and removes the old jar."""
    old = manager.install()
    releases.releases[SERVER_REPO] = make_release("v0.41.17")

    result = manager.update()

    assert result.updated is True
    assert result.previous == old.artifact
    assert result.artifact.name == "server-0.41.17.jar"
    assert result.artifact.exists()
    assert not old.artifact.exists()
    record = manager.registry.read_installation()
    assert record is not None
    assert record.artifact == result.artifact
    assert record.release == "v0.41.17"


def test_update_network_failure_keeps_artifact(
    manager: ServerManager, releases: FakeReleaseProvider
) -> None:
    """A failed release lookup leaves the recorded artifact unchanged."""
    old = manager.install()
    releases.failure = NetworkFailure("offline")

    with pytest.raises(NetworkFailure):
        manager.update()

    record = manager.registry.read_installation()
    assert record is not None
    assert record.artifact == old.artifact
    assert old.artifact.exists()


def test_update_requires_installation(manager: ServerManager) -> None:
    """Update refuses to run before install."""
    with pytest.raises(NotInstalled):
        manager.update()


def test_uninstall_removes_everything(manager: ServerManager) -> None:
    """Uninstall stops the server and removes provisioned paths and state."""
    manager.install()
    manager.start()

    removed = manager.uninstall()

    config = manager.config
    assert config.server.root in removed
    assert not config.server.root.exists()
    assert not config.server.pid_file.exists()
    assert not config.state_file.exists()
    assert manager.status().installed is False
    with pytest.raises(NotInstalled):
        manager.uninstall()


def test_mutations_wait_for_the_server_lock(manager: ServerManager) -> None:
    """A held server lock blocks concurrent mutations until the timeout."""
    manager.install()

    with manager.locks.server_lock():
        with pytest.raises(LockTimeoutError):
            manager.start()

    assert manager.running_pid() is None


def test_artifact_missing_on_disk_means_not_installed(manager: ServerManager) -> None:
    """A record pointing at a deleted jar is not an installation."""
    record = manager.install()
    Path(record.artifact).unlink()

    assert manager.installation() is None
    assert manager.status().installed is False
    with pytest.raises(NotInstalled):
        manager.start()


def test_stop_timeout_keeps_server_recorded(
    manager: ServerManager, supervisor: FakeSupervisor
) -> None:
    """A server that outlives the stop signal stays recorded and is never doubled."""
    manager.install()
    pid = manager.start()
    supervisor.ignores_signals = True

    with pytest.raises(StopTimeout, match=str(pid)):
        manager.stop()

    assert PidFile(manager.config.server.pid_file).read() == pid
    assert manager.status().online
    with pytest.raises(StopTimeout):
        manager.restart()
    with pytest.raises(AlreadyRunning):
        manager.start()
    assert supervisor.alive == {pid}


def test_uninstall_aborts_when_server_will_not_stop(
    manager: ServerManager, supervisor: FakeSupervisor
) -> None:
    """Nothing is removed while the old process is still alive."""
    manager.install()
    manager.start()
    supervisor.ignores_signals = True

    with pytest.raises(StopTimeout):
        manager.uninstall()

    assert manager.config.server.root.exists()
    assert manager.config.state_file.exists()


def test_uninstall_removes_files_outside_root(
    tmp_path: Path,
    config_overrides: dict[str, object],
    supervisor: FakeSupervisor,
    releases: FakeReleaseProvider,
) -> None:
    """Properties and console log configured elsewhere are removed too."""
    server = dict(config_overrides["server"])  # type: ignore[call-overload]
    server["config_file"] = str(tmp_path / "etc" / "server.properties")
    server["console_log"] = str(tmp_path / "log" / "console.log")
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={**config_overrides, "server": server},
    )
    manager = ServerManager(
        config=config,
        registry=StateRegistry(config.state_dir),
        supervisor=supervisor,
        releases=releases,  # type: ignore[arg-type]
        locks=LockManager(config.runtime_dir, config.lock_timeout),
    )
    manager.install()
    config.server.console_log.parent.mkdir(parents=True)
    config.server.console_log.write_text("started\n", encoding="utf-8")

    removed = manager.uninstall()

    assert config.server.config_file in removed
    assert config.server.console_log in removed
    assert not config.server.config_file.exists()
    assert not config.server.console_log.exists()
