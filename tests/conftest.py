"""Shared fixtures for the blynkcli test suite."""

from __future__ import annotations

import signal
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from blynkcli.config import AppConfig, load_config
from blynkcli.locking import LockManager
from blynkcli.providers import Release, ReleaseAsset
from blynkcli.server import ServerManager
from blynkcli.state import StateRegistry

SERVER_REPO = "blynkkk/blynk-server"
CLI_REPO = "booteille/blynkcli"


def make_release(tag: str, jar: str | None = None) -> Release:
    """Build a release carrying a single server jar asset."""
    name = jar or f"server-{tag.lstrip('v')}.jar"
    return Release(
        tag=tag,
        assets=(
            ReleaseAsset(name=f"{name}.sha256", url=f"https://example.invalid/{name}.sha256"),
            ReleaseAsset(name=name, url=f"https://example.invalid/{name}", size=4),
        ),
        tarball_url=f"https://example.invalid/tarball/{tag}",
    )


@dataclass
class FakeSupervisor:
    """In-memory process backend recording every call."""

    next_pid: int = 40000
    alive: set[int] = field(default_factory=set)
    spawned: list[list[str]] = field(default_factory=list)
    signals: list[tuple[int, signal.Signals, float]] = field(default_factory=list)
    ignores_signals: bool = False
    spawn_error: Exception | None = None

    def spawn(
        self,
        command: Sequence[str],
        *,
        log_file: Path,
        cwd: Path | None = None,
        user: tuple[int, int] | None = None,
    ) -> int:
        if self.spawn_error is not None:
            raise self.spawn_error
        pid = self.next_pid
        self.next_pid += 1
        self.alive.add(pid)
        self.spawned.append(list(command))
        return pid

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def terminate(self, pid: int, *, sig: signal.Signals, timeout: float) -> bool:
        self.signals.append((pid, sig, timeout))
        if self.ignores_signals:
            return False
        self.alive.discard(pid)
        return True


@dataclass
class FakeReleaseProvider:
    """Serve canned releases and write placeholder artifacts."""

    releases: dict[str, Release] = field(
        default_factory=lambda: {
            SERVER_REPO: make_release("v0.41.16"),
            CLI_REPO: make_release("v0.3.0"),
        }
    )
    downloads: list[Path] = field(default_factory=list)
    failure: Exception | None = None

    def latest(self, repo: str) -> Release:
        if self.failure is not None:
            raise self.failure
        return self.releases[repo]

    def download(self, asset: ReleaseAsset, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"\xca\xfe\xba\xbe")
        self.downloads.append(destination)
        return destination


@pytest.fixture
def config_overrides(tmp_path: Path) -> dict[str, object]:
    """Return overrides relocating every path below ``tmp_path``."""
    return {
        "executable": str(tmp_path / "bin" / "blynkcli"),
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "lock_timeout": 0.5,
        "manage_service_account": False,
        "server": {
            "root": str(tmp_path / "blynk"),
            "pid_file": str(tmp_path / "run" / "blynk.pid"),
            "stop_timeout": 1.0,
        },
    }


@pytest.fixture
def app_config(tmp_path: Path, config_overrides: dict[str, object]) -> AppConfig:
    """Configuration rooted entirely inside ``tmp_path``."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides=config_overrides,
    )


@pytest.fixture
def supervisor() -> FakeSupervisor:
    """Fresh fake process backend."""
    return FakeSupervisor()


@pytest.fixture
def releases() -> FakeReleaseProvider:
    """Fresh fake release provider."""
    return FakeReleaseProvider()


@pytest.fixture
def manager(
    app_config: AppConfig,
    supervisor: FakeSupervisor,
    releases: FakeReleaseProvider,
) -> ServerManager:
    """Server manager wired to the fake providers."""
    return ServerManager(
        config=app_config,
        registry=StateRegistry(app_config.state_dir),
        supervisor=supervisor,
        releases=releases,  # type: ignore[arg-type]
        locks=LockManager(app_config.runtime_dir, app_config.lock_timeout),
    )
