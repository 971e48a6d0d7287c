"""Helpers for persisting the blynkcli installation record.

The state directory (``/var/lib/blynkcli`` by default) stores a YAML document
describing the installed server artifact. Writes go through a temporary file
and ``os.replace`` so the recorded artifact path is always either the old or
the new value, never a torn write.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage blynkcli state. Install with `pip install blynkcli`."
    ) from exc


INSTALLATION_FILE = "installation.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(slots=True)
class InstallationRecord:
    """Persisted description of the installed server."""

    artifact: Path
    pid_file: Path
    release: str | None = None
    installed_at: str = field(default_factory=_now_iso)
    updated_at: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the YAML-serialisable mapping."""
        return {
            "artifact": str(self.artifact),
            "pid_file": str(self.pid_file),
            "release": self.release,
            "installed_at": self.installed_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> InstallationRecord:
        """Build a record from a parsed mapping."""
        artifact = str(data.get("artifact") or "").strip()
        pid_file = str(data.get("pid_file") or "").strip()
        if not artifact or not pid_file:
            raise StateRegistryError("Installation record is missing artifact or pid_file.")
        release = data.get("release")
        updated_at = data.get("updated_at")
        return cls(
            artifact=Path(artifact),
            pid_file=Path(pid_file),
            release=str(release) if release else None,
            installed_at=str(data.get("installed_at") or _now_iso()),
            updated_at=str(updated_at) if updated_at else None,
        )


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML state directory."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the state directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named state file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a state file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse state file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given state file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write state file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def remove(self, name: str) -> bool:
        """Delete a state file, returning True when something was removed."""
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    # Installation record ---------------------------------------------
    def read_installation(self) -> InstallationRecord | None:
        """Return the installation record, or None when nothing is recorded."""
        value = self.read(INSTALLATION_FILE)
        if value is None:
            return None
        if not isinstance(value, Mapping):
            raise StateRegistryError(
                f"Installation record {self.path_for(INSTALLATION_FILE)} must be a mapping."
            )
        if not value.get("artifact"):
            return None
        return InstallationRecord.from_mapping(value)

    def write_installation(self, record: InstallationRecord) -> None:
        """Persist *record* atomically."""
        self.write(INSTALLATION_FILE, record.to_dict())

    def repoint_artifact(self, artifact: Path, *, release: str | None) -> InstallationRecord:
        """Swap the recorded artifact path for *artifact*."""
        record = self.read_installation()
        if record is None:
            raise StateRegistryError("No installation record to update.")
        record.artifact = artifact
        record.release = release
        record.updated_at = _now_iso()
        self.write_installation(record)
        return record

    def clear_installation(self) -> bool:
        """Forget the installation record."""
        return self.remove(INSTALLATION_FILE)


__all__ = ["INSTALLATION_FILE", "InstallationRecord", "StateRegistry", "StateRegistryError"]
