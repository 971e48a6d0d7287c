"""Point-in-time snapshots of the server data directory.

Backups are plain directory copies stored under the backup root as
``<name>_<YYYY-MM-DD_HH-MM-SS>`` (or just the timestamp when unnamed).
Restores never delete the live data directory before a verified copy of the
backup is ready beside it; the swap itself is a pair of renames.
"""
from __future__ import annotations

import hashlib
import os
import re
import secrets
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .server import MaintenanceWindow, ServerManager

BACKUP_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
TIMESTAMP_PATTERN = re.compile(r"[0-9]{4}(-[0-9]{2}){2}_([0-9]{2}-){2}[0-9]{2}$")
FULL_NAME_PATTERN = re.compile(r".*_?[0-9]{4}(-[0-9]{2}){2}_([0-9]{2}-){2}[0-9]{2}$")


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class NothingToBackup(BackupError):
    """Raised when the data directory does not exist yet."""


class InvalidBackupName(BackupError):
    """Raised when a backup name contains characters outside the allow-list."""


class BackupNotFound(BackupError):
    """Raised when no backup matches an identifier."""


class AmbiguousBackupMatch(BackupError):
    """Raised when a prefix matches more than one backup."""

    def __init__(self, identifier: str, matches: list[str]) -> None:
        """Record the identifier and the competing backup names."""
        self.identifier = identifier
        self.matches = matches
        joined = ", ".join(matches)
        super().__init__(
            f"There is more than one backup starting with '{identifier}' ({joined}). "
            "Use the full name instead."
        )


class BackupVerificationError(BackupError):
    """Raised when a staged copy differs from its source."""


@dataclass(frozen=True, slots=True)
class BackupEntry:
    """A backup directory under the backup root."""

    name: str
    path: Path
    label: str | None
    created_at: datetime | None

    def size_bytes(self) -> int:
        """Return the total size of regular files in the backup."""
        total = 0
        for current, _dirs, files in os.walk(self.path):
            for filename in files:
                candidate = Path(current) / filename
                if not candidate.is_symlink():
                    total += candidate.stat().st_size
        return total

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "label": self.label,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "path": str(self.path),
            "size_bytes": self.size_bytes(),
        }


def validate_name(name: str) -> str:
    """Return *name* when it only uses letters, digits and hyphens."""
    if not BACKUP_NAME_PATTERN.fullmatch(name):
        raise InvalidBackupName(
            "Invalid name. Only alphanumeric characters and hyphen (-) are supported."
        )
    return name


def is_full_name(identifier: str) -> bool:
    """Return True when *identifier* already ends with a backup timestamp."""
    return FULL_NAME_PATTERN.match(identifier) is not None


def parse_entry(path: Path) -> BackupEntry:
    """Split a backup directory name into label and timestamp."""
    name = path.name
    match = TIMESTAMP_PATTERN.search(name)
    created_at: datetime | None = None
    label: str | None = name
    if match is not None:
        try:
            created_at = datetime.strptime(match.group(0), TIMESTAMP_FORMAT)
        except ValueError:
            created_at = None
        else:
            label = name[: match.start()].rstrip("_") or None
    return BackupEntry(name=name, path=path, label=label, created_at=created_at)


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def build_manifest(root: Path) -> dict[str, tuple[str, int, str | None]]:
    """Map every entry below *root* to ``(kind, size, sha256)``."""
    manifest: dict[str, tuple[str, int, str | None]] = {}
    for current, dirnames, filenames in os.walk(root):
        base = Path(current)
        for dirname in dirnames:
            relative = (base / dirname).relative_to(root).as_posix()
            manifest[relative] = ("dir", 0, None)
        for filename in filenames:
            candidate = base / filename
            relative = candidate.relative_to(root).as_posix()
            if candidate.is_symlink():
                manifest[relative] = ("link", 0, os.readlink(candidate))
                continue
            manifest[relative] = ("file", candidate.stat().st_size, compute_checksum(candidate))
    return manifest


@dataclass(slots=True)
class BackupStore:
    """Create, list, resolve and restore backup directories."""

    root: Path
    clock: Callable[[], datetime] = datetime.now

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = self.root.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def list_entries(self) -> list[BackupEntry]:
        """Return backups newest first (undated ones last, by name)."""
        if not self.root.is_dir():
            return []
        entries = [
            parse_entry(child)
            for child in self.root.iterdir()
            if child.is_dir() and not child.name.startswith(".")
        ]
        dated = sorted(
            (entry for entry in entries if entry.created_at is not None),
            key=lambda entry: (entry.created_at, entry.name),
            reverse=True,
        )
        undated = sorted(
            (entry for entry in entries if entry.created_at is None),
            key=lambda entry: entry.name,
        )
        return [*dated, *undated]

    def create(self, source: Path, name: str | None = None) -> BackupEntry:
        """Copy *source* into a new timestamped backup directory."""
        if not source.is_dir():
            raise NothingToBackup(
                "There is no data to save. You must run the server once first "
                "before making a backup."
            )
        if name is not None:
            validate_name(name)

        timestamp = self.clock().strftime(TIMESTAMP_FORMAT)
        directory_name = f"{name}_{timestamp}" if name else timestamp
        target = self.root / directory_name
        if target.exists():
            raise BackupError(f"Backup {directory_name} already exists; not overwriting it.")

        self.ensure_root()
        partial = self.root / f".{directory_name}.partial-{secrets.token_hex(3)}"
        try:
            shutil.copytree(source, partial, symlinks=True)
            os.rename(partial, target)
        except OSError as exc:
            raise BackupError(f"Failed to copy {source} to {target}: {exc}") from exc
        finally:
            if partial.exists():
                shutil.rmtree(partial, ignore_errors=True)
        return parse_entry(target)

    def resolve(self, identifier: str) -> BackupEntry:
        """Resolve *identifier* to exactly one backup."""
        identifier = identifier.strip()
        if not identifier or "/" in identifier or identifier.startswith("."):
            raise BackupNotFound(f"There is no backup named '{identifier}'.")

        if is_full_name(identifier):
            candidate = self.root / identifier
            if not candidate.is_dir():
                raise BackupNotFound(f"There is no backup named '{identifier}'.")
            return parse_entry(candidate)

        matches = sorted(
            entry.name for entry in self.list_entries() if entry.name.startswith(identifier)
        )
        if not matches:
            raise BackupNotFound(f"There is no backup using the name '{identifier}'.")
        if len(matches) > 1:
            raise AmbiguousBackupMatch(identifier, matches)
        return parse_entry(self.root / matches[0])

    def restore_into(self, entry: BackupEntry, destination: Path) -> Path:
        """Replace *destination* with a verified copy of *entry*."""
        destination = destination.expanduser()
        parent = destination.parent
        parent.mkdir(parents=True, exist_ok=True)
        staging_root = Path(tempfile.mkdtemp(prefix=f".{destination.name}.restore-", dir=parent))
        staged = staging_root / destination.name
        previous: Path | None = None
        try:
            try:
                shutil.copytree(entry.path, staged, symlinks=True)
            except OSError as exc:
                raise BackupError(f"Failed to stage backup {entry.name}: {exc}") from exc
            if build_manifest(staged) != build_manifest(entry.path):
                raise BackupVerificationError(
                    f"Staged copy of {entry.name} does not match the backup; live data untouched."
                )

            if destination.exists():
                previous = staging_root / f"{destination.name}.pre-restore"
                os.rename(destination, previous)
            try:
                os.rename(staged, destination)
            except OSError as exc:
                if previous is not None:
                    os.rename(previous, destination)
                    previous = None
                raise BackupError(f"Failed to swap in restored data: {exc}") from exc
        finally:
            shutil.rmtree(staging_root, ignore_errors=True)
        return destination


@dataclass(frozen=True, slots=True)
class RestoreResult:
    """Outcome of :meth:`BackupManager.restore`."""

    entry: BackupEntry
    destination: Path
    stopped_pid: int | None
    pid: int | None


@dataclass(slots=True)
class BackupManager:
    """Coordinate backups and restores with the server lifecycle."""

    store: BackupStore
    server: ServerManager

    @property
    def data_dir(self) -> Path:
        """Return the live data directory."""
        return self.server.config.server.data_dir

    def list_backups(self) -> list[BackupEntry]:
        """Return every backup, newest first."""
        return self.store.list_entries()

    def backup(self, name: str | None = None) -> BackupEntry:
        """Snapshot the data directory under *name* (timestamp only when None)."""
        if name is not None:
            validate_name(name)
        with self.server.locked():
            self.server.require_installed()
            return self.store.create(self.data_dir, name)

    def restore(self, identifier: str) -> RestoreResult:
        """Stop the server, swap in the matched backup and start it again."""
        with self.server.locked():
            self.server.require_installed()
            entry = self.store.resolve(identifier)
        window: MaintenanceWindow
        with self.server.maintenance() as window:
            destination = self.store.restore_into(entry, self.data_dir)
        return RestoreResult(
            entry=entry,
            destination=destination,
            stopped_pid=window.stopped_pid,
            pid=window.pid,
        )


__all__ = [
    "AmbiguousBackupMatch",
    "BACKUP_NAME_PATTERN",
    "BackupEntry",
    "BackupError",
    "BackupManager",
    "BackupNotFound",
    "BackupStore",
    "BackupVerificationError",
    "FULL_NAME_PATTERN",
    "InvalidBackupName",
    "NothingToBackup",
    "RestoreResult",
    "TIMESTAMP_FORMAT",
    "build_manifest",
    "compute_checksum",
    "is_full_name",
    "parse_entry",
    "validate_name",
]
