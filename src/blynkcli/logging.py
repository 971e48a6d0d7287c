"""Structured operation logging for blynkcli commands.

Every CLI invocation opens an :class:`OperationScope` through
:meth:`StructuredLogger.operation`. The scope collects steps and a final
result, then appends a single JSON line to ``operations.jsonl`` under the
configured logs directory. Logging must never break a command: when the
directory cannot be created or a write fails the logger disables itself.
"""
from __future__ import annotations

import getpass
import json
import os
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on host passwd db
        user = "unknown"
    return {"user": user, "uid": os.getuid(), "pid": os.getpid()}


class OperationScope:
    """Collect steps and the outcome for a single CLI operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* for *command*."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.op_id = f"{datetime.now(tz=UTC).strftime('%Y%m%dT%H%M%S')}-{secrets.token_hex(3)}"
        self.actor: dict[str, object] = _current_actor()
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None
        self._started_at = _now_iso()
        self._started = time.monotonic()

    def __enter__(self) -> OperationScope:
        """Enter the scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Record an error for unexpected exceptions and flush the record."""
        if self.result is None and exc is not None and not _is_exit(exc):
            self.error(f"Unhandled exception: {exc}", errors=[repr(exc)], rc=1)
        self._logger._write(self._build_record())

    # Steps ---------------------------------------------------------
    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append a named step to the operation record."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail not in (None, ""):
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = int(wait_ms)

    # Results -------------------------------------------------------
    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            backups=backups,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=errors if errors is not None else [message],
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitize(dict(context or {})),
        }

    def _build_record(self) -> dict[str, object]:
        duration_ms = int((time.monotonic() - self._started) * 1000)
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": self.actor,
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": duration_ms,
            "lock_wait_ms": self.lock_wait_ms,
            "steps": self.steps,
            "result": self.result or {"status": "unknown", "message": "", "rc": 0},
        }


def _is_exit(exc: BaseException) -> bool:
    # typer.Exit / click exceptions carry their own error reporting.
    return type(exc).__name__ in {"Exit", "Abort", "SystemExit"}


class StructuredLogger:
    """Append JSON operation records to ``operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*, disabling the logger when it is unusable."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return whether records are currently being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope for *command*."""
        with OperationScope(self, command, args=args, target=target) as scope:
            yield scope

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            line = json.dumps(record, sort_keys=False)
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except (OSError, TypeError, ValueError):
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
