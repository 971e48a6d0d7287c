"""Provider interfaces for blynkcli."""
from __future__ import annotations

from .process import PidFile, ProcessError, ProcessSupervisor, SubprocessSupervisor
from .releases import NetworkFailure, Release, ReleaseAsset, ReleaseError, ReleaseProvider

__all__ = [
    "NetworkFailure",
    "PidFile",
    "ProcessError",
    "ProcessSupervisor",
    "Release",
    "ReleaseAsset",
    "ReleaseError",
    "ReleaseProvider",
    "SubprocessSupervisor",
]
