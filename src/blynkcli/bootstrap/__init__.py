"""Helper utilities used when provisioning the host for the Blynk server."""
from __future__ import annotations

from .filesystem import (
    DirectoryAction,
    DirectoryPlan,
    DirectorySpec,
    apply_directory_plan,
    hand_over_tree,
    plan_directories,
)
from .service_accounts import (
    ServiceAccountAction,
    ServiceAccountError,
    ServiceAccountPlan,
    ServiceAccountSpec,
    ServiceAccountStatus,
    apply_service_account_plan,
    inspect_service_account,
    plan_service_account,
    resolve_ownership,
)
from .shim import CliShim, ShimError

__all__ = [
    # service account helpers
    "ServiceAccountAction",
    "ServiceAccountError",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "inspect_service_account",
    "plan_service_account",
    "apply_service_account_plan",
    "resolve_ownership",
    # filesystem helpers
    "DirectoryAction",
    "DirectoryPlan",
    "DirectorySpec",
    "plan_directories",
    "apply_directory_plan",
    "hand_over_tree",
    # shim helpers
    "CliShim",
    "ShimError",
]
