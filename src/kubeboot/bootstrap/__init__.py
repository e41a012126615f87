"""Host preparation helpers used by the early pipeline stages."""
from __future__ import annotations

from .filesystem import (
    DirectoryAction,
    DirectoryPlan,
    DirectorySpec,
    apply_directory_plan,
    ensure_directories,
    plan_directories,
)
from .firewall import FirewallConfigurator, FirewallResult
from .service_accounts import (
    ServiceAccountAction,
    ServiceAccountPlan,
    ServiceAccountSpec,
    ServiceAccountStatus,
    apply_service_account_plan,
    ensure_service_account,
    inspect_service_account,
    plan_service_account,
)
from .storage import FilesystemPreparer, MountError, MountResult

__all__ = [
    # service account helpers
    "ServiceAccountAction",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "inspect_service_account",
    "plan_service_account",
    "apply_service_account_plan",
    "ensure_service_account",
    # filesystem helpers
    "DirectoryAction",
    "DirectoryPlan",
    "DirectorySpec",
    "plan_directories",
    "apply_directory_plan",
    "ensure_directories",
    # persistent disk
    "FilesystemPreparer",
    "MountError",
    "MountResult",
    # firewall
    "FirewallConfigurator",
    "FirewallResult",
]
