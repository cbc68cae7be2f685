"""
Authorization for the self-updater.

Components:
- PermissionChecker: Protocol injected into the step orchestrator
- RolePermissionChecker: Role-hierarchy implementation of PermissionChecker
"""

from selfupdater.security.rbac import (
    PERFORM_UPDATES,
    PermissionChecker,
    RolePermissionChecker,
    has_role,
)

__all__ = [
    "PERFORM_UPDATES",
    "PermissionChecker",
    "RolePermissionChecker",
    "has_role",
]
