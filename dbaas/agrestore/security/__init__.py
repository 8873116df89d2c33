"""
Permission preservation: capture, ordering and replay of database principals.
"""

from .capture import PrincipalGraphCapture, find_cycle, is_excluded_name
from .ordering import CreateOrderResolver, ReplayOrder, ReplayPlan, compute_depths
from .replay import PermissionReplayEngine, ReplayAnomaly, ReplayReport
from .snapshot import (
    ExplicitGrant,
    ExtendedProperty,
    OwnedSchema,
    Principal,
    PrincipalKind,
    PrincipalSnapshot,
    RoleHierarchyEdge,
    RoleMembership,
    RoleRank,
)

__all__ = [
    "PrincipalGraphCapture",
    "find_cycle",
    "is_excluded_name",
    "CreateOrderResolver",
    "ReplayOrder",
    "ReplayPlan",
    "compute_depths",
    "PermissionReplayEngine",
    "ReplayAnomaly",
    "ReplayReport",
    "ExplicitGrant",
    "ExtendedProperty",
    "OwnedSchema",
    "Principal",
    "PrincipalKind",
    "PrincipalSnapshot",
    "RoleHierarchyEdge",
    "RoleMembership",
    "RoleRank",
]
