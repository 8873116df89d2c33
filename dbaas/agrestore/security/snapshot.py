"""
Immutable snapshot of a database's authorization graph.

The snapshot is captured before the destructive restore and consumed by the
replay afterwards. It is a value: nothing mutates it once capture returns.

Invariants:
    - principal_id is unique within a snapshot
    - Dependent rows (schemas, memberships, grants, properties) only
      reference captured principals
    - Owner references may dangle (owner not captured); replay guards them

How to change safely:
    - to_dict() output is a diagnostics format, keep keys stable
    - New entity types need capture, replay and a to_dict()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..tsql import PermissionState, Securable


class PrincipalKind(Enum):
    """Database principal type, by catalog type code."""

    ROLE = "R"
    APPLICATION_ROLE = "A"
    SQL_USER = "S"
    WINDOWS_USER = "U"
    WINDOWS_GROUP = "G"
    CERTIFICATE_USER = "C"
    EXTERNAL_USER = "E"
    EXTERNAL_GROUP = "X"

    @property
    def is_role(self) -> bool:
        return self == PrincipalKind.ROLE

    @property
    def is_user(self) -> bool:
        return self not in (PrincipalKind.ROLE, PrincipalKind.APPLICATION_ROLE)

    @property
    def is_external(self) -> bool:
        return self in (PrincipalKind.EXTERNAL_USER, PrincipalKind.EXTERNAL_GROUP)


@dataclass(frozen=True)
class Principal:
    """A captured database principal.

    Attributes:
        principal_id: Catalog id in the source database
        name: Principal name
        kind: Principal type
        sid: Security identifier, binds users to logins
        default_schema: Default schema (None for groups and roles)
        owner_id: Owning principal id (roles)
        owner_name: Owning principal name (roles)
        login_name: Server login bound through the SID, if any
        login_type: Type code of that login
        certificate_name: Certificate of a certificate-mapped user
    """

    principal_id: int
    name: str
    kind: PrincipalKind
    sid: bytes | None = None
    default_schema: str | None = None
    owner_id: int | None = None
    owner_name: str | None = None
    login_name: str | None = None
    login_type: str | None = None
    certificate_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "name": self.name,
            "kind": self.kind.value,
            "sid": self.sid.hex() if self.sid else None,
            "default_schema": self.default_schema,
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "login_name": self.login_name,
            "login_type": self.login_type,
            "certificate_name": self.certificate_name,
        }


@dataclass(frozen=True)
class RoleHierarchyEdge:
    """Child role is a member of parent role (both captured)."""

    child_id: int
    parent_id: int

    def to_dict(self) -> dict[str, Any]:
        return {"child_id": self.child_id, "parent_id": self.parent_id}


@dataclass(frozen=True)
class RoleRank:
    """Depth of a role in the captured role hierarchy."""

    role_id: int
    depth: int


@dataclass(frozen=True)
class OwnedSchema:
    principal_id: int
    schema_id: int
    schema_name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "schema_id": self.schema_id,
            "schema_name": self.schema_name,
        }


@dataclass(frozen=True)
class RoleMembership:
    """One direct membership: member_id belongs to role role_id."""

    member_id: int
    role_id: int
    role_name: str

    def to_dict(self) -> dict[str, Any]:
        return {"member_id": self.member_id, "role_id": self.role_id, "role_name": self.role_name}


@dataclass(frozen=True)
class ExplicitGrant:
    """An explicit GRANT / DENY / REVOKE held by a principal."""

    grantee_id: int
    state: PermissionState
    permission: str
    securable: Securable
    grantor_name: str
    with_grant_option: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "grantee_id": self.grantee_id,
            "state": self.state.value,
            "permission": self.permission,
            "securable": self.securable.to_dict(),
            "grantor_name": self.grantor_name,
            "with_grant_option": self.with_grant_option,
        }


@dataclass(frozen=True)
class ExtendedProperty:
    principal_id: int
    name: str
    value: str

    def to_dict(self) -> dict[str, Any]:
        return {"principal_id": self.principal_id, "name": self.name, "value": self.value}


@dataclass(frozen=True)
class PrincipalSnapshot:
    """Authorization graph of one database at capture time.

    Example:
        >>> snapshot = PrincipalGraphCapture(backend).capture("SalesDB")
        >>> reader = snapshot.by_name("Readers")
        >>> [m.role_name for m in snapshot.memberships_of(reader.principal_id)]
    """

    database: str
    principals: tuple[Principal, ...] = ()
    hierarchy: tuple[RoleHierarchyEdge, ...] = ()
    owned_schemas: tuple[OwnedSchema, ...] = ()
    memberships: tuple[RoleMembership, ...] = ()
    grants: tuple[ExplicitGrant, ...] = ()
    properties: tuple[ExtendedProperty, ...] = ()
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def principal(self, principal_id: int) -> Principal | None:
        for principal in self.principals:
            if principal.principal_id == principal_id:
                return principal
        return None

    def by_name(self, name: str) -> Principal | None:
        for principal in self.principals:
            if principal.name == name:
                return principal
        return None

    @property
    def roles(self) -> tuple[Principal, ...]:
        return tuple(p for p in self.principals if p.kind.is_role)

    def owned_schemas_of(self, principal_id: int) -> list[OwnedSchema]:
        return [s for s in self.owned_schemas if s.principal_id == principal_id]

    def memberships_of(self, member_id: int) -> list[RoleMembership]:
        """Roles the principal is a direct member of."""
        return [m for m in self.memberships if m.member_id == member_id]

    def grants_of(self, grantee_id: int) -> list[ExplicitGrant]:
        return [g for g in self.grants if g.grantee_id == grantee_id]

    def properties_of(self, principal_id: int) -> list[ExtendedProperty]:
        return [p for p in self.properties if p.principal_id == principal_id]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for diagnostics export."""
        return {
            "database": self.database,
            "captured_at": self.captured_at.isoformat(),
            "principals": [p.to_dict() for p in self.principals],
            "hierarchy": [e.to_dict() for e in self.hierarchy],
            "owned_schemas": [s.to_dict() for s in self.owned_schemas],
            "memberships": [m.to_dict() for m in self.memberships],
            "grants": [g.to_dict() for g in self.grants],
            "properties": [p.to_dict() for p in self.properties],
        }
