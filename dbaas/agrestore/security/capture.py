"""
Principal graph capture.

Reads the authorization state of a database (principals, owned schemas, role
memberships, explicit permissions, extended properties) before the restore
overwrites it. The backend returns raw catalog rows; exclusion rules are
applied here so they are identical for every backend.

Invariants:
    - Read-only, never issues a command
    - System principals (id <= 4), fixed roles and service / internal
      accounts are never captured
    - CONNECT on the database is not captured, creating a user implies it
    - A cyclic role hierarchy is rejected instead of being replayed

How to change safely:
    - Exclusion rules decide what a restore preserves; changing them changes
      every future restore
    - Row keys are documented on CatalogView
"""

from __future__ import annotations

import logging
from typing import Any

from ..backends.base import BackendError, CatalogView, InstanceBackend
from ..errors import CaptureError
from ..tsql import PRINCIPAL_SECURABLE_CLASSES, SECURABLE_PREFIXES, PermissionState, Securable
from .snapshot import (
    ExplicitGrant,
    ExtendedProperty,
    OwnedSchema,
    Principal,
    PrincipalKind,
    PrincipalSnapshot,
    RoleHierarchyEdge,
    RoleMembership,
)

logger = logging.getLogger(__name__)

SUPPORTED_KINDS = {kind.value for kind in PrincipalKind}

# Highest principal_id of the built-in principals (public, dbo, guest, INFORMATION_SCHEMA, sys)
MAX_SYSTEM_PRINCIPAL_ID = 4


def is_excluded_name(name: str) -> bool:
    """Names matching ##%##, NT AUTHORITY% or NT SERVICE% (case-insensitive)."""
    upper = name.upper()
    if len(name) >= 4 and name.startswith("##") and name.endswith("##"):
        return True
    return upper.startswith("NT AUTHORITY") or upper.startswith("NT SERVICE")


def is_captured(row: dict[str, Any]) -> bool:
    return (
        row["principal_id"] > MAX_SYSTEM_PRINCIPAL_ID
        and not row["is_fixed_role"]
        and row["type"] in SUPPORTED_KINDS
        and not is_excluded_name(row["name"])
    )


def securable_from_row(row: dict[str, Any]) -> Securable | None:
    """Securable of a PERMISSIONS row, or None for classes that cannot be rendered."""
    class_desc = row["class_desc"]
    if class_desc not in SECURABLE_PREFIXES or not row.get("securable_name"):
        logger.warning(
            f"Skipping {row['permission_name']} on unsupported securable class {class_desc}",
            extra={"grantee_id": row["grantee_id"]},
        )
        return None

    principal_class = None
    if class_desc == "DATABASE_PRINCIPAL":
        principal_class = PRINCIPAL_SECURABLE_CLASSES.get(row.get("principal_type_desc") or "")
        if principal_class is None:
            logger.warning(
                f"Skipping {row['permission_name']} on principal {row['securable_name']} "
                f"of unknown type {row.get('principal_type_desc')}"
            )
            return None

    return Securable(
        securable_class=class_desc,
        name=row["securable_name"],
        schema=row.get("securable_schema"),
        column=row.get("column_name"),
        principal_class=principal_class,
    )


def find_cycle(edges: list[RoleHierarchyEdge]) -> list[int] | None:
    """Return the role ids of one membership cycle, or None."""
    parents: dict[int, list[int]] = {}
    for edge in edges:
        parents.setdefault(edge.child_id, []).append(edge.parent_id)

    visiting: set[int] = set()
    done: set[int] = set()
    for start in parents:
        if start in done:
            continue
        path = [start]
        stack = [iter(parents.get(start, []))]
        visiting.add(start)
        while stack:
            parent = next(stack[-1], None)
            if parent is None:
                stack.pop()
                node = path.pop()
                visiting.discard(node)
                done.add(node)
                continue
            if parent in visiting:
                return path[path.index(parent):] + [parent]
            if parent not in done:
                visiting.add(parent)
                path.append(parent)
                stack.append(iter(parents.get(parent, [])))
    return None


class PrincipalGraphCapture:
    """Snapshots the authorization graph of a database.

    Example:
        >>> snapshot = PrincipalGraphCapture(backend).capture("SalesDB")
        >>> len(snapshot.principals)
        5
    """

    def __init__(self, backend: InstanceBackend) -> None:
        self.backend = backend

    def capture(self, database: str) -> PrincipalSnapshot:
        """Capture the principal graph of ``database``.

        Raises:
            CaptureError: If the database does not exist, a catalog read
                fails or the role hierarchy is cyclic
        """
        try:
            if not self.backend.database_exists(database):
                raise CaptureError(f"Database {database} does not exist", database=database)
            rows = {view: self.backend.read_catalog(database, view) for view in CatalogView}
        except BackendError as e:
            raise CaptureError(
                f"Cannot read authorization state of {database}: {e}", database=database
            ) from e

        principals = [self._principal(row) for row in rows[CatalogView.PRINCIPALS] if is_captured(row)]
        captured_ids = {p.principal_id for p in principals}
        role_ids = {p.principal_id for p in principals if p.kind.is_role}

        owned_schemas = [
            OwnedSchema(row["principal_id"], row["schema_id"], row["schema_name"])
            for row in rows[CatalogView.OWNED_SCHEMAS]
            if row["principal_id"] in captured_ids
        ]
        memberships = [
            RoleMembership(row["member_id"], row["role_id"], row["role_name"])
            for row in rows[CatalogView.ROLE_MEMBERSHIPS]
            if row["member_id"] in captured_ids
        ]
        hierarchy = [
            RoleHierarchyEdge(m.member_id, m.role_id)
            for m in memberships
            if m.member_id in role_ids and m.role_id in role_ids
        ]
        grants = [
            grant
            for grant in (
                self._grant(row)
                for row in rows[CatalogView.PERMISSIONS]
                if row["grantee_id"] in captured_ids
            )
            if grant is not None
        ]
        properties = [
            ExtendedProperty(row["principal_id"], row["name"], "" if row["value"] is None else str(row["value"]))
            for row in rows[CatalogView.EXTENDED_PROPERTIES]
            if row["principal_id"] in captured_ids
        ]

        cycle = find_cycle(hierarchy)
        if cycle is not None:
            names = [self._name(principals, role_id) for role_id in cycle]
            raise CaptureError(
                f"Role hierarchy of {database} is cyclic: {' -> '.join(names)}",
                database=database,
            )

        snapshot = PrincipalSnapshot(
            database=database,
            principals=tuple(principals),
            hierarchy=tuple(hierarchy),
            owned_schemas=tuple(owned_schemas),
            memberships=tuple(memberships),
            grants=tuple(grants),
            properties=tuple(properties),
        )
        logger.info(
            f"Captured {len(principals)} principals of {database}",
            extra={
                "database": database,
                "roles": len(role_ids),
                "memberships": len(memberships),
                "grants": len(grants),
                "properties": len(properties),
            },
        )
        return snapshot

    @staticmethod
    def _name(principals: list[Principal], principal_id: int) -> str:
        for principal in principals:
            if principal.principal_id == principal_id:
                return principal.name
        return str(principal_id)

    @staticmethod
    def _principal(row: dict[str, Any]) -> Principal:
        kind = PrincipalKind(row["type"])
        return Principal(
            principal_id=row["principal_id"],
            name=row["name"],
            kind=kind,
            sid=row.get("sid"),
            default_schema=row.get("default_schema_name"),
            owner_id=row.get("owning_principal_id") if kind.is_role else None,
            owner_name=row.get("owner_name") if kind.is_role else None,
            login_name=row.get("login_name"),
            login_type=row.get("login_type"),
            certificate_name=row.get("certificate_name"),
        )

    @staticmethod
    def _grant(row: dict[str, Any]) -> ExplicitGrant | None:
        if row["permission_name"] == "CONNECT" and row["class_desc"] == "DATABASE":
            return None
        securable = securable_from_row(row)
        if securable is None:
            return None

        state_desc = row["state_desc"]
        with_grant_option = state_desc == "GRANT_WITH_GRANT_OPTION"
        state = PermissionState.GRANT if with_grant_option else PermissionState(state_desc)
        return ExplicitGrant(
            grantee_id=row["grantee_id"],
            state=state,
            permission=row["permission_name"],
            securable=securable,
            grantor_name=row["grantor_name"],
            with_grant_option=with_grant_option,
        )
