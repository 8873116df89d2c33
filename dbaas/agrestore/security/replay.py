"""
Permission replay engine.

Replays a captured principal graph onto the freshly restored database, one
principal per batch, in the order of a ReplayPlan. Each batch drops the
pre-existing principal of the same name (after revoking what it granted),
recreates it and re-establishes its schema ownership, memberships, explicit
permissions and extended properties.

Every dependent statement carries existence guards evaluated by the server
at apply time. A guard that does not hold skips its statement and is
reported as a ReplayAnomaly; a batch the server rejects aborts the replay.

Invariants:
    - A batch is atomic: either the whole principal is replayed or nothing
    - The worklist shrinks by exactly one principal per iteration
    - Application roles are never dropped (their password cannot be captured)
    - Under ROLES_FIRST every relationship is emitted in the batch of the
      last of its captured endpoints to be replayed

How to change safely:
    - Drop preambles are built from live state right before the batch runs
    - Anomaly texts come from Guarded.anomaly_text(); keep them parseable
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from ..audit import CommandExecutor, CommandMode, CommandType
from ..backends.base import BackendError, InstanceBackend
from ..errors import ReplayError
from ..tsql import (
    ANOMALY_SEPARATOR,
    AddExtendedProperty,
    AddRoleMember,
    AlterRoleAuthorization,
    AlterSchemaAuthorization,
    CreateRole,
    CreateUser,
    DropRole,
    DropRoleMember,
    DropUser,
    ExtendedPropertyAbsent,
    Guard,
    Guarded,
    ObjectExists,
    PermissionState,
    PermissionStatement,
    PrincipalExists,
    RoleExists,
    SchemaExists,
    Statement,
    StatementBatch,
    UserBinding,
)
from .capture import securable_from_row
from .ordering import ReplayOrder, ReplayPlan
from .snapshot import ExplicitGrant, Principal, PrincipalKind, PrincipalSnapshot, RoleMembership

logger = logging.getLogger(__name__)

# Principal that takes over schemas and roles of a principal about to be dropped
INTERIM_OWNER = "dbo"


@dataclass(frozen=True)
class ReplayAnomaly:
    """A replayed statement that was skipped because a guard did not hold.

    Attributes:
        principal: Principal whose batch contained the statement
        statement: One-line summary of the skipped statement
        reason: Unmet requirement(s)
    """

    principal: str
    statement: str
    reason: str

    @classmethod
    def from_text(cls, principal: str, text: str) -> ReplayAnomaly:
        statement, _, reason = text.partition(ANOMALY_SEPARATOR)
        return cls(principal=principal, statement=statement.strip(), reason=reason.strip())

    def to_dict(self) -> dict[str, Any]:
        return {"principal": self.principal, "statement": self.statement, "reason": self.reason}

    def __str__(self) -> str:
        return f"{self.principal}: {self.statement} ({self.reason})"


@dataclass
class ReplayReport:
    """Outcome of a replay.

    Attributes:
        database: Target database
        order: Strategy used
        processed: Principal names in the order they were replayed
        anomalies: Skipped statements
        statements: Number of statements sent
        deferred: Relationships emitted in another principal's batch
    """

    database: str
    order: ReplayOrder
    processed: list[str] = field(default_factory=list)
    anomalies: list[ReplayAnomaly] = field(default_factory=list)
    statements: int = 0
    deferred: int = 0

    @property
    def clean(self) -> bool:
        return not self.anomalies

    def to_dict(self) -> dict[str, Any]:
        return {
            "database": self.database,
            "order": self.order.value,
            "processed": list(self.processed),
            "anomalies": [a.to_dict() for a in self.anomalies],
            "statements": self.statements,
            "deferred": self.deferred,
        }


@dataclass
class _Assignment:
    """Relationships emitted in one principal's batch."""

    memberships: list[RoleMembership] = field(default_factory=list)
    grants: list[ExplicitGrant] = field(default_factory=list)
    owned_roles: list[Principal] = field(default_factory=list)
    ownership_deferred: bool = False
    deferred: int = 0


class PermissionReplayEngine:
    """Replays a PrincipalSnapshot onto a restored database.

    Example:
        >>> plan = CreateOrderResolver().resolve(snapshot)
        >>> report = PermissionReplayEngine(backend, executor).replay(snapshot, plan)
        >>> for anomaly in report.anomalies:
        ...     print(anomaly)
    """

    def __init__(self, backend: InstanceBackend, executor: CommandExecutor) -> None:
        self.backend = backend
        self.executor = executor

    def replay(self, snapshot: PrincipalSnapshot, plan: ReplayPlan) -> ReplayReport:
        """Replay every principal of ``snapshot`` in plan order.

        Raises:
            ReplayError: If the server rejected a batch
        """
        report = ReplayReport(database=snapshot.database, order=plan.order)
        assignments = self.assign(snapshot, plan)
        worklist = deque(plan.ordered)

        while worklist:
            principal = worklist.popleft()
            assignment = assignments[principal.principal_id]
            statements, skipped = self._statements(snapshot, principal, assignment)
            batch = StatementBatch(snapshot.database, tuple(statements), atomic=True)

            try:
                outcome = self.executor.run(
                    batch,
                    CommandType.PRESERVE_PERMISSIONS,
                    database=snapshot.database,
                    mode=CommandMode.MUTATING,
                )
            except BackendError as e:
                raise ReplayError(
                    f"Replay of principal {principal.name} was rejected: {e}",
                    principal=principal.name,
                ) from e

            anomalies = skipped + [
                ReplayAnomaly.from_text(principal.name, text) for text in outcome.anomalies
            ]
            for anomaly in anomalies:
                logger.warning(
                    f"Replay anomaly: {anomaly}",
                    extra={"database": snapshot.database, "principal": principal.name},
                )
            report.anomalies.extend(anomalies)
            report.processed.append(principal.name)
            report.statements += len(batch)
            report.deferred += assignment.deferred

        logger.info(
            f"Replayed {len(report.processed)} principals on {snapshot.database}",
            extra={
                "order": plan.order.value,
                "statements": report.statements,
                "deferred": report.deferred,
                "anomalies": len(report.anomalies),
            },
        )
        return report

    def assign(self, snapshot: PrincipalSnapshot, plan: ReplayPlan) -> dict[int, _Assignment]:
        """Decide which principal's batch emits every relationship.

        COMPATIBLE emits a relationship with its natural holder (member,
        grantee, owned role). ROLES_FIRST emits it with whichever captured
        endpoint is replayed last, so both ends exist when it runs.
        """
        position = {p.principal_id: index for index, p in enumerate(plan.ordered)}
        assignments = {p.principal_id: _Assignment() for p in plan.ordered}
        deferring = plan.order == ReplayOrder.ROLES_FIRST

        def emitter(holder_id: int, endpoints: list[int | None]) -> int:
            if not deferring:
                return holder_id
            captured = [e for e in endpoints if e is not None and e in position]
            return max([holder_id, *captured], key=position.__getitem__)

        for membership in snapshot.memberships:
            target = emitter(membership.member_id, [membership.role_id])
            assignments[target].memberships.append(membership)
            if target != membership.member_id:
                assignments[target].deferred += 1

        for grant in snapshot.grants:
            endpoints = [self._principal_id(snapshot, grant.grantor_name)]
            if grant.securable.securable_class == "DATABASE_PRINCIPAL":
                endpoints.append(self._principal_id(snapshot, grant.securable.name))
            target = emitter(grant.grantee_id, endpoints)
            assignments[target].grants.append(grant)
            if target != grant.grantee_id:
                assignments[target].deferred += 1

        if deferring:
            for role in snapshot.roles:
                owner_id = role.owner_id
                if owner_id in position and position[owner_id] > position[role.principal_id]:
                    assignments[owner_id].owned_roles.append(role)
                    assignments[role.principal_id].ownership_deferred = True
                    assignments[owner_id].deferred += 1

        return assignments

    @staticmethod
    def _principal_id(snapshot: PrincipalSnapshot, name: str | None) -> int | None:
        principal = snapshot.by_name(name) if name else None
        return principal.principal_id if principal else None

    def _statements(
        self, snapshot: PrincipalSnapshot, principal: Principal, assignment: _Assignment
    ) -> tuple[list[Statement], list[ReplayAnomaly]]:
        database = snapshot.database
        name = principal.name
        statements: list[Statement] = []
        skipped: list[ReplayAnomaly] = []

        if principal.kind.is_role:
            statements.extend(self._release(database, name))
            statements.extend(DropRoleMember(name, member) for member in self.backend.role_members(database, name))
            statements.append(Guarded(DropRole(name), (RoleExists(name),), report=False))
            statements.append(self._create_role(principal, assignment))
        elif principal.kind == PrincipalKind.APPLICATION_ROLE:
            logger.debug(f"Application role {name} is kept, only its dependents are replayed")
        else:
            statements.extend(self._release(database, name))
            statements.append(Guarded(DropUser(name), (PrincipalExists(name),), report=False))
            create = self._create_user(principal)
            if create is not None:
                statements.append(create)
            else:
                skipped.append(
                    ReplayAnomaly(
                        principal=name,
                        statement=f"CREATE USER [{name}] FOR LOGIN [{principal.login_name}]",
                        reason=f"login {principal.login_name} does not exist",
                    )
                )

        for role in assignment.owned_roles:
            statements.append(
                Guarded(
                    AlterRoleAuthorization(role.name, name),
                    (RoleExists(role.name), PrincipalExists(name)),
                )
            )

        for schema in snapshot.owned_schemas_of(principal.principal_id):
            statements.append(
                Guarded(
                    AlterSchemaAuthorization(schema.schema_name, name),
                    (PrincipalExists(name), SchemaExists(schema.schema_name)),
                )
            )

        for membership in assignment.memberships:
            member = snapshot.principal(membership.member_id)
            statements.append(
                Guarded(
                    AddRoleMember(membership.role_name, member.name),
                    (PrincipalExists(member.name), RoleExists(membership.role_name)),
                )
            )

        for grant in assignment.grants:
            statements.append(self._grant(snapshot, grant))

        for prop in snapshot.properties_of(principal.principal_id):
            statements.append(
                Guarded(
                    AddExtendedProperty(name, prop.name, prop.value),
                    (PrincipalExists(name), ExtendedPropertyAbsent(name, prop.name)),
                )
            )

        return statements, skipped

    def _release(self, database: str, name: str) -> list[Statement]:
        """Free the live principal so it can be dropped.

        Schemas and roles it owns go to dbo. Permissions it granted or denied
        are revoked with CASCADE; captured ones are reissued once both the
        grantor and the grantee exist again.
        """
        statements: list[Statement] = []
        for row in self.backend.permissions_granted_by(database, name):
            securable = securable_from_row(row)
            if securable is None:
                continue
            statements.append(
                PermissionStatement(
                    state=PermissionState.REVOKE,
                    permission=row["permission_name"],
                    securable=securable,
                    grantee=row["grantee_name"],
                    grantor=name,
                    cascade=True,
                )
            )
        statements.extend(
            AlterSchemaAuthorization(schema, INTERIM_OWNER)
            for schema in self.backend.schemas_owned_by(database, name)
        )
        statements.extend(
            AlterRoleAuthorization(role, INTERIM_OWNER)
            for role in self.backend.roles_owned_by(database, name)
        )
        return statements

    @staticmethod
    def _create_role(role: Principal, assignment: _Assignment) -> Statement:
        owner = role.owner_name
        # Ownership by a principal replayed later is restored in that principal's batch
        if not owner or assignment.ownership_deferred:
            return CreateRole(role.name)
        return Guarded(
            CreateRole(role.name, owner),
            (PrincipalExists(owner),),
            otherwise=CreateRole(role.name),
        )

    def _create_user(self, user: Principal) -> Statement | None:
        if user.kind == PrincipalKind.CERTIFICATE_USER:
            return CreateUser(user.name, UserBinding.CERTIFICATE, certificate=user.certificate_name)
        if user.kind.is_external:
            return CreateUser(user.name, UserBinding.EXTERNAL_PROVIDER, default_schema=user.default_schema)
        if user.login_name is None:
            return CreateUser(user.name, UserBinding.WITHOUT_LOGIN, default_schema=user.default_schema)
        if not self.backend.login_exists(user.login_name):
            logger.warning(f"Login {user.login_name} of user {user.name} no longer exists, user not created")
            return None
        return CreateUser(
            user.name,
            UserBinding.LOGIN,
            login=user.login_name,
            default_schema=user.default_schema,
        )

    def _grant(self, snapshot: PrincipalSnapshot, grant: ExplicitGrant) -> Guarded:
        grantee = snapshot.principal(grant.grantee_id)
        securable = grant.securable
        guards: list[Guard] = [PrincipalExists(grantee.name), PrincipalExists(grant.grantor_name)]
        if securable.securable_class == "DATABASE_PRINCIPAL":
            guards.append(PrincipalExists(securable.name))
        elif securable.securable_class == "SCHEMA":
            guards.append(SchemaExists(securable.name))
        elif securable.securable_class == "OBJECT_OR_COLUMN" and securable.schema:
            guards.append(ObjectExists(securable.schema, securable.name))
        return Guarded(
            PermissionStatement(
                state=grant.state,
                permission=grant.permission,
                securable=securable,
                grantee=grantee.name,
                grantor=grant.grantor_name,
                with_grant_option=grant.with_grant_option,
            ),
            tuple(guards),
        )
