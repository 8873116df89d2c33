"""
In-memory SQL Server instance and cluster for testing.

This module simulates just enough of SQL Server to run the restore tool end
to end without a server:
- Databases with principals, schemas, memberships, permissions, extended
  properties and files
- Logins, a backup folder, linked servers and stored procedures per instance
- Availability groups spanning several instances of one InMemoryCluster

Typed statements are interpreted directly; guards are evaluated at apply time
exactly where the server would evaluate them.

Invariants:
    - All data is lost on process exit
    - Server-side rejections raise CommandFailedError with SQL Server's wording
    - Atomic batches leave the database untouched when any statement fails
    - execute=False commands are recorded but never applied

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the InstanceBackend protocol
    - Every new Statement type needs a handler in _HANDLERS
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from ..audit import AuditedCommand, CommandOutcome
from ..tsql import (
    ANOMALY_MARKER,
    AddDatabaseToGroup,
    AddExtendedProperty,
    AddLinkedServer,
    AddRoleMember,
    AlterRoleAuthorization,
    AlterSchemaAuthorization,
    BackupDatabase,
    BackupLog,
    CreateRole,
    CreateUser,
    DropDatabase,
    DropRole,
    DropRoleMember,
    DropUser,
    ExecuteRemoteProcedure,
    ExtendedPropertyAbsent,
    Guard,
    Guarded,
    ObjectExists,
    PermissionState,
    PermissionStatement,
    PrincipalExists,
    RemoveDatabaseFromGroup,
    RenameFile,
    ResizeFile,
    RestoreDatabase,
    RoleExists,
    SchemaExists,
    Securable,
    SetDatabaseOffline,
    SetFileGrowth,
    SetLinkedServerOption,
    SetMultiUser,
    SetOnline,
    SetRecovery,
    ShrinkFile,
    Statement,
    StatementBatch,
    UserBinding,
)
from .base import (
    BackendConnectionError,
    BackendError,
    BackendTimeoutError,
    BackupFile,
    CatalogView,
    CommandFailedError,
    DatabaseFile,
    FileGrowth,
    InstanceProperties,
    LinkedServerInfo,
)

logger = logging.getLogger(__name__)

TYPE_DESCS = {
    "R": "DATABASE_ROLE",
    "A": "APPLICATION_ROLE",
    "S": "SQL_USER",
    "U": "WINDOWS_USER",
    "G": "WINDOWS_GROUP",
    "C": "CERTIFICATE_MAPPED_USER",
    "E": "EXTERNAL_USER",
    "X": "EXTERNAL_GROUPS",
}

USER_TYPES = {"S", "U", "G", "C", "E", "X"}

FIXED_ROLES = (
    "db_owner",
    "db_accessadmin",
    "db_securityadmin",
    "db_ddladmin",
    "db_backupoperator",
    "db_datareader",
    "db_datawriter",
    "db_denydatareader",
    "db_denydatawriter",
)

PAGES_PER_MB = 128


def _new_sid() -> bytes:
    return uuid.uuid4().bytes


@dataclass
class MemoryLogin:
    name: str
    type: str
    sid: bytes


@dataclass
class MemoryPrincipal:
    principal_id: int
    name: str
    type: str
    sid: bytes | None = None
    default_schema: str | None = None
    owner_id: int | None = None
    is_fixed_role: bool = False
    certificate: str | None = None


@dataclass
class MemorySchema:
    schema_id: int
    name: str
    owner_id: int


@dataclass
class MemoryPermission:
    grantee_id: int
    state: str  # GRANT, DENY, GRANT_WITH_GRANT_OPTION
    permission: str
    securable: Securable
    grantor_id: int


@dataclass
class MemoryFile:
    file_id: int
    logical_name: str
    physical_name: str
    file_type: str
    size_pages: int
    growth: int = 8192
    is_percent_growth: bool = False


class InMemoryDatabase:
    """A database with its security catalog and files.

    Seeded with the system principals (public, dbo, guest,
    INFORMATION_SCHEMA, sys), the fixed database roles and their schemas.
    The builder methods are meant for test setup and bypass statement
    validation.

    Example:
        >>> db = InMemoryDatabase("SalesDB")
        >>> db.add_role("Readers")
        >>> db.add_user("alice", default_schema="dbo")
        >>> db.add_member("Readers", "alice")
    """

    def __init__(self, name: str, log_size_mb: int = 1024) -> None:
        self.name = name
        self.principals: dict[int, MemoryPrincipal] = {}
        self.schemas: dict[str, MemorySchema] = {}
        self.memberships: set[tuple[int, int]] = set()  # (role_id, member_id)
        self.permissions: list[MemoryPermission] = []
        self.properties: dict[tuple[int, str], str] = {}
        self.objects: set[tuple[str, str]] = set()
        self.files: list[MemoryFile] = [
            MemoryFile(1, name, f"D:\\Data\\{name}.mdf", "D", 64 * PAGES_PER_MB),
            MemoryFile(2, f"{name}_log", f"L:\\Log\\{name}_log.ldf", "L", log_size_mb * PAGES_PER_MB),
        ]
        self.state = "ONLINE"
        self.user_access = "MULTI_USER"
        self.recovery = "FULL"
        self.has_full_backup = False
        self._next_principal_id = 5
        self._next_schema_id = 5

        for principal_id, principal_name, kind in (
            (0, "public", "R"),
            (1, "dbo", "S"),
            (2, "guest", "S"),
            (3, "INFORMATION_SCHEMA", "S"),
            (4, "sys", "S"),
        ):
            self.principals[principal_id] = MemoryPrincipal(
                principal_id, principal_name, kind, sid=_new_sid(), owner_id=1 if kind == "R" else None
            )
        for schema_id, schema_name in ((1, "dbo"), (2, "guest"), (3, "INFORMATION_SCHEMA"), (4, "sys")):
            self.schemas[schema_name] = MemorySchema(schema_id, schema_name, schema_id)
        for offset, role in enumerate(FIXED_ROLES):
            role_id = 16384 + offset
            self.principals[role_id] = MemoryPrincipal(
                role_id, role, "R", sid=_new_sid(), owner_id=1, is_fixed_role=True
            )
            self.schemas[role] = MemorySchema(role_id, role, role_id)

    # Builders

    def _allocate_principal_id(self) -> int:
        principal_id = self._next_principal_id
        self._next_principal_id += 1
        return principal_id

    def _add_principal(self, name: str, kind: str, **kwargs: Any) -> MemoryPrincipal:
        if self.principal(name) is not None:
            raise ValueError(f"Principal {name} already exists in {self.name}")
        principal = MemoryPrincipal(self._allocate_principal_id(), name, kind, **kwargs)
        self.principals[principal.principal_id] = principal
        return principal

    def add_role(self, name: str, owner: str | None = None) -> MemoryPrincipal:
        owner_id = self._require(owner).principal_id if owner else 1
        return self._add_principal(name, "R", sid=_new_sid(), owner_id=owner_id)

    def add_application_role(self, name: str, default_schema: str | None = "dbo") -> MemoryPrincipal:
        return self._add_principal(name, "A", sid=_new_sid(), default_schema=default_schema)

    def add_user(
        self,
        name: str,
        sid: bytes | None = None,
        kind: str = "S",
        default_schema: str | None = "dbo",
        certificate: str | None = None,
    ) -> MemoryPrincipal:
        user = self._add_principal(
            name,
            kind,
            sid=sid or _new_sid(),
            default_schema=default_schema,
            certificate=certificate,
        )
        self.permissions.append(
            MemoryPermission(user.principal_id, "GRANT", "CONNECT", Securable("DATABASE", self.name), 1)
        )
        return user

    def add_schema(self, name: str, owner: str = "dbo") -> MemorySchema:
        schema = MemorySchema(self._next_schema_id, name, self._require(owner).principal_id)
        self._next_schema_id += 1
        self.schemas[name] = schema
        return schema

    def add_object(self, schema: str, name: str) -> None:
        self.objects.add((schema, name))

    def add_member(self, role: str, member: str) -> None:
        self.memberships.add((self._require(role).principal_id, self._require(member).principal_id))

    def grant(
        self,
        permission: str,
        securable: Securable,
        grantee: str,
        grantor: str = "dbo",
        state: str = "GRANT",
        with_grant_option: bool = False,
    ) -> None:
        if with_grant_option:
            state = "GRANT_WITH_GRANT_OPTION"
        self.permissions.append(
            MemoryPermission(
                self._require(grantee).principal_id,
                state,
                permission,
                securable,
                self._require(grantor).principal_id,
            )
        )

    def set_property(self, principal: str, name: str, value: str) -> None:
        self.properties[(self._require(principal).principal_id, name)] = value

    def add_file(self, logical_name: str, file_type: str, size_mb: int = 64) -> MemoryFile:
        file_id = max(f.file_id for f in self.files) + 1
        extension = ".ldf" if file_type == "L" else ".ndf"
        physical = f"D:\\Data\\{logical_name}{extension}"
        data_file = MemoryFile(file_id, logical_name, physical, file_type, size_mb * PAGES_PER_MB)
        self.files.append(data_file)
        return data_file

    # Lookups

    def principal(self, name: str) -> MemoryPrincipal | None:
        for principal in self.principals.values():
            if principal.name == name:
                return principal
        return None

    def _require(self, name: str) -> MemoryPrincipal:
        principal = self.principal(name)
        if principal is None:
            raise ValueError(f"Principal {name} does not exist in {self.name}")
        return principal

    def _name_of(self, principal_id: int | None) -> str | None:
        if principal_id is None or principal_id not in self.principals:
            return None
        return self.principals[principal_id].name

    def role_members(self, role: str) -> list[str]:
        principal = self.principal(role)
        if principal is None:
            return []
        return sorted(
            self.principals[member_id].name
            for role_id, member_id in self.memberships
            if role_id == principal.principal_id
        )

    def roles_of(self, member: str) -> set[str]:
        principal = self.principal(member)
        if principal is None:
            return set()
        return {
            self.principals[role_id].name
            for role_id, member_id in self.memberships
            if member_id == principal.principal_id
        }

    def schemas_owned_by(self, principal: str) -> list[str]:
        owner = self.principal(principal)
        if owner is None:
            return []
        return sorted(s.name for s in self.schemas.values() if s.owner_id == owner.principal_id)

    def roles_owned_by(self, principal: str) -> list[str]:
        owner = self.principal(principal)
        if owner is None:
            return []
        return sorted(
            p.name
            for p in self.principals.values()
            if p.type == "R" and p.owner_id == owner.principal_id and not p.is_fixed_role
        )

    def owner_of(self, name: str) -> str | None:
        principal = self.principal(name)
        return self._name_of(principal.owner_id) if principal else None

    def schema_owner(self, schema: str) -> str | None:
        return self._name_of(self.schemas[schema].owner_id) if schema in self.schemas else None

    def permissions_of(self, grantee: str) -> set[tuple[str, str, str, str]]:
        """(state, permission, securable, grantor) for every explicit permission."""
        principal = self.principal(grantee)
        if principal is None:
            return set()
        return {
            (p.state, p.permission, p.securable.render(), self._name_of(p.grantor_id) or "")
            for p in self.permissions
            if p.grantee_id == principal.principal_id
        }

    def property(self, principal: str, name: str) -> str | None:
        owner = self.principal(principal)
        if owner is None:
            return None
        return self.properties.get((owner.principal_id, name))

    def file(self, logical_name: str) -> MemoryFile | None:
        for data_file in self.files:
            if data_file.logical_name == logical_name:
                return data_file
        return None

    # Catalog rows

    def catalog_rows(self, view: CatalogView, logins: dict[bytes, MemoryLogin]) -> list[dict[str, Any]]:
        if view == CatalogView.PRINCIPALS:
            rows = []
            for principal in sorted(self.principals.values(), key=lambda p: p.principal_id):
                login = logins.get(principal.sid) if principal.sid else None
                rows.append(
                    {
                        "principal_id": principal.principal_id,
                        "sid": principal.sid,
                        "name": principal.name,
                        "type": principal.type,
                        "type_desc": TYPE_DESCS[principal.type],
                        "default_schema_name": principal.default_schema,
                        "is_fixed_role": principal.is_fixed_role,
                        "owning_principal_id": principal.owner_id,
                        "owner_name": self._name_of(principal.owner_id),
                        "login_name": login.name if login else None,
                        "login_type": login.type if login else None,
                        "certificate_name": principal.certificate,
                    }
                )
            return rows
        if view == CatalogView.OWNED_SCHEMAS:
            return [
                {"principal_id": s.owner_id, "schema_id": s.schema_id, "schema_name": s.name}
                for s in sorted(self.schemas.values(), key=lambda s: s.schema_id)
            ]
        if view == CatalogView.ROLE_MEMBERSHIPS:
            return [
                {"member_id": member_id, "role_id": role_id, "role_name": self.principals[role_id].name}
                for role_id, member_id in sorted(self.memberships, key=lambda m: (m[1], m[0]))
            ]
        if view == CatalogView.PERMISSIONS:
            rows = []
            for p in sorted(self.permissions, key=lambda p: p.grantee_id):
                securable = p.securable
                type_desc = None
                if securable.securable_class == "DATABASE_PRINCIPAL":
                    target = self.principal(securable.name)
                    type_desc = TYPE_DESCS[target.type] if target else None
                rows.append(
                    {
                        "grantee_id": p.grantee_id,
                        "grantee_name": self._name_of(p.grantee_id),
                        "state_desc": p.state,
                        "permission_name": p.permission,
                        "class_desc": securable.securable_class,
                        "securable_schema": securable.schema,
                        "securable_name": securable.name,
                        "column_name": securable.column,
                        "principal_type_desc": type_desc,
                        "grantor_name": self._name_of(p.grantor_id),
                    }
                )
            return rows
        if view == CatalogView.EXTENDED_PROPERTIES:
            return [
                {"principal_id": principal_id, "name": name, "value": value}
                for (principal_id, name), value in sorted(self.properties.items())
            ]
        raise BackendError(f"Unknown catalog view: {view}")


@dataclass
class BackupImage:
    """Contents of one backup file in the simulated backup folder."""

    kind: str  # FULL or LOG
    database_name: str
    database: InMemoryDatabase | None = None


@dataclass
class CommandLogEntry:
    command_type: str
    database: str | None
    command: str
    error_message: str | None = None


@dataclass
class AvailabilityGroupState:
    """One availability group: primary, replicas and joined databases."""

    name: str
    primary: str
    replicas: list[str]
    databases: set[str] = field(default_factory=set)
    joined: dict[str, set[str]] = field(default_factory=dict)

    @property
    def secondaries(self) -> list[str]:
        return [replica for replica in self.replicas if replica != self.primary]


class InMemoryInstance:
    """In-memory implementation of InstanceBackend.

    Attributes:
        databases: Databases by name
        logins: Server logins by name
        backups: Backup folder (shared by all instances of a cluster)
        linked_servers: Linked servers by name
        procedures: Procedures present in master.dbo
        commands: Every audited command received, applied or not
        command_log: CommandLog rows written by log_to_table commands

    Failure injection:
        reachable: False makes remote calls to this instance fail to connect
        responsive: False makes remote calls to this instance time out
        fail_catalog_reads: Catalog reads raise BackendError

    Example:
        >>> instance = InMemoryInstance("SQL01")
        >>> instance.connect()
        >>> db = instance.create_database("SalesDB")
    """

    def __init__(
        self,
        server_name: str = "SQL01",
        cluster: InMemoryCluster | None = None,
        is_sysadmin: bool = True,
        hadr_enabled: bool = False,
        procedures: set[str] | None = None,
        tables: set[str] | None = None,
        product_version: str = "15.0.4123.1",
        data_path: str = "D:\\Data\\",
        log_path: str = "L:\\Log\\",
        backup_path: str = "B:\\Backup\\",
    ) -> None:
        self.server_name = server_name
        self.cluster = cluster
        self.sysadmin = is_sysadmin
        self.hadr_enabled = hadr_enabled
        self.procedures = procedures if procedures is not None else {"CommandExecute"}
        self.tables = tables if tables is not None else {"CommandLog"}
        self.product_version = product_version
        self.data_path = data_path
        self.log_path = log_path
        self.backup_path = backup_path

        self.databases: dict[str, InMemoryDatabase] = {}
        self.logins: dict[str, MemoryLogin] = {}
        self.backups: dict[str, BackupImage] = cluster.backups if cluster else {}
        self.linked_servers: dict[str, LinkedServerInfo] = {}
        self.model_growth = {"D": FileGrowth(8192, False), "L": FileGrowth(10, True)}
        self.commands: list[AuditedCommand] = []
        self.command_log: list[CommandLogEntry] = []
        self.join_calls: list[dict[str, str]] = []
        self.rollback_count = 0

        self.reachable = True
        self.responsive = True
        self.fail_catalog_reads = False
        self._connected = False

    # Setup helpers

    def create_database(self, name: str, **kwargs: Any) -> InMemoryDatabase:
        database = InMemoryDatabase(name, **kwargs)
        self.databases[name] = database
        return database

    def create_login(self, name: str, kind: str = "S") -> MemoryLogin:
        login = MemoryLogin(name, kind, _new_sid())
        self.logins[name] = login
        return login

    def drop_login(self, name: str) -> None:
        del self.logins[name]

    def store_backup(self, path: str, database: InMemoryDatabase) -> None:
        """Place a full backup of ``database`` in the backup folder."""
        self.backups[path] = BackupImage("FULL", database.name, copy.deepcopy(database))

    def commands_of_type(self, command_type: str) -> list[AuditedCommand]:
        return [c for c in self.commands if c.command_type.value == command_type]

    def _logins_by_sid(self) -> dict[bytes, MemoryLogin]:
        return {login.sid: login for login in self.logins.values()}

    # Connection

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        self._connected = True
        logger.debug(f"InMemoryInstance {self.server_name} connected")

    def close(self) -> None:
        self._connected = False
        logger.debug(f"InMemoryInstance {self.server_name} closed")

    # Instance

    def instance_properties(self) -> InstanceProperties:
        return InstanceProperties(
            server_name=self.server_name,
            product_version=self.product_version,
            data_path=self.data_path,
            log_path=self.log_path,
            backup_path=self.backup_path,
            hadr_enabled=self.hadr_enabled,
        )

    def is_sysadmin(self) -> bool:
        return self.sysadmin

    def procedure_exists(self, name: str, database: str = "master", schema: str = "dbo") -> bool:
        return database == "master" and schema == "dbo" and name in self.procedures

    def table_exists(self, name: str, database: str = "master", schema: str = "dbo") -> bool:
        return database == "master" and schema == "dbo" and name in self.tables

    def database_exists(self, database: str) -> bool:
        return database in self.databases

    def login_exists(self, login: str) -> bool:
        return login in self.logins

    # Catalog

    def read_catalog(self, database: str, view: CatalogView) -> list[dict[str, Any]]:
        if self.fail_catalog_reads:
            raise BackendError(f"Catalog read of {view.value} failed on {self.server_name}")
        if database not in self.databases:
            raise BackendError(f"Database '{database}' does not exist.")
        return self.databases[database].catalog_rows(view, self._logins_by_sid())

    def role_members(self, database: str, role: str) -> list[str]:
        return self._database(database).role_members(role)

    def schemas_owned_by(self, database: str, principal: str) -> list[str]:
        return self._database(database).schemas_owned_by(principal)

    def roles_owned_by(self, database: str, principal: str) -> list[str]:
        return self._database(database).roles_owned_by(principal)

    def permissions_granted_by(self, database: str, principal: str) -> list[dict[str, Any]]:
        rows = self._database(database).catalog_rows(CatalogView.PERMISSIONS, self._logins_by_sid())
        return [row for row in rows if row["grantor_name"] == principal]

    # Files

    def restore_file_list(self, backup_file: str) -> list[BackupFile]:
        image = self._backup(backup_file, "FULL")
        return [
            BackupFile(f.logical_name, f.physical_name, f.file_type, f.size_pages * 8192)
            for f in image.database.files
        ]

    def database_files(self, database: str) -> list[DatabaseFile]:
        return [
            DatabaseFile(f.file_id, f.logical_name, f.file_type, f.size_pages)
            for f in self._database(database).files
        ]

    def model_file_growth(self) -> dict[str, FileGrowth]:
        return dict(self.model_growth)

    # Availability groups

    def _group(self, group: str) -> AvailabilityGroupState | None:
        if self.cluster is None:
            return None
        state = self.cluster.groups.get(group)
        if state is None or self.server_name not in state.replicas:
            return None
        return state

    def availability_group_exists(self, group: str) -> bool:
        return self._group(group) is not None

    def primary_replica(self, group: str) -> str | None:
        state = self._group(group)
        return state.primary if state else None

    def database_in_group(self, group: str, database: str) -> bool:
        state = self._group(group)
        if state is None or state.primary != self.server_name:
            return False
        return database in state.joined.get(self.server_name, set())

    def secondary_replicas(self, group: str) -> list[str]:
        state = self._group(group)
        return state.secondaries if state else []

    # Linked servers

    def linked_server(self, name: str) -> LinkedServerInfo | None:
        return self.linked_servers.get(name)

    def _remote(self, server: str) -> InMemoryInstance:
        if server not in self.linked_servers:
            raise CommandFailedError(f"Could not find server '{server}' in sys.servers.", 7202)
        target = self.cluster.instances.get(server) if self.cluster else None
        if target is None or not target.reachable:
            raise BackendConnectionError(
                f"Named Pipes Provider: Could not open a connection to SQL Server [{server}]."
            )
        if not target.responsive:
            raise BackendTimeoutError(f"Query timeout expired on linked server {server}")
        return target

    def remote_procedure_exists(
        self, server: str, procedure: str, timeout_seconds: int | None = None
    ) -> bool:
        return procedure in self._remote(server).procedures

    # Commands

    def run_command(self, command: AuditedCommand) -> CommandOutcome:
        self.commands.append(command)
        if not command.execute:
            return CommandOutcome(executed=False)

        anomalies: list[str] = []
        try:
            self._apply(command.statement, command.database, anomalies)
        except CommandFailedError as e:
            self._log(command, e.server_message)
            raise
        self._log(command, None)

        messages = [f"{ANOMALY_MARKER} {anomaly}" for anomaly in anomalies]
        return CommandOutcome(executed=True, messages=messages, anomalies=anomalies)

    def rollback(self) -> None:
        self.rollback_count += 1

    def _log(self, command: AuditedCommand, error: str | None) -> None:
        if command.log_to_table and "CommandLog" in self.tables:
            self.command_log.append(
                CommandLogEntry(command.command_type.value, command.database, command.text, error)
            )

    # Statement interpretation

    def _database(self, name: str | None) -> InMemoryDatabase:
        if name is None or name not in self.databases:
            raise CommandFailedError(
                f"Database '{name}' does not exist. Make sure that the name is entered correctly.",
                911,
            )
        return self.databases[name]

    def _backup(self, path: str, kind: str) -> BackupImage:
        image = self.backups.get(path)
        if image is None or image.kind != kind:
            raise CommandFailedError(
                f"Cannot open backup device '{path}'. Operating system error 2"
                "(The system cannot find the file specified.).",
                3201,
            )
        return image

    def _apply(self, executable: Statement | StatementBatch, database: str | None, anomalies: list[str]) -> None:
        if isinstance(executable, StatementBatch):
            context = executable.database or database
            if executable.database:
                self._database(executable.database)
            saved = copy.deepcopy(self.databases.get(context)) if executable.atomic else None
            try:
                for statement in executable.statements:
                    self._apply(statement, context, anomalies)
            except CommandFailedError:
                if saved is not None:
                    self.databases[context] = saved
                raise
            return

        if isinstance(executable, Guarded):
            failed = [guard for guard in executable.guards if not self._guard_holds(database, guard)]
            if failed:
                if executable.report:
                    anomalies.append(executable.anomaly_text(failed))
                if executable.otherwise is not None:
                    self._apply(executable.otherwise, database, anomalies)
                return
            self._apply(executable.statement, database, anomalies)
            return

        handler = _HANDLERS.get(type(executable))
        if handler is None:
            raise CommandFailedError(f"Unsupported statement: {executable.summary()}")
        handler(self, executable, database)

    def _guard_holds(self, database: str | None, guard: Guard) -> bool:
        db = self._database(database)
        if isinstance(guard, PrincipalExists):
            return db.principal(guard.name) is not None
        if isinstance(guard, RoleExists):
            principal = db.principal(guard.name)
            return principal is not None and principal.type == "R"
        if isinstance(guard, SchemaExists):
            return guard.name in db.schemas
        if isinstance(guard, ObjectExists):
            return (guard.schema, guard.name) in db.objects
        if isinstance(guard, ExtendedPropertyAbsent):
            return db.property(guard.principal, guard.property_name) is None
        raise CommandFailedError(f"Unsupported guard: {guard!r}")

    # Security statements

    def _principal_or_fail(self, db: InMemoryDatabase, name: str) -> MemoryPrincipal:
        principal = db.principal(name)
        if principal is None:
            raise CommandFailedError(
                f"Cannot find the user '{name}', because it does not exist or you do not have permission.",
                15151,
            )
        return principal

    def _check_droppable(self, db: InMemoryDatabase, principal: MemoryPrincipal) -> None:
        if db.schemas_owned_by(principal.name):
            raise CommandFailedError(
                "The database principal owns a schema in the database, and cannot be dropped.", 15138
            )
        if db.roles_owned_by(principal.name):
            raise CommandFailedError(
                "The database principal owns a database role and cannot be dropped.", 15144
            )
        if any(p.grantor_id == principal.principal_id for p in db.permissions):
            raise CommandFailedError(
                "The database principal has granted or denied permissions to objects in the "
                "database and cannot be dropped.",
                15284,
            )

    def _remove_principal(self, db: InMemoryDatabase, principal: MemoryPrincipal) -> None:
        principal_id = principal.principal_id
        db.memberships = {m for m in db.memberships if m[1] != principal_id}
        db.permissions = [
            p
            for p in db.permissions
            if p.grantee_id != principal_id
            and not (p.securable.securable_class == "DATABASE_PRINCIPAL" and p.securable.name == principal.name)
        ]
        db.properties = {k: v for k, v in db.properties.items() if k[0] != principal_id}
        del db.principals[principal_id]

    def _create_role(self, statement: CreateRole, database: str | None) -> None:
        db = self._database(database)
        if db.principal(statement.name) is not None:
            raise CommandFailedError(
                f"User, group, or role '{statement.name}' already exists in the current database.", 15023
            )
        owner_id = 1
        if statement.owner:
            owner_id = self._principal_or_fail(db, statement.owner).principal_id
        principal = MemoryPrincipal(db._allocate_principal_id(), statement.name, "R", sid=_new_sid(), owner_id=owner_id)
        db.principals[principal.principal_id] = principal

    def _drop_role(self, statement: DropRole, database: str | None) -> None:
        db = self._database(database)
        principal = db.principal(statement.name)
        if principal is None or principal.type != "R" or principal.is_fixed_role:
            raise CommandFailedError(
                f"Cannot drop the role '{statement.name}', because it does not exist or you do not have permission.",
                15151,
            )
        if db.role_members(statement.name):
            raise CommandFailedError("The role has members. It must be empty before it can be dropped.", 15144)
        self._check_droppable(db, principal)
        self._remove_principal(db, principal)

    def _alter_role_authorization(self, statement: AlterRoleAuthorization, database: str | None) -> None:
        db = self._database(database)
        role = self._principal_or_fail(db, statement.role)
        if role.type != "R":
            raise CommandFailedError(f"Cannot find the role '{statement.role}'.", 15151)
        role.owner_id = self._principal_or_fail(db, statement.owner).principal_id

    def _add_role_member(self, statement: AddRoleMember, database: str | None) -> None:
        db = self._database(database)
        role = db.principal(statement.role)
        if role is None or role.type != "R":
            raise CommandFailedError(
                f"Cannot alter the role '{statement.role}', because it does not exist or you do not have permission.",
                15151,
            )
        member = db.principal(statement.member)
        if member is None:
            raise CommandFailedError(
                f"Cannot add the principal '{statement.member}', because it does not exist or you do not have permission.",
                15151,
            )
        db.memberships.add((role.principal_id, member.principal_id))

    def _drop_role_member(self, statement: DropRoleMember, database: str | None) -> None:
        db = self._database(database)
        role = self._principal_or_fail(db, statement.role)
        member = self._principal_or_fail(db, statement.member)
        db.memberships.discard((role.principal_id, member.principal_id))

    def _create_user(self, statement: CreateUser, database: str | None) -> None:
        db = self._database(database)
        if db.principal(statement.name) is not None:
            raise CommandFailedError(
                f"User, group, or role '{statement.name}' already exists in the current database.", 15023
            )
        certificate = None
        if statement.binding == UserBinding.LOGIN:
            login_name = statement.login or statement.name
            login = self.logins.get(login_name)
            if login is None:
                raise CommandFailedError(
                    f"'{login_name}' is not a valid login or you do not have permission.", 15007
                )
            if any(p.sid == login.sid for p in db.principals.values()):
                raise CommandFailedError(
                    "The login already has an account under a different user name.", 15063
                )
            sid, kind = login.sid, login.type
        elif statement.binding == UserBinding.CERTIFICATE:
            sid, kind, certificate = _new_sid(), "C", statement.certificate
        elif statement.binding == UserBinding.EXTERNAL_PROVIDER:
            sid, kind = _new_sid(), "E"
        else:
            sid, kind = _new_sid(), "S"
        db.add_user(
            statement.name,
            sid=sid,
            kind=kind,
            default_schema=statement.default_schema,
            certificate=certificate,
        )

    def _drop_user(self, statement: DropUser, database: str | None) -> None:
        db = self._database(database)
        principal = db.principal(statement.name)
        if principal is None or principal.type not in USER_TYPES or principal.principal_id <= 4:
            raise CommandFailedError(
                f"Cannot drop the user '{statement.name}', because it does not exist or you do not have permission.",
                15151,
            )
        self._check_droppable(db, principal)
        self._remove_principal(db, principal)

    def _alter_schema_authorization(self, statement: AlterSchemaAuthorization, database: str | None) -> None:
        db = self._database(database)
        schema = db.schemas.get(statement.schema)
        if schema is None:
            raise CommandFailedError(
                f"Cannot find the schema '{statement.schema}', because it does not exist or you do not have permission.",
                15151,
            )
        schema.owner_id = self._principal_or_fail(db, statement.principal).principal_id

    def _permission(self, statement: PermissionStatement, database: str | None) -> None:
        db = self._database(database)
        grantee = self._principal_or_fail(db, statement.grantee)
        grantor = self._principal_or_fail(db, statement.grantor)
        securable = statement.securable
        if securable.securable_class == "SCHEMA" and securable.name not in db.schemas:
            raise CommandFailedError(f"Cannot find the schema '{securable.name}'.", 15151)
        if securable.securable_class == "OBJECT_OR_COLUMN" and (securable.schema, securable.name) not in db.objects:
            raise CommandFailedError(
                f"Cannot find the object '{securable.name}', because it does not exist or you do not have permission.",
                15151,
            )
        if securable.securable_class == "DATABASE_PRINCIPAL":
            self._principal_or_fail(db, securable.name)

        if statement.state == PermissionState.REVOKE:
            dependents = self._granted_onward(db, grantee.principal_id, statement.permission, securable)
            if dependents and not statement.cascade:
                raise CommandFailedError(
                    "To revoke or deny grantable privileges, specify the CASCADE option.", 4611
                )
            db.permissions = [p for p in db.permissions if p not in dependents]

        db.permissions = [
            p
            for p in db.permissions
            if not (
                p.grantee_id == grantee.principal_id
                and p.permission == statement.permission
                and p.securable == securable
            )
        ]
        if statement.state == PermissionState.REVOKE:
            return
        state = statement.state.value
        if statement.state == PermissionState.GRANT and statement.with_grant_option:
            state = "GRANT_WITH_GRANT_OPTION"
        db.permissions.append(
            MemoryPermission(grantee.principal_id, state, statement.permission, securable, grantor.principal_id)
        )

    @staticmethod
    def _granted_onward(
        db: InMemoryDatabase, grantor_id: int, permission: str, securable: Securable
    ) -> list[MemoryPermission]:
        """Permissions derived, directly or transitively, from a grantee's grant option."""
        found: list[MemoryPermission] = []
        pending = [grantor_id]
        while pending:
            current = pending.pop()
            for p in db.permissions:
                if (
                    p.grantor_id == current
                    and p.permission == permission
                    and p.securable == securable
                    and p not in found
                ):
                    found.append(p)
                    pending.append(p.grantee_id)
        return found

    def _add_extended_property(self, statement: AddExtendedProperty, database: str | None) -> None:
        db = self._database(database)
        principal = self._principal_or_fail(db, statement.principal)
        key = (principal.principal_id, statement.name)
        if key in db.properties:
            raise CommandFailedError(
                f"Property cannot be added. Property '{statement.name}' already exists for '{statement.principal}'.",
                15233,
            )
        db.properties[key] = statement.value

    # Database statements

    def _groups_with(self, database: str) -> list[AvailabilityGroupState]:
        if self.cluster is None:
            return []
        return [
            state
            for state in self.cluster.groups.values()
            if database in state.joined.get(self.server_name, set())
        ]

    def _restore_database(self, statement: RestoreDatabase, database: str | None) -> None:
        image = self._backup(statement.backup_file, "FULL")
        if statement.database in self.databases:
            if not statement.replace:
                raise CommandFailedError(
                    f"The backup set holds a backup of a database other than the existing "
                    f"'{statement.database}' database.",
                    3154,
                )
            if self._groups_with(statement.database):
                raise CommandFailedError(
                    f"The operation cannot be performed on database '{statement.database}' because it is "
                    "involved in a database mirroring session or an availability group.",
                    1468,
                )
        restored = copy.deepcopy(image.database)
        restored.name = statement.database
        for move in statement.moves:
            data_file = restored.file(move.logical_name)
            if data_file is None:
                raise CommandFailedError(
                    f"Logical file '{move.logical_name}' is not part of database '{statement.database}'.",
                    3234,
                )
            data_file.physical_name = move.physical_path
        restored.state = "RESTORING" if statement.norecovery else "ONLINE"
        restored.has_full_backup = False
        self.databases[statement.database] = restored

    def _set_offline(self, statement: SetDatabaseOffline, database: str | None) -> None:
        self._database(statement.database).state = "OFFLINE"

    def _drop_database(self, statement: DropDatabase, database: str | None) -> None:
        self._database(statement.database)
        if self._groups_with(statement.database):
            raise CommandFailedError(
                f"The database '{statement.database}' is currently joined to an availability group.",
                3752,
            )
        del self.databases[statement.database]

    def _file_or_fail(self, db: InMemoryDatabase, logical_name: str) -> MemoryFile:
        data_file = db.file(logical_name)
        if data_file is None:
            raise CommandFailedError(f"MODIFY FILE failed. File '{logical_name}' does not exist.", 5041)
        return data_file

    def _set_file_growth(self, statement: SetFileGrowth, database: str | None) -> None:
        data_file = self._file_or_fail(self._database(statement.database), statement.logical_name)
        data_file.is_percent_growth = statement.percent
        data_file.growth = statement.growth if statement.percent else statement.growth // 8

    def _resize_file(self, statement: ResizeFile, database: str | None) -> None:
        data_file = self._file_or_fail(self._database(statement.database), statement.logical_name)
        size_pages = statement.size_mb * PAGES_PER_MB
        if size_pages <= data_file.size_pages:
            raise CommandFailedError(
                "MODIFY FILE failed. Specified size is less than or equal to current size.", 5039
            )
        data_file.size_pages = size_pages

    def _shrink_file(self, statement: ShrinkFile, database: str | None) -> None:
        data_file = self._file_or_fail(self._database(statement.database), statement.logical_name)
        data_file.size_pages = min(data_file.size_pages, statement.target_mb * PAGES_PER_MB)

    def _set_recovery(self, statement: SetRecovery, database: str | None) -> None:
        db = self._database(statement.database)
        if statement.model == "SIMPLE":
            db.has_full_backup = False
        db.recovery = statement.model

    def _rename_file(self, statement: RenameFile, database: str | None) -> None:
        db = self._database(statement.database)
        data_file = self._file_or_fail(db, statement.logical_name)
        if db.file(statement.new_name) is not None:
            raise CommandFailedError(
                f"The file name '{statement.new_name}' is already in use as a file name in the database.",
                1828,
            )
        data_file.logical_name = statement.new_name

    def _set_multi_user(self, statement: SetMultiUser, database: str | None) -> None:
        self._database(statement.database).user_access = "MULTI_USER"

    def _set_online(self, statement: SetOnline, database: str | None) -> None:
        self._database(statement.database).state = "ONLINE"

    def _backup_database(self, statement: BackupDatabase, database: str | None) -> None:
        db = self._database(statement.database)
        if db.state != "ONLINE":
            raise CommandFailedError(
                f"Database '{db.name}' cannot be opened. It is in the middle of a restore.", 927
            )
        db.has_full_backup = True
        self.backups[statement.path] = BackupImage("FULL", db.name, copy.deepcopy(db))

    def _backup_log(self, statement: BackupLog, database: str | None) -> None:
        db = self._database(statement.database)
        if db.recovery != "FULL" or not db.has_full_backup:
            raise CommandFailedError(
                "BACKUP LOG cannot be performed because there is no current database backup.", 4214
            )
        self.backups[statement.path] = BackupImage("LOG", db.name)

    # Cluster statements

    def _primary_group(self, group: str) -> AvailabilityGroupState:
        state = self._group(group)
        if state is None:
            raise CommandFailedError(
                f"Cannot find the availability group '{group}', because it does not exist.", 15151
            )
        if state.primary != self.server_name:
            raise CommandFailedError(
                f"The local availability replica of availability group '{group}' is not the primary replica.",
                41190,
            )
        return state

    def _remove_from_group(self, statement: RemoveDatabaseFromGroup, database: str | None) -> None:
        state = self._primary_group(statement.group)
        if statement.database not in state.databases:
            raise CommandFailedError(
                f"The database '{statement.database}' is not joined to availability group '{statement.group}'.",
                35243,
            )
        state.databases.discard(statement.database)
        for replica, joined in state.joined.items():
            joined.discard(statement.database)
            if replica != self.server_name and self.cluster is not None:
                secondary_db = self.cluster.instances[replica].databases.get(statement.database)
                if secondary_db is not None:
                    secondary_db.state = "RESTORING"

    def _add_to_group(self, statement: AddDatabaseToGroup, database: str | None) -> None:
        state = self._primary_group(statement.group)
        db = self._database(statement.database)
        if statement.database in state.databases:
            raise CommandFailedError(
                f"Database '{statement.database}' is already part of availability group '{statement.group}'.",
                35250,
            )
        if db.recovery != "FULL" or not db.has_full_backup:
            raise CommandFailedError(
                f"Database '{statement.database}' cannot be added to the availability group because it "
                "has not had a full backup.",
                1475,
            )
        state.databases.add(statement.database)
        state.joined.setdefault(self.server_name, set()).add(statement.database)

    def _add_linked_server(self, statement: AddLinkedServer, database: str | None) -> None:
        if statement.server in self.linked_servers:
            raise CommandFailedError(f"The server '{statement.server}' already exists.", 15028)
        self.linked_servers[statement.server] = LinkedServerInfo(statement.server, False)

    def _set_linked_server_option(self, statement: SetLinkedServerOption, database: str | None) -> None:
        link = self.linked_servers.get(statement.server)
        if link is None:
            raise CommandFailedError(f"The server '{statement.server}' does not exist.", 15015)
        if statement.option == "rpc out":
            self.linked_servers[statement.server] = LinkedServerInfo(
                statement.server, statement.value.lower() == "true"
            )

    def _execute_remote(self, statement: ExecuteRemoteProcedure, database: str | None) -> None:
        target = self._remote(statement.server)
        if not self.linked_servers[statement.server].rpc_out_enabled:
            raise CommandFailedError(f"Server '{statement.server}' is not configured for RPC.", 7411)
        target.call_procedure(statement.procedure, dict(statement.parameters))

    # Procedures callable through linked servers

    def call_procedure(self, name: str, parameters: dict[str, str]) -> None:
        if name not in self.procedures:
            raise CommandFailedError(f"Could not find stored procedure '{name}'.", 2812)
        if name != "AddDatabaseOnSecondary":
            return
        self.join_calls.append(parameters)
        self._add_database_on_secondary(
            parameters["FullBackupFile"],
            parameters["TlogBackupFile"],
            parameters["Database"],
            parameters["AvailabilityGroup"],
        )

    def _add_database_on_secondary(self, full_backup: str, log_backup: str, database: str, group: str) -> None:
        state = self._group(group)
        if state is None or database not in state.databases:
            raise CommandFailedError(
                f"Database '{database}' is not part of availability group '{group}' on the primary.", 35250
            )
        log_image = self._backup(log_backup, "LOG")
        if log_image.database_name != database:
            raise CommandFailedError(f"The log backup '{log_backup}' belongs to another database.", 4305)

        self.databases.pop(database, None)
        self._restore_database(
            RestoreDatabase(database, full_backup, replace=True, norecovery=True), None
        )
        self.databases[database].state = "ONLINE"
        state.joined.setdefault(self.server_name, set()).add(database)
        logger.debug(f"{self.server_name} joined {database} to {group}")


_HANDLERS: dict[type, Callable[[InMemoryInstance, Any, str | None], None]] = {
    CreateRole: InMemoryInstance._create_role,
    DropRole: InMemoryInstance._drop_role,
    AlterRoleAuthorization: InMemoryInstance._alter_role_authorization,
    AddRoleMember: InMemoryInstance._add_role_member,
    DropRoleMember: InMemoryInstance._drop_role_member,
    CreateUser: InMemoryInstance._create_user,
    DropUser: InMemoryInstance._drop_user,
    AlterSchemaAuthorization: InMemoryInstance._alter_schema_authorization,
    PermissionStatement: InMemoryInstance._permission,
    AddExtendedProperty: InMemoryInstance._add_extended_property,
    RestoreDatabase: InMemoryInstance._restore_database,
    SetDatabaseOffline: InMemoryInstance._set_offline,
    DropDatabase: InMemoryInstance._drop_database,
    SetFileGrowth: InMemoryInstance._set_file_growth,
    ResizeFile: InMemoryInstance._resize_file,
    ShrinkFile: InMemoryInstance._shrink_file,
    SetRecovery: InMemoryInstance._set_recovery,
    RenameFile: InMemoryInstance._rename_file,
    SetMultiUser: InMemoryInstance._set_multi_user,
    SetOnline: InMemoryInstance._set_online,
    BackupDatabase: InMemoryInstance._backup_database,
    BackupLog: InMemoryInstance._backup_log,
    RemoveDatabaseFromGroup: InMemoryInstance._remove_from_group,
    AddDatabaseToGroup: InMemoryInstance._add_to_group,
    AddLinkedServer: InMemoryInstance._add_linked_server,
    SetLinkedServerOption: InMemoryInstance._set_linked_server_option,
    ExecuteRemoteProcedure: InMemoryInstance._execute_remote,
}


class InMemoryCluster:
    """Several InMemoryInstances sharing availability groups and a backup folder.

    Example:
        >>> cluster = InMemoryCluster()
        >>> primary = cluster.add_instance("SQL01")
        >>> cluster.add_instance("SQL02")
        >>> cluster.create_group("AG1", primary="SQL01", secondaries=["SQL02"])
    """

    def __init__(self) -> None:
        self.instances: dict[str, InMemoryInstance] = {}
        self.groups: dict[str, AvailabilityGroupState] = {}
        self.backups: dict[str, BackupImage] = {}

    def add_instance(self, server_name: str, join_procedure: bool = True, **kwargs: Any) -> InMemoryInstance:
        procedures = {"CommandExecute"}
        if join_procedure:
            procedures.add("AddDatabaseOnSecondary")
        kwargs.setdefault("hadr_enabled", True)
        instance = InMemoryInstance(server_name, cluster=self, procedures=procedures, **kwargs)
        self.instances[server_name] = instance
        return instance

    def instance(self, server_name: str) -> InMemoryInstance:
        return self.instances[server_name]

    def create_group(self, name: str, primary: str, secondaries: list[str]) -> AvailabilityGroupState:
        state = AvailabilityGroupState(name, primary, [primary, *secondaries])
        self.groups[name] = state
        return state

    def join_database(self, group: str, database: str) -> None:
        """Make an existing primary database a synchronized group member (test setup)."""
        state = self.groups[group]
        source = self.instances[state.primary].databases[database]
        source.has_full_backup = True
        state.databases.add(database)
        for replica in state.replicas:
            if replica != state.primary:
                self.instances[replica].databases[database] = copy.deepcopy(source)
            state.joined.setdefault(replica, set()).add(database)
