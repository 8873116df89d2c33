"""
ODBC backend for real SQL Server instances.

Uses pyodbc with autocommit on: transactions are opened explicitly by atomic
statement batches. Every mutation is routed through the CommandExecute
procedure so it is logged (optionally to CommandLog) like any other DBA
maintenance command.

Invariants:
    - One connection per backend, opened by connect() and closed by close()
    - Queries are parameterized; identifiers that cannot be parameterized are
      bracket-quoted
    - Informational messages are collected per command and scanned for
      replay anomalies

How to change safely:
    - SQLSTATE mapping lives in _translate(); keep HYT00 as the timeout state
    - Test against a disposable instance (tests/e2e) before changing queries
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator

import pyodbc

from ..tsql import ANOMALY_MARKER, n_literal, quote_name
from . import catalog_queries as queries
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

if TYPE_CHECKING:
    from ..audit import AuditedCommand, CommandOutcome
    from ..config import AuditConfig, ConnectionConfig

logger = logging.getLogger(__name__)

_CATALOG_QUERIES = {
    CatalogView.PRINCIPALS: queries.PRINCIPALS,
    CatalogView.OWNED_SCHEMAS: queries.OWNED_SCHEMAS,
    CatalogView.ROLE_MEMBERSHIPS: queries.ROLE_MEMBERSHIPS,
    CatalogView.PERMISSIONS: queries.PERMISSIONS,
    CatalogView.EXTENDED_PROPERTIES: queries.EXTENDED_PROPERTIES,
}

# SQLSTATEs raised when a connection (local or linked) is lost or refused
_CONNECTION_STATES = {"08001", "08003", "08004", "08007", "08S01"}


def _sqlstate(error: pyodbc.Error) -> str:
    return str(error.args[0]) if error.args else ""


def _server_message(error: pyodbc.Error) -> str:
    text = str(error.args[1]) if len(error.args) > 1 else str(error)
    # Strip the [Microsoft][ODBC Driver ..][SQL Server] prefix chain
    return text.rsplit("]", 1)[-1].strip() if text.startswith("[") else text


def _translate(error: pyodbc.Error) -> BackendError:
    state = _sqlstate(error)
    message = _server_message(error)
    if state == "HYT00":
        return BackendTimeoutError(f"Query timeout expired: {message}")
    if state in _CONNECTION_STATES or isinstance(error, pyodbc.InterfaceError):
        return BackendConnectionError(message)
    return CommandFailedError(message)


def parse_anomalies(messages: list[str]) -> list[str]:
    """Extract replay anomaly texts from informational messages."""
    anomalies = []
    for message in messages:
        index = message.find(ANOMALY_MARKER)
        if index >= 0:
            anomalies.append(message[index + len(ANOMALY_MARKER):].strip())
    return anomalies


class OdbcInstanceBackend:
    """InstanceBackend over a pyodbc connection.

    Example:
        >>> backend = OdbcInstanceBackend(ConnectionConfig.from_env(), AuditConfig())
        >>> backend.connect()
        >>> backend.database_exists("SalesDB")
        True
    """

    def __init__(self, connection: ConnectionConfig, audit: AuditConfig) -> None:
        self.connection_config = connection
        self.audit_config = audit
        self._conn: pyodbc.Connection | None = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def connect(self) -> None:
        try:
            self._conn = pyodbc.connect(
                self.connection_config.odbc_connection_string(),
                timeout=self.connection_config.login_timeout,
                autocommit=True,
            )
        except pyodbc.Error as e:
            raise BackendConnectionError(
                f"Failed to connect to {self.connection_config.server}: {_server_message(e)}"
            ) from e
        self._conn.timeout = self.connection_config.query_timeout
        logger.info(f"Connected to {self.connection_config.server}")

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("ODBC connection closed")

    def _connection(self) -> pyodbc.Connection:
        if self._conn is None:
            raise BackendConnectionError("Not connected")
        return self._conn

    @contextmanager
    def _deadline(self, seconds: int | None) -> Iterator[None]:
        conn = self._connection()
        if not seconds:
            yield
            return
        previous = conn.timeout
        conn.timeout = seconds
        try:
            yield
        finally:
            conn.timeout = previous

    def _fetch(self, sql: str, *params: Any, database: str | None = None) -> list[dict[str, Any]]:
        cursor = self._connection().cursor()
        try:
            if database:
                cursor.execute(f"USE {quote_name(database)}")
            cursor.execute(sql, *params)
            # Skip over result-less statements (e.g. DECLARE / EXEC before the SELECT)
            while cursor.description is None and cursor.nextset():
                pass
            if cursor.description is None:
                return []
            columns = [column[0] for column in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        except pyodbc.Error as e:
            raise _translate(e) from e
        finally:
            cursor.close()

    def _scalar(self, sql: str, *params: Any, database: str | None = None) -> Any:
        rows = self._fetch(sql, *params, database=database)
        if not rows:
            return None
        return next(iter(rows[0].values()))

    # Instance

    def instance_properties(self) -> InstanceProperties:
        row = self._fetch(queries.INSTANCE_PROPERTIES)[0]
        return InstanceProperties(
            server_name=row["server_name"],
            product_version=row["product_version"],
            data_path=row["data_path"] or "",
            log_path=row["log_path"] or "",
            backup_path=row["backup_path"] or "",
            hadr_enabled=bool(row["hadr_enabled"]),
        )

    def is_sysadmin(self) -> bool:
        return self._scalar(queries.IS_SYSADMIN) == 1

    def procedure_exists(self, name: str, database: str = "master", schema: str = "dbo") -> bool:
        return bool(self._scalar(queries.OBJECT_EXISTS, "P", schema, name, database=database))

    def table_exists(self, name: str, database: str = "master", schema: str = "dbo") -> bool:
        return bool(self._scalar(queries.OBJECT_EXISTS, "U", schema, name, database=database))

    def database_exists(self, database: str) -> bool:
        return bool(self._scalar(queries.DATABASE_EXISTS, database))

    def login_exists(self, login: str) -> bool:
        return bool(self._scalar(queries.LOGIN_EXISTS, login))

    # Catalog

    def read_catalog(self, database: str, view: CatalogView) -> list[dict[str, Any]]:
        rows = self._fetch(_CATALOG_QUERIES[view], database=database)
        logger.debug(f"Read {len(rows)} {view.value} rows from {database}")
        return rows

    def role_members(self, database: str, role: str) -> list[str]:
        return [row["name"] for row in self._fetch(queries.ROLE_MEMBERS, role, database=database)]

    def schemas_owned_by(self, database: str, principal: str) -> list[str]:
        rows = self._fetch(queries.SCHEMAS_OWNED_BY, principal, database=database)
        return [row["name"] for row in rows]

    def roles_owned_by(self, database: str, principal: str) -> list[str]:
        rows = self._fetch(queries.ROLES_OWNED_BY, principal, database=database)
        return [row["name"] for row in rows]

    def permissions_granted_by(self, database: str, principal: str) -> list[dict[str, Any]]:
        return self._fetch(queries.PERMISSIONS_GRANTED_BY, principal, database=database)

    # Files

    def restore_file_list(self, backup_file: str) -> list[BackupFile]:
        rows = self._fetch(f"RESTORE FILELISTONLY FROM DISK = {n_literal(backup_file)}")
        return [
            BackupFile(
                logical_name=row["LogicalName"],
                physical_name=row["PhysicalName"],
                file_type=row["Type"],
                size=int(row["Size"] or 0),
            )
            for row in rows
        ]

    def database_files(self, database: str) -> list[DatabaseFile]:
        return [
            DatabaseFile(
                file_id=row["file_id"],
                logical_name=row["logical_name"],
                file_type="L" if row["type"] == 1 else "D",
                size_pages=row["size"],
            )
            for row in self._fetch(queries.DATABASE_FILES, database)
        ]

    def model_file_growth(self) -> dict[str, FileGrowth]:
        growth = {}
        for row in self._fetch(queries.MODEL_FILE_GROWTH):
            file_type = "L" if row["type"] == 1 else "D"
            growth.setdefault(
                file_type, FileGrowth(row["growth"], bool(row["is_percent_growth"]))
            )
        return growth

    # Availability groups

    def availability_group_exists(self, group: str) -> bool:
        return bool(self._scalar(queries.AVAILABILITY_GROUP_EXISTS, group))

    def primary_replica(self, group: str) -> str | None:
        return self._scalar(queries.PRIMARY_REPLICA, group)

    def database_in_group(self, group: str, database: str) -> bool:
        return bool(self._scalar(queries.DATABASE_IN_GROUP, group, database))

    def secondary_replicas(self, group: str) -> list[str]:
        rows = self._fetch(queries.SECONDARY_REPLICAS, group)
        return [row["replica_server_name"] for row in rows]

    # Linked servers

    def linked_server(self, name: str) -> LinkedServerInfo | None:
        rows = self._fetch(queries.LINKED_SERVER, name)
        if not rows:
            return None
        return LinkedServerInfo(rows[0]["name"], bool(rows[0]["is_rpc_out_enabled"]))

    def remote_procedure_exists(
        self, server: str, procedure: str, timeout_seconds: int | None = None
    ) -> bool:
        sql = queries.REMOTE_PROCEDURE_EXISTS.format(server=quote_name(server))
        with self._deadline(timeout_seconds):
            return bool(self._scalar(sql, procedure))

    # Commands

    def run_command(self, command: AuditedCommand) -> CommandOutcome:
        from ..audit import CommandOutcome

        sql = queries.COMMAND_EXECUTE.format(procedure=self.audit_config.procedure)
        params = (
            command.text,
            command.command_type.value,
            command.database,
            int(command.mode),
            "Y" if command.log_to_table else "N",
            "Y" if command.execute else "N",
        )

        messages: list[str] = []
        with self._deadline(command.timeout_seconds):
            cursor = self._connection().cursor()
            try:
                cursor.execute(sql, *params)
                messages.extend(str(message[1]) for message in cursor.messages)
                while cursor.nextset():
                    messages.extend(str(message[1]) for message in cursor.messages)
            except pyodbc.Error as e:
                error = _translate(e)
                logger.error(
                    f"{command.command_type.value} failed: {error}",
                    extra={"database": command.database, "command": command.text},
                )
                raise error from e
            finally:
                cursor.close()

        anomalies = parse_anomalies(messages)
        return CommandOutcome(executed=command.execute, messages=messages, anomalies=anomalies)

    def rollback(self) -> None:
        if self._conn is None:
            return
        cursor = self._conn.cursor()
        try:
            cursor.execute(queries.ROLLBACK)
        except pyodbc.Error as e:
            logger.warning(f"Rollback failed: {_server_message(e)}")
        finally:
            cursor.close()
