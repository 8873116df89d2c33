"""
Base protocol and types for SQL Server instance backends.

This module defines the InstanceBackend protocol that the restore tool talks
to, along with the value types returned by backend queries and the backend
error hierarchy. Two implementations exist: the ODBC backend for real
instances and the in-memory backend used by tests.

Invariants:
    - Catalog reads return raw rows (dicts keyed by column name), filtering
      is done by the caller
    - Every mutation goes through run_command() with an AuditedCommand
    - Server-side rejections raise CommandFailedError carrying the server text

How to change safely:
    - Protocol changes require updating both implementations
    - Catalog row keys are a contract with security/capture.py
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..audit import AuditedCommand, CommandOutcome
    from ..config import RestoreToolConfig

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Base exception for backend operations."""
    pass


class BackendConnectionError(BackendError):
    """Connection to the instance (or a linked server) failed."""
    pass


class BackendTimeoutError(BackendError):
    """Backend call exceeded its deadline."""
    pass


class CommandFailedError(BackendError):
    """The server rejected a command.

    Attributes:
        server_message: Error text as returned by the server
    """

    def __init__(self, server_message: str, number: int | None = None) -> None:
        super().__init__(server_message)
        self.server_message = server_message
        self.number = number


class CatalogView(Enum):
    """Raw catalog row sets read during capture.

    Row keys per view:
        PRINCIPALS: principal_id, sid, name, type, type_desc,
            default_schema_name, is_fixed_role, owning_principal_id,
            owner_name, login_name, login_type, certificate_name
        OWNED_SCHEMAS: principal_id, schema_id, schema_name
        ROLE_MEMBERSHIPS: member_id, role_id, role_name
        PERMISSIONS: grantee_id, grantee_name, state_desc, permission_name, class_desc,
            securable_schema, securable_name, column_name,
            principal_type_desc, grantor_name
        EXTENDED_PROPERTIES: principal_id, name, value
    """

    PRINCIPALS = "principals"
    OWNED_SCHEMAS = "owned_schemas"
    ROLE_MEMBERSHIPS = "role_memberships"
    PERMISSIONS = "permissions"
    EXTENDED_PROPERTIES = "extended_properties"


@dataclass(frozen=True)
class BackupFile:
    """One file listed by RESTORE FILELISTONLY.

    Attributes:
        logical_name: Logical file name inside the backup
        physical_name: Original physical path
        file_type: D (data) or L (log)
        size: Size in bytes
    """

    logical_name: str
    physical_name: str
    file_type: str
    size: int = 0

    @property
    def extension(self) -> str:
        name = self.physical_name.replace("/", "\\").rsplit("\\", 1)[-1]
        if "." not in name:
            return ".ldf" if self.file_type == "L" else ".mdf"
        return "." + name.rsplit(".", 1)[-1]


@dataclass(frozen=True)
class DatabaseFile:
    """One row of sys.database_files.

    size_pages is in 8 KB pages, as in the catalog.
    """

    file_id: int
    logical_name: str
    file_type: str
    size_pages: int

    @property
    def size_mb(self) -> int:
        return self.size_pages * 8 // 1024


@dataclass(frozen=True)
class FileGrowth:
    """Autogrowth of a model database file (growth in pages or percent)."""

    growth: int
    is_percent_growth: bool


@dataclass(frozen=True)
class InstanceProperties:
    server_name: str
    product_version: str
    data_path: str
    log_path: str
    backup_path: str
    hadr_enabled: bool


@dataclass(frozen=True)
class LinkedServerInfo:
    name: str
    rpc_out_enabled: bool


@runtime_checkable
class InstanceBackend(Protocol):
    """Protocol for SQL Server instance backends.

    Reads are plain queries; every mutation is an AuditedCommand passed to
    run_command(), which the ODBC backend routes through CommandExecute.

    Example:
        >>> backend = OdbcInstanceBackend(config.connection)
        >>> backend.connect()
        >>> props = backend.instance_properties()
        >>> print(props.data_path)
    """

    @abstractmethod
    def connect(self) -> None:
        """Connect to the instance.

        Raises:
            BackendConnectionError: If connection fails
        """
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    # Instance

    @abstractmethod
    def instance_properties(self) -> InstanceProperties:
        """Server name, version, default paths and HADR flag."""
        ...

    @abstractmethod
    def is_sysadmin(self) -> bool:
        ...

    @abstractmethod
    def procedure_exists(self, name: str, database: str = "master", schema: str = "dbo") -> bool:
        ...

    @abstractmethod
    def table_exists(self, name: str, database: str = "master", schema: str = "dbo") -> bool:
        ...

    @abstractmethod
    def database_exists(self, database: str) -> bool:
        ...

    @abstractmethod
    def login_exists(self, login: str) -> bool:
        ...

    # Catalog

    @abstractmethod
    def read_catalog(self, database: str, view: CatalogView) -> list[dict[str, Any]]:
        """Read raw catalog rows of one view from a database.

        Raises:
            BackendError: If the read fails
        """
        ...

    @abstractmethod
    def role_members(self, database: str, role: str) -> list[str]:
        """Current members of a role in the live database."""
        ...

    @abstractmethod
    def schemas_owned_by(self, database: str, principal: str) -> list[str]:
        """Schemas currently owned by a principal in the live database."""
        ...

    @abstractmethod
    def roles_owned_by(self, database: str, principal: str) -> list[str]:
        """Roles currently owned by a principal in the live database."""
        ...

    @abstractmethod
    def permissions_granted_by(self, database: str, principal: str) -> list[dict[str, Any]]:
        """Permissions a principal granted or denied in the live database.

        Rows have the keys of CatalogView.PERMISSIONS.
        """
        ...

    # Files

    @abstractmethod
    def restore_file_list(self, backup_file: str) -> list[BackupFile]:
        """RESTORE FILELISTONLY.

        Raises:
            CommandFailedError: If the backup cannot be read
        """
        ...

    @abstractmethod
    def database_files(self, database: str) -> list[DatabaseFile]:
        ...

    @abstractmethod
    def model_file_growth(self) -> dict[str, FileGrowth]:
        """Autogrowth of the model database keyed by file type (D, L)."""
        ...

    # Availability groups

    @abstractmethod
    def availability_group_exists(self, group: str) -> bool:
        ...

    @abstractmethod
    def primary_replica(self, group: str) -> str | None:
        ...

    @abstractmethod
    def database_in_group(self, group: str, database: str) -> bool:
        ...

    @abstractmethod
    def secondary_replicas(self, group: str) -> list[str]:
        """Secondary replica server names in topology order."""
        ...

    # Linked servers

    @abstractmethod
    def linked_server(self, name: str) -> LinkedServerInfo | None:
        ...

    @abstractmethod
    def remote_procedure_exists(
        self, server: str, procedure: str, timeout_seconds: int | None = None
    ) -> bool:
        """Look up a procedure in master.sys.objects through a linked server.

        Raises:
            BackendConnectionError: If the linked server cannot be reached
            BackendTimeoutError: If the deadline expired
        """
        ...

    # Commands

    @abstractmethod
    def run_command(self, command: AuditedCommand) -> CommandOutcome:
        """Run an audited command.

        Raises:
            CommandFailedError: If the server rejected the command
            BackendConnectionError: If a remote server could not be reached
            BackendTimeoutError: If the deadline expired
        """
        ...

    @abstractmethod
    def rollback(self) -> None:
        """Roll back any open transaction (IF @@TRANCOUNT > 0)."""
        ...


def create_backend(config: RestoreToolConfig) -> InstanceBackend:
    """Factory function to create the backend for a configuration."""
    from .odbc import OdbcInstanceBackend

    return OdbcInstanceBackend(config.connection, config.audit)
