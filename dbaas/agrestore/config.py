"""
Configuration management for agrestore.

All configuration is done via environment variables; per-invocation choices
(backup file, database, availability group, ...) are RestoreOptions instead.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for a local default instance
    - Secrets are never logged or exposed in error messages
    - MSSQL_CONNECTION_STRING, when set, wins over the individual settings

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep the environment variable names stable, operators script them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "y")


@dataclass(frozen=True)
class ConnectionConfig:
    """ODBC connection to the primary (local) instance.

    Attributes:
        driver: ODBC driver name
        server: Server name or host,port
        database: Initial catalog
        trusted_connection: Use Windows/Kerberos authentication
        username: SQL authentication login (when not trusted)
        password: SQL authentication password (when not trusted)
        trust_server_certificate: Accept self-signed server certificates
        login_timeout: Seconds to wait for the connection
        query_timeout: Seconds to wait for a statement (0 = wait forever)
        connection_string: Full ODBC connection string (overrides the rest)
    """

    driver: str = "ODBC Driver 18 for SQL Server"
    server: str = "localhost"
    database: str = "master"
    trusted_connection: bool = True
    username: str | None = None
    password: str | None = None
    trust_server_certificate: bool = True
    login_timeout: int = 15
    query_timeout: int = 0
    connection_string: str | None = None

    @classmethod
    def from_env(cls) -> ConnectionConfig:
        """Load configuration from environment variables."""
        return cls(
            driver=os.getenv("MSSQL_DRIVER", "ODBC Driver 18 for SQL Server"),
            server=os.getenv("MSSQL_SERVER", "localhost"),
            database=os.getenv("MSSQL_DATABASE", "master"),
            trusted_connection=_env_bool("MSSQL_TRUSTED_CONNECTION", "true"),
            username=os.getenv("MSSQL_USERNAME"),
            password=os.getenv("MSSQL_PASSWORD"),
            trust_server_certificate=_env_bool("MSSQL_TRUST_SERVER_CERTIFICATE", "true"),
            login_timeout=int(os.getenv("MSSQL_LOGIN_TIMEOUT", "15")),
            query_timeout=int(os.getenv("MSSQL_QUERY_TIMEOUT", "0")),
            connection_string=os.getenv("MSSQL_CONNECTION_STRING"),
        )

    def odbc_connection_string(self) -> str:
        """Build the ODBC connection string."""
        if self.connection_string:
            return self.connection_string

        parts = [
            f"Driver={{{self.driver}}}",
            f"Server={self.server}",
            f"Database={self.database}",
        ]
        if self.trusted_connection:
            parts.append("Trusted_Connection=Yes")
        else:
            parts.append(f"UID={self.username}")
            parts.append(f"PWD={self.password}")
        if self.trust_server_certificate:
            parts.append("TrustServerCertificate=Yes")
        return ";".join(parts) + ";"


@dataclass(frozen=True)
class AuditConfig:
    """Audited command execution settings.

    Attributes:
        procedure: Three-part name of the CommandExecute procedure
        log_table: Name of the CommandLog table in master.dbo
    """

    procedure: str = "[master].[dbo].[CommandExecute]"
    log_table: str = "CommandLog"

    @classmethod
    def from_env(cls) -> AuditConfig:
        """Load configuration from environment variables."""
        return cls(
            procedure=os.getenv("AUDIT_PROCEDURE", "[master].[dbo].[CommandExecute]"),
            log_table=os.getenv("AUDIT_LOG_TABLE", "CommandLog"),
        )

    @property
    def procedure_name(self) -> str:
        """Bare procedure name, used for existence checks."""
        return self.procedure.split(".")[-1].strip("[]")


@dataclass(frozen=True)
class ReplicaConfig:
    """Secondary replica join settings.

    Attributes:
        join_procedure: Procedure in master.dbo on every secondary
        call_timeout_seconds: Deadline for each remote call (0 = none)
        link_product: Product name used when provisioning a linked server
    """

    join_procedure: str = "AddDatabaseOnSecondary"
    call_timeout_seconds: int = 0
    link_product: str = "SQL Server"

    @classmethod
    def from_env(cls) -> ReplicaConfig:
        """Load configuration from environment variables."""
        return cls(
            join_procedure=os.getenv("REPLICA_JOIN_PROCEDURE", "AddDatabaseOnSecondary"),
            call_timeout_seconds=int(os.getenv("REPLICA_CALL_TIMEOUT_SECONDS", "0")),
            link_product=os.getenv("REPLICA_LINK_PRODUCT", "SQL Server"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


@dataclass
class RestoreToolConfig:
    """Complete tool configuration.

    Attributes:
        connection: ODBC connection to the local instance
        audit: CommandExecute / CommandLog settings
        replica: Secondary replica join settings
        observability: Logging settings
    """

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    replica: ReplicaConfig = field(default_factory=ReplicaConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> RestoreToolConfig:
        """Load complete configuration from environment variables.

        Returns:
            RestoreToolConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            connection=ConnectionConfig.from_env(),
            audit=AuditConfig.from_env(),
            replica=ReplicaConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        conn = self.connection
        if not conn.connection_string and not conn.trusted_connection:
            if not conn.username or not conn.password:
                raise ValueError(
                    "MSSQL_USERNAME and MSSQL_PASSWORD are required when "
                    "MSSQL_TRUSTED_CONNECTION=false"
                )

        if conn.login_timeout < 0 or conn.query_timeout < 0:
            raise ValueError("MSSQL_LOGIN_TIMEOUT and MSSQL_QUERY_TIMEOUT must be >= 0")

        if self.replica.call_timeout_seconds < 0:
            raise ValueError("REPLICA_CALL_TIMEOUT_SECONDS must be >= 0")

        if self.observability.log_format not in ("json", "text"):
            logger.warning(
                f"Unknown LOG_FORMAT '{self.observability.log_format}', falling back to text"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Restore tool configuration loaded",
            extra={
                "server": self.connection.server
                if not self.connection.connection_string
                else "<connection string>",
                "trusted_connection": self.connection.trusted_connection,
                "query_timeout": self.connection.query_timeout,
                "audit_procedure": self.audit.procedure,
                "replica_join_procedure": self.replica.join_procedure,
                "replica_call_timeout": self.replica.call_timeout_seconds,
                "log_level": self.observability.log_level,
            },
        )
