"""
Unit tests for configuration and restore options.

Tests cover:
- Environment loading and validation
- ODBC connection string building
- Y/N flag and blank name normalization of RestoreOptions
"""

import pytest
from pydantic import ValidationError

from dbaas.agrestore.config import AuditConfig, ConnectionConfig, RestoreToolConfig
from dbaas.agrestore.environment import join_path
from dbaas.agrestore.options import RestoreOptions
from dbaas.agrestore.security import ReplayOrder

ENV_VARS = (
    "MSSQL_DRIVER",
    "MSSQL_SERVER",
    "MSSQL_DATABASE",
    "MSSQL_TRUSTED_CONNECTION",
    "MSSQL_USERNAME",
    "MSSQL_PASSWORD",
    "MSSQL_TRUST_SERVER_CERTIFICATE",
    "MSSQL_LOGIN_TIMEOUT",
    "MSSQL_QUERY_TIMEOUT",
    "MSSQL_CONNECTION_STRING",
    "AUDIT_PROCEDURE",
    "AUDIT_LOG_TABLE",
    "REPLICA_JOIN_PROCEDURE",
    "REPLICA_CALL_TIMEOUT_SECONDS",
    "REPLICA_LINK_PRODUCT",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestRestoreToolConfig:
    """Tests for RestoreToolConfig."""

    def test_defaults(self, clean_env):
        config = RestoreToolConfig.from_env()
        assert config.connection.server == "localhost"
        assert config.connection.trusted_connection is True
        assert config.replica.join_procedure == "AddDatabaseOnSecondary"
        assert config.observability.log_format == "text"

    def test_sql_authentication(self, clean_env):
        clean_env.setenv("MSSQL_SERVER", "sql01,1433")
        clean_env.setenv("MSSQL_TRUSTED_CONNECTION", "false")
        clean_env.setenv("MSSQL_USERNAME", "restore")
        clean_env.setenv("MSSQL_PASSWORD", "secret")
        conn = RestoreToolConfig.from_env().connection
        connection_string = conn.odbc_connection_string()
        assert "Server=sql01,1433" in connection_string
        assert "UID=restore" in connection_string
        assert "Trusted_Connection" not in connection_string

    def test_sql_authentication_requires_credentials(self, clean_env):
        clean_env.setenv("MSSQL_TRUSTED_CONNECTION", "false")
        with pytest.raises(ValueError, match="MSSQL_PASSWORD"):
            RestoreToolConfig.from_env()

    def test_negative_replica_timeout_rejected(self, clean_env):
        clean_env.setenv("REPLICA_CALL_TIMEOUT_SECONDS", "-1")
        with pytest.raises(ValueError):
            RestoreToolConfig.from_env()

    def test_connection_string_wins(self):
        conn = ConnectionConfig(server="ignored", connection_string="DSN=prod;")
        assert conn.odbc_connection_string() == "DSN=prod;"

    def test_trusted_connection_string(self):
        connection_string = ConnectionConfig().odbc_connection_string()
        assert connection_string.startswith("Driver={ODBC Driver 18 for SQL Server};")
        assert "Trusted_Connection=Yes" in connection_string
        assert connection_string.endswith(";")

    def test_audit_procedure_name(self):
        assert AuditConfig().procedure_name == "CommandExecute"
        assert AuditConfig(procedure="[dba].[maint].[CommandExecute2]").procedure_name == "CommandExecute2"


class TestRestoreOptions:
    """Tests for RestoreOptions."""

    def test_defaults(self):
        options = RestoreOptions()
        assert options.preserve_permissions is False
        assert options.replay_order == ReplayOrder.ROLES_FIRST
        assert options.execute is True
        assert not options.joins_availability_group

    def test_legacy_flags(self):
        options = RestoreOptions(
            check_model_autogrowth="Y",
            preserve_permissions="y",
            log_to_table="N",
            availability_group="",
            shared_folder="  ",
        )
        assert options.check_model_autogrowth is True
        assert options.preserve_permissions is True
        assert options.log_to_table is False
        assert options.availability_group is None
        assert options.shared_folder is None

    def test_invalid_flag_rejected(self):
        with pytest.raises(ValidationError):
            RestoreOptions(preserve_permissions="maybe")

    def test_replay_order_from_string(self):
        assert RestoreOptions(replay_order="compatible").replay_order == ReplayOrder.COMPATIBLE

    def test_joins_availability_group(self):
        options = RestoreOptions(availability_group="AG1", shared_folder="\\\\fs01\\seed")
        assert options.joins_availability_group

    def test_frozen(self):
        with pytest.raises(ValidationError):
            RestoreOptions().execute = False


class TestJoinPath:
    """Tests for join_path."""

    def test_single_separator(self):
        assert join_path("D:\\Data\\", "SalesDB.mdf") == "D:\\Data\\SalesDB.mdf"
        assert join_path("D:\\Data", "SalesDB.mdf") == "D:\\Data\\SalesDB.mdf"
        assert join_path("\\\\fs01\\seed", "x.bak") == "\\\\fs01\\seed\\x.bak"
