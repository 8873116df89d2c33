"""
Unit tests for the typed T-SQL statement builder.

Tests cover:
- Identifier and literal quoting
- Securable rendering
- Guarded statements and anomaly texts
- Atomic batches
- Restore, file and remote procedure statements
"""

import pytest

from dbaas.agrestore.tsql import (
    ANOMALY_MARKER,
    AddRoleMember,
    CreateRole,
    CreateUser,
    DropRole,
    ExecuteRemoteProcedure,
    FileMove,
    Guarded,
    PermissionState,
    PermissionStatement,
    PrincipalExists,
    RestoreDatabase,
    RoleExists,
    Securable,
    SetFileGrowth,
    StatementBatch,
    UserBinding,
    n_literal,
    qualified,
    quote_name,
)


class TestQuoting:
    """Tests for identifier and literal quoting."""

    def test_quote_name_escapes_bracket(self):
        assert quote_name("Sales]Team") == "[Sales]]Team]"

    def test_n_literal_escapes_quote(self):
        assert n_literal("O'Brien") == "N'O''Brien'"

    def test_qualified_name(self):
        assert qualified("SQL02", "master", "dbo", "Proc") == "[SQL02].[master].[dbo].[Proc]"


class TestSecurable:
    """Tests for securable rendering."""

    def test_schema(self):
        assert Securable("SCHEMA", "sales").render() == "SCHEMA::[sales]"

    def test_object_column(self):
        securable = Securable("OBJECT_OR_COLUMN", "Orders", schema="sales", column="Total")
        assert securable.render() == "OBJECT::[sales].[Orders]([Total])"

    def test_database_principal_uses_principal_class(self):
        securable = Securable("DATABASE_PRINCIPAL", "Top", principal_class="ROLE")
        assert securable.render() == "ROLE::[Top]"

    def test_database_principal_without_class_rejected(self):
        with pytest.raises(ValueError):
            Securable("DATABASE_PRINCIPAL", "Top").render()

    def test_unsupported_class_rejected(self):
        with pytest.raises(ValueError):
            Securable("SERVER", "SQL01").prefix()


class TestSecurityStatements:
    """Tests for principal and permission statements."""

    def test_grant_with_grant_option(self):
        statement = PermissionStatement(
            state=PermissionState.GRANT,
            permission="EXECUTE",
            securable=Securable("OBJECT_OR_COLUMN", "Orders", schema="sales"),
            grantee="Top",
            grantor="dbo",
            with_grant_option=True,
        )
        assert statement.render() == (
            "GRANT EXECUTE ON OBJECT::[sales].[Orders] TO [Top] WITH GRANT OPTION AS [dbo]"
        )

    def test_deny_ignores_grant_option(self):
        statement = PermissionStatement(
            state=PermissionState.DENY,
            permission="SELECT",
            securable=Securable("SCHEMA", "sales"),
            grantee="bob",
            grantor="dbo",
            with_grant_option=True,
        )
        assert statement.render() == "DENY SELECT ON SCHEMA::[sales] TO [bob] AS [dbo]"

    def test_revoke_cascade(self):
        statement = PermissionStatement(
            state=PermissionState.REVOKE,
            permission="SELECT",
            securable=Securable("OBJECT_OR_COLUMN", "Orders", schema="sales"),
            grantee="bob",
            grantor="alice",
            cascade=True,
        )
        assert statement.render() == "REVOKE SELECT ON OBJECT::[sales].[Orders] FROM [bob] CASCADE AS [alice]"

    def test_create_role_with_owner(self):
        assert CreateRole("Reports", "alice").render() == "CREATE ROLE [Reports] AUTHORIZATION [alice]"

    def test_create_user_for_login(self):
        statement = CreateUser("alice", UserBinding.LOGIN, login="CORP\\alice", default_schema="dbo")
        assert statement.render() == "CREATE USER [alice] FOR LOGIN [CORP\\alice] WITH DEFAULT_SCHEMA=[dbo]"

    def test_create_user_without_login(self):
        statement = CreateUser("svc", UserBinding.WITHOUT_LOGIN, default_schema="dbo")
        assert statement.render() == "CREATE USER [svc] WITHOUT LOGIN WITH DEFAULT_SCHEMA=[dbo]"

    def test_create_certificate_user_has_no_default_schema(self):
        statement = CreateUser("signer", UserBinding.CERTIFICATE, certificate="SignCert", default_schema="dbo")
        assert statement.render() == "CREATE USER [signer] FOR CERTIFICATE [SignCert]"

    def test_create_external_user(self):
        statement = CreateUser("ops@corp.example", UserBinding.EXTERNAL_PROVIDER)
        assert statement.render() == "CREATE USER [ops@corp.example] FROM EXTERNAL PROVIDER"


class TestGuarded:
    """Tests for guarded statements."""

    def test_unreported_guard_has_no_else(self):
        statement = Guarded(DropRole("Base"), (RoleExists("Base"),), report=False)
        assert statement.render() == (
            "IF EXISTS (SELECT 1 FROM sys.database_principals WHERE name = N'Base' AND type = 'R')\n"
            "BEGIN\n"
            "    DROP ROLE [Base];\n"
            "END"
        )

    def test_reported_guard_prints_anomaly(self):
        statement = Guarded(AddRoleMember("Top", "alice"), (PrincipalExists("alice"), RoleExists("Top")))
        rendered = statement.render()
        assert rendered.startswith("IF DATABASE_PRINCIPAL_ID(N'alice') IS NOT NULL AND EXISTS")
        assert "ELSE" in rendered
        assert (
            f"PRINT N'{ANOMALY_MARKER} ALTER ROLE [Top] ADD MEMBER [alice] | "
            "principal alice does not exist or role Top does not exist';"
        ) in rendered

    def test_otherwise_runs_fallback(self):
        statement = Guarded(
            CreateRole("Reports", "alice"),
            (PrincipalExists("alice"),),
            otherwise=CreateRole("Reports"),
        )
        lines = statement.render().splitlines()
        assert lines[-2] == "    CREATE ROLE [Reports];"
        assert any(line.strip().startswith("PRINT") for line in lines)

    def test_anomaly_text_names_failed_guard(self):
        statement = Guarded(AddRoleMember("Top", "alice"), (PrincipalExists("alice"), RoleExists("Top")))
        assert statement.anomaly_text([RoleExists("Top")]) == (
            "ALTER ROLE [Top] ADD MEMBER [alice] | role Top does not exist"
        )

    def test_summary_is_inner_statement(self):
        statement = Guarded(DropRole("Base"), (RoleExists("Base"),))
        assert statement.summary() == "DROP ROLE [Base]"


class TestStatementBatch:
    """Tests for statement batches."""

    def test_atomic_batch(self):
        batch = StatementBatch("SalesDB", (CreateRole("Base"),), atomic=True)
        assert batch.render() == (
            "USE [SalesDB];\n"
            "SET XACT_ABORT ON;\n"
            "BEGIN TRANSACTION;\n"
            "CREATE ROLE [Base];\n"
            "COMMIT TRANSACTION;"
        )
        assert len(batch) == 1

    def test_plain_batch_without_database(self):
        batch = StatementBatch(None, (CreateRole("A"), CreateRole("B")))
        assert batch.render() == "CREATE ROLE [A];\nCREATE ROLE [B];"


class TestDatabaseStatements:
    """Tests for restore and file statements."""

    def test_restore_with_moves(self):
        statement = RestoreDatabase(
            "SalesDB",
            "B:\\Backup\\SalesDB.bak",
            moves=(FileMove("SalesDB", "D:\\Data\\SalesDB.mdf"),),
        )
        assert statement.render() == (
            "RESTORE DATABASE [SalesDB] FROM DISK = N'B:\\Backup\\SalesDB.bak' "
            "WITH FILE = 1, NOUNLOAD, REPLACE, MOVE N'SalesDB' TO N'D:\\Data\\SalesDB.mdf'"
        )

    def test_restore_summary_is_short(self):
        statement = RestoreDatabase("SalesDB", "B:\\Backup\\SalesDB.bak")
        assert statement.summary() == "RESTORE DATABASE [SalesDB] FROM B:\\Backup\\SalesDB.bak"

    def test_file_growth_units(self):
        assert "FILEGROWTH = 65536KB" in SetFileGrowth("SalesDB", "SalesDB", 65536).render()
        assert "FILEGROWTH = 10%" in SetFileGrowth("SalesDB", "SalesDB_log", 10, percent=True).render()


class TestExecuteRemoteProcedure:
    """Tests for remote procedure calls."""

    def test_render_with_parameters(self):
        statement = ExecuteRemoteProcedure(
            "SQL02",
            "AddDatabaseOnSecondary",
            parameters=(("Database", "SalesDB"), ("LogToTable", "Y")),
        )
        assert statement.render() == (
            "EXEC [SQL02].[master].[dbo].[AddDatabaseOnSecondary]\n"
            "    @Database = N'SalesDB',\n"
            "    @LogToTable = N'Y'"
        )

    def test_parameter_lookup(self):
        statement = ExecuteRemoteProcedure("SQL02", "Proc", parameters=(("Database", "SalesDB"),))
        assert statement.parameter("Database") == "SalesDB"
        assert statement.parameter("Missing") is None
