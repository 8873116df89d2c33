"""
End-to-end restore flows against in-memory instances.

Tests cover:
- Standalone restore with preserved permissions
- Availability group restore from the primary, and yielding on a secondary
- Requirements checked before any mutation
- Rollback on failure
- Dry run and CommandLog auditing
"""

from datetime import datetime

import pytest

from dbaas.agrestore.backends.memory import InMemoryInstance
from dbaas.agrestore.errors import ClusterTopologyError, PreconditionError, RemoteJoinError, RestoreError
from dbaas.agrestore.options import RestoreOptions
from dbaas.agrestore.tools import RestoreTool
from dbaas.agrestore.tsql import Securable

BACKUP = "B:\\Backup\\SalesDB.bak"
SHARED = "\\\\fs01\\seed"


def fixed_clock():
    return datetime(2026, 10, 18, 12, 0, 0)


def ag_options(**kwargs):
    return RestoreOptions(
        availability_group="AG1", shared_folder=SHARED, preserve_permissions="Y", **kwargs
    )


class TestStandaloneRestore:
    """Tests for a restore outside any availability group."""

    def test_restore_with_permissions(self, instance, sales_db):
        result = RestoreTool(instance).restore(BACKUP, "SalesDB", RestoreOptions(preserve_permissions="Y"))

        assert result.success
        assert not result.yielded
        assert result.replay.clean
        assert result.replay.processed == ["Base", "Mid", "Top", "alice", "bob"]

        db = instance.databases["SalesDB"]
        assert db.principal("prod_reader") is not None
        assert db.role_members("Top") == ["alice"]
        assert db.schema_owner("sales") == "Mid"
        assert [f.logical_name for f in db.files] == ["SalesDB_Data", "SalesDB_Log"]
        assert db.file("SalesDB_Log").size_pages == 256 * 128
        assert db.state == "ONLINE"

    def test_stage_announcements(self, instance, sales_db):
        result = RestoreTool(instance).restore(BACKUP, "SalesDB")

        assert result.stages[0] == "SQL01 : Restore database SalesDB from file B:\\Backup\\SalesDB.bak"
        assert "STEP (SQL01): Restoring database" in result.stages
        assert result.stages[-1] == "Database SalesDB successfully restored on server SQL01"
        assert result.joined_replicas == []

    def test_without_preserve_permissions(self, instance, sales_db):
        result = RestoreTool(instance).restore(BACKUP, "SalesDB")

        assert result.replay is None
        assert instance.databases["SalesDB"].principal("alice") is None
        assert instance.commands_of_type("PRESERVE_PERMISSIONS") == []

    def test_restore_new_database(self, instance, backup_source):
        instance.store_backup(BACKUP, backup_source)

        result = RestoreTool(instance).restore(BACKUP, "SalesCopy")

        assert result.success
        restored = instance.databases["SalesCopy"]
        assert restored.file("SalesCopy_Data").physical_name == "D:\\Data\\SalesCopy.mdf"

    def test_connects_when_needed(self, sales_db, instance):
        instance.close()
        RestoreTool(instance).restore(BACKUP, "SalesDB")
        assert instance.is_connected

    def test_result_to_dict(self, instance, sales_db):
        result = RestoreTool(instance).restore(BACKUP, "SalesDB", RestoreOptions(preserve_permissions="Y"))

        data = result.to_dict()
        assert data["success"] is True
        assert data["replay"]["processed"] == ["Base", "Mid", "Top", "alice", "bob"]
        assert data["error"] is None


class TestAvailabilityGroupRestore:
    """Tests for a restore of an availability group database."""

    def test_restore_on_primary(self, cluster, primary, secondary):
        tool = RestoreTool(primary, clock=fixed_clock)

        result = tool.restore(BACKUP, "SalesDB", ag_options())

        assert result.success
        assert result.replay.clean
        assert result.joined_replicas == ["SQL02"]
        assert result.stages[-1].endswith(", and joined Availability Group AG1")

        group = cluster.groups["AG1"]
        assert group.joined == {"SQL01": {"SalesDB"}, "SQL02": {"SalesDB"}}
        assert "\\\\fs01\\seed\\SalesDB_AG_init.bak" in primary.backups
        assert "\\\\fs01\\seed\\SalesDB_20261018120000.trn" in primary.backups

        replica_db = secondary.databases["SalesDB"]
        assert replica_db.state == "ONLINE"
        assert replica_db.role_members("Top") == ["alice"]
        assert replica_db.property("alice", "Team") == "Finance"

    def test_command_sequence(self, primary, secondary):
        RestoreTool(primary, clock=fixed_clock).restore(BACKUP, "SalesDB", ag_options())

        types = [c.command_type.value for c in primary.commands]
        assert types.index("AG_REMOVE_DATABASE") < types.index("RESTORE_DATABASE")
        assert types.index("RESTORE_DATABASE") < types.index("PRESERVE_PERMISSIONS")
        assert types.index("PRESERVE_PERMISSIONS") < types.index("BACKUP_DATABASE")
        assert types[-1] == "AG_JOIN_SECONDARY"

    def test_secondary_yields(self, primary, secondary):
        secondary.connect()

        result = RestoreTool(secondary).restore(BACKUP, "SalesDB", ag_options())

        assert result.success
        assert result.yielded
        assert secondary.commands == []
        assert "Server SQL02 is not primary replica of Availability Group AG1!" in result.stages

    def test_unreachable_secondary_rolls_back(self, primary, secondary):
        secondary.reachable = False

        with pytest.raises(RemoteJoinError) as exc_info:
            RestoreTool(primary, clock=fixed_clock).restore(BACKUP, "SalesDB", ag_options())

        assert exc_info.value.replica == "SQL02"
        assert exc_info.value.availability_group == "AG1"
        assert primary.rollback_count == 1

    def test_group_without_shared_folder(self, primary):
        options = RestoreOptions(availability_group="AG1")
        with pytest.raises(ClusterTopologyError, match="shared folder is missing"):
            RestoreTool(primary).restore(BACKUP, "SalesDB", options)
        assert primary.commands == []


class TestPreconditions:
    """Tests for requirements checked before any mutation."""

    @pytest.mark.parametrize(
        "kwargs,options,requirement",
        [
            ({"is_sysadmin": False}, {}, "sysadmin"),
            ({"procedures": set()}, {}, "command_execute"),
            ({"tables": set()}, {"log_to_table": "Y"}, "command_log"),
            ({}, {"preserve_permissions": "Y"}, "existing_database"),
        ],
    )
    def test_requirement(self, kwargs, options, requirement):
        node = InMemoryInstance("SQL01", **kwargs)

        with pytest.raises(PreconditionError) as exc_info:
            RestoreTool(node).restore(BACKUP, "SalesDB", RestoreOptions(**options))

        assert exc_info.value.requirement == requirement
        assert node.commands == []

    def test_missing_table_ignored_without_log_to_table(self, instance, sales_db):
        instance.tables.clear()
        assert RestoreTool(instance).restore(BACKUP, "SalesDB").success


class TestFailures:
    """Tests for failures after the requirements are met."""

    def test_missing_backup(self, instance, sales_db):
        with pytest.raises(RestoreError, match="Please check if file"):
            RestoreTool(instance).restore("B:\\Backup\\Nope.bak", "SalesDB")

        assert instance.rollback_count == 1
        assert instance.databases["SalesDB"] is sales_db


class TestDryRunAndAudit:
    """Tests for execute=N and log_to_table=Y."""

    def test_dry_run(self, instance, sales_db):
        options = RestoreOptions(preserve_permissions="Y", check_model_autogrowth="Y", execute="N")

        result = RestoreTool(instance).restore(BACKUP, "SalesDB", options)

        assert result.success
        assert instance.databases["SalesDB"] is sales_db
        assert sales_db.role_members("Top") == ["alice"]
        assert instance.commands
        assert all(not c.execute for c in instance.commands)

    def test_log_to_table(self, instance, sales_db):
        RestoreTool(instance).restore(BACKUP, "SalesDB", RestoreOptions(log_to_table="Y"))

        assert len(instance.command_log) == len(instance.commands)
        assert instance.command_log[0].command_type == "DATABASE_OFFLINE"
        assert all(entry.error_message is None for entry in instance.command_log)


class TestSalesReadersScenario:
    """Role with two members and a column-level grant survive a restore."""

    @pytest.fixture
    def readers_db(self, instance, backup_source):
        for login in ("alice", "bob"):
            instance.create_login(login)
        db = instance.create_database("SalesDB")
        db.add_schema("sales")
        db.add_object("sales", "Orders")
        db.add_role("SalesReaders")
        for user in ("alice", "bob"):
            db.add_user(user, sid=instance.logins[user].sid)
            db.add_member("SalesReaders", user)
        db.grant("SELECT", Securable("OBJECT_OR_COLUMN", "Orders", schema="sales", column="Amount"), "alice")
        db.set_property("alice", "Owner", "Finance")
        instance.store_backup(BACKUP, backup_source)
        return db

    def test_round_trip(self, instance, readers_db):
        options = RestoreOptions(preserve_permissions="Y")

        result = RestoreTool(instance).restore(BACKUP, "SalesDB", options)

        restored = instance.databases["SalesDB"]
        assert restored is not readers_db
        assert restored.role_members("SalesReaders") == ["alice", "bob"]
        assert restored.permissions_of("alice") == {
            ("GRANT", "CONNECT", "DATABASE::[SalesDB]", "dbo"),
            ("GRANT", "SELECT", "OBJECT::[sales].[Orders]([Amount])", "dbo"),
        }
        assert restored.property("alice", "Owner") == "Finance"
        assert result.replay.clean

    def test_compatible_order_loses_memberships(self, instance, readers_db):
        options = RestoreOptions(preserve_permissions="Y", replay_order="compatible")

        result = RestoreTool(instance).restore(BACKUP, "SalesDB", options)

        restored = instance.databases["SalesDB"]
        assert restored.role_members("SalesReaders") == []
        assert ("GRANT", "SELECT", "OBJECT::[sales].[Orders]([Amount])", "dbo") in restored.permissions_of("alice")
        reasons = {(a.principal, a.reason) for a in result.replay.anomalies}
        assert reasons == {("alice", "role SalesReaders does not exist"), ("bob", "role SalesReaders does not exist")}
