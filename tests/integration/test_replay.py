"""
Integration tests for permission replay against an in-memory instance.

Tests cover:
- Full replay onto a restored database (roles-first)
- Idempotence of a second replay
- Anomalies for missing logins, grantors and securables
- Deferred role ownership and a three-level ownership chain
- Permissions granted by a replayed principal
- Membership loss under the compatible order
- Atomic rejection of a batch
"""

import copy

import pytest

from dbaas.agrestore.audit import CommandExecutor
from dbaas.agrestore.errors import ReplayError
from dbaas.agrestore.security import (
    CreateOrderResolver,
    PermissionReplayEngine,
    PrincipalGraphCapture,
    ReplayOrder,
)
from dbaas.agrestore.tsql import (
    AddRoleMember,
    CreateRole,
    DropRoleMember,
    DropUser,
    Guarded,
    PermissionState,
    PermissionStatement,
    PrincipalExists,
    Securable,
)


def capture(instance, order=ReplayOrder.ROLES_FIRST):
    snapshot = PrincipalGraphCapture(instance).capture("SalesDB")
    return snapshot, CreateOrderResolver(order).resolve(snapshot)


def simulate_restore(instance, database):
    """Replace SalesDB the way a restore does, without going through the tool."""
    database.name = "SalesDB"
    instance.databases["SalesDB"] = database
    return database


def replay(instance, snapshot, plan):
    return PermissionReplayEngine(instance, CommandExecutor(instance)).replay(snapshot, plan)


class TestReplayRolesFirst:
    """Tests for the default replay order."""

    def test_restores_full_security_model(self, instance, sales_db, backup_source):
        snapshot, plan = capture(instance)
        restored = simulate_restore(instance, backup_source)

        report = replay(instance, snapshot, plan)

        assert report.clean
        assert report.processed == ["Base", "Mid", "Top", "alice", "bob"]
        assert restored.role_members("Base") == ["Mid", "bob"]
        assert restored.role_members("Mid") == ["Top"]
        assert restored.role_members("Top") == ["alice"]
        assert restored.schema_owner("sales") == "Mid"
        assert ("GRANT", "SELECT", "SCHEMA::[sales]", "dbo") in restored.permissions_of("Base")
        assert (
            "GRANT_WITH_GRANT_OPTION",
            "EXECUTE",
            "OBJECT::[sales].[Orders]",
            "dbo",
        ) in restored.permissions_of("Top")
        assert restored.property("alice", "Team") == "Finance"
        assert restored.principal("alice").sid == instance.logins["alice"].sid
        # principals only known to the backup are left alone
        assert restored.principal("prod_reader") is not None

    def test_one_batch_per_principal(self, instance, sales_db, backup_source):
        snapshot, plan = capture(instance)
        simulate_restore(instance, backup_source)

        replay(instance, snapshot, plan)

        batches = instance.commands_of_type("PRESERVE_PERMISSIONS")
        assert len(batches) == 5
        assert all(c.statement.atomic for c in batches)

    def test_membership_emitted_with_later_endpoint(self, instance, sales_db):
        snapshot, plan = capture(instance)
        engine = PermissionReplayEngine(instance, CommandExecutor(instance))
        assignments = engine.assign(snapshot, plan)

        top = snapshot.by_name("Top")
        alice = snapshot.by_name("alice")
        assert [m.role_name for m in assignments[top.principal_id].memberships] == ["Mid"]
        assert [m.role_name for m in assignments[alice.principal_id].memberships] == ["Top"]

    def test_second_replay_is_idempotent(self, instance, sales_db, backup_source):
        snapshot, plan = capture(instance)
        restored = simulate_restore(instance, backup_source)
        replay(instance, snapshot, plan)

        report = replay(instance, snapshot, plan)

        assert report.clean
        assert restored.role_members("Base") == ["Mid", "bob"]
        assert restored.role_members("Top") == ["alice"]
        assert restored.schema_owner("sales") == "Mid"
        assert restored.property("alice", "Team") == "Finance"

    def test_replay_over_same_principals_drops_live_members(self, instance, sales_db):
        snapshot, plan = capture(instance)
        simulate_restore(instance, copy.deepcopy(sales_db))

        replay(instance, snapshot, plan)

        base_batch = instance.commands_of_type("PRESERVE_PERMISSIONS")[0].statement
        assert DropRoleMember("Base", "Mid") in base_batch.statements
        assert DropRoleMember("Base", "bob") in base_batch.statements

    def test_role_owned_by_user(self, instance, sales_db, backup_source):
        sales_db.add_role("Reports", owner="alice")
        snapshot, plan = capture(instance)
        restored = simulate_restore(instance, backup_source)

        report = replay(instance, snapshot, plan)

        assert report.clean
        assert report.deferred >= 1
        assert restored.owner_of("Reports") == "alice"


class TestRoleOwnershipChain:
    """A owns B, B owns C, and every role has a member."""

    @pytest.fixture
    def chain_db(self, instance):
        db = instance.create_database("SalesDB")
        db.add_role("A")
        db.add_role("B", owner="A")
        db.add_role("C", owner="B")
        for role, user in (("A", "amy"), ("B", "ben"), ("C", "cal")):
            instance.create_login(user)
            db.add_user(user, sid=instance.logins[user].sid)
            db.add_member(role, user)
        return db

    @staticmethod
    def replayed_statements(instance):
        statements = []
        for command in instance.commands_of_type("PRESERVE_PERMISSIONS"):
            for statement in command.statement.statements:
                statements.append(statement.statement if isinstance(statement, Guarded) else statement)
        return statements

    def test_owners_created_before_members_added(self, instance, chain_db, backup_source):
        snapshot, plan = capture(instance)
        simulate_restore(instance, backup_source)

        report = replay(instance, snapshot, plan)

        assert report.clean
        statements = self.replayed_statements(instance)
        creates = [i for i, s in enumerate(statements) if isinstance(s, CreateRole)]
        adds = [i for i, s in enumerate(statements) if isinstance(s, AddRoleMember)]
        assert [(statements[i].name, statements[i].owner) for i in creates] == [
            ("A", "dbo"),
            ("B", "A"),
            ("C", "B"),
        ]
        assert [(statements[i].role, statements[i].member) for i in adds] == [
            ("A", "amy"),
            ("B", "ben"),
            ("C", "cal"),
        ]
        assert max(creates) < min(adds)

    def test_ownership_preserved_across_replays(self, instance, chain_db, backup_source):
        snapshot, plan = capture(instance)
        simulate_restore(instance, backup_source)

        replay(instance, snapshot, plan)
        report = replay(instance, snapshot, plan)

        assert report.clean
        restored = instance.databases["SalesDB"]
        assert restored.owner_of("A") == "dbo"
        assert restored.owner_of("B") == "A"
        assert restored.owner_of("C") == "B"
        assert [restored.role_members(r) for r in ("A", "B", "C")] == [["amy"], ["ben"], ["cal"]]


class TestReplayAnomalies:
    """Tests for guarded statements that are skipped."""

    def test_missing_login(self, instance, sales_db, backup_source):
        snapshot, plan = capture(instance)
        instance.drop_login("bob")
        restored = simulate_restore(instance, backup_source)

        report = replay(instance, snapshot, plan)

        assert restored.principal("bob") is None
        reasons = [a.reason for a in report.anomalies if a.principal == "bob"]
        assert "login bob does not exist" in reasons
        assert any("principal bob does not exist" in r for r in reasons)

    def test_missing_grantor(self, instance, sales_db, backup_source):
        instance.create_login("carol")
        sales_db.add_user("carol", sid=instance.logins["carol"].sid)
        sales_db.grant("SELECT", Securable("OBJECT_OR_COLUMN", "Orders", schema="sales"), "bob", grantor="carol")
        snapshot, plan = capture(instance)
        instance.drop_login("carol")
        restored = simulate_restore(instance, backup_source)

        report = replay(instance, snapshot, plan)

        assert not report.clean
        carol = [a for a in report.anomalies if a.principal == "carol"]
        assert [a.reason for a in carol] == [
            "login carol does not exist",
            "principal carol does not exist",
        ]
        assert carol[1].statement.startswith("GRANT SELECT ON OBJECT::[sales].[Orders] TO [bob]")
        assert not any(p[1] == "SELECT" for p in restored.permissions_of("bob"))

    def test_missing_object(self, instance, sales_db, backup_source):
        snapshot, plan = capture(instance)
        restored = simulate_restore(instance, backup_source)
        restored.objects.clear()

        report = replay(instance, snapshot, plan)

        (anomaly,) = report.anomalies
        assert anomaly.principal == "Top"
        assert anomaly.reason == "object sales.Orders does not exist"

    def test_existing_user_is_recreated(self, instance, sales_db, backup_source):
        snapshot, plan = capture(instance)
        restored = simulate_restore(instance, backup_source)
        stale = restored.add_user("alice", sid=instance.logins["alice"].sid)
        restored.set_property("alice", "Team", "Marketing")

        report = replay(instance, snapshot, plan)

        assert report.clean
        assert restored.principal("alice").principal_id != stale.principal_id
        assert restored.property("alice", "Team") == "Finance"


class TestReplayCompatible:
    """Tests for the historical replay order."""

    def test_users_lose_role_memberships(self, instance, sales_db):
        """Roles dropped and recreated after their members detach them."""
        snapshot, plan = capture(instance, ReplayOrder.COMPATIBLE)
        restored = simulate_restore(instance, copy.deepcopy(sales_db))

        report = replay(instance, snapshot, plan)

        assert report.processed == ["alice", "bob", "Base", "Mid", "Top"]
        assert restored.role_members("Top") == []
        assert restored.role_members("Base") == ["Mid"]
        assert restored.role_members("Mid") == ["Top"]

    def test_memberships_on_fresh_database_are_anomalies(self, instance, sales_db, backup_source):
        snapshot, plan = capture(instance, ReplayOrder.COMPATIBLE)
        simulate_restore(instance, backup_source)

        report = replay(instance, snapshot, plan)

        reasons = {(a.principal, a.reason) for a in report.anomalies}
        assert ("alice", "role Top does not exist") in reasons
        assert ("bob", "role Base does not exist") in reasons


class TestReplayOverLiveGrants:
    """Tests for principals that granted permissions in the target database."""

    @pytest.fixture
    def grantor_db(self, sales_db):
        orders = Securable("OBJECT_OR_COLUMN", "Orders", schema="sales")
        sales_db.grant("SELECT", orders, "alice", with_grant_option=True)
        sales_db.grant("SELECT", orders, "bob", grantor="alice")
        return sales_db

    def test_second_replay_keeps_grant_by_user(self, instance, grantor_db, backup_source):
        snapshot, plan = capture(instance)
        restored = simulate_restore(instance, backup_source)
        replay(instance, snapshot, plan)

        report = replay(instance, snapshot, plan)

        assert report.clean
        assert ("GRANT", "SELECT", "OBJECT::[sales].[Orders]", "alice") in restored.permissions_of("bob")
        assert (
            "GRANT_WITH_GRANT_OPTION",
            "SELECT",
            "OBJECT::[sales].[Orders]",
            "dbo",
        ) in restored.permissions_of("alice")

    def test_grants_by_replayed_principal_are_revoked_first(self, instance, grantor_db):
        snapshot, plan = capture(instance)
        simulate_restore(instance, copy.deepcopy(grantor_db))

        replay(instance, snapshot, plan)

        revoke = PermissionStatement(
            state=PermissionState.REVOKE,
            permission="SELECT",
            securable=Securable("OBJECT_OR_COLUMN", "Orders", schema="sales"),
            grantee="bob",
            grantor="alice",
            cascade=True,
        )
        alice_batch = instance.commands_of_type("PRESERVE_PERMISSIONS")[3].statement
        statements = list(alice_batch.statements)
        assert statements.index(revoke) < statements.index(
            Guarded(DropUser("alice"), (PrincipalExists("alice"),), report=False)
        )

    def test_uncaptured_grant_is_revoked(self, instance, sales_db):
        snapshot, plan = capture(instance)
        restored = simulate_restore(instance, copy.deepcopy(sales_db))
        restored.grant("SELECT", Securable("OBJECT_OR_COLUMN", "Orders", schema="sales"), "bob", grantor="alice")

        report = replay(instance, snapshot, plan)

        assert report.clean
        assert not any(p[1] == "SELECT" for p in restored.permissions_of("bob"))
        assert restored.property("alice", "Team") == "Finance"


class TestReplayRejection:
    """Tests for batches the server rejects."""

    def test_user_name_taken_by_role(self, instance, sales_db, backup_source):
        snapshot, plan = capture(instance)
        restored = simulate_restore(instance, backup_source)
        restored.add_role("alice")
        restored.set_property("alice", "Team", "Marketing")

        with pytest.raises(ReplayError) as exc_info:
            replay(instance, snapshot, plan)

        assert exc_info.value.principal == "alice"
        assert "Cannot drop the user 'alice'" in exc_info.value.message
        # the rejected batch left the role untouched
        current = instance.databases["SalesDB"]
        assert current.principal("alice").type == "R"
        assert current.property("alice", "Team") == "Marketing"
        assert current.role_members("Top") == []

    def test_dry_run_applies_nothing(self, instance, sales_db, backup_source):
        snapshot, plan = capture(instance)
        restored = simulate_restore(instance, backup_source)
        engine = PermissionReplayEngine(instance, CommandExecutor(instance, execute=False))

        report = engine.replay(snapshot, plan)

        assert report.processed == ["Base", "Mid", "Top", "alice", "bob"]
        assert restored.principal("Base") is None
        assert all(not c.execute for c in instance.commands)
