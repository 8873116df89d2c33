"""
Integration tests for the linked-server replica join protocol.

Tests cover:
- Linked server provisioning (once, only what is missing)
- Probing the join procedure
- Unreachable and unresponsive replicas
- Dry run
"""

import pytest

from dbaas.agrestore.audit import CommandExecutor
from dbaas.agrestore.backends import LinkedServerInfo
from dbaas.agrestore.cluster import LinkedServerReplicaClient, ReplicaClient, ReplicaLinkManager, ReplicaTarget
from dbaas.agrestore.config import ReplicaConfig
from dbaas.agrestore.errors import RemoteJoinError


def manager(backend, execute=True, config=None):
    return ReplicaLinkManager(backend, CommandExecutor(backend, execute=execute), config)


class TestProvision:
    """Tests for linked server provisioning."""

    def test_creates_link_with_rpc_out(self, primary):
        client = manager(primary).client("SQL02")

        client.provision()

        assert primary.linked_servers["SQL02"].rpc_out_enabled
        assert len(primary.commands_of_type("LINKED_SERVER_ADD")) == 1
        assert len(primary.commands_of_type("LINKED_SERVER_OPTION")) == 1

    def test_provisioned_once(self, primary):
        links = manager(primary)
        links.client("SQL02").provision()
        links.client("SQL02").provision()

        assert len(primary.commands) == 2

    def test_only_enables_rpc_when_link_exists(self, primary):
        primary.linked_servers["SQL02"] = LinkedServerInfo("SQL02", False)

        manager(primary).client("SQL02").provision()

        assert primary.commands_of_type("LINKED_SERVER_ADD") == []
        assert primary.linked_servers["SQL02"].rpc_out_enabled

    def test_nothing_to_do_for_ready_link(self, primary):
        primary.linked_servers["SQL02"] = LinkedServerInfo("SQL02", True)

        manager(primary).client("SQL02").provision()

        assert primary.commands == []

    def test_client_is_a_replica_client(self, primary):
        client = manager(primary).client("SQL02")
        assert isinstance(client, LinkedServerReplicaClient)
        assert isinstance(client, ReplicaClient)


class TestProbe:
    """Tests for the join procedure probe."""

    def test_procedure_present(self, primary, secondary):
        client = manager(primary).client("SQL02")
        client.provision()
        client.probe()

    def test_procedure_missing(self, cluster, primary):
        cluster.add_instance("SQL03", join_procedure=False)
        client = manager(primary).client("SQL03")
        client.provision()

        with pytest.raises(RemoteJoinError, match="not found on server SQL03") as exc_info:
            client.probe()
        assert exc_info.value.replica == "SQL03"
        assert "add database to secondary manually" in exc_info.value.message

    def test_unreachable_replica(self, primary, secondary):
        secondary.reachable = False
        client = manager(primary).client("SQL02")
        client.provision()

        with pytest.raises(RemoteJoinError, match="unreachable"):
            client.probe()

    def test_unresponsive_replica(self, primary, secondary):
        secondary.responsive = False
        client = manager(primary, config=ReplicaConfig(call_timeout_seconds=5)).client("SQL02")
        client.provision()

        with pytest.raises(RemoteJoinError, match="unreachable"):
            client.probe()

    def test_custom_join_procedure(self, primary, secondary):
        secondary.procedures.add("JoinSecondary")
        config = ReplicaConfig(join_procedure="JoinSecondary")
        client = manager(primary, config=config).client("SQL02")
        client.provision()
        client.probe()


class TestJoin:
    """Tests for ReplicaLinkManager.join."""

    def test_unreachable_replica_names_group(self, primary, secondary):
        secondary.reachable = False
        target = ReplicaTarget("SQL02")

        with pytest.raises(RemoteJoinError) as exc_info:
            manager(primary).join(target, "full.bak", "log.trn", "SalesDB", "AG1")

        assert exc_info.value.availability_group == "AG1"
        assert exc_info.value.details["availability_group"] == "AG1"
        assert not target.processed

    def test_invoke_join_parameters(self, primary, secondary):
        links = manager(primary, execute=False)
        links.join(ReplicaTarget("SQL02"), "\\\\fs01\\seed\\a.bak", "\\\\fs01\\seed\\a.trn", "SalesDB", "AG1")

        (call,) = primary.commands_of_type("AG_JOIN_SECONDARY")
        assert call.statement.parameter("FullBackupFile") == "\\\\fs01\\seed\\a.bak"
        assert call.statement.parameter("TlogBackupFile") == "\\\\fs01\\seed\\a.trn"
        assert call.statement.parameter("LogToTable") == "Y"

    def test_dry_run_skips_probe_and_changes_nothing(self, primary, secondary):
        target = ReplicaTarget("SQL02")
        manager(primary, execute=False).join(target, "full.bak", "log.trn", "SalesDB", "AG1")

        assert target.processed
        assert primary.linked_servers == {}
        assert secondary.join_calls == []
        assert all(not c.execute for c in primary.commands)

    def test_announces_steps(self, primary, secondary):
        messages = []
        links = ReplicaLinkManager(primary, CommandExecutor(primary, execute=False), announce=messages.append)

        links.join(ReplicaTarget("SQL02"), "full.bak", "log.trn", "SalesDB", "AG1")

        assert messages == [
            " - creating linked server for SQL02 replica",
            " - enabling RPC Out for linked server SQL02",
            " - add on secondary replica SQL02",
        ]
