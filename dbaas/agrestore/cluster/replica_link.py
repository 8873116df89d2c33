"""
Remote join of secondary replicas over linked servers.

A secondary replica is only reachable from the primary through a linked
server. Joining it follows a fixed protocol per replica:

    provision()   -> linked server exists and allows remote procedure calls
    probe()       -> the join procedure exists on the secondary
    invoke_join() -> the secondary restores the seeding backups and joins

Invariants:
    - provision() is idempotent and audited; it only issues the commands
      that are missing (sp_addlinkedserver, sp_serveroption 'rpc out')
    - A replica is provisioned at most once per ReplicaLinkManager
    - Unreachable replicas and expired deadlines surface as RemoteJoinError

How to change safely:
    - Parameter names of the join procedure are part of its remote contract
    - Keep every remote call under the configured deadline
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol, runtime_checkable

from ..audit import CommandExecutor, CommandType
from ..backends.base import (
    BackendConnectionError,
    BackendError,
    BackendTimeoutError,
    InstanceBackend,
)
from ..config import ReplicaConfig
from ..errors import RemoteJoinError
from ..tsql import AddLinkedServer, ExecuteRemoteProcedure, SetLinkedServerOption

logger = logging.getLogger(__name__)


@dataclass
class ReplicaTarget:
    """One secondary replica awaiting the join.

    Attributes:
        server_name: Replica server name, also the linked server name
        processed: The replica has joined the database
    """

    server_name: str
    processed: bool = False


@runtime_checkable
class ReplicaClient(Protocol):
    """Remote join protocol of one secondary replica."""

    server_name: str

    def provision(self) -> None:
        """Make sure the replica can receive remote procedure calls."""
        ...

    def probe(self) -> None:
        """Verify the join procedure is installed on the replica."""
        ...

    def invoke_join(
        self, full_backup: str, log_backup: str, database: str, availability_group: str
    ) -> None:
        """Restore the seeding backups on the replica and join the group."""
        ...


class LinkedServerReplicaClient:
    """ReplicaClient that reaches the secondary through a linked server."""

    def __init__(
        self,
        server_name: str,
        backend: InstanceBackend,
        executor: CommandExecutor,
        config: ReplicaConfig,
        announce: Callable[[str], None] | None = None,
    ) -> None:
        self.server_name = server_name
        self.backend = backend
        self.executor = executor
        self.config = config
        self.announce = announce or logger.info
        self.provisioned = False

    @property
    def _timeout(self) -> int | None:
        return self.config.call_timeout_seconds or None

    def provision(self) -> None:
        if self.provisioned:
            return
        try:
            link = self.backend.linked_server(self.server_name)
            if link is None:
                self.announce(f" - creating linked server for {self.server_name} replica")
                self.executor.run(
                    AddLinkedServer(self.server_name, self.config.link_product),
                    CommandType.LINKED_SERVER_ADD,
                )
            if link is None or not link.rpc_out_enabled:
                self.announce(f" - enabling RPC Out for linked server {self.server_name}")
                self.executor.run(
                    SetLinkedServerOption(self.server_name, "rpc out", "true"),
                    CommandType.LINKED_SERVER_OPTION,
                )
        except BackendError as e:
            raise RemoteJoinError(
                f"Cannot provision linked server {self.server_name}: {e}",
                replica=self.server_name,
            ) from e
        self.provisioned = True

    def probe(self) -> None:
        if not self.executor.execute and self.backend.linked_server(self.server_name) is None:
            logger.info(f"[dry-run] skipping probe of {self.server_name}, linked server not created")
            return
        procedure = self.config.join_procedure
        try:
            found = self.backend.remote_procedure_exists(
                self.server_name, procedure, timeout_seconds=self._timeout
            )
        except (BackendConnectionError, BackendTimeoutError) as e:
            raise RemoteJoinError(
                f"Secondary replica {self.server_name} is unreachable: {e}",
                replica=self.server_name,
            ) from e
        except BackendError as e:
            raise RemoteJoinError(
                f"Cannot look up {procedure} on {self.server_name}: {e}",
                replica=self.server_name,
            ) from e
        if not found:
            raise RemoteJoinError(
                f"Stored procedure [master].[dbo].[{procedure}] not found on server "
                f"{self.server_name} or execution account does not have sufficient permissions. "
                "Please check procedure and account permissions and rerun or add database "
                "to secondary manually.",
                replica=self.server_name,
            )

    def invoke_join(
        self, full_backup: str, log_backup: str, database: str, availability_group: str
    ) -> None:
        statement = ExecuteRemoteProcedure(
            server=self.server_name,
            procedure=self.config.join_procedure,
            parameters=(
                ("FullBackupFile", full_backup),
                ("TlogBackupFile", log_backup),
                ("Database", database),
                ("AvailabilityGroup", availability_group),
                ("LogToTable", "Y"),
            ),
        )
        try:
            self.executor.run(
                statement,
                CommandType.AG_JOIN_SECONDARY,
                database=database,
                timeout_seconds=self._timeout,
            )
        except (BackendConnectionError, BackendTimeoutError) as e:
            raise RemoteJoinError(
                f"Secondary replica {self.server_name} is unreachable: {e}",
                replica=self.server_name,
                availability_group=availability_group,
            ) from e
        except BackendError as e:
            raise RemoteJoinError(
                f"Joining {database} on {self.server_name} failed: {e}",
                replica=self.server_name,
                availability_group=availability_group,
            ) from e


class ReplicaLinkManager:
    """Hands out one ReplicaClient per secondary.

    Example:
        >>> manager = ReplicaLinkManager(backend, executor, config.replica)
        >>> client = manager.client("SQL02")
        >>> client.provision()
        >>> client.probe()
        >>> client.invoke_join(full, log, "SalesDB", "AG1")
    """

    def __init__(
        self,
        backend: InstanceBackend,
        executor: CommandExecutor,
        config: ReplicaConfig | None = None,
        announce: Callable[[str], None] | None = None,
    ) -> None:
        self.backend = backend
        self.executor = executor
        self.config = config or ReplicaConfig()
        self.announce = announce or logger.info
        self._clients: dict[str, ReplicaClient] = {}

    def client(self, server_name: str) -> ReplicaClient:
        client = self._clients.get(server_name)
        if client is None:
            client = LinkedServerReplicaClient(
                server_name, self.backend, self.executor, self.config, self.announce
            )
            self._clients[server_name] = client
        return client

    def join(
        self,
        target: ReplicaTarget,
        full_backup: str,
        log_backup: str,
        database: str,
        availability_group: str,
    ) -> None:
        """Run the whole protocol against one secondary and mark it processed."""
        client = self.client(target.server_name)
        client.provision()
        self.announce(f" - add on secondary replica {target.server_name}")
        try:
            client.probe()
            client.invoke_join(full_backup, log_backup, database, availability_group)
        except RemoteJoinError as e:
            e.availability_group = availability_group
            e.details["availability_group"] = availability_group
            raise
        target.processed = True

    def clear(self) -> None:
        self._clients.clear()
