"""
Availability group membership around a restore.

A database that belongs to an availability group cannot be restored in
place. The coordinator checks the group topology, removes the database from
the group, lets the restore run and then seeds the group again: a full and a
log backup on the shared folder, ADD DATABASE on the primary and the remote
join on every secondary.

States:

    IDLE -> CHECKING -> [REMOVED] -> RESTORING -> [REJOINING] -> DONE
    any  -> FAILED
    CHECKING -> YIELDED      (this node is not the primary replica)

Invariants:
    - Transitions are validated; an illegal one is a programming error
    - Only the primary replica mutates group membership
    - Secondaries are joined one at a time in topology order; the first
      failure aborts the rejoin

How to change safely:
    - Seeding backup names are read by the secondaries' join procedure
    - YIELDED is a clean exit, not an error; callers must not treat it as one
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, TypeVar

from ..audit import CommandExecutor, CommandType
from ..backends.base import BackendError, InstanceBackend
from ..environment import InstanceEnvironment, join_path
from ..errors import ClusterTopologyError, RemoteJoinError
from ..tsql import AddDatabaseToGroup, BackupDatabase, BackupLog, RemoveDatabaseFromGroup
from .replica_link import ReplicaLinkManager, ReplicaTarget

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CoordinatorState(Enum):
    IDLE = "idle"
    CHECKING = "checking"
    REMOVED = "removed"
    RESTORING = "restoring"
    REJOINING = "rejoining"
    DONE = "done"
    FAILED = "failed"
    YIELDED = "yielded"


class CheckOutcome(Enum):
    """Result of the topology check."""

    PROCEED = "proceed"
    YIELD_TO_PRIMARY = "yield_to_primary"


_TRANSITIONS: dict[CoordinatorState, set[CoordinatorState]] = {
    CoordinatorState.IDLE: {CoordinatorState.CHECKING},
    CoordinatorState.CHECKING: {
        CoordinatorState.REMOVED,
        CoordinatorState.RESTORING,
        CoordinatorState.YIELDED,
    },
    CoordinatorState.REMOVED: {CoordinatorState.RESTORING},
    CoordinatorState.RESTORING: {CoordinatorState.REJOINING, CoordinatorState.DONE},
    CoordinatorState.REJOINING: {CoordinatorState.DONE},
    CoordinatorState.DONE: set(),
    CoordinatorState.YIELDED: set(),
    CoordinatorState.FAILED: set(),
}


def seeding_backup_paths(shared_folder: str, database: str, now: datetime) -> tuple[str, str]:
    """Full and log backup paths used to seed the secondaries."""
    full_backup = join_path(shared_folder, f"{database}_AG_init.bak")
    log_backup = join_path(shared_folder, f"{database}_{now.strftime('%Y%m%d%H%M%S')}.trn")
    return full_backup, log_backup


class AvailabilityGroupCoordinator:
    """Drives availability group membership of one database through a restore.

    Without an availability group the coordinator only walks the states so
    the restore flow is identical either way.

    Example:
        >>> coordinator = AvailabilityGroupCoordinator(backend, executor, environment,
        ...                                            links, "AG1", r"\\\\share\\seed")
        >>> if coordinator.check("SalesDB") is CheckOutcome.YIELD_TO_PRIMARY:
        ...     return
        >>> coordinator.remove_database("SalesDB")
        >>> coordinator.restore(lambda: executor.restore(plan))
        >>> coordinator.rejoin("SalesDB")
        >>> coordinator.finish()
    """

    def __init__(
        self,
        backend: InstanceBackend,
        executor: CommandExecutor,
        environment: InstanceEnvironment,
        links: ReplicaLinkManager,
        availability_group: str | None = None,
        shared_folder: str | None = None,
        clock: Callable[[], datetime] = datetime.now,
        announce: Callable[[str], None] | None = None,
    ) -> None:
        self.backend = backend
        self.executor = executor
        self.environment = environment
        self.links = links
        self.availability_group = availability_group
        self.shared_folder = shared_folder
        self.clock = clock
        self.announce = announce or logger.info
        self.state = CoordinatorState.IDLE
        self.is_member = False
        self.targets: list[ReplicaTarget] = []
        self.seeding_backups: tuple[str, str] | None = None

    @property
    def clustered(self) -> bool:
        return self.availability_group is not None

    def _transition(self, target: CoordinatorState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal coordinator transition {self.state.name} -> {target.name}")
        logger.debug(f"Coordinator {self.state.name} -> {target.name}")
        self.state = target

    def _topology_error(self, message: str) -> ClusterTopologyError:
        return ClusterTopologyError(
            message,
            availability_group=self.availability_group,
            server_name=self.environment.server_name,
        )

    def check(self, database: str) -> CheckOutcome:
        """Validate the group topology and record whether ``database`` is a member.

        Raises:
            ClusterTopologyError: If the shared folder is missing, HADR is
                disabled or the group does not exist
        """
        self._transition(CoordinatorState.CHECKING)
        if not self.clustered:
            return CheckOutcome.PROCEED

        group = self.availability_group
        server = self.environment.server_name
        self.announce(" - availability group")

        if not self.shared_folder:
            raise self._topology_error(
                f"Availability Group {group} name specified, but parameter shared folder is missing! "
                "Shared folder location needed to add database to Availability Group."
            )
        if not self.environment.hadr_enabled:
            raise self._topology_error(
                f"HADR not enabled on instance {server}, use normal restore instead of restore to AG."
            )
        try:
            if not self.backend.availability_group_exists(group):
                raise self._topology_error(
                    f"Availability group {group} not found! Check input parameters and try again."
                )
            primary = self.backend.primary_replica(group)
            if primary != server:
                self.announce(f"Server {server} is not primary replica of Availability Group {group}!")
                self._transition(CoordinatorState.YIELDED)
                return CheckOutcome.YIELD_TO_PRIMARY
            self.is_member = self.backend.database_in_group(group, database)
        except BackendError as e:
            raise self._topology_error(f"Cannot read topology of {group}: {e}") from e

        logger.debug(
            f"{database} is {'a' if self.is_member else 'not a'} member of {group}",
            extra={"availability_group": group, "server": server},
        )
        return CheckOutcome.PROCEED

    def remove_database(self, database: str) -> None:
        """Remove ``database`` from the group when it is a member."""
        if not (self.clustered and self.shared_folder and self.is_member):
            return
        group = self.availability_group
        self.announce(f" - removing database {database} from Availability Group {group}")
        try:
            self.executor.run(
                RemoveDatabaseFromGroup(group, database),
                CommandType.AG_REMOVE_DATABASE,
                database=database,
            )
        except BackendError as e:
            raise self._topology_error(f"Cannot remove {database} from {group}: {e}") from e
        self._transition(CoordinatorState.REMOVED)

    def restore(self, action: Callable[[], T]) -> T:
        """Run the restore while the database is out of the group."""
        self._transition(CoordinatorState.RESTORING)
        return action()

    def rejoin(self, database: str) -> None:
        """Seed the group with the restored database and join every replica.

        Raises:
            RemoteJoinError: If any backup, the primary join or a secondary
                join failed
        """
        if not (self.clustered and self.shared_folder):
            return
        self._transition(CoordinatorState.REJOINING)
        group = self.availability_group
        server = self.environment.server_name
        self.announce(f"STEP ({server}): Add database {database} to Availability Group {group}")

        full_backup, log_backup = seeding_backup_paths(self.shared_folder, database, self.clock())
        self.seeding_backups = (full_backup, log_backup)
        try:
            self.announce(" - take full backup")
            self.executor.run(
                BackupDatabase(database, full_backup), CommandType.BACKUP_DATABASE, database=database
            )
            self.announce(" - take backup of transaction log")
            self.executor.run(BackupLog(database, log_backup), CommandType.BACKUP_LOG, database=database)
            self.announce(f" - add on primary replica {server}")
            self.executor.run(
                AddDatabaseToGroup(group, database), CommandType.AG_JOIN_PRIMARY, database=database
            )
            self.targets = [ReplicaTarget(name) for name in self.backend.secondary_replicas(group)]
        except BackendError as e:
            raise RemoteJoinError(
                f"Joining {database} to {group} on primary {server} failed: {e}",
                replica=server,
                availability_group=group,
            ) from e

        for target in self.targets:
            if target.processed:
                continue
            self.links.join(target, full_backup, log_backup, database, group)

        self.announce(f"STEP ({server}): Joining database {database} to all secondary replicas finished")

    def finish(self) -> None:
        if self.state == CoordinatorState.RESTORING or self.state == CoordinatorState.REJOINING:
            self._transition(CoordinatorState.DONE)

    def fail(self, error: BaseException) -> None:
        """Mark the coordinator FAILED; reachable from every state."""
        logger.debug(f"Coordinator failed in state {self.state.name}: {error}")
        self.state = CoordinatorState.FAILED

    def cleanup(self) -> None:
        self.targets = []
        self.links.clear()
