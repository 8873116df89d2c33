"""
Restore tool: one database from one full backup, end to end.

The restore process:
1. Check requirements (sysadmin, CommandExecute, CommandLog, parameters)
2. Check the availability group topology; yield when not primary
3. Read the backup file inventory
4. Capture the principal graph of the existing database (optional)
5. Remove the database from its availability group (when a member)
6. Restore and post-configure the database
7. Replay captured principals (optional)
8. Set the database multi-user and online
9. Seed the availability group and join every secondary (optional)

Invariants:
    - No mutation happens before every precondition holds
    - One top-level handler rolls back, marks the coordinator FAILED and
      re-raises; cleanup always runs
    - Stage announcements are both logged and collected on the result

How to change safely:
    - Keep the stage order; the capture must run before the restore
    - Add new optional stages behind RestoreOptions fields
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from ..audit import CommandExecutor
from ..backends.base import BackendError, InstanceBackend
from ..cluster import AvailabilityGroupCoordinator, CheckOutcome, ReplicaLinkManager
from ..config import RestoreToolConfig
from ..environment import InstanceEnvironment
from ..errors import PreconditionError
from ..options import RestoreOptions
from ..restore import RestoreExecutor
from ..security import (
    CreateOrderResolver,
    PermissionReplayEngine,
    PrincipalGraphCapture,
    PrincipalSnapshot,
    ReplayPlan,
    ReplayReport,
)

logger = logging.getLogger(__name__)


@dataclass
class RestoreResult:
    """Result of a restore.

    Attributes:
        database: Restored database
        backup_file: Backup restored from
        success: Whether the restore completed (or yielded cleanly)
        yielded: This node is not the primary replica, nothing was done
        stages: Stage announcements in order
        replay: Permission replay report, when permissions were preserved
        joined_replicas: Secondaries that joined the database
        duration_ms: Total duration
        error: Error message if failed
    """

    database: str
    backup_file: str
    success: bool = False
    yielded: bool = False
    stages: list[str] = field(default_factory=list)
    replay: ReplayReport | None = None
    joined_replicas: list[str] = field(default_factory=list)
    duration_ms: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "database": self.database,
            "backup_file": self.backup_file,
            "success": self.success,
            "yielded": self.yielded,
            "stages": list(self.stages),
            "replay": self.replay.to_dict() if self.replay else None,
            "joined_replicas": list(self.joined_replicas),
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class RestoreTool:
    """Restores a database and brings it back into a consistent state.

    Example:
        >>> tool = RestoreTool(backend, config)
        >>> options = RestoreOptions(preserve_permissions="Y", availability_group="AG1",
        ...                          shared_folder=r"\\\\fs01\\seed")
        >>> result = tool.restore(r"B:\\Backup\\SalesDB.bak", "SalesDB", options)
        >>> print(result.replay.anomalies)
    """

    def __init__(
        self,
        backend: InstanceBackend,
        config: RestoreToolConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the restore tool.

        Args:
            backend: Backend of the local instance
            config: Tool configuration
            clock: Source of the timestamp in seeding log backup names
        """
        self.backend = backend
        self.config = config or RestoreToolConfig()
        self.clock = clock

    def restore(
        self,
        backup_file: str,
        database: str,
        options: RestoreOptions | None = None,
    ) -> RestoreResult:
        """Execute the restore.

        Returns:
            RestoreResult with the collected stages

        Raises:
            RestoreToolError: Any failure, after rollback and cleanup
        """
        options = options or RestoreOptions()
        result = RestoreResult(database=database, backup_file=backup_file)
        start_time = time.time()

        def announce(message: str) -> None:
            logger.info(message)
            result.stages.append(message)

        executor = CommandExecutor(
            self.backend, log_to_table=options.log_to_table, execute=options.execute
        )
        links = ReplicaLinkManager(self.backend, executor, self.config.replica, announce)
        coordinator: AvailabilityGroupCoordinator | None = None
        snapshot: PrincipalSnapshot | None = None

        try:
            if not self.backend.is_connected:
                self.backend.connect()
            environment = InstanceEnvironment.discover(self.backend)
            server = environment.server_name

            announce(f"{server} : Restore database {database} from file {backup_file}")
            announce(f"STEP ({server}): Checking")
            self._check_preconditions(database, options, announce)

            coordinator = AvailabilityGroupCoordinator(
                self.backend,
                executor,
                environment,
                links,
                availability_group=options.availability_group,
                shared_folder=options.shared_folder,
                clock=self.clock,
                announce=announce,
            )
            if coordinator.check(database) is CheckOutcome.YIELD_TO_PRIMARY:
                result.yielded = True
                result.success = True
                return result

            announce(f"STEP ({server}): Preparing")
            announce(" - gathering backup file info")
            restorer = RestoreExecutor(self.backend, executor, announce)
            files = restorer.file_inventory(backup_file)

            replay_plan: ReplayPlan | None = None
            if options.preserve_permissions:
                announce(" - gathering current database users info")
                snapshot = PrincipalGraphCapture(self.backend).capture(database)
                replay_plan = CreateOrderResolver(options.replay_order).resolve(snapshot)

            coordinator.remove_database(database)
            plan = restorer.plan(database, backup_file, files, environment)

            announce(f"STEP ({server}): Restoring database")
            coordinator.restore(lambda: restorer.restore(plan))

            announce(f"STEP ({server}): Post configuration")
            restorer.post_configure(plan, options.check_model_autogrowth)

            if snapshot is not None and replay_plan is not None:
                announce(" - creating roles and users with permissions")
                engine = PermissionReplayEngine(self.backend, executor)
                result.replay = engine.replay(snapshot, replay_plan)

            restorer.bring_online(database)
            coordinator.rejoin(database)
            result.joined_replicas = [t.server_name for t in coordinator.targets if t.processed]
            coordinator.finish()

            if options.joins_availability_group:
                announce(
                    f"Database {database} successfully restored on server {server}, "
                    f"and joined Availability Group {options.availability_group}"
                )
            else:
                announce(f"Database {database} successfully restored on server {server}")
            result.success = True
            return result

        except Exception as e:
            self._rollback()
            if coordinator is not None:
                coordinator.fail(e)
            result.error = str(e)
            result.stages.append(str(e))
            logger.error(f"Restore of {database} failed: {e}", exc_info=True)
            raise

        finally:
            snapshot = None
            if coordinator is not None:
                coordinator.cleanup()
            result.duration_ms = int((time.time() - start_time) * 1000)

    def _check_preconditions(
        self, database: str, options: RestoreOptions, announce: Callable[[str], None]
    ) -> None:
        """Raises PreconditionError for the first requirement that does not hold."""
        audit = self.config.audit
        try:
            announce(" - permissions")
            if not self.backend.is_sysadmin():
                raise PreconditionError(
                    "You need to be a member of the sysadmin server role to run this procedure.",
                    requirement="sysadmin",
                )

            announce(f" - procedure {audit.procedure_name}")
            if not self.backend.procedure_exists(audit.procedure_name):
                raise PreconditionError(
                    f"The stored procedure {audit.procedure_name} is missing. "
                    "Download https://ola.hallengren.com/scripts/CommandExecute.sql.",
                    requirement="command_execute",
                )

            announce(f" - table {audit.log_table}")
            if options.log_to_table and not self.backend.table_exists(audit.log_table):
                raise PreconditionError(
                    f"The table {audit.log_table} is missing. "
                    "Download https://ola.hallengren.com/scripts/CommandLog.sql.",
                    requirement="command_log",
                )

            announce(" - parameters")
            if options.preserve_permissions and not self.backend.database_exists(database):
                raise PreconditionError(
                    "Parameter preserve permissions can not be used when database does not exist yet! "
                    f"Please check if database {database} exists and rerun.",
                    requirement="existing_database",
                )
        except BackendError as e:
            raise PreconditionError(f"Cannot check requirements: {e}") from e

    def _rollback(self) -> None:
        if not self.backend.is_connected:
            return
        try:
            self.backend.rollback()
        except BackendError as e:
            logger.warning(f"Rollback after failure did not complete: {e}")
