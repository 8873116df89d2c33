"""
Audited command execution.

Every mutating step of a restore goes through CommandExecutor, which hands an
AuditedCommand to the backend. Against a real instance the command runs
through Ola Hallengren's CommandExecute procedure, which optionally writes a
row to CommandLog, so every action is uniformly audited and replayable for
diagnostics.

Invariants:
    - A command carries both its typed statement and the rendered text
    - execute=False never changes the instance (dry run)
    - Failures surface as CommandFailedError; callers map them to domain errors

How to change safely:
    - New command types are additive, CommandLog readers filter on them
    - Keep CommandMode values aligned with CommandExecute's @Mode
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Union

from .tsql import Statement, StatementBatch

if TYPE_CHECKING:
    from .backends.base import InstanceBackend

logger = logging.getLogger(__name__)


class CommandType(Enum):
    """Command type tags written to CommandLog."""

    AG_REMOVE_DATABASE = "AG_REMOVE_DATABASE"
    RESTORE_DATABASE = "RESTORE_DATABASE"
    PRESERVE_PERMISSIONS = "PRESERVE_PERMISSIONS"
    BACKUP_DATABASE = "BACKUP_DATABASE"
    BACKUP_LOG = "BACKUP_LOG"
    AG_JOIN_PRIMARY = "AG_JOIN_PRIMARY"
    AG_JOIN_SECONDARY = "AG_JOIN_SECONDARY"
    LINKED_SERVER_ADD = "LINKED_SERVER_ADD"
    LINKED_SERVER_OPTION = "LINKED_SERVER_OPTION"
    DATABASE_OFFLINE = "DATABASE_OFFLINE"
    DROP_DATABASE = "DROP_DATABASE"
    ALTER_DATABASE_FILE = "ALTER_DATABASE_FILE"
    SHRINK_LOG = "SHRINK_LOG"
    SET_RECOVERY = "SET_RECOVERY"
    SET_MULTI_USER = "SET_MULTI_USER"
    SET_ONLINE = "SET_ONLINE"


class CommandMode(IntEnum):
    """CommandExecute @Mode.

    INFORMATIONAL (1) is used for the restore itself, MUTATING (2) for
    everything else.
    """

    INFORMATIONAL = 1
    MUTATING = 2


Executable = Union[Statement, StatementBatch]


@dataclass(frozen=True)
class AuditedCommand:
    """One command submitted to the audited execution interface.

    Attributes:
        statement: Typed statement or batch
        command_type: Tag written to the audit log
        database: Database the command is about (for the audit log)
        mode: CommandExecute mode
        log_to_table: Persist a CommandLog row
        execute: Actually run the command (False = dry run)
        timeout_seconds: Deadline for the call, None = connection default
    """

    statement: Executable
    command_type: CommandType
    database: str | None = None
    mode: CommandMode = CommandMode.MUTATING
    log_to_table: bool = False
    execute: bool = True
    timeout_seconds: int | None = None

    @property
    def text(self) -> str:
        return self.statement.render()


@dataclass
class CommandOutcome:
    """Result of an audited command.

    Attributes:
        executed: False when the command was only logged (dry run)
        messages: Informational messages returned by the server
        anomalies: Texts of guarded statements that were skipped
    """

    executed: bool
    messages: list[str] = field(default_factory=list)
    anomalies: list[str] = field(default_factory=list)


class CommandExecutor:
    """Submits typed statements through the audited command interface.

    Example:
        >>> executor = CommandExecutor(backend, log_to_table=True)
        >>> executor.run(BackupLog("SalesDB", path), CommandType.BACKUP_LOG, "SalesDB")
    """

    def __init__(
        self,
        backend: InstanceBackend,
        log_to_table: bool = False,
        execute: bool = True,
    ) -> None:
        self.backend = backend
        self.log_to_table = log_to_table
        self.execute = execute

    def run(
        self,
        statement: Executable,
        command_type: CommandType,
        database: str | None = None,
        mode: CommandMode = CommandMode.MUTATING,
        timeout_seconds: int | None = None,
    ) -> CommandOutcome:
        """Run one audited command.

        Raises:
            CommandFailedError: If the server rejected the command
            BackendConnectionError: If the server could not be reached
            BackendTimeoutError: If the deadline expired
        """
        command = AuditedCommand(
            statement=statement,
            command_type=command_type,
            database=database,
            mode=mode,
            log_to_table=self.log_to_table,
            execute=self.execute,
            timeout_seconds=timeout_seconds,
        )

        if not self.execute:
            logger.info(f"[dry-run] {command_type.value}: {statement.render()}")
        else:
            logger.debug(f"{command_type.value} on {database}: {statement.render()}")

        return self.backend.run_command(command)
