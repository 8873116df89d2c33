"""
Physical restore and post configuration of the restored database.

Invariants:
    - Every mutation goes through the audited CommandExecutor
    - Data files are relocated to the instance data path, log files to the
      instance log path, named after the target database
    - Log files end up at LOG_FILE_TARGET_MB after post configuration

How to change safely:
    - Logical file names are renamed to <db>_Data[_n] / <db>_Log[_n]; jobs
      and maintenance plans may depend on them
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable

from ..audit import CommandExecutor, CommandMode, CommandType
from ..backends.base import BackendError, BackupFile, CommandFailedError, DatabaseFile, InstanceBackend
from ..environment import InstanceEnvironment, join_path
from ..errors import RestoreError
from ..tsql import (
    DropDatabase,
    FileMove,
    RenameFile,
    ResizeFile,
    RestoreDatabase,
    SetDatabaseOffline,
    SetFileGrowth,
    SetMultiUser,
    SetOnline,
    SetRecovery,
    ShrinkFile,
)

logger = logging.getLogger(__name__)

LOG_FILE_TARGET_MB = 256

_FILE_SUFFIX = {"D": "_Data", "L": "_Log"}


@dataclass(frozen=True)
class RestorePlan:
    """Restore of one backup onto one database.

    Attributes:
        database: Target database
        backup_file: Full backup to restore from
        files: File inventory of the backup
        statement: RESTORE DATABASE statement with MOVE clauses
    """

    database: str
    backup_file: str
    files: tuple[BackupFile, ...]
    statement: RestoreDatabase


def server_message(error: BackendError) -> str:
    return error.server_message if isinstance(error, CommandFailedError) else str(error)


def numbered(base: str, index: int) -> str:
    """First file keeps ``base``, later ones get _2, _3, ..."""
    return base if index == 1 else f"{base}_{index}"


def in_family(name: str, base: str) -> bool:
    """True for ``base`` itself and its numbered variants."""
    if name == base:
        return True
    prefix, _, index = name.rpartition("_")
    return prefix == base and index.isdigit()


class RestoreExecutor:
    """Restores a full backup and brings the database into shape.

    Example:
        >>> restorer = RestoreExecutor(backend, executor)
        >>> files = restorer.file_inventory(r"B:\\Backup\\SalesDB.bak")
        >>> plan = restorer.plan("SalesDB", r"B:\\Backup\\SalesDB.bak", files, environment)
        >>> restorer.restore(plan)
        >>> restorer.post_configure(plan, check_model_autogrowth=True)
        >>> restorer.bring_online("SalesDB")
    """

    def __init__(
        self,
        backend: InstanceBackend,
        executor: CommandExecutor,
        announce: Callable[[str], None] | None = None,
    ) -> None:
        self.backend = backend
        self.executor = executor
        self.announce = announce or logger.info

    def file_inventory(self, backup_file: str) -> list[BackupFile]:
        """RESTORE FILELISTONLY of ``backup_file``.

        Raises:
            RestoreError: If the backup cannot be read
        """
        try:
            files = self.backend.restore_file_list(backup_file)
        except BackendError as e:
            message = server_message(e)
            raise RestoreError(
                f"{message} Please check if file {backup_file} exists and if not used by another process.",
                backup_file=backup_file,
                server_message=message,
            ) from e
        logger.debug(f"Backup {backup_file} holds {len(files)} files")
        return files

    def plan(
        self,
        database: str,
        backup_file: str,
        files: list[BackupFile],
        environment: InstanceEnvironment,
    ) -> RestorePlan:
        self.announce(" - building restore command")
        counters: dict[str, int] = defaultdict(int)
        moves = []
        for backup_file_entry in files:
            counters[backup_file_entry.file_type] += 1
            directory = environment.log_path if backup_file_entry.file_type == "L" else environment.data_path
            name = numbered(database, counters[backup_file_entry.file_type]) + backup_file_entry.extension
            moves.append(FileMove(backup_file_entry.logical_name, join_path(directory, name)))

        statement = RestoreDatabase(database, backup_file, moves=tuple(moves))
        return RestorePlan(database, backup_file, tuple(files), statement)

    def restore(self, plan: RestorePlan) -> None:
        """Replace the database with the content of the backup.

        Raises:
            RestoreError: If the server rejected the restore
        """
        database = plan.database
        try:
            if self.backend.database_exists(database):
                self.executor.run(SetDatabaseOffline(database), CommandType.DATABASE_OFFLINE, database)
                self.executor.run(DropDatabase(database), CommandType.DROP_DATABASE, database)

            self.executor.run(
                plan.statement,
                CommandType.RESTORE_DATABASE,
                database,
                mode=CommandMode.INFORMATIONAL,
            )
        except BackendError as e:
            message = server_message(e)
            raise RestoreError(
                f"Restore of {database} from {plan.backup_file} failed: {message}",
                backup_file=plan.backup_file,
                server_message=message,
            ) from e
        logger.info(f"Restored {database} from {plan.backup_file}")

    def _current_files(self, plan: RestorePlan) -> list[DatabaseFile]:
        if self.executor.execute:
            return self.backend.database_files(plan.database)
        # Dry run: the database was not restored, describe it from the backup
        return [
            DatabaseFile(index, f.logical_name, f.file_type, f.size // 8192)
            for index, f in enumerate(plan.files, start=1)
        ]

    def post_configure(self, plan: RestorePlan, check_model_autogrowth: bool = False) -> None:
        """Autogrowth, log size, recovery model and logical file names.

        Raises:
            RestoreError: If a configuration command was rejected
        """
        database = plan.database
        try:
            files = self._current_files(plan)
            if check_model_autogrowth:
                self._copy_model_autogrowth(database, files)
            self._resize_log(database, files)
            self._rename_files(database, files)
        except BackendError as e:
            message = server_message(e)
            raise RestoreError(
                f"Post configuration of {database} failed: {message}",
                backup_file=plan.backup_file,
                server_message=message,
            ) from e

    def _copy_model_autogrowth(self, database: str, files: list[DatabaseFile]) -> None:
        self.announce(" - set autogrowth values based on model database")
        growth = self.backend.model_file_growth()
        for data_file in files:
            model = growth.get(data_file.file_type)
            if model is None:
                continue
            # model growth is in 8 KB pages unless it is a percentage
            value = model.growth if model.is_percent_growth else model.growth * 8
            self.executor.run(
                SetFileGrowth(database, data_file.logical_name, value, percent=model.is_percent_growth),
                CommandType.ALTER_DATABASE_FILE,
                database,
            )

    def _resize_log(self, database: str, files: list[DatabaseFile]) -> None:
        self.announce(" - shrink log file")
        self.executor.run(SetRecovery(database, "SIMPLE"), CommandType.SET_RECOVERY, database)
        for log_file in (f for f in files if f.file_type == "L"):
            if log_file.size_mb > LOG_FILE_TARGET_MB:
                self.executor.run(
                    ShrinkFile(database, log_file.logical_name, LOG_FILE_TARGET_MB),
                    CommandType.SHRINK_LOG,
                    database,
                )
            elif log_file.size_mb < LOG_FILE_TARGET_MB:
                self.executor.run(
                    ResizeFile(database, log_file.logical_name, LOG_FILE_TARGET_MB),
                    CommandType.ALTER_DATABASE_FILE,
                    database,
                )
        self.executor.run(SetRecovery(database, "FULL"), CommandType.SET_RECOVERY, database)

    def _rename_files(self, database: str, files: list[DatabaseFile]) -> None:
        self.announce(" - rename files")
        names = {f.logical_name for f in files}
        ordered = sorted(files, key=lambda f: (f.file_type != "D", f.file_id))
        counters: dict[str, int] = defaultdict(int)
        for data_file in ordered:
            suffix = _FILE_SUFFIX.get(data_file.file_type)
            if suffix is None:
                continue
            base = database + suffix
            if in_family(data_file.logical_name, base):
                continue
            counters[data_file.file_type] += 1
            new_name = numbered(base, counters[data_file.file_type])
            # Names already held by another file are skipped, not taken over
            while new_name in names:
                counters[data_file.file_type] += 1
                new_name = numbered(base, counters[data_file.file_type])
            self.executor.run(
                RenameFile(database, data_file.logical_name, new_name),
                CommandType.ALTER_DATABASE_FILE,
                database,
            )
            names.discard(data_file.logical_name)
            names.add(new_name)

    def bring_online(self, database: str) -> None:
        if self.executor.execute and not self.backend.database_exists(database):
            return
        try:
            self.announce(" - set multi user")
            self.executor.run(SetMultiUser(database), CommandType.SET_MULTI_USER, database)
            self.announce(" - set online")
            self.executor.run(SetOnline(database), CommandType.SET_ONLINE, database)
        except BackendError as e:
            raise RestoreError(
                f"Cannot bring {database} online: {server_message(e)}", server_message=server_message(e)
            ) from e
