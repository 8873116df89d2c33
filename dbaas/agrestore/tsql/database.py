"""
Database-level statements: restore, backup, file and state changes.
"""

from __future__ import annotations

from dataclasses import dataclass

from .base import Statement
from .quoting import n_literal, quote_name


@dataclass(frozen=True)
class FileMove:
    """MOVE clause of a restore: logical file -> physical path."""

    logical_name: str
    physical_path: str

    def render(self) -> str:
        return f"MOVE {n_literal(self.logical_name)} TO {n_literal(self.physical_path)}"


@dataclass(frozen=True)
class RestoreDatabase(Statement):
    database: str
    backup_file: str
    moves: tuple[FileMove, ...] = ()
    file_number: int = 1
    replace: bool = True
    norecovery: bool = False

    def render(self) -> str:
        options = [f"FILE = {self.file_number}", "NOUNLOAD"]
        if self.replace:
            options.append("REPLACE")
        if self.norecovery:
            options.append("NORECOVERY")
        options.extend(move.render() for move in self.moves)
        return (
            f"RESTORE DATABASE {quote_name(self.database)} "
            f"FROM DISK = {n_literal(self.backup_file)} WITH " + ", ".join(options)
        )

    def summary(self) -> str:
        return f"RESTORE DATABASE {quote_name(self.database)} FROM {self.backup_file}"


@dataclass(frozen=True)
class SetDatabaseOffline(Statement):
    database: str

    def render(self) -> str:
        return f"ALTER DATABASE {quote_name(self.database)} SET OFFLINE WITH ROLLBACK IMMEDIATE"


@dataclass(frozen=True)
class DropDatabase(Statement):
    database: str

    def render(self) -> str:
        return f"DROP DATABASE {quote_name(self.database)}"


@dataclass(frozen=True)
class SetFileGrowth(Statement):
    """FILEGROWTH in KB, or in percent when ``percent`` is set."""

    database: str
    logical_name: str
    growth: int
    percent: bool = False

    def render(self) -> str:
        growth = f"{self.growth}%" if self.percent else f"{self.growth}KB"
        return (
            f"ALTER DATABASE {quote_name(self.database)} MODIFY FILE "
            f"( NAME = {n_literal(self.logical_name)}, FILEGROWTH = {growth} )"
        )


@dataclass(frozen=True)
class ResizeFile(Statement):
    database: str
    logical_name: str
    size_mb: int

    def render(self) -> str:
        return (
            f"ALTER DATABASE {quote_name(self.database)} MODIFY FILE "
            f"( NAME = {n_literal(self.logical_name)}, SIZE = {self.size_mb}MB )"
        )


@dataclass(frozen=True)
class ShrinkFile(Statement):
    database: str
    logical_name: str
    target_mb: int

    def render(self) -> str:
        return (
            f"USE {quote_name(self.database)}; "
            f"DBCC SHRINKFILE ({n_literal(self.logical_name)}, {self.target_mb})"
        )


@dataclass(frozen=True)
class SetRecovery(Statement):
    database: str
    model: str  # SIMPLE or FULL

    def render(self) -> str:
        return f"ALTER DATABASE {quote_name(self.database)} SET RECOVERY {self.model} WITH NO_WAIT"


@dataclass(frozen=True)
class RenameFile(Statement):
    database: str
    logical_name: str
    new_name: str

    def render(self) -> str:
        return (
            f"ALTER DATABASE {quote_name(self.database)} MODIFY FILE "
            f"(NAME = {n_literal(self.logical_name)}, NEWNAME = {n_literal(self.new_name)})"
        )


@dataclass(frozen=True)
class SetMultiUser(Statement):
    database: str

    def render(self) -> str:
        return f"ALTER DATABASE {quote_name(self.database)} SET MULTI_USER"


@dataclass(frozen=True)
class SetOnline(Statement):
    database: str

    def render(self) -> str:
        return f"ALTER DATABASE {quote_name(self.database)} SET ONLINE"


@dataclass(frozen=True)
class BackupDatabase(Statement):
    """Full backup used to seed replicas (overwrites the target file)."""

    database: str
    path: str

    def render(self) -> str:
        return (
            f"BACKUP DATABASE {quote_name(self.database)} TO DISK = {n_literal(self.path)} "
            "WITH FORMAT, INIT, SKIP, REWIND, NOUNLOAD"
        )


@dataclass(frozen=True)
class BackupLog(Statement):
    database: str
    path: str

    def render(self) -> str:
        return (
            f"BACKUP LOG {quote_name(self.database)} TO DISK = {n_literal(self.path)} "
            "WITH NOFORMAT, NOINIT, NOSKIP, REWIND, NOUNLOAD"
        )
