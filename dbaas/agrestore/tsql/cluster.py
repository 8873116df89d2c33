"""
Availability group, linked server and remote procedure statements.
"""

from __future__ import annotations

from dataclasses import dataclass

from .base import Statement
from .quoting import n_literal, qualified, quote_name


@dataclass(frozen=True)
class RemoveDatabaseFromGroup(Statement):
    group: str
    database: str

    def render(self) -> str:
        return (
            f"ALTER AVAILABILITY GROUP {quote_name(self.group)} "
            f"REMOVE DATABASE {quote_name(self.database)}"
        )


@dataclass(frozen=True)
class AddDatabaseToGroup(Statement):
    group: str
    database: str

    def render(self) -> str:
        return (
            f"ALTER AVAILABILITY GROUP {quote_name(self.group)} "
            f"ADD DATABASE {quote_name(self.database)}"
        )


@dataclass(frozen=True)
class AddLinkedServer(Statement):
    server: str
    product: str = "SQL Server"

    def render(self) -> str:
        return (
            "EXEC master.dbo.sp_addlinkedserver "
            f"@server = {n_literal(self.server)}, @srvproduct = {n_literal(self.product)}"
        )


@dataclass(frozen=True)
class SetLinkedServerOption(Statement):
    server: str
    option: str
    value: str

    def render(self) -> str:
        return (
            "EXEC master.dbo.sp_serveroption "
            f"@server = {n_literal(self.server)}, "
            f"@optname = {n_literal(self.option)}, "
            f"@optvalue = {n_literal(self.value)}"
        )


@dataclass(frozen=True)
class ExecuteRemoteProcedure(Statement):
    """EXEC of a procedure on a linked server with string parameters.

    Attributes:
        server: Linked server name
        procedure: Procedure name in [master].[dbo]
        parameters: (name, value) pairs, names without the @ sign
    """

    server: str
    procedure: str
    parameters: tuple[tuple[str, str], ...] = ()

    def render(self) -> str:
        target = qualified(self.server, "master", "dbo", self.procedure)
        args = ",\n    ".join(f"@{name} = {n_literal(value)}" for name, value in self.parameters)
        return f"EXEC {target}\n    {args}" if args else f"EXEC {target}"

    def summary(self) -> str:
        return f"EXEC {qualified(self.server, 'master', 'dbo', self.procedure)}"

    def parameter(self, name: str) -> str | None:
        for key, value in self.parameters:
            if key == name:
                return value
        return None
