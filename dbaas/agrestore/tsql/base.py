"""
Statement base type, existence guards and batches.

A statement is a typed value that renders to T-SQL. Guards are existence
preconditions evaluated by the server at apply time; a guarded statement whose
guards do not hold is skipped and reported instead of failing the batch.

Invariants:
    - render() never ends with a statement terminator; batches add it
    - Guards are data, so every backend can evaluate them
    - A skipped guarded statement prints ANOMALY_MARKER followed by its reason

How to change safely:
    - New guard types must be handled by every backend
    - Keep the anomaly message format stable, the ODBC backend parses it
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Union

from .quoting import n_literal, quote_name

ANOMALY_MARKER = "REPLAY-ANOMALY:"
ANOMALY_SEPARATOR = " | "


class Statement:
    """Base class for typed T-SQL statements."""

    def render(self) -> str:
        raise NotImplementedError

    def summary(self) -> str:
        """One-line description used in logs and anomaly reports."""
        return self.render().splitlines()[0]


@dataclass(frozen=True)
class PrincipalExists:
    """A database principal with this name exists."""

    name: str

    def render(self) -> str:
        return f"DATABASE_PRINCIPAL_ID({n_literal(self.name)}) IS NOT NULL"

    def describe(self) -> str:
        return f"principal {self.name} does not exist"


@dataclass(frozen=True)
class RoleExists:
    """A database role (type R) with this name exists."""

    name: str

    def render(self) -> str:
        return (
            "EXISTS (SELECT 1 FROM sys.database_principals "
            f"WHERE name = {n_literal(self.name)} AND type = 'R')"
        )

    def describe(self) -> str:
        return f"role {self.name} does not exist"


@dataclass(frozen=True)
class SchemaExists:
    """A schema with this name exists."""

    name: str

    def render(self) -> str:
        return f"SCHEMA_ID({n_literal(self.name)}) IS NOT NULL"

    def describe(self) -> str:
        return f"schema {self.name} does not exist"


@dataclass(frozen=True)
class ExtendedPropertyAbsent:
    """The principal has no extended property with this name."""

    principal: str
    property_name: str

    def render(self) -> str:
        return (
            "NOT EXISTS (SELECT 1 FROM sys.extended_properties "
            "WHERE class_desc = N'DATABASE_PRINCIPAL' "
            f"AND major_id = DATABASE_PRINCIPAL_ID({n_literal(self.principal)}) "
            f"AND name = {n_literal(self.property_name)})"
        )

    def describe(self) -> str:
        return f"property {self.property_name} already set on {self.principal}"


@dataclass(frozen=True)
class ObjectExists:
    """A schema-scoped object with this name exists."""

    schema: str
    name: str

    def render(self) -> str:
        target = f"{quote_name(self.schema)}.{quote_name(self.name)}"
        return f"OBJECT_ID({n_literal(target)}) IS NOT NULL"

    def describe(self) -> str:
        return f"object {self.schema}.{self.name} does not exist"


Guard = Union[PrincipalExists, RoleExists, SchemaExists, ObjectExists, ExtendedPropertyAbsent]


@dataclass(frozen=True)
class Guarded(Statement):
    """A statement that only runs when all of its guards hold.

    Attributes:
        statement: Statement to run
        guards: Preconditions, all of which must hold
        otherwise: Optional statement to run instead when a guard fails
        report: Print an anomaly when a guard fails
    """

    statement: Statement
    guards: tuple[Guard, ...]
    otherwise: Statement | None = None
    report: bool = True

    def render(self) -> str:
        condition = " AND ".join(guard.render() for guard in self.guards)
        message = n_literal(ANOMALY_MARKER + " " + self.anomaly_text())
        lines = [f"IF {condition}", "BEGIN", f"    {self.statement.render()};", "END"]
        if not self.report and self.otherwise is None:
            return "\n".join(lines)
        lines.extend(["ELSE", "BEGIN"])
        if self.report:
            lines.append(f"    PRINT {message};")
        if self.otherwise is not None:
            lines.append(f"    {self.otherwise.render()};")
        lines.append("END")
        return "\n".join(lines)

    def summary(self) -> str:
        return self.statement.summary()

    def anomaly_text(self, failed: Sequence[Guard] | None = None) -> str:
        """Anomaly description: statement summary and unmet requirement(s)."""
        reasons = failed if failed is not None else self.guards
        reason = " or ".join(guard.describe() for guard in reasons)
        return f"{self.summary()}{ANOMALY_SEPARATOR}{reason}"


@dataclass(frozen=True)
class StatementBatch:
    """Statements sent to the server as one command.

    Attributes:
        database: Database context (USE) or None for the current one
        statements: Statements in execution order
        atomic: Wrap in a transaction with XACT_ABORT so the batch is all or nothing
    """

    database: str | None
    statements: tuple[Statement, ...]
    atomic: bool = False

    def render(self) -> str:
        lines = []
        if self.database:
            lines.append(f"USE {quote_name(self.database)};")
        if self.atomic:
            lines.append("SET XACT_ABORT ON;")
            lines.append("BEGIN TRANSACTION;")
        for statement in self.statements:
            lines.append(f"{statement.render()};")
        if self.atomic:
            lines.append("COMMIT TRANSACTION;")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self.statements)
