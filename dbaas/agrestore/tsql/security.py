"""
Database security statements: roles, users, ownership, membership, grants.

Invariants:
    - Securables render in CLASS::[schema].[name]([column]) form
    - Grant statements always carry their grantor (AS clause)
    - Extended properties on principals use level0type USER, which covers roles

How to change safely:
    - New securable classes need a prefix in SECURABLE_PREFIXES
    - Keep rendering identical for existing classes, captured plans are logged
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .base import Statement
from .quoting import n_literal, quote_name

# Catalog class_desc -> statement prefix
SECURABLE_PREFIXES = {
    "DATABASE": "DATABASE",
    "SCHEMA": "SCHEMA",
    "OBJECT_OR_COLUMN": "OBJECT",
    "DATABASE_PRINCIPAL": None,  # USER / ROLE / APPLICATION ROLE, from principal_class
    "ASSEMBLY": "ASSEMBLY",
    "TYPE": "TYPE",
    "XML_SCHEMA_COLLECTION": "XML SCHEMA COLLECTION",
    "SERVICE_CONTRACT": "CONTRACT",
    "MESSAGE_TYPE": "MESSAGE TYPE",
    "REMOTE_SERVICE_BINDING": "REMOTE SERVICE BINDING",
    "ROUTE": "ROUTE",
    "SERVICE": "SERVICE",
    "FULLTEXT_CATALOG": "FULLTEXT CATALOG",
    "FULLTEXT_STOPLIST": "FULLTEXT STOPLIST",
    "SYMMETRIC_KEYS": "SYMMETRIC KEY",
    "CERTIFICATE": "CERTIFICATE",
    "ASYMMETRIC_KEY": "ASYMMETRIC KEY",
}

# Catalog principal type_desc -> DATABASE_PRINCIPAL securable prefix
PRINCIPAL_SECURABLE_CLASSES = {
    "SQL_USER": "USER",
    "WINDOWS_USER": "USER",
    "WINDOWS_GROUP": "USER",
    "CERTIFICATE_MAPPED_USER": "USER",
    "ASYMMETRIC_KEY_MAPPED_USER": "USER",
    "EXTERNAL_USER": "USER",
    "EXTERNAL_GROUPS": "USER",
    "DATABASE_ROLE": "ROLE",
    "APPLICATION_ROLE": "APPLICATION ROLE",
}


class PermissionState(Enum):
    """Command state of an explicit permission."""

    GRANT = "GRANT"
    DENY = "DENY"
    REVOKE = "REVOKE"


@dataclass(frozen=True)
class Securable:
    """Typed reference to a securable.

    Attributes:
        securable_class: Catalog class_desc (DATABASE, SCHEMA, OBJECT_OR_COLUMN, ...)
        name: Securable name
        schema: Owning schema for schema-scoped securables
        column: Column name for column-level permissions
        principal_class: USER / ROLE / APPLICATION ROLE for DATABASE_PRINCIPAL
    """

    securable_class: str
    name: str
    schema: str | None = None
    column: str | None = None
    principal_class: str | None = None

    def prefix(self) -> str:
        if self.securable_class == "DATABASE_PRINCIPAL":
            if not self.principal_class:
                raise ValueError(f"Principal securable {self.name} has no principal class")
            return self.principal_class
        try:
            prefix = SECURABLE_PREFIXES[self.securable_class]
        except KeyError:
            raise ValueError(f"Unsupported securable class: {self.securable_class}")
        return prefix

    def render(self) -> str:
        target = quote_name(self.name)
        if self.schema:
            target = f"{quote_name(self.schema)}.{target}"
        if self.column:
            target = f"{target}({quote_name(self.column)})"
        return f"{self.prefix()}::{target}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for export."""
        return {
            "class": self.securable_class,
            "name": self.name,
            "schema": self.schema,
            "column": self.column,
            "principal_class": self.principal_class,
        }

    def __str__(self) -> str:
        return self.render()


class UserBinding(Enum):
    """How a database user is bound when it is created."""

    LOGIN = "login"
    WITHOUT_LOGIN = "without_login"
    CERTIFICATE = "certificate"
    EXTERNAL_PROVIDER = "external_provider"


@dataclass(frozen=True)
class CreateRole(Statement):
    name: str
    owner: str | None = None

    def render(self) -> str:
        sql = f"CREATE ROLE {quote_name(self.name)}"
        if self.owner:
            sql += f" AUTHORIZATION {quote_name(self.owner)}"
        return sql


@dataclass(frozen=True)
class DropRole(Statement):
    name: str

    def render(self) -> str:
        return f"DROP ROLE {quote_name(self.name)}"


@dataclass(frozen=True)
class AlterRoleAuthorization(Statement):
    """Transfer ownership of a role."""

    role: str
    owner: str

    def render(self) -> str:
        return f"ALTER AUTHORIZATION ON ROLE::{quote_name(self.role)} TO {quote_name(self.owner)}"


@dataclass(frozen=True)
class AddRoleMember(Statement):
    role: str
    member: str

    def render(self) -> str:
        return f"ALTER ROLE {quote_name(self.role)} ADD MEMBER {quote_name(self.member)}"


@dataclass(frozen=True)
class DropRoleMember(Statement):
    role: str
    member: str

    def render(self) -> str:
        return f"ALTER ROLE {quote_name(self.role)} DROP MEMBER {quote_name(self.member)}"


@dataclass(frozen=True)
class CreateUser(Statement):
    """CREATE USER for any of the supported bindings.

    Attributes:
        name: User name
        binding: Login, login-less, certificate or external provider
        login: Login name (LOGIN binding)
        certificate: Certificate name (CERTIFICATE binding)
        default_schema: Default schema, omitted for groups without one
    """

    name: str
    binding: UserBinding
    login: str | None = None
    certificate: str | None = None
    default_schema: str | None = None

    def render(self) -> str:
        sql = f"CREATE USER {quote_name(self.name)}"
        if self.binding == UserBinding.LOGIN:
            sql += f" FOR LOGIN {quote_name(self.login or self.name)}"
        elif self.binding == UserBinding.CERTIFICATE:
            sql += f" FOR CERTIFICATE {quote_name(self.certificate or '')}"
        elif self.binding == UserBinding.EXTERNAL_PROVIDER:
            sql += " FROM EXTERNAL PROVIDER"
        else:
            sql += " WITHOUT LOGIN"
        if self.default_schema and self.binding != UserBinding.CERTIFICATE:
            sql += f" WITH DEFAULT_SCHEMA={quote_name(self.default_schema)}"
        return sql


@dataclass(frozen=True)
class DropUser(Statement):
    name: str

    def render(self) -> str:
        return f"DROP USER {quote_name(self.name)}"


@dataclass(frozen=True)
class AlterSchemaAuthorization(Statement):
    """Transfer ownership of a schema."""

    schema: str
    principal: str

    def render(self) -> str:
        return (
            f"ALTER AUTHORIZATION ON SCHEMA::{quote_name(self.schema)} "
            f"TO {quote_name(self.principal)}"
        )


@dataclass(frozen=True)
class PermissionStatement(Statement):
    """GRANT / DENY / REVOKE of one permission on one securable."""

    state: PermissionState
    permission: str
    securable: Securable
    grantee: str
    grantor: str
    with_grant_option: bool = False
    cascade: bool = False

    def render(self) -> str:
        direction = "FROM" if self.state == PermissionState.REVOKE else "TO"
        sql = (
            f"{self.state.value} {self.permission} ON {self.securable.render()} "
            f"{direction} {quote_name(self.grantee)}"
        )
        if self.with_grant_option and self.state == PermissionState.GRANT:
            sql += " WITH GRANT OPTION"
        elif self.cascade and self.state != PermissionState.GRANT:
            sql += " CASCADE"
        return sql + f" AS {quote_name(self.grantor)}"


@dataclass(frozen=True)
class AddExtendedProperty(Statement):
    principal: str
    name: str
    value: str

    def render(self) -> str:
        return (
            "EXEC sys.sp_addextendedproperty "
            f"@name={n_literal(self.name)}, "
            f"@value={n_literal(self.value)}, "
            "@level0type=N'USER', "
            f"@level0name={n_literal(self.principal)}"
        )
