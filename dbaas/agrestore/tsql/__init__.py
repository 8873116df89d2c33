"""
Typed T-SQL statement builder.

Statements are values that render to T-SQL; they never concatenate raw input
and carry their existence preconditions as guards evaluated at apply time.

Invariants:
    - Every identifier is bracket-quoted, every value is an N'' literal
    - Backends receive the typed statement together with its rendered text

How to change safely:
    - Add new statement types here and teach every backend to apply them
    - Test rendering of quoted identifiers containing ] and '
"""

from .base import (
    ANOMALY_MARKER,
    ANOMALY_SEPARATOR,
    ExtendedPropertyAbsent,
    Guard,
    Guarded,
    ObjectExists,
    PrincipalExists,
    RoleExists,
    SchemaExists,
    Statement,
    StatementBatch,
)
from .cluster import (
    AddDatabaseToGroup,
    AddLinkedServer,
    ExecuteRemoteProcedure,
    RemoveDatabaseFromGroup,
    SetLinkedServerOption,
)
from .database import (
    BackupDatabase,
    BackupLog,
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
from .quoting import n_literal, qualified, quote_name
from .security import (
    PRINCIPAL_SECURABLE_CLASSES,
    SECURABLE_PREFIXES,
    AddExtendedProperty,
    AddRoleMember,
    AlterRoleAuthorization,
    AlterSchemaAuthorization,
    CreateRole,
    CreateUser,
    DropRole,
    DropRoleMember,
    DropUser,
    PermissionState,
    PermissionStatement,
    Securable,
    UserBinding,
)

__all__ = [
    # Base
    "Statement",
    "StatementBatch",
    "Guarded",
    "Guard",
    "PrincipalExists",
    "RoleExists",
    "SchemaExists",
    "ObjectExists",
    "ExtendedPropertyAbsent",
    "ANOMALY_MARKER",
    "ANOMALY_SEPARATOR",
    # Quoting
    "quote_name",
    "n_literal",
    "qualified",
    # Security
    "SECURABLE_PREFIXES",
    "PRINCIPAL_SECURABLE_CLASSES",
    "Securable",
    "PermissionState",
    "UserBinding",
    "CreateRole",
    "DropRole",
    "AlterRoleAuthorization",
    "AddRoleMember",
    "DropRoleMember",
    "CreateUser",
    "DropUser",
    "AlterSchemaAuthorization",
    "PermissionStatement",
    "AddExtendedProperty",
    # Database
    "FileMove",
    "RestoreDatabase",
    "SetDatabaseOffline",
    "DropDatabase",
    "SetFileGrowth",
    "ResizeFile",
    "ShrinkFile",
    "SetRecovery",
    "RenameFile",
    "SetMultiUser",
    "SetOnline",
    "BackupDatabase",
    "BackupLog",
    # Cluster
    "RemoveDatabaseFromGroup",
    "AddDatabaseToGroup",
    "AddLinkedServer",
    "SetLinkedServerOption",
    "ExecuteRemoteProcedure",
]
