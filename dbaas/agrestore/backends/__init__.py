"""
SQL Server instance backends.

Supported backends:
    - ODBC (pyodbc): real instances, commands routed through CommandExecute
    - In-memory: simulated instances and clusters for tests

The backend is selected at construction time; everything above this package
talks to the InstanceBackend protocol only.
"""

from .base import (
    BackendConnectionError,
    BackendError,
    BackendTimeoutError,
    BackupFile,
    CatalogView,
    CommandFailedError,
    DatabaseFile,
    FileGrowth,
    InstanceBackend,
    InstanceProperties,
    LinkedServerInfo,
    create_backend,
)

__all__ = [
    "InstanceBackend",
    "CatalogView",
    "BackupFile",
    "DatabaseFile",
    "FileGrowth",
    "InstanceProperties",
    "LinkedServerInfo",
    "BackendError",
    "BackendConnectionError",
    "BackendTimeoutError",
    "CommandFailedError",
    "create_backend",
]
