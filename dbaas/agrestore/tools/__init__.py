"""
CLI tools for SQL Server restores.

This module provides:
- restore: Restore a database, preserve its permissions, rejoin its
  availability group
- permissions: Inspect what a permission-preserving restore would replay

Invariants:
    - Every mutation is audited through CommandExecute
    - Diagnostics never mutate the instance
"""

from .permissions_cli import PermissionsCLI
from .restore import RestoreResult, RestoreTool

__all__ = ["PermissionsCLI", "RestoreResult", "RestoreTool"]
