"""
agrestore - SQL Server restore tooling for availability-group databases.

This package restores a database onto an instance and brings it back into a
consistent, usable, optionally clustered state:
- Snapshot of the database authorization graph before the restore
- Physical restore with file relocation and post configuration
- Ordered replay of roles, users, ownership, membership, grants and properties
- Removal from and re-join to an availability group across all replicas

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌─────────────────────┐
    │    CLI      │────▶│   RestoreTool    │────▶│ AvailabilityGroup   │
    │ (agrestore) │     │ (orchestration)  │     │ Coordinator         │
    └─────────────┘     └────────┬─────────┘     └──────────┬──────────┘
                                 │                          │
             ┌───────────────────┼──────────────────┐       ▼
             ▼                   ▼                  ▼  ┌──────────────┐
      ┌────────────┐     ┌──────────────┐   ┌─────────┐│ ReplicaLink  │
      │  Capture   │     │RestoreExecutor│  │ Replay  ││ Manager      │
      └─────┬──────┘     └──────┬───────┘   └────┬────┘└──────┬───────┘
            │                   │                │            │
            ▼                   ▼                ▼            ▼
      ┌─────────────────────────────────────────────────────────────┐
      │      InstanceBackend (ODBC / in-memory) + CommandExecute      │
      └─────────────────────────────────────────────────────────────┘

Invariants:
    - The authorization snapshot is captured before the destructive restore
    - Every mutating statement goes through the audited command interface
    - Replay processes exactly one principal per iteration
    - A database joined on the primary but missing on a secondary is a failure
    - Cleanup runs whether the restore succeeded or not

How to change safely:
    - New statements must be typed (tsql/) and handled by every backend
    - Keep guards evaluated at apply time, never at plan time
    - Test ordering changes against both replay orders

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
