"""
Error types for agrestore.

This module defines the fatal error taxonomy of a restore invocation:
- RestoreToolError: Base exception
- PreconditionError: Privileges, collaborator objects, parameter combinations
- ClusterTopologyError: Availability group checks
- CaptureError: Authorization snapshot could not be read
- RestoreError: Backup unreadable or restore rejected
- ReplayError: A permission replay batch was rejected
- RemoteJoinError: A secondary replica could not join the database

Replay anomalies (guards that did not hold) are not errors; see
security.replay.ReplayAnomaly.

Invariants:
    - All errors inherit from RestoreToolError
    - Errors include context for debugging
    - Error messages are actionable and safe to show to operators
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RestoreToolError(Exception):
    """Base exception for all agrestore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "RESTORE_TOOL_ERROR"
        self.details = details or {}


class PreconditionError(RestoreToolError):
    """A requirement for running the restore is not met.

    Raised before any mutation when:
    - The caller is not a member of the sysadmin server role
    - CommandExecute or CommandLog is missing
    - An invalid parameter combination was given
    """

    def __init__(self, message: str, requirement: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="PRECONDITION_FAILED",
            details={"requirement": requirement},
        )
        self.requirement = requirement


class ClusterTopologyError(RestoreToolError):
    """The availability group topology does not allow the restore."""

    def __init__(
        self,
        message: str,
        availability_group: Optional[str] = None,
        server_name: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CLUSTER_TOPOLOGY_ERROR",
            details={"availability_group": availability_group, "server_name": server_name},
        )
        self.availability_group = availability_group
        self.server_name = server_name


class CaptureError(RestoreToolError):
    """The authorization state of the source database could not be captured."""

    def __init__(self, message: str, database: Optional[str] = None) -> None:
        super().__init__(message, code="CAPTURE_ERROR", details={"database": database})
        self.database = database


class RestoreError(RestoreToolError):
    """The backup could not be read or the restore was rejected.

    The server message is kept verbatim in ``server_message``.
    """

    def __init__(
        self,
        message: str,
        backup_file: Optional[str] = None,
        server_message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="RESTORE_ERROR",
            details={"backup_file": backup_file, "server_message": server_message},
        )
        self.backup_file = backup_file
        self.server_message = server_message


class ReplayError(RestoreToolError):
    """A permission replay batch was rejected by the server."""

    def __init__(self, message: str, principal: Optional[str] = None) -> None:
        super().__init__(message, code="REPLAY_ERROR", details={"principal": principal})
        self.principal = principal


class RemoteJoinError(RestoreToolError):
    """A secondary replica could not join the database.

    Raised when:
    - The secondary is unreachable or the remote call timed out
    - The remote join procedure is missing on the secondary
    - The remote join procedure failed
    """

    def __init__(
        self,
        message: str,
        replica: Optional[str] = None,
        availability_group: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="REMOTE_JOIN_ERROR",
            details={"replica": replica, "availability_group": availability_group},
        )
        self.replica = replica
        self.availability_group = availability_group
