"""
Availability group orchestration around a restore.
"""

from .coordinator import (
    AvailabilityGroupCoordinator,
    CheckOutcome,
    CoordinatorState,
    seeding_backup_paths,
)
from .replica_link import LinkedServerReplicaClient, ReplicaClient, ReplicaLinkManager, ReplicaTarget

__all__ = [
    "AvailabilityGroupCoordinator",
    "CheckOutcome",
    "CoordinatorState",
    "seeding_backup_paths",
    "LinkedServerReplicaClient",
    "ReplicaClient",
    "ReplicaLinkManager",
    "ReplicaTarget",
]
