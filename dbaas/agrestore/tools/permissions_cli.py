"""
Permissions diagnostics.

Read-only inspection of what a restore with preserved permissions would
capture and in which order it would replay the principals:
- capture: Export the principal graph of a database to JSON
- order: Show the replay order

Usage:
    agrestore permissions capture --database SalesDB > SalesDB.principals.json
    agrestore permissions order --database SalesDB --replay-order compatible

Invariants:
    - Never issues a command against the instance
    - JSON output is deterministic (sorted keys)

How to change safely:
    - Keep output formats stable, operators diff them between restores
"""

from __future__ import annotations

import json
import logging

from ..backends.base import InstanceBackend
from ..security import CreateOrderResolver, PrincipalGraphCapture, ReplayOrder, ReplayPlan

logger = logging.getLogger(__name__)


class PermissionsCLI:
    """Diagnostics for permission preservation.

    Example:
        >>> cli = PermissionsCLI(backend)
        >>> print(cli.capture("SalesDB"))
        >>> print(cli.order("SalesDB"))
    """

    def __init__(self, backend: InstanceBackend) -> None:
        self.backend = backend

    def capture(self, database: str) -> str:
        """Principal graph of ``database`` as JSON."""
        snapshot = PrincipalGraphCapture(self.backend).capture(database)
        output = {"version": 1, "snapshot": snapshot.to_dict()}
        return json.dumps(output, indent=2, sort_keys=True)

    def plan(self, database: str, order: ReplayOrder = ReplayOrder.ROLES_FIRST) -> ReplayPlan:
        snapshot = PrincipalGraphCapture(self.backend).capture(database)
        return CreateOrderResolver(order).resolve(snapshot)

    def order(self, database: str, order: ReplayOrder = ReplayOrder.ROLES_FIRST) -> str:
        """Replay order of ``database`` as a text table."""
        rows = self.plan(database, order).rows()
        header = f"{'#':>4}  {'principal':<32} {'kind':<18} {'depth':>5} {'rank':>5}"
        lines = [f"Replay order ({order.value}) for {database}", header, "-" * len(header)]
        for row in rows:
            depth = "" if row["depth"] is None else str(row["depth"])
            lines.append(
                f"{row['position']:>4}  {row['name']:<32} {row['kind']:<18} {depth:>5} {row['rank']:>5}"
            )
        if not rows:
            lines.append("  (no principals captured)")
        return "\n".join(lines)
