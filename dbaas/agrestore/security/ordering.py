"""
Replay order of captured principals.

Every principal gets a replay rank; principals are replayed in descending
rank, ties broken by ascending principal id. Two strategies exist:

ROLES_FIRST (default):
    roles rank 2 + (max_depth - depth), application roles 1, users 0.
    Depth counts both role membership and ownership by another captured
    role, so every role is replayed before its captured members and the
    roles it owns.

COMPATIBLE:
    application roles 0, roles 1 - depth, users 2. Users are replayed
    before the roles they belong to, and dropping and recreating a role
    afterwards detaches them again. Kept for operators who depend on the
    historical behavior.

Invariants:
    - Resolution never fails; cycles are bounded and logged
    - A role reachable through several parents keeps its longest depth
    - Parents outside the captured set are ignored (the role is a root)

How to change safely:
    - The order decides which relationships survive a COMPATIBLE replay;
      cover changes with a replay round-trip test
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from .snapshot import Principal, PrincipalKind, PrincipalSnapshot, RoleRank

logger = logging.getLogger(__name__)


class ReplayOrder(str, Enum):
    """Principal replay ordering strategy."""

    ROLES_FIRST = "roles-first"
    COMPATIBLE = "compatible"


def compute_depths(role_ids: Iterable[int], edges: Iterable[tuple[int, int]]) -> dict[int, int]:
    """Longest distance of every role from a root.

    Args:
        role_ids: Captured role ids
        edges: (before, after) pairs; ``after`` depends on ``before``

    Returns:
        Depth per role id. Expansion is bounded by the number of roles, so a
        cyclic input terminates; roles only reachable through a cycle keep 0.
    """
    roles = set(role_ids)
    children: dict[int, list[int]] = {role: [] for role in roles}
    has_parent: set[int] = set()
    for before, after in edges:
        if before in roles and after in roles and before != after:
            children[before].append(after)
            has_parent.add(after)

    bound = len(roles)
    roots = sorted(roles - has_parent)
    depths = {role: 0 for role in roots}
    queue = deque(roots)
    truncated = False

    while queue:
        node = queue.popleft()
        for child in children[node]:
            depth = depths[node] + 1
            if depth >= bound:
                truncated = True
                continue
            if depth > depths.get(child, -1):
                depths[child] = depth
                queue.append(child)

    unreachable = sorted(roles - depths.keys())
    if truncated or unreachable:
        logger.warning(
            "Role hierarchy contains a cycle, replay order of the roles involved is arbitrary",
            extra={"unreachable_roles": unreachable},
        )
    for role in unreachable:
        depths[role] = 0
    return depths


@dataclass(frozen=True)
class ReplayPlan:
    """Resolved replay order.

    Attributes:
        order: Strategy used
        ranks: Replay rank per principal id
        depths: Depth per role id
        ordered: Principals in replay order
    """

    order: ReplayOrder
    ranks: dict[int, int] = field(default_factory=dict)
    depths: dict[int, int] = field(default_factory=dict)
    ordered: tuple[Principal, ...] = ()

    @property
    def role_ranks(self) -> list[RoleRank]:
        return [RoleRank(role_id, depth) for role_id, depth in sorted(self.depths.items())]

    def rows(self) -> list[dict[str, object]]:
        """Tabular view of the plan for diagnostics."""
        return [
            {
                "position": index + 1,
                "name": principal.name,
                "kind": principal.kind.name,
                "depth": self.depths.get(principal.principal_id),
                "rank": self.ranks[principal.principal_id],
            }
            for index, principal in enumerate(self.ordered)
        ]


class CreateOrderResolver:
    """Computes the replay order of a snapshot.

    Example:
        >>> plan = CreateOrderResolver().resolve(snapshot)
        >>> [p.name for p in plan.ordered]
        ['Base', 'Mid', 'Top', 'alice']
    """

    def __init__(self, order: ReplayOrder = ReplayOrder.ROLES_FIRST) -> None:
        self.order = order

    def resolve(self, snapshot: PrincipalSnapshot) -> ReplayPlan:
        role_ids = [role.principal_id for role in snapshot.roles]
        edges = [(edge.parent_id, edge.child_id) for edge in snapshot.hierarchy]
        if self.order == ReplayOrder.ROLES_FIRST:
            edges.extend(
                (role.owner_id, role.principal_id)
                for role in snapshot.roles
                if role.owner_id is not None
            )
        depths = compute_depths(role_ids, edges)
        max_depth = max(depths.values(), default=0)

        ranks = {
            principal.principal_id: self._rank(principal, depths, max_depth)
            for principal in snapshot.principals
        }
        ordered = tuple(
            sorted(snapshot.principals, key=lambda p: (-ranks[p.principal_id], p.principal_id))
        )
        logger.debug(
            f"Resolved {self.order.value} replay order for {snapshot.database}",
            extra={"order": [p.name for p in ordered]},
        )
        return ReplayPlan(order=self.order, ranks=ranks, depths=depths, ordered=ordered)

    def _rank(self, principal: Principal, depths: dict[int, int], max_depth: int) -> int:
        depth = depths.get(principal.principal_id, 0)
        if self.order == ReplayOrder.COMPATIBLE:
            if principal.kind == PrincipalKind.APPLICATION_ROLE:
                return 0
            if principal.kind.is_role:
                return 1 - depth
            return 2
        if principal.kind.is_role:
            return 2 + (max_depth - depth)
        if principal.kind == PrincipalKind.APPLICATION_ROLE:
            return 1
        return 0
