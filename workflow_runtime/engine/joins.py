"""
Join coordination for forked branches.

When a gateway forks N branches, the nearest join gateway reachable from
every branch expects N arrivals. A branch that forks again into the same
join hands its one arrival over to its own branches. The join fires for the
last arrival only,
regardless of the order branches complete or suspend in. Counters live in
the instance state so they survive suspension and persistence.
"""

import logging
from collections import deque
from typing import Optional

from workflow_runtime.core.activities import is_join
from workflow_runtime.core.models import JoinCounter, WorkflowDefinition, WorkflowInstanceState

logger = logging.getLogger(__name__)


def _join_distances(definition: WorkflowDefinition, start_id: str) -> dict[str, int]:
    """Breadth-first distances from start_id to every reachable join gateway."""
    distances: dict[str, int] = {}
    visited = {start_id}
    queue = deque([(start_id, 0)])

    while queue:
        activity_id, depth = queue.popleft()
        activity = definition.get_activity(activity_id)
        if activity is not None and is_join(activity):
            distances.setdefault(activity_id, depth)
            # Search stops at the first join on a path
            continue

        for successor in definition.successors(activity_id):
            if successor not in visited:
                visited.add(successor)
                queue.append((successor, depth + 1))

    return distances


def find_join(definition: WorkflowDefinition, branch_targets: list[str]) -> Optional[str]:
    """
    Find the join gateway that every branch converges on.

    Picks the join reachable from all branch targets with the smallest
    worst-case distance; ties resolve by activity id for determinism.

    Returns:
        Join activity id, or None when the branches never converge
    """
    if not branch_targets:
        return None

    common: Optional[dict[str, int]] = None
    for target in branch_targets:
        distances = _join_distances(definition, target)
        if common is None:
            common = distances
        else:
            common = {
                join_id: max(depth, distances[join_id])
                for join_id, depth in common.items()
                if join_id in distances
            }
        if not common:
            return None

    return min(common, key=lambda join_id: (common[join_id], join_id))


class JoinCoordinator:
    """
    Counts branch arrivals at join gateways of one instance.

    The coordinator only mutates ``state.join_counters``; the engine
    serialises access per instance, so no extra locking is needed.
    """

    def __init__(self, state: WorkflowInstanceState):
        self.state = state

    def register_fork(self, join_id: str, branch_count: int, forking_path_counted: bool = False) -> None:
        """
        Expect branch_count more arrivals at join_id.

        When the forking path was itself a branch of an earlier fork into the
        same join, its own arrival is replaced by its branches' arrivals.
        """
        counter = self.state.join_counters.setdefault(join_id, JoinCounter())
        counter.expected += branch_count - 1 if forking_path_counted else branch_count

        logger.debug(
            f"Instance {self.state.id}: join {join_id} expects {counter.expected} arrivals"
        )

    def arrive(self, join_id: str) -> bool:
        """
        Record one branch arriving at a join.

        Returns:
            True if the join should proceed (all branches arrived, or the
            join was reached without a registered fork)
        """
        counter = self.state.join_counters.get(join_id)
        if counter is None or counter.expected <= 1:
            self.state.join_counters.pop(join_id, None)
            return True

        counter.arrived += 1
        if counter.arrived >= counter.expected:
            del self.state.join_counters[join_id]
            logger.debug(f"Instance {self.state.id}: all branches arrived at join {join_id}")
            return True

        logger.debug(
            f"Instance {self.state.id}: branch arrived at join {join_id}, "
            f"waiting for {counter.expected - counter.arrived} more"
        )
        return False

    def pending(self) -> list[str]:
        """Joins still waiting for branches."""
        return list(self.state.join_counters.keys())
