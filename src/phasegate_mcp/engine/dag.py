"""
DAG dependency resolution for phase execution order.

ARCHITECTURAL DECISION: This module is intentionally SYNCHRONOUS.

Rationale:
- Pure in-memory graph algorithms (Kahn's topological sort, wave computation)
- No I/O operations
- Used as the planning step before async phase execution

Design Pattern:
    1. DAGResolver.get_execution_waves() → synchronous planning
    2. DependencyScheduler.execute() → async execution of planned waves
"""

from collections import deque
from typing import Literal

from .models import Wave
from .results import LoadResult


class DAGResolver:
    """Resolves execution order for phases based on dependencies.

    Dependencies on phases outside the batch are ignored: they are treated as
    already satisfied, so a partial batch can be planned on its own.
    """

    def __init__(self, phases: list[str], dependencies: dict[str, list[str]]):
        """
        Initialize DAG resolver.

        Args:
            phases: Phase ids in declaration order (duplicates are dropped)
            dependencies: Dict mapping phase id to the phase ids it depends on
        """
        self.phases = list(dict.fromkeys(phases))
        self.dependencies = dependencies

    def _in_batch_dependencies(self) -> dict[str, list[str]]:
        members = set(self.phases)
        return {
            phase: [
                dep for dep in self.dependencies.get(phase, []) if dep in members and dep != phase
            ]
            for phase in self.phases
        }

    def topological_sort(self) -> LoadResult[list[str]]:
        """
        Perform a strict topological sort (used to validate workflow types).

        Unlike wave planning, unknown dependencies are an error here.

        Returns:
            Result containing ordered list of phase ids or error if cyclic dependency
        """
        in_degree = {phase: 0 for phase in self.phases}
        adj_list: dict[str, list[str]] = {phase: [] for phase in self.phases}

        for phase, deps in self.dependencies.items():
            if phase not in in_degree:
                return LoadResult.failure(f"Phase '{phase}' in dependencies but not in phase list")

            for dep in deps:
                if dep not in in_degree:
                    return LoadResult.failure(
                        f"Dependency '{dep}' for phase '{phase}' not found in phase list"
                    )

                adj_list[dep].append(phase)
                in_degree[phase] += 1

        # Kahn's algorithm
        queue = deque([phase for phase in self.phases if in_degree[phase] == 0])
        result = []

        while queue:
            current = queue.popleft()
            result.append(current)

            for neighbor in adj_list[current]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if len(result) != len(self.phases):
            cyclic = sorted(set(self.phases) - set(result))
            return LoadResult.failure(
                f"Cyclic dependency detected among phases: {', '.join(cyclic)}"
            )

        return LoadResult.success(result)

    def get_execution_waves(
        self,
        on_deadlock: Literal["force", "fail"] = "force",
        max_wave_size: int | None = None,
    ) -> LoadResult[list[Wave]]:
        """
        Group phases into waves that can be executed in parallel.

        Each wave is the maximal set of unscheduled phases whose in-batch
        dependencies are all scheduled in earlier waves. When no phase
        qualifies but phases remain (a cycle), the remainder becomes one
        forced wave, or the plan fails if on_deadlock is "fail". Waves wider
        than max_wave_size are split into consecutive waves.

        Returns:
            Result containing waves (phase order follows declaration order),
            or a failure whose metadata["remaining"] lists the deadlocked phases
        """
        dependencies = self._in_batch_dependencies()
        groups: list[tuple[list[str], bool]] = []
        scheduled: set[str] = set()
        remaining = list(self.phases)

        while remaining:
            ready = [
                phase for phase in remaining if all(dep in scheduled for dep in dependencies[phase])
            ]
            forced = False

            if not ready:
                if on_deadlock == "fail":
                    return LoadResult.failure(
                        f"Dependency deadlock among phases: {', '.join(sorted(remaining))}",
                        metadata={"remaining": list(remaining)},
                    )
                ready = list(remaining)
                forced = True

            groups.append((ready, forced))
            scheduled.update(ready)
            remaining = [phase for phase in remaining if phase not in scheduled]

        waves: list[Wave] = []
        for phase_ids, forced in groups:
            size = max_wave_size or len(phase_ids)
            for start in range(0, len(phase_ids), size):
                waves.append(
                    Wave(index=len(waves), phase_ids=phase_ids[start : start + size], forced=forced)
                )

        return LoadResult.success(waves)
