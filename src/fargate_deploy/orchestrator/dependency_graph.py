"""Dependency graph builder for resource deployment ordering."""

from typing import Any, Dict, Iterable, List, Set, Optional
from dataclasses import dataclass
from collections import defaultdict, deque

from fargate_deploy.utils.errors import DependencyError, ErrorContext


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    resource_id: str
    resource: Any
    tier: int
    dependencies: Set[str]  # Resource IDs this node depends on


class DependencyGraph:
    """Directed acyclic graph (DAG) of resource dependencies.

    Every ordering the graph returns is deterministic: ties are broken by
    tier, then by resource id.
    """

    def __init__(self, resources: Optional[Iterable[Any]] = None):
        """Initialize dependency graph.

        Args:
            resources: Objects with ``id``, ``dependencies`` and optionally ``tier``
        """
        self.nodes: Dict[str, DependencyNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)
        for resource in resources or []:
            self.add_resource(resource)

    def add_resource(self, resource: Any) -> None:
        """Add or replace a resource in the dependency graph.

        Args:
            resource: Resource to add to the graph
        """
        if resource.id in self.nodes:
            self.remove_resource(resource.id)

        dependencies = set(resource.dependencies)
        self.nodes[resource.id] = DependencyNode(
            resource_id=resource.id,
            resource=resource,
            tier=int(getattr(resource, 'tier', 0)),
            dependencies=dependencies,
        )
        for dep_id in dependencies:
            self._adjacency_list[dep_id].add(resource.id)

    def remove_resource(self, resource_id: str) -> None:
        """Remove a resource from the dependency graph.

        Args:
            resource_id: ID of resource to remove
        """
        node = self.nodes.pop(resource_id, None)
        if node is None:
            return
        for dep_id in node.dependencies:
            self._adjacency_list[dep_id].discard(resource_id)

    def _sort_key(self, resource_id: str):
        node = self.nodes.get(resource_id)
        return (node.tier if node else 0, resource_id)

    def get_dependents(self, resource_id: str) -> Set[str]:
        """Get direct dependents of a resource."""
        return {d for d in self._adjacency_list.get(resource_id, set()) if d in self.nodes}

    def get_all_dependencies(self, resource_id: str) -> Set[str]:
        """Get all transitive dependencies of a resource."""
        visited = set()
        queue = deque([resource_id])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue
            visited.add(current_id)
            if current_id in self.nodes:
                queue.extend(self.nodes[current_id].dependencies - visited)

        visited.discard(resource_id)
        return visited

    def get_all_dependents(self, resource_id: str) -> Set[str]:
        """Get all transitive dependents of a resource.

        Args:
            resource_id: ID of resource

        Returns:
            Set of all resource IDs that depend on this resource
        """
        visited = set()
        queue = deque([resource_id])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue
            visited.add(current_id)
            queue.extend(self.get_dependents(current_id) - visited)

        visited.discard(resource_id)
        return visited

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            List of resource IDs forming a cycle, or None if no cycle exists
        """
        # White (0): unvisited, Gray (1): visiting, Black (2): visited
        color = {node_id: 0 for node_id in self.nodes}
        stack: List[str] = []

        def dfs(node_id: str) -> Optional[List[str]]:
            color[node_id] = 1
            stack.append(node_id)
            for dependent_id in sorted(self.get_dependents(node_id)):
                if color[dependent_id] == 1:
                    return stack[stack.index(dependent_id):] + [dependent_id]
                if color[dependent_id] == 0:
                    cycle = dfs(dependent_id)
                    if cycle:
                        return cycle
            stack.pop()
            color[node_id] = 2
            return None

        for node_id in sorted(self.nodes):
            if color[node_id] == 0:
                cycle = dfs(node_id)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            DependencyError: On circular dependencies, missing dependencies, or
                a resource depending on a later tier
        """
        cycle = self.detect_circular_dependencies()
        if cycle:
            raise DependencyError(
                f"Circular dependency detected: {' -> '.join(cycle)}",
                context=ErrorContext(resource_id=cycle[0])
            )

        for node_id in sorted(self.nodes):
            node = self.nodes[node_id]
            for dep_id in sorted(node.dependencies):
                if dep_id not in self.nodes:
                    raise DependencyError(
                        f"Resource '{node_id}' depends on '{dep_id}' which does not exist",
                        context=ErrorContext(resource_id=node_id)
                    )
                if self.nodes[dep_id].tier > node.tier:
                    raise DependencyError(
                        f"Resource '{node_id}' (tier {node.tier}) depends on '{dep_id}' "
                        f"in later tier {self.nodes[dep_id].tier}",
                        context=ErrorContext(resource_id=node_id)
                    )

    def topological_sort(self) -> List[str]:
        """Perform topological sort on the dependency graph.

        Returns:
            List of resource IDs in dependency order (dependencies before dependents)

        Raises:
            DependencyError: If graph contains cycles
        """
        return [resource_id for wave in self.get_deployment_waves() for resource_id in wave]

    def get_deployment_waves(self) -> List[List[str]]:
        """Group resources into parallel deployment waves.

        Resources in the same wave have no dependencies on each other and can be
        deployed in parallel.

        Returns:
            List of waves, each sorted by (tier, id)

        Raises:
            DependencyError: If graph contains cycles
        """
        self.validate()

        # Kahn's algorithm grouped by levels
        in_degree = {node_id: len(node.dependencies) for node_id, node in self.nodes.items()}
        current_wave = sorted(
            (node_id for node_id, degree in in_degree.items() if degree == 0), key=self._sort_key
        )
        waves = []

        while current_wave:
            waves.append(current_wave)
            next_wave = []
            for node_id in current_wave:
                for dependent_id in self.get_dependents(node_id):
                    in_degree[dependent_id] -= 1
                    if in_degree[dependent_id] == 0:
                        next_wave.append(dependent_id)
            current_wave = sorted(next_wave, key=self._sort_key)

        if sum(len(wave) for wave in waves) != len(self.nodes):
            raise DependencyError("Cannot create deployment waves: graph contains cycles")

        return waves

    def wave_index(self) -> Dict[str, int]:
        """Map each resource id to the index of its deployment wave."""
        return {
            resource_id: index
            for index, wave in enumerate(self.get_deployment_waves())
            for resource_id in wave
        }

    def get_destruction_order(self) -> List[str]:
        """Get resource destruction order (reverse of deployment order)."""
        return list(reversed(self.topological_sort()))

    def size(self) -> int:
        return len(self.nodes)
