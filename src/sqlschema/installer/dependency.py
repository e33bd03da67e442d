"""Install and uninstall ordering of schema objects.

Objects are nodes; an edge runs from an object to every other member of the
working set whose name appears in its dependencies. Strongly connected
components are found first so that mutually recursive procedures, which the
server resolves at execution time, can be accepted while every other cycle is
rejected. The remaining graph is sorted with Kahn's algorithm, always taking
the ready node that was declared first.
"""

import heapq
import logging
from collections import defaultdict
from enum import Enum
from typing import Protocol
from typing import Sequence
from typing import TypeVar

from .exceptions import CycleError
from .sql_parser import SchemaObjectType

logger = logging.getLogger(__name__)


class InstallDirection(str, Enum):
    INSTALL = "install"
    UNINSTALL = "uninstall"


class Orderable(Protocol):
    name: str
    object_type: SchemaObjectType
    dependencies: frozenset[str]


T = TypeVar("T", bound=Orderable)


class DependencyGraph:
    """Dependency edges among a fixed sequence of objects."""

    def __init__(self, objects: Sequence[T]):
        self.objects = list(objects)
        by_name: dict[str, list[int]] = defaultdict(list)
        for index, item in enumerate(self.objects):
            by_name[item.name].append(index)

        # edges[i] holds the indices i depends on
        self.edges: list[list[int]] = []
        for index, item in enumerate(self.objects):
            targets = sorted({t for dep in item.dependencies for t in by_name.get(dep, ()) if t != index})
            self.edges.append(targets)

    def strongly_connected_components(self) -> list[list[int]]:
        """Tarjan's algorithm, iterative to avoid recursion limits on long chains."""
        index_of: dict[int, int] = {}
        lowlink: dict[int, int] = {}
        on_stack: set[int] = set()
        stack: list[int] = []
        components: list[list[int]] = []
        counter = 0

        for root in range(len(self.objects)):
            if root in index_of:
                continue
            work = [(root, 0)]
            while work:
                node, position = work.pop()
                if position == 0:
                    index_of[node] = lowlink[node] = counter
                    counter += 1
                    stack.append(node)
                    on_stack.add(node)

                recurse = False
                edges = self.edges[node]
                while position < len(edges):
                    target = edges[position]
                    position += 1
                    if target not in index_of:
                        work.append((node, position))
                        work.append((target, 0))
                        recurse = True
                        break
                    if target in on_stack:
                        lowlink[node] = min(lowlink[node], index_of[target])
                if recurse:
                    continue

                if lowlink[node] == index_of[node]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    components.append(sorted(component))

                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])

        return components

    def check_cycles(self) -> None:
        """Drop edges inside procedure-only cycles and reject any other cycle.

        Raises:
            CycleError: If a cycle contains an object that is not a procedure
        """
        for component in self.strongly_connected_components():
            if len(component) < 2:
                continue
            members = [self.objects[i] for i in component]
            path = tuple(m.name for m in members)
            if any(m.object_type != SchemaObjectType.PROCEDURE for m in members):
                raise CycleError(f"Dependency cycle between {', '.join(path)}", path=path)

            logger.debug(f"Procedures {', '.join(path)} reference each other; using declaration order")
            inside = set(component)
            for i in component:
                self.edges[i] = [t for t in self.edges[i] if t not in inside]

    def install_order(self) -> list[int]:
        self.check_cycles()

        dependents: list[list[int]] = [[] for _ in self.objects]
        remaining = [len(targets) for targets in self.edges]
        for index, targets in enumerate(self.edges):
            for target in targets:
                dependents[target].append(index)

        ready = [i for i, count in enumerate(remaining) if count == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            index = heapq.heappop(ready)
            order.append(index)
            for dependent in dependents[index]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)
        return order


def order_objects(objects: Sequence[T], direction: InstallDirection = InstallDirection.INSTALL) -> list[T]:
    """Order objects so that dependencies are installed first.

    Args:
        objects: Objects in declaration order
        direction: INSTALL for dependencies first, UNINSTALL for the exact reverse

    Returns:
        The objects in execution order

    Raises:
        CycleError: If objects other than procedures form a cycle
    """
    graph = DependencyGraph(objects)
    order = [graph.objects[i] for i in graph.install_order()]
    if direction == InstallDirection.UNINSTALL:
        order.reverse()
    return order
