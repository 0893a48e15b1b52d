"""Dependency graph utilities.

Builds a directed graph over the workspace's package names (an edge
``A → B`` means A depends on B) and provides the algorithms the planner
needs: strongly connected components (Tarjan), topological ordering with
cycle contraction (Kahn), the reverse-dependency closure of a change set,
and detection of mutually unsatisfiable requirements.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from .models import Dependency, DependencyKind, Package
from .requirements import max_satisfying
from .versions import is_valid_version, parse_version

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    kind: DependencyKind
    requirement: str


@dataclass(frozen=True)
class Conflict:
    """Requirements on one internal package that no known version satisfies."""

    package: str
    requirements: tuple[tuple[str, str], ...]

    def describe(self) -> str:
        declared = ", ".join(f"{who} wants {req}" for who, req in self.requirements)
        return f"{self.package}: {declared}"


def strongly_connected_components(
    nodes: Iterable[str], forward: Mapping[str, list[str]]
) -> list[list[str]]:
    """Tarjan's algorithm, iterative.

    Returns every SCC (singletons included) with members sorted by name,
    the list itself sorted by each component's first member.
    """
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    for start in sorted(nodes):
        if start in index_of:
            continue
        # Each frame is (node, iterator over its successors)
        work = [(start, iter(forward.get(start, [])))]
        index_of[start] = lowlink[start] = counter
        counter += 1
        stack.append(start)
        on_stack.add(start)

        while work:
            node, successors = work[-1]
            advanced = False
            for succ in successors:
                if succ not in index_of:
                    index_of[succ] = lowlink[succ] = counter
                    counter += 1
                    stack.append(succ)
                    on_stack.add(succ)
                    work.append((succ, iter(forward.get(succ, []))))
                    advanced = True
                    break
                if succ in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[succ])
            if advanced:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))

    return sorted(components, key=lambda c: c[0])


class DependencyGraph:
    """Directed dependency graph over internal package names.

    Attributes:
        nodes: Internal package names.
        forward: name → sorted internal dependencies.
        reverse: name → sorted internal dependents.
        external: External dependency name → sorted declaring packages.
        self_loops: Packages that depend on themselves.
    """

    def __init__(
        self,
        packages: Iterable[Package],
        kinds: set[DependencyKind] | None = None,
    ) -> None:
        self._packages = {pkg.name: pkg for pkg in packages}
        self.nodes: set[str] = set(self._packages)
        self.edges: list[Edge] = []
        forward: dict[str, set[str]] = {n: set() for n in self.nodes}
        reverse: dict[str, set[str]] = {n: set() for n in self.nodes}
        external: dict[str, set[str]] = {}

        for name, pkg in self._packages.items():
            for dep in pkg.dependencies:
                if kinds is not None and dep.kind not in kinds:
                    continue
                if dep.name not in self.nodes:
                    external.setdefault(dep.name, set()).add(name)
                    continue
                self.edges.append(Edge(name, dep.name, dep.kind, dep.requirement))
                forward[name].add(dep.name)
                reverse[dep.name].add(name)

        self.forward: dict[str, list[str]] = {n: sorted(v) for n, v in forward.items()}
        self.reverse: dict[str, list[str]] = {n: sorted(v) for n, v in reverse.items()}
        self.external: dict[str, list[str]] = {n: sorted(v) for n, v in sorted(external.items())}
        self.self_loops: list[str] = sorted(n for n in self.nodes if n in forward[n])

        self._sccs = strongly_connected_components(self.nodes, self.forward)
        self._scc_index = {m: i for i, comp in enumerate(self._sccs) for m in comp}
        self._order = self._condensed_order()

        for loop in self.self_loops:
            logger.warning("Package %s depends on itself", loop)

    @classmethod
    def from_workspace(cls, workspace, kinds: set[DependencyKind] | None = None) -> DependencyGraph:
        return cls(workspace.packages(), kinds=kinds)

    def package(self, name: str) -> Package:
        return self._packages[name]

    def dependencies(self, name: str) -> list[str]:
        return self.forward.get(name, [])

    def dependents(self, name: str) -> list[str]:
        return self.reverse.get(name, [])

    def edges_between(self, source: str, target: str) -> list[Edge]:
        return [e for e in self.edges if e.source == source and e.target == target]

    def sccs(self) -> list[list[str]]:
        return [list(c) for c in self._sccs]

    @property
    def cycles(self) -> list[list[str]]:
        """Strongly connected components with two or more members."""
        return [list(c) for c in self._sccs if len(c) >= 2]

    def scc_of(self, name: str) -> list[str]:
        return list(self._sccs[self._scc_index[name]])

    def cycle_of(self, name: str) -> list[str] | None:
        """The cycle ``name`` belongs to, or None if it is in no cycle."""
        component = self.scc_of(name)
        return component if len(component) >= 2 else None

    def _condensed_order(self) -> list[str]:
        """Kahn's algorithm over the SCC condensation.

        Components become available once all the components they depend on
        have been emitted; among available components the one with the
        smallest member name goes first. Members of a component are emitted
        together, sorted by name.
        """
        count = len(self._sccs)
        in_degree = [0] * count
        dependents: list[set[int]] = [set() for _ in range(count)]
        for edge_source, targets in self.forward.items():
            src = self._scc_index[edge_source]
            for target in targets:
                dst = self._scc_index[target]
                if src != dst and src not in dependents[dst]:
                    dependents[dst].add(src)
                    in_degree[src] += 1

        heap = [(self._sccs[i][0], i) for i in range(count) if in_degree[i] == 0]
        heapq.heapify(heap)
        order: list[str] = []
        while heap:
            _, i = heapq.heappop(heap)
            order.extend(self._sccs[i])
            for dep in dependents[i]:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    heapq.heappush(heap, (self._sccs[dep][0], dep))
        return order

    def topological_order(self, subset: Iterable[str] | None = None) -> list[str]:
        """Names in dependency order (dependencies before dependents).

        When ``subset`` is given, the full order is restricted to it, which
        keeps every ordering constraint that passes through unselected
        packages.
        """
        if subset is None:
            return list(self._order)
        wanted = set(subset)
        return [n for n in self._order if n in wanted]

    def affected(self, seeds: Iterable[str]) -> set[str]:
        """Seeds plus every package that transitively depends on one of them."""
        result = {s for s in seeds if s in self.nodes}
        queue = sorted(result)
        while queue:
            node = queue.pop(0)
            for dependent in self.reverse[node]:
                if dependent not in result:
                    result.add(dependent)
                    queue.append(dependent)
        return result

    def find_conflicts(
        self, registry_versions: Mapping[str, list[str]] | None = None
    ) -> list[Conflict]:
        """Internal packages whose declared requirements cannot all be met.

        Candidates are the package's current version plus any versions the
        registry knows about. Opaque specifiers (workspace shorthands,
        paths, git) never conflict.
        """
        conflicts: list[Conflict] = []
        for target in sorted(self.nodes):
            declared: list[tuple[str, Dependency]] = [
                (pkg_name, dep)
                for pkg_name in self.reverse[target]
                for dep in self._packages[pkg_name].requirements_on(target)
            ]
            parsed = [(who, dep, dep.parsed()) for who, dep in declared]
            ranged = [(who, dep, req) for who, dep, req in parsed if not req.is_opaque]
            if not ranged:
                continue
            candidates = [parse_version(self._packages[target].version)]
            for v in (registry_versions or {}).get(target, []):
                if is_valid_version(v):
                    candidates.append(parse_version(v))
            if max_satisfying(candidates, [req for _, _, req in ranged]) is None:
                conflicts.append(
                    Conflict(
                        package=target,
                        requirements=tuple((who, dep.requirement) for who, dep, _ in ranged),
                    )
                )
        return conflicts


def topo_sort(packages: Mapping[str, Package]) -> list[str]:
    """Topologically sort packages by their internal dependencies.

    Convenience wrapper for callers holding a name → Package map.
    """
    return DependencyGraph(packages.values()).topological_order()
