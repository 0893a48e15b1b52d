"""Tests for monobump.graph."""

from __future__ import annotations

from monobump.graph import DependencyGraph, strongly_connected_components, topo_sort
from monobump.models import Dependency, DependencyKind, Package


def _pkg(name: str, version: str = "1.0.0", **deps: str) -> Package:
    return Package(
        name=name,
        version=version,
        path=f"packages/{name}",
        dependencies=[
            Dependency.from_spec(dep, spec, DependencyKind.RUNTIME) for dep, spec in deps.items()
        ],
    )


def _graph(*packages: Package) -> DependencyGraph:
    return DependencyGraph(packages)


class TestTopologicalOrder:
    def test_no_deps(self) -> None:
        """Independent packages come out in name order."""
        graph = _graph(_pkg("c"), _pkg("a"), _pkg("b"))
        assert graph.topological_order() == ["a", "b", "c"]  # alphabetical when no deps

    def test_linear_deps(self) -> None:
        """Dependencies come before their dependents."""
        graph = _graph(_pkg("a", b="^1.0.0"), _pkg("b", c="^1.0.0"), _pkg("c"))
        assert graph.topological_order() == ["c", "b", "a"]

    def test_diamond_deps(self) -> None:
        """Ties between ready packages are broken by name."""
        graph = _graph(
            _pkg("top", left="^1.0.0", right="^1.0.0"),
            _pkg("left", bottom="^1.0.0"),
            _pkg("right", bottom="^1.0.0"),
            _pkg("bottom"),
        )
        assert graph.topological_order() == ["bottom", "left", "right", "top"]

    def test_cycle_is_emitted_contiguously(self) -> None:
        """Members of a cycle are emitted next to each other."""
        graph = _graph(
            _pkg("x", y="^1.0.0"),
            _pkg("y", x="^1.0.0"),
            _pkg("app", x="^1.0.0"),
            _pkg("base"),
        )
        order = graph.topological_order()
        assert order.index("x") + 1 == order.index("y")
        assert order.index("y") < order.index("app")

    def test_cycle_members_come_after_their_dependencies(self) -> None:
        """A cycle waits for the packages it depends on."""
        graph = _graph(_pkg("x", y="^1.0.0", core="^1.0.0"), _pkg("y", x="^1.0.0"), _pkg("core"))
        assert graph.topological_order() == ["core", "x", "y"]

    def test_subset_keeps_constraints(self) -> None:
        """Ordering a subset honours transitive constraints."""
        graph = _graph(_pkg("a", b="^1.0.0"), _pkg("b", c="^1.0.0"), _pkg("c"))
        assert graph.topological_order(["a", "c"]) == ["c", "a"]

    def test_empty(self) -> None:
        """An empty graph has an empty order."""
        assert _graph().topological_order() == []

    def test_topo_sort_wrapper(self) -> None:
        """topo_sort orders a name to package mapping."""
        packages = {"a": _pkg("a", b="1.0.0"), "b": _pkg("b")}
        assert topo_sort(packages) == ["b", "a"]


class TestEdges:
    def test_external_deps_ignored(self) -> None:
        """Dependencies outside the workspace do not create edges."""
        graph = _graph(_pkg("a", lodash="^4.0.0", react="^18.0.0"), _pkg("b", lodash="^4.1.0"))
        assert graph.dependencies("a") == []
        assert graph.external == {"lodash": ["a", "b"], "react": ["a"]}

    def test_reverse_edges(self) -> None:
        """dependents is the reverse of dependencies."""
        graph = _graph(_pkg("a"), _pkg("b", a="^1.0.0"), _pkg("c", a="^1.0.0"))
        assert graph.dependents("a") == ["b", "c"]
        assert graph.dependencies("b") == ["a"]

    def test_kind_filter(self) -> None:
        """Only the requested dependency kinds create edges."""
        b = Package(
            name="b",
            version="1.0.0",
            dependencies=[Dependency.from_spec("a", "^1.0.0", DependencyKind.DEV)],
        )
        assert DependencyGraph([_pkg("a"), b]).dependents("a") == ["b"]
        assert DependencyGraph([_pkg("a"), b], kinds={DependencyKind.RUNTIME}).dependents("a") == []

    def test_self_loop(self) -> None:
        """A self dependency is reported but is not a cycle."""
        graph = _graph(_pkg("a", a="^1.0.0"))
        assert graph.self_loops == ["a"]
        assert graph.cycle_of("a") is None
        assert graph.topological_order() == ["a"]


class TestCycles:
    def test_two_way_cycle(self) -> None:
        """Two packages depending on each other form one cycle."""
        graph = _graph(_pkg("a", b="^1.0.0"), _pkg("b", a="^1.0.0"), _pkg("c"))
        assert graph.cycles == [["a", "b"]]
        assert graph.cycle_of("b") == ["a", "b"]
        assert graph.cycle_of("c") is None

    def test_three_way_cycle(self) -> None:
        """Longer cycles are found as a single component."""
        graph = _graph(_pkg("a", b="1"), _pkg("b", c="1"), _pkg("c", a="1"))
        assert graph.cycles == [["a", "b", "c"]]

    def test_sccs_partition_nodes(self) -> None:
        """Every node belongs to exactly one component."""
        graph = _graph(_pkg("a", b="1"), _pkg("b", a="1"), _pkg("c", a="1"), _pkg("d"))
        sccs = graph.sccs()
        assert sorted(m for comp in sccs for m in comp) == ["a", "b", "c", "d"]
        assert ["a", "b"] in sccs

    def test_scc_function_on_deep_chain(self) -> None:
        """Component search does not recurse on long chains."""
        n = 3000
        forward = {str(i): [str(i + 1)] for i in range(n)}
        forward[str(n)] = ["0"]
        components = strongly_connected_components(forward.keys(), forward)
        assert len(components) == 1
        assert len(components[0]) == n + 1


class TestAffected:
    def test_closure(self) -> None:
        """Affected packages are the seeds plus their transitive dependents."""
        graph = _graph(_pkg("a"), _pkg("b", a="^1.0.0"), _pkg("c", b="^1.0.0"), _pkg("d"))
        assert graph.affected(["a"]) == {"a", "b", "c"}
        assert graph.affected(["c"]) == {"c"}

    def test_unknown_seed_ignored(self) -> None:
        """Seeds outside the graph are ignored."""
        assert _graph(_pkg("a")).affected(["zzz"]) == set()

    def test_cycle_reached(self) -> None:
        """Affecting one cycle member reaches the whole cycle and beyond."""
        graph = _graph(_pkg("x", y="1"), _pkg("y", x="1"), _pkg("z", y="1"))
        assert graph.affected(["x"]) == {"x", "y", "z"}


class TestConflicts:
    def test_unsatisfiable_requirements(self) -> None:
        """Requirements the current version cannot satisfy are reported."""
        graph = _graph(_pkg("a", "2.0.0"), _pkg("b", a="^1.0.0"), _pkg("c", a="^2.0.0"))
        conflicts = graph.find_conflicts()
        assert [c.package for c in conflicts] == ["a"]
        assert conflicts[0].requirements == (("b", "^1.0.0"), ("c", "^2.0.0"))
        assert "b wants ^1.0.0" in conflicts[0].describe()

    def test_registry_version_resolves_conflict(self) -> None:
        """A satisfying current or published version clears the conflict."""
        graph = _graph(_pkg("a", "2.0.0"), _pkg("b", a=">=1.0.0"), _pkg("c", a="<3.0.0"))
        assert graph.find_conflicts() == []
        graph = _graph(_pkg("a", "2.0.0"), _pkg("b", a="^1.0.0"))
        assert graph.find_conflicts(registry_versions={"a": ["1.4.0"]}) == []

    def test_opaque_specifiers_never_conflict(self) -> None:
        """Workspace and path specifiers never conflict."""
        graph = _graph(_pkg("a", "2.0.0"), _pkg("b", a="workspace:*"), _pkg("c", a="file:../a"))
        assert graph.find_conflicts() == []
