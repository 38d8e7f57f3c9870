"""
Dependency Resolution Tests

Load ordering, cycle detection, missing and mismatched dependencies.
"""

import pytest

from pluginrt import (
    CyclicDependencyError,
    DependencyGraph,
    DependencyResolver,
    MissingDependencyError,
    VersionMismatchError,
    parse_manifest,
)

from conftest import manifest_data


def manifest(plugin_id, version="1.0.0", deps=None):
    return parse_manifest(manifest_data(plugin_id, version=version, dependencies=deps or []))


@pytest.fixture
def resolver():
    return DependencyResolver()


# === Graph Tests ===


class TestDependencyGraph:
    """Test the dependency graph."""

    def test_topological_sort_ties_by_id(self):
        """Test that independent nodes come out in ascending id order."""
        graph = DependencyGraph()
        for node in ["zeta", "alpha", "mid"]:
            graph.add_node(node)
        assert graph.topological_sort() == ["alpha", "mid", "zeta"]

    def test_topological_sort_respects_edges(self):
        """Test that dependencies come before dependents."""
        graph = DependencyGraph()
        graph.add_edge("z-base", "a-app")
        assert graph.topological_sort() == ["z-base", "a-app"]

    def test_topological_sort_rejects_cycles(self):
        """Test that sorting a cyclic graph raises."""
        graph = DependencyGraph()
        graph.add_edge("a", "b")
        graph.add_edge("b", "a")
        with pytest.raises(ValueError):
            graph.topological_sort()

    def test_transitive_queries(self):
        """Test transitive dependency and dependent queries."""
        graph = DependencyGraph()
        graph.add_edge("a", "b")
        graph.add_edge("b", "c")
        assert graph.get_all_dependencies("c") == {"a", "b"}
        assert graph.get_all_dependents("a") == {"b", "c"}
        assert graph.get_dependencies("c") == {"b"}

    def test_long_chain_cycle(self):
        """Test cycle search on a chain far deeper than the recursion limit."""
        graph = DependencyGraph()
        nodes = [f"p{i:05d}" for i in range(5000)]
        for dependency, dependent in zip(nodes, nodes[1:]):
            graph.add_edge(dependency, dependent)
        graph.add_edge(nodes[-1], nodes[0])

        cycles = graph.find_cycles()

        assert len(cycles) == 1
        assert len(cycles[0]) == 5001
        assert cycles[0][0] == cycles[0][-1] == "p00000"


# === Resolver Tests ===


class TestDependencyResolver:
    """Test dependency resolution."""

    def test_chain_order(self, resolver):
        """Test that a chain loads dependencies first."""
        result = resolver.resolve([
            manifest("c", deps=["b"]),
            manifest("a"),
            manifest("b", deps=["a"]),
        ])
        assert result.success
        assert result.load_order == ["a", "b", "c"]
        assert result.shutdown_order == ["c", "b", "a"]

    def test_deep_chain(self, resolver):
        """Test resolving a dependency chain thousands of plugins long."""
        ids = [f"p{i:05d}" for i in range(3000)]
        manifests = [manifest(ids[0])] + [
            manifest(plugin_id, deps=[dependency]) for dependency, plugin_id in zip(ids, ids[1:])
        ]

        result = resolver.resolve(reversed(manifests))

        assert result.success
        assert result.load_order == ids

    def test_order_is_deterministic(self, resolver):
        """Test that input order never changes the load order."""
        manifests = [
            manifest("web", deps=["db", "cache"]),
            manifest("db"),
            manifest("cache"),
            manifest("metrics"),
        ]
        first = resolver.resolve(manifests).load_order
        second = resolver.resolve(list(reversed(manifests))).load_order

        assert first == second == ["cache", "db", "metrics", "web"]

    def test_cycle_reported_exactly(self, resolver):
        """Test that a cycle names every member in depends-on direction."""
        result = resolver.resolve([
            manifest("a", deps=["b"]),
            manifest("b", deps=["c"]),
            manifest("c", deps=["a"]),
        ])

        assert result.cycles == [["a", "b", "c", "a"]]
        assert result.load_order == []
        for plugin_id in ("a", "b", "c"):
            error = result.error_for(plugin_id)
            assert isinstance(error, CyclicDependencyError)
            assert error.cycle == ["a", "b", "c", "a"]

    def test_cycle_does_not_block_others(self, resolver):
        """Test that plugins outside a cycle still resolve."""
        result = resolver.resolve([
            manifest("a", deps=["b"]),
            manifest("b", deps=["a"]),
            manifest("free"),
        ])
        assert result.load_order == ["free"]
        assert set(result.failures) == {"a", "b"}

    def test_missing_hard_dependency(self, resolver):
        """Test that a missing hard dependency fails the plugin and its dependents."""
        result = resolver.resolve([
            manifest("app", deps=["ghost"]),
            manifest("ui", deps=["app"]),
            manifest("other"),
        ])

        error = result.error_for("app")
        assert isinstance(error, MissingDependencyError)
        assert error.details["dependency"] == "ghost"

        propagated = result.error_for("ui")
        assert isinstance(propagated, MissingDependencyError)
        assert propagated.details["dependency"] == "app"
        assert propagated.details["reason"] == "cannot be resolved"

        assert result.load_order == ["other"]

    def test_version_mismatch(self, resolver):
        """Test that an installed version outside the range fails the plugin."""
        result = resolver.resolve([
            manifest("base", version="1.4.0"),
            manifest("app", deps=[{"id": "base", "version": "^2.0.0"}]),
        ])

        error = result.error_for("app")
        assert isinstance(error, VersionMismatchError)
        assert error.details["required"] == "^2.0.0"
        assert error.details["installed"] == "1.4.0"
        assert result.load_order == ["base"]

    def test_soft_dependency_missing_is_warning(self, resolver):
        """Test that a missing soft dependency never blocks loading."""
        result = resolver.resolve([
            manifest("app", deps=[{"id": "extra", "kind": "soft"}]),
        ])
        assert result.success
        assert result.load_order == ["app"]
        assert any("extra" in w for w in result.warnings)

    def test_soft_dependency_orders_loading(self, resolver):
        """Test that a present soft dependency loads first."""
        result = resolver.resolve([
            manifest("a-app", deps=[{"id": "z-extra", "kind": "soft"}]),
            manifest("z-extra"),
        ])
        assert result.load_order == ["z-extra", "a-app"]

    def test_soft_edge_closing_cycle_dropped(self, resolver):
        """Test that a soft edge that would close a cycle is ignored."""
        result = resolver.resolve([
            manifest("a", deps=["b"]),
            manifest("b", deps=[{"id": "a", "kind": "soft"}]),
        ])
        assert result.success
        assert result.load_order == ["b", "a"]
        assert any("cycle" in w for w in result.warnings)

    def test_to_dict(self, resolver):
        """Test that resolution reports are serializable."""
        data = resolver.resolve([manifest("a", deps=["missing"])]).to_dict()
        assert data["success"] is False
        assert data["failures"]["a"]["kind"] == "missing_dependency"


class TestDependentQueries:
    """Test dependent lookups used by stop, reload and uninstall."""

    def test_hard_dependents_transitive(self):
        """Test transitive hard dependents."""
        manifests = [
            manifest("a"),
            manifest("b", deps=["a"]),
            manifest("c", deps=["b"]),
            manifest("d", deps=[{"id": "a", "kind": "soft"}]),
        ]
        assert DependencyResolver.hard_dependents("a", manifests) == {"b", "c"}
        assert DependencyResolver.hard_dependencies("c", manifests) == {"a", "b"}
        assert DependencyResolver.soft_dependents("a", manifests) == {"d"}

    def test_unknown_plugin_has_no_dependents(self):
        """Test queries for ids that are not installed."""
        assert DependencyResolver.hard_dependents("nobody", [manifest("a")]) == set()
