"""
Plugin Dependency Resolver

Builds the dependency graph of the installed manifests and computes a
deterministic load order, reporting per plugin why it cannot be loaded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set

import structlog

from pluginrt.dependencies.graph import DependencyGraph
from pluginrt.errors import (
    CyclicDependencyError,
    MissingDependencyError,
    PluginError,
    VersionMismatchError,
)
from pluginrt.types import PluginManifest

logger = structlog.get_logger(__name__)


@dataclass
class ResolutionResult:
    """Result of dependency resolution."""

    load_order: List[str] = field(default_factory=list)
    failures: Dict[str, PluginError] = field(default_factory=dict)
    cycles: List[List[str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    graph: DependencyGraph = field(default_factory=DependencyGraph, repr=False)

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def shutdown_order(self) -> List[str]:
        return list(reversed(self.load_order))

    def error_for(self, plugin_id: str) -> Optional[PluginError]:
        return self.failures.get(plugin_id)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "load_order": self.load_order,
            "failures": {pid: err.to_dict() for pid, err in sorted(self.failures.items())},
            "cycles": self.cycles,
            "warnings": self.warnings,
            "graph": self.graph.to_dict(),
        }


class DependencyResolver:
    """
    Resolves plugin dependencies using topological sort.

    Features:
    - Dependency graph construction
    - Cycle detection naming the full cycle
    - Missing dependency and version range checks
    - Propagation of failures to dependents
    - Soft dependencies that order loading without blocking it
    - Deterministic load order (ties broken by ascending id)
    """

    def resolve(
        self,
        manifests: Iterable[PluginManifest],
    ) -> ResolutionResult:
        """
        Resolve the full set of installed manifests.

        Args:
            manifests: Every installed, validated manifest

        Returns:
            ResolutionResult with a load order of the resolvable plugins and
            an error for each plugin that cannot be loaded
        """
        available: Dict[str, PluginManifest] = {m.id: m for m in manifests}
        result = ResolutionResult()

        hard_graph = DependencyGraph()
        for plugin_id in sorted(available):
            hard_graph.add_node(plugin_id)

        for plugin_id in sorted(available):
            manifest = available[plugin_id]
            for dep in manifest.dependencies:
                installed = available.get(dep.plugin_id)

                if installed is None:
                    if dep.hard:
                        self._fail(result, MissingDependencyError(plugin_id, dep.plugin_id))
                    else:
                        result.warnings.append(
                            f"soft dependency '{dep.plugin_id}' of '{plugin_id}' is not installed"
                        )
                    continue

                if not dep.version_range.satisfies(installed.version):
                    if dep.hard:
                        self._fail(
                            result,
                            VersionMismatchError(
                                plugin_id,
                                dep.plugin_id,
                                str(dep.version_range),
                                str(installed.version),
                            ),
                        )
                    else:
                        result.warnings.append(
                            f"soft dependency '{dep.plugin_id}' of '{plugin_id}' requires "
                            f"{dep.version_range}, installed {installed.version}"
                        )
                        continue

                if dep.hard:
                    hard_graph.add_edge(dep.plugin_id, plugin_id)

        result.cycles = hard_graph.find_cycles()
        for cycle in result.cycles:
            for member in cycle[:-1]:
                self._fail(result, CyclicDependencyError(member, cycle))

        self._propagate_failures(available, hard_graph, result)

        graph = self._ordering_graph(available, hard_graph, result)
        result.graph = graph
        result.load_order = graph.subgraph(
            pid for pid in available if pid not in result.failures
        ).topological_sort()

        if result.failures:
            logger.warning(
                "dependency_resolution_failures",
                failed=sorted(result.failures),
                cycles=result.cycles,
            )
        logger.debug(f"Resolved load order: {result.load_order}")

        return result

    @staticmethod
    def _fail(result: ResolutionResult, error: PluginError) -> None:
        # The first reason found for a plugin is kept
        result.failures.setdefault(error.plugin_id, error)

    def _propagate_failures(
        self,
        available: Mapping[str, PluginManifest],
        hard_graph: DependencyGraph,
        result: ResolutionResult,
    ) -> None:
        """Fail every plugin that hard-depends on a failed plugin."""
        pending = sorted(result.failures)
        while pending:
            failed = pending.pop(0)
            for dependent in sorted(hard_graph.get_dependents(failed)):
                if dependent in result.failures:
                    continue
                self._fail(
                    result,
                    MissingDependencyError(dependent, failed, reason="cannot be resolved"),
                )
                pending.append(dependent)

    @staticmethod
    def _ordering_graph(
        available: Mapping[str, PluginManifest],
        hard_graph: DependencyGraph,
        result: ResolutionResult,
    ) -> DependencyGraph:
        """
        Hard edges plus the soft edges that do not close a cycle.

        Soft edges are added in id order; one that would close a cycle is
        dropped with a warning.
        """
        graph = hard_graph.subgraph(available)
        for plugin_id in sorted(available):
            for dep in available[plugin_id].dependencies:
                if dep.hard or dep.plugin_id not in available:
                    continue
                if not dep.version_range.satisfies(available[dep.plugin_id].version):
                    continue
                if dep.plugin_id == plugin_id or graph.is_reachable(plugin_id, dep.plugin_id):
                    result.warnings.append(
                        f"soft dependency '{dep.plugin_id}' of '{plugin_id}' ignored for "
                        f"ordering: it would form a cycle"
                    )
                    continue
                graph.add_edge(dep.plugin_id, plugin_id)
        return graph

    # === Queries ===

    @staticmethod
    def _hard_graph(manifests: Iterable[PluginManifest]) -> DependencyGraph:
        graph = DependencyGraph()
        for manifest in manifests:
            graph.add_node(manifest.id)
            for dep in manifest.dependencies:
                if dep.hard:
                    graph.add_edge(dep.plugin_id, manifest.id)
        return graph

    @classmethod
    def hard_dependents(
        cls,
        plugin_id: str,
        manifests: Iterable[PluginManifest],
    ) -> Set[str]:
        """Transitive set of plugins that hard-depend on ``plugin_id``."""
        graph = cls._hard_graph(manifests)
        return graph.get_all_dependents(plugin_id) if plugin_id in graph else set()

    @classmethod
    def hard_dependencies(
        cls,
        plugin_id: str,
        manifests: Iterable[PluginManifest],
    ) -> Set[str]:
        """Transitive set of plugins ``plugin_id`` hard-depends on."""
        graph = cls._hard_graph(manifests)
        return graph.get_all_dependencies(plugin_id) if plugin_id in graph else set()

    @staticmethod
    def soft_dependents(
        plugin_id: str,
        manifests: Iterable[PluginManifest],
    ) -> Set[str]:
        """Plugins that declare a soft dependency on ``plugin_id``."""
        return {
            m.id
            for m in manifests
            if any(d.plugin_id == plugin_id and not d.hard for d in m.dependencies)
        }
