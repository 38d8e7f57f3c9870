"""
Plugin Dependencies

Dependency graph and deterministic load-order resolution.
"""

from pluginrt.dependencies.graph import DependencyGraph
from pluginrt.dependencies.resolver import DependencyResolver, ResolutionResult

__all__ = [
    "DependencyGraph",
    "DependencyResolver",
    "ResolutionResult",
]
