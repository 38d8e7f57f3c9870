"""
Plugin Registry

Storage of installed plugin instances, indexed by state. Mutated only by
the lifecycle controller while it holds the coordinating lock.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Iterator, List, Optional, Set

import structlog

from pluginrt.errors import DuplicatePluginError, PluginNotFoundError
from pluginrt.types import PluginInstance, PluginManifest, PluginState

logger = structlog.get_logger(__name__)


class PluginRegistry:
    """
    Registry of installed plugins.

    Features:
    - Unique plugin ids
    - Lookup by state
    - Manifest listing for dependency resolution
    """

    def __init__(self):
        self._plugins: Dict[str, PluginInstance] = {}
        self._by_state: Dict[PluginState, Set[str]] = defaultdict(set)

    def add(self, instance: PluginInstance) -> None:
        """
        Raises:
            DuplicatePluginError: If a plugin with the same id is installed
        """
        existing = self._plugins.get(instance.id)
        if existing is not None:
            raise DuplicatePluginError(instance.id, str(existing.version))
        self._plugins[instance.id] = instance
        self._by_state[instance.state].add(instance.id)
        logger.debug(f"Registered plugin: {instance.id} v{instance.version}")

    def remove(self, plugin_id: str) -> Optional[PluginInstance]:
        instance = self._plugins.pop(plugin_id, None)
        if instance is not None:
            self._by_state[instance.state].discard(plugin_id)
        return instance

    def get(self, plugin_id: str) -> Optional[PluginInstance]:
        return self._plugins.get(plugin_id)

    def require(self, plugin_id: str) -> PluginInstance:
        """
        Raises:
            PluginNotFoundError: If the plugin is not installed
        """
        instance = self._plugins.get(plugin_id)
        if instance is None:
            raise PluginNotFoundError(plugin_id)
        return instance

    def set_state(self, plugin_id: str, state: PluginState) -> PluginState:
        """Record a state change, returning the previous state."""
        instance = self.require(plugin_id)
        previous = instance.state
        self._by_state[previous].discard(plugin_id)
        self._by_state[state].add(plugin_id)
        instance.state = state
        return previous

    def replace_manifest(self, plugin_id: str, manifest: PluginManifest) -> None:
        self.require(plugin_id).manifest = manifest

    # === Queries ===

    def exists(self, plugin_id: str) -> bool:
        return plugin_id in self._plugins

    def get_all(self) -> List[PluginInstance]:
        return [self._plugins[pid] for pid in sorted(self._plugins)]

    def get_by_state(self, state: PluginState) -> List[PluginInstance]:
        return [self._plugins[pid] for pid in sorted(self._by_state.get(state, ()))]

    def get_running(self) -> List[PluginInstance]:
        return self.get_by_state(PluginState.RUNNING)

    def manifests(self) -> List[PluginManifest]:
        return [instance.manifest for instance in self.get_all()]

    def count_by_state(self) -> Dict[str, int]:
        return {
            state.value: len(self._by_state.get(state, ()))
            for state in PluginState
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total": len(self._plugins),
            "by_state": self.count_by_state(),
        }

    def __iter__(self) -> Iterator[PluginInstance]:
        return iter(self.get_all())

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._plugins
