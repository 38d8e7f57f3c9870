"""
Hot Reload for Plugins

Reloads plugins through the lifecycle when their source files change.
"""

from pluginrt.hotreload.watcher import PluginWatcher

__all__ = [
    "PluginWatcher",
]
