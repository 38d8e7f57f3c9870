"""
Plugin Interfaces

Contract every plugin satisfies.
"""

from pluginrt.interfaces.base import BasePlugin, collect_handlers

__all__ = [
    "BasePlugin",
    "collect_handlers",
]
