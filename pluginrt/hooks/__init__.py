"""
Plugin Hooks

Hook dispatch for extension points and lifecycle event emission.
"""

from pluginrt.hooks.dispatcher import (
    BUILTIN_HOOKS,
    DispatchResult,
    HandlerOutcome,
    HookDispatcher,
    hook_handler,
)
from pluginrt.hooks.events import PluginEventData, PluginEventEmitter

__all__ = [
    "BUILTIN_HOOKS",
    "DispatchResult",
    "HandlerOutcome",
    "HookDispatcher",
    "PluginEventData",
    "PluginEventEmitter",
    "hook_handler",
]
