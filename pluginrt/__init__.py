"""
pluginrt - Plugin Extensibility Runtime

Loads, orders, runs and supervises third-party plugins inside a host
application.

Features:
- Manifest parsing and validation (every violation reported at once)
- Deterministic dependency resolution with cycle and version checks
- Lifecycle state machine with dependency-aware start, stop and reload
- Capability-mediated sandbox with timeouts and resource quotas
- Typed hooks dispatched as fan-out or pipeline
- Sliding-window health monitoring that stops failing plugins

Basic Usage:
    from pluginrt import PluginManager, RuntimeSettings

    manager = PluginManager(RuntimeSettings(plugin_dirs=["./plugins"]))

    # Discover, install and start plugins
    await manager.initialize()

    # Extension points
    manager.register_hook("request.filter", "pipeline")
    result = await manager.emit("request.filter", {"path": "/"})

    # Management operations never raise
    outcome = await manager.reload("my-plugin")
    if not outcome.ok:
        print(outcome.error["kind"], outcome.error["message"])

    await manager.shutdown()

Writing a plugin:
    from pluginrt import BasePlugin, hook_handler

    class Greeter(BasePlugin):
        async def start(self, context):
            self.greeting = context.settings.get("greeting", "hello")

        async def stop(self):
            pass

        @hook_handler("request.filter")
        async def add_greeting(self, payload):
            payload["greeting"] = self.greeting
            return payload
"""

from pluginrt.config import (
    HealthSettings,
    RuntimeSettings,
    SandboxSettings,
    get_settings,
    load_settings,
    reset_settings,
    set_settings,
)
from pluginrt.dependencies import DependencyGraph, DependencyResolver, ResolutionResult
from pluginrt.errors import (
    CapabilityDeniedError,
    CoordinatorError,
    CyclicDependencyError,
    DuplicateHandlerError,
    DuplicatePluginError,
    InvocationTimeoutError,
    LifecycleError,
    MissingDependencyError,
    OperationTimeoutError,
    PluginError,
    PluginInUseError,
    PluginLoadError,
    PluginNotFoundError,
    ResourceLimitError,
    RuntimeFaultError,
    SettingsError,
    UnknownHookError,
    ValidationError,
    VersionMismatchError,
)
from pluginrt.health import HealthConfig, HealthMonitor, HealthRecord
from pluginrt.hooks import (
    DispatchResult,
    HandlerOutcome,
    HookDispatcher,
    PluginEventEmitter,
    hook_handler,
)
from pluginrt.hotreload import PluginWatcher
from pluginrt.interfaces import BasePlugin
from pluginrt.lifecycle import STATE_TRANSITIONS, LifecycleController
from pluginrt.loader import PluginLoader
from pluginrt.manager import PluginManager
from pluginrt.manifest import load_manifest, parse_manifest, save_manifest
from pluginrt.registry import PluginRegistry
from pluginrt.sandbox import (
    CapabilityGrants,
    CodeGuard,
    SandboxContext,
    SandboxExecutor,
    scan_source,
)
from pluginrt.types import (
    Capability,
    DispatchMode,
    HookDeclaration,
    InvocationResult,
    InvocationStatus,
    OperationResult,
    PluginDependency,
    PluginEvent,
    PluginInstance,
    PluginManifest,
    PluginState,
    ResourceLimits,
    SemanticVersion,
    Terminal,
    VersionRange,
)
from pluginrt.validation import ManifestValidator, validate_settings

__version__ = "0.1.0"

__all__ = [
    # Manager
    "PluginManager",
    "LifecycleController",
    "STATE_TRANSITIONS",
    "PluginRegistry",
    "PluginLoader",
    # Configuration
    "RuntimeSettings",
    "SandboxSettings",
    "HealthSettings",
    "get_settings",
    "set_settings",
    "reset_settings",
    "load_settings",
    # Manifest
    "ManifestValidator",
    "parse_manifest",
    "load_manifest",
    "save_manifest",
    "validate_settings",
    # Dependencies
    "DependencyGraph",
    "DependencyResolver",
    "ResolutionResult",
    # Sandbox
    "CapabilityGrants",
    "CodeGuard",
    "SandboxContext",
    "SandboxExecutor",
    "scan_source",
    # Hot reload
    "PluginWatcher",
    # Hooks
    "DispatchResult",
    "HandlerOutcome",
    "HookDispatcher",
    "PluginEventEmitter",
    "hook_handler",
    # Health
    "HealthConfig",
    "HealthMonitor",
    "HealthRecord",
    # Interfaces
    "BasePlugin",
    # Types
    "Capability",
    "DispatchMode",
    "HookDeclaration",
    "InvocationResult",
    "InvocationStatus",
    "OperationResult",
    "PluginDependency",
    "PluginEvent",
    "PluginInstance",
    "PluginManifest",
    "PluginState",
    "ResourceLimits",
    "SemanticVersion",
    "Terminal",
    "VersionRange",
    # Errors
    "PluginError",
    "ValidationError",
    "CyclicDependencyError",
    "MissingDependencyError",
    "VersionMismatchError",
    "CapabilityDeniedError",
    "InvocationTimeoutError",
    "RuntimeFaultError",
    "ResourceLimitError",
    "PluginNotFoundError",
    "DuplicatePluginError",
    "PluginInUseError",
    "PluginLoadError",
    "LifecycleError",
    "OperationTimeoutError",
    "UnknownHookError",
    "DuplicateHandlerError",
    "SettingsError",
    "CoordinatorError",
]
