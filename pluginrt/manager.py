"""
Plugin Manager

Central coordinator for all plugin operations. Management operations
return an OperationResult and never raise; the structured error tells the
operator what went wrong.
"""

from __future__ import annotations

import traceback
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import structlog

from pluginrt.config import RuntimeSettings, get_settings
from pluginrt.dependencies.resolver import DependencyResolver
from pluginrt.errors import (
    CoordinatorError,
    PluginError,
    PluginNotFoundError,
    SettingsError,
    ValidationError,
)
from pluginrt.health.monitor import HealthConfig, HealthMonitor
from pluginrt.hooks.dispatcher import DispatchResult, HookDispatcher
from pluginrt.hooks.events import PluginEventEmitter
from pluginrt.hotreload.watcher import PluginWatcher
from pluginrt.lifecycle import LifecycleController
from pluginrt.loader import PluginLoader
from pluginrt.manifest import load_manifest, parse_manifest
from pluginrt.registry import PluginRegistry
from pluginrt.sandbox.capabilities import CapabilityGrants
from pluginrt.sandbox.runtime import SandboxExecutor
from pluginrt.types import (
    Capability,
    DispatchMode,
    OperationResult,
    PluginEvent,
    PluginManifest,
    PluginState,
)
from pluginrt.validation import validate_settings

logger = structlog.get_logger(__name__)


ManifestSource = Union[PluginManifest, Mapping[str, Any], str, Path]


class PluginManager:
    """
    Central plugin management system.

    Features:
    - Plugin discovery and installation
    - Lifecycle management (install/start/stop/reload/uninstall)
    - Dependency resolution
    - Typed hooks (fan-out and pipeline)
    - Capability-mediated sandboxed execution
    - Health monitoring with automatic stop of failing plugins
    - Plugin settings validated against the manifest schema
    - Event emission
    - Optional reload of plugins whose files change
    """

    def __init__(
        self,
        settings: Optional[RuntimeSettings] = None,
        executor: Optional[SandboxExecutor] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings or get_settings()
        sandbox = self.settings.sandbox

        # Core components
        self.registry = PluginRegistry()
        self.loader = PluginLoader(self.settings.plugin_dirs)
        self.resolver = DependencyResolver()
        self.events = PluginEventEmitter()
        self.grants = CapabilityGrants(self.settings.grants)
        self.executor = executor or SandboxExecutor(
            default_limits=sandbox.to_limits(),
            max_workers=sandbox.max_workers,
            data_root=sandbox.data_dir,
            allowed_hosts=sandbox.allowed_hosts,
        )
        self.hooks = HookDispatcher(self.executor, copy_payloads=sandbox.copy_payloads)

        health_config = HealthConfig(
            error_threshold=self.settings.health.error_threshold,
            window_seconds=self.settings.health.window_seconds,
            count_denials=self.settings.health.count_denials,
        )
        self.monitor = (
            HealthMonitor(health_config, clock=clock) if clock else HealthMonitor(health_config)
        )
        self.executor.add_observer(self.monitor.observe)

        self.lifecycle = LifecycleController(
            self.registry,
            self.executor,
            self.hooks,
            self.monitor,
            self.loader,
            self.grants,
            events=self.events,
            resolver=self.resolver,
            operation_timeout=self.settings.operation_timeout,
            plugin_limits=self.settings.plugin_limits(),
        )

        self.watcher = PluginWatcher(
            self.registry,
            self.reload,
            self.settings.plugin_dirs,
            debounce_seconds=self.settings.watch_debounce,
        )

        self._initialized = False

    # === Result Handling ===

    async def _run(
        self,
        operation: str,
        plugin_id: Optional[str],
        action: Callable[[], Awaitable[Any]],
    ) -> OperationResult:
        try:
            value = await action()
        except CoordinatorError as e:
            logger.critical("operation_refused", operation=operation, plugin_id=plugin_id, error=e.message)
            return OperationResult.failure(plugin_id, e.to_dict())
        except PluginError as e:
            logger.info(
                "operation_failed",
                operation=operation,
                plugin_id=plugin_id,
                kind=e.kind,
                error=e.message,
            )
            return OperationResult.failure(plugin_id, e.to_dict())
        except Exception as e:
            logger.error(
                f"Unexpected error in {operation}: {e}",
                plugin_id=plugin_id,
                traceback=traceback.format_exc(),
            )
            return OperationResult.failure(
                plugin_id,
                {
                    "kind": "runtime_fault",
                    "plugin_id": plugin_id,
                    "message": f"{type(e).__name__}: {e}",
                    "recoverable": True,
                    "details": {"operation": operation},
                },
            )
        return OperationResult.success(plugin_id, value)

    @staticmethod
    def _to_manifest(source: ManifestSource) -> PluginManifest:
        if isinstance(source, PluginManifest):
            return source
        if isinstance(source, (str, Path)):
            return load_manifest(source)
        return parse_manifest(source)

    @staticmethod
    def _source_id(source: ManifestSource) -> Optional[str]:
        if isinstance(source, PluginManifest):
            return source.id
        if isinstance(source, Mapping):
            plugin_id = source.get("id")
            return plugin_id if isinstance(plugin_id, str) else None
        return None

    # === Initialization ===

    async def initialize(self) -> OperationResult:
        """
        Discover and install plugins from the configured directories.

        With ``auto_start`` the installed plugins are started in resolved
        order. Plugins that fail are left FAILED; their errors are in the
        result value.
        """
        if self._initialized:
            return OperationResult.success(value={"installed": [], "errors": {}})

        async def action():
            logger.info("Initializing Plugin Manager")
            installed: List[str] = []
            errors: Dict[str, Dict[str, Any]] = {}

            for manifest in self.loader.discover():
                try:
                    await self.lifecycle.install(manifest)
                    installed.append(manifest.id)
                except CoordinatorError:
                    raise
                except PluginError as e:
                    errors[manifest.id] = e.to_dict()
            errors.update(self.loader.discovery_errors)

            if self.settings.auto_start:
                errors.update(await self.lifecycle.start_all())

            if self.settings.watch:
                await self.watcher.start()

            self._initialized = True
            logger.info(f"Plugin Manager initialized with {len(self.registry)} plugins")

            await self.hooks.emit("system.startup", {"plugins": self.registry.get_stats()})
            return {"installed": installed, "errors": errors}

        return await self._run("initialize", None, action)

    async def shutdown(self) -> OperationResult:
        """Stop every plugin, dependents first, and close the executor."""

        async def action():
            logger.info("Shutting down Plugin Manager")
            await self.watcher.stop()
            await self.hooks.emit("system.shutdown", {})
            await self.lifecycle.wait_idle()
            order = await self.lifecycle.stop_all()
            await self.executor.shutdown()
            self._initialized = False
            logger.info("Plugin Manager shutdown complete")
            return order

        return await self._run("shutdown", None, action)

    # === Management Operations ===

    def list(self) -> OperationResult:
        """Installed plugins with their state."""
        return OperationResult.success(value=[i.to_dict() for i in self.registry.get_all()])

    async def install(
        self,
        source: ManifestSource,
        settings: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        """
        Install a plugin from a manifest, raw manifest data or a manifest path.
        """
        plugin_id = self._source_id(source)

        async def action():
            manifest = self._to_manifest(source)
            self._check_settings(manifest, settings)
            instance = await self.lifecycle.install(manifest, settings)
            return instance.to_dict()

        return await self._run("install", plugin_id, action)

    async def install_and_start(
        self,
        source: ManifestSource,
        settings: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        plugin_id = self._source_id(source)

        async def action():
            manifest = self._to_manifest(source)
            self._check_settings(manifest, settings)
            instance = await self.lifecycle.install_and_start(manifest, settings)
            return instance.to_dict()

        return await self._run("install_and_start", plugin_id, action)

    async def uninstall(self, plugin_id: str) -> OperationResult:
        return await self._run("uninstall", plugin_id, lambda: self.lifecycle.uninstall(plugin_id))

    async def start(self, plugin_id: str) -> OperationResult:
        async def action():
            return (await self.lifecycle.start(plugin_id)).to_dict()

        return await self._run("start", plugin_id, action)

    async def stop(self, plugin_id: str) -> OperationResult:
        async def action():
            return (await self.lifecycle.stop(plugin_id)).to_dict()

        return await self._run("stop", plugin_id, action)

    async def reload(self, plugin_id: str) -> OperationResult:
        return await self._run("reload", plugin_id, lambda: self.lifecycle.reload(plugin_id))

    def get_health(self, plugin_id: str) -> OperationResult:
        """Health record and state of one plugin."""
        instance = self.registry.get(plugin_id)
        if instance is None:
            return OperationResult.failure(plugin_id, PluginNotFoundError(plugin_id).to_dict())

        record = self.monitor.track(plugin_id)
        return OperationResult.success(
            plugin_id,
            {
                **record.to_dict(),
                "state": instance.state.value,
                "last_error_detail": instance.last_error,
            },
        )

    def get_hooks(self) -> OperationResult:
        """Defined hooks with their ordered subscribers."""
        return OperationResult.success(value=self.hooks.get_hooks())

    # === Hooks ===

    def register_hook(
        self,
        name: str,
        mode: Union[DispatchMode, str] = DispatchMode.FANOUT,
        description: str = "",
    ) -> OperationResult:
        """Define a hook plugins may subscribe to."""
        try:
            definition = self.hooks.define(name, DispatchMode(mode), description)
        except ValueError:
            error = ValidationError(None, [f"unknown dispatch mode: {mode}"])
            return OperationResult.failure(None, error.to_dict())
        except PluginError as e:
            return OperationResult.failure(None, e.to_dict())
        return OperationResult.success(value={"name": definition.name, "mode": definition.mode.value})

    async def emit(self, name: str, payload: Any = None) -> DispatchResult:
        """
        Dispatch a hook to the running plugins subscribed to it.

        Raises:
            UnknownHookError: If the hook was never defined
        """
        return await self.hooks.emit(name, payload)

    # === Settings ===

    def get_settings(self, plugin_id: str) -> OperationResult:
        instance = self.registry.get(plugin_id)
        if instance is None:
            return OperationResult.failure(plugin_id, PluginNotFoundError(plugin_id).to_dict())
        return OperationResult.success(plugin_id, dict(instance.settings))

    async def update_settings(self, plugin_id: str, values: Dict[str, Any]) -> OperationResult:
        """
        Merge values into a plugin's settings.

        The result is validated against the manifest's settings schema;
        a running plugin is notified through ``on_settings_changed``.
        """

        async def action():
            instance = self.registry.require(plugin_id)
            merged = {**instance.settings, **values}
            self._check_settings(instance.manifest, merged)
            return await self.lifecycle.apply_settings(plugin_id, merged)

        return await self._run("update_settings", plugin_id, action)

    async def reset_settings(self, plugin_id: str) -> OperationResult:
        """Restore a plugin's settings to the manifest defaults."""

        async def action():
            instance = self.registry.require(plugin_id)
            return await self.lifecycle.apply_settings(
                plugin_id, dict(instance.manifest.default_settings)
            )

        return await self._run("reset_settings", plugin_id, action)

    @staticmethod
    def _check_settings(manifest: PluginManifest, settings: Optional[Dict[str, Any]]) -> None:
        if not settings:
            return
        merged = {**manifest.default_settings, **settings}
        errors = validate_settings(merged, manifest.settings_schema)
        if errors:
            raise SettingsError(manifest.id, "; ".join(errors))

    # === Sandbox ===

    def get_sandbox_info(self, plugin_id: str) -> OperationResult:
        info = self.executor.get_sandbox_info(plugin_id)
        if info is None:
            error = PluginError("no active sandbox", plugin_id)
            return OperationResult.failure(plugin_id, error.to_dict())
        return OperationResult.success(plugin_id, info)

    def update_resource_limits(self, plugin_id: str, **limits: Any) -> OperationResult:
        try:
            updated = self.executor.update_resource_limits(plugin_id, **limits)
        except PluginError as e:
            return OperationResult.failure(plugin_id, e.to_dict())
        return OperationResult.success(plugin_id, updated.to_dict())

    def get_all_sandbox_info(self) -> OperationResult:
        """Sandbox state of every loaded plugin, by plugin id."""
        return OperationResult.success(value=self.executor.get_all_sandbox_info())

    def update_global_resource_limits(self, **limits: Any) -> OperationResult:
        """
        Change the default limits of sandboxes created from now on.

        Plugins with limits of their own and live sandboxes are unaffected.
        """
        try:
            updated = self.executor.update_default_limits(**limits)
        except PluginError as e:
            return OperationResult.failure(None, e.to_dict())
        return OperationResult.success(value=updated.to_dict())

    # === Events ===

    def on_event(self, event: PluginEvent, handler: Callable) -> None:
        self.events.on(event, handler)

    def get_events(
        self,
        plugin_id: Optional[str] = None,
        event: Optional[PluginEvent] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.events.get_history(plugin_id, event, limit)]

    # === Stats ===

    def get_stats(self) -> Dict[str, Any]:
        """Get plugin system statistics."""
        capability_counts = {c.value: 0 for c in Capability}
        for instance in self.registry:
            for capability in instance.manifest.capabilities:
                capability_counts[capability.value] += 1

        return {
            "total_plugins": len(self.registry),
            "running_plugins": len(self.registry.get_by_state(PluginState.RUNNING)),
            "failed_plugins": len(self.registry.get_by_state(PluginState.FAILED)),
            "by_state": self.registry.count_by_state(),
            "capabilities": capability_counts,
            "hooks": self.hooks.get_stats(),
            "health": self.monitor.get_stats(),
            "sandbox": self.executor.get_stats(),
            "events": self.events.get_stats(),
            "watcher": self.watcher.get_stats(),
            "fatal": self.lifecycle.is_fatal,
        }
