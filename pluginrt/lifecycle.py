"""
Plugin Lifecycle Management

Drives every plugin instance through its state machine. All mutations of
the installed set and of instance state happen here, serialized by one
coordinating lock acquired with a deadline.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Set, Union

import structlog

from pluginrt.dependencies.resolver import DependencyResolver, ResolutionResult
from pluginrt.errors import (
    CoordinatorError,
    LifecycleError,
    MissingDependencyError,
    OperationTimeoutError,
    PluginError,
    PluginInUseError,
    PluginLoadError,
    RuntimeFaultError,
    ValidationError,
)
from pluginrt.health.monitor import HealthMonitor
from pluginrt.hooks.dispatcher import HookDispatcher
from pluginrt.hooks.events import PluginEventEmitter
from pluginrt.interfaces.base import BasePlugin
from pluginrt.loader import PluginLoader
from pluginrt.manifest import load_manifest, parse_manifest
from pluginrt.sandbox.capabilities import CapabilityGrants
from pluginrt.sandbox.runtime import SandboxExecutor
from pluginrt.types import (
    PluginEvent,
    PluginInstance,
    PluginManifest,
    PluginState,
    ResourceLimits,
)

logger = structlog.get_logger(__name__)


# Valid state transitions; FAILED is reachable from every state
STATE_TRANSITIONS: Dict[PluginState, Set[PluginState]] = {
    PluginState.DISCOVERED: {PluginState.VALIDATED},
    PluginState.VALIDATED: {PluginState.RESOLVED},
    PluginState.RESOLVED: {PluginState.LOADING},
    PluginState.LOADING: {PluginState.RUNNING},
    PluginState.RUNNING: {PluginState.STOPPING},
    PluginState.STOPPING: {PluginState.STOPPED},
    PluginState.STOPPED: {PluginState.VALIDATED},
    PluginState.FAILED: {PluginState.VALIDATED},
}


class LifecycleController:
    """
    Owner of plugin state transitions.

    Features:
    - State machine with validated transitions
    - Start with automatic start of hard dependencies
    - Stop cascading to running hard dependents (dependents first)
    - Reload restarting hard dependents and notifying soft dependents
    - Uninstall refused while running plugins hard-depend on the target
    - Stop requests from the health monitor, serialized like any operation
    - Idempotent operations (stopping a stopped plugin succeeds)

    Every public operation acquires the coordinating lock within
    ``operation_timeout`` seconds or fails with OperationTimeoutError.
    A failure of the lock itself is fatal: the controller then refuses
    all further operations with CoordinatorError.
    """

    def __init__(
        self,
        registry,
        executor: SandboxExecutor,
        dispatcher: HookDispatcher,
        monitor: HealthMonitor,
        loader: PluginLoader,
        grants: CapabilityGrants,
        events: Optional[PluginEventEmitter] = None,
        resolver: Optional[DependencyResolver] = None,
        operation_timeout: float = 30.0,
        plugin_limits: Optional[Mapping[str, ResourceLimits]] = None,
    ):
        self.registry = registry
        self.executor = executor
        self.dispatcher = dispatcher
        self.monitor = monitor
        self.loader = loader
        self.grants = grants
        self.events = events or PluginEventEmitter()
        self.resolver = resolver or DependencyResolver()
        self.operation_timeout = operation_timeout

        for plugin_id, limits in (plugin_limits or {}).items():
            self.executor.set_plugin_limits(plugin_id, limits)

        self._lock = asyncio.Lock()
        self._fatal: Optional[CoordinatorError] = None
        self._pending: Set[asyncio.Task] = set()

        self.monitor.set_trip_callback(self.request_stop)

    # === Coordination ===

    @property
    def is_fatal(self) -> bool:
        return self._fatal is not None

    @asynccontextmanager
    async def _serialized(self, operation: str, plugin_id: Optional[str] = None) -> AsyncIterator[None]:
        if self._fatal is not None:
            raise self._fatal

        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.operation_timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(operation, self.operation_timeout, plugin_id)
        except (RuntimeError, MemoryError) as e:
            self._fatal = CoordinatorError(
                f"coordinating lock failed during {operation}: {e}",
                plugin_id,
                operation=operation,
            )
            logger.critical("coordinator_failure", operation=operation, error=str(e))
            raise self._fatal from e

        try:
            yield
        finally:
            self._lock.release()

    def can_transition(self, current: PluginState, target: PluginState) -> bool:
        return target == PluginState.FAILED or target in STATE_TRANSITIONS.get(current, set())

    def _transition(self, instance: PluginInstance, target: PluginState) -> None:
        """
        Raises:
            LifecycleError: If the state machine does not allow the move
        """
        current = instance.state
        if not self.can_transition(current, target):
            raise LifecycleError(instance.id, current, target)
        self.registry.set_state(instance.id, target)
        logger.debug(f"Plugin {instance.id} transitioned: {current.value} -> {target.value}")

    async def _fail(self, instance: PluginInstance, error: PluginError) -> None:
        """Move a plugin to FAILED, detaching it from dispatch."""
        self.dispatcher.unregister_plugin(instance.id)
        instance.registered_hooks.clear()
        self.executor.release(instance.id)
        if isinstance(instance.plugin, BasePlugin):
            instance.plugin.unbind()
        instance.plugin = None
        instance.sandbox = None
        instance.last_error = error.to_dict()
        self._transition(instance, PluginState.FAILED)

        logger.error(
            "plugin_failed",
            plugin_id=instance.id,
            kind=error.kind,
            error=error.message,
        )
        await self.events.emit(PluginEvent.FAILED, instance.id, data=error.to_dict(), error=str(error))

    def _resolve(self) -> ResolutionResult:
        return self.resolver.resolve(self.registry.manifests())

    def _ordered(self, plugin_ids: Set[str], resolution: ResolutionResult) -> List[str]:
        """Plugin ids in load order; unresolved ids last, by id."""
        ordered = [pid for pid in resolution.load_order if pid in plugin_ids]
        return ordered + sorted(plugin_ids - set(ordered))

    # === Install / Uninstall ===

    async def install(
        self,
        manifest: Union[PluginManifest, Mapping[str, Any]],
        settings: Optional[Dict[str, Any]] = None,
    ) -> PluginInstance:
        """
        Install a plugin without starting it.

        Args:
            manifest: Validated manifest or raw manifest data
            settings: Initial settings, merged over the manifest defaults

        Returns:
            The new instance in VALIDATED state

        Raises:
            ValidationError: If raw manifest data is invalid
            DuplicatePluginError: If the id is already installed
            CapabilityDeniedError: If required capabilities are not granted
        """
        manifest = self._as_manifest(manifest)
        async with self._serialized("install", manifest.id):
            return await self._install_locked(manifest, settings)

    async def install_and_start(
        self,
        manifest: Union[PluginManifest, Mapping[str, Any]],
        settings: Optional[Dict[str, Any]] = None,
    ) -> PluginInstance:
        """
        Install then start a plugin as one operation.

        A plugin that installs but fails to start stays installed in
        FAILED state and the start error is raised.
        """
        manifest = self._as_manifest(manifest)
        async with self._serialized("install_and_start", manifest.id):
            await self._install_locked(manifest, settings)
            return await self._start_locked(manifest.id)

    @staticmethod
    def _as_manifest(manifest: Union[PluginManifest, Mapping[str, Any]]) -> PluginManifest:
        if isinstance(manifest, PluginManifest):
            return manifest
        return parse_manifest(manifest)

    async def _install_locked(
        self,
        manifest: PluginManifest,
        settings: Optional[Dict[str, Any]],
    ) -> PluginInstance:
        self.grants.check_manifest(manifest)

        instance = PluginInstance(
            manifest=manifest,
            settings={**manifest.default_settings, **(settings or {})},
        )
        self.registry.add(instance)
        self._transition(instance, PluginState.VALIDATED)
        instance.health = self.monitor.track(manifest.id)

        logger.info(f"Installed plugin {manifest.id}@{manifest.version}")
        await self.events.emit(PluginEvent.INSTALLED, manifest.id, data={"version": str(manifest.version)})
        return instance

    async def uninstall(self, plugin_id: str) -> bool:
        """
        Stop and remove a plugin.

        Returns:
            False if the plugin was not installed

        Raises:
            PluginInUseError: If running plugins hard-depend on it
        """
        async with self._serialized("uninstall", plugin_id):
            instance = self.registry.get(plugin_id)
            if instance is None:
                return False

            dependents = sorted(
                other.id
                for other in self.registry.get_running()
                if plugin_id in other.manifest.hard_dependencies
            )
            if dependents:
                raise PluginInUseError(plugin_id, dependents)

            if instance.is_running:
                await self._shutdown_instance(instance, "uninstall")

            self.dispatcher.unregister_plugin(plugin_id)
            self.executor.discard(plugin_id)
            self.loader.unload(plugin_id)
            self.monitor.forget(plugin_id)
            self.registry.remove(plugin_id)

            logger.info(f"Uninstalled plugin {plugin_id}")
            await self.events.emit(PluginEvent.UNINSTALLED, plugin_id)
            return True

    # === Start ===

    async def start(self, plugin_id: str) -> PluginInstance:
        """
        Start a plugin, starting its hard dependencies first.

        Raises:
            PluginNotFoundError: If the plugin is not installed
            CyclicDependencyError, MissingDependencyError, VersionMismatchError:
                If dependencies cannot be resolved (the plugin is FAILED)
            PluginLoadError, RuntimeFaultError, InvocationTimeoutError:
                If loading or starting the plugin fails (the plugin is FAILED)
        """
        async with self._serialized("start", plugin_id):
            return await self._start_locked(plugin_id)

    async def _start_locked(self, plugin_id: str) -> PluginInstance:
        instance = self.registry.require(plugin_id)
        if instance.is_running:
            return instance

        if instance.state in (PluginState.STOPPED, PluginState.FAILED):
            instance.last_error = None
            self._transition(instance, PluginState.VALIDATED)
        elif instance.state != PluginState.VALIDATED:
            raise LifecycleError(plugin_id, instance.state, PluginState.RESOLVED, "operation in progress")

        if self.monitor.is_tripped(plugin_id):
            # Restarting a tripped plugin re-arms its health record
            instance.health = self.monitor.reset(plugin_id)

        resolution = self._resolve()
        error = resolution.error_for(plugin_id)
        if error is not None:
            await self._fail(instance, error)
            raise error

        hard_dependencies = self.resolver.hard_dependencies(plugin_id, self.registry.manifests())
        for dependency_id in self._ordered(hard_dependencies, resolution):
            dependency = self.registry.require(dependency_id)
            if dependency.is_running:
                continue
            try:
                await self._start_locked(dependency_id)
            except PluginError as e:
                error = MissingDependencyError(plugin_id, dependency_id, reason=f"failed to start: {e.message}")
                await self._fail(instance, error)
                raise error from e

        self._transition(instance, PluginState.RESOLVED)
        self._transition(instance, PluginState.LOADING)
        await self._load(instance)
        return instance

    async def _load(self, instance: PluginInstance) -> None:
        """LOADING -> RUNNING, or FAILED with the error raised."""
        manifest = instance.manifest
        plugin_id = manifest.id

        sandbox = self.executor.create(
            manifest,
            self.grants.granted_for(plugin_id),
            settings=instance.settings,
        )
        instance.sandbox = sandbox

        loaded = await self.executor.invoke(
            plugin_id, self.loader.load, manifest, sandbox.guard, observe=False, operation="load"
        )
        if not loaded.ok:
            error = self._load_error(plugin_id, loaded.error)
            await self._fail(instance, error)
            raise error

        plugin = loaded.value
        instance.plugin = plugin
        if isinstance(plugin, BasePlugin):
            plugin.bind(sandbox.context)

        handlers = self.loader.resolve_handlers(plugin)
        missing = [h.name for h in manifest.hooks if h.name not in handlers]
        if missing:
            error = PluginLoadError(plugin_id, f"no handler for declared hook(s): {', '.join(missing)}")
            await self._fail(instance, error)
            raise error

        undeclared = sorted(set(handlers) - {h.name for h in manifest.hooks})
        if undeclared:
            logger.warning("undeclared_hook_handlers_ignored", plugin_id=plugin_id, hooks=undeclared)

        starter = getattr(plugin, "start", None)
        if callable(starter):
            started = await self.executor.invoke(
                plugin_id, starter, sandbox.context, observe=False, operation="start"
            )
            if not started.ok:
                error = self._load_error(plugin_id, started.error)
                await self._fail(instance, error)
                raise error

        for sequence, declaration in enumerate(manifest.hooks):
            handler, priority = handlers[declaration.name]
            self.dispatcher.register(
                declaration.name,
                plugin_id,
                handler,
                priority=declaration.priority if priority is None else priority,
                sequence=sequence,
            )
            instance.registered_hooks.add(declaration.name)

        self._transition(instance, PluginState.RUNNING)
        instance.started_at = datetime.now()
        logger.info(f"Plugin {plugin_id} running", hooks=sorted(instance.registered_hooks))
        await self.events.emit(PluginEvent.STARTED, plugin_id)

    @staticmethod
    def _load_error(plugin_id: str, error: Optional[Exception]) -> PluginError:
        if isinstance(error, PluginError):
            # Faults raised by loader.load carry the underlying load error
            cause = getattr(error, "cause", None)
            return cause if isinstance(cause, PluginLoadError) else error
        return RuntimeFaultError(plugin_id, str(error), cause=error)

    # === Stop ===

    async def stop(self, plugin_id: str, reason: str = "requested") -> PluginInstance:
        """
        Stop a plugin, stopping running hard dependents first.

        Stopping a plugin that is not running is a no-op.

        Raises:
            PluginNotFoundError: If the plugin is not installed
        """
        async with self._serialized("stop", plugin_id):
            return await self._stop_locked(plugin_id, reason)

    async def _stop_locked(self, plugin_id: str, reason: str) -> PluginInstance:
        instance = self.registry.require(plugin_id)
        if not instance.is_running:
            return instance

        resolution = self._resolve()
        dependents = {
            pid
            for pid in self.resolver.hard_dependents(plugin_id, self.registry.manifests())
            if self.registry.require(pid).is_running
        }
        for dependent_id in reversed(self._ordered(dependents, resolution)):
            await self._shutdown_instance(
                self.registry.require(dependent_id), f"dependency {plugin_id} stopping"
            )

        await self._shutdown_instance(instance, reason)
        return instance

    async def _shutdown_instance(self, instance: PluginInstance, reason: str) -> None:
        """RUNNING -> STOPPING -> STOPPED. Errors from the plugin's stop are recorded, not raised."""
        plugin_id = instance.id
        self._transition(instance, PluginState.STOPPING)

        self.dispatcher.unregister_plugin(plugin_id)
        instance.registered_hooks.clear()

        stopper = getattr(instance.plugin, "stop", None)
        if callable(stopper):
            stopped = await self.executor.invoke(plugin_id, stopper, observe=False, operation="stop")
            if not stopped.ok:
                logger.warning("plugin_stop_failed", plugin_id=plugin_id, error=str(stopped.error))
                if isinstance(stopped.error, PluginError):
                    instance.last_error = stopped.error.to_dict()

        if isinstance(instance.plugin, BasePlugin):
            instance.plugin.unbind()
        self.executor.release(plugin_id)
        instance.plugin = None
        instance.sandbox = None

        self._transition(instance, PluginState.STOPPED)
        instance.stopped_at = datetime.now()
        logger.info(f"Plugin {plugin_id} stopped", reason=reason)
        await self.events.emit(PluginEvent.STOPPED, plugin_id, data={"reason": reason})

    # === Health Trips ===

    def request_stop(self, plugin_id: str, reason: str) -> None:
        """
        Ask for a plugin to be stopped without waiting for it.

        Called by the health monitor when a plugin trips; the stop runs
        as a serialized lifecycle operation.
        """
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._stop_tripped(plugin_id, reason))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _stop_tripped(self, plugin_id: str, reason: str) -> None:
        await self.events.emit(PluginEvent.TRIPPED, plugin_id, data={"reason": reason})
        try:
            async with self._serialized("health_stop", plugin_id):
                if plugin_id in self.registry:
                    await self._stop_locked(plugin_id, f"health trip: {reason}")
        except PluginError as e:
            logger.error("health_stop_failed", plugin_id=plugin_id, error=str(e))

    async def wait_idle(self) -> None:
        """Wait until pending health-triggered stops have completed."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    # === Reload ===

    async def reload(self, plugin_id: str) -> Dict[str, Any]:
        """
        Restart a plugin with a re-validated manifest.

        The plugin and its running hard dependents are stopped (dependents
        first), the manifest is re-read from its source file when it has
        one and validated again, the health record is reset, then the
        plugin and the stopped dependents are started in dependency
        order. Running soft dependents are notified, not restarted.

        Returns:
            Report with the restart order, dependents that failed to
            restart and the notified soft dependents

        Raises:
            ValidationError: If the re-read manifest is invalid (plugin FAILED)
            PluginError: If the plugin itself fails to start again
        """
        async with self._serialized("reload", plugin_id):
            instance = self.registry.require(plugin_id)
            resolution = self._resolve()

            dependents = {
                pid
                for pid in self.resolver.hard_dependents(plugin_id, self.registry.manifests())
                if self.registry.require(pid).is_running
            }
            for dependent_id in reversed(self._ordered(dependents, resolution)):
                await self._shutdown_instance(
                    self.registry.require(dependent_id), f"dependency {plugin_id} reloading"
                )
            if instance.is_running:
                await self._shutdown_instance(instance, "reload")

            try:
                manifest = self._revalidate(instance)
                self.grants.check_manifest(manifest)
            except PluginError as e:
                await self._fail(instance, e)
                raise

            self.registry.replace_manifest(plugin_id, manifest)
            self.loader.unload(plugin_id)
            instance.health = self.monitor.reset(plugin_id)
            instance.reload_count += 1

            await self._start_locked(plugin_id)
            restarted = [plugin_id]
            failed: Dict[str, Dict[str, Any]] = {}

            resolution = self._resolve()
            for dependent_id in self._ordered(dependents, resolution):
                try:
                    await self._start_locked(dependent_id)
                    restarted.append(dependent_id)
                except PluginError as e:
                    failed[dependent_id] = e.to_dict()

            notified = await self._notify_soft_dependents(plugin_id)

            logger.info(f"Reloaded plugin {plugin_id}", restarted=restarted, notified=notified)
            await self.events.emit(
                PluginEvent.RELOADED,
                plugin_id,
                data={"version": str(manifest.version), "restarted": restarted},
            )
            return {"restarted": restarted, "failed": failed, "notified": notified}

    def _revalidate(self, instance: PluginInstance) -> PluginManifest:
        source = instance.manifest.source
        if source is not None:
            manifest = load_manifest(source)
        else:
            data = instance.manifest.to_dict()
            data.pop("source", None)
            manifest = parse_manifest(data)

        if manifest.id != instance.id:
            raise ValidationError(
                instance.id, [f"manifest id changed from '{instance.id}' to '{manifest.id}'"]
            )
        return manifest

    async def _notify_soft_dependents(self, plugin_id: str) -> List[str]:
        notified = []
        for dependent_id in sorted(self.resolver.soft_dependents(plugin_id, self.registry.manifests())):
            dependent = self.registry.require(dependent_id)
            if not dependent.is_running:
                continue
            callback = getattr(dependent.plugin, "on_dependency_reloaded", None)
            if callable(callback):
                await self.executor.invoke(
                    dependent_id, callback, plugin_id, operation="dependency_reloaded"
                )
            await self.events.emit(
                PluginEvent.DEPENDENCY_RELOADED, dependent_id, data={"dependency": plugin_id}
            )
            notified.append(dependent_id)
        return notified

    # === Settings ===

    async def apply_settings(self, plugin_id: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        """Replace a plugin's settings and notify it when running."""
        async with self._serialized("update_settings", plugin_id):
            instance = self.registry.require(plugin_id)
            old = dict(instance.settings)
            instance.settings = dict(settings)
            if instance.sandbox is not None:
                instance.sandbox.settings = dict(settings)

            callback = getattr(instance.plugin, "on_settings_changed", None)
            if instance.is_running and callable(callback):
                await self.executor.invoke(
                    plugin_id, callback, old, dict(settings), operation="settings_changed"
                )

            await self.events.emit(PluginEvent.SETTINGS_CHANGED, plugin_id, data={"keys": sorted(settings)})
            return dict(instance.settings)

    # === Bulk Operations ===

    async def start_all(self) -> Dict[str, Dict[str, Any]]:
        """
        Start every installed plugin in resolved order.

        Returns:
            Errors of the plugins that could not be started, by id
        """
        async with self._serialized("start_all"):
            resolution = self._resolve()
            errors: Dict[str, Dict[str, Any]] = {}

            for plugin_id, error in sorted(resolution.failures.items()):
                instance = self.registry.require(plugin_id)
                if instance.state != PluginState.FAILED:
                    await self._fail(instance, error)
                errors[plugin_id] = error.to_dict()

            for plugin_id in resolution.load_order:
                try:
                    await self._start_locked(plugin_id)
                except PluginError as e:
                    errors[plugin_id] = e.to_dict()

            return errors

    async def stop_all(self, reason: str = "shutdown") -> List[str]:
        """Stop every running plugin, dependents first. Returns the stop order."""
        async with self._serialized("stop_all"):
            resolution = self._resolve()
            running = {instance.id for instance in self.registry.get_running()}
            order = list(reversed(self._ordered(running, resolution)))
            for plugin_id in order:
                instance = self.registry.require(plugin_id)
                if instance.is_running:
                    await self._shutdown_instance(instance, reason)
            return order

    async def shutdown(self) -> None:
        await self.wait_idle()
        await self.stop_all()
