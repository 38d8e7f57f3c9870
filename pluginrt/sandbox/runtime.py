"""
Plugin Sandbox Runtime

Runs plugin code in per-plugin sandboxes that own the plugin's effective
capabilities, resource limits, usage counters and data store.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

import httpx
import structlog

from pluginrt.errors import (
    CapabilityDeniedError,
    InvocationTimeoutError,
    PluginError,
    ResourceLimitError,
    RuntimeFaultError,
)
from pluginrt.sandbox.capabilities import CapabilityChecker
from pluginrt.sandbox.context import SandboxContext
from pluginrt.sandbox.guard import CodeGuard
from pluginrt.types import (
    Capability,
    InvocationResult,
    InvocationStatus,
    PluginManifest,
    ResourceLimits,
    ResourceUsage,
)

logger = structlog.get_logger(__name__)


InvocationObserver = Callable[[InvocationResult], None]

# usage counter -> limit attribute
QUOTAS = {
    "network_requests": "max_network_requests",
    "filesystem_ops": "max_filesystem_ops",
    "service_calls": "max_service_calls",
}


def _measure(value: Any) -> int:
    """Approximate stored size of a value in bytes."""
    return len(json.dumps(value, default=str).encode("utf-8"))


class SandboxLoop:
    """
    Event loop thread running one plugin's coroutines.

    Plugin coroutines never run on the host loop, so a plugin that blocks
    its loop cannot delay the host's deadlines. Tasks a plugin creates
    live until its sandbox is released.
    """

    def __init__(self, plugin_id: str):
        self.plugin_id = plugin_id
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run, name=f"pluginrt-sandbox-{plugin_id}", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        try:
            self.loop.run_forever()
        finally:
            pending = asyncio.all_tasks(self.loop)
            for task in pending:
                task.cancel()
            if pending:
                self.loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            self.loop.run_until_complete(self.loop.shutdown_asyncgens())
            self.loop.close()

    def submit(self, coro) -> asyncio.Future:
        """Schedule a coroutine on the plugin loop; awaitable from the host loop."""
        future = asyncio.run_coroutine_threadsafe(self._contained(coro), self.loop)
        return asyncio.wrap_future(future)

    async def _contained(self, coro) -> Any:
        try:
            return await coro
        except (KeyboardInterrupt, SystemExit) as e:
            # Must not stop the loop thread; reported like any other fault
            raise RuntimeFaultError(self.plugin_id, f"{type(e).__name__}: {e}", cause=e) from e

    def stop(self) -> None:
        """Stop the loop once its current callback returns."""
        if self.loop.is_closed():
            return
        try:
            self.loop.call_soon_threadsafe(self.loop.stop)
        except RuntimeError:
            logger.debug("sandbox_loop_already_closed", plugin_id=self.plugin_id)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()


@dataclass
class HostService:
    """A host function plugins may call through their context."""

    name: str
    capability: Capability
    func: Callable


@dataclass
class Sandbox:
    """Isolated execution state of one plugin."""

    plugin_id: str
    checker: CapabilityChecker
    limits: ResourceLimits
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    data_dir: Optional[Path] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    store: Dict[str, Any] = field(default_factory=dict)
    store_sizes: Dict[str, int] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    active: bool = True
    context: Optional[SandboxContext] = None
    guard: Optional[CodeGuard] = None
    loop: Optional[SandboxLoop] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def ensure_loop(self) -> SandboxLoop:
        if self.loop is None:
            self.loop = SandboxLoop(self.plugin_id)
        return self.loop

    def consume(self, counter: str, amount: int = 1) -> None:
        """
        Count a privileged operation against its quota.

        Raises:
            ResourceLimitError: If the quota is exhausted
        """
        limit = getattr(self.limits, QUOTAS[counter])
        with self._lock:
            used = getattr(self.usage, counter)
            if used + amount > limit:
                raise ResourceLimitError(self.plugin_id, counter, limit, used)
            setattr(self.usage, counter, used + amount)

    def store_data(self, key: str, value: Any) -> None:
        size = _measure(value) + len(key)
        ceiling = int(self.limits.max_memory_mb * 1024 * 1024)
        with self._lock:
            projected = self.usage.memory_bytes - self.store_sizes.get(key, 0) + size
            if projected > ceiling:
                raise ResourceLimitError(self.plugin_id, "memory_bytes", ceiling, projected)
            self.store[key] = value
            self.store_sizes[key] = size
            self.usage.memory_bytes = projected

    def load_data(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self.store.get(key, default)

    def delete_data(self, key: str) -> bool:
        with self._lock:
            if key not in self.store:
                return False
            del self.store[key]
            self.usage.memory_bytes -= self.store_sizes.pop(key, 0)
            return True

    def data_keys(self) -> List[str]:
        with self._lock:
            return sorted(self.store)

    def to_dict(self) -> dict:
        return {
            "plugin_id": self.plugin_id,
            "active": self.active,
            "created_at": self.created_at.isoformat(),
            "data_dir": str(self.data_dir) if self.data_dir else None,
            "limits": self.limits.to_dict(),
            "usage": self.usage.to_dict(),
            "data_keys": len(self.store),
            **self.checker.to_dict(),
        }


class SandboxExecutor:
    """
    Sandboxed execution runtime for plugins.

    Features:
    - One sandbox per plugin, created at load and released at stop
    - Per-invocation wall-clock timeout
    - Capability checks on every privileged operation
    - Resource quotas and a memory ceiling on the plugin data store
    - Faults converted to InvocationResult values, never raised
    - Invocation observers (health monitoring)
    - Host services exposed behind capabilities

    Coroutine handlers run on the plugin's own loop thread and are
    cancelled when they time out. Synchronous handlers run on a shared
    thread pool; on timeout the caller is released immediately but the
    worker thread runs to completion.
    """

    def __init__(
        self,
        default_limits: Optional[ResourceLimits] = None,
        max_workers: int = 4,
        data_root: Optional[Path] = None,
        allowed_hosts: Optional[Iterable[str]] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._default_limits = default_limits or ResourceLimits()
        self._max_workers = max_workers
        self._data_root = Path(data_root) if data_root else None
        self._allowed_hosts = list(allowed_hosts or ["*"])
        self.http_transport = http_transport

        self._thread_pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="pluginrt-sandbox"
        )
        self._sandboxes: Dict[str, Sandbox] = {}
        self._stores: Dict[str, Dict[str, Any]] = {}  # survive stop/start cycles
        self._plugin_limits: Dict[str, ResourceLimits] = {}
        self._services: Dict[str, HostService] = {}
        self._observers: List[InvocationObserver] = []

        self._stats = {
            "total_invocations": 0,
            "successful_invocations": 0,
            "timeout_invocations": 0,
            "denied_invocations": 0,
            "faulted_invocations": 0,
        }

    # === Sandboxes ===

    def create(
        self,
        manifest: PluginManifest,
        granted: FrozenSet[Capability],
        limits: Optional[ResourceLimits] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Sandbox:
        """
        Create the sandbox of a plugin being loaded.

        Args:
            manifest: Plugin manifest
            granted: Capabilities the host grants the plugin
            limits: Limits overriding the executor defaults
            settings: Plugin settings exposed through the context

        Returns:
            The new sandbox, replacing any previous one
        """
        plugin_id = manifest.id
        if plugin_id in self._sandboxes:
            self.release(plugin_id)

        data_dir = self._data_root / plugin_id if self._data_root else None
        checker = CapabilityChecker(
            plugin_id,
            manifest.capabilities & granted,
            allowed_paths=[data_dir] if data_dir else [],
            allowed_hosts=self._allowed_hosts,
        )
        limits = limits or self._plugin_limits.get(plugin_id) or ResourceLimits(
            **self._default_limits.to_dict()
        )

        sandbox = Sandbox(
            plugin_id=plugin_id,
            checker=checker,
            limits=limits,
            data_dir=data_dir,
            settings=dict(settings or {}),
        )
        for key, value in self._stores.pop(plugin_id, {}).items():
            sandbox.store[key] = value
            sandbox.store_sizes[key] = _measure(value) + len(key)
        sandbox.usage.memory_bytes = sum(sandbox.store_sizes.values())
        sandbox.context = SandboxContext(sandbox, self)
        sandbox.guard = CodeGuard(sandbox)

        self._sandboxes[plugin_id] = sandbox
        logger.debug(
            "sandbox_created",
            plugin_id=plugin_id,
            capabilities=sorted(c.value for c in checker.capabilities),
        )
        return sandbox

    def release(self, plugin_id: str) -> bool:
        """Tear down a plugin's sandbox, keeping its data store."""
        sandbox = self._sandboxes.pop(plugin_id, None)
        if sandbox is None:
            return False
        sandbox.active = False
        if sandbox.loop is not None:
            sandbox.loop.stop()
        self._stores[plugin_id] = dict(sandbox.store)
        logger.debug("sandbox_released", plugin_id=plugin_id)
        return True

    def discard(self, plugin_id: str) -> None:
        """Drop every trace of an uninstalled plugin."""
        self.release(plugin_id)
        self._stores.pop(plugin_id, None)
        self._plugin_limits.pop(plugin_id, None)

    def get(self, plugin_id: str) -> Optional[Sandbox]:
        return self._sandboxes.get(plugin_id)

    def context_for(self, plugin_id: str) -> Optional[SandboxContext]:
        sandbox = self._sandboxes.get(plugin_id)
        return sandbox.context if sandbox else None

    # === Invocation ===

    async def invoke(
        self,
        plugin_id: str,
        handler: Callable,
        *args: Any,
        timeout: Optional[float] = None,
        observe: bool = True,
        operation: str = "invoke",
        **kwargs: Any,
    ) -> InvocationResult:
        """
        Run plugin code inside the plugin's sandbox.

        Args:
            plugin_id: Plugin whose code is run
            handler: Sync or async callable
            *args, **kwargs: Arguments for the handler
            timeout: Deadline in seconds, defaults to the sandbox limit
            observe: Report the outcome to observers
            operation: Name used in logs and errors

        Returns:
            InvocationResult; plugin errors are never raised
        """
        start = time.perf_counter()
        sandbox = self._sandboxes.get(plugin_id)

        if sandbox is None or not sandbox.active:
            result = InvocationResult(
                plugin_id,
                InvocationStatus.RUNTIME_FAULT,
                error=RuntimeFaultError(plugin_id, "no active sandbox"),
            )
            # Not the plugin's fault; kept out of its health record
            return self._finish(result, start, observe=False)

        timeout = timeout if timeout is not None else sandbox.limits.timeout_seconds
        sandbox.usage.invocations += 1
        self._stats["total_invocations"] += 1

        try:
            future = self._schedule(sandbox, handler, args, kwargs)
        except Exception as e:
            # Calling the handler itself raised (bad arguments, sync prelude)
            return self._finish(self._classify(plugin_id, e), start, observe)

        try:
            done, _ = await asyncio.wait({future}, timeout=timeout)
        except asyncio.CancelledError:
            future.cancel()
            raise

        if not done:
            future.cancel()
            future.add_done_callback(_consume_outcome)
            logger.warning(
                "invocation_timeout",
                plugin_id=plugin_id,
                operation=operation,
                timeout_seconds=timeout,
            )
            result = InvocationResult(
                plugin_id,
                InvocationStatus.TIMEOUT,
                error=InvocationTimeoutError(plugin_id, timeout, operation),
            )
            return self._finish(result, start, observe)

        try:
            value = future.result()
        except BaseException as e:
            # KeyboardInterrupt and SystemExit raised by plugin code are faults too
            result = self._classify(plugin_id, e)
            logger.warning(
                "invocation_failed",
                plugin_id=plugin_id,
                operation=operation,
                status=result.status.value,
                error=str(result.error),
            )
            return self._finish(result, start, observe)

        return self._finish(
            InvocationResult(plugin_id, InvocationStatus.SUCCESS, value=value), start, observe
        )

    def _schedule(
        self, sandbox: Sandbox, handler: Callable, args: tuple, kwargs: dict
    ) -> asyncio.Future:
        if inspect.iscoroutinefunction(handler):
            return sandbox.ensure_loop().submit(handler(*args, **kwargs))

        loop = asyncio.get_running_loop()
        return loop.run_in_executor(
            self._thread_pool, functools.partial(_run_sync, handler, args, kwargs)
        )

    @staticmethod
    def _classify(plugin_id: str, error: BaseException) -> InvocationResult:
        if isinstance(error, CapabilityDeniedError):
            return InvocationResult(plugin_id, InvocationStatus.CAPABILITY_DENIED, error=error)
        if isinstance(error, RuntimeFaultError):
            return InvocationResult(plugin_id, InvocationStatus.RUNTIME_FAULT, error=error)
        fault = RuntimeFaultError(plugin_id, f"{type(error).__name__}: {error}", cause=error)
        return InvocationResult(plugin_id, InvocationStatus.RUNTIME_FAULT, error=fault)

    def _finish(self, result: InvocationResult, start: float, observe: bool) -> InvocationResult:
        result.duration_ms = (time.perf_counter() - start) * 1000
        key = {
            InvocationStatus.SUCCESS: "successful_invocations",
            InvocationStatus.TIMEOUT: "timeout_invocations",
            InvocationStatus.CAPABILITY_DENIED: "denied_invocations",
            InvocationStatus.RUNTIME_FAULT: "faulted_invocations",
        }[result.status]
        self._stats[key] += 1

        if observe:
            for observer in list(self._observers):
                try:
                    observer(result)
                except Exception as e:
                    logger.error(f"Invocation observer error: {e}")
        return result

    # === Observers ===

    def add_observer(self, observer: InvocationObserver) -> None:
        self._observers.append(observer)

    # === Host Services ===

    def provide_service(
        self,
        name: str,
        capability: Capability,
        func: Callable,
    ) -> None:
        """
        Expose a host function to plugins holding ``capability``.

        Usage:
            executor.provide_service("db.query", Capability.DATABASE, run_query)
            rows = await context.call_service("db.query", "SELECT 1")
        """
        self._services[name] = HostService(name, Capability(capability), func)
        logger.debug(f"Provided host service: {name} ({Capability(capability).value})")

    def get_service(self, name: str) -> Optional[HostService]:
        return self._services.get(name)

    # === Limits ===

    @property
    def default_limits(self) -> ResourceLimits:
        return self._default_limits

    def set_plugin_limits(self, plugin_id: str, limits: ResourceLimits) -> None:
        """Limits used for a plugin's future sandboxes."""
        self._plugin_limits[plugin_id] = limits

    def update_resource_limits(self, plugin_id: str, **changes: Any) -> ResourceLimits:
        """
        Change limits of a plugin, applying to its live sandbox too.

        Raises:
            PluginError: On an unknown or non-positive limit
        """
        base = self._sandboxes[plugin_id].limits if plugin_id in self._sandboxes else (
            self._plugin_limits.get(plugin_id) or self._default_limits
        )
        limits = _apply_limit_changes(base, changes, plugin_id)
        self._plugin_limits[plugin_id] = limits
        if plugin_id in self._sandboxes:
            self._sandboxes[plugin_id].limits = limits
        logger.info("resource_limits_updated", plugin_id=plugin_id, **changes)
        return limits

    def update_default_limits(self, **changes: Any) -> ResourceLimits:
        """
        Change the limits of sandboxes created without an override.

        Live sandboxes keep their limits.

        Raises:
            PluginError: On an unknown or non-positive limit
        """
        self._default_limits = _apply_limit_changes(self._default_limits, changes)
        logger.info("default_resource_limits_updated", **changes)
        return self._default_limits

    # === Introspection ===

    def get_sandbox_info(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        sandbox = self._sandboxes.get(plugin_id)
        return sandbox.to_dict() if sandbox else None

    def get_all_sandbox_info(self) -> Dict[str, Dict[str, Any]]:
        return {
            plugin_id: self._sandboxes[plugin_id].to_dict() for plugin_id in sorted(self._sandboxes)
        }

    def get_stats(self) -> Dict[str, Any]:
        usage = ResourceUsage()
        for sandbox in self._sandboxes.values():
            usage.memory_bytes += sandbox.usage.memory_bytes
            usage.network_requests += sandbox.usage.network_requests
            usage.filesystem_ops += sandbox.usage.filesystem_ops
            usage.service_calls += sandbox.usage.service_calls
            usage.invocations += sandbox.usage.invocations
        return {
            **self._stats,
            "active_sandboxes": len(self._sandboxes),
            "thread_pool_size": self._max_workers,
            "services": sorted(self._services),
            "resource_usage": usage.to_dict(),
        }

    async def shutdown(self) -> None:
        for plugin_id in list(self._sandboxes):
            self.release(plugin_id)
        # Worker threads still running a timed-out handler are not waited for
        self._thread_pool.shutdown(wait=False, cancel_futures=True)
        logger.info("Sandbox executor shutdown")


def _apply_limit_changes(
    base: ResourceLimits,
    changes: Dict[str, Any],
    plugin_id: Optional[str] = None,
) -> ResourceLimits:
    values = base.to_dict()
    for name, value in changes.items():
        if name not in values:
            raise PluginError(f"unknown resource limit '{name}'", plugin_id, limit=name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise PluginError(f"resource limit '{name}' must be a number", plugin_id, limit=name)
        if value <= 0:
            raise PluginError(f"resource limit '{name}' must be positive", plugin_id, limit=name)
        values[name] = value
    return ResourceLimits(**values)


def _run_sync(handler: Callable, args: tuple, kwargs: dict) -> Any:
    result = handler(*args, **kwargs)
    if inspect.iscoroutine(result):
        # A sync callable returned a coroutine; run it on this worker thread
        return asyncio.run(result)
    return result


def _consume_outcome(future: asyncio.Future) -> None:
    # Retrieve the late outcome of an abandoned invocation so it is not reported as unhandled
    if not future.cancelled():
        future.exception()
