"""
Plugin Hook Dispatcher

Registry of hook name to ordered plugin handlers, with fan-out and
pipeline dispatch through the sandbox executor.
"""

from __future__ import annotations

import asyncio
import copy
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog

from pluginrt.errors import DuplicateHandlerError, PluginError, UnknownHookError
from pluginrt.sandbox.runtime import SandboxExecutor
from pluginrt.types import (
    DispatchMode,
    HookDefinition,
    HookRegistration,
    InvocationResult,
    InvocationStatus,
    Terminal,
)

logger = structlog.get_logger(__name__)


@dataclass
class HandlerOutcome:
    """Outcome of one handler during a dispatch."""

    plugin_id: str
    status: InvocationStatus
    value: Any = None
    error: Optional[Dict[str, Any]] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == InvocationStatus.SUCCESS

    @classmethod
    def from_invocation(cls, result: InvocationResult) -> "HandlerOutcome":
        error = None
        if result.error is not None:
            error = (
                result.error.to_dict()
                if isinstance(result.error, PluginError)
                else {"kind": "runtime_fault", "message": str(result.error)}
            )
        return cls(
            plugin_id=result.plugin_id,
            status=result.status,
            value=result.value,
            error=error,
            duration_ms=result.duration_ms,
        )

    def to_dict(self) -> dict:
        return {
            "plugin_id": self.plugin_id,
            "status": self.status.value,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass
class DispatchResult:
    """
    Aggregated result of one emit.

    Fan-out: ``value`` lists the values of the handlers that succeeded,
    in dispatch order; ``outcomes`` records every handler.

    Pipeline: ``value`` is the final value, or the last good value when
    a handler failed, in which case ``ok`` is False and ``error`` names
    the failing plugin.
    """

    hook: str
    mode: DispatchMode
    ok: bool = True
    value: Any = None
    outcomes: List[HandlerOutcome] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    aborted_by: Optional[str] = None
    terminated_by: Optional[str] = None

    @property
    def results(self) -> List[Any]:
        return [o.value for o in self.outcomes if o.ok]

    @property
    def failures(self) -> List[HandlerOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def to_dict(self) -> dict:
        return {
            "hook": self.hook,
            "mode": self.mode.value,
            "ok": self.ok,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "error": self.error,
            "aborted_by": self.aborted_by,
            "terminated_by": self.terminated_by,
        }


class HookDispatcher:
    """
    Plugin hook dispatcher.

    Features:
    - Hook point definition with a fixed dispatch mode
    - Handler registration ordered by priority, then manifest order
    - At most one handler per plugin per hook
    - Snapshot subscriber lists: registration changes never affect an
      in-flight dispatch and dispatch never waits on lifecycle operations
    - Fan-out dispatch (concurrent, all outcomes collected)
    - Pipeline dispatch (sequential, short-circuit, abort on error)
    - Every handler runs inside its plugin's sandbox
    - Hook statistics
    """

    def __init__(
        self,
        executor: SandboxExecutor,
        copy_payloads: bool = True,
        define_builtins: bool = True,
    ):
        self._executor = executor
        self._copy_payloads = copy_payloads
        self._definitions: Dict[str, HookDefinition] = {}
        self._subscribers: Dict[str, Tuple[HookRegistration, ...]] = {}
        self._plugin_hooks: Dict[str, Set[str]] = {}
        self._stats: Dict[str, Dict[str, Any]] = {}

        # Guards swaps of the subscriber tuples, never held while dispatching
        self._lock = threading.Lock()

        if define_builtins:
            for definition in BUILTIN_HOOKS:
                self.define(definition.name, definition.mode, definition.description)

    # === Hook Definition ===

    def define(
        self,
        name: str,
        mode: DispatchMode = DispatchMode.FANOUT,
        description: str = "",
    ) -> HookDefinition:
        """
        Define a hook point.

        Args:
            name: Hook name
            mode: Fan-out or pipeline
            description: Human readable description

        Returns:
            The hook definition

        Raises:
            PluginError: If the hook exists with another mode
        """
        mode = DispatchMode(mode)
        with self._lock:
            existing = self._definitions.get(name)
            if existing is not None:
                if existing.mode != mode:
                    raise PluginError(
                        f"hook '{name}' already defined as {existing.mode.value}",
                        hook=name,
                        mode=existing.mode.value,
                    )
                return existing

            definition = HookDefinition(name=name, mode=mode, description=description)
            self._definitions[name] = definition
            self._subscribers.setdefault(name, ())
            self._stats.setdefault(name, {"calls": 0, "errors": 0, "total_time_ms": 0.0})

        logger.debug(f"Defined hook: {name} ({mode.value})")
        return definition

    # === Registration ===

    def register(
        self,
        hook_name: str,
        plugin_id: str,
        handler: Callable,
        priority: int = 100,
        sequence: int = 0,
    ) -> HookRegistration:
        """
        Subscribe a plugin handler to a hook.

        Handlers may subscribe before the host defines the hook; they are
        dispatched once it is defined.

        Raises:
            DuplicateHandlerError: If the plugin already handles this hook
        """
        registration = HookRegistration(
            hook_name=hook_name,
            plugin_id=plugin_id,
            handler=handler,
            priority=priority,
            sequence=sequence,
        )

        with self._lock:
            current = self._subscribers.get(hook_name, ())
            if any(r.plugin_id == plugin_id for r in current):
                raise DuplicateHandlerError(hook_name, plugin_id)

            self._subscribers[hook_name] = tuple(
                sorted(current + (registration,), key=lambda r: (*r.sort_key, r.plugin_id))
            )
            self._plugin_hooks.setdefault(plugin_id, set()).add(hook_name)
            self._stats.setdefault(hook_name, {"calls": 0, "errors": 0, "total_time_ms": 0.0})

        logger.debug(f"Registered hook handler: {hook_name} from {plugin_id} (priority={priority})")
        return registration

    def unregister(self, hook_name: str, plugin_id: str) -> bool:
        with self._lock:
            current = self._subscribers.get(hook_name, ())
            remaining = tuple(r for r in current if r.plugin_id != plugin_id)
            self._subscribers[hook_name] = remaining
            hooks = self._plugin_hooks.get(plugin_id)
            if hooks is not None:
                hooks.discard(hook_name)
            return len(remaining) < len(current)

    def unregister_plugin(self, plugin_id: str) -> int:
        """
        Remove every handler of a plugin.

        Returns:
            Number of hooks the plugin was removed from
        """
        count = 0
        for hook_name in sorted(self._plugin_hooks.get(plugin_id, set()).copy()):
            if self.unregister(hook_name, plugin_id):
                count += 1
        with self._lock:
            self._plugin_hooks.pop(plugin_id, None)
        if count:
            logger.debug(f"Unregistered {count} hooks for plugin {plugin_id}")
        return count

    def snapshot(self, hook_name: str) -> Tuple[HookRegistration, ...]:
        """Current subscribers of a hook, in dispatch order."""
        with self._lock:
            return self._subscribers.get(hook_name, ())

    # === Dispatch ===

    async def emit(self, hook_name: str, payload: Any = None) -> DispatchResult:
        """
        Dispatch a payload to the subscribers of a hook.

        Args:
            hook_name: Defined hook
            payload: Value passed to the handlers

        Returns:
            DispatchResult aggregating every handler outcome

        Raises:
            UnknownHookError: If the hook is not defined
        """
        definition = self._definitions.get(hook_name)
        if definition is None:
            raise UnknownHookError(hook_name)

        subscribers = self.snapshot(hook_name)
        start = time.perf_counter()

        if definition.mode == DispatchMode.PIPELINE:
            result = await self._run_pipeline(hook_name, subscribers, payload)
        else:
            result = await self._run_fanout(hook_name, subscribers, payload)

        stats = self._stats[hook_name]
        stats["calls"] += 1
        stats["errors"] += len(result.failures)
        stats["total_time_ms"] += (time.perf_counter() - start) * 1000
        return result

    async def _run_fanout(
        self,
        hook_name: str,
        subscribers: Tuple[HookRegistration, ...],
        payload: Any,
    ) -> DispatchResult:
        invocations = [
            self._executor.invoke(
                registration.plugin_id,
                registration.handler,
                self._prepare(payload),
                operation=f"hook:{hook_name}",
            )
            for registration in subscribers
        ]
        outcomes = [HandlerOutcome.from_invocation(r) for r in await asyncio.gather(*invocations)]

        for outcome in outcomes:
            if not outcome.ok:
                logger.warning(
                    "hook_handler_failed",
                    hook=hook_name,
                    plugin_id=outcome.plugin_id,
                    status=outcome.status.value,
                    error=outcome.error["message"] if outcome.error else None,
                )

        return DispatchResult(
            hook=hook_name,
            mode=DispatchMode.FANOUT,
            ok=all(o.ok for o in outcomes),
            value=[o.value for o in outcomes if o.ok],
            outcomes=outcomes,
        )

    async def _run_pipeline(
        self,
        hook_name: str,
        subscribers: Tuple[HookRegistration, ...],
        payload: Any,
    ) -> DispatchResult:
        result = DispatchResult(hook=hook_name, mode=DispatchMode.PIPELINE, value=payload)

        for registration in subscribers:
            invocation = await self._executor.invoke(
                registration.plugin_id,
                registration.handler,
                self._prepare(result.value),
                operation=f"hook:{hook_name}",
            )
            outcome = HandlerOutcome.from_invocation(invocation)
            result.outcomes.append(outcome)

            if not outcome.ok:
                result.ok = False
                result.error = outcome.error
                result.aborted_by = registration.plugin_id
                logger.warning(
                    "pipeline_aborted",
                    hook=hook_name,
                    plugin_id=registration.plugin_id,
                    status=outcome.status.value,
                )
                return result

            if isinstance(outcome.value, Terminal):
                result.value = outcome.value.value
                outcome.value = result.value
                result.terminated_by = registration.plugin_id
                return result

            result.value = outcome.value

        return result

    def _prepare(self, payload: Any) -> Any:
        """Isolated copy of a payload for one handler."""
        if not self._copy_payloads:
            return payload
        try:
            return copy.deepcopy(payload)
        except (TypeError, copy.Error) as e:
            logger.debug(f"Payload not copyable, sharing it between handlers: {e}")
            return payload

    # === Queries ===

    def get_plugin_hooks(self, plugin_id: str) -> List[str]:
        return sorted(self._plugin_hooks.get(plugin_id, set()))

    def list_hooks(self) -> List[str]:
        return sorted(self._definitions)

    def get_hooks(self) -> List[Dict[str, Any]]:
        """Every defined or subscribed hook with its ordered subscribers."""
        with self._lock:
            names = sorted(set(self._definitions) | {n for n, s in self._subscribers.items() if s})
            return [
                {
                    "name": name,
                    "mode": self._definitions[name].mode.value if name in self._definitions else None,
                    "defined": name in self._definitions,
                    "description": (
                        self._definitions[name].description if name in self._definitions else ""
                    ),
                    "subscribers": [r.to_dict() for r in self._subscribers.get(name, ())],
                }
                for name in names
            ]

    def get_stats(self, hook_name: Optional[str] = None) -> Dict[str, Any]:
        if hook_name:
            return dict(self._stats.get(hook_name, {}))
        return {name: dict(stats) for name, stats in self._stats.items()}


# === Decorator ===


def hook_handler(hook_name: str, priority: Optional[int] = None):
    """
    Mark a plugin method as the handler of a hook.

    The priority given here overrides the one in the manifest.

    Usage:
        class MyPlugin(BasePlugin):
            @hook_handler("request.received", priority=50)
            async def on_request(self, payload):
                return payload
    """
    def decorator(func: Callable) -> Callable:
        func._hook_name = hook_name
        func._hook_priority = priority
        return func
    return decorator


# === Built-in Hooks ===


BUILTIN_HOOKS = [
    HookDefinition(
        name="system.startup",
        mode=DispatchMode.FANOUT,
        description="Emitted once plugins have been started at host startup",
    ),
    HookDefinition(
        name="system.shutdown",
        mode=DispatchMode.FANOUT,
        description="Emitted before plugins are stopped at host shutdown",
    ),
]
