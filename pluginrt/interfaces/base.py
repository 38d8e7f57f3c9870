"""
Base Plugin Interface

Plugins subclass ``BasePlugin`` (or provide any object with ``start``/``stop``
and ``@hook_handler`` methods) and are handed a ``SandboxContext`` when started.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple

import structlog

if TYPE_CHECKING:
    from pluginrt.sandbox.context import SandboxContext

logger = structlog.get_logger(__name__)


HandlerMap = Dict[str, Tuple[Callable, Optional[int]]]


def collect_handlers(plugin: Any) -> HandlerMap:
    """
    Map hook name to (handler, priority override) for a plugin object.

    Every method marked with ``@hook_handler`` is collected.
    """
    handlers: HandlerMap = {}
    for name in dir(type(plugin)):
        if name.startswith("__"):
            continue
        attr = getattr(plugin, name, None)
        hook_name = getattr(attr, "_hook_name", None)
        if callable(attr) and hook_name:
            handlers[hook_name] = (attr, getattr(attr, "_hook_priority", None))
    return handlers


class BasePlugin(ABC):
    """
    Base class for plugins.

    Plugins must implement:
    - start(context): acquire resources, called inside the sandbox
    - stop(): release resources, called inside the sandbox

    Optionally implement:
    - on_settings_changed(): react to operator settings updates
    - on_dependency_reloaded(): react to a soft dependency being reloaded
    - health_check(): report plugin specific health
    """

    def __init__(self):
        self._context: Optional["SandboxContext"] = None
        self._start_time: Optional[float] = None

    @property
    def context(self) -> Optional["SandboxContext"]:
        return self._context

    @property
    def settings(self) -> Dict[str, Any]:
        return self._context.settings if self._context else {}

    @property
    def logger(self):
        if self._context is not None:
            return self._context.logger
        return logger

    @property
    def is_started(self) -> bool:
        return self._start_time is not None

    @property
    def uptime(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    def bind(self, context: "SandboxContext") -> None:
        """Attach the sandbox context; called by the runtime before ``start``."""
        self._context = context
        self._start_time = time.time()

    def unbind(self) -> None:
        self._start_time = None

    def handlers(self) -> HandlerMap:
        return collect_handlers(self)

    # === Required Methods ===

    @abstractmethod
    async def start(self, context: "SandboxContext") -> None:
        """
        Start the plugin.

        Args:
            context: The plugin's only handle on the host
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop the plugin and release what ``start`` acquired."""

    # === Optional Methods ===

    async def on_settings_changed(
        self,
        old_settings: Dict[str, Any],
        new_settings: Dict[str, Any],
    ) -> None:
        pass

    async def on_dependency_reloaded(self, dependency_id: str) -> None:
        pass

    async def health_check(self) -> Dict[str, Any]:
        return {
            "healthy": True,
            "uptime": self.uptime,
        }
