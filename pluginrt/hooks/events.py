"""
Plugin Event Emitter

Lifecycle notifications (installed, started, tripped, reloaded...) for
host listeners, with a bounded history for diagnostics.
"""

from __future__ import annotations

import inspect
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

from pluginrt.types import PluginEvent

logger = structlog.get_logger(__name__)


@dataclass
class PluginEventData:
    """A lifecycle event about one plugin."""

    event: PluginEvent
    plugin_id: str
    timestamp: datetime = field(default_factory=datetime.now)
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "event": self.event.value,
            "plugin_id": self.plugin_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "error": self.error,
        }


Listener = Callable[[PluginEventData], Any]


class PluginEventEmitter:
    """
    Event emitter for plugin lifecycle events.

    Features:
    - Sync and async listeners
    - Wildcard subscriptions
    - Bounded, filterable history

    Listener errors are logged and never interrupt the lifecycle
    operation that emitted the event.
    """

    def __init__(self, max_history: int = 1000):
        self._listeners: Dict[PluginEvent, List[Listener]] = defaultdict(list)
        self._wildcard_listeners: List[Listener] = []
        self._history: Deque[PluginEventData] = deque(maxlen=max_history)

    # === Subscription ===

    def on(self, event: PluginEvent, callback: Listener) -> None:
        self._listeners[PluginEvent(event)].append(callback)

    def on_all(self, callback: Listener) -> None:
        self._wildcard_listeners.append(callback)

    def off(self, event: PluginEvent, callback: Listener) -> bool:
        listeners = self._listeners.get(PluginEvent(event), [])
        if callback in listeners:
            listeners.remove(callback)
            return True
        return False

    def off_all(self, callback: Listener) -> bool:
        if callback in self._wildcard_listeners:
            self._wildcard_listeners.remove(callback)
            return True
        return False

    # === Emission ===

    async def emit(
        self,
        event: PluginEvent,
        plugin_id: str,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> PluginEventData:
        """
        Emit an event to its listeners and the wildcard listeners.

        Returns:
            The recorded event
        """
        event_data = PluginEventData(
            event=event,
            plugin_id=plugin_id,
            data=data or {},
            error=error,
        )
        self._history.append(event_data)

        for callback in list(self._listeners.get(event, [])) + list(self._wildcard_listeners):
            try:
                result = callback(event_data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in event listener for {event.value}: {e}")

        return event_data

    # === History ===

    def get_history(
        self,
        plugin_id: Optional[str] = None,
        event: Optional[PluginEvent] = None,
        limit: int = 100,
    ) -> List[PluginEventData]:
        """Most recent events, oldest first, optionally filtered."""
        events = [
            e for e in self._history
            if (plugin_id is None or e.plugin_id == plugin_id)
            and (event is None or e.event == event)
        ]
        return events[-limit:]

    def clear_history(self) -> None:
        self._history.clear()

    def get_stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = defaultdict(int)
        for e in self._history:
            counts[e.event.value] += 1
        return {
            "listeners": sum(len(v) for v in self._listeners.values()),
            "wildcard_listeners": len(self._wildcard_listeners),
            "history_size": len(self._history),
            "event_counts": dict(counts),
        }
