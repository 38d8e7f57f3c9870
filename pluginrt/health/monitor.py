"""
Plugin Health Monitor

Observes every sandboxed invocation and trips a plugin whose errors
within a sliding window reach the configured threshold.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

from pluginrt.types import InvocationResult, InvocationStatus

logger = structlog.get_logger(__name__)


TripCallback = Callable[[str, str], None]


@dataclass
class HealthConfig:
    """Trip condition: ``error_threshold`` errors within ``window_seconds``."""

    error_threshold: int = 5
    window_seconds: float = 60.0

    # Capability denials are recorded but only count toward the trip when set
    count_denials: bool = False

    def to_dict(self) -> dict:
        return {
            "error_threshold": self.error_threshold,
            "window_seconds": self.window_seconds,
            "count_denials": self.count_denials,
        }


@dataclass
class HealthRecord:
    """Rolling health counters of one plugin."""

    plugin_id: str
    invocation_count: int = 0
    success_count: int = 0
    error_count: int = 0
    timeout_count: int = 0
    fault_count: int = 0
    denied_count: int = 0
    cumulative_time_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    tripped: bool = False
    tripped_at: Optional[datetime] = None
    trip_reason: Optional[str] = None

    # Clock readings of errors still inside the window
    recent_errors: Deque[float] = field(default_factory=deque, repr=False)

    def record(self, result: InvocationResult, now: float, counts: bool) -> None:
        self.invocation_count += 1
        self.cumulative_time_ms += result.duration_ms

        if result.status == InvocationStatus.SUCCESS:
            self.success_count += 1
            return

        if result.status == InvocationStatus.TIMEOUT:
            self.timeout_count += 1
        elif result.status == InvocationStatus.RUNTIME_FAULT:
            self.fault_count += 1
        elif result.status == InvocationStatus.CAPABILITY_DENIED:
            self.denied_count += 1

        self.last_error = str(result.error) if result.error else result.status.value
        self.last_error_at = datetime.now()
        if counts:
            self.error_count += 1
            self.recent_errors.append(now)

    def errors_in_window(self, window_seconds: float, now: float) -> int:
        cutoff = now - window_seconds
        while self.recent_errors and self.recent_errors[0] <= cutoff:
            self.recent_errors.popleft()
        return len(self.recent_errors)

    @property
    def error_rate(self) -> float:
        if self.invocation_count == 0:
            return 0.0
        return self.error_count / self.invocation_count

    @property
    def avg_time_ms(self) -> float:
        if self.invocation_count == 0:
            return 0.0
        return self.cumulative_time_ms / self.invocation_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plugin_id": self.plugin_id,
            "invocations": self.invocation_count,
            "successes": self.success_count,
            "errors": self.error_count,
            "timeouts": self.timeout_count,
            "faults": self.fault_count,
            "denied": self.denied_count,
            "error_rate": round(self.error_rate, 4),
            "recent_errors": len(self.recent_errors),
            "cumulative_time_ms": round(self.cumulative_time_ms, 3),
            "avg_time_ms": round(self.avg_time_ms, 3),
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
            "tripped": self.tripped,
            "tripped_at": self.tripped_at.isoformat() if self.tripped_at else None,
            "trip_reason": self.trip_reason,
        }


class HealthMonitor:
    """
    Per-plugin health tracking with a sliding-window trip.

    Features:
    - Invocation, error, timeout, fault and denial counters
    - Cumulative execution time
    - Sliding error window with host-configured threshold
    - Trip requests a stop through a callback; the monitor itself
      never changes plugin state

    Usage:
        monitor = HealthMonitor(HealthConfig(error_threshold=3, window_seconds=10))
        monitor.set_trip_callback(controller.request_stop)
        executor.add_observer(monitor.observe)
    """

    def __init__(
        self,
        config: Optional[HealthConfig] = None,
        on_trip: Optional[TripCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or HealthConfig()
        self._on_trip = on_trip
        self._clock = clock
        self._records: Dict[str, HealthRecord] = {}
        self._trip_count = 0

    def set_trip_callback(self, callback: Optional[TripCallback]) -> None:
        self._on_trip = callback

    def update_config(self, **changes: Any) -> HealthConfig:
        for name, value in changes.items():
            if hasattr(self.config, name):
                setattr(self.config, name, value)
        return self.config

    # === Records ===

    def track(self, plugin_id: str) -> HealthRecord:
        """Get the record of a plugin, creating it on first use."""
        if plugin_id not in self._records:
            self._records[plugin_id] = HealthRecord(plugin_id)
        return self._records[plugin_id]

    def get(self, plugin_id: str) -> Optional[HealthRecord]:
        return self._records.get(plugin_id)

    def reset(self, plugin_id: str) -> HealthRecord:
        """Start a fresh record, as after an operator reload."""
        self._records[plugin_id] = HealthRecord(plugin_id)
        logger.info("health_record_reset", plugin_id=plugin_id)
        return self._records[plugin_id]

    def forget(self, plugin_id: str) -> None:
        self._records.pop(plugin_id, None)

    def is_tripped(self, plugin_id: str) -> bool:
        record = self._records.get(plugin_id)
        return bool(record and record.tripped)

    # === Observation ===

    def observe(self, result: InvocationResult) -> None:
        """Record one invocation outcome and trip the plugin if needed."""
        record = self.track(result.plugin_id)
        now = self._clock()
        counts = result.status in (
            InvocationStatus.TIMEOUT,
            InvocationStatus.RUNTIME_FAULT,
        ) or (
            result.status == InvocationStatus.CAPABILITY_DENIED and self.config.count_denials
        )
        record.record(result, now, counts)

        if not counts or record.tripped:
            return

        errors = record.errors_in_window(self.config.window_seconds, now)
        if errors >= self.config.error_threshold:
            self._trip(record, errors)

    def _trip(self, record: HealthRecord, errors: int) -> None:
        reason = (
            f"{errors} errors within {self.config.window_seconds:g}s "
            f"(threshold {self.config.error_threshold})"
        )
        record.tripped = True
        record.tripped_at = datetime.now()
        record.trip_reason = reason
        self._trip_count += 1

        logger.warning(
            "plugin_tripped",
            plugin_id=record.plugin_id,
            errors=errors,
            window_seconds=self.config.window_seconds,
            last_error=record.last_error,
        )

        if self._on_trip is not None:
            try:
                self._on_trip(record.plugin_id, reason)
            except Exception as e:
                logger.error(f"Trip callback error for {record.plugin_id}: {e}")

    # === Stats ===

    def get_all(self) -> List[HealthRecord]:
        return [self._records[pid] for pid in sorted(self._records)]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tracked": len(self._records),
            "tripped": sorted(pid for pid, r in self._records.items() if r.tripped),
            "total_trips": self._trip_count,
            "config": self.config.to_dict(),
        }
