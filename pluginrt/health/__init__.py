"""
Plugin Health

Sliding-window health tracking that trips misbehaving plugins.
"""

from pluginrt.health.monitor import HealthConfig, HealthMonitor, HealthRecord

__all__ = [
    "HealthConfig",
    "HealthMonitor",
    "HealthRecord",
]
