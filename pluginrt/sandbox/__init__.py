"""
Plugin Sandbox

Per-plugin isolated execution with capability checks and resource limits.
"""

from pluginrt.sandbox.capabilities import CapabilityChecker, CapabilityGrants, Denial
from pluginrt.sandbox.context import SandboxContext
from pluginrt.sandbox.guard import CodeGuard, scan_source
from pluginrt.sandbox.runtime import HostService, Sandbox, SandboxExecutor

__all__ = [
    "CapabilityChecker",
    "CapabilityGrants",
    "CodeGuard",
    "Denial",
    "HostService",
    "Sandbox",
    "SandboxContext",
    "SandboxExecutor",
    "scan_source",
]
