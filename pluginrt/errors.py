"""
Plugin Runtime Errors

Every error carries a machine-readable ``kind``, the plugin it concerns
and a ``details`` mapping (dependency, capability, hook...) so that a
management caller can act on it without reading logs.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class PluginError(Exception):
    """Base class for runtime errors."""

    kind = "plugin_error"
    recoverable = True

    def __init__(
        self,
        message: str,
        plugin_id: Optional[str] = None,
        **details: Any,
    ):
        self.plugin_id = plugin_id
        self.message = message
        self.details: Dict[str, Any] = details
        prefix = f"[{plugin_id}] " if plugin_id else ""
        super().__init__(f"{prefix}{message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "plugin_id": self.plugin_id,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# === Manifest ===


class ValidationError(PluginError):
    """Manifest rejected; ``errors`` lists every violation found."""

    kind = "validation_error"

    def __init__(self, plugin_id: Optional[str], errors: List[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors)
        super().__init__(
            f"invalid manifest ({len(self.errors)} violation(s)): {summary}",
            plugin_id,
            errors=self.errors,
        )


# === Resolution ===


class CyclicDependencyError(PluginError):
    """A dependency cycle; ``cycle`` starts and ends with the same id."""

    kind = "cyclic_dependency"

    def __init__(self, plugin_id: str, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"dependency cycle: {' -> '.join(self.cycle)}",
            plugin_id,
            cycle=self.cycle,
        )


class MissingDependencyError(PluginError):
    """A hard dependency is not installed or cannot itself be resolved."""

    kind = "missing_dependency"

    def __init__(self, plugin_id: str, dependency: str, reason: str = "not installed"):
        self.dependency = dependency
        super().__init__(
            f"dependency '{dependency}' {reason}",
            plugin_id,
            dependency=dependency,
            reason=reason,
        )


class VersionMismatchError(PluginError):
    """An installed dependency's version is outside the requested range."""

    kind = "version_mismatch"

    def __init__(self, plugin_id: str, dependency: str, required: str, installed: str):
        self.dependency = dependency
        super().__init__(
            f"dependency '{dependency}' requires {required}, installed {installed}",
            plugin_id,
            dependency=dependency,
            required=required,
            installed=installed,
        )


# === Sandbox ===


class CapabilityDeniedError(PluginError):
    """A privileged operation was attempted without the capability."""

    kind = "capability_denied"

    def __init__(self, plugin_id: str, capability: str, operation: str = ""):
        self.capability = capability
        self.operation = operation
        detail = f" for {operation}" if operation else ""
        super().__init__(
            f"capability '{capability}' not granted{detail}",
            plugin_id,
            capability=capability,
            operation=operation,
        )


class InvocationTimeoutError(PluginError):
    """An invocation ran past its deadline and was abandoned."""

    kind = "timeout"

    def __init__(self, plugin_id: str, timeout_seconds: float, operation: str = "invoke"):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{operation} exceeded {timeout_seconds:g}s",
            plugin_id,
            timeout_seconds=timeout_seconds,
            operation=operation,
        )


class RuntimeFaultError(PluginError):
    """Plugin code raised."""

    kind = "runtime_fault"

    def __init__(self, plugin_id: str, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(
            message,
            plugin_id,
            exception=type(cause).__name__ if cause else None,
        )


class ResourceLimitError(RuntimeFaultError):
    """A sandbox quota (memory, network, filesystem, services) was exhausted."""

    kind = "resource_limit"

    def __init__(self, plugin_id: str, resource: str, limit: Any, used: Any):
        super().__init__(plugin_id, f"{resource} limit exceeded ({used}/{limit})")
        self.details.update(resource=resource, limit=limit, used=used)


# === Lifecycle ===


class PluginNotFoundError(PluginError):
    kind = "not_found"

    def __init__(self, plugin_id: str):
        super().__init__("plugin is not installed", plugin_id)


class DuplicatePluginError(PluginError):
    kind = "duplicate_plugin"

    def __init__(self, plugin_id: str, installed_version: str):
        super().__init__(
            f"plugin already installed (version {installed_version})",
            plugin_id,
            installed_version=installed_version,
        )


class PluginInUseError(PluginError):
    """Uninstall refused because running plugins hard-depend on the target."""

    kind = "plugin_in_use"

    def __init__(self, plugin_id: str, dependents: List[str]):
        self.dependents = list(dependents)
        super().__init__(
            f"required by running plugin(s): {', '.join(self.dependents)}",
            plugin_id,
            dependents=self.dependents,
        )


class PluginLoadError(PluginError):
    """The entry point could not be imported or instantiated."""

    kind = "load_error"

    def __init__(self, plugin_id: str, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(
            message,
            plugin_id,
            exception=type(cause).__name__ if cause else None,
        )


class LifecycleError(PluginError):
    """A state transition that the state machine does not allow."""

    kind = "lifecycle_error"

    def __init__(self, plugin_id: str, from_state: Any, to_state: Any, message: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        text = f"cannot transition from {from_state.value} to {to_state.value}"
        if message:
            text += f": {message}"
        super().__init__(
            text,
            plugin_id,
            from_state=from_state.value,
            to_state=to_state.value,
        )


class OperationTimeoutError(PluginError):
    """The coordinating lock could not be acquired before the deadline."""

    kind = "operation_timeout"

    def __init__(self, operation: str, timeout_seconds: float, plugin_id: Optional[str] = None):
        super().__init__(
            f"{operation} could not acquire the lifecycle lock within {timeout_seconds:g}s",
            plugin_id,
            operation=operation,
            timeout_seconds=timeout_seconds,
        )


# === Hooks ===


class UnknownHookError(PluginError):
    kind = "unknown_hook"

    def __init__(self, hook_name: str, plugin_id: Optional[str] = None):
        self.hook_name = hook_name
        super().__init__(f"hook '{hook_name}' is not defined", plugin_id, hook=hook_name)


class DuplicateHandlerError(PluginError):
    kind = "duplicate_handler"

    def __init__(self, hook_name: str, plugin_id: str):
        self.hook_name = hook_name
        super().__init__(
            f"handler already registered for hook '{hook_name}'",
            plugin_id,
            hook=hook_name,
        )


# === Settings ===


class SettingsError(PluginError):
    kind = "settings_error"

    def __init__(self, plugin_id: str, message: str, path: Optional[List[Any]] = None):
        super().__init__(message, plugin_id, path=list(path or []))


# === Fatal ===


class CoordinatorError(PluginError):
    """
    The coordinating lock itself failed.

    This is the only unrecoverable condition; the runtime refuses further
    management operations and the host must restart.
    """

    kind = "coordinator_failure"
    recoverable = False
