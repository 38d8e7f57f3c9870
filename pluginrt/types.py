"""
Plugin Runtime Types

Core dataclasses and enums shared by every runtime component:
plugin identity and versioning, manifests, hook registrations,
invocation outcomes and management results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple
import re


# === Enums ===


class PluginState(str, Enum):
    """Plugin lifecycle states."""

    DISCOVERED = "discovered"    # Manifest seen, not yet validated
    VALIDATED = "validated"      # Manifest passed validation
    RESOLVED = "resolved"        # Dependencies satisfied
    LOADING = "loading"          # Entry point being loaded and started
    RUNNING = "running"          # Handlers registered, receiving hooks
    STOPPING = "stopping"        # Handlers being removed
    STOPPED = "stopped"          # Gracefully stopped
    FAILED = "failed"            # Unrecoverable error, kept for diagnostics


class DispatchMode(str, Enum):
    """How a hook delivers a payload to its subscribers."""

    FANOUT = "fanout"      # Every handler, concurrently, all outcomes collected
    PIPELINE = "pipeline"  # Sequential, each handler receives the previous output


class Capability(str, Enum):
    """Privileged operations a plugin must declare and be granted."""

    NETWORK = "network"
    FILESYSTEM = "filesystem"
    ENVIRONMENT = "environment"
    DATABASE = "database"
    SYSTEM = "system"


class InvocationStatus(str, Enum):
    """Outcome of a sandboxed invocation."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    CAPABILITY_DENIED = "capability_denied"
    RUNTIME_FAULT = "runtime_fault"


class PluginEvent(str, Enum):
    """Lifecycle events published on the runtime event emitter."""

    INSTALLED = "plugin.installed"
    STARTED = "plugin.started"
    STOPPED = "plugin.stopped"
    FAILED = "plugin.failed"
    RELOADED = "plugin.reloaded"
    UNINSTALLED = "plugin.uninstalled"
    TRIPPED = "plugin.tripped"
    DEPENDENCY_RELOADED = "plugin.dependency_reloaded"
    SETTINGS_CHANGED = "plugin.settings_changed"


# === Version Handling ===


@dataclass(frozen=True)
class SemanticVersion:
    """
    Semantic version (MAJOR.MINOR.PATCH[-PRERELEASE][+BUILD]).

    Build metadata is ignored for ordering and equality.
    """

    major: int
    minor: int
    patch: int
    prerelease: Optional[str] = None
    build: Optional[str] = field(default=None, compare=False)

    _PATTERN = re.compile(
        r"^(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
        r"(?:-(?P<prerelease>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
        r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
    )

    @classmethod
    def parse(cls, text: str) -> "SemanticVersion":
        """
        Parse a version string.

        Raises:
            ValueError: If the string is not a well-formed semantic version
        """
        if not isinstance(text, str):
            raise ValueError(f"version must be a string, got {type(text).__name__}")

        match = cls._PATTERN.match(text.strip().lstrip("v"))
        if not match:
            raise ValueError(f"malformed version '{text}'")

        return cls(
            major=int(match.group("major")),
            minor=int(match.group("minor")),
            patch=int(match.group("patch")),
            prerelease=match.group("prerelease"),
            build=match.group("build"),
        )

    @classmethod
    def is_valid(cls, text: Any) -> bool:
        try:
            cls.parse(text)
        except ValueError:
            return False
        return True

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.build:
            text += f"+{self.build}"
        return text

    def _key(self) -> tuple:
        # A prerelease sorts before the release it precedes
        pre = (0, self.prerelease) if self.prerelease else (1, "")
        return (self.major, self.minor, self.patch, pre)

    def __lt__(self, other: "SemanticVersion") -> bool:
        return self._key() < other._key()

    def __le__(self, other: "SemanticVersion") -> bool:
        return self._key() <= other._key()

    def __gt__(self, other: "SemanticVersion") -> bool:
        return self._key() > other._key()

    def __ge__(self, other: "SemanticVersion") -> bool:
        return self._key() >= other._key()


_COMPARATORS: Dict[str, Callable[[SemanticVersion, SemanticVersion], bool]] = {
    ">=": lambda v, b: v >= b,
    "<=": lambda v, b: v <= b,
    "==": lambda v, b: v == b,
    "!=": lambda v, b: v != b,
    ">": lambda v, b: v > b,
    "<": lambda v, b: v < b,
}


@dataclass(frozen=True)
class VersionRange:
    """
    A set of version comparators that must all hold.

    Formats:
    - "*" or "" - any version
    - "1.2.3" or "==1.2.3" - exact version
    - ">=1.0.0,<2.0.0" - comma separated comparators
    - "^1.2.0" - compatible (>=1.2.0, <2.0.0)
    - "~1.2.0" - patch level (>=1.2.0, <1.3.0)
    """

    text: str = "*"
    comparators: Tuple[Tuple[str, SemanticVersion], ...] = ()

    @classmethod
    def parse(cls, text: str) -> "VersionRange":
        """
        Parse a range expression.

        Raises:
            ValueError: If any comparator is malformed
        """
        if text is None:
            text = "*"
        if not isinstance(text, str):
            raise ValueError(f"version range must be a string, got {type(text).__name__}")

        text = text.strip()
        if text in ("", "*", "any"):
            return cls("*", ())

        comparators: List[Tuple[str, SemanticVersion]] = []
        for part in text.split(","):
            part = part.strip()
            if not part:
                raise ValueError(f"empty comparator in range '{text}'")
            comparators.extend(cls._parse_part(part))

        return cls(text, tuple(comparators))

    @staticmethod
    def _parse_part(part: str) -> List[Tuple[str, SemanticVersion]]:
        if part.startswith("^"):
            base = SemanticVersion.parse(part[1:])
            if base.major > 0:
                upper = SemanticVersion(base.major + 1, 0, 0)
            elif base.minor > 0:
                upper = SemanticVersion(0, base.minor + 1, 0)
            else:
                upper = SemanticVersion(0, 0, base.patch + 1)
            return [(">=", base), ("<", upper)]

        if part.startswith("~"):
            base = SemanticVersion.parse(part.lstrip("~>"))
            return [(">=", base), ("<", SemanticVersion(base.major, base.minor + 1, 0))]

        for op in (">=", "<=", "==", "!=", ">", "<"):
            if part.startswith(op):
                return [(op, SemanticVersion.parse(part[len(op):]))]

        return [("==", SemanticVersion.parse(part))]

    def satisfies(self, version: SemanticVersion) -> bool:
        """Check whether a version is inside the range."""
        return all(_COMPARATORS[op](version, bound) for op, bound in self.comparators)

    def __str__(self) -> str:
        return self.text


# === Manifest ===


@dataclass(frozen=True)
class PluginDependency:
    """A declared dependency on another plugin."""

    plugin_id: str
    version_range: VersionRange = field(default_factory=VersionRange)
    hard: bool = True  # Soft dependencies order loading but never block it

    def to_dict(self) -> dict:
        return {
            "id": self.plugin_id,
            "version": str(self.version_range),
            "kind": "hard" if self.hard else "soft",
        }


@dataclass(frozen=True)
class HookDeclaration:
    """A hook the plugin will subscribe to, in manifest order."""

    name: str
    priority: int = 100  # Lower runs earlier

    def to_dict(self) -> dict:
        return {"name": self.name, "priority": self.priority}


@dataclass(frozen=True)
class PluginManifest:
    """
    Validated plugin metadata.

    Instances are only produced by the manifest parser and never change
    afterwards; a reload builds a new manifest.
    """

    id: str
    version: SemanticVersion
    entry_point: str
    dependencies: Tuple[PluginDependency, ...] = ()
    hooks: Tuple[HookDeclaration, ...] = ()
    capabilities: FrozenSet[Capability] = frozenset()
    name: str = ""
    description: str = ""
    author: str = ""
    settings_schema: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    default_settings: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    source: Optional[Path] = field(default=None, compare=False)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def hard_dependencies(self) -> List[str]:
        return [d.plugin_id for d in self.dependencies if d.hard]

    @property
    def soft_dependencies(self) -> List[str]:
        return [d.plugin_id for d in self.dependencies if not d.hard]

    def get_hook(self, hook_name: str) -> Optional[HookDeclaration]:
        for hook in self.hooks:
            if hook.name == hook_name:
                return hook
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.display_name,
            "version": str(self.version),
            "description": self.description,
            "author": self.author,
            "entry_point": self.entry_point,
            "dependencies": [d.to_dict() for d in self.dependencies],
            "hooks": [h.to_dict() for h in self.hooks],
            "capabilities": sorted(c.value for c in self.capabilities),
            "settings": self.settings_schema,
            "default_settings": self.default_settings,
            "source": str(self.source) if self.source else None,
        }


# === Hooks ===


@dataclass
class HookDefinition:
    """A hook point defined by the host."""

    name: str
    mode: DispatchMode = DispatchMode.FANOUT
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "mode": self.mode.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class HookRegistration:
    """A plugin handler subscribed to a hook."""

    hook_name: str
    plugin_id: str
    handler: Callable = field(compare=False)
    priority: int = 100
    sequence: int = 0  # Position of the hook in the plugin's manifest

    @property
    def sort_key(self) -> tuple:
        return (self.priority, self.sequence)

    def to_dict(self) -> dict:
        return {
            "hook": self.hook_name,
            "plugin_id": self.plugin_id,
            "priority": self.priority,
            "sequence": self.sequence,
        }


@dataclass(frozen=True)
class Terminal:
    """Returned by a pipeline handler to end the pipeline with a final value."""

    value: Any = None


# === Invocation and Health ===


@dataclass
class InvocationResult:
    """Outcome of one sandboxed call. Plugin faults are values, never raised."""

    plugin_id: str
    status: InvocationStatus
    value: Any = None
    error: Optional[Exception] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == InvocationStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "plugin_id": self.plugin_id,
            "status": self.status.value,
            "error": str(self.error) if self.error else None,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass
class ResourceLimits:
    """Per-plugin resource ceilings enforced by the sandbox."""

    timeout_seconds: float = 5.0
    max_memory_mb: float = 100.0
    max_network_requests: int = 10
    max_filesystem_ops: int = 50
    max_service_calls: int = 50

    def to_dict(self) -> dict:
        return {
            "timeout_seconds": self.timeout_seconds,
            "max_memory_mb": self.max_memory_mb,
            "max_network_requests": self.max_network_requests,
            "max_filesystem_ops": self.max_filesystem_ops,
            "max_service_calls": self.max_service_calls,
        }


@dataclass
class ResourceUsage:
    """Counters of privileged operations performed by a plugin."""

    memory_bytes: int = 0
    network_requests: int = 0
    filesystem_ops: int = 0
    service_calls: int = 0
    invocations: int = 0

    def to_dict(self) -> dict:
        return {
            "memory_bytes": self.memory_bytes,
            "network_requests": self.network_requests,
            "filesystem_ops": self.filesystem_ops,
            "service_calls": self.service_calls,
            "invocations": self.invocations,
        }


# === Management ===


@dataclass
class ValidationResult:
    """Itemized result of manifest validation."""

    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class OperationResult:
    """
    Result/error pair returned by every management operation.

    ``error`` carries the structured error (see ``PluginError.to_dict``)
    so the caller can act on it without reading logs.
    """

    ok: bool
    plugin_id: Optional[str] = None
    value: Any = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, plugin_id: Optional[str] = None, value: Any = None) -> "OperationResult":
        return cls(ok=True, plugin_id=plugin_id, value=value)

    @classmethod
    def failure(cls, plugin_id: Optional[str], error: Dict[str, Any]) -> "OperationResult":
        return cls(ok=False, plugin_id=plugin_id, error=error)

    @property
    def error_kind(self) -> Optional[str]:
        return self.error["kind"] if self.error else None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "plugin_id": self.plugin_id,
            "value": self.value,
            "error": self.error,
        }


@dataclass
class PluginInstance:
    """
    Runtime record of an installed plugin.

    Owned by the lifecycle controller; the sandbox and health record are
    references into the executor and monitor that own them.
    """

    manifest: PluginManifest
    state: PluginState = PluginState.DISCOVERED

    # Runtime
    plugin: Optional[Any] = None
    sandbox: Optional[Any] = None
    health: Optional[Any] = None
    registered_hooks: Set[str] = field(default_factory=set)
    settings: Dict[str, Any] = field(default_factory=dict)

    # Errors
    last_error: Optional[Dict[str, Any]] = None

    # Timestamps
    installed_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    reload_count: int = 0

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def version(self) -> SemanticVersion:
        return self.manifest.version

    @property
    def is_running(self) -> bool:
        return self.state == PluginState.RUNNING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.manifest.display_name,
            "version": str(self.version),
            "state": self.state.value,
            "hooks": sorted(self.registered_hooks),
            "capabilities": sorted(c.value for c in self.manifest.capabilities),
            "dependencies": [d.to_dict() for d in self.manifest.dependencies],
            "error": self.last_error,
            "reload_count": self.reload_count,
            "timestamps": {
                "installed": self.installed_at.isoformat(),
                "started": self.started_at.isoformat() if self.started_at else None,
                "stopped": self.stopped_at.isoformat() if self.stopped_at else None,
            },
        }
