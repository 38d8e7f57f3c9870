"""
Plugin Capability Grants

Host-side capability allow-list and the per-sandbox checker that every
privileged operation goes through.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional
from urllib.parse import urlparse

import structlog

from pluginrt.errors import CapabilityDeniedError
from pluginrt.types import Capability, PluginManifest

logger = structlog.get_logger(__name__)


DEFAULT_GRANT_KEY = "*"


def _to_capabilities(values: Iterable[str]) -> FrozenSet[Capability]:
    return frozenset(Capability(v) if not isinstance(v, Capability) else v for v in values)


class CapabilityGrants:
    """
    Mapping of plugin id to the capabilities the host grants it.

    The ``"*"`` entry, when present, applies to plugins without an
    entry of their own.
    """

    def __init__(self, grants: Optional[Mapping[str, Iterable[str]]] = None):
        self._grants: Dict[str, FrozenSet[Capability]] = {}
        for plugin_id, capabilities in (grants or {}).items():
            self._grants[plugin_id] = _to_capabilities(capabilities)

    def granted_for(self, plugin_id: str) -> FrozenSet[Capability]:
        if plugin_id in self._grants:
            return self._grants[plugin_id]
        return self._grants.get(DEFAULT_GRANT_KEY, frozenset())

    def missing_for(self, manifest: PluginManifest) -> List[Capability]:
        """Declared capabilities the host does not grant, sorted."""
        granted = self.granted_for(manifest.id)
        return sorted(manifest.capabilities - granted, key=lambda c: c.value)

    def check_manifest(self, manifest: PluginManifest) -> None:
        """
        Reject a manifest requiring capabilities the host does not grant.

        Raises:
            CapabilityDeniedError: Naming the first missing capability and
                listing all of them in ``details["missing"]``
        """
        missing = self.missing_for(manifest)
        if missing:
            error = CapabilityDeniedError(manifest.id, missing[0].value, "install")
            error.details["missing"] = [c.value for c in missing]
            raise error

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            plugin_id: sorted(c.value for c in caps)
            for plugin_id, caps in sorted(self._grants.items())
        }


@dataclass
class Denial:
    """A recorded capability denial."""

    capability: str
    operation: str
    resource: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "capability": self.capability,
            "operation": self.operation,
            "resource": self.resource,
            "timestamp": self.timestamp.isoformat(),
        }


class CapabilityChecker:
    """
    Checks privileged operations of one sandbox.

    Features:
    - Effective capability set (declared and granted)
    - Filesystem access confined to allowed roots
    - Network access limited to allowed host patterns
    - Denial audit log
    """

    MAX_DENIALS = 100

    def __init__(
        self,
        plugin_id: str,
        capabilities: FrozenSet[Capability],
        allowed_paths: Optional[Iterable[Path]] = None,
        allowed_hosts: Optional[Iterable[str]] = None,
    ):
        self.plugin_id = plugin_id
        self.capabilities = capabilities
        self._allowed_paths: List[Path] = [Path(p).resolve() for p in allowed_paths or ()]
        self._allowed_hosts: List[str] = list(allowed_hosts or ["*"])
        self._denials: List[Denial] = []

    def allows(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability, operation: str, resource: str = "") -> None:
        """
        Require a capability for an operation.

        Raises:
            CapabilityDeniedError: If the capability is not effective
        """
        if capability not in self.capabilities:
            self._deny(capability, operation, resource)

    def require_path(self, path: Path, operation: str) -> Path:
        """
        Require filesystem access to a path.

        Returns:
            The resolved path

        Raises:
            CapabilityDeniedError: Without the capability or outside the allowed roots
        """
        self.require(Capability.FILESYSTEM, operation, str(path))
        resolved = Path(path).resolve()
        if not any(resolved == root or root in resolved.parents for root in self._allowed_paths):
            self._deny(Capability.FILESYSTEM, operation, str(resolved))
        return resolved

    def require_url(self, url: str, operation: str = "fetch") -> None:
        """
        Require network access to a URL.

        Raises:
            CapabilityDeniedError: Without the capability or for a host not allowed
        """
        self.require(Capability.NETWORK, operation, url)
        host = urlparse(url).hostname or ""
        if not any(fnmatch.fnmatch(host, pattern) for pattern in self._allowed_hosts):
            self._deny(Capability.NETWORK, operation, url)

    def _deny(self, capability: Capability, operation: str, resource: str) -> None:
        denial = Denial(capability.value, operation, resource)
        self._denials.append(denial)
        if len(self._denials) > self.MAX_DENIALS:
            self._denials.pop(0)
        logger.warning(
            "capability_denied",
            plugin_id=self.plugin_id,
            capability=capability.value,
            operation=operation,
            resource=resource,
        )
        error = CapabilityDeniedError(self.plugin_id, capability.value, operation)
        if resource:
            error.details["resource"] = resource
        raise error

    def get_denials(self) -> List[Denial]:
        return list(self._denials)

    def to_dict(self) -> dict:
        return {
            "capabilities": sorted(c.value for c in self.capabilities),
            "allowed_paths": [str(p) for p in self._allowed_paths],
            "allowed_hosts": self._allowed_hosts,
            "denials": len(self._denials),
        }
