"""
Plugin Sandbox Context

The only handle a plugin receives on the host. Every privileged call is
checked against the sandbox's capabilities and counted against its quotas.
"""

from __future__ import annotations

import inspect
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import httpx
import structlog

from pluginrt.errors import PluginError, RuntimeFaultError
from pluginrt.types import Capability

if TYPE_CHECKING:
    from pluginrt.sandbox.runtime import Sandbox, SandboxExecutor


class SandboxContext:
    """
    Host API exposed to one plugin.

    Usage (inside a plugin):
        async def start(self, context):
            context.set_data("counter", 0)
            response = await context.fetch("GET", "https://api.example.com/items")
    """

    def __init__(self, sandbox: "Sandbox", executor: "SandboxExecutor"):
        self._sandbox = sandbox
        self._executor = executor
        self.logger = structlog.get_logger(f"plugin.{sandbox.plugin_id}").bind(
            plugin_id=sandbox.plugin_id
        )

    @property
    def plugin_id(self) -> str:
        return self._sandbox.plugin_id

    @property
    def settings(self) -> Dict[str, Any]:
        return dict(self._sandbox.settings)

    @property
    def data_dir(self) -> Optional[Path]:
        return self._sandbox.data_dir

    def _ensure_active(self) -> None:
        if not self._sandbox.active:
            raise RuntimeFaultError(self.plugin_id, "sandbox has been released")

    # === Capabilities ===

    def has_capability(self, capability: Union[Capability, str]) -> bool:
        return self._sandbox.checker.allows(Capability(capability))

    def require(self, capability: Union[Capability, str], operation: str = "") -> None:
        """
        Raises:
            CapabilityDeniedError: If the capability is not granted
        """
        self._sandbox.checker.require(Capability(capability), operation or "require")

    # === Data Store ===

    def get_data(self, key: str, default: Any = None) -> Any:
        self._ensure_active()
        return self._sandbox.load_data(key, default)

    def set_data(self, key: str, value: Any) -> None:
        """
        Store a value for this plugin.

        Raises:
            ResourceLimitError: If the store would exceed the memory ceiling
        """
        self._ensure_active()
        self._sandbox.store_data(key, value)

    def delete_data(self, key: str) -> bool:
        self._ensure_active()
        return self._sandbox.delete_data(key)

    def data_keys(self) -> List[str]:
        return self._sandbox.data_keys()

    # === Filesystem ===

    def _resolve(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        if not path.is_absolute() and self._sandbox.data_dir is not None:
            path = self._sandbox.data_dir / path
        return path

    def read_file(self, path: Union[str, Path]) -> str:
        """Read a text file inside the plugin's allowed roots."""
        self._ensure_active()
        resolved = self._sandbox.checker.require_path(self._resolve(path), "read_file")
        self._sandbox.consume("filesystem_ops")
        return resolved.read_text(encoding="utf-8")

    def write_file(self, path: Union[str, Path], content: str) -> Path:
        """Write a text file inside the plugin's allowed roots."""
        self._ensure_active()
        resolved = self._sandbox.checker.require_path(self._resolve(path), "write_file")
        self._sandbox.consume("filesystem_ops")
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")
        return resolved

    # === Network ===

    async def fetch(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Perform an HTTP request.

        Raises:
            CapabilityDeniedError: Without the network capability or for a host not allowed
            ResourceLimitError: When the request quota is exhausted
        """
        self._ensure_active()
        self._sandbox.checker.require_url(url)
        self._sandbox.consume("network_requests")

        kwargs.setdefault("timeout", self._sandbox.limits.timeout_seconds)
        async with httpx.AsyncClient(transport=self._executor.http_transport) as client:
            return await client.request(method, url, **kwargs)

    # === Environment ===

    def getenv(self, name: str, default: Optional[str] = None) -> Optional[str]:
        self._ensure_active()
        self._sandbox.checker.require(Capability.ENVIRONMENT, "getenv", name)
        return os.environ.get(name, default)

    # === Host Services ===

    async def call_service(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """
        Call a host-provided service.

        Raises:
            PluginError: If the service does not exist
            CapabilityDeniedError: If the service's capability is not granted
            ResourceLimitError: When the service call quota is exhausted
        """
        self._ensure_active()
        service = self._executor.get_service(name)
        if service is None:
            raise PluginError(f"unknown host service '{name}'", self.plugin_id, service=name)

        self._sandbox.checker.require(service.capability, f"service:{name}")
        self._sandbox.consume("service_calls")

        result = service.func(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    # === Introspection ===

    def get_resource_usage(self) -> Dict[str, Any]:
        return {
            "usage": self._sandbox.usage.to_dict(),
            "limits": self._sandbox.limits.to_dict(),
        }
