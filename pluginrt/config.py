"""
Plugin Runtime Configuration

Type-safe settings for the plugin runtime with:
- Environment-based configuration (PLUGINRT_ prefix, nested with "__")
- YAML or JSON configuration files
- Capability grants and per-plugin resource limits
- Opt-in reload of plugins whose files change
"""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from pluginrt.types import Capability, ResourceLimits


class SandboxSettings(BaseModel):
    """Configuration for the sandbox executor."""

    default_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Deadline in seconds for one plugin invocation",
    )
    max_workers: int = Field(
        default=4,
        ge=1,
        description="Worker threads running synchronous plugin code",
    )
    max_memory_mb: float = Field(
        default=100.0,
        gt=0,
        description="Ceiling for a plugin's stored data",
    )
    max_network_requests: int = Field(default=10, ge=0)
    max_filesystem_ops: int = Field(default=50, ge=0)
    max_service_calls: int = Field(default=50, ge=0)
    allowed_hosts: List[str] = Field(
        default_factory=lambda: ["*"],
        description="Host patterns plugins with the network capability may reach",
    )
    data_dir: Optional[Path] = Field(
        default=None,
        description="Root of per-plugin data directories",
    )
    copy_payloads: bool = Field(
        default=True,
        description="Give every hook handler its own copy of the payload",
    )

    def to_limits(self) -> ResourceLimits:
        return ResourceLimits(
            timeout_seconds=self.default_timeout,
            max_memory_mb=self.max_memory_mb,
            max_network_requests=self.max_network_requests,
            max_filesystem_ops=self.max_filesystem_ops,
            max_service_calls=self.max_service_calls,
        )


class HealthSettings(BaseModel):
    """Configuration for the health monitor."""

    error_threshold: int = Field(
        default=5,
        ge=1,
        description="Errors within the window that trip a plugin",
    )
    window_seconds: float = Field(default=60.0, gt=0)
    count_denials: bool = Field(
        default=False,
        description="Count capability denials as errors",
    )


class RuntimeSettings(BaseSettings):
    """
    Plugin runtime configuration.

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with PLUGINRT_
    (e.g., PLUGINRT_HEALTH__ERROR_THRESHOLD=3).
    """

    plugin_dirs: List[Path] = Field(default_factory=list)
    auto_start: bool = Field(
        default=True,
        description="Start discovered plugins on initialize",
    )
    operation_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Deadline for acquiring the lifecycle lock",
    )
    watch: bool = Field(
        default=False,
        description="Reload plugins when their source files change",
    )
    watch_debounce: float = Field(
        default=0.2,
        gt=0,
        description="Seconds of quiet before changed plugins are reloaded",
    )

    log_level: str = "INFO"
    json_logs: bool = True

    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)

    # plugin id (or "*") -> granted capabilities
    grants: Dict[str, List[str]] = Field(default_factory=dict)
    # plugin id -> ResourceLimits overrides
    limits: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    model_config = {
        "env_prefix": "PLUGINRT_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("grants")
    @classmethod
    def check_grants(cls, v: Dict[str, List[str]]) -> Dict[str, List[str]]:
        known = {c.value for c in Capability}
        for plugin_id, capabilities in v.items():
            unknown = sorted(set(capabilities) - known)
            if unknown:
                raise ValueError(f"unknown capabilities granted to '{plugin_id}': {unknown}")
        return v

    @field_validator("limits")
    @classmethod
    def check_limits(cls, v: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        fields = set(ResourceLimits.__dataclass_fields__)
        for plugin_id, overrides in v.items():
            unknown = sorted(set(overrides) - fields)
            if unknown:
                raise ValueError(f"unknown resource limits for '{plugin_id}': {unknown}")
        return v

    def plugin_limits(self) -> Dict[str, ResourceLimits]:
        """Effective limits of every plugin with overrides."""
        base = self.sandbox.to_limits()
        return {
            plugin_id: replace(base, **overrides)
            for plugin_id, overrides in self.limits.items()
        }

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> "RuntimeSettings":
        """Load configuration from a YAML or JSON file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, encoding="utf-8") as f:
            if config_path.suffix in (".yaml", ".yml"):
                config_data = yaml.safe_load(f) or {}
            else:
                config_data = json.load(f)

        return cls(**config_data)


def load_settings(path: Optional[Union[str, Path]] = None) -> RuntimeSettings:
    """Build settings from a file (if given) and the environment."""
    if path is None:
        return RuntimeSettings()
    return RuntimeSettings.from_file(path)


# Global settings instance (lazy loaded)
_settings: Optional[RuntimeSettings] = None


def get_settings() -> RuntimeSettings:
    """Get the global runtime settings instance."""
    global _settings
    if _settings is None:
        _settings = RuntimeSettings()
    return _settings


def set_settings(settings: RuntimeSettings) -> None:
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Reset the global settings to default."""
    global _settings
    _settings = None
