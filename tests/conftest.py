"""
Shared fixtures for the plugin runtime tests.

Plugins are written to temporary directories as a manifest plus a
``plugin.py`` module, and loaded the same way discovered plugins are.
"""

import json
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict

import pytest
import pytest_asyncio
import yaml

from pluginrt import (
    HealthSettings,
    PluginManager,
    PluginManifest,
    RuntimeSettings,
    SandboxSettings,
    load_manifest,
)

ALL_CAPABILITIES = ["network", "filesystem", "environment", "database", "system"]


BASIC_PLUGIN = """
from pluginrt import BasePlugin


class Plugin(BasePlugin):
    async def start(self, context):
        pass

    async def stop(self):
        pass
"""


def manifest_data(plugin_id: str, **fields: Any) -> Dict[str, Any]:
    """Raw manifest data with sensible defaults."""
    data = {
        "id": plugin_id,
        "version": "1.0.0",
        "entry_point": "plugin:Plugin",
        "description": f"{plugin_id} test plugin",
    }
    data.update(fields)
    return data


@pytest.fixture
def plugins_dir(tmp_path) -> Path:
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def write_plugin(plugins_dir) -> Callable[..., Path]:
    """Factory writing a plugin directory; returns its manifest path."""

    def _write(
        plugin_id: str,
        code: str = BASIC_PLUGIN,
        manifest_format: str = "json",
        **fields: Any,
    ) -> Path:
        plugin_dir = plugins_dir / plugin_id
        plugin_dir.mkdir(exist_ok=True)
        (plugin_dir / "plugin.py").write_text(textwrap.dedent(code))

        data = manifest_data(plugin_id, **fields)
        if manifest_format == "yaml":
            manifest_path = plugin_dir / "plugin.yaml"
            manifest_path.write_text(yaml.safe_dump(data))
        else:
            manifest_path = plugin_dir / "manifest.json"
            manifest_path.write_text(json.dumps(data, indent=2))
        return manifest_path

    return _write


@pytest.fixture
def make_manifest(write_plugin) -> Callable[..., PluginManifest]:
    """Factory returning a loaded manifest backed by a plugin directory."""

    def _make(plugin_id: str, code: str = BASIC_PLUGIN, **fields: Any) -> PluginManifest:
        return load_manifest(write_plugin(plugin_id, code, **fields))

    return _make


@pytest.fixture
def runtime_settings(plugins_dir, tmp_path) -> RuntimeSettings:
    return RuntimeSettings(
        plugin_dirs=[plugins_dir],
        auto_start=True,
        operation_timeout=5.0,
        sandbox=SandboxSettings(default_timeout=1.0, data_dir=tmp_path / "data"),
        health=HealthSettings(error_threshold=3, window_seconds=60.0),
        grants={"*": ALL_CAPABILITIES},
    )


@pytest_asyncio.fixture
async def manager(runtime_settings):
    """Plugin manager that is shut down after the test."""
    mgr = PluginManager(runtime_settings)
    yield mgr
    await mgr.shutdown()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
