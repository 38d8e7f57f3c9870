"""
Hot Reload Tests

Changed plugin files are routed to a lifecycle reload of the owning plugin.
"""

import asyncio
import json

import pytest

from pluginrt import PluginEvent, PluginManager, PluginState, PluginWatcher


VERSIONED_PLUGIN = """
from pluginrt import BasePlugin


class Plugin(BasePlugin):
    async def start(self, context):
        context.set_data("generation", {generation})

    async def stop(self):
        pass
"""


def reloads(manager, plugin_id):
    return manager.get_events(plugin_id, PluginEvent.RELOADED)


@pytest.fixture
def watcher(manager, plugins_dir):
    return PluginWatcher(
        manager.registry, manager.reload, [plugins_dir], debounce_seconds=0.05
    )


class TestPluginWatcher:
    """Test routing of file changes to plugin reloads."""

    @pytest.mark.asyncio
    async def test_plugin_for_path(self, manager, watcher, write_plugin, plugins_dir):
        """Test that a file maps to the plugin whose directory holds it."""
        await manager.install(write_plugin("alpha"))
        await manager.install(write_plugin("beta"))

        assert watcher.plugin_for(plugins_dir / "alpha" / "plugin.py") == "alpha"
        assert watcher.plugin_for(plugins_dir / "beta" / "lib" / "util.py") == "beta"
        assert watcher.plugin_for(plugins_dir / "stray.py") is None

    @pytest.mark.asyncio
    async def test_burst_of_changes_reloads_once(self, manager, watcher, write_plugin):
        """Test that several writes to one plugin trigger a single reload."""
        path = write_plugin("gen", VERSIONED_PLUGIN.replace("{generation}", "1"))
        await manager.install_and_start(path)
        code = path.parent / "plugin.py"

        code.write_text(VERSIONED_PLUGIN.replace("{generation}", "2"))
        await watcher.notify_change(str(code))
        await watcher.notify_change(str(code))
        await watcher.notify_change(str(path))
        await watcher.wait_idle()

        assert len(reloads(manager, "gen")) == 1
        assert manager.executor.context_for("gen").get_data("generation") == 2
        assert watcher.get_stats()["reloads"] == 1

    @pytest.mark.asyncio
    async def test_unchanged_content_ignored(self, manager, watcher, write_plugin):
        """Test that a touched file with the same content does not reload."""
        path = write_plugin("calm")
        await manager.install_and_start(path)
        await watcher.start()
        try:
            code = path.parent / "plugin.py"
            code.write_text(code.read_text())
            await watcher.notify_change(str(code))
            await watcher.wait_idle()

            assert reloads(manager, "calm") == []
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_unwatched_files_ignored(self, manager, watcher, write_plugin):
        """Test that files outside the watch patterns never reload."""
        path = write_plugin("docs")
        await manager.install_and_start(path)

        notes = path.parent / "README.txt"
        notes.write_text("changed")
        cache = path.parent / "__pycache__" / "plugin.cpython.pyc"
        await watcher.notify_change(str(notes))
        await watcher.notify_change(str(cache))
        await watcher.wait_idle()

        assert reloads(manager, "docs") == []

    @pytest.mark.asyncio
    async def test_stopped_plugin_stays_stopped(self, manager, watcher, write_plugin):
        """Test that a change to a stopped plugin does not start it."""
        path = write_plugin("parked")
        await manager.install_and_start(path)
        await manager.stop("parked")

        code = path.parent / "plugin.py"
        code.write_text(code.read_text() + "\n# edited\n")
        await watcher.notify_change(str(code))
        await watcher.wait_idle()

        assert manager.registry.require("parked").state == PluginState.STOPPED
        assert reloads(manager, "parked") == []

    @pytest.mark.asyncio
    async def test_broken_edit_fails_plugin(self, manager, watcher, write_plugin):
        """Test that a reload of broken code leaves the plugin failed, not the watcher."""
        path = write_plugin("fragile")
        await manager.install_and_start(path)

        code = path.parent / "plugin.py"
        code.write_text("this is not python\n")
        await watcher.notify_change(str(code))
        await watcher.wait_idle()

        assert manager.registry.require("fragile").state == PluginState.FAILED


class TestWatchSetting:
    """Test the watcher started by the manager."""

    @pytest.mark.asyncio
    async def test_manifest_edit_reloads(self, runtime_settings, write_plugin):
        """Test that editing a manifest on disk reloads the plugin with the new version."""
        path = write_plugin("live")
        manager = PluginManager(
            runtime_settings.model_copy(update={"watch": True, "watch_debounce": 0.05})
        )
        try:
            await manager.initialize()
            assert manager.watcher.running

            data = json.loads(path.read_text())
            data["version"] = "1.1.0"
            path.write_text(json.dumps(data, indent=2))

            for _ in range(100):
                if reloads(manager, "live"):
                    break
                await asyncio.sleep(0.05)

            assert str(manager.registry.require("live").manifest.version) == "1.1.0"
            assert manager.registry.require("live").state == PluginState.RUNNING
        finally:
            await manager.shutdown()
        assert not manager.watcher.running

    @pytest.mark.asyncio
    async def test_watch_off_by_default(self, manager, write_plugin):
        """Test that no observer runs unless watching is enabled."""
        write_plugin("quiet")
        await manager.initialize()
        assert manager.watcher.running is False
