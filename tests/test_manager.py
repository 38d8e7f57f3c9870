"""
Plugin Manager Tests

Management operations return structured results and never raise.
"""

import asyncio

import pytest

from pluginrt import (
    InvocationStatus,
    PluginEvent,
    PluginManager,
    PluginState,
    UnknownHookError,
)

from conftest import manifest_data


SETTINGS_PLUGIN = """
from pluginrt import BasePlugin


class Plugin(BasePlugin):
    async def start(self, context):
        context.set_data("limit", context.settings["limit"])

    async def stop(self):
        pass

    async def on_settings_changed(self, old_settings, new_settings):
        self.context.set_data("limit", new_settings["limit"])
"""

SNOOPING_PLUGIN = """
from pluginrt import BasePlugin, hook_handler


class Plugin(BasePlugin):
    async def start(self, context):
        pass

    async def stop(self):
        pass

    @hook_handler("inspect")
    def inspect(self, payload):
        return self.context.getenv("HOME")
"""

SLEEPY_PLUGIN = """
import asyncio

from pluginrt import BasePlugin, hook_handler


class Plugin(BasePlugin):
    async def start(self, context):
        pass

    async def stop(self):
        pass

    @hook_handler("work")
    async def work(self, payload):
        self.context.set_data("runs", self.context.get_data("runs", 0) + 1)
        await asyncio.sleep(0.5)
        return "finished"
"""

SOCKET_PLUGIN = """
import socket

from pluginrt import BasePlugin


class Plugin(BasePlugin):
    async def start(self, context):
        pass

    async def stop(self):
        pass
"""

HTTP_PLUGIN = """
import httpx

from pluginrt import BasePlugin, hook_handler


class Plugin(BasePlugin):
    async def start(self, context):
        pass

    async def stop(self):
        pass

    @hook_handler("spawn")
    def spawn(self, payload):
        runner = __import__("subprocess")
        return runner.run(["true"]).returncode

    @hook_handler("client")
    def client(self, payload):
        return httpx.__name__
"""

LIMIT_SCHEMA = {
    "type": "object",
    "properties": {"limit": {"type": "integer", "minimum": 1}},
    "required": ["limit"],
}


# === Discovery ===


class TestInitialize:
    """Test discovery and startup."""

    @pytest.mark.asyncio
    async def test_discovers_and_starts(self, manager, write_plugin, plugins_dir):
        """Test that plugins found on disk are installed and started in order."""
        write_plugin("web", dependencies=["db"])
        write_plugin("db", manifest_format="yaml")
        bad = plugins_dir / "bad"
        bad.mkdir()
        (bad / "manifest.json").write_text('{"id": "bad", "version": "one"}')

        result = await manager.initialize()

        assert result.ok
        assert result.value["installed"] == ["db", "web"]
        assert str(bad) in result.value["errors"]
        assert manager.registry.require("web").state == PluginState.RUNNING
        assert [e["plugin_id"] for e in manager.get_events(event=PluginEvent.STARTED)] == [
            "db",
            "web",
        ]

    @pytest.mark.asyncio
    async def test_unresolvable_plugin_reported(self, manager, write_plugin):
        """Test that startup errors are collected, not raised."""
        write_plugin("lonely", dependencies=["missing"])
        write_plugin("fine")

        result = await manager.initialize()

        assert result.ok
        assert result.value["errors"]["lonely"]["kind"] == "missing_dependency"
        assert manager.registry.require("lonely").state == PluginState.FAILED
        assert manager.registry.require("fine").state == PluginState.RUNNING

    @pytest.mark.asyncio
    async def test_without_auto_start(self, runtime_settings, write_plugin):
        """Test installing discovered plugins without starting them."""
        write_plugin("idle")
        manager = PluginManager(runtime_settings.model_copy(update={"auto_start": False}))
        try:
            await manager.initialize()
            assert manager.registry.require("idle").state == PluginState.VALIDATED
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_stops_dependents_first(self, manager, write_plugin):
        """Test the shutdown order."""
        write_plugin("base")
        write_plugin("app", dependencies=["base"])
        await manager.initialize()

        result = await manager.shutdown()

        assert result.ok
        assert result.value == ["app", "base"]


# === Operation Results ===


class TestOperationResults:
    """Test that failures come back as structured errors."""

    @pytest.mark.asyncio
    async def test_unknown_plugin(self, manager):
        """Test operations on an id that is not installed."""
        for result in (
            await manager.start("ghost"),
            await manager.stop("ghost"),
            await manager.reload("ghost"),
            manager.get_health("ghost"),
            manager.get_settings("ghost"),
        ):
            assert not result.ok
            assert result.error_kind == "not_found"
            assert result.error["plugin_id"] == "ghost"

    @pytest.mark.asyncio
    async def test_invalid_manifest(self, manager):
        """Test that every manifest violation is reported."""
        result = await manager.install({"id": "half", "version": "x"})

        assert not result.ok
        assert result.plugin_id == "half"
        assert result.error_kind == "validation_error"
        assert len(result.error["details"]["errors"]) == 2

    @pytest.mark.asyncio
    async def test_missing_manifest_path(self, manager, tmp_path):
        """Test installing from a path without a manifest."""
        result = await manager.install(tmp_path / "nowhere" / "manifest.json")
        assert result.error_kind == "validation_error"

    @pytest.mark.asyncio
    async def test_duplicate_install(self, manager, write_plugin):
        """Test installing the same id twice."""
        path = write_plugin("once")
        assert (await manager.install(path)).ok

        result = await manager.install(path)
        assert result.error_kind == "duplicate_plugin"

    @pytest.mark.asyncio
    async def test_capability_not_granted(self, runtime_settings, write_plugin):
        """Test that installation requires every declared capability to be granted."""
        manager = PluginManager(
            runtime_settings.model_copy(update={"grants": {"*": ["network"]}})
        )
        try:
            result = await manager.install(
                write_plugin("needy", capabilities=["network", "system"])
            )
            assert result.error_kind == "capability_denied"
            assert result.error["details"]["missing"] == ["system"]
            assert "needy" not in manager.registry
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_uninstall_in_use(self, manager, write_plugin):
        """Test the in-use error names the running dependents."""
        await manager.install(write_plugin("base"))
        await manager.install_and_start(write_plugin("app", dependencies=["base"]))

        result = await manager.uninstall("base")
        assert result.error_kind == "plugin_in_use"
        assert result.error["details"]["dependents"] == ["app"]

        assert (await manager.uninstall("missing")).value is False

    @pytest.mark.asyncio
    async def test_start_failure_result(self, manager, write_plugin):
        """Test the result of a plugin that cannot be loaded."""
        await manager.install(write_plugin("nomod", entry_point="absent_module:Plugin"))

        result = await manager.start("nomod")

        assert result.error_kind == "load_error"
        health = manager.get_health("nomod")
        assert health.value["state"] == "failed"
        assert health.value["last_error_detail"]["kind"] == "load_error"

    @pytest.mark.asyncio
    async def test_list(self, manager, write_plugin):
        """Test listing installed plugins."""
        await manager.install_and_start(write_plugin("listed"))
        listed = manager.list().value
        assert [p["id"] for p in listed] == ["listed"]
        assert listed[0]["state"] == "running"


# === Hooks ===


class TestHooks:
    """Test hook management through the manager."""

    @pytest.mark.asyncio
    async def test_register_hook(self, manager):
        """Test defining hooks with a dispatch mode."""
        assert manager.register_hook("transform", "pipeline").ok
        assert manager.register_hook("transform", "pipeline").ok

        conflict = manager.register_hook("transform", "fanout")
        assert not conflict.ok

        invalid = manager.register_hook("other", "broadcast")
        assert invalid.error_kind == "validation_error"

    @pytest.mark.asyncio
    async def test_emit_unknown_hook(self, manager):
        """Test that emitting an undefined hook raises."""
        with pytest.raises(UnknownHookError):
            await manager.emit("never.defined", {})

    @pytest.mark.asyncio
    async def test_denied_handler_recorded(self, manager, write_plugin):
        """Test a handler using a capability it did not declare."""
        manager.register_hook("inspect")
        await manager.install_and_start(
            write_plugin("snoop", SNOOPING_PLUGIN, hooks=["inspect"])
        )

        result = await manager.emit("inspect", None)

        assert result.outcomes[0].error["kind"] == "capability_denied"
        health = manager.get_health("snoop").value
        assert health["denied"] == 1
        assert health["tripped"] is False

    @pytest.mark.asyncio
    async def test_get_hooks(self, manager, write_plugin):
        """Test the hook listing with subscribers."""
        manager.register_hook("inspect")
        await manager.install_and_start(
            write_plugin("snoop", SNOOPING_PLUGIN, hooks=["inspect"], capabilities=["environment"])
        )
        hooks = {h["name"]: h for h in manager.get_hooks().value}
        assert [s["plugin_id"] for s in hooks["inspect"]["subscribers"]] == ["snoop"]


# === Settings ===


class TestSettings:
    """Test plugin settings."""

    @pytest.mark.asyncio
    async def test_update_and_reset(self, manager, write_plugin):
        """Test validated updates reaching the running plugin."""
        path = write_plugin(
            "tuned",
            SETTINGS_PLUGIN,
            settings=LIMIT_SCHEMA,
            default_settings={"limit": 5},
        )
        await manager.install_and_start(path)
        context = manager.executor.context_for("tuned")
        assert context.get_data("limit") == 5

        updated = await manager.update_settings("tuned", {"limit": 10})
        assert updated.value == {"limit": 10}
        assert context.get_data("limit") == 10

        rejected = await manager.update_settings("tuned", {"limit": 0})
        assert rejected.error_kind == "settings_error"
        assert manager.get_settings("tuned").value == {"limit": 10}

        reset = await manager.reset_settings("tuned")
        assert reset.value == {"limit": 5}
        assert context.get_data("limit") == 5
        assert manager.get_events("tuned", PluginEvent.SETTINGS_CHANGED)

    @pytest.mark.asyncio
    async def test_install_settings_validated(self, manager):
        """Test settings given at install time."""
        data = manifest_data("tuned", settings=LIMIT_SCHEMA, default_settings={"limit": 5})
        result = await manager.install(data, settings={"limit": "many"})
        assert result.error_kind == "settings_error"


# === Sandbox and Stats ===


class TestIntrospection:
    """Test sandbox info, limits and statistics."""

    @pytest.mark.asyncio
    async def test_sandbox_info_and_limits(self, manager, write_plugin):
        """Test inspecting and tuning a running plugin's sandbox."""
        await manager.install_and_start(write_plugin("boxed", capabilities=["network"]))

        info = manager.get_sandbox_info("boxed")
        assert info.value["capabilities"] == ["network"]

        updated = manager.update_resource_limits("boxed", max_network_requests=2)
        assert updated.value["max_network_requests"] == 2
        assert manager.update_resource_limits("boxed", cpu=1).ok is False

        await manager.stop("boxed")
        assert manager.get_sandbox_info("boxed").ok is False

    @pytest.mark.asyncio
    async def test_stats(self, manager, write_plugin):
        """Test aggregate statistics."""
        await manager.install_and_start(write_plugin("counted", capabilities=["database"]))
        stats = manager.get_stats()

        assert stats["total_plugins"] == 1
        assert stats["running_plugins"] == 1
        assert stats["capabilities"]["database"] == 1
        assert stats["fatal"] is False
        assert "system.startup" in stats["hooks"]

    @pytest.mark.asyncio
    async def test_all_sandbox_info(self, manager, write_plugin):
        """Test listing the sandboxes of every running plugin."""
        await manager.install_and_start(write_plugin("one"))
        await manager.install_and_start(write_plugin("two", capabilities=["network"]))

        info = manager.get_all_sandbox_info()

        assert info.ok
        assert list(info.value) == ["one", "two"]
        assert info.value["two"]["capabilities"] == ["network"]

    @pytest.mark.asyncio
    async def test_global_resource_limits(self, manager, write_plugin):
        """Test that new default limits apply to plugins started afterwards."""
        await manager.install_and_start(write_plugin("early"))

        updated = manager.update_global_resource_limits(timeout_seconds=3.0)
        assert updated.ok
        assert updated.value["timeout_seconds"] == 3.0
        assert manager.get_sandbox_info("early").value["limits"]["timeout_seconds"] == 1.0

        await manager.install_and_start(write_plugin("late"))
        assert manager.get_sandbox_info("late").value["limits"]["timeout_seconds"] == 3.0

        rejected = manager.update_global_resource_limits(timeout_seconds="slow")
        assert rejected.ok is False
        assert rejected.error["details"]["limit"] == "timeout_seconds"

    @pytest.mark.asyncio
    async def test_non_numeric_limit(self, manager, write_plugin):
        """Test that a non-numeric limit comes back as a structured error."""
        await manager.install_and_start(write_plugin("boxed"))

        result = manager.update_resource_limits("boxed", timeout_seconds="x")

        assert result.ok is False
        assert result.error_kind == "plugin_error"
        assert manager.get_sandbox_info("boxed").value["limits"]["timeout_seconds"] == 1.0


# === End to End ===


class TestHandlerTimeout:
    """Test a hook handler overrunning its deadline through the manager."""

    @pytest.mark.asyncio
    async def test_timeout_counted_once(self, runtime_settings, write_plugin):
        """Test that a 500ms handler with a 200ms limit times out, counts one error and runs once."""
        manager = PluginManager(
            runtime_settings.model_copy(
                update={"limits": {"sleepy": {"timeout_seconds": 0.2}}}
            )
        )
        try:
            manager.register_hook("work")
            started = await manager.install_and_start(
                write_plugin("sleepy", SLEEPY_PLUGIN, hooks=["work"])
            )
            assert started.ok

            loop = asyncio.get_running_loop()
            start = loop.time()
            result = await manager.emit("work", {})
            elapsed = loop.time() - start

            outcome = result.outcomes[0]
            assert outcome.status == InvocationStatus.TIMEOUT
            assert outcome.error["kind"] == "timeout"
            assert elapsed < 0.45
            assert manager.get_health("sleepy").value["errors"] == 1

            # The abandoned handler is cancelled, not retried
            await asyncio.sleep(0.5)
            assert manager.executor.context_for("sleepy").get_data("runs") == 1
            assert manager.get_health("sleepy").value["errors"] == 1
        finally:
            await manager.shutdown()


class TestCodeConfinement:
    """Test that plugin code is held to its declared capabilities."""

    @pytest.mark.asyncio
    async def test_undeclared_import_fails_load(self, manager, write_plugin):
        """Test that importing socket without the network capability fails the load."""
        await manager.install(write_plugin("sneaky", SOCKET_PLUGIN))

        result = await manager.start("sneaky")

        assert result.error_kind == "capability_denied"
        assert result.error["details"]["capability"] == "network"
        assert [use["name"] for use in result.error["details"]["uses"]] == ["socket"]
        assert manager.get_health("sneaky").value["state"] == "failed"

    @pytest.mark.asyncio
    async def test_declared_import_loads(self, manager, write_plugin):
        """Test that the same plugin loads once it declares the capability."""
        result = await manager.install_and_start(
            write_plugin("honest", SOCKET_PLUGIN, capabilities=["network"])
        )
        assert result.ok
        assert manager.registry.require("honest").state == PluginState.RUNNING

    @pytest.mark.asyncio
    async def test_runtime_import_checked(self, manager, write_plugin):
        """Test that imports made while handling a hook are checked too."""
        manager.register_hook("spawn")
        manager.register_hook("client")
        await manager.install_and_start(
            write_plugin("fetcher", HTTP_PLUGIN, hooks=["spawn", "client"], capabilities=["network"])
        )

        spawned = await manager.emit("spawn", None)
        assert spawned.outcomes[0].error["kind"] == "capability_denied"
        assert spawned.outcomes[0].error["details"]["capability"] == "system"

        client = await manager.emit("client", None)
        assert client.value == ["httpx"]
