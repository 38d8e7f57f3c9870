"""
Lifecycle Tests

State transitions, dependency-aware start/stop/reload, uninstall
protection, health trips and lock coordination.
"""

import asyncio
from unittest.mock import patch

import pytest

from pluginrt import (
    STATE_TRANSITIONS,
    CoordinatorError,
    MissingDependencyError,
    OperationTimeoutError,
    PluginEvent,
    PluginInUseError,
    PluginLoadError,
    PluginManager,
    PluginNotFoundError,
    PluginState,
    RuntimeFaultError,
)


HOOKED_PLUGIN = """
from pluginrt import BasePlugin, hook_handler


class Plugin(BasePlugin):
    async def start(self, context):
        context.set_data("starts", context.get_data("starts", 0) + 1)

    async def stop(self):
        pass

    @hook_handler("greet")
    async def greet(self, name):
        return f"hello {name}"
"""

FAULTY_PLUGIN = """
from pluginrt import BasePlugin, hook_handler


class Plugin(BasePlugin):
    async def start(self, context):
        pass

    async def stop(self):
        pass

    @hook_handler("work")
    def work(self, payload):
        raise ValueError("cannot work")
"""

SOFT_DEPENDENT_PLUGIN = """
from pluginrt import BasePlugin


class Plugin(BasePlugin):
    async def start(self, context):
        pass

    async def stop(self):
        pass

    async def on_dependency_reloaded(self, dependency_id):
        self.context.set_data("reloaded", dependency_id)
"""

FAILING_START_PLUGIN = """
from pluginrt import BasePlugin


class Plugin(BasePlugin):
    async def start(self, context):
        raise RuntimeError("database unreachable")

    async def stop(self):
        pass
"""

FAILING_STOP_PLUGIN = """
from pluginrt import BasePlugin


class Plugin(BasePlugin):
    async def start(self, context):
        pass

    async def stop(self):
        raise RuntimeError("flush failed")
"""

SLOW_START_PLUGIN = """
import asyncio

from pluginrt import BasePlugin


class Plugin(BasePlugin):
    async def start(self, context):
        await asyncio.sleep(0.6)

    async def stop(self):
        pass
"""


def state_of(manager, plugin_id):
    return manager.registry.require(plugin_id).state


def started_order(manager):
    return [e["plugin_id"] for e in manager.get_events(event=PluginEvent.STARTED)]


def stopped_order(manager):
    return [e["plugin_id"] for e in manager.get_events(event=PluginEvent.STOPPED)]


# === State Machine ===


class TestStateMachine:
    """Test the transition table."""

    @pytest.mark.asyncio
    async def test_failed_reachable_from_every_state(self, manager):
        """Test that FAILED is reachable from any state."""
        lifecycle = manager.lifecycle
        for state in PluginState:
            assert lifecycle.can_transition(state, PluginState.FAILED)

    @pytest.mark.asyncio
    async def test_running_requires_loading(self, manager):
        """Test that states cannot be skipped."""
        lifecycle = manager.lifecycle
        assert not lifecycle.can_transition(PluginState.VALIDATED, PluginState.RUNNING)
        assert not lifecycle.can_transition(PluginState.STOPPED, PluginState.RUNNING)
        assert PluginState.VALIDATED in STATE_TRANSITIONS[PluginState.STOPPED]


# === Start ===


class TestStart:
    """Test starting plugins."""

    @pytest.mark.asyncio
    async def test_install_and_start_registers_hooks(self, manager, make_manifest):
        """Test that a started plugin receives its hooks."""
        manager.register_hook("greet")
        instance = await manager.lifecycle.install_and_start(
            make_manifest("greeter", HOOKED_PLUGIN, hooks=["greet"])
        )

        assert instance.state == PluginState.RUNNING
        assert instance.registered_hooks == {"greet"}

        result = await manager.emit("greet", "world")
        assert result.value == ["hello world"]

    @pytest.mark.asyncio
    async def test_start_brings_up_dependencies(self, manager, make_manifest):
        """Test that hard dependencies are started first."""
        lifecycle = manager.lifecycle
        await lifecycle.install(make_manifest("base"))
        await lifecycle.install(make_manifest("middle", dependencies=["base"]))
        await lifecycle.install(make_manifest("top", dependencies=["middle"]))

        await lifecycle.start("top")

        assert started_order(manager) == ["base", "middle", "top"]
        assert all(state_of(manager, p) == PluginState.RUNNING for p in ("base", "middle", "top"))

    @pytest.mark.asyncio
    async def test_missing_dependency_fails(self, manager, make_manifest):
        """Test that an unresolvable plugin is FAILED with a structured error."""
        lifecycle = manager.lifecycle
        await lifecycle.install(make_manifest("app", dependencies=["ghost"]))

        with pytest.raises(MissingDependencyError):
            await lifecycle.start("app")

        instance = manager.registry.require("app")
        assert instance.state == PluginState.FAILED
        assert instance.last_error["kind"] == "missing_dependency"
        assert instance.last_error["details"]["dependency"] == "ghost"

    @pytest.mark.asyncio
    async def test_dependency_start_failure(self, manager, make_manifest):
        """Test that a dependency failing to start fails its dependent."""
        lifecycle = manager.lifecycle
        await lifecycle.install(make_manifest("db", FAILING_START_PLUGIN))
        await lifecycle.install(make_manifest("app", dependencies=["db"]))

        with pytest.raises(MissingDependencyError) as exc_info:
            await lifecycle.start("app")

        assert "failed to start" in exc_info.value.details["reason"]
        assert state_of(manager, "db") == PluginState.FAILED
        assert state_of(manager, "app") == PluginState.FAILED

    @pytest.mark.asyncio
    async def test_start_error_is_runtime_fault(self, manager, make_manifest):
        """Test that a raising start marks the plugin FAILED."""
        await manager.lifecycle.install(make_manifest("db", FAILING_START_PLUGIN))

        with pytest.raises(RuntimeFaultError) as exc_info:
            await manager.lifecycle.start("db")
        assert "database unreachable" in str(exc_info.value)
        assert manager.executor.get("db") is None

    @pytest.mark.asyncio
    async def test_missing_entry_point(self, manager, make_manifest):
        """Test that an entry point that cannot be imported is a load error."""
        await manager.lifecycle.install(make_manifest("broken", entry_point="nowhere:Plugin"))

        with pytest.raises(PluginLoadError):
            await manager.lifecycle.start("broken")
        assert state_of(manager, "broken") == PluginState.FAILED

    @pytest.mark.asyncio
    async def test_declared_hook_without_handler(self, manager, make_manifest):
        """Test that every declared hook needs a handler."""
        await manager.lifecycle.install(make_manifest("liar", hooks=["greet"]))

        with pytest.raises(PluginLoadError) as exc_info:
            await manager.lifecycle.start("liar")
        assert "greet" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_failed_plugin_can_restart(self, manager, make_manifest, write_plugin):
        """Test that a FAILED plugin may be started again once fixed."""
        lifecycle = manager.lifecycle
        await lifecycle.install(make_manifest("flaky", FAILING_START_PLUGIN))
        with pytest.raises(RuntimeFaultError):
            await lifecycle.start("flaky")

        write_plugin("flaky")
        lifecycle.loader.unload("flaky")
        instance = await lifecycle.start("flaky")

        assert instance.state == PluginState.RUNNING
        assert instance.last_error is None

    @pytest.mark.asyncio
    async def test_start_unknown_plugin(self, manager):
        """Test starting an id that is not installed."""
        with pytest.raises(PluginNotFoundError):
            await manager.lifecycle.start("nobody")


# === Stop ===


class TestStop:
    """Test stopping plugins."""

    @pytest.mark.asyncio
    async def test_stop_cascades_to_dependents(self, manager, make_manifest):
        """Test that dependents are stopped before their dependency."""
        lifecycle = manager.lifecycle
        await lifecycle.install(make_manifest("base"))
        await lifecycle.install(make_manifest("middle", dependencies=["base"]))
        await lifecycle.install(make_manifest("top", dependencies=["middle"]))
        await lifecycle.start("top")

        await lifecycle.stop("base")

        assert stopped_order(manager) == ["top", "middle", "base"]
        assert all(state_of(manager, p) == PluginState.STOPPED for p in ("base", "middle", "top"))

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, manager, make_manifest):
        """Test that stopping a stopped plugin succeeds without events."""
        lifecycle = manager.lifecycle
        await lifecycle.install_and_start(make_manifest("solo"))
        await lifecycle.stop("solo")
        await lifecycle.stop("solo")

        assert stopped_order(manager) == ["solo"]

    @pytest.mark.asyncio
    async def test_stop_unregisters_hooks(self, manager, make_manifest):
        """Test that a stopped plugin receives no more dispatches."""
        manager.register_hook("greet")
        await manager.lifecycle.install_and_start(
            make_manifest("greeter", HOOKED_PLUGIN, hooks=["greet"])
        )
        await manager.lifecycle.stop("greeter")

        result = await manager.emit("greet", "anyone")
        assert result.value == []

    @pytest.mark.asyncio
    async def test_stop_error_recorded(self, manager, make_manifest):
        """Test that a raising stop still ends STOPPED with the error kept."""
        lifecycle = manager.lifecycle
        await lifecycle.install_and_start(make_manifest("leaky", FAILING_STOP_PLUGIN))

        instance = await lifecycle.stop("leaky")

        assert instance.state == PluginState.STOPPED
        assert "flush failed" in instance.last_error["message"]

    @pytest.mark.asyncio
    async def test_data_kept_across_restart(self, manager, make_manifest):
        """Test that the sandbox data store survives stop and start."""
        manager.register_hook("greet")
        lifecycle = manager.lifecycle
        await lifecycle.install_and_start(make_manifest("greeter", HOOKED_PLUGIN, hooks=["greet"]))
        await lifecycle.stop("greeter")
        await lifecycle.start("greeter")

        assert manager.executor.context_for("greeter").get_data("starts") == 2


# === Uninstall ===


class TestUninstall:
    """Test removing plugins."""

    @pytest.mark.asyncio
    async def test_refused_while_dependent_runs(self, manager, make_manifest):
        """Test that a plugin required by a running plugin cannot be removed."""
        lifecycle = manager.lifecycle
        await lifecycle.install(make_manifest("base"))
        await lifecycle.install_and_start(make_manifest("app", dependencies=["base"]))

        with pytest.raises(PluginInUseError) as exc_info:
            await lifecycle.uninstall("base")
        assert exc_info.value.dependents == ["app"]
        assert state_of(manager, "base") == PluginState.RUNNING

        await lifecycle.stop("app")
        assert await lifecycle.uninstall("base") is True
        assert "base" not in manager.registry

    @pytest.mark.asyncio
    async def test_uninstall_unknown_is_noop(self, manager):
        """Test that removing an unknown id reports False."""
        assert await manager.lifecycle.uninstall("nobody") is False

    @pytest.mark.asyncio
    async def test_uninstall_discards_data(self, manager, make_manifest):
        """Test that reinstalling starts from an empty data store."""
        lifecycle = manager.lifecycle
        manager.register_hook("greet")
        manifest = make_manifest("greeter", HOOKED_PLUGIN, hooks=["greet"])
        await lifecycle.install_and_start(manifest)
        await lifecycle.uninstall("greeter")

        await lifecycle.install_and_start(manifest)
        assert manager.executor.context_for("greeter").get_data("starts") == 1


# === Reload ===


class TestReload:
    """Test reloading plugins."""

    @pytest.mark.asyncio
    async def test_reload_restarts_dependents_in_order(self, manager, make_manifest):
        """Test that A, B and C restart in dependency order after reloading A."""
        lifecycle = manager.lifecycle
        await lifecycle.install(make_manifest("a"))
        await lifecycle.install(make_manifest("b", dependencies=["a"]))
        await lifecycle.install(make_manifest("c", dependencies=["b"]))
        await lifecycle.start("c")
        manager.events.clear_history()

        report = await lifecycle.reload("a")

        assert report["restarted"] == ["a", "b", "c"]
        assert report["failed"] == {}
        assert stopped_order(manager) == ["c", "b", "a"]
        assert started_order(manager) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_reload_rereads_manifest(self, manager, write_plugin):
        """Test that a changed manifest file takes effect on reload."""
        path = write_plugin("versioned")
        await manager.install_and_start(path)

        write_plugin("versioned", version="1.1.0")
        await manager.lifecycle.reload("versioned")

        instance = manager.registry.require("versioned")
        assert str(instance.version) == "1.1.0"
        assert instance.reload_count == 1
        assert instance.state == PluginState.RUNNING

    @pytest.mark.asyncio
    async def test_reload_notifies_soft_dependents(self, manager, make_manifest):
        """Test that soft dependents are told, not restarted."""
        lifecycle = manager.lifecycle
        await lifecycle.install_and_start(make_manifest("core"))
        await lifecycle.install_and_start(
            make_manifest("addon", SOFT_DEPENDENT_PLUGIN, dependencies=[{"id": "core", "kind": "soft"}])
        )
        manager.events.clear_history()

        report = await lifecycle.reload("core")

        assert report["notified"] == ["addon"]
        assert report["restarted"] == ["core"]
        assert "addon" not in stopped_order(manager)
        assert manager.executor.context_for("addon").get_data("reloaded") == "core"

    @pytest.mark.asyncio
    async def test_reload_resets_health(self, manager, make_manifest):
        """Test that reload starts a fresh health record."""
        manager.register_hook("work")
        await manager.lifecycle.install_and_start(make_manifest("worker", FAULTY_PLUGIN, hooks=["work"]))
        await manager.emit("work", {})
        assert manager.monitor.get("worker").error_count == 1

        await manager.lifecycle.reload("worker")
        assert manager.monitor.get("worker").error_count == 0


# === Health Trips ===


class TestHealthTrip:
    """Test automatic stops of failing plugins."""

    @pytest.mark.asyncio
    async def test_tripped_plugin_is_stopped(self, manager, make_manifest):
        """Test that crossing the error threshold stops the plugin."""
        manager.register_hook("work")
        await manager.lifecycle.install_and_start(make_manifest("worker", FAULTY_PLUGIN, hooks=["work"]))

        for _ in range(3):
            result = await manager.emit("work", {})
            assert result.outcomes[0].error["kind"] == "runtime_fault"
        await manager.lifecycle.wait_idle()

        assert state_of(manager, "worker") == PluginState.STOPPED
        assert manager.monitor.is_tripped("worker")
        tripped = manager.get_events("worker", PluginEvent.TRIPPED)
        assert len(tripped) == 1
        assert "3 errors" in tripped[0]["data"]["reason"]

        result = await manager.emit("work", {})
        assert result.outcomes == []

    @pytest.mark.asyncio
    async def test_restart_after_trip(self, manager, make_manifest):
        """Test that a tripped plugin started again can trip again."""
        manager.register_hook("work")
        await manager.lifecycle.install_and_start(make_manifest("worker", FAULTY_PLUGIN, hooks=["work"]))
        for _ in range(3):
            await manager.emit("work", {})
        await manager.lifecycle.wait_idle()

        await manager.lifecycle.start("worker")
        assert not manager.monitor.is_tripped("worker")

        for _ in range(3):
            await manager.emit("work", {})
        await manager.lifecycle.wait_idle()
        assert state_of(manager, "worker") == PluginState.STOPPED
        assert len(manager.get_events("worker", PluginEvent.TRIPPED)) == 2


# === Coordination ===


class TestCoordination:
    """Test lock deadlines and fatal coordinator failures."""

    @pytest.mark.asyncio
    async def test_operation_timeout(self, runtime_settings, make_manifest):
        """Test that an operation waiting too long for the lock fails."""
        settings = runtime_settings.model_copy(update={"operation_timeout": 0.2})
        manager = PluginManager(settings)
        try:
            slow = asyncio.ensure_future(
                manager.lifecycle.install_and_start(make_manifest("slow", SLOW_START_PLUGIN))
            )
            await asyncio.sleep(0.05)

            with pytest.raises(OperationTimeoutError) as exc_info:
                await manager.lifecycle.install(make_manifest("other"))
            assert exc_info.value.details["operation"] == "install"

            instance = await slow
            assert instance.state == PluginState.RUNNING
            assert "other" not in manager.registry
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_lock_failure_is_fatal(self, manager, make_manifest):
        """Test that a broken lock refuses every later operation."""
        lifecycle = manager.lifecycle
        with patch.object(lifecycle._lock, "acquire", side_effect=RuntimeError("lock broken")):
            with pytest.raises(CoordinatorError):
                await lifecycle.install(make_manifest("first"))

        assert lifecycle.is_fatal
        with pytest.raises(CoordinatorError):
            await lifecycle.install(make_manifest("second"))

        result = await manager.start("second")
        assert result.error_kind == "coordinator_failure"
        assert result.error["recoverable"] is False
