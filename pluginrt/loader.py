"""
Plugin Loader

Discovers plugin directories and imports plugin entry points.
"""

from __future__ import annotations

import importlib
import importlib.abc
import importlib.machinery
import importlib.util
import inspect
import re
import sys
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, List, Optional, Union

import structlog

from pluginrt.errors import CapabilityDeniedError, PluginLoadError, ValidationError
from pluginrt.interfaces.base import HandlerMap, collect_handlers
from pluginrt.manifest import find_manifest_file, load_manifest
from pluginrt.sandbox.guard import CodeGuard
from pluginrt.types import PluginManifest

logger = structlog.get_logger(__name__)


MODULE_PREFIX = "_pluginrt_plugins"


class GuardedSourceLoader(importlib.machinery.SourceFileLoader):
    """Source loader that runs a plugin module under its code guard."""

    def __init__(self, fullname: str, path: str, guard: CodeGuard):
        super().__init__(fullname, path)
        self.guard = guard

    def exec_module(self, module: ModuleType) -> None:
        # Compiled from the scanned source; cached bytecode could be stale
        source = self.get_source(module.__name__)
        self.guard.check_source(source, self.path)
        module.__dict__["__builtins__"] = self.guard.builtins
        exec(compile(source, self.path, "exec", dont_inherit=True), module.__dict__)


class PluginModuleFinder(importlib.abc.MetaPathFinder):
    """
    Finds submodules of plugin packages loaded from plugin directories.

    A relative import inside a plugin package resolves to a private
    module name; the submodule is loaded under the same guard as its
    package.
    """

    def __init__(self):
        self.guards: Dict[str, CodeGuard] = {}

    def find_spec(self, fullname, path=None, target=None):
        parts = fullname.split(".")
        if len(parts) < 4 or parts[0] != MODULE_PREFIX or path is None:
            return None
        guard = self.guards.get(parts[1])
        if guard is None:
            return None

        for entry in path:
            base = Path(entry) / parts[-1]
            for candidate, is_package in ((base / "__init__.py", True), (base.with_suffix(".py"), False)):
                if candidate.is_file():
                    return _guarded_spec(fullname, candidate, guard, is_package)
        return None


def _guarded_spec(
    fullname: str, module_file: Path, guard: Optional[CodeGuard], is_package: bool
) -> Optional[importlib.machinery.ModuleSpec]:
    loader = GuardedSourceLoader(fullname, str(module_file), guard) if guard else None
    return importlib.util.spec_from_file_location(
        fullname,
        module_file,
        loader=loader,
        submodule_search_locations=[str(module_file.parent)] if is_package else None,
    )


_finder = PluginModuleFinder()


def _install_finder() -> None:
    if _finder not in sys.meta_path:
        sys.meta_path.insert(0, _finder)


class PluginLoader:
    """
    Discovers and loads plugins from the file system.

    Supports:
    - Plugin directories holding manifest.json or plugin.yaml
    - Entry points in the plugin directory ("module:attribute")
    - Entry points importable from the host environment
    - Module cache invalidation for reloads

    Modules loaded from a plugin directory are registered under a
    private per-plugin name so two plugins may ship same-named modules.
    Given a CodeGuard, they are scanned before running and execute with
    the guard's builtins.
    """

    MODULE_PREFIX = MODULE_PREFIX

    def __init__(self, plugin_dirs: Optional[List[Union[str, Path]]] = None):
        self.plugin_dirs: List[Path] = [Path(p) for p in plugin_dirs or []]
        self.discovery_errors: Dict[str, Dict[str, Any]] = {}
        self._module_names: Dict[str, str] = {}

    # === Discovery ===

    def discover(self) -> List[PluginManifest]:
        """
        Scan plugin directories for plugins.

        Invalid manifests are skipped and kept in ``discovery_errors``
        keyed by path.

        Returns:
            Valid manifests sorted by plugin id; the first directory wins
            when two directories hold the same id
        """
        manifests: Dict[str, PluginManifest] = {}
        self.discovery_errors.clear()

        for plugin_dir in self.plugin_dirs:
            if not plugin_dir.is_dir():
                logger.debug(f"Plugin directory does not exist: {plugin_dir}")
                continue

            for item in sorted(plugin_dir.iterdir()):
                if not item.is_dir() or find_manifest_file(item) is None:
                    continue
                try:
                    manifest = load_manifest(item)
                except ValidationError as e:
                    self.discovery_errors[str(item)] = e.to_dict()
                    logger.warning("invalid_plugin_manifest", path=str(item), errors=e.errors)
                    continue

                if manifest.id in manifests:
                    logger.warning(
                        "duplicate_plugin_id",
                        plugin_id=manifest.id,
                        kept=str(manifests[manifest.id].source),
                        skipped=str(manifest.source),
                    )
                    continue
                manifests[manifest.id] = manifest

        logger.info(f"Discovered {len(manifests)} plugins")
        return [manifests[pid] for pid in sorted(manifests)]

    # === Loading ===

    def load(self, manifest: PluginManifest, guard: Optional[CodeGuard] = None) -> Any:
        """
        Import the entry point and build the plugin object.

        Classes are instantiated without arguments, plain functions are
        called as factories, any other attribute is used as is.

        Raises:
            PluginLoadError: If the module or attribute cannot be loaded
            CapabilityDeniedError: If plugin code uses a privileged module
                it was not granted
        """
        module_name, attribute = manifest.entry_point.split(":", 1)

        try:
            module = self._import(manifest, module_name, guard)
        except (PluginLoadError, CapabilityDeniedError):
            raise
        except Exception as e:
            raise PluginLoadError(
                manifest.id, f"cannot import '{module_name}': {type(e).__name__}: {e}", e
            ) from e

        if not hasattr(module, attribute):
            raise PluginLoadError(manifest.id, f"'{attribute}' not found in module '{module_name}'")

        target = getattr(module, attribute)
        try:
            if inspect.isclass(target):
                return target()
            if inspect.isfunction(target):
                return target()
        except CapabilityDeniedError:
            raise
        except Exception as e:
            raise PluginLoadError(
                manifest.id, f"cannot create plugin from '{manifest.entry_point}': {e}", e
            ) from e
        return target

    def _import(
        self, manifest: PluginManifest, module_name: str, guard: Optional[CodeGuard]
    ) -> ModuleType:
        plugin_dir = manifest.source.parent if manifest.source else None
        module_file = self._find_module_file(plugin_dir, module_name) if plugin_dir else None

        if module_file is None:
            return importlib.import_module(module_name)

        safe_id = self._safe_id(manifest.id)
        private_name = f"{MODULE_PREFIX}.{safe_id}.{module_name}"
        cached = sys.modules.get(private_name)
        if (
            cached is not None
            and self._module_names.get(manifest.id) == private_name
            and getattr(cached, "__file__", None) == str(module_file)
            and (guard is None or cached.__dict__.get("__builtins__") is guard.builtins)
        ):
            return cached
        if cached is not None:
            # Loaded for an earlier sandbox; import again under the current guard
            self.unload(manifest.id)

        is_package = module_file.name == "__init__.py"
        spec = _guarded_spec(private_name, module_file, guard, is_package)
        if spec is None or spec.loader is None:
            raise PluginLoadError(manifest.id, f"cannot create module spec for {module_file}")

        if guard is not None:
            _install_finder()
            _finder.guards[safe_id] = guard

        module = importlib.util.module_from_spec(spec)
        sys.modules[private_name] = module
        self._module_names[manifest.id] = private_name
        try:
            spec.loader.exec_module(module)
        except BaseException:
            self.unload(manifest.id)
            raise

        logger.debug(f"Loaded module {module_file} as {private_name}")
        return module

    @staticmethod
    def _find_module_file(plugin_dir: Path, module_name: str) -> Optional[Path]:
        base = plugin_dir.joinpath(*module_name.split("."))
        for candidate in (base.with_suffix(".py"), base / "__init__.py"):
            if candidate.is_file():
                return candidate
        return None

    @staticmethod
    def _safe_id(plugin_id: str) -> str:
        return re.sub(r"\W", "_", plugin_id)

    def unload(self, plugin_id: str) -> None:
        """Forget a plugin's modules so the next load re-imports them."""
        _finder.guards.pop(self._safe_id(plugin_id), None)
        private_name = self._module_names.pop(plugin_id, None)
        if private_name is None:
            return
        for name in [n for n in sys.modules if n == private_name or n.startswith(f"{private_name}.")]:
            sys.modules.pop(name, None)
        logger.debug(f"Cleared module cache for plugin: {plugin_id}")

    # === Handlers ===

    @staticmethod
    def resolve_handlers(plugin: Any) -> HandlerMap:
        """Hook handlers a plugin object provides."""
        provided = getattr(plugin, "handlers", None)
        if callable(provided):
            return dict(provided())
        return collect_handlers(plugin)
