"""
Plugin Source Watcher

Watches plugin directories and reloads a plugin when one of its files
changes. Reloads go through the manager, so they are serialized with
every other lifecycle operation.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import structlog
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from pluginrt.registry import PluginRegistry
from pluginrt.types import OperationResult, PluginState

logger = structlog.get_logger(__name__)


ReloadCallback = Callable[[str], Awaitable[OperationResult]]

WATCH_PATTERNS = ["*.py", "*.json", "*.yaml", "*.yml"]
IGNORE_PATTERNS = ["__pycache__", "*.pyc", ".git"]

# A stopped plugin stays stopped when its files change
RELOADABLE_STATES = {PluginState.RUNNING, PluginState.FAILED}


class PluginWatcher:
    """
    Reloads plugins whose source files change.

    Changes are debounced: a burst of writes to one plugin triggers one
    reload. Files whose content did not change are ignored.

    Usage:
        watcher = PluginWatcher(manager.registry, manager.reload, [plugins_dir])
        await watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        registry: PluginRegistry,
        reload: ReloadCallback,
        directories: Iterable[Path] = (),
        debounce_seconds: float = 0.2,
        watch_patterns: Optional[List[str]] = None,
        ignore_patterns: Optional[List[str]] = None,
    ):
        self.registry = registry
        self._reload = reload
        self.directories = [Path(d) for d in directories]
        self.debounce_seconds = debounce_seconds
        self.watch_patterns = watch_patterns or list(WATCH_PATTERNS)
        self.ignore_patterns = ignore_patterns or list(IGNORE_PATTERNS)

        self._observer: Optional[Observer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._hashes: Dict[str, str] = {}
        self._pending: Set[str] = set()
        self._debounce_task: Optional[asyncio.Task] = None
        self._processing = asyncio.Lock()
        self._reloads = 0

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    async def start(self) -> None:
        """Start watching the plugin directories."""
        if self._observer is not None:
            return

        self._loop = asyncio.get_running_loop()
        roots = self._roots()
        for root in roots:
            self._record_hashes(root)

        observer = Observer()
        handler = _FileChangeHandler(self, self._loop)
        for root in roots:
            observer.schedule(handler, str(root), recursive=True)
        observer.start()
        self._observer = observer

        logger.info("plugin_watcher_started", directories=[str(r) for r in roots])

    async def stop(self) -> None:
        """Stop watching; a reload already running is allowed to finish."""
        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            await asyncio.get_running_loop().run_in_executor(None, observer.join)

        task, self._debounce_task = self._debounce_task, None
        if task is not None:
            if self._processing.locked():
                await asyncio.gather(task, return_exceptions=True)
            else:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._pending.clear()

        logger.info("plugin_watcher_stopped", reloads=self._reloads)

    async def notify_change(self, path: str) -> None:
        """Record a changed file; reloads run after the debounce delay."""
        if not self._matches(Path(path)):
            return
        self._pending.add(str(path))

        if self._debounce_task is not None and not self._processing.locked():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(self._process_after_debounce())

    async def wait_idle(self) -> None:
        """Wait for pending changes to be handled."""
        while self._debounce_task is not None and not self._debounce_task.done():
            await asyncio.gather(self._debounce_task, return_exceptions=True)

    async def _process_after_debounce(self) -> None:
        await asyncio.sleep(self.debounce_seconds)

        async with self._processing:
            changes, self._pending = self._pending, set()

            plugin_ids: Set[str] = set()
            for path in sorted(changes):
                if not self._content_changed(path):
                    continue
                plugin_id = self.plugin_for(Path(path))
                if plugin_id is None:
                    logger.debug("change_outside_plugins", path=path)
                    continue
                plugin_ids.add(plugin_id)

            for plugin_id in sorted(plugin_ids):
                await self._reload_plugin(plugin_id)

    async def _reload_plugin(self, plugin_id: str) -> None:
        instance = self.registry.get(plugin_id)
        if instance is None or instance.state not in RELOADABLE_STATES:
            logger.debug("change_ignored", plugin_id=plugin_id)
            return

        logger.info("plugin_source_changed", plugin_id=plugin_id)
        result = await self._reload(plugin_id)
        self._reloads += 1
        if not result.ok:
            logger.warning(
                "plugin_reload_failed",
                plugin_id=plugin_id,
                error=(result.error or {}).get("message"),
            )

    def plugin_for(self, path: Path) -> Optional[str]:
        """Id of the installed plugin whose directory holds ``path``."""
        path = Path(path).resolve()
        best: Optional[str] = None
        best_depth = -1
        for instance in self.registry.get_all():
            source = instance.manifest.source
            if source is None:
                continue
            root = Path(source).resolve().parent
            if path == root or root in path.parents:
                depth = len(root.parts)
                if depth > best_depth:
                    best, best_depth = instance.id, depth
        return best

    # === Files ===

    def _roots(self) -> List[Path]:
        roots: List[Path] = []
        for directory in self.directories:
            if directory.is_dir():
                roots.append(directory.resolve())
        for instance in self.registry.get_all():
            source = instance.manifest.source
            if source is None:
                continue
            root = Path(source).resolve().parent
            if root.is_dir() and not any(r == root or r in root.parents for r in roots):
                roots.append(root)
        return roots

    def _matches(self, path: Path) -> bool:
        path_str = str(path)
        if any(pattern in path_str or fnmatch.fnmatch(path.name, pattern)
               for pattern in self.ignore_patterns):
            return False
        return any(fnmatch.fnmatch(path.name, pattern) for pattern in self.watch_patterns)

    def _record_hashes(self, root: Path) -> None:
        for pattern in self.watch_patterns:
            for file_path in root.rglob(pattern):
                if self._matches(file_path):
                    self._hashes[str(file_path)] = self._hash_file(file_path)

    def _content_changed(self, path: str) -> bool:
        new_hash = self._hash_file(Path(path))
        if new_hash == self._hashes.get(path):
            return False
        self._hashes[path] = new_hash
        return True

    @staticmethod
    def _hash_file(path: Path) -> str:
        try:
            return hashlib.md5(path.read_bytes()).hexdigest()
        except OSError:
            return ""

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "directories": [str(d) for d in self.directories],
            "tracked_files": len(self._hashes),
            "pending_changes": len(self._pending),
            "reloads": self._reloads,
        }


class _FileChangeHandler(FileSystemEventHandler):
    """Watchdog handler forwarding changes to the host loop."""

    def __init__(self, watcher: PluginWatcher, loop: asyncio.AbstractEventLoop):
        self.watcher = watcher
        self._loop = loop

    def on_modified(self, event):
        if not event.is_directory:
            self._schedule_change(event.src_path)

    def on_created(self, event):
        if not event.is_directory:
            self._schedule_change(event.src_path)

    def on_moved(self, event):
        # Editors save by renaming a temporary file over the original
        if not event.is_directory:
            self._schedule_change(event.dest_path)

    def _schedule_change(self, path) -> None:
        if isinstance(path, bytes):
            path = path.decode()
        try:
            asyncio.run_coroutine_threadsafe(self.watcher.notify_change(path), self._loop)
        except RuntimeError:
            # Host loop already closed
            logger.debug("change_dropped", path=path)
