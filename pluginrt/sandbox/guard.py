"""
Plugin Code Guard

Confines plugin modules to their effective capabilities. Plugin source is
scanned before it runs, and plugin modules execute with builtins of their
own whose ``__import__``, ``open`` and code evaluation functions go through
the sandbox's capability checker.

Entry points importable from the host environment are host code and are
not guarded.
"""

from __future__ import annotations

import ast
import builtins
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pluginrt.errors import CapabilityDeniedError
from pluginrt.types import Capability

if TYPE_CHECKING:
    from pluginrt.sandbox.runtime import Sandbox


# Top-level module -> capability a plugin needs to import it
PRIVILEGED_MODULES: Dict[str, Capability] = {
    # network
    "socket": Capability.NETWORK,
    "ssl": Capability.NETWORK,
    "http": Capability.NETWORK,
    "urllib": Capability.NETWORK,
    "httpx": Capability.NETWORK,
    "requests": Capability.NETWORK,
    "aiohttp": Capability.NETWORK,
    "ftplib": Capability.NETWORK,
    "smtplib": Capability.NETWORK,
    "xmlrpc": Capability.NETWORK,
    # filesystem
    "io": Capability.FILESYSTEM,
    "pathlib": Capability.FILESYSTEM,
    "shutil": Capability.FILESYSTEM,
    "tempfile": Capability.FILESYSTEM,
    "glob": Capability.FILESYSTEM,
    # database
    "sqlite3": Capability.DATABASE,
    "dbm": Capability.DATABASE,
    # host process
    "os": Capability.SYSTEM,
    "sys": Capability.SYSTEM,
    "subprocess": Capability.SYSTEM,
    "multiprocessing": Capability.SYSTEM,
    "signal": Capability.SYSTEM,
    "ctypes": Capability.SYSTEM,
    "importlib": Capability.SYSTEM,
    "builtins": Capability.SYSTEM,
    "gc": Capability.SYSTEM,
    "pty": Capability.SYSTEM,
}

# Builtins that can run code outside the guarded namespace
EVALUATION_BUILTINS = ("eval", "exec", "compile")


def required_capability(module_name: str) -> Optional[Capability]:
    """Capability needed to import a module, None for unprivileged modules."""
    return PRIVILEGED_MODULES.get(module_name.split(".", 1)[0])


@dataclass
class PrivilegedUse:
    """A privileged import or call found in plugin source."""

    name: str
    capability: Capability
    line: int

    def to_dict(self) -> dict:
        return {"name": self.name, "capability": self.capability.value, "line": self.line}


def scan_source(source: str, filename: str = "<plugin>") -> List[PrivilegedUse]:
    """
    List the privileged imports and evaluation calls of plugin source.

    Relative imports stay inside the plugin and are not reported.

    Raises:
        SyntaxError: If the source does not parse
    """
    found: List[PrivilegedUse] = []
    for node in ast.walk(ast.parse(source, filename)):
        if isinstance(node, ast.Import):
            names = [alias.name for alias in node.names]
        elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
            names = [node.module]
        elif (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Name)
            and node.func.id in EVALUATION_BUILTINS
        ):
            found.append(PrivilegedUse(node.func.id, Capability.SYSTEM, node.lineno))
            continue
        else:
            continue

        for name in names:
            capability = required_capability(name)
            if capability is not None:
                found.append(PrivilegedUse(name, capability, node.lineno))
    return found


class CodeGuard:
    """
    Import and file access policy of one plugin's modules.

    Usage:
        guard = CodeGuard(sandbox)
        guard.check_source(source, "plugin.py")
        module.__dict__["__builtins__"] = guard.builtins
    """

    def __init__(self, sandbox: "Sandbox"):
        self._sandbox = sandbox
        self.builtins = self._make_builtins()

    @property
    def plugin_id(self) -> str:
        return self._sandbox.plugin_id

    def check_source(self, source: str, filename: str) -> None:
        """
        Reject source importing privileged modules without the capability.

        Raises:
            CapabilityDeniedError: For the first denied use; every denied use
                is listed in ``details["uses"]``
        """
        checker = self._sandbox.checker
        denied = [use for use in scan_source(source, filename) if not checker.allows(use.capability)]
        if not denied:
            return

        first = denied[0]
        try:
            checker.require(first.capability, "import", f"{first.name} ({filename}:{first.line})")
        except CapabilityDeniedError as e:
            e.details["uses"] = [use.to_dict() for use in denied]
            raise

    def _make_builtins(self) -> Dict[str, Any]:
        guarded = dict(vars(builtins))
        guarded["__import__"] = self._import
        guarded["open"] = self._open
        if not self._sandbox.checker.allows(Capability.SYSTEM):
            for name in EVALUATION_BUILTINS:
                guarded[name] = self._denied(name)
        return guarded

    def _import(self, name, globals=None, locals=None, fromlist=(), level=0):
        if level == 0:
            capability = required_capability(name)
            if capability is not None:
                self._sandbox.checker.require(capability, "import", name)
        return builtins.__import__(name, globals, locals, fromlist, level)

    def _open(self, file, mode="r", *args, **kwargs):
        if isinstance(file, int):
            self._sandbox.checker.require(Capability.SYSTEM, "open", f"fd {file}")
            return builtins.open(file, mode, *args, **kwargs)

        path = Path(file)
        if not path.is_absolute() and self._sandbox.data_dir is not None:
            path = self._sandbox.data_dir / path
        resolved = self._sandbox.checker.require_path(path, "open")
        self._sandbox.consume("filesystem_ops")
        return builtins.open(resolved, mode, *args, **kwargs)

    def _denied(self, name: str):
        checker = self._sandbox.checker

        def denied(*args, **kwargs):
            checker.require(Capability.SYSTEM, name)

        denied.__name__ = name
        return denied
