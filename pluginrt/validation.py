"""
Plugin Manifest Validation

Checks raw manifest data and reports every violation in one pass.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional, Set

import jsonschema
import structlog

from pluginrt.types import Capability, SemanticVersion, ValidationResult, VersionRange

logger = structlog.get_logger(__name__)


# Lowercase alphanumerics separated by single dashes or underscores
PLUGIN_ID_PATTERN = re.compile(r"^[a-z0-9]+(?:[-_][a-z0-9]+)*$")

# module.path:attribute
ENTRY_POINT_PATTERN = re.compile(
    r"^[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*:[A-Za-z_][A-Za-z0-9_]*$"
)

REQUIRED_FIELDS = ("id", "version", "entry_point")

# Accepted spellings of the same manifest field
FIELD_ALIASES = {
    "entryPoint": "entry_point",
    "main": "entry_point",
    "requiredCapabilities": "capabilities",
    "declaredHooks": "hooks",
    "declaredDependencies": "dependencies",
    "defaultSettings": "default_settings",
}

KNOWN_CAPABILITIES = {c.value for c in Capability}

MAX_ID_LENGTH = 64
MAX_HOOK_NAME_LENGTH = 128


def normalize_fields(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Map field aliases onto their canonical names."""
    data: Dict[str, Any] = {}
    for key, value in raw.items():
        canonical = FIELD_ALIASES.get(key, key)
        if canonical in data and canonical != key:
            continue
        data[canonical] = value
    return data


def split_dependency(spec: str) -> tuple:
    """Split "plugin-id>=1.0.0" into ("plugin-id", ">=1.0.0")."""
    match = re.match(r"^\s*([^\s<>=!^~*]+)\s*(.*)$", spec)
    if not match:
        return spec.strip(), ""
    return match.group(1), match.group(2).strip()


class ManifestValidator:
    """
    Validates raw plugin manifest data.

    Features:
    - Required fields and identifier format
    - Strict semantic version parsing
    - Dependency entries, ranges, duplicates and self-dependency
    - Hook declarations and duplicates
    - Capability tags
    - Entry point format
    - Settings JSON schema well-formedness

    Validation never stops at the first problem; callers receive the
    complete list of violations.
    """

    def __init__(self, extra_capabilities: Optional[Set[str]] = None):
        self._capabilities = KNOWN_CAPABILITIES | set(extra_capabilities or ())

    def validate(self, raw: Any) -> ValidationResult:
        """
        Validate raw manifest data.

        Args:
            raw: Mapping as read from a manifest file

        Returns:
            ValidationResult listing all errors and warnings
        """
        result = ValidationResult()

        if not isinstance(raw, Mapping):
            result.add_error(f"manifest must be a mapping, got {type(raw).__name__}")
            return result

        data = normalize_fields(raw)

        for name in REQUIRED_FIELDS:
            if data.get(name) in (None, ""):
                result.add_error(f"missing required field '{name}'")

        plugin_id = data.get("id")
        self._validate_id(plugin_id, result)
        self._validate_version(data.get("version"), result)
        self._validate_entry_point(data.get("entry_point"), result)
        self._validate_dependencies(plugin_id, data.get("dependencies", []), result)
        self._validate_hooks(data.get("hooks", []), result)
        self._validate_capabilities(data.get("capabilities", []), result)
        self._validate_settings(data, result)

        if not data.get("description"):
            result.add_warning("manifest should have a description")

        if not result.valid:
            logger.debug(
                "manifest_validation_failed",
                plugin_id=plugin_id,
                errors=len(result.errors),
            )

        return result

    def _validate_id(self, plugin_id: Any, result: ValidationResult) -> None:
        if plugin_id in (None, ""):
            return
        if not isinstance(plugin_id, str):
            result.add_error("field 'id' must be a string")
        elif len(plugin_id) > MAX_ID_LENGTH:
            result.add_error(f"id exceeds maximum length of {MAX_ID_LENGTH}")
        elif not PLUGIN_ID_PATTERN.match(plugin_id):
            result.add_error(
                f"invalid id '{plugin_id}': use lowercase letters, digits, '-' or '_'"
            )

    def _validate_version(self, version: Any, result: ValidationResult) -> None:
        if version in (None, ""):
            return
        if not SemanticVersion.is_valid(version):
            result.add_error(f"malformed version '{version}': expected MAJOR.MINOR.PATCH")

    def _validate_entry_point(self, entry_point: Any, result: ValidationResult) -> None:
        if entry_point in (None, ""):
            return
        if not isinstance(entry_point, str) or not ENTRY_POINT_PATTERN.match(entry_point):
            result.add_error(
                f"invalid entry_point '{entry_point}': expected 'module:attribute'"
            )

    def _validate_dependencies(
        self,
        plugin_id: Any,
        dependencies: Any,
        result: ValidationResult,
    ) -> None:
        if dependencies is None:
            return
        if isinstance(dependencies, Mapping):
            # {"dep-id": ">=1.0.0"} form
            dependencies = [{"id": k, "version": v} for k, v in dependencies.items()]
        if not isinstance(dependencies, list):
            result.add_error("field 'dependencies' must be a list")
            return

        seen: Set[str] = set()
        for index, entry in enumerate(dependencies):
            if isinstance(entry, str):
                dep_id, version = split_dependency(entry)
                kind = "hard"
            elif isinstance(entry, Mapping):
                dep_id = entry.get("id") or entry.get("plugin_id")
                version = entry.get("version", "*")
                kind = entry.get("kind", "soft" if entry.get("optional") else "hard")
            else:
                result.add_error(f"dependencies[{index}] must be a string or mapping")
                continue

            if not dep_id or not isinstance(dep_id, str):
                result.add_error(f"dependencies[{index}] is missing an id")
                continue

            if dep_id == plugin_id:
                result.add_error(f"plugin '{dep_id}' cannot depend on itself")
            if dep_id in seen:
                result.add_error(f"duplicate dependency '{dep_id}'")
            seen.add(dep_id)

            if kind not in ("hard", "soft"):
                result.add_error(f"dependency '{dep_id}' has unknown kind '{kind}'")

            try:
                VersionRange.parse(version)
            except ValueError as e:
                result.add_error(f"dependency '{dep_id}' has invalid version range: {e}")

    def _validate_hooks(self, hooks: Any, result: ValidationResult) -> None:
        if hooks is None:
            return
        if not isinstance(hooks, list):
            result.add_error("field 'hooks' must be a list")
            return

        seen: Set[str] = set()
        for index, entry in enumerate(hooks):
            if isinstance(entry, str):
                name, priority = entry, 100
            elif isinstance(entry, Mapping):
                name, priority = entry.get("name"), entry.get("priority", 100)
            else:
                result.add_error(f"hooks[{index}] must be a string or mapping")
                continue

            if not name or not isinstance(name, str):
                result.add_error(f"hooks[{index}] is missing a name")
                continue
            if len(name) > MAX_HOOK_NAME_LENGTH:
                result.add_error(f"hook name '{name[:32]}...' is too long")
            if name in seen:
                result.add_error(f"duplicate hook declaration '{name}'")
            seen.add(name)

            if isinstance(priority, bool) or not isinstance(priority, int):
                result.add_error(f"hook '{name}' priority must be an integer")

    def _validate_capabilities(self, capabilities: Any, result: ValidationResult) -> None:
        if capabilities is None:
            return
        if not isinstance(capabilities, list):
            result.add_error("field 'capabilities' must be a list")
            return

        for capability in capabilities:
            if not isinstance(capability, str) or capability not in self._capabilities:
                result.add_error(f"unknown capability '{capability}'")

    def _validate_settings(self, data: Dict[str, Any], result: ValidationResult) -> None:
        schema = data.get("settings")
        if schema in (None, {}):
            return
        if not isinstance(schema, Mapping):
            result.add_error("field 'settings' must be a JSON schema object")
            return

        try:
            jsonschema.Draft7Validator.check_schema(schema)
        except jsonschema.SchemaError as e:
            result.add_error(f"invalid settings schema: {e.message}")
            return

        defaults = data.get("default_settings")
        if defaults is not None:
            for error in jsonschema.Draft7Validator(schema).iter_errors(defaults):
                result.add_error(f"default_settings do not match schema: {error.message}")


def validate_settings(settings: Dict[str, Any], schema: Dict[str, Any]) -> List[str]:
    """
    Validate plugin settings against a manifest settings schema.

    Returns:
        List of error messages, empty when valid
    """
    if not schema:
        return []
    validator = jsonschema.Draft7Validator(schema)
    return [
        f"{'/'.join(str(p) for p in error.path) or '<root>'}: {error.message}"
        for error in validator.iter_errors(settings)
    ]
