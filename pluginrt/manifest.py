"""
Plugin Manifest Handling

Parses raw manifest data into immutable ``PluginManifest`` objects and
reads manifests from plugin directories (``manifest.json`` or
``plugin.yaml``).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog
import yaml

from pluginrt.errors import ValidationError
from pluginrt.types import (
    Capability,
    HookDeclaration,
    PluginDependency,
    PluginManifest,
    SemanticVersion,
    VersionRange,
)
from pluginrt.validation import ManifestValidator, normalize_fields, split_dependency

logger = structlog.get_logger(__name__)


MANIFEST_FILES = ("manifest.json", "plugin.yaml", "plugin.yml")

_validator = ManifestValidator()


def parse_manifest(
    raw: Any,
    source: Optional[Path] = None,
    validator: Optional[ManifestValidator] = None,
) -> PluginManifest:
    """
    Validate raw manifest data and build a manifest.

    Args:
        raw: Mapping with the manifest fields
        source: File the data was read from, kept for reloads
        validator: Validator to use instead of the default one

    Returns:
        Immutable PluginManifest

    Raises:
        ValidationError: Listing every violation found
    """
    result = (validator or _validator).validate(raw)
    plugin_id = raw.get("id") if isinstance(raw, Mapping) else None
    if not result.valid:
        raise ValidationError(plugin_id if isinstance(plugin_id, str) else None, result.errors)

    data = normalize_fields(raw)

    return PluginManifest(
        id=data["id"],
        version=SemanticVersion.parse(data["version"]),
        entry_point=data["entry_point"],
        dependencies=tuple(_parse_dependencies(data.get("dependencies") or [])),
        hooks=tuple(_parse_hooks(data.get("hooks") or [])),
        capabilities=frozenset(Capability(c) for c in data.get("capabilities") or []),
        name=data.get("name", ""),
        description=data.get("description", ""),
        author=_author_name(data.get("author")),
        settings_schema=dict(data.get("settings") or {}),
        default_settings=dict(data.get("default_settings") or {}),
        source=source,
    )


def _parse_dependencies(entries: Union[List[Any], Mapping[str, str]]) -> List[PluginDependency]:
    if isinstance(entries, Mapping):
        entries = [{"id": k, "version": v} for k, v in entries.items()]

    dependencies = []
    for entry in entries:
        if isinstance(entry, str):
            dep_id, version = split_dependency(entry)
            hard = True
        else:
            dep_id = entry.get("id") or entry.get("plugin_id")
            version = entry.get("version", "*")
            hard = entry.get("kind", "soft" if entry.get("optional") else "hard") == "hard"
        dependencies.append(
            PluginDependency(
                plugin_id=dep_id,
                version_range=VersionRange.parse(version or "*"),
                hard=hard,
            )
        )
    return dependencies


def _parse_hooks(entries: List[Any]) -> List[HookDeclaration]:
    hooks = []
    for entry in entries:
        if isinstance(entry, str):
            hooks.append(HookDeclaration(name=entry))
        else:
            hooks.append(HookDeclaration(name=entry["name"], priority=entry.get("priority", 100)))
    return hooks


def _author_name(author: Any) -> str:
    if isinstance(author, Mapping):
        return str(author.get("name", ""))
    return str(author or "")


# === Files ===


def find_manifest_file(directory: Path) -> Optional[Path]:
    """Return the manifest file of a plugin directory, if it has one."""
    for name in MANIFEST_FILES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def read_manifest_data(path: Path) -> Dict[str, Any]:
    """
    Read raw manifest data from a JSON or YAML file.

    Raises:
        ValidationError: If the file cannot be read or decoded
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(None, [f"cannot read manifest {path}: {e}"])

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(None, [f"cannot decode manifest {path}: {e}"])

    if not isinstance(data, dict):
        raise ValidationError(None, [f"manifest {path} must contain a mapping"])
    return data


def load_manifest(path: Union[str, Path]) -> PluginManifest:
    """
    Load and validate a manifest.

    Args:
        path: Manifest file, or a plugin directory containing one

    Returns:
        PluginManifest with ``source`` set to the file it was read from

    Raises:
        ValidationError: If the file is missing, undecodable or invalid
    """
    path = Path(path)
    if path.is_dir():
        found = find_manifest_file(path)
        if found is None:
            raise ValidationError(
                None, [f"no manifest ({', '.join(MANIFEST_FILES)}) in {path}"]
            )
        path = found

    manifest = parse_manifest(read_manifest_data(path), source=path)
    logger.debug(f"Loaded manifest {manifest.id}@{manifest.version} from {path}")
    return manifest


def save_manifest(manifest: PluginManifest, path: Union[str, Path]) -> None:
    """Write a manifest as JSON or YAML depending on the file suffix."""
    path = Path(path)
    data = manifest.to_dict()
    data.pop("source", None)
    with open(path, "w", encoding="utf-8") as f:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(data, f, sort_keys=False)
        else:
            json.dump(data, f, indent=2)
