"""
pluginrt Command Line Interface

Checks plugin manifests and dependency sets without running any plugin
code, and can run a plugin directory until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from pluginrt.config import load_settings
from pluginrt.dependencies.resolver import DependencyResolver
from pluginrt.errors import ValidationError
from pluginrt.loader import PluginLoader
from pluginrt.log import setup_logging
from pluginrt.manager import PluginManager
from pluginrt.manifest import find_manifest_file, read_manifest_data
from pluginrt.validation import ManifestValidator


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="pluginrt",
        description="pluginrt - plugin runtime CLI",
    )
    parser.add_argument("--json", action="store_true", help="Machine readable output")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Validate a plugin manifest")
    validate_parser.add_argument("manifest", help="Manifest file or plugin directory")

    # Order command
    order_parser = subparsers.add_parser("order", help="Print the plugin load order")
    order_parser.add_argument("dirs", nargs="+", help="Plugin directories")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run plugins until interrupted")
    run_parser.add_argument("--config", help="YAML or JSON runtime configuration")
    run_parser.add_argument("dirs", nargs="*", help="Extra plugin directories")

    args = parser.parse_args(argv)

    # stdout carries command output; logs go to stderr until `run` applies its settings
    setup_logging("WARNING", json_logs=False)

    if args.command == "validate":
        return cmd_validate(Path(args.manifest), args.json)
    if args.command == "order":
        return cmd_order([Path(d) for d in args.dirs], args.json)
    if args.command == "run":
        return asyncio.run(cmd_run(args.config, [Path(d) for d in args.dirs]))

    parser.print_help()
    return 1


def cmd_validate(path: Path, as_json: bool = False) -> int:
    """Validate one manifest, listing every violation."""
    if path.is_dir():
        manifest_file = find_manifest_file(path)
        if manifest_file is None:
            print(f"Error: no manifest found in {path}")
            return 1
        path = manifest_file

    try:
        raw = read_manifest_data(path)
    except ValidationError as e:
        result_errors, result_warnings = e.errors, []
    else:
        result = ManifestValidator().validate(raw)
        result_errors, result_warnings = result.errors, result.warnings

    if as_json:
        print(json.dumps(
            {"manifest": str(path), "valid": not result_errors, "errors": result_errors, "warnings": result_warnings},
            indent=2,
        ))
    else:
        for warning in result_warnings:
            print(f"warning: {warning}")
        for error in result_errors:
            print(f"error: {error}")
        print(f"{path}: {'invalid' if result_errors else 'ok'}")

    return 1 if result_errors else 0


def cmd_order(dirs: List[Path], as_json: bool = False) -> int:
    """Resolve the plugins found in directories and print the load order."""
    loader = PluginLoader(dirs)
    manifests = loader.discover()
    resolution = DependencyResolver().resolve(manifests)
    failed = bool(loader.discovery_errors) or not resolution.success

    if as_json:
        print(json.dumps(
            {**resolution.to_dict(), "invalid": loader.discovery_errors},
            indent=2,
            default=str,
        ))
        return 1 if failed else 0

    for position, plugin_id in enumerate(resolution.load_order, 1):
        print(f"{position}. {plugin_id}")
    for path, error in sorted(loader.discovery_errors.items()):
        print(f"invalid: {path}: {error['message']}")
    for plugin_id, error in sorted(resolution.failures.items()):
        print(f"unresolved: {plugin_id}: {error.message}")
    for warning in resolution.warnings:
        print(f"warning: {warning}")

    return 1 if failed else 0


async def cmd_run(config_path: Optional[str], dirs: List[Path]) -> int:
    """Start every discovered plugin and stop them on interrupt."""
    settings = load_settings(config_path)
    settings.plugin_dirs.extend(dirs)
    setup_logging(settings.log_level, settings.json_logs)

    manager = PluginManager(settings)
    result = await manager.initialize()
    if not result.ok:
        print(json.dumps(result.error, indent=2), file=sys.stderr)
        return 1

    try:
        await asyncio.Event().wait()
    finally:
        await manager.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
