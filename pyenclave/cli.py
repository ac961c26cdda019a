"""Command-line front end for pyenclave."""

from __future__ import annotations

import argparse
import code
import json
import logging
import runpy
import sys
from collections.abc import Sequence
from typing import Any

from . import __version__
from .errors import EnclaveError
from .host import EnclaveManager

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    root = argparse.ArgumentParser(
        prog="pyenclave",
        description="Create isolated package environments and activate them inside one interpreter.",
    )
    root.add_argument("--version", action="version", version=__version__)
    root.add_argument("-v", "--verbose", action="store_true", help="Log progress messages")
    root.add_argument("--debug", action="store_true", help="Log debug output (guard ticks, uv output)")
    commands = root.add_subparsers(dest="command", metavar="(command)")

    command = commands.add_parser("create", help="Create and register a new environment")
    command.add_argument("name")
    command.add_argument("--path", help="Directory for the environment (default: <home>/envs/NAME)")
    command.add_argument(
        "--include-system-modules",
        action="store_true",
        help="Keep the host's search path (minus user-site entries) after the environment's packages",
    )
    command.add_argument("--base", dest="base_environment", help="Copy packages from this environment")
    command.add_argument("--description", default="")
    command.add_argument("--auto-activate", action="store_true")
    command.add_argument("-f", "--force", action="store_true", help="Replace an existing environment")

    command = commands.add_parser("remove", help="Delete an environment and its directory")
    command.add_argument("name")
    command.add_argument("-f", "--force", action="store_true", help="Do not ask for confirmation")

    command = commands.add_parser("list", help="List registered environments")
    command.add_argument("pattern", nargs="?", help="Glob on environment names")
    command.add_argument("--active", action="store_true", help="Only the active environment")
    command.add_argument("--detailed", action="store_true")
    command.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    command = commands.add_parser("install", help="Install a package into an environment")
    command.add_argument("environment")
    command.add_argument("package")
    command.add_argument("--version", dest="package_version")
    command.add_argument("--repository", default="default", help="Index URL (default: uv's configured index)")
    command.add_argument("--prerelease", action="store_true")
    command.add_argument("-f", "--force", action="store_true", help="Reinstall even if already present")

    command = commands.add_parser("uninstall", help="Remove a package from an environment")
    command.add_argument("environment")
    command.add_argument("package")
    command.add_argument("--version", dest="package_version")
    command.add_argument("-f", "--force", action="store_true", help="Do not ask for confirmation")

    command = commands.add_parser("packages", help="List packages installed in an environment")
    command.add_argument("environment")
    command.add_argument("pattern", nargs="?")
    command.add_argument("--all-versions", action="store_true")

    command = commands.add_parser("update", help="Update packages in an environment")
    command.add_argument("environment")
    command.add_argument("package", nargs="?")
    command.add_argument("-f", "--force", action="store_true")
    command.add_argument("--accept-license", action="store_true")

    command = commands.add_parser("run", help="Run a script with an environment active")
    command.add_argument("environment")
    command.add_argument("script")
    command.add_argument("args", nargs=argparse.REMAINDER)

    command = commands.add_parser("shell", help="Start an interactive interpreter with an environment active")
    command.add_argument("environment")

    return root


def _configure_logging(args: argparse.Namespace) -> None:
    level = logging.DEBUG if args.debug else logging.INFO if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _print_table(rows: list[dict[str, Any]], columns: Sequence[str]) -> None:
    if not rows:
        return
    widths = {c: max(len(c), *(len(str(r.get(c, ""))) for r in rows)) for c in columns}
    print("  ".join(c.ljust(widths[c]) for c in columns))
    for row in rows:
        print("  ".join(str(row.get(c, "")).ljust(widths[c]) for c in columns))


def _run_script(path: str, argv: list[str]) -> int:
    saved_argv = sys.argv[:]
    sys.argv = [path, *argv]
    try:
        runpy.run_path(path, run_name="__main__")
    except SystemExit as exc:
        if exc.code is None:
            return 0
        if isinstance(exc.code, int):
            return exc.code
        print(exc.code, file=sys.stderr)
        return 1
    finally:
        sys.argv = saved_argv
    return 0


def _dispatch(manager: EnclaveManager, args: argparse.Namespace) -> int:
    if args.command == "create":
        record = manager.create(
            args.name,
            path=args.path,
            include_system_modules=args.include_system_modules,
            base_environment=args.base_environment,
            force=args.force,
            description=args.description,
            auto_activate=args.auto_activate,
        )
        print(f"Created '{record['name']}' at {record['path']}")
        return 0

    if args.command == "remove":
        return 0 if manager.remove(args.name, force=args.force) else 1

    if args.command == "list":
        rows = manager.list(args.pattern, active_only=args.active, detailed=args.detailed)
        if args.json:
            print(json.dumps(rows, indent=2))
        else:
            _print_table(rows, ("name", "moduleCount", "path", "description"))
        return 0

    if args.command == "install":
        with manager.activated(args.environment):
            result = manager.install_package(
                args.package,
                version=args.package_version,
                repository=args.repository,
                force=args.force,
                allow_prerelease=args.prerelease,
            )
        state = "Installed" if result.changed else "Already installed:"
        print(f"{state} {result.name} {result.version}")
        return 0

    if args.command == "uninstall":
        with manager.activated(args.environment):
            removed = manager.uninstall_package(args.package, version=args.package_version, force=args.force)
        return 0 if removed else 1

    if args.command == "packages":
        with manager.activated(args.environment):
            rows = manager.list_packages(args.pattern, list_all_versions=args.all_versions)
        _print_table(rows, ("name", "version", "path"))
        return 0

    if args.command == "update":
        with manager.activated(args.environment):
            summary = manager.update_packages(args.package, force=args.force, accept_license=args.accept_license)
        print(
            f"{summary['checked']} checked, {summary['updated']} updated, "
            f"{summary['current']} current, {summary['failed']} failed"
        )
        return 1 if summary["failed"] else 0

    if args.command == "run":
        with manager.activated(args.environment):
            return _run_script(args.script, args.args)

    if args.command == "shell":
        with manager.activated(args.environment) as session:
            banner = f"pyenclave: '{session.environment_name}' active. Ctrl-D to leave."
            code.interact(banner=banner, local={"enclave": manager}, exitmsg="")
        return 0

    raise AssertionError(f"unhandled command {args.command!r}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2
    _configure_logging(args)

    try:
        return _dispatch(EnclaveManager(), args)
    except (EnclaveError, ValueError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"pyenclave: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
