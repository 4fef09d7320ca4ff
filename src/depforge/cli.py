"""Command line entry point: ``depforge`` and ``python -m depforge``."""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Tuple

from .args import parse_args
from .cache import Cache
from .cli_config import Settings, load_settings
from .common.logging_utils import configure_logging, extra_context, is_debug_enabled
from .constants import ExitCodes, PrereleaseMode, UpgradePolicy
from .errors import DepforgeError, ResolutionConflict
from .operations import Session
from .resolver import read_preferences
from .versioning import parse, parse_requirements_file
from .versioning.models import Requirement

logger = logging.getLogger(__name__)


def collect_requirements(args, settings: Settings) -> Tuple[List[Requirement], List[Requirement]]:
    """Requirements and constraints from positional arguments and ``-r``/``--constraint`` files.

    Index options found in requirements files apply unless given on the
    command line.
    """
    requirements = [parse(text, base_dir=os.getcwd()) for text in args.requirements]
    constraints: List[Requirement] = []
    for path in args.REQUIREMENT_FILES:
        parsed = parse_requirements_file(path)
        requirements.extend(parsed.requirements)
        constraints.extend(parsed.constraints)
        if parsed.index_url and not args.INDEX_URL:
            settings.index_url = parsed.index_url
        settings.extra_index_urls.extend(u for u in parsed.extra_index_urls if u not in settings.extra_index_urls)
    for path in args.CONSTRAINT_FILES:
        parsed = parse_requirements_file(path, constraint=True)
        constraints.extend(parsed.constraints)
    return requirements, constraints


def _resolve_options(args) -> dict:
    if args.UPGRADE:
        upgrade = UpgradePolicy.ALL
    elif args.UPGRADE_PACKAGES:
        upgrade = UpgradePolicy.PACKAGES
    else:
        upgrade = UpgradePolicy.NONE
    return {
        "preferences": read_preferences(args.PREFER) if args.PREFER else None,
        "upgrade": upgrade,
        "upgrade_packages": args.UPGRADE_PACKAGES,
        "prereleases": PrereleaseMode(args.PRERELEASE),
    }


async def run_resolve(args, settings: Settings) -> ExitCodes:
    requirements, constraints = collect_requirements(args, settings)
    if not requirements:
        logger.warning("No requirements given.")
        return ExitCodes.USAGE_ERROR
    async with Session.from_settings(settings) as session:
        graph = await session.resolve(requirements, constraints=constraints, **_resolve_options(args))
    text = graph.to_json() if args.OUTPUT_FORMAT == "json" else graph.to_requirements()
    if args.OUTPUT:
        Path(args.OUTPUT).write_text(text, encoding="utf-8")
        logger.info("Wrote %d pinned package(s) to %s", len(graph), args.OUTPUT)
    else:
        sys.stdout.write(text)
    return ExitCodes.SUCCESS


async def run_install(args, settings: Settings) -> ExitCodes:
    requirements, constraints = collect_requirements(args, settings)
    if not requirements:
        logger.warning("No requirements given.")
        return ExitCodes.USAGE_ERROR
    async with Session.from_settings(settings) as session:
        report = await session.install(
            requirements, session.target(args.TARGET), constraints=constraints, **_resolve_options(args)
        )
    for record in report.installed:
        print(f"Installed {record}")
    return ExitCodes.SUCCESS


async def run_uninstall(args, settings: Settings) -> ExitCodes:
    async with Session.from_settings(settings) as session:
        removed = await session.uninstall(args.packages, session.target(args.TARGET))
    for record in removed:
        print(f"Uninstalled {record}")
    return ExitCodes.SUCCESS


async def run_verify(args, settings: Settings) -> ExitCodes:
    async with Session.from_settings(settings) as session:
        results = await session.verify(session.target(args.TARGET), args.packages or None)
    failed = False
    for name in sorted(results):
        problems = results[name]
        if problems:
            failed = True
            print(f"{name}: {len(problems)} problem(s)")
            for problem in problems:
                print(f"  {problem}")
        else:
            print(f"{name}: OK")
    return ExitCodes.INSTALL_ERROR if failed else ExitCodes.SUCCESS


def run_cache(args, settings: Settings) -> ExitCodes:
    cache = Cache(Path(settings.cache_dir))
    if args.CACHE_ACTION == "dir":
        print(cache.root)
        return ExitCodes.SUCCESS
    if args.CACHE_ACTION == "clean":
        if args.packages:
            removals = [cache.remove(name) for name in args.packages]
            files = sum(r.files for r in removals)
            size = sum(r.bytes for r in removals)
        else:
            removal = cache.clear()
            files, size = removal.files, removal.bytes
    else:
        removal = cache.prune()
        files, size = removal.files, removal.bytes
        if args.MAX_AGE is not None or args.MAX_SIZE is not None:
            evicted = cache.evict(
                max_age=args.MAX_AGE * 86400 if args.MAX_AGE is not None else None,
                max_bytes=int(args.MAX_SIZE * 1024 * 1024) if args.MAX_SIZE is not None else None,
            )
            files += evicted.files
            size += evicted.bytes
    print(f"Removed {files} file(s) ({size / (1024 * 1024):.1f} MiB)")
    return ExitCodes.SUCCESS


COMMANDS = {
    "resolve": run_resolve,
    "install": run_install,
    "uninstall": run_uninstall,
    "verify": run_verify,
}


def dispatch(args) -> ExitCodes:
    """Run the selected subcommand and return its exit code."""
    settings = load_settings(args)
    if args.COMMAND == "cache":
        return run_cache(args, settings)
    return asyncio.run(COMMANDS[args.COMMAND](args, settings))


def main(argv=None):
    """Main function of the program."""
    args = parse_args(argv)
    configure_logging(args.LOG_LEVEL, args.LOG_FILE)
    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND),
        )
    try:
        code = dispatch(args)
    except ResolutionConflict as exc:
        logger.error("Could not find a set of versions satisfying the requirements.")
        sys.stderr.write(exc.explanation + "\n")
        sys.exit(exc.exit_code.value)
    except DepforgeError as exc:
        logger.error("%s", exc)
        sys.exit(exc.exit_code.value)
    except OSError as exc:
        logger.error("%s", exc)
        sys.exit(ExitCodes.FILE_ERROR.value)
    except KeyboardInterrupt:
        logger.error("Interrupted.")
        sys.exit(ExitCodes.FILE_ERROR.value)
    if is_debug_enabled(logger):
        logger.debug(
            "CLI finished",
            extra=extra_context(event="function_exit", component="cli", action=args.COMMAND, outcome=code.name.lower()),
        )
    sys.exit(code.value)
