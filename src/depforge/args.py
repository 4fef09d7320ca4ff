"""Argument parsing for the depforge command line."""

import argparse

from .constants import Constants, PrereleaseMode


def _add_common(parser):
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str.upper,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default=None)
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML, YML, or JSON)",
                        action="store",
                        type=str)
    parser.add_argument("--cache-dir",
                        dest="CACHE_DIR",
                        help=f"Cache directory (default: {Constants.DEFAULT_CACHE_DIR})",
                        action="store",
                        type=str)
    parser.add_argument("--no-cache",
                        dest="NO_CACHE",
                        help="Use a temporary cache removed when the command finishes",
                        action="store_true")


def _add_index(parser):
    parser.add_argument("-i", "--index-url",
                        dest="INDEX_URL",
                        help=f"Base URL of the package index (default: {Constants.DEFAULT_INDEX_URL})",
                        action="store",
                        type=str)
    parser.add_argument("--extra-index-url",
                        dest="EXTRA_INDEX_URLS",
                        help="Additional package index, can be used multiple times",
                        action="append",
                        type=str,
                        default=[])
    parser.add_argument("--offline",
                        dest="OFFLINE",
                        help="Never touch the network; use cached data only",
                        action="store_true")
    parser.add_argument("--concurrency",
                        dest="CONCURRENCY",
                        help="Maximum concurrent network requests",
                        action="store",
                        type=int)
    parser.add_argument("--python",
                        dest="PYTHON",
                        help="Interpreter whose environment markers and tags are resolved for",
                        action="store",
                        type=str)


def _add_resolution(parser):
    parser.add_argument("requirements",
                        help="Requirement specifiers (PEP 508), URLs or local paths",
                        nargs="*")
    parser.add_argument("-r", "--requirement",
                        dest="REQUIREMENT_FILES",
                        help="Read requirements from a file, can be used multiple times",
                        action="append",
                        type=str,
                        default=[])
    parser.add_argument("--constraint",
                        dest="CONSTRAINT_FILES",
                        help="Constrain versions using a file, can be used multiple times",
                        action="append",
                        type=str,
                        default=[])
    parser.add_argument("--prefer",
                        dest="PREFER",
                        help="Prefer versions pinned in a lock file or pinned requirements file",
                        action="store",
                        type=str)
    upgrade = parser.add_mutually_exclusive_group()
    upgrade.add_argument("-U", "--upgrade",
                         dest="UPGRADE",
                         help="Ignore preferred versions and pick the newest",
                         action="store_true")
    upgrade.add_argument("-P", "--upgrade-package",
                         dest="UPGRADE_PACKAGES",
                         help="Ignore the preferred version of this package, can be used multiple times",
                         action="append",
                         type=str,
                         default=[])
    parser.add_argument("--prerelease",
                        dest="PRERELEASE",
                        help="When pre-release versions may be selected",
                        action="store",
                        choices=[mode.value for mode in PrereleaseMode],
                        default=PrereleaseMode.IF_NECESSARY.value)
    parser.add_argument("--refresh",
                        dest="REFRESH",
                        help="Revalidate every cached index page and artifact",
                        action="store_true")
    parser.add_argument("--refresh-package",
                        dest="REFRESH_PACKAGES",
                        help="Revalidate cached data of this package, can be used multiple times",
                        action="append",
                        type=str,
                        default=[])


def _add_target(parser):
    parser.add_argument("-t", "--target",
                        dest="TARGET",
                        help="Target environment directory",
                        action="store",
                        type=str,
                        required=True)


def build_parser():
    """Build the argument parser with its subcommands."""
    parser = argparse.ArgumentParser(
        prog=Constants.PROGRAM_NAME,
        description="depforge - resolve, build and install Python distributions",
        add_help=True,
    )
    subparsers = parser.add_subparsers(dest="COMMAND", metavar="COMMAND")
    subparsers.required = True

    resolve = subparsers.add_parser("resolve", help="Resolve requirements and print the pinned set")
    _add_common(resolve)
    _add_index(resolve)
    _add_resolution(resolve)
    resolve.add_argument("-o", "--output",
                         dest="OUTPUT",
                         help="Write the result to a file instead of standard output",
                         action="store",
                         type=str)
    resolve.add_argument("-f", "--format",
                         dest="OUTPUT_FORMAT",
                         help="Output format: pinned requirements or a JSON lock (default: requirements)",
                         action="store",
                         type=str.lower,
                         choices=["requirements", "json"],
                         default="requirements")

    install = subparsers.add_parser("install", help="Resolve requirements and install them into a target")
    _add_common(install)
    _add_index(install)
    _add_resolution(install)
    _add_target(install)

    uninstall = subparsers.add_parser("uninstall", help="Remove installed distributions from a target")
    _add_common(uninstall)
    _add_target(uninstall)
    uninstall.add_argument("packages", help="Distribution names", nargs="+")

    verify = subparsers.add_parser("verify", help="Check installed files against their recorded hashes")
    _add_common(verify)
    _add_target(verify)
    verify.add_argument("packages", help="Distribution names (default: all installed)", nargs="*")

    cache = subparsers.add_parser("cache", help="Inspect and maintain the cache")
    _add_common(cache)
    cache.add_argument("CACHE_ACTION",
                       help="dir: print the cache location; clean: remove entries; prune: remove leftovers",
                       choices=["dir", "clean", "prune"])
    cache.add_argument("packages", help="Only clean entries of these packages", nargs="*")
    cache.add_argument("--max-age",
                       dest="MAX_AGE",
                       help="With prune: also evict entries older than this many days",
                       action="store",
                       type=float)
    cache.add_argument("--max-size",
                       dest="MAX_SIZE",
                       help="With prune: also evict oldest entries until the cache is below this many MiB",
                       action="store",
                       type=float)
    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
