"""
miapy doctor - Check (and optionally install) the analysis dependencies.

Usage:
    miapy doctor
    miapy doctor --install
"""

from __future__ import annotations

import argparse
import logging

from miapy.cli._common import setup_logging

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the doctor subcommand."""
    parser = subparsers.add_parser(
        "doctor",
        help="Check that the analysis stack can be imported",
        description="Report missing dependencies; with --install, pip-install them first.",
    )
    parser.add_argument("--install", action="store_true", help="pip-install missing packages")
    parser.add_argument("--packages", nargs="+", default=None,
                        help="Import names to check (default: the core analysis stack)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.set_defaults(func=run_doctor)


def run_doctor(args: argparse.Namespace) -> int:
    """Execute the doctor command."""
    setup_logging(args.verbose)
    from miapy.utils.dependencies import CORE_PACKAGES, ensure_packages, missing_packages

    names = args.packages or list(CORE_PACKAGES)
    missing = missing_packages(names)
    for name in names:
        status = "missing" if name in missing else "ok"
        print(f"  {name:<12} {status}")

    try:
        modules = ensure_packages(names, install=args.install, pip_names=CORE_PACKAGES)
    except ImportError as e:
        logger.error(str(e))
        return 1
    print(f"\nAll {len(modules)} packages load.")
    return 0
