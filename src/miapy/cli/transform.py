"""
miapy transform - Derive a new assay (relative abundance, CLR, ...).

Usage:
    miapy transform --input counts.csv --output results/clr --method clr --pseudocount 1
    miapy transform --input results/clr --output results/alr --method alr --reference ASV3
"""

from __future__ import annotations

import argparse
import logging

from miapy.cli._common import COMMAND_ERRORS, add_input_arguments, load_input, resolve_args, setup_logging
from miapy.cli._validators import _non_negative_float
from miapy.stats.transforms import TRANSFORM_METHODS

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the transform subcommand."""
    parser = subparsers.add_parser(
        "transform",
        help="Add a transformed assay",
        description="Apply an assay transformation and write the experiment with the new assay.",
    )
    add_input_arguments(parser)
    parser.add_argument("--method", choices=TRANSFORM_METHODS, default="relabundance",
                        help="Transformation (default: relabundance)")
    parser.add_argument("--assay-name", default="counts", help="Source assay (default: counts)")
    parser.add_argument("--name", default=None, help="Output assay name (default: method)")
    parser.add_argument("--pseudocount", type=_non_negative_float, default=0.0,
                        help="Value added before log-ratio transforms (default: 0)")
    parser.add_argument("--axis", choices=["samples", "features"], default=None,
                        help="Apply per sample or per feature (default: method-specific)")
    parser.add_argument("--reference", default=None, help="Reference feature for alr")
    parser.set_defaults(func=run_transform)


def run_transform(args: argparse.Namespace) -> int:
    """Execute the transform command."""
    setup_logging(args.verbose)
    try:
        args = resolve_args(args, section="transform")
        from miapy.io.writers import write_experiment
        from miapy.stats.transforms import transform_assay

        experiment = load_input(args)
        options = {"reference": args.reference} if args.reference is not None else {}
        result = transform_assay(
            experiment,
            assay_name=args.assay_name,
            method=args.method,
            name=args.name,
            axis=args.axis,
            pseudocount=args.pseudocount,
            **options,
        )
        write_experiment(result, args.output)
    except COMMAND_ERRORS as e:
        logger.error(f"transform failed: {e}")
        return 1
    return 0
