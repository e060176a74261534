"""
miapy agglomerate - Collapse features to a taxonomic rank.

Usage:
    miapy agglomerate --input counts.csv --row-data taxonomy.csv --output results/genus --rank genus
"""

from __future__ import annotations

import argparse
import logging

from miapy.cli._common import COMMAND_ERRORS, add_input_arguments, load_input, resolve_args, setup_logging
from miapy.stats.agglomeration import AGGREGATORS, TAXONOMY_RANKS

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the agglomerate subcommand."""
    parser = subparsers.add_parser(
        "agglomerate",
        help="Sum features sharing a taxonomic rank",
        description=(
            "Agglomerate features by the full taxonomic path down to --rank. "
            "Features unassigned at the rank are kept under their deepest known "
            "ancestor unless --na-rm is given."
        ),
    )
    add_input_arguments(parser)
    parser.add_argument("--rank", type=str.lower, choices=TAXONOMY_RANKS, default="genus",
                        help="Target rank (default: genus)")
    parser.add_argument("--na-rm", action="store_true",
                        help="Drop features with no assignment at --rank")
    parser.add_argument("--update-tree", action="store_true",
                        help="Prune the tree to one node per agglomerated feature")
    parser.add_argument("--fun", choices=list(AGGREGATORS), default="sum",
                        help="Aggregation across merged features (default: sum)")
    parser.set_defaults(func=run_agglomerate)


def run_agglomerate(args: argparse.Namespace) -> int:
    """Execute the agglomerate command."""
    setup_logging(args.verbose)
    try:
        args = resolve_args(args, section="agglomeration")
        from miapy.io.writers import write_experiment
        from miapy.stats.agglomeration import agglomerate_by_rank

        experiment = load_input(args)
        result = agglomerate_by_rank(
            experiment,
            args.rank,
            na_rm=args.na_rm,
            update_tree=args.update_tree,
            fun=args.fun,
        )
        write_experiment(result, args.output)
    except COMMAND_ERRORS as e:
        logger.error(f"agglomerate failed: {e}")
        return 1
    return 0
