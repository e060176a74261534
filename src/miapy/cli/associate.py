"""
miapy associate - Correlate features of two experiments.

Usage:
    miapy associate --input taxa.csv --input2 metabolites.csv --output results/assoc
    miapy associate --input results/multi --alt-experiment metabolites --output results/assoc \
        --method spearman --p-adj-threshold 0.05 --heatmap
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from miapy.cli._common import COMMAND_ERRORS, add_input_arguments, load_input, resolve_args, setup_logging
from miapy.cli._validators import _significance_level
from miapy.stats.association import ASSOCIATION_METHODS

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the associate subcommand."""
    parser = subparsers.add_parser(
        "associate",
        help="Cross-correlate features of two experiments",
        description=(
            "Correlate every feature of --input with every feature of --input2 "
            "(or of an alternative experiment of --input) on shared samples."
        ),
    )
    add_input_arguments(parser)
    parser.add_argument("--input2", type=Path, default=None,
                        help="Second experiment directory or counts CSV (default: --input itself)")
    parser.add_argument("--alt-experiment", default=None,
                        help="Use this alternative experiment as the second experiment")
    parser.add_argument("--assay-name", default="counts", help="Assay of the first experiment")
    parser.add_argument("--assay-name2", default="counts", help="Assay of the second experiment")
    parser.add_argument("--method", choices=ASSOCIATION_METHODS, default="spearman",
                        help="Correlation method (default: spearman)")
    parser.add_argument("--p-adj-method", default="fdr_bh",
                        help="statsmodels multipletests method (default: fdr_bh)")
    parser.add_argument("--p-adj-threshold", type=_significance_level, default=None,
                        help="Keep pairs with adjusted p <= threshold in the table")
    parser.add_argument("--filter-self", action="store_true",
                        help="Drop pairs of a feature with itself")
    parser.add_argument("--heatmap", action="store_true", help="Write a correlation heatmap")
    parser.set_defaults(func=run_associate)


def run_associate(args: argparse.Namespace) -> int:
    """Execute the associate command."""
    setup_logging(args.verbose)
    try:
        args = resolve_args(args, section="association")
        from miapy.io.loaders import load_csv_experiment, load_experiment
        from miapy.stats.association import cross_associate
        from miapy.utils.fileio import atomic_write_frame

        experiment = load_input(args)
        second = None
        if args.input2 is not None:
            path = Path(args.input2)
            second = load_experiment(path) if path.is_dir() else load_csv_experiment(path)

        result = cross_associate(
            experiment,
            second,
            assay_name1=args.assay_name,
            assay_name2=args.assay_name2,
            alt_experiment2=args.alt_experiment,
            method=args.method,
            p_adj_method=args.p_adj_method,
            filter_self_correlations=args.filter_self,
        )

        output = Path(args.output)
        output.mkdir(parents=True, exist_ok=True)
        table = result.to_table(p_adj_threshold=args.p_adj_threshold)
        atomic_write_frame(output / "associations.csv", table, index=False)
        atomic_write_frame(output / "correlation.csv", result.cor)
        atomic_write_frame(output / "p_adj.csv", result.p_adj)
        logger.info(f"Wrote {len(table)} feature pairs to {output / 'associations.csv'}")

        if args.heatmap:
            import matplotlib
            matplotlib.use("Agg")
            from miapy.viz import plot_association_heatmap

            figure = plot_association_heatmap(result, p_threshold=args.p_adj_threshold or 0.05)
            figure.save(output / "association_heatmap.png")
            figure.close()
    except COMMAND_ERRORS as e:
        logger.error(f"associate failed: {e}")
        return 1
    return 0
