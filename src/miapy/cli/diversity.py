"""
miapy diversity - Alpha diversity per sample and optional PCoA.

Usage:
    miapy diversity --input counts.csv --tree tree.nwk --output results/div \
        --index shannon observed faith --mds-method bray --plots --group-by body_site
"""

from __future__ import annotations

import argparse
import logging

from miapy.cli._common import COMMAND_ERRORS, add_input_arguments, load_input, resolve_args, setup_logging
from miapy.cli._validators import _non_negative_float, _positive_int
from miapy.stats.diversity import ALPHA_INDICES, DISSIMILARITY_METHODS

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the diversity subcommand."""
    parser = subparsers.add_parser(
        "diversity",
        help="Alpha diversity indices and PCoA",
        description=(
            "Estimate alpha diversity indices into the sample metadata and, with "
            "--mds-method, ordinate samples by classical MDS."
        ),
    )
    add_input_arguments(parser)
    parser.add_argument("--index", nargs="+", choices=list(ALPHA_INDICES), default=["shannon", "observed"],
                        help="Alpha indices to estimate (default: shannon observed)")
    parser.add_argument("--assay-name", default="counts", help="Assay to use (default: counts)")
    parser.add_argument("--mds-method", choices=DISSIMILARITY_METHODS, default=None,
                        help="Dissimilarity for PCoA (default: no ordination)")
    parser.add_argument("--ncomponents", type=_positive_int, default=2,
                        help="PCoA components to keep (default: 2)")
    parser.add_argument("--pseudocount", type=_non_negative_float, default=0.0,
                        help="Pseudocount for the aitchison distance (default: 0)")
    parser.add_argument("--plots", action="store_true", help="Write alpha and ordination figures")
    parser.add_argument("--group-by", default=None, help="Sample column for grouping in figures")
    parser.set_defaults(func=run_diversity)


def run_diversity(args: argparse.Namespace) -> int:
    """Execute the diversity command."""
    setup_logging(args.verbose)
    try:
        args = resolve_args(args, section="diversity")
        from miapy.io.writers import write_experiment
        from miapy.stats.diversity import estimate_alpha, run_mds
        from miapy.utils.fileio import atomic_write_frame

        experiment = load_input(args)
        indices = [args.index] if isinstance(args.index, str) else list(args.index)
        result = estimate_alpha(experiment, args.assay_name, index=indices)
        if args.mds_method is not None:
            options = {"pseudocount": args.pseudocount} if args.mds_method == "aitchison" else {}
            result = run_mds(result, args.assay_name, method=args.mds_method,
                             ncomponents=args.ncomponents, **options)

        write_experiment(result, args.output)
        alpha = result.sample_metadata[indices].rename_axis("sample")
        atomic_write_frame(args.output / "alpha_diversity.csv", alpha)
        logger.info(f"Wrote alpha diversity table to {args.output / 'alpha_diversity.csv'}")

        if args.plots:
            import matplotlib
            matplotlib.use("Agg")
            from miapy.viz import FigureSet, plot_alpha, plot_ordination

            figures = FigureSet()
            try:
                for index in indices:
                    figures.add(f"alpha_{index}", plot_alpha(result, index, group_by=args.group_by))
                if args.mds_method is not None:
                    figures.add(f"mds_{args.mds_method}",
                                plot_ordination(result, "MDS", color_by=args.group_by))
                figures.save_all(args.output / "figures")
            finally:
                figures.close()
    except COMMAND_ERRORS as e:
        logger.error(f"diversity failed: {e}")
        return 1
    return 0
