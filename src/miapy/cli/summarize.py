"""
miapy summarize - Print an overview of an experiment.

Usage:
    miapy summarize --input counts.csv --row-data taxonomy.csv
    miapy summarize --input results/genus --output results/genus/summary.json
"""

from __future__ import annotations

import argparse
import logging
from typing import Any

import numpy as np

from miapy.cli._common import COMMAND_ERRORS, add_input_arguments, load_input, resolve_args, setup_logging
from miapy.cli._validators import _positive_int

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the summarize subcommand."""
    parser = subparsers.add_parser(
        "summarize",
        help="Overview of assays, annotations, tree and library sizes",
        description="Print dimensions, assays, taxonomy ranks, tree linkage and library sizes.",
    )
    add_input_arguments(parser)
    parser.add_argument("--assay-name", default="counts",
                        help="Assay used for library sizes and top features (default: counts)")
    parser.add_argument("--top", type=_positive_int, default=5,
                        help="Number of top features to list (default: 5)")
    parser.set_defaults(func=run_summarize)


def summarize_experiment(experiment, assay_name: str = "counts", top: int = 5) -> dict[str, Any]:
    """Summary statistics of an experiment as a JSON-ready dictionary."""
    from miapy.stats.agglomeration import taxonomy_ranks
    from miapy.stats.prevalence import get_top_features

    summary: dict[str, Any] = {
        "n_features": experiment.n_features,
        "n_samples": experiment.n_samples,
        "assays": experiment.assay_names,
        "taxonomy_ranks": taxonomy_ranks(experiment),
        "row_metadata_columns": [str(c) for c in experiment.row_metadata.columns],
        "sample_metadata_columns": [str(c) for c in experiment.sample_metadata.columns],
        "alt_experiments": experiment.alt_experiment_names,
        "reduced_dims": experiment.reduced_dim_names,
    }
    if experiment.row_tree is not None:
        summary["tree"] = {
            "n_leaves": experiment.row_tree.n_leaves,
            "n_nodes": experiment.row_tree.n_nodes,
            "linked_features": int(experiment.row_links.notna().sum()),
        }
    if assay_name in experiment.assays and experiment.n_samples:
        values = np.asarray(experiment.assay(assay_name), dtype=float)
        totals = np.nansum(values, axis=0)
        summary["library_size"] = {
            "min": float(totals.min()),
            "median": float(np.median(totals)),
            "max": float(totals.max()),
        }
        summary["zero_fraction"] = float((values == 0).mean()) if values.size else 0.0
        summary["top_features"] = [str(f) for f in get_top_features(experiment, assay_name, top=top)]
    return summary


def _print_summary(summary: dict[str, Any]) -> None:
    print(f"\nExperiment: {summary['n_features']:,} features × {summary['n_samples']:,} samples")
    print(f"  Assays:           {', '.join(summary['assays']) or '-'}")
    print(f"  Taxonomy ranks:   {', '.join(summary['taxonomy_ranks']) or '-'}")
    print(f"  Sample columns:   {', '.join(summary['sample_metadata_columns']) or '-'}")
    if "tree" in summary:
        tree = summary["tree"]
        print(f"  Tree:             {tree['n_leaves']} leaves, "
              f"{tree['linked_features']}/{summary['n_features']} features linked")
    if summary["alt_experiments"]:
        print(f"  Alt experiments:  {', '.join(summary['alt_experiments'])}")
    if summary["reduced_dims"]:
        print(f"  Reduced dims:     {', '.join(summary['reduced_dims'])}")
    if "library_size" in summary:
        lib = summary["library_size"]
        print(f"  Library size:     min {lib['min']:,.0f} / median {lib['median']:,.0f} / max {lib['max']:,.0f}")
        print(f"  Zeros:            {summary['zero_fraction']:.1%}")
        print(f"  Top features:     {', '.join(summary['top_features'])}")


def run_summarize(args: argparse.Namespace) -> int:
    """Execute the summarize command."""
    setup_logging(args.verbose)
    try:
        args = resolve_args(args, section=None, require_output=False)
        experiment = load_input(args)
        summary = summarize_experiment(experiment, args.assay_name, args.top)
        _print_summary(summary)
        if args.output is not None:
            from miapy.utils.fileio import atomic_write_json

            path = args.output
            if path.suffix.lower() != ".json":
                path.mkdir(parents=True, exist_ok=True)
                path = path / "summary.json"
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_json(path, summary)
            logger.info(f"Wrote summary to {path}")
    except COMMAND_ERRORS as e:
        logger.error(f"summarize failed: {e}")
        return 1
    return 0
