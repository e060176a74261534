"""Argument groups, config handling and input loading shared by all commands."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from miapy.core.experiment import TreeExperiment

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Errors reported at the command boundary (exit code 1)
COMMAND_ERRORS = (FileNotFoundError, ValueError, KeyError, OSError, ImportError)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def add_input_arguments(parser: argparse.ArgumentParser, output: bool = True) -> None:
    """Input/output/config options common to every analysis command."""
    group = parser.add_argument_group("input")
    group.add_argument("--input", "-i", type=Path, default=None,
                       help="Experiment directory (written by miapy) or counts CSV (features x samples)")
    group.add_argument("--row-data", type=Path, default=None,
                       help="Feature annotation CSV (taxonomy), for CSV input")
    group.add_argument("--sample-data", type=Path, default=None,
                       help="Sample annotation CSV, for CSV input")
    group.add_argument("--tree", type=Path, default=None,
                       help="Newick tree whose tips match feature ids, for CSV input")
    group.add_argument("--taxonomy-column", default=None,
                       help="Row-data column holding 'k__...; p__...' taxonomy strings")
    if output:
        parser.add_argument("--output", "-o", type=Path, default=None,
                            help="Output directory")
    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")


def resolve_args(args: argparse.Namespace, section: str | None, require_output: bool = True) -> argparse.Namespace:
    """
    Apply the config file (if any) and check required paths.

    Raises:
        FileNotFoundError: Config file missing
        ValueError: Invalid config, or --input/--output missing after merging
    """
    if args.config:
        from miapy.cli.config import load_config, merge_config_with_args, validate_config

        logger.info(f"Loading configuration from: {args.config}")
        config = load_config(args.config)
        validate_config(config)
        args = merge_config_with_args(config, args, getattr(args, "argv", None), section=section)

    if args.input is None:
        raise ValueError("--input is required (via CLI or config file)")
    if require_output and getattr(args, "output", None) is None:
        raise ValueError("--output is required (via CLI or config file)")
    return args


def load_input(args: argparse.Namespace) -> TreeExperiment:
    """Load --input as a saved experiment directory or as a counts CSV."""
    from miapy.io.loaders import load_csv_experiment, load_experiment

    path = Path(args.input)
    if path.is_dir():
        ignored = [flag for flag, value in (("--row-data", args.row_data), ("--sample-data", args.sample_data),
                                            ("--tree", args.tree)) if value is not None]
        if ignored:
            logger.warning(f"Ignoring {', '.join(ignored)}: input is a saved experiment directory")
        return load_experiment(path)
    return load_csv_experiment(
        path,
        row_data_path=args.row_data,
        sample_data_path=args.sample_data,
        tree_path=args.tree,
        taxonomy_column=args.taxonomy_column,
    )
