"""
miapy CLI - Command-line interface for microbiome experiment analysis.

Commands:
    miapy summarize    - Overview of an experiment
    miapy transform    - Add a transformed assay (relabundance, clr, rank, ...)
    miapy agglomerate  - Collapse features to a taxonomy rank
    miapy diversity    - Alpha diversity indices and PCoA
    miapy associate    - Cross-correlate features of two experiments
    miapy doctor       - Check (and install) the analysis dependencies
"""

import argparse
import sys
from typing import Optional, List

from miapy import __version__


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for miapy."""
    parser = argparse.ArgumentParser(
        prog="miapy",
        description="Microbiome analysis on linked experiment tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  summarize     Overview of assays, annotations, tree and library sizes
  transform     Add a transformed assay (relabundance, clr, rclr, log10, pa, rank, ...)
  agglomerate   Collapse features to a taxonomy rank
  diversity     Alpha diversity indices and PCoA
  associate     Cross-correlate features of two experiments
  doctor        Check (and install) the analysis dependencies

Examples:
  miapy summarize --input counts.csv --row-data taxonomy.csv
  miapy agglomerate --input counts.csv --row-data taxonomy.csv --rank genus --output results/genus
  miapy transform --input results/genus --method clr --pseudocount 1 --output results/genus_clr
  miapy diversity --input counts.csv --tree tree.nwk --index shannon faith --output results/div
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from miapy.cli import summarize, transform, agglomerate, diversity, associate, doctor
    summarize.register_parser(subparsers)
    transform.register_parser(subparsers)
    agglomerate.register_parser(subparsers)
    diversity.register_parser(subparsers)
    associate.register_parser(subparsers)
    doctor.register_parser(subparsers)

    parsed_args = parser.parse_args(args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    # raw argv lets config merging tell explicit options from defaults
    parsed_args.argv = list(args) if args is not None else sys.argv[1:]
    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
