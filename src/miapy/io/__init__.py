"""
I/O module for loading and writing microbiome experiments.

Key Functions:
    - load_csv_experiment: Count table + annotations + tree into a TreeExperiment
    - parse_taxonomy: Split "k__Bacteria; p__Firmicutes" strings into rank columns
    - load_newick: Read a Newick tree
    - write_experiment / load_experiment: Save and restore every linked table
    - load_collection: Assemble an ExperimentCollection from several sources

Examples:
    >>> from miapy.io import load_csv_experiment, write_experiment
    >>> exp = load_csv_experiment("counts.csv", "taxonomy.csv", "samples.csv")
    >>> write_experiment(exp, "results/raw")
"""

from miapy.io.loaders import (
    load_csv_experiment,
    parse_taxonomy,
    load_newick,
    load_experiment,
    load_collection,
)
from miapy.io.writers import write_experiment

__all__ = [
    'load_csv_experiment',
    'parse_taxonomy',
    'load_newick',
    'load_experiment',
    'load_collection',
    'write_experiment',
]
