"""
Core data structures for microbiome experiments.

This module provides the foundational types that all other modules build upon:

1. TreeExperiment: Linked assays + feature/sample annotations + tree + alt experiments
2. PhyloTree: Rooted tree over features, linked to rows by name
3. ExperimentCollection: Experiments with independent columns joined by a sample map
4. Transform / AssayTransform: Abstract bases for immutable derivations

Design Philosophy:
    - Immutability: All operations return new instances (functional style)
    - Consistency: Subsetting realigns every linked table at once
    - Composability: Small operations chain into complete analyses

Examples:
    >>> from miapy.core import TreeExperiment, PhyloTree
    >>> tree = PhyloTree.from_newick("((OTU1:1,OTU2:1):1,OTU3:2);")
    >>> exp = TreeExperiment({"counts": counts}, feature_ids, sample_ids, row_tree=tree)
    >>> exp.row_links["OTU1"]
    'OTU1'
"""

from miapy.core.collection import ExperimentCollection
from miapy.core.experiment import TreeExperiment
from miapy.core.transform import AssayTransform, Transform
from miapy.core.tree import PhyloTree

__all__ = [
    'TreeExperiment',
    'PhyloTree',
    'ExperimentCollection',
    'Transform',
    'AssayTransform',
]
