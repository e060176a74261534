"""
miapy - Microbiome Analysis in Python

Linked-table containers for microbiome experiments (assays, taxonomy, trees,
alternative experiments, multi-experiment collections) together with
transformation, agglomeration, diversity and association analyses.
"""

__version__ = "0.1.0"

from miapy.core.experiment import TreeExperiment
from miapy.core.tree import PhyloTree
from miapy.core.collection import ExperimentCollection
from miapy.core.transform import Transform, AssayTransform

__all__ = [
    "TreeExperiment",
    "PhyloTree",
    "ExperimentCollection",
    "Transform",
    "AssayTransform",
]
