"""
Analysis functions over TreeExperiment.

Exports core functions for:
- Assay transformations (relative abundance, log, CLR family, scaling)
- Agglomeration by taxonomic rank or metadata variable
- Prevalence filtering and top features
- Merging experiments
- Alpha and beta diversity, PCoA
- Cross-association with multiple testing correction
- Clustering of features or samples
"""

from .transforms import TRANSFORM_METHODS, transform_assay
from .agglomeration import (
    TAXONOMY_RANKS,
    taxonomy_ranks,
    agglomerate_by_rank,
    agglomerate_by_variable,
    split_by,
    unsplit,
)
from .prevalence import (
    get_prevalence,
    get_prevalent_features,
    subset_by_prevalence,
    get_top_features,
)
from .merge import merge_experiments
from .diversity import (
    estimate_alpha,
    estimate_diversity,
    estimate_richness,
    estimate_evenness,
    estimate_dominance,
    compute_dissimilarity,
    run_mds,
)
from .association import AssociationResult, cross_associate
from .clustering import cluster

__all__ = [
    "TRANSFORM_METHODS",
    "transform_assay",
    "TAXONOMY_RANKS",
    "taxonomy_ranks",
    "agglomerate_by_rank",
    "agglomerate_by_variable",
    "split_by",
    "unsplit",
    "get_prevalence",
    "get_prevalent_features",
    "subset_by_prevalence",
    "get_top_features",
    "merge_experiments",
    "estimate_alpha",
    "estimate_diversity",
    "estimate_richness",
    "estimate_evenness",
    "estimate_dominance",
    "compute_dissimilarity",
    "run_mds",
    "AssociationResult",
    "cross_associate",
    "cluster",
]
