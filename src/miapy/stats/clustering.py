"""
Clustering of features or samples.

Labels are written to the row metadata (by="features") or the sample
metadata (by="samples") as integers 1..k, so downstream code can agglomerate
or split on the new column like any other annotation.

Methods:
    hclust: scipy hierarchical clustering cut into k groups. The linkage
            matrix is kept in metadata["<name>_linkage"].
    kmeans: scikit-learn KMeans (k-means++ initialisation, euclidean only)
"""

from __future__ import annotations

import logging

import numpy as np
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import pdist

from miapy.core.experiment import TreeExperiment

logger = logging.getLogger(__name__)

__all__ = ['cluster', 'CLUSTER_METHODS', 'CLUSTER_METRICS']

CLUSTER_METHODS = ("hclust", "kmeans")
CLUSTER_METRICS = {"euclidean": "euclidean", "correlation": "correlation", "bray": "braycurtis"}
LINKAGE_METHODS = ("complete", "average", "single", "ward", "weighted", "centroid", "median")


def cluster(
    experiment: TreeExperiment,
    assay_name: str = "counts",
    by: str = "features",
    method: str = "hclust",
    k: int = 2,
    linkage_method: str = "complete",
    metric: str = "euclidean",
    name: str = "clusters",
    seed: int = 0,
) -> TreeExperiment:
    """
    Cluster features or samples and store the labels as a metadata column.

    Args:
        experiment: Input experiment
        assay_name: Assay to cluster on
        by: "features" or "samples"
        method: "hclust" or "kmeans"
        k: Number of clusters
        linkage_method: Linkage for hclust (complete, average, single, ward, ...)
        metric: "euclidean", "correlation" or "bray" (hclust only for the last two)
        name: Output column name
        seed: Random seed for kmeans

    Returns:
        New experiment with integer labels in column `name`

    Raises:
        ValueError: Unknown method/metric/linkage, k out of range, or missing
            values in the assay
    """
    if by not in ("features", "samples"):
        raise ValueError(f"by must be 'features' or 'samples', got {by!r}")
    if method not in CLUSTER_METHODS:
        raise ValueError(f"Unknown clustering method '{method}'. Choose from: {', '.join(CLUSTER_METHODS)}")
    if metric not in CLUSTER_METRICS:
        raise ValueError(f"Unknown metric '{metric}'. Choose from: {', '.join(CLUSTER_METRICS)}")
    if linkage_method not in LINKAGE_METHODS:
        raise ValueError(f"Unknown linkage '{linkage_method}'. Choose from: {', '.join(LINKAGE_METHODS)}")
    if method == "kmeans" and metric != "euclidean":
        raise ValueError("kmeans supports only the euclidean metric")
    if linkage_method in ("ward", "centroid", "median") and metric != "euclidean":
        raise ValueError(f"'{linkage_method}' linkage requires the euclidean metric")

    values = np.asarray(experiment.assay(assay_name), dtype=float)
    observations = values if by == "features" else values.T
    n = observations.shape[0]
    if not 1 <= k <= n:
        raise ValueError(f"k must be between 1 and the number of {by} ({n}), got {k}")
    if np.isnan(observations).any():
        raise ValueError(f"Assay '{assay_name}' contains missing values; cannot cluster")

    extra = {}
    if k == 1 or n == 1:
        labels = np.ones(n, dtype=int)
    elif method == "hclust":
        distances = pdist(observations, metric=CLUSTER_METRICS[metric])
        # constant observations give NaN correlation distance
        distances = np.nan_to_num(distances, nan=1.0)
        tree = linkage(distances, method=linkage_method)
        labels = fcluster(tree, t=k, criterion="maxclust").astype(int)
        extra[f"{name}_linkage"] = tree
    else:
        from sklearn.cluster import KMeans

        model = KMeans(n_clusters=k, init="k-means++", n_init=10, random_state=seed)
        labels = model.fit_predict(observations).astype(int) + 1

    n_found = len(np.unique(labels))
    if n_found < k:
        logger.warning(f"Requested {k} clusters but only {n_found} distinct groups were formed")
    logger.info(f"Clustered {n} {by} into {n_found} groups ({method}, {metric})")

    if by == "features":
        result = experiment.with_row_columns({name: labels})
    else:
        result = experiment.with_sample_columns({name: labels})
    return result.with_metadata(**extra) if extra else result
