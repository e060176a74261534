"""
Prevalence and abundance ranking of features.

Prevalence is the fraction of samples in which a feature is detected (value
above a detection threshold). It is the usual basis for defining a "core"
microbiota and for removing rare features before correlation analysis.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import pandas as pd

from miapy.core.experiment import TreeExperiment
from miapy.stats.agglomeration import agglomerate_by_rank

logger = logging.getLogger(__name__)

__all__ = [
    'get_prevalence',
    'get_prevalent_features',
    'subset_by_prevalence',
    'get_top_features',
]


def _relative(values: np.ndarray) -> np.ndarray:
    totals = np.nansum(values, axis=0, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        rel = values / totals
    return np.where(np.isfinite(rel), rel, 0.0)


def get_prevalence(
    experiment: TreeExperiment,
    assay_name: str = "counts",
    detection: float = 0.0,
    include_lowest: bool = False,
    as_relative: bool = False,
    sort: bool = False,
) -> pd.Series:
    """
    Per-feature prevalence: fraction of samples where the value exceeds detection.

    Args:
        experiment: Input experiment
        assay_name: Assay to evaluate
        detection: Detection threshold
        include_lowest: Count values equal to detection as detected
        as_relative: Convert to relative abundance before thresholding
        sort: Sort by decreasing prevalence

    Returns:
        Series indexed by feature id with values in [0, 1]
    """
    values = np.asarray(experiment.assay(assay_name), dtype=float)
    if as_relative:
        values = _relative(values)
    if experiment.n_samples == 0:
        prevalence = np.full(experiment.n_features, np.nan)
    else:
        detected = values >= detection if include_lowest else values > detection
        prevalence = detected.sum(axis=1) / experiment.n_samples
    result = pd.Series(prevalence, index=experiment.feature_ids, name="prevalence")
    if sort:
        result = result.sort_values(ascending=False, kind="stable")
    return result


def get_prevalent_features(
    experiment: TreeExperiment,
    assay_name: str = "counts",
    detection: float = 0.0,
    prevalence: float = 0.2,
    include_lowest: bool = False,
    as_relative: bool = False,
    rank: Optional[str] = None,
) -> pd.Index:
    """
    Feature ids whose prevalence exceeds `prevalence` (or equals it with
    include_lowest). With `rank`, features are first agglomerated to that rank.
    """
    if not 0 <= prevalence <= 1:
        raise ValueError(f"prevalence must be in [0, 1], got {prevalence}")
    if rank is not None:
        experiment = agglomerate_by_rank(experiment, rank)
    prev = get_prevalence(experiment, assay_name, detection, include_lowest, as_relative, sort=True)
    keep = prev >= prevalence if include_lowest else prev > prevalence
    return pd.Index(prev.index[keep.to_numpy()])


def subset_by_prevalence(
    experiment: TreeExperiment,
    assay_name: str = "counts",
    detection: float = 0.0,
    prevalence: float = 0.2,
    include_lowest: bool = False,
    as_relative: bool = False,
    rank: Optional[str] = None,
) -> TreeExperiment:
    """Keep only prevalent features (agglomerating to `rank` first if given)."""
    if rank is not None:
        experiment = agglomerate_by_rank(experiment, rank)
    features = get_prevalent_features(
        experiment, assay_name, detection, prevalence, include_lowest, as_relative
    )
    logger.info(
        f"Prevalence filter (detection={detection}, prevalence={prevalence}): "
        f"kept {len(features)}/{experiment.n_features} features"
    )
    return experiment.select_features(experiment.feature_ids.isin(features))


def get_top_features(
    experiment: TreeExperiment,
    assay_name: str = "counts",
    top: int = 5,
    method: str = "mean",
) -> list:
    """
    Ids of the `top` most abundant (or most prevalent) features.

    Args:
        method: "mean", "sum", "median" or "prevalence"
    """
    if top < 1:
        raise ValueError(f"top must be a positive integer, got {top}")
    values = np.asarray(experiment.assay(assay_name), dtype=float)
    if method == "mean":
        score = np.nanmean(values, axis=1)
    elif method == "sum":
        score = np.nansum(values, axis=1)
    elif method == "median":
        score = np.nanmedian(values, axis=1)
    elif method == "prevalence":
        score = get_prevalence(experiment, assay_name).to_numpy()
    else:
        raise ValueError(
            f"Unknown method '{method}'. Choose from: mean, sum, median, prevalence"
        )
    ranked = pd.Series(score, index=experiment.feature_ids).sort_values(ascending=False, kind="stable")
    return list(ranked.index[:top])
