"""
Cross-association between the features of two experiments.

Typical use is correlating taxa with metabolites (or with taxa from another
body site) measured on the same samples. Every feature of the first
experiment is correlated with every feature of the second, and p-values are
adjusted across the whole matrix.

Statistical Approach:
    - pearson: product-moment correlation, t-test with n - 2 df
    - spearman: pearson on average ranks, same t approximation
    - kendall: tau-b via scipy.stats.kendalltau (pairwise, slower)
    - Multiple testing correction: statsmodels multipletests over all pairs

Features with zero variance have undefined correlation and are reported as
NaN; they are excluded from the multiple testing correction.

Examples:
    >>> from miapy.stats.association import cross_associate
    >>> result = cross_associate(taxa, metabolites, method="spearman")
    >>> result.to_table(p_adj_threshold=0.05).head()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from miapy.core.experiment import TreeExperiment

logger = logging.getLogger(__name__)

__all__ = ['AssociationResult', 'cross_associate', 'ASSOCIATION_METHODS', 'adjust_pvalues']

ASSOCIATION_METHODS = ("spearman", "pearson", "kendall")
MIN_SAMPLES = 3


@dataclass
class AssociationResult:
    """Correlation matrix (features1 × features2) with optional significance."""
    cor: pd.DataFrame
    pval: Optional[pd.DataFrame]
    p_adj: Optional[pd.DataFrame]
    method: str
    n_samples: int

    def to_table(self, p_adj_threshold: Optional[float] = None,
                 cor_threshold: Optional[float] = None) -> pd.DataFrame:
        """
        Long table of feature pairs, strongest evidence first.

        Args:
            p_adj_threshold: Keep pairs with p_adj <= threshold
            cor_threshold: Keep pairs with |cor| >= threshold

        Returns:
            DataFrame with columns feature1, feature2, cor (and pval, p_adj
            when significance was tested). Pairs with NaN correlation are
            omitted.
        """
        n_rows, n_cols = self.cor.shape
        table = pd.DataFrame({
            "feature1": np.repeat(self.cor.index.to_numpy(), n_cols),
            "feature2": np.tile(self.cor.columns.to_numpy(), n_rows),
            "cor": self.cor.to_numpy().ravel(),
        })
        if self.pval is not None:
            table["pval"] = self.pval.to_numpy().ravel()
            table["p_adj"] = self.p_adj.to_numpy().ravel()
        table = table[table["cor"].notna()]

        if p_adj_threshold is not None:
            if self.p_adj is None:
                raise ValueError("p_adj_threshold requires test_significance=True")
            table = table[table["p_adj"] <= p_adj_threshold]
        if cor_threshold is not None:
            table = table[table["cor"].abs() >= cor_threshold]

        order = ["p_adj"] if self.p_adj is not None else []
        table = table.assign(_abs=table["cor"].abs())
        table = table.sort_values(order + ["_abs"], ascending=[True] * len(order) + [False], kind="stable")
        return table.drop(columns="_abs").reset_index(drop=True)

    def __repr__(self) -> str:
        rows, cols = self.cor.shape
        return f"AssociationResult({self.method}, {rows} × {cols} features, n={self.n_samples})"


def adjust_pvalues(pvalues: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """Apply multiple testing correction, leaving NaN p-values as NaN."""
    pvalues = np.asarray(pvalues, dtype=float)
    adjusted = np.full_like(pvalues, np.nan)
    valid = ~np.isnan(pvalues)
    if not np.any(valid):
        return adjusted
    _, adjusted[valid], _, _ = multipletests(pvalues[valid], method=method)
    return adjusted


def _align_samples(exp1: TreeExperiment, exp2: TreeExperiment) -> TreeExperiment:
    if exp1.sample_ids.equals(exp2.sample_ids):
        return exp2
    if set(exp1.sample_ids) == set(exp2.sample_ids):
        logger.info("Reordering second experiment's samples to match the first")
        return exp2.select_samples(list(exp1.sample_ids))
    only1 = exp1.sample_ids.difference(exp2.sample_ids).tolist()[:5]
    only2 = exp2.sample_ids.difference(exp1.sample_ids).tolist()[:5]
    raise ValueError(
        f"Experiments must share the same samples. "
        f"Only in first: {only1}; only in second: {only2}"
    )


def _standardize(matrix: np.ndarray) -> np.ndarray:
    """Center and scale columns; constant columns become NaN."""
    centered = matrix - matrix.mean(axis=0)
    norms = np.sqrt((centered ** 2).sum(axis=0))
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(norms > 0, centered / norms, np.nan)


def _correlate(x: np.ndarray, y: np.ndarray, method: str) -> tuple[np.ndarray, np.ndarray]:
    """Correlation and two-sided p-values between columns of x and columns of y."""
    n = x.shape[0]
    if method == "kendall":
        cor = np.full((x.shape[1], y.shape[1]), np.nan)
        pval = np.full_like(cor, np.nan)
        for i in range(x.shape[1]):
            for j in range(y.shape[1]):
                if np.ptp(x[:, i]) == 0 or np.ptp(y[:, j]) == 0:
                    continue
                tau, p = stats.kendalltau(x[:, i], y[:, j])
                cor[i, j], pval[i, j] = tau, p
        return cor, pval

    if method == "spearman":
        x = stats.rankdata(x, axis=0)
        y = stats.rankdata(y, axis=0)
    cor = _standardize(x).T @ _standardize(y)
    cor = np.clip(cor, -1.0, 1.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = cor * np.sqrt((n - 2) / (1.0 - cor ** 2))
    pval = 2 * stats.t.sf(np.abs(t), df=n - 2)
    pval[np.isnan(cor)] = np.nan
    return cor, pval


def cross_associate(
    exp1: TreeExperiment,
    exp2: Optional[TreeExperiment] = None,
    assay_name1: str = "counts",
    assay_name2: str = "counts",
    alt_experiment2: Optional[str] = None,
    method: str = "spearman",
    test_significance: bool = True,
    p_adj_method: str = "fdr_bh",
    filter_self_correlations: bool = False,
) -> AssociationResult:
    """
    Correlate every feature of exp1 with every feature of exp2.

    Args:
        exp1: First experiment
        exp2: Second experiment (default: exp1, or its alternative experiment)
        assay_name1: Assay of exp1
        assay_name2: Assay of exp2
        alt_experiment2: Take the second experiment from exp1's alternative
            experiments (used when exp2 is None) or from exp2's
        method: "spearman", "pearson" or "kendall"
        test_significance: Compute p-values and adjusted p-values
        p_adj_method: Any statsmodels multipletests method (e.g. "fdr_bh",
            "bonferroni", "holm")
        filter_self_correlations: Set pairs with the same feature id to NaN

    Returns:
        AssociationResult

    Raises:
        ValueError: Unknown method, mismatched samples, fewer than three
            samples, or missing values in an assay
        KeyError: Unknown assay or alternative experiment
    """
    if method not in ASSOCIATION_METHODS:
        raise ValueError(
            f"Unknown association method '{method}'. Choose from: {', '.join(ASSOCIATION_METHODS)}"
        )
    base = exp1 if exp2 is None else exp2
    exp2 = base.alt_experiment(alt_experiment2) if alt_experiment2 is not None else base
    exp2 = _align_samples(exp1, exp2)

    n = exp1.n_samples
    if n < MIN_SAMPLES:
        raise ValueError(f"Association requires at least {MIN_SAMPLES} samples, got {n}")

    x = np.asarray(exp1.assay(assay_name1), dtype=float).T
    y = np.asarray(exp2.assay(assay_name2), dtype=float).T
    for label, matrix in (("first", x), ("second", y)):
        if np.isnan(matrix).any():
            raise ValueError(f"Assay of the {label} experiment contains missing values")

    cor, pval = _correlate(x, y, method)

    if filter_self_correlations:
        same = exp1.feature_ids.to_numpy()[:, None] == exp2.feature_ids.to_numpy()[None, :]
        cor[same] = np.nan
        pval[same] = np.nan

    n_undefined = int(np.isnan(cor).sum())
    if n_undefined:
        logger.warning(f"{n_undefined} feature pairs have undefined correlation (constant features)")

    def frame(values: np.ndarray) -> pd.DataFrame:
        return pd.DataFrame(values, index=exp1.feature_ids, columns=exp2.feature_ids)

    p_frame, adj_frame = None, None
    if test_significance:
        adjusted = adjust_pvalues(pval.ravel(), p_adj_method).reshape(pval.shape)
        p_frame, adj_frame = frame(pval), frame(adjusted)

    logger.info(
        f"Cross-association ({method}): {x.shape[1]} × {y.shape[1]} features on {n} samples"
    )
    return AssociationResult(cor=frame(cor), pval=p_frame, p_adj=adj_frame, method=method, n_samples=n)
