"""
Alpha and beta diversity of microbial communities.

Alpha indices summarise each sample's community into one number and are
written as new columns of the sample metadata. Beta diversity compares
samples pairwise; the dissimilarity matrix can be ordinated with run_mds(),
which stores coordinates as a reduced dimension.

Index families:
    diversity: shannon, gini_simpson, inverse_simpson, coverage, fisher,
               faith, log_modulo_skewness
    richness:  observed, chao1, ace, hill
    evenness:  pielou, simpson_evenness, evar, bulla, camargo
    dominance: dbp, dmn, absolute, relative, simpson_lambda, gini,
               core_abundance

Conventions:
    - Natural logarithms throughout
    - Features with zero abundance do not count as observed
    - A sample with zero total yields NaN for ratio-based indices

References:
    - Faith (1992) Biol Conserv 61:1-10
    - Chao (1984) Scand J Stat 11:265-270
    - Chao & Lee (1992) JASA 87:210-217 (ACE)
    - Smith & Wilson (1996) Oikos 76:70-82 (evenness indices)
    - Lozupone & Knight (2005) AEM 71:8228-8235 (UniFrac)

Examples:
    >>> from miapy.stats.diversity import estimate_diversity, run_mds
    >>> exp = estimate_diversity(exp, "counts", index=["shannon", "faith"])
    >>> exp.sample_metadata[["shannon", "faith"]].head()
    >>> exp = run_mds(exp, "relabundance", method="bray")
"""

from __future__ import annotations

import logging
import warnings
from typing import Any, Callable, Optional, Sequence, Union

import networkx as nx
import numpy as np
import pandas as pd
from scipy.optimize import brentq
from scipy.spatial.distance import pdist, squareform

from miapy.core.experiment import TreeExperiment
from miapy.core.tree import PhyloTree

logger = logging.getLogger(__name__)

__all__ = [
    'ALPHA_INDICES',
    'ALPHA_OPTIONS',
    'INDEX_FAMILIES',
    'DISSIMILARITY_METHODS',
    'estimate_alpha',
    'estimate_diversity',
    'estimate_richness',
    'estimate_evenness',
    'estimate_dominance',
    'compute_dissimilarity',
    'run_mds',
]


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _proportions(values: np.ndarray) -> np.ndarray:
    totals = values.sum(axis=0, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        return values / totals


def _observed(values: np.ndarray, detection: float = 0.0) -> np.ndarray:
    return (values > detection).sum(axis=0).astype(float)


def _shannon(values: np.ndarray, **_: Any) -> np.ndarray:
    p = _proportions(values)
    with np.errstate(divide="ignore", invalid="ignore"):
        terms = np.where(p > 0, p * np.log(np.where(p > 0, p, 1.0)), 0.0)
    result = -terms.sum(axis=0)
    result[values.sum(axis=0) == 0] = np.nan
    return result


def _simpson_lambda(values: np.ndarray, **_: Any) -> np.ndarray:
    p = _proportions(values)
    return np.nansum(p ** 2, axis=0) + np.where(values.sum(axis=0) == 0, np.nan, 0.0)


def _check_counts(values: np.ndarray, index: str) -> None:
    if not np.allclose(values, np.round(values)):
        warnings.warn(
            f"'{index}' assumes integer counts; assay contains non-integer values",
            UserWarning
        )


# ----------------------------------------------------------------------
# Diversity family
# ----------------------------------------------------------------------

def _gini_simpson(values: np.ndarray, **_: Any) -> np.ndarray:
    return 1.0 - _simpson_lambda(values)


def _inverse_simpson(values: np.ndarray, **_: Any) -> np.ndarray:
    with np.errstate(divide="ignore"):
        return 1.0 / _simpson_lambda(values)


def _coverage(values: np.ndarray, threshold: float = 0.9, **_: Any) -> np.ndarray:
    """Number of most abundant features needed to reach `threshold` of the total."""
    if not 0 < threshold <= 1:
        raise ValueError(f"coverage threshold must be in (0, 1], got {threshold}")
    p = _proportions(values)
    result = np.full(values.shape[1], np.nan)
    for j in range(values.shape[1]):
        col = p[:, j]
        if not np.isfinite(col).all():
            continue
        cum = np.cumsum(np.sort(col)[::-1])
        result[j] = float(np.searchsorted(cum, threshold - 1e-12) + 1)
    return result


def _fisher_alpha(values: np.ndarray, **_: Any) -> np.ndarray:
    """Fisher's alpha: solves S = a * ln(1 + N / a)."""
    _check_counts(values, "fisher")
    result = np.full(values.shape[1], np.nan)
    for j in range(values.shape[1]):
        n = float(values[:, j].sum())
        s = float((values[:, j] > 0).sum())
        if s == 0 or n <= s:
            continue

        def f(a: float) -> float:
            return a * np.log1p(n / a) - s

        result[j] = brentq(f, 1e-9, 1e9)
    return result


def _log_modulo_skewness(values: np.ndarray, quantile: float = 0.5,
                         num_of_classes: int = 50, **_: Any) -> np.ndarray:
    """
    Rarity index: log-modulo skewness of the abundance-class frequency table.

    Abundances are binned into `num_of_classes` equal-width classes between 0
    and `quantile` of the largest value in the assay (open-ended top class).
    """
    if not 0 < quantile <= 1:
        raise ValueError(f"quantile must be in (0, 1], got {quantile}")
    if num_of_classes < 2:
        raise ValueError(f"num_of_classes must be >= 2, got {num_of_classes}")
    top = float(np.nanmax(values)) * quantile if values.size else 0.0
    cutpoints = np.append(np.linspace(0, top, num_of_classes), np.inf)
    result = np.full(values.shape[1], np.nan)
    for j in range(values.shape[1]):
        freq, _ = np.histogram(values[:, j], bins=cutpoints)
        freq = freq.astype(float)
        sd = freq.std(ddof=1)
        if sd == 0:
            continue
        skew = np.sum((freq - freq.mean()) ** 3) / (len(freq) - 1) / sd ** 3
        result[j] = np.sign(skew) * np.log1p(abs(skew))
    return result


def _faith(values: np.ndarray, tree: Optional[PhyloTree] = None,
           nodes: Optional[Sequence] = None, **_: Any) -> np.ndarray:
    """Faith's phylogenetic diversity of the features present in each sample."""
    if tree is None or nodes is None:
        raise ValueError("'faith' requires a phylogenetic tree (row_tree or tree=...)")
    nodes = np.asarray(nodes, dtype=object)
    linked = np.array([n is not None for n in nodes])
    if not linked.all():
        warnings.warn(
            f"'faith': {int((~linked).sum())} features are not linked to the tree and are ignored",
            UserWarning
        )
    result = np.zeros(values.shape[1])
    for j in range(values.shape[1]):
        present = nodes[linked & (values[:, j] > 0)]
        result[j] = tree.phylogenetic_diversity(set(present)) if len(present) else 0.0
    return result


# ----------------------------------------------------------------------
# Richness family
# ----------------------------------------------------------------------

def _richness_observed(values: np.ndarray, detection: float = 0.0, **_: Any) -> np.ndarray:
    return _observed(values, detection)


def _chao1(values: np.ndarray, **_: Any) -> np.ndarray:
    """Chao1; bias-corrected form when there are no doubletons."""
    _check_counts(values, "chao1")
    counts = np.round(values)
    s_obs = (counts > 0).sum(axis=0).astype(float)
    f1 = (counts == 1).sum(axis=0).astype(float)
    f2 = (counts == 2).sum(axis=0).astype(float)
    with np.errstate(divide="ignore", invalid="ignore"):
        classic = s_obs + f1 ** 2 / (2 * f2)
    corrected = s_obs + f1 * (f1 - 1) / 2.0
    return np.where(f2 > 0, classic, corrected)


def _ace(values: np.ndarray, rare_threshold: int = 10, **_: Any) -> np.ndarray:
    """Abundance-based coverage estimator."""
    _check_counts(values, "ace")
    counts = np.round(values)
    result = np.full(values.shape[1], np.nan)
    for j in range(values.shape[1]):
        x = counts[:, j]
        rare = x[(x > 0) & (x <= rare_threshold)]
        s_abund = float((x > rare_threshold).sum())
        s_rare = float(len(rare))
        n_rare = float(rare.sum())
        f1 = float((rare == 1).sum())
        if s_rare == 0:
            result[j] = s_abund
            continue
        if n_rare == f1:
            # all rare features are singletons: coverage estimate undefined
            continue
        c_ace = 1.0 - f1 / n_rare
        i = np.arange(1, rare_threshold + 1)
        f_i = np.array([(rare == k).sum() for k in i], dtype=float)
        gamma = (s_rare / c_ace) * np.sum(i * (i - 1) * f_i) / (n_rare * (n_rare - 1)) - 1.0
        gamma = max(gamma, 0.0)
        result[j] = s_abund + s_rare / c_ace + (f1 / c_ace) * gamma
    return result


def _hill(values: np.ndarray, **_: Any) -> np.ndarray:
    """Hill number of order 1 (exponential of Shannon)."""
    return np.exp(_shannon(values))


# ----------------------------------------------------------------------
# Evenness family
# ----------------------------------------------------------------------

def _pielou(values: np.ndarray, **_: Any) -> np.ndarray:
    s = _observed(values)
    with np.errstate(divide="ignore", invalid="ignore"):
        result = _shannon(values) / np.log(s)
    result[s <= 1] = np.nan
    return result


def _simpson_evenness(values: np.ndarray, **_: Any) -> np.ndarray:
    s = _observed(values)
    with np.errstate(divide="ignore", invalid="ignore"):
        return _inverse_simpson(values) / s


def _evar(values: np.ndarray, **_: Any) -> np.ndarray:
    result = np.full(values.shape[1], np.nan)
    for j in range(values.shape[1]):
        x = values[values[:, j] > 0, j]
        if len(x) == 0:
            continue
        result[j] = 1.0 - 2.0 / np.pi * np.arctan(np.var(np.log(x)))
    return result


def _bulla(values: np.ndarray, **_: Any) -> np.ndarray:
    result = np.full(values.shape[1], np.nan)
    for j in range(values.shape[1]):
        x = values[values[:, j] > 0, j]
        s = len(x)
        if s <= 1:
            continue
        p = x / x.sum()
        overlap = np.minimum(p, 1.0 / s).sum()
        result[j] = (overlap - 1.0 / s) / (1.0 - 1.0 / s)
    return result


def _camargo(values: np.ndarray, **_: Any) -> np.ndarray:
    result = np.full(values.shape[1], np.nan)
    for j in range(values.shape[1]):
        x = values[values[:, j] > 0, j]
        s = len(x)
        if s == 0:
            continue
        p = x / x.sum()
        diffs = np.abs(p[:, None] - p[None, :])
        result[j] = 1.0 - np.triu(diffs, k=1).sum() / s
    return result


# ----------------------------------------------------------------------
# Dominance family
# ----------------------------------------------------------------------

def _top_sum(values: np.ndarray, ntaxa: int) -> np.ndarray:
    if ntaxa < 1:
        raise ValueError(f"ntaxa must be >= 1, got {ntaxa}")
    ordered = -np.sort(-values, axis=0)
    return ordered[:ntaxa].sum(axis=0)


def _dbp(values: np.ndarray, **_: Any) -> np.ndarray:
    """Berger-Parker: relative abundance of the most abundant feature."""
    with np.errstate(divide="ignore", invalid="ignore"):
        return _top_sum(values, 1) / values.sum(axis=0)


def _dmn(values: np.ndarray, **_: Any) -> np.ndarray:
    """McNaughton: relative abundance of the two most abundant features."""
    with np.errstate(divide="ignore", invalid="ignore"):
        return _top_sum(values, 2) / values.sum(axis=0)


def _absolute(values: np.ndarray, ntaxa: int = 1, **_: Any) -> np.ndarray:
    return _top_sum(values, ntaxa).astype(float)


def _relative(values: np.ndarray, ntaxa: int = 1, **_: Any) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        return _top_sum(values, ntaxa) / values.sum(axis=0)


def _gini(values: np.ndarray, **_: Any) -> np.ndarray:
    """Gini coefficient of feature abundances within each sample."""
    n = values.shape[0]
    result = np.full(values.shape[1], np.nan)
    if n == 0:
        return result
    ranks = np.arange(1, n + 1)
    for j in range(values.shape[1]):
        x = np.sort(values[:, j])
        total = x.sum()
        if total == 0:
            continue
        result[j] = (2.0 * np.sum(ranks * x)) / (n * total) - (n + 1.0) / n
    return result


def _core_abundance(values: np.ndarray, detection: float = 0.0,
                    prevalence: float = 0.5, **_: Any) -> np.ndarray:
    """Relative abundance of core features (prevalent across all samples)."""
    if values.shape[1] == 0:
        return np.array([])
    core = (values > detection).mean(axis=1) > prevalence
    with np.errstate(divide="ignore", invalid="ignore"):
        return values[core].sum(axis=0) / values.sum(axis=0)


IndexFunction = Callable[..., np.ndarray]

INDEX_FAMILIES: dict[str, dict[str, IndexFunction]] = {
    "diversity": {
        "shannon": _shannon,
        "gini_simpson": _gini_simpson,
        "inverse_simpson": _inverse_simpson,
        "coverage": _coverage,
        "fisher": _fisher_alpha,
        "faith": _faith,
        "log_modulo_skewness": _log_modulo_skewness,
    },
    "richness": {
        "observed": _richness_observed,
        "chao1": _chao1,
        "ace": _ace,
        "hill": _hill,
    },
    "evenness": {
        "pielou": _pielou,
        "simpson_evenness": _simpson_evenness,
        "evar": _evar,
        "bulla": _bulla,
        "camargo": _camargo,
    },
    "dominance": {
        "dbp": _dbp,
        "dmn": _dmn,
        "absolute": _absolute,
        "relative": _relative,
        "simpson_lambda": _simpson_lambda,
        "gini": _gini,
        "core_abundance": _core_abundance,
    },
}

ALPHA_INDICES: dict[str, IndexFunction] = {
    name: fn for family in INDEX_FAMILIES.values() for name, fn in family.items()
}

ALPHA_OPTIONS = frozenset({
    "detection", "threshold", "quantile", "num_of_classes", "rare_threshold", "ntaxa", "prevalence",
})


def _tree_nodes(experiment: TreeExperiment, tree: Optional[PhyloTree]) -> tuple[Optional[PhyloTree], Optional[list]]:
    if tree is not None:
        nodes = [str(f) if str(f) in tree else None for f in experiment.feature_ids]
        return tree, nodes
    if experiment.row_tree is None:
        return None, None
    return experiment.row_tree, list(experiment.row_links.to_numpy())


def estimate_alpha(
    experiment: TreeExperiment,
    assay_name: str = "counts",
    index: Union[str, Sequence[str]] = ("shannon",),
    name: Optional[Union[str, Sequence[str]]] = None,
    family: Optional[str] = None,
    tree: Optional[PhyloTree] = None,
    **options: Any,
) -> TreeExperiment:
    """
    Compute alpha indices and write them as sample metadata columns.

    Args:
        experiment: Input experiment
        assay_name: Assay with (usually integer) abundances
        index: One index name or a list of them
        name: Output column names, same length as index (defaults to index)
        family: Restrict accepted indices to one family
        tree: Tree for 'faith' (default: experiment.row_tree via row_links;
            a tree passed here is linked to features by name)
        **options: Index options: detection, threshold, quantile,
            num_of_classes, rare_threshold, ntaxa, prevalence

    Returns:
        New experiment with one new sample metadata column per index

    Raises:
        ValueError: Unknown index or option, index/name length mismatch,
            duplicate names, or negative abundances
    """
    indices = [index] if isinstance(index, str) else list(index)
    names = indices if name is None else ([name] if isinstance(name, str) else list(name))
    if not indices:
        raise ValueError("At least one index is required")
    if len(names) != len(indices):
        raise ValueError(f"'name' must have the same length as 'index' ({len(names)} vs {len(indices)})")
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate output names: {names}")

    allowed = INDEX_FAMILIES[family] if family is not None else ALPHA_INDICES
    unknown = [i for i in indices if i not in allowed]
    if unknown:
        scope = f"{family} " if family else ""
        raise ValueError(
            f"Unknown {scope}index {unknown}. Choose from: {', '.join(allowed)}"
        )
    unknown_options = sorted(set(options).difference(ALPHA_OPTIONS))
    if unknown_options:
        raise ValueError(
            f"Unknown option(s) {unknown_options}. Choose from: {', '.join(sorted(ALPHA_OPTIONS))}"
        )

    values = np.asarray(experiment.assay(assay_name), dtype=float)
    if values.size and np.nanmin(values) < 0:
        raise ValueError(f"Alpha diversity requires non-negative abundances in '{assay_name}'")

    tree, nodes = _tree_nodes(experiment, tree)
    overwritten = [n for n in names if n in experiment.sample_metadata.columns]
    if overwritten:
        logger.warning(f"Overwriting existing sample metadata columns: {overwritten}")

    columns = {}
    for idx, out in zip(indices, names):
        fn = ALPHA_INDICES[idx]
        if idx == "faith":
            columns[out] = fn(values, tree=tree, nodes=nodes, **options)
        else:
            columns[out] = fn(values, **options)
        logger.info(f"Estimated '{idx}' for {experiment.n_samples} samples -> column '{out}'")
    return experiment.with_sample_columns(columns)


def estimate_diversity(experiment: TreeExperiment, assay_name: str = "counts",
                       index: Union[str, Sequence[str]] = ("coverage", "fisher", "gini_simpson",
                                                           "inverse_simpson", "log_modulo_skewness",
                                                           "shannon"),
                       name: Optional[Union[str, Sequence[str]]] = None, **kwargs: Any) -> TreeExperiment:
    """Diversity indices (faith must be requested explicitly: it needs a tree)."""
    return estimate_alpha(experiment, assay_name, index, name, family="diversity", **kwargs)


def estimate_richness(experiment: TreeExperiment, assay_name: str = "counts",
                      index: Union[str, Sequence[str]] = ("ace", "chao1", "hill", "observed"),
                      name: Optional[Union[str, Sequence[str]]] = None, **kwargs: Any) -> TreeExperiment:
    return estimate_alpha(experiment, assay_name, index, name, family="richness", **kwargs)


def estimate_evenness(experiment: TreeExperiment, assay_name: str = "counts",
                      index: Union[str, Sequence[str]] = ("camargo", "pielou", "simpson_evenness",
                                                          "evar", "bulla"),
                      name: Optional[Union[str, Sequence[str]]] = None, **kwargs: Any) -> TreeExperiment:
    return estimate_alpha(experiment, assay_name, index, name, family="evenness", **kwargs)


def estimate_dominance(experiment: TreeExperiment, assay_name: str = "counts",
                       index: Union[str, Sequence[str]] = ("absolute", "dbp", "core_abundance", "gini",
                                                           "dmn", "relative", "simpson_lambda"),
                       name: Optional[Union[str, Sequence[str]]] = None, **kwargs: Any) -> TreeExperiment:
    return estimate_alpha(experiment, assay_name, index, name, family="dominance", **kwargs)


# ----------------------------------------------------------------------
# Beta diversity
# ----------------------------------------------------------------------

DISSIMILARITY_METHODS = ("bray", "jaccard", "euclidean", "aitchison", "unifrac", "weighted_unifrac")


def _node_abundance(values: np.ndarray, tree: PhyloTree, nodes: Sequence) -> tuple[list[str], np.ndarray]:
    """Abundance under every node (rows) per sample (columns); the root row carries root_length."""
    index = {n: i for i, n in enumerate(tree.nodes)}
    totals = np.zeros((len(index), values.shape[1]))
    for row, node in enumerate(nodes):
        if node is not None:
            totals[index[node]] += values[row]
    # children before parents
    for node in nx.dfs_postorder_nodes(tree.graph, tree.root):
        parent = tree.parent(node)
        if parent is not None:
            totals[index[parent]] += totals[index[node]]
    branch = list(tree.nodes)
    return branch, totals


def _unifrac(values: np.ndarray, tree: PhyloTree, nodes: Sequence, weighted: bool) -> np.ndarray:
    linked = np.array([n is not None for n in nodes], dtype=bool)
    if not linked.all():
        warnings.warn(
            f"UniFrac: {int((~linked).sum())} features are not linked to the tree and are ignored",
            UserWarning
        )
    branch_nodes, abund = _node_abundance(values, tree, nodes)
    lengths = np.array([tree.branch_length(n) for n in branch_nodes])
    n = values.shape[1]
    dist = np.zeros((n, n))

    if weighted:
        sample_totals = values[linked].sum(axis=0)
        with np.errstate(divide="ignore", invalid="ignore"):
            node_props = abund / sample_totals
            feature_props = values[linked] / sample_totals
        # root-to-tip distance of each linked feature
        depth = np.array([tree.phylogenetic_diversity([node]) for node in np.asarray(nodes, dtype=object)[linked]])
        for a in range(n):
            for b in range(a + 1, n):
                num = np.sum(lengths * np.abs(node_props[:, a] - node_props[:, b]))
                denom = np.sum(depth * (feature_props[:, a] + feature_props[:, b]))
                dist[a, b] = dist[b, a] = num / denom if denom > 0 else np.nan
        return dist

    present = abund > 0
    for a in range(n):
        for b in range(a + 1, n):
            total_len = np.sum(lengths[present[:, a] | present[:, b]])
            unique_len = np.sum(lengths[present[:, a] ^ present[:, b]])
            dist[a, b] = dist[b, a] = unique_len / total_len if total_len > 0 else np.nan
    return dist


def compute_dissimilarity(
    experiment: TreeExperiment,
    assay_name: str = "counts",
    method: str = "bray",
    by: str = "samples",
    pseudocount: float = 0.0,
    tree: Optional[PhyloTree] = None,
) -> pd.DataFrame:
    """
    Pairwise dissimilarity between samples (or features).

    Args:
        experiment: Input experiment
        assay_name: Assay to compare
        method: bray, jaccard (presence/absence), euclidean, aitchison
            (euclidean on CLR; needs pseudocount with zeros), unifrac,
            weighted_unifrac (normalised)
        by: "samples" or "features"
        pseudocount: Added before the CLR for aitchison; the CLR is always
            taken within samples, also when comparing features
        tree: Tree for UniFrac (default: experiment.row_tree)

    Returns:
        Square DataFrame labelled by sample (or feature) ids
    """
    if method not in DISSIMILARITY_METHODS:
        raise ValueError(
            f"Unknown dissimilarity method '{method}'. Choose from: {', '.join(DISSIMILARITY_METHODS)}"
        )
    if by not in ("samples", "features"):
        raise ValueError(f"by must be 'samples' or 'features', got {by!r}")

    values = np.asarray(experiment.assay(assay_name), dtype=float)
    labels = experiment.sample_ids if by == "samples" else experiment.feature_ids

    if method in ("unifrac", "weighted_unifrac"):
        if by != "samples":
            raise ValueError("UniFrac is defined between samples only")
        tree, nodes = _tree_nodes(experiment, tree)
        if tree is None:
            raise ValueError(f"'{method}' requires a phylogenetic tree (row_tree or tree=...)")
        dist = _unifrac(values, tree, nodes, weighted=method == "weighted_unifrac")
        return pd.DataFrame(dist, index=labels, columns=labels)

    observations = values.T if by == "samples" else values
    if len(labels) < 2:
        return pd.DataFrame(np.zeros((len(labels), len(labels))), index=labels, columns=labels)

    if method == "bray":
        if np.nanmin(observations) < 0:
            raise ValueError("Bray-Curtis requires non-negative abundances")
        dist = pdist(observations, metric="braycurtis")
    elif method == "jaccard":
        dist = pdist(observations > 0, metric="jaccard")
    elif method == "euclidean":
        dist = pdist(observations, metric="euclidean")
    else:
        shifted = values + pseudocount
        if np.any(shifted <= 0):
            raise ValueError(
                "Aitchison distance requires strictly positive values; use a pseudocount"
            )
        # CLR within each sample (column), whichever axis is compared
        logs = np.log(shifted)
        clr = logs - logs.mean(axis=0, keepdims=True)
        dist = pdist(clr.T if by == "samples" else clr, metric="euclidean")
    return pd.DataFrame(squareform(dist), index=labels, columns=labels)


def run_mds(
    experiment: TreeExperiment,
    assay_name: str = "counts",
    method: str = "bray",
    ncomponents: int = 2,
    name: str = "MDS",
    **kwargs: Any,
) -> TreeExperiment:
    """
    Classical multidimensional scaling (PCoA) of a sample dissimilarity.

    Stores coordinates as reduced dimension `name` (columns <name>1, <name>2,
    ...) and the relative eigenvalues of the kept axes in
    metadata["<name>_eig"].
    """
    if ncomponents < 1:
        raise ValueError(f"ncomponents must be >= 1, got {ncomponents}")
    dist = compute_dissimilarity(experiment, assay_name, method, by="samples", **kwargs).to_numpy()
    if np.isnan(dist).any():
        raise ValueError("Dissimilarity matrix contains NaN (e.g. empty samples); cannot ordinate")
    n = dist.shape[0]
    centering = np.eye(n) - np.ones((n, n)) / n
    gram = -0.5 * centering @ (dist ** 2) @ centering
    eigvals, eigvecs = np.linalg.eigh(gram)
    order = np.argsort(eigvals)[::-1]
    eigvals, eigvecs = eigvals[order], eigvecs[:, order]

    positive = eigvals > 1e-10
    k = min(ncomponents, int(positive.sum()))
    if k < ncomponents:
        logger.warning(f"Only {k} positive eigenvalues; returning {k} of {ncomponents} components")
    coords = eigvecs[:, :k] * np.sqrt(eigvals[:k])
    relative = (eigvals[:k] / eigvals[positive].sum()).tolist() if positive.any() else []

    frame = pd.DataFrame(coords, index=experiment.sample_ids,
                         columns=[f"{name}{i + 1}" for i in range(k)])
    logger.info(f"PCoA ({method}) on {n} samples: explained {sum(relative):.1%} with {k} axes")
    return experiment.with_reduced_dim(name, frame).with_metadata(**{f"{name}_eig": relative})
