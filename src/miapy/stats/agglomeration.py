"""
Agglomeration and splitting of experiments along either axis.

Agglomeration merges rows (or columns) that share a grouping key into one
aggregated row (or column). The canonical case is summing OTU counts up to a
taxonomic rank; the same machinery groups samples by subject or time point.

Taxonomic grouping:
    Features are grouped by the full taxonomic path down to the target rank,
    so that e.g. genus "Clostridium" under two different families stays two
    separate features. Features with no label at the target rank are grouped
    under their deepest known ancestor (or dropped with na_rm=True).

Examples:
    >>> from miapy.stats.agglomeration import agglomerate_by_rank, split_by
    >>> genus = agglomerate_by_rank(exp, "genus")
    >>> per_group = split_by(exp, "group", axis="samples")
    >>> sorted(per_group)
    ['control', 'treated']
"""

from __future__ import annotations

import logging
from typing import Callable, Hashable, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from miapy.core.experiment import TreeExperiment

logger = logging.getLogger(__name__)

__all__ = [
    'TAXONOMY_RANKS',
    'EMPTY_TAXONOMY_VALUES',
    'AGGREGATORS',
    'taxonomy_ranks',
    'taxonomy_labels',
    'agglomerate_by_rank',
    'agglomerate_by_variable',
    'split_by',
    'unsplit',
]

TAXONOMY_RANKS = ("domain", "kingdom", "phylum", "class", "order", "family", "genus", "species")

EMPTY_TAXONOMY_VALUES = ("", " ", "\t", "-", "_", "NA", "nan", "unknown", "Unknown", "unclassified")

AGGREGATORS: dict[str, Callable[[np.ndarray, int], np.ndarray]] = {
    "sum": lambda a, axis: np.nansum(a, axis=axis),
    "mean": lambda a, axis: np.nanmean(a, axis=axis),
    "median": lambda a, axis: np.nanmedian(a, axis=axis),
    "max": lambda a, axis: np.nanmax(a, axis=axis),
    "min": lambda a, axis: np.nanmin(a, axis=axis),
}

GroupKey = Union[str, pd.Series, np.ndarray, Sequence[Hashable]]


def taxonomy_ranks(experiment: TreeExperiment) -> list[str]:
    """Row metadata columns that are taxonomy ranks (case-insensitive), in rank order."""
    lower = {str(c).lower(): c for c in experiment.row_metadata.columns}
    return [lower[r] for r in TAXONOMY_RANKS if r in lower]


def _clean_taxonomy(frame: pd.DataFrame, empty_values: Sequence[str]) -> pd.DataFrame:
    """Normalise empty labels and 'g__'-only prefixes to NA."""
    cleaned = frame.astype(object).where(frame.notna(), None)
    for col in cleaned.columns:
        values = cleaned[col].map(lambda v: None if v is None else str(v).strip())
        values = values.map(
            lambda v: None if v is None or v in empty_values
            or (len(v) == 3 and v.endswith("__")) else v
        )
        cleaned[col] = values
    return cleaned


def _resolve_rank(experiment: TreeExperiment, rank: str) -> tuple[str, list[str]]:
    ranks = taxonomy_ranks(experiment)
    lookup = {str(r).lower(): r for r in ranks}
    if str(rank).lower() not in lookup:
        raise ValueError(
            f"Rank '{rank}' not found in row metadata. Available ranks: {ranks}"
        )
    column = lookup[str(rank).lower()]
    return column, ranks[:ranks.index(column) + 1]


def taxonomy_labels(
    experiment: TreeExperiment,
    rank: Optional[str] = None,
    empty_values: Sequence[str] = EMPTY_TAXONOMY_VALUES,
    make_unique: bool = True,
) -> pd.Series:
    """
    Human-readable label for every feature at a rank.

    The label is the value at `rank` when present; otherwise the deepest known
    ancestor prefixed by its rank ("Family:Lachnospiraceae"). Features with no
    taxonomy keep their id. Duplicate labels get "_1", "_2", ... suffixes.
    """
    ranks = taxonomy_ranks(experiment)
    if rank is not None:
        _, ranks = _resolve_rank(experiment, rank)
    if not ranks:
        return pd.Series(experiment.feature_ids.astype(str), index=experiment.feature_ids)

    tax = _clean_taxonomy(experiment.row_metadata[ranks], empty_values)
    target = ranks[-1]
    labels = []
    for feature, row in tax.iterrows():
        if not pd.isna(row[target]):
            labels.append(row[target])
            continue
        known = [(r, row[r]) for r in ranks if not pd.isna(row[r])]
        if known:
            r, value = known[-1]
            labels.append(f"{str(r).capitalize()}:{value}")
        else:
            labels.append(str(feature))

    labels = pd.Series(labels, index=experiment.feature_ids, dtype=object)
    if make_unique:
        labels = _make_unique(labels)
    return labels


def _make_unique(labels: pd.Series) -> pd.Series:
    out = labels.astype(object).copy()
    counts = labels.groupby(labels, sort=False).cumcount()
    repeat = (counts > 0).to_numpy()
    out[repeat] = [f"{label}_{n}" for label, n in zip(labels[repeat], counts[repeat])]
    return out


def _group_codes(keys: pd.Series) -> tuple[np.ndarray, list]:
    """Integer group codes in order of first appearance."""
    codes, uniques = pd.factorize(keys, sort=False)
    return codes, list(uniques)


def _aggregate(values: np.ndarray, codes: np.ndarray, n_groups: int, axis: int, fun: str) -> np.ndarray:
    agg = AGGREGATORS[fun]
    parts = []
    for g in range(n_groups):
        members = np.flatnonzero(codes == g)
        block = values[members, :] if axis == 0 else values[:, members]
        parts.append(agg(block.astype(float), axis))
    if axis == 0:
        return np.vstack(parts) if parts else np.empty((0, values.shape[1]))
    return np.column_stack(parts) if parts else np.empty((values.shape[0], 0))


def _first_per_group(table: pd.DataFrame, codes: np.ndarray, index: pd.Index) -> pd.DataFrame:
    first = pd.Series(codes).drop_duplicates().index.to_numpy()
    order = np.argsort(codes[first])
    out = table.iloc[first[order]].copy()
    out.index = index
    return out


def agglomerate_by_rank(
    experiment: TreeExperiment,
    rank: str,
    na_rm: bool = False,
    empty_values: Sequence[str] = EMPTY_TAXONOMY_VALUES,
    update_tree: bool = False,
    fun: str = "sum",
) -> TreeExperiment:
    """
    Merge features sharing a taxonomic path down to `rank`.

    Args:
        experiment: Experiment with taxonomy rank columns in row_metadata
        rank: Target rank (case-insensitive), e.g. "genus"
        na_rm: Drop features with no label at `rank` instead of grouping them
            under their deepest known ancestor
        empty_values: Labels treated as missing
        update_tree: Prune the row tree to one representative node per group
        fun: Aggregation for every assay ("sum", "mean", "median", "max", "min")

    Returns:
        New experiment with one row per taxonomic group. Ranks below `rank`
        are cleared; other row metadata columns take the group's first value.

    Raises:
        ValueError: Unknown rank or aggregation function
    """
    if fun not in AGGREGATORS:
        raise ValueError(f"Unknown aggregation '{fun}'. Choose from: {', '.join(AGGREGATORS)}")
    column, path_ranks = _resolve_rank(experiment, rank)

    tax = _clean_taxonomy(experiment.row_metadata[path_ranks], empty_values)
    work = experiment
    if na_rm:
        keep = tax[column].notna().to_numpy()
        n_dropped = int((~keep).sum())
        if n_dropped:
            logger.info(f"Dropping {n_dropped} features without a '{column}' label")
        work = experiment.select_features(keep)
        tax = tax[keep]

    keys = pd.Series(
        [";".join("" if pd.isna(v) else str(v) for v in row) for row in tax.itertuples(index=False)],
        index=tax.index, dtype=object,
    )
    codes, _ = _group_codes(keys)
    n_groups = int(codes.max()) + 1 if len(codes) else 0

    labels = taxonomy_labels(work, column, empty_values, make_unique=False)
    group_labels = _first_per_group(labels.to_frame("label"), codes,
                                    pd.RangeIndex(n_groups))["label"]
    new_ids = pd.Index(_make_unique(group_labels.reset_index(drop=True)).to_numpy(), dtype=object)

    assays = {name: _aggregate(values, codes, n_groups, 0, fun)
              for name, values in work.assays.items()}

    row_metadata = _first_per_group(work.row_metadata, codes, new_ids)
    all_ranks = taxonomy_ranks(work)
    cleared = all_ranks[all_ranks.index(column) + 1:]
    for r in cleared:
        row_metadata[r] = None
    # cleaned path labels replace raw values
    for r in path_ranks:
        row_metadata[r] = _first_per_group(tax, codes, new_ids)[r]

    row_tree, row_links = None, None
    if work.row_tree is not None:
        row_tree = work.row_tree
        links = work.row_links.reset_index(drop=True)
        rep = []
        for g in range(n_groups):
            members = links[codes == g].dropna()
            rep.append(members.iloc[0] if len(members) else None)
        row_links = pd.Series(rep, index=new_ids, dtype=object)
        if update_tree:
            kept = [n for n in row_links.dropna().unique()]
            if kept:
                row_tree = row_tree.prune(kept)
            else:
                row_tree, row_links = None, None

    logger.info(f"Agglomerated {work.n_features} features to {n_groups} at rank '{column}'")
    return TreeExperiment(
        assays=assays,
        feature_ids=new_ids,
        sample_ids=work.sample_ids,
        row_metadata=row_metadata,
        sample_metadata=work.sample_metadata,
        row_tree=row_tree,
        row_links=row_links,
        alt_experiments={n: work.alt_experiment(n) for n in work.alt_experiment_names},
        reduced_dims={n: work.reduced_dim(n) for n in work.reduced_dim_names},
        metadata={**work.metadata, "agglomerated_by_rank": column},
    )


def _group_keys(experiment: TreeExperiment, by: GroupKey, axis: str) -> pd.Series:
    if axis not in ("features", "samples"):
        raise ValueError(f"axis must be 'features' or 'samples', got {axis!r}")
    table = experiment.row_metadata if axis == "features" else experiment.sample_metadata
    ids = experiment.feature_ids if axis == "features" else experiment.sample_ids
    if isinstance(by, str):
        if by not in table.columns:
            raise KeyError(f"Column '{by}' not found in {axis} metadata: {list(table.columns)}")
        keys = table[by]
    elif isinstance(by, pd.Series) and set(ids).issubset(by.index):
        keys = by.reindex(ids)
    else:
        values = by.to_numpy() if isinstance(by, pd.Series) else list(by)
        if len(values) != len(ids):
            raise ValueError(f"Grouping length ({len(values)}) must match n_{axis} ({len(ids)})")
        keys = pd.Series(values, index=ids)
    keys = pd.Series(keys.to_numpy(), index=ids)
    if keys.isna().any():
        raise ValueError(f"Grouping has {int(keys.isna().sum())} missing values")
    return keys


def agglomerate_by_variable(
    experiment: TreeExperiment,
    by: GroupKey,
    axis: str = "features",
    fun: str = "sum",
) -> TreeExperiment:
    """
    Merge features or samples that share a grouping value.

    Args:
        experiment: Input experiment
        by: Metadata column name, or per-member labels (Series/array)
        axis: "features" (merge rows) or "samples" (merge columns)
        fun: Aggregation for every assay

    Returns:
        New experiment whose ids are the group values. Samples-axis grouping
        also aggregates every alternative experiment (column parity) and
        drops reduced dimensions, which cannot be aggregated.
    """
    if fun not in AGGREGATORS:
        raise ValueError(f"Unknown aggregation '{fun}'. Choose from: {', '.join(AGGREGATORS)}")
    keys = _group_keys(experiment, by, axis)
    codes, uniques = _group_codes(keys)
    n_groups = len(uniques)
    new_ids = pd.Index(uniques)

    if axis == "features":
        assays = {n: _aggregate(v, codes, n_groups, 0, fun) for n, v in experiment.assays.items()}
        row_links = None
        if experiment.row_tree is not None:
            links = experiment.row_links.reset_index(drop=True)
            row_links = pd.Series(
                [next(iter(links[codes == g].dropna()), None) for g in range(n_groups)],
                index=new_ids, dtype=object,
            )
        return TreeExperiment(
            assays=assays,
            feature_ids=new_ids,
            sample_ids=experiment.sample_ids,
            row_metadata=_first_per_group(experiment.row_metadata, codes, new_ids),
            sample_metadata=experiment.sample_metadata,
            row_tree=experiment.row_tree,
            row_links=row_links,
            alt_experiments={n: experiment.alt_experiment(n) for n in experiment.alt_experiment_names},
            reduced_dims={n: experiment.reduced_dim(n) for n in experiment.reduced_dim_names},
            metadata=experiment.metadata,
        )

    assays = {n: _aggregate(v, codes, n_groups, 1, fun) for n, v in experiment.assays.items()}
    alts = {
        n: agglomerate_by_variable(experiment.alt_experiment(n), keys.to_numpy(), axis="samples", fun=fun)
        for n in experiment.alt_experiment_names
    }
    if experiment.reduced_dim_names:
        logger.warning(
            f"Dropping reduced dimensions {experiment.reduced_dim_names}: "
            "they cannot be aggregated across samples"
        )
    return TreeExperiment(
        assays=assays,
        feature_ids=experiment.feature_ids,
        sample_ids=new_ids,
        row_metadata=experiment.row_metadata,
        sample_metadata=_first_per_group(experiment.sample_metadata, codes, new_ids),
        row_tree=experiment.row_tree,
        row_links=experiment.row_links,
        alt_experiments=alts,
        metadata=experiment.metadata,
    )


def split_by(
    experiment: TreeExperiment,
    by: GroupKey,
    axis: str = "features",
) -> dict[Hashable, TreeExperiment]:
    """
    Split an experiment into one experiment per group value.

    Returns:
        Dict group value -> experiment, in order of first appearance
    """
    keys = _group_keys(experiment, by, axis)
    parts = {}
    for value in pd.unique(keys.to_numpy()):
        mask = (keys == value).to_numpy()
        parts[value] = experiment.select_features(mask) if axis == "features" \
            else experiment.select_samples(mask)
    return parts


def unsplit(parts: Mapping[Hashable, TreeExperiment], axis: str = "features") -> TreeExperiment:
    """
    Concatenate experiments produced by split_by back into one.

    Only assays present in every part are kept. Row trees are kept when all
    parts share the same tree; alternative experiments are carried along the
    samples axis only.
    """
    if axis not in ("features", "samples"):
        raise ValueError(f"axis must be 'features' or 'samples', got {axis!r}")
    exps = list(parts.values())
    if not exps:
        raise ValueError("Nothing to unsplit")
    first = exps[0]
    names = [n for n in first.assay_names if all(n in e.assays for e in exps)]

    if axis == "features":
        for e in exps[1:]:
            if not e.sample_ids.equals(first.sample_ids):
                raise ValueError("All parts must share sample_ids to unsplit along features")
        feature_ids = pd.Index(np.concatenate([e.feature_ids.to_numpy() for e in exps]))
        assays = {n: np.vstack([e.assay(n) for e in exps]) for n in names}
        row_metadata = pd.concat([e.row_metadata for e in exps])
        row_metadata.index = feature_ids
        same_tree = all(e.row_tree is not None and e.row_tree is first.row_tree for e in exps)
        links = pd.Series(
            np.concatenate([e.row_links.to_numpy() for e in exps]), index=feature_ids, dtype=object
        ) if same_tree else None
        return TreeExperiment(
            assays=assays, feature_ids=feature_ids, sample_ids=first.sample_ids,
            row_metadata=row_metadata, sample_metadata=first.sample_metadata,
            row_tree=first.row_tree if same_tree else None, row_links=links,
            alt_experiments={n: first.alt_experiment(n) for n in first.alt_experiment_names},
            reduced_dims={n: first.reduced_dim(n) for n in first.reduced_dim_names},
            metadata=first.metadata,
        )

    for e in exps[1:]:
        if not e.feature_ids.equals(first.feature_ids):
            raise ValueError("All parts must share feature_ids to unsplit along samples")
    sample_ids = pd.Index(np.concatenate([e.sample_ids.to_numpy() for e in exps]))
    assays = {n: np.hstack([e.assay(n) for e in exps]) for n in names}
    sample_metadata = pd.concat([e.sample_metadata for e in exps])
    sample_metadata.index = sample_ids
    alt_names = [n for n in first.alt_experiment_names if all(n in e.alt_experiment_names for e in exps)]
    alts = {n: unsplit({i: e.alt_experiment(n) for i, e in enumerate(exps)}, axis="samples")
            for n in alt_names}
    return TreeExperiment(
        assays=assays, feature_ids=first.feature_ids, sample_ids=sample_ids,
        row_metadata=first.row_metadata, sample_metadata=sample_metadata,
        row_tree=first.row_tree, row_links=first.row_links,
        alt_experiments=alts, metadata=first.metadata,
    )
