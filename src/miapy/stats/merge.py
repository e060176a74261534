"""
Merging experiments that were sequenced or processed separately.

Rows are matched on shared feature identifiers, and columns are
concatenated. This is the step that joins e.g. two sequencing runs of the
same study into one table.

Join disciplines:
    full:  union of features (missing cells filled with missing_value)
    inner: features present in every experiment
    left:  features of the first experiment
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import pandas as pd

from miapy.core.experiment import TreeExperiment

logger = logging.getLogger(__name__)

__all__ = ['merge_experiments', 'JOIN_METHODS']

JOIN_METHODS = ("full", "inner", "left")


def _merged_feature_ids(experiments: Sequence[TreeExperiment], join: str) -> pd.Index:
    if join == "left":
        return experiments[0].feature_ids
    if join == "inner":
        common = set(experiments[0].feature_ids)
        for exp in experiments[1:]:
            common &= set(exp.feature_ids)
        return experiments[0].feature_ids[experiments[0].feature_ids.isin(common)]
    ids: list = []
    seen: set = set()
    for exp in experiments:
        for fid in exp.feature_ids:
            if fid not in seen:
                seen.add(fid)
                ids.append(fid)
    return pd.Index(ids, dtype=experiments[0].feature_ids.dtype if len(ids) else object)


def merge_experiments(
    experiments: Sequence[TreeExperiment],
    join: str = "full",
    missing_value: float = 0.0,
) -> TreeExperiment:
    """
    Merge experiments by feature id, concatenating samples.

    Args:
        experiments: Experiments to merge (order matters for "left" and for
            which row annotations win)
        join: "full", "inner" or "left"
        missing_value: Fill for features absent from an experiment

    Returns:
        One experiment with the merged features and all samples. Only assays
        present in every input are kept. Row metadata is combined first-wins,
        sample metadata is the union of columns. The first experiment's tree
        is kept with every link that resolves in it. Alternative experiments
        and reduced dimensions are dropped.

    Raises:
        ValueError: No experiments, unknown join, or duplicate sample ids
    """
    experiments = list(experiments)
    if not experiments:
        raise ValueError("merge_experiments requires at least one experiment")
    if join not in JOIN_METHODS:
        raise ValueError(f"Unknown join '{join}'. Choose from: {', '.join(JOIN_METHODS)}")
    for exp in experiments:
        if not isinstance(exp, TreeExperiment):
            raise TypeError(f"experiments must be TreeExperiment, got {type(exp)}")

    sample_ids = pd.Index(np.concatenate([e.sample_ids.to_numpy() for e in experiments]))
    if sample_ids.has_duplicates:
        dupes = sample_ids[sample_ids.duplicated()].unique().tolist()[:5]
        raise ValueError(f"Cannot merge experiments with overlapping sample ids: {dupes}")

    feature_ids = _merged_feature_ids(experiments, join)

    common_assays = [n for n in experiments[0].assay_names
                     if all(n in e.assays for e in experiments[1:])]
    dropped = sorted({n for e in experiments for n in e.assay_names}.difference(common_assays))
    if dropped:
        logger.warning(f"Dropping assays not present in every experiment: {dropped}")

    assays = {}
    for name in common_assays:
        blocks = [
            e.assay_frame(name).reindex(feature_ids).to_numpy(dtype=float)
            for e in experiments
        ]
        merged = np.hstack(blocks) if blocks else np.empty((len(feature_ids), 0))
        # cells absent before reindexing are NaN; genuine NaNs stay NaN
        present = np.hstack([
            np.broadcast_to(feature_ids.isin(e.feature_ids)[:, None], (len(feature_ids), e.n_samples))
            for e in experiments
        ])
        merged[~present] = missing_value
        assays[name] = merged

    row_metadata = pd.DataFrame(index=feature_ids)
    for exp in experiments:
        row_metadata = row_metadata.combine_first(exp.row_metadata.reindex(feature_ids))
    # combine_first sorts columns; restore first-seen order
    columns: list = []
    for exp in experiments:
        columns.extend(c for c in exp.row_metadata.columns if c not in columns)
    row_metadata = row_metadata.reindex(index=feature_ids, columns=columns)

    sample_metadata = pd.concat([e.sample_metadata for e in experiments], axis=0, sort=False)
    sample_metadata.index = sample_ids

    first = experiments[0]
    row_tree, row_links = None, None
    if first.row_tree is not None:
        row_tree = first.row_tree
        links = pd.Series(None, index=feature_ids, dtype=object)
        for exp in reversed(experiments):
            if exp.row_links is None:
                continue
            candidates = exp.row_links.reindex(feature_ids)
            resolvable = candidates.map(lambda n: n is not None and not pd.isna(n) and n in row_tree)
            links[resolvable.to_numpy()] = candidates[resolvable.to_numpy()]
        row_links = links

    if any(e.alt_experiment_names for e in experiments):
        logger.warning("Alternative experiments are not merged and were dropped")
    if any(e.reduced_dim_names for e in experiments):
        logger.warning("Reduced dimensions are not merged and were dropped")

    logger.info(
        f"Merged {len(experiments)} experiments ({join} join): "
        f"{len(feature_ids)} features × {len(sample_ids)} samples"
    )
    return TreeExperiment(
        assays=assays,
        feature_ids=feature_ids,
        sample_ids=sample_ids,
        row_metadata=row_metadata,
        sample_metadata=sample_metadata,
        row_tree=row_tree,
        row_links=row_links,
        metadata={"merged_from": len(experiments), "join": join},
    )
