"""
Core data structure for microbiome experiments.

TreeExperiment links numeric assays (counts, relative abundances, transformed
values) with feature annotations (taxonomy), sample annotations, an optional
phylogenetic tree over the features, and secondary experiments that share the
sample axis.

Biological Context:
    Microbiome profiling produces abundance tables:
    - Rows = features (OTUs, ASVs, taxa, functional genes)
    - Columns = samples (specimens, time points, subjects)
    - Values = counts or derived abundances

    Unlike generic dataframes, a microbiome experiment requires:
    - Several equally shaped assays (raw counts next to transformed values)
    - Taxonomy tables kept aligned with the rows through every subset
    - A tree linked to the rows for phylogenetic metrics
    - Other measurements on the same samples (e.g. metabolites, or the same
      counts agglomerated to a coarser rank) kept in column lock-step

Engineering Design:
    - Immutable: Operations return new instances (functional style)
    - Type-safe: NumPy arrays for assays, Pandas for annotations
    - Validated: Constructor checks every shape and index invariant
    - Copy-on-subset: subsetting realigns every linked table at once

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from miapy.core.experiment import TreeExperiment
    >>>
    >>> counts = np.array([[10, 0], [3, 7], [0, 12]])
    >>> exp = TreeExperiment(
    ...     assays={"counts": counts},
    ...     feature_ids=pd.Index(["OTU1", "OTU2", "OTU3"]),
    ...     sample_ids=pd.Index(["S1", "S2"]),
    ...     sample_metadata=pd.DataFrame({"group": ["A", "B"]}, index=["S1", "S2"]),
    ... )
    >>> b_samples = exp.select_samples(lambda meta: meta["group"] == "B")
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Union

import numpy as np
import pandas as pd

from miapy.core.tree import PhyloTree

__all__ = ['TreeExperiment', 'Selector']

Selector = Union[
    np.ndarray, pd.Series, pd.Index, list, slice, Callable[[pd.DataFrame], Any], None
]


def _check_index(ids: pd.Index, label: str) -> None:
    if not isinstance(ids, pd.Index):
        raise TypeError(f"{label} must be pd.Index, got {type(ids)}")
    if ids.has_duplicates:
        dupes = ids[ids.duplicated()].unique().tolist()[:5]
        raise ValueError(f"{label} must be unique, found duplicates: {dupes}")


def _resolve_selector(selector: Selector, ids: pd.Index, table: pd.DataFrame, axis: str) -> np.ndarray:
    """Translate any supported selector into integer positions along one axis."""
    n = len(ids)
    if selector is None:
        return np.arange(n)
    if callable(selector) and not isinstance(selector, (pd.Series, pd.Index)):
        selector = selector(table)

    if isinstance(selector, slice):
        return np.arange(n)[selector]

    # Series: use values and ignore index
    if isinstance(selector, (pd.Series, pd.Index)):
        selector = selector.to_numpy()

    arr = np.asarray(selector)
    if arr.ndim != 1:
        raise ValueError(f"{axis} selector must be 1-dimensional, got shape {arr.shape}")

    if arr.dtype == bool:
        if len(arr) != n:
            raise ValueError(f"{axis} mask length ({len(arr)}) must match n_{axis} ({n})")
        return np.flatnonzero(arr)

    if arr.size == 0:
        return np.array([], dtype=int)

    if np.issubdtype(arr.dtype, np.integer) and not np.issubdtype(ids.dtype, np.integer):
        if arr.min() < -n or arr.max() >= n:
            raise IndexError(f"{axis} position out of range for n_{axis}={n}")
        return np.where(arr < 0, arr + n, arr)

    positions = ids.get_indexer(arr)
    if (positions < 0).any():
        missing = [label for label, p in zip(arr, positions) if p < 0][:5]
        raise KeyError(f"Unknown {axis} labels: {missing}")
    return positions


class TreeExperiment:
    """
    Immutable container of linked tables describing one microbiome experiment.

    Attributes:
        assays: Named numeric matrices (features × samples), all the same shape
        feature_ids: Row identifiers (taxa, OTUs, ASVs)
        sample_ids: Column identifiers (specimens)
        row_metadata: Feature annotations, e.g. taxonomy ranks
        sample_metadata: Sample annotations; diversity estimates land here
        row_tree: Optional PhyloTree over the features
        row_links: Feature -> tree node name (missing = not linked)
        alt_experiments: Named experiments sharing sample_ids, own rows
        reduced_dims: Named per-sample coordinates (ordinations)
        metadata: Free-form dictionary (provenance, eigenvalues, ...)

    Shape Invariants:
        - every assay.shape == (len(feature_ids), len(sample_ids))
        - row_metadata.index equals feature_ids
        - sample_metadata.index equals sample_ids
        - row_links.index equals feature_ids; values are tree nodes or NA
        - every alt experiment has sample_ids equal to ours, in order
        - every reduced dim is indexed by sample_ids
    """

    def __init__(
        self,
        assays: Mapping[str, np.ndarray],
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        row_metadata: Optional[pd.DataFrame] = None,
        sample_metadata: Optional[pd.DataFrame] = None,
        row_tree: Optional[PhyloTree] = None,
        row_links: Optional[pd.Series] = None,
        alt_experiments: Optional[Mapping[str, TreeExperiment]] = None,
        reduced_dims: Optional[Mapping[str, pd.DataFrame]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ):
        """
        Initialize TreeExperiment with validation.

        Raises:
            TypeError: If a component has the wrong type
            ValueError: If shapes are inconsistent or indices don't match
        """
        _check_index(feature_ids, "feature_ids")
        _check_index(sample_ids, "sample_ids")
        n_features, n_samples = len(feature_ids), len(sample_ids)

        if not isinstance(assays, Mapping):
            raise TypeError(f"assays must be a mapping of name -> np.ndarray, got {type(assays)}")
        checked: dict[str, np.ndarray] = {}
        for name, values in assays.items():
            if not isinstance(name, str):
                raise TypeError(f"assay names must be str, got {type(name)}")
            if not isinstance(values, np.ndarray):
                raise TypeError(f"assay '{name}' must be np.ndarray, got {type(values)}")
            if values.ndim != 2:
                raise ValueError(f"assay '{name}' must be 2D, got shape {values.shape}")
            if values.shape != (n_features, n_samples):
                raise ValueError(
                    f"assay '{name}' shape {values.shape} must match "
                    f"(n_features, n_samples) = {(n_features, n_samples)}"
                )
            checked[name] = values

        if row_metadata is None:
            row_metadata = pd.DataFrame(index=feature_ids)
        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)
        if not isinstance(row_metadata, pd.DataFrame):
            raise TypeError(f"row_metadata must be pd.DataFrame, got {type(row_metadata)}")
        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")
        if not row_metadata.index.equals(feature_ids):
            raise ValueError(
                "row_metadata.index must match feature_ids exactly. "
                f"Got {len(row_metadata.index)} metadata rows for {n_features} features."
            )
        if not sample_metadata.index.equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {n_samples} samples."
            )

        if row_tree is not None and not isinstance(row_tree, PhyloTree):
            raise TypeError(f"row_tree must be PhyloTree, got {type(row_tree)}")
        if row_links is not None:
            if row_tree is None:
                raise ValueError("row_links given without a row_tree")
            if not isinstance(row_links, pd.Series):
                raise TypeError(f"row_links must be pd.Series, got {type(row_links)}")
            if not row_links.index.equals(feature_ids):
                raise ValueError("row_links.index must match feature_ids exactly")
            linked = row_links.dropna()
            unknown = [node for node in linked if node not in row_tree]
            if unknown:
                raise ValueError(f"row_links reference nodes not in row_tree: {unknown[:5]}")
            row_links = row_links.astype(object).where(row_links.notna(), None)
        elif row_tree is not None:
            # link features to same-named tree nodes
            row_links = pd.Series(
                [f if f in row_tree else None for f in feature_ids.astype(str)],
                index=feature_ids, dtype=object,
            )

        alts: dict[str, TreeExperiment] = {}
        for name, alt in (alt_experiments or {}).items():
            if not isinstance(alt, TreeExperiment):
                raise TypeError(f"alt experiment '{name}' must be TreeExperiment, got {type(alt)}")
            if not alt.sample_ids.equals(sample_ids):
                raise ValueError(
                    f"alt experiment '{name}' sample_ids must match the main experiment "
                    f"({alt.n_samples} vs {n_samples} samples)"
                )
            alts[name] = alt

        dims: dict[str, pd.DataFrame] = {}
        for name, coords in (reduced_dims or {}).items():
            if not isinstance(coords, pd.DataFrame):
                raise TypeError(f"reduced dim '{name}' must be pd.DataFrame, got {type(coords)}")
            if not coords.index.equals(sample_ids):
                raise ValueError(f"reduced dim '{name}' index must match sample_ids")
            dims[name] = coords

        # Store as private attributes (immutability by convention)
        self._assays = checked
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._row_metadata = row_metadata
        self._sample_metadata = sample_metadata
        self._row_tree = row_tree
        self._row_links = row_links
        self._alt_experiments = alts
        self._reduced_dims = dims
        self._metadata = dict(metadata or {})

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def assays(self) -> Mapping[str, np.ndarray]:
        """Read-only view of the named assays."""
        return MappingProxyType(self._assays)

    @property
    def assay_names(self) -> list[str]:
        return list(self._assays)

    @property
    def feature_ids(self) -> pd.Index:
        """Row identifiers (taxa, OTUs, ASVs)."""
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Column identifiers (specimens)."""
        return self._sample_ids

    @property
    def row_metadata(self) -> pd.DataFrame:
        return self._row_metadata

    @property
    def sample_metadata(self) -> pd.DataFrame:
        return self._sample_metadata

    @property
    def row_tree(self) -> Optional[PhyloTree]:
        return self._row_tree

    @property
    def row_links(self) -> Optional[pd.Series]:
        """Feature -> tree node name, None for unlinked features."""
        return self._row_links

    @property
    def alt_experiment_names(self) -> list[str]:
        return list(self._alt_experiments)

    @property
    def reduced_dim_names(self) -> list[str]:
        return list(self._reduced_dims)

    @property
    def metadata(self) -> dict[str, Any]:
        return self._metadata

    @property
    def shape(self) -> tuple[int, int]:
        """Container dimensions (n_features, n_samples)."""
        return (len(self._feature_ids), len(self._sample_ids))

    @property
    def n_features(self) -> int:
        return len(self._feature_ids)

    @property
    def n_samples(self) -> int:
        return len(self._sample_ids)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def assay(self, name: Optional[str] = None) -> np.ndarray:
        """
        Return an assay matrix by name (first assay when name is None).

        Raises:
            KeyError: If the assay does not exist
        """
        if name is None:
            if not self._assays:
                raise KeyError("Experiment has no assays")
            return next(iter(self._assays.values()))
        try:
            return self._assays[name]
        except KeyError:
            raise KeyError(
                f"Assay '{name}' not found. Available assays: {self.assay_names}"
            ) from None

    def assay_frame(self, name: Optional[str] = None) -> pd.DataFrame:
        """Assay as a DataFrame labelled with feature and sample ids."""
        return pd.DataFrame(self.assay(name), index=self._feature_ids, columns=self._sample_ids)

    def alt_experiment(self, name: str) -> TreeExperiment:
        try:
            return self._alt_experiments[name]
        except KeyError:
            raise KeyError(
                f"Alternative experiment '{name}' not found. "
                f"Available: {self.alt_experiment_names}"
            ) from None

    def reduced_dim(self, name: str) -> pd.DataFrame:
        try:
            return self._reduced_dims[name]
        except KeyError:
            raise KeyError(
                f"Reduced dimension '{name}' not found. Available: {self.reduced_dim_names}"
            ) from None

    # ------------------------------------------------------------------
    # Functional updates
    # ------------------------------------------------------------------

    def _replace(self, **changes: Any) -> TreeExperiment:
        fields = dict(
            assays=self._assays,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            row_metadata=self._row_metadata,
            sample_metadata=self._sample_metadata,
            row_tree=self._row_tree,
            row_links=self._row_links,
            alt_experiments=self._alt_experiments,
            reduced_dims=self._reduced_dims,
            metadata=self._metadata,
        )
        fields.update(changes)
        return TreeExperiment(**fields)

    def with_assay(self, name: str, values: np.ndarray | pd.DataFrame) -> TreeExperiment:
        """Return a new experiment with assay `name` added (or replaced)."""
        if isinstance(values, pd.DataFrame):
            values = values.reindex(index=self._feature_ids, columns=self._sample_ids).to_numpy()
        assays = dict(self._assays)
        assays[name] = values
        return self._replace(assays=assays)

    def without_assay(self, name: str) -> TreeExperiment:
        self.assay(name)
        assays = {k: v for k, v in self._assays.items() if k != name}
        return self._replace(assays=assays)

    def with_row_metadata(self, row_metadata: pd.DataFrame) -> TreeExperiment:
        return self._replace(row_metadata=row_metadata)

    def with_sample_metadata(self, sample_metadata: pd.DataFrame) -> TreeExperiment:
        return self._replace(sample_metadata=sample_metadata)

    def with_row_columns(self, columns: Mapping[str, Any]) -> TreeExperiment:
        """Add or replace row metadata columns (array-likes aligned with features)."""
        row_metadata = self._row_metadata.copy()
        for name, values in columns.items():
            row_metadata[name] = values.reindex(self._feature_ids).to_numpy() \
                if isinstance(values, pd.Series) else values
        return self._replace(row_metadata=row_metadata)

    def with_sample_columns(self, columns: Mapping[str, Any]) -> TreeExperiment:
        """Add or replace sample metadata columns (array-likes aligned with samples)."""
        sample_metadata = self._sample_metadata.copy()
        for name, values in columns.items():
            sample_metadata[name] = values.reindex(self._sample_ids).to_numpy() \
                if isinstance(values, pd.Series) else values
        return self._replace(sample_metadata=sample_metadata)

    def with_row_tree(self, tree: Optional[PhyloTree], links: Optional[pd.Series] = None) -> TreeExperiment:
        """Attach (or with tree=None, remove) the feature tree."""
        return self._replace(row_tree=tree, row_links=links if tree is not None else None)

    def with_alt_experiment(self, name: str, experiment: TreeExperiment) -> TreeExperiment:
        alts = dict(self._alt_experiments)
        alts[name] = experiment
        return self._replace(alt_experiments=alts)

    def without_alt_experiment(self, name: str) -> TreeExperiment:
        self.alt_experiment(name)
        alts = {k: v for k, v in self._alt_experiments.items() if k != name}
        return self._replace(alt_experiments=alts)

    def with_reduced_dim(self, name: str, coords: pd.DataFrame | np.ndarray) -> TreeExperiment:
        if isinstance(coords, np.ndarray):
            coords = pd.DataFrame(
                coords, index=self._sample_ids,
                columns=[f"{name}{i + 1}" for i in range(coords.shape[1])],
            )
        dims = dict(self._reduced_dims)
        dims[name] = coords
        return self._replace(reduced_dims=dims)

    def with_metadata(self, **entries: Any) -> TreeExperiment:
        metadata = dict(self._metadata)
        metadata.update(entries)
        return self._replace(metadata=metadata)

    # ------------------------------------------------------------------
    # Subsetting
    # ------------------------------------------------------------------

    def select_features(self, selector: Selector, prune_tree: bool = False) -> TreeExperiment:
        """
        Subset experiment by features (rows).

        Assays, row metadata and tree links are filtered together; sample-
        indexed tables and alternative experiments are unchanged.

        Args:
            selector: Boolean mask, integer positions, feature labels, slice,
                or callable receiving row_metadata and returning a mask
            prune_tree: Prune row_tree to the nodes still linked

        Examples:
            >>> firmicutes = exp.select_features(lambda rd: rd["phylum"] == "Firmicutes")
        """
        return self.subset(rows=selector, prune_tree=prune_tree)

    def select_samples(self, selector: Selector) -> TreeExperiment:
        """
        Subset experiment by samples (columns).

        Assays, sample metadata, reduced dimensions and every alternative
        experiment are filtered together, preserving column parity.
        """
        return self.subset(cols=selector)

    def subset(self, rows: Selector = None, cols: Selector = None, prune_tree: bool = False) -> TreeExperiment:
        """Subset rows and/or columns, realigning every linked table."""
        row_pos = _resolve_selector(rows, self._feature_ids, self._row_metadata, "features")
        col_pos = _resolve_selector(cols, self._sample_ids, self._sample_metadata, "samples")

        feature_ids = self._feature_ids[row_pos]
        sample_ids = self._sample_ids[col_pos]

        assays = {name: values[np.ix_(row_pos, col_pos)] for name, values in self._assays.items()}

        row_tree = self._row_tree
        row_links = None
        if self._row_links is not None:
            row_links = self._row_links.iloc[row_pos]
            if prune_tree:
                kept = [n for n in row_links.dropna().unique()]
                if kept:
                    row_tree = row_tree.prune(kept)
                else:
                    row_tree, row_links = None, None

        if cols is None:
            alts = self._alt_experiments
            dims = self._reduced_dims
        else:
            alts = {name: alt.subset(cols=list(sample_ids)) for name, alt in self._alt_experiments.items()}
            dims = {name: coords.iloc[col_pos] for name, coords in self._reduced_dims.items()}

        return TreeExperiment(
            assays=assays,
            feature_ids=feature_ids,
            sample_ids=sample_ids,
            row_metadata=self._row_metadata.iloc[row_pos],
            sample_metadata=self._sample_metadata.iloc[col_pos],
            row_tree=row_tree,
            row_links=row_links,
            alt_experiments=alts,
            reduced_dims=dims,
            metadata=self._metadata,
        )

    def __getitem__(self, key: Any) -> TreeExperiment:
        if isinstance(key, tuple):
            if len(key) != 2:
                raise IndexError("TreeExperiment indexing takes at most (rows, cols)")
            rows, cols = key
        else:
            rows, cols = key, None
        if isinstance(rows, slice) and rows == slice(None):
            rows = None
        if isinstance(cols, slice) and cols == slice(None):
            cols = None
        return self.subset(rows=rows, cols=cols)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def to_long(
        self,
        assay_name: Optional[str] = None,
        add_row_metadata: bool | list[str] = False,
        add_sample_metadata: bool | list[str] = False,
    ) -> pd.DataFrame:
        """
        Melt an assay into long format: one row per (feature, sample) pair.

        Args:
            assay_name: Assay to melt (first assay when None)
            add_row_metadata: True for all row metadata columns, or a list
            add_sample_metadata: True for all sample metadata columns, or a list

        Returns:
            DataFrame with columns feature, sample, <assay_name>, [annotations]
        """
        name = assay_name or (self.assay_names[0] if self._assays else None)
        frame = self.assay_frame(name)
        frame.index.name = "feature"
        frame.columns.name = "sample"
        long = frame.reset_index().melt(id_vars="feature", var_name="sample", value_name=name)

        if add_row_metadata is not False:
            cols = list(self._row_metadata.columns) if add_row_metadata is True else list(add_row_metadata)
            long = long.merge(self._row_metadata[cols], left_on="feature", right_index=True, how="left")
        if add_sample_metadata is not False:
            cols = list(self._sample_metadata.columns) if add_sample_metadata is True \
                else list(add_sample_metadata)
            clashes = set(cols).intersection(long.columns)
            meta = self._sample_metadata[cols].rename(columns={c: f"{c}_sample" for c in clashes})
            long = long.merge(meta, left_on="sample", right_index=True, how="left")
        return long

    def copy(self, deep: bool = True) -> TreeExperiment:
        """
        Create a copy of this experiment.

        Args:
            deep: If True, copy all arrays and tables. If False, share them
        """
        if not deep:
            return self._replace()
        return TreeExperiment(
            assays={k: v.copy() for k, v in self._assays.items()},
            feature_ids=self._feature_ids.copy(),
            sample_ids=self._sample_ids.copy(),
            row_metadata=self._row_metadata.copy(),
            sample_metadata=self._sample_metadata.copy(),
            row_tree=self._row_tree.copy() if self._row_tree is not None else None,
            row_links=self._row_links.copy() if self._row_links is not None else None,
            alt_experiments={k: v.copy() for k, v in self._alt_experiments.items()},
            reduced_dims={k: v.copy() for k, v in self._reduced_dims.items()},
            metadata=dict(self._metadata),
        )

    def __repr__(self) -> str:
        """String representation for debugging."""
        def span(ids: pd.Index) -> str:
            if len(ids) == 0:
                return "(none)"
            return f"{ids[0]}...{ids[-1]}" if len(ids) > 1 else f"{ids[0]}"

        tree = repr(self._row_tree) if self._row_tree is not None else "None"
        return (
            f"TreeExperiment({self.n_features} features × {self.n_samples} samples)\n"
            f"  Assays: {self.assay_names}\n"
            f"  Features: {span(self._feature_ids)}\n"
            f"  Samples: {span(self._sample_ids)}\n"
            f"  Row metadata columns: {list(self._row_metadata.columns)}\n"
            f"  Sample metadata columns: {list(self._sample_metadata.columns)}\n"
            f"  Row tree: {tree}\n"
            f"  Alt experiments: {self.alt_experiment_names}\n"
            f"  Reduced dims: {self.reduced_dim_names}"
        )

    def __str__(self) -> str:
        return self.__repr__()
