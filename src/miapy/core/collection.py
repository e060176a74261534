"""
Collections of experiments measured on overlapping sets of subjects.

Multi-omic microbiome studies (16S + metagenomics + metabolomics) rarely have
identical samples in every experiment: a subject may lack a metabolomics run,
or have two sequencing replicates. ExperimentCollection keeps each experiment
with its own rows AND columns, and reconciles columns through an explicit
sample map instead of positional alignment.

Sample map:
    A long table with one row per experiment column:

        assay        primary     colname
        microbiota   subject_1   S1_16S
        metabolites  subject_1   M_001
        microbiota   subject_2   S2_16S

    "primary" ids index col_data, the subject-level annotation table.

Examples:
    >>> coll = ExperimentCollection({"microbiota": mb, "metabolites": mt}, sample_map=smap)
    >>> complete = coll.intersect_columns()       # subjects present everywhere
    >>> mb_with_subject_info = coll.with_col_data("microbiota")
"""

from __future__ import annotations

import logging
import warnings
from typing import Iterator, Mapping, Optional, Sequence

import pandas as pd

from miapy.core.experiment import TreeExperiment

logger = logging.getLogger(__name__)

__all__ = ['ExperimentCollection', 'SAMPLE_MAP_COLUMNS']

SAMPLE_MAP_COLUMNS = ("assay", "primary", "colname")


class ExperimentCollection:
    """
    Named experiments reconciled through a many-to-many sample map.

    Attributes:
        experiments: name -> TreeExperiment (independent rows and columns)
        sample_map: DataFrame with columns assay, primary, colname
        col_data: Subject annotations indexed by primary id

    Invariants:
        - every sample_map.assay is an experiment name
        - every sample_map.colname exists in that experiment's sample_ids
        - every sample_map.primary is in col_data.index
        - (assay, colname) pairs are unique
        - every experiment column appears in the sample map
    """

    def __init__(
        self,
        experiments: Mapping[str, TreeExperiment],
        sample_map: Optional[pd.DataFrame] = None,
        col_data: Optional[pd.DataFrame] = None,
    ):
        if not isinstance(experiments, Mapping):
            raise TypeError(f"experiments must be a mapping, got {type(experiments)}")
        for name, exp in experiments.items():
            if not isinstance(exp, TreeExperiment):
                raise TypeError(f"experiment '{name}' must be TreeExperiment, got {type(exp)}")

        if sample_map is None:
            sample_map = pd.DataFrame(
                [(name, sid, sid) for name, exp in experiments.items() for sid in exp.sample_ids],
                columns=list(SAMPLE_MAP_COLUMNS),
            )
        if not isinstance(sample_map, pd.DataFrame):
            raise TypeError(f"sample_map must be pd.DataFrame, got {type(sample_map)}")
        missing_cols = [c for c in SAMPLE_MAP_COLUMNS if c not in sample_map.columns]
        if missing_cols:
            raise ValueError(f"sample_map is missing columns: {missing_cols}")
        sample_map = sample_map[list(SAMPLE_MAP_COLUMNS)].reset_index(drop=True)

        unknown_assays = sorted(set(sample_map["assay"]).difference(experiments))
        if unknown_assays:
            raise ValueError(f"sample_map references unknown experiments: {unknown_assays}")

        if sample_map.duplicated(subset=["assay", "colname"]).any():
            dupes = sample_map[sample_map.duplicated(subset=["assay", "colname"])]
            raise ValueError(
                f"sample_map maps a column more than once: "
                f"{dupes[['assay', 'colname']].values.tolist()[:5]}"
            )

        checked: dict[str, TreeExperiment] = {}
        for name, exp in experiments.items():
            mapped = sample_map.loc[sample_map["assay"] == name, "colname"]
            absent = [c for c in mapped if c not in exp.sample_ids]
            if absent:
                raise ValueError(
                    f"sample_map references columns not in experiment '{name}': {absent[:5]}"
                )
            unmapped = ~exp.sample_ids.isin(mapped)
            if unmapped.any():
                warnings.warn(
                    f"Dropping {int(unmapped.sum())} columns of experiment '{name}' "
                    "that are not in the sample map.",
                    UserWarning
                )
                exp = exp.select_samples(~unmapped)
            checked[name] = exp

        if col_data is None:
            col_data = pd.DataFrame(index=pd.Index(sample_map["primary"].unique(), name="primary"))
        if not isinstance(col_data, pd.DataFrame):
            raise TypeError(f"col_data must be pd.DataFrame, got {type(col_data)}")
        if col_data.index.has_duplicates:
            raise ValueError("col_data index (primary ids) must be unique")
        unknown_primary = sorted(set(sample_map["primary"]).difference(col_data.index), key=str)
        if unknown_primary:
            raise ValueError(f"sample_map references primaries not in col_data: {unknown_primary[:5]}")

        self._experiments = checked
        self._sample_map = sample_map
        self._col_data = col_data

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def names(self) -> list[str]:
        return list(self._experiments)

    @property
    def sample_map(self) -> pd.DataFrame:
        return self._sample_map

    @property
    def col_data(self) -> pd.DataFrame:
        return self._col_data

    def __getitem__(self, name: str) -> TreeExperiment:
        try:
            return self._experiments[name]
        except KeyError:
            raise KeyError(f"Experiment '{name}' not found. Available: {self.names}") from None

    def __len__(self) -> int:
        return len(self._experiments)

    def __iter__(self) -> Iterator[str]:
        return iter(self._experiments)

    def primaries(self, name: str) -> pd.Series:
        """colname -> primary id for one experiment, in column order."""
        exp = self[name]
        smap = self._sample_map[self._sample_map["assay"] == name]
        return smap.set_index("colname")["primary"].reindex(exp.sample_ids)

    def replicated(self) -> dict[str, pd.Series]:
        """Per experiment: primaries measured by more than one column, with counts."""
        result = {}
        for name in self.names:
            counts = self.primaries(name).value_counts()
            result[name] = counts[counts > 1]
        return result

    # ------------------------------------------------------------------
    # Subsetting
    # ------------------------------------------------------------------

    def subset_by_primary(self, primaries: Sequence) -> ExperimentCollection:
        """Keep only the given subjects, in every experiment."""
        keep = set(primaries)
        unknown = keep.difference(self._col_data.index)
        if unknown:
            raise KeyError(f"Unknown primary ids: {sorted(unknown, key=str)[:5]}")

        smap = self._sample_map[self._sample_map["primary"].isin(keep)]
        experiments = {}
        for name, exp in self._experiments.items():
            cols = smap.loc[smap["assay"] == name, "colname"]
            experiments[name] = exp.select_samples(exp.sample_ids.isin(cols))
        col_data = self._col_data[self._col_data.index.isin(keep)]
        return ExperimentCollection(experiments, smap, col_data)

    def subset_by_experiment(self, names: Sequence[str]) -> ExperimentCollection:
        names = list(names)
        for name in names:
            self[name]
        smap = self._sample_map[self._sample_map["assay"].isin(names)]
        col_data = self._col_data[self._col_data.index.isin(smap["primary"])]
        return ExperimentCollection({n: self._experiments[n] for n in names}, smap, col_data)

    def intersect_columns(self) -> ExperimentCollection:
        """Complete cases: keep subjects measured in every experiment."""
        per_exp = [set(self._sample_map.loc[self._sample_map["assay"] == n, "primary"])
                   for n in self.names]
        common = set.intersection(*per_exp) if per_exp else set()
        logger.info(f"Complete cases: {len(common)}/{len(self._col_data)} subjects in all experiments")
        return self.subset_by_primary([p for p in self._col_data.index if p in common])

    def intersect_rows(self) -> ExperimentCollection:
        """Keep features present in every experiment."""
        if not self._experiments:
            return self
        ids = [exp.feature_ids for exp in self._experiments.values()]
        common = set(ids[0]).intersection(*ids[1:])
        experiments = {
            name: exp.select_features(exp.feature_ids.isin(common))
            for name, exp in self._experiments.items()
        }
        return ExperimentCollection(experiments, self._sample_map, self._col_data)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def with_col_data(self, name: str) -> TreeExperiment:
        """Experiment with subject annotations joined into its sample metadata."""
        exp = self[name]
        primary = self.primaries(name)
        subject = self._col_data.reindex(primary.to_numpy())
        subject.index = exp.sample_ids
        overlap = set(subject.columns).intersection(exp.sample_metadata.columns)
        subject = subject.drop(columns=list(overlap))
        joined = exp.sample_metadata.join(subject)
        if "primary" not in joined.columns:
            joined.insert(0, "primary", primary.to_numpy())
        return exp.with_sample_metadata(joined)

    def to_long(self, assay_names: Optional[Mapping[str, str]] = None) -> pd.DataFrame:
        """
        Long table across experiments: assay, primary, colname, feature, value.

        Args:
            assay_names: experiment name -> assay to melt (first assay by default)
        """
        frames = []
        for name, exp in self._experiments.items():
            assay_name = (assay_names or {}).get(name)
            long = exp.to_long(assay_name)
            value_col = long.columns[-1]
            long = long.rename(columns={value_col: "value", "sample": "colname"})
            long.insert(0, "assay", name)
            long["primary"] = long["colname"].map(self.primaries(name))
            frames.append(long[["assay", "primary", "colname", "feature", "value"]])
        if not frames:
            return pd.DataFrame(columns=["assay", "primary", "colname", "feature", "value"])
        return pd.concat(frames, ignore_index=True)

    def __repr__(self) -> str:
        lines = [f"ExperimentCollection({len(self)} experiments, {len(self._col_data)} subjects)"]
        for name, exp in self._experiments.items():
            lines.append(f"  [{name}] {exp.n_features} features × {exp.n_samples} samples")
        return "\n".join(lines)
