"""
Loaders for microbiome tables, taxonomy, trees and saved experiments.

Biological Context:
    Amplicon and shotgun pipelines (QIIME 2, DADA2, mothur, MetaPhlAn) export
    the same three pieces in different shapes:
    - A feature table: rows = taxa/ASVs, columns = samples, integer counts
    - A taxonomy table or a single "Taxon" string per feature, such as
      "k__Bacteria; p__Firmicutes; c__Bacilli"
    - Optionally a phylogenetic tree in Newick format

    Sample annotations (body site, subject, time point) come as a separate
    table keyed by sample id.

Engineering Design:
    - Identifiers are always read as strings, so "001" stays "001"
    - Duplicate ids warn and keep the first occurrence
    - Annotation tables are aligned to the count table; ids missing from an
      annotation table raise ValueError, extra annotation rows are dropped
      with a warning
    - Clear error messages naming the offending file and values

Examples:
    >>> from pathlib import Path
    >>> from miapy.io.loaders import load_csv_experiment
    >>>
    >>> exp = load_csv_experiment(
    ...     Path("counts.csv"),
    ...     row_data_path=Path("taxonomy.csv"),
    ...     sample_data_path=Path("samples.csv"),
    ...     tree_path=Path("tree.nwk"),
    ... )
    >>> print(f"Loaded {exp.n_features} taxa × {exp.n_samples} samples")
    >>>
    >>> # Taxonomy as one "Taxon" string column
    >>> exp = load_csv_experiment(Path("counts.csv"), Path("taxa.csv"), taxonomy_column="Taxon")
    >>> exp.row_metadata[["phylum", "genus"]].head()
"""

from __future__ import annotations

import json
import logging
import re
import warnings
from pathlib import Path
from typing import Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from miapy.core.collection import ExperimentCollection
from miapy.core.experiment import TreeExperiment
from miapy.core.tree import PhyloTree
from miapy.stats.agglomeration import TAXONOMY_RANKS

logger = logging.getLogger(__name__)

__all__ = [
    'load_csv_experiment',
    'parse_taxonomy',
    'load_newick',
    'load_experiment',
    'load_collection',
    'MANIFEST_NAME',
]

MANIFEST_NAME = "manifest.json"
MANIFEST_FORMAT = "miapy-experiment"

# Greengenes/SILVA/GTDB style rank prefixes
RANK_PREFIXES = {
    "d": "domain",
    "k": "kingdom",
    "p": "phylum",
    "c": "class",
    "o": "order",
    "f": "family",
    "g": "genus",
    "s": "species",
}
_PREFIX_PATTERN = re.compile(r"^([a-zA-Z])__(.*)$")

PathLike = Union[str, Path]


def _as_file(path: PathLike, label: str) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{label} file not found: {path}")
    if not path.is_file():
        raise ValueError(f"{label} path is not a file: {path}")
    return path


def _read_table(path: Path, label: str) -> pd.DataFrame:
    """Read a CSV whose first column holds string identifiers."""
    try:
        df = pd.read_csv(path, index_col=0, converters={0: str})
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"{label} file is empty: {path}") from e
    except Exception as e:
        raise ValueError(f"Failed to read {label} file {path}: {e}") from e
    df.index = pd.Index(df.index.astype(str), name=df.index.name)
    df.columns = pd.Index(df.columns.astype(str))
    return df


def _raw_header(path: Path) -> list[str]:
    """Header cells as written; read_csv would rename a repeated "S1" to "S1.1"."""
    row = pd.read_csv(path, header=None, nrows=1, dtype=str, keep_default_na=False)
    return [str(v) for v in row.iloc[0]]


def _drop_duplicates(df: pd.DataFrame, label: str) -> pd.DataFrame:
    if df.index.duplicated().any():
        n_duplicates = int(df.index.duplicated().sum())
        warnings.warn(
            f"Found {n_duplicates} duplicate {label} IDs. Using first occurrence of each.",
            UserWarning
        )
        df = df[~df.index.duplicated(keep='first')]
    return df


def _numeric_values(df: pd.DataFrame, path: Path) -> np.ndarray:
    try:
        return df.to_numpy(dtype=float)
    except (ValueError, TypeError) as e:
        non_numeric = []
        for i, row in enumerate(df.to_numpy()):
            for j, val in enumerate(row):
                try:
                    float(val)
                except (ValueError, TypeError):
                    non_numeric.append(f"row {i} ('{df.index[i]}'), col {j} ('{df.columns[j]}'): {val}")
                    if len(non_numeric) >= 5:
                        break
            if len(non_numeric) >= 5:
                break
        raise ValueError(
            f"Count table {path} contains non-numeric values:\n" +
            "\n".join(f"  - {x}" for x in non_numeric) +
            ("\n  ..." if len(non_numeric) >= 5 else "")
        ) from e


def _align(table: pd.DataFrame, ids: pd.Index, label: str, path: Path) -> pd.DataFrame:
    table = _drop_duplicates(table, label)
    missing = ids.difference(table.index)
    if len(missing):
        raise ValueError(
            f"{len(missing)} {label} IDs from the count table are missing in {path}: "
            f"{missing.tolist()[:5]}"
        )
    extra = table.index.difference(ids)
    if len(extra):
        warnings.warn(
            f"Ignoring {len(extra)} {label} annotations in {path} with no counts: {extra.tolist()[:5]}",
            UserWarning
        )
    return table.reindex(ids)


def parse_taxonomy(
    strings: Union[pd.Series, Sequence[Optional[str]]],
    sep: str = ";",
    ranks: Sequence[str] = TAXONOMY_RANKS,
) -> pd.DataFrame:
    """
    Split taxonomy strings into one column per rank.

    Strings whose every level carries a rank prefix ("k__", "p__", ...) are
    placed by prefix, so "k__Bacteria; g__Prevotella" fills kingdom and
    genus only. Unprefixed strings are assigned positionally to `ranks`.
    Empty levels (including bare prefixes such as "s__") become NA.

    Args:
        strings: Taxonomy strings (a Series keeps its index)
        sep: Level separator
        ranks: Output rank columns, in order

    Returns:
        DataFrame with one column per rank
    """
    ranks = list(ranks)
    index = strings.index if isinstance(strings, pd.Series) else pd.RangeIndex(len(strings))
    rows = []
    n_truncated = 0
    for value in list(strings):
        parsed: dict[str, Optional[str]] = {}
        if isinstance(value, str) and value.strip():
            levels = [level.strip() for level in value.split(sep)]
            levels = [level for level in levels if level]
            matches = [_PREFIX_PATTERN.match(level) for level in levels]
            if levels and all(matches):
                for match in matches:
                    rank = RANK_PREFIXES.get(match.group(1).lower())
                    if rank in ranks:
                        parsed[rank] = match.group(2).strip() or None
            else:
                if len(levels) > len(ranks):
                    n_truncated += 1
                for rank, level in zip(ranks, levels):
                    match = _PREFIX_PATTERN.match(level)
                    parsed[rank] = (match.group(2).strip() if match else level) or None
        rows.append(parsed)

    if n_truncated:
        warnings.warn(
            f"{n_truncated} taxonomy strings have more levels than ranks {ranks}; extra levels ignored",
            UserWarning
        )
    table = pd.DataFrame(rows, index=index, columns=ranks)
    return table.astype(object).where(table.notna(), None)


def load_newick(path: PathLike) -> PhyloTree:
    """Read a Newick tree file."""
    path = _as_file(path, "Tree")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise OSError(f"Failed to read tree file {path}: {e}") from e
    return PhyloTree.from_newick(text)


def load_csv_experiment(
    counts_path: PathLike,
    row_data_path: Optional[PathLike] = None,
    sample_data_path: Optional[PathLike] = None,
    tree_path: Optional[PathLike] = None,
    assay_name: str = "counts",
    taxonomy_column: Optional[str] = None,
    taxonomy_sep: str = ";",
) -> TreeExperiment:
    """
    Load a feature table and its annotations into a TreeExperiment.

    Expected count table format:
    ```
    "","S1","S2"
    "ASV1",12,0
    "ASV2",3,40
    ```

    Args:
        counts_path: Feature table (features × samples)
        row_data_path: Feature annotations keyed by feature id
        sample_data_path: Sample annotations keyed by sample id
        tree_path: Newick tree; features link to same-named tips
        assay_name: Name of the loaded assay
        taxonomy_column: Row-data column holding taxonomy strings; parsed
            into rank columns that replace it
        taxonomy_sep: Separator for taxonomy_column

    Returns:
        TreeExperiment with one assay

    Raises:
        FileNotFoundError: If a given path does not exist
        ValueError: Malformed table, non-numeric or infinite counts, or
            annotation tables missing ids present in the counts
    """
    counts_path = _as_file(counts_path, "Count table")
    df = _read_table(counts_path, "count table")
    if df.shape[0] == 0:
        raise ValueError(f"Count table contains no features (rows): {counts_path}")
    if df.shape[1] == 0:
        raise ValueError(f"Count table contains no samples (columns): {counts_path}")

    df = _drop_duplicates(df, "feature")
    header = _raw_header(counts_path)[1:]
    if len(header) == df.shape[1]:
        df.columns = pd.Index(header)
    if df.columns.duplicated().any():
        n_duplicates = int(df.columns.duplicated().sum())
        warnings.warn(
            f"Found {n_duplicates} duplicate sample IDs. Using first occurrence of each.",
            UserWarning
        )
        df = df.loc[:, ~df.columns.duplicated(keep='first')]

    data = _numeric_values(df, counts_path)
    if np.isinf(data).any():
        raise ValueError(
            f"Count table contains {int(np.isinf(data).sum())} infinite values. "
            "Please clean data before loading."
        )
    if np.isnan(data).any():
        n_nan = int(np.isnan(data).sum())
        warnings.warn(
            f"Found {n_nan:,} NaN values ({100 * n_nan / data.size:.2f}% of data) in {counts_path}.",
            UserWarning
        )

    feature_ids = pd.Index(df.index, name=None)
    sample_ids = pd.Index(df.columns, name=None)

    row_metadata = None
    if row_data_path is not None:
        path = _as_file(row_data_path, "Row data")
        row_metadata = _align(_read_table(path, "row data"), feature_ids, "feature", path)
        if taxonomy_column is not None:
            if taxonomy_column not in row_metadata.columns:
                raise ValueError(
                    f"taxonomy_column '{taxonomy_column}' not in row data columns: "
                    f"{list(row_metadata.columns)}"
                )
            ranks = parse_taxonomy(row_metadata[taxonomy_column], sep=taxonomy_sep)
            rest = row_metadata.drop(columns=[taxonomy_column])
            rest = rest.drop(columns=[c for c in rest.columns if c in ranks.columns])
            row_metadata = pd.concat([ranks, rest], axis=1)
        row_metadata.index = feature_ids

    sample_metadata = None
    if sample_data_path is not None:
        path = _as_file(sample_data_path, "Sample data")
        sample_metadata = _align(_read_table(path, "sample data"), sample_ids, "sample", path)
        sample_metadata.index = sample_ids

    row_tree = load_newick(tree_path) if tree_path is not None else None

    experiment = TreeExperiment(
        assays={assay_name: data},
        feature_ids=feature_ids,
        sample_ids=sample_ids,
        row_metadata=row_metadata,
        sample_metadata=sample_metadata,
        row_tree=row_tree,
    )
    if row_tree is not None:
        n_unlinked = int(experiment.row_links.isna().sum())
        if n_unlinked:
            warnings.warn(
                f"{n_unlinked} features have no matching tip in {tree_path}",
                UserWarning
            )
    logger.info(
        f"Loaded {experiment.n_features} features × {experiment.n_samples} samples from {counts_path}"
    )
    return experiment


def load_experiment(directory: PathLike) -> TreeExperiment:
    """
    Read an experiment saved by write_experiment().

    Raises:
        FileNotFoundError: If the directory or its manifest does not exist
        ValueError: If the manifest is not a saved experiment
    """
    directory = Path(directory)
    manifest_path = directory / MANIFEST_NAME
    if not manifest_path.exists():
        raise FileNotFoundError(f"No {MANIFEST_NAME} in {directory}")
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid manifest {manifest_path}: {e}") from e
    if manifest.get("format") != MANIFEST_FORMAT:
        raise ValueError(f"{manifest_path} is not a saved experiment (format={manifest.get('format')!r})")

    feature_ids = pd.Index([str(f) for f in manifest["feature_ids"]], dtype=object)
    sample_ids = pd.Index([str(s) for s in manifest["sample_ids"]], dtype=object)

    assays = {}
    for name, filename in manifest["assays"].items():
        frame = _read_table(directory / filename, f"assay '{name}'")
        assays[name] = frame.reindex(index=feature_ids, columns=sample_ids).to_numpy(dtype=float)

    row_metadata = _read_table(directory / manifest["row_data"], "row data").reindex(feature_ids)
    sample_metadata = _read_table(directory / manifest["sample_data"], "sample data").reindex(sample_ids)
    row_metadata.index = feature_ids
    sample_metadata.index = sample_ids

    row_tree, row_links = None, None
    if manifest.get("row_tree"):
        row_tree = load_newick(directory / manifest["row_tree"])
        table = pd.read_csv(directory / manifest["row_links"], dtype=str, keep_default_na=False)
        links = table.set_index("feature")["node"].reindex(feature_ids)
        links.index = feature_ids
        row_links = links.where(links != "")

    reduced_dims = {}
    for name, filename in manifest.get("reduced_dims", {}).items():
        coords = _read_table(directory / filename, f"reduced dim '{name}'").reindex(sample_ids)
        coords.index = sample_ids
        reduced_dims[name] = coords

    alt_experiments = {
        name: load_experiment(directory / subdir)
        for name, subdir in manifest.get("alt_experiments", {}).items()
    }

    return TreeExperiment(
        assays=assays,
        feature_ids=feature_ids,
        sample_ids=sample_ids,
        row_metadata=row_metadata,
        sample_metadata=sample_metadata,
        row_tree=row_tree,
        row_links=row_links,
        alt_experiments=alt_experiments,
        reduced_dims=reduced_dims,
        metadata=manifest.get("metadata", {}),
    )


def _load_any(path: Path) -> TreeExperiment:
    if path.is_dir():
        return load_experiment(path)
    return load_csv_experiment(path)


def load_collection(
    directory_map: Mapping[str, PathLike],
    sample_map_path: Optional[PathLike] = None,
    col_data_path: Optional[PathLike] = None,
) -> ExperimentCollection:
    """
    Assemble an ExperimentCollection from saved experiments or count tables.

    Args:
        directory_map: Experiment name -> experiment directory or counts CSV
        sample_map_path: CSV with columns assay, primary, colname
            (default: every column maps to a primary of the same name)
        col_data_path: Primary-level annotations keyed by primary id

    Returns:
        ExperimentCollection
    """
    experiments = {}
    for name, path in directory_map.items():
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Experiment '{name}' not found: {path}")
        experiments[name] = _load_any(path)

    sample_map = None
    if sample_map_path is not None:
        path = _as_file(sample_map_path, "Sample map")
        try:
            sample_map = pd.read_csv(path, dtype=str)
        except Exception as e:
            raise ValueError(f"Failed to read sample map {path}: {e}") from e

    col_data = None
    if col_data_path is not None:
        path = _as_file(col_data_path, "Column data")
        col_data = _drop_duplicates(_read_table(path, "column data"), "primary")

    return ExperimentCollection(experiments, sample_map=sample_map, col_data=col_data)
