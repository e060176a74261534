"""
Writer for TreeExperiment objects.

Saves every linked table of an experiment to a directory of plain files, so
results can be opened in R, a spreadsheet or another Python session, and
reloaded with load_experiment().

Directory layout:
    manifest.json             ids, file index and JSON-safe metadata
    assays/<name>.csv         one table per assay (features × samples)
    row_data.csv              feature annotations
    sample_data.csv           sample annotations (diversity estimates, ...)
    row_tree.nwk              tree, if present
    row_links.csv             feature -> node, if a tree is present
    reduced_dims/<name>.csv   ordinations
    alt_experiments/<name>/   same layout, recursively

Engineering Design:
    - Every file is written atomically (temp file + rename)
    - The manifest is written last, so a directory with a manifest is
      complete
    - Metadata values that cannot be represented in JSON are skipped with a
      warning rather than silently stringified

Examples:
    >>> from miapy.io.writers import write_experiment
    >>> from miapy.io.loaders import load_experiment
    >>> write_experiment(exp, Path("results/gut"))
    >>> reloaded = load_experiment(Path("results/gut"))
    >>> reloaded.assay_names == exp.assay_names
    True
"""

from __future__ import annotations

import logging
import re
import warnings
from pathlib import Path
from typing import Any, Union

import numpy as np
import pandas as pd

from miapy import __version__
from miapy.core.experiment import TreeExperiment
from miapy.io.loaders import MANIFEST_FORMAT, MANIFEST_NAME
from miapy.utils.fileio import atomic_write_frame, atomic_write_json, atomic_write_text

logger = logging.getLogger(__name__)

__all__ = ['write_experiment']

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _safe_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name) or "unnamed"


def _json_safe(value: Any) -> Any:
    """Convert numpy/pandas values to JSON types; raise TypeError if impossible."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (pd.Series, pd.Index)):
        return value.tolist()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _serializable_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    result = {}
    for key, value in metadata.items():
        try:
            result[key] = _json_safe(value)
        except TypeError as e:
            warnings.warn(f"Metadata entry '{key}' not saved: {e}", UserWarning)
    return result


def write_experiment(experiment: TreeExperiment, directory: Union[str, Path]) -> Path:
    """
    Write an experiment and everything linked to it into `directory`.

    Args:
        experiment: Experiment to write
        directory: Output directory (created if needed; existing files with
            the same names are overwritten)

    Returns:
        Path of the written manifest

    Raises:
        TypeError: If experiment is not a TreeExperiment
        OSError: If the directory is not writable
    """
    if not isinstance(experiment, TreeExperiment):
        raise TypeError(f"experiment must be TreeExperiment, got {type(experiment)}")

    directory = Path(directory)
    try:
        (directory / "assays").mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"Cannot create output directory {directory}: {e}") from e

    manifest: dict[str, Any] = {
        "format": MANIFEST_FORMAT,
        "miapy_version": __version__,
        "feature_ids": [str(f) for f in experiment.feature_ids],
        "sample_ids": [str(s) for s in experiment.sample_ids],
        "assays": {},
        "row_data": "row_data.csv",
        "sample_data": "sample_data.csv",
    }

    try:
        for name in experiment.assay_names:
            filename = f"assays/{_safe_filename(name)}.csv"
            atomic_write_frame(directory / filename, experiment.assay_frame(name))
            manifest["assays"][name] = filename

        atomic_write_frame(directory / "row_data.csv", experiment.row_metadata.rename_axis("feature"))
        atomic_write_frame(directory / "sample_data.csv", experiment.sample_metadata.rename_axis("sample"))

        if experiment.row_tree is not None:
            atomic_write_text(directory / "row_tree.nwk", experiment.row_tree.to_newick() + "\n")
            links = experiment.row_links.rename("node").rename_axis("feature").to_frame()
            atomic_write_frame(directory / "row_links.csv", links)
            manifest["row_tree"] = "row_tree.nwk"
            manifest["row_links"] = "row_links.csv"

        if experiment.reduced_dim_names:
            (directory / "reduced_dims").mkdir(exist_ok=True)
            manifest["reduced_dims"] = {}
            for name in experiment.reduced_dim_names:
                filename = f"reduced_dims/{_safe_filename(name)}.csv"
                atomic_write_frame(directory / filename, experiment.reduced_dim(name).rename_axis("sample"))
                manifest["reduced_dims"][name] = filename
    except OSError as e:
        raise OSError(f"Failed to write experiment to {directory}: {e}") from e

    if experiment.alt_experiment_names:
        manifest["alt_experiments"] = {}
        for name in experiment.alt_experiment_names:
            subdir = f"alt_experiments/{_safe_filename(name)}"
            write_experiment(experiment.alt_experiment(name), directory / subdir)
            manifest["alt_experiments"][name] = subdir

    manifest["metadata"] = _serializable_metadata(experiment.metadata)
    manifest_path = directory / MANIFEST_NAME
    atomic_write_json(manifest_path, manifest)
    logger.info(
        f"Wrote experiment ({experiment.n_features} × {experiment.n_samples}, "
        f"{len(experiment.assay_names)} assays) to {directory}"
    )
    return manifest_path
