"""
Assay transformations for compositional microbiome data.

Every transformation reads one assay and adds a new named assay, leaving the
source (and all other assays) untouched.

Methods:
    relabundance / total: Divide by sample total (proportions)
    log, log10, log2:      Logarithm with optional pseudocount
    clr:                   Centered log-ratio (log minus per-sample mean log)
    rclr:                  Robust CLR: computed on non-zero values only, zeros kept
    alr:                   Additive log-ratio against a reference feature
    pa:                    Presence/absence (value > threshold)
    rank:                  Within-sample ranks, zeros stay zero
    hellinger:             Square root of relative abundance
    standardize / z:       Zero mean, unit variance (per feature by default)
    range:                 Rescale to [0, 1]
    max:                   Divide by maximum

Compositional data note:
    Sequencing counts carry only relative information, so log-ratio
    transforms (clr, rclr, alr) are preferred before correlation or
    Euclidean distances. Zeros must be handled with a pseudocount (or rclr).

References:
    - Aitchison (1986) The Statistical Analysis of Compositional Data
    - Martino et al. (2019) mSystems 4:e00016-19 (robust CLR)
    - Legendre & Gallagher (2001) Oecologia 129:271-280 (Hellinger)

Examples:
    >>> from miapy.stats.transforms import transform_assay
    >>> exp = transform_assay(exp, "counts", method="relabundance")
    >>> exp = transform_assay(exp, "counts", method="clr", pseudocount=1)
    >>> exp.assay_names
    ['counts', 'relabundance', 'clr']
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

import numpy as np
from scipy.stats import rankdata

from miapy.core.experiment import TreeExperiment
from miapy.core.transform import AssayTransform, Axis

logger = logging.getLogger(__name__)

__all__ = [
    'TRANSFORM_METHODS',
    'transform_assay',
    'resolve_pseudocount',
    'RelativeAbundance',
    'LogTransform',
    'CLR',
    'RobustCLR',
    'ALR',
    'PresenceAbsence',
    'RankTransform',
    'Hellinger',
    'Standardize',
    'RangeScale',
    'MaxScale',
]

Pseudocount = Union[float, bool]


def resolve_pseudocount(values: np.ndarray, pseudocount: Pseudocount) -> float:
    """
    Turn the pseudocount option into a number.

    True means half of the smallest positive value in the assay; False or
    0 means no pseudocount.
    """
    if pseudocount is True:
        positive = values[np.isfinite(values) & (values > 0)]
        if positive.size == 0:
            raise ValueError("pseudocount=True requires at least one positive value")
        return float(positive.min()) / 2.0
    if pseudocount is False or pseudocount is None:
        return 0.0
    pseudocount = float(pseudocount)
    if pseudocount < 0 or not np.isfinite(pseudocount):
        raise ValueError(f"pseudocount must be a non-negative number, got {pseudocount}")
    return pseudocount


def _check_non_negative(values: np.ndarray, method: str) -> None:
    if values.size and np.nanmin(values) < 0:
        raise ValueError(
            f"'{method}' requires non-negative values; assay contains negative entries"
        )


def _check_no_zeros(values: np.ndarray, method: str) -> None:
    if values.size and np.any(values[~np.isnan(values)] <= 0):
        raise ValueError(
            f"'{method}' requires strictly positive values; assay contains zeros. "
            "Add a pseudocount (e.g. pseudocount=1 or pseudocount=True) or use 'rclr'."
        )


def _safe_divide(num: np.ndarray, denom: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        out = num / denom
    out[~np.isfinite(out) & ~np.isnan(num)] = 0.0
    return out


class _PseudocountTransform(AssayTransform):
    """Assay transform whose input is shifted by a pseudocount first."""

    def __init__(self, name: str, params: dict[str, Any], pseudocount: Pseudocount = 0.0, **kwargs):
        super().__init__(name, {**params, "pseudocount": pseudocount}, **kwargs)
        self.pseudocount = pseudocount

    def shifted(self, values: np.ndarray) -> np.ndarray:
        _check_non_negative(values, self.output_name)
        return values + resolve_pseudocount(values, self.pseudocount)


class RelativeAbundance(_PseudocountTransform):
    """Divide each sample (or feature) by its total."""

    def __init__(self, assay_name: str = "counts", name: str = "relabundance",
                 axis: Optional[Axis] = None, pseudocount: Pseudocount = 0.0):
        super().__init__("RelativeAbundance", {}, pseudocount,
                         assay_name=assay_name, output_name=name, axis=axis)

    def compute(self, values: np.ndarray) -> np.ndarray:
        values = self.shifted(values)
        totals = np.nansum(values, axis=self.np_axis, keepdims=True)
        return _safe_divide(values, np.broadcast_to(totals, values.shape))


class LogTransform(_PseudocountTransform):
    """Logarithm in the given base."""

    def __init__(self, assay_name: str = "counts", name: Optional[str] = None,
                 base: float = np.e, pseudocount: Pseudocount = 0.0, axis: Optional[Axis] = None):
        if base <= 0 or base == 1:
            raise ValueError(f"log base must be positive and != 1, got {base}")
        default = {10: "log10", 2: "log2"}.get(base, "log")
        super().__init__("Log", {"base": base}, pseudocount,
                         assay_name=assay_name, output_name=name or default, axis=axis)
        self.base = base

    def compute(self, values: np.ndarray) -> np.ndarray:
        values = self.shifted(values)
        _check_no_zeros(values, self.output_name)
        return np.log(values) / np.log(self.base)


class CLR(_PseudocountTransform):
    """Centered log-ratio: log(x) - mean(log(x)) within each sample."""

    def __init__(self, assay_name: str = "counts", name: str = "clr",
                 pseudocount: Pseudocount = 0.0, axis: Optional[Axis] = None):
        super().__init__("CLR", {}, pseudocount,
                         assay_name=assay_name, output_name=name, axis=axis)

    def compute(self, values: np.ndarray) -> np.ndarray:
        values = self.shifted(values)
        _check_no_zeros(values, self.output_name)
        logs = np.log(values)
        return logs - np.nanmean(logs, axis=self.np_axis, keepdims=True)


class RobustCLR(AssayTransform):
    """
    Robust CLR: the geometric mean is taken over non-zero values only, and
    zeros remain zero in the output.
    """

    def __init__(self, assay_name: str = "counts", name: str = "rclr", axis: Optional[Axis] = None):
        super().__init__("RobustCLR", {}, assay_name=assay_name, output_name=name, axis=axis)

    def compute(self, values: np.ndarray) -> np.ndarray:
        _check_non_negative(values, self.output_name)
        positive = values > 0
        with np.errstate(divide="ignore", invalid="ignore"):
            logs = np.where(positive, np.log(np.where(positive, values, 1.0)), np.nan)
            centre = np.nanmean(logs, axis=self.np_axis, keepdims=True)
        centre = np.where(np.isnan(centre), 0.0, centre)
        result = np.where(positive, logs - centre, 0.0)
        result[np.isnan(values)] = np.nan
        return result


class ALR(_PseudocountTransform):
    """Additive log-ratio: log(x / x_reference) with a reference feature."""

    def __init__(self, reference: Union[int, str], assay_name: str = "counts", name: str = "alr",
                 pseudocount: Pseudocount = 0.0):
        super().__init__("ALR", {"reference": reference}, pseudocount,
                         assay_name=assay_name, output_name=name, axis="samples")
        self.reference = reference
        self._feature_ids = None

    def apply(self, experiment: TreeExperiment) -> TreeExperiment:
        self._feature_ids = experiment.feature_ids
        return super().apply(experiment)

    def _reference_position(self) -> int:
        if isinstance(self.reference, (int, np.integer)) and not isinstance(self.reference, bool):
            return int(self.reference)
        if self._feature_ids is None or self.reference not in self._feature_ids:
            raise KeyError(f"ALR reference feature not found: {self.reference!r}")
        return int(self._feature_ids.get_loc(self.reference))

    def compute(self, values: np.ndarray) -> np.ndarray:
        values = self.shifted(values)
        _check_no_zeros(values, self.output_name)
        ref = self._reference_position()
        if not -values.shape[0] <= ref < values.shape[0]:
            raise IndexError(f"ALR reference position {ref} out of range")
        logs = np.log(values)
        # reference row becomes identically zero
        return logs - logs[[ref], :]


class PresenceAbsence(AssayTransform):
    """1 where value > threshold, else 0."""

    def __init__(self, assay_name: str = "counts", name: str = "pa", threshold: float = 0.0):
        super().__init__("PresenceAbsence", {"threshold": threshold},
                         assay_name=assay_name, output_name=name)
        self.threshold = threshold

    def compute(self, values: np.ndarray) -> np.ndarray:
        result = (values > self.threshold).astype(float)
        result[np.isnan(values)] = np.nan
        return result


class RankTransform(AssayTransform):
    """Within-sample ranks of values above threshold (average for ties); the rest stay zero."""

    def __init__(self, assay_name: str = "counts", name: str = "rank",
                 axis: Optional[Axis] = None, threshold: float = 0.0):
        super().__init__("Rank", {"threshold": threshold},
                         assay_name=assay_name, output_name=name, axis=axis)
        self.threshold = threshold

    def compute(self, values: np.ndarray) -> np.ndarray:
        # only values above threshold are ranked, so the smallest of them gets 1
        below = values <= self.threshold
        masked = np.where(below, np.nan, values)
        ranks = rankdata(masked, method="average", axis=self.np_axis, nan_policy="omit")
        ranks = np.asarray(ranks, dtype=float)
        ranks[below] = 0.0
        return ranks


class Hellinger(_PseudocountTransform):
    """Square root of relative abundance."""

    def __init__(self, assay_name: str = "counts", name: str = "hellinger",
                 axis: Optional[Axis] = None, pseudocount: Pseudocount = 0.0):
        super().__init__("Hellinger", {}, pseudocount,
                         assay_name=assay_name, output_name=name, axis=axis)

    def compute(self, values: np.ndarray) -> np.ndarray:
        values = self.shifted(values)
        totals = np.nansum(values, axis=self.np_axis, keepdims=True)
        return np.sqrt(_safe_divide(values, np.broadcast_to(totals, values.shape)))


class Standardize(AssayTransform):
    """Z-score: (x - mean) / sd, per feature by default (sample sd, ddof=1)."""

    default_axis: Axis = "features"

    def __init__(self, assay_name: str = "counts", name: str = "standardize", axis: Optional[Axis] = None):
        super().__init__("Standardize", {}, assay_name=assay_name, output_name=name, axis=axis)

    def compute(self, values: np.ndarray) -> np.ndarray:
        mean = np.nanmean(values, axis=self.np_axis, keepdims=True)
        sd = np.nanstd(values, axis=self.np_axis, ddof=1, keepdims=True)
        return _safe_divide(values - mean, np.broadcast_to(sd, values.shape))


class RangeScale(AssayTransform):
    """Rescale to [0, 1]: (x - min) / (max - min), per feature by default."""

    default_axis: Axis = "features"

    def __init__(self, assay_name: str = "counts", name: str = "range", axis: Optional[Axis] = None):
        super().__init__("Range", {}, assay_name=assay_name, output_name=name, axis=axis)

    def compute(self, values: np.ndarray) -> np.ndarray:
        lo = np.nanmin(values, axis=self.np_axis, keepdims=True)
        hi = np.nanmax(values, axis=self.np_axis, keepdims=True)
        return _safe_divide(values - lo, np.broadcast_to(hi - lo, values.shape))


class MaxScale(AssayTransform):
    """Divide by the maximum, per feature by default."""

    default_axis: Axis = "features"

    def __init__(self, assay_name: str = "counts", name: str = "max", axis: Optional[Axis] = None):
        super().__init__("Max", {}, assay_name=assay_name, output_name=name, axis=axis)

    def compute(self, values: np.ndarray) -> np.ndarray:
        hi = np.nanmax(values, axis=self.np_axis, keepdims=True)
        return _safe_divide(values, np.broadcast_to(hi, values.shape))


def _build(method: str, assay_name: str, name: Optional[str], axis: Optional[Axis],
           pseudocount: Pseudocount, **kwargs) -> AssayTransform:
    out = name or method
    if method in ("relabundance", "total"):
        return RelativeAbundance(assay_name, out, axis=axis, pseudocount=pseudocount)
    if method in ("log", "log10", "log2"):
        base = {"log10": 10, "log2": 2}.get(method, kwargs.get("base", np.e))
        return LogTransform(assay_name, out, base=base, pseudocount=pseudocount, axis=axis)
    if method == "clr":
        return CLR(assay_name, out, pseudocount=pseudocount, axis=axis)
    if method == "rclr":
        if resolve_pseudocount(np.array([1.0]), pseudocount) > 0:
            raise ValueError("'rclr' handles zeros itself and does not accept a pseudocount")
        return RobustCLR(assay_name, out, axis=axis)
    if method == "alr":
        if "reference" not in kwargs:
            raise ValueError("'alr' requires a reference feature (reference=...)")
        return ALR(kwargs["reference"], assay_name, out, pseudocount=pseudocount)
    if method == "pa":
        return PresenceAbsence(assay_name, out, threshold=kwargs.get("threshold", 0.0))
    if method == "rank":
        return RankTransform(assay_name, out, axis=axis, threshold=kwargs.get("threshold", 0.0))
    if method == "hellinger":
        return Hellinger(assay_name, out, axis=axis, pseudocount=pseudocount)
    if method in ("standardize", "z"):
        return Standardize(assay_name, out, axis=axis)
    if method == "range":
        return RangeScale(assay_name, out, axis=axis)
    if method == "max":
        return MaxScale(assay_name, out, axis=axis)
    raise ValueError(
        f"Unknown transformation method '{method}'. "
        f"Choose from: {', '.join(TRANSFORM_METHODS)}"
    )


TRANSFORM_METHODS = (
    "relabundance", "total", "log", "log10", "log2", "clr", "rclr", "alr",
    "pa", "rank", "hellinger", "standardize", "z", "range", "max",
)


def transform_assay(
    experiment: TreeExperiment,
    assay_name: str = "counts",
    method: str = "relabundance",
    name: Optional[str] = None,
    axis: Optional[Axis] = None,
    pseudocount: Pseudocount = 0.0,
    **kwargs: Any,
) -> TreeExperiment:
    """
    Derive a new assay from an existing one.

    Args:
        experiment: Input experiment (not modified)
        assay_name: Source assay
        method: One of TRANSFORM_METHODS
        name: Output assay name (defaults to method)
        axis: "samples" (per column) or "features" (per row); method default if None
        pseudocount: Number added before the transform, or True for half the
            smallest positive value
        **kwargs: Method options (base for log, reference for alr,
            threshold for pa/rank)

    Returns:
        New experiment with the extra assay

    Raises:
        ValueError: Unknown method/axis, negative input, zeros without pseudocount
        KeyError: Unknown assay
    """
    transform = _build(method, assay_name, name, axis, pseudocount, **kwargs)
    errors = transform.validate(experiment)
    if errors:
        missing = [e for e in errors if "not found" in e]
        if missing:
            raise KeyError(missing[0])
        raise ValueError("; ".join(errors))
    logger.info(f"Applying {transform!r} -> assay '{transform.output_name}'")
    return transform.apply(experiment)
