"""
Base transformation framework for immutable experiment operations.

Transformations are pure: they take a TreeExperiment and return a new one,
leaving the input untouched. Assay transformations read one assay and add a
new named assay next to it, so raw counts always stay available.

Biological Context:
    Microbiome workflows chain several derivations of the same counts:
    1. Relative abundance for composition plots
    2. CLR / log for correlation and ordination
    3. Presence/absence for binary (Jaccard) distances
    4. Standardization of features before clustering

    Each step must be:
    - Reproducible (same input → same output)
    - Auditable (parameters recorded in experiment metadata)
    - Non-destructive (source assay is kept)

Examples:
    >>> from miapy.core.transform import AssayTransform
    >>>
    >>> class SquareRoot(AssayTransform):
    ...     def __init__(self, assay_name="counts", name="sqrt"):
    ...         super().__init__("SquareRoot", {}, assay_name=assay_name, output_name=name)
    ...
    ...     def compute(self, values):
    ...         import numpy as np
    ...         return np.sqrt(values)
    >>>
    >>> transformed = SquareRoot().apply(exp)
    >>> transformed.assay_names
    ['counts', 'sqrt']
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Literal, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from miapy.core.experiment import TreeExperiment

__all__ = ['Transform', 'AssayTransform', 'Axis']

Axis = Literal["samples", "features"]


class Transform(ABC):
    """
    Abstract base class for all experiment transformations.

    Attributes:
        name: Human-readable transformation name (e.g., "CLR")
        params: Dictionary of parameters used for this transformation
        timestamp: When this transform instance was created (for audit trail)
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, experiment: TreeExperiment) -> TreeExperiment:
        """
        Execute transformation and return new experiment.

        Must never modify the input experiment.

        Raises:
            ValueError: If transformation cannot be applied (check validate() first)
        """

    def validate(self, experiment: TreeExperiment) -> list[str]:
        """
        Check preconditions before applying transformation.

        Returns:
            List of error messages (empty list = valid, transformation can proceed)
        """
        errors: list[str] = []
        if experiment.n_features == 0 or experiment.n_samples == 0:
            errors.append("Cannot process empty experiment")
        return errors

    def __repr__(self) -> str:
        """
        String representation for logging and debugging.

        Returns:
            String like "Log(base=10, pseudocount=1.0)"
        """
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"


class AssayTransform(Transform):
    """
    Transform that derives a new assay from an existing one.

    Subclasses implement compute() on the full (features × samples) float
    array. With axis="samples" the computation is column-wise (each sample on
    its own); with axis="features" it is row-wise. Use self.np_axis to reduce
    along the right margin.

    Attributes:
        assay_name: Source assay
        output_name: Name of the new assay
        axis: "samples" or "features"
    """

    default_axis: Axis = "samples"

    def __init__(
        self,
        name: str,
        params: dict[str, Any],
        assay_name: str = "counts",
        output_name: str | None = None,
        axis: Axis | None = None,
    ) -> None:
        axis = axis or self.default_axis
        if axis not in ("samples", "features"):
            raise ValueError(f"axis must be 'samples' or 'features', got {axis!r}")
        super().__init__(name, {**params, "assay_name": assay_name, "axis": axis})
        self.assay_name = assay_name
        self.output_name = output_name or name.lower()
        self.axis: Axis = axis

    @property
    def np_axis(self) -> int:
        """NumPy reduction axis: 0 reduces over features (per sample), 1 over samples."""
        return 0 if self.axis == "samples" else 1

    @abstractmethod
    def compute(self, values: np.ndarray) -> np.ndarray:
        """Return the transformed (features × samples) array."""

    def validate(self, experiment: TreeExperiment) -> list[str]:
        errors = super().validate(experiment)
        if self.assay_name not in experiment.assays:
            errors.append(
                f"Assay '{self.assay_name}' not found. Available assays: {experiment.assay_names}"
            )
        return errors

    def apply(self, experiment: TreeExperiment) -> TreeExperiment:
        values = np.asarray(experiment.assay(self.assay_name), dtype=float)
        result = self.compute(values)
        if result.shape != values.shape:
            raise ValueError(
                f"{self.name} produced shape {result.shape}, expected {values.shape}"
            )
        log = list(experiment.metadata.get("transform_log", []))
        log.append({
            "transform": self.name,
            "output": self.output_name,
            "params": dict(self.params),
            "timestamp": self.timestamp.isoformat(),
        })
        return experiment.with_assay(self.output_name, result).with_metadata(transform_log=log)
