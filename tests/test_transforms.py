"""Tests for assay transformations."""

import numpy as np
import pytest

from miapy.core.transform import AssayTransform
from miapy.stats.transforms import (
    TRANSFORM_METHODS,
    resolve_pseudocount,
    transform_assay,
)


class TestRelativeAbundance:

    def test_columns_sum_to_one(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, "counts", method="relabundance")
        np.testing.assert_allclose(exp.assay("relabundance").sum(axis=0), [1.0, 1.0, 1.0])
        assert exp.assay("relabundance")[0, 0] == pytest.approx(0.5)

    def test_source_assay_untouched(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, "counts", method="relabundance")
        np.testing.assert_array_equal(exp.assay("counts"), tiny_experiment.assay("counts"))
        assert tiny_experiment.assay_names == ["counts"]

    def test_features_axis(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="relabundance", axis="features")
        np.testing.assert_allclose(exp.assay("relabundance").sum(axis=1), [1.0] * 4)

    def test_empty_sample_gives_zeros(self, tiny_experiment):
        exp = tiny_experiment.with_assay("counts", np.zeros((4, 3)))
        result = transform_assay(exp, method="relabundance")
        assert np.all(result.assay("relabundance") == 0)

    def test_custom_name_and_log(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="total", name="props")
        log = exp.metadata["transform_log"]
        assert log[-1]["output"] == "props"
        assert log[-1]["transform"] == "RelativeAbundance"


class TestLogRatio:

    def test_log10_with_pseudocount(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="log10", pseudocount=1)
        assert exp.assay("log10")[1, 0] == pytest.approx(0.0)
        assert exp.assay("log10")[0, 0] == pytest.approx(np.log10(11))

    def test_log_rejects_zeros(self, tiny_experiment):
        with pytest.raises(ValueError, match="pseudocount"):
            transform_assay(tiny_experiment, method="log")

    def test_clr_centers_samples(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="clr", pseudocount=1)
        np.testing.assert_allclose(exp.assay("clr").mean(axis=0), 0.0, atol=1e-12)

    def test_clr_pseudocount_true(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="clr", pseudocount=True)
        assert exp.metadata["transform_log"][-1]["params"]["pseudocount"] is True
        assert np.isfinite(exp.assay("clr")).all()

    def test_rclr_keeps_zeros(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="rclr")
        values = exp.assay("rclr")
        counts = tiny_experiment.assay("counts")
        assert np.all(values[counts == 0] == 0)
        # S3: A and B both 5, equal to their geometric mean
        np.testing.assert_allclose(values[:2, 2], [0.0, 0.0])

    def test_rclr_rejects_pseudocount(self, tiny_experiment):
        with pytest.raises(ValueError, match="pseudocount"):
            transform_assay(tiny_experiment, method="rclr", pseudocount=1)

    def test_alr_reference_row_is_zero(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="alr", pseudocount=1, reference="C")
        np.testing.assert_allclose(exp.assay("alr")[2], 0.0)
        assert exp.assay("alr")[0, 0] == pytest.approx(np.log(11 / 3))

    def test_alr_requires_reference(self, tiny_experiment):
        with pytest.raises(ValueError, match="reference"):
            transform_assay(tiny_experiment, method="alr", pseudocount=1)

    def test_alr_unknown_reference(self, tiny_experiment):
        with pytest.raises(KeyError):
            transform_assay(tiny_experiment, method="alr", pseudocount=1, reference="Z")

    def test_negative_values_rejected(self, tiny_experiment):
        exp = tiny_experiment.with_assay("counts", -tiny_experiment.assay("counts"))
        with pytest.raises(ValueError, match="non-negative"):
            transform_assay(exp, method="clr", pseudocount=1)


class TestOtherTransforms:

    def test_presence_absence(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="pa")
        np.testing.assert_array_equal(exp.assay("pa")[:, 0], [1, 0, 1, 1])

    def test_rank_ignores_zeros(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="rank")
        # S1 = [10, 0, 2, 8]
        np.testing.assert_array_equal(exp.assay("rank")[:, 0], [3, 0, 1, 2])
        # S3 = [5, 5, 0, 0]: ties get the average rank
        np.testing.assert_array_equal(exp.assay("rank")[:, 2], [1.5, 1.5, 0, 0])

    def test_hellinger(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="hellinger")
        np.testing.assert_allclose((exp.assay("hellinger") ** 2).sum(axis=0), 1.0)

    def test_standardize_defaults_to_features(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="standardize")
        values = exp.assay("standardize")
        np.testing.assert_allclose(values.mean(axis=1), 0.0, atol=1e-12)
        np.testing.assert_allclose(values.std(axis=1, ddof=1), 1.0)

    def test_range_and_max(self, tiny_experiment):
        exp = transform_assay(tiny_experiment, method="range")
        exp = transform_assay(exp, method="max")
        np.testing.assert_allclose(exp.assay("range").max(axis=1), 1.0)
        np.testing.assert_allclose(exp.assay("range").min(axis=1), 0.0)
        np.testing.assert_allclose(exp.assay("max")[0], [1.0, 0.0, 0.5])


class TestDispatch:

    def test_every_method_runs(self, tiny_experiment):
        for method in TRANSFORM_METHODS:
            options = {"reference": "A"} if method == "alr" else {}
            pseudocount = 0 if method in ("rclr",) else 1
            exp = transform_assay(tiny_experiment, method=method, pseudocount=pseudocount, **options)
            assert method in exp.assay_names

    def test_unknown_method(self, tiny_experiment):
        with pytest.raises(ValueError, match="Unknown transformation"):
            transform_assay(tiny_experiment, method="sqrt")

    def test_unknown_assay(self, tiny_experiment):
        with pytest.raises(KeyError):
            transform_assay(tiny_experiment, "relabundance", method="clr")

    def test_bad_axis(self, tiny_experiment):
        with pytest.raises(ValueError, match="axis"):
            transform_assay(tiny_experiment, method="relabundance", axis="rows")

    def test_custom_transform(self, tiny_experiment):
        class Double(AssayTransform):
            def __init__(self):
                super().__init__("Double", {}, assay_name="counts", output_name="double")

            def compute(self, values):
                return values * 2

        exp = Double().apply(tiny_experiment)
        assert exp.assay("double")[0, 0] == 20


class TestResolvePseudocount:

    def test_true_is_half_min_positive(self):
        assert resolve_pseudocount(np.array([0.0, 4.0, 2.0]), True) == 1.0

    def test_false_and_number(self):
        assert resolve_pseudocount(np.array([1.0]), False) == 0.0
        assert resolve_pseudocount(np.array([1.0]), 0.5) == 0.5

    def test_negative(self):
        with pytest.raises(ValueError):
            resolve_pseudocount(np.array([1.0]), -1)
