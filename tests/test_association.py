"""Tests for cross-association between experiments."""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from miapy.core.experiment import TreeExperiment
from miapy.stats.association import (
    AssociationResult,
    adjust_pvalues,
    cross_associate,
)


@pytest.fixture
def paired():
    """Taxa and metabolites on the same 10 samples with one planted association."""
    rng = np.random.RandomState(0)
    samples = pd.Index([f"s{i}" for i in range(10)])
    taxa = rng.poisson(20, size=(3, 10)).astype(float)
    metabolites = rng.normal(size=(2, 10))
    metabolites[0] = taxa[0] * 2 + 1  # perfectly linear in taxon t0
    exp1 = TreeExperiment(
        assays={"counts": taxa},
        feature_ids=pd.Index(["t0", "t1", "t2"]),
        sample_ids=samples,
    )
    exp2 = TreeExperiment(
        assays={"counts": metabolites},
        feature_ids=pd.Index(["m0", "m1"]),
        sample_ids=samples,
    )
    return exp1, exp2


class TestCrossAssociate:

    def test_shape_and_labels(self, paired):
        result = cross_associate(*paired, method="pearson")
        assert isinstance(result, AssociationResult)
        assert result.cor.shape == (3, 2)
        assert list(result.cor.index) == ["t0", "t1", "t2"]
        assert list(result.cor.columns) == ["m0", "m1"]
        assert result.n_samples == 10

    def test_planted_association(self, paired):
        result = cross_associate(*paired, method="pearson")
        assert result.cor.loc["t0", "m0"] == pytest.approx(1.0)
        assert result.p_adj.loc["t0", "m0"] < 1e-6

    @pytest.mark.parametrize("method", ["pearson", "spearman", "kendall"])
    def test_matches_scipy(self, paired, method):
        exp1, exp2 = paired
        result = cross_associate(exp1, exp2, method=method)
        x = exp1.assay()[1]
        y = exp2.assay()[1]
        expected = {"pearson": stats.pearsonr, "spearman": stats.spearmanr,
                    "kendall": stats.kendalltau}[method](x, y)
        assert result.cor.loc["t1", "m1"] == pytest.approx(expected[0])
        assert result.pval.loc["t1", "m1"] == pytest.approx(expected[1], rel=1e-6)

    def test_p_adj_is_not_smaller_than_p(self, paired):
        result = cross_associate(*paired, p_adj_method="bonferroni")
        assert np.all(result.p_adj.to_numpy() >= result.pval.to_numpy() - 1e-15)

    def test_no_significance(self, paired):
        result = cross_associate(*paired, test_significance=False)
        assert result.pval is None
        assert result.p_adj is None

    def test_self_association_and_filter(self, paired):
        exp1, _ = paired
        result = cross_associate(exp1, method="spearman")
        assert result.cor.loc["t1", "t1"] == pytest.approx(1.0)
        filtered = cross_associate(exp1, method="spearman", filter_self_correlations=True)
        assert np.isnan(filtered.cor.loc["t1", "t1"])

    def test_alt_experiment(self, paired):
        exp1, exp2 = paired
        combined = exp1.with_alt_experiment("metabolites", exp2)
        result = cross_associate(combined, alt_experiment2="metabolites", method="pearson")
        assert list(result.cor.columns) == ["m0", "m1"]

    def test_reorders_samples(self, paired):
        exp1, exp2 = paired
        shuffled = exp2.select_samples(list(reversed(exp2.sample_ids)))
        result = cross_associate(exp1, shuffled, method="pearson")
        assert result.cor.loc["t0", "m0"] == pytest.approx(1.0)

    def test_constant_feature_is_nan(self, paired):
        exp1, exp2 = paired
        values = exp1.assay().copy()
        values[2] = 7
        result = cross_associate(exp1.with_assay("counts", values), exp2)
        assert result.cor.loc["t2"].isna().all()
        assert result.p_adj.loc["t2"].isna().all()

    def test_errors(self, paired):
        exp1, exp2 = paired
        with pytest.raises(ValueError, match="Unknown association"):
            cross_associate(exp1, exp2, method="distance")
        with pytest.raises(ValueError, match="same samples"):
            cross_associate(exp1, exp2.select_samples(slice(0, 5)))
        with pytest.raises(ValueError, match="at least"):
            cross_associate(exp1.select_samples([0, 1]), exp2.select_samples([0, 1]))
        with pytest.raises(KeyError):
            cross_associate(exp1, alt_experiment2="nothing")

    def test_missing_values(self, paired):
        exp1, exp2 = paired
        values = exp1.assay().copy()
        values[0, 0] = np.nan
        with pytest.raises(ValueError, match="missing values"):
            cross_associate(exp1.with_assay("counts", values), exp2)


class TestToTable:

    def test_sorted_by_evidence(self, paired):
        table = cross_associate(*paired, method="pearson").to_table()
        assert list(table.columns) == ["feature1", "feature2", "cor", "pval", "p_adj"]
        assert len(table) == 6
        assert (table.iloc[0]["feature1"], table.iloc[0]["feature2"]) == ("t0", "m0")
        assert table["p_adj"].is_monotonic_increasing

    def test_thresholds(self, paired):
        result = cross_associate(*paired, method="pearson")
        assert len(result.to_table(cor_threshold=0.999)) == 1
        significant = result.to_table(p_adj_threshold=0.01)
        assert (significant["p_adj"] <= 0.01).all()

    def test_threshold_requires_significance(self, paired):
        result = cross_associate(*paired, test_significance=False)
        assert list(result.to_table().columns) == ["feature1", "feature2", "cor"]
        with pytest.raises(ValueError):
            result.to_table(p_adj_threshold=0.05)


class TestAdjustPvalues:

    def test_nan_preserved(self):
        adjusted = adjust_pvalues(np.array([0.01, np.nan, 0.04]), method="bonferroni")
        np.testing.assert_allclose(adjusted[[0, 2]], [0.02, 0.08])
        assert np.isnan(adjusted[1])

    def test_all_nan(self):
        assert np.isnan(adjust_pvalues(np.array([np.nan, np.nan]))).all()
