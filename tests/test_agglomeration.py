"""Tests for agglomeration by rank and by variable, splitting and unsplitting."""

import numpy as np
import pandas as pd
import pytest

from miapy.stats.agglomeration import (
    agglomerate_by_rank,
    agglomerate_by_variable,
    split_by,
    taxonomy_labels,
    taxonomy_ranks,
    unsplit,
)


class TestTaxonomyHelpers:

    def test_ranks_in_order(self, tiny_experiment):
        assert taxonomy_ranks(tiny_experiment) == ["kingdom", "family", "genus"]

    def test_labels_fall_back_to_ancestor(self, tiny_experiment):
        labels = taxonomy_labels(tiny_experiment, "genus")
        assert list(labels) == ["Gen1", "Gen1_1", "Gen2", "Family:FamY"]

    def test_labels_not_unique(self, tiny_experiment):
        labels = taxonomy_labels(tiny_experiment, "family", make_unique=False)
        assert list(labels) == ["FamX", "FamX", "FamY", "FamY"]


class TestAgglomerateByRank:

    def test_genus(self, tiny_experiment):
        genus = agglomerate_by_rank(tiny_experiment, "genus")
        assert list(genus.feature_ids) == ["Gen1", "Gen2", "Family:FamY"]
        np.testing.assert_array_equal(genus.assay("counts"), [[10, 3, 10], [2, 2, 0], [8, 5, 0]])
        assert genus.metadata["agglomerated_by_rank"] == "genus"

    def test_totals_preserved(self, small_experiment):
        family = agglomerate_by_rank(small_experiment, "family")
        np.testing.assert_allclose(
            family.assay("counts").sum(axis=0), small_experiment.assay("counts").sum(axis=0)
        )
        assert family.n_features == 3

    def test_rank_case_insensitive(self, tiny_experiment):
        assert agglomerate_by_rank(tiny_experiment, "FAMILY").n_features == 2

    def test_lower_ranks_cleared(self, tiny_experiment):
        family = agglomerate_by_rank(tiny_experiment, "family")
        assert family.row_metadata["genus"].isna().all()
        assert list(family.row_metadata["family"]) == ["FamX", "FamY"]

    def test_na_rm(self, tiny_experiment):
        genus = agglomerate_by_rank(tiny_experiment, "genus", na_rm=True)
        assert list(genus.feature_ids) == ["Gen1", "Gen2"]

    def test_same_genus_different_family_kept_apart(self):
        from miapy.core.experiment import TreeExperiment

        exp = TreeExperiment(
            assays={"counts": np.ones((2, 2))},
            feature_ids=pd.Index(["a", "b"]),
            sample_ids=pd.Index(["s1", "s2"]),
            row_metadata=pd.DataFrame({
                "family": ["Clostridiaceae", "Peptostreptococcaceae"],
                "genus": ["Clostridium", "Clostridium"],
            }, index=["a", "b"]),
        )
        genus = agglomerate_by_rank(exp, "genus")
        assert genus.n_features == 2
        assert list(genus.feature_ids) == ["Clostridium", "Clostridium_1"]

    def test_empty_labels_treated_as_missing(self, tiny_experiment):
        meta = tiny_experiment.row_metadata.copy()
        meta["genus"] = ["Gen1", "Gen1", "g__", "unknown"]
        exp = tiny_experiment.with_row_metadata(meta)
        genus = agglomerate_by_rank(exp, "genus", na_rm=True)
        assert list(genus.feature_ids) == ["Gen1"]

    def test_tree_links_follow_groups(self, tiny_experiment):
        genus = agglomerate_by_rank(tiny_experiment, "genus")
        assert list(genus.row_links) == ["A", "C", "D"]
        assert genus.row_tree is tiny_experiment.row_tree

    def test_update_tree(self, tiny_experiment):
        genus = agglomerate_by_rank(tiny_experiment, "genus", update_tree=True)
        assert sorted(genus.row_tree.leaves) == ["A", "C", "D"]

    def test_mean_aggregation(self, tiny_experiment):
        genus = agglomerate_by_rank(tiny_experiment, "genus", fun="mean")
        np.testing.assert_array_equal(genus.assay("counts")[0], [5, 1.5, 5])

    def test_unknown_rank(self, tiny_experiment):
        with pytest.raises(ValueError, match="not found"):
            agglomerate_by_rank(tiny_experiment, "species")

    def test_unknown_fun(self, tiny_experiment):
        with pytest.raises(ValueError, match="aggregation"):
            agglomerate_by_rank(tiny_experiment, "genus", fun="prod")


class TestAgglomerateByVariable:

    def test_samples(self, tiny_experiment):
        merged = agglomerate_by_variable(tiny_experiment, "group", axis="samples")
        assert list(merged.sample_ids) == ["ctrl", "treat"]
        np.testing.assert_array_equal(merged.assay("counts")[:, 0], [10, 3, 4, 13])

    def test_features_by_labels(self, tiny_experiment):
        merged = agglomerate_by_variable(tiny_experiment, ["x", "x", "y", "y"])
        assert list(merged.feature_ids) == ["x", "y"]
        np.testing.assert_array_equal(merged.assay("counts")[1], [10, 7, 0])

    def test_samples_aggregate_alt_experiments(self, tiny_experiment):
        from miapy.core.experiment import TreeExperiment

        alt = TreeExperiment(
            assays={"counts": np.array([[1.0, 2.0, 3.0]])},
            feature_ids=pd.Index(["m1"]),
            sample_ids=tiny_experiment.sample_ids,
        )
        exp = tiny_experiment.with_alt_experiment("metabolites", alt)
        merged = agglomerate_by_variable(exp, "group", axis="samples")
        np.testing.assert_array_equal(merged.alt_experiment("metabolites").assay(), [[3.0, 3.0]])

    def test_missing_values_rejected(self, tiny_experiment):
        with pytest.raises(ValueError, match="missing"):
            agglomerate_by_variable(tiny_experiment, "genus")

    def test_length_mismatch(self, tiny_experiment):
        with pytest.raises(ValueError, match="length"):
            agglomerate_by_variable(tiny_experiment, ["x", "y"])


class TestSplitUnsplit:

    def test_split_samples(self, tiny_experiment):
        parts = split_by(tiny_experiment, "group", axis="samples")
        assert list(parts) == ["ctrl", "treat"]
        assert parts["ctrl"].n_samples == 2

    def test_split_features_roundtrip(self, tiny_experiment):
        parts = split_by(tiny_experiment, "family")
        joined = unsplit(parts)
        assert list(joined.feature_ids) == ["A", "B", "C", "D"]
        np.testing.assert_array_equal(joined.assay(), tiny_experiment.assay())
        assert joined.row_tree is tiny_experiment.row_tree

    def test_unsplit_samples(self, tiny_experiment):
        parts = split_by(tiny_experiment, "group", axis="samples")
        joined = unsplit(parts, axis="samples")
        assert list(joined.sample_ids) == ["S1", "S2", "S3"]

    def test_unsplit_empty(self):
        with pytest.raises(ValueError):
            unsplit({})
