"""Tests for the TreeExperiment container."""

import numpy as np
import pandas as pd
import pytest

from miapy.core.experiment import TreeExperiment
from miapy.core.tree import PhyloTree


class TestConstruction:
    """Validation performed by TreeExperiment.__init__."""

    def test_minimal(self):
        exp = TreeExperiment(
            assays={"counts": np.zeros((2, 3))},
            feature_ids=pd.Index(["f1", "f2"]),
            sample_ids=pd.Index(["s1", "s2", "s3"]),
        )
        assert exp.shape == (2, 3)
        assert exp.row_metadata.index.equals(exp.feature_ids)
        assert exp.sample_metadata.index.equals(exp.sample_ids)
        assert exp.row_tree is None
        assert exp.row_links is None

    def test_assay_shape_mismatch(self):
        with pytest.raises(ValueError, match="shape"):
            TreeExperiment(
                assays={"counts": np.zeros((2, 3)), "bad": np.zeros((3, 2))},
                feature_ids=pd.Index(["f1", "f2"]),
                sample_ids=pd.Index(["s1", "s2", "s3"]),
            )

    def test_assay_must_be_ndarray(self):
        with pytest.raises(TypeError):
            TreeExperiment(
                assays={"counts": [[1, 2]]},
                feature_ids=pd.Index(["f1"]),
                sample_ids=pd.Index(["s1", "s2"]),
            )

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError, match="unique"):
            TreeExperiment(
                assays={"counts": np.zeros((2, 1))},
                feature_ids=pd.Index(["f1", "f1"]),
                sample_ids=pd.Index(["s1"]),
            )

    def test_metadata_index_must_match(self):
        with pytest.raises(ValueError, match="sample_metadata"):
            TreeExperiment(
                assays={"counts": np.zeros((1, 2))},
                feature_ids=pd.Index(["f1"]),
                sample_ids=pd.Index(["s1", "s2"]),
                sample_metadata=pd.DataFrame({"x": [1, 2]}, index=["s2", "s1"]),
            )

    def test_tree_links_by_name(self, tiny_experiment):
        assert list(tiny_experiment.row_links) == ["A", "B", "C", "D"]

    def test_unlinked_features_are_none(self):
        tree = PhyloTree.from_newick("(A:1,B:1)r;")
        exp = TreeExperiment(
            assays={"counts": np.ones((3, 1))},
            feature_ids=pd.Index(["A", "B", "Z"]),
            sample_ids=pd.Index(["s1"]),
            row_tree=tree,
        )
        assert exp.row_links["Z"] is None
        assert exp.row_links["A"] == "A"

    def test_links_to_unknown_nodes_rejected(self, tiny_tree):
        with pytest.raises(ValueError, match="not in row_tree"):
            TreeExperiment(
                assays={"counts": np.ones((1, 1))},
                feature_ids=pd.Index(["x"]),
                sample_ids=pd.Index(["s1"]),
                row_tree=tiny_tree,
                row_links=pd.Series(["nope"], index=["x"]),
            )

    def test_alt_experiment_samples_must_match(self, tiny_experiment):
        other = TreeExperiment(
            assays={"counts": np.ones((2, 2))},
            feature_ids=pd.Index(["m1", "m2"]),
            sample_ids=pd.Index(["S1", "S2"]),
        )
        with pytest.raises(ValueError, match="alt experiment"):
            tiny_experiment.with_alt_experiment("metabolites", other)


class TestAccessors:

    def test_assay_default_is_first(self, tiny_experiment):
        np.testing.assert_array_equal(tiny_experiment.assay(), tiny_experiment.assay("counts"))

    def test_unknown_assay(self, tiny_experiment):
        with pytest.raises(KeyError, match="not found"):
            tiny_experiment.assay("relabundance")

    def test_assay_frame_labels(self, tiny_experiment):
        frame = tiny_experiment.assay_frame("counts")
        assert frame.loc["A", "S1"] == 10
        assert list(frame.columns) == ["S1", "S2", "S3"]

    def test_assays_view_is_read_only(self, tiny_experiment):
        with pytest.raises(TypeError):
            tiny_experiment.assays["new"] = np.zeros((4, 3))


class TestFunctionalUpdates:
    """with_* methods return new experiments and leave the original unchanged."""

    def test_with_assay(self, tiny_experiment):
        new = tiny_experiment.with_assay("double", tiny_experiment.assay("counts") * 2)
        assert new.assay_names == ["counts", "double"]
        assert tiny_experiment.assay_names == ["counts"]

    def test_with_assay_from_frame_reorders(self, tiny_experiment):
        frame = tiny_experiment.assay_frame("counts").iloc[::-1, ::-1]
        new = tiny_experiment.with_assay("copy", frame)
        np.testing.assert_array_equal(new.assay("copy"), tiny_experiment.assay("counts"))

    def test_with_sample_columns(self, tiny_experiment):
        new = tiny_experiment.with_sample_columns({"depth": [20, 10, 10]})
        assert list(new.sample_metadata["depth"]) == [20, 10, 10]
        assert "depth" not in tiny_experiment.sample_metadata.columns

    def test_with_reduced_dim_from_array(self, tiny_experiment):
        new = tiny_experiment.with_reduced_dim("PCA", np.zeros((3, 2)))
        assert list(new.reduced_dim("PCA").columns) == ["PCA1", "PCA2"]

    def test_without_assay(self, tiny_experiment):
        new = tiny_experiment.with_assay("x", np.zeros((4, 3))).without_assay("counts")
        assert new.assay_names == ["x"]


class TestSubsetting:

    def test_select_features_by_callable(self, tiny_experiment):
        sub = tiny_experiment.select_features(lambda rd: rd["family"] == "FamY")
        assert list(sub.feature_ids) == ["C", "D"]
        assert sub.assay("counts").shape == (2, 3)
        assert list(sub.row_links) == ["C", "D"]

    def test_select_features_keeps_tree_by_default(self, tiny_experiment):
        sub = tiny_experiment.select_features(["A", "C"])
        assert sub.row_tree is tiny_experiment.row_tree

    def test_select_features_prune_tree(self, tiny_experiment):
        sub = tiny_experiment.select_features(["A", "B"], prune_tree=True)
        assert sorted(sub.row_tree.leaves) == ["A", "B"]

    def test_select_samples_realigns_everything(self, tiny_experiment):
        alt = TreeExperiment(
            assays={"counts": np.arange(6, dtype=float).reshape(2, 3)},
            feature_ids=pd.Index(["m1", "m2"]),
            sample_ids=tiny_experiment.sample_ids,
        )
        exp = tiny_experiment.with_alt_experiment("metabolites", alt) \
            .with_reduced_dim("MDS", np.arange(6, dtype=float).reshape(3, 2))
        sub = exp.select_samples(lambda sd: sd["group"] == "ctrl")
        assert list(sub.sample_ids) == ["S1", "S2"]
        assert list(sub.alt_experiment("metabolites").sample_ids) == ["S1", "S2"]
        np.testing.assert_array_equal(sub.alt_experiment("metabolites").assay(), [[0, 1], [3, 4]])
        assert list(sub.reduced_dim("MDS").index) == ["S1", "S2"]

    def test_getitem(self, tiny_experiment):
        sub = tiny_experiment[["A", "B"], ["S3"]]
        assert sub.shape == (2, 1)
        np.testing.assert_array_equal(sub.assay(), [[5], [5]])

    def test_bad_mask_length(self, tiny_experiment):
        with pytest.raises(ValueError, match="mask length"):
            tiny_experiment.select_samples([True, False])

    def test_unknown_label(self, tiny_experiment):
        with pytest.raises(KeyError):
            tiny_experiment.select_features(["Z"])

    def test_empty_selection(self, tiny_experiment):
        sub = tiny_experiment.select_features([False] * 4)
        assert sub.shape == (0, 3)


class TestConversion:

    def test_to_long(self, tiny_experiment):
        long = tiny_experiment.to_long("counts", add_row_metadata=["genus"], add_sample_metadata=True)
        assert len(long) == 12
        row = long[(long["feature"] == "A") & (long["sample"] == "S3")].iloc[0]
        assert row["counts"] == 5
        assert row["genus"] == "Gen1"
        assert row["group"] == "treat"

    def test_deep_copy_is_independent(self, tiny_experiment):
        clone = tiny_experiment.copy()
        clone.assay("counts")[0, 0] = -1
        assert tiny_experiment.assay("counts")[0, 0] == 10

    def test_repr(self, tiny_experiment):
        text = repr(tiny_experiment)
        assert "4 features × 3 samples" in text
        assert "counts" in text
