"""Tests for loading and saving experiments."""

import json

import networkx as nx
import numpy as np
import pandas as pd
import pytest

from miapy.core.collection import ExperimentCollection
from miapy.core.experiment import TreeExperiment
from miapy.core.tree import PhyloTree
from miapy.io.loaders import (
    MANIFEST_NAME,
    load_collection,
    load_csv_experiment,
    load_experiment,
    load_newick,
    parse_taxonomy,
)
from miapy.io.writers import write_experiment
from miapy.stats.diversity import run_mds


class TestParseTaxonomy:

    def test_prefixed_levels_placed_by_rank(self):
        table = parse_taxonomy(["k__Bacteria; p__Firmicutes; g__Lactobacillus; s__"])
        row = table.iloc[0]
        assert row["kingdom"] == "Bacteria"
        assert row["phylum"] == "Firmicutes"
        assert row["genus"] == "Lactobacillus"
        assert row["class"] is None
        assert row["species"] is None

    def test_positional_levels(self):
        table = parse_taxonomy(
            pd.Series(["Bacteria;Firmicutes;Bacilli"], index=["asv1"]),
            ranks=["kingdom", "phylum", "class"],
        )
        assert table.loc["asv1"].tolist() == ["Bacteria", "Firmicutes", "Bacilli"]

    def test_missing_and_custom_separator(self):
        table = parse_taxonomy([None, "Bacteria|Proteobacteria"], sep="|", ranks=["kingdom", "phylum"])
        assert table.iloc[0].isna().all()
        assert table.iloc[1]["phylum"] == "Proteobacteria"

    def test_extra_levels_warn(self):
        with pytest.warns(UserWarning, match="more levels"):
            parse_taxonomy(["a;b;c"], ranks=["kingdom", "phylum"])


class TestLoadCsvExperiment:

    def test_full_load(self, csv_inputs, small_experiment):
        exp = load_csv_experiment(
            csv_inputs["counts"],
            row_data_path=csv_inputs["row_data"],
            sample_data_path=csv_inputs["sample_data"],
            tree_path=csv_inputs["tree"],
        )
        assert exp.shape == small_experiment.shape
        np.testing.assert_array_equal(exp.assay("counts"), small_experiment.assay("counts"))
        assert list(exp.row_metadata["family"]) == list(small_experiment.row_metadata["family"])
        assert list(exp.sample_metadata["body_site"]) == list(small_experiment.sample_metadata["body_site"])
        assert exp.row_tree == small_experiment.row_tree
        assert exp.row_links["ASV3"] == "ASV3"

    def test_counts_only(self, csv_inputs):
        exp = load_csv_experiment(csv_inputs["counts"], assay_name="raw")
        assert exp.assay_names == ["raw"]
        assert exp.row_tree is None
        assert exp.row_metadata.shape[1] == 0

    def test_ids_stay_strings(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text(",001,002\n0001,1,2\n0002,3,4\n")
        exp = load_csv_experiment(path)
        assert list(exp.feature_ids) == ["0001", "0002"]
        assert list(exp.sample_ids) == ["001", "002"]

    def test_taxonomy_column(self, tmp_path):
        counts = tmp_path / "counts.csv"
        counts.write_text(",S1,S2\nasv1,1,2\nasv2,3,4\n")
        taxa = tmp_path / "taxa.csv"
        taxa.write_text(
            "id,Taxon,confidence\n"
            "asv1,k__Bacteria; p__Firmicutes,0.9\n"
            "asv2,k__Bacteria; p__Bacteroidota; g__Prevotella,0.8\n"
        )
        exp = load_csv_experiment(counts, taxa, taxonomy_column="Taxon")
        assert "Taxon" not in exp.row_metadata.columns
        assert exp.row_metadata.loc["asv2", "genus"] == "Prevotella"
        assert exp.row_metadata.loc["asv1", "confidence"] == pytest.approx(0.9)

    def test_unknown_taxonomy_column(self, csv_inputs):
        with pytest.raises(ValueError, match="taxonomy_column"):
            load_csv_experiment(csv_inputs["counts"], csv_inputs["row_data"], taxonomy_column="Taxon")

    def test_duplicate_features_warn(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text(",S1\nasv1,1\nasv1,5\nasv2,2\n")
        with pytest.warns(UserWarning, match="duplicate feature"):
            exp = load_csv_experiment(path)
        assert exp.assay("counts")[:, 0].tolist() == [1.0, 2.0]

    def test_duplicate_samples_warn(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text(",S1,S1,S2\nasv1,1,7,2\nasv2,3,8,4\n")
        with pytest.warns(UserWarning, match="duplicate sample"):
            exp = load_csv_experiment(path)
        assert exp.sample_ids.tolist() == ["S1", "S2"]
        assert exp.assay("counts")[:, 0].tolist() == [1.0, 3.0]

    def test_missing_annotations_rejected(self, tmp_path, csv_inputs):
        samples = tmp_path / "partial.csv"
        pd.read_csv(csv_inputs["sample_data"], index_col=0).iloc[:3].to_csv(samples)
        with pytest.raises(ValueError, match="missing"):
            load_csv_experiment(csv_inputs["counts"], sample_data_path=samples)

    def test_extra_annotations_warn(self, tmp_path):
        counts = tmp_path / "counts.csv"
        counts.write_text(",S1\nasv1,1\n")
        samples = tmp_path / "samples.csv"
        samples.write_text("id,site\nS1,gut\nS9,skin\n")
        with pytest.warns(UserWarning, match="Ignoring 1"):
            exp = load_csv_experiment(counts, sample_data_path=samples)
        assert list(exp.sample_metadata["site"]) == ["gut"]

    def test_non_numeric_counts(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text(",S1\nasv1,many\n")
        with pytest.raises(ValueError, match="non-numeric"):
            load_csv_experiment(path)

    def test_unlinked_tips_warn(self, tmp_path):
        counts = tmp_path / "counts.csv"
        counts.write_text(",S1\nA,1\nZ,2\n")
        tree = tmp_path / "tree.nwk"
        tree.write_text("(A:1,B:1)r;")
        with pytest.warns(UserWarning, match="no matching tip"):
            exp = load_csv_experiment(counts, tree_path=tree)
        assert exp.row_links["Z"] is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_csv_experiment(tmp_path / "absent.csv")


class TestLoadNewick:

    def test_reads_file(self, tmp_path, tiny_tree):
        path = tmp_path / "t.nwk"
        path.write_text(tiny_tree.to_newick())
        assert load_newick(path) == tiny_tree


class TestRoundTrip:

    def test_everything_survives(self, tmp_path, small_experiment):
        exp = run_mds(small_experiment, ncomponents=2)
        exp = exp.with_assay("relabundance", exp.assay() / exp.assay().sum(axis=0))
        alt = small_experiment.select_features(slice(0, 3))
        exp = exp.with_alt_experiment("subset", alt).with_metadata(study="demo", weights=np.array([1.0, 2.0]))

        manifest = write_experiment(exp, tmp_path / "out")
        assert manifest.name == MANIFEST_NAME
        loaded = load_experiment(tmp_path / "out")

        assert loaded.assay_names == exp.assay_names
        np.testing.assert_allclose(loaded.assay("relabundance"), exp.assay("relabundance"))
        assert loaded.feature_ids.equals(exp.feature_ids)
        assert loaded.sample_ids.equals(exp.sample_ids)
        assert loaded.row_tree == exp.row_tree
        assert loaded.row_links.equals(exp.row_links)
        np.testing.assert_allclose(loaded.reduced_dim("MDS").to_numpy(), exp.reduced_dim("MDS").to_numpy())
        assert loaded.alt_experiment("subset").n_features == 3
        assert loaded.metadata["study"] == "demo"
        assert loaded.metadata["weights"] == [1.0, 2.0]
        assert loaded.metadata["MDS_eig"] == pytest.approx(list(exp.metadata["MDS_eig"]))
        assert list(loaded.sample_metadata["subject"]) == list(exp.sample_metadata["subject"])
        assert pd.isna(loaded.row_metadata.loc["ASV11", "genus"])

    def test_tree_names_and_lengths_survive(self, tmp_path):
        graph = nx.DiGraph()
        graph.add_edge("r", "A'1", length=0.123456789)
        graph.add_edge("r", "B", length=2.0)
        tree = PhyloTree(graph, "r")
        exp = TreeExperiment(
            assays={"counts": np.array([[1.0, 0.0], [2.0, 3.0]])},
            feature_ids=pd.Index(["A'1", "B"]),
            sample_ids=pd.Index(["S1", "S2"]),
            row_tree=tree,
        )
        write_experiment(exp, tmp_path / "out")
        loaded = load_experiment(tmp_path / "out")
        assert loaded.row_links["A'1"] == "A'1"
        assert loaded.row_tree.branch_length("A'1") == 0.123456789
        assert loaded.row_tree.phylogenetic_diversity(["A'1", "B"]) == tree.phylogenetic_diversity(["A'1", "B"])

    def test_without_tree(self, tmp_path, small_experiment):
        write_experiment(small_experiment.with_row_tree(None), tmp_path)
        loaded = load_experiment(tmp_path)
        assert loaded.row_tree is None
        assert loaded.row_links is None

    def test_unserializable_metadata_warns(self, tmp_path, tiny_experiment):
        exp = tiny_experiment.with_metadata(handle=object())
        with pytest.warns(UserWarning, match="not saved"):
            write_experiment(exp, tmp_path)
        assert "handle" not in load_experiment(tmp_path).metadata

    def test_not_an_experiment_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_experiment(tmp_path)
        (tmp_path / MANIFEST_NAME).write_text(json.dumps({"format": "other"}))
        with pytest.raises(ValueError, match="not a saved experiment"):
            load_experiment(tmp_path)

    def test_rejects_non_experiment(self, tmp_path):
        with pytest.raises(TypeError):
            write_experiment(pd.DataFrame(), tmp_path)


class TestLoadCollection:

    def test_from_directories_and_csv(self, tmp_path, small_experiment, csv_inputs):
        write_experiment(small_experiment, tmp_path / "gut")
        sample_map = tmp_path / "map.csv"
        rows = ["assay,primary,colname"]
        rows += [f"gut,{s},{s}" for s in small_experiment.sample_ids]
        rows += [f"raw,{s},{s}" for s in small_experiment.sample_ids[:4]]
        sample_map.write_text("\n".join(rows) + "\n")

        with pytest.warns(UserWarning, match="Dropping 4 columns"):
            collection = load_collection(
                {"gut": tmp_path / "gut", "raw": csv_inputs["counts"]},
                sample_map_path=sample_map,
            )
        assert isinstance(collection, ExperimentCollection)
        assert collection.names == ["gut", "raw"]
        assert collection["raw"].n_samples == 4

    def test_col_data(self, tmp_path, tiny_experiment):
        write_experiment(tiny_experiment, tmp_path / "a")
        col_data = tmp_path / "col.csv"
        col_data.write_text("primary,age\nS1,30\nS2,41\nS3,52\n")
        collection = load_collection({"a": tmp_path / "a"}, col_data_path=col_data)
        assert collection.col_data.loc["S2", "age"] == 41

    def test_missing_experiment(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_collection({"x": tmp_path / "nothing"})
