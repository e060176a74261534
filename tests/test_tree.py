"""Tests for PhyloTree parsing, queries and pruning."""

import networkx as nx
import pandas as pd
import pytest

from miapy.core.tree import PhyloTree


class TestNewickParsing:

    def test_basic(self, tiny_tree):
        assert tiny_tree.root == "root"
        assert tiny_tree.leaves == ["A", "B", "C", "D"]
        assert tiny_tree.n_nodes == 7
        assert tiny_tree.branch_length("B") == 2.0
        assert tiny_tree.branch_length("root") == 0.0

    def test_unnamed_internal_nodes(self):
        tree = PhyloTree.from_newick("((A:1,B:1):1,C:2);")
        assert tree.n_leaves == 3
        assert all(n.startswith("node_") for n in tree.nodes if n not in ("A", "B", "C"))

    def test_quoted_labels_and_comments(self):
        tree = PhyloTree.from_newick("('Escherichia coli':1[comment],B:2)r;")
        assert "Escherichia coli" in tree
        assert tree.branch_length("Escherichia coli") == 1.0

    def test_missing_lengths_default_to_zero(self):
        tree = PhyloTree.from_newick("(A,B)r;")
        assert tree.branch_length("A") == 0.0

    @pytest.mark.parametrize("text", ["", "(A,B)", "(A:1,B:x)r;", "(A,A)r;", "(A,B)r;extra"])
    def test_malformed(self, text):
        with pytest.raises(ValueError):
            PhyloTree.from_newick(text)

    def test_round_trip(self, tiny_tree):
        assert PhyloTree.from_newick(tiny_tree.to_newick()) == tiny_tree

    def test_round_trip_keeps_exact_lengths(self):
        tree = PhyloTree.from_newick("((A:0.123456789,B:1e-10)ab:2.5,C:0.1)r;")
        reloaded = PhyloTree.from_newick(tree.to_newick())
        assert reloaded.branch_length("A") == 0.123456789
        assert reloaded.branch_length("B") == 1e-10
        assert reloaded.phylogenetic_diversity(["A", "B"]) == tree.phylogenetic_diversity(["A", "B"])

    def test_doubled_quote_reads_as_one(self):
        tree = PhyloTree.from_newick("('it''s':1,B:1)r;")
        assert "it's" in tree

    def test_name_with_quote_round_trip(self):
        graph = nx.DiGraph()
        graph.add_edge("r", "A'1", length=1.0)
        graph.add_edge("r", "B", length=2.0)
        tree = PhyloTree(graph, "r")
        assert "'A''1'" in tree.to_newick()
        reloaded = PhyloTree.from_newick(tree.to_newick())
        assert reloaded.leaves == ["A'1", "B"]
        assert reloaded.branch_length("A'1") == 1.0

    def test_root_length(self):
        tree = PhyloTree.from_newick("(A:1,B:1)r:0.5;")
        assert tree.root_length == 0.5
        assert tree.branch_length("r") == 0.5
        assert tree.phylogenetic_diversity(["A"]) == 1.5
        assert PhyloTree.from_newick(tree.to_newick()) == tree


class TestQueries:

    def test_parent_children(self, tiny_tree):
        assert tiny_tree.parent("A") == "ab"
        assert tiny_tree.parent("root") is None
        assert sorted(tiny_tree.children("root")) == ["ab", "cd"]

    def test_ancestors(self, tiny_tree):
        assert tiny_tree.ancestors("C") == ["cd", "root"]

    def test_descendant_leaves(self, tiny_tree):
        assert tiny_tree.descendant_leaves("cd") == ["C", "D"]
        assert tiny_tree.descendant_leaves("A") == ["A"]

    def test_unknown_node(self, tiny_tree):
        with pytest.raises(KeyError):
            tiny_tree.parent("Z")

    def test_phylogenetic_diversity(self, tiny_tree):
        # A(1) + ab(1)
        assert tiny_tree.phylogenetic_diversity(["A"]) == 2.0
        # A(1) + B(2) + ab(1)
        assert tiny_tree.phylogenetic_diversity(["A", "B"]) == 4.0
        # shared path counted once: A + ab + C + cd + D
        assert tiny_tree.phylogenetic_diversity(["A", "C", "D"]) == 6.0
        assert tiny_tree.phylogenetic_diversity([]) == 0.0


class TestPrune:

    def test_collapses_unary_nodes(self, tiny_tree):
        pruned = tiny_tree.prune(["A", "C", "D"])
        assert sorted(pruned.leaves) == ["A", "C", "D"]
        assert "ab" not in pruned
        # ab(1) + A(1) merged into one edge
        assert pruned.branch_length("A") == 2.0
        assert pruned.phylogenetic_diversity(["A", "C", "D"]) == 6.0

    def test_drops_unary_root_chain(self, tiny_tree):
        pruned = tiny_tree.prune(["C", "D"])
        assert pruned.root == "cd"
        assert pruned.leaves == ["C", "D"]
        # the removed root -> cd edge moves above the new root
        assert pruned.root_length == 2.0
        assert pruned.phylogenetic_diversity(["C", "D"]) == tiny_tree.phylogenetic_diversity(["C", "D"])
        assert pruned.phylogenetic_diversity(["C"]) == 3.0

    def test_keeps_internal_targets(self, tiny_tree):
        pruned = tiny_tree.prune(["ab", "C"])
        assert "ab" in pruned
        assert pruned.is_leaf("ab")

    def test_empty_and_unknown(self, tiny_tree):
        with pytest.raises(ValueError):
            tiny_tree.prune([])
        with pytest.raises(KeyError):
            tiny_tree.prune(["Z"])


class TestFromTaxonomy:

    def test_builds_rank_hierarchy(self):
        taxonomy = pd.DataFrame({
            "phylum": ["Firmicutes", "Firmicutes", "Bacteroidota"],
            "genus": ["Blautia", None, "Bacteroides"],
        }, index=["otu1", "otu2", "otu3"])
        tree = PhyloTree.from_taxonomy(taxonomy, ["phylum", "genus"])
        assert sorted(tree.leaves) == ["otu1", "otu2", "otu3"]
        assert tree.parent("otu1") == "genus:Firmicutes;Blautia"
        # missing genus attaches to the phylum node
        assert tree.parent("otu2") == "phylum:Firmicutes"

    def test_missing_rank_column(self):
        with pytest.raises(ValueError, match="not found"):
            PhyloTree.from_taxonomy(pd.DataFrame({"phylum": ["x"]}, index=["a"]), ["genus"])
