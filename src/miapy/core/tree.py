"""
Rooted phylogenetic tree over experiment features.

PhyloTree stores the hierarchy as a networkx DiGraph (parent -> child) with
branch lengths on the edges. Features of a TreeExperiment are linked to tree
nodes through a separate link table, so the tree itself knows nothing about
assays or samples.

Biological Context:
    Microbiome features (OTUs, ASVs, species) are related by descent. The tree
    is used for:
    - Phylogenetic alpha diversity (Faith's PD)
    - Tree-aware beta diversity (UniFrac)
    - Collapsing features after agglomeration (pruning to representatives)

Engineering Design:
    - Node names are unique strings; unnamed Newick nodes get "node_<i>"
    - Edge attribute "length" holds the branch length (default 0.0)
    - All operations that change topology return a new PhyloTree

Examples:
    >>> from miapy.core.tree import PhyloTree
    >>> tree = PhyloTree.from_newick("((A:1,B:2)ab:1,C:3)root;")
    >>> tree.leaves
    ['A', 'B', 'C']
    >>> tree.phylogenetic_diversity(["A", "B"])
    4.0
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

import networkx as nx
import pandas as pd

__all__ = ['PhyloTree']


class _NewickParser:
    """Recursive-descent parser for Newick strings."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.graph = nx.DiGraph()
        self._unnamed = 0

    def parse(self) -> tuple[nx.DiGraph, str, float]:
        self._skip()
        root = self._subtree()
        root_length = self._length()
        self._skip()
        if self._peek() != ';':
            raise ValueError(
                f"Malformed Newick: expected ';' at position {self.pos}, "
                f"got {self._peek()!r}"
            )
        self.pos += 1
        self._skip()
        if self.pos != len(self.text):
            raise ValueError(f"Malformed Newick: trailing text at position {self.pos}")
        return self.graph, root, root_length

    def _peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ''

    def _skip(self) -> None:
        # whitespace and [comments]
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch.isspace():
                self.pos += 1
            elif ch == '[':
                end = self.text.find(']', self.pos)
                if end == -1:
                    raise ValueError("Malformed Newick: unterminated comment")
                self.pos = end + 1
            else:
                break

    def _subtree(self) -> str:
        children: list[tuple[str, float]] = []
        self._skip()
        if self._peek() == '(':
            self.pos += 1
            while True:
                child = self._subtree()
                children.append((child, self._length()))
                self._skip()
                ch = self._peek()
                if ch == ',':
                    self.pos += 1
                elif ch == ')':
                    self.pos += 1
                    break
                else:
                    raise ValueError(
                        f"Malformed Newick: expected ',' or ')' at position {self.pos}"
                    )

        name = self._label()
        if not name:
            name = f"node_{self._unnamed}"
            self._unnamed += 1
        if name in self.graph:
            raise ValueError(f"Duplicate node name in Newick: {name!r}")
        self.graph.add_node(name)
        for child, length in children:
            self.graph.add_edge(name, child, length=length)
        return name

    def _label(self) -> str:
        self._skip()
        if self._peek() in ("'", '"'):
            quote = self._peek()
            parts = []
            start = self.pos + 1
            while True:
                end = self.text.find(quote, start)
                if end == -1:
                    raise ValueError("Malformed Newick: unterminated quoted label")
                parts.append(self.text[start:end])
                # a doubled quote stands for one literal quote
                if self.text[end + 1:end + 2] == quote:
                    parts.append(quote)
                    start = end + 2
                    continue
                self.pos = end + 1
                return "".join(parts)
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos] not in '(),:;[' \
                and not self.text[self.pos].isspace():
            self.pos += 1
        return self.text[start:self.pos]

    def _length(self) -> float:
        self._skip()
        if self._peek() != ':':
            return 0.0
        self.pos += 1
        self._skip()
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos] not in '(),;[' \
                and not self.text[self.pos].isspace():
            self.pos += 1
        token = self.text[start:self.pos]
        try:
            return float(token)
        except ValueError as e:
            raise ValueError(f"Malformed Newick: invalid branch length {token!r}") from e


def _format_length(length: float) -> str:
    # repr is the shortest string that parses back to the same float
    return repr(float(length))


def _quote(name: str) -> str:
    if any(ch in name for ch in "(),:;[] '\"\t"):
        return "'" + name.replace("'", "''") + "'"
    return name


class PhyloTree:
    """
    Immutable rooted tree with named nodes and branch lengths.

    Attributes:
        graph: networkx.DiGraph with edges parent -> child and "length" attribute
        root: Name of the root node
        root_length: Length of the edge above the root (0.0 unless read from
            Newick or left behind by prune)

    Invariants:
        - graph is a tree (arborescence) rooted at root
        - every node name is a unique string
    """

    def __init__(self, graph: nx.DiGraph, root: Optional[str] = None, root_length: float = 0.0):
        if not isinstance(graph, nx.DiGraph):
            raise TypeError(f"graph must be networkx.DiGraph, got {type(graph)}")
        if graph.number_of_nodes() == 0:
            raise ValueError("Tree must contain at least one node")
        if not nx.is_arborescence(graph):
            raise ValueError("graph must be a rooted tree (arborescence)")

        roots = [n for n, d in graph.in_degree() if d == 0]
        if root is None:
            root = roots[0]
        elif root != roots[0]:
            raise ValueError(f"root {root!r} is not the root of graph ({roots[0]!r})")

        self._graph = graph
        self._root = root
        self._root_length = float(root_length)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_newick(cls, text: str) -> PhyloTree:
        """Parse a Newick string (names, branch lengths, quoted labels, comments)."""
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Newick text is empty")
        graph, root, root_length = _NewickParser(text.strip()).parse()
        return cls(graph, root, root_length)

    @classmethod
    def from_taxonomy(
        cls,
        row_metadata: pd.DataFrame,
        ranks: Sequence[str],
        root_name: str = "root",
    ) -> PhyloTree:
        """
        Build a taxonomy tree: one internal node per rank label, features as leaves.

        Internal nodes are named "<rank>:<path>" so that the same label at
        different positions of the hierarchy does not collide. Missing rank
        values are skipped, attaching the node to its deepest known ancestor.
        All branch lengths are 1.0.
        """
        missing = [r for r in ranks if r not in row_metadata.columns]
        if missing:
            raise ValueError(f"Rank columns not found in row metadata: {missing}")

        graph = nx.DiGraph()
        graph.add_node(root_name)
        for feature, row in row_metadata[list(ranks)].iterrows():
            parent = root_name
            path: list[str] = []
            for rank in ranks:
                value = row[rank]
                if pd.isna(value) or str(value).strip() == "":
                    continue
                path.append(str(value))
                node = f"{rank}:{';'.join(path)}"
                if node not in graph:
                    graph.add_edge(parent, node, length=1.0)
                parent = node
            leaf = str(feature)
            if leaf in graph:
                raise ValueError(f"Feature id {leaf!r} collides with a taxonomy node")
            graph.add_edge(parent, leaf, length=1.0)
        return cls(graph, root_name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def graph(self) -> nx.DiGraph:
        """Underlying directed graph (parent -> child)."""
        return self._graph

    @property
    def root(self) -> str:
        return self._root

    @property
    def root_length(self) -> float:
        return self._root_length

    @property
    def nodes(self) -> list[str]:
        return list(self._graph.nodes)

    @property
    def leaves(self) -> list[str]:
        """Tip names in depth-first order."""
        return [n for n in nx.dfs_preorder_nodes(self._graph, self._root)
                if self._graph.out_degree(n) == 0]

    @property
    def n_nodes(self) -> int:
        return self._graph.number_of_nodes()

    @property
    def n_leaves(self) -> int:
        return sum(1 for _, d in self._graph.out_degree() if d == 0)

    def __contains__(self, node: object) -> bool:
        return node in self._graph

    def is_leaf(self, node: str) -> bool:
        self._check_node(node)
        return self._graph.out_degree(node) == 0

    def parent(self, node: str) -> Optional[str]:
        self._check_node(node)
        preds = list(self._graph.predecessors(node))
        return preds[0] if preds else None

    def children(self, node: str) -> list[str]:
        self._check_node(node)
        return list(self._graph.successors(node))

    def branch_length(self, node: str) -> float:
        """Length of the edge leading to node (root_length for the root)."""
        parent = self.parent(node)
        if parent is None:
            return self._root_length
        return float(self._graph.edges[parent, node].get("length", 0.0))

    def ancestors(self, node: str) -> list[str]:
        """Ancestors of node ordered from parent up to the root."""
        result = []
        current = self.parent(node)
        while current is not None:
            result.append(current)
            current = self.parent(current)
        return result

    def descendant_leaves(self, node: str) -> list[str]:
        self._check_node(node)
        if self._graph.out_degree(node) == 0:
            return [node]
        return [n for n in nx.dfs_preorder_nodes(self._graph, node)
                if self._graph.out_degree(n) == 0]

    def phylogenetic_diversity(self, nodes: Iterable[str]) -> float:
        """
        Faith's PD: total branch length of the union of root-to-node paths.

        A single node contributes the sum of branch lengths on its path to the
        root, plus root_length.
        """
        covered: set[str] = set()
        for node in nodes:
            self._check_node(node)
            current: Optional[str] = node
            while current is not None and current not in covered:
                covered.add(current)
                current = self.parent(current)
        return float(sum(self.branch_length(n) for n in covered))

    # ------------------------------------------------------------------
    # Topology changes
    # ------------------------------------------------------------------

    def prune(self, keep: Iterable[str]) -> PhyloTree:
        """
        Return the subtree spanning the given nodes.

        Nodes off every root-to-kept path are removed and unary internal nodes
        are collapsed, with branch lengths summed. Kept nodes are never
        collapsed, even if they become unary.

        A unary chain above the first split is removed too; its total length
        moves to root_length so root-to-tip depths and Faith's PD are the same
        as on the original tree.
        """
        keep = set(keep)
        if not keep:
            raise ValueError("Cannot prune tree to an empty node set")
        unknown = keep.difference(self._graph.nodes)
        if unknown:
            raise KeyError(f"Nodes not in tree: {sorted(unknown)[:5]}")

        retained = set(keep)
        for node in keep:
            retained.update(self.ancestors(node))
        sub = self._graph.subgraph(retained).copy()

        # collapse unary internal nodes that were not explicitly kept
        for node in list(nx.dfs_postorder_nodes(sub, self._root)):
            if node in keep:
                continue
            succ = list(sub.successors(node))
            if len(succ) != 1:
                continue
            child = succ[0]
            preds = list(sub.predecessors(node))
            if not preds:
                continue
            parent = preds[0]
            length = sub.edges[parent, node].get("length", 0.0) + \
                sub.edges[node, child].get("length", 0.0)
            sub.remove_node(node)
            sub.add_edge(parent, child, length=length)

        root = self._root
        root_length = self._root_length
        # drop a unary root chain so the pruned tree starts at the first split
        while root not in keep and sub.out_degree(root) == 1:
            child = next(iter(sub.successors(root)))
            root_length += sub.edges[root, child].get("length", 0.0)
            sub.remove_node(root)
            root = child

        return PhyloTree(sub, root, root_length)

    def to_newick(self) -> str:
        def render(node: str) -> str:
            kids = list(self._graph.successors(node))
            label = _quote(node)
            if kids:
                inner = ",".join(
                    f"{render(k)}:{_format_length(self._graph.edges[node, k].get('length', 0.0))}"
                    for k in kids
                )
                return f"({inner}){label}"
            return label

        text = render(self._root)
        if self._root_length:
            text += f":{_format_length(self._root_length)}"
        return text + ";"

    def copy(self) -> PhyloTree:
        return PhyloTree(self._graph.copy(), self._root, self._root_length)

    def _check_node(self, node: str) -> None:
        if node not in self._graph:
            raise KeyError(f"Node not in tree: {node!r}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PhyloTree):
            return NotImplemented
        return self.to_newick() == other.to_newick()

    def __repr__(self) -> str:
        return f"PhyloTree({self.n_leaves} leaves, {self.n_nodes} nodes, root={self._root!r})"
