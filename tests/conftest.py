"""
Pytest configuration and shared fixtures.

Provides a synthetic microbiome generator (counts, taxonomy, tree, sample
metadata) and a tiny hand-checkable experiment used for exact values.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from miapy.core.experiment import TreeExperiment
from miapy.core.tree import PhyloTree


TINY_NEWICK = "((A:1,B:2)ab:1,(C:1,D:1)cd:2)root;"


def generate_synthetic_microbiome(
    n_features: int = 12,
    n_samples: int = 8,
    zero_fraction: float = 0.3,
    seed: int = 42,
) -> TreeExperiment:
    """
    Generate a synthetic amplicon experiment with realistic properties.

    Args:
        n_features: Number of ASVs (must be a multiple of 4)
        n_samples: Number of samples (even)
        zero_fraction: Fraction of cells forced to zero
        seed: Random seed for reproducibility

    Returns:
        TreeExperiment with a "counts" assay, taxonomy row metadata, a tree
        whose tips are the ASV ids, and sample metadata

    Design:
        - Negative binomial counts (overdispersed, like sequencing data)
        - Two ASVs per genus, two genera per family, tree mirrors taxonomy
        - The last ASV has no genus assignment
        - ASV0 is present in every sample so no library is empty
    """
    rng = np.random.RandomState(seed)

    counts = rng.negative_binomial(2, 0.05, size=(n_features, n_samples)).astype(float)
    counts[rng.rand(n_features, n_samples) < zero_fraction] = 0.0
    counts[0, :] += 5

    feature_ids = pd.Index([f"ASV{i}" for i in range(n_features)])
    sample_ids = pd.Index([f"S{j:02d}" for j in range(n_samples)])

    genus = [f"Genus{i // 2}" for i in range(n_features)]
    genus[-1] = None
    row_metadata = pd.DataFrame({
        "kingdom": ["Bacteria"] * n_features,
        "phylum": ["Firmicutes" if (i // 4) % 2 == 0 else "Bacteroidota" for i in range(n_features)],
        "family": [f"Family{i // 4}" for i in range(n_features)],
        "genus": genus,
    }, index=feature_ids)

    genera = [f"(ASV{2 * k}:1,ASV{2 * k + 1}:0.5)g{k}:1" for k in range(n_features // 2)]
    families = [f"({genera[2 * j]},{genera[2 * j + 1]})f{j}:2" for j in range(n_features // 4)]
    tree = PhyloTree.from_newick("(" + ",".join(families) + ")root;")

    sample_metadata = pd.DataFrame({
        "body_site": ["gut" if j % 2 == 0 else "skin" for j in range(n_samples)],
        "subject": [f"subj{j // 2}" for j in range(n_samples)],
        "age": rng.randint(20, 70, size=n_samples),
    }, index=sample_ids)

    return TreeExperiment(
        assays={"counts": counts},
        feature_ids=feature_ids,
        sample_ids=sample_ids,
        row_metadata=row_metadata,
        sample_metadata=sample_metadata,
        row_tree=tree,
    )


@pytest.fixture
def tiny_tree():
    """Four tips: A, B under ab; C, D under cd."""
    return PhyloTree.from_newick(TINY_NEWICK)


@pytest.fixture
def tiny_experiment(tiny_tree):
    """
    4 features × 3 samples with exact, hand-checkable values.

        counts  S1  S2  S3      genus   family
        A       10   0   5      Gen1    FamX
        B        0   3   5      Gen1    FamX
        C        2   2   0      Gen2    FamY
        D        8   5   0      (none)  FamY
    """
    counts = np.array([
        [10, 0, 5],
        [0, 3, 5],
        [2, 2, 0],
        [8, 5, 0],
    ], dtype=float)
    feature_ids = pd.Index(["A", "B", "C", "D"])
    sample_ids = pd.Index(["S1", "S2", "S3"])
    row_metadata = pd.DataFrame({
        "kingdom": ["Bacteria"] * 4,
        "family": ["FamX", "FamX", "FamY", "FamY"],
        "genus": ["Gen1", "Gen1", "Gen2", None],
    }, index=feature_ids)
    sample_metadata = pd.DataFrame({
        "group": ["ctrl", "ctrl", "treat"],
        "subject": ["p1", "p2", "p3"],
    }, index=sample_ids)
    return TreeExperiment(
        assays={"counts": counts},
        feature_ids=feature_ids,
        sample_ids=sample_ids,
        row_metadata=row_metadata,
        sample_metadata=sample_metadata,
        row_tree=tiny_tree,
    )


@pytest.fixture
def small_experiment():
    """Synthetic 12 ASVs × 8 samples for fast unit tests."""
    return generate_synthetic_microbiome(n_features=12, n_samples=8, seed=42)


@pytest.fixture
def medium_experiment():
    """Synthetic 40 ASVs × 30 samples for statistics tests."""
    return generate_synthetic_microbiome(n_features=40, n_samples=30, seed=7)


@pytest.fixture
def csv_inputs(tmp_path, small_experiment):
    """small_experiment written as counts/taxonomy/samples CSVs plus a Newick file."""
    exp = small_experiment
    counts = tmp_path / "counts.csv"
    taxonomy = tmp_path / "taxonomy.csv"
    samples = tmp_path / "samples.csv"
    tree = tmp_path / "tree.nwk"
    exp.assay_frame("counts").to_csv(counts)
    exp.row_metadata.to_csv(taxonomy)
    exp.sample_metadata.to_csv(samples)
    tree.write_text(exp.row_tree.to_newick() + "\n")
    return {"counts": counts, "row_data": taxonomy, "sample_data": samples, "tree": tree}
