"""
Standard microbiome plots.

Each function answers one question about an experiment and returns a
Figure (see viz.core):

- plot_abundance: What is the community made of? (stacked bars, top taxa)
- plot_alpha: Do groups differ in diversity? (box + strip plot)
- plot_ordination: Do samples cluster by group? (PCoA scatter)
- plot_association_heatmap: Which features co-vary? (correlation heatmap)
"""

from __future__ import annotations

from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from miapy.core.experiment import TreeExperiment
from miapy.stats.agglomeration import agglomerate_by_rank
from miapy.stats.association import AssociationResult
from miapy.stats.prevalence import get_top_features
from miapy.viz.core import Figure
from miapy.viz.styles import PALETTES, Palette, significance_stars

__all__ = [
    'plot_abundance',
    'plot_alpha',
    'plot_ordination',
    'plot_association_heatmap',
]


def _palette(palette: str | Palette) -> Palette:
    if isinstance(palette, Palette):
        return palette
    if palette not in PALETTES:
        raise ValueError(f"Unknown palette '{palette}'. Choose from: {', '.join(PALETTES)}")
    return PALETTES[palette]


def _sample_column(experiment: TreeExperiment, column: str, hint: str = "") -> pd.Series:
    if column not in experiment.sample_metadata.columns:
        raise KeyError(
            f"Column '{column}' not in sample metadata{hint}. "
            f"Available: {list(experiment.sample_metadata.columns)}"
        )
    return experiment.sample_metadata[column]


def plot_abundance(
    experiment: TreeExperiment,
    rank: Optional[str] = None,
    assay_name: str = "relabundance",
    top: int = 10,
    group_by: Optional[str] = None,
    palette: str | Palette = "default",
    figsize: tuple[float, float] = (12, 6),
) -> Figure:
    """
    Stacked bar chart of the `top` most abundant features per sample.

    Features outside the top are summed into "Other". With `rank`, features
    are agglomerated to that rank first. With `group_by`, samples are ordered
    by group and groups are separated by vertical lines.
    """
    pal = _palette(palette)
    if rank is not None:
        experiment = agglomerate_by_rank(experiment, rank)
    frame = experiment.assay_frame(assay_name)

    top_ids = get_top_features(experiment, assay_name, top=top, method="mean")
    shown = frame.loc[top_ids]
    rest = frame.drop(index=top_ids)
    if len(rest):
        shown = pd.concat([shown, rest.sum(axis=0).to_frame("Other").T])
    shown.index = shown.index.astype(str)

    # order samples by group, then by the most abundant feature
    order = pd.DataFrame({"lead": shown.iloc[0].to_numpy()}, index=frame.columns)
    sort_cols = ["lead"]
    ascending = [False]
    if group_by is not None:
        order["group"] = _sample_column(experiment, group_by).astype(str).to_numpy()
        sort_cols, ascending = ["group", "lead"], [True, False]
    order = order.sort_values(sort_cols, ascending=ascending, kind="stable")
    shown = shown[order.index]

    fig, ax = plt.subplots(figsize=figsize)
    colors = pal.for_taxa(list(shown.index))
    x = np.arange(shown.shape[1])
    bottom = np.zeros(shown.shape[1])
    for label, row in shown.iterrows():
        values = np.nan_to_num(row.to_numpy(dtype=float))
        ax.bar(x, values, bottom=bottom, width=0.9, color=colors[label], label=label, linewidth=0)
        bottom += values

    if group_by is not None:
        groups = order["group"].to_numpy()
        boundaries = np.flatnonzero(groups[1:] != groups[:-1]) + 1
        for b in boundaries:
            ax.axvline(b - 0.5, color="black", linewidth=1)
        starts = np.concatenate([[0], boundaries])
        ends = np.concatenate([boundaries, [len(groups)]])
        for start, end in zip(starts, ends):
            ax.text((start + end - 1) / 2, 1.01, groups[start], transform=ax.get_xaxis_transform(),
                    ha="center", va="bottom", fontsize=9)

    ax.set_xticks(x)
    ax.set_xticklabels(shown.columns.astype(str), rotation=90, fontsize=7)
    ax.set_xlim(-0.5, shown.shape[1] - 0.5)
    ax.set_ylabel(assay_name)
    ax.set_xlabel("Sample")
    ax.legend(title=rank or "Feature", bbox_to_anchor=(1.01, 1), loc="upper left", fontsize=8)
    fig.tight_layout()

    level = rank or "feature"
    return Figure(
        fig=fig,
        title=f"Top {top} {level} composition",
        description=f"{assay_name} of the {len(top_ids)} most abundant {level} entries "
                    f"across {experiment.n_samples} samples",
        metadata={"assay_name": assay_name, "rank": rank, "top": top, "group_by": group_by},
    )


def plot_alpha(
    experiment: TreeExperiment,
    index: str,
    group_by: Optional[str] = None,
    palette: str | Palette = "default",
    figsize: tuple[float, float] = (6, 5),
) -> Figure:
    """Box plot of an alpha index (a sample metadata column) with points on top."""
    pal = _palette(palette)
    values = _sample_column(experiment, index, hint=" (run estimate_diversity first?)")
    data = pd.DataFrame({index: values.to_numpy(dtype=float)})

    fig, ax = plt.subplots(figsize=figsize)
    if group_by is None:
        sns.boxplot(data=data, y=index, color=pal.neutral, showfliers=False,
                    boxprops={"alpha": 0.4}, ax=ax)
        sns.stripplot(data=data, y=index, color=pal.neutral, size=4, alpha=0.8, ax=ax)
        description = f"{index} across {len(data)} samples"
    else:
        data[group_by] = _sample_column(experiment, group_by).astype(str).to_numpy()
        groups = sorted(data[group_by].unique())
        colors = pal.for_groups(groups)
        sns.boxplot(data=data, x=group_by, y=index, hue=group_by, order=groups, palette=colors,
                    showfliers=False, boxprops={"alpha": 0.4}, legend=False, ax=ax)
        sns.stripplot(data=data, x=group_by, y=index, hue=group_by, order=groups, palette=colors,
                      size=4, alpha=0.8, jitter=0.2, legend=False, ax=ax)
        counts = data[group_by].value_counts()
        description = f"{index} by {group_by}: " + ", ".join(f"{g} (n={counts[g]})" for g in groups)

    ax.set_ylabel(index)
    ax.set_title(index)
    fig.tight_layout()
    return Figure(
        fig=fig,
        title=f"Alpha diversity: {index}",
        description=description,
        metadata={"index": index, "group_by": group_by},
    )


def plot_ordination(
    experiment: TreeExperiment,
    dimred: str = "MDS",
    color_by: Optional[str] = None,
    palette: str | Palette = "default",
    figsize: tuple[float, float] = (6, 5),
) -> Figure:
    """
    Scatter of the first two axes of a reduced dimension.

    Axis labels carry the explained variance when metadata["<dimred>_eig"]
    is present (as written by run_mds). Categorical `color_by` columns get a
    legend, numeric ones a colorbar.
    """
    pal = _palette(palette)
    coords = experiment.reduced_dim(dimred)
    if coords.shape[1] == 0:
        raise ValueError(f"Reduced dimension '{dimred}' has no components")
    xs = coords.iloc[:, 0].to_numpy(dtype=float)
    ys = coords.iloc[:, 1].to_numpy(dtype=float) if coords.shape[1] > 1 else np.zeros(len(xs))

    eig = list(experiment.metadata.get(f"{dimred}_eig", []))
    labels = []
    for i, column in enumerate(coords.columns[:2]):
        labels.append(f"{column} ({eig[i]:.1%})" if i < len(eig) else str(column))
    if len(labels) == 1:
        labels.append("")

    fig, ax = plt.subplots(figsize=figsize)
    if color_by is None:
        ax.scatter(xs, ys, s=30, color=pal.neutral, alpha=0.8, edgecolors="none")
    else:
        values = _sample_column(experiment, color_by)
        if pd.api.types.is_numeric_dtype(values):
            points = ax.scatter(xs, ys, s=30, c=values.to_numpy(dtype=float), cmap=pal.sequential,
                                alpha=0.9, edgecolors="none")
            fig.colorbar(points, ax=ax, label=color_by)
        else:
            groups = values.astype(str)
            colors = pal.for_groups(sorted(groups.unique()))
            for group, color in colors.items():
                mask = (groups == group).to_numpy()
                ax.scatter(xs[mask], ys[mask], s=30, color=color, alpha=0.8,
                           edgecolors="none", label=f"{group} (n={mask.sum()})")
            ax.legend(title=color_by, bbox_to_anchor=(1.01, 1), loc="upper left")

    ax.set_xlabel(labels[0])
    ax.set_ylabel(labels[1])
    ax.axhline(0, color="#9ca3af", linewidth=0.5)
    ax.axvline(0, color="#9ca3af", linewidth=0.5)
    fig.tight_layout()
    return Figure(
        fig=fig,
        title=f"Ordination: {dimred}",
        description=f"{experiment.n_samples} samples on the first two {dimred} axes",
        metadata={"dimred": dimred, "color_by": color_by},
    )


def plot_association_heatmap(
    result: AssociationResult,
    p_threshold: float = 0.05,
    palette: str | Palette = "default",
    figsize: Optional[tuple[float, float]] = None,
) -> Figure:
    """
    Heatmap of a cross-association; cells with p_adj <= p_threshold are starred.

    Undefined (NaN) correlations are left blank.
    """
    pal = _palette(palette)
    cor = result.cor
    if figsize is None:
        figsize = (max(4.0, 0.4 * cor.shape[1] + 2), max(3.0, 0.35 * cor.shape[0] + 1.5))

    if result.p_adj is not None:
        stars = result.p_adj.apply(lambda col: col.map(lambda p: significance_stars(p, p_threshold)))
        annot = stars.to_numpy()
        n_significant = int((result.p_adj <= p_threshold).sum().sum())
    else:
        annot = False
        n_significant = 0

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(cor, cmap=pal.diverging, center=0, vmin=-1, vmax=1, annot=annot, fmt="",
                annot_kws={"color": "black", "fontsize": 8}, linewidths=0.5, linecolor="white",
                cbar_kws={"label": f"{result.method} correlation"}, ax=ax)
    ax.set_xlabel("")
    ax.set_ylabel("")
    fig.tight_layout()
    return Figure(
        fig=fig,
        title=f"{result.method.capitalize()} associations",
        description=f"{cor.shape[0]} × {cor.shape[1]} features; "
                    f"{n_significant} pairs with adjusted p <= {p_threshold}",
        metadata={"method": result.method, "p_threshold": p_threshold},
    )
