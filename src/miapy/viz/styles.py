"""
Consistent visual styles for microbiome plots.

Domain Conventions
------------------
- Taxa use a qualitative palette (tab20); the aggregated remainder is
  always "Other" in light gray so it never competes with named taxa
- Unassigned/unknown taxa are a darker gray
- Associations use a diverging RdBu_r colormap centered on 0
  (red = positive, blue = negative)
- Abundances and distances use a perceptually uniform sequential map
- All palettes are colorblind-safe apart from the tab20 taxa fallback
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

import matplotlib.pyplot as plt
import seaborn as sns

__all__ = ['Palette', 'PALETTES', 'configure_style', 'significance_stars']


@dataclass(frozen=True)
class Palette:
    """
    Color palette for microbiome visualizations.

    Attributes
    ----------
    other : str
        Color for the aggregated "Other" taxa
    unknown : str
        Color for unassigned taxa
    highlight : str
        Color for highlighted elements (significant cells, selected taxa)
    neutral : str
        Color for points and boxes when no grouping is given
    diverging : str
        Colormap name for signed values (correlations)
    sequential : str
        Colormap name for magnitudes (abundance, distance)
    taxa : str
        Seaborn palette name for taxa
    groups : str
        Seaborn palette name for sample groups
    """
    other: str = "#d1d5db"       # Gray-300
    unknown: str = "#6b7280"     # Gray-500
    highlight: str = "#059669"   # Emerald-600
    neutral: str = "#2563eb"     # Blue-600
    diverging: str = "RdBu_r"
    sequential: str = "viridis"
    taxa: str = "tab20"
    groups: str = "Set2"

    @property
    def reserved(self) -> dict[str, str]:
        """Fixed colors for labels with a fixed meaning."""
        return {"Other": self.other, "Unknown": self.unknown, "Unassigned": self.unknown}

    def for_taxa(self, labels: Sequence[str]) -> dict[str, str]:
        """Label -> color for stacked abundance plots."""
        cycle = sns.color_palette(self.taxa, 20).as_hex()
        colors = {}
        i = 0
        for label in labels:
            if label in self.reserved:
                colors[label] = self.reserved[label]
            else:
                colors[label] = cycle[i % len(cycle)]
                i += 1
        return colors

    def for_groups(self, groups: Sequence[str]) -> dict[str, str]:
        """Group -> color for categorical sample annotations."""
        cycle = sns.color_palette(self.groups, max(len(groups), 3)).as_hex()
        return {group: cycle[i % len(cycle)] for i, group in enumerate(groups)}


PALETTES = {
    "default": Palette(),
    "colorblind": Palette(
        highlight="#009988",
        neutral="#0077bb",
        taxa="colorblind",
        groups="colorblind",
    ),
    "print": Palette(
        other="#e6e6e6",
        unknown="#999999",
        highlight="#000000",
        neutral="#333333",
        diverging="RdGy",
        sequential="Greys",
        taxa="Greys",
        groups="Greys",
    ),
}


def configure_style(
    style: Literal["paper", "presentation", "notebook"] = "paper",
    palette: str | Palette = "default",
    font_scale: float = 1.0
) -> Palette:
    """
    Configure matplotlib and seaborn for a target medium.

    Parameters
    ----------
    style : {"paper", "presentation", "notebook"}
        Target medium.
    palette : str or Palette
        Palette name (see PALETTES) or instance.
    font_scale : float
        Multiplier for all font sizes.

    Returns
    -------
    Palette
        The configured color palette.
    """
    if isinstance(palette, str):
        if palette not in PALETTES:
            raise ValueError(f"Unknown palette '{palette}'. Choose from: {', '.join(PALETTES)}")
        palette = PALETTES[palette]

    contexts = {"paper": ("paper", 300), "presentation": ("talk", 150), "notebook": ("notebook", 100)}
    if style not in contexts:
        raise ValueError(f"Unknown style '{style}'. Choose from: {', '.join(contexts)}")
    context, dpi = contexts[style]

    sns.set_theme(style="whitegrid", context=context, font_scale=font_scale)
    plt.rcParams.update({
        "figure.facecolor": "white",
        "axes.facecolor": "white",
        "axes.spines.top": False,
        "axes.spines.right": False,
        "legend.frameon": False,
        "figure.dpi": dpi,
        "savefig.dpi": max(dpi, 150),
    })
    return palette


def significance_stars(p: float, threshold: float = 0.05) -> str:
    """
    Stars for a p-value at or below `threshold` (*** < 0.001, ** < 0.01,
    otherwise *). Non-significant and NaN values give an empty string.
    """
    if p != p or p > threshold:
        return ""
    if p < 0.001:
        return "***"
    elif p < 0.01:
        return "**"
    return "*"
