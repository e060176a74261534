"""
Visualization for microbiome experiments.

All plotting functions return a Figure wrapper with save()/close().

Examples:
    >>> from miapy.viz import configure_style, plot_alpha
    >>> configure_style("paper")
    >>> fig = plot_alpha(exp, "shannon", group_by="body_site")
    >>> fig.save("figures/shannon.pdf")
"""

from miapy.viz.core import Figure, FigureSet
from miapy.viz.styles import Palette, PALETTES, configure_style, significance_stars
from miapy.viz.plots import (
    plot_abundance,
    plot_alpha,
    plot_ordination,
    plot_association_heatmap,
)

__all__ = [
    'Figure',
    'FigureSet',
    'Palette',
    'PALETTES',
    'configure_style',
    'significance_stars',
    'plot_abundance',
    'plot_alpha',
    'plot_ordination',
    'plot_association_heatmap',
]
