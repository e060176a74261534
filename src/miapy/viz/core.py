"""
Figure containers returned by the miapy plotting functions.

A plot is more than its pixels: the diversity index, rank or assay behind it
has to travel with it so the file written to disk can be traced back to the
analysis. `Figure` carries a matplotlib figure together with that context,
and `FigureSet` groups the figures of one analysis run (one alpha plot per
index plus an ordination, say) so they can be written and closed together.

Supported output formats are png, pdf and svg (written by matplotlib) and
html, which wraps an embedded png with the title and description as caption.
"""

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from html import escape
from pathlib import Path
from typing import Iterator, Literal, Optional

import matplotlib.figure
import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)

__all__ = ['Figure', 'FigureSet']

OutputFormat = Literal["png", "pdf", "svg", "html"]
_FORMATS = ("png", "pdf", "svg", "html")

_HTML_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>{title}</title></head>
<body style="margin:0;display:flex;justify-content:center;background:#f5f5f5;">
<figure><img src="data:image/png;base64,{image}" alt="{title}">
<figcaption>{caption}</figcaption></figure>
</body></html>
"""


def _resolve_format(path: Path, format: Optional[str]) -> str:
    if format is None:
        suffix = path.suffix.lstrip(".").lower()
        return suffix if suffix in _FORMATS else "png"
    if format not in _FORMATS:
        raise ValueError(f"Unsupported format '{format}'. Choose from: {', '.join(_FORMATS)}")
    return format


@dataclass
class Figure:
    """
    A matplotlib figure plus what it shows and how it was made.

    Attributes
    ----------
    fig : matplotlib.figure.Figure
        The drawn figure
    title : str
        Short title, also used for html pages
    description : str
        One-line summary of the content (group sizes, number of features)
    metadata : dict
        Plot parameters (assay, index, rank, grouping column); a
        "created_at" timestamp is added on construction

    Examples
    --------
    >>> figure = plot_alpha(exp, "shannon", group_by="body_site")
    >>> figure.description
    'shannon by body_site: gut (n=4), skin (n=4)'
    >>> figure.save("figures/shannon.svg")
    """
    fig: matplotlib.figure.Figure
    title: str
    description: str = ""
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.metadata.setdefault("created_at", datetime.now().isoformat())

    @property
    def axes(self) -> list:
        return self.fig.axes

    def save(
        self,
        path: Path | str,
        format: Optional[OutputFormat] = None,
        dpi: int = 300,
        **kwargs
    ) -> Path:
        """
        Write the figure to `path`, creating parent directories.

        The format comes from `format` or else the file extension; unknown
        extensions are written as png. Extra keyword arguments go to
        matplotlib's savefig.
        """
        path = Path(path)
        format = _resolve_format(path, format)
        path.parent.mkdir(parents=True, exist_ok=True)

        if format == "html":
            page = _HTML_PAGE.format(
                title=escape(self.title),
                image=self.to_base64(dpi=dpi),
                caption=escape(self.description),
            )
            path.write_text(page, encoding="utf-8")
        else:
            options = {"dpi": dpi, "bbox_inches": "tight", "facecolor": "white", **kwargs}
            self.fig.savefig(path, format=format, **options)
        logger.debug(f"Saved '{self.title}' to {path}")
        return path

    def to_base64(self, format: str = "png", dpi: int = 150) -> str:
        """The rendered figure as a base64 string (for html embedding)."""
        buffer = io.BytesIO()
        self.fig.savefig(buffer, format=format, dpi=dpi, bbox_inches="tight")
        return base64.b64encode(buffer.getvalue()).decode("ascii")

    def close(self) -> None:
        plt.close(self.fig)

    def __repr__(self) -> str:
        return f"Figure({self.title!r}, {len(self.axes)} axes)"


class FigureSet:
    """
    Named figures from one analysis, saved and closed as a unit.

    Examples
    --------
    >>> figures = FigureSet()
    >>> figures.add("alpha_shannon", plot_alpha(exp, "shannon"))
    >>> figures.add("mds_bray", plot_ordination(exp, "MDS"))
    >>> paths = figures.save_all("results/figures")
    >>> figures.close()
    """

    def __init__(self) -> None:
        self._figures: dict[str, Figure] = {}

    def add(self, name: str, figure: Figure) -> None:
        """Register a figure; an existing figure with the same name is closed and replaced."""
        if name in self._figures:
            self._figures[name].close()
        self._figures[name] = figure

    def __getitem__(self, name: str) -> Figure:
        return self._figures[name]

    def __len__(self) -> int:
        return len(self._figures)

    def __iter__(self) -> Iterator[str]:
        return iter(self._figures)

    def save_all(self, directory: Path | str, format: OutputFormat = "png", dpi: int = 300) -> list[Path]:
        """Write every figure as `<directory>/<name>.<format>`."""
        directory = Path(directory)
        paths = [figure.save(directory / f"{name}.{format}", format=format, dpi=dpi)
                 for name, figure in self._figures.items()]
        logger.info(f"Wrote {len(paths)} figures to {directory}")
        return paths

    def close(self) -> None:
        for figure in self._figures.values():
            figure.close()
        self._figures.clear()
