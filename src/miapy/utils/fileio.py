"""
Atomic file writes for experiment output.

Every writer goes through a temporary file in the destination directory
followed by ``os.replace()``, so an interrupted run never leaves a truncated
manifest or table behind. Readers see either the previous file or the
complete new one.
"""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Iterator, TextIO

import pandas as pd

__all__ = ['atomic_write_json', 'atomic_write_text', 'atomic_write_frame']


@contextmanager
def _atomic_handle(path: str | os.PathLike) -> Iterator[TextIO]:
    """Yield a text handle whose content replaces *path* only on success."""
    path = os.fspath(path)
    dir_path = os.path.dirname(path) or "."
    tmp_path: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w", dir=dir_path, suffix=".tmp", delete=False, encoding="utf-8", newline=""
        ) as tmp:
            tmp_path = tmp.name
            yield tmp
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def atomic_write_json(path: str | os.PathLike, data: Any, *, indent: int = 2) -> None:
    """Serialize *data* to JSON at *path* atomically."""
    with _atomic_handle(path) as handle:
        json.dump(data, handle, indent=indent)
        handle.write("\n")


def atomic_write_text(path: str | os.PathLike, content: str) -> None:
    """Write *content* to *path* atomically."""
    with _atomic_handle(path) as handle:
        handle.write(content)


def atomic_write_frame(path: str | os.PathLike, frame: pd.DataFrame, *, index: bool = True) -> None:
    """Write a DataFrame as CSV to *path* atomically.

    Parameters
    ----------
    path:
        Destination CSV path.
    frame:
        Table to write. The index is written as the first column unless
        ``index=False``.
    """
    with _atomic_handle(path) as handle:
        frame.to_csv(handle, index=index)
