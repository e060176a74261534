"""Utility modules for file output and dependency management."""

from miapy.utils.fileio import (
    atomic_write_json,
    atomic_write_text,
    atomic_write_frame,
)
from miapy.utils.dependencies import (
    CORE_PACKAGES,
    missing_packages,
    ensure_packages,
)

__all__ = [
    # Atomic file-write utilities
    'atomic_write_json',
    'atomic_write_text',
    'atomic_write_frame',
    # Dependency bootstrap
    'CORE_PACKAGES',
    'missing_packages',
    'ensure_packages',
]
