"""Shared argparse type validators for CLI parameter bounds checking.

These validators produce clear error messages when users pass invalid
values (e.g., ``--p-adj-threshold 2``, ``--ncomponents 0``). They are
intended to be used as the ``type=`` argument in ``add_argument()``.
"""

from __future__ import annotations

import argparse


def _positive_int(value: str) -> int:
    """argparse type for positive integers (> 0)."""
    ivalue = int(value)
    if ivalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return ivalue


def _non_negative_float(value: str) -> float:
    """argparse type for floats >= 0 (pseudocounts, detection limits)."""
    fvalue = float(value)
    if fvalue < 0:
        raise argparse.ArgumentTypeError(f"{value} is not a non-negative number")
    return fvalue


def _significance_level(value: str) -> float:
    """argparse type for adjusted p-value cutoffs in (0, 1]."""
    fvalue = float(value)
    if not (0 < fvalue <= 1):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid significance level (must be in (0, 1])"
        )
    return fvalue
