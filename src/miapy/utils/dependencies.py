"""
Dependency bootstrap for optional analysis stacks.

ensure_packages() takes the import names an analysis needs, finds the ones
that are not importable, optionally installs them with pip into the running
interpreter, then imports every requested package. Anything that still
fails to import is reported in a single ImportError naming all of them.

Examples:
    >>> from miapy.utils.dependencies import ensure_packages
    >>> modules = ensure_packages(["numpy", "scipy"])
    >>> modules["numpy"].__name__
    'numpy'
    >>> ensure_packages(["yaml"], install=True, pip_names={"yaml": "pyyaml"})
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
import subprocess
import sys
from types import ModuleType
from typing import Callable, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

__all__ = ['missing_packages', 'ensure_packages', 'CORE_PACKAGES']

# import name -> distribution name on the package index
CORE_PACKAGES = {
    "numpy": "numpy",
    "pandas": "pandas",
    "scipy": "scipy",
    "statsmodels": "statsmodels",
    "networkx": "networkx",
    "matplotlib": "matplotlib",
    "seaborn": "seaborn",
    "sklearn": "scikit-learn",
    "yaml": "pyyaml",
}


def missing_packages(names: Sequence[str]) -> list[str]:
    """Names from `names` that cannot be found on the import path, in order."""
    missing = []
    for name in names:
        try:
            found = importlib.util.find_spec(name) is not None
        except (ImportError, ValueError):
            found = False
        if not found and name not in missing:
            missing.append(name)
    return missing


def ensure_packages(
    names: Sequence[str],
    install: bool = False,
    pip_names: Optional[Mapping[str, str]] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> dict[str, ModuleType]:
    """
    Make sure every package in `names` can be imported and return the modules.

    Args:
        names: Import names
        install: pip-install missing packages before importing
        pip_names: Import name -> pip distribution name, where they differ
        runner: subprocess.run-compatible callable used to invoke pip

    Returns:
        Mapping of import name -> imported module

    Raises:
        ImportError: Naming every package that could not be imported
    """
    pip_names = dict(pip_names or {})
    missing = missing_packages(names)
    if missing:
        logger.info(f"Missing packages: {missing}")

    if missing and install:
        targets = [pip_names.get(name, CORE_PACKAGES.get(name, name)) for name in missing]
        command = [sys.executable, "-m", "pip", "install", *targets]
        logger.info(f"Installing: {' '.join(targets)}")
        try:
            runner(command, check=True)
        except (subprocess.CalledProcessError, OSError) as e:
            logger.error(f"pip install failed: {e}")
        importlib.invalidate_caches()

    modules: dict[str, ModuleType] = {}
    failed: list[str] = []
    for name in names:
        try:
            modules[name] = importlib.import_module(name)
        except ImportError as e:
            logger.debug(f"Import of {name} failed: {e}")
            failed.append(name)

    if failed:
        hint = "" if install else " (run with install=True to install them)"
        raise ImportError(f"Failed to load packages: {', '.join(failed)}{hint}")
    return modules
