"""
Configuration file support for the miapy CLI.

Supports YAML and JSON config files with CLI argument override. One file can
configure every command; each command reads the top-level paths plus its
own section:

    input: data/counts.csv
    row_data: data/taxonomy.csv
    sample_data: data/samples.csv
    tree: data/tree.nwk
    output: results/
    transform:
      method: clr
      pseudocount: 1
    agglomeration:
      rank: genus
    diversity:
      index: [shannon, observed, faith]
      mds_method: bray
    association:
      method: spearman
      p_adj_method: fdr_bh
"""

import json
from argparse import Namespace
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from miapy.stats.agglomeration import AGGREGATORS, TAXONOMY_RANKS
from miapy.stats.association import ASSOCIATION_METHODS
from miapy.stats.diversity import ALPHA_INDICES, DISSIMILARITY_METHODS
from miapy.stats.transforms import TRANSFORM_METHODS


@dataclass
class TransformConfig:
    """Assay transformation configuration."""
    method: str = "relabundance"
    assay_name: str = "counts"
    name: Optional[str] = None
    pseudocount: float = 0.0
    axis: Optional[str] = None
    reference: Optional[str] = None


@dataclass
class AgglomerationConfig:
    """Agglomeration configuration."""
    rank: str = "genus"
    na_rm: bool = False
    update_tree: bool = False
    fun: str = "sum"


@dataclass
class DiversityConfig:
    """Alpha/beta diversity configuration."""
    index: List[str] = field(default_factory=lambda: ["shannon", "observed"])
    assay_name: str = "counts"
    mds_method: Optional[str] = None
    ncomponents: int = 2


@dataclass
class AssociationConfig:
    """Cross-association configuration."""
    method: str = "spearman"
    assay_name: str = "counts"
    assay_name2: str = "counts"
    alt_experiment: Optional[str] = None
    p_adj_method: str = "fdr_bh"
    p_adj_threshold: Optional[float] = None


@dataclass
class PipelineConfig:
    """
    Complete configuration schema for the miapy commands.

    Mirrors the CLI argument structure for consistency.
    """
    input: Optional[Path] = None
    output: Optional[Path] = None
    row_data: Optional[Path] = None
    sample_data: Optional[Path] = None
    tree: Optional[Path] = None
    taxonomy_column: Optional[str] = None
    transform: TransformConfig = field(default_factory=TransformConfig)
    agglomeration: AgglomerationConfig = field(default_factory=AgglomerationConfig)
    diversity: DiversityConfig = field(default_factory=DiversityConfig)
    association: AssociationConfig = field(default_factory=AssociationConfig)


PATH_KEYS = ('input', 'output', 'row_data', 'sample_data', 'tree')
TOP_LEVEL_KEYS = PATH_KEYS + ('taxonomy_column',)

# config section -> CLI argument names it may set
SECTIONS = {
    'transform': TransformConfig,
    'agglomeration': AgglomerationConfig,
    'diversity': DiversityConfig,
    'association': AssociationConfig,
}

SHORT_FLAGS = {'i': 'input', 'o': 'output', 'c': 'config'}


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()
    if suffix not in ('.yaml', '.yml', '.json'):
        raise ValueError(f"Unsupported config format: {suffix}. Use .yaml, .yml, or .json")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            if suffix == '.json':
                config = json.load(f)
            else:
                config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")
    return config


def parse_config(config: Dict[str, Any]) -> PipelineConfig:
    """
    Build a typed PipelineConfig from a config dictionary.

    Raises:
        ValueError: Unknown top-level keys or section keys
    """
    known = set(TOP_LEVEL_KEYS) | set(SECTIONS)
    unknown = set(config).difference(known)
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}. Allowed: {sorted(known)}")

    kwargs: Dict[str, Any] = {}
    for key in TOP_LEVEL_KEYS:
        if config.get(key) is not None:
            kwargs[key] = Path(config[key]) if key in PATH_KEYS else config[key]

    for section, cls in SECTIONS.items():
        values = config.get(section) or {}
        if not isinstance(values, dict):
            raise ValueError(f"Config section '{section}' must be a mapping")
        allowed = {f.name for f in fields(cls)}
        bad = set(values).difference(allowed)
        if bad:
            raise ValueError(f"Unknown keys in '{section}': {sorted(bad)}. Allowed: {sorted(allowed)}")
        kwargs[section] = cls(**values)

    return PipelineConfig(**kwargs)


def _merge_value(cli_value: Any, config_value: Any, was_explicitly_set: bool) -> Any:
    """
    Merge a single config value with a CLI argument.

    Rules:
    - CLI args ALWAYS override config if explicitly set
    - If CLI arg not set, use config value
    - If neither set, keep CLI default
    """
    if was_explicitly_set:
        return cli_value
    if config_value is not None:
        return config_value
    return cli_value


def explicit_arguments(cli_args: Optional[List[str]]) -> set:
    """Destination names of the options present in a raw argument list."""
    explicit = set()
    for arg in cli_args or []:
        if arg.startswith('--'):
            explicit.add(arg[2:].split('=', 1)[0].replace('-', '_'))
        elif arg.startswith('-') and len(arg) == 2 and arg[1] in SHORT_FLAGS:
            explicit.add(SHORT_FLAGS[arg[1]])
    return explicit


def merge_config_with_args(
    config: Dict[str, Any],
    args: Namespace,
    cli_args: Optional[List[str]] = None,
    section: Optional[str] = None,
) -> Namespace:
    """
    Merge config file values with CLI arguments.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values
    3. CLI argument defaults

    Only arguments the command defines are touched: top-level paths plus
    the keys of `section` (e.g. "transform" for the transform command).

    Parameters:
        config: Configuration dictionary from load_config()
        args: Parsed CLI arguments
        cli_args: Raw CLI arguments list (for detecting explicit values).
            If None, all args are treated as defaults.
        section: Config section for the running command

    Returns:
        New Namespace with merged values
    """
    explicit = explicit_arguments(cli_args)
    merged = Namespace(**vars(args))

    for key in TOP_LEVEL_KEYS:
        if key in config and hasattr(merged, key):
            value = config[key]
            if value is not None and key in PATH_KEYS:
                value = Path(value)
            setattr(merged, key, _merge_value(getattr(merged, key), value, key in explicit))

    if section is not None:
        for key, value in (config.get(section) or {}).items():
            if hasattr(merged, key):
                setattr(merged, key, _merge_value(getattr(merged, key), value, key in explicit))

    return merged


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Raises:
        ValueError: If configuration is invalid
    """
    cfg = parse_config(config)

    if cfg.transform.method not in TRANSFORM_METHODS:
        raise ValueError(
            f"Invalid transform method '{cfg.transform.method}'. "
            f"Choose from: {', '.join(TRANSFORM_METHODS)}"
        )
    if cfg.transform.axis not in (None, 'samples', 'features'):
        raise ValueError(f"Invalid transform axis '{cfg.transform.axis}'. Choose from: samples, features")
    if not isinstance(cfg.transform.pseudocount, (int, float)) or cfg.transform.pseudocount < 0:
        raise ValueError(f"Pseudocount must be a non-negative number, got: {cfg.transform.pseudocount}")

    if cfg.agglomeration.rank.lower() not in TAXONOMY_RANKS:
        raise ValueError(
            f"Invalid rank '{cfg.agglomeration.rank}'. Choose from: {', '.join(TAXONOMY_RANKS)}"
        )
    if cfg.agglomeration.fun not in AGGREGATORS:
        raise ValueError(
            f"Invalid aggregation '{cfg.agglomeration.fun}'. Choose from: {', '.join(AGGREGATORS)}"
        )

    indices = cfg.diversity.index
    if isinstance(indices, str):
        indices = [indices]
    bad = [i for i in indices if i not in ALPHA_INDICES]
    if bad:
        raise ValueError(f"Invalid diversity indices {bad}. Choose from: {', '.join(ALPHA_INDICES)}")
    if cfg.diversity.mds_method is not None and cfg.diversity.mds_method not in DISSIMILARITY_METHODS:
        raise ValueError(
            f"Invalid MDS method '{cfg.diversity.mds_method}'. "
            f"Choose from: {', '.join(DISSIMILARITY_METHODS)}"
        )
    if not isinstance(cfg.diversity.ncomponents, int) or cfg.diversity.ncomponents < 1:
        raise ValueError(f"ncomponents must be a positive integer, got: {cfg.diversity.ncomponents}")

    if cfg.association.method not in ASSOCIATION_METHODS:
        raise ValueError(
            f"Invalid association method '{cfg.association.method}'. "
            f"Choose from: {', '.join(ASSOCIATION_METHODS)}"
        )
    threshold = cfg.association.p_adj_threshold
    if threshold is not None and (not isinstance(threshold, (int, float)) or not 0 < threshold <= 1):
        raise ValueError(f"p_adj_threshold must be in (0, 1], got: {threshold}")
