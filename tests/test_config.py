"""Tests for config file loading, validation and CLI merging."""

import json
from argparse import Namespace
from pathlib import Path

import pytest

from miapy.cli.config import (
    PipelineConfig,
    explicit_arguments,
    load_config,
    merge_config_with_args,
    parse_config,
    validate_config,
)


class TestLoadConfig:

    def test_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("input: data/counts.csv\ntransform:\n  method: clr\n  pseudocount: 1\n")
        config = load_config(path)
        assert config["input"] == "data/counts.csv"
        assert config["transform"] == {"method": "clr", "pseudocount": 1}

    def test_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"diversity": {"index": ["faith"]}}))
        assert load_config(path)["diversity"]["index"] == ["faith"]

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(path) == {}

    def test_errors(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")
        toml = tmp_path / "config.toml"
        toml.write_text("x = 1")
        with pytest.raises(ValueError, match="Unsupported"):
            load_config(toml)
        bad = tmp_path / "bad.yaml"
        bad.write_text("input: [unclosed")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(bad)
        listing = tmp_path / "list.yaml"
        listing.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(listing)


class TestParseConfig:

    def test_defaults(self):
        cfg = parse_config({})
        assert isinstance(cfg, PipelineConfig)
        assert cfg.transform.method == "relabundance"
        assert cfg.diversity.index == ["shannon", "observed"]

    def test_sections_and_paths(self):
        cfg = parse_config({"output": "out", "agglomeration": {"rank": "family", "na_rm": True}})
        assert cfg.output == Path("out")
        assert cfg.agglomeration.rank == "family"
        assert cfg.agglomeration.na_rm is True

    def test_unknown_keys(self):
        with pytest.raises(ValueError, match="Unknown config keys"):
            parse_config({"plots": True})
        with pytest.raises(ValueError, match="Unknown keys in 'transform'"):
            parse_config({"transform": {"scale": 2}})


class TestValidateConfig:

    def test_valid(self):
        validate_config({
            "transform": {"method": "clr", "pseudocount": 0.5},
            "diversity": {"index": ["shannon", "faith"], "mds_method": "unifrac"},
            "association": {"method": "kendall", "p_adj_threshold": 0.1},
        })

    @pytest.mark.parametrize("config", [
        {"transform": {"method": "sqrt"}},
        {"transform": {"axis": "rows"}},
        {"transform": {"pseudocount": -1}},
        {"agglomeration": {"rank": "strain"}},
        {"agglomeration": {"fun": "mode"}},
        {"diversity": {"index": ["entropy"]}},
        {"diversity": {"mds_method": "manhattan"}},
        {"diversity": {"ncomponents": 0}},
        {"association": {"method": "distance"}},
        {"association": {"p_adj_threshold": 2}},
    ])
    def test_invalid(self, config):
        with pytest.raises(ValueError):
            validate_config(config)


class TestMerge:

    def test_explicit_arguments(self):
        explicit = explicit_arguments(["transform", "--method", "clr", "-o", "out", "--assay-name=raw"])
        assert explicit == {"method", "output", "assay_name"}

    def test_config_fills_defaults(self):
        args = Namespace(input=None, output=None, method="relabundance", pseudocount=0.0)
        config = {"input": "counts.csv", "transform": {"method": "clr", "pseudocount": 1}}
        merged = merge_config_with_args(config, args, [], section="transform")
        assert merged.input == Path("counts.csv")
        assert merged.method == "clr"
        assert merged.pseudocount == 1

    def test_cli_wins(self):
        args = Namespace(input=Path("cli.csv"), output=None, method="log")
        config = {"input": "config.csv", "transform": {"method": "clr"}}
        merged = merge_config_with_args(config, args, ["--input", "cli.csv", "--method", "log"], section="transform")
        assert merged.input == Path("cli.csv")
        assert merged.method == "log"

    def test_other_sections_ignored(self):
        args = Namespace(input=None, method="spearman")
        config = {"transform": {"method": "clr"}}
        merged = merge_config_with_args(config, args, [], section="association")
        assert merged.method == "spearman"
        assert args.method == "spearman"
