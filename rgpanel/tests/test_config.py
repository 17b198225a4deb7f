"""Tests for configuration loading."""

import pytest
import yaml
from pydantic import ValidationError

from rgpanel.engine.config import Config
from rgpanel.engine.models import CaseMode, DirOrigin


def test_defaults_match_reference_behaviour():
    config = Config()
    assert config.search.command == ["rg"]
    assert config.display.prompt == "rg> "
    assert config.display.max_results == 200
    assert config.throttle.initial_delay == pytest.approx(0.01)
    assert config.throttle.interval == pytest.approx(0.2)
    assert config.defaults.case_mode is CaseMode.SMART
    assert config.defaults.regex is True
    assert config.defaults.word is False
    assert config.defaults.directory_origin is DirOrigin.DOC


def test_load_from_yaml(tmp_path):
    path = tmp_path / "rgpanel.yaml"
    path.write_text(yaml.safe_dump({
        "search": {"command": ["/opt/bin/rg"], "extra_args": ["--hidden"]},
        "display": {"max_results": 50},
        "defaults": {"case_mode": "ignore", "directory_origin": "workspace"},
    }))

    config = Config.load(path)
    assert config.search.command == ["/opt/bin/rg"]
    assert config.search.extra_args == ["--hidden"]
    assert config.display.max_results == 50
    assert config.defaults.case_mode is CaseMode.IGNORE
    assert config.defaults.directory_origin is DirOrigin.WORKSPACE


def test_empty_yaml_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert Config.load(path) == Config()


def test_missing_explicit_path_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config.load(tmp_path / "missing.yaml")


def test_no_candidates_falls_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    assert Config.load() == Config()


def test_save_round_trips(tmp_path):
    config = Config()
    config.display.max_results = 10
    config.defaults.case_mode = CaseMode.STRICT
    path = tmp_path / "out" / "config.yaml"
    config.save(path)

    assert Config.load(path) == config


@pytest.mark.parametrize("section,values", [
    ("display", {"max_results": 0}),
    ("throttle", {"interval_ms": -1}),
    ("search", {"command": []}),
    ("search", {"read_chunk_bytes": 0}),
    ("defaults", {"case_mode": "shouty"}),
])
def test_invalid_values_rejected(section, values):
    with pytest.raises(ValidationError):
        Config(**{section: values})
