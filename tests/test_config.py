from __future__ import annotations

import json

import pytest

from agentreel.runtime.config import (
    DEFAULT_HIDDEN_TOOLS,
    AppConfig,
    DataPaths,
    config_from_dict,
    config_path,
    default_data_dir,
    load_config,
    save_config,
)
from agentreel.runtime.errors import ConfigError


class TestPaths:
    def test_env_overrides_data_dir(self, data_dir):
        assert default_data_dir() == data_dir

    def test_default_config_path(self, data_dir):
        assert config_path(data_dir) == data_dir.resolve() / "config" / "config.json"

    def test_config_path_env(self, data_dir, monkeypatch, tmp_path):
        monkeypatch.setenv("AGENTREEL_CONFIG_PATH", str(tmp_path / "custom.json"))
        assert config_path(data_dir) == tmp_path / "custom.json"

    def test_relative_config_path_env(self, data_dir, monkeypatch):
        monkeypatch.setenv("AGENTREEL_CONFIG_PATH", "my.json")
        assert config_path(data_dir) == data_dir / "my.json"

    def test_data_paths_layout(self, tmp_path):
        paths = DataPaths.for_data_dir(tmp_path)
        assert paths.rules_file == tmp_path.resolve() / "policy" / "permissions.json"
        assert paths.events_dir == tmp_path.resolve() / "events"
        assert paths.sessions_dir == tmp_path.resolve() / "sessions"


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path, data_dir):
        cfg = load_config(tmp_path / "none.json")
        assert cfg.hidden_tools == DEFAULT_HIDDEN_TOOLS
        assert cfg.preview_chars == 120
        assert cfg.max_session_logs == 50
        assert cfg.data_dir == data_dir

    def test_round_trip(self, tmp_path):
        path = tmp_path / "config.json"
        cfg = AppConfig(data_dir=tmp_path, hidden_tools=("x",), preview_chars=40, log_level="DEBUG")
        save_config(path, cfg)
        assert load_config(path) == cfg

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigError, match="unknown keys: colour"):
            config_from_dict({"colour": "red"})

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {"preview_chars": 0},
            {"preview_chars": True},
            {"max_session_logs": "5"},
            {"hidden_tools": "report_intent"},
            {"default_model": " "},
            {"log_level": "LOUD"},
            {"data_dir": ""},
        ],
    )
    def test_bad_values(self, data):
        with pytest.raises(ConfigError):
            config_from_dict(data)

    def test_values_are_normalized(self):
        cfg = config_from_dict({"log_level": "info", "hidden_tools": [" a ", ""], "default_model": " m "})
        assert cfg.log_level == "INFO"
        assert cfg.hidden_tools == ("a",)
        assert cfg.default_model == "m"

    def test_file_contents(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"max_session_logs": 3}), encoding="utf-8")
        assert load_config(path).max_session_logs == 3
