"""Tests for story_driver.config."""

import json

import pytest
from pydantic import ValidationError

from story_driver.config import EngineConfig, get_config, update_config


class TestConfig:
    def test_defaults_when_missing(self, tmp_path):
        config = get_config(tmp_path / "engine.json")
        assert config == EngineConfig()
        assert config.interval_turns == 3

    def test_update_persists_and_merges(self, tmp_path):
        path = tmp_path / "engine.json"
        update_config(path, {"interval_turns": 5, "unknown": 1})
        config = get_config(path)
        assert config.interval_turns == 5
        assert config.flush_guard_limit == 20
        assert "unknown" not in json.loads(path.read_text())

    def test_invalid_update_raises(self, tmp_path):
        with pytest.raises(ValidationError):
            update_config(tmp_path / "engine.json", {"interval_turns": 0})

    def test_invalid_stored_config_falls_back(self, tmp_path):
        path = tmp_path / "engine.json"
        path.write_text(json.dumps({"flush_guard_limit": -4}))
        assert get_config(path) == EngineConfig()

    def test_corrupt_file_falls_back(self, tmp_path):
        path = tmp_path / "engine.json"
        path.write_text("{not json")
        assert get_config(path) == EngineConfig()

    def test_non_object_file_falls_back(self, tmp_path):
        path = tmp_path / "engine.json"
        path.write_text("[1, 2]")
        assert get_config(path) == EngineConfig()

    def test_update_repairs_corrupt_file(self, tmp_path):
        path = tmp_path / "engine.json"
        path.write_text("{not json")
        update_config(path, {"interval_turns": 4})
        assert json.loads(path.read_text())["interval_turns"] == 4
