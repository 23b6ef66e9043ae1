"""Tests for configuration loading."""

import json

from narrative_memory.config import Config, load_config


class TestLoadConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("NARRATIVE_MEMORY_DB")
        cfg = load_config()
        assert cfg.db_path.endswith("memories.sqlite")
        assert cfg.embedding_provider == "hash"
        assert cfg.api_port == 8788
        assert cfg.validate() == []

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("NARRATIVE_MEMORY_PORT", "9000")
        monkeypatch.setenv("NARRATIVE_MEMORY_DIMENSIONS", "64")
        monkeypatch.setenv("NARRATIVE_MEMORY_LOG_LEVEL", " debug ")
        cfg = load_config()
        assert cfg.api_port == 9000
        assert cfg.embedding_dimensions == 64
        assert cfg.log_level == "DEBUG"

    def test_bad_env_value_ignored(self, monkeypatch):
        monkeypatch.setenv("NARRATIVE_MEMORY_PORT", "not-a-port")
        assert load_config().api_port == 8788

    def test_json_file_then_env(self, monkeypatch, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "weight_semantic": 0.6,
            "api_port": 7000,
            "default_limit": "20",
            "unknown_key": 1,
        }))
        monkeypatch.setenv("NARRATIVE_MEMORY_PORT", "7100")
        cfg = load_config(str(path))
        assert cfg.weight_semantic == 0.6
        assert cfg.default_limit == 20
        assert cfg.api_port == 7100

    def test_config_path_from_env(self, monkeypatch, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"rate_limit_requests": 5}))
        monkeypatch.setenv("NARRATIVE_MEMORY_CONFIG", str(path))
        assert load_config().rate_limit_requests == 5


class TestValidate:
    def test_remote_needs_key(self):
        errors = Config(embedding_provider="remote").validate()
        assert any("EMBEDDING_API_KEY" in e for e in errors)

    def test_collects_every_problem(self):
        cfg = Config(
            embedding_provider="magic",
            api_port=0,
            weight_entity=-0.1,
            default_threshold=1.5,
        )
        assert len(cfg.validate()) == 4
