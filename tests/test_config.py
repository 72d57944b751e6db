"""Tests for ledgerline.config: YAML configuration loader."""

import pytest

from ledgerline.config import DEFAULT_AGENT_MODEL, DEFAULT_STAGE_THRESHOLDS, Config
from tests.conftest import FIXTURE_CONFIG_DIR


class TestConfigInit:
    def test_loads_from_config_dir(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.config_dir == FIXTURE_CONFIG_DIR

    def test_raises_on_missing_directory(self):
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config("/nonexistent/path")

    def test_raises_on_file_not_directory(self, tmp_path):
        f = tmp_path / "not_a_dir.yaml"
        f.write_text("test: true")
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config(f)


class TestConfigFiles:
    def test_subcategories(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert "streaming-video" in config.subcategory_ids()
        assert config.subcategory_by_id("car-insurance")["name"] == "Car Insurance"
        assert config.subcategory_by_id("nope") is None

    def test_subcategories_without_name_dropped(self, tmp_path):
        (tmp_path / "subcategories.yaml").write_text(
            "subcategories:\n  - id: a\n    name: A\n  - id: b\n"
        )
        assert [s["id"] for s in Config(tmp_path).subcategories] == ["a"]

    def test_merchants(self):
        config = Config(FIXTURE_CONFIG_DIR)
        patterns = [m["pattern"] for m in config.merchants]
        assert patterns[0] == "NETFLIX"
        assert "SAFEWAY" in patterns

    def test_lazy_loading(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config._engine is None
        _ = config.engine
        assert config._engine is not None

    def test_caches_after_first_load(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.merchants is config.merchants

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            _ = Config(tmp_path).engine

    def test_empty_file(self, tmp_path):
        (tmp_path / "engine.yaml").write_text("")
        with pytest.raises(ValueError, match="Empty config file"):
            _ = Config(tmp_path).engine

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "engine.yaml").write_text("agent: [unclosed")
        with pytest.raises(ValueError, match="Invalid YAML"):
            _ = Config(tmp_path).engine


class TestEngineSettings:
    def test_stage_thresholds(self):
        thresholds = Config(FIXTURE_CONFIG_DIR).stage_thresholds
        assert thresholds == {"rules": 0.85, "historical": 0.80, "agent": 0.75}

    def test_threshold_defaults(self, tmp_path):
        (tmp_path / "engine.yaml").write_text("classification:\n  stage_thresholds:\n    rules: 0.9\n")
        thresholds = Config(tmp_path).stage_thresholds
        assert thresholds["rules"] == 0.9
        assert thresholds["agent"] == DEFAULT_STAGE_THRESHOLDS["agent"]

    def test_recurring_defaults(self):
        defaults = Config(FIXTURE_CONFIG_DIR).recurring_defaults
        assert defaults["deterministic_match_threshold"] == 0.70
        assert defaults["score_version"] == "recurring-v1"

    def test_agent_settings(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.agent_enabled is False
        assert config.agent_max_tokens == 512
        assert config.rule_conflict_delta == 0.05

    def test_agent_defaults(self, tmp_path):
        (tmp_path / "engine.yaml").write_text("recurring: {}\n")
        config = Config(tmp_path)
        assert config.agent_enabled is False
        assert config.agent_model == DEFAULT_AGENT_MODEL
        assert config.agent_max_tokens == 1024
