"""Tests for configuration loading."""

import pytest

from prsentry_core.config import ReviewConfig, load_config, load_guidelines
from prsentry_core.errors import ConfigError

ENV = {"API_KEY": "sk-test"}


def test_defaults_applied_when_no_config_file(tmp_path):
    config = load_config(config_path=str(tmp_path / "nonexistent.yml"), environ=ENV)
    assert config.api_base == "https://api.openai.com/v1"
    assert config.model_id == "gpt-4o"
    assert config.chunk_budget == 12000
    assert config.max_workers == 4
    assert config.guidelines is None
    assert config.exclude == ()
    assert config.api_key == "sk-test"


def test_config_file_overrides_defaults(tmp_path):
    cfg = tmp_path / ".prsentry.yml"
    cfg.write_text("chunk_budget: 4000\nmax_workers: 2\n")
    config = load_config(config_path=str(cfg), environ=ENV)
    assert config.chunk_budget == 4000
    assert config.max_workers == 2


def test_exclude_and_reports_loaded_as_tuples(tmp_path):
    cfg = tmp_path / ".prsentry.yml"
    cfg.write_text("exclude:\n  - migrations/\n  - '*.lock'\nreports:\n  - gitleaks.sarif\n")
    config = load_config(config_path=str(cfg), environ=ENV)
    assert config.exclude == ("migrations/", "*.lock")
    assert config.reports == ("gitleaks.sarif",)


def test_environment_endpoint_overrides_file(tmp_path):
    cfg = tmp_path / ".prsentry.yml"
    cfg.write_text("model_id: from-file\n")
    env = {**ENV, "API_BASE": "https://dashscope.example/v1", "MODEL_ID": "qwen-max"}
    config = load_config(config_path=str(cfg), environ=env)
    assert config.api_base == "https://dashscope.example/v1"
    assert config.model_id == "qwen-max"


def test_cli_overrides_config_file(tmp_path):
    cfg = tmp_path / ".prsentry.yml"
    cfg.write_text("max_workers: 2\n")
    config = load_config(config_path=str(cfg), cli_overrides={"max_workers": 8}, environ=ENV)
    assert config.max_workers == 8


def test_none_cli_overrides_ignored(tmp_path):
    cfg = tmp_path / ".prsentry.yml"
    cfg.write_text("max_workers: 2\n")
    config = load_config(config_path=str(cfg), cli_overrides={"max_workers": None}, environ=ENV)
    assert config.max_workers == 2


def test_github_coordinates_from_environment(tmp_path):
    env = {**ENV, "GITHUB_TOKEN": "ghs_x", "GITHUB_EVENT_PATH": "/tmp/event.json"}
    config = load_config(config_path=str(tmp_path / "none.yml"), environ=env)
    assert config.github_token == "ghs_x"
    assert config.event_path == "/tmp/event.json"


def test_unknown_key_rejected(tmp_path):
    cfg = tmp_path / ".prsentry.yml"
    cfg.write_text("batch_limit: 30\n")
    with pytest.raises(ConfigError, match="batch_limit"):
        load_config(config_path=str(cfg), environ=ENV)


def test_invalid_yaml_rejected(tmp_path):
    cfg = tmp_path / ".prsentry.yml"
    cfg.write_text("exclude: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(config_path=str(cfg), environ=ENV)


def test_non_mapping_yaml_rejected(tmp_path):
    cfg = tmp_path / ".prsentry.yml"
    cfg.write_text("- a\n- b\n")
    with pytest.raises(ConfigError):
        load_config(config_path=str(cfg), environ=ENV)


class TestValidate:
    def test_missing_api_key(self):
        with pytest.raises(ConfigError, match="API_KEY"):
            ReviewConfig().validate()

    def test_valid_config_returns_itself(self):
        config = ReviewConfig(api_key="k")
        assert config.validate() is config

    @pytest.mark.parametrize(
        "overrides",
        [
            {"chunk_budget": 0},
            {"max_workers": -1},
            {"max_attempts": "3"},
            {"run_timeout": 0},
            {"backoff_base": True},
            {"model_id": ""},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ConfigError):
            ReviewConfig(api_key="k", **overrides).validate()


def test_custom_guidelines_path(tmp_path):
    guidelines_file = tmp_path / "my-guidelines.md"
    guidelines_file.write_text("# Custom Guidelines\n- Rule 1")
    content = load_guidelines(ReviewConfig(guidelines=str(guidelines_file)))
    assert "Custom Guidelines" in content


def test_missing_custom_guidelines_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_guidelines(ReviewConfig(guidelines=str(tmp_path / "missing.md")))


def test_builtin_guidelines_used_by_default():
    content = load_guidelines(ReviewConfig())
    assert "Security" in content
