"""Tests for the layered default/runtime configuration."""

import pytest
import yaml

from saga_gm.clients.model_registry import ModelDefinition
from saga_gm.config import Configuration

DEFAULTS = {
    "llm": {
        "active_model": None,
        "temperature": None,
        "max_tokens": None,
        "default_api_format": "openai",
        "custom_models": [],
    },
    "game_master": {"max_generation_attempts": 2, "heartbeat_interval_seconds": 5},
    "world": {"system_prompt": "You are the Game Master."},
    "logging": {"modules": {"mcp": {"tool_results_truncate": 80}}},
}


@pytest.fixture
def paths(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(DEFAULTS), encoding="utf-8")
    return config_path, tmp_path / "runtime_config.yaml"


@pytest.fixture
def config(paths, monkeypatch):
    for name in ("LLM_MODEL", "LLM_TEMPERATURE", "LLM_MAX_TOKENS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TUZI_API_KEY", "sk-tuzi")
    monkeypatch.setenv("TUZI_BASE_URL", "https://relay.example")
    config_path, runtime_path = paths
    return Configuration(str(config_path), str(runtime_path))


def test_runtime_file_is_created_from_defaults(config, paths):
    _, runtime_path = paths
    assert runtime_path.exists()
    metadata = config.get_runtime_metadata()
    assert metadata["version"] == 1
    assert metadata["created_from_defaults"] is True


def test_llm_config_defaults_and_env_fallback(config, monkeypatch):
    llm = config.get_llm_config()
    assert llm.model == "gpt-4o-mini"
    assert llm.api_key == "sk-tuzi"
    assert llm.base_url == "https://relay.example"
    assert llm.api_format == "openai"

    monkeypatch.setenv("LLM_TEMPERATURE", "0.2")
    assert config.get_llm_config().temperature == 0.2


def test_explicit_model_picks_its_format(config):
    assert config.get_llm_config("claude-haiku-4-5-20251001-thinking").api_format == "anthropic"
    assert config.get_llm_config("gemini-3-pro").api_format == "google"


def test_runtime_updates_win_over_env(config, monkeypatch):
    monkeypatch.setenv("LLM_TEMPERATURE", "0.2")
    config.update_llm_temperature(1.1)
    config.update_llm_max_tokens(2048)
    config.update_llm_model("gemini-3-pro")

    llm = config.get_llm_config()
    assert llm.temperature == 1.1
    assert llm.max_tokens == 2048
    assert llm.model == "gemini-3-pro"
    assert config.get_runtime_metadata()["version"] == 4


@pytest.mark.parametrize("value", [-0.1, 2.5])
def test_temperature_out_of_range(config, value):
    with pytest.raises(ValueError):
        config.update_llm_temperature(value)


@pytest.mark.parametrize("value", [99, 40000])
def test_max_tokens_out_of_range(config, value):
    with pytest.raises(ValueError):
        config.update_llm_max_tokens(value)


def test_unknown_model_is_rejected(config):
    with pytest.raises(ValueError):
        config.update_llm_model("no-such-model")


def test_custom_model_lifecycle(config):
    config.add_custom_model(
        ModelDefinition(id="deepseek-v3", name="DeepSeek V3", api_format="openai", cost_tier="low")
    )
    assert config.api_format_for("deepseek-v3") == "openai"
    listed = {m["id"]: m for m in config.get_available_models()}
    assert listed["deepseek-v3"]["is_custom"] is True
    assert listed["gpt-4o-mini"]["is_custom"] is False

    with pytest.raises(ValueError):
        config.add_custom_model({"id": "deepseek-v3", "name": "Again"})
    with pytest.raises(ValueError):
        config.add_custom_model({"id": "gpt-4o-mini", "name": "Shadow"})

    config.delete_custom_model("deepseek-v3")
    assert config.get_custom_models() == []
    with pytest.raises(ValueError):
        config.delete_custom_model("deepseek-v3")


def test_change_callbacks_fire_on_save(config):
    seen = []
    config.subscribe_to_changes(seen.append)
    config.update_llm_temperature(0.3)
    assert seen and seen[-1]["llm"]["temperature"] == 0.3

    config.unsubscribe_from_changes(seen.append)
    config.update_llm_temperature(0.4)
    assert len(seen) == 1


def test_reset_to_defaults(config):
    config.update_llm_temperature(1.5)
    config.reset_to_defaults()
    assert config.get_config_dict()["llm"]["temperature"] is None


def test_corrupt_runtime_file_is_recreated(paths, monkeypatch):
    config_path, runtime_path = paths
    runtime_path.write_text("llm: [unterminated", encoding="utf-8")

    config = Configuration(str(config_path), str(runtime_path))

    assert config.get_config_dict()["world"]["system_prompt"] == "You are the Game Master."
    assert config.get_runtime_metadata()["created_from_defaults"] is True


def test_game_master_section(config):
    settings = config.get_game_master_config()
    assert settings.max_generation_attempts == 2
    assert settings.heartbeat_interval_seconds == 5
    assert settings.correction_budget == 1
    assert config.get_world_config()["actor_argument"] == "player_id"
    assert config.get_mcp_logging_config() == {
        "tool_arguments_truncate": 500,
        "tool_results_truncate": 80,
    }


def test_invalid_game_master_section_raises(config):
    config.save_runtime_config({**config.get_config_dict(), "game_master": {"max_generation_attempts": 0}})
    with pytest.raises(ValueError):
        config.get_game_master_config()


def test_http_stream_buffer(config):
    assert config.get_http_config()["stream_buffer_events"] == 64
    config.save_runtime_config({**config.get_config_dict(), "http": {"stream_buffer_events": 0}})
    with pytest.raises(ValueError):
        config.get_http_config()


def test_mcp_connection_defaults(config):
    assert config.get_mcp_connection_config() == {
        "max_reconnect_attempts": 5,
        "initial_reconnect_delay": 1.0,
        "max_reconnect_delay": 30.0,
        "connection_timeout": 30.0,
    }
