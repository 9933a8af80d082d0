"""Configuration management for the Game Master service."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import json
import logging
import os
import sys
import time
from collections.abc import Callable
from typing import Any, cast

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from saga_gm.chat.models import ApiFormat, LLMConfig
from saga_gm.clients.model_registry import (
    BUILTIN_MODELS,
    DEFAULT_API_FORMAT,
    PROVIDERS,
    ModelDefinition,
    api_format_for,
    get_model_definition,
    get_provider,
    is_builtin_model,
)

logger = logging.getLogger(__name__)

_PACKAGE_DIR = os.path.dirname(__file__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096
MIN_TEMPERATURE, MAX_TEMPERATURE = 0.0, 2.0
MIN_MAX_TOKENS, MAX_MAX_TOKENS = 100, 32768


class GameMasterMessages(BaseModel):
    """User-facing texts emitted by the orchestrator."""

    preparing: str = "正在整理记忆与状态..."
    thinking: str = "Game Master 正在思考..."
    heartbeat: str = "AI 正在思考{dots} ({elapsed}s)"
    verifying_battle: str = "正在核实战斗数据..."
    verifying_items: str = "正在核实道具入库..."
    correction: str = (
        "[SYSTEM ERROR] ATTENTION: You generated narrative describing a state change, "
        "but you DID NOT call the necessary tool. \nReason: {reason}\n\n"
        "REQUIRED ACTION: Immediately call the missing tool now. "
        "Do not repeat the narrative, just execute the tool."
    )
    tool_fallback: str = "*（动作已执行: {tools}）*"
    failure: str = "（沉思片刻）冒险者，让我整理一下思绪...你可以继续告诉我你想做什么。"


class GameMasterSettings(BaseModel):
    """Validated ``game_master`` section."""

    narrative_buffer_limit: int = Field(default=120, ge=0)
    heartbeat_interval_seconds: float = Field(default=8.0, gt=0)
    max_generation_attempts: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    correction_budget: int = Field(default=1, ge=0)
    max_tool_rounds: int = Field(default=10, ge=1)
    history_limit: int = Field(default=20, ge=0)
    max_suggested_actions: int = Field(default=4, ge=0)
    actor_argument: str = "player_id"
    battle_user_suffix: str = (
        "\n\n(系统强指令：立即调用 execute_battle_action 工具，严禁在工具调用前输出任何剧情文本)"
    )
    battle_tools: list[str] = Field(
        default_factory=lambda: [
            "execute_battle_action",
            "use_item",
            "get_battle_state",
            "add_item",
            "create_quest",
            "update_quest",
        ]
    )
    admin_tools: list[str] = Field(
        default_factory=lambda: [
            "modify_player_data",
            "add_item",
            "generate_area",
            "abandon_quest",
        ]
    )
    messages: GameMasterMessages = Field(default_factory=GameMasterMessages)


class Configuration:
    """Event-driven configuration manager with observer pattern."""

    def __init__(
        self,
        config_path: str | None = None,
        runtime_config_path: str | None = None,
    ) -> None:
        """
        Args:
            config_path: Default YAML (``saga_gm/config.yaml`` when omitted)
            runtime_config_path: Mutable runtime YAML, created from the
                defaults on first use (``runtime_config.yaml`` next to the
                defaults when omitted)
        """
        self.load_env()
        self._config_path = config_path or os.path.join(_PACKAGE_DIR, "config.yaml")
        self._default_config = self._load_yaml_config(self._config_path)
        self._runtime_config_path = runtime_config_path or os.path.join(
            os.path.dirname(self._config_path), "runtime_config.yaml"
        )
        self._runtime_config_mtime: float | None = None
        self._current_config: dict[str, Any] = {}

        self._config_change_callbacks: list[Callable[[dict[str, Any]], None]] = []
        self._watch_task: asyncio.Task[None] | None = None

        self._initialize_runtime_config()
        self._reload_config()

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(path: str) -> dict[str, Any]:
        with open(path, encoding="utf-8") as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError("Configuration file must contain a dictionary")
            return cast(dict[str, Any], config)

    # ------------------------------------------------------------------
    # Runtime config file
    # ------------------------------------------------------------------

    def _write_runtime_file(self, config: dict[str, Any], metadata: dict[str, Any]) -> None:
        payload = copy.deepcopy(config)
        payload["_runtime_config"] = metadata
        with open(self._runtime_config_path, "w", encoding="utf-8") as file:
            yaml.safe_dump(payload, file, default_flow_style=False, indent=2, allow_unicode=True)

    def _initialize_runtime_config(self) -> None:
        if os.path.exists(self._runtime_config_path):
            return
        self._write_runtime_file(
            self._default_config,
            {
                "last_modified": time.time(),
                "version": 1,
                "is_runtime_config": True,
                "default_config_path": os.path.basename(self._config_path),
                "created_from_defaults": True,
            },
        )

    def _read_runtime_file(self) -> dict[str, Any] | None:
        try:
            with open(self._runtime_config_path, encoding="utf-8") as file:
                config = yaml.safe_load(file)
        except (yaml.YAMLError, OSError) as e:
            logger.warning("Runtime configuration unreadable: %s", e)
            return None
        return cast(dict[str, Any], config) if isinstance(config, dict) else None

    def _load_runtime_config(self) -> dict[str, Any]:
        config = self._read_runtime_file()
        if config is None:
            logger.warning("Recreating runtime configuration from defaults")
            with contextlib.suppress(OSError):
                os.remove(self._runtime_config_path)
            self._initialize_runtime_config()
            config = self._read_runtime_file() or {}
        return config

    @classmethod
    def _deep_merge(cls, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = copy.deepcopy(base)
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = cls._deep_merge(
                    cast(dict[str, Any], result[key]), cast(dict[str, Any], value)
                )
            else:
                result[key] = copy.deepcopy(value)
        return result

    def _reload_config(self) -> bool:
        """Reload if the runtime file changed; returns True when reloaded."""
        current_mtime = None
        if os.path.exists(self._runtime_config_path):
            current_mtime = os.path.getmtime(self._runtime_config_path)

        if current_mtime == self._runtime_config_mtime and self._current_config:
            return False

        old_config = self._current_config
        self._runtime_config_mtime = current_mtime
        runtime_config = {
            k: v
            for k, v in self._load_runtime_config().items()
            if not k.startswith("_runtime_config")
        }
        # Defaults fill anything the runtime file predates
        self._current_config = self._deep_merge(self._default_config, runtime_config)

        if old_config and self._current_config != old_config:
            self._notify_config_change()
        return True

    def _notify_config_change(self) -> None:
        for callback in list(self._config_change_callbacks):
            try:
                callback(copy.deepcopy(self._current_config))
            except Exception as e:
                logger.error("Error in config change callback: %s", e)

    def subscribe_to_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Call ``callback(new_config)`` whenever the runtime config changes."""
        if callback not in self._config_change_callbacks:
            self._config_change_callbacks.append(callback)

    def unsubscribe_from_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        if callback in self._config_change_callbacks:
            self._config_change_callbacks.remove(callback)

    async def start_watching(self) -> None:
        """Start the async file watching task for automatic config updates."""
        if self._watch_task is not None:
            return
        self._watch_task = asyncio.create_task(self._watch_config_file())
        logger.info("Started watching runtime configuration file for changes")

    async def stop_watching(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watch_task
            self._watch_task = None
            logger.info("Stopped watching runtime configuration file")

    async def _watch_config_file(self) -> None:
        while True:
            try:
                await asyncio.sleep(1)
                if self._reload_config():
                    logger.info("Runtime configuration file changed - config reloaded")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error watching config file: %s", e)
                await asyncio.sleep(5)

    def save_runtime_config(self, config: dict[str, Any]) -> None:
        """Persist ``config`` as the runtime configuration and reload it."""
        current = self._read_runtime_file() or {}
        version = current.get("_runtime_config", {}).get("version", 0)
        self._write_runtime_file(
            {k: v for k, v in config.items() if not k.startswith("_runtime_config")},
            {
                "last_modified": time.time(),
                "version": version + 1,
                "is_runtime_config": True,
                "default_config_path": os.path.basename(self._config_path),
            },
        )
        # Same-second writes can keep the mtime; force the reload.
        self._runtime_config_mtime = None
        self._reload_config()

    def get_runtime_metadata(self) -> dict[str, Any]:
        current = self._read_runtime_file() or {}
        return current.get("_runtime_config", {})

    def reset_to_defaults(self) -> None:
        """Reset the runtime config to the defaults from config.yaml."""
        self.save_runtime_config(self._default_config)

    def _update_runtime_value(self, path: list[str], value: Any) -> None:
        config = copy.deepcopy(self._current_config)
        node = config
        for key in path[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[path[-1]] = value
        self.save_runtime_config(config)

    def get_config_dict(self) -> dict[str, Any]:
        return self._current_config

    def _section(self, *path: str) -> dict[str, Any]:
        node: Any = self._current_config
        for key in path:
            node = node.get(key, {}) if isinstance(node, dict) else {}
        return cast(dict[str, Any], node) if isinstance(node, dict) else {}

    @staticmethod
    def load_config(file_path: str) -> dict[str, Any]:
        """Load MCP server configuration from a JSON file."""
        with open(file_path, encoding="utf-8") as f:
            return json.load(f)

    def servers_config_path(self) -> str:
        path = self._section("mcp").get("servers_config", "servers_config.json")
        if os.path.isabs(path):
            return path
        return os.path.join(os.path.dirname(self._config_path), path)

    # ------------------------------------------------------------------
    # Models and LLM settings
    # ------------------------------------------------------------------

    def get_custom_models(self) -> list[ModelDefinition]:
        models: list[ModelDefinition] = []
        for raw in self._section("llm").get("custom_models") or []:
            try:
                models.append(ModelDefinition.model_validate(raw))
            except ValidationError as e:
                logger.warning("Ignoring invalid custom model %r: %s", raw, e)
        return models

    def get_all_models(self) -> list[ModelDefinition]:
        return [*BUILTIN_MODELS, *self.get_custom_models()]

    def api_format_for(self, model_id: str) -> ApiFormat:
        """Model -> wire format, consulting custom models then built-ins."""
        default = self._section("llm").get("default_api_format", DEFAULT_API_FORMAT)
        return api_format_for(model_id, self.get_custom_models(), default)

    def get_llm_config(self, model_id: str | None = None) -> LLMConfig:
        """
        Fully resolved settings for one request.

        Each value resolves runtime config -> environment -> default. The
        provider credentials come from the environment variables named by
        the model's provider.
        """
        llm = self._section("llm")
        model = model_id or llm.get("active_model") or os.getenv("LLM_MODEL") or DEFAULT_MODEL
        temperature = float(
            llm.get("temperature") if llm.get("temperature") is not None
            else os.getenv("LLM_TEMPERATURE") or DEFAULT_TEMPERATURE
        )
        max_tokens = int(
            llm.get("max_tokens") if llm.get("max_tokens") is not None
            else os.getenv("LLM_MAX_TOKENS") or DEFAULT_MAX_TOKENS
        )

        custom = self.get_custom_models()
        definition = get_model_definition(model, custom)
        provider = get_provider(definition.provider_id if definition else None)
        api_key, base_url = provider.resolve_credentials()
        if not api_key:
            logger.warning(
                "No API key in %s for provider '%s'", provider.env_api_key_name, provider.id
            )

        return LLMConfig(
            api_key=api_key,
            base_url=base_url,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            extra_headers=provider.extra_headers,
            api_format=self.api_format_for(model),
            provider_id=provider.id,
        )

    def update_llm_model(self, model_id: str) -> None:
        if get_model_definition(model_id, self.get_custom_models()) is None:
            raise ValueError(f"Unknown model id: {model_id}")
        self._update_runtime_value(["llm", "active_model"], model_id)
        logger.info("Active model set to %s", model_id)

    def update_llm_temperature(self, temperature: float) -> None:
        if not MIN_TEMPERATURE <= temperature <= MAX_TEMPERATURE:
            raise ValueError(
                f"temperature must be between {MIN_TEMPERATURE:g} and {MAX_TEMPERATURE:g}"
            )
        self._update_runtime_value(["llm", "temperature"], float(temperature))

    def update_llm_max_tokens(self, max_tokens: int) -> None:
        if not MIN_MAX_TOKENS <= max_tokens <= MAX_MAX_TOKENS:
            raise ValueError(f"max_tokens must be between {MIN_MAX_TOKENS} and {MAX_MAX_TOKENS}")
        self._update_runtime_value(["llm", "max_tokens"], int(max_tokens))

    def add_custom_model(self, model: ModelDefinition | dict[str, Any]) -> ModelDefinition:
        try:
            definition = ModelDefinition.model_validate(model)
        except ValidationError as e:
            raise ValueError(f"Invalid model definition: {e}") from e
        if is_builtin_model(definition.id):
            raise ValueError(f'Model id "{definition.id}" clashes with a built-in model')
        existing = self.get_custom_models()
        if any(m.id == definition.id for m in existing):
            raise ValueError(f'Model id "{definition.id}" already exists')

        self._update_runtime_value(
            ["llm", "custom_models"],
            [m.model_dump() for m in existing] + [definition.model_dump()],
        )
        logger.info("Added custom model %s (%s)", definition.id, definition.api_format)
        return definition

    def delete_custom_model(self, model_id: str) -> None:
        existing = self.get_custom_models()
        remaining = [m for m in existing if m.id != model_id]
        if len(remaining) == len(existing):
            raise ValueError(f"Custom model not found: {model_id}")
        self._update_runtime_value(["llm", "custom_models"], [m.model_dump() for m in remaining])

    def get_available_models(self) -> list[dict[str, Any]]:
        """Model list for the settings screen."""
        return [
            {
                "id": m.id,
                "name": m.name,
                "provider": m.provider,
                "provider_id": m.provider_id,
                "api_format": m.api_format,
                "cost_tier": m.cost_tier,
                "description": m.description,
                "is_custom": not is_builtin_model(m.id),
            }
            for m in self.get_all_models()
        ]

    @staticmethod
    def get_providers() -> list[dict[str, Any]]:
        providers = []
        for p in PROVIDERS:
            _, base_url = p.resolve_credentials()
            providers.append(
                {
                    "id": p.id,
                    "name": p.name,
                    "description": p.description,
                    "has_api_key": p.has_api_key,
                    "base_url": base_url,
                }
            )
        return providers

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def get_game_master_config(self) -> GameMasterSettings:
        try:
            return GameMasterSettings.model_validate(self._section("game_master"))
        except ValidationError as e:
            raise ValueError(f"Invalid game_master configuration: {e}") from e

    def get_world_config(self) -> dict[str, Any]:
        world = dict(self._section("world"))
        world.setdefault("actor_argument", self.get_game_master_config().actor_argument)
        return world

    def get_http_config(self) -> dict[str, Any]:
        http = self._section("http")
        buffer_events = int(http.get("stream_buffer_events", 64))
        if buffer_events < 1:
            raise ValueError("stream_buffer_events must be at least 1")
        return {
            "host": http.get("host", "0.0.0.0"),
            "port": int(http.get("port", 8000)),
            "cors_origins": http.get("cors_origins", ["*"]),
            "stream_buffer_events": buffer_events,
        }

    def get_chat_storage_config(self) -> dict[str, Any]:
        return self._section("chat", "storage")

    def get_logging_config(self) -> dict[str, Any]:
        return self._section("logging")

    def get_mcp_logging_config(self) -> dict[str, Any]:
        mcp = self._section("logging", "modules", "mcp")
        return {
            "tool_arguments_truncate": mcp.get("tool_arguments_truncate", 500),
            "tool_results_truncate": mcp.get("tool_results_truncate", 200),
        }

    def get_connection_pool_config(self) -> dict[str, Any]:
        pool = self._section("connection_pool")
        config = {
            "max_connections": pool.get("max_connections", 50),
            "max_keepalive_connections": pool.get("max_keepalive_connections", 20),
            "keepalive_expiry_seconds": pool.get("keepalive_expiry_seconds", 300),
            "request_timeout_seconds": pool.get("request_timeout_seconds", 180.0),
        }
        if config["max_connections"] < 1:
            raise ValueError("max_connections must be at least 1")
        if config["request_timeout_seconds"] <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        return config

    def get_mcp_connection_config(self) -> dict[str, Any]:
        """MCP connection settings with validated defaults."""
        connection_config = self._section("mcp", "connection")

        max_attempts = connection_config.get("max_reconnect_attempts", 5)
        initial_delay = connection_config.get("initial_reconnect_delay", 1.0)
        max_delay = connection_config.get("max_reconnect_delay", 30.0)
        connection_timeout = connection_config.get("connection_timeout", 30.0)

        if max_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        if initial_delay <= 0:
            raise ValueError("initial_reconnect_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_reconnect_delay must be >= initial_reconnect_delay")
        if connection_timeout <= 0:
            raise ValueError("connection_timeout must be positive")

        return {
            "max_reconnect_attempts": max_attempts,
            "initial_reconnect_delay": initial_delay,
            "max_reconnect_delay": max_delay,
            "connection_timeout": connection_timeout,
        }


def reset_runtime_config_cli() -> None:
    """Console script that resets runtime_config.yaml to defaults."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    try:
        cfg = Configuration()
        cfg.reset_to_defaults()
        logger.info("✓ runtime_config.yaml reset to defaults from config.yaml")
    except Exception as e:
        logger.error("Error resetting runtime configuration: %s", e)
        sys.exit(1)
