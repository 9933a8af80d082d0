"""
Main application entry point - SSE interface with graceful shutdown handling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

from saga_gm.chat.logging_utils import set_module_features
from saga_gm.clients.llm_client import LLMClient
from saga_gm.clients.mcp_client import MCPClient
from saga_gm.config import Configuration
from saga_gm.history.factory import create_repository
from saga_gm.sse_server import run_sse_server

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Logging module name -> logger names and default level
MODULE_LOGGER_MAP: dict[str, dict[str, Any]] = {
    "chat": {"loggers": ["saga_gm.chat", "saga_gm.sse_server"], "default_level": "INFO"},
    "clients": {"loggers": ["saga_gm.clients"], "default_level": "INFO"},
    "mcp": {
        "loggers": ["mcp", "saga_gm.clients.mcp_client", "saga_gm.tool_catalog"],
        "default_level": "INFO",
    },
}


def _configure_advanced_logging(logging_config: dict[str, Any]) -> None:
    """
    Apply the ``logging`` section: global level, per-module levels on the
    parent loggers (children inherit) and per-module feature flags.
    """
    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(LEVEL_MAP.get(global_level, logging.WARNING))

    modules_config = logging_config.get("modules", {})
    for module_name, module_config in modules_config.items():
        if not isinstance(module_config, dict):
            continue

        mapping = MODULE_LOGGER_MAP.get(module_name, {})
        module_level = module_config.get("level", mapping.get("default_level", global_level))
        level_value = LEVEL_MAP.get(module_level, logging.WARNING)

        for logger_name in mapping.get("loggers", []):
            logging.getLogger(logger_name).setLevel(level_value)

        set_module_features(module_name, module_config.get("enable_features", {}))


def _on_logging_config_change(new_config: dict[str, Any]) -> None:
    """Re-apply logging settings whenever the runtime config changes."""
    try:
        logging_config = new_config.get("logging", {})
        if logging_config:
            _configure_advanced_logging(logging_config)
            logging.info("🔄 Logging configuration updated in real-time")
    except Exception as e:
        logging.error("❌ Failed to update logging configuration: %s", e)


def _build_mcp_clients(config: Configuration) -> list[MCPClient]:
    servers_config = config.load_config(config.servers_config_path())
    mcp_client_config = {
        **config.get_mcp_connection_config(),
        **config.get_mcp_logging_config(),
    }

    clients: list[MCPClient] = []
    for name, server_config in servers_config.get("mcpServers", {}).items():
        if server_config.get("enabled", False):
            clients.append(MCPClient(name, server_config, mcp_client_config))
        else:
            logging.info("Skipping disabled server: %s", name)
    return clients


logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


async def main() -> None:
    """Main entry point - SSE interface with graceful shutdown handling."""
    config = Configuration()

    logging_config = config.get_logging_config()
    if "format" in logging_config:
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))

    _configure_advanced_logging(logging_config)
    config.subscribe_to_changes(_on_logging_config_change)

    clients = _build_mcp_clients(config)
    repo = create_repository(config.get_chat_storage_config())

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logging.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    async with LLMClient(
        config.get_connection_pool_config(), format_resolver=config.api_format_for
    ) as llm_client:
        try:
            await config.start_watching()

            server_task = asyncio.create_task(run_sse_server(clients, llm_client, repo, config))
            done, pending = await asyncio.wait(
                [server_task, asyncio.create_task(shutdown_event.wait())],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

            if server_task in done:
                exception = server_task.exception()
                if exception is not None:
                    raise exception

        except KeyboardInterrupt:
            logging.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logging.error("Application error: %s", e)
            raise
        finally:
            await config.stop_watching()
            logging.info("Application shutdown complete")


def cli_main() -> None:
    """Synchronous CLI entrypoint that runs the async main."""
    asyncio.run(main())


if __name__ == "__main__":
    cli_main()
