"""
MCP client for one game-world tool server.

Every world mutation (inventory, battle, quests, areas) is served by an MCP
server over stdio. Connection retry is configurable through the ``mcp.connection``
section of the configuration:

- max_reconnect_attempts: Maximum number of connection attempts
- initial_reconnect_delay: Delay before the first retry, doubled each attempt
- max_reconnect_delay: Upper bound for the retry delay
- connection_timeout: Timeout for the initialize handshake
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from typing import Any, TypeVar

from mcp import ClientSession, McpError, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from pydantic import AnyUrl

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _internal_error(message: str) -> McpError:
    return McpError(error=types.ErrorData(code=types.INTERNAL_ERROR, message=message))


class MCPClient:
    """Session wrapper with retrying connect and uniform McpError reporting."""

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        connection_config: dict[str, Any] | None = None,
    ) -> None:
        """
        Args:
            name: Server name from ``servers_config.json``
            config: Server launch settings (command, args, env)
            connection_config: Validated ``mcp.connection`` settings
        """
        self.name: str = name
        self.config: dict[str, Any] = config
        self.session: ClientSession | None = None
        self.exit_stack: AsyncExitStack = AsyncExitStack()
        self._cleanup_lock: asyncio.Lock = asyncio.Lock()
        self._is_connected: bool = False
        self.client_version = "0.1.0"

        conn = connection_config or {}
        self._max_attempts: int = conn.get("max_reconnect_attempts", 5)
        self._initial_delay: float = conn.get("initial_reconnect_delay", 1.0)
        self._max_delay: float = conn.get("max_reconnect_delay", 30.0)
        self._connection_timeout: float = conn.get("connection_timeout", 30.0)

        logger.info(
            "MCP client '%s' configured: max_attempts=%d, delay=%.1fs..%.1fs, "
            "connection_timeout=%.1fs",
            name,
            self._max_attempts,
            self._initial_delay,
            self._max_delay,
            self._connection_timeout,
        )

    def _resolve_command(self) -> str | None:
        """Absolute path of the configured server command, or None if missing."""
        command = self.config.get("command")
        if not command:
            return None
        if os.path.isabs(command):
            return command if os.path.exists(command) else None
        return shutil.which(command)

    async def connect(self) -> None:
        """
        Connect with exponential backoff.

        Raises:
            Exception: The last connection error once all attempts fail
        """
        delay = self._initial_delay
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._attempt_connection()
                self._is_connected = True
                return
            except Exception as e:
                self._is_connected = False
                await self._reset_exit_stack()
                if attempt >= self._max_attempts:
                    logger.error(
                        "Failed to connect to %s after %d attempts: %s",
                        self.name,
                        self._max_attempts,
                        e,
                    )
                    raise
                logger.warning(
                    "Connection attempt %d failed for %s: %s. Retrying in %.1fs...",
                    attempt,
                    self.name,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_delay)

    async def _attempt_connection(self) -> None:
        command = self._resolve_command()
        if not command:
            raise ValueError(f"Command '{self.config.get('command')}' not found in PATH")

        env = self.config.get("env")
        server_params = StdioServerParameters(
            command=command,
            args=self.config.get("args", []),
            env={**os.environ, **env} if env else None,
        )

        read_stream, write_stream = await self.exit_stack.enter_async_context(
            stdio_client(server_params)
        )
        client_info = types.Implementation(name=self.name, version=self.client_version)
        self.session = await self.exit_stack.enter_async_context(
            ClientSession(read_stream, write_stream, client_info=client_info)
        )
        await asyncio.wait_for(self.session.initialize(), timeout=self._connection_timeout)
        logger.info("MCP client '%s' connected successfully", self.name)

    async def _reset_exit_stack(self) -> None:
        try:
            await self.exit_stack.aclose()
        except Exception as e:
            logger.debug("Error discarding failed connection to %s: %s", self.name, e)
        self.exit_stack = AsyncExitStack()
        self.session = None

    async def _request(
        self, description: str, operation: Callable[[ClientSession], Awaitable[T]]
    ) -> T:
        """Run ``operation`` on the live session, normalizing failures to McpError."""
        if not self.session:
            raise _internal_error(f"Client {self.name} not connected")
        try:
            return await operation(self.session)
        except McpError as e:
            logger.error("← MCP[%s]: error %s: %s", self.name, description, e.error.message)
            raise
        except Exception as e:
            logger.error("← MCP[%s]: failed %s: %s", self.name, description, e)
            raise _internal_error(f"Failed {description}: {e!s}") from e

    async def list_tools(self) -> list[types.Tool]:
        result = await self._request("listing tools", lambda s: s.list_tools())
        return result.tools

    async def list_prompts(self) -> list[types.Prompt]:
        result = await self._request("listing prompts", lambda s: s.list_prompts())
        return result.prompts

    async def get_prompt(
        self, name: str, arguments: dict[str, str] | None = None
    ) -> types.GetPromptResult:
        return await self._request(
            f"getting prompt '{name}'", lambda s: s.get_prompt(name, arguments)
        )

    async def list_resources(self) -> list[types.Resource]:
        result = await self._request("listing resources", lambda s: s.list_resources())
        return result.resources

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        return await self._request(
            f"reading resource '{uri}'", lambda s: s.read_resource(AnyUrl(uri))
        )

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> types.CallToolResult:
        logger.info("→ MCP[%s]: calling tool '%s'", self.name, name)
        result = await self._request(
            f"calling tool '{name}'", lambda s: s.call_tool(name, arguments)
        )
        logger.info("← MCP[%s]: tool '%s' returned (isError=%s)", self.name, name, result.isError)
        return result

    async def close(self) -> None:
        async with self._cleanup_lock:
            try:
                self._is_connected = False
                await self.exit_stack.aclose()
                self.session = None
                logger.info("MCP client '%s' disconnected", self.name)
            except Exception as e:
                logger.error("Error during cleanup of client %s: %s", self.name, e)

    @property
    def is_connected(self) -> bool:
        return self._is_connected
