"""
Game tool catalog.

Registers the tools, prompts and resources served by the world's MCP servers
and hands the model a mode-specific subset of them as ``NormalizedTool``s:

- battle: the configured battle tool names only
- exploration: everything except ``execute_battle_action`` and the admin tools
- admin: everything

Schemas are passed through untouched; argument validation is the server's job.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from mcp import McpError, types

from saga_gm.chat.models import NormalizedTool

if TYPE_CHECKING:
    from saga_gm.clients.mcp_client import MCPClient

logger = logging.getLogger(__name__)

ToolMode = Literal["exploration", "battle", "admin"]

BATTLE_ACTION_TOOL = "execute_battle_action"
DEFAULT_BATTLE_TOOLS: tuple[str, ...] = (
    "execute_battle_action",
    "use_item",
    "get_battle_state",
    "add_item",
    "create_quest",
    "update_quest",
)
DEFAULT_ADMIN_TOOLS: tuple[str, ...] = (
    "modify_player_data",
    "add_item",
    "generate_area",
    "abandon_quest",
)


@dataclass
class ToolInfo:
    tool: types.Tool
    client: MCPClient


@dataclass
class PromptInfo:
    prompt: types.Prompt
    client: MCPClient


@dataclass
class ResourceInfo:
    resource: types.Resource
    client: MCPClient


def _not_found(kind: str, name: str) -> McpError:
    return McpError(
        error=types.ErrorData(code=types.INVALID_PARAMS, message=f"{kind} '{name}' not found")
    )


class ToolCatalog:
    """Registry of MCP-discovered tools, prompts and resources."""

    def __init__(
        self,
        clients: list[MCPClient],
        battle_tools: Iterable[str] = DEFAULT_BATTLE_TOOLS,
        admin_tools: Iterable[str] = DEFAULT_ADMIN_TOOLS,
    ) -> None:
        self.clients = clients
        self.battle_tools: frozenset[str] = frozenset(battle_tools)
        self.admin_tools: frozenset[str] = frozenset(admin_tools)
        self._tool_registry: dict[str, ToolInfo] = {}
        self._prompt_registry: dict[str, PromptInfo] = {}
        self._resource_registry: dict[str, ResourceInfo] = {}

    async def initialize(self) -> None:
        """Rebuild every registry from the connected clients."""
        self._tool_registry.clear()
        self._prompt_registry.clear()
        self._resource_registry.clear()

        for client in self.clients:
            if not client.is_connected:
                logger.warning("Skipping registration for disconnected client '%s'", client.name)
                continue
            await self._register_client(client)

        logger.info(
            "Initialized catalog with %d tools, %d prompts, %d resources",
            len(self._tool_registry),
            len(self._prompt_registry),
            len(self._resource_registry),
        )

    async def _register_client(self, client: MCPClient) -> None:
        for tool in await client.list_tools():
            name = tool.name
            if name in self._tool_registry:
                logger.warning("Tool name conflict: '%s' already exists", name)
                name = f"{client.name}_{name}"
            self._tool_registry[name] = ToolInfo(tool, client)

        # Prompts and resources are optional server capabilities.
        try:
            for prompt in await client.list_prompts():
                name = prompt.name
                if name in self._prompt_registry:
                    name = f"{client.name}_{name}"
                self._prompt_registry[name] = PromptInfo(prompt, client)
        except McpError as e:
            logger.debug("Client '%s' serves no prompts: %s", client.name, e.error.message)

        try:
            for resource in await client.list_resources():
                uri = str(resource.uri)
                if uri in self._resource_registry:
                    uri = f"{client.name}::{uri}"
                self._resource_registry[uri] = ResourceInfo(resource, client)
        except McpError as e:
            logger.debug("Client '%s' serves no resources: %s", client.name, e.error.message)

        logger.info("Registered tools from client '%s'", client.name)

    # ------------------------------------------------------------------
    # Tool sets
    # ------------------------------------------------------------------

    @property
    def tool_names(self) -> list[str]:
        return list(self._tool_registry)

    def has_tool(self, name: str) -> bool:
        return name in self._tool_registry

    def names_for_mode(self, mode: ToolMode) -> list[str]:
        """Registered tool names offered in ``mode``, in registration order."""
        if mode == "admin":
            return self.tool_names
        if mode == "battle":
            return [name for name in self._tool_registry if name in self.battle_tools]
        return [
            name
            for name in self._tool_registry
            if name != BATTLE_ACTION_TOOL and name not in self.admin_tools
        ]

    def tools_for_mode(self, mode: ToolMode) -> list[NormalizedTool]:
        tools: list[NormalizedTool] = []
        for name in self.names_for_mode(mode):
            tool = self._tool_registry[name].tool
            if not tool.inputSchema:
                logger.error("Skipping tool '%s': no input schema", name)
                continue
            tools.append(
                NormalizedTool(
                    name=name,
                    description=tool.description or "",
                    parameters=tool.inputSchema,
                )
            )
        return tools

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def get_tool_info(self, tool_name: str) -> ToolInfo:
        info = self._tool_registry.get(tool_name)
        if not info:
            raise _not_found("Tool", tool_name)
        return info

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        """Call by registry name; the server sees its own original tool name."""
        info = self.get_tool_info(tool_name)
        return await info.client.call_tool(info.tool.name, arguments)

    def has_prompt(self, prompt_name: str) -> bool:
        return prompt_name in self._prompt_registry

    async def get_prompt(
        self, prompt_name: str, arguments: dict[str, str] | None = None
    ) -> types.GetPromptResult:
        info = self._prompt_registry.get(prompt_name)
        if not info:
            raise _not_found("Prompt", prompt_name)
        return await info.client.get_prompt(info.prompt.name, arguments)

    def list_available_resources(self) -> list[str]:
        return list(self._resource_registry)

    async def read_resource(self, resource_uri: str) -> types.ReadResourceResult:
        info = self._resource_registry.get(resource_uri)
        if not info:
            raise _not_found("Resource", resource_uri)
        return await info.client.read_resource(str(info.resource.uri))
