"""
World Context Loading

Builds the per-turn system prompt and decides between battle and exploration
mode. The world state (player sheet, current area, quests, battle) lives on
the MCP servers; this module only asks them for it:

- the configured context prompt, rendered for the acting player
- optionally every readable text resource
- the battle probe tool, whose result says whether a battle is active

MCP servers go down; every lookup degrades to the base prompt in exploration
mode rather than failing the turn.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mcp import types
from pydantic import BaseModel

from saga_gm.chat.logging_utils import should_log_feature

if TYPE_CHECKING:
    from saga_gm.chat.tool_executor import ToolExecutor
    from saga_gm.tool_catalog import ToolCatalog

logger = logging.getLogger(__name__)


class WorldContext(BaseModel):
    system_prompt: str
    is_battle: bool = False


class WorldContextLoader:
    """Loads system prompt and mode for one player turn."""

    def __init__(
        self,
        catalog: ToolCatalog | None,
        executor: ToolExecutor | None,
        world_config: dict[str, Any],
    ) -> None:
        self.catalog = catalog
        self.executor = executor
        self.base_prompt: str = world_config.get(
            "system_prompt", "You are the Game Master of a persistent role-playing world."
        ).rstrip()
        self.battle_prompt: str = world_config.get("battle_prompt", "").rstrip()
        self.context_prompt: str = world_config.get("context_prompt", "world_context")
        self.battle_probe_tool: str = world_config.get("battle_probe_tool", "get_battle_state")
        self.include_resources: bool = world_config.get("include_resources", False)
        self.actor_argument: str = world_config.get("actor_argument", "player_id")

    async def load(self, player_id: str) -> WorldContext:
        logger.info("→ World: loading context for player %s", player_id)
        is_battle = await self.detect_battle(player_id)

        sections = [self.base_prompt]
        if is_battle and self.battle_prompt:
            sections.append(self.battle_prompt)
        context = await self._render_context_prompt(player_id)
        if context:
            sections.append(context)
        if self.include_resources:
            sections.extend(await self._read_resources())

        system_prompt = "\n\n".join(section for section in sections if section)
        logger.info(
            "← World: context ready (battle=%s, prompt length=%d)", is_battle, len(system_prompt)
        )
        if should_log_feature("chat", "system_prompt"):
            logger.info("System prompt being used:\n%s", system_prompt)
        return WorldContext(system_prompt=system_prompt, is_battle=is_battle)

    async def detect_battle(self, player_id: str) -> bool:
        """True when the battle probe reports an active battle for the player."""
        if self.executor is None or self.catalog is None:
            return False
        if not self.catalog.has_tool(self.battle_probe_tool):
            return False

        result = await self.executor.execute(self.battle_probe_tool, {}, player_id)
        if not result.success or not isinstance(result.data, dict):
            return False
        return result.data.get("status") == "active"

    async def _render_context_prompt(self, player_id: str) -> str:
        if self.catalog is None or not self.catalog.has_prompt(self.context_prompt):
            return ""
        try:
            res = await self.catalog.get_prompt(
                self.context_prompt, {self.actor_argument: player_id}
            )
        except Exception as e:
            logger.warning("← World: context prompt '%s' unavailable: %s", self.context_prompt, e)
            return ""
        return "\n".join(
            message.content.text
            for message in res.messages
            if isinstance(message.content, types.TextContent)
        )

    async def _read_resources(self) -> list[str]:
        if self.catalog is None:
            return []
        sections: list[str] = []
        for uri in self.catalog.list_available_resources():
            try:
                res = await self.catalog.read_resource(uri)
            except Exception as e:
                logger.debug("→ World: resource %s unavailable: %s", uri, e)
                continue
            texts = [
                content.text.strip()
                for content in res.contents
                if isinstance(content, types.TextResourceContents)
            ]
            if texts:
                sections.append(f"**{uri}**:\n" + "\n".join(texts))
        return sections
