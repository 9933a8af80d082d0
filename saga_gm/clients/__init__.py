"""Clients package: vendor wire adapters, the LLM facade and the MCP transport."""

from __future__ import annotations

from .llm_client import LLMClient
from .mcp_client import MCPClient

__all__ = ["LLMClient", "MCPClient"]
