"""
Game Master Logging Utilities

Shared logging helpers with per-module feature flags. Feature flags are
installed by ``saga_gm.main`` from the ``logging.modules`` section of the
configuration and checked here without touching the config on the hot path.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

_module_features: dict[str, dict[str, bool]] = {}


def set_module_features(module: str, features: dict[str, bool]) -> None:
    """Install the feature flags for one logging module."""
    _module_features[module] = dict(features)


def should_log_feature(module: str, feature: str) -> bool:
    """Check if a specific logging feature should be enabled."""
    return _module_features.get(module, {}).get(feature, False)


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def log_llm_reply(
    narrative: str,
    tool_names: list[str],
    context: str,
    model: str,
    truncate_length: int = 500,
) -> None:
    """
    Log what the model produced during one generation pass.

    Args:
        narrative: Text the pass emitted (after buffering)
        tool_names: Tools the pass called, in order
        context: Descriptive context for the log entry
        model: Model id used for the pass
        truncate_length: Maximum length of logged narrative
    """
    if not should_log_feature("chat", "llm_replies"):
        return

    log_parts = [f"LLM Reply ({context}):"]
    if narrative:
        log_parts.append(f"Content: {_truncate(narrative, truncate_length)}")
    if tool_names:
        log_parts.append(f"Tool calls: {len(tool_names)}")
        for i, name in enumerate(tool_names):
            log_parts.append(f"  [{i}] {name}")
    log_parts.append(f"Model: {model}")

    logger.info(" | ".join(log_parts))


def log_tool_execution_start(
    tool_name: str, call_index: int = 0, total_calls: int = 1
) -> None:
    """Log the start of tool execution with consistent formatting."""
    if total_calls > 1:
        logger.info(
            "→ Tool[%s]: executing tool call %d/%d",
            tool_name,
            call_index + 1,
            total_calls,
        )
    else:
        logger.info("→ Tool[%s]: executing tool", tool_name)


def log_tool_execution_success(tool_name: str, content_length: int) -> None:
    logger.info("← Tool[%s]: success, content length: %d", tool_name, content_length)


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    logger.error("← Tool[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_arguments(
    tool_name: str, arguments: dict[str, Any], context: str, truncate_length: int = 500
) -> None:
    """Log tool arguments being sent to the executor."""
    if not should_log_feature("mcp", "tool_arguments"):
        logger.debug("Tool arguments logging disabled for %s", tool_name)
        return
    logger.info(
        "→ Tool[%s]: arguments (%s): %s",
        tool_name,
        context,
        _truncate(str(arguments), truncate_length),
    )


def log_tool_results(
    tool_name: str, results: Any, context: str, truncate_length: int = 200
) -> None:
    """Log tool results received from the executor."""
    if not should_log_feature("mcp", "tool_results"):
        return
    logger.info(
        "← Tool[%s]: results (%s): %s",
        tool_name,
        context,
        _truncate(str(results), truncate_length),
    )
