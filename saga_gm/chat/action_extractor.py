"""Suggested-action extraction from the tail of a narrative."""

from __future__ import annotations

import re

from pydantic import BaseModel

MAX_ACTIONS = 4

# "- [Attack]", "* **[Flee]** - run for the door", "> [Talk]"
_LIST_OPTION = re.compile(r"^(?:[-*•>]\s+)+(?:\*\*)?[【\[]([^\]】]{1,50})[】\]](?:\*\*)?")
# "[Attack] [Flee]" or "**[Attack]** / **[Flee]**"
_INLINE_OPTION = re.compile(r"(?:\*\*)?[【\[]([^\]】]{1,50})[】\]](?:\*\*)?")
# Option headings such as "What do you do?" or "**请选择：**"
_PROMPT_LINE = re.compile(r"^\*\*.*[？?：:]\s*\*\*$|^.*[？?：:]$")
_SEPARATORS = re.compile(r"[\s*\-—·•/|>]+")


class SuggestedAction(BaseModel):
    label: str
    value: str


class ExtractedActions(BaseModel):
    actions: list[SuggestedAction]
    clean_text: str


def extract_actions(text: str, max_actions: int = MAX_ACTIONS) -> ExtractedActions | None:
    """
    Scan ``text`` bottom-up for option lines and split them off.

    Returns None when the narrative ends without options. Otherwise the
    options (in reading order, capped at ``max_actions``) and the narrative
    with the option block removed.
    """
    lines = text.split("\n")
    labels: list[str] = []
    cut_index = len(lines)

    for i in range(len(lines) - 1, -1, -1):
        line = lines[i].strip()
        if not line:
            continue

        list_match = _LIST_OPTION.match(line)
        if list_match:
            labels.insert(0, list_match.group(1).strip())
            cut_index = i
            continue

        inline = [m.group(1).strip() for m in _INLINE_OPTION.finditer(line)]
        if inline:
            remainder = _SEPARATORS.sub("", _INLINE_OPTION.sub("", line))
            if len(remainder) <= sum(len(label) for label in inline):
                labels[0:0] = inline
                cut_index = i
                continue

        if labels and _PROMPT_LINE.match(line):
            cut_index = i
            continue

        break

    labels = [label for label in labels if label]
    if not labels:
        return None

    return ExtractedActions(
        actions=[SuggestedAction(label=label, value=label) for label in labels[:max_actions]],
        clean_text="\n".join(lines[:cut_index]).rstrip(),
    )
