"""
Hallucination Auditor

Post-pass heuristic that compares the narrative a pass produced with the tools
it actually called. A rule fires when the text asserts a state change (coins
spent, item stowed, damage dealt, quest completed...) and none of the tools
that can enact that change for the current mode was invoked.

The auditor never mutates anything; its finding only decides whether the
orchestrator spends its corrective retry. False positives are expected and are
bounded by that retry budget.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from pydantic import BaseModel

from saga_gm.chat.logging_utils import should_log_feature

logger = logging.getLogger(__name__)

# Clause boundary used to keep matches inside one sentence
_CLAUSE = r"[^。！？!?\n]"


class AuditFinding(BaseModel):
    """Result of one audit; derived, never persisted."""

    has_hallucination: bool
    reason: str | None = None
    claims: list[str] = []
    required_tools: list[str] = []


@dataclass(frozen=True)
class AuditRule:
    """A family of state-change claims and the tools that can enact them."""

    claim: str
    patterns: tuple[re.Pattern[str], ...]
    exploration_tools: frozenset[str]
    battle_tools: frozenset[str]

    def tools_for(self, is_battle: bool) -> frozenset[str]:
        return self.battle_tools if is_battle else self.exploration_tools

    def search(self, text: str) -> re.Match[str] | None:
        for pattern in self.patterns:
            match = pattern.search(text)
            if match:
                return match
        return None


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


DEFAULT_RULES: tuple[AuditRule, ...] = (
    AuditRule(
        claim="currency spent",
        patterns=_compile(
            rf"(掏出|拿出|花费|花了|支付|付了|付给|递给|交给|收下你?的?){_CLAUSE}{{0,10}}?\d+\s*(枚|个|块)?\s*(金币|银币|铜币|灵石|银两|金子)",
            rf"\b(pay|pays|paid|spend|spends|spent|hand(?:s|ed)? over)\b{_CLAUSE}{{0,30}}?\b\d+\s*(gold|silver|coins?|gp)\b",
        ),
        exploration_tools=frozenset({"interact_npc", "modify_player_data"}),
        battle_tools=frozenset({"interact_npc", "modify_player_data", "use_item"}),
    ),
    AuditRule(
        claim="currency gained",
        patterns=_compile(
            r"(获得|得到|赚到|收获|捡到)了?\s*\d+\s*(枚|个|块)?\s*(金币|银币|铜币|灵石|银两)",
            rf"\byou (receive|received|gain|gained|earn|earned|loot|looted|find|found)\b{_CLAUSE}{{0,10}}?\b\d+\s*(gold|silver|coins?|gp)\b",
        ),
        exploration_tools=frozenset({"interact_npc", "modify_player_data", "update_quest"}),
        battle_tools=frozenset({"execute_battle_action", "modify_player_data"}),
    ),
    AuditRule(
        claim="item placed into inventory",
        patterns=_compile(
            rf"(放入|放进|装进|收进|塞进|收入|揣进)了?(你的)?{_CLAUSE}{{0,2}}?(背包|行囊|包裹|储物袋|收纳袋|囊中|口袋)",
            r"(获得|得到|拾取|捡起|捡到)了?[「【《][^」】》]+[」】》]",
            rf"\b(added|put|placed|stowed|tucked|slipped)\b{_CLAUSE}{{0,40}}?\b(inventory|backpack|bag|pack|satchel)\b",
            r"\byou (obtain|obtained|acquire|acquired|pick up|picked up)\b",
        ),
        exploration_tools=frozenset({"add_item", "interact_npc", "update_quest"}),
        battle_tools=frozenset({"add_item", "execute_battle_action"}),
    ),
    AuditRule(
        claim="damage dealt",
        patterns=_compile(
            r"造成了?\s*\d+\s*点?(伤害|暴击)",
            r"(扣除|减少|损失)了?\s*\d+\s*点?(生命|血量|HP)",
            r"\b(deal|deals|dealt|inflict|inflicts|inflicted|take|takes|took|suffer|suffers|suffered)\s+\d+\s+(points? of\s+)?damage\b",
            rf"\b(hp|health)\b{_CLAUSE}{{0,20}}?\b(drops?|falls?|fell|reduced)\b{_CLAUSE}{{0,10}}?\bto\s+\d+",
        ),
        exploration_tools=frozenset({"start_battle", "execute_battle_action", "modify_player_data"}),
        battle_tools=frozenset({"execute_battle_action"}),
    ),
    AuditRule(
        claim="enemy defeated",
        patterns=_compile(
            r"(击败|击杀|消灭|斩杀|打败)了",
            r"\b(is|was|has been) (defeated|slain|killed|vanquished)\b",
            r"\byou (defeat|defeated|slay|slew|kill|killed|vanquish|vanquished)\b",
        ),
        # Recollections of past fights are common outside battle
        exploration_tools=frozenset(),
        battle_tools=frozenset({"execute_battle_action"}),
    ),
    AuditRule(
        claim="health or mana restored",
        patterns=_compile(
            r"(恢复|回复)了?\s*\d+\s*点?(生命|血量|HP|法力|MP|灵力)",
            rf"(喝下|服下|服用|吞下)了?{_CLAUSE}{{0,10}}?(药水|丹药|药剂)",
            r"\b(restore|restores|restored|recover|recovers|recovered|heal|heals|healed)\s+(for\s+)?\d+\s+(hp|health|mana|mp)\b",
            rf"\byou (drink|drank|quaff|quaffed|consume|consumed)\b{_CLAUSE}{{0,20}}?\bpotion\b",
        ),
        exploration_tools=frozenset({"use_item", "modify_player_data"}),
        battle_tools=frozenset({"use_item", "execute_battle_action"}),
    ),
    AuditRule(
        claim="quest completed",
        patterns=_compile(
            rf"完成了{_CLAUSE}{{0,12}}?任务",
            r"任务(已经?|已)完成",
            rf"\bquest\b{_CLAUSE}{{0,30}}?\b(is |has been )?(complete|completed|fulfilled)\b",
            rf"\byou (complete|completed|finish|finished)\b{_CLAUSE}{{0,30}}?\bquest\b",
        ),
        exploration_tools=frozenset({"update_quest"}),
        battle_tools=frozenset({"update_quest"}),
    ),
    AuditRule(
        claim="quest accepted",
        patterns=_compile(
            rf"(接受|接下|领取)了{_CLAUSE}{{0,12}}?任务",
            r"\b(new quest|quest accepted|you accept(ed)? the quest)\b",
        ),
        exploration_tools=frozenset({"create_quest"}),
        battle_tools=frozenset({"create_quest"}),
    ),
    AuditRule(
        claim="level or experience gained",
        patterns=_compile(
            r"(升级了|等级提升|提升到了?\s*\d+\s*级|获得了?\s*\d+\s*点?经验)",
            r"\b(level(ed)? up|reach(ed)? level \d+|gain(ed)? \d+ (xp|experience))\b",
        ),
        exploration_tools=frozenset({"modify_player_data", "update_quest", "interact_npc"}),
        battle_tools=frozenset({"execute_battle_action", "modify_player_data"}),
    ),
)


def detect(
    narrative_text: str,
    invoked_tool_names: Iterable[str],
    is_battle_mode: bool,
    rules: Sequence[AuditRule] = DEFAULT_RULES,
) -> AuditFinding:
    """Flag state-change claims in ``narrative_text`` that no invoked tool backs."""
    if not narrative_text or not narrative_text.strip():
        return AuditFinding(has_hallucination=False)

    invoked = set(invoked_tool_names)
    claims: list[str] = []
    evidence: list[str] = []
    required: set[str] = set()

    for rule in rules:
        tools = rule.tools_for(is_battle_mode)
        if not tools or invoked & tools:
            continue
        match = rule.search(narrative_text)
        if match is None:
            continue
        claims.append(rule.claim)
        evidence.append(f'{rule.claim} ("{match.group(0).strip()}")')
        required.update(tools)

    if not claims:
        return AuditFinding(has_hallucination=False)

    reason = (
        "Narrative describes "
        + "; ".join(evidence)
        + " but none of the tools that perform it were called "
        + f"(expected one of: {', '.join(sorted(required))})."
    )
    finding = AuditFinding(
        has_hallucination=True,
        reason=reason,
        claims=claims,
        required_tools=sorted(required),
    )

    if should_log_feature("chat", "audit_findings"):
        logger.info("Audit finding (battle=%s): %s", is_battle_mode, reason)
    else:
        logger.debug("Audit finding (battle=%s): %s", is_battle_mode, reason)
    return finding
