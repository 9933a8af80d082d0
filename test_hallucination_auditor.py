"""Tests for the narrative-vs-tools hallucination heuristic."""

from saga_gm.chat.hallucination_auditor import detect


def test_clean_narrative_has_no_finding():
    finding = detect("The wind howls across the empty plain.", [], is_battle_mode=False)
    assert not finding.has_hallucination
    assert finding.reason is None


def test_empty_text_has_no_finding():
    assert not detect("", ["add_item"], is_battle_mode=True).has_hallucination
    assert not detect("   \n", [], is_battle_mode=False).has_hallucination


def test_item_stowed_without_add_item_is_flagged():
    finding = detect("你把短剑放进了背包。", [], is_battle_mode=False)
    assert finding.has_hallucination
    assert "item placed into inventory" in finding.claims
    assert "add_item" in finding.required_tools
    assert finding.reason


def test_item_stowed_with_add_item_is_clean():
    finding = detect("You put the rope into your backpack.", ["add_item"], is_battle_mode=False)
    assert not finding.has_hallucination


def test_damage_in_battle_requires_battle_action():
    text = "Your blade bites deep and you deal 12 damage to the wolf."
    flagged = detect(text, [], is_battle_mode=True)
    assert flagged.has_hallucination
    assert flagged.required_tools == ["execute_battle_action"]

    backed = detect(text, ["execute_battle_action"], is_battle_mode=True)
    assert not backed.has_hallucination


def test_defeat_outside_battle_is_not_flagged():
    text = "You remember how the bandit was defeated last winter."
    assert not detect(text, [], is_battle_mode=False).has_hallucination
    assert detect(text, [], is_battle_mode=True).has_hallucination


def test_paying_coins_is_flagged():
    finding = detect("你掏出 20 枚金币递给商人。", [], is_battle_mode=False)
    assert finding.has_hallucination
    assert "currency spent" in finding.claims


def test_quest_completion_requires_update_quest():
    text = "The elder smiles: the quest is complete."
    assert detect(text, [], is_battle_mode=False).has_hallucination
    assert not detect(text, ["update_quest"], is_battle_mode=False).has_hallucination


def test_multiple_claims_are_all_reported():
    text = "You pick up the amulet. The quest is complete."
    finding = detect(text, [], is_battle_mode=False)
    assert finding.has_hallucination
    assert "item placed into inventory" in finding.claims
    assert "quest completed" in finding.claims
