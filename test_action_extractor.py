"""Tests for trailing suggested-action extraction."""

from saga_gm.chat.action_extractor import extract_actions


def test_list_options_are_split_off():
    text = (
        "The tavern falls silent as you enter.\n"
        "\n"
        "What do you do?\n"
        "- [Talk to the barkeep]\n"
        "- [Order an ale]\n"
        "- [Leave]"
    )
    result = extract_actions(text)
    assert result is not None
    assert [a.label for a in result.actions] == ["Talk to the barkeep", "Order an ale", "Leave"]
    assert all(a.value == a.label for a in result.actions)
    assert result.clean_text == "The tavern falls silent as you enter."


def test_inline_options():
    text = "A goblin blocks the path.\n**[Attack]** / **[Flee]**"
    result = extract_actions(text)
    assert result is not None
    assert [a.label for a in result.actions] == ["Attack", "Flee"]
    assert result.clean_text == "A goblin blocks the path."


def test_fullwidth_brackets_and_quote_markers():
    text = "商人打量着你。\n**请选择：**\n> 【购买药水】\n> 【离开】"
    result = extract_actions(text)
    assert result is not None
    assert [a.label for a in result.actions] == ["购买药水", "离开"]
    assert result.clean_text == "商人打量着你。"


def test_options_are_capped():
    text = "Choose.\n" + "\n".join(f"- [Option {i}]" for i in range(6))
    result = extract_actions(text, max_actions=4)
    assert result is not None
    assert len(result.actions) == 4
    assert result.actions[0].label == "Option 0"


def test_narrative_without_options_returns_none():
    assert extract_actions("You walk on into the night.") is None


def test_bracket_inside_prose_is_not_an_option():
    text = "The sign reads [Closed] in faded paint, and the door is locked tight."
    assert extract_actions(text) is None
