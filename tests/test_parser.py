import pytest

from browser_qa.models import CommandMode
from browser_qa.parser import help_text, parse_command, parse_management_command


@pytest.mark.parametrize(
    ("text", "mode", "instruction"),
    [
        ("e: get the title", CommandMode.EXTRACT, "get the title"),
        ("t: log in and open settings", CommandMode.TASK, "log in and open settings"),
        ("?: what does this page do", CommandMode.ASK, "what does this page do"),
        ("test: login shows dashboard", CommandMode.TEST, "login shows dashboard"),
        ("T: uppercase prefix", CommandMode.TASK, "uppercase prefix"),
        ("l", CommandMode.LEARN, ""),
        ("learn", CommandMode.LEARN, ""),
        ("https://example.com/a", CommandMode.GOTO, "https://example.com/a"),
        ("switch to dark mode", CommandMode.AUTO, "switch to dark mode"),
    ],
)
def test_parse_command_modes(text, mode, instruction):
    command = parse_command(text)
    assert command.mode == mode
    assert command.instruction == instruction
    assert command.target_browser is None


def test_parse_command_targets_browser_and_tab():
    command = parse_command("@admin:0 e: get title")
    assert command.target_browser == "admin"
    assert command.target_tab == 0
    assert command.mode == CommandMode.EXTRACT
    assert command.raw == "e: get title"

    fragment = parse_command("@userA:checkout t: pay")
    assert fragment.target_browser == "userA"
    assert fragment.target_tab == "checkout"

    browser_only = parse_command("@userB go to settings")
    assert browser_only.target_browser == "userB"
    assert browser_only.target_tab is None
    assert browser_only.mode == CommandMode.AUTO


def test_parse_management_commands():
    spawn = parse_management_command("browser:spawn userB --isolated")
    assert spawn is not None and spawn.kind == "browser_spawn"
    assert spawn.name == "userB" and spawn.isolated is True

    assert parse_management_command("browsers").kind == "browser_list"
    assert parse_management_command("browser kill userB").name == "userB"
    assert parse_management_command("tab:new").url is None
    assert parse_management_command("tab:new https://a.test").url == "https://a.test"
    assert parse_management_command("tab:switch 2").target == 2
    assert parse_management_command("tab:switch checkout").target == "checkout"
    assert parse_management_command("tab:close").index is None
    assert parse_management_command("tab:close 1").index == 1
    assert parse_management_command("t: open tabs") is None


def test_help_text_lists_targeting_syntax():
    text = help_text()
    assert "@name:tab <cmd>" in text
    assert "browser:spawn" in text
