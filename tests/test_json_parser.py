import pytest

from browser_qa.llm.json_parser import extract_json_array, extract_json_object, parse_directive
from browser_qa.models import BrowserActionType, DirectiveStatus


def test_extract_json_object_from_code_fence():
    text = """```json\n{"status": "finished", "actions": []}\n```"""
    result = extract_json_object(text)
    assert result["status"] == "finished"
    assert result["actions"] == []


def test_extract_json_object_ignores_surrounding_prose():
    result = extract_json_object('Sure! {"ref": 3, "action": "click"} Hope that helps.')
    assert result == {"ref": 3, "action": "click"}


def test_extract_json_array_rejects_missing_array():
    assert extract_json_array('[{"ref": 1}]') == [{"ref": 1}]
    with pytest.raises(ValueError):
        extract_json_array("no elements here")


def test_parse_directive_reads_actions():
    directive = parse_directive(
        '{"status": "continue", "message": "Open settings",'
        ' "actions": [{"type": "click", "selector": "#settings"}]}'
    )
    assert directive.status == DirectiveStatus.CONTINUE
    assert directive.actions[0].type == BrowserActionType.CLICK
    assert directive.actions[0].selector == "#settings"
    assert directive.message == "Open settings"
