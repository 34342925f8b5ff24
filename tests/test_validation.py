"""
Tests for the service chooser and prompt helpers.
"""

import pytest

from stackmgr import validation
from stackmgr.validation import confirm, parse_service_choice


NAMES = ["supabase", "n8n", "npm", "cloudflared", "portainer"]


@pytest.mark.parametrize("text, expected", [
    ("1", {"supabase"}),
    ("2,3", {"n8n", "npm"}),
    ("n8n portainer", {"n8n", "portainer"}),
    ("5, supabase", {"portainer", "supabase"}),
    ("a", set(NAMES)),
    ("ALL", set(NAMES)),
    ("", set()),
    ("   ", set()),
])
def test_valid_choices(text, expected):
    selected, err_msg = parse_service_choice(text, NAMES)
    assert selected == frozenset(expected)
    assert err_msg == ""


@pytest.mark.parametrize("text, fragment", [
    ("0", "No option 0"),
    ("6", "choose 1-5"),
    ("grafana", "'grafana' is not one of"),
    ("1 all", "'all' is not one of"),
])
def test_invalid_choices(text, fragment):
    selected, err_msg = parse_service_choice(text, NAMES)
    assert selected is None
    assert fragment in err_msg


def test_choose_services_reprompts_until_valid(monkeypatch, capsys):
    answers = iter(["9", "n8n,1"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))

    selected = validation.choose_services(NAMES, {"n8n": "Workflow automation"}, "back up")

    assert selected == frozenset({"n8n", "supabase"})
    captured = capsys.readouterr()
    assert "Workflow automation" in captured.out
    assert "No option 9" in captured.err


@pytest.mark.parametrize("answer, default, expected", [
    ("", True, True),
    ("", False, False),
    ("y", False, True),
    ("YES", False, True),
    ("nope", True, False),
])
def test_confirm(monkeypatch, answer, default, expected):
    monkeypatch.setattr("builtins.input", lambda prompt="": answer)
    assert confirm("Continue?", default) is expected
