"""
Tests for LLM response parsing and plan detection.
"""

import json

import pytest

from swarm_controller.errors import ValidationError
from swarm_controller.plan_parser import detect_plan_ready, extract_plan, parse_json_from_response

PLAN = {
    "proposedChanges": [{"path": "app/views.py", "action": "modify", "description": "Add {id} route"}],
    "verificationPlan": "Run pytest",
    "estimatedEffort": "small",
}


class TestParseJsonFromResponse:
    """Tests for extracting an object from CLI output."""

    def test_plain_json(self):
        assert parse_json_from_response('{"approved": true}') == {"approved": True}

    def test_cli_result_wrapper(self):
        wrapper = {"type": "result", "subtype": "success", "result": 'Done.\n{"testsPassed": true}'}
        assert parse_json_from_response(json.dumps(wrapper)) == {"testsPassed": True}

    def test_object_embedded_in_prose(self):
        text = 'Here is my review:\n{"approved": false, "issues": ["missing test"]}\nThanks!'
        assert parse_json_from_response(text)["issues"] == ["missing test"]

    def test_wrapper_without_json_result_is_rejected(self):
        wrapper = {"type": "result", "result": "I could not finish the task."}
        with pytest.raises(ValidationError):
            parse_json_from_response(json.dumps(wrapper))

    @pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", "{broken: json"])
    def test_no_object(self, text):
        with pytest.raises(ValidationError):
            parse_json_from_response(text)


class TestPlanDetection:
    """Tests for recognising a complete plan in chat text."""

    def test_plan_in_fenced_block(self):
        text = f"I propose the following:\n```json\n{json.dumps(PLAN)}\n```\nShall I proceed?"
        assert detect_plan_ready(text) is True
        assert extract_plan(text) == PLAN

    def test_plan_inline_with_spaced_brace(self):
        text = "Plan: " + json.dumps(PLAN).replace('{"proposedChanges"', '{ "proposedChanges"', 1)
        assert extract_plan(text)["verificationPlan"] == "Run pytest"

    def test_braces_inside_plan_are_balanced(self):
        text = json.dumps(PLAN) + " and then {something else}"
        assert extract_plan(text) == PLAN

    def test_missing_verification_plan(self):
        plan = {"proposedChanges": PLAN["proposedChanges"]}
        assert detect_plan_ready(json.dumps(plan)) is False

    def test_empty_proposed_changes(self):
        plan = {"proposedChanges": [], "verificationPlan": "Run pytest"}
        assert detect_plan_ready(json.dumps(plan)) is False

    def test_truncated_plan(self):
        assert detect_plan_ready(json.dumps(PLAN)[:-5]) is False

    @pytest.mark.parametrize("text", ["", "Let me think about it.", '{"other": 1}', None])
    def test_not_a_plan(self, text):
        assert detect_plan_ready(text) is False
