"""
Unit tests for LLM JSON extraction and repair.
"""

import pytest

from deckforge.errors import MalformedOutput
from deckforge.llm.json_parsing import extract_json_payload, parse_llm_json


class TestExtractJsonPayload:
    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"cards": []}\n```\nThanks!'
        assert extract_json_payload(text) == '{"cards": []}'

    def test_bare_object_with_commentary(self):
        text = 'Sure! {"summary": "x"} Hope that helps.'
        assert extract_json_payload(text) == '{"summary": "x"}'

    def test_no_json(self):
        assert extract_json_payload("I cannot help with that.") is None


class TestParseLlmJson:
    def test_plain_json(self):
        assert parse_llm_json('{"a": 1}') == {"a": 1}

    def test_trailing_comma_repaired(self):
        data = parse_llm_json('```json\n{"cards": [{"question": "Q?", "answer": "A",}],}\n```')
        assert data["cards"][0]["answer"] == "A"

    def test_empty_response(self):
        with pytest.raises(MalformedOutput):
            parse_llm_json("   ")

    def test_no_json_found(self):
        with pytest.raises(MalformedOutput) as exc_info:
            parse_llm_json("The module covers onboarding.", label="stage_a")
        assert "stage_a" in str(exc_info.value)
