"""Tests for recovering JSON objects from model replies."""

import pytest

from src.nlu.reply_parser import extract_json


class TestExtractJson:

    def test_plain_object(self):
        assert extract_json('{"intent": "help", "confidence": 0.9}') == {"intent": "help", "confidence": 0.9}

    def test_code_fence(self):
        reply = '```json\n{"intent": "nutrition"}\n```'
        assert extract_json(reply) == {"intent": "nutrition"}

    def test_leading_prose(self):
        reply = 'Sure! Here is the classification: {"intent": "rest_timer"} Hope that helps.'
        assert extract_json(reply)["intent"] == "rest_timer"

    def test_trailing_comma(self):
        assert extract_json('{"intent": "help", "confidence": 0.8,}') == {"intent": "help", "confidence": 0.8}

    def test_truncated_reply_is_closed(self):
        reply = '{"intent": "log_exercise", "alternatives": [{"intent": "quick_log", "confidence": 0.3}'
        data = extract_json(reply)
        assert data["intent"] == "log_exercise"
        assert data["alternatives"][0]["intent"] == "quick_log"

    def test_truncated_after_comma(self):
        data = extract_json('{"intent": "motivation", "confidence": 0.7,')
        assert data == {"intent": "motivation", "confidence": 0.7}

    def test_raw_newline_inside_string(self):
        data = extract_json('{"intent": "ask_ai", "note": "two\nlines"}')
        assert data["note"] == "two\nlines"

    @pytest.mark.parametrize("reply", ["", "   ", "no json here", "[1, 2, 3]"])
    def test_unrecoverable_raises(self, reply):
        with pytest.raises(ValueError):
            extract_json(reply)
