"""Tests for intent classification.

Verifies:
- Backend replies are parsed into IntentResult (label, confidence, alternatives)
- Timeouts, errors and unusable replies fall back to keyword rules
- A timed-out backend call sees its cancellation token set
- Keyword fallback rules and their priority order
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeBackend
from src.agent.llm import BackendError
from src.agent.prompts import CLASSIFICATION_SYSTEM_PROMPT, INTENT_LABELS
from src.nlu.classifier import IntentClassifier, fallback_classify
from src.nlu.entities import EntityExtractor
from src.nlu.models import SessionContext

EXTRACTOR = EntityExtractor()


def _reply(**fields) -> str:
    data = {"intent": "log_exercise", "confidence": 0.9, "exercise": None, "alternatives": [], "note": ""}
    data.update(fields)
    return json.dumps(data)


@pytest.fixture
def make_classifier():
    created = []

    def _make(backend, **kwargs):
        classifier = IntentClassifier(backend, **kwargs)
        created.append(classifier)
        return classifier

    yield _make
    for classifier in created:
        classifier.close()


# ── Backend path ────────────────────────────────────────────────────

class TestBackendClassification:

    def test_successful_reply(self, make_classifier):
        backend = FakeBackend(default=_reply(intent="log_exercise", confidence=0.92, note="a set"))
        text = "bench press 8 reps at 185"
        entities = EXTRACTOR.extract(text)
        result = make_classifier(backend).classify(text, entities)

        assert result.label == "log_exercise"
        assert result.confidence == pytest.approx(0.92)
        assert result.source == "backend"
        assert result.interpretation_note == "a set"
        assert result.entities == entities

    def test_prompt_and_settings(self, make_classifier):
        backend = FakeBackend(default=_reply(intent="quick_log"))
        context = SessionContext(current_exercise="squat", previous_intent="log_exercise")
        make_classifier(backend).classify("8 reps", EXTRACTOR.extract("8 reps"), context)

        call = backend.calls[0]
        assert call["system_instruction"] == CLASSIFICATION_SYSTEM_PROMPT
        assert call["temperature"] == pytest.approx(0.1)
        assert '"8 reps"' in call["prompt"]
        assert "squat" in call["prompt"]
        assert "log_exercise" in call["prompt"]

    def test_mock_backend(self, make_classifier):
        backend = MagicMock()
        backend.generate.return_value = "```json\n" + _reply(intent="help", confidence=0.8) + "\n```"
        result = make_classifier(backend).classify("what can i say", [])
        assert result.label == "help"
        backend.generate.assert_called_once()

    def test_confidence_is_clamped(self, make_classifier):
        backend = FakeBackend(default=_reply(intent="help", confidence=1.7))
        result = make_classifier(backend).classify("help", [])
        assert result.confidence == 1.0

    def test_alternatives_parsed_and_filtered(self, make_classifier):
        backend = FakeBackend(default=_reply(
            intent="form_analysis",
            alternatives=[
                {"intent": "exercise_info", "confidence": 0.3, "reason": "could be a question"},
                {"intent": "dance", "confidence": 0.2},
                {"intent": "form_analysis", "confidence": 0.9},
                "not a dict",
            ],
        ))
        result = make_classifier(backend).classify("is my squat form ok", EXTRACTOR.extract("is my squat form ok"))
        assert [a.label for a in result.alternatives] == ["exercise_info"]
        assert result.alternatives[0].reason == "could be a question"

    def test_exercise_guess_fills_missing_exercise(self, make_classifier):
        backend = FakeBackend(default=_reply(intent="log_exercise", exercise="bench"))
        text = "8 reps at 185"
        result = make_classifier(backend).classify(text, EXTRACTOR.extract(text))
        exercise = result.first("exercise")
        assert exercise.value == "bench-press"
        assert exercise.span == (len(text), len(text))

    def test_exercise_guess_does_not_replace_local_match(self, make_classifier):
        backend = FakeBackend(default=_reply(intent="log_exercise", exercise="deadlift"))
        text = "squat 5 at 225"
        result = make_classifier(backend).classify(text, EXTRACTOR.extract(text))
        assert [e.value for e in result.entities if e.kind == "exercise"] == ["squat"]

    def test_number_guesses_fill_missing_slots(self, make_classifier):
        backend = FakeBackend(default=_reply(intent="log_exercise", exercise="bench press", reps=8, weight=185))
        text = "did bench"
        result = make_classifier(backend).classify(text, EXTRACTOR.extract(text))
        assert result.kinds() == {"exercise", "reps", "weight"}
        assert result.value_of("reps") == 8
        assert result.value_of("weight") == 185
        assert result.first("weight").span == (len(text), len(text))
        assert [e.value for e in result.entities if e.kind == "exercise"] == ["bench-press"]

    def test_number_guesses_do_not_replace_local_numbers(self, make_classifier):
        backend = FakeBackend(default=_reply(intent="log_exercise", reps=10, weight=200, unit="kg"))
        text = "squat 5 reps"
        result = make_classifier(backend).classify(text, EXTRACTOR.extract(text))
        assert [e.value for e in result.entities if e.kind == "reps"] == [5]
        assert result.value_of("weight") == 200
        assert result.first("weight").unit == "kg"

    @pytest.mark.parametrize("guess", [None, "lots", True, -5, 0])
    def test_unusable_number_guesses_ignored(self, make_classifier, guess):
        backend = FakeBackend(default=_reply(intent="log_exercise", reps=guess))
        result = make_classifier(backend).classify("did squat", EXTRACTOR.extract("did squat"))
        assert "reps" not in result.kinds()

    def test_label_is_always_known(self, make_classifier):
        backend = FakeBackend(default=_reply(intent="log_exercise"))
        result = make_classifier(backend).classify("bench press 8 reps", EXTRACTOR.extract("bench press 8 reps"))
        assert result.label in INTENT_LABELS


# ── Fallback on failure ─────────────────────────────────────────────

class TestBackendFailures:

    def test_offline_uses_fallback(self, make_classifier):
        result = make_classifier(None).classify("help", [])
        assert result.label == "help"
        assert result.source == "fallback"
        assert result.interpretation_note.startswith("offline")

    def test_empty_text_skips_backend(self, make_classifier):
        backend = FakeBackend(default=_reply())
        result = make_classifier(backend).classify("", [])
        assert result.label == "unknown"
        assert backend.calls == []

    def test_backend_error(self, make_classifier):
        backend = FakeBackend(replies=[BackendError("quota exceeded")])
        result = make_classifier(backend).classify("rest 90 seconds", EXTRACTOR.extract("rest 90 seconds"))
        assert result.label == "rest_timer"
        assert result.source == "fallback"
        assert "backend error" in result.interpretation_note

    def test_unexpected_exception(self, make_classifier):
        backend = MagicMock()
        backend.generate.side_effect = ConnectionError("offline")
        result = make_classifier(backend).classify("next exercise", [])
        assert result.label == "next_exercise"
        assert result.source == "fallback"

    @pytest.mark.parametrize("reply", [
        "I think this is a logging request",
        '{"intent": "dance", "confidence": 0.9}',
        '{"confidence": 0.9}',
        "[]",
    ])
    def test_unusable_reply(self, make_classifier, reply):
        backend = FakeBackend(default=reply)
        result = make_classifier(backend).classify("help", [])
        assert result.label == "help"
        assert result.source == "fallback"
        assert "unparseable reply" in result.interpretation_note

    def test_timeout_cancels_backend_call(self, make_classifier):
        backend = FakeBackend(default=_reply(intent="nutrition"))
        backend.block.set()
        classifier = make_classifier(backend, timeout=0.2)

        captured = {}
        original = classifier._call_backend

        def spy(prompt, cancel):
            captured["cancel"] = cancel
            return original(prompt, cancel)

        with patch.object(classifier, "_call_backend", side_effect=spy):
            result = classifier.classify("next exercise", [])

        assert result.label == "next_exercise"
        assert result.source == "fallback"
        assert "backend timeout" in result.interpretation_note

        assert backend.entered.wait(timeout=2)
        assert captured["cancel"].is_set()
        backend.release.set()

    def test_closed_classifier_falls_back(self):
        classifier = IntentClassifier(FakeBackend(default=_reply()))
        classifier.close()
        result = classifier.classify("help", [])
        assert result.label == "help"
        assert result.source == "fallback"


# ── Keyword rules ───────────────────────────────────────────────────

class TestFallbackRules:

    @pytest.mark.parametrize("text,label", [
        ("help", "help"),
        ("what can you do", "help"),
        ("i am so tired", "motivation"),
        ("pump me up", "motivation"),
        ("how is my squat form", "form_analysis"),
        ("how much protein should i eat", "nutrition"),
        ("rest 90 seconds", "rest_timer"),
        ("start leg day", "workout_control"),
        ("end my workout", "workout_control"),
        ("i am done", "workout_control"),
        ("next exercise", "next_exercise"),
        ("next", "next_exercise"),
        ("go back", "previous_exercise"),
        ("log squat", "log_exercise"),
        ("what muscles does the deadlift work", "exercise_info"),
        ("why do my knees click", "ask_ai"),
    ])
    def test_rule_labels(self, text, label):
        result = fallback_classify(text, EXTRACTOR.extract(text))
        assert result.label == label
        assert result.source == "fallback"

    def test_complete_set_scores_higher(self):
        text = "i did bench press 8 reps at 185"
        result = fallback_classify(text, EXTRACTOR.extract(text))
        assert result.label == "log_exercise"
        assert result.confidence == pytest.approx(0.8)

    def test_incomplete_set(self):
        result = fallback_classify("log squat", EXTRACTOR.extract("log squat"))
        assert result.confidence == pytest.approx(0.6)

    def test_exercise_with_numbers_without_keyword(self):
        text = "bench press 8 reps at 185"
        result = fallback_classify(text, EXTRACTOR.extract(text))
        assert result.label == "log_exercise"
        assert result.confidence == pytest.approx(0.5)

    def test_quick_log_needs_current_exercise(self):
        entities = EXTRACTOR.extract("8 reps")
        assert fallback_classify("8 reps", entities, SessionContext(current_exercise="squat")).label == "quick_log"
        assert fallback_classify("8 reps", entities).label == "unknown"

    def test_other_matches_become_alternatives(self):
        text = "how is my squat form"
        result = fallback_classify(text, EXTRACTOR.extract(text))
        assert result.label == "form_analysis"
        assert "ask_ai" in [a.label for a in result.alternatives]

    def test_alternatives_have_no_duplicates(self):
        text = "i did bench press 8 reps at 185"
        result = fallback_classify(text, EXTRACTOR.extract(text))
        labels = [a.label for a in result.alternatives]
        assert "log_exercise" not in labels
        assert len(labels) == len(set(labels))

    def test_unknown(self):
        result = fallback_classify("banana", [])
        assert result.label == "unknown"
        assert result.confidence == pytest.approx(0.1)
        assert result.alternatives == []
        assert "no keyword rule matched" in result.interpretation_note

    def test_note_prefix(self):
        result = fallback_classify("help", [], note="backend timeout")
        assert result.interpretation_note.startswith("backend timeout; ")

    def test_confidence_in_unit_interval(self):
        for text in ("help", "i did bench press 8 reps at 185", "banana", ""):
            result = fallback_classify(text, EXTRACTOR.extract(text))
            assert 0.0 <= result.confidence <= 1.0
