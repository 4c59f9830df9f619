"""Tests for the preference profile and the adaptive learning engine.

Verifies:
- Ranges widen with every observed set, across units
- Observations update outcomes, phrasings, pairings and style in the background
- Readers always see a complete snapshot, never the worker's copy
- Failures in storage or history are logged, not raised
"""

import logging
from unittest.mock import MagicMock

import pytest

from src.memory.learning import LearningEngine, TurnObservation, infer_style
from src.memory.preferences import MAX_PHRASINGS, UserPreferenceProfile, convert_weight
from src.memory.store import InMemoryStore
from src.tools.workout_store import WorkoutStore
from src.nlu.models import Action


@pytest.fixture
def engine(memory_store):
    engine = LearningEngine(UserPreferenceProfile("alice"), store=memory_store)
    yield engine
    engine.close()


def _logged(exercise="bench-press", reps=8, weight=185, unit="lbs"):
    return {"exercise": exercise, "reps": reps, "weight": weight, "unit": unit}


# ── Profile ─────────────────────────────────────────────────────────

class TestUserPreferenceProfile:

    def test_ranges_widen(self):
        profile = UserPreferenceProfile()
        profile.observe_set("squat", 5, 225, "lbs")
        profile.observe_set("squat", 8, 185, "lbs")
        profile.observe_set("squat", 3, 275, "lbs")
        assert profile.rep_range("squat") == (3, 8)
        assert profile.weight_range("squat") == (185, 275)
        assert profile.exercise_ranges["squat"]["count"] == 3

    def test_unknown_exercise_has_no_range(self):
        profile = UserPreferenceProfile()
        assert profile.rep_range("squat") is None
        assert profile.weight_range(None) is None

    def test_weights_converted_to_first_unit(self):
        profile = UserPreferenceProfile()
        profile.observe_set("squat", 5, 100, "kg")
        profile.observe_set("squat", 5, 225, "lbs")
        assert profile.exercise_ranges["squat"]["unit"] == "kg"
        assert profile.weight_range("squat") == (100, pytest.approx(102.1))

    def test_convert_weight(self):
        assert convert_weight(100, "kg", "lbs") == pytest.approx(220.5)
        assert convert_weight(100, "lbs", "lbs") == 100
        assert convert_weight(100, None, "kg") == 100

    def test_frequent_partners(self):
        profile = UserPreferenceProfile()
        profile.pairings = {"squat": {"leg-press": 2, "deadlift": 5, "lunge": 2}}
        assert profile.frequent_partners("squat", 2) == ["deadlift", "leg-press"]
        assert profile.frequent_partners("bench-press") == []

    def test_success_rate(self):
        profile = UserPreferenceProfile()
        profile.intent_outcomes = {"log_exercise": {"success": 3, "failure": 1}}
        assert profile.success_rate("log_exercise") == pytest.approx(0.75)
        assert profile.success_rate("help") is None

    def test_round_trip(self):
        profile = UserPreferenceProfile("alice")
        profile.observe_set("squat", 5, 225, "lbs")
        profile.communication_style = "technical"
        restored = UserPreferenceProfile.from_dict(profile.to_dict())
        assert restored.to_dict() == profile.to_dict()

    def test_unknown_style_resets_to_casual(self):
        assert UserPreferenceProfile.from_dict({"communication_style": "shouty"}).communication_style == "casual"

    def test_load_or_create(self, memory_store):
        assert UserPreferenceProfile.load_or_create(memory_store, "alice").user_id == "alice"
        memory_store.set("profile_alice", {"user_id": "alice", "preferred_unit": "kg"})
        assert UserPreferenceProfile.load_or_create(memory_store, "alice").preferred_unit == "kg"

    def test_summary_mentions_ranges(self):
        profile = UserPreferenceProfile()
        profile.common_exercises = {"squat": 4}
        profile.observe_set("squat", 5, 225, "lbs")
        assert "squat: 5-5 reps at 225-225 lbs" in profile.summary()


# ── Learning engine ─────────────────────────────────────────────────

class TestLearningEngine:

    def test_logged_set_updates_ranges(self, engine):
        engine.observe(TurnObservation(
            text="bench press 8 reps at 185", intent="log_exercise", confidence=0.9,
            outcome="success", logged_set=_logged(),
        ))
        engine.flush(timeout=5)
        assert engine.profile.rep_range("bench-press") == (8, 8)
        assert engine.profile.weight_range("bench-press") == (185, 185)

    def test_failed_turn_does_not_learn_set(self, engine):
        engine.observe(TurnObservation(
            text="x", intent="log_exercise", confidence=0.9, outcome="failure", logged_set=_logged(),
        ))
        engine.flush(timeout=5)
        assert engine.profile.rep_range("bench-press") is None
        assert engine.profile.intent_outcomes["log_exercise"] == {"success": 0, "failure": 1}

    def test_pending_outcome_not_counted(self, engine):
        engine.observe(TurnObservation(text="log squat", intent="log_exercise", confidence=0.6))
        engine.flush(timeout=5)
        assert "log_exercise" not in engine.profile.intent_outcomes

    def test_preferred_unit_follows_last_weighted_set(self, engine):
        engine.observe(TurnObservation(
            text="squat 5 reps at 100 kg", intent="log_exercise", confidence=0.9,
            outcome="success", logged_set=_logged("squat", 5, 100, "kg"),
        ))
        engine.flush(timeout=5)
        assert engine.profile.preferred_unit == "kg"

    def test_pairings(self, engine):
        for exercise in ("squat", "leg-press", "squat", "leg-press"):
            engine.observe(TurnObservation(
                text="", intent="log_exercise", confidence=0.9, outcome="success",
                logged_set=_logged(exercise),
            ))
        engine.flush(timeout=5)
        assert engine.profile.frequent_partners("squat") == ["leg-press"]
        assert engine.profile.pairings["leg-press"]["squat"] == 1

    def test_phrasings_need_confidence(self, engine):
        engine.observe(TurnObservation(text="help", intent="help", confidence=0.9, outcome="success"))
        engine.observe(TurnObservation(text="help", intent="help", confidence=0.9, outcome="success"))
        engine.observe(TurnObservation(text="uh what", intent="help", confidence=0.3, outcome="success"))
        engine.flush(timeout=5)
        assert engine.profile.phrasings == [{"text": "help", "intent": "help", "count": 2}]

    def test_phrasings_are_bounded(self, engine):
        for i in range(MAX_PHRASINGS + 10):
            engine.observe(TurnObservation(text=f"phrase {i}", intent="help", confidence=0.9, outcome="success"))
        engine.flush(timeout=5)
        assert len(engine.profile.phrasings) == MAX_PHRASINGS

    def test_style_needs_repeated_evidence(self, engine):
        engine.observe(TurnObservation(text="what rpe should i use", intent="ask_ai", confidence=0.9))
        engine.flush(timeout=5)
        assert engine.profile.communication_style == "casual"

        for _ in range(2):
            engine.observe(TurnObservation(text="hypertrophy tempo", intent="ask_ai", confidence=0.9))
        engine.flush(timeout=5)
        assert engine.profile.communication_style == "technical"

    def test_mood_and_phase_copied(self, engine):
        engine.observe(TurnObservation(
            text="so tired", intent="motivation", confidence=0.9, mood="struggling", phase="during-workout",
        ))
        engine.flush(timeout=5)
        assert engine.profile.mood == "struggling"
        assert engine.profile.workout_phase == "during-workout"

    def test_snapshot_is_not_the_working_copy(self, engine):
        before = engine.profile
        engine.observe(TurnObservation(
            text="", intent="log_exercise", confidence=0.9, outcome="success", logged_set=_logged(),
        ))
        engine.flush(timeout=5)
        assert before.rep_range("bench-press") is None
        assert engine.profile is not before
        # Mutating the snapshot does not leak into the engine
        engine.profile.exercise_ranges.clear()
        engine.observe(TurnObservation(text="", intent="help", confidence=0.9))
        engine.flush(timeout=5)
        assert engine.profile.rep_range("bench-press") == (8, 8)

    def test_profile_is_persisted(self, engine, memory_store):
        engine.observe(TurnObservation(
            text="", intent="log_exercise", confidence=0.9, outcome="success", logged_set=_logged(),
        ))
        engine.flush(timeout=5)
        saved = memory_store.get("profile_alice")
        assert saved["exercise_ranges"]["bench-press"]["reps"] == [8, 8]

    def test_storage_failure_is_logged(self, caplog):
        store = MagicMock()
        store.set.side_effect = OSError("disk full")
        engine = LearningEngine(UserPreferenceProfile("alice"), store=store)
        with caplog.at_level(logging.WARNING):
            engine.observe(TurnObservation(text="help", intent="help", confidence=0.9, outcome="success"))
            engine.flush(timeout=5)
        engine.close()
        assert "Could not persist preference profile" in caplog.text
        assert engine.profile.phrasings[0]["text"] == "help"

    def test_observe_after_close(self, engine):
        engine.close()
        assert engine.observe(TurnObservation(text="", intent="help", confidence=0.9)) is None


class TestSeeding:

    def test_for_user_seeds_from_history(self, memory_store):
        workouts = WorkoutStore(persist=False)
        for exercise, reps, weight in [("squat", 5, 225), ("squat", 3, 245), ("leg-press", 10, 300)]:
            workouts.execute(Action("LOG_SET", {"exercise": exercise, "reps": reps, "weight": weight, "unit": "lbs"}))

        engine = LearningEngine.for_user(memory_store, "alice", workouts)
        engine.flush(timeout=5)
        engine.close()
        profile = engine.profile
        assert profile.rep_range("squat") == (3, 5)
        assert profile.common_exercises == {"squat": 2, "leg-press": 1}
        assert profile.frequent_partners("squat") == ["leg-press"]
        assert profile.meta["seeded_from_history"] is True
        assert profile.meta["sessions"] == 1

    def test_seeding_runs_once(self, memory_store):
        workouts = WorkoutStore(persist=False)
        workouts.execute(Action("LOG_SET", {"exercise": "squat", "reps": 5, "weight": 225, "unit": "lbs"}))
        first = LearningEngine.for_user(memory_store, "alice", workouts)
        first.flush(timeout=5)
        first.close()

        second = LearningEngine.for_user(memory_store, "alice", workouts)
        second.flush(timeout=5)
        second.close()
        assert second.profile.exercise_ranges["squat"]["count"] == 1
        assert second.profile.meta["sessions"] == 2

    def test_broken_history_is_logged(self, caplog):
        workouts = MagicMock()
        workouts.exercise_history.side_effect = RuntimeError("db down")
        with caplog.at_level(logging.WARNING):
            engine = LearningEngine.for_user(InMemoryStore(), "alice", workouts)
            engine.flush(timeout=5)
        engine.close()
        assert "Could not read workout history" in caplog.text


class TestInferStyle:

    @pytest.mark.parametrize("evidence,style", [
        ({"technical": 0, "motivational": 0}, "casual"),
        ({"technical": 2, "motivational": 0}, "casual"),
        ({"technical": 3, "motivational": 0}, "technical"),
        ({"technical": 3, "motivational": 5}, "motivational"),
        ({"technical": 4, "motivational": 4}, "casual"),
    ])
    def test_infer_style(self, evidence, style):
        assert infer_style(evidence) == style
