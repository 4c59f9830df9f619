"""End-to-end tests for the voice session pipeline.

Verifies:
- A transcript flows through normalize, extract, classify and the flow manager
- Low-confidence and empty turns are rejected without touching flow state
- Actions reach the workout store; store failures are logged, not raised
- Memory and learning pick up finished turns in the background
- Sessions for different users share nothing mutable
"""

import json
import logging
import time
from unittest.mock import MagicMock

import pytest

from conftest import FakeBackend
from src.agent.flows import FlowStep
from src.agent.responder import GENERATION_APOLOGY
from src.agent.session import VoiceEngine, VoiceSession
from src.memory.store import InMemoryStore
from src.nlu.classifier import IntentClassifier
from src.nlu.models import SessionContext, TurnInput
from src.tools.workout_store import WorkoutStore


@pytest.fixture
def session(memory_store, workout_store, timers):
    session = VoiceSession("alice", store=memory_store, workout_store=workout_store, timer_factory=timers)
    yield session
    session.close()


# ── Pipeline ────────────────────────────────────────────────────────

class TestPipeline:

    def test_complete_log(self, session, workout_store):
        output = session.process("Um, I did bench press 8 reps at 185 pounds")
        assert [a.kind for a in output.actions] == ["LOG_SET"]
        assert output.intent.label == "log_exercise"
        assert workout_store.exercise_history()[0]["weight"] == 185
        assert session.context.current_exercise == "bench-press"

    def test_multi_turn_log(self, session, workout_store):
        assert session.process("log squat").expects_follow_up
        session.process("five")
        output = session.process("two twenty five")
        assert output.actions[0].parameters == {"exercise": "squat", "reps": 5, "weight": 225, "unit": "lbs"}
        assert len(workout_store.exercise_history()) == 1

    def test_quick_log_after_full_log(self, session, workout_store):
        session.process("squat 5 reps at 225")
        output = session.process("another 5 reps")
        assert output.intent.label == "quick_log"
        assert output.actions[0].parameters["weight"] == 225
        assert len(workout_store.exercise_history("squat")) == 2

    def test_start_workout_announces_first_exercise(self, session):
        output = session.process("start push day")
        assert output.actions[0].kind == "START_WORKOUT"
        assert output.response_text.endswith("Up now: bench press.")
        assert session.context.current_exercise == "bench-press"

    def test_next_exercise_moves_context(self, session):
        session.process("start push day")
        output = session.process("next exercise")
        assert "overhead press" in output.response_text
        assert session.context.current_exercise == "overhead-press"

    def test_end_workout_reports_sets(self, session):
        session.process("start leg day")
        session.process("squat 5 reps at 225")
        output = session.process("finish workout")
        assert output.response_text.endswith("You logged 1 sets.")

    def test_handle_uses_given_context(self, session):
        turn = TurnInput("8 reps", session_context=SessionContext(current_exercise="deadlift"))
        output = session.handle(turn)
        assert output.intent.label == "quick_log"
        assert session.flow_manager.active_flow.accumulated_data["exercise"] == "deadlift"

    def test_context_exercise_name_is_resolved(self, session, workout_store):
        session.handle(TurnInput("8 reps", session_context=SessionContext(current_exercise="bench press")))
        assert session.flow_manager.active_flow.accumulated_data["exercise"] == "bench-press"

        output = session.process("185")
        assert output.actions[0].parameters == {"exercise": "bench-press", "reps": 8, "weight": 185, "unit": "lbs"}
        assert len(workout_store.exercise_history("bench-press")) == 1
        assert session.context.last_weight_for("bench-press") == (185, "lbs")

    def test_context_last_weights_are_resolved(self, session):
        context = SessionContext(current_exercise="Bench", last_weights=(("bench press", 185, "lbs"),))
        output = session.handle(TurnInput("another 8 reps", session_context=context))
        assert output.actions[0].parameters["exercise"] == "bench-press"
        assert output.actions[0].parameters["weight"] == 185

    def test_unknown_context_exercise_kept(self, session):
        session.handle(TurnInput("8 reps", session_context=SessionContext(current_exercise="sled drag")))
        assert session.flow_manager.active_flow.accumulated_data["exercise"] == "sled drag"

    def test_output_carries_transcript(self, session):
        output = session.process("Um, bench press 8 reps at 185", recognizer_confidence=0.9)
        assert output.transcript.raw == "Um, bench press 8 reps at 185"
        assert output.transcript.normalized == "bench press 8 reps at 185"
        assert output.transcript.recognizer_confidence == pytest.approx(0.9)

    def test_backend_classification(self, memory_store, timers):
        backend = FakeBackend(default=json.dumps({"intent": "rest_timer", "confidence": 0.95}))
        session = VoiceSession("alice", backend=backend, store=memory_store, timer_factory=timers)
        try:
            output = session.process("gimme a breather")
        finally:
            session.close()
        assert output.intent.source == "backend"
        assert output.actions[0].parameters == {"seconds": 90}


class TestRejectedTurns:

    def test_low_confidence(self, session):
        output = session.process("bench press 8 reps at 185", recognizer_confidence=0.3)
        assert output.low_confidence is True
        assert output.actions == []
        assert output.expects_follow_up is True
        assert "say it again" in output.response_text

    def test_low_confidence_keeps_flow(self, session, timers):
        session.process("log squat")
        flow = session.flow_manager.active_flow
        armed = timers.latest
        output = session.process("five", recognizer_confidence=0.2)
        assert session.flow_manager.active_flow is flow
        assert flow.step == FlowStep.AWAITING_REPS
        assert output.follow_up_timeout_ms == 30_000
        assert armed.cancelled
        assert timers.latest.started

    def test_confidence_at_threshold_accepted(self, session):
        output = session.process("help", recognizer_confidence=0.5)
        assert output.low_confidence is False

    def test_empty_transcript(self, session):
        output = session.process("  uh  ")
        assert output.low_confidence is False
        assert output.expects_follow_up is True
        assert output.actions == []


class TestCollaboratorFailures:

    def test_workout_store_failure_is_logged(self, memory_store, timers, caplog):
        broken = MagicMock()
        broken.current_exercise = None
        broken.exercise_history.return_value = []
        broken.execute.side_effect = OSError("disk full")
        session = VoiceSession("alice", store=memory_store, workout_store=broken, timer_factory=timers)
        try:
            with caplog.at_level(logging.WARNING):
                output = session.process("bench press 8 reps at 185")
        finally:
            session.close()
        assert [a.kind for a in output.actions] == ["LOG_SET"]
        assert "Workout store failed on LOG_SET" in caplog.text

    def test_slow_reply_does_not_stall_turn(self, memory_store, timers):
        backend = FakeBackend(default="Keep going!")
        backend.block.set()
        session = VoiceSession(
            "alice", backend=backend, store=memory_store, timer_factory=timers,
            classifier=IntentClassifier(backend, timeout=0.2), reply_timeout=0.2,
        )
        started = time.monotonic()
        try:
            output = session.process("pump me up")
            elapsed = time.monotonic() - started
            flow = session.flow_manager.active_flow
        finally:
            backend.release.set()
            session.close()
        assert elapsed < 2
        assert output.response_text == GENERATION_APOLOGY
        # The flow stays open so the reply is retried on the next turn
        assert flow is not None
        assert flow.pending_request is not None

    def test_memory_store_failure_is_logged(self, workout_store, timers, caplog):
        store = MagicMock()
        store.get.return_value = None
        store.set.side_effect = OSError("read-only")
        session = VoiceSession("alice", store=store, workout_store=workout_store, timer_factory=timers)
        with caplog.at_level(logging.WARNING):
            output = session.process("bench press 8 reps at 185")
            session.flush(timeout=5)
        session.close()
        assert output.actions
        assert "failed" in caplog.text or "Could not persist" in caplog.text


# ── Memory and learning ─────────────────────────────────────────────

class TestMemoryAndLearning:

    def test_turns_are_remembered(self, session, memory_store):
        session.process("bench press 8 reps at 185")
        session.flush(timeout=5)
        saved = memory_store.get("conversation_alice")
        assert saved["turns"][0]["user_input"] == "bench press 8 reps at 185"
        assert saved["last_sets"]["bench-press"]["weight"] == 185

    def test_profile_learns_ranges(self, session):
        session.process("bench press 8 reps at 185")
        session.process("bench press 6 reps at 205")
        session.flush(timeout=5)
        assert session.profile.rep_range("bench-press") == (6, 8)
        assert session.profile.weight_range("bench-press") == (185, 205)

    def test_learned_ranges_fix_swapped_numbers(self, session):
        session.process("bench press 8 reps at 185")
        session.process("bench press 6 reps at 205")
        session.flush(timeout=5)
        output = session.process("bench press 195 7")
        params = output.actions[0].parameters
        assert params["reps"] == 7
        assert params["weight"] == 195

    def test_new_session_restores_last_weight(self, memory_store, timers):
        first = VoiceSession("alice", store=memory_store, timer_factory=timers)
        first.process("squat 5 reps at 225")
        first.flush(timeout=5)
        first.close()

        second = VoiceSession("alice", store=memory_store, timer_factory=timers)
        try:
            assert second.context.last_weight_for("squat") == (225, "lbs")
        finally:
            second.close()


class TestVoiceEngine:

    def test_sessions_are_isolated(self, memory_store, timers):
        engine = VoiceEngine(
            store=memory_store,
            workout_store_factory=lambda user: WorkoutStore(persist=False),
            timer_factory=timers,
        )
        try:
            engine.process("alice", TurnInput("log squat"))
            output = engine.process("bob", TurnInput("five"))
            assert engine.session("alice").flow_manager.active_flow is not None
            assert engine.session("bob").flow_manager.active_flow is None
            assert output.actions == []

            engine.session("alice").flush(timeout=5)
            engine.session("bob").flush(timeout=5)
            assert memory_store.get("conversation_bob")["turns"][0]["user_input"] == "five"
            assert memory_store.get("conversation_alice")["turns"][0]["user_input"] == "log squat"
        finally:
            engine.close()

    def test_same_user_same_session(self):
        engine = VoiceEngine(store=InMemoryStore())
        try:
            assert engine.session("alice") is engine.session("alice")
            assert engine.session("alice") is not engine.session("bob")
        finally:
            engine.close()

    def test_end_session(self):
        engine = VoiceEngine(store=InMemoryStore())
        first = engine.session("alice")
        engine.end_session("alice")
        try:
            assert engine.session("alice") is not first
        finally:
            engine.close()
