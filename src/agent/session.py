"""Voice session: the per-turn pipeline for one user.

    transcript -> normalize -> extract -> classify -> flow manager -> actions

Memory and learning read each finished turn and write back in the background;
nothing on the turn path waits for them. ``VoiceEngine`` keeps one isolated
session per user.
"""

import logging
import threading

from src.agent.flow_manager import FlowManager
from src.agent.responder import REPLY_TIMEOUT_S, Responder
from src.agent.timers import TimerFactory
from src.memory.conversation_memory import ConversationMemory
from src.memory.learning import LearningEngine, TurnObservation
from src.memory.signals import detect_mood, detect_phase
from src.memory.store import BackgroundWriter, KeyValueStore
from src.nlu.classifier import IntentClassifier
from src.nlu.entities import EntityExtractor
from src.nlu.models import Action, ConversationTurn, SessionContext, Transcript, TurnInput, TurnOutput
from src.nlu.normalizer import normalize_transcript
from src.nlu.vocabulary import DEFAULT_VOCABULARY, Vocabulary

logger = logging.getLogger(__name__)

# -- Configuration --
LOW_CONFIDENCE_THRESHOLD = 0.5
REPEAT_TIMEOUT_MS = 8_000


class VoiceSession:
    """One user's conversation: owns its flow, memory and learning state.

    Args:
        user_id: Key for persisted memory and profile.
        backend: Reasoning backend shared across sessions (``None`` = offline).
        store: Key-value persistence for memory and profile.
        workout_store: Executes emitted actions and supplies set history.
        timer_factory: Step-timer factory, injectable for tests.
        reply_timeout: Seconds to wait for a generated reply before apologizing.
    """

    def __init__(
        self,
        user_id: str = "default",
        *,
        backend=None,
        store: KeyValueStore | None = None,
        workout_store=None,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        classifier: IntentClassifier | None = None,
        timer_factory: TimerFactory | None = None,
        low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD,
        reply_timeout: float = REPLY_TIMEOUT_S,
    ):
        self.user_id = user_id
        self.vocabulary = vocabulary
        self.workout_store = workout_store
        self.low_confidence_threshold = low_confidence_threshold

        self.extractor = EntityExtractor(vocabulary)
        self.classifier = classifier or IntentClassifier(backend, vocabulary)
        self.responder = Responder(backend, vocabulary, timeout=reply_timeout)
        self.flow_manager = FlowManager(self.extractor, self.responder, vocabulary, timer_factory=timer_factory)

        self._writer = BackgroundWriter(name=f"memory-{user_id}")
        self.memory = ConversationMemory(store, user_id, self._writer).load()
        self.learning = LearningEngine.for_user(store, user_id, workout_store)

        self.context = self._initial_context()
        self._lock = threading.Lock()

    def _initial_context(self) -> SessionContext:
        last_weights = tuple(
            (exercise, entry["weight"], entry.get("unit") or "")
            for exercise, entry in self.memory.last_sets.items()
            if entry.get("weight") is not None
        )
        current = getattr(self.workout_store, "current_exercise", None)
        return SessionContext(current_exercise=current, last_weights=last_weights)

    # ── Turn pipeline ────────────────────────────────────────────

    def handle(self, turn: TurnInput) -> TurnOutput:
        """Process a ``TurnInput``; its session context replaces the session's own."""
        return self.process(turn.transcript, turn.recognizer_confidence, context=turn.session_context)

    def process(
        self,
        transcript: str,
        recognizer_confidence: float | None = None,
        *,
        context: SessionContext | None = None,
    ) -> TurnOutput:
        """Run one utterance through the whole pipeline. Never raises."""
        with self._lock:
            if recognizer_confidence is not None and recognizer_confidence < self.low_confidence_threshold:
                logger.info("Rejecting turn with recognizer confidence %.2f", recognizer_confidence)
                output = self._ask_to_repeat(low_confidence=True)
                output.transcript = Transcript(transcript, "", recognizer_confidence=recognizer_confidence)
                return output

            heard = Transcript(
                raw=transcript,
                normalized=normalize_transcript(transcript, self.vocabulary),
                recognizer_confidence=recognizer_confidence,
            )
            normalized = heard.normalized
            if not normalized:
                output = self._ask_to_repeat(low_confidence=False)
                output.transcript = heard
                return output

            ctx = self._canonical_context(context) if context is not None else self.context
            profile = self.learning.profile
            flow = self.flow_manager.active_flow
            flow_exercise = flow.accumulated_data.get("exercise") if flow else None

            entities = self.extractor.extract(
                normalized,
                context_exercise=flow_exercise or ctx.current_exercise,
                profile=profile,
            )
            intent = self.classifier.classify(normalized, entities, ctx)
            logger.debug("Intent %s (%.2f, %s)", intent.label, intent.confidence, intent.source)

            result = self.flow_manager.handle_turn(normalized, intent, ctx, profile=profile, memory=self.memory)
            next_context = self._execute(result.output, result.context)
            self.context = next_context

            result.output.transcript = heard
            self._remember(transcript, normalized, result)
            return result.output

    def _canonical_context(self, context: SessionContext) -> SessionContext:
        """Map caller-supplied exercise names ("bench press") to exercise IDs."""
        def resolve(name):
            if not name:
                return name
            # Names outside the vocabulary pass through unchanged
            return self.vocabulary.resolve_exercise(name.strip().lower()) or name

        return context.evolve(
            current_exercise=resolve(context.current_exercise),
            last_weights=tuple((resolve(name), weight, unit) for name, weight, unit in context.last_weights),
        )

    def _ask_to_repeat(self, low_confidence: bool) -> TurnOutput:
        # Flow state stays as it was; only its timer restarts
        self.flow_manager.rearm()
        flow = self.flow_manager.active_flow
        return TurnOutput(
            response_text="Sorry, I didn't catch that. Could you say it again?",
            emotion="questioning",
            expects_follow_up=True,
            follow_up_timeout_ms=flow.step_timeout_ms if flow else REPEAT_TIMEOUT_MS,
            low_confidence=low_confidence,
        )

    def _execute(self, output: TurnOutput, context: SessionContext) -> SessionContext:
        """Hand actions to the workout store; its answers may move the context."""
        if self.workout_store is None:
            return context
        for action in output.actions:
            try:
                result = self.workout_store.execute(action) or {}
            except Exception as exc:
                logger.warning("Workout store failed on %s (%s)", action.kind, exc)
                continue
            context = self._apply_store_result(action, result, output, context)
        return context

    def _apply_store_result(self, action: Action, result: dict, output: TurnOutput, context: SessionContext) -> SessionContext:
        if action.kind in ("NEXT_EXERCISE", "PREVIOUS_EXERCISE", "START_WORKOUT"):
            exercise = result.get("exercise")
            if exercise:
                output.response_text = f"{output.response_text} Up now: {self.vocabulary.display_name(exercise)}."
                return context.evolve(current_exercise=exercise)
        if action.kind == "END_WORKOUT":
            summary = result.get("summary") or {}
            if summary.get("total_sets"):
                output.response_text = f"{output.response_text} You logged {summary['total_sets']} sets."
        return context

    def _remember(self, transcript: str, normalized: str, result) -> None:
        output = result.output
        intent = output.intent
        flow = self.flow_manager.active_flow
        try:
            self.memory.record_turn(
                ConversationTurn(
                    user_input=transcript,
                    system_response_text=output.response_text,
                    flow_kind_at_time=flow.kind.value if flow else None,
                    confidence=intent.confidence if intent else 0.0,
                ),
                intent,
                normalized,
            )
            if result.logged_set:
                logged = result.logged_set
                self.memory.record_set(logged["exercise"], logged["reps"], logged["weight"], logged.get("unit"))
        except Exception as exc:
            logger.warning("Could not update conversation memory (%s)", exc)

        exercises = []
        if result.logged_set:
            exercises.append(result.logged_set["exercise"])
        elif intent is not None and intent.value_of("exercise"):
            exercises.append(intent.value_of("exercise"))
        self.learning.observe(TurnObservation(
            text=normalized,
            intent=result.intent_label,
            confidence=intent.confidence if intent else 0.0,
            outcome=result.outcome,
            logged_set=result.logged_set,
            mood=detect_mood(normalized),
            phase=detect_phase(normalized, result.intent_label),
            exercises=exercises,
        ))

    # ── Introspection and shutdown ───────────────────────────────

    @property
    def profile(self):
        return self.learning.profile

    def flush(self, timeout: float | None = None) -> None:
        """Wait for background memory and learning writes. Shutdown and tests only."""
        self._writer.flush(timeout)
        self.learning.flush(timeout)

    def close(self) -> None:
        self.flow_manager.close()
        self.learning.close()
        self._writer.close()
        self.classifier.close()
        self.responder.close()


class VoiceEngine:
    """Hands out one isolated ``VoiceSession`` per user.

    Sessions share only the read-only vocabulary and the stateless backend.
    """

    def __init__(
        self,
        backend=None,
        store: KeyValueStore | None = None,
        workout_store_factory=None,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        timer_factory: TimerFactory | None = None,
    ):
        self.backend = backend
        self.store = store
        self.vocabulary = vocabulary
        self._workout_store_factory = workout_store_factory
        self._timer_factory = timer_factory
        self._sessions: dict[str, VoiceSession] = {}
        self._lock = threading.Lock()

    def session(self, user_id: str) -> VoiceSession:
        with self._lock:
            if user_id not in self._sessions:
                workout_store = self._workout_store_factory(user_id) if self._workout_store_factory else None
                self._sessions[user_id] = VoiceSession(
                    user_id,
                    backend=self.backend,
                    store=self.store,
                    workout_store=workout_store,
                    vocabulary=self.vocabulary,
                    timer_factory=self._timer_factory,
                )
                logger.info("Started voice session for %s", user_id)
            return self._sessions[user_id]

    def process(self, user_id: str, turn: TurnInput) -> TurnOutput:
        return self.session(user_id).handle(turn)

    def end_session(self, user_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is not None:
            session.close()

    def close(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
