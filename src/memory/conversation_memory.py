"""Short-term conversational memory for one user.

Keeps the last turns, what was recently trained or asked, the last logged set
per exercise, and coarse mood / workout-phase signals. Loaded once at session
start; every change is persisted in the background.
"""

import logging
from datetime import datetime

from src.memory.signals import detect_mood, detect_phase
from src.memory.store import BackgroundWriter, KeyValueStore, safe_get
from src.nlu.models import ConversationTurn, IntentResult

logger = logging.getLogger(__name__)

# -- Configuration --
MAX_TURNS = 100
MAX_RECENT = 10
MAX_SUGGESTIONS = 3
SUMMARY_TOPICS = 3

QUESTION_INTENTS = {"ask_ai", "exercise_info", "form_analysis", "nutrition", "help"}


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


class ConversationMemory:
    """Bounded turn history plus the signals derived from it."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        user_id: str = "default",
        writer: BackgroundWriter | None = None,
        max_turns: int = MAX_TURNS,
    ):
        self._store = store
        self._writer = writer
        self.key = f"conversation_{user_id}"
        self.max_turns = max_turns
        self._reset()

    def _reset(self) -> None:
        self.turns: list[ConversationTurn] = []
        self.recent_exercises: list[dict] = []
        self.recent_questions: list[dict] = []
        self.last_sets: dict[str, dict] = {}
        self.topics: list[str] = []
        self.mood = "neutral"
        self.phase = "pre-workout"
        self.message_count = 0

    # ── Recording ────────────────────────────────────────────────

    def record_turn(self, turn: ConversationTurn, intent: IntentResult | None = None, normalized: str = "") -> None:
        """Append a turn and update the derived signals."""
        self.turns.append(turn)
        if len(self.turns) > self.max_turns:
            self.turns = self.turns[-self.max_turns:]
        self.message_count += 1

        text = normalized or turn.user_input.lower()
        mood = detect_mood(text)
        if mood:
            self.mood = mood
        label = intent.label if intent else None
        phase = detect_phase(text, label)
        if phase:
            self.phase = phase

        if intent is not None:
            if intent.label != "unknown" and intent.label not in self.topics:
                self.topics.append(intent.label)
            exercise = intent.value_of("exercise")
            if exercise:
                self._push(self.recent_exercises, {"exercise": exercise, "at": _now_iso()})
            if intent.label in QUESTION_INTENTS:
                self._push(self.recent_questions, {
                    "question": turn.user_input, "category": intent.label, "at": _now_iso(),
                })

        self.persist()

    def record_set(self, exercise: str, reps, weight, unit: str | None = None) -> None:
        self.last_sets[exercise] = {
            "reps": reps, "weight": weight, "unit": unit, "at": _now_iso(),
        }
        self._push(self.recent_exercises, {"exercise": exercise, "at": _now_iso()})
        self.persist()

    @staticmethod
    def _push(items: list[dict], item: dict) -> None:
        items.append(item)
        del items[:-MAX_RECENT]

    # ── Reading ──────────────────────────────────────────────────

    def last_set(self, exercise: str | None) -> dict | None:
        return self.last_sets.get(exercise) if exercise else None

    def recent(self, limit: int = 10) -> list[ConversationTurn]:
        return self.turns[-limit:]

    def contextual_suggestions(self) -> list[str]:
        """Short follow-up offers based on mood, phase and recent questions."""
        suggestions = []
        if self.mood == "struggling":
            suggestions += ["Would you like some motivation?", "Should we lower the intensity?"]
        elif self.mood == "motivated":
            suggestions += ["Ready to push for a new record?"]

        if self.phase == "pre-workout":
            suggestions += ["Need a warm-up routine?"]
        elif self.phase == "post-workout":
            suggestions += ["How about some stretching?", "Need post-workout nutrition advice?"]

        if any(q["category"] == "form_analysis" for q in self.recent_questions):
            suggestions.append("Want to review form for another exercise?")
        return suggestions[:MAX_SUGGESTIONS]

    def summary(self) -> str:
        """One line for the response generator's prompt."""
        topics = ", ".join(self.topics[-SUMMARY_TOPICS:]) or "none"
        parts = [f"User mood: {self.mood}", f"Workout phase: {self.phase}", f"Recent topics: {topics}"]
        if self.recent_exercises:
            parts.append(f"Last exercise: {self.recent_exercises[-1]['exercise']}")
        return ", ".join(parts)

    # ── Persistence ──────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "turns": [t.to_dict() for t in self.turns],
            "recent_exercises": list(self.recent_exercises),
            "recent_questions": list(self.recent_questions),
            "last_sets": {k: dict(v) for k, v in self.last_sets.items()},
            "topics": list(self.topics),
            "mood": self.mood,
            "phase": self.phase,
            "message_count": self.message_count,
            "updated_at": _now_iso(),
        }

    def load(self) -> "ConversationMemory":
        """Replace in-memory state with the persisted copy, if there is one."""
        if self._store is None:
            return self
        data = safe_get(self._store, self.key)
        if not isinstance(data, dict):
            return self
        self.turns = [ConversationTurn.from_dict(t) for t in data.get("turns", [])][-self.max_turns:]
        self.recent_exercises = list(data.get("recent_exercises", []))[-MAX_RECENT:]
        self.recent_questions = list(data.get("recent_questions", []))[-MAX_RECENT:]
        self.last_sets = dict(data.get("last_sets", {}))
        self.topics = list(data.get("topics", []))
        self.mood = data.get("mood", "neutral")
        self.phase = data.get("phase", "pre-workout")
        self.message_count = int(data.get("message_count", len(self.turns)))
        return self

    def persist(self) -> None:
        """Queue a snapshot write. Never blocks the caller on storage."""
        if self._store is None:
            return
        snapshot = self.to_dict()
        store, key = self._store, self.key
        if self._writer is None:
            try:
                store.set(key, snapshot)
            except Exception as exc:
                logger.warning("Could not persist conversation memory (%s)", exc)
            return
        self._writer.submit(lambda: store.set(key, snapshot), description="conversation memory write")

    def clear(self) -> None:
        self._reset()
        if self._store is not None:
            try:
                self._store.clear(self.key)
            except Exception as exc:
                logger.warning("Could not clear conversation memory (%s)", exc)
