"""Adaptive learning: folds observed turns into the user preference profile.

Updates run on a single background worker so the turn path never waits.
The worker mutates a private working copy and then publishes a fresh snapshot
as ``engine.profile``; readers only ever see a complete profile.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

from src.memory.preferences import MAX_PHRASINGS, UserPreferenceProfile
from src.memory.signals import style_evidence
from src.memory.store import KeyValueStore

logger = logging.getLogger(__name__)

# -- Configuration --
PHRASING_MIN_CONFIDENCE = 0.7
STYLE_MIN_EVIDENCE = 3
LOGGING_INTENTS = {"log_exercise", "quick_log"}


@dataclass
class TurnObservation:
    """What the learning engine needs to know about one finished turn."""
    text: str
    intent: str
    confidence: float
    outcome: str = "pending"  # success | failure | pending
    logged_set: dict | None = None
    mood: str | None = None
    phase: str | None = None
    exercises: list[str] = field(default_factory=list)


class LearningEngine:
    """Owns and updates one user's ``UserPreferenceProfile``."""

    def __init__(
        self,
        profile: UserPreferenceProfile | None = None,
        store: KeyValueStore | None = None,
        workout_store=None,
    ):
        self._working = profile or UserPreferenceProfile()
        self._store = store
        self._workout_store = workout_store
        self._lock = threading.Lock()
        self._last_logged: str | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="learning")
        self._closed = False
        self.profile = self._snapshot()

    @classmethod
    def for_user(cls, store: KeyValueStore | None, user_id: str = "default", workout_store=None) -> "LearningEngine":
        profile = UserPreferenceProfile.load_or_create(store, user_id)
        profile.meta["sessions"] = profile.meta.get("sessions", 0) + 1
        engine = cls(profile, store=store, workout_store=workout_store)
        if workout_store is not None and not profile.meta.get("seeded_from_history"):
            engine.seed_from_history()
        return engine

    # ── Public API (fire and forget) ─────────────────────────────

    def observe(self, observation: TurnObservation) -> Future | None:
        return self._submit(self._apply, observation)

    def seed_from_history(self) -> Future | None:
        """Widen ranges and count exercises from the workout store's history."""
        return self._submit(self._seed)

    def flush(self, timeout: float | None = None) -> None:
        """Block until queued updates are applied. Shutdown and tests only."""
        if not self._closed:
            self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._executor.shutdown(wait=True)

    def _submit(self, fn, *args) -> Future | None:
        if self._closed:
            logger.warning("Learning engine closed, dropping update")
            return None
        return self._executor.submit(self._guarded, fn, *args)

    def _guarded(self, fn, *args) -> None:
        try:
            with self._lock:
                fn(*args)
                self.profile = self._snapshot()
            self._persist()
        except Exception as exc:
            logger.warning("Learning update failed (%s)", exc)

    # ── Updates (worker thread) ──────────────────────────────────

    def _apply(self, obs: TurnObservation) -> None:
        profile = self._working

        if obs.intent and obs.outcome in ("success", "failure"):
            counts = profile.intent_outcomes.setdefault(obs.intent, {"success": 0, "failure": 0})
            counts[obs.outcome] += 1

        if obs.logged_set and obs.intent in LOGGING_INTENTS and obs.outcome == "success":
            self._learn_set(obs.logged_set)

        for exercise in obs.exercises:
            profile.common_exercises[exercise] = profile.common_exercises.get(exercise, 0) + 1

        if obs.outcome == "success" and obs.confidence >= PHRASING_MIN_CONFIDENCE and obs.text:
            self._remember_phrasing(obs.text, obs.intent)

        if obs.mood:
            profile.mood = obs.mood
        if obs.phase:
            profile.workout_phase = obs.phase

        evidence = style_evidence(obs.text)
        for style, hits in evidence.items():
            profile.style_evidence[style] = profile.style_evidence.get(style, 0) + hits
        profile.communication_style = infer_style(profile.style_evidence)
        profile.touch()

    def _learn_set(self, logged: dict) -> None:
        profile = self._working
        exercise = logged.get("exercise")
        if not exercise:
            return
        profile.observe_set(exercise, logged.get("reps"), logged.get("weight"), logged.get("unit"))
        if logged.get("unit") and logged.get("weight") is not None:
            profile.preferred_unit = logged["unit"]
        if self._last_logged and self._last_logged != exercise:
            partners = profile.pairings.setdefault(self._last_logged, {})
            partners[exercise] = partners.get(exercise, 0) + 1
        self._last_logged = exercise

    def _remember_phrasing(self, text: str, intent: str) -> None:
        phrasings = self._working.phrasings
        for entry in phrasings:
            if entry["text"] == text and entry["intent"] == intent:
                entry["count"] += 1
                break
        else:
            phrasings.append({"text": text, "intent": intent, "count": 1})
        phrasings.sort(key=lambda p: -p["count"])
        del phrasings[MAX_PHRASINGS:]

    def _seed(self) -> None:
        try:
            history = self._workout_store.exercise_history()
        except Exception as exc:
            logger.warning("Could not read workout history for seeding (%s)", exc)
            return
        profile = self._working
        previous = None
        for record in history:
            exercise = record.get("exercise")
            if not exercise:
                continue
            profile.observe_set(exercise, record.get("reps"), record.get("weight"), record.get("unit"))
            profile.common_exercises[exercise] = profile.common_exercises.get(exercise, 0) + 1
            if previous and previous != exercise:
                partners = profile.pairings.setdefault(previous, {})
                partners[exercise] = partners.get(exercise, 0) + 1
            previous = exercise
        profile.meta["seeded_from_history"] = True
        logger.info("Seeded preference profile from %d logged sets", len(history))

    # ── Helpers ──────────────────────────────────────────────────

    def _snapshot(self) -> UserPreferenceProfile:
        return UserPreferenceProfile.from_dict(self._working.to_dict())

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.set(self.profile.key, self.profile.to_dict())
        except Exception as exc:
            logger.warning("Could not persist preference profile (%s)", exc)


def infer_style(evidence: dict[str, int]) -> str:
    """Pick the communication style with the most keyword evidence.

    Needs at least ``STYLE_MIN_EVIDENCE`` hits and a strict lead; otherwise casual.
    """
    technical = evidence.get("technical", 0)
    motivational = evidence.get("motivational", 0)
    if max(technical, motivational) < STYLE_MIN_EVIDENCE or technical == motivational:
        return "casual"
    return "technical" if technical > motivational else "motivational"
