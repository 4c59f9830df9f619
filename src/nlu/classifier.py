"""Intent classification: reasoning backend first, keyword rules as fallback.

The backend call runs as a task on a small thread pool with a cancellation
token and a bounded wait. If it fails, times out or replies with something
unparseable, ``fallback_classify`` answers instead. Callers always get an
``IntentResult``.
"""

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from src.agent.prompts import (
    CLASSIFICATION_SYSTEM_PROMPT,
    INTENT_LABELS,
    build_classification_prompt,
)
from src.nlu.models import Alternative, Entity, IntentResult, SessionContext, clamp_confidence
from src.nlu.reply_parser import extract_json
from src.nlu.vocabulary import DEFAULT_VOCABULARY, Vocabulary

logger = logging.getLogger(__name__)

# -- Configuration --
BACKEND_TIMEOUT_S = 4.0
BACKEND_WORKERS = 4
BACKEND_TEMPERATURE = 0.1
BACKEND_GUESS_CONFIDENCE = 0.7

UNKNOWN = "unknown"

# ── Fallback keyword rules ───────────────────────────────────────

HELP_PHRASES = {
    "help", "help me", "commands", "what can you do", "what can i say",
    "what are the commands", "show commands",
}
MOTIVATION_RE = re.compile(
    r"\b(motivat\w*|encourag\w*|tired|exhausted|give up|giving up|cannot do|pump me up"
    r"|struggling|hype me|i can not|no energy|feel weak)\b"
)
FORM_RE = re.compile(r"\b(form|technique|posture)\b")
NUTRITION_RE = re.compile(
    r"\b(eat|eating|food|protein|calories|diet|nutrition|meal|carbs|hydration"
    r"|water|supplements?|creatine|snack)\b"
)
REST_RE = re.compile(r"\b(rest|timer|break|breather)\b")
START_WORKOUT_RE = re.compile(r"\b(start|begin|starting)\b.*\b(workout|session|training|day)\b")
END_WORKOUT_RE = re.compile(
    r"\b(end|finish|finished|stop|done with)\b.*\b(workout|session|training)\b"
    r"|^i am done$|^done for (today|the day)$"
)
NEXT_RE = re.compile(r"^next$|\bnext (exercise|one|movement|lift)\b|\bmove on\b")
PREVIOUS_RE = re.compile(r"\b(previous|last) (exercise|one|movement|lift)\b|\bgo back\b")
LOG_RE = re.compile(r"\b(did|done|completed|finished|log|logged|record)\b")
INFO_RE = re.compile(r"\b(what is|what are|tell me about|what muscles|how do i do|explain)\b")
QUESTION_RE = re.compile(r"\b(how|what|help|why|should)\b")


def fallback_classify(
    text: str,
    entities: list[Entity],
    context: SessionContext | None = None,
    note: str = "",
) -> IntentResult:
    """Keyword rules over the normalized transcript. First match wins.

    Every other rule that also matched is reported as an alternative.
    Never raises.
    """
    context = context or SessionContext()
    try:
        matches = _matching_rules(text or "", entities, context)
    except Exception as exc:
        logger.warning("Fallback rules failed (%s)", exc)
        matches = []

    prefix = f"{note}; " if note else ""
    if not matches:
        return IntentResult(
            label=UNKNOWN,
            confidence=0.1,
            entities=list(entities),
            interpretation_note=f"{prefix}no keyword rule matched",
            source="fallback",
        )

    (label, confidence, reason), *rest = matches
    seen = {label}
    alternatives = []
    for alt_label, alt_conf, alt_reason in rest:
        if alt_label not in seen:
            seen.add(alt_label)
            alternatives.append(Alternative(alt_label, clamp_confidence(alt_conf), alt_reason))

    return IntentResult(
        label=label,
        confidence=confidence,
        entities=list(entities),
        alternatives=alternatives,
        interpretation_note=f"{prefix}keyword rule: {reason}",
        source="fallback",
    )


def _matching_rules(text: str, entities: list[Entity], context: SessionContext) -> list[tuple[str, float, str]]:
    kinds = {e.kind for e in entities}
    has_exercise = "exercise" in kinds
    has_numbers = bool(kinds & {"reps", "weight"})
    matches = []

    if text in HELP_PHRASES:
        matches.append(("help", 0.6, "help phrase"))
    if MOTIVATION_RE.search(text):
        matches.append(("motivation", 0.5, "motivation keyword"))
    if FORM_RE.search(text):
        matches.append(("form_analysis", 0.5, "form keyword"))
    if NUTRITION_RE.search(text):
        matches.append(("nutrition", 0.5, "nutrition keyword"))
    if REST_RE.search(text):
        matches.append(("rest_timer", 0.5, "rest keyword"))
    if START_WORKOUT_RE.search(text) or END_WORKOUT_RE.search(text):
        matches.append(("workout_control", 0.5, "workout start/end phrase"))
    if NEXT_RE.search(text):
        matches.append(("next_exercise", 0.5, "next exercise phrase"))
    if PREVIOUS_RE.search(text):
        matches.append(("previous_exercise", 0.5, "previous exercise phrase"))
    if LOG_RE.search(text):
        complete = {"exercise", "reps", "weight"} <= kinds
        matches.append(("log_exercise", 0.8 if complete else 0.6, "completion keyword"))
    if "reps" in kinds and not has_exercise and context.current_exercise:
        matches.append(("quick_log", 0.6, "reps for the current exercise"))
    if has_exercise and has_numbers:
        matches.append(("log_exercise", 0.5, "exercise with numbers"))
    if has_exercise and INFO_RE.search(text):
        matches.append(("exercise_info", 0.5, "question about an exercise"))
    if QUESTION_RE.search(text):
        matches.append(("ask_ai", 0.5, "question word"))
    return matches


def _guessed_number(value) -> int | float | None:
    """A positive number from the backend reply, or None for anything else."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number <= 0:
        return None
    return int(number) if number.is_integer() else number


class IntentClassifier:
    """Classifies normalized transcripts into one of ``INTENT_LABELS``.

    Args:
        backend: Anything with ``generate(prompt, *, system_instruction,
            temperature) -> str``. ``None`` means offline: fallback only.
        vocabulary: Used to resolve the backend's exercise guesses.
        timeout: Seconds to wait for the backend before falling back.
    """

    def __init__(
        self,
        backend=None,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        timeout: float = BACKEND_TIMEOUT_S,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.backend = backend
        self.vocabulary = vocabulary
        self.timeout = timeout
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=BACKEND_WORKERS, thread_name_prefix="intent-backend",
        )

    def classify(
        self,
        text: str,
        entities: list[Entity],
        context: SessionContext | None = None,
    ) -> IntentResult:
        """Classify one normalized transcript. Never raises."""
        context = context or SessionContext()
        if not text:
            return fallback_classify(text, entities, context, note="empty transcript")
        if self.backend is None:
            return fallback_classify(text, entities, context, note="offline")

        prompt = build_classification_prompt(
            transcript=text,
            current_exercise=(
                self.vocabulary.display_name(context.current_exercise) if context.current_exercise else None
            ),
            previous_intent=context.previous_intent,
            entities=[e.to_dict() for e in entities],
        )

        cancel = threading.Event()
        try:
            future = self._executor.submit(self._call_backend, prompt, cancel)
        except RuntimeError as exc:
            logger.warning("Intent backend unavailable, using keyword fallback (%s)", exc)
            return fallback_classify(text, entities, context, note="backend unavailable")

        try:
            reply = future.result(timeout=self.timeout)
        except FutureTimeout:
            cancel.set()
            future.cancel()
            logger.warning("Intent backend timed out after %.1fs, using keyword fallback", self.timeout)
            return fallback_classify(text, entities, context, note="backend timeout")
        except Exception as exc:
            logger.warning("Intent backend failed, using keyword fallback (%s)", exc)
            return fallback_classify(text, entities, context, note="backend error")

        try:
            return self._parse_reply(reply, text, entities)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Unusable intent reply, using keyword fallback (%s)", exc)
            return fallback_classify(text, entities, context, note="unparseable reply")

    def _call_backend(self, prompt: str, cancel: threading.Event) -> str | None:
        if cancel.is_set():
            return None
        reply = self.backend.generate(
            prompt,
            system_instruction=CLASSIFICATION_SYSTEM_PROMPT,
            temperature=BACKEND_TEMPERATURE,
        )
        if cancel.is_set():
            logger.debug("Discarding intent reply that arrived after cancellation")
            return None
        return reply

    def _parse_reply(self, reply: str | None, text: str, entities: list[Entity]) -> IntentResult:
        if reply is None:
            raise ValueError("no reply")
        data = extract_json(reply)

        label = str(data.get("intent", "")).strip().lower()
        if label not in INTENT_LABELS:
            raise ValueError(f"unknown intent label {label!r}")

        merged = list(entities)
        found = {e.kind for e in entities}
        # Zero-width span at the end: the backend inferred these, nothing was consumed
        inferred = (len(text), len(text))
        guess = data.get("exercise")
        if isinstance(guess, str) and "exercise" not in found:
            exercise_id = self.vocabulary.resolve_exercise(guess.strip().lower())
            if exercise_id:
                merged.append(Entity(
                    kind="exercise",
                    value=exercise_id,
                    matched_text=guess,
                    span=inferred,
                    confidence=BACKEND_GUESS_CONFIDENCE,
                    provenance="alias",
                ))
        for kind in ("reps", "weight"):
            value = _guessed_number(data.get(kind))
            if value is None or kind in found:
                continue
            unit = self.vocabulary.canonical_unit(str(data.get("unit") or "")) if kind == "weight" else None
            merged.append(Entity(
                kind=kind,
                value=value,
                matched_text=str(data[kind]),
                span=inferred,
                confidence=BACKEND_GUESS_CONFIDENCE,
                provenance="digit",
                unit=unit,
            ))

        alternatives = []
        for alt in data.get("alternatives") or []:
            if not isinstance(alt, dict):
                continue
            alt_label = str(alt.get("intent", "")).strip().lower()
            if alt_label in INTENT_LABELS and alt_label != label:
                alternatives.append(Alternative(
                    alt_label, clamp_confidence(alt.get("confidence", 0.0)), str(alt.get("reason", "")),
                ))

        return IntentResult(
            label=label,
            confidence=clamp_confidence(data.get("confidence", 0.5)),
            entities=merged,
            alternatives=alternatives,
            interpretation_note=str(data.get("note", "")),
            source="backend",
        )

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
