"""Keyword signals: mood, workout phase and communication style.

Deliberately shallow. These only bias the tone of replies; they never decide
what a command means.
"""

import re

MOODS = ("positive", "neutral", "struggling", "motivated")
PHASES = ("pre-workout", "during-workout", "post-workout", "rest-day")
STYLES = ("casual", "technical", "motivational")

# Checked in this order; the first mood with a hit wins
_MOOD_PATTERNS = [
    ("positive", re.compile(r"\b(great|awesome|amazing|feeling good|feel good|crushed it|nailed it|easy)\b")),
    ("struggling", re.compile(r"\b(tired|exhausted|hard|struggling|cannot|sore|hurts|give up|no energy)\b")),
    ("motivated", re.compile(r"\b(ready|let us go|pumped|motivated|fired up|bring it)\b")),
]

_PHASE_PATTERNS = [
    ("pre-workout", re.compile(r"\b(warm up|warming up|getting started|start (my |the )?workout|about to train)\b")),
    ("post-workout", re.compile(r"\b(finished (my |the )?workout|end (my |the )?workout|workout (is )?done|cool down|i am done)\b")),
    ("rest-day", re.compile(r"\b(rest day|day off|off day)\b")),
]

_TECHNICAL_RE = re.compile(
    r"\b(rpe|rir|1rm|one rep max|hypertrophy|progressive overload|periodization|tempo"
    r"|eccentric|concentric|volume|intensity|biomechanics|range of motion|activation)\b"
)
_MOTIVATIONAL_RE = re.compile(
    r"\b(motivat\w*|pump me up|hype|push me|beast|let us go|fired up|crush|inspire\w*)\b"
)


def detect_mood(text: str) -> str | None:
    """Mood implied by one utterance, or None when nothing matched."""
    for mood, pattern in _MOOD_PATTERNS:
        if pattern.search(text or ""):
            return mood
    return None


def detect_phase(text: str, intent: str | None = None) -> str | None:
    """Workout phase implied by one utterance.

    Logging a set is evidence the user is mid-workout even without keywords.
    """
    for phase, pattern in _PHASE_PATTERNS:
        if pattern.search(text or ""):
            return phase
    if intent in ("log_exercise", "quick_log", "rest_timer", "next_exercise", "previous_exercise"):
        return "during-workout"
    return None


def style_evidence(text: str) -> dict[str, int]:
    """Keyword hits per communication style for one utterance."""
    text = text or ""
    return {
        "technical": len(_TECHNICAL_RE.findall(text)),
        "motivational": len(_MOTIVATIONAL_RE.findall(text)),
    }
