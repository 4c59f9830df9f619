"""User preference profile: what this lifter usually does and how they talk.

Read by the entity extractor (learned rep/weight ranges, preferred unit) and
the responder (communication style, mood). Only ``LearningEngine`` writes it.
"""

from datetime import datetime

from src.memory.store import KeyValueStore, safe_get

# -- Configuration --
MAX_PHRASINGS = 50
KG_TO_LBS = 2.20462

COMMUNICATION_STYLES = ("casual", "technical", "motivational")


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def convert_weight(value: float, from_unit: str | None, to_unit: str | None) -> float:
    """Convert between lbs and kg; anything else passes through."""
    if not from_unit or not to_unit or from_unit == to_unit:
        return value
    if from_unit == "kg" and to_unit == "lbs":
        return round(value * KG_TO_LBS, 1)
    if from_unit == "lbs" and to_unit == "kg":
        return round(value / KG_TO_LBS, 1)
    return value


class UserPreferenceProfile:
    """Per-user learned preferences, persisted as one JSON document."""

    def __init__(self, user_id: str = "default"):
        self.user_id = user_id
        self.exercise_ranges: dict[str, dict] = {}
        self.preferred_unit = "lbs"
        self.communication_style = "casual"
        self.style_evidence = {"technical": 0, "motivational": 0}
        self.mood = "neutral"
        self.workout_phase = "pre-workout"
        self.common_exercises: dict[str, int] = {}
        self.pairings: dict[str, dict[str, int]] = {}
        self.phrasings: list[dict] = []
        self.intent_outcomes: dict[str, dict[str, int]] = {}
        self.meta = {
            "created_at": _now_iso(),
            "updated_at": _now_iso(),
            "sessions": 0,
            "seeded_from_history": False,
        }

    @property
    def key(self) -> str:
        return f"profile_{self.user_id}"

    # ── Ranges ───────────────────────────────────────────────────

    def rep_range(self, exercise: str | None) -> tuple[float, float] | None:
        entry = self.exercise_ranges.get(exercise or "")
        if entry and entry.get("reps"):
            low, high = entry["reps"]
            return low, high
        return None

    def weight_range(self, exercise: str | None) -> tuple[float, float] | None:
        entry = self.exercise_ranges.get(exercise or "")
        if entry and entry.get("weight"):
            low, high = entry["weight"]
            return low, high
        return None

    def observe_set(self, exercise: str, reps=None, weight=None, unit: str | None = None) -> None:
        """Widen the exercise's observed min/max to include this set."""
        entry = self.exercise_ranges.setdefault(
            exercise, {"reps": None, "weight": None, "unit": unit or self.preferred_unit, "count": 0},
        )
        if reps is not None:
            entry["reps"] = _widen(entry["reps"], reps)
        if weight is not None:
            entry["weight"] = _widen(entry["weight"], convert_weight(weight, unit, entry["unit"]))
        entry["count"] += 1
        self.touch()

    # ── Frequencies ──────────────────────────────────────────────

    def top_exercises(self, limit: int = 5) -> list[str]:
        ranked = sorted(self.common_exercises.items(), key=lambda kv: (-kv[1], kv[0]))
        return [name for name, _ in ranked[:limit]]

    def frequent_partners(self, exercise: str, limit: int = 3) -> list[str]:
        """Exercises most often trained right after ``exercise``."""
        partners = self.pairings.get(exercise, {})
        ranked = sorted(partners.items(), key=lambda kv: (-kv[1], kv[0]))
        return [name for name, _ in ranked[:limit]]

    def success_rate(self, intent: str) -> float | None:
        counts = self.intent_outcomes.get(intent)
        if not counts:
            return None
        total = counts.get("success", 0) + counts.get("failure", 0)
        return counts.get("success", 0) / total if total else None

    def touch(self) -> None:
        self.meta["updated_at"] = _now_iso()

    def summary(self) -> str:
        """Compact text for the response generator."""
        lines = [f"Communication style: {self.communication_style}", f"Units: {self.preferred_unit}"]
        top = self.top_exercises(3)
        if top:
            lines.append(f"Usually trains: {', '.join(top)}")
        for exercise in top:
            reps, weight = self.rep_range(exercise), self.weight_range(exercise)
            if reps and weight:
                unit = self.exercise_ranges[exercise]["unit"]
                lines.append(
                    f"{exercise}: {reps[0]:g}-{reps[1]:g} reps at {weight[0]:g}-{weight[1]:g} {unit}"
                )
        return "; ".join(lines)

    # ── Persistence ──────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "exercise_ranges": {k: dict(v) for k, v in self.exercise_ranges.items()},
            "preferred_unit": self.preferred_unit,
            "communication_style": self.communication_style,
            "style_evidence": dict(self.style_evidence),
            "mood": self.mood,
            "workout_phase": self.workout_phase,
            "common_exercises": dict(self.common_exercises),
            "pairings": {k: dict(v) for k, v in self.pairings.items()},
            "phrasings": [dict(p) for p in self.phrasings],
            "intent_outcomes": {k: dict(v) for k, v in self.intent_outcomes.items()},
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserPreferenceProfile":
        profile = cls(data.get("user_id", "default"))
        profile.exercise_ranges = {k: dict(v) for k, v in data.get("exercise_ranges", {}).items()}
        profile.preferred_unit = data.get("preferred_unit", "lbs")
        style = data.get("communication_style", "casual")
        profile.communication_style = style if style in COMMUNICATION_STYLES else "casual"
        profile.style_evidence.update(data.get("style_evidence", {}))
        profile.mood = data.get("mood", "neutral")
        profile.workout_phase = data.get("workout_phase", "pre-workout")
        profile.common_exercises = dict(data.get("common_exercises", {}))
        profile.pairings = {k: dict(v) for k, v in data.get("pairings", {}).items()}
        profile.phrasings = [dict(p) for p in data.get("phrasings", [])][-MAX_PHRASINGS:]
        profile.intent_outcomes = {k: dict(v) for k, v in data.get("intent_outcomes", {}).items()}
        profile.meta.update(data.get("meta", {}))
        return profile

    @classmethod
    def load_or_create(cls, store: KeyValueStore | None, user_id: str = "default") -> "UserPreferenceProfile":
        """Load the persisted profile, or start a fresh one."""
        if store is None:
            return cls(user_id)
        data = safe_get(store, f"profile_{user_id}")
        if isinstance(data, dict):
            profile = cls.from_dict(data)
            profile.user_id = user_id
            return profile
        return cls(user_id)


def _widen(current: list | None, value) -> list:
    if current is None:
        return [value, value]
    return [min(current[0], value), max(current[1], value)]
