"""Workout storage: executes emitted actions and keeps the set history."""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path

from src.memory.store import DATA_DIR
from src.nlu.models import Action

logger = logging.getLogger(__name__)

WORKOUTS_DIR = DATA_DIR / "workouts"

# Default exercise order per workout type, used by next/previous navigation
WORKOUT_TEMPLATES: dict[str, list[str]] = {
    "push": ["bench-press", "overhead-press", "incline-bench-press", "lateral-raise", "tricep-extension"],
    "pull": ["deadlift", "pull-up", "barbell-row", "lat-pulldown", "dumbbell-curl"],
    "legs": ["squat", "romanian-deadlift", "leg-press", "leg-curl", "calf-raise"],
    "leg day": ["squat", "romanian-deadlift", "leg-press", "leg-curl", "calf-raise"],
    "upper body": ["bench-press", "barbell-row", "overhead-press", "pull-up", "dumbbell-curl"],
    "lower body": ["squat", "deadlift", "lunge", "leg-curl", "calf-raise"],
    "full body": ["squat", "bench-press", "barbell-row", "overhead-press", "plank"],
    "chest": ["bench-press", "incline-bench-press", "push-up"],
    "back": ["deadlift", "barbell-row", "lat-pulldown", "pull-up"],
    "shoulders": ["overhead-press", "lateral-raise", "shrug"],
    "arms": ["dumbbell-curl", "hammer-curl", "tricep-extension", "tricep-dip"],
    "cardio": [],
}


def summarize_sets(sets: list[dict]) -> dict:
    """Summarize logged sets.

    Returns:
        dict with total_sets, total_reps, total_volume (reps x weight, mixed
        units summed as-is) and sets_by_exercise.
    """
    sets_by_exercise: dict[str, int] = {}
    total_reps = 0
    total_volume = 0.0
    for record in sets:
        exercise = record.get("exercise", "unknown")
        sets_by_exercise[exercise] = sets_by_exercise.get(exercise, 0) + 1
        reps = record.get("reps") or 0
        total_reps += reps
        total_volume += reps * (record.get("weight") or 0)
    return {
        "total_sets": len(sets),
        "total_reps": total_reps,
        "total_volume": round(total_volume, 1),
        "sets_by_exercise": sets_by_exercise,
    }


class WorkoutStore:
    """Executes workout actions and persists logged sets.

    With ``storage_dir=None`` and ``persist=False`` nothing touches disk,
    which is what tests and the offline CLI use.
    """

    def __init__(self, storage_dir: str | Path | None = None, persist: bool = True):
        self.storage_dir = Path(storage_dir) if storage_dir else WORKOUTS_DIR
        self.persist = persist
        self._lock = threading.Lock()
        self.sets: list[dict] = self._load_sets() if persist else []
        self.workout: dict | None = None
        self.rests: list[dict] = []

    @property
    def _sets_path(self) -> Path:
        return self.storage_dir / "sets.json"

    def _load_sets(self) -> list[dict]:
        if not self._sets_path.exists():
            return []
        try:
            data = json.loads(self._sets_path.read_text())
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring corrupt set history %s (%s)", self._sets_path, exc)
            return []
        return data if isinstance(data, list) else []

    def _save_sets(self) -> None:
        if not self.persist:
            return
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._sets_path.write_text(json.dumps(self.sets, indent=2))

    def _save_workout(self, workout: dict) -> Path | None:
        if not self.persist:
            return None
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.fromisoformat(workout["started_at"]).strftime("%Y-%m-%d_%H%M%S")
        path = self.storage_dir / f"{ts}_{workout['type'].replace(' ', '-')}.json"
        path.write_text(json.dumps(workout, indent=2))
        return path

    # ── Collaborator contract ────────────────────────────────────

    def execute(self, action: Action) -> dict:
        """Apply one action. Returns a result dict; unknown kinds are ignored."""
        handler = {
            "LOG_SET": self._log_set,
            "START_WORKOUT": self._start_workout,
            "END_WORKOUT": self._end_workout,
            "START_REST_TIMER": self._start_rest,
            "NEXT_EXERCISE": lambda p: self._navigate(p, 1),
            "PREVIOUS_EXERCISE": lambda p: self._navigate(p, -1),
        }.get(action.kind)
        if handler is None:
            logger.warning("Ignoring unknown action %s", action.kind)
            return {"ignored": action.kind}
        with self._lock:
            return handler(dict(action.parameters))

    def exercise_history(self, exercise: str | None = None) -> list[dict]:
        """Logged sets, oldest first, optionally for one exercise."""
        with self._lock:
            return [dict(s) for s in self.sets if exercise is None or s.get("exercise") == exercise]

    @property
    def current_exercise(self) -> str | None:
        if not self.workout or not self.workout["exercises"]:
            return None
        return self.workout["exercises"][self.workout["position"]]

    # ── Handlers ─────────────────────────────────────────────────

    def _log_set(self, params: dict) -> dict:
        record = {
            "exercise": params.get("exercise"),
            "reps": params.get("reps"),
            "weight": params.get("weight"),
            "unit": params.get("unit"),
            "logged_at": datetime.now().isoformat(timespec="seconds"),
        }
        if params.get("sets"):
            record["sets"] = params["sets"]
        self.sets.append(record)
        if self.workout is not None:
            self.workout["sets"].append(record)
            if record["exercise"] and record["exercise"] not in self.workout["exercises"]:
                self.workout["exercises"].append(record["exercise"])
        self._save_sets()
        return {"logged": record, "set_number": self._set_number(record["exercise"])}

    def _set_number(self, exercise: str | None) -> int:
        source = self.workout["sets"] if self.workout is not None else self.sets
        return sum(1 for s in source if s.get("exercise") == exercise)

    def _start_workout(self, params: dict) -> dict:
        workout_type = params.get("type") or "full body"
        self.workout = {
            "type": workout_type,
            "started_at": datetime.now().isoformat(timespec="seconds"),
            "exercises": list(WORKOUT_TEMPLATES.get(workout_type, [])),
            "position": 0,
            "sets": [],
        }
        return {"started": workout_type, "exercise": self.current_exercise}

    def _end_workout(self, params: dict) -> dict:
        if self.workout is None:
            return {"ended": None, "summary": summarize_sets([])}
        workout = self.workout
        workout["ended_at"] = datetime.now().isoformat(timespec="seconds")
        workout["summary"] = summarize_sets(workout["sets"])
        self.workout = None
        self._save_workout(workout)
        return {"ended": workout["type"], "summary": workout["summary"]}

    def _start_rest(self, params: dict) -> dict:
        rest = {"seconds": params.get("seconds"), "started_at": datetime.now().isoformat(timespec="seconds")}
        self.rests.append(rest)
        return {"rest": rest}

    def _navigate(self, params: dict, step: int) -> dict:
        if not self.workout or not self.workout["exercises"]:
            return {"exercise": None}
        last = len(self.workout["exercises"]) - 1
        self.workout["position"] = max(0, min(last, self.workout["position"] + step))
        return {"exercise": self.current_exercise}
