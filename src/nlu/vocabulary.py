"""Read-only lookup tables for spoken workout commands.

Everything here is built once at import time and never mutated afterwards,
so a single ``Vocabulary`` instance can be shared by every session.
"""

import re

# Canonical exercise ID -> natural-language aliases (the display name is added
# automatically as an alias).
EXERCISE_ALIASES: dict[str, list[str]] = {
    "bench-press": ["bench press", "bench", "bp", "chest press", "flat bench"],
    "incline-bench-press": ["incline bench press", "incline bench", "incline press"],
    "squat": ["squats", "back squat", "back squats", "barbell squat"],
    "front-squat": ["front squat", "front squats"],
    "deadlift": ["deadlifts", "dl", "dead lift", "dead lifts"],
    "romanian-deadlift": ["romanian deadlift", "rdl", "rdls", "stiff leg deadlift"],
    "overhead-press": ["overhead press", "ohp", "military press", "shoulder press"],
    "pull-up": ["pull up", "pull ups", "pullup", "pullups"],
    "chin-up": ["chin up", "chin ups", "chinup", "chinups"],
    "push-up": ["push up", "push ups", "pushup", "pushups", "press ups"],
    "barbell-row": ["barbell row", "bent over row", "bent over rows", "rows", "row"],
    "dumbbell-curl": ["bicep curl", "bicep curls", "curls", "curl", "db curl", "dumbbell curl"],
    "hammer-curl": ["hammer curl", "hammer curls"],
    "tricep-dip": ["tricep dips", "dips", "dip", "triceps dips"],
    "tricep-extension": ["tricep extension", "tricep extensions", "skull crushers"],
    "lat-pulldown": ["lat pulldown", "lat pulldowns", "lat pulls", "pulldowns", "pulldown"],
    "leg-press": ["leg press"],
    "leg-curl": ["leg curl", "leg curls", "hamstring curl"],
    "leg-extension": ["leg extension", "leg extensions"],
    "calf-raise": ["calf raise", "calf raises"],
    "lateral-raise": ["lateral raise", "lateral raises", "side raise", "side raises"],
    "shrug": ["shrugs", "shrug"],
    "hip-thrust": ["hip thrust", "hip thrusts"],
    "lunge": ["lunges", "lunge", "walking lunges"],
    "plank": ["plank", "planks"],
    "crunch": ["crunches", "crunch"],
    "sit-up": ["sit up", "sit ups", "situps"],
}

EXERCISE_NAMES: dict[str, str] = {
    "bench-press": "bench press",
    "incline-bench-press": "incline bench press",
    "squat": "squat",
    "front-squat": "front squat",
    "deadlift": "deadlift",
    "romanian-deadlift": "romanian deadlift",
    "overhead-press": "overhead press",
    "pull-up": "pull up",
    "chin-up": "chin up",
    "push-up": "push up",
    "barbell-row": "barbell row",
    "dumbbell-curl": "bicep curl",
    "hammer-curl": "hammer curl",
    "tricep-dip": "tricep dip",
    "tricep-extension": "tricep extension",
    "lat-pulldown": "lat pulldown",
    "leg-press": "leg press",
    "leg-curl": "leg curl",
    "leg-extension": "leg extension",
    "calf-raise": "calf raise",
    "lateral-raise": "lateral raise",
    "shrug": "shrug",
    "hip-thrust": "hip thrust",
    "lunge": "lunge",
    "plank": "plank",
    "crunch": "crunch",
    "sit-up": "sit up",
}

WEIGHT_UNITS: dict[str, list[str]] = {
    "lbs": ["pounds", "pound", "lbs", "lb"],
    "kg": ["kilograms", "kilogram", "kilos", "kilo", "kgs", "kg"],
}

REP_SYNONYMS = ["repetitions", "repetition", "reps", "rep", "times"]

DURATION_UNITS: dict[str, int] = {
    "seconds": 1, "second": 1, "secs": 1, "sec": 1,
    "minutes": 60, "minute": 60, "mins": 60, "min": 60,
}

SET_WORDS = {"sets", "set"}

CONTRACTIONS: dict[str, str] = {
    "i'm": "i am",
    "i've": "i have",
    "i'll": "i will",
    "can't": "cannot",
    "won't": "will not",
    "don't": "do not",
    "didn't": "did not",
    "what's": "what is",
    "how's": "how is",
    "let's": "let us",
    "that's": "that is",
    "it's": "it is",
}

# Removed only as whole words; multi-word fillers are matched first.
FILLER_PHRASES = [
    "you know", "i mean", "okay so", "kind of", "sort of",
    "um", "umm", "uh", "uhh", "er", "erm", "ah", "hmm", "mm", "well",
]

WEIGHT_MARKERS = {"at", "with", "using", "@"}

CANCEL_PHRASES = ["cancel", "stop", "never mind", "nevermind", "forget it", "abort"]

MUSCLE_GROUPS: dict[str, list[str]] = {
    "chest": ["chest", "pecs"],
    "back": ["back", "lats"],
    "legs": ["legs", "leg day", "quads", "hamstrings"],
    "glutes": ["glutes"],
    "shoulders": ["shoulders", "delts"],
    "arms": ["arms", "biceps", "triceps"],
    "core": ["core", "abs"],
}

WORKOUT_TYPES = [
    "full body", "leg day", "upper body", "lower body",
    "push", "pull", "legs", "cardio", "chest", "back", "shoulders", "arms",
]

# Logged without a weight unless the user says one
BODYWEIGHT_EXERCISES = {"pull-up", "chin-up", "push-up", "tricep-dip", "plank", "crunch", "sit-up"}

# -- Number words ------------------------------------------------------------

_UNITS = [
    "zero", "one", "two", "three", "four", "five", "six", "seven", "eight", "nine",
    "ten", "eleven", "twelve", "thirteen", "fourteen", "fifteen", "sixteen",
    "seventeen", "eighteen", "nineteen",
]
_TENS = {
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
}


def _build_number_words() -> dict[str, int]:
    """Spoken number phrases of one to three words.

    Covers plain counts ("eight", "twenty five", "one hundred") and the way
    lifters say plate weights ("one thirty five", "two twenty five",
    "four oh five").
    """
    words: dict[str, int] = {}
    for value, word in enumerate(_UNITS):
        words[word] = value
    for word, value in _TENS.items():
        words[word] = value
        for unit in range(1, 10):
            words[f"{word} {_UNITS[unit]}"] = value + unit
    words["hundred"] = 100

    # Everything that can follow a hundreds digit in gym speech: 10-99
    tails: dict[str, int] = {}
    for value in range(10, 20):
        tails[_UNITS[value]] = value
    for word, value in _TENS.items():
        tails[word] = value
        for unit in range(1, 10):
            tails[f"{word} {_UNITS[unit]}"] = value + unit

    for hundreds in range(1, 10):
        head = _UNITS[hundreds]
        words[f"{head} hundred"] = hundreds * 100
        for tail, value in tails.items():
            phrase = f"{head} {tail}"
            # "one twenty" style shorthand, plus "two hundred twenty"
            words[phrase] = hundreds * 100 + value
            if " " not in tail:
                words[f"{head} hundred {tail}"] = hundreds * 100 + value
        for unit in range(1, 10):
            words[f"{head} oh {_UNITS[unit]}"] = hundreds * 100 + unit
            words[f"{head} hundred {_UNITS[unit]}"] = hundreds * 100 + unit
    return words


NUMBER_WORDS: dict[str, int] = _build_number_words()

_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def simplify(text: str) -> str:
    """Lower-case, drop punctuation and collapse whitespace."""
    text = _PUNCT_RE.sub(" ", text.lower())
    return _SPACE_RE.sub(" ", text).strip()


class Vocabulary:
    """Immutable view over the exercise, unit and number tables."""

    def __init__(
        self,
        aliases: dict[str, list[str]] | None = None,
        names: dict[str, str] | None = None,
    ):
        aliases = aliases if aliases is not None else EXERCISE_ALIASES
        names = names if names is not None else EXERCISE_NAMES

        self._names = dict(names)
        alias_to_id: dict[str, str] = {}
        for exercise_id, spoken in aliases.items():
            for alias in [self._names.get(exercise_id, exercise_id), *spoken]:
                key = simplify(alias)
                if key:
                    alias_to_id.setdefault(key, exercise_id)
        self._alias_to_id = alias_to_id

        # Longest aliases first so "incline bench press" beats "bench"
        self.aliases_by_length: tuple[str, ...] = tuple(
            sorted(alias_to_id, key=lambda a: (-len(a), a))
        )

        unit_map: dict[str, str] = {}
        for canonical, spoken in WEIGHT_UNITS.items():
            for word in spoken:
                unit_map[word] = canonical
        self._unit_map = unit_map

    # -- Exercises -----------------------------------------------------------

    def exercise_for_alias(self, alias: str) -> str | None:
        """Return the canonical exercise ID for an alias, or None."""
        return self._alias_to_id.get(simplify(alias))

    def display_name(self, exercise_id: str) -> str:
        return self._names.get(exercise_id, exercise_id.replace("-", " "))

    def resolve_exercise(self, text: str | None) -> str | None:
        """Map a free-form exercise mention (alias, display name or ID) to its ID."""
        if not text:
            return None
        if text in self._names:
            return text
        return self.exercise_for_alias(text.replace("-", " "))

    def fuzzy_candidates(self, min_length: int = 5) -> list[tuple[str, str]]:
        """(candidate text, exercise ID) pairs eligible for fuzzy matching.

        Very short aliases ("dl", "ohp") are excluded because a one-letter
        slip already puts them over the acceptance threshold.
        """
        return [
            (alias, exercise_id)
            for alias, exercise_id in self._alias_to_id.items()
            if len(alias) >= min_length
        ]

    @property
    def exercise_ids(self) -> list[str]:
        return sorted(self._names)

    # -- Units ---------------------------------------------------------------

    def canonical_unit(self, word: str) -> str | None:
        return self._unit_map.get(word)

    @property
    def unit_words(self) -> list[str]:
        return sorted(self._unit_map, key=len, reverse=True)


DEFAULT_VOCABULARY = Vocabulary()
