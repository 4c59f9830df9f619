"""Entity extraction: exercises, numbers and what the numbers mean.

Works on normalized transcripts (see ``normalizer.py``). Exercise mentions are
found by exact alias lookup, falling back to fuzzy matching on edit distance.
Numbers are read from digits and spelled-out number words, then labelled as
reps, weight, sets, duration or rest.

Reps-vs-weight disambiguation runs in this order:
    0. explicit unit cues ("225 lbs", "10 reps", "3 sets", "90 seconds")
    1. a single number with an active exercise is reps
    2. the number right after "at"/"with"/"using"/"@" is weight, others reps
    3. with two or more numbers, the first is reps and the second weight
    4. learned per-exercise ranges relabel numbers that fit only one range
"""

import logging
import re
from dataclasses import dataclass

import numpy as np

from src.memory.preferences import convert_weight
from src.nlu.models import Entity
from src.nlu.vocabulary import (
    DEFAULT_VOCABULARY,
    DURATION_UNITS,
    MUSCLE_GROUPS,
    NUMBER_WORDS,
    SET_WORDS,
    WEIGHT_MARKERS,
    Vocabulary,
)

logger = logging.getLogger(__name__)

# -- Configuration --
FUZZY_THRESHOLD = 0.7          # accept strictly above this score
FUZZY_MAX_WINDOW = 3           # words per fuzzy window
ALIAS_CONFIDENCE = 0.95
MUSCLE_GROUP_CONFIDENCE = 0.9
DIGIT_CONFIDENCE = 1.0
MULTI_WORD_CONFIDENCE = 0.9
SINGLE_WORD_CONFIDENCE = 0.85
DEFAULT_WEIGHT_UNIT = "lbs"

REST_CUES = {"rest", "break", "timer", "breather"}

_TOKEN_RE = re.compile(r"\S+")
_DIGIT_RE = re.compile(r"\d+(?:\.\d+)?")
_MAX_NUMBER_WINDOW = 3


# ── Edit distance ────────────────────────────────────────────────


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance, one DP row at a time.

    The row update is vectorized: deletions and substitutions come from the
    previous row, and the chain of insertions along the current row is a
    running minimum of ``row[k] - k``.
    """
    if a == b:
        return 0
    if not a or not b:
        return max(len(a), len(b))

    target = np.array(list(b))
    offsets = np.arange(len(b) + 1)
    row = offsets.copy()
    for i, char in enumerate(a, start=1):
        cost = (target != char).astype(int)
        best = np.empty_like(row)
        best[0] = i
        best[1:] = np.minimum(row[1:] + 1, row[:-1] + cost)
        row = np.minimum.accumulate(best - offsets) + offsets
    return int(row[-1])


def similarity(a: str, b: str) -> float:
    """Normalized edit similarity in [0, 1]."""
    if not a and not b:
        return 1.0
    return 1.0 - levenshtein(a, b) / max(len(a), len(b))


# ── Internals ────────────────────────────────────────────────────


@dataclass
class _Token:
    text: str
    start: int
    end: int


@dataclass
class _Number:
    value: float | int
    first: int          # token index range [first, last]
    last: int
    start: int
    end: int
    matched_text: str
    provenance: str
    confidence: float
    words: int
    kind: str | None = None
    unit: str | None = None
    fixed: bool = False

    def as_entity(self) -> Entity:
        return Entity(
            kind=self.kind or "reps",
            value=self.value,
            matched_text=self.matched_text,
            span=(self.start, self.end),
            confidence=self.confidence,
            provenance=self.provenance,
            unit=self.unit,
        )


def _as_number(text: str) -> float | int:
    value = float(text)
    return int(value) if value.is_integer() else value


class EntityExtractor:
    """Turns a normalized transcript into a list of non-overlapping entities.

    Holds only the read-only vocabulary, so one extractor can serve every
    session. Per-user bias comes in through the ``profile`` argument.
    """

    def __init__(self, vocabulary: Vocabulary = DEFAULT_VOCABULARY, fuzzy_threshold: float = FUZZY_THRESHOLD):
        self.vocabulary = vocabulary
        self.fuzzy_threshold = fuzzy_threshold
        self._alias_re = re.compile(
            r"\b(" + "|".join(re.escape(a) for a in vocabulary.aliases_by_length) + r")\b"
        )
        group_aliases = sorted(
            ((alias, group) for group, spoken in MUSCLE_GROUPS.items() for alias in spoken),
            key=lambda pair: -len(pair[0]),
        )
        self._muscle_lookup = dict(group_aliases)
        self._muscle_re = re.compile(
            r"\b(" + "|".join(re.escape(alias) for alias, _ in group_aliases) + r")\b"
        )
        self._fuzzy_candidates = vocabulary.fuzzy_candidates()

    def extract(
        self,
        text: str,
        *,
        context_exercise: str | None = None,
        profile=None,
        expected_kind: str | None = None,
    ) -> list[Entity]:
        """Extract entities from a normalized transcript.

        Args:
            text: Output of ``normalize_transcript``.
            context_exercise: Exercise ID already active in the session or flow.
            profile: Optional ``UserPreferenceProfile`` providing learned
                ranges and the preferred weight unit. Only read.
            expected_kind: The kind a flow step is waiting for. When exactly
                one number is present it takes this kind.

        Returns:
            Entities sorted by position. Spans never overlap.
        """
        if not text:
            return []

        tokens = [_Token(m.group(0), m.start(), m.end()) for m in _TOKEN_RE.finditer(text)]
        consumed = [False] * len(tokens)

        entities = self._find_exercises(text, tokens, consumed)
        numbers = self._find_numbers(tokens, consumed)

        exercise_id = entities[0].value if entities else None
        active_exercise = exercise_id or context_exercise
        rest_context = any(t.text in REST_CUES for t in tokens)

        self._apply_unit_cues(numbers, tokens, consumed, rest_context)
        self._disambiguate(numbers, tokens, active_exercise, profile, expected_kind)

        default_unit = getattr(profile, "preferred_unit", None) or DEFAULT_WEIGHT_UNIT
        for number in numbers:
            if number.kind == "weight" and not number.unit:
                number.unit = default_unit
            entities.append(number.as_entity())

        entities.extend(self._find_muscle_groups(text, tokens, consumed))
        entities.sort(key=lambda e: e.span[0])
        logger.debug("Extracted %d entities from %r", len(entities), text)
        return entities

    # ── Exercises ────────────────────────────────────────────────

    def _find_exercises(self, text: str, tokens: list[_Token], consumed: list[bool]) -> list[Entity]:
        found = []
        for match in self._alias_re.finditer(text):
            exercise_id = self.vocabulary.exercise_for_alias(match.group(1))
            if exercise_id is None:
                continue
            found.append(Entity(
                kind="exercise",
                value=exercise_id,
                matched_text=match.group(1),
                span=(match.start(), match.end()),
                confidence=ALIAS_CONFIDENCE,
                provenance="alias",
            ))
            _mark(tokens, consumed, match.start(), match.end())

        if found:
            return found

        fuzzy = self._fuzzy_exercise(text, tokens)
        if fuzzy is not None:
            _mark(tokens, consumed, *fuzzy.span)
            return [fuzzy]
        return []

    def _fuzzy_exercise(self, text: str, tokens: list[_Token]) -> Entity | None:
        """Best fuzzy match of any 1-3 word window, if it clears the threshold."""
        best_score = 0.0
        best: tuple[int, int, str] | None = None
        for first in range(len(tokens)):
            if _is_numeric_token(tokens[first].text):
                continue
            for size in range(1, FUZZY_MAX_WINDOW + 1):
                last = first + size - 1
                if last >= len(tokens) or _is_numeric_token(tokens[last].text):
                    break
                start, end = tokens[first].start, tokens[last].end
                window = text[start:end]
                for candidate, exercise_id in self._fuzzy_candidates:
                    # Edit distance is at least the length gap
                    longest = max(len(candidate), len(window))
                    if abs(len(candidate) - len(window)) >= longest * (1 - self.fuzzy_threshold):
                        continue
                    score = similarity(window, candidate)
                    if score > best_score:
                        best_score = score
                        best = (start, end, exercise_id)

        if best is None or best_score <= self.fuzzy_threshold:
            return None
        start, end, exercise_id = best
        logger.debug("Fuzzy exercise match %r -> %s (%.2f)", text[start:end], exercise_id, best_score)
        return Entity(
            kind="exercise",
            value=exercise_id,
            matched_text=text[start:end],
            span=(start, end),
            confidence=best_score,
            provenance="fuzzy",
        )

    # ── Numbers ──────────────────────────────────────────────────

    def _find_numbers(self, tokens: list[_Token], consumed: list[bool]) -> list[_Number]:
        numbers = []
        i = 0
        while i < len(tokens):
            if consumed[i]:
                i += 1
                continue
            token = tokens[i]
            if _DIGIT_RE.fullmatch(token.text):
                numbers.append(_Number(
                    value=_as_number(token.text), first=i, last=i,
                    start=token.start, end=token.end, matched_text=token.text,
                    provenance="digit", confidence=DIGIT_CONFIDENCE, words=1,
                ))
                consumed[i] = True
                i += 1
                continue

            matched = False
            for size in range(_MAX_NUMBER_WINDOW, 0, -1):
                last = i + size - 1
                if last >= len(tokens) or any(consumed[i:last + 1]):
                    continue
                phrase = " ".join(t.text for t in tokens[i:last + 1])
                if phrase in NUMBER_WORDS:
                    numbers.append(_Number(
                        value=NUMBER_WORDS[phrase], first=i, last=last,
                        start=token.start, end=tokens[last].end, matched_text=phrase,
                        provenance="word_number",
                        confidence=MULTI_WORD_CONFIDENCE if size > 1 else SINGLE_WORD_CONFIDENCE,
                        words=size,
                    ))
                    for k in range(i, last + 1):
                        consumed[k] = True
                    i = last + 1
                    matched = True
                    break
            if not matched:
                i += 1

        for number in numbers:
            # Priors only; disambiguation below has the final say
            number.kind = "weight" if number.words > 1 else "reps"
        return numbers

    def _apply_unit_cues(self, numbers: list[_Number], tokens: list[_Token], consumed: list[bool], rest_context: bool):
        for number in numbers:
            nxt = number.last + 1
            if nxt >= len(tokens) or consumed[nxt]:
                continue
            word = tokens[nxt].text
            unit = self.vocabulary.canonical_unit(word)
            if unit:
                number.kind, number.unit = "weight", unit
            elif word == "reps":
                number.kind = "reps"
            elif word in SET_WORDS:
                number.kind = "sets"
            elif word in DURATION_UNITS:
                number.kind = "rest" if rest_context else "duration"
                number.value = _as_number(str(number.value * DURATION_UNITS[word]))
                number.unit = "seconds"
            else:
                continue
            number.fixed = True
            number.end = tokens[nxt].end
            number.matched_text = f"{number.matched_text} {word}"
            consumed[nxt] = True

    def _disambiguate(
        self,
        numbers: list[_Number],
        tokens: list[_Token],
        active_exercise: str | None,
        profile,
        expected_kind: str | None,
    ):
        free = [n for n in numbers if not n.fixed]
        if not free:
            return

        if expected_kind in ("reps", "weight", "sets") and len(numbers) == 1:
            free[0].kind = expected_kind
            return

        if len(numbers) == 1 and active_exercise:
            free[0].kind = "reps"
        else:
            marker_positions = {i + 1 for i, t in enumerate(tokens) if t.text in WEIGHT_MARKERS}
            adjacent = [n for n in free if n.first in marker_positions]
            if adjacent:
                for number in free:
                    number.kind = "weight" if number in adjacent else "reps"
            elif len(free) >= 2:
                free[0].kind, free[1].kind = "reps", "weight"

        if profile is not None and active_exercise:
            self._apply_learned_ranges(free, profile, active_exercise)

    @staticmethod
    def _apply_learned_ranges(free: list[_Number], profile, exercise: str):
        rep_range = profile.rep_range(exercise)
        weight_range = profile.weight_range(exercise)
        if not rep_range and not weight_range:
            return
        # Weight ranges are stored in the unit of the first set seen
        range_unit = (getattr(profile, "exercise_ranges", {}).get(exercise) or {}).get("unit")
        spoken_unit = getattr(profile, "preferred_unit", None) or DEFAULT_WEIGHT_UNIT
        for number in free:
            as_weight = convert_weight(number.value, number.unit or spoken_unit, range_unit)
            in_reps = bool(rep_range) and rep_range[0] <= number.value <= rep_range[1]
            in_weight = bool(weight_range) and weight_range[0] <= as_weight <= weight_range[1]
            if in_reps and not in_weight and number.kind != "reps":
                logger.debug("Learned range relabels %s as reps for %s", number.value, exercise)
                number.kind = "reps"
            elif in_weight and not in_reps and number.kind != "weight":
                logger.debug("Learned range relabels %s as weight for %s", number.value, exercise)
                number.kind = "weight"

    # ── Muscle groups ────────────────────────────────────────────

    def _find_muscle_groups(self, text: str, tokens: list[_Token], consumed: list[bool]) -> list[Entity]:
        found = []
        for match in self._muscle_re.finditer(text):
            if _is_consumed(tokens, consumed, match.start(), match.end()):
                continue
            found.append(Entity(
                kind="muscle_group",
                value=self._muscle_lookup[match.group(1)],
                matched_text=match.group(1),
                span=(match.start(), match.end()),
                confidence=MUSCLE_GROUP_CONFIDENCE,
                provenance="alias",
            ))
            _mark(tokens, consumed, match.start(), match.end())
        return found


def _is_numeric_token(text: str) -> bool:
    return bool(_DIGIT_RE.fullmatch(text)) or text in NUMBER_WORDS


def _mark(tokens: list[_Token], consumed: list[bool], start: int, end: int):
    for i, token in enumerate(tokens):
        if token.start < end and start < token.end:
            consumed[i] = True


def _is_consumed(tokens: list[_Token], consumed: list[bool], start: int, end: int) -> bool:
    return any(consumed[i] for i, t in enumerate(tokens) if t.start < end and start < t.end)


def entity_slots(entities: list[Entity]) -> dict:
    """First value of each entity kind, plus the weight unit.

    The flat shape used for flow data, prompts and logged sets.
    """
    slots: dict = {}
    for entity in sorted(entities, key=lambda e: e.span[0]):
        if entity.kind not in slots:
            slots[entity.kind] = entity.value
            if entity.kind == "weight" and entity.unit:
                slots["unit"] = entity.unit
    return slots
