"""Value types passed between the pipeline stages of one voice turn."""

from dataclasses import dataclass, field, replace
from datetime import datetime


ENTITY_KINDS = ("exercise", "reps", "weight", "sets", "duration", "rest", "muscle_group")
PROVENANCES = ("alias", "fuzzy", "digit", "word_number")
EMOTIONS = ("encouraging", "celebratory", "instructional", "questioning", "neutral", "apologetic")


def clamp_confidence(value) -> float:
    """Coerce anything numeric into [0, 1]; garbage becomes 0.0."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, value))


@dataclass(frozen=True)
class Transcript:
    """One recognized utterance as heard and after normalization."""
    raw: str
    normalized: str
    captured_at: datetime = field(default_factory=datetime.now)
    recognizer_confidence: float | None = None


@dataclass
class Entity:
    """A structured value found in the normalized transcript.

    ``span`` is a half-open (start, end) character range over the normalized
    text. ``unit`` is set for weights ("lbs"/"kg") and durations ("seconds").
    """
    kind: str
    value: object
    matched_text: str
    span: tuple[int, int]
    confidence: float
    provenance: str
    unit: str | None = None

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)

    def overlaps(self, other: "Entity") -> bool:
        return self.span[0] < other.span[1] and other.span[0] < self.span[1]

    def to_dict(self) -> dict:
        data = {
            "kind": self.kind,
            "value": self.value,
            "matched_text": self.matched_text,
            "span": list(self.span),
            "confidence": self.confidence,
            "provenance": self.provenance,
        }
        if self.unit:
            data["unit"] = self.unit
        return data


@dataclass(frozen=True)
class Alternative:
    label: str
    confidence: float
    reason: str = ""


@dataclass
class IntentResult:
    label: str
    confidence: float
    entities: list[Entity] = field(default_factory=list)
    alternatives: list[Alternative] = field(default_factory=list)
    interpretation_note: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = "fallback"  # backend | fallback

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)

    def first(self, kind: str) -> Entity | None:
        """The first entity of the given kind, by position in the text."""
        matches = [e for e in self.entities if e.kind == kind]
        if not matches:
            return None
        return min(matches, key=lambda e: e.span[0])

    def value_of(self, kind: str):
        entity = self.first(kind)
        return entity.value if entity else None

    def kinds(self) -> set[str]:
        return {e.kind for e in self.entities}


@dataclass(frozen=True)
class SessionContext:
    """Carry-over state between turns. Never mutated; use ``evolve``."""
    current_exercise: str | None = None
    previous_intent: str | None = None
    last_weights: tuple[tuple[str, float, str], ...] = ()

    def evolve(self, **changes) -> "SessionContext":
        return replace(self, **changes)

    def last_weight_for(self, exercise: str | None) -> tuple[float, str] | None:
        for name, weight, unit in self.last_weights:
            if name == exercise:
                return weight, unit
        return None

    def with_last_weight(self, exercise: str, weight: float, unit: str) -> "SessionContext":
        kept = tuple(item for item in self.last_weights if item[0] != exercise)
        return replace(self, last_weights=kept + ((exercise, weight, unit),))


@dataclass(frozen=True)
class TurnInput:
    transcript: str
    recognizer_confidence: float | None = None
    session_context: SessionContext | None = None


@dataclass(frozen=True)
class Action:
    kind: str  # LOG_SET, START_REST_TIMER, NEXT_EXERCISE, PREVIOUS_EXERCISE, START_WORKOUT, END_WORKOUT
    parameters: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "parameters": dict(self.parameters)}


@dataclass
class TurnOutput:
    response_text: str
    emotion: str = "neutral"
    expects_follow_up: bool = False
    follow_up_timeout_ms: int | None = None
    suggested_replies: list[str] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)
    low_confidence: bool = False
    intent: IntentResult | None = None
    transcript: Transcript | None = None

    def to_dict(self) -> dict:
        data = {
            "response_text": self.response_text,
            "emotion": self.emotion,
            "expects_follow_up": self.expects_follow_up,
            "suggested_replies": list(self.suggested_replies),
            "actions": [a.to_dict() for a in self.actions],
            "low_confidence": self.low_confidence,
        }
        if self.follow_up_timeout_ms is not None:
            data["follow_up_timeout_ms"] = self.follow_up_timeout_ms
        return data


@dataclass
class ConversationTurn:
    user_input: str
    system_response_text: str
    timestamp: datetime = field(default_factory=datetime.now)
    flow_kind_at_time: str | None = None
    confidence: float = 0.0

    def to_dict(self) -> dict:
        return {
            "user_input": self.user_input,
            "system_response_text": self.system_response_text,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
            "flow_kind_at_time": self.flow_kind_at_time,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationTurn":
        try:
            ts = datetime.fromisoformat(data.get("timestamp", ""))
        except (TypeError, ValueError):
            ts = datetime.now()
        return cls(
            user_input=data.get("user_input", ""),
            system_response_text=data.get("system_response_text", ""),
            timestamp=ts,
            flow_kind_at_time=data.get("flow_kind_at_time"),
            confidence=clamp_confidence(data.get("confidence", 0.0)),
        )
