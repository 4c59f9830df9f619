"""Conversation flows: kinds, per-kind step graphs and the flow object.

A flow exists only while a multi-turn exchange is open. Steps move forward
along a fixed graph; one turn may fill several slots and skip ahead, but a
flow never goes back.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class FlowKind(Enum):
    SET_LOGGING = "set_logging"
    WORKOUT_SETUP = "workout_setup"
    FORM_DISCUSSION = "form_discussion"
    NUTRITION_CHAT = "nutrition_chat"
    MOTIVATION_SESSION = "motivation_session"


class FlowStep(Enum):
    # SET_LOGGING
    AWAITING_EXERCISE = "awaiting_exercise"
    AWAITING_REPS = "awaiting_reps"
    AWAITING_WEIGHT = "awaiting_weight"
    # WORKOUT_SETUP
    CHOOSING_TYPE = "choosing_type"
    READY_TO_START = "ready_to_start"
    # FORM_DISCUSSION
    IDENTIFYING_EXERCISE = "identifying_exercise"
    # FORM_DISCUSSION, NUTRITION_CHAT
    FOLLOW_UP = "follow_up"
    # MOTIVATION_SESSION
    PROVIDING_SUPPORT = "providing_support"
    COMPLETE = "complete"


# Ordered steps per kind; the last one is terminal
STEP_GRAPHS: dict[FlowKind, list[FlowStep]] = {
    FlowKind.SET_LOGGING: [
        FlowStep.AWAITING_EXERCISE, FlowStep.AWAITING_REPS, FlowStep.AWAITING_WEIGHT, FlowStep.COMPLETE,
    ],
    FlowKind.WORKOUT_SETUP: [FlowStep.CHOOSING_TYPE, FlowStep.READY_TO_START],
    FlowKind.FORM_DISCUSSION: [FlowStep.IDENTIFYING_EXERCISE, FlowStep.FOLLOW_UP, FlowStep.COMPLETE],
    FlowKind.NUTRITION_CHAT: [FlowStep.FOLLOW_UP, FlowStep.COMPLETE],
    FlowKind.MOTIVATION_SESSION: [FlowStep.PROVIDING_SUPPORT, FlowStep.COMPLETE],
}

# Slot each non-terminal step fills in accumulated_data
STEP_SLOTS: dict[FlowStep, str] = {
    FlowStep.AWAITING_EXERCISE: "exercise",
    FlowStep.AWAITING_REPS: "reps",
    FlowStep.AWAITING_WEIGHT: "weight",
    FlowStep.CHOOSING_TYPE: "workout_type",
    FlowStep.IDENTIFYING_EXERCISE: "exercise",
    FlowStep.FOLLOW_UP: "follow_up",
    FlowStep.PROVIDING_SUPPORT: "follow_up",
}

# -- Configuration --
STEP_TIMEOUTS_MS: dict[FlowKind, int] = {
    FlowKind.SET_LOGGING: 30_000,
    FlowKind.WORKOUT_SETUP: 30_000,
    FlowKind.FORM_DISCUSSION: 60_000,
    FlowKind.NUTRITION_CHAT: 60_000,
    FlowKind.MOTIVATION_SESSION: 60_000,
}

CONVERSATIONAL_KINDS = {FlowKind.FORM_DISCUSSION, FlowKind.NUTRITION_CHAT, FlowKind.MOTIVATION_SESSION}


@dataclass
class ConversationFlow:
    kind: FlowKind
    step: FlowStep
    accumulated_data: dict = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.now)
    step_timeout_ms: int = 30_000
    flow_id: str = field(default_factory=lambda: f"flow_{uuid.uuid4().hex[:8]}")
    origin_intent: str | None = None
    # Generation request that failed and is retried on the next turn
    pending_request: dict | None = None
    step_history: list[dict] = field(default_factory=list)

    @classmethod
    def open(
        cls,
        kind: FlowKind,
        data: dict | None = None,
        timeout_ms: int | None = None,
        origin_intent: str | None = None,
    ) -> "ConversationFlow":
        """Start a flow at the first step whose slot is still empty."""
        flow = cls(
            kind=kind,
            step=STEP_GRAPHS[kind][0],
            accumulated_data={k: v for k, v in (data or {}).items() if v is not None},
            step_timeout_ms=timeout_ms or STEP_TIMEOUTS_MS[kind],
            origin_intent=origin_intent,
        )
        flow.step = flow.next_unfilled_step()
        return flow

    @property
    def graph(self) -> list[FlowStep]:
        return STEP_GRAPHS[self.kind]

    @property
    def is_conversational(self) -> bool:
        return self.kind in CONVERSATIONAL_KINDS

    @property
    def is_complete(self) -> bool:
        return self.step == self.graph[-1]

    @property
    def expected_slot(self) -> str | None:
        return None if self.is_complete else STEP_SLOTS.get(self.step)

    def missing_slots(self) -> list[str]:
        return [
            STEP_SLOTS[step] for step in self.graph[:-1]
            if self.accumulated_data.get(STEP_SLOTS[step]) is None
        ]

    def next_unfilled_step(self) -> FlowStep:
        for step in self.graph[:-1]:
            if self.accumulated_data.get(STEP_SLOTS[step]) is None:
                return step
        return self.graph[-1]

    def fill(self, slot: str, value) -> bool:
        """Write a slot only if it is still empty. Returns True if written."""
        if value is None or self.accumulated_data.get(slot) is not None:
            return False
        self.accumulated_data[slot] = value
        return True

    def advance(self) -> bool:
        """Move to the next unfilled step. Returns True if the step changed."""
        target = self.next_unfilled_step()
        if self.graph.index(target) <= self.graph.index(self.step):
            return False
        self.transition(target)
        return True

    def finish(self) -> None:
        """Jump straight to the terminal step (conversational flows)."""
        if not self.is_complete:
            self.transition(self.graph[-1])

    def transition(self, new_step: FlowStep) -> None:
        self.step_history.append({
            "from": self.step.value,
            "to": new_step.value,
            "at": datetime.now().isoformat(timespec="seconds"),
        })
        self.step = new_step

    def to_dict(self) -> dict:
        return {
            "flow_id": self.flow_id,
            "kind": self.kind.value,
            "step": self.step.value,
            "accumulated_data": dict(self.accumulated_data),
            "started_at": self.started_at.isoformat(timespec="seconds"),
            "step_timeout_ms": self.step_timeout_ms,
            "retry_pending": self.pending_request is not None,
        }
