"""Conversation flow manager: the per-session dialogue state machine.

Each turn arrives with its classified intent and the current session context.
The manager then does one of four things:

    cancel guard  -- "cancel" / "stop" / "never mind" clears any open flow
    active flow   -- the turn answers the flow's current step
    open a flow   -- an actionable intent is missing something
    dispatch      -- complete or stateless intents are answered directly

It returns the turn output together with the next session context. Flows that
sit at the same step past their timeout are cleared by a timer callback,
outside the turn path.
"""

import logging
import re
import threading
from collections import deque
from dataclasses import dataclass

from src.agent.flows import ConversationFlow, FlowKind, FlowStep
from src.agent.llm import BackendError
from src.agent.responder import FINAL_APOLOGY, GENERATION_APOLOGY, Responder
from src.agent.timers import StepTimer, TimerFactory
from src.nlu.classifier import END_WORKOUT_RE
from src.nlu.entities import EntityExtractor, entity_slots
from src.nlu.models import Action, ConversationTurn, IntentResult, SessionContext, TurnOutput
from src.nlu.vocabulary import (
    BODYWEIGHT_EXERCISES,
    CANCEL_PHRASES,
    DEFAULT_VOCABULARY,
    WORKOUT_TYPES,
    Vocabulary,
)

logger = logging.getLogger(__name__)

# -- Configuration --
HISTORY_LIMIT = 10
DEFAULT_REST_SECONDS = 90
MAX_REST_SECONDS = 600
CLARIFY_TIMEOUT_MS = 8_000

_CANCEL_RE = re.compile(
    r"^(?:please )?(?:" + "|".join(re.escape(p) for p in CANCEL_PHRASES) + r")"
    r"(?: (?:that|it|this|please|the set|logging))*$"
)
_SAME_WEIGHT_RE = re.compile(r"\b(same|same weight|same as (before|last time))\b")
_BODYWEIGHT_RE = re.compile(r"\b(bodyweight|body weight|no weight|just my body)\b")
_WORKOUT_TYPE_RE = re.compile(
    r"\b(" + "|".join(re.escape(t) for t in sorted(WORKOUT_TYPES, key=len, reverse=True)) + r")\b"
)

CHAT_TOPICS = {
    FlowKind.FORM_DISCUSSION: "form_analysis",
    FlowKind.NUTRITION_CHAT: "nutrition",
    FlowKind.MOTIVATION_SESSION: "motivation",
}
FOLLOW_UP_QUESTIONS = {
    FlowKind.FORM_DISCUSSION: "Anything specific you want me to check?",
    FlowKind.NUTRITION_CHAT: "Anything else about your nutrition?",
    FlowKind.MOTIVATION_SESSION: "How are you feeling now?",
}
CHAT_EMOTIONS = {
    FlowKind.FORM_DISCUSSION: "instructional",
    FlowKind.NUTRITION_CHAT: "instructional",
    FlowKind.MOTIVATION_SESSION: "encouraging",
}


def is_cancel(text: str) -> bool:
    """True when the whole utterance is a cancel phrase."""
    return bool(_CANCEL_RE.match((text or "").strip()))


@dataclass
class FlowResult:
    """Outcome of one turn through the flow manager."""
    output: TurnOutput
    context: SessionContext
    intent_label: str = "unknown"
    outcome: str = "pending"  # success | failure | pending
    logged_set: dict | None = None


class FlowManager:
    """Owns at most one ``ConversationFlow`` for one session.

    Args:
        extractor: Used for step-scoped re-extraction inside open flows.
        responder: Builds every reply text.
        timer_factory: ``threading.Timer`` compatible factory for step timeouts.
        step_timeouts: Optional per-kind overrides in milliseconds.
        history_limit: How many turns to keep in ``history``.
    """

    def __init__(
        self,
        extractor: EntityExtractor | None = None,
        responder: Responder | None = None,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        timer_factory: TimerFactory | None = None,
        step_timeouts: dict[FlowKind, int] | None = None,
        history_limit: int = HISTORY_LIMIT,
    ):
        self.vocabulary = vocabulary
        self.extractor = extractor or EntityExtractor(vocabulary)
        self.responder = responder or Responder(vocabulary=vocabulary)
        self.step_timeouts = dict(step_timeouts or {})
        self.history: deque[ConversationTurn] = deque(maxlen=history_limit)
        self.expired_flows = 0
        self._timer = StepTimer(timer_factory)
        self._lock = threading.RLock()
        self._flow: ConversationFlow | None = None
        self._set_counts: dict[str, int] = {}

    @property
    def active_flow(self) -> ConversationFlow | None:
        with self._lock:
            return self._flow

    # ── Turn entry point ─────────────────────────────────────────

    def handle_turn(
        self,
        text: str,
        intent: IntentResult,
        context: SessionContext | None = None,
        *,
        profile=None,
        memory=None,
    ) -> FlowResult:
        """Advance the dialogue by one turn. Never raises."""
        context = context or SessionContext()
        with self._lock:
            self._timer.cancel()
            kind_at_start = self._flow.kind if self._flow else None
            try:
                if is_cancel(text):
                    result = self._cancel(context)
                elif self._flow is not None:
                    result = self._continue_flow(self._flow, text, intent, context, profile, memory)
                else:
                    result = self._route(text, intent, context, profile, memory)
            except Exception as exc:
                logger.warning("Flow handling failed, keeping flow state (%s)", exc)
                result = FlowResult(
                    TurnOutput(response_text="Sorry, something went wrong there. Could you say that again?",
                               emotion="apologetic", expects_follow_up=True),
                    context,
                    intent_label=intent.label,
                    outcome="failure",
                )

            if self._flow is not None:
                result.output.expects_follow_up = True
                result.output.follow_up_timeout_ms = self._flow.step_timeout_ms
                self._arm(self._flow)

            result.output.intent = intent
            kind = kind_at_start or (self._flow.kind if self._flow else None)
            self.history.append(ConversationTurn(
                user_input=text,
                system_response_text=result.output.response_text,
                flow_kind_at_time=kind.value if kind else None,
                confidence=intent.confidence,
            ))
            return result

    def rearm(self) -> None:
        """Restart the step timer without touching the flow (rejected turns)."""
        with self._lock:
            if self._flow is not None:
                self._arm(self._flow)

    def reset(self) -> None:
        with self._lock:
            self._timer.cancel()
            self._flow = None

    def close(self) -> None:
        self._timer.cancel()

    # ── Timers ───────────────────────────────────────────────────

    def _arm(self, flow: ConversationFlow) -> None:
        self._timer.arm(flow.flow_id, flow.step_timeout_ms, self._on_timeout)

    def _on_timeout(self, flow_id: str, generation: int) -> None:
        with self._lock:
            # A turn may have re-armed the timer while this callback waited for the lock
            if not self._timer.is_current(generation):
                return
            self._timer.cancel()
            if self._flow is None or self._flow.flow_id != flow_id:
                return
            logger.info("Flow %s (%s) expired at step %s", flow_id, self._flow.kind.value, self._flow.step.value)
            self._flow = None
            self.expired_flows += 1

    # ── Cancel guard ─────────────────────────────────────────────

    def _cancel(self, context: SessionContext) -> FlowResult:
        flow = self._flow
        self._flow = None
        if flow is None:
            text = "Okay. There's nothing to cancel."
        else:
            logger.info("Flow %s cancelled at step %s", flow.flow_id, flow.step.value)
            text = "Okay, cancelled. Nothing was logged." if flow.kind == FlowKind.SET_LOGGING else "Okay, cancelled."
        return FlowResult(
            TurnOutput(response_text=text, emotion="neutral"),
            context.evolve(previous_intent="cancel"),
            intent_label="cancel",
        )

    # ── No active flow: route by intent ──────────────────────────

    def _route(self, text, intent, context, profile, memory) -> FlowResult:
        label = intent.label
        slots = entity_slots(intent.entities)
        context = context.evolve(previous_intent=label)

        if label == "log_exercise":
            data = self._set_data(slots, slots.get("exercise") or context.current_exercise)
            return self._log_or_open(data, label, context, profile)
        if label == "quick_log":
            return self._quick_log(slots, context, profile)
        if label == "workout_control":
            return self._workout_control(text, slots, context)
        if label == "rest_timer":
            return self._rest_timer(slots, context)
        if label in ("next_exercise", "previous_exercise"):
            return self._navigate(label, context, profile)
        if label == "form_analysis":
            return self._open_form(text, slots, context, profile, memory)
        if label in ("nutrition", "motivation"):
            kind = FlowKind.NUTRITION_CHAT if label == "nutrition" else FlowKind.MOTIVATION_SESSION
            return self._open_chat(kind, label, text, context, profile, memory)
        if label == "help":
            return self._help(context)
        if label == "exercise_info":
            return self._exercise_info(text, slots, context, profile, memory)
        if label == "ask_ai":
            return self._ask_ai(text, context, profile, memory)
        return self._unknown(slots, context, memory)

    # ── Set logging ──────────────────────────────────────────────

    def _set_data(self, slots: dict, exercise: str | None) -> dict:
        data = {
            "exercise": exercise,
            "reps": slots.get("reps"),
            "weight": slots.get("weight"),
            "unit": slots.get("unit"),
            "sets": slots.get("sets"),
        }
        _fill_bodyweight(data)
        return data

    def _quick_log(self, slots: dict, context: SessionContext, profile) -> FlowResult:
        exercise = slots.get("exercise") or context.current_exercise
        data = self._set_data(slots, exercise)
        if data["weight"] is None and exercise:
            last = context.last_weight_for(exercise)
            if last is not None:
                data["weight"], data["unit"] = last[0], last[1] or None
        return self._log_or_open(data, "quick_log", context, profile)

    def _log_or_open(self, data: dict, label: str, context: SessionContext, profile) -> FlowResult:
        if all(data.get(k) is not None for k in ("exercise", "reps", "weight")):
            return self._log_set(data, label, context, profile)

        flow = ConversationFlow.open(
            FlowKind.SET_LOGGING, data,
            timeout_ms=self.step_timeouts.get(FlowKind.SET_LOGGING),
            origin_intent=label,
        )
        self._flow = flow
        logger.info("Opened %s flow %s at step %s", flow.kind.value, flow.flow_id, flow.step.value)
        if data.get("exercise"):
            context = context.evolve(current_exercise=data["exercise"])
        return FlowResult(
            TurnOutput(
                response_text=self.responder.ask_for(flow.expected_slot, flow.accumulated_data),
                emotion="questioning",
            ),
            context,
            intent_label=label,
        )

    def _log_set(self, data: dict, label: str, context: SessionContext, profile) -> FlowResult:
        exercise = data["exercise"]
        weight = data["weight"]
        unit = data.get("unit")
        if weight and not unit:
            unit = getattr(profile, "preferred_unit", None) or "lbs"
        params = {"exercise": exercise, "reps": data["reps"], "weight": weight, "unit": unit}
        if data.get("sets"):
            params["sets"] = data["sets"]

        self._set_counts[exercise] = self._set_counts.get(exercise, 0) + 1
        text, emotion = self.responder.confirm_set(
            params, self._set_counts[exercise], _is_personal_best(profile, exercise, weight, unit),
        )
        suggestions = ["Start rest timer", "Log another set"]
        if profile is not None:
            suggestions += [f"Next: {self.vocabulary.display_name(p)}" for p in profile.frequent_partners(exercise, 1)]

        context = context.evolve(current_exercise=exercise)
        if weight is not None:
            context = context.with_last_weight(exercise, weight, unit or "")
        logger.info("Logging set: %s", params)
        return FlowResult(
            TurnOutput(
                response_text=text,
                emotion=emotion,
                suggested_replies=suggestions,
                actions=[Action("LOG_SET", params)],
            ),
            context,
            intent_label=label,
            outcome="success",
            logged_set=dict(params),
        )

    # ── Active flow ──────────────────────────────────────────────

    def _continue_flow(self, flow, text, intent, context, profile, memory) -> FlowResult:
        context = context.evolve(previous_intent=flow.origin_intent or intent.label)
        if flow.is_conversational:
            return self._continue_chat(flow, text, context, profile, memory)
        if flow.kind == FlowKind.WORKOUT_SETUP:
            return self._continue_setup(flow, text, intent, context)
        return self._continue_logging(flow, text, context, profile)

    def _continue_logging(self, flow: ConversationFlow, text: str, context: SessionContext, profile) -> FlowResult:
        slot = flow.expected_slot
        data = flow.accumulated_data
        entities = self.extractor.extract(
            text,
            context_exercise=data.get("exercise") or context.current_exercise,
            profile=profile,
            expected_kind=slot,
        )
        slots = entity_slots(entities)

        filled = [key for key in ("exercise", "reps", "weight", "sets") if flow.fill(key, slots.get(key))]
        if "weight" in filled:
            flow.fill("unit", slots.get("unit"))
        if slot == "weight" and "weight" not in filled:
            if _BODYWEIGHT_RE.search(text):
                flow.fill("weight", 0)
                filled.append("weight")
            elif _SAME_WEIGHT_RE.search(text):
                last = context.last_weight_for(data.get("exercise"))
                if last is not None:
                    flow.fill("weight", last[0])
                    flow.fill("unit", last[1] or None)
                    filled.append("weight")
        if "exercise" in filled:
            _fill_bodyweight(data)

        if not filled:
            logger.info("Flow %s: nothing usable for %s, asking again", flow.flow_id, slot)
            return FlowResult(
                TurnOutput(response_text=self.responder.reprompt(slot, data), emotion="questioning"),
                context,
                intent_label=flow.origin_intent or "log_exercise",
                outcome="failure",
            )

        flow.advance()
        if flow.is_complete:
            self._flow = None
            logger.info("Flow %s complete", flow.flow_id)
            return self._log_set(dict(data), flow.origin_intent or "log_exercise", context, profile)

        if data.get("exercise"):
            context = context.evolve(current_exercise=data["exercise"])
        return FlowResult(
            TurnOutput(response_text=self.responder.ask_for(flow.expected_slot, data), emotion="questioning"),
            context,
            intent_label=flow.origin_intent or "log_exercise",
        )

    # ── Workout control ──────────────────────────────────────────

    def _workout_control(self, text: str, slots: dict, context: SessionContext) -> FlowResult:
        if END_WORKOUT_RE.search(text):
            return FlowResult(
                TurnOutput(
                    response_text="Workout complete. Great job today!",
                    emotion="celebratory",
                    actions=[Action("END_WORKOUT", {})],
                ),
                context.evolve(current_exercise=None),
                intent_label="workout_control",
                outcome="success",
            )

        workout_type = _workout_type(text, slots)
        if workout_type:
            return self._start_workout(workout_type, context)

        flow = ConversationFlow.open(
            FlowKind.WORKOUT_SETUP,
            timeout_ms=self.step_timeouts.get(FlowKind.WORKOUT_SETUP),
            origin_intent="workout_control",
        )
        self._flow = flow
        logger.info("Opened %s flow %s", flow.kind.value, flow.flow_id)
        return FlowResult(
            TurnOutput(
                response_text=self.responder.ask_for("workout_type", {}),
                emotion="questioning",
                suggested_replies=["Push", "Pull", "Legs", "Full body"],
            ),
            context,
            intent_label="workout_control",
        )

    def _continue_setup(self, flow: ConversationFlow, text: str, intent: IntentResult, context: SessionContext) -> FlowResult:
        workout_type = _workout_type(text, entity_slots(intent.entities))
        if not workout_type:
            return FlowResult(
                TurnOutput(response_text=self.responder.reprompt("workout_type", {}), emotion="questioning",
                           suggested_replies=["Push", "Pull", "Legs", "Full body"]),
                context,
                intent_label="workout_control",
                outcome="failure",
            )
        flow.fill("workout_type", workout_type)
        flow.advance()
        self._flow = None
        logger.info("Flow %s complete", flow.flow_id)
        return self._start_workout(workout_type, context)

    def _start_workout(self, workout_type: str, context: SessionContext) -> FlowResult:
        return FlowResult(
            TurnOutput(
                response_text=f"Starting your {workout_type} workout. Let's go!",
                emotion="encouraging",
                actions=[Action("START_WORKOUT", {"type": workout_type})],
            ),
            context,
            intent_label="workout_control",
            outcome="success",
        )

    # ── Direct actions ───────────────────────────────────────────

    def _rest_timer(self, slots: dict, context: SessionContext) -> FlowResult:
        seconds = slots.get("rest") or slots.get("duration")
        if seconds is None:
            # A bare number after "rest" is seconds
            bare = slots.get("reps") or slots.get("weight")
            seconds = bare if bare and bare <= MAX_REST_SECONDS else DEFAULT_REST_SECONDS
        seconds = int(min(seconds, MAX_REST_SECONDS))
        return FlowResult(
            TurnOutput(
                response_text=f"Rest timer set for {_spoken_duration(seconds)}.",
                emotion="instructional",
                actions=[Action("START_REST_TIMER", {"seconds": seconds})],
            ),
            context,
            intent_label="rest_timer",
            outcome="success",
        )

    def _navigate(self, label: str, context: SessionContext, profile) -> FlowResult:
        forward = label == "next_exercise"
        params = {"from": context.current_exercise} if context.current_exercise else {}
        suggestions = []
        if forward and profile is not None and context.current_exercise:
            suggestions = [self.vocabulary.display_name(p) for p in profile.frequent_partners(context.current_exercise)]
        return FlowResult(
            TurnOutput(
                response_text="Moving on to the next exercise." if forward else "Going back to the previous exercise.",
                emotion="neutral",
                suggested_replies=suggestions,
                actions=[Action("NEXT_EXERCISE" if forward else "PREVIOUS_EXERCISE", params)],
            ),
            context,
            intent_label=label,
            outcome="success",
        )

    # ── Conversational flows ─────────────────────────────────────

    def _open_form(self, text, slots, context, profile, memory) -> FlowResult:
        exercise = slots.get("exercise") or context.current_exercise
        flow = ConversationFlow.open(
            FlowKind.FORM_DISCUSSION, {"exercise": exercise},
            timeout_ms=self.step_timeouts.get(FlowKind.FORM_DISCUSSION),
            origin_intent="form_analysis",
        )
        self._flow = flow
        logger.info("Opened %s flow %s at step %s", flow.kind.value, flow.flow_id, flow.step.value)
        if flow.step == FlowStep.IDENTIFYING_EXERCISE:
            return FlowResult(
                TurnOutput(response_text=self.responder.ask_for("form_exercise", {}), emotion="questioning"),
                context,
                intent_label="form_analysis",
            )
        request = {"topic": "form_analysis", "transcript": text, "exercise": exercise, "closing": False}
        return self._converse(flow, request, context, profile, memory)

    def _open_chat(self, kind, label, text, context, profile, memory) -> FlowResult:
        flow = ConversationFlow.open(kind, timeout_ms=self.step_timeouts.get(kind), origin_intent=label)
        self._flow = flow
        logger.info("Opened %s flow %s", flow.kind.value, flow.flow_id)
        request = {"topic": label, "transcript": text, "exercise": context.current_exercise, "closing": False}
        return self._converse(flow, request, context, profile, memory)

    def _continue_chat(self, flow, text, context, profile, memory) -> FlowResult:
        if flow.pending_request is not None:
            request = dict(flow.pending_request)
            request["extra"] = f'They then said: "{text}"'
            logger.info("Retrying generation for flow %s", flow.flow_id)
            return self._converse(flow, request, context, profile, memory)

        if flow.step == FlowStep.IDENTIFYING_EXERCISE:
            entities = self.extractor.extract(text, profile=profile, expected_kind="exercise")
            flow.fill("exercise", entity_slots(entities).get("exercise"))
        flow.fill("follow_up", text)
        request = {
            "topic": CHAT_TOPICS[flow.kind],
            "transcript": text,
            "exercise": flow.accumulated_data.get("exercise"),
            "closing": True,
        }
        return self._converse(flow, request, context, profile, memory)

    def _converse(self, flow, request, context, profile, memory) -> FlowResult:
        try:
            reply = self.responder.generate(
                request["topic"],
                request["transcript"],
                exercise=request.get("exercise"),
                memory=memory,
                profile=profile,
                extra=request.get("extra", ""),
            )
        except BackendError as exc:
            return self._generation_failed(flow, request, context, exc)

        flow.pending_request = None
        label = flow.origin_intent or CHAT_TOPICS[flow.kind]
        emotion = CHAT_EMOTIONS[flow.kind]
        if request["closing"]:
            flow.finish()
            self._flow = None
            logger.info("Flow %s complete", flow.flow_id)
            return FlowResult(TurnOutput(response_text=reply, emotion=emotion), context,
                              intent_label=label, outcome="success")
        return FlowResult(
            TurnOutput(response_text=f"{reply} {FOLLOW_UP_QUESTIONS[flow.kind]}", emotion=emotion),
            context,
            intent_label=label,
        )

    def _generation_failed(self, flow, request, context, exc) -> FlowResult:
        label = flow.origin_intent or CHAT_TOPICS[flow.kind]
        if flow.pending_request is None:
            logger.warning("Generation failed in flow %s, retrying next turn (%s)", flow.flow_id, exc)
            flow.pending_request = {k: v for k, v in request.items() if k != "extra"}
            return FlowResult(TurnOutput(response_text=GENERATION_APOLOGY, emotion="apologetic"), context,
                              intent_label=label)
        logger.warning("Generation failed again in flow %s, closing it (%s)", flow.flow_id, exc)
        self._flow = None
        return FlowResult(TurnOutput(response_text=FINAL_APOLOGY, emotion="apologetic"), context,
                          intent_label=label, outcome="failure")

    # ── Stateless handlers ───────────────────────────────────────

    def _help(self, context: SessionContext) -> FlowResult:
        return FlowResult(
            TurnOutput(
                response_text=self.responder.help_text(),
                emotion="instructional",
                suggested_replies=["Log a set", "Start rest timer", "Next exercise"],
            ),
            context,
            intent_label="help",
            outcome="success",
        )

    def _exercise_info(self, text, slots, context, profile, memory) -> FlowResult:
        exercise = slots.get("exercise") or context.current_exercise
        if not exercise:
            return FlowResult(
                TurnOutput(response_text=self.responder.exercise_facts(None), emotion="questioning",
                           expects_follow_up=True, follow_up_timeout_ms=CLARIFY_TIMEOUT_MS),
                context,
                intent_label="exercise_info",
                outcome="failure",
            )
        reply = self.responder.reply_or_static("exercise_info", text, exercise=exercise, memory=memory, profile=profile)
        return FlowResult(
            TurnOutput(response_text=reply, emotion="instructional"),
            context.evolve(current_exercise=exercise),
            intent_label="exercise_info",
            outcome="success",
        )

    def _ask_ai(self, text, context, profile, memory) -> FlowResult:
        reply = self.responder.reply_or_static("ask_ai", text, memory=memory, profile=profile)
        return FlowResult(
            TurnOutput(response_text=reply, emotion="instructional"),
            context,
            intent_label="ask_ai",
            outcome="success",
        )

    def _unknown(self, slots: dict, context: SessionContext, memory) -> FlowResult:
        number = slots.get("weight") if slots.get("weight") is not None else slots.get("reps")
        if number is not None:
            text = (f"Is {number:g} your weight or your reps? Tell me the exercise too, "
                    f"like squat 5 reps at 225.")
        else:
            text = "Sorry, I didn't get that. Try something like bench press 8 reps at 185, or say help."
        suggestions = memory.contextual_suggestions() if memory is not None else []
        return FlowResult(
            TurnOutput(
                response_text=text,
                emotion="questioning",
                expects_follow_up=True,
                follow_up_timeout_ms=CLARIFY_TIMEOUT_MS,
                suggested_replies=suggestions or ["Help", "Log a set"],
            ),
            context,
            intent_label="unknown",
            outcome="failure",
        )


def _fill_bodyweight(data: dict) -> None:
    if data.get("exercise") in BODYWEIGHT_EXERCISES and data.get("weight") is None:
        data["weight"] = 0
        data["unit"] = None


def _workout_type(text: str, slots: dict) -> str | None:
    match = _WORKOUT_TYPE_RE.search(text)
    if match:
        return match.group(1)
    return slots.get("muscle_group")


def _is_personal_best(profile, exercise: str, weight, unit: str | None) -> bool:
    if profile is None or not weight:
        return False
    entry = profile.exercise_ranges.get(exercise)
    best = profile.weight_range(exercise)
    if not entry or not best or entry.get("unit") != unit:
        return False
    return weight > best[1]


def _spoken_duration(seconds: int) -> str:
    if seconds % 60 == 0:
        minutes = seconds // 60
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds} seconds"
