"""Spoken reply generation.

Fixed phrases (step prompts, confirmations, help) are built locally. Open
questions, form tips and pep talks go to the reasoning backend, with the tone
picked from the user's mood and communication style. Without a backend every
topic has a static answer.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from src.agent.llm import BackendError
from src.agent.prompts import RESPONSE_SYSTEM_PROMPT, build_response_prompt
from src.nlu.vocabulary import DEFAULT_VOCABULARY, Vocabulary

logger = logging.getLogger(__name__)

# -- Configuration --
RESPONSE_TEMPERATURE = 0.7
REPLY_TIMEOUT_S = 6.0
REPLY_WORKERS = 2

FORM_TIPS = {
    "squat": "Brace your core, keep your chest up and push your knees out as you sit between your hips.",
    "front-squat": "Keep your elbows high and your torso upright, and sit straight down.",
    "bench-press": "Pin your shoulder blades back, keep your feet planted and touch the bar to your lower chest.",
    "deadlift": "Keep the bar over mid-foot, flatten your back and push the floor away instead of pulling with your arms.",
    "romanian-deadlift": "Push your hips back with soft knees and keep the bar close to your legs.",
    "overhead-press": "Squeeze your glutes, keep your ribs down and press the bar back over your head.",
    "pull-up": "Start from a dead hang, pull your elbows down to your ribs and avoid kipping.",
    "barbell-row": "Hinge to about forty five degrees and row the bar to your belly button.",
    "dumbbell-curl": "Keep your elbows pinned to your sides and lower the weight slowly.",
    "lunge": "Take a long enough step that your front knee stays over your ankle.",
}
GENERIC_FORM_TIP = "Move with control, keep your core braced and end the set when your form starts to slip."

EXERCISE_TARGETS = {
    "bench-press": "chest, front shoulders and triceps",
    "incline-bench-press": "upper chest and front shoulders",
    "squat": "quads, glutes and lower back",
    "front-squat": "quads and upper back",
    "deadlift": "hamstrings, glutes, back and grip",
    "romanian-deadlift": "hamstrings and glutes",
    "overhead-press": "shoulders and triceps",
    "pull-up": "lats and biceps",
    "chin-up": "lats and biceps",
    "push-up": "chest, shoulders and triceps",
    "barbell-row": "upper back and lats",
    "dumbbell-curl": "biceps",
    "hammer-curl": "biceps and forearms",
    "tricep-dip": "triceps and chest",
    "tricep-extension": "triceps",
    "lat-pulldown": "lats",
    "leg-press": "quads and glutes",
    "leg-curl": "hamstrings",
    "leg-extension": "quads",
    "calf-raise": "calves",
    "lateral-raise": "side shoulders",
    "shrug": "traps",
    "hip-thrust": "glutes",
    "lunge": "quads and glutes",
    "plank": "core",
    "crunch": "abs",
    "sit-up": "abs and hip flexors",
}

STATIC_REPLIES = {
    "nutrition": "Aim for a palm-sized portion of protein with each meal and keep sipping water between sets.",
    "motivation": "You've got this. One more good set, then we reassess. Every rep counts.",
    "ask_ai": "I can't look that up right now, but I can log your sets, time your rests and walk you through form.",
}

SET_COMMENTS = [
    "Nice work!",
    "Strong set!",
    "Keep it up!",
    "That's how it's done!",
]

HELP_TEXT = (
    "You can say things like: bench press 8 reps at 185, another 10 reps, "
    "start a rest timer, next exercise, how's my squat form, or start a push workout."
)

GENERATION_APOLOGY = "Sorry, I'm having trouble thinking that one through. Ask me again in a moment?"
FINAL_APOLOGY = "Sorry, I couldn't come up with an answer this time. Let's get back to your workout."


class Responder:
    """Builds ``response_text`` for the flow manager.

    Backend replies run on a small thread pool and are abandoned after
    ``timeout`` seconds, so a slow backend never holds up the turn.
    """

    def __init__(
        self,
        backend=None,
        vocabulary: Vocabulary = DEFAULT_VOCABULARY,
        timeout: float = REPLY_TIMEOUT_S,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.backend = backend
        self.vocabulary = vocabulary
        self.timeout = timeout
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=REPLY_WORKERS, thread_name_prefix="reply-backend",
        )

    # ── Generated replies ────────────────────────────────────────

    def generate(
        self,
        topic: str,
        transcript: str,
        *,
        exercise: str | None = None,
        memory=None,
        profile=None,
        extra: str = "",
    ) -> str:
        """Ask the backend for a short spoken reply.

        Offline (no backend) this returns the static answer for the topic.

        Raises:
            BackendError: the backend failed, timed out or the key is missing.
        """
        if self.backend is None:
            return self.static_reply(topic, exercise)

        style = getattr(profile, "communication_style", "casual")
        mood = getattr(memory, "mood", None) or getattr(profile, "mood", "neutral")
        summary_parts = []
        if memory is not None:
            summary_parts.append(memory.summary())
        if profile is not None:
            summary_parts.append(profile.summary())
        if exercise:
            extra = f"The exercise is {self.vocabulary.display_name(exercise)}. {extra}".strip()

        prompt = build_response_prompt(
            transcript=transcript,
            topic=topic.replace("_", " "),
            style=style,
            mood=mood,
            memory_summary="; ".join(p for p in summary_parts if p),
            extra=extra,
        )
        try:
            future = self._executor.submit(
                self.backend.generate,
                prompt,
                system_instruction=RESPONSE_SYSTEM_PROMPT,
                temperature=RESPONSE_TEMPERATURE,
            )
        except RuntimeError as exc:
            raise BackendError(f"reply backend unavailable: {exc}") from exc

        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise BackendError(f"reply timed out after {self.timeout:.1f}s") from exc
        except BackendError:
            raise
        except Exception as exc:
            raise BackendError(str(exc)) from exc

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def reply_or_static(self, topic: str, transcript: str, **kwargs) -> str:
        """Like ``generate`` but falls back to the static answer on failure."""
        try:
            return self.generate(topic, transcript, **kwargs)
        except BackendError as exc:
            logger.warning("Reply generation failed, using static %s reply (%s)", topic, exc)
            return self.static_reply(topic, kwargs.get("exercise"))

    # ── Static replies ───────────────────────────────────────────

    def static_reply(self, topic: str, exercise: str | None = None) -> str:
        if topic == "form_analysis":
            tip = FORM_TIPS.get(exercise or "", GENERIC_FORM_TIP)
            if exercise:
                return f"For your {self.vocabulary.display_name(exercise)}: {tip}"
            return tip
        if topic == "exercise_info":
            return self.exercise_facts(exercise)
        return STATIC_REPLIES.get(topic, STATIC_REPLIES["ask_ai"])

    def exercise_facts(self, exercise: str | None) -> str:
        if not exercise:
            return "Which exercise do you want to know about?"
        name = self.vocabulary.display_name(exercise)
        targets = EXERCISE_TARGETS.get(exercise)
        if not targets:
            return f"The {name} is a solid accessory lift. Keep it controlled."
        return f"The {name} mainly works your {targets}."

    def help_text(self) -> str:
        return HELP_TEXT

    # ── Step prompts and confirmations ───────────────────────────

    def ask_for(self, slot: str, data: dict) -> str:
        exercise = data.get("exercise")
        name = self.vocabulary.display_name(exercise) if exercise else None
        if slot == "exercise":
            return "Which exercise did you do?"
        if slot == "reps":
            return f"How many reps of {name}?" if name else "How many reps?"
        if slot == "weight":
            return f"What weight for {name}?" if name else "What weight did you use?"
        if slot == "workout_type":
            return "What are we training today? Push, pull, legs or full body?"
        if slot == "form_exercise":
            return "Sure. Which exercise do you want form tips for?"
        return "Could you say that again?"

    def reprompt(self, slot: str, data: dict) -> str:
        label = "exercise" if slot == "exercise" else ("workout" if slot == "workout_type" else slot)
        return f"Sorry, I didn't catch the {label}. {self.ask_for(slot, data)}"

    def confirm_set(self, data: dict, set_number: int = 1, personal_best: bool = False) -> tuple[str, str]:
        """Confirmation text and emotion for a logged set."""
        name = self.vocabulary.display_name(data["exercise"])
        reps = _spoken_number(data.get("reps"))
        weight = data.get("weight")
        if not weight:
            summary = f"{name}, {reps} reps"
        else:
            summary = f"{name}, {reps} reps at {_spoken_number(weight)} {data.get('unit') or 'lbs'}"
        if data.get("sets"):
            summary = f"{summary}, {_spoken_number(data['sets'])} sets"
        if personal_best:
            return f"Logged {summary}. That's a new personal best!", "celebratory"
        comment = SET_COMMENTS[(set_number - 1) % len(SET_COMMENTS)]
        return f"Logged {summary}. {comment}", "encouraging"


def _spoken_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return f"{value:g}" if isinstance(value, float) else str(value)
