"""Prompts for the voice coach: intent classification and spoken replies."""

import json

INTENT_LABELS = [
    "log_exercise",
    "quick_log",
    "ask_ai",
    "motivation",
    "form_analysis",
    "nutrition",
    "workout_control",
    "rest_timer",
    "next_exercise",
    "previous_exercise",
    "exercise_info",
    "help",
]

INTENT_DESCRIPTIONS = {
    "log_exercise": 'records a completed set ("did bench 8 reps at 185", "log squats")',
    "quick_log": 'records a set of the exercise already in progress ("8 reps", "another 10")',
    "ask_ai": 'a general fitness question ("how do I get stronger?")',
    "motivation": 'wants encouragement or is struggling ("I am so tired", "pump me up")',
    "form_analysis": 'asks about technique or form ("is my squat form right?")',
    "nutrition": 'asks about food, protein, diet or hydration',
    "workout_control": 'starts, pauses or ends a workout ("start leg day", "I am done")',
    "rest_timer": 'starts or asks about a rest period ("rest 90 seconds")',
    "next_exercise": 'moves on to the next exercise',
    "previous_exercise": 'goes back to the previous exercise',
    "exercise_info": 'asks what an exercise is or which muscles it works',
    "help": 'asks what the assistant can do',
}

CLASSIFICATION_SYSTEM_PROMPT = """\
You interpret short spoken commands given to a gym workout tracker during a workout.
The text comes from speech recognition: expect missing words, homophones and numbers spelled out.
You never chat. You only classify."""

CLASSIFICATION_PROMPT = """\
Classify the user's utterance into exactly ONE intent.

Intents:
{intents}

Utterance (normalized): "{transcript}"
Current exercise: {current_exercise}
Previous intent: {previous_intent}
Locally extracted entities: {entities}

Notes:
- If the utterance is only a number or "N reps" and there is a current exercise, it is usually quick_log.
- Use the locally extracted entities as hints; correct them if they are clearly wrong.

You MUST respond with ONLY a valid JSON object:
{{"intent": "<intent>", "confidence": <0.0-1.0>, "exercise": "<exercise name or null>", "reps": <number or null>, "weight": <number or null>, "unit": "<lbs or kg or null>", "alternatives": [{{"intent": "<intent>", "confidence": <0.0-1.0>, "reason": "<short>"}}], "note": "<one short sentence on how you read it>"}}
"""

RESPONSE_SYSTEM_PROMPT = """\
You are a voice workout coach speaking through earbuds while the user lifts.
Replies are read aloud: one or two short sentences, no lists, no markdown, no emojis.
Never invent numbers the user did not say."""

RESPONSE_PROMPT = """\
The user said: "{transcript}"
Topic: {topic}
Tone: {tone}
{memory}
Reply in at most {max_sentences} sentences.{extra}"""

TONE_BY_STYLE = {
    "casual": "friendly and relaxed",
    "technical": "precise, use correct exercise terminology",
    "motivational": "energetic and encouraging",
}

TONE_BY_MOOD = {
    "struggling": "gentle and reassuring",
    "motivated": "high energy, match their excitement",
    "positive": "upbeat",
}


def build_classification_prompt(
    transcript: str,
    current_exercise: str | None = None,
    previous_intent: str | None = None,
    entities: list[dict] | None = None,
) -> str:
    """Assemble the classification request for one turn."""
    intents = "\n".join(f"- {label}: {INTENT_DESCRIPTIONS[label]}" for label in INTENT_LABELS)
    return CLASSIFICATION_PROMPT.format(
        intents=intents,
        transcript=transcript[:500],
        current_exercise=current_exercise or "none",
        previous_intent=previous_intent or "none",
        entities=json.dumps(entities or []),
    )


def build_response_prompt(
    transcript: str,
    topic: str,
    style: str = "casual",
    mood: str = "neutral",
    memory_summary: str = "",
    extra: str = "",
    max_sentences: int = 2,
) -> str:
    """Assemble a reply request; tone comes from the user's style and mood."""
    tone = TONE_BY_MOOD.get(mood) or TONE_BY_STYLE.get(style, TONE_BY_STYLE["casual"])
    memory = f"What you know about this user: {memory_summary}" if memory_summary else ""
    return RESPONSE_PROMPT.format(
        transcript=transcript[:500],
        topic=topic,
        tone=tone,
        memory=memory,
        max_sentences=max_sentences,
        extra=f"\n{extra}" if extra else "",
    )
