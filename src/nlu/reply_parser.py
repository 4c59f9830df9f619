"""Tolerant parsing of the reasoning backend's classification replies.

Models asked for "ONLY a JSON object" still wrap it in code fences, lead with
prose, leave trailing commas or stop before the closing brace. Everything here
raises ValueError when nothing usable can be recovered, and the classifier
treats that as a backend failure.
"""

import json
import re

_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z]*\s*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


def extract_json(text: str) -> dict:
    """Pull one JSON object out of free-form model output.

    Tries, in order: the whole text, the text between the first "{" and the
    last "}", and that slice after each repair (trailing commas, unbalanced
    braces, raw control characters inside strings, then combinations).

    Raises ValueError if no JSON object can be recovered.
    """
    if not text or not text.strip():
        raise ValueError("Empty reply")

    text = text.strip()
    if text.startswith("```"):
        text = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", text)).strip()

    parsed = _loads_object(text)
    if parsed is not None:
        return parsed

    first = text.find("{")
    if first == -1:
        raise ValueError(f"No JSON object in reply: {text[:200]!r}")
    last = text.rfind("}")
    candidate = text[first:last + 1] if last > first else text[first:]

    repairs = (
        lambda t: t,
        _strip_trailing_commas,
        _close_brackets,
        _escape_control_chars,
        lambda t: _escape_control_chars(_strip_trailing_commas(t)),
        lambda t: _escape_control_chars(_close_brackets(t)),
    )
    for repair in repairs:
        parsed = _loads_object(repair(candidate))
        if parsed is not None:
            return parsed

    raise ValueError(f"Could not recover JSON from reply: {text[:200]!r}")


def _loads_object(text: str) -> dict | None:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _strip_trailing_commas(text: str) -> str:
    return re.sub(r",\s*([}\]])", r"\1", text)


def _close_brackets(text: str) -> str:
    """Append whatever closers are missing, innermost first."""
    text = _strip_trailing_commas(text).rstrip()
    stack = []
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
        elif char == "\\" and in_string:
            escaped = True
        elif char == '"':
            in_string = not in_string
        elif not in_string and char in "{[":
            stack.append("}" if char == "{" else "]")
        elif not in_string and char in "}]" and stack:
            stack.pop()
    if in_string:
        text += '"'
    return _strip_trailing_commas(text + "".join(reversed(stack)))


def _escape_control_chars(text: str) -> str:
    """Escape raw newlines and tabs that appear inside string values."""
    out = []
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
        elif char == "\\" and in_string:
            escaped = True
        elif char == '"':
            in_string = not in_string
        elif in_string and char in "\n\r\t":
            out.append({"\n": "\\n", "\r": "\\r", "\t": "\\t"}[char])
            continue
        out.append(char)
    return "".join(out)
