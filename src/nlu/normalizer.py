"""Transcript normalization: the first stage of every voice turn.

Speech recognizers hand back text like "Um, I did Squats 10 times @ 225lbs."
This module turns that into "i did squat 10 reps at 225 lbs" so that the
extractor and classifier only ever see one spelling of each exercise, unit and
rep word.
"""

import re
import weakref

from src.nlu.vocabulary import (
    CONTRACTIONS,
    DEFAULT_VOCABULARY,
    FILLER_PHRASES,
    REP_SYNONYMS,
    Vocabulary,
)

_SPACE_RE = re.compile(r"\s+")
# Decimal points survive only between two digits
_PUNCT_RE = re.compile(r"(?<!\d)\.|\.(?!\d)|[^\w\s.]")
_GLUED_UNIT_RE = re.compile(r"(\d)([a-z])")
_CONTRACTION_RE = re.compile(
    r"\b(" + "|".join(re.escape(c) for c in sorted(CONTRACTIONS, key=len, reverse=True)) + r")(?!\w)"
)
_FILLER_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(f) for f in sorted(FILLER_PHRASES, key=len, reverse=True)) + r")\b"
)
_REP_RE = re.compile(r"\b(?:" + "|".join(REP_SYNONYMS) + r")\b")

_compiled = weakref.WeakKeyDictionary()


def _patterns_for(vocab: Vocabulary) -> tuple[re.Pattern, re.Pattern]:
    """Alias and unit regexes, compiled once per vocabulary."""
    if vocab not in _compiled:
        alias_re = re.compile(
            r"\b(" + "|".join(re.escape(a) for a in vocab.aliases_by_length) + r")\b"
        )
        unit_re = re.compile(
            r"\b(" + "|".join(re.escape(u) for u in vocab.unit_words) + r")\b"
        )
        _compiled[vocab] = (alias_re, unit_re)
    return _compiled[vocab]


def normalize_transcript(text: str, vocab: Vocabulary = DEFAULT_VOCABULARY) -> str:
    """Return the canonical lower-case form of a raw transcript.

    Pure and total: empty or whitespace-only input gives "".
    """
    if not text or not text.strip():
        return ""

    alias_re, unit_re = _patterns_for(vocab)

    out = text.lower().replace("’", "'")
    out = _CONTRACTION_RE.sub(lambda m: CONTRACTIONS[m.group(1)], out)
    out = out.replace("@", " at ")
    out = _GLUED_UNIT_RE.sub(r"\1 \2", out)
    out = _PUNCT_RE.sub(" ", out)
    out = _SPACE_RE.sub(" ", out).strip()

    out = _FILLER_RE.sub(" ", out)
    out = unit_re.sub(lambda m: vocab.canonical_unit(m.group(1)) or m.group(1), out)
    out = _REP_RE.sub("reps", out)
    out = alias_re.sub(lambda m: vocab.display_name(vocab.exercise_for_alias(m.group(1))), out)

    return _SPACE_RE.sub(" ", out).strip()
