"""Post-processing for transcript fragment text.

Applied once per fragment, before the fragment is stitched into a segment.
"""

import logging
import re
from collections import Counter

logger = logging.getLogger(__name__)

_FILLER_PATTERN = re.compile(
    r"\b(?:u+m+|u+h+|uhm|e+r+m?|a+h+|h+m+|m{2,}|you know|i mean)\b,?",
    re.IGNORECASE,
)

_CONTRACTIONS = {
    "gonna": "going to",
    "wanna": "want to",
    "gotta": "got to",
    "kinda": "kind of",
    "sorta": "sort of",
    "lemme": "let me",
    "gimme": "give me",
    "dunno": "don't know",
    "outta": "out of",
    "y'all": "you all",
    "ya": "you",
    "cuz": "because",
    "'cause": "because",
}
_CONTRACTION_PATTERN = re.compile(
    r"(?<![\w'])(" + "|".join(re.escape(k) for k in _CONTRACTIONS) + r")(?![\w'])",
    re.IGNORECASE,
)

_REPEAT_PATTERN = re.compile(r"\b(\w+)(?:[\s,]+\1\b)+", re.IGNORECASE)
_MULTI_SPACE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([.,!?;:])")
_MISSING_SPACE_AFTER = re.compile(r"([.!?])(?=[A-Za-z])")
_SENTENCE_START = re.compile(r"(^|[.!?]\s+)([a-z])")

DEGENERATE_MIN_WORDS = 10
DEGENERATE_RATIO = 0.7


def sanitize_repetition(text: str) -> str:
    """Collapse output where a single word dominates the whole fragment.

    Engines sometimes return the same word dozens of times for noisy or
    silent audio; such text is replaced with a short three-word rendition.
    """
    words = re.findall(r"\b\w+\b", text.lower())
    if len(words) <= DEGENERATE_MIN_WORDS:
        return text

    word, count = Counter(words).most_common(1)[0]
    if count / len(words) > DEGENERATE_RATIO:
        logger.warning("Sanitized highly repetitive text for word: %r", word)
        return f"{word}, {word}, {word}."
    return text


def remove_fillers(text: str) -> str:
    return _FILLER_PATTERN.sub("", text)


def normalize_contractions(text: str) -> str:
    def _replace(match: re.Match) -> str:
        original = match.group(1)
        replacement = _CONTRACTIONS[original.lower()]
        if original[0].isupper():
            replacement = replacement[0].upper() + replacement[1:]
        return replacement

    return _CONTRACTION_PATTERN.sub(_replace, text)


def collapse_repeats(text: str) -> str:
    """Turn "the the the" into "the"."""
    return _REPEAT_PATTERN.sub(r"\1", text)


def normalize_spacing(text: str) -> str:
    text = _MULTI_SPACE.sub(" ", text).strip()
    text = re.sub(r"\.{2,}", ".", text)
    text = re.sub(r",\s*,+", ",", text)
    text = _SPACE_BEFORE_PUNCT.sub(r"\1", text)
    text = _MISSING_SPACE_AFTER.sub(r"\1 ", text)
    text = re.sub(r"^[\s,;:]+", "", text)
    text = re.sub(r"\s*,\s*([.!?])", r"\1", text)
    return text.strip()


def normalize_casing(text: str) -> str:
    text = re.sub(r"\bi\b", "I", text)
    return _SENTENCE_START.sub(lambda m: m.group(1) + m.group(2).upper(), text)


def clean_text(text: str) -> str:
    """Run the full cleanup chain on raw engine text."""
    if not text:
        return ""
    text = sanitize_repetition(text)
    text = remove_fillers(text)
    text = normalize_contractions(text)
    text = collapse_repeats(text)
    text = normalize_spacing(text)
    text = normalize_casing(text)
    return text
