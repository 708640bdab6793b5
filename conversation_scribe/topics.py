"""Keyword-based topic tagging for conversation segments."""

import re
from dataclasses import dataclass

DEFAULT_TOPIC = "General"
OPTIONS_TOPIC = "Options"
MIN_SCORE = 2


@dataclass(frozen=True)
class TopicRule:
    label: str
    keywords: tuple[str, ...]

    def score(self, text: str) -> int:
        return sum(1 for pattern in _compiled(self.keywords) if pattern.search(text))


_PATTERN_CACHE: dict[tuple[str, ...], tuple[re.Pattern, ...]] = {}


def _compiled(keywords: tuple[str, ...]) -> tuple[re.Pattern, ...]:
    patterns = _PATTERN_CACHE.get(keywords)
    if patterns is None:
        patterns = tuple(re.compile(r"\b" + re.escape(kw) + r"\b") for kw in keywords)
        _PATTERN_CACHE[keywords] = patterns
    return patterns


# Order matters: the first rule reaching MIN_SCORE wins.
TOPIC_RULES: tuple[TopicRule, ...] = (
    TopicRule(
        "Trade Alert",
        ("buy", "buying", "bought", "sell", "selling", "sold", "entry", "long", "short", "shares", "position", "adding", "trim"),
    ),
    TopicRule(
        OPTIONS_TOPIC,
        ("call", "calls", "put", "puts", "strike", "expiry", "expiration", "premium", "contracts", "options", "weeklies"),
    ),
    TopicRule(
        "Earnings",
        ("earnings", "revenue", "guidance", "eps", "quarter", "report", "beat", "miss", "estimates"),
    ),
    TopicRule(
        "Technical Analysis",
        ("support", "resistance", "breakout", "breakdown", "chart", "moving average", "vwap", "trend", "pattern", "level"),
    ),
    TopicRule(
        "Risk Management",
        ("risk", "stop loss", "stop", "sizing", "size", "hedge", "exposure", "drawdown", "loss"),
    ),
    TopicRule(
        "Market Overview",
        ("market", "futures", "spy", "qqq", "nasdaq", "dow", "index", "sector", "fed", "rates", "inflation"),
    ),
)

_NUMBER = re.compile(r"\b\d+(?:\.\d+)?\b")
_OPTION_WORD = re.compile(r"\b(?:calls?|puts?|strikes?)\b")


def classify_topic(text: str, rules: tuple[TopicRule, ...] = TOPIC_RULES) -> str:
    """Return the topic label for ``text``.

    The first rule matching at least two of its keywords wins. Failing that,
    a number mentioned together with an option keyword ("the 450 calls")
    counts as options talk. Everything else is tagged DEFAULT_TOPIC.
    """
    lowered = text.lower()
    for rule in rules:
        if rule.score(lowered) >= MIN_SCORE:
            return rule.label

    if _NUMBER.search(lowered) and _OPTION_WORD.search(lowered):
        return OPTIONS_TOPIC

    return DEFAULT_TOPIC
