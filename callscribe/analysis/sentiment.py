"""Keyword sentiment for committed transcript segments.

Cheap enough to run on every final segment inline; a segment is positive
or negative only when its keyword score beats the other side by 1.5x.
"""

from __future__ import annotations

import re

POSITIVE_WORDS: tuple[str, ...] = (
    "great", "excellent", "good", "happy", "pleased", "satisfied",
    "thank", "appreciate", "wonderful", "perfect", "love", "awesome",
    "fantastic", "amazing", "best", "helpful", "excited",
)

NEGATIVE_WORDS: tuple[str, ...] = (
    "bad", "poor", "unhappy", "disappointed", "frustrated", "angry",
    "problem", "issue", "terrible", "awful", "worst", "hate", "annoyed",
    "unacceptable", "difficult", "confused", "upset",
)

_DOMINANCE = 1.5
_WORD_SPLIT = re.compile(r"\s+")


def analyze_sentiment(text: str) -> str:
    """Return ``"positive"``, ``"negative"`` or ``"neutral"`` for *text*."""
    if not text or not text.strip():
        return "neutral"

    positive = 0
    negative = 0
    for word in _WORD_SPLIT.split(text.lower()):
        if any(kw in word for kw in POSITIVE_WORDS):
            positive += 1
        if any(kw in word for kw in NEGATIVE_WORDS):
            negative += 1

    if positive > negative * _DOMINANCE:
        return "positive"
    if negative > positive * _DOMINANCE:
        return "negative"
    return "neutral"
