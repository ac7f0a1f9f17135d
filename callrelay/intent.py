from __future__ import annotations

import math
import re

# Caller phrases that mean the caller is leaving.
_USER_END_PHRASES = ("goodbye", "bye", "have a good day")

# Assistant end intent needs both a sign-off near the very end and a wrap-up question.
_AI_END_PHRASES = ("goodbye", "good bye", "have a great day", "take care")
_AI_COMPLETION_QUESTIONS = ("anything else", "is that all", "does that help")
_END_PHRASE_TAIL_CHARS = 10

_WORD_SPLIT = re.compile(r"\s+")


def should_end_call(utterance: str) -> bool:
    text = (utterance or "").lower()
    return any(p in text for p in _USER_END_PHRASES)


def should_ai_end_call(text: str) -> bool:
    lowered = (text or "").lower()
    if not lowered:
        return False

    def _near_end(phrase: str) -> bool:
        idx = lowered.rfind(phrase)
        return idx >= 0 and idx >= len(lowered) - len(phrase) - _END_PHRASE_TAIL_CHARS

    has_end_phrase = any(_near_end(p) for p in _AI_END_PHRASES)
    if not has_end_phrase:
        return False
    return any(f"{q}?" in lowered for q in _AI_COMPLETION_QUESTIONS)


def count_words(text: str) -> int:
    return len([w for w in _WORD_SPLIT.split((text or "").strip()) if w])


def estimate_speaking_ms(text: str, *, words_per_minute: int = 150, floor_ms: int = 4000) -> int:
    """Time the callee needs to hear `text`, never less than floor_ms."""
    words = count_words(text)
    spoken = int(math.ceil(words / max(1, words_per_minute) * 60_000))
    return max(spoken, int(floor_ms))
