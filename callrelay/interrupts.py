from __future__ import annotations

from typing import Optional

from .session_store import Turn


def _find_heard_turn(conversation: list[Turn], heard_prefix: str) -> Optional[int]:
    for idx in range(len(conversation) - 1, -1, -1):
        turn = conversation[idx]
        if turn.role == "assistant" and heard_prefix in turn.content:
            return idx
    return None


def apply_interrupt(conversation: list[Turn], heard_prefix: str) -> bool:
    """
    Rewrite history so it matches what the callee actually heard before barging in.

    The most recent assistant turn containing `heard_prefix` is cut right after the prefix's
    first occurrence and every later assistant turn is dropped. User and system turns stay.
    Returns True when the conversation changed; applying the same prefix twice is a no-op.
    """
    if not heard_prefix:
        return False

    idx = _find_heard_turn(conversation, heard_prefix)
    if idx is None:
        return False

    changed = False
    turn = conversation[idx]
    cut = turn.content.index(heard_prefix) + len(heard_prefix)
    if cut < len(turn.content):
        turn.content = turn.content[:cut]
        changed = True

    kept = conversation[: idx + 1] + [t for t in conversation[idx + 1 :] if t.role != "assistant"]
    if len(kept) != len(conversation):
        conversation[:] = kept
        changed = True
    return changed
