from __future__ import annotations

from callrelay.interrupts import apply_interrupt
from callrelay.session_store import Turn


def _conv(*pairs: tuple[str, str]) -> list[Turn]:
    return [Turn(role=r, content=c) for r, c in pairs]  # type: ignore[arg-type]


def test_truncates_latest_assistant_turn_and_drops_later_assistant_turns() -> None:
    conv = _conv(
        ("system", "sys"),
        ("assistant", "Great, your attendance is confirmed for the class."),
        ("user", "wait"),
        ("assistant", "Anything else?"),
    )
    assert apply_interrupt(conv, "Great, your attendance is") is True
    assert [(t.role, t.content) for t in conv] == [
        ("system", "sys"),
        ("assistant", "Great, your attendance is"),
        ("user", "wait"),
    ]


def test_applying_same_prefix_twice_matches_once() -> None:
    conv = _conv(("system", "sys"), ("assistant", "Hello Priya, I'm calling about your class."))
    assert apply_interrupt(conv, "Hello Priya") is True
    once = [(t.role, t.content) for t in conv]
    assert apply_interrupt(conv, "Hello Priya") is False
    assert [(t.role, t.content) for t in conv] == once


def test_prefers_most_recent_matching_turn() -> None:
    conv = _conv(("assistant", "Hi there, welcome."), ("user", "hi"), ("assistant", "Hi there, one more thing."))
    apply_interrupt(conv, "Hi there")
    assert conv[0].content == "Hi there, welcome."
    assert conv[2].content == "Hi there"


def test_no_match_or_empty_prefix_leaves_conversation_unchanged() -> None:
    conv = _conv(("system", "sys"), ("user", "Great, your"), ("assistant", "Sure thing."))
    assert apply_interrupt(conv, "Great, your") is False
    assert apply_interrupt(conv, "") is False
    assert [t.content for t in conv] == ["sys", "Great, your", "Sure thing."]
