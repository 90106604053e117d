"""Unit tests for the typed event emitter."""

from enum import Enum
from typing import Any

import pytest

from switchboard.events import EventEmitter


class Color(Enum):
    RED = "red"
    BLUE = "blue"


class Shape(Enum):
    SQUARE = "square"


def test_emit_delivers_to_subscribers() -> None:
    """Test listeners receive payloads of their kind only."""
    events: EventEmitter[Color] = EventEmitter(Color)
    red: list[Any] = []
    blue: list[Any] = []
    events.subscribe(Color.RED, red.append)
    events.subscribe(Color.BLUE, blue.append)

    events.emit(Color.RED, 1)

    assert red == [1]
    assert blue == []


def test_unsubscribe_callable() -> None:
    """Test the returned callable removes the listener."""
    events: EventEmitter[Color] = EventEmitter(Color)
    received: list[Any] = []
    unsubscribe = events.subscribe(Color.RED, received.append)

    unsubscribe()
    events.emit(Color.RED, 1)

    assert received == []
    assert events.listener_count(Color.RED) == 0


def test_unsubscribe_unknown_listener_is_noop() -> None:
    """Test removing a listener that was never added."""
    events: EventEmitter[Color] = EventEmitter(Color)
    events.unsubscribe(Color.RED, print)
    assert events.listener_count(Color.RED) == 0


def test_failing_listener_does_not_block_others() -> None:
    """Test a raising listener is logged and delivery continues."""
    events: EventEmitter[Color] = EventEmitter(Color)
    received: list[Any] = []

    def boom(payload: Any) -> None:
        raise RuntimeError("boom")

    events.subscribe(Color.RED, boom)
    events.subscribe(Color.RED, received.append)

    events.emit(Color.RED, "x")

    assert received == ["x"]


def test_rejects_foreign_kind() -> None:
    """Test kinds from another enum are rejected."""
    events: EventEmitter[Color] = EventEmitter(Color)

    with pytest.raises(TypeError):
        events.subscribe(Shape.SQUARE, print)  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        events.emit("red")  # type: ignore[arg-type]
