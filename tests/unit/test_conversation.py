"""Unit tests for the conversation state machine.

Tests window binding, signaling buffering, relay isolation between peers and
conversation teardown.
"""

import logging

import pytest

from switchboard.conversation import (
    VALID_TRANSITIONS,
    Conversation,
    ConversationManager,
    ConversationState,
)
from switchboard.payloads import Answer, Hangup, IceCandidate, Offer, OfferBody
from tests.helpers.fakes import FakePort


def make_offer(peer: str = "bob") -> Offer:
    return Offer(peer=peer, offer=OfferBody(sdp="v=0", type="offer"))


class TestConversation:
    """Test a single conversation."""

    def test_initial_state(self) -> None:
        """Test a new conversation waits for a window."""
        conversation = Conversation(peer="bob")

        assert conversation.state == ConversationState.PENDING
        assert conversation.port is None
        assert not conversation.is_ended

    def test_invalid_transition_raises(self) -> None:
        """Test PENDING cannot jump to ACTIVE."""
        conversation = Conversation(peer="bob")

        with pytest.raises(ValueError, match="Invalid conversation transition"):
            conversation.transition_state(ConversationState.ACTIVE)

    def test_ended_is_terminal(self) -> None:
        """Test nothing leaves ENDED."""
        assert VALID_TRANSITIONS[ConversationState.ENDED] == set()

    def test_window_opened_pushes_identity(self) -> None:
        """Test the window receives user-nick then conversation-open."""
        conversation = Conversation(peer="bob")
        window = FakePort("win")

        conversation.window_opened(window, "alice")

        assert conversation.state == ConversationState.BOUND
        assert window.events == [
            ("user-nick", {"nick": "alice"}),
            ("conversation-open", {"peer": "bob", "incoming": False}),
        ]

    def test_buffered_signaling_flushed_on_bind(self) -> None:
        """Test an offer and candidates received early reach the window in order."""
        conversation = Conversation(peer="bob", incoming=True)

        assert not conversation.deliver("call-offer", make_offer())
        assert not conversation.deliver("ice-candidate", IceCandidate(peer="bob", candidate="c1"))
        assert not conversation.deliver("ice-candidate", IceCandidate(peer="bob", candidate="c2"))

        window = FakePort("win")
        conversation.window_opened(window, "alice")

        assert window.topics() == [
            "user-nick",
            "conversation-open",
            "call-offer",
            "ice-candidate",
            "ice-candidate",
        ]
        assert window.data_for("ice-candidate") == [
            {"peer": "bob", "candidate": "c1"},
            {"peer": "bob", "candidate": "c2"},
        ]
        assert conversation.pending_offer is None
        assert conversation.pending_candidates == []

    def test_unbound_answer_is_dropped(self) -> None:
        """Test payloads other than offers and candidates are not buffered."""
        conversation = Conversation(peer="bob")

        assert not conversation.deliver("call-answer", Answer(peer="bob", answer={}))

        window = FakePort("win")
        conversation.window_opened(window, "alice")
        assert "call-answer" not in window.topics()

    def test_activate_from_bound(self) -> None:
        """Test an observed answer activates a bound conversation."""
        conversation = Conversation(peer="bob")
        conversation.window_opened(FakePort("win"), "alice")

        conversation.activate()

        assert conversation.state == ConversationState.ACTIVE

    def test_activate_while_pending_is_ignored(self) -> None:
        """Test an answer before binding leaves the state unchanged."""
        conversation = Conversation(peer="bob")
        conversation.activate()
        assert conversation.state == ConversationState.PENDING

    def test_summary(self) -> None:
        """Test the summary reports peer, state and port."""
        conversation = Conversation(peer="bob")
        conversation.window_opened(FakePort("win"), "alice")

        summary = conversation.summary()

        assert summary["peer"] == "bob"
        assert summary["state"] == "bound"
        assert summary["port_id"] == "win"
        assert summary["age_s"] >= 0


class TestConversationManager:
    """Test the peer-keyed conversation map."""

    def test_open_replaces_existing(self) -> None:
        """Test opening twice for one peer replaces, not merges."""
        manager = ConversationManager()
        first = manager.open("bob")
        second = manager.open("bob")

        assert manager.get("bob") is second
        assert first.is_ended
        assert len(manager) == 1

    def test_bind_window_selects_peer(self) -> None:
        """Test a named peer's conversation is bound."""
        manager = ConversationManager()
        manager.open("bob")
        carol = manager.open("carol")
        window = FakePort("win")

        assert manager.bind_window(window, "alice", peer="carol") is carol
        assert carol.port is window
        assert manager.get("bob").state == ConversationState.PENDING  # type: ignore[union-attr]

    def test_bind_window_defaults_to_oldest_pending(self) -> None:
        """Test an unnamed window binds the oldest pending conversation."""
        manager = ConversationManager()
        bob = manager.open("bob")
        manager.open("carol")

        assert manager.bind_window(FakePort("win"), "alice") is bob

    def test_bind_window_without_pending(self) -> None:
        """Test a window with nothing to bind is ignored."""
        manager = ConversationManager()
        window = FakePort("win")

        assert manager.bind_window(window, "alice") is None
        assert window.events == []

    def test_bind_to_closed_window_ends_conversation(self) -> None:
        """Test binding to a window that already closed drops the conversation."""
        manager = ConversationManager()
        manager.open("bob")
        window = FakePort("win")
        window.kill()

        assert manager.bind_window(window, "alice") is None
        assert "bob" not in manager

    def test_relay_isolation(self) -> None:
        """Test signaling for one peer never reaches another peer's window."""
        manager = ConversationManager()
        manager.open("bob")
        manager.open("carol")
        bob_window, carol_window = FakePort("bob-win"), FakePort("carol-win")
        manager.bind_window(bob_window, "alice", peer="bob")
        manager.bind_window(carol_window, "alice", peer="carol")

        manager.get("bob").deliver("call-offer", make_offer("bob"))  # type: ignore[union-attr]

        assert "call-offer" in bob_window.topics()
        assert "call-offer" not in carol_window.topics()

    def test_release_port(self) -> None:
        """Test closing a window ends only the conversations bound to it."""
        manager = ConversationManager()
        manager.open("bob")
        manager.open("carol")
        window = FakePort("win")
        manager.bind_window(window, "alice", peer="bob")

        released = manager.release_port(window)

        assert [c.peer for c in released] == ["bob"]
        assert "bob" not in manager
        assert "carol" in manager

    def test_end(self) -> None:
        """Test end removes the conversation."""
        manager = ConversationManager()
        conversation = manager.open("bob")

        assert manager.end("bob") is conversation
        assert conversation.is_ended
        assert manager.end("bob") is None

    def test_clear_notifies_bound_windows(self) -> None:
        """Test clear hangs up every bound window."""
        manager = ConversationManager()
        manager.open("bob")
        manager.open("carol")
        window = FakePort("win")
        manager.bind_window(window, "alice", peer="bob")

        manager.clear(notify=True)

        assert len(manager) == 0
        assert window.events[-1] == ("call-hangup", {"peer": "bob"})

    def test_clear_tolerates_closed_window(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test a dead window does not stop clearing and is logged."""
        manager = ConversationManager()
        manager.open("bob")
        window = FakePort("win")
        manager.bind_window(window, "alice")
        window.kill()

        with caplog.at_level(logging.DEBUG, logger="switchboard.conversation"):
            manager.clear(notify=True)

        assert len(manager) == 0
        assert "Chat window already closed" in caplog.messages

    def test_hangup_then_fresh_conversation(self) -> None:
        """Test a new conversation after hangup starts clean."""
        manager = ConversationManager()
        manager.open("bob")
        manager.bind_window(FakePort("win-1"), "alice")
        manager.get("bob").deliver("call-hangup", Hangup(peer="bob"))  # type: ignore[union-attr]
        manager.end("bob")

        fresh = manager.open("bob")

        assert fresh.state == ConversationState.PENDING
        assert fresh.port is None
        assert fresh.pending_offer is None
