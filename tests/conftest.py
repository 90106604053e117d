"""Shared test fixtures.

Provides:
- context / router fixtures wired to a scripted SPA backend
- Sample SPA spec and offer builders
"""

from collections.abc import Callable
from typing import Any

import pytest

from switchboard.context import WorkerContext
from switchboard.router import Router
from tests.helpers.fakes import FakeBackendFactory


@pytest.fixture
def backend_factory() -> FakeBackendFactory:
    return FakeBackendFactory()


@pytest.fixture
def context(backend_factory: FakeBackendFactory) -> WorkerContext:
    return WorkerContext(backend_factory=backend_factory)


@pytest.fixture
def router(context: WorkerContext) -> Router:
    return Router(context)


@pytest.fixture
def spa_spec() -> dict[str, Any]:
    return {
        "name": "TalkillaSPA",
        "src": "ws://spa.example.test/signal",
        "credentials": {"email": "alice@example.com"},
    }


def _offer(peer: str = "bob", sdp: str = "v=0") -> dict[str, Any]:
    return {"peer": peer, "offer": {"sdp": sdp, "type": "offer"}}


@pytest.fixture
def make_offer() -> Callable[..., dict[str, Any]]:
    """Build a wire offer for ``peer``."""
    return _offer
