import pytest

from tests.fixtures.feed_fixtures import FakeWebSocket


@pytest.fixture
def fake_ws() -> FakeWebSocket:
    """A fresh scripted WebSocket per test."""
    return FakeWebSocket()
