import sys
import pathlib

import pytest

sys.path.append(str(pathlib.Path(__file__).parent))
root_dir = pathlib.Path(__file__).resolve().parents[1]
# Ensure the src package is importable
sys.path.append(str(root_dir / "src"))

from fixtures.ws import ConnectFactory, _sleep  # noqa: E402


@pytest.fixture
def sleeps(monkeypatch):
    """Record reconnect and grace sleeps instead of waiting for them."""
    calls: list[float] = []

    async def fake_sleep(t):
        calls.append(t)
        await _sleep(0)

    monkeypatch.setattr("tickflow.connection.manager.asyncio.sleep", fake_sleep)
    return calls


@pytest.fixture
def connect(monkeypatch):
    """Patch ``websockets.connect``; call ``connect.items.extend(...)`` to queue sockets."""
    factory = ConnectFactory()
    monkeypatch.setattr("websockets.connect", factory)
    return factory
