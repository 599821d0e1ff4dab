"""Transport tests."""

import pytest

from opscrew.events import AgentEvent, EventType
from opscrew.transports import get_transport
from opscrew.transports.inmemory import InMemoryTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()

    event = AgentEvent(
        type=EventType.EXECUTION_COMPLETED,
        agent_id="agent-intake",
        execution_id="exec-123",
        data={"confidence": 0.9},
    )
    await transport.publish("opscrew.agent", event)

    received = False
    async for raw, received_event in transport.subscribe("opscrew.agent", lifespan=1):
        assert isinstance(raw, str)
        assert received_event.execution_id == "exec-123"
        assert received_event.data["confidence"] == 0.9
        received = True
        break

    assert received
    assert transport.pending("opscrew.agent") == []


@pytest.mark.asyncio
async def test_inmemory_subscribe_stops_after_lifespan():
    transport = InMemoryTransport()
    messages = [m async for m in transport.subscribe("empty", lifespan=0.05)]
    assert messages == []


def test_get_transport_backends():
    assert get_transport("none") is None
    assert isinstance(get_transport("inmemory"), InMemoryTransport)
    with pytest.raises(ValueError):
        get_transport("carrier-pigeon")


def test_get_transport_env_override(monkeypatch):
    monkeypatch.setenv("OPSCREW_TRANSPORT", "inmemory")
    assert isinstance(get_transport(), InMemoryTransport)


@pytest.mark.asyncio
async def test_redis_transport_import():
    """Test Redis transport can be imported (even if redis not available)."""
    try:
        from opscrew.transports.redis import RedisTransport

        try:
            transport = RedisTransport()
            assert transport.host == "localhost"
            assert transport.port == 6379
            assert transport.queue_name("opscrew.agent") == "opscrew:opscrew.agent"
        except ImportError:
            pass
    except ImportError:
        pytest.fail("RedisTransport should be importable")
