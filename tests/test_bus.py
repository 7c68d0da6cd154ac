"""Tests for the message bus and context relay."""

import asyncio
import logging

import pytest

from wallet_selector import bus as channels
from wallet_selector.bus import ContextRelay, MessageBus
from wallet_selector.messages import CredentialRequestMessage, ProtocolsQuery
from wallet_selector.models import CredentialRequest


class TestMessageBus:
    """Tests for MessageBus."""

    @pytest.mark.asyncio
    async def test_ordered_delivery(self):
        """Messages on one channel arrive in publish order."""
        bus = MessageBus()
        received = []
        bus.subscribe("c", received.append)

        for i in range(5):
            bus.publish("c", i)
        await bus.drain()
        await bus.close()

        assert received == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_async_handler(self):
        bus = MessageBus()
        received = []

        async def handler(message):
            await asyncio.sleep(0)
            received.append(message)

        bus.subscribe("c", handler)
        bus.publish("c", "hello")
        await bus.drain()
        await bus.close()

        assert received == ["hello"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_channel(self, caplog):
        """A handler error is logged and delivery continues."""
        bus = MessageBus()
        received = []

        def broken(message):
            raise RuntimeError("boom")

        bus.subscribe("c", broken)
        bus.subscribe("c", received.append)

        with caplog.at_level(logging.ERROR, logger="wallet_selector"):
            bus.publish("c", 1)
            bus.publish("c", 2)
            await bus.drain()
        await bus.close()

        assert received == [1, 2]
        assert "failed on channel c" in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = MessageBus()
        received = []
        unsubscribe = bus.subscribe("c", received.append)

        bus.publish("c", 1)
        await bus.drain()
        unsubscribe()
        bus.publish("c", 2)
        await bus.drain()
        await bus.close()

        assert received == [1]

    @pytest.mark.asyncio
    async def test_drain_follows_chained_publishes(self):
        """drain() waits for messages published by handlers."""
        bus = MessageBus()
        received = []
        bus.subscribe("b", lambda m: bus.publish("a", m + 1))
        bus.subscribe("a", received.append)

        bus.publish("b", 1)
        await bus.drain()
        await bus.close()

        assert received == [2]

    @pytest.mark.asyncio
    async def test_publish_after_close(self):
        bus = MessageBus()
        await bus.close()

        with pytest.raises(RuntimeError, match="closed"):
            bus.publish("c", 1)


class TestContextRelay:
    """Tests for ContextRelay."""

    @pytest.mark.asyncio
    async def test_forwards_and_stamps_origin(self):
        """Requests reach the orchestrator stamped with the page origin."""
        bus = MessageBus()
        relay = ContextRelay(bus, origin="https://rp.example.com")
        relay.start()
        received = []
        bus.subscribe(channels.REQUEST, received.append)

        bus.publish(channels.PAGE_REQUEST, CredentialRequestMessage(
            exchange_id="x1",
            origin="",
            requests=(CredentialRequest(protocol_id="openid4vp", raw_data={}),),
        ))
        await bus.drain()
        await bus.close()

        assert received[0].origin == "https://rp.example.com"
        assert received[0].requests[0].origin == "https://rp.example.com"

    @pytest.mark.asyncio
    async def test_routes_both_directions(self):
        bus = MessageBus()
        relay = ContextRelay(bus)
        relay.start()
        to_orchestrator, to_page = [], []
        bus.subscribe(channels.PROTOCOLS_QUERY, to_orchestrator.append)
        bus.subscribe(channels.PAGE_RESPONSE, to_page.append)

        bus.publish(channels.PAGE_PROTOCOLS_QUERY, ProtocolsQuery(query_id="q1"))
        bus.publish(channels.RESULT, "result")
        await bus.drain()
        await bus.close()

        assert to_orchestrator == [ProtocolsQuery(query_id="q1")]
        assert to_page == ["result"]

    @pytest.mark.asyncio
    async def test_stop(self):
        bus = MessageBus()
        relay = ContextRelay(bus)
        relay.start()
        relay.stop()
        received = []
        bus.subscribe(channels.REQUEST, received.append)

        bus.publish(channels.PAGE_REQUEST, "ignored")
        await bus.drain()
        await bus.close()

        assert received == []
