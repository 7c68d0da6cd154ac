"""
In-process message bus connecting the isolated execution contexts.

Each named channel has its own queue and pump task, so delivery is ordered
within a channel and independent across channels. Handlers may be plain
functions or coroutines.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
from typing import Any, Awaitable, Callable, Union

from wallet_selector.messages import CredentialRequestMessage

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Awaitable[None], None]]

# Page side
PAGE_REQUEST = "page.credentials.request"
PAGE_RESPONSE = "page.credentials.response"
PAGE_PROTOCOLS_QUERY = "page.protocols.query"
PAGE_PROTOCOLS_REPLY = "page.protocols.reply"

# Orchestrator side
REQUEST = "orchestrator.credentials.request"
RESULT = "orchestrator.credentials.result"
PROTOCOLS_QUERY = "orchestrator.protocols.query"
PROTOCOLS_REPLY = "orchestrator.protocols.reply"

# Collaborators
SELECTOR_SHOW = "selector.show"
SELECTOR_RESULT = "selector.result"
WALLET_INVOKE = "wallet.invoke"
WALLET_RESPONSE = "wallet.response"


class _Channel:
    def __init__(self, name: str) -> None:
        self.name = name
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.handlers: list[Handler] = []
        self.task: asyncio.Task[None] | None = None


class MessageBus:
    """Named publish/subscribe channels.

    Example:
        >>> bus = MessageBus()
        >>> bus.subscribe(RESULT, print)
        >>> bus.publish(RESULT, result)  # inside a running event loop
    """

    def __init__(self) -> None:
        self._channels: dict[str, _Channel] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _channel(self, name: str) -> _Channel:
        channel = self._channels.get(name)
        if channel is None:
            channel = _Channel(name)
            self._channels[name] = channel
        return channel

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to a channel. Returns a function that unsubscribes."""
        channel = self._channel(name)
        channel.handlers.append(handler)

        def unsubscribe() -> None:
            if handler in channel.handlers:
                channel.handlers.remove(handler)

        return unsubscribe

    def publish(self, name: str, message: Any) -> None:
        """Queue a message for delivery. Must be called from the event loop.

        Raises:
            RuntimeError: If the bus has been closed.
        """
        if self._closed:
            raise RuntimeError("Message bus is closed")

        channel = self._channel(name)
        channel.queue.put_nowait(message)
        if channel.task is None or channel.task.done():
            channel.task = asyncio.get_running_loop().create_task(
                self._pump(channel), name=f"bus:{name}"
            )

    async def _pump(self, channel: _Channel) -> None:
        while True:
            message = await channel.queue.get()
            try:
                for handler in list(channel.handlers):
                    try:
                        result = handler(message)
                        if inspect.isawaitable(result):
                            await result
                    except Exception:
                        logger.exception(
                            "Handler %r failed on channel %s", handler, channel.name
                        )
            finally:
                channel.queue.task_done()

    async def drain(self) -> None:
        """Wait until every channel has delivered all queued messages."""
        while True:
            for channel in list(self._channels.values()):
                await channel.queue.join()
            # Handlers may have published to channels already joined
            if all(c.queue.empty() for c in self._channels.values()):
                return

    async def close(self) -> None:
        """Stop all pump tasks. Undelivered messages are dropped."""
        self._closed = True
        tasks = [c.task for c in self._channels.values() if c.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class ContextRelay:
    """Bridges page-side channels to the orchestrator and back.

    Outgoing credential requests are stamped with the page origin when the
    page did not supply one.

    Args:
        bus: Message bus shared by both sides.
        origin: Origin of the page this relay serves.
    """

    _ROUTES = (
        (PAGE_REQUEST, REQUEST),
        (PAGE_PROTOCOLS_QUERY, PROTOCOLS_QUERY),
        (RESULT, PAGE_RESPONSE),
        (PROTOCOLS_REPLY, PAGE_PROTOCOLS_REPLY),
    )

    def __init__(self, bus: MessageBus, origin: str = "") -> None:
        self.bus = bus
        self.origin = origin
        self._unsubscribe: list[Callable[[], None]] = []

    def start(self) -> None:
        for source, target in self._ROUTES:
            self._unsubscribe.append(
                self.bus.subscribe(source, self._forwarder(target))
            )

    def stop(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def _forwarder(self, target: str) -> Handler:
        def forward(message: Any) -> None:
            if isinstance(message, CredentialRequestMessage):
                message = self._stamp_origin(message)
            self.bus.publish(target, message)

        return forward

    def _stamp_origin(self, message: CredentialRequestMessage) -> CredentialRequestMessage:
        if message.origin or not self.origin:
            return message
        requests = tuple(
            r if r.origin else dataclasses.replace(r, origin=self.origin)
            for r in message.requests
        )
        return dataclasses.replace(message, origin=self.origin, requests=requests)
