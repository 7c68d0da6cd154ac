"""
Page-side entry point for credential calls.

:class:`CredentialInterceptor` stands in for ``navigator.credentials.get``:
digital identity requests are handed to the orchestrator over the bus and
everything else goes to the native implementation.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Mapping, Union

from wallet_selector import bus as channels
from wallet_selector.bus import MessageBus
from wallet_selector.errors import ExchangeTimeoutError, WalletSelectorError, error_from_code
from wallet_selector.messages import (
    CredentialRequestMessage,
    ExchangeAbandoned,
    ProtocolsQuery,
    ProtocolsReply,
)
from wallet_selector.models import CredentialRequest, DigitalCredential, ExchangeResult

logger = logging.getLogger(__name__)

NativeGetter = Callable[[Any], Union[Awaitable[Any], Any]]

NATIVE_MEDIATION = ("optional", "required")


class _NativeFallback:
    """Returned by get() when the call belongs to the native API and none is wired in."""

    def __repr__(self) -> str:
        return "NATIVE_FALLBACK"


NATIVE_FALLBACK = _NativeFallback()


def is_digital_credential_request(options: Any) -> bool:
    """Whether credential options ask for a digital identity credential."""
    if not isinstance(options, Mapping):
        return False
    return (
        options.get("identity") is not None
        or options.get("digital") is not None
        or options.get("mediation") in NATIVE_MEDIATION
    )


def _new_id() -> str:
    return f"req-{uuid.uuid4().hex}"


class CredentialInterceptor:
    """
    Intercepts credential calls made by a page.

    Args:
        bus: Message bus shared with the relay.
        origin: Origin of the page.
        native_get: The platform's own credential getter, sync or async.
        native_allows_protocol: The platform's own protocol capability check.
        id_factory: Produces exchange and query ids. UUID4-based by default.
    """

    def __init__(
        self,
        bus: MessageBus,
        origin: str = "",
        native_get: NativeGetter | None = None,
        native_allows_protocol: Callable[[str], bool] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.bus = bus
        self.origin = origin
        self.native_get = native_get
        self.native_allows_protocol = native_allows_protocol
        self.supported_protocols: frozenset[str] | None = None
        self._new_id = id_factory or _new_id
        self._pending: dict[str, asyncio.Future[ExchangeResult]] = {}
        self._queries: dict[str, asyncio.Future[ProtocolsReply]] = {}
        self._unsubscribe: list[Callable[[], None]] = []

    def start(self) -> None:
        self._unsubscribe.append(self.bus.subscribe(channels.PAGE_RESPONSE, self._on_result))
        self._unsubscribe.append(
            self.bus.subscribe(channels.PAGE_PROTOCOLS_REPLY, self._on_protocols_reply)
        )

    def stop(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    async def get(self, options: Mapping[str, Any] | None = None, timeout: float | None = None) -> Any:
        """
        Get a credential.

        Args:
            options: Credential request options as passed by the page.
            timeout: Give up waiting for the orchestrator after this many seconds.

        Returns:
            A DigitalCredential when a wallet answered, otherwise whatever the
            native getter returns (NATIVE_FALLBACK without one).

        Raises:
            WalletSelectorError: The subclass matching the exchange's error code.
            ExchangeTimeoutError: If ``timeout`` elapses first.
        """
        if options is None or not is_digital_credential_request(options):
            logger.debug("Not a digital identity request, using native API")
            return await self._native(options)

        digital = options.get("digital") or {}
        raw_requests = digital.get("requests") if isinstance(digital, Mapping) else None
        if not raw_requests:
            logger.debug("No digital requests, using native API")
            return await self._native(options)

        requests = [
            CredentialRequest(
                protocol_id=str(entry.get("protocol", "")),
                raw_data=entry.get("data"),
                origin=self.origin,
            )
            for entry in raw_requests
            if isinstance(entry, Mapping)
        ]

        if self.supported_protocols is not None:
            skipped = [r.protocol_id for r in requests if r.protocol_id not in self.supported_protocols]
            if skipped:
                logger.info("No configured wallet supports %s", ", ".join(skipped))
            requests = [r for r in requests if r.protocol_id in self.supported_protocols]

        if not requests:
            return await self._native(options)

        exchange_id = self._new_id()
        future: asyncio.Future[ExchangeResult] = asyncio.get_running_loop().create_future()
        self._pending[exchange_id] = future
        logger.info("Intercepted credential request %s", exchange_id)

        try:
            self.bus.publish(channels.PAGE_REQUEST, CredentialRequestMessage(
                exchange_id=exchange_id,
                origin=self.origin,
                requests=tuple(requests),
            ))
            result = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            self._abandon(exchange_id, timed_out=True)
            raise ExchangeTimeoutError(f"No result for request {exchange_id}") from e
        except asyncio.CancelledError:
            self._abandon(exchange_id, timed_out=False)
            raise
        finally:
            self._pending.pop(exchange_id, None)

        return await self._deliver(result, options)

    def _abandon(self, exchange_id: str, timed_out: bool) -> None:
        # Shares the request channel so it cannot overtake the request
        if self.bus.closed:
            return
        logger.info(
            "Request %s abandoned (%s)", exchange_id, "timed out" if timed_out else "cancelled",
            extra={"exchange_id": exchange_id},
        )
        self.bus.publish(channels.PAGE_REQUEST, ExchangeAbandoned(
            exchange_id=exchange_id,
            timed_out=timed_out,
        ))

    async def _deliver(self, result: ExchangeResult, options: Any) -> Any:
        if result.use_native:
            return await self._native(options)
        if result.error is not None:
            raise error_from_code(result.error.code, result.error.message)
        if result.response is None:
            raise WalletSelectorError(f"Exchange {result.exchange_id} finished without a response")

        return DigitalCredential(
            id=f"credential-{uuid.uuid4().hex}",
            protocol=result.response.protocol,
            data=result.response.data,
        )

    async def _native(self, options: Any) -> Any:
        if self.native_get is None:
            return NATIVE_FALLBACK
        result = self.native_get(options)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _on_result(self, result: ExchangeResult) -> None:
        future = self._pending.get(result.exchange_id)
        if future is None or future.done():
            logger.debug("Ignoring result for unknown request %s", result.exchange_id)
            return
        future.set_result(result)

    async def refresh_protocols(self, timeout: float = 1.0) -> frozenset[str] | None:
        """Ask the orchestrator which protocols the configured wallets support.

        The answer is cached for get() and allows_protocol(). On timeout the
        cache is left as it was.
        """
        query_id = self._new_id()
        future: asyncio.Future[ProtocolsReply] = asyncio.get_running_loop().create_future()
        self._queries[query_id] = future

        try:
            self.bus.publish(channels.PAGE_PROTOCOLS_QUERY, ProtocolsQuery(query_id=query_id))
            reply = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning("Protocol query %s timed out", query_id)
            return self.supported_protocols
        finally:
            self._queries.pop(query_id, None)

        self.supported_protocols = frozenset(reply.protocols)
        logger.debug("Supported protocols: %s", sorted(self.supported_protocols))
        return self.supported_protocols

    def _on_protocols_reply(self, reply: ProtocolsReply) -> None:
        future = self._queries.get(reply.query_id)
        if future is None or future.done():
            logger.debug("Ignoring reply to unknown protocol query %s", reply.query_id)
            return
        future.set_result(reply)

    def allows_protocol(self, protocol: str) -> bool:
        if self.supported_protocols and protocol in self.supported_protocols:
            return True
        if self.native_allows_protocol is not None:
            return bool(self.native_allows_protocol(protocol))
        return False
