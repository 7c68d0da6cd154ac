"""
Exchange correlator: the orchestrator-side state machine.

Owns every in-flight exchange, keyed by exchange id, and drives it from
interception to exactly one terminal result:

    INTERCEPTED -> AWAITING_SELECTION -> WALLET_CHOSEN
        -> AWAITING_WALLET_RESPONSE -> COMPLETED | FAILED | TIMED_OUT

with CANCELLED reachable from selection and native fallback completing
straight from INTERCEPTED. The first terminal transition wins; later events
for the same exchange are discarded.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Coroutine

from wallet_selector import bus as channels
from wallet_selector.bus import MessageBus
from wallet_selector.config import Settings
from wallet_selector.errors import (
    ExchangeTimeoutError,
    UnsupportedProtocolError,
    UserCancelledError,
    ValidationError,
    WalletReportedError,
    WalletSelectorError,
)
from wallet_selector.jar import JWTVerifier
from wallet_selector.messages import (
    CredentialRequestMessage,
    ExchangeAbandoned,
    NativeChosen,
    ProtocolsQuery,
    ProtocolsReply,
    SelectionCancelled,
    SelectorRequest,
    WalletChosen,
    WalletErrorMessage,
    WalletInvocationMessage,
    WalletResponseMessage,
    WalletTimeout,
)
from wallet_selector.models import (
    ExchangeResult,
    ExchangeState,
    NormalizedAuthorizationRequest,
    PendingExchange,
    PreparedRequest,
    WalletDescriptor,
    WalletResponse,
)
from wallet_selector.protocols import ProtocolRegistry, default_registry
from wallet_selector.wallets import WalletRegistry, eligible_for_protocols, supported_protocols

logger = logging.getLogger(__name__)


def _log_fields(exchange: PendingExchange) -> dict[str, Any]:
    """Structured fields attached to exchange lifecycle log records."""
    fields: dict[str, Any] = {"exchange_id": exchange.exchange_id}
    if exchange.chosen_request is not None:
        fields["protocol"] = exchange.chosen_request.protocol_id
    if exchange.chosen_wallet is not None:
        fields["wallet_id"] = exchange.chosen_wallet.id
    return fields

VerifierProvider = Callable[[WalletDescriptor], "JWTVerifier | None"]


class ExchangeCorrelator:
    """
    Orchestrator for credential exchanges.

    Args:
        bus: Message bus shared with the relay and collaborators.
        wallet_registry: Source of configured wallets and the global switch.
        protocol_registry: Protocol plugins. Built-ins if not provided.
        settings: Timeouts and policy switches.
        verifier_provider: Returns the JWT verifier supplied by a wallet
            integration, called when a JAR has to be resolved for that wallet.
    """

    def __init__(
        self,
        bus: MessageBus,
        wallet_registry: WalletRegistry,
        protocol_registry: ProtocolRegistry | None = None,
        settings: Settings | None = None,
        verifier_provider: VerifierProvider | None = None,
    ) -> None:
        self.bus = bus
        self.wallet_registry = wallet_registry
        self.settings = settings or Settings()
        self.protocol_registry = protocol_registry or default_registry(self.settings)
        self.verifier_provider = verifier_provider
        self._exchanges: dict[str, PendingExchange] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._unsubscribe: list[Callable[[], None]] = []

    def start(self) -> None:
        subscriptions = (
            (channels.REQUEST, self._on_request),
            (channels.SELECTOR_RESULT, self._on_selection),
            (channels.WALLET_RESPONSE, self._on_wallet_response),
            (channels.PROTOCOLS_QUERY, self._on_protocols_query),
        )
        for name, handler in subscriptions:
            self._unsubscribe.append(self.bus.subscribe(name, handler))

    async def close(self) -> None:
        """Cancel timers and in-flight work; every live exchange is CANCELLED."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

        tasks = [*self._timers.values(), *self._tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()

        for exchange in list(self._exchanges.values()):
            self._finish(
                exchange,
                ExchangeState.CANCELLED,
                error=UserCancelledError("Wallet selector shut down"),
            )

    def get(self, exchange_id: str) -> PendingExchange | None:
        """The live exchange with this id, or None once it has finished."""
        return self._exchanges.get(exchange_id)

    @property
    def pending_ids(self) -> list[str]:
        return list(self._exchanges)

    # -- interception ------------------------------------------------------

    async def _on_request(self, message: CredentialRequestMessage | ExchangeAbandoned) -> None:
        if isinstance(message, ExchangeAbandoned):
            self._on_abandoned(message)
            return
        if message.exchange_id in self._exchanges:
            logger.warning("Duplicate request for exchange %s ignored", message.exchange_id)
            return

        exchange = PendingExchange(
            exchange_id=message.exchange_id,
            origin=message.origin,
            requests=message.requests,
        )
        self._exchanges[exchange.exchange_id] = exchange
        logger.info(
            "Exchange %s intercepted from %s (%d request(s))",
            exchange.exchange_id, exchange.origin or "unknown origin", len(message.requests),
            extra=_log_fields(exchange),
        )

        if not await self.wallet_registry.is_enabled() or not self.settings.enabled:
            self._complete_native(exchange, "wallet selector disabled")
            return

        prepared, errors = self._prepare_requests(exchange)
        if not prepared:
            if errors:
                self._fail(exchange, errors[0])
            else:
                self._complete_native(exchange, "no supported protocol")
            return
        exchange.prepared = prepared

        wallets = await self.wallet_registry.list_wallets()
        if not self._is_live(exchange):
            return

        candidates = eligible_for_protocols(wallets, [p.protocol_id for p in prepared])
        if not candidates:
            self._complete_native(exchange, "no wallet supports the requested protocols")
            return

        exchange.candidates = tuple(candidates)
        self._transition(exchange, ExchangeState.AWAITING_SELECTION)
        self.bus.publish(channels.SELECTOR_SHOW, SelectorRequest(
            exchange_id=exchange.exchange_id,
            candidates=exchange.candidates,
            requests=tuple(prepared),
        ))

    def _on_abandoned(self, message: ExchangeAbandoned) -> None:
        exchange = self._exchanges.get(message.exchange_id)
        if exchange is None:
            logger.debug("Page abandoned finished exchange %s", message.exchange_id)
            return
        if message.timed_out:
            self._finish(
                exchange,
                ExchangeState.TIMED_OUT,
                error=ExchangeTimeoutError("Page stopped waiting for a result"),
            )
        else:
            self._finish(
                exchange,
                ExchangeState.CANCELLED,
                error=UserCancelledError("Page cancelled the request"),
            )

    def _prepare_requests(
        self,
        exchange: PendingExchange,
    ) -> tuple[list[PreparedRequest], list[ValidationError]]:
        prepared: list[PreparedRequest] = []
        errors: list[ValidationError] = []

        for request in exchange.requests:
            try:
                plugin = self.protocol_registry.resolve(request.protocol_id)
            except UnsupportedProtocolError:
                logger.info(
                    "Exchange %s: protocol %s left to the native API",
                    exchange.exchange_id, request.protocol_id,
                )
                continue

            try:
                data = plugin.prepare_request(request.raw_data)
            except ValidationError as e:
                logger.warning(
                    "Exchange %s: invalid %s request: %s",
                    exchange.exchange_id, request.protocol_id, e,
                )
                errors.append(e)
                continue

            prepared.append(PreparedRequest(
                protocol_id=request.protocol_id,
                data=data,
                original=request,
            ))

        return prepared, errors

    # -- selection ---------------------------------------------------------

    def _on_selection(self, message: Any) -> None:
        exchange = self._exchanges.get(getattr(message, "exchange_id", ""))
        if exchange is None or exchange.state is not ExchangeState.AWAITING_SELECTION:
            logger.info(
                "Ignoring %s for exchange %s (%s)",
                type(message).__name__,
                getattr(message, "exchange_id", None),
                exchange.state.value if exchange else "unknown or finished",
            )
            return

        if isinstance(message, SelectionCancelled):
            self._finish(
                exchange,
                ExchangeState.CANCELLED,
                error=UserCancelledError("User cancelled the request"),
            )
        elif isinstance(message, NativeChosen):
            self._complete_native(exchange, "user chose the native wallet")
        elif isinstance(message, WalletChosen):
            self._choose_wallet(exchange, message)
        else:
            logger.warning("Unknown selection message %r", message)

    def _choose_wallet(self, exchange: PendingExchange, message: WalletChosen) -> None:
        wallet = message.wallet
        if not any(c.id == wallet.id for c in exchange.candidates):
            logger.warning(
                "Exchange %s: wallet %s is not a candidate, selection ignored",
                exchange.exchange_id, wallet.id,
            )
            return

        request = None
        for prepared in exchange.prepared:
            if message.protocol_id and prepared.protocol_id != message.protocol_id:
                continue
            if prepared.protocol_id in wallet.protocols:
                request = prepared
                break

        if request is None:
            logger.warning(
                "Exchange %s: wallet %s supports none of the requested protocols",
                exchange.exchange_id, wallet.id,
            )
            return

        exchange.chosen_wallet = wallet
        exchange.chosen_request = request
        self._transition(exchange, ExchangeState.WALLET_CHOSEN)
        self._spawn(self._dispatch(exchange))

    async def _dispatch(self, exchange: PendingExchange) -> None:
        wallet = exchange.chosen_wallet
        request = exchange.chosen_request
        if wallet is None or request is None:
            self._fail(exchange, WalletSelectorError("No wallet chosen for dispatch"))
            return

        try:
            plugin = self.protocol_registry.resolve(request.protocol_id)
            data = request.data
            if isinstance(data, NormalizedAuthorizationRequest) and data.request_uri:
                verifier = self.verifier_provider(wallet) if self.verifier_provider else None
                exchange.resolved_request = await plugin.handle_request_uri(
                    data.request_uri,
                    verifier=verifier,
                    client_id=data.client_id,
                )
            invocation = plugin.format_for_wallet(data, wallet.url)
        except WalletSelectorError as e:
            if self._is_live(exchange):
                self._fail(exchange, e)
            return
        except Exception as e:
            logger.exception("Exchange %s: dispatch failed", exchange.exchange_id)
            if self._is_live(exchange):
                self._fail(exchange, WalletSelectorError(f"Dispatch failed: {e}"))
            return

        if not self._is_live(exchange):
            return

        timeout = self.settings.wallet_response_timeout
        exchange.deadline = datetime.now(timezone.utc) + timedelta(seconds=timeout)
        self._transition(exchange, ExchangeState.AWAITING_WALLET_RESPONSE)
        self._timers[exchange.exchange_id] = asyncio.get_running_loop().create_task(
            self._expire(exchange.exchange_id, timeout)
        )
        self.bus.publish(channels.WALLET_INVOKE, WalletInvocationMessage(
            exchange_id=exchange.exchange_id,
            wallet=wallet,
            invocation=invocation,
            deadline=exchange.deadline,
        ))

    async def _expire(self, exchange_id: str, timeout: float) -> None:
        await asyncio.sleep(timeout)
        # Same channel as the response so the two race in delivery order
        self.bus.publish(channels.WALLET_RESPONSE, WalletTimeout(exchange_id=exchange_id))

    # -- wallet response ---------------------------------------------------

    def _on_wallet_response(self, message: Any) -> None:
        exchange = self._exchanges.get(getattr(message, "exchange_id", ""))
        if exchange is None:
            logger.info(
                "Discarding %s for unknown or finished exchange %s",
                type(message).__name__, getattr(message, "exchange_id", None),
            )
            return
        if exchange.state is not ExchangeState.AWAITING_WALLET_RESPONSE:
            logger.warning(
                "Discarding %s for exchange %s in state %s",
                type(message).__name__, exchange.exchange_id, exchange.state.value,
            )
            return

        if isinstance(message, WalletTimeout):
            self._finish(
                exchange,
                ExchangeState.TIMED_OUT,
                error=ExchangeTimeoutError("Wallet response timeout"),
            )
        elif isinstance(message, WalletErrorMessage):
            self._fail(exchange, WalletReportedError(message.error))
        elif isinstance(message, WalletResponseMessage):
            request = exchange.chosen_request
            if request is None:
                self._fail(exchange, WalletSelectorError("Response without a chosen request"))
                return
            try:
                response = self.protocol_registry.validate_response(
                    request.protocol_id, message.data
                )
            except WalletSelectorError as e:
                self._fail(exchange, e)
                return
            self._complete(exchange, response)
        else:
            logger.warning("Unknown wallet message %r", message)

    # -- capability query --------------------------------------------------

    async def _on_protocols_query(self, message: ProtocolsQuery) -> None:
        protocols: list[str] = []
        if self.settings.enabled and await self.wallet_registry.is_enabled():
            protocols = supported_protocols(await self.wallet_registry.list_wallets())
        self.bus.publish(channels.PROTOCOLS_REPLY, ProtocolsReply(
            query_id=message.query_id,
            protocols=tuple(protocols),
        ))

    # -- state helpers -----------------------------------------------------

    def _is_live(self, exchange: PendingExchange) -> bool:
        return self._exchanges.get(exchange.exchange_id) is exchange

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _transition(self, exchange: PendingExchange, state: ExchangeState) -> None:
        logger.debug(
            "Exchange %s: %s -> %s",
            exchange.exchange_id, exchange.state.value, state.value,
        )
        exchange.state = state

    def _complete(self, exchange: PendingExchange, response: WalletResponse) -> None:
        self._finish(exchange, ExchangeState.COMPLETED, response=response)

    def _complete_native(self, exchange: PendingExchange, reason: str) -> None:
        logger.info(
            "Exchange %s: using native API (%s)", exchange.exchange_id, reason,
            extra=_log_fields(exchange),
        )
        self._finish(exchange, ExchangeState.COMPLETED, use_native=True)

    def _fail(self, exchange: PendingExchange, error: WalletSelectorError) -> None:
        logger.warning(
            "Exchange %s failed: %s", exchange.exchange_id, error,
            extra=_log_fields(exchange),
        )
        self._finish(exchange, ExchangeState.FAILED, error=error)

    def _finish(
        self,
        exchange: PendingExchange,
        state: ExchangeState,
        response: WalletResponse | None = None,
        error: WalletSelectorError | None = None,
        use_native: bool = False,
    ) -> None:
        if not self._is_live(exchange):
            logger.warning(
                "Exchange %s already resolved, %s discarded",
                exchange.exchange_id, state.value,
            )
            return

        del self._exchanges[exchange.exchange_id]
        timer = self._timers.pop(exchange.exchange_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

        result = ExchangeResult(
            exchange_id=exchange.exchange_id,
            state=state,
            use_native=use_native,
            response=response,
            error=error.to_error() if error is not None else None,
        )
        self._transition(exchange, state)
        exchange.resolution = result
        logger.info(
            "Exchange %s finished: %s", exchange.exchange_id, state.value,
            extra=_log_fields(exchange),
        )
        self.bus.publish(channels.RESULT, result)
