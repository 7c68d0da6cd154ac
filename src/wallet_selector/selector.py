"""
Assembly of the page side and the orchestrator side on one bus.
"""

from __future__ import annotations

from typing import Any

from wallet_selector.bus import ContextRelay, MessageBus
from wallet_selector.config import Settings
from wallet_selector.correlator import ExchangeCorrelator, VerifierProvider
from wallet_selector.interceptor import CredentialInterceptor, NativeGetter
from wallet_selector.protocols import ProtocolRegistry
from wallet_selector.wallets import WalletRegistry


class WalletSelector:
    """
    A running wallet selector for one page.

    Selection UI and wallet transport are not included: subscribe to
    ``selector.show`` and ``wallet.invoke`` on :attr:`bus` to provide them.

    Example:
        >>> async with WalletSelector(registry, origin="https://rp.example") as selector:
        ...     credential = await selector.interceptor.get(options)
    """

    def __init__(
        self,
        wallet_registry: WalletRegistry,
        origin: str = "",
        settings: Settings | None = None,
        protocol_registry: ProtocolRegistry | None = None,
        verifier_provider: VerifierProvider | None = None,
        native_get: NativeGetter | None = None,
        bus: MessageBus | None = None,
    ) -> None:
        self.bus = bus or MessageBus()
        self.relay = ContextRelay(self.bus, origin=origin)
        self.correlator = ExchangeCorrelator(
            self.bus,
            wallet_registry,
            protocol_registry=protocol_registry,
            settings=settings,
            verifier_provider=verifier_provider,
        )
        self.interceptor = CredentialInterceptor(self.bus, origin=origin, native_get=native_get)

    def start(self) -> None:
        self.relay.start()
        self.correlator.start()
        self.interceptor.start()

    async def close(self) -> None:
        """Cancel live exchanges, then stop the bus."""
        await self.correlator.close()
        await self.bus.drain()
        self.interceptor.stop()
        self.relay.stop()
        await self.bus.close()

    async def __aenter__(self) -> WalletSelector:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
