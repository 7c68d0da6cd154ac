"""
Wallet eligibility and the wallet registry interface.

The core only reads wallets. :class:`InMemoryWalletRegistry` is a simple
registry for embedding and tests; persistent storage lives elsewhere.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Iterable, Mapping, Protocol, Sequence
from urllib.parse import urlsplit

from wallet_selector.errors import ValidationError
from wallet_selector.models import WalletDescriptor

logger = logging.getLogger(__name__)

# Protocol identifiers: ASCII lower alpha, digits and hyphens
PROTOCOL_ID_PATTERN = re.compile(r"^[a-z0-9-]+$")


def eligible_wallets(
    wallets: Iterable[WalletDescriptor],
    protocol_id: str,
) -> list[WalletDescriptor]:
    """Enabled wallets that declare ``protocol_id``, in registry order."""
    return [w for w in wallets if w.enabled and protocol_id in w.protocols]


def eligible_for_protocols(
    wallets: Iterable[WalletDescriptor],
    protocol_ids: Iterable[str],
) -> list[WalletDescriptor]:
    """Enabled wallets that declare at least one of ``protocol_ids``.

    Each wallet appears once, in registry order.
    """
    wanted = set(protocol_ids)
    return [w for w in wallets if w.enabled and not wanted.isdisjoint(w.protocols)]


def supported_protocols(wallets: Iterable[WalletDescriptor]) -> list[str]:
    """Sorted union of the protocols declared by enabled wallets."""
    protocols: set[str] = set()
    for wallet in wallets:
        if wallet.enabled:
            protocols.update(wallet.protocols)
    return sorted(protocols)


class WalletRegistry(Protocol):
    """Read access to the configured wallets."""

    async def list_wallets(self) -> Sequence[WalletDescriptor]:
        ...

    async def is_enabled(self) -> bool:
        ...


class InMemoryWalletRegistry:
    """Wallet registry kept in memory.

    Args:
        wallets: Initial wallets.
        enabled: Global feature switch reported by is_enabled().
    """

    def __init__(
        self,
        wallets: Iterable[WalletDescriptor] = (),
        enabled: bool = True,
    ) -> None:
        self._wallets: list[WalletDescriptor] = list(wallets)
        self._enabled = enabled

    async def list_wallets(self) -> Sequence[WalletDescriptor]:
        return tuple(self._wallets)

    async def is_enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def is_registered(self, url: str) -> bool:
        return any(w.url == url for w in self._wallets)

    def register(self, info: Mapping[str, Any]) -> tuple[WalletDescriptor, bool]:
        """Register a wallet announced by a wallet site.

        Wallets are de-duplicated by URL.

        Args:
            info: Wallet information with at least name, url and protocols.

        Returns:
            The registered (or already known) wallet, and whether it was
            already registered.

        Raises:
            ValidationError: If name, url or protocols are missing or invalid.
        """
        name = info.get("name")
        url = info.get("url")
        if not name or not url:
            raise ValidationError("Wallet registration requires at least name and url")

        parts = urlsplit(str(url))
        if not parts.scheme or not parts.netloc:
            raise ValidationError(f"Invalid wallet URL: {url}")

        protocols = info.get("protocols")
        if not isinstance(protocols, (list, tuple, set, frozenset)) or not protocols:
            raise ValidationError("Wallet registration requires at least one supported protocol")
        for protocol in protocols:
            if not isinstance(protocol, str) or not PROTOCOL_ID_PATTERN.match(protocol):
                raise ValidationError(
                    f"Invalid protocol identifier: {protocol} "
                    "(must contain only lowercase letters, digits, and hyphens)"
                )

        for existing in self._wallets:
            if existing.url == url:
                logger.info("Wallet already registered: %s", url)
                return existing, True

        wallet = WalletDescriptor(
            id=f"wallet-{uuid.uuid4().hex[:12]}",
            url=str(url),
            protocols=frozenset(protocols),
            enabled=True,
            name=str(name),
            description=str(info.get("description") or ""),
        )
        self._wallets.append(wallet)
        logger.info("Wallet registered: %s (%s)", wallet.name, wallet.url)
        return wallet, False
