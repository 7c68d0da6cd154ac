"""Tests for wallet eligibility and the in-memory registry."""

import pytest

from wallet_selector.errors import ValidationError
from wallet_selector.models import WalletDescriptor
from wallet_selector.wallets import (
    InMemoryWalletRegistry,
    eligible_for_protocols,
    eligible_wallets,
    supported_protocols,
)


class TestEligibility:
    """Tests for the eligibility filter."""

    def test_enabled_and_declared(self, wallets):
        """Only enabled wallets declaring the protocol are eligible."""
        assert [w.id for w in eligible_wallets(wallets, "openid4vp")] == ["alpha", "beta"]

    def test_registry_order_preserved(self, wallets):
        assert [w.id for w in eligible_wallets(list(reversed(wallets)), "openid4vp")] == ["beta", "alpha"]

    def test_none_eligible(self, wallets):
        assert eligible_wallets(wallets, "openid4vp-v1-signed") == []

    def test_exact_identifier_match(self, wallets):
        """Protocol identifiers are matched exactly."""
        assert eligible_wallets(wallets, "openid4vp-v1") == []
        assert eligible_wallets(wallets, "OPENID4VP") == []

    def test_any_of_protocols(self, wallets):
        """A wallet matching several requested protocols appears once."""
        eligible = eligible_for_protocols(wallets, ["openid4vp", "w3c-vc", "mdoc-openid4vp"])
        assert [w.id for w in eligible] == ["alpha", "beta", "delta"]

    def test_supported_protocols(self, wallets):
        """Disabled wallets do not contribute protocols."""
        assert supported_protocols(wallets) == ["mdoc-openid4vp", "openid4vp", "w3c-vc"]


class TestWalletDescriptor:
    """Tests for descriptor conversion."""

    def test_from_dict(self):
        wallet = WalletDescriptor.from_dict({
            "id": "w1",
            "url": "https://wallet.example.com",
            "protocols": ["openid4vp"],
            "name": "Wallet",
        })
        assert wallet.protocols == frozenset({"openid4vp"})
        assert wallet.enabled is True
        assert wallet.to_dict()["protocols"] == ["openid4vp"]


class TestInMemoryWalletRegistry:
    """Tests for InMemoryWalletRegistry."""

    @pytest.mark.asyncio
    async def test_list_and_enabled(self, wallets):
        registry = InMemoryWalletRegistry(wallets)

        assert list(await registry.list_wallets()) == wallets
        assert await registry.is_enabled() is True

        registry.set_enabled(False)
        assert await registry.is_enabled() is False

    @pytest.mark.asyncio
    async def test_register(self):
        registry = InMemoryWalletRegistry()

        wallet, existed = registry.register({
            "name": "Example Wallet",
            "url": "https://wallet.example.com/authorize",
            "protocols": ["openid4vp", "mdoc-openid4vp"],
        })

        assert existed is False
        assert wallet.id.startswith("wallet-")
        assert wallet.protocols == frozenset({"openid4vp", "mdoc-openid4vp"})
        assert registry.is_registered("https://wallet.example.com/authorize")
        assert await registry.list_wallets() == (wallet,)

    def test_register_deduplicates_by_url(self):
        registry = InMemoryWalletRegistry()
        info = {"name": "A", "url": "https://wallet.example.com", "protocols": ["openid4vp"]}

        first, _ = registry.register(info)
        second, existed = registry.register({**info, "name": "B"})

        assert existed is True
        assert second is first

    def test_register_requires_name_and_url(self):
        with pytest.raises(ValidationError, match="name and url"):
            InMemoryWalletRegistry().register({"url": "https://wallet.example.com", "protocols": ["openid4vp"]})

    def test_register_invalid_url(self):
        with pytest.raises(ValidationError, match="Invalid wallet URL"):
            InMemoryWalletRegistry().register({"name": "A", "url": "wallet", "protocols": ["openid4vp"]})

    def test_register_requires_protocols(self):
        with pytest.raises(ValidationError, match="at least one supported protocol"):
            InMemoryWalletRegistry().register({"name": "A", "url": "https://wallet.example.com", "protocols": []})

    def test_register_invalid_protocol_identifier(self):
        with pytest.raises(ValidationError, match="Invalid protocol identifier: OpenID4VP"):
            InMemoryWalletRegistry().register({
                "name": "A",
                "url": "https://wallet.example.com",
                "protocols": ["OpenID4VP"],
            })
