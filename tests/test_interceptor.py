"""Tests for the interception shim, end to end through the selector."""

import asyncio
import logging

import pytest

from wallet_selector import bus as channels
from wallet_selector.bus import MessageBus
from wallet_selector.errors import ExchangeTimeoutError, UserCancelledError, WalletReportedError
from wallet_selector.interceptor import (
    NATIVE_FALLBACK,
    CredentialInterceptor,
    is_digital_credential_request,
)
from wallet_selector.messages import (
    CredentialRequestMessage,
    ExchangeAbandoned,
    SelectionCancelled,
    WalletChosen,
    WalletErrorMessage,
    WalletResponseMessage,
)
from wallet_selector.models import DigitalCredential, ExchangeResult, ExchangeState
from wallet_selector.selector import WalletSelector
from wallet_selector.wallets import InMemoryWalletRegistry

from conftest import authorization_request, make_wallet, wallet_response


def digital_options(*requests):
    if not requests:
        requests = ({"protocol": "openid4vp", "data": authorization_request()},)
    return {"digital": {"requests": list(requests)}}


class FakeUser:
    """Selection UI and wallet transport answering on the bus."""

    def __init__(self, bus, choice="first", wallet_answer=None):
        self.choice = choice
        self.wallet_answer = wallet_answer or wallet_response()
        self.bus = bus
        self.shown = []
        self.invoked = []
        bus.subscribe(channels.SELECTOR_SHOW, self.on_show)
        bus.subscribe(channels.WALLET_INVOKE, self.on_invoke)

    def on_show(self, message):
        self.shown.append(message)
        if self.choice == "cancel":
            self.bus.publish(channels.SELECTOR_RESULT, SelectionCancelled(exchange_id=message.exchange_id))
        else:
            self.bus.publish(channels.SELECTOR_RESULT, WalletChosen(
                exchange_id=message.exchange_id,
                wallet=message.candidates[0],
            ))

    def on_invoke(self, message):
        self.invoked.append(message)
        if isinstance(self.wallet_answer, str):
            reply = WalletErrorMessage(exchange_id=message.exchange_id, error=self.wallet_answer)
        else:
            reply = WalletResponseMessage(exchange_id=message.exchange_id, data=self.wallet_answer)
        self.bus.publish(channels.WALLET_RESPONSE, reply)


class NativeApi:
    def __init__(self):
        self.calls = []

    async def __call__(self, options):
        self.calls.append(options)
        return "native-credential"


@pytest.fixture
def registry(wallets):
    return InMemoryWalletRegistry(wallets)


class TestIsDigitalCredentialRequest:
    """Tests for request classification."""

    def test_digital(self):
        assert is_digital_credential_request({"digital": {"requests": []}})

    def test_identity(self):
        assert is_digital_credential_request({"identity": {}})

    def test_mediation(self):
        assert is_digital_credential_request({"mediation": "required"})
        assert not is_digital_credential_request({"mediation": "silent"})

    def test_other(self):
        assert not is_digital_credential_request({"publicKey": {}})
        assert not is_digital_credential_request(None)


class TestCredentialInterceptor:
    """Tests for get() through a running selector."""

    @pytest.mark.asyncio
    async def test_wallet_credential(self, registry):
        """A wallet answer becomes a DigitalCredential."""
        async with WalletSelector(registry, origin="https://rp.example.com") as selector:
            user = FakeUser(selector.bus)
            credential = await selector.interceptor.get(digital_options())

        assert isinstance(credential, DigitalCredential)
        assert credential.protocol == "openid4vp"
        assert credential.data["vp_token"] == wallet_response()["vp_token"]
        assert credential.to_json()["type"] == "digital"
        assert user.shown[0].requests[0].original.origin == "https://rp.example.com"

    @pytest.mark.asyncio
    async def test_non_digital_goes_native(self, registry):
        native = NativeApi()
        async with WalletSelector(registry, native_get=native) as selector:
            result = await selector.interceptor.get({"publicKey": {"challenge": "abc"}})

        assert result == "native-credential"
        assert native.calls == [{"publicKey": {"challenge": "abc"}}]

    @pytest.mark.asyncio
    async def test_native_fallback_without_getter(self, registry):
        async with WalletSelector(registry) as selector:
            assert await selector.interceptor.get({"digital": {"requests": []}}) is NATIVE_FALLBACK

    @pytest.mark.asyncio
    async def test_no_eligible_wallet_goes_native(self):
        native = NativeApi()
        registry = InMemoryWalletRegistry([make_wallet("delta", protocols=("mdoc-openid4vp",))])

        async with WalletSelector(registry, native_get=native) as selector:
            user = FakeUser(selector.bus)
            result = await selector.interceptor.get(digital_options())

        assert result == "native-credential"
        assert user.shown == []

    @pytest.mark.asyncio
    async def test_cancelled(self, registry):
        async with WalletSelector(registry) as selector:
            FakeUser(selector.bus, choice="cancel")
            with pytest.raises(UserCancelledError):
                await selector.interceptor.get(digital_options())

    @pytest.mark.asyncio
    async def test_wallet_error(self, registry):
        async with WalletSelector(registry) as selector:
            FakeUser(selector.bus, wallet_answer={"error": "access_denied"})
            with pytest.raises(WalletReportedError, match="access_denied"):
                await selector.interceptor.get(digital_options())

    @pytest.mark.asyncio
    async def test_wallet_unreachable(self, registry):
        async with WalletSelector(registry) as selector:
            FakeUser(selector.bus, wallet_answer="Wallet window closed")
            with pytest.raises(WalletReportedError, match="Wallet window closed"):
                await selector.interceptor.get(digital_options())

    @pytest.mark.asyncio
    async def test_timeout_without_orchestrator(self):
        """get() gives up when no result arrives in time."""
        bus = MessageBus()
        interceptor = CredentialInterceptor(bus)
        interceptor.start()

        sent = []
        bus.subscribe(channels.PAGE_REQUEST, sent.append)

        with pytest.raises(ExchangeTimeoutError):
            await interceptor.get(digital_options(), timeout=0.05)
        await bus.drain()

        assert [type(m) for m in sent] == [CredentialRequestMessage, ExchangeAbandoned]
        assert sent[1].exchange_id == sent[0].exchange_id
        assert sent[1].timed_out is True

        interceptor.stop()
        await bus.close()

    @pytest.mark.asyncio
    async def test_timeout_finishes_exchange(self, registry):
        """A page that gives up leaves nothing pending and no wallet is invoked."""
        async with WalletSelector(registry) as selector:
            shown = []
            invoked = []
            selector.bus.subscribe(channels.SELECTOR_SHOW, shown.append)
            selector.bus.subscribe(channels.WALLET_INVOKE, invoked.append)

            with pytest.raises(ExchangeTimeoutError):
                await selector.interceptor.get(digital_options(), timeout=0.05)
            await selector.bus.drain()

            assert len(shown) == 1
            assert selector.correlator.pending_ids == []

            selector.bus.publish(channels.SELECTOR_RESULT, WalletChosen(
                exchange_id=shown[0].exchange_id,
                wallet=shown[0].candidates[0],
            ))
            await selector.bus.drain()

            assert invoked == []

    @pytest.mark.asyncio
    async def test_cancelled_get_finishes_exchange(self, registry):
        async with WalletSelector(registry) as selector:
            shown = []
            selector.bus.subscribe(channels.SELECTOR_SHOW, shown.append)

            task = asyncio.create_task(selector.interceptor.get(digital_options()))
            while not shown:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await selector.bus.drain()

            assert selector.correlator.pending_ids == []

    @pytest.mark.asyncio
    async def test_unknown_result_ignored(self, caplog):
        bus = MessageBus()
        interceptor = CredentialInterceptor(bus)
        interceptor.start()

        with caplog.at_level(logging.DEBUG, logger="wallet_selector"):
            bus.publish(channels.PAGE_RESPONSE, ExchangeResult(
                exchange_id="stray",
                state=ExchangeState.COMPLETED,
                use_native=True,
            ))
            await bus.drain()
        await bus.close()

        records = [r for r in caplog.records if "unknown request stray" in r.getMessage()]
        assert [r.levelno for r in records] == [logging.DEBUG]

    @pytest.mark.asyncio
    async def test_id_factory(self, registry):
        ids = iter(["exchange-1", "exchange-2"])
        selector = WalletSelector(registry)
        selector.interceptor = CredentialInterceptor(selector.bus, id_factory=lambda: next(ids))

        async with selector:
            user = FakeUser(selector.bus)

            await selector.interceptor.get(digital_options())

        assert user.shown[0].exchange_id == "exchange-1"


class TestProtocolCapabilities:
    """Tests for the protocol capability cache."""

    @pytest.mark.asyncio
    async def test_refresh_protocols(self, registry):
        async with WalletSelector(registry) as selector:
            protocols = await selector.interceptor.refresh_protocols()

        assert protocols == frozenset({"openid4vp", "w3c-vc", "mdoc-openid4vp"})
        assert selector.interceptor.allows_protocol("openid4vp")
        assert not selector.interceptor.allows_protocol("org-iso-mdoc")

    @pytest.mark.asyncio
    async def test_unsupported_requests_skipped(self, registry):
        """Requests no wallet supports never reach the orchestrator."""
        native = NativeApi()
        async with WalletSelector(registry, native_get=native) as selector:
            user = FakeUser(selector.bus)
            await selector.interceptor.refresh_protocols()
            result = await selector.interceptor.get(digital_options({"protocol": "org-iso-mdoc", "data": {}}))

        assert result == "native-credential"
        assert user.shown == []

    @pytest.mark.asyncio
    async def test_refresh_timeout_keeps_cache(self):
        bus = MessageBus()
        interceptor = CredentialInterceptor(bus)
        interceptor.start()
        interceptor.supported_protocols = frozenset({"openid4vp"})

        assert await interceptor.refresh_protocols(timeout=0.05) == frozenset({"openid4vp"})

        interceptor.stop()
        await bus.close()

    def test_allows_protocol_falls_back_to_native(self):
        interceptor = CredentialInterceptor(MessageBus(), native_allows_protocol=lambda p: p == "org-iso-mdoc")

        assert interceptor.allows_protocol("org-iso-mdoc")
        assert not interceptor.allows_protocol("openid4vp")
