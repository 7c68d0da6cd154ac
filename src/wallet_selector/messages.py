"""
Messages exchanged between the page, relay, orchestrator, selector UI and
wallet transport. All messages are frozen; only these cross a channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from wallet_selector.models import (
    CredentialRequest,
    PreparedRequest,
    WalletDescriptor,
    WalletInvocation,
)


@dataclass(frozen=True)
class CredentialRequestMessage:
    """Page intercepted a credential call (page -> orchestrator)."""

    exchange_id: str
    origin: str
    requests: tuple[CredentialRequest, ...]


@dataclass(frozen=True)
class ProtocolsQuery:
    """Page asks which protocols the configured wallets support."""

    query_id: str


@dataclass(frozen=True)
class ProtocolsReply:
    query_id: str
    protocols: tuple[str, ...]


@dataclass(frozen=True)
class SelectorRequest:
    """Orchestrator asks the selection UI to show candidate wallets."""

    exchange_id: str
    candidates: tuple[WalletDescriptor, ...]
    requests: tuple[PreparedRequest, ...]


@dataclass(frozen=True)
class WalletChosen:
    """User picked a wallet; ``protocol_id`` optionally pins the request."""

    exchange_id: str
    wallet: WalletDescriptor
    protocol_id: str | None = None


@dataclass(frozen=True)
class SelectionCancelled:
    exchange_id: str


@dataclass(frozen=True)
class NativeChosen:
    """User chose the browser's own credential UI."""

    exchange_id: str


@dataclass(frozen=True)
class WalletInvocationMessage:
    """Orchestrator asks the page to open the wallet."""

    exchange_id: str
    wallet: WalletDescriptor
    invocation: WalletInvocation
    deadline: datetime


@dataclass(frozen=True)
class WalletResponseMessage:
    exchange_id: str
    data: Mapping[str, Any]


@dataclass(frozen=True)
class WalletErrorMessage:
    """The wallet could not be reached or answered with a transport error."""

    exchange_id: str
    error: str


@dataclass(frozen=True)
class WalletTimeout:
    """Injected by the correlator when a wallet response deadline elapses."""

    exchange_id: str


@dataclass(frozen=True)
class ExchangeAbandoned:
    """The page stopped waiting for a result (page -> orchestrator).

    Sent on the request channel so it is delivered after the request it
    refers to.
    """

    exchange_id: str
    timed_out: bool = True
