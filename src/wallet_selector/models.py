"""
Data models for credential exchanges.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


# Authorization request parameters understood by the OpenID4VP plugin,
# in the order they are emitted on a wallet URL.
AUTHORIZATION_FIELDS = (
    "client_id",
    "response_type",
    "response_mode",
    "response_uri",
    "nonce",
    "state",
    "request_uri",
    "presentation_definition",
    "presentation_definition_uri",
    "dcql_query",
    "client_metadata",
)

# Parameters whose values are JSON documents rather than strings
JSON_FIELDS = frozenset({
    "presentation_definition",
    "client_metadata",
    "dcql_query",
})

# Exactly one of these must describe the credential requirements
REQUIREMENT_FIELDS = (
    "request_uri",
    "presentation_definition",
    "presentation_definition_uri",
    "dcql_query",
)


def utc_timestamp() -> str:
    """Current time as an ISO-8601 string in UTC (millisecond precision)."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ExchangeState(Enum):
    """Lifecycle states of a credential exchange."""

    INTERCEPTED = "intercepted"
    AWAITING_SELECTION = "awaiting_selection"
    WALLET_CHOSEN = "wallet_chosen"
    AWAITING_WALLET_RESPONSE = "awaiting_wallet_response"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({
    ExchangeState.COMPLETED,
    ExchangeState.FAILED,
    ExchangeState.TIMED_OUT,
    ExchangeState.CANCELLED,
})


@dataclass(frozen=True)
class CredentialRequest:
    """
    One provider entry from the page's credential call.

    Attributes:
        protocol_id: Protocol identifier declared by the page (e.g. "openid4vp")
        raw_data: Request data as supplied by the page, object or string
        origin: Origin of the requesting page
    """
    protocol_id: str
    raw_data: Mapping[str, Any] | str
    origin: str = ""


@dataclass(frozen=True)
class WalletDescriptor:
    """
    A wallet known to the wallet registry.

    Attributes:
        id: Registry-assigned wallet identifier
        url: Wallet endpoint the authorization request is sent to
        protocols: Protocol identifiers the wallet declares support for
        enabled: Whether the user has enabled this wallet
        name: Display name
        description: Optional free-text description
    """
    id: str
    url: str
    protocols: frozenset[str] = frozenset()
    enabled: bool = True
    name: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WalletDescriptor:
        """Create a WalletDescriptor from a registry entry."""
        return cls(
            id=str(data.get("id", "")),
            url=str(data.get("url", "")),
            protocols=frozenset(data.get("protocols") or ()),
            enabled=bool(data.get("enabled", True)),
            name=str(data.get("name", "")),
            description=str(data.get("description", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "protocols": sorted(self.protocols),
            "enabled": self.enabled,
            "name": self.name,
            "description": self.description,
        }


@dataclass
class NormalizedAuthorizationRequest:
    """
    Canonical OpenID4VP authorization request produced by a plugin.

    Parameters the plugin does not know about are kept in ``extra``. When the
    request was resolved from a JAR, ``jar_header`` holds the decoded JOSE
    header and ``jar_signature_verified`` records whether a verifier ran.
    """
    client_id: str
    protocol: str
    timestamp: str
    response_type: str | None = None
    response_mode: str | None = None
    response_uri: str | None = None
    nonce: str | None = None
    state: str | None = None
    request_uri: str | None = None
    presentation_definition: dict[str, Any] | None = None
    presentation_definition_uri: str | None = None
    dcql_query: dict[str, Any] | None = None
    client_metadata: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    jar_header: dict[str, Any] | None = None
    jar_signature_verified: bool | None = None

    @classmethod
    def from_params(
        cls,
        params: Mapping[str, Any],
        protocol: str,
        timestamp: str | None = None,
    ) -> NormalizedAuthorizationRequest:
        """Build from an already validated parameter mapping."""
        known = {name: params.get(name) for name in AUTHORIZATION_FIELDS}
        extra = {
            k: v for k, v in params.items()
            if k not in AUTHORIZATION_FIELDS and k not in ("protocol", "timestamp")
        }
        return cls(
            protocol=protocol,
            timestamp=timestamp or utc_timestamp(),
            extra=extra,
            **known,
        )

    @property
    def requirement_sources(self) -> list[str]:
        """Names of the credential requirement fields that are set."""
        return [name for name in REQUIREMENT_FIELDS if getattr(self, name) is not None]

    def parameters(self) -> dict[str, Any]:
        """Authorization parameters that are set, in canonical order."""
        return {
            name: getattr(self, name)
            for name in AUTHORIZATION_FIELDS
            if getattr(self, name) is not None
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        data.update(self.parameters())
        data["protocol"] = self.protocol
        data["timestamp"] = self.timestamp
        if self.jar_header is not None:
            data["_jarHeader"] = self.jar_header
            data["_jarSignatureVerified"] = bool(self.jar_signature_verified)
        return data


@dataclass(frozen=True)
class VerifierOptions:
    """Key material hints handed to a JWT verifier."""

    certificate: str | None = None
    algorithm: str | None = None
    kid: str | None = None


@dataclass
class JWTVerificationResult:
    """
    Result returned by an externally supplied JWT verifier.

    Attributes:
        valid: Whether the signature was accepted
        payload: Verified payload, if the verifier returns one
        header: Verified header, if the verifier returns one
        error: Reason for rejection
    """
    valid: bool
    payload: dict[str, Any] | None = None
    header: dict[str, Any] | None = None
    error: str | None = None


@dataclass(frozen=True)
class Descriptor:
    """One entry of a presentation submission's descriptor_map."""

    id: str
    format: str
    path: str


@dataclass(frozen=True)
class PresentationSubmission:
    """DIF presentation submission, descriptor order preserved."""

    id: str
    definition_id: str
    descriptor_map: tuple[Descriptor, ...]


@dataclass(frozen=True)
class WalletResponse:
    """A wallet response accepted by a protocol plugin."""

    protocol: str
    data: Mapping[str, Any]
    presentation_submission: PresentationSubmission | None = None


@dataclass(frozen=True)
class WalletInvocation:
    """
    Authorization request formatted for a specific wallet.

    Attributes:
        protocol: Protocol identifier of the plugin that formatted it
        wallet_url: Wallet base URL
        authorization_url: Wallet URL with the request as query parameters
        request_data: The prepared request the URL was built from
    """
    protocol: str
    wallet_url: str
    authorization_url: str
    request_data: Any


@dataclass(frozen=True)
class PreparedRequest:
    """A credential request after its plugin has normalized it."""

    protocol_id: str
    data: Any
    original: CredentialRequest


@dataclass(frozen=True)
class ExchangeError:
    """Structured rejection delivered to the page."""

    code: str
    message: str


@dataclass(frozen=True)
class ExchangeResult:
    """
    Terminal outcome of an exchange.

    Exactly one of ``use_native``, ``response`` or ``error`` is meaningful:
    native fallback, a validated wallet response, or a structured error.
    """
    exchange_id: str
    state: ExchangeState
    use_native: bool = False
    response: WalletResponse | None = None
    error: ExchangeError | None = None


@dataclass
class PendingExchange:
    """
    Correlator-owned record of one in-flight exchange.

    Mutated only by the ExchangeCorrelator; removed from its arena once a
    terminal state is reached.
    """
    exchange_id: str
    origin: str
    requests: tuple[CredentialRequest, ...]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: ExchangeState = ExchangeState.INTERCEPTED
    deadline: datetime | None = None
    resolution: ExchangeResult | None = None
    prepared: list[PreparedRequest] = field(default_factory=list)
    candidates: tuple[WalletDescriptor, ...] = ()
    chosen_wallet: WalletDescriptor | None = None
    chosen_request: PreparedRequest | None = None
    resolved_request: NormalizedAuthorizationRequest | None = None


@dataclass(frozen=True)
class DigitalCredential:
    """Credential returned to the page when a wallet answers."""

    id: str
    protocol: str
    data: Mapping[str, Any]
    type: str = "digital"

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "protocol": self.protocol,
            "data": dict(self.data),
            "id": self.id,
        }
