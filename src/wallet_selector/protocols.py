"""
Protocol plugins for the Digital Credentials API.

Each plugin handles one credential protocol: it normalizes the page's request,
formats it for a wallet, and validates what the wallet sends back.

Supported:
- OpenID4VP (``openid4vp`` and the ``openid4vp-v1-*`` identifiers)
- mDL over OpenID4VP (``mdoc-openid4vp``)
- W3C Verifiable Credentials (``w3c-vc``)

References:
- https://openid.net/specs/openid-4-verifiable-presentations-1_0.html
- https://identity.foundation/presentation-exchange/
"""

from __future__ import annotations

import dataclasses
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from wallet_selector.config import Settings
from wallet_selector.errors import (
    NetworkError,
    UnsupportedProtocolError,
    ValidationError,
    WalletReportedError,
)
from wallet_selector.jar import JARResolver, JWTVerifier, fetch_reference
from wallet_selector.models import (
    AUTHORIZATION_FIELDS,
    JSON_FIELDS,
    REQUIREMENT_FIELDS,
    Descriptor,
    NormalizedAuthorizationRequest,
    PresentationSubmission,
    WalletInvocation,
    WalletResponse,
    utc_timestamp,
)

logger = logging.getLogger(__name__)

OPENID4VP_PROTOCOLS = (
    "openid4vp",
    "openid4vp-v1-unsigned",
    "openid4vp-v1-signed",
    "openid4vp-v1-multisigned",
)

VALID_RESPONSE_MODES = ("direct_post", "direct_post.jwt")

X509_SAN_DNS_SCHEME = "x509_san_dns"

DESCRIPTOR_FIELDS = ("id", "format", "path")


def stable_json(value: Any) -> str:
    """Serialize JSON deterministically (sorted keys, no whitespace).

    Unicode is preserved rather than escaped.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def build_wallet_url(wallet_url: str, params: Iterable[tuple[str, str]]) -> str:
    """Append query parameters to a wallet URL.

    Parameters already present on ``wallet_url`` are kept ahead of the new ones.
    """
    parts = urlsplit(wallet_url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params)
    return urlunsplit(parts._replace(query=urlencode(query, quote_via=quote)))


def _load_json_object(value: str, name: str) -> dict[str, Any]:
    try:
        decoded = json.loads(value)
    except ValueError as e:
        raise ValidationError(f"Invalid JSON in {name}: {e}") from e
    if not isinstance(decoded, dict):
        raise ValidationError(f"{name} must be a JSON object")
    return decoded


def _as_mapping(data: Any, what: str) -> dict[str, Any]:
    """Accept a mapping or JSON object text, reject anything else."""
    if isinstance(data, Mapping):
        return dict(data)
    if isinstance(data, str) and data.strip().startswith("{"):
        return _load_json_object(data, what)
    raise ValidationError(f"{what} must be an object")


def parse_presentation_submission(value: Any) -> PresentationSubmission:
    """Structurally validate a presentation submission.

    According to DIF Presentation Exchange:
    - MUST have id
    - MUST have definition_id
    - MUST have a descriptor_map array whose entries carry id, format and path

    Raises:
        ValidationError: On the first missing field; descriptor errors name
            the descriptor's index.
    """
    submission = _as_mapping(value, "presentation_submission")

    if not submission.get("id"):
        raise ValidationError("Presentation submission must include id")
    if not submission.get("definition_id"):
        raise ValidationError("Presentation submission must include definition_id")

    descriptor_map = submission.get("descriptor_map")
    if not isinstance(descriptor_map, list):
        raise ValidationError("Presentation submission must include descriptor_map array")

    descriptors: list[Descriptor] = []
    for index, entry in enumerate(descriptor_map):
        if not isinstance(entry, Mapping):
            raise ValidationError(f"descriptor_map[{index}] must be an object")
        for name in DESCRIPTOR_FIELDS:
            if not entry.get(name):
                raise ValidationError(f"descriptor_map[{index}] missing {name}")
        descriptors.append(Descriptor(
            id=entry["id"],
            format=entry["format"],
            path=entry["path"],
        ))

    return PresentationSubmission(
        id=submission["id"],
        definition_id=submission["definition_id"],
        descriptor_map=tuple(descriptors),
    )


class ProtocolPlugin(ABC):
    """Base class for credential protocol plugins."""

    @property
    @abstractmethod
    def protocol_id(self) -> str:
        """Protocol identifier (e.g. 'openid4vp', 'mdoc-openid4vp')."""

    @abstractmethod
    def prepare_request(self, request_data: Any) -> Any:
        """Validate and normalize request data from the page.

        Raises:
            ValidationError: If the request is malformed.
        """

    @abstractmethod
    def validate_response(self, response_data: Any) -> WalletResponse:
        """Validate a wallet response.

        Raises:
            ValidationError: If the response is malformed.
        """

    def format_for_wallet(self, prepared_request: Any, wallet_url: str) -> WalletInvocation:
        """Format a prepared request for transmission to a wallet.

        The default sends the whole request as one JSON ``request`` parameter.
        """
        params = [
            ("request", stable_json(prepared_request)),
            ("protocol", self.protocol_id),
        ]
        return WalletInvocation(
            protocol=self.protocol_id,
            wallet_url=wallet_url,
            authorization_url=build_wallet_url(wallet_url, params),
            request_data=prepared_request,
        )

    async def handle_request_uri(
        self,
        request_uri: str,
        verifier: JWTVerifier | None = None,
        client_id: str | None = None,
    ) -> NormalizedAuthorizationRequest:
        """Resolve a by-reference request. Unsupported unless overridden."""
        raise UnsupportedProtocolError(
            f"Protocol {self.protocol_id} does not support request_uri"
        )

    def _stamp(self, data: Mapping[str, Any], **extra: Any) -> dict[str, Any]:
        return {**data, **extra, "timestamp": utc_timestamp()}


class OpenID4VPPlugin(ProtocolPlugin):
    """
    OpenID for Verifiable Presentations.

    A request arrives in one of these shapes:
    1. An authorization request URL (``openid4vp://?client_id=...``) or its
       bare query string, possibly wrapped as ``{"url": ...}``
    2. A mapping (or JSON object text) of authorization parameters
    3. Either of the above referencing a JAR through ``request_uri``

    Args:
        protocol_id: Identifier this instance is registered under.
        resolver: JAR resolver used by handle_request_uri.
        strict_client_id_scheme: Reject non-standard client_id schemes
            instead of logging a warning.
    """

    def __init__(
        self,
        protocol_id: str = "openid4vp",
        resolver: JARResolver | None = None,
        strict_client_id_scheme: bool = False,
    ) -> None:
        self._protocol_id = protocol_id
        self.resolver = resolver or JARResolver()
        self.strict_client_id_scheme = strict_client_id_scheme

    @property
    def protocol_id(self) -> str:
        return self._protocol_id

    def prepare_request(self, request_data: Any) -> NormalizedAuthorizationRequest:
        params = self._parse_authorization_request(request_data)
        self._validate_parameters(params)

        if "request_uri" in params:
            logger.info("OpenID4VP: request_uri detected, JAR resolution required")

        return NormalizedAuthorizationRequest.from_params(params, protocol=self.protocol_id)

    def _parse_authorization_request(self, request_data: Any) -> dict[str, Any]:
        if isinstance(request_data, str):
            text = request_data.strip()
            if text.startswith("{"):
                return self._parse_authorization_request(
                    _load_json_object(text, "OpenID4VP request")
                )
            return self._parse_url_params(text)

        if not isinstance(request_data, Mapping):
            raise ValidationError("OpenID4VP request data must be an object or URL")

        url = request_data.get("url")
        if isinstance(url, str):
            return self._parse_url_params(url)

        params = {k: v for k, v in request_data.items() if v is not None and v != ""}
        if not any(name in params for name in AUTHORIZATION_FIELDS):
            raise ValidationError(
                "Invalid OpenID4VP request format: no authorization parameters found"
            )
        return self._decode_json_fields(params)

    def _parse_url_params(self, url: str) -> dict[str, Any]:
        query = urlsplit(url).query if "?" in url else url

        params: dict[str, Any] = {}
        for key, value in parse_qsl(query):
            # First occurrence wins, as with URLSearchParams.get()
            params.setdefault(key, value)

        if not any(name in params for name in AUTHORIZATION_FIELDS):
            raise ValidationError(
                f"Invalid OpenID4VP request URL: no authorization parameters in {url[:100]!r}"
            )
        return self._decode_json_fields(params)

    def _decode_json_fields(self, params: dict[str, Any]) -> dict[str, Any]:
        for name in JSON_FIELDS:
            value = params.get(name)
            if value is None:
                continue
            if isinstance(value, str):
                params[name] = _load_json_object(value, name)
            elif not isinstance(value, Mapping):
                raise ValidationError(f"{name} must be a JSON object")
            else:
                params[name] = dict(value)
        return params

    def _is_standard_client_id(self, client_id: str) -> bool:
        if client_id.startswith(X509_SAN_DNS_SCHEME + ":"):
            return True
        return urlsplit(client_id).scheme == "https"

    def _validate_parameters(
        self,
        params: Mapping[str, Any],
        allow_request_uri: bool = True,
    ) -> None:
        """Validate authorization request parameters.

        - MUST have client_id
        - client_id should use x509_san_dns or be an https URL (advisory)
        - MUST have exactly one of request_uri, presentation_definition,
          presentation_definition_uri, dcql_query
        - response_mode, if present, MUST be direct_post or direct_post.jwt
        """
        client_id = params.get("client_id")
        if not client_id:
            raise ValidationError("OpenID4VP request missing client_id")
        if not isinstance(client_id, str):
            raise ValidationError("OpenID4VP client_id must be a string")

        if not self._is_standard_client_id(client_id):
            message = (
                f"client_id scheme of {client_id!r} may not be supported. "
                f"Expected '{X509_SAN_DNS_SCHEME}' or https URL"
            )
            if self.strict_client_id_scheme:
                raise ValidationError(message)
            logger.warning("OpenID4VP: %s", message)

        sources = [name for name in REQUIREMENT_FIELDS if params.get(name) is not None]
        if not allow_request_uri and "request_uri" in sources:
            raise ValidationError("Request object must not contain request_uri")
        if len(sources) != 1:
            found = f" (found {', '.join(sources)})" if sources else ""
            raise ValidationError(
                "OpenID4VP request must include exactly one of request_uri, "
                f"presentation_definition, presentation_definition_uri, or dcql_query{found}"
            )

        for name in ("request_uri", "presentation_definition_uri"):
            if name in sources and not isinstance(params[name], str):
                raise ValidationError(f"OpenID4VP {name} must be a string")

        response_mode = params.get("response_mode")
        if response_mode is not None and response_mode not in VALID_RESPONSE_MODES:
            raise ValidationError(
                f"Invalid response_mode: {response_mode}. "
                f"Must be one of: {', '.join(VALID_RESPONSE_MODES)}"
            )

    def validate_response(self, response_data: Any) -> WalletResponse:
        """Validate an OpenID4VP authorization response.

        Response formats:
        1. vp_token, usually with presentation_submission
        2. response, an encrypted JWE (direct_post.jwt) wrapping the above
        3. error / error_description, reported by the wallet
        """
        data = _as_mapping(response_data, "OpenID4VP response")

        if data.get("error"):
            description = data.get("error_description")
            detail = f": {description}" if description else ""
            raise WalletReportedError(f"Wallet returned {data['error']}{detail}")

        submission: PresentationSubmission | None = None
        if data.get("presentation_submission") is not None:
            submission = parse_presentation_submission(data["presentation_submission"])

        if not data.get("vp_token") and not data.get("response"):
            raise ValidationError("OpenID4VP response must include vp_token or encrypted response")

        # DCQL responses for a single credential may legitimately omit it
        if data.get("vp_token") and submission is None:
            logger.warning("OpenID4VP: vp_token present but missing presentation_submission")

        return WalletResponse(
            protocol=self.protocol_id,
            data=data,
            presentation_submission=submission,
        )

    def format_for_wallet(self, prepared_request: Any, wallet_url: str) -> WalletInvocation:
        """Build the wallet authorization URL.

        With request_uri (JAR) only client_id and request_uri are sent; the
        wallet fetches everything else from the request object.
        """
        if not isinstance(prepared_request, NormalizedAuthorizationRequest):
            prepared_request = self.prepare_request(prepared_request)

        if prepared_request.request_uri:
            params = [
                ("client_id", prepared_request.client_id),
                ("request_uri", prepared_request.request_uri),
            ]
        else:
            params = [
                (name, stable_json(value) if name in JSON_FIELDS else str(value))
                for name, value in prepared_request.parameters().items()
            ]

        return WalletInvocation(
            protocol=self.protocol_id,
            wallet_url=wallet_url,
            authorization_url=build_wallet_url(wallet_url, params),
            request_data=prepared_request,
        )

    async def handle_request_uri(
        self,
        request_uri: str,
        verifier: JWTVerifier | None = None,
        client_id: str | None = None,
    ) -> NormalizedAuthorizationRequest:
        """Resolve a JAR and validate the request it carries.

        Args:
            request_uri: URL of the request object.
            verifier: Optional wallet-provided JWT verifier.
            client_id: client_id of the outer request; the request object
                must carry the same value.

        Raises:
            NetworkError, ValidationError, VerificationError
        """
        resolved = await self.resolver.resolve(
            request_uri,
            verifier=verifier,
            protocol=self.protocol_id,
        )

        params = self._decode_json_fields(resolved.parameters())
        self._validate_parameters(params, allow_request_uri=False)

        if client_id is not None and resolved.client_id != client_id:
            raise ValidationError(
                f"client_id mismatch: request has {client_id!r}, "
                f"request object has {resolved.client_id!r}"
            )

        return dataclasses.replace(
            resolved,
            **{name: params.get(name) for name in JSON_FIELDS},
        )

    async def fetch_presentation_definition(self, uri: str) -> dict[str, Any]:
        """Fetch a presentation definition passed by reference.

        Raises:
            NetworkError: If the fetch fails or the body is not a JSON object.
        """
        response = await fetch_reference(
            uri,
            accept="application/json",
            timeout=self.resolver.timeout,
            verify_ssl=self.resolver.verify_ssl,
            client=self.resolver.client,
        )
        try:
            definition = response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON in presentation definition from {uri}") from e
        if not isinstance(definition, dict):
            raise NetworkError(f"Presentation definition from {uri} is not a JSON object")
        return definition


class MDocOpenID4VPPlugin(ProtocolPlugin):
    """mDL (ISO 18013-5 mobile document) over OpenID4VP."""

    @property
    def protocol_id(self) -> str:
        return "mdoc-openid4vp"

    def prepare_request(self, request_data: Any) -> dict[str, Any]:
        data = _as_mapping(request_data, "mDoc OpenID4VP request data")

        if not data.get("doctype") and not data.get("presentation_definition"):
            raise ValidationError("mDoc request must include doctype or presentation_definition")

        return self._stamp(data, format="mdoc")

    def validate_response(self, response_data: Any) -> WalletResponse:
        data = _as_mapping(response_data, "mDoc response")

        if not data.get("vp_token"):
            raise ValidationError("mDoc response must include vp_token")

        return WalletResponse(protocol=self.protocol_id, data=data)


class W3CVCPlugin(ProtocolPlugin):
    """W3C Verifiable Credentials request/response."""

    @property
    def protocol_id(self) -> str:
        return "w3c-vc"

    def prepare_request(self, request_data: Any) -> dict[str, Any]:
        data = _as_mapping(request_data, "W3C VC request data")

        if not data.get("type") and not data.get("credentialSubject"):
            raise ValidationError("W3C VC request must include type or credentialSubject")

        return self._stamp(data)

    def validate_response(self, response_data: Any) -> WalletResponse:
        data = _as_mapping(response_data, "W3C VC response")

        if not data.get("@context") or not data.get("type"):
            raise ValidationError("W3C VC response must include @context and type")

        return WalletResponse(protocol=self.protocol_id, data=data)


class ProtocolRegistry:
    """Lookup table from protocol identifier to plugin.

    Identifiers are opaque and matched exactly; version variants are
    registered as separate identifiers.
    """

    def __init__(self, plugins: Iterable[ProtocolPlugin] = ()) -> None:
        self._plugins: dict[str, ProtocolPlugin] = {}
        for plugin in plugins:
            self.register(plugin)

    def register(self, plugin: ProtocolPlugin) -> None:
        """Register a plugin, replacing any plugin with the same identifier.

        Raises:
            TypeError: If ``plugin`` is not a ProtocolPlugin.
        """
        if not isinstance(plugin, ProtocolPlugin):
            raise TypeError("Plugin must extend ProtocolPlugin")

        protocol_id = plugin.protocol_id
        if protocol_id in self._plugins:
            logger.warning("Protocol plugin for %r is being replaced", protocol_id)

        self._plugins[protocol_id] = plugin
        logger.debug("Registered protocol plugin: %s", protocol_id)

    def get(self, protocol_id: str) -> ProtocolPlugin | None:
        return self._plugins.get(protocol_id)

    def resolve(self, protocol_id: str) -> ProtocolPlugin:
        """Get the plugin for a protocol.

        Raises:
            UnsupportedProtocolError: If no plugin is registered.
        """
        plugin = self._plugins.get(protocol_id)
        if plugin is None:
            raise UnsupportedProtocolError(f"No plugin registered for protocol: {protocol_id}")
        return plugin

    def is_supported(self, protocol_id: str) -> bool:
        return protocol_id in self._plugins

    def supported_protocols(self) -> list[str]:
        return list(self._plugins)

    def prepare_request(self, protocol_id: str, request_data: Any) -> Any:
        return self.resolve(protocol_id).prepare_request(request_data)

    def validate_response(self, protocol_id: str, response_data: Any) -> WalletResponse:
        return self.resolve(protocol_id).validate_response(response_data)

    def format_for_wallet(
        self,
        protocol_id: str,
        prepared_request: Any,
        wallet_url: str,
    ) -> WalletInvocation:
        return self.resolve(protocol_id).format_for_wallet(prepared_request, wallet_url)


def default_registry(
    settings: Settings | None = None,
    resolver: JARResolver | None = None,
) -> ProtocolRegistry:
    """Registry with the built-in plugins.

    Args:
        settings: Settings controlling fetch timeouts and strictness.
        resolver: Shared JAR resolver. Created from settings if not provided.
    """
    settings = settings or Settings()
    resolver = resolver or JARResolver(
        timeout=settings.http_timeout,
        verify_ssl=settings.verify_ssl,
        require_verifier=settings.require_signed_requests,
    )

    plugins: list[ProtocolPlugin] = [
        OpenID4VPPlugin(
            protocol_id,
            resolver=resolver,
            strict_client_id_scheme=settings.strict_client_id_scheme,
        )
        for protocol_id in OPENID4VP_PROTOCOLS
    ]
    plugins.append(MDocOpenID4VPPlugin())
    plugins.append(W3CVCPlugin())
    return ProtocolRegistry(plugins)
