"""
JWT-secured Authorization Request (JAR) resolution.

Fetches an authorization request object by reference (RFC 9101), decodes it
and delegates signature verification to a caller-supplied verifier. The
resolver itself never checks signatures.
"""

from __future__ import annotations

import base64
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Union

import httpx

from wallet_selector.config import DEFAULT_HTTP_TIMEOUT
from wallet_selector.errors import NetworkError, ValidationError, VerificationError
from wallet_selector.models import (
    JWTVerificationResult,
    NormalizedAuthorizationRequest,
    VerifierOptions,
)

logger = logging.getLogger(__name__)

JAR_TYPE = "oauth-authz-req+jwt"

# (token, options) -> JWTVerificationResult or {"valid": ..., ...}, sync or async
JWTVerifier = Callable[[str, VerifierOptions], Union[Awaitable[Any], Any]]


def base64url_decode(data: str) -> bytes:
    """Decode base64url without padding.

    Args:
        data: Base64url encoded string.

    Returns:
        Decoded bytes.
    """
    padding = 4 - (len(data) % 4)
    if padding != 4:
        data += "=" * padding
    return base64.urlsafe_b64decode(data)


def _decode_segment(segment: str, name: str) -> dict[str, Any]:
    try:
        decoded = json.loads(base64url_decode(segment))
    except ValueError as e:
        raise ValidationError(f"Invalid JWT {name}: {e}") from e
    if not isinstance(decoded, dict):
        raise ValidationError(f"Invalid JWT {name}: expected a JSON object")
    return decoded


def decode_jar(token: str) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a compact JWS and decode its header and payload.

    The signature segment is left untouched.

    Raises:
        ValidationError: If the token is not a three-part JWS with JSON
            object header and payload
    """
    parts = token.strip().split(".")
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise ValidationError("Invalid JWT format: expected header.payload.signature")

    header = _decode_segment(parts[0], "header")
    payload = _decode_segment(parts[1], "payload")
    return header, payload


def options_from_header(header: Mapping[str, Any]) -> VerifierOptions:
    """Build verifier hints from a JOSE header (leaf x5c, alg, kid)."""
    x5c = header.get("x5c")
    certificate = x5c[0] if isinstance(x5c, list) and x5c else None
    return VerifierOptions(
        certificate=certificate,
        algorithm=header.get("alg"),
        kid=header.get("kid"),
    )


def _coerce_result(result: Any) -> JWTVerificationResult:
    if isinstance(result, JWTVerificationResult):
        return result
    if isinstance(result, Mapping) and "valid" in result:
        return JWTVerificationResult(
            valid=bool(result["valid"]),
            payload=result.get("payload"),
            header=result.get("header"),
            error=result.get("error"),
        )
    raise TypeError("Verifier must return an object with {valid, payload?, error?}")


async def verify_jwt(
    token: str,
    verifier: JWTVerifier,
    options: VerifierOptions | None = None,
) -> JWTVerificationResult:
    """Run a verifier and normalize its outcome.

    Never raises: a verifier that throws or returns something malformed is
    reported as ``valid=False`` with the fault as the error.
    """
    try:
        result = verifier(token, options or VerifierOptions())
        if inspect.isawaitable(result):
            result = await result
        return _coerce_result(result)
    except Exception as e:
        return JWTVerificationResult(valid=False, error=str(e) or type(e).__name__)


async def fetch_reference(
    url: str,
    accept: str,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    verify_ssl: bool = True,
    client: httpx.AsyncClient | None = None,
) -> httpx.Response:
    """GET a by-reference document.

    Raises:
        ValidationError: If the URL is malformed
        NetworkError: On transport failure or a non-2xx status
    """
    headers = {"Accept": accept}
    try:
        if client is not None:
            response = await client.get(url, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=timeout, verify=verify_ssl) as new_client:
                response = await new_client.get(url, headers=headers)
        response.raise_for_status()

    except httpx.HTTPStatusError as e:
        raise NetworkError(
            f"HTTP error fetching {url}: {e.response.status_code}"
        ) from e
    except httpx.InvalidURL as e:
        raise ValidationError(f"Invalid URL {url!r}: {e}") from e
    except httpx.RequestError as e:
        raise NetworkError(f"Network error fetching {url}: {e}") from e

    return response


class JARResolver:
    """Resolver for request_uri references to signed authorization requests."""

    def __init__(
        self,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        verify_ssl: bool = True,
        require_verifier: bool = False,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            timeout: HTTP request timeout in seconds.
            verify_ssl: Whether to verify SSL certificates.
            require_verifier: Reject requests when no verifier is supplied
                instead of accepting the unverified payload.
            client: Shared HTTP client. A short-lived one is created per
                fetch if not provided.
        """
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.require_verifier = require_verifier
        self.client = client

    async def fetch(self, request_uri: str) -> str:
        """Fetch the compact JWS found at ``request_uri``."""
        response = await fetch_reference(
            request_uri,
            accept=f"application/{JAR_TYPE}, application/jwt",
            timeout=self.timeout,
            verify_ssl=self.verify_ssl,
            client=self.client,
        )
        return response.text.strip()

    async def resolve(
        self,
        request_uri: str,
        verifier: JWTVerifier | None = None,
        protocol: str = "openid4vp",
    ) -> NormalizedAuthorizationRequest:
        """Resolve a request_uri to its authorization request.

        Args:
            request_uri: URL of the request object.
            verifier: Signature verifier supplied by the wallet integration.
            protocol: Protocol identifier to stamp on the result.

        Returns:
            The decoded payload as a NormalizedAuthorizationRequest, with the
            JOSE header and the verification outcome attached.

        Raises:
            NetworkError: If the request object cannot be fetched.
            ValidationError: If the token is malformed or has the wrong typ.
            VerificationError: If the verifier rejects the token or faults,
                or a verifier is required but missing.
        """
        token = await self.fetch(request_uri)
        header, payload = decode_jar(token)

        if header.get("typ") != JAR_TYPE:
            raise ValidationError(
                f"Invalid JWT type {header.get('typ')!r}: expected {JAR_TYPE}"
            )

        if verifier is not None:
            options = options_from_header(header)
            logger.debug(
                "Verifying JAR from %s (alg=%s, kid=%s)",
                request_uri, options.algorithm, options.kid,
            )
            result = await verify_jwt(token, verifier, options)
            if not result.valid:
                raise VerificationError(
                    f"JWT signature verification failed: {result.error or 'Invalid signature'}"
                )
            signature_verified = True
        elif self.require_verifier:
            raise VerificationError(
                f"Signed request required but no verifier is available for {request_uri}"
            )
        else:
            logger.warning(
                "JAR signature verification skipped for %s: no verifier provided",
                request_uri,
            )
            signature_verified = False

        request = NormalizedAuthorizationRequest.from_params(payload, protocol=protocol)
        request.jar_header = header
        request.jar_signature_verified = signature_verified
        return request
