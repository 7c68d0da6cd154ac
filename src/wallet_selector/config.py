"""
Runtime configuration for the wallet selector.

Settings can be built directly or read from ``WALLET_SELECTOR_*``
environment variables with :meth:`Settings.from_env`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

# Reference deadline for a wallet to answer an authorization request
DEFAULT_WALLET_RESPONSE_TIMEOUT = 300.0

# Timeout for fetching by-reference material (JAR, presentation definitions)
DEFAULT_HTTP_TIMEOUT = 30.0

ENV_PREFIX = "WALLET_SELECTOR_"


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Wallet selector settings.

    Attributes:
        enabled: Global switch; when off every exchange falls back to native
        wallet_response_timeout: Seconds to wait for a wallet response
        http_timeout: Timeout in seconds for by-reference fetches
        verify_ssl: Whether to verify TLS certificates on fetches
        require_signed_requests: Reject a JAR when no verifier is available
        strict_client_id_scheme: Reject client_id schemes other than
            x509_san_dns or https instead of only logging a warning
        log_level: Log level name used by the command-line tool
    """
    enabled: bool = True
    wallet_response_timeout: float = DEFAULT_WALLET_RESPONSE_TIMEOUT
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    verify_ssl: bool = True
    require_signed_requests: bool = False
    strict_client_id_scheme: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Read settings from the environment, falling back to defaults.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            return env.get(ENV_PREFIX + name)

        defaults = cls()
        enabled = get("ENABLED")
        response_timeout = get("RESPONSE_TIMEOUT")
        http_timeout = get("HTTP_TIMEOUT")
        verify_ssl = get("VERIFY_SSL")
        require_signed = get("REQUIRE_SIGNED_REQUESTS")
        strict_scheme = get("STRICT_CLIENT_ID_SCHEME")
        log_level = get("LOG_LEVEL")

        return cls(
            enabled=_env_flag(enabled) if enabled is not None else defaults.enabled,
            wallet_response_timeout=(
                float(response_timeout)
                if response_timeout is not None
                else defaults.wallet_response_timeout
            ),
            http_timeout=float(http_timeout) if http_timeout is not None else defaults.http_timeout,
            verify_ssl=_env_flag(verify_ssl) if verify_ssl is not None else defaults.verify_ssl,
            require_signed_requests=(
                _env_flag(require_signed)
                if require_signed is not None
                else defaults.require_signed_requests
            ),
            strict_client_id_scheme=(
                _env_flag(strict_scheme)
                if strict_scheme is not None
                else defaults.strict_client_id_scheme
            ),
            log_level=(log_level or defaults.log_level).upper(),
        )
