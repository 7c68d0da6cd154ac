"""
Error taxonomy for credential exchanges.

Every error carries a stable ``code`` so it can cross a channel boundary as a
structured :class:`~wallet_selector.models.ExchangeError` and be rebuilt on
the page side with :func:`error_from_code`.
"""

from __future__ import annotations

from wallet_selector.models import ExchangeError


class WalletSelectorError(Exception):
    """Base class for all exchange errors."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_error(self) -> ExchangeError:
        """Convert to the structured form carried by an ExchangeResult."""
        return ExchangeError(code=self.code, message=self.message)


class ValidationError(WalletSelectorError):
    """Raised when a request or response is malformed or incomplete."""

    code = "validation_error"


class UnsupportedProtocolError(WalletSelectorError):
    """Raised when no plugin is registered for a protocol identifier."""

    code = "unsupported_protocol"


class NetworkError(WalletSelectorError):
    """Raised when by-reference material cannot be fetched."""

    code = "network_error"


class VerificationError(WalletSelectorError):
    """Raised when a JAR signature check fails or the verifier faults."""

    code = "verification_error"


class ExchangeTimeoutError(WalletSelectorError):
    """Raised when the wallet response deadline elapses."""

    code = "timeout"


class UserCancelledError(WalletSelectorError):
    """Raised when the user dismisses the wallet selector."""

    code = "user_cancelled"


class WalletReportedError(WalletSelectorError):
    """Raised when the wallet answers with an OAuth error response."""

    code = "wallet_error"


_ERRORS_BY_CODE: dict[str, type[WalletSelectorError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        UnsupportedProtocolError,
        NetworkError,
        VerificationError,
        ExchangeTimeoutError,
        UserCancelledError,
        WalletReportedError,
    )
}


def error_from_code(code: str, message: str) -> WalletSelectorError:
    """Rebuild the exception matching a structured error code.

    Unknown codes map to the :class:`WalletSelectorError` base class.
    """
    cls = _ERRORS_BY_CODE.get(code, WalletSelectorError)
    return cls(message)
