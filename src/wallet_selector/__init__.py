"""
Wallet Selector - mediation between web pages and credential wallets.

Intercepts Digital Credentials API requests, lets the user pick a wallet and
relays the OpenID4VP exchange.

Supports:
- OpenID4VP authorization requests, by value or by reference (JAR)
- mDL over OpenID4VP and W3C Verifiable Credentials
- DIF Presentation Exchange submission validation
"""

__version__ = "0.1.0"

from wallet_selector.bus import ContextRelay, MessageBus
from wallet_selector.config import Settings
from wallet_selector.correlator import ExchangeCorrelator
from wallet_selector.errors import (
    ExchangeTimeoutError,
    NetworkError,
    UnsupportedProtocolError,
    UserCancelledError,
    ValidationError,
    VerificationError,
    WalletReportedError,
    WalletSelectorError,
)
from wallet_selector.interceptor import NATIVE_FALLBACK, CredentialInterceptor
from wallet_selector.jar import JARResolver
from wallet_selector.models import (
    CredentialRequest,
    DigitalCredential,
    ExchangeResult,
    ExchangeState,
    NormalizedAuthorizationRequest,
    WalletDescriptor,
    WalletResponse,
)
from wallet_selector.protocols import (
    OpenID4VPPlugin,
    ProtocolPlugin,
    ProtocolRegistry,
    default_registry,
)
from wallet_selector.selector import WalletSelector
from wallet_selector.wallets import InMemoryWalletRegistry, eligible_wallets

__all__ = [
    "ContextRelay",
    "CredentialInterceptor",
    "CredentialRequest",
    "DigitalCredential",
    "ExchangeCorrelator",
    "ExchangeResult",
    "ExchangeState",
    "ExchangeTimeoutError",
    "InMemoryWalletRegistry",
    "JARResolver",
    "MessageBus",
    "NATIVE_FALLBACK",
    "NetworkError",
    "NormalizedAuthorizationRequest",
    "OpenID4VPPlugin",
    "ProtocolPlugin",
    "ProtocolRegistry",
    "Settings",
    "UnsupportedProtocolError",
    "UserCancelledError",
    "ValidationError",
    "VerificationError",
    "WalletDescriptor",
    "WalletReportedError",
    "WalletResponse",
    "WalletSelector",
    "WalletSelectorError",
    "default_registry",
    "eligible_wallets",
]
