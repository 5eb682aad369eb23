"""
Provider adapters for multi-provider account aggregation.

This package provides one capability interface over banking (Plaid),
brokerage (SnapTrade) and wallet (JSON-RPC) upstreams, plus the error
classification shared by every service that calls them.
"""

from .abstract_provider import (
    AbstractAccountProvider,
    AbstractTradingProvider,
    InstrumentRef,
    OrderImpact,
    PlacedOrder,
    ProviderCredential,
    ProviderError,
    ProviderKind,
    UpstreamAccount,
    UpstreamAuthorization,
)
from .error_classifier import ClassifiedError, ErrorKind, call_with_retry, classify_provider_error, to_classified
from .provider_registry import ProviderRegistry, get_provider_registry

__all__ = [
    'AbstractAccountProvider',
    'AbstractTradingProvider',
    'InstrumentRef',
    'OrderImpact',
    'PlacedOrder',
    'ProviderCredential',
    'ProviderError',
    'ProviderKind',
    'UpstreamAccount',
    'UpstreamAuthorization',
    'ClassifiedError',
    'ErrorKind',
    'call_with_retry',
    'classify_provider_error',
    'to_classified',
    'ProviderRegistry',
    'get_provider_registry',
]
