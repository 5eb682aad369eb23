"""
Provider registry.

The single place that maps a ProviderKind tag to its adapter. Adapters are
built lazily on first use so that a missing SnapTrade or Plaid configuration
only affects requests for that provider.
"""

import logging
from typing import Callable, Dict, Optional

from .abstract_provider import AbstractAccountProvider, AbstractTradingProvider, ProviderError, ProviderKind

logger = logging.getLogger(__name__)


def _build_brokerage() -> AbstractAccountProvider:
    from .snaptrade_provider import SnapTradePortfolioProvider
    return SnapTradePortfolioProvider()


def _build_banking() -> AbstractAccountProvider:
    from .plaid_provider import PlaidPortfolioProvider
    return PlaidPortfolioProvider()


def _build_wallet() -> AbstractAccountProvider:
    from .wallet_provider import WalletProvider
    return WalletProvider()


DEFAULT_FACTORIES: Dict[ProviderKind, Callable[[], AbstractAccountProvider]] = {
    ProviderKind.BROKERAGE: _build_brokerage,
    ProviderKind.BANKING: _build_banking,
    ProviderKind.WALLET: _build_wallet,
}


class ProviderRegistry:
    """Resolves adapters by provider kind."""

    def __init__(self, providers: Optional[Dict[ProviderKind, AbstractAccountProvider]] = None,
                 factories: Optional[Dict[ProviderKind, Callable[[], AbstractAccountProvider]]] = None):
        self._providers: Dict[ProviderKind, AbstractAccountProvider] = dict(providers or {})
        self._factories = dict(DEFAULT_FACTORIES if factories is None else factories)

    def register(self, kind: ProviderKind, provider: AbstractAccountProvider) -> None:
        self._providers[ProviderKind(kind)] = provider

    def get(self, kind) -> AbstractAccountProvider:
        """
        Get the adapter for a provider kind.

        Args:
            kind: ProviderKind or its string value

        Raises:
            ValueError: Unknown provider tag
            ProviderError: Adapter could not be configured
        """
        kind = ProviderKind(kind)
        provider = self._providers.get(kind)
        if provider is None:
            factory = self._factories.get(kind)
            if factory is None:
                raise ProviderError(f"No adapter registered for {kind.value}", kind.value, "NOT_CONFIGURED")
            provider = factory()
            self._providers[kind] = provider
            logger.info(f"✅ {kind.value} adapter initialized ({provider.get_provider_name()})")
        return provider

    def get_trading(self, kind=ProviderKind.BROKERAGE) -> AbstractTradingProvider:
        provider = self.get(kind)
        if not isinstance(provider, AbstractTradingProvider):
            raise ProviderError(f"{ProviderKind(kind).value} adapter does not support trading",
                                ProviderKind(kind).value, "UNSUPPORTED_OPERATION", status_code=400)
        return provider


_provider_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    """Get the global provider registry instance."""
    global _provider_registry
    if _provider_registry is None:
        _provider_registry = ProviderRegistry()
    return _provider_registry
