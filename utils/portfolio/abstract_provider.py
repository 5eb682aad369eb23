"""
Provider capability interface for multi-provider account aggregation.

This module defines the contract every upstream adapter (banking, brokerage,
wallet) implements. Adapters are stateless: the ProviderCredential for the user
is resolved once per request and passed into every call.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    """Provider tag stored on every connected account."""
    BANKING = "banking"
    BROKERAGE = "brokerage"
    WALLET = "wallet"


@dataclass
class ProviderCredential:
    """Provider-side identity of a platform user."""
    user_id: str                        # Platform user ID
    provider: str                       # ProviderKind value
    provider_user_id: str               # Upstream user ID (SnapTrade userId, Plaid item id, ...)
    secret: Optional[str] = None        # SnapTrade userSecret / Plaid access token

    @classmethod
    def from_record(cls, record) -> "ProviderCredential":
        return cls(
            user_id=record.user_id,
            provider=record.provider,
            provider_user_id=record.provider_user_id,
            secret=record.secret,
        )


@dataclass
class UpstreamAccount:
    """Account as listed by a provider."""
    id: str
    name: str
    institution_name: str
    account_type: Optional[str] = None
    number: Optional[str] = None
    currency: str = "USD"
    balance: Optional[float] = None
    authorization_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UpstreamAuthorization:
    """A standing grant from the user to a brokerage (or bank item)."""
    id: str
    brokerage_name: Optional[str] = None
    brokerage_type: Optional[str] = None
    disabled: bool = False
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = 'disabled' if self.disabled else 'active'
        data['updated_at'] = self.updated_at.isoformat() if self.updated_at else None
        return data


@dataclass
class InstrumentRef:
    """Tradeable instrument pinned for one account."""
    universal_symbol_id: str
    symbol: str
    exchange: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OrderImpact:
    """Broker-side preview of an order."""
    trade_id: str
    estimated_units: Optional[float] = None
    estimated_price: Optional[float] = None
    estimated_cost: Optional[float] = None
    estimated_fees: float = 0.0
    remaining_cash: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop('raw', None)
        return data


@dataclass
class PlacedOrder:
    """Order record returned by place/replace."""
    brokerage_order_id: str
    status: str
    symbol: Optional[str] = None
    action: Optional[str] = None
    total_quantity: Optional[float] = None
    filled_quantity: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop('raw', None)
        return data


class AbstractAccountProvider(ABC):
    """
    Abstract base class for account data providers.

    Implements the Strategy pattern over provider kinds. Section fetchers return
    normalized dicts; list sections carry a stable 'id' per item so the store
    can upsert them.
    """

    kind: ProviderKind
    requires_credential: bool = True
    supports_trading: bool = False

    @abstractmethod
    async def get_account_details(self, credential: Optional[ProviderCredential], account_id: str) -> Dict[str, Any]:
        """
        Get descriptive details for one account.

        Args:
            credential: The user's provider credential
            account_id: Provider's native account ID

        Returns:
            Dict with at least 'id', 'name', 'institution_name', 'currency'

        Raises:
            ProviderError: If unable to fetch details
        """
        pass

    @abstractmethod
    async def get_account_balances(self, credential: Optional[ProviderCredential], account_id: str) -> List[Dict[str, Any]]:
        """Get balances, one entry per currency."""
        pass

    @abstractmethod
    async def get_account_positions(self, credential: Optional[ProviderCredential], account_id: str) -> List[Dict[str, Any]]:
        """Get current holdings."""
        pass

    @abstractmethod
    async def get_account_orders(self, credential: Optional[ProviderCredential], account_id: str) -> List[Dict[str, Any]]:
        """Get recent orders. Providers without orders return an empty list."""
        pass

    @abstractmethod
    async def get_account_activities(self, credential: Optional[ProviderCredential], account_id: str) -> List[Dict[str, Any]]:
        """Get account activity (transactions, dividends, transfers)."""
        pass

    @abstractmethod
    async def list_accounts(self, credential: Optional[ProviderCredential]) -> List[UpstreamAccount]:
        """List every account reachable with the credential."""
        pass

    @abstractmethod
    async def list_authorizations(self, credential: Optional[ProviderCredential]) -> List[UpstreamAuthorization]:
        """List the user's standing authorizations."""
        pass

    @abstractmethod
    async def remove_authorization(
        self,
        credential: Optional[ProviderCredential],
        authorization_id: str,
        idempotency_key: Optional[str] = None,
    ) -> None:
        """
        Revoke an authorization upstream.

        Raises:
            ProviderError: 404-class errors signal the authorization is already gone
        """
        pass

    @abstractmethod
    async def delete_user(self, credential: ProviderCredential, idempotency_key: Optional[str] = None) -> None:
        """Delete the provider-side user."""
        pass

    @abstractmethod
    async def register_user(self, user_id: str) -> ProviderCredential:
        """Register a platform user with the provider and return the new credential."""
        pass

    @abstractmethod
    def get_provider_name(self) -> str:
        """
        Get the name of this provider.

        Returns:
            Provider name string (e.g., 'snaptrade', 'plaid')
        """
        pass


class AbstractTradingProvider(AbstractAccountProvider):
    """Providers that can execute trades."""

    supports_trading = True

    @abstractmethod
    async def resolve_symbol(self, credential: ProviderCredential, account_id: str, symbol: str) -> InstrumentRef:
        """
        Resolve a ticker to an instrument tradeable on the given account.

        Raises:
            ProviderError: status 400 with SYMBOL_NOT_FOUND when nothing matches
        """
        pass

    @abstractmethod
    async def preview_order(
        self,
        credential: ProviderCredential,
        account_id: str,
        instrument: InstrumentRef,
        side: str,
        quantity: float,
        order_type: str,
        time_in_force: str,
        limit_price: Optional[float] = None,
    ) -> OrderImpact:
        """Ask the broker for the impact of an order and a trade id to place it with."""
        pass

    @abstractmethod
    async def place_order(
        self,
        credential: ProviderCredential,
        trade_id: str,
        idempotency_key: Optional[str] = None,
    ) -> PlacedOrder:
        """Execute a previewed trade."""
        pass

    @abstractmethod
    async def cancel_order(
        self,
        credential: ProviderCredential,
        account_id: str,
        order_id: str,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Cancel an open order."""
        pass

    @abstractmethod
    async def replace_order(
        self,
        credential: ProviderCredential,
        account_id: str,
        order_id: str,
        side: str,
        order_type: str,
        time_in_force: str,
        quantity: float,
        limit_price: Optional[float] = None,
        symbol: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PlacedOrder:
        """Replace an open order; the broker answers with the new order."""
        pass


class ProviderError(Exception):
    """Custom exception for provider errors."""

    def __init__(self, message: str, provider: str, error_code: Optional[str] = None,
                 original_error: Optional[Exception] = None, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        self.message = message
        self.provider = provider
        self.error_code = error_code
        self.original_error = original_error
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(f"[{provider}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'error': True,
            'message': self.message,
            'provider': self.provider,
            'error_code': self.error_code,
            'status_code': self.status_code,
            'timestamp': datetime.now().isoformat()
        }
