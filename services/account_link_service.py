"""
Account Link Service

Entry points that bring new external accounts under a user:

- Banking: create a Plaid Link token, then exchange the public token the
  frontend gets back for an Item access token and link the Item's accounts.
  A user holds one Item; linking a new one revokes and removes the previous.
- Brokerage: register the user with SnapTrade if needed and hand out the
  connection portal URL. Connections arrive later through force sync or the
  SnapTrade webhook.
- Wallet: validate the address and link it directly (no credential).
"""

import logging
from typing import Any, Dict, Optional

from utils.db.account_repository import AccountRepository, get_account_repository
from utils.db.connection_repository import ConnectionRepository, get_connection_repository
from utils.portfolio.abstract_provider import ProviderCredential, ProviderKind
from utils.portfolio.error_classifier import (
    ClassifiedError, ErrorKind, call_with_retry, classify_provider_error, to_classified,
)
from utils.portfolio.provider_registry import ProviderRegistry, get_provider_registry
from utils.portfolio.wallet_provider import WALLET_NATIVE_SYMBOL, WALLET_NETWORK_NAME, normalize_wallet_address

from services.connection_reconciliation_service import (
    ConnectionReconciliationService, get_connection_reconciliation_service,
)

logger = logging.getLogger(__name__)

BANKING = ProviderKind.BANKING
BROKERAGE = ProviderKind.BROKERAGE
WALLET = ProviderKind.WALLET


class AccountLinkService:
    """Service for linking banking items, brokerage connections and wallets."""

    def __init__(self, registry: Optional[ProviderRegistry] = None,
                 connection_repository: Optional[ConnectionRepository] = None,
                 account_repository: Optional[AccountRepository] = None,
                 reconciliation_service: Optional[ConnectionReconciliationService] = None):
        self.registry = registry or get_provider_registry()
        self.connections = connection_repository or get_connection_repository()
        self.accounts = account_repository or get_account_repository()
        self.reconciliation = reconciliation_service or get_connection_reconciliation_service()

    # === Banking ===

    async def create_banking_link_token(self, user_id: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        provider = self.registry.get(BANKING)
        try:
            link_token = await call_with_retry('banking.create_link_token', provider.create_link_token, user_id)
        except Exception as e:
            raise to_classified(e, 'banking.create_link_token', request_id=request_id) from e
        return {'link_token': link_token}

    async def exchange_banking_public_token(self, user_id: str, public_token: str,
                                            institution_name: Optional[str] = None,
                                            request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Exchange a Plaid public token, store the Item credential and link its accounts.

        Raises:
            ClassifiedError: The exchange failed (nothing stored), or the Item's
                accounts could not be listed (credential stored, retry with force sync)
        """
        if not public_token:
            raise ClassifiedError(ErrorKind.VALIDATION, 'public_token is required', provider=BANKING.value)

        provider = self.registry.get(BANKING)
        # Public tokens are single use, so the exchange is never retried
        try:
            credential = await provider.exchange_public_token(user_id, public_token)
        except Exception as e:
            raise to_classified(e, 'banking.exchange_public_token', request_id=request_id) from e

        previous = self.connections.get_credential(user_id, BANKING.value)
        self.connections.save_credential(user_id, BANKING.value, credential.provider_user_id, credential.secret)
        if previous is not None and previous.provider_user_id != credential.provider_user_id:
            await self._replace_banking_item(user_id, ProviderCredential.from_record(previous), request_id)

        try:
            upstream_accounts = await call_with_retry('banking.list_accounts', provider.list_accounts, credential)
        except Exception as e:
            raise to_classified(e, 'banking.list_accounts', request_id=request_id) from e

        linked = []
        for account in upstream_accounts:
            stored = self.accounts.upsert_connected_account(
                user_id, BANKING.value, account.id,
                authorization_id=account.authorization_id or credential.provider_user_id,
                account_name=account.name,
                institution_name=institution_name or account.institution_name,
                account_subtype=account.account_type,
                account_mask=account.number,
                currency=account.currency,
                balance=account.balance,
            )
            linked.append(stored.to_dict())

        logger.info(f"✅ Linked {len(linked)} banking accounts from item {credential.provider_user_id} for user {user_id}")
        return {'item_id': credential.provider_user_id, 'accounts': linked, 'count': len(linked)}

    async def _replace_banking_item(self, user_id: str, previous: ProviderCredential,
                                    request_id: Optional[str]) -> None:
        """Revoke the user's previous Item upstream and remove its accounts locally."""
        provider = self.registry.get(BANKING)
        old_item_id = previous.provider_user_id
        try:
            await call_with_retry(
                'banking.remove_authorization', provider.remove_authorization, previous, old_item_id,
                mutating=True, idempotency_key=f"revoke:{old_item_id}", removal=True,
            )
            logger.info(f"✅ Revoked previous banking item {old_item_id} for user {user_id}")
        except Exception as e:
            if classify_provider_error(e, removal=True) == ErrorKind.ALREADY_GONE:
                logger.info(f"Previous banking item {old_item_id} already gone upstream")
            else:
                logger.warning(
                    f"⚠️ Could not revoke previous banking item {old_item_id} for user {user_id} "
                    f"(request_id={request_id}): {e}"
                )
        self.connections.remove_authorization_locally(user_id, BANKING.value, None, old_item_id)

    # === Brokerage ===

    async def create_brokerage_portal(self, user_id: str, broker: Optional[str] = None,
                                      connection_type: Optional[str] = None,
                                      redirect_url: Optional[str] = None,
                                      reconnect: Optional[str] = None,
                                      request_id: Optional[str] = None) -> Dict[str, Any]:
        """Register the user if needed and return the SnapTrade connection portal URL."""
        await self.reconciliation.register_user(user_id, request_id=request_id)
        record = self.connections.get_credential(user_id, BROKERAGE.value)
        if record is None:
            raise ClassifiedError(ErrorKind.NOT_REGISTERED, provider=BROKERAGE.value)
        credential = ProviderCredential.from_record(record)

        provider = self.registry.get(BROKERAGE)
        try:
            redirect_uri = await call_with_retry(
                'brokerage.connection_portal', provider.get_connection_portal_url, credential,
                broker=broker, connection_type=connection_type, redirect_url=redirect_url, reconnect=reconnect,
            )
        except Exception as e:
            raise to_classified(e, 'brokerage.connection_portal', request_id=request_id) from e
        return {'redirect_uri': redirect_uri, 'reconnect': reconnect}

    # === Wallet ===

    def connect_wallet(self, user_id: str, address: str, label: Optional[str] = None,
                       request_id: Optional[str] = None) -> Dict[str, Any]:
        """Link a wallet by address. The address is validated and stored lowercased."""
        try:
            normalized = normalize_wallet_address(address)
        except Exception as e:
            raise to_classified(e, 'wallet.connect', request_id=request_id) from e

        account = self.accounts.upsert_connected_account(
            user_id, WALLET.value, normalized,
            account_name=label or f"{WALLET_NETWORK_NAME} wallet {normalized[:6]}…{normalized[-4:]}",
            institution_name=WALLET_NETWORK_NAME,
            account_subtype='wallet',
            account_mask=normalized[-4:],
            currency=WALLET_NATIVE_SYMBOL,
        )
        logger.info(f"✅ Linked wallet {normalized} for user {user_id}")
        return account.to_dict()


_account_link_service: Optional[AccountLinkService] = None


def get_account_link_service() -> AccountLinkService:
    """Get the global account link service instance."""
    global _account_link_service
    if _account_link_service is None:
        _account_link_service = AccountLinkService()
    return _account_link_service
