"""
Plaid API provider implementation.

This module implements the banking adapter on top of Plaid's SDK: accounts,
real-time balances, investment holdings and transactions. The stored
ProviderCredential carries the Item access token as its secret and the Item id
as its provider user id.
"""

import asyncio
import json
import logging
import os
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

# Plaid SDK imports - using patterns from working quickstart
import plaid
from plaid.api import plaid_api
from plaid.configuration import Configuration
from plaid.model.accounts_balance_get_request import AccountsBalanceGetRequest
from plaid.model.accounts_balance_get_request_options import AccountsBalanceGetRequestOptions
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.accounts_get_request_options import AccountsGetRequestOptions
from plaid.model.country_code import CountryCode
from plaid.model.investments_holdings_get_request import InvestmentsHoldingsGetRequest
from plaid.model.investment_holdings_get_request_options import InvestmentHoldingsGetRequestOptions
from plaid.model.item_get_request import ItemGetRequest
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.item_remove_request import ItemRemoveRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_get_request import TransactionsGetRequest
from plaid.model.transactions_get_request_options import TransactionsGetRequestOptions

from .abstract_provider import (
    AbstractAccountProvider, ProviderCredential, ProviderError, ProviderKind,
    UpstreamAccount, UpstreamAuthorization,
)
from .constants import (
    ACTIVITIES_LOOKBACK_DAYS, PLAID_CLIENT_NAME, PLAID_COUNTRY_CODES, PLAID_LINK_PRODUCTS,
)

logger = logging.getLogger(__name__)

# Holdings are simply absent for depository/credit items
NO_HOLDINGS_CODES = frozenset({
    'PRODUCTS_NOT_SUPPORTED', 'NO_INVESTMENT_ACCOUNTS', 'NO_INVESTMENT_AUTH_ACCOUNTS',
    'PRODUCT_NOT_ENABLED',
})


class PlaidPortfolioProvider(AbstractAccountProvider):
    """
    Plaid API provider implementation.

    Provides bank, card and investment account data across the institutions
    Plaid supports. Banking accounts have no orders; get_account_orders always
    returns an empty list.
    """

    kind = ProviderKind.BANKING
    requires_credential = True

    def __init__(self, client: Optional[plaid_api.PlaidApi] = None):
        """Initialize Plaid client with proper configuration."""
        self.provider_name = "plaid"  # Set provider name FIRST
        self.client = client or self._initialize_plaid_client()

    def _initialize_plaid_client(self) -> plaid_api.PlaidApi:
        plaid_client_id = os.getenv("PLAID_CLIENT_ID")
        plaid_secret = os.getenv("PLAID_SECRET")
        plaid_env = os.getenv("PLAID_ENV", "sandbox")

        if not plaid_client_id or not plaid_secret:
            raise ProviderError(
                "PLAID_CLIENT_ID and PLAID_SECRET must be set in environment",
                "plaid",  # Use string literal
                "MISSING_CREDENTIALS"
            )

        if plaid_env == "production":
            host = plaid.Environment.Production
        elif plaid_env == "sandbox":
            host = plaid.Environment.Sandbox
        else:
            host = plaid.Environment.Sandbox
            logger.warning(f"Unknown PLAID_ENV '{plaid_env}', defaulting to sandbox")

        configuration = Configuration(
            host=host,
            api_key={
                'clientId': plaid_client_id,
                'secret': plaid_secret,
            }
        )
        client = plaid_api.PlaidApi(plaid.ApiClient(configuration))
        logger.info(f"✅ Plaid client initialized for {plaid_env} environment")
        return client

    def get_provider_name(self) -> str:
        return self.provider_name

    async def _call(self, operation: str, func, request) -> Dict[str, Any]:
        """Run a blocking Plaid call in a worker thread; return the response as a dict."""
        try:
            response = await asyncio.to_thread(func, request)
        except plaid.ApiException as e:
            raise self._provider_error(operation, e) from e
        # Convert to dictionary first (following quickstart pattern)
        return response.to_dict()

    def _provider_error(self, operation: str, error: plaid.ApiException) -> ProviderError:
        body = getattr(error, 'body', None) or '{}'
        try:
            payload = json.loads(body) if isinstance(body, (str, bytes, bytearray)) else dict(body)
        except (TypeError, ValueError):
            payload = {}

        retry_after = None
        headers = getattr(error, 'headers', None)
        if headers and headers.get('Retry-After'):
            try:
                retry_after = float(headers.get('Retry-After'))
            except (TypeError, ValueError):
                retry_after = None

        error_code = payload.get('error_code')
        message = payload.get('error_message') or str(error)
        logger.error(f"Plaid API error during {operation}: status={error.status} code={error_code} {message}")
        return ProviderError(
            f"{operation} failed: {message}",
            self.provider_name,
            error_code,
            error,
            status_code=error.status,
            retry_after=retry_after,
        )

    @staticmethod
    def _access_token(credential: ProviderCredential) -> str:
        return credential.secret

    # === Account sections ===

    async def get_account_details(self, credential: ProviderCredential, account_id: str) -> Dict[str, Any]:
        data = await self._call(
            'get_account_details',
            self.client.accounts_get,
            AccountsGetRequest(
                access_token=self._access_token(credential),
                options=AccountsGetRequestOptions(account_ids=[account_id]),
            ),
        )
        account = self._find_account(data, account_id)
        institution = (data.get('item') or {}).get('institution_id')
        balances = account.get('balances') or {}
        return {
            'id': account['account_id'],
            'name': account.get('official_name') or account.get('name') or 'Bank Account',
            'number': account.get('mask'),
            'institution_name': institution or 'Unknown',
            'account_type': str(account.get('subtype') or account.get('type')),
            'currency': balances.get('iso_currency_code') or 'USD',
            'total_value': balances.get('current'),
            'authorization_id': (data.get('item') or {}).get('item_id'),
        }

    async def get_account_balances(self, credential: ProviderCredential, account_id: str) -> List[Dict[str, Any]]:
        data = await self._call(
            'get_account_balances',
            self.client.accounts_balance_get,
            AccountsBalanceGetRequest(
                access_token=self._access_token(credential),
                options=AccountsBalanceGetRequestOptions(account_ids=[account_id]),
            ),
        )
        balances = self._find_account(data, account_id).get('balances') or {}
        currency = balances.get('iso_currency_code') or balances.get('unofficial_currency_code') or 'USD'
        return [{
            'id': currency,
            'currency': currency,
            'current': balances.get('current'),
            'available': balances.get('available'),
            'limit': balances.get('limit'),
        }]

    async def get_account_positions(self, credential: ProviderCredential, account_id: str) -> List[Dict[str, Any]]:
        try:
            data = await self._call(
                'get_account_positions',
                self.client.investments_holdings_get,
                InvestmentsHoldingsGetRequest(
                    access_token=self._access_token(credential),
                    options=InvestmentHoldingsGetRequestOptions(account_ids=[account_id]),
                ),
            )
        except ProviderError as e:
            if e.error_code in NO_HOLDINGS_CODES:
                return []
            raise

        securities = {sec['security_id']: sec for sec in data.get('securities', [])}
        positions = []
        for holding in data.get('holdings', []):
            security = securities.get(holding.get('security_id'), {})
            symbol = security.get('ticker_symbol') or security.get('name') or 'UNKNOWN'
            positions.append({
                'id': holding.get('security_id') or symbol,
                'symbol': symbol,
                'description': security.get('name', symbol),
                'security_type': str(security.get('type') or 'equity'),
                'units': holding.get('quantity'),
                'price': holding.get('institution_price'),
                'average_purchase_price': (
                    holding['cost_basis'] / holding['quantity']
                    if holding.get('cost_basis') and holding.get('quantity') else None
                ),
                'market_value': holding.get('institution_value'),
                'currency': holding.get('iso_currency_code') or 'USD',
            })
        return positions

    async def get_account_orders(self, credential: ProviderCredential, account_id: str) -> List[Dict[str, Any]]:
        return []

    async def get_account_activities(self, credential: ProviderCredential, account_id: str) -> List[Dict[str, Any]]:
        end_date = date.today()
        start_date = end_date - timedelta(days=ACTIVITIES_LOOKBACK_DAYS)
        data = await self._call(
            'get_account_activities',
            self.client.transactions_get,
            TransactionsGetRequest(
                access_token=self._access_token(credential),
                start_date=start_date,
                end_date=end_date,
                options=TransactionsGetRequestOptions(account_ids=[account_id]),
            ),
        )
        activities = []
        for txn in data.get('transactions', []):
            activities.append({
                'id': txn['transaction_id'],
                'type': 'withdrawal' if (txn.get('amount') or 0) > 0 else 'deposit',
                'symbol': None,
                'description': txn.get('merchant_name') or txn.get('name', ''),
                # Plaid reports outflows as positive amounts
                'amount': -txn['amount'] if txn.get('amount') is not None else None,
                'currency': txn.get('iso_currency_code') or 'USD',
                'trade_date': str(txn.get('date')) if txn.get('date') else None,
                'pending': bool(txn.get('pending', False)),
            })
        return activities

    # === Accounts & authorizations ===

    async def list_accounts(self, credential: ProviderCredential) -> List[UpstreamAccount]:
        data = await self._call(
            'list_accounts',
            self.client.accounts_get,
            AccountsGetRequest(access_token=self._access_token(credential)),
        )
        item = data.get('item') or {}
        accounts = []
        for account in data.get('accounts', []):
            balances = account.get('balances') or {}
            accounts.append(UpstreamAccount(
                id=account['account_id'],
                name=account.get('name') or 'Bank Account',
                institution_name=item.get('institution_id') or 'Unknown',
                account_type=str(account.get('subtype') or account.get('type')),
                number=account.get('mask'),
                currency=balances.get('iso_currency_code') or 'USD',
                balance=balances.get('current'),
                authorization_id=item.get('item_id'),
            ))
        return accounts

    async def list_authorizations(self, credential: ProviderCredential) -> List[UpstreamAuthorization]:
        data = await self._call(
            'list_authorizations',
            self.client.item_get,
            ItemGetRequest(access_token=self._access_token(credential)),
        )
        item = data.get('item') or {}
        return [UpstreamAuthorization(
            id=item.get('item_id', credential.provider_user_id),
            brokerage_name=item.get('institution_id'),
            brokerage_type='banking',
            disabled=item.get('error') is not None,
        )]

    async def remove_authorization(self, credential: ProviderCredential, authorization_id: str,
                                   idempotency_key: Optional[str] = None) -> None:
        logger.info(f"Removing Plaid item {authorization_id} for user {credential.user_id}")
        await self._call(
            'remove_authorization',
            self.client.item_remove,
            ItemRemoveRequest(access_token=self._access_token(credential)),
        )

    async def delete_user(self, credential: ProviderCredential, idempotency_key: Optional[str] = None) -> None:
        # Plaid has no user object beyond the Item, which remove_authorization already revoked
        logger.info(f"No Plaid user to delete for user {credential.user_id}")

    async def register_user(self, user_id: str) -> ProviderCredential:
        raise ProviderError(
            "Banking accounts are linked by creating a link token and exchanging "
            "the resulting public token, not by registration",
            self.provider_name,
            "UNSUPPORTED_OPERATION",
            status_code=400,
        )

    # === Public Token Exchange Methods ===

    async def create_link_token(self, user_id: str) -> str:
        """
        Create a Plaid Link token for connecting a new banking item.

        Args:
            user_id: Unique user identifier

        Returns:
            Link token string for frontend Plaid Link initialization
        """
        logger.info(f"Creating Plaid Link token for user {user_id}")
        request = LinkTokenCreateRequest(
            products=[Products(product) for product in PLAID_LINK_PRODUCTS],
            client_name=PLAID_CLIENT_NAME,
            country_codes=[CountryCode(code) for code in PLAID_COUNTRY_CODES],
            language='en',
            user=LinkTokenCreateRequestUser(client_user_id=user_id),
        )
        data = await self._call('create_link_token', self.client.link_token_create, request)
        link_token = data.get('link_token')
        if not link_token:
            raise ProviderError(
                "Plaid returned no link token",
                self.provider_name,
                "LINK_TOKEN_ERROR",
                status_code=502,
            )
        logger.info(f"✅ Link token created successfully for user {user_id}")
        return link_token

    async def exchange_public_token(self, user_id: str, public_token: str) -> ProviderCredential:
        """
        Exchange a Plaid Link public token for the Item's access token.

        Returns:
            Credential holding the Item id and its access token
        """
        logger.info(f"Exchanging Plaid public token for user {user_id}")
        data = await self._call(
            'exchange_public_token',
            self.client.item_public_token_exchange,
            ItemPublicTokenExchangeRequest(public_token=public_token),
        )
        logger.info(f"✅ Plaid item {data['item_id']} linked for user {user_id}")
        return ProviderCredential(
            user_id=user_id,
            provider=self.kind.value,
            provider_user_id=data['item_id'],
            secret=data['access_token'],
        )

    def _find_account(self, data: Dict[str, Any], account_id: str) -> Dict[str, Any]:
        for account in data.get('accounts', []):
            if account.get('account_id') == account_id:
                return account
        raise ProviderError(
            f"Account {account_id} not found in Plaid item",
            self.provider_name,
            "ACCOUNT_NOT_FOUND",
            status_code=404,
        )
