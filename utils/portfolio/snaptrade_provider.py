"""
SnapTrade API provider implementation.

This module implements the brokerage adapter on top of SnapTrade's SDK:
account sections (details, balances, positions, orders, activities),
authorization management and TRADE EXECUTION (symbol resolution, order impact,
place, cancel, replace).

The SDK is synchronous; every call is pushed to a worker thread so the event
loop keeps serving other sections while SnapTrade answers.
"""

import asyncio
import json
import logging
import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

# SnapTrade SDK imports
from snaptrade_client import SnapTrade
from snaptrade_client.exceptions import ApiException

from .abstract_provider import (
    AbstractTradingProvider, InstrumentRef, OrderImpact, PlacedOrder,
    ProviderCredential, ProviderError, ProviderKind, UpstreamAccount,
    UpstreamAuthorization,
)
from .constants import ACTIVITIES_LOOKBACK_DAYS, SECURITY_TYPE_MAP, US_EXCHANGES

logger = logging.getLogger(__name__)

# Our order vocabulary -> SnapTrade's
ORDER_TYPE_MAP = {'MARKET': 'Market', 'LIMIT': 'Limit'}
TIME_IN_FORCE_MAP = {'DAY': 'Day', 'GTC': 'GTC', 'FOK': 'FOK', 'IOC': 'IOC'}


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse SnapTrade ISO timestamps into naive UTC datetimes."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            logger.warning(f"Unparseable SnapTrade timestamp: {value}")
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _symbol_of(entry: Any) -> Optional[str]:
    """Pull the ticker out of SnapTrade's (sometimes double) nested symbol objects."""
    while isinstance(entry, dict):
        if isinstance(entry.get('symbol'), (dict, str)):
            entry = entry['symbol']
        else:
            return entry.get('raw_symbol') or entry.get('ticker')
    return entry


class SnapTradePortfolioProvider(AbstractTradingProvider):
    """
    SnapTrade API provider implementation.

    Provides access to investment accounts across 20+ brokerages including:
    - TD Ameritrade, Charles Schwab, Fidelity, E*TRADE, etc.
    - Holdings, balances, orders and activities (read)
    - Trade execution capabilities (write)
    - Brokerage authorization management
    """

    kind = ProviderKind.BROKERAGE
    requires_credential = True

    def __init__(self, client: Optional[SnapTrade] = None):
        """Initialize SnapTrade client with proper configuration."""
        self.provider_name = "snaptrade"  # Set provider name FIRST
        self.client = client or self._initialize_snaptrade_client()

    def _initialize_snaptrade_client(self) -> SnapTrade:
        """Initialize SnapTrade API client."""
        consumer_key = os.getenv("SNAPTRADE_CONSUMER_KEY")
        client_id = os.getenv("SNAPTRADE_CLIENT_ID")

        if not consumer_key or not client_id:
            raise ProviderError(
                "SNAPTRADE_CONSUMER_KEY and SNAPTRADE_CLIENT_ID must be set in environment",
                "snaptrade",  # Use string literal instead of method call
                "MISSING_CREDENTIALS"
            )

        client = SnapTrade(
            consumer_key=consumer_key,
            client_id=client_id,
        )
        logger.info("SnapTrade client initialized successfully")
        return client

    def get_provider_name(self) -> str:
        return self.provider_name

    # === Plumbing ===

    async def _call(self, operation: str, func, **kwargs) -> Any:
        """Run a blocking SDK call in a worker thread and normalize its errors."""
        try:
            response = await asyncio.to_thread(func, **kwargs)
        except ApiException as e:
            raise self._provider_error(operation, e) from e
        return response.body

    def _provider_error(self, operation: str, error: ApiException) -> ProviderError:
        status = getattr(error, 'status', None)
        api_response = getattr(error, 'api_response', None)

        body = getattr(error, 'body', None)
        if body is None and api_response is not None:
            body = getattr(api_response, 'body', None)
        if isinstance(body, (bytes, bytearray)):
            body = body.decode('utf-8', errors='replace')
        if isinstance(body, str):
            try:
                body = json.loads(body)
            except ValueError:
                body = {'detail': body}
        if not isinstance(body, dict):
            body = {}

        headers = getattr(error, 'headers', None)
        if headers is None and api_response is not None:
            headers = getattr(api_response, 'headers', None)
        retry_after = None
        if headers:
            retry_after = _to_float(headers.get('Retry-After') or headers.get('retry-after'))

        error_code = body.get('code') or body.get('error_code')
        message = body.get('detail') or body.get('message') or getattr(error, 'reason', None) or str(error)
        logger.error(f"SnapTrade API error during {operation}: status={status} code={error_code} {message}")
        return ProviderError(
            f"{operation} failed: {message}",
            self.provider_name,
            str(error_code) if error_code is not None else None,
            error,
            status_code=status,
            retry_after=retry_after,
        )

    @staticmethod
    def _user_kwargs(credential: ProviderCredential) -> Dict[str, str]:
        return {'user_id': credential.provider_user_id, 'user_secret': credential.secret}

    # === Account sections ===

    async def get_account_details(self, credential: ProviderCredential, account_id: str) -> Dict[str, Any]:
        body = await self._call(
            'get_account_details',
            self.client.account_information.get_user_account_details,
            account_id=account_id,
            **self._user_kwargs(credential),
        )
        balance = (body.get('balance') or {}).get('total') or {}
        meta = body.get('meta') or {}
        return {
            'id': str(body.get('id', account_id)),
            'name': body.get('name') or 'Investment Account',
            'number': body.get('number'),
            'institution_name': body.get('institution_name', 'Unknown'),
            'account_type': body.get('raw_type') or meta.get('type'),
            'status': body.get('status'),
            'currency': balance.get('currency') or 'USD',
            'total_value': _to_float(balance.get('amount')),
            'authorization_id': body.get('brokerage_authorization'),
        }

    async def get_account_balances(self, credential: ProviderCredential, account_id: str) -> List[Dict[str, Any]]:
        body = await self._call(
            'get_account_balances',
            self.client.account_information.get_user_account_balance,
            account_id=account_id,
            **self._user_kwargs(credential),
        )
        balances = []
        for balance in body or []:
            currency_info = balance.get('currency') or {}
            currency_code = currency_info.get('code', 'USD') if isinstance(currency_info, dict) else str(currency_info)
            balances.append({
                'id': currency_code,
                'currency': currency_code,
                'cash': _to_float(balance.get('cash')),
                'buying_power': _to_float(balance.get('buying_power')),
            })
        return balances

    async def get_account_positions(self, credential: ProviderCredential, account_id: str) -> List[Dict[str, Any]]:
        body = await self._call(
            'get_account_positions',
            self.client.account_information.get_user_account_positions,
            account_id=account_id,
            **self._user_kwargs(credential),
        )
        positions = []
        for pos in body or []:
            # SnapTrade has double-nested structure: pos['symbol']['symbol'] is the symbol info dict
            outer_symbol = pos.get('symbol', {})
            symbol_info = outer_symbol.get('symbol', {}) if isinstance(outer_symbol, dict) else {}
            if not isinstance(symbol_info, dict):
                symbol_info = {'symbol': str(symbol_info)}

            symbol_str = symbol_info.get('symbol', 'UNKNOWN')
            security_type_obj = symbol_info.get('type') or {}
            snaptrade_code = security_type_obj.get('code', 'cs') if isinstance(security_type_obj, dict) else 'cs'

            units = _to_float(pos.get('units')) or 0.0
            price = _to_float(pos.get('price')) or 0.0
            average_price = _to_float(pos.get('average_purchase_price'))
            # SnapTrade's 'value' field is often 0 or stale; price * units is authoritative
            market_value = price * units if price > 0 and units > 0 else 0.0

            positions.append({
                'id': str(symbol_info.get('id') or symbol_str),
                'symbol': symbol_str,
                'description': symbol_info.get('description', symbol_str),
                'security_type': SECURITY_TYPE_MAP.get(snaptrade_code, 'equity'),
                'units': units,
                'price': price,
                'average_purchase_price': average_price,
                'market_value': market_value,
                'open_pnl': _to_float(pos.get('open_pnl')),
                'currency': (pos.get('currency') or {}).get('code', 'USD') if isinstance(pos.get('currency'), dict) else 'USD',
            })
        return positions

    async def get_account_orders(self, credential: ProviderCredential, account_id: str) -> List[Dict[str, Any]]:
        body = await self._call(
            'get_account_orders',
            self.client.account_information.get_user_account_orders,
            account_id=account_id,
            **self._user_kwargs(credential),
        )
        return [self._normalize_order(order) for order in body or []]

    async def get_account_activities(self, credential: ProviderCredential, account_id: str) -> List[Dict[str, Any]]:
        end_date = date.today()
        start_date = end_date - timedelta(days=ACTIVITIES_LOOKBACK_DAYS)
        body = await self._call(
            'get_account_activities',
            self.client.account_information.get_account_activities,
            account_id=account_id,
            start_date=start_date,
            end_date=end_date,
            **self._user_kwargs(credential),
        )
        records = body.get('data', []) if isinstance(body, dict) else (body or [])

        activities = []
        for activity in records:
            activity_type = str(activity.get('type') or 'other')
            currency = activity.get('currency') or {}
            activities.append({
                'id': str(activity.get('id')),
                'type': self._normalize_transaction_type(activity_type),
                'raw_type': activity_type,
                'symbol': _symbol_of(activity.get('symbol')),
                'description': activity.get('description', ''),
                'amount': _to_float(activity.get('amount')),
                'units': _to_float(activity.get('units')),
                'price': _to_float(activity.get('price')),
                'fee': _to_float(activity.get('fee')),
                'currency': currency.get('code', 'USD') if isinstance(currency, dict) else 'USD',
                'trade_date': str(activity.get('trade_date')) if activity.get('trade_date') else None,
                'settlement_date': str(activity.get('settlement_date')) if activity.get('settlement_date') else None,
            })
        return activities

    # === Accounts & authorizations ===

    async def list_accounts(self, credential: ProviderCredential) -> List[UpstreamAccount]:
        body = await self._call(
            'list_accounts',
            self.client.account_information.list_user_accounts,
            **self._user_kwargs(credential),
        )
        accounts = []
        for acc in body or []:
            total = (acc.get('balance') or {}).get('total') or {}
            accounts.append(UpstreamAccount(
                id=str(acc['id']),
                name=acc.get('name') or 'Investment Account',
                institution_name=acc.get('institution_name', 'Unknown'),
                account_type=acc.get('raw_type') or (acc.get('meta') or {}).get('type'),
                number=acc.get('number'),
                currency=total.get('currency') or 'USD',
                balance=_to_float(total.get('amount')),
                authorization_id=acc.get('brokerage_authorization'),
            ))
        logger.info(f"Retrieved {len(accounts)} SnapTrade accounts for user {credential.user_id}")
        return accounts

    async def list_authorizations(self, credential: ProviderCredential) -> List[UpstreamAuthorization]:
        body = await self._call(
            'list_authorizations',
            self.client.connections.list_brokerage_authorizations,
            **self._user_kwargs(credential),
        )
        authorizations = []
        for auth in body or []:
            brokerage = auth.get('brokerage') or {}
            authorizations.append(UpstreamAuthorization(
                id=str(auth['id']),
                brokerage_name=brokerage.get('name') or auth.get('name'),
                brokerage_type=auth.get('type'),
                disabled=bool(auth.get('disabled', False)),
                updated_at=_parse_timestamp(auth.get('updated_date') or auth.get('updated')),
            ))
        return authorizations

    async def remove_authorization(self, credential: ProviderCredential, authorization_id: str,
                                   idempotency_key: Optional[str] = None) -> None:
        logger.info(f"Removing SnapTrade authorization {authorization_id} for user {credential.user_id}")
        await self._call(
            'remove_authorization',
            self.client.connections.remove_brokerage_authorization,
            authorization_id=authorization_id,
            **self._user_kwargs(credential),
        )

    async def delete_user(self, credential: ProviderCredential, idempotency_key: Optional[str] = None) -> None:
        logger.info(f"Deleting SnapTrade user {credential.provider_user_id}")
        await self._call(
            'delete_user',
            self.client.authentication.delete_snap_trade_user,
            user_id=credential.provider_user_id,
        )

    async def register_user(self, user_id: str) -> ProviderCredential:
        """
        Register a new user with SnapTrade.

        Args:
            user_id: Platform user ID (also used as the SnapTrade user ID)

        Returns:
            ProviderCredential holding the new user secret
        """
        logger.info(f"Registering user {user_id} with SnapTrade")
        body = await self._call(
            'register_user',
            self.client.authentication.register_snap_trade_user,
            body={"userId": user_id},
        )
        return ProviderCredential(
            user_id=user_id,
            provider=self.kind.value,
            provider_user_id=body.get('userId', user_id),
            secret=body['userSecret'],
        )

    async def get_connection_portal_url(
        self,
        credential: ProviderCredential,
        broker: Optional[str] = None,
        connection_type: Optional[str] = None,
        redirect_url: Optional[str] = None,
        reconnect: Optional[str] = None,
    ) -> str:
        """
        Get the SnapTrade connection portal URL to connect (or reconnect) a brokerage.

        Args:
            credential: The user's SnapTrade credential
            broker: Optional broker slug (e.g. 'ALPACA', 'SCHWAB')
            connection_type: 'read' or 'trade'; anything else leaves SnapTrade's default
            redirect_url: Where SnapTrade sends the user afterwards
            reconnect: Authorization id of a broken connection to repair

        Returns:
            Connection portal URL
        """
        login_kwargs = self._user_kwargs(credential)
        if broker:
            login_kwargs['broker'] = broker
        if connection_type in ('read', 'trade'):
            login_kwargs['connection_type'] = connection_type
        if redirect_url:
            login_kwargs['custom_redirect'] = redirect_url
        if reconnect:
            login_kwargs['reconnect'] = reconnect

        body = await self._call(
            'get_connection_portal_url',
            self.client.authentication.login_snap_trade_user,
            **login_kwargs,
        )
        redirect_uri = (body or {}).get('redirectURI')
        if not redirect_uri:
            raise ProviderError(
                "SnapTrade returned no connection portal URL",
                self.provider_name,
                "CONNECTION_PORTAL_ERROR",
                status_code=502,
            )

        if reconnect:
            logger.info(f"Generated RECONNECT portal URL for user {credential.user_id}, authorization {reconnect}")
        else:
            logger.info(f"Generated connection portal URL for user {credential.user_id}")
        return redirect_uri

    # === Trading ===

    async def resolve_symbol(self, credential: ProviderCredential, account_id: str, symbol: str) -> InstrumentRef:
        """
        Resolve a ticker to the universal symbol tradeable on this account.

        Uses symbol_search_user_account so that only listings available on the
        user's brokerage come back, preferring US exchanges (NYSE JNJ over a
        foreign listing of the same ticker).
        """
        ticker = symbol.upper().strip()
        body = await self._call(
            'resolve_symbol',
            self.client.reference_data.symbol_search_user_account,
            account_id=account_id,
            substring=ticker,
            **self._user_kwargs(credential),
        )

        exact_match = None
        us_match = None
        for symbol_data in body or []:
            if str(symbol_data.get('symbol', '')).upper() != ticker:
                continue
            exchange_code = (symbol_data.get('exchange') or {}).get('code', '')
            if exchange_code in US_EXCHANGES:
                us_match = symbol_data
                break
            if exact_match is None:
                exact_match = symbol_data

        best_match = us_match or exact_match
        if best_match is None:
            raise ProviderError(
                f"Symbol '{ticker}' is not available for trading on this account",
                self.provider_name,
                "SYMBOL_NOT_FOUND",
                status_code=400,
            )

        exchange_code = (best_match.get('exchange') or {}).get('code')
        logger.info(f"Found tradeable symbol ID for {ticker} on {exchange_code}: {best_match.get('id')}")
        return InstrumentRef(universal_symbol_id=best_match['id'], symbol=ticker, exchange=exchange_code)

    async def preview_order(self, credential: ProviderCredential, account_id: str, instrument: InstrumentRef,
                            side: str, quantity: float, order_type: str, time_in_force: str,
                            limit_price: Optional[float] = None) -> OrderImpact:
        logger.info(f"Checking order impact: {side} {quantity} {instrument.symbol} via account {account_id}")
        body = await self._call(
            'preview_order',
            self.client.trading.get_order_impact,
            account_id=account_id,
            action=side,
            universal_symbol_id=instrument.universal_symbol_id,
            order_type=ORDER_TYPE_MAP.get(order_type, order_type),
            time_in_force=TIME_IN_FORCE_MAP.get(time_in_force, time_in_force),
            units=float(quantity),
            price=float(limit_price) if limit_price is not None else None,
            **self._user_kwargs(credential),
        )

        trade = body.get('trade') or {}
        trade_id = trade.get('id') or body.get('trade_id')
        if not trade_id:
            raise ProviderError("Order impact returned no trade id", self.provider_name, "INVALID_ORDER", status_code=422)

        impacts = body.get('trade_impacts') or []
        fees = sum(
            (_to_float(impact.get('estimated_commission')) or 0.0) + (_to_float(impact.get('forex_fees')) or 0.0)
            for impact in impacts
        )
        price = _to_float(trade.get('price'))
        units = _to_float(trade.get('units')) or float(quantity)
        remaining = (body.get('combined_remaining_balance') or {}).get('cash')
        if remaining is None and impacts:
            remaining = impacts[0].get('remaining_cash')

        logger.info("✅ Order impact calculated successfully")
        return OrderImpact(
            trade_id=str(trade_id),
            estimated_units=units,
            estimated_price=price,
            estimated_cost=round(price * units, 2) if price is not None else None,
            estimated_fees=fees,
            remaining_cash=_to_float(remaining),
            raw=body,
        )

    async def place_order(self, credential: ProviderCredential, trade_id: str,
                          idempotency_key: Optional[str] = None) -> PlacedOrder:
        # SnapTrade trade ids are single-use, which makes the call itself idempotent upstream
        logger.info(f"Placing SnapTrade trade {trade_id} (key={idempotency_key})")
        body = await self._call(
            'place_order',
            self.client.trading.place_order,
            trade_id=trade_id,
            wait_to_confirm=True,
            **self._user_kwargs(credential),
        )
        return self._placed_order(body)

    async def cancel_order(self, credential: ProviderCredential, account_id: str, order_id: str,
                           idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        logger.info(f"Cancelling order: {order_id} from account {account_id}")
        body = await self._call(
            'cancel_order',
            self.client.trading.cancel_order,
            account_id=account_id,
            brokerage_order_id=order_id,
            **self._user_kwargs(credential),
        )
        return self._normalize_order(body) if isinstance(body, dict) and body else {'id': order_id, 'status': 'CANCELLED'}

    async def replace_order(self, credential: ProviderCredential, account_id: str, order_id: str, side: str,
                            order_type: str, time_in_force: str, quantity: float,
                            limit_price: Optional[float] = None, symbol: Optional[str] = None,
                            idempotency_key: Optional[str] = None) -> PlacedOrder:
        logger.info(f"Replacing order: {order_id} on account {account_id}")
        body = await self._call(
            'replace_order',
            self.client.trading.replace_order,
            account_id=account_id,
            brokerage_order_id=order_id,
            action=side,
            order_type=ORDER_TYPE_MAP.get(order_type, order_type),
            time_in_force=TIME_IN_FORCE_MAP.get(time_in_force, time_in_force),
            units=float(quantity),
            price=float(limit_price) if limit_price is not None else None,
            symbol=symbol,
            **self._user_kwargs(credential),
        )
        return self._placed_order(body)

    # === Normalization ===

    def _placed_order(self, body: Dict[str, Any]) -> PlacedOrder:
        order = self._normalize_order(body or {})
        if not order['id']:
            raise ProviderError("Broker returned no order id", self.provider_name, "INVALID_ORDER", status_code=502)
        return PlacedOrder(
            brokerage_order_id=order['id'],
            status=order['status'] or 'PENDING',
            symbol=order['symbol'],
            action=order['action'],
            total_quantity=order['total_quantity'],
            filled_quantity=order['filled_quantity'],
            raw=body,
        )

    def _normalize_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        order_id = order.get('brokerage_order_id') or order.get('id')
        return {
            'id': str(order_id) if order_id is not None else None,
            'symbol': _symbol_of(order.get('universal_symbol') or order.get('symbol')),
            'action': order.get('action'),
            'status': str(order['status']).upper() if order.get('status') else None,
            'order_type': order.get('order_type'),
            'time_in_force': order.get('time_in_force'),
            'total_quantity': _to_float(order.get('total_quantity')),
            'filled_quantity': _to_float(order.get('filled_quantity')),
            'limit_price': _to_float(order.get('limit_price')),
            'execution_price': _to_float(order.get('execution_price')),
            'time_placed': str(order.get('time_placed')) if order.get('time_placed') else None,
        }

    def _normalize_transaction_type(self, snaptrade_type: str) -> str:
        """Normalize SnapTrade transaction types to standard types."""
        type_mapping = {
            'BUY': 'buy',
            'SELL': 'sell',
            'DIVIDEND': 'dividend',
            'INTEREST': 'interest',
            'CONTRIBUTION': 'deposit',
            'WITHDRAWAL': 'withdrawal',
            'TRANSFER': 'transfer',
            'FEE': 'fee',
            'TAX': 'tax',
            'REI': 'reinvestment',  # Dividend reinvestment
            'STOCK_DIVIDEND': 'dividend',
            'OPTIONEXPIRATION': 'option_expiration',
            'OPTIONASSIGNMENT': 'option_assignment',
            'OPTIONEXERCISE': 'option_exercise'
        }

        return type_mapping.get(snaptrade_type.upper(), 'other')
