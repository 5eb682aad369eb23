"""
Pytest configuration for the aggregation backend tests

Every test runs against a fresh in-memory SQLite store. Provider adapters are
replaced by FakeBrokerageProvider, which records its calls and can be told to
fail.
"""

import pytest
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from sqlalchemy.pool import StaticPool

# Load environment variables
load_dotenv()

# Add the backend directory to Python path for imports
# This is done at the pytest level, not in individual test files
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from utils.db.account_repository import AccountRepository
from utils.db.connection_repository import ConnectionRepository
from utils.db.db_client import configure_database, init_db
from utils.db.trade_activity_repository import TradeActivityRepository
from utils.portfolio import constants
from utils.portfolio.abstract_provider import (
    AbstractTradingProvider, InstrumentRef, OrderImpact, PlacedOrder,
    ProviderCredential, ProviderKind, UpstreamAccount, UpstreamAuthorization,
)
from utils.portfolio.provider_registry import ProviderRegistry

USER_ID = "user-1"
ACCOUNT_ID = "acct-1"
AUTHORIZATION_ID = "auth-1"


class FakeBrokerageProvider(AbstractTradingProvider):
    """In-memory brokerage adapter with call recording and scripted failures."""

    kind = ProviderKind.BROKERAGE

    def __init__(self):
        self.calls: List[tuple] = []
        self.failures: Dict[str, list] = {}
        self.details = {
            'id': ACCOUNT_ID,
            'name': 'Individual Brokerage',
            'number': '000123456789',
            'institution_name': 'Robinhood',
            'account_type': 'margin',
            'status': 'open',
            'currency': 'USD',
            'total_value': 12500.0,
            'authorization_id': AUTHORIZATION_ID,
        }
        self.balances = [{'id': 'USD', 'currency': 'USD', 'cash': 2500.0, 'buying_power': 5000.0}]
        self.positions = [
            {'id': 'sym-aapl', 'symbol': 'AAPL', 'units': 10.0, 'price': 200.0, 'market_value': 2000.0},
            {'id': 'sym-msft', 'symbol': 'MSFT', 'units': 20.0, 'price': 400.0, 'market_value': 8000.0},
        ]
        self.orders = [{'id': 'ord-1', 'symbol': 'AAPL', 'action': 'BUY', 'status': 'EXECUTED'}]
        self.activities = [{'id': 'act-1', 'type': 'buy', 'symbol': 'AAPL', 'trade_date': '2026-10-01'}]
        self.accounts = [
            UpstreamAccount(id=ACCOUNT_ID, name='Individual Brokerage', institution_name='Robinhood',
                            account_type='margin', number='000123456789', balance=12500.0,
                            authorization_id=AUTHORIZATION_ID),
        ]
        self.authorizations = [
            UpstreamAuthorization(id=AUTHORIZATION_ID, brokerage_name='Robinhood', brokerage_type='read-write'),
        ]
        self.trade_counter = 0
        self.order_counter = 0

    def get_provider_name(self) -> str:
        return "fake-brokerage"

    # === Scripting helpers ===

    def fail(self, method: str, error: Exception, times: Optional[int] = None) -> None:
        """Make `method` raise `error`; forever when times is None."""
        self.failures[method] = [error, times]

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def kwargs_of(self, method: str, index: int = -1) -> Dict[str, Any]:
        return [kwargs for name, kwargs in self.calls if name == method][index]

    def _enter(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        failure = self.failures.get(method)
        if failure is None:
            return
        error, remaining = failure
        if remaining is None:
            raise error
        if remaining > 0:
            failure[1] = remaining - 1
            raise error

    # === Account sections ===

    async def get_account_details(self, credential, account_id):
        self._enter('get_account_details', account_id=account_id)
        return dict(self.details)

    async def get_account_balances(self, credential, account_id):
        self._enter('get_account_balances', account_id=account_id)
        return [dict(b) for b in self.balances]

    async def get_account_positions(self, credential, account_id):
        self._enter('get_account_positions', account_id=account_id)
        return [dict(p) for p in self.positions]

    async def get_account_orders(self, credential, account_id):
        self._enter('get_account_orders', account_id=account_id)
        return [dict(o) for o in self.orders]

    async def get_account_activities(self, credential, account_id):
        self._enter('get_account_activities', account_id=account_id)
        return [dict(a) for a in self.activities]

    # === Accounts & authorizations ===

    async def list_accounts(self, credential):
        self._enter('list_accounts')
        return list(self.accounts)

    async def list_authorizations(self, credential):
        self._enter('list_authorizations')
        return list(self.authorizations)

    async def remove_authorization(self, credential, authorization_id, idempotency_key=None):
        self._enter('remove_authorization', authorization_id=authorization_id, idempotency_key=idempotency_key)

    async def delete_user(self, credential, idempotency_key=None):
        self._enter('delete_user', idempotency_key=idempotency_key)

    async def register_user(self, user_id):
        self._enter('register_user', user_id=user_id)
        return ProviderCredential(user_id=user_id, provider='brokerage',
                                  provider_user_id=user_id, secret='fresh-secret')

    async def get_connection_portal_url(self, credential, broker=None, connection_type=None,
                                        redirect_url=None, reconnect=None):
        self._enter('get_connection_portal_url', broker=broker, connection_type=connection_type,
                    redirect_url=redirect_url, reconnect=reconnect)
        return f"https://portal.test/connect?user={credential.provider_user_id}"

    # === Trading ===

    async def resolve_symbol(self, credential, account_id, symbol):
        self._enter('resolve_symbol', account_id=account_id, symbol=symbol)
        return InstrumentRef(universal_symbol_id=f"uid-{symbol}", symbol=symbol, exchange='NASDAQ')

    async def preview_order(self, credential, account_id, instrument, side, quantity, order_type,
                            time_in_force, limit_price=None):
        self._enter('preview_order', account_id=account_id, symbol=instrument.symbol, side=side,
                    quantity=quantity, order_type=order_type, limit_price=limit_price)
        self.trade_counter += 1
        price = limit_price or 100.0
        return OrderImpact(trade_id=f"trade-{self.trade_counter}", estimated_units=quantity,
                           estimated_price=price, estimated_cost=price * quantity,
                           estimated_fees=0.0, remaining_cash=1000.0)

    async def place_order(self, credential, trade_id, idempotency_key=None):
        self._enter('place_order', trade_id=trade_id, idempotency_key=idempotency_key)
        self.order_counter += 1
        return PlacedOrder(brokerage_order_id=f"broker-order-{self.order_counter}", status='PENDING',
                           symbol='AAPL', action='BUY', total_quantity=10.0, filled_quantity=0.0)

    async def cancel_order(self, credential, account_id, order_id, idempotency_key=None):
        self._enter('cancel_order', account_id=account_id, order_id=order_id, idempotency_key=idempotency_key)
        return {'id': order_id, 'status': 'CANCELLED'}

    async def replace_order(self, credential, account_id, order_id, side, order_type, time_in_force,
                            quantity, limit_price=None, symbol=None, idempotency_key=None):
        self._enter('replace_order', account_id=account_id, order_id=order_id, side=side,
                    order_type=order_type, time_in_force=time_in_force, quantity=quantity,
                    limit_price=limit_price, symbol=symbol, idempotency_key=idempotency_key)
        self.order_counter += 1
        return PlacedOrder(brokerage_order_id=f"broker-order-{self.order_counter}", status='OPEN',
                           symbol=symbol, action=side, total_quantity=quantity, filled_quantity=0.0)


@pytest.fixture(autouse=True)
def database():
    """Fresh in-memory store for every test."""
    engine = configure_database("sqlite://", poolclass=StaticPool)
    init_db()
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(constants, "PROVIDER_RETRY_BASE_DELAY_SECONDS", 0)


@pytest.fixture
def fake_brokerage():
    return FakeBrokerageProvider()


@pytest.fixture
def registry(fake_brokerage):
    return ProviderRegistry(providers={ProviderKind.BROKERAGE: fake_brokerage}, factories={})


@pytest.fixture
def account_repository():
    return AccountRepository()


@pytest.fixture
def connection_repository():
    return ConnectionRepository()


@pytest.fixture
def activity_repository():
    return TradeActivityRepository()


@pytest.fixture
def registered_user(connection_repository, account_repository, fake_brokerage):
    """A user with a brokerage credential, one authorization and one linked account."""
    connection_repository.save_credential(USER_ID, 'brokerage', USER_ID, 'secret-1')
    connection_repository.upsert_connections(USER_ID, fake_brokerage.authorizations)
    account_repository.upsert_connected_account(
        USER_ID, 'brokerage', ACCOUNT_ID,
        authorization_id=AUTHORIZATION_ID,
        account_name='Individual Brokerage',
        institution_name='Robinhood',
        balance=12500.0,
    )
    return USER_ID
