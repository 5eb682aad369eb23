"""
Tests for SnapTradeTradingService

PRODUCTION-GRADE: validation before any upstream call, exactly-once placement
per idempotency key, and cancel/replace guarded by the order lifecycle.
"""

import pytest

from services.snaptrade_trading_service import (
    SnapTradeTradingService, TradeValidationError, get_snaptrade_trading_service,
)
from services.trade_state_machine import InvalidTransitionError, OrderState, TradeOrder
from utils.db.trade_activity_repository import DEDUPLICATED, FAILED, SUCCEEDED
from utils.portfolio.abstract_provider import ProviderError
from utils.portfolio.error_classifier import ClassifiedError, ErrorKind

USER_ID = "user-1"
ACCOUNT_ID = "acct-1"


@pytest.fixture
def service(registry, connection_repository, account_repository, activity_repository):
    return SnapTradeTradingService(
        registry=registry,
        connection_repository=connection_repository,
        account_repository=account_repository,
        activity_repository=activity_repository,
    )


def _order(**overrides):
    fields = dict(account_id=ACCOUNT_ID, symbol='aapl', side='buy', quantity=10)
    fields.update(overrides)
    return TradeOrder(**fields)


class TestSnapTradeTradingService:
    """Test suite for SnapTradeTradingService."""

    def test_get_snaptrade_trading_service_singleton(self):
        """Test that get_snaptrade_trading_service returns a singleton."""
        service1 = get_snaptrade_trading_service()
        service2 = get_snaptrade_trading_service()
        assert service1 is service2

    def test_get_user_credentials_not_found(self, service):
        with pytest.raises(ClassifiedError) as exc_info:
            service.get_user_credentials('non-existent-user')
        assert exc_info.value.kind == ErrorKind.NOT_REGISTERED


class TestPreview:

    @pytest.mark.asyncio
    async def test_invalid_order_never_reaches_the_broker(self, service, registered_user, fake_brokerage):
        with pytest.raises(TradeValidationError) as exc_info:
            await service.preview(USER_ID, _order(quantity=-5))

        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert "quantity must be > 0" in exc_info.value.violations
        assert fake_brokerage.calls == []

    @pytest.mark.asyncio
    async def test_every_violation_is_reported(self, service, registered_user, fake_brokerage):
        with pytest.raises(TradeValidationError) as exc_info:
            await service.preview(USER_ID, _order(quantity=0, side='hold', order_type='LIMIT'))

        assert set(exc_info.value.violations) == {
            "side must be BUY or SELL",
            "quantity must be > 0",
            "limitPrice is required for LIMIT orders",
        }

    @pytest.mark.asyncio
    async def test_preview_pins_instrument(self, service, registered_user, fake_brokerage):
        preview = await service.preview(USER_ID, _order(order_type='LIMIT', limit_price=150.0))

        data = preview.to_dict()
        assert data['state'] == OrderState.PREVIEWED.value
        assert data['trade_id'] == 'trade-1'
        assert data['instrument']['universal_symbol_id'] == 'uid-AAPL'
        assert data['estimated_cost'] == 1500.0
        assert fake_brokerage.kwargs_of('preview_order')['limit_price'] == 150.0

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_validation_error(self, service, registered_user, fake_brokerage):
        fake_brokerage.fail('resolve_symbol', ProviderError(
            "Symbol 'ZZZZ' is not available", "fake-brokerage", "SYMBOL_NOT_FOUND", status_code=400,
        ))

        with pytest.raises(ClassifiedError) as exc_info:
            await service.preview(USER_ID, _order(symbol='ZZZZ'))

        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert 'ZZZZ' in exc_info.value.message
        assert fake_brokerage.count('preview_order') == 0


class TestPlace:

    @pytest.mark.asyncio
    async def test_place_from_trade_id_skips_resolution(self, service, registered_user, fake_brokerage,
                                                       activity_repository):
        result = await service.place(USER_ID, _order(), trade_id='trade-42')

        assert fake_brokerage.count('resolve_symbol') == 0
        assert fake_brokerage.count('preview_order') == 0
        assert fake_brokerage.kwargs_of('place_order')['trade_id'] == 'trade-42'
        assert result.order_id == 'broker-order-1'
        assert result.state == OrderState.PLACED
        log = activity_repository.list_for_user(USER_ID)
        assert [row['outcome'] for row in log] == [SUCCEEDED]
        assert log[0]['order_id'] == 'broker-order-1'

    @pytest.mark.asyncio
    async def test_direct_place_previews_first(self, service, registered_user, fake_brokerage):
        result = await service.place(USER_ID, _order())

        assert fake_brokerage.count('resolve_symbol') == 1
        assert fake_brokerage.kwargs_of('place_order')['trade_id'] == 'trade-1'
        assert result.trade_id == 'trade-1'

    @pytest.mark.asyncio
    async def test_same_key_places_exactly_once(self, service, registered_user, fake_brokerage,
                                               activity_repository):
        order = _order(idempotency_key='key-123')

        first = await service.place(USER_ID, order, trade_id='trade-42')
        second = await service.place(USER_ID, _order(idempotency_key='key-123'), trade_id='trade-42')

        assert fake_brokerage.count('place_order') == 1
        assert second.deduplicated is True
        assert second.order_id == first.order_id
        assert second.state == first.state
        assert [row['outcome'] for row in activity_repository.list_for_user(USER_ID)] == [SUCCEEDED, DEDUPLICATED]

    @pytest.mark.asyncio
    async def test_same_key_from_another_user_is_placed(self, service, registered_user, fake_brokerage,
                                                        connection_repository):
        connection_repository.save_credential('user-2', 'brokerage', 'user-2', 'secret-2')

        first = await service.place(USER_ID, _order(idempotency_key='key-shared'), trade_id='trade-42')
        second = await service.place(
            'user-2',
            _order(account_id='acct-2', symbol='msft', side='sell', quantity=3, idempotency_key='key-shared'),
            trade_id='trade-43',
        )

        assert fake_brokerage.count('place_order') == 2
        assert fake_brokerage.kwargs_of('place_order')['trade_id'] == 'trade-43'
        assert second.deduplicated is False
        assert second.order_id != first.order_id

    @pytest.mark.asyncio
    async def test_key_in_flight_is_transient(self, service, registered_user, fake_brokerage,
                                             activity_repository):
        activity_repository.claim(USER_ID, 'place', 'key-inflight', account_id=ACCOUNT_ID)

        with pytest.raises(ClassifiedError) as exc_info:
            await service.place(USER_ID, _order(idempotency_key='key-inflight'), trade_id='trade-42')

        assert exc_info.value.kind == ErrorKind.TRANSIENT
        assert fake_brokerage.count('place_order') == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_with_the_same_key(self, service, registered_user, fake_brokerage):
        fake_brokerage.fail('place_order', ProviderError("timeout", "fake-brokerage", status_code=504), times=1)

        result = await service.place(USER_ID, _order(idempotency_key='key-retry'), trade_id='trade-42')

        assert fake_brokerage.count('place_order') == 2
        assert fake_brokerage.kwargs_of('place_order', 0)['idempotency_key'] == 'key-retry'
        assert result.order_id == 'broker-order-1'

    @pytest.mark.asyncio
    async def test_rejected_order_is_logged_and_key_can_be_reused(self, service, registered_user, fake_brokerage,
                                                                  activity_repository):
        fake_brokerage.fail('place_order', ProviderError(
            "insufficient buying power", "fake-brokerage", "INVALID_ORDER", status_code=400,
        ), times=1)

        with pytest.raises(ClassifiedError) as exc_info:
            await service.place(USER_ID, _order(idempotency_key='key-reject'), trade_id='trade-42')
        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert fake_brokerage.count('place_order') == 1

        result = await service.place(USER_ID, _order(idempotency_key='key-reject'), trade_id='trade-43')

        assert result.deduplicated is False
        assert [row['outcome'] for row in activity_repository.list_for_user(USER_ID)] == [FAILED, SUCCEEDED]

    @pytest.mark.asyncio
    async def test_placed_order_is_mirrored(self, service, registered_user, account_repository):
        result = await service.place(USER_ID, _order(), trade_id='trade-42')

        mirrored = account_repository.get_mirrored_order(USER_ID, 'brokerage', ACCOUNT_ID, result.order_id)
        assert mirrored['status'] == 'PENDING'


class TestCancelAndReplace:

    @pytest.mark.asyncio
    async def test_cancel_terminal_order_is_rejected(self, service, registered_user, fake_brokerage,
                                                     account_repository):
        account_repository.upsert_orders(USER_ID, 'brokerage', ACCOUNT_ID, [{'id': 'ord-9', 'status': 'EXECUTED'}])

        with pytest.raises(InvalidTransitionError) as exc_info:
            await service.cancel(USER_ID, ACCOUNT_ID, 'ord-9')

        assert exc_info.value.current == OrderState.FILLED
        assert fake_brokerage.count('cancel_order') == 0

    @pytest.mark.asyncio
    async def test_cancel_open_order(self, service, registered_user, fake_brokerage, account_repository):
        account_repository.upsert_orders(USER_ID, 'brokerage', ACCOUNT_ID, [{'id': 'ord-9', 'status': 'OPEN'}])

        result = await service.cancel(USER_ID, ACCOUNT_ID, 'ord-9', idempotency_key='cancel-1')

        assert result.state == OrderState.CANCELLED
        assert fake_brokerage.kwargs_of('cancel_order')['order_id'] == 'ord-9'
        assert account_repository.get_mirrored_order(USER_ID, 'brokerage', ACCOUNT_ID, 'ord-9')['status'] == 'CANCELLED'

        again = await service.cancel(USER_ID, ACCOUNT_ID, 'ord-9', idempotency_key='cancel-1')
        assert again.deduplicated is True
        assert fake_brokerage.count('cancel_order') == 1

    @pytest.mark.asyncio
    async def test_replace_fills_in_original_fields(self, service, registered_user, fake_brokerage,
                                                    account_repository):
        account_repository.upsert_orders(USER_ID, 'brokerage', ACCOUNT_ID, [{
            'id': 'ord-9', 'status': 'OPEN', 'symbol': 'AAPL', 'action': 'BUY',
            'order_type': 'Limit', 'time_in_force': 'Day', 'total_quantity': 10.0, 'limit_price': 100.0,
        }])

        result = await service.replace(USER_ID, ACCOUNT_ID, 'ord-9', quantity=5)

        sent = fake_brokerage.kwargs_of('replace_order')
        assert (sent['side'], sent['order_type'], sent['time_in_force']) == ('BUY', 'LIMIT', 'DAY')
        assert sent['quantity'] == 5
        assert sent['limit_price'] == 100.0
        assert sent['symbol'] == 'AAPL'
        data = result.to_dict()
        assert data['state'] == OrderState.PLACED.value
        assert data['replaced_order'] == {'order_id': 'ord-9', 'state': OrderState.REPLACED.value}
        assert account_repository.get_mirrored_order(USER_ID, 'brokerage', ACCOUNT_ID, 'ord-9')['status'] == 'REPLACED'

    @pytest.mark.asyncio
    async def test_replace_with_invalid_price(self, service, registered_user, fake_brokerage, account_repository,
                                              activity_repository):
        account_repository.upsert_orders(USER_ID, 'brokerage', ACCOUNT_ID, [{
            'id': 'ord-9', 'status': 'OPEN', 'symbol': 'AAPL', 'action': 'BUY',
            'order_type': 'Limit', 'total_quantity': 10.0, 'limit_price': 100.0,
        }])

        with pytest.raises(TradeValidationError):
            await service.replace(USER_ID, ACCOUNT_ID, 'ord-9', limit_price=-1)

        assert fake_brokerage.count('replace_order') == 0
        assert activity_repository.list_for_user(USER_ID)[-1]['outcome'] == FAILED

    @pytest.mark.asyncio
    async def test_replace_filled_order_is_rejected(self, service, registered_user, account_repository):
        account_repository.upsert_orders(USER_ID, 'brokerage', ACCOUNT_ID, [{'id': 'ord-9', 'status': 'FILLED'}])

        with pytest.raises(InvalidTransitionError):
            await service.replace(USER_ID, ACCOUNT_ID, 'ord-9', quantity=5)


    @pytest.mark.asyncio
    async def test_replace_order_missing_from_mirror_uses_broker_copy(self, service, registered_user,
                                                                     fake_brokerage, account_repository):
        fake_brokerage.orders.append({
            'id': 'ord-external', 'status': 'OPEN', 'symbol': 'AAPL', 'action': 'BUY',
            'order_type': 'Limit', 'time_in_force': 'Day', 'total_quantity': 10.0, 'limit_price': 100.0,
        })

        result = await service.replace(USER_ID, ACCOUNT_ID, 'ord-external', limit_price=101.0)

        assert fake_brokerage.count('get_account_orders') == 1
        sent = fake_brokerage.kwargs_of('replace_order')
        assert (sent['side'], sent['quantity'], sent['symbol']) == ('BUY', 10.0, 'AAPL')
        assert sent['limit_price'] == 101.0
        assert result.state == OrderState.PLACED
        mirrored = account_repository.get_mirrored_order(USER_ID, 'brokerage', ACCOUNT_ID, 'ord-external')
        assert mirrored['status'] == 'REPLACED'

    @pytest.mark.asyncio
    async def test_replace_order_filled_at_broker_is_rejected(self, service, registered_user, fake_brokerage):
        with pytest.raises(InvalidTransitionError):
            await service.replace(USER_ID, ACCOUNT_ID, 'ord-1', limit_price=101.0)

        assert fake_brokerage.count('replace_order') == 0

    @pytest.mark.asyncio
    async def test_replace_unknown_order(self, service, registered_user, fake_brokerage, activity_repository):
        with pytest.raises(ClassifiedError) as exc_info:
            await service.replace(USER_ID, ACCOUNT_ID, 'ord-missing', limit_price=101.0)

        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert fake_brokerage.count('replace_order') == 0
        assert activity_repository.list_for_user(USER_ID)[-1]['outcome'] == FAILED


class TestAccountOrders:

    @pytest.mark.asyncio
    async def test_orders_carry_lifecycle_state(self, service, registered_user, account_repository):
        result = await service.get_account_orders(USER_ID, ACCOUNT_ID)

        assert result['count'] == 1
        assert result['orders'][0]['state'] == OrderState.FILLED.value
        assert account_repository.get_mirrored_order(USER_ID, 'brokerage', ACCOUNT_ID, 'ord-1')['status'] == 'EXECUTED'
