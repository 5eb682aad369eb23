"""
SnapTrade Trading Service

PRODUCTION-GRADE: Handles trade execution via the brokerage adapter with:
- Order validation that reports every violation at once
- Order impact preview (check before placing) pinning the instrument
- Placement from a previewed trade id, or preview-then-place in one call
- Exactly-once effect: the idempotency key is claimed in the trade activity
  log before the broker is called, so retries collapse to one order
- Cancel and replace, each recorded in the activity log
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from utils.db.account_repository import AccountRepository, get_account_repository
from utils.db.connection_repository import ConnectionRepository, get_connection_repository
from utils.db.trade_activity_repository import (
    DEDUPLICATED, FAILED, PENDING, SUCCEEDED, TradeActivityRepository,
    get_trade_activity_repository,
)
from utils.portfolio.abstract_provider import (
    AbstractTradingProvider, InstrumentRef, OrderImpact, ProviderCredential, ProviderKind,
)
from utils.portfolio.error_classifier import ClassifiedError, ErrorKind, call_with_retry, to_classified
from utils.portfolio.provider_registry import ProviderRegistry, get_provider_registry

from services.trade_state_machine import (
    TERMINAL_STATES, InvalidTransitionError, OrderState, TradeOrder,
    state_from_broker_status, transition,
)

logger = logging.getLogger(__name__)

BROKERAGE = ProviderKind.BROKERAGE.value


class TradeValidationError(ClassifiedError):
    """Order failed synchronous validation; no upstream call was made."""

    def __init__(self, violations):
        super().__init__(ErrorKind.VALIDATION, "; ".join(violations), violations=list(violations))


@dataclass
class TradePreview:
    trade_id: str
    order: TradeOrder
    instrument: InstrumentRef
    impact: OrderImpact
    state: OrderState = OrderState.PREVIEWED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trade_id': self.trade_id,
            'state': self.state.value,
            'order': self.order.to_dict(),
            'instrument': self.instrument.to_dict(),
            'estimated_units': self.impact.estimated_units,
            'estimated_price': self.impact.estimated_price,
            'estimated_cost': self.impact.estimated_cost,
            'estimated_fees': self.impact.estimated_fees,
            'remaining_cash': self.impact.remaining_cash,
        }


@dataclass
class TradeResult:
    action: str
    order_id: Optional[str]
    state: OrderState
    idempotency_key: str
    trade_id: Optional[str] = None
    broker_status: Optional[str] = None
    deduplicated: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'action': self.action,
            'order_id': self.order_id,
            'state': self.state.value,
            'broker_status': self.broker_status,
            'trade_id': self.trade_id,
            'idempotency_key': self.idempotency_key,
            'deduplicated': self.deduplicated,
        }
        data.update(self.extra)
        return data


class SnapTradeTradingService:
    """
    Service for executing trades through the brokerage adapter.

    This service provides production-grade trade execution with proper validation,
    error handling, and order tracking.
    """

    def __init__(self, registry: Optional[ProviderRegistry] = None,
                 connection_repository: Optional[ConnectionRepository] = None,
                 account_repository: Optional[AccountRepository] = None,
                 activity_repository: Optional[TradeActivityRepository] = None):
        self.registry = registry or get_provider_registry()
        self.connections = connection_repository or get_connection_repository()
        self.accounts = account_repository or get_account_repository()
        self.activity = activity_repository or get_trade_activity_repository()

    # === Helpers ===

    @property
    def provider(self) -> AbstractTradingProvider:
        return self.registry.get_trading(ProviderKind.BROKERAGE)

    def get_user_credentials(self, user_id: str) -> ProviderCredential:
        record = self.connections.get_credential(user_id, BROKERAGE)
        if record is None:
            raise ClassifiedError(
                ErrorKind.NOT_REGISTERED,
                'SnapTrade credentials not found. Please connect your brokerage account.',
                provider=BROKERAGE,
            )
        return ProviderCredential.from_record(record)

    # === Preview ===

    async def preview(self, user_id: str, order: TradeOrder, request_id: Optional[str] = None) -> TradePreview:
        """
        Validate an order and ask the broker for its impact.

        Args:
            user_id: Platform user ID
            order: The order intent
            request_id: Correlation id for logs

        Returns:
            TradePreview carrying the trade id to place with

        Raises:
            TradeValidationError: One or more violations, before any upstream call
            ClassifiedError: Instrument resolution or impact failed
        """
        violations = order.validate()
        if violations:
            logger.warning(f"Rejected order for user {user_id}: {violations}")
            raise TradeValidationError(violations)

        credential = self.get_user_credentials(user_id)
        provider = self.provider
        try:
            instrument = await call_with_retry(
                'brokerage.resolve_symbol', provider.resolve_symbol,
                credential, order.account_id, order.symbol,
            )
            impact = await call_with_retry(
                'brokerage.preview_order', provider.preview_order,
                credential, order.account_id, instrument, order.side, order.quantity,
                order.order_type, order.time_in_force, order.limit_price,
            )
        except Exception as e:
            raise to_classified(e, 'brokerage.preview', request_id=request_id) from e

        state = transition(OrderState.DRAFT, OrderState.PREVIEWED)
        logger.info(f"✅ Previewed {order.side} {order.quantity} {order.symbol} as trade {impact.trade_id}")
        return TradePreview(trade_id=impact.trade_id, order=order, instrument=instrument, impact=impact, state=state)

    # === Place ===

    async def place(self, user_id: str, order: TradeOrder, trade_id: Optional[str] = None,
                    request_id: Optional[str] = None) -> TradeResult:
        """
        Place an order, at most once per idempotency key.

        With trade_id the previewed trade is executed as-is (no re-validation,
        no re-resolution). Without it the order is validated, previewed and then
        executed.

        Returns:
            TradeResult; deduplicated=True when the key had already succeeded

        Raises:
            TradeValidationError: Invalid order (direct path only)
            ClassifiedError: TRANSIENT when the same key is still in flight, or
                the classified broker failure
        """
        key = order.idempotency_key
        claim = self.activity.claim(
            user_id, 'place', key,
            account_id=order.account_id, trade_id=trade_id, request_id=request_id,
            detail={'order': order.to_dict()},
        )

        if not claim.claimed:
            return self._handle_duplicate(user_id, 'place', key, claim.existing, order.account_id, request_id)

        try:
            if trade_id is None:
                preview = await self.preview(user_id, order, request_id=request_id)
                trade_id = preview.trade_id
                state = preview.state
            else:
                state = OrderState.PREVIEWED

            credential = self.get_user_credentials(user_id)
            placed = await call_with_retry(
                'brokerage.place_order', self.provider.place_order,
                credential, trade_id,
                mutating=True, idempotency_key=key,
            )
        except Exception as e:
            classified = to_classified(e, 'brokerage.place_order', request_id=request_id)
            self.activity.complete(
                claim.activity_id, FAILED, detail={'order': order.to_dict(), 'trade_id': trade_id},
                error_kind=classified.kind.value, error_message=classified.message,
            )
            if classified is e:
                raise
            raise classified from e

        state = transition(state, OrderState.PLACED)
        broker_state = state_from_broker_status(placed.status)
        if broker_state != OrderState.PLACED:
            state = transition(state, broker_state)

        result = TradeResult(
            action='place',
            order_id=placed.brokerage_order_id,
            state=state,
            idempotency_key=key,
            trade_id=trade_id,
            broker_status=placed.status,
            extra={'order': placed.to_dict()},
        )
        self.activity.complete(claim.activity_id, SUCCEEDED, order_id=placed.brokerage_order_id, detail=result.to_dict())
        self._mirror_order(user_id, order.account_id, placed.to_dict(), placed.brokerage_order_id, placed.status)
        logger.info(f"✅ Order placed: {placed.brokerage_order_id} ({state.value}) key={key}")
        return result

    # === Cancel / replace ===

    async def cancel(self, user_id: str, account_id: str, order_id: str,
                     idempotency_key: Optional[str] = None, request_id: Optional[str] = None) -> TradeResult:
        """Cancel an open order. Ownership is enforced by the broker."""
        key = idempotency_key or str(uuid.uuid4())
        claim = self.activity.claim(user_id, 'cancel', key, account_id=account_id, order_id=order_id,
                                    request_id=request_id)
        if not claim.claimed:
            return self._handle_duplicate(user_id, 'cancel', key, claim.existing, account_id, request_id)

        try:
            self._ensure_open(user_id, account_id, order_id, OrderState.CANCELLED)
        except InvalidTransitionError as e:
            self.activity.complete(claim.activity_id, FAILED, error_message=str(e))
            raise

        try:
            credential = self.get_user_credentials(user_id)
            response = await call_with_retry(
                'brokerage.cancel_order', self.provider.cancel_order,
                credential, account_id, order_id,
                mutating=True, idempotency_key=key,
            )
        except Exception as e:
            classified = to_classified(e, 'brokerage.cancel_order', request_id=request_id)
            self.activity.complete(claim.activity_id, FAILED, error_kind=classified.kind.value,
                                   error_message=classified.message)
            if classified is e:
                raise
            raise classified from e

        result = TradeResult(
            action='cancel',
            order_id=order_id,
            state=OrderState.CANCELLED,
            idempotency_key=key,
            broker_status=(response or {}).get('status'),
        )
        self.activity.complete(claim.activity_id, SUCCEEDED, detail=result.to_dict())
        self._mirror_order(user_id, account_id, response or {}, order_id, 'CANCELLED')
        logger.info(f"✅ Order cancelled successfully: {order_id}")
        return result

    async def replace(self, user_id: str, account_id: str, order_id: str,
                      quantity: Optional[float] = None, limit_price: Optional[float] = None,
                      side: Optional[str] = None, order_type: Optional[str] = None,
                      time_in_force: Optional[str] = None, idempotency_key: Optional[str] = None,
                      request_id: Optional[str] = None) -> TradeResult:
        """
        Replace an open order with new quantity and/or limit price.

        Fields not supplied are taken from the original order: the mirrored
        copy, or the broker's order list when the mirror has never seen it.

        Returns:
            TradeResult for the new order; extra['replaced_order'] describes the
            old one (state REPLACED)
        """
        key = idempotency_key or str(uuid.uuid4())
        claim = self.activity.claim(user_id, 'replace', key, account_id=account_id, order_id=order_id,
                                    request_id=request_id)
        if not claim.claimed:
            return self._handle_duplicate(user_id, 'replace', key, claim.existing, account_id, request_id)

        try:
            original = self._ensure_open(user_id, account_id, order_id, OrderState.REPLACED)
            if original is None:
                original = await self._fetch_open_order(user_id, account_id, order_id, OrderState.REPLACED)
        except InvalidTransitionError as e:
            self.activity.complete(claim.activity_id, FAILED, error_message=str(e))
            raise
        except Exception as e:
            classified = to_classified(e, 'brokerage.orders', request_id=request_id)
            self.activity.complete(claim.activity_id, FAILED, error_kind=classified.kind.value,
                                   error_message=classified.message)
            if classified is e:
                raise
            raise classified from e

        side = (side or original.get('action') or '').upper()
        order_type = (order_type or original.get('order_type') or 'LIMIT').upper()
        time_in_force = (time_in_force or original.get('time_in_force') or 'DAY').upper()
        quantity = quantity if quantity is not None else original.get('total_quantity')
        if limit_price is None and order_type == 'LIMIT':
            limit_price = original.get('limit_price')

        draft = TradeOrder(account_id=account_id, symbol=original.get('symbol'), side=side,
                           quantity=quantity, order_type=order_type,
                           limit_price=limit_price if order_type == 'LIMIT' else None,
                           time_in_force=time_in_force, idempotency_key=key)
        # The symbol of a replaced order never changes, so it is not re-checked
        violations = [v for v in draft.validate() if not v.startswith('symbol')]
        if violations:
            self.activity.complete(claim.activity_id, FAILED, detail={'order': draft.to_dict()},
                                   error_kind=ErrorKind.VALIDATION.value, error_message="; ".join(violations))
            raise TradeValidationError(violations)

        try:
            credential = self.get_user_credentials(user_id)
            placed = await call_with_retry(
                'brokerage.replace_order', self.provider.replace_order,
                credential, account_id, order_id, side, order_type, time_in_force, quantity,
                draft.limit_price, original.get('symbol'),
                mutating=True, idempotency_key=key,
            )
        except Exception as e:
            classified = to_classified(e, 'brokerage.replace_order', request_id=request_id)
            self.activity.complete(claim.activity_id, FAILED, error_kind=classified.kind.value,
                                   error_message=classified.message)
            if classified is e:
                raise
            raise classified from e

        old_state = transition(OrderState.PLACED, OrderState.REPLACED)
        new_state = transition(OrderState.PREVIEWED, OrderState.PLACED)
        result = TradeResult(
            action='replace',
            order_id=placed.brokerage_order_id,
            state=new_state,
            idempotency_key=key,
            broker_status=placed.status,
            extra={
                'replaced_order': {'order_id': order_id, 'state': old_state.value},
                'order': placed.to_dict(),
            },
        )
        self.activity.complete(claim.activity_id, SUCCEEDED, order_id=placed.brokerage_order_id, detail=result.to_dict())
        self._mirror_order(user_id, account_id, original, order_id, OrderState.REPLACED.value)
        self._mirror_order(user_id, account_id, placed.to_dict(), placed.brokerage_order_id, placed.status)
        logger.info(f"✅ Order {order_id} replaced by {placed.brokerage_order_id}")
        return result

    async def get_account_orders(self, user_id: str, account_id: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Orders for one account, straight from the broker, written through to the mirror."""
        credential = self.get_user_credentials(user_id)
        try:
            orders = await call_with_retry('brokerage.orders', self.provider.get_account_orders, credential, account_id)
        except Exception as e:
            raise to_classified(e, 'brokerage.orders', request_id=request_id) from e

        if self.accounts.get_active_account(user_id, account_id) is not None:
            self.accounts.write_section(user_id, BROKERAGE, account_id, 'orders', orders)

        for order in orders:
            order['state'] = state_from_broker_status(order.get('status')).value
        logger.info(f"✅ Found {len(orders)} orders for account {account_id}")
        return {'account_id': account_id, 'orders': orders, 'count': len(orders)}

    # === Internals ===

    def _handle_duplicate(self, user_id: str, action: str, key: str, existing: Dict[str, Any],
                          account_id: Optional[str], request_id: Optional[str]) -> TradeResult:
        if existing['outcome'] == PENDING:
            self.activity.record(user_id, action, key, FAILED, account_id=account_id, request_id=request_id,
                                 error_kind=ErrorKind.TRANSIENT.value, error_message='already in progress')
            raise ClassifiedError(
                ErrorKind.TRANSIENT,
                f"A {action} with idempotency key {key} is already in progress",
                retry_after=1,
            )

        detail = existing.get('detail') or {}
        self.activity.record(user_id, action, key, DEDUPLICATED, account_id=account_id,
                             order_id=existing.get('order_id'), trade_id=existing.get('trade_id'),
                             request_id=request_id, detail={'original_activity_id': existing['id']})
        logger.info(f"🔄 Duplicate {action} for key {key}; returning order {existing.get('order_id')}")
        return TradeResult(
            action=action,
            order_id=existing.get('order_id'),
            state=OrderState(detail.get('state', OrderState.PLACED.value)),
            idempotency_key=key,
            trade_id=detail.get('trade_id') or existing.get('trade_id'),
            broker_status=detail.get('broker_status'),
            deduplicated=True,
            extra={k: v for k, v in detail.items() if k in ('order', 'replaced_order')},
        )

    def _ensure_open(self, user_id: str, account_id: str, order_id: str,
                     target: OrderState) -> Optional[Dict[str, Any]]:
        """Refuse to touch an order the mirror already knows is finished."""
        mirrored = self.accounts.get_mirrored_order(user_id, BROKERAGE, account_id, order_id)
        if mirrored is not None:
            current = state_from_broker_status(mirrored.get('status'))
            if current in TERMINAL_STATES:
                raise InvalidTransitionError(current, target)
        return mirrored

    async def _fetch_open_order(self, user_id: str, account_id: str, order_id: str,
                                target: OrderState) -> Dict[str, Any]:
        """Look an order up at the broker when the mirror has no copy of it."""
        credential = self.get_user_credentials(user_id)
        orders = await call_with_retry('brokerage.orders', self.provider.get_account_orders, credential, account_id)
        for order in orders:
            if str(order.get('id')) == str(order_id):
                current = state_from_broker_status(order.get('status'))
                if current in TERMINAL_STATES:
                    raise InvalidTransitionError(current, target)
                return order
        raise ClassifiedError(
            ErrorKind.VALIDATION,
            f"Order {order_id} was not found in account {account_id}",
            provider=BROKERAGE,
        )

    def _mirror_order(self, user_id: str, account_id: Optional[str], order: Dict[str, Any],
                      order_id: Optional[str], status: Optional[str]) -> None:
        if not account_id or not order_id:
            return
        if self.accounts.get_active_account(user_id, account_id) is None:
            return
        record = dict(order)
        record['id'] = order_id
        record['status'] = str(status).upper() if status else record.get('status')
        self.accounts.upsert_orders(user_id, BROKERAGE, account_id, [record])


# Global service instance
_snaptrade_trading_service = None


def get_snaptrade_trading_service() -> SnapTradeTradingService:
    """Get the global SnapTrade trading service instance."""
    global _snaptrade_trading_service
    if _snaptrade_trading_service is None:
        _snaptrade_trading_service = SnapTradeTradingService()
    return _snaptrade_trading_service
