"""
Trade order lifecycle.

DRAFT -> PREVIEWED -> PLACED -> {FILLED, PARTIALLY_FILLED, CANCELLED, REJECTED, EXPIRED}
with REPLACED as a side exit from PLACED (the replacement is a new PLACED order).
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderState(str, Enum):
    DRAFT = "DRAFT"
    PREVIEWED = "PREVIEWED"
    PLACED = "PLACED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    REPLACED = "REPLACED"


TRANSITIONS = {
    OrderState.DRAFT: {OrderState.PREVIEWED},
    OrderState.PREVIEWED: {OrderState.PLACED, OrderState.REJECTED},
    OrderState.PLACED: {
        OrderState.FILLED, OrderState.PARTIALLY_FILLED, OrderState.CANCELLED,
        OrderState.REJECTED, OrderState.EXPIRED, OrderState.REPLACED,
    },
    OrderState.PARTIALLY_FILLED: {OrderState.FILLED, OrderState.CANCELLED, OrderState.EXPIRED},
    OrderState.FILLED: set(),
    OrderState.CANCELLED: set(),
    OrderState.REJECTED: set(),
    OrderState.EXPIRED: set(),
    OrderState.REPLACED: set(),
}

TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)

# Broker status strings (SnapTrade and friends) -> lifecycle state
BROKER_STATUS_MAP = {
    'NEW': OrderState.PLACED,
    'PENDING': OrderState.PLACED,
    'ACCEPTED': OrderState.PLACED,
    'OPEN': OrderState.PLACED,
    'QUEUED': OrderState.PLACED,
    'TRIGGERED': OrderState.PLACED,
    'EXECUTED': OrderState.FILLED,
    'FILLED': OrderState.FILLED,
    'PARTIAL': OrderState.PARTIALLY_FILLED,
    'PARTIALLY_FILLED': OrderState.PARTIALLY_FILLED,
    'CANCELED': OrderState.CANCELLED,
    'CANCELLED': OrderState.CANCELLED,
    'PARTIAL_CANCELED': OrderState.CANCELLED,
    'REJECTED': OrderState.REJECTED,
    'FAILED': OrderState.REJECTED,
    'EXPIRED': OrderState.EXPIRED,
    'REPLACED': OrderState.REPLACED,
}

SIDES = ('BUY', 'SELL')
ORDER_TYPES = ('MARKET', 'LIMIT')
TIME_IN_FORCE = ('DAY', 'GTC', 'FOK', 'IOC')


class InvalidTransitionError(Exception):
    def __init__(self, current: OrderState, target: OrderState):
        self.current = current
        self.target = target
        super().__init__(f"Order cannot move from {current.value} to {target.value}")


def transition(current: OrderState, target: OrderState) -> OrderState:
    """Return target if the move is legal, else raise InvalidTransitionError."""
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)
    return target


def state_from_broker_status(status: Optional[str]) -> OrderState:
    if not status:
        return OrderState.PLACED
    return BROKER_STATUS_MAP.get(str(status).upper(), OrderState.PLACED)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class TradeOrder:
    """A user's order intent. The idempotency key is fixed per placement attempt."""
    account_id: Optional[str]
    symbol: Optional[str]
    side: Optional[str]
    quantity: Any
    order_type: str = 'MARKET'
    limit_price: Any = None
    time_in_force: str = 'DAY'
    idempotency_key: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        self.side = self.side.upper() if isinstance(self.side, str) else self.side
        self.order_type = self.order_type.upper() if isinstance(self.order_type, str) else self.order_type
        self.time_in_force = self.time_in_force.upper() if isinstance(self.time_in_force, str) else self.time_in_force
        self.symbol = self.symbol.strip().upper() if isinstance(self.symbol, str) else self.symbol

    def validate(self) -> List[str]:
        """Return every violation; an empty list means the order is well formed."""
        violations = []
        if not self.account_id:
            violations.append("accountId is required")
        if not self.symbol:
            violations.append("symbol is required")
        if self.side not in SIDES:
            violations.append("side must be BUY or SELL")
        if not _is_number(self.quantity) or self.quantity <= 0:
            violations.append("quantity must be > 0")
        if self.order_type not in ORDER_TYPES:
            violations.append("type must be MARKET or LIMIT")
        if self.order_type == 'LIMIT':
            if self.limit_price is None:
                violations.append("limitPrice is required for LIMIT orders")
            elif not _is_number(self.limit_price) or self.limit_price <= 0:
                violations.append("limitPrice must be > 0")
        elif self.limit_price is not None and self.order_type in ORDER_TYPES:
            violations.append("limitPrice is only allowed for LIMIT orders")
        if self.time_in_force not in TIME_IN_FORCE:
            violations.append("timeInForce must be one of DAY, GTC, FOK, IOC")
        return violations

    def to_dict(self) -> Dict[str, Any]:
        return {
            'account_id': self.account_id,
            'symbol': self.symbol,
            'side': self.side,
            'quantity': self.quantity,
            'order_type': self.order_type,
            'limit_price': self.limit_price,
            'time_in_force': self.time_in_force,
            'idempotency_key': self.idempotency_key,
        }
