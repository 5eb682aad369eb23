"""
Trading API routes.

This module provides REST API endpoints for:
- Order impact preview
- Order placement (from a previewed trade id or directly)
- Cancel and replace of open orders
- Listing an account's orders with their lifecycle state

Every mutating endpoint accepts an idempotency key (Idempotency-Key header or
idempotencyKey in the body); retrying with the same key never creates a
second order.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, ConfigDict, Field

from services.snaptrade_trading_service import SnapTradeTradingService, get_snaptrade_trading_service
from services.trade_state_machine import TradeOrder
from utils.authentication import get_authenticated_user_id
from utils.request_context import get_request_id

from routes.http_errors import raise_http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/trading", tags=["trading"])


class OrderRequest(BaseModel):
    # Shape errors are reported by TradeOrder.validate so that every violation comes back at once
    model_config = ConfigDict(populate_by_name=True)

    account_id: Optional[str] = Field(None, alias="accountId", description="Brokerage account ID")
    symbol: Optional[str] = Field(None, description="Ticker symbol")
    side: Optional[str] = Field(None, description="BUY or SELL")
    quantity: Optional[float] = Field(None, description="Number of units")
    order_type: Optional[str] = Field("MARKET", alias="type", description="MARKET or LIMIT")
    limit_price: Optional[float] = Field(None, alias="limitPrice", description="Required for LIMIT orders")
    time_in_force: Optional[str] = Field("DAY", alias="timeInForce", description="DAY, GTC, FOK or IOC")
    idempotency_key: Optional[str] = Field(None, alias="idempotencyKey", description="Client retry key")

    def to_order(self, idempotency_key: Optional[str] = None) -> TradeOrder:
        kwargs = dict(
            account_id=self.account_id,
            symbol=self.symbol,
            side=self.side,
            quantity=self.quantity,
            order_type=self.order_type,
            limit_price=self.limit_price,
            time_in_force=self.time_in_force,
        )
        key = idempotency_key or self.idempotency_key
        if key:
            kwargs['idempotency_key'] = key
        return TradeOrder(**kwargs)


class PlaceOrderRequest(OrderRequest):
    trade_id: Optional[str] = Field(None, alias="tradeId", description="Trade id returned by preview")


class CancelOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", description="Brokerage account ID")
    order_id: str = Field(..., alias="orderId", description="Brokerage order ID")
    idempotency_key: Optional[str] = Field(None, alias="idempotencyKey", description="Client retry key")


class ReplaceOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", description="Brokerage account ID")
    order_id: str = Field(..., alias="orderId", description="Order being replaced")
    quantity: Optional[float] = Field(None, description="New quantity")
    limit_price: Optional[float] = Field(None, alias="limitPrice", description="New limit price")
    side: Optional[str] = Field(None, description="Defaults to the original side")
    order_type: Optional[str] = Field(None, alias="type", description="Defaults to the original type")
    time_in_force: Optional[str] = Field(None, alias="timeInForce", description="Defaults to the original")
    idempotency_key: Optional[str] = Field(None, alias="idempotencyKey", description="Client retry key")


@router.post("/preview")
async def preview_order(
    body: OrderRequest,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: SnapTradeTradingService = Depends(get_snaptrade_trading_service),
) -> Dict[str, Any]:
    """Validate the order and return the broker's impact estimate and trade id."""
    try:
        preview = await service.preview(user_id, body.to_order(), request_id=request_id)
        return {'success': True, **preview.to_dict(), 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "preview_order")


@router.post("/place")
async def place_order(
    body: PlaceOrderRequest,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    service: SnapTradeTradingService = Depends(get_snaptrade_trading_service),
) -> Dict[str, Any]:
    """
    Place an order.

    With tradeId the previewed trade is executed; otherwise the order is
    validated and previewed first.
    """
    try:
        order = body.to_order(idempotency_key)
        result = await service.place(user_id, order, trade_id=body.trade_id, request_id=request_id)
        return {'success': True, **result.to_dict(), 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "place_order")


@router.post("/cancel")
async def cancel_order(
    body: CancelOrderRequest,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    service: SnapTradeTradingService = Depends(get_snaptrade_trading_service),
) -> Dict[str, Any]:
    try:
        result = await service.cancel(
            user_id, body.account_id, body.order_id,
            idempotency_key=idempotency_key or body.idempotency_key,
            request_id=request_id,
        )
        return {'success': True, **result.to_dict(), 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "cancel_order")


@router.post("/replace")
async def replace_order(
    body: ReplaceOrderRequest,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    service: SnapTradeTradingService = Depends(get_snaptrade_trading_service),
) -> Dict[str, Any]:
    try:
        result = await service.replace(
            user_id, body.account_id, body.order_id,
            quantity=body.quantity,
            limit_price=body.limit_price,
            side=body.side,
            order_type=body.order_type,
            time_in_force=body.time_in_force,
            idempotency_key=idempotency_key or body.idempotency_key,
            request_id=request_id,
        )
        return {'success': True, **result.to_dict(), 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "replace_order")


@router.get("/orders/{account_id}")
async def get_account_orders(
    account_id: str,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: SnapTradeTradingService = Depends(get_snaptrade_trading_service),
) -> Dict[str, Any]:
    try:
        return await service.get_account_orders(user_id, account_id, request_id=request_id)
    except Exception as e:
        raise_http_error(e, request_id, "get_account_orders")
