"""
Connection management API routes.

This module provides REST API endpoints for:
- User registration with the brokerage provider
- Linking banking items, brokerage connections and wallets
- Sync diagnostics between the provider and the local store
- Force sync of brokerage authorizations
- Disconnecting an account
- Admin cascading cleanup of a user's brokerage connections
"""

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from services.account_link_service import AccountLinkService, get_account_link_service
from services.connection_reconciliation_service import (
    ConnectionReconciliationService, get_connection_reconciliation_service,
)
from utils.authentication import get_authenticated_user_id, require_admin
from utils.portfolio.abstract_provider import ProviderKind
from utils.request_context import get_request_id

from routes.http_errors import raise_http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/connections", tags=["connections"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


class DisconnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", description="Provider's native account ID")
    provider: ProviderKind = Field(..., description="banking | brokerage | wallet")


class BankingExchangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    public_token: str = Field(..., alias="publicToken", min_length=1, description="Public token returned by Plaid Link")
    institution_name: Optional[str] = Field(None, alias="institutionName")


class BrokeragePortalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    broker: Optional[str] = Field(None, description="Broker slug to preselect, e.g. ALPACA")
    connection_type: Optional[Literal["read", "trade"]] = Field(None, alias="connectionType")
    redirect_url: Optional[str] = Field(None, alias="redirectUrl")
    reconnect: Optional[str] = Field(None, description="Authorization id of a broken connection to repair")


class WalletConnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: str = Field(..., description="0x-prefixed wallet address")
    label: Optional[str] = Field(None, max_length=255)


@router.post("/register")
async def register_user(
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: ConnectionReconciliationService = Depends(get_connection_reconciliation_service),
) -> Dict[str, Any]:
    """Register the user with the brokerage provider (no-op when already registered)."""
    try:
        result = await service.register_user(user_id, request_id=request_id)
        return {'success': True, **result, 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "register_user")


@router.post("/banking/link-token")
async def create_banking_link_token(
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: AccountLinkService = Depends(get_account_link_service),
) -> Dict[str, Any]:
    """Create a Plaid Link token for the frontend."""
    try:
        result = await service.create_banking_link_token(user_id, request_id=request_id)
        return {'success': True, **result, 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "create_banking_link_token")


@router.post("/banking/exchange-token")
async def exchange_banking_public_token(
    body: BankingExchangeRequest,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: AccountLinkService = Depends(get_account_link_service),
) -> Dict[str, Any]:
    """Exchange a Plaid public token and link the Item's accounts."""
    try:
        result = await service.exchange_banking_public_token(
            user_id, body.public_token, institution_name=body.institution_name, request_id=request_id,
        )
        return {'success': True, **result, 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "exchange_banking_public_token")


@router.post("/brokerage/portal")
async def create_brokerage_portal(
    body: BrokeragePortalRequest,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: AccountLinkService = Depends(get_account_link_service),
) -> Dict[str, Any]:
    """Get the SnapTrade connection portal URL (registers the user first when needed)."""
    try:
        result = await service.create_brokerage_portal(
            user_id,
            broker=body.broker,
            connection_type=body.connection_type,
            redirect_url=body.redirect_url,
            reconnect=body.reconnect,
            request_id=request_id,
        )
        return {'success': True, **result, 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "create_brokerage_portal")


@router.post("/wallet")
async def connect_wallet(
    body: WalletConnectRequest,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: AccountLinkService = Depends(get_account_link_service),
) -> Dict[str, Any]:
    """Link a self-custodied wallet by address."""
    try:
        account = service.connect_wallet(user_id, body.address, label=body.label, request_id=request_id)
        return {'success': True, 'account': account, 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "connect_wallet")


@router.get("/diagnostics/check-sync")
async def check_sync(
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: ConnectionReconciliationService = Depends(get_connection_reconciliation_service),
) -> Dict[str, Any]:
    """Compare provider authorizations with local connections (read-only)."""
    try:
        report = await service.check_sync(user_id, request_id=request_id)
        return report.to_dict()
    except Exception as e:
        raise_http_error(e, request_id, "check_sync")


@router.post("/diagnostics/force-sync")
async def force_sync(
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: ConnectionReconciliationService = Depends(get_connection_reconciliation_service),
) -> Dict[str, Any]:
    """Upsert every provider authorization into the local store."""
    try:
        result = await service.force_sync(user_id, request_id=request_id)
        return {'success': True, **result, 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "force_sync")


@router.post("/disconnect")
async def disconnect_account(
    body: DisconnectRequest,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: ConnectionReconciliationService = Depends(get_connection_reconciliation_service),
) -> Dict[str, Any]:
    """Revoke the account's authorization upstream and remove it locally."""
    try:
        result = await service.disconnect(user_id, body.account_id, body.provider.value, request_id=request_id)
        return {'success': True, **result, 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "disconnect_account")


@admin_router.delete("/connections/{target_user_id}")
async def cleanup_user_connections(
    target_user_id: str,
    admin_id: str = Depends(require_admin),
    request_id: str = Depends(get_request_id),
    service: ConnectionReconciliationService = Depends(get_connection_reconciliation_service),
) -> Dict[str, Any]:
    """Delete every brokerage connection of a user together with all dependent rows."""
    logger.info(f"Admin {admin_id} requested connection cleanup for user {target_user_id}")
    try:
        result = service.cleanup_provider(target_user_id)
        return {'success': True, **result, 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "cleanup_user_connections")
