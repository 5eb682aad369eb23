"""
Account view API routes.

This module provides REST API endpoints for:
- Listing the user's connected accounts with per-provider totals
- The assembled per-account view (details, balances, positions, orders, activities)
- Manual refresh of an account view
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from services.account_aggregation_service import AccountAggregationService, get_account_aggregation_service
from utils.authentication import get_authenticated_user_id
from utils.request_context import get_request_id

from routes.http_errors import raise_http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


@router.get("")
async def list_accounts(
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: AccountAggregationService = Depends(get_account_aggregation_service),
) -> Dict[str, Any]:
    """List the user's active connected accounts."""
    try:
        return service.list_accounts(user_id)
    except Exception as e:
        raise_http_error(e, request_id, "list_accounts")


@router.get("/{account_id}/details")
async def get_account_details(
    account_id: str,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: AccountAggregationService = Depends(get_account_aggregation_service),
) -> Dict[str, Any]:
    """
    Get the assembled account view.

    Sections that failed upstream carry an `error` descriptor instead of data;
    the request as a whole only fails when the account details are unavailable.
    """
    try:
        return await service.get_account_view(user_id, account_id, request_id=request_id)
    except Exception as e:
        raise_http_error(e, request_id, "get_account_details")


@router.post("/{account_id}/refresh")
async def refresh_account(
    account_id: str,
    user_id: str = Depends(get_authenticated_user_id),
    request_id: str = Depends(get_request_id),
    service: AccountAggregationService = Depends(get_account_aggregation_service),
) -> Dict[str, Any]:
    """Force every section of the account to be refetched."""
    try:
        view = await service.refresh_account(user_id, account_id, request_id=request_id)
        view['request_id'] = request_id
        return view
    except Exception as e:
        raise_http_error(e, request_id, "refresh_account")
