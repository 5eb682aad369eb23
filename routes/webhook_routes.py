"""
Provider webhook API routes.

SnapTrade posts connection lifecycle events here. Requests are authenticated
by the webhook signature instead of the user JWT.
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from services.connection_reconciliation_service import (
    ConnectionReconciliationService, get_connection_reconciliation_service,
)
from utils.request_context import get_request_id
from utils.webhook_security import verify_payload_secret, verify_webhook_signature

from routes.http_errors import raise_http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/snaptrade")
async def snaptrade_webhook(
    request: Request,
    request_id: str = Depends(get_request_id),
    service: ConnectionReconciliationService = Depends(get_connection_reconciliation_service),
) -> Dict[str, Any]:
    """
    Handle SnapTrade connection webhooks.

    - CONNECTION_ADDED / CONNECTION_FIXED - connection recorded as active
    - CONNECTION_UPDATED - refresh time stamped
    - CONNECTION_BROKEN - connection flagged as disabled
    - CONNECTION_DELETED - connection and its accounts removed locally
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b'{}')
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    # SnapTrade sends signature in 'Signature' header (capital S)
    signature = request.headers.get('Signature') or request.headers.get('x-snaptrade-signature')
    if not (verify_webhook_signature(raw_body, signature) or verify_payload_secret(payload)):
        logger.error(f"❌ Rejected SnapTrade webhook with invalid signature (request_id={request_id})")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    logger.info(f"📩 Received SnapTrade webhook: {payload.get('eventType') or payload.get('type')}")
    try:
        result = await service.handle_webhook(payload, request_id=request_id)
        return {'success': True, **result, 'request_id': request_id}
    except Exception as e:
        raise_http_error(e, request_id, "snaptrade_webhook")
