"""
SnapTrade Webhook Security

Handles webhook signature verification to ensure webhooks are genuinely from SnapTrade.
"""

import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from decouple import config

logger = logging.getLogger(__name__)


def get_webhook_secret() -> Optional[str]:
    return config('SNAPTRADE_WEBHOOK_SECRET', default=None) or None


def compute_signature(raw_body: bytes, secret: str) -> str:
    """HMAC-SHA256 of the raw request body, base64 encoded as SnapTrade sends it."""
    digest = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode('ascii')


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """
    Verify a SnapTrade webhook signature.

    Args:
        raw_body: The request body exactly as received
        signature: The Signature (or x-snaptrade-signature) header value
        secret: Webhook secret; SNAPTRADE_WEBHOOK_SECRET when omitted

    Returns:
        True if the signature matches in base64 or hex form, False otherwise.
        Always False when no secret is configured.
    """
    secret = secret or get_webhook_secret()
    if not secret:
        logger.error("❌ SNAPTRADE_WEBHOOK_SECRET not set - rejecting webhook")
        return False
    if not signature:
        logger.error("❌ Webhook has no signature header")
        return False

    signature = signature.strip()
    digest = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).digest()
    candidates = (base64.b64encode(digest).decode('ascii'), digest.hex())
    is_valid = any(hmac.compare_digest(expected, signature) for expected in candidates)

    if not is_valid:
        logger.error(f"❌ Invalid webhook signature! Got: {signature[:10]}...")
    return is_valid


def verify_payload_secret(payload: Dict[str, Any], secret: Optional[str] = None) -> bool:
    """SnapTrade also echoes the webhook secret inside the payload as webhookSecret."""
    secret = secret or get_webhook_secret()
    payload_secret = payload.get('webhookSecret')
    if not secret or not isinstance(payload_secret, str) or not payload_secret:
        return False
    return hmac.compare_digest(payload_secret, secret)
