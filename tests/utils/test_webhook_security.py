"""
Tests for SnapTrade webhook signature verification.
"""

import hashlib
import hmac

import pytest

from utils import webhook_security
from utils.webhook_security import compute_signature, verify_payload_secret, verify_webhook_signature

SECRET = 'whsec-test-secret'
BODY = b'{"eventType":"CONNECTION_BROKEN","userId":"user-1","brokerageAuthorizationId":"auth-1"}'


class TestVerifyWebhookSignature:

    def test_base64_signature(self):
        assert verify_webhook_signature(BODY, compute_signature(BODY, SECRET), secret=SECRET)

    def test_hex_signature(self):
        signature = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert verify_webhook_signature(BODY, signature, secret=SECRET)

    def test_tampered_body(self):
        signature = compute_signature(BODY, SECRET)
        assert not verify_webhook_signature(BODY.replace(b'auth-1', b'auth-2'), signature, secret=SECRET)

    @pytest.mark.parametrize("signature", [None, '', 'not-a-signature'])
    def test_missing_or_wrong_signature(self, signature):
        assert not verify_webhook_signature(BODY, signature, secret=SECRET)

    def test_rejects_everything_without_secret(self, monkeypatch):
        monkeypatch.setattr(webhook_security, 'get_webhook_secret', lambda: None)
        assert not verify_webhook_signature(BODY, compute_signature(BODY, SECRET))

    def test_secret_comes_from_environment(self, monkeypatch):
        monkeypatch.setenv('SNAPTRADE_WEBHOOK_SECRET', SECRET)
        assert verify_webhook_signature(BODY, compute_signature(BODY, SECRET))


class TestVerifyPayloadSecret:

    def test_matching_secret(self):
        assert verify_payload_secret({'webhookSecret': SECRET}, secret=SECRET)

    @pytest.mark.parametrize("payload", [{}, {'webhookSecret': ''}, {'webhookSecret': 'other'}, {'webhookSecret': 42}])
    def test_non_matching_secret(self, payload):
        assert not verify_payload_secret(payload, secret=SECRET)
