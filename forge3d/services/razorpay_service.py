"""
Razorpay client - orders REST API and signature checks.

Signatures:
- checkout callback: hex HMAC-SHA256(key_secret, f"{order_id}|{payment_id}")
- webhook:           hex HMAC-SHA256(webhook_secret, raw body),
                     sent in the X-Razorpay-Signature header
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import requests

from forge3d.errors import ProviderRequestError, TransientProviderError, ValidationError
from forge3d.services.retry import raise_for_provider_status
from forge3d.utils.helpers import constant_time_equals, hmac_sha256_hex


class RazorpayEvent:
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_AUTHORIZED = "payment.authorized"


class RazorpayClient:
    def __init__(self, config, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return self.config.RAZORPAY_CONFIGURED

    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, str]) -> Dict[str, Any]:
        """POST /v1/orders; returns Razorpay's order object (id, amount, currency, status)."""
        if not self.is_configured():
            raise ProviderRequestError("Payment gateway not configured")
        try:
            response = self.session.post(
                f"{self.config.RAZORPAY_API_BASE}/v1/orders",
                auth=(self.config.RAZORPAY_KEY_ID, self.config.RAZORPAY_KEY_SECRET),
                json={"amount": amount, "currency": currency, "receipt": receipt, "notes": notes},
                timeout=self.config.PROVIDER_HTTP_TIMEOUT,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientProviderError(f"razorpay create_order network error: {e}")
        raise_for_provider_status(response, "razorpay", "create_order")
        try:
            order = response.json()
        except ValueError:
            raise ProviderRequestError("razorpay create_order returned non-JSON body")
        if not isinstance(order, dict) or not order.get("id"):
            raise ProviderRequestError("razorpay create_order returned no order id")
        return order

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        secret = self.config.RAZORPAY_KEY_SECRET
        if not secret or not signature:
            return False
        expected = hmac_sha256_hex(secret, f"{order_id}|{payment_id}")
        return constant_time_equals(expected, signature)

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        secret = self.config.RAZORPAY_WEBHOOK_SECRET
        if not secret or not signature:
            return False
        return constant_time_equals(hmac_sha256_hex(secret, raw_body), signature)

    @staticmethod
    def parse_webhook(raw_body: bytes) -> Dict[str, Any]:
        """
        Extract the payment entity from a webhook body.

        Returns:
            {"event_type", "payment_id", "order_id", "status", "amount", "currency"}

        Raises:
            ValidationError: not JSON, or no payment entity
        """
        try:
            event = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Webhook body must be an object")

        entity = event.get("payload")
        for key in ("payment", "entity"):
            if not isinstance(entity, dict):
                break
            entity = entity.get(key)
        if not isinstance(entity, dict):
            raise ValidationError("Webhook missing payload.payment.entity")

        amount = entity.get("amount")
        if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int)):
            raise ValidationError("Webhook payment amount must be an integer")
        for key in ("id", "order_id", "status", "currency"):
            if entity.get(key) is not None and not isinstance(entity.get(key), str):
                raise ValidationError(f"Webhook payment {key} must be a string")

        return {
            "event_type": event.get("event"),
            "payment_id": entity.get("id"),
            "order_id": entity.get("order_id"),
            "status": entity.get("status"),
            "amount": amount,
            "currency": entity.get("currency"),
        }
