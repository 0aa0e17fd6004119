"""
Payment Service - credit pack purchases via Razorpay.

Flow:
1. create_order(user_id) -> Razorpay order + payment_orders row (status=created)
2. User pays in Razorpay checkout
3. Either path settles the order, whichever arrives first:
   - verify_payment(): checkout callback with (order_id, payment_id, signature)
   - handle_webhook(): payment.captured event
   Both end in LedgerService.settle_order, which re-reads the order under
   lock and flips it + credits the pack in one unit.

Idempotency:
- An order is credited at most once (status re-checked inside the unit)
- Replayed webhooks for a completed order answer 200 without side effects
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from forge3d.errors import (
    AuthenticationError,
    LedgerConflict,
    NotFoundError,
    PermissionDenied,
    ProviderRequestError,
    ValidationError,
)
from forge3d.models import OrderStatus, new_id
from forge3d.services.ledger_service import LedgerService, SettleResult
from forge3d.services.razorpay_service import RazorpayClient, RazorpayEvent
from forge3d.store.base import Store
from forge3d.utils.helpers import log_event, log_security_event, now_s


class PaymentService:
    def __init__(self, store: Store, ledger: LedgerService, razorpay: RazorpayClient, config):
        self.store = store
        self.ledger = ledger
        self.razorpay = razorpay
        self.config = config

    # ─────────────────────────────────────────────────────────────
    # Checkout
    # ─────────────────────────────────────────────────────────────
    def create_order(self, user_id: str) -> Dict[str, Any]:
        """
        Create one credit-pack order.

        Returns:
            {"order_id", "amount", "currency", "credits", "key_id"}
        """
        amount = self.config.CREDIT_PACK_AMOUNT
        currency = self.config.CREDIT_PACK_CURRENCY
        credits = self.config.CREDIT_PACK_CREDITS

        order = self.razorpay.create_order(
            amount=amount,
            currency=currency,
            receipt=f"order_{now_s()}_{user_id[:16]}",
            notes={"user_id": user_id, "credits": str(credits), "description": "Forge3D credits purchase"},
        )
        self.store.create_order({
            "id": new_id("pord"),
            "user_id": user_id,
            "external_order_id": order["id"],
            "amount": amount,
            "currency": currency,
            "credits_granted": credits,
            "status": OrderStatus.CREATED,
        })
        print(f"[PAYMENT] Order created: {order['id']} user={user_id} amount={amount} {currency} credits={credits}")
        return {
            "order_id": order["id"],
            "amount": amount,
            "currency": currency,
            "credits": credits,
            "key_id": self.config.RAZORPAY_KEY_ID,
        }

    def verify_payment(
        self,
        user_id: str,
        order_id: Optional[str],
        payment_id: Optional[str],
        signature: Optional[str],
    ) -> Dict[str, Any]:
        """
        Checkout callback: check the signature and ownership, then settle.

        Raises:
            ValidationError: missing fields, or the order already failed
            AuthenticationError: signature mismatch
            NotFoundError / PermissionDenied: unknown or foreign order
            LedgerConflict: settle contention (safe to retry)
        """
        if not self.config.RAZORPAY_KEY_SECRET:
            raise ProviderRequestError("Payment gateway not configured")
        if not (order_id and payment_id and signature):
            raise ValidationError("Missing required fields: payment_id, order_id, signature")

        if not self.razorpay.verify_payment_signature(order_id, payment_id, signature):
            log_security_event("security.payment_verify_bad_signature", {
                "user_id": user_id, "order_id": order_id, "payment_id": payment_id,
            })
            raise AuthenticationError("Invalid payment signature")

        order = self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found", order_id=order_id)
        if order["user_id"] != user_id:
            raise PermissionDenied("Order does not belong to user", order_id=order_id)

        result = self.ledger.settle_order(order, payment_id)
        status = result["status"]
        if status == SettleResult.ORDER_FAILED:
            raise ValidationError("Cannot complete a failed order", field="order_id")
        if status == SettleResult.NOT_FOUND:
            raise NotFoundError("Order not found", order_id=order_id)
        if status == SettleResult.ALREADY_COMPLETED:
            return {"success": True, "message": "Payment already processed", "balance": result["balance"]}
        return {
            "success": True,
            "message": f"Added {result['credits']} credits",
            "balance": result["balance"],
        }

    # ─────────────────────────────────────────────────────────────
    # Webhook
    # ─────────────────────────────────────────────────────────────
    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Tuple[Dict[str, Any], int]:
        """
        Process a Razorpay webhook. Never raises; returns (body, http_status).
        4xx tells Razorpay not to retry, 5xx asks for redelivery.
        """
        order_id = None
        payment_id = None
        try:
            if not self.config.RAZORPAY_WEBHOOK_SECRET:
                print("[PAYMENT] ERROR: RAZORPAY_WEBHOOK_SECRET not configured")
                return {"error": "Webhook secret not configured"}, 500
            if not signature or not signature.strip():
                return {"error": "Missing webhook signature"}, 400
            if not raw_body or not raw_body.strip():
                return {"error": "Empty webhook body"}, 400
            if not self.razorpay.verify_webhook_signature(raw_body, signature.strip()):
                log_security_event("security.payment_webhook_bad_signature", {"body_length": len(raw_body)})
                return {"error": "Invalid webhook signature"}, 401

            try:
                event = self.razorpay.parse_webhook(raw_body)
            except ValidationError as e:
                return {"error": e.message}, 400

            event_type = event["event_type"]
            order_id = event["order_id"]
            payment_id = event["payment_id"]
            if not event_type or not order_id or not payment_id or not event["status"]:
                return {"error": "Invalid webhook payload structure"}, 400

            order = self.store.get_order(order_id)
            if order is None:
                print(f"[PAYMENT] Webhook for unknown order {order_id} ({event_type}), acknowledging")
                return {"success": True, "message": "Order not found (may have been processed elsewhere)"}, 200

            if order["amount"] != event["amount"]:
                log_event("payment.webhook_amount_mismatch", {
                    "order_id": order_id, "order_amount": order["amount"], "payment_amount": event["amount"],
                })
                return {"error": "Order amount mismatch"}, 400
            if order["currency"] != event["currency"]:
                log_event("payment.webhook_currency_mismatch", {
                    "order_id": order_id, "order_currency": order["currency"], "payment_currency": event["currency"],
                })
                return {"error": "Order currency mismatch"}, 400

            print(f"[PAYMENT] Webhook {event_type} order={order_id} payment={payment_id} order_status={order['status']}")

            if event_type == RazorpayEvent.PAYMENT_CAPTURED and event["status"] == "captured":
                return self._handle_captured(order, payment_id)
            if event_type == RazorpayEvent.PAYMENT_FAILED:
                return self._handle_failed(order, payment_id)

            return {"success": True, "message": f"Event {event_type} acknowledged"}, 200

        except Exception as e:
            print(f"[PAYMENT] ERROR: webhook order={order_id} payment={payment_id}: {type(e).__name__}: {e}")
            log_event("payment.webhook_error", {"order_id": order_id, "payment_id": payment_id, "error": str(e)})
            return {"error": "Internal server error"}, 500

    def _handle_captured(self, order: Dict[str, Any], payment_id: str) -> Tuple[Dict[str, Any], int]:
        order_id = order["external_order_id"]
        if order["status"] == OrderStatus.COMPLETED:
            return {"success": True, "message": "Order already processed"}, 200
        if order["status"] == OrderStatus.FAILED:
            return {"error": "Cannot complete a failed order"}, 400
        if int(order.get("credits_granted") or 0) <= 0:
            return {"error": "Invalid credits amount in order"}, 400

        try:
            result = self.ledger.settle_order(order, payment_id)
        except LedgerConflict as e:
            print(f"[PAYMENT] Settle conflict order={order_id}: {e}")
            return {"error": "Transaction conflict, please retry"}, 503

        status = result["status"]
        if status == SettleResult.ALREADY_COMPLETED:
            return {"success": True, "message": "Order already processed"}, 200
        if status == SettleResult.ORDER_FAILED:
            return {"error": "Cannot complete a failed order"}, 400
        if status == SettleResult.NOT_FOUND:
            return {"success": True, "message": "Order not found (may have been processed elsewhere)"}, 200
        return {
            "success": True,
            "message": f"Added {result['credits']} credits",
            "orderId": order_id,
            "paymentId": payment_id,
        }, 200

    def _handle_failed(self, order: Dict[str, Any], payment_id: str) -> Tuple[Dict[str, Any], int]:
        order_id = order["external_order_id"]
        row, changed = self.store.transition_order(
            order_id, OrderStatus.FAILED, allowed_from=(OrderStatus.CREATED,), payment_id=payment_id
        )
        if changed:
            print(f"[PAYMENT] Order {order_id} marked failed (payment={payment_id})")
            return {"success": True, "message": "Order marked as failed"}, 200
        if row is not None and row["status"] == OrderStatus.COMPLETED:
            return {"error": "Cannot fail a completed order"}, 400
        return {"success": True, "message": "Order already marked as failed"}, 200
