"""
Webhook event dispatcher.

1. Require signature and timestamp headers
2. Verify the signature over the exact raw body
3. Parse the JSON envelope ({"type": ..., "data": {...}})
4. Record the delivery in webhook_events
5. Route by type to activation or revocation
6. Mark the delivery processed (or record the error and re-raise)

Deliveries are at-least-once. The log does not deduplicate; each handler is
idempotent on its own.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import insert, update

from meterguard.core.context import BillingContext
from meterguard.core.database import webhook_events
from meterguard.core.errors import UnauthorizedError, ValidationError
from meterguard.core.logging import log_event
from meterguard.core.timeutils import utc_now
from meterguard.features.billing.activation import activate_order_payment, activate_recurring_payment, parse_amount
from meterguard.features.billing.revocation import on_payment_failed, on_status_changed

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS = "PAYMENT_SUCCESS_WEBHOOK"
SUBSCRIPTION_PAYMENT_SUCCESS = "SUBSCRIPTION_PAYMENT_SUCCESS"
SUBSCRIPTION_PAYMENT_FAILED = "SUBSCRIPTION_PAYMENT_FAILED"
SUBSCRIPTION_STATUS_CHANGED = "SUBSCRIPTION_STATUS_CHANGED"


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    handled: bool
    action: str  # activated, duplicate, revoked, status_changed, skipped, ignored, not_found
    subscription_id: Optional[str] = None


def _parse_body(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        raise ValidationError("Webhook body must carry a 'type' field")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise ValidationError("Webhook body must carry a 'data' object")
    return payload


def _record_delivery(ctx: BillingContext, event_type: str, raw_body: bytes) -> int:
    with ctx.session() as session:
        result = session.execute(
            insert(webhook_events).values(
                event_type=event_type,
                payload_hash=hashlib.sha256(raw_body).hexdigest(),
                received_at=utc_now(),
                processed=False,
            )
        )
        return result.inserted_primary_key[0]


def _finish_delivery(ctx: BillingContext, event_id: int, error: Optional[str] = None) -> None:
    values = {"processed": error is None, "processed_at": utc_now()}
    if error is not None:
        values["error"] = error[:500]
    with ctx.session() as session:
        session.execute(update(webhook_events).where(webhook_events.c.id == event_id).values(**values))


def _handle_order_success(ctx: BillingContext, data: Dict[str, Any]) -> WebhookOutcome:
    order = data.get("order") or {}
    payment = data.get("payment") or {}
    order_id = order.get("order_id")
    payment_status = payment.get("payment_status")

    if payment_status != "SUCCESS":
        log_event(
            "info",
            "[webhook] order payment not successful, skipping",
            event_type=PAYMENT_SUCCESS,
            extra={"order_id": order_id, "payment_status": payment_status},
            logger=logger,
        )
        return WebhookOutcome(PAYMENT_SUCCESS, handled=False, action="skipped")
    if not order_id:
        raise ValidationError("PAYMENT_SUCCESS_WEBHOOK missing data.order.order_id")

    result = activate_order_payment(
        ctx,
        order_id,
        _as_str(payment.get("cf_payment_id")),
        parse_amount(payment.get("payment_amount")),
    )
    return WebhookOutcome(
        PAYMENT_SUCCESS,
        handled=result.activated,
        action="activated" if result.activated else (result.reason or "skipped"),
        subscription_id=result.subscription_id,
    )


def _handle_recurring_success(ctx: BillingContext, data: Dict[str, Any]) -> WebhookOutcome:
    gateway_subscription_id = _as_str(data.get("cf_subscription_id"))
    if not gateway_subscription_id:
        raise ValidationError("SUBSCRIPTION_PAYMENT_SUCCESS missing data.cf_subscription_id")
    result = activate_recurring_payment(
        ctx,
        gateway_subscription_id,
        _as_str(data.get("cf_payment_id")),
        parse_amount(data.get("payment_amount")),
    )
    return WebhookOutcome(
        SUBSCRIPTION_PAYMENT_SUCCESS,
        handled=result.activated,
        action="activated" if result.activated else (result.reason or "skipped"),
        subscription_id=result.subscription_id,
    )


def _handle_payment_failed(ctx: BillingContext, data: Dict[str, Any]) -> WebhookOutcome:
    gateway_subscription_id = _as_str(data.get("cf_subscription_id"))
    if not gateway_subscription_id:
        raise ValidationError("SUBSCRIPTION_PAYMENT_FAILED missing data.cf_subscription_id")
    result = on_payment_failed(ctx, gateway_subscription_id)
    return WebhookOutcome(
        SUBSCRIPTION_PAYMENT_FAILED,
        handled=result.applied,
        action="revoked" if result.applied else (result.reason or "skipped"),
        subscription_id=result.subscription_id,
    )


def _handle_status_changed(ctx: BillingContext, data: Dict[str, Any]) -> WebhookOutcome:
    details = data.get("subscription_details") or {}
    gateway_subscription_id = _as_str(details.get("cf_subscription_id"))
    gateway_status = details.get("subscription_status")
    if not gateway_subscription_id or not gateway_status:
        raise ValidationError(
            "SUBSCRIPTION_STATUS_CHANGED missing subscription_details.cf_subscription_id or subscription_status"
        )
    result = on_status_changed(ctx, gateway_subscription_id, gateway_status)
    return WebhookOutcome(
        SUBSCRIPTION_STATUS_CHANGED,
        handled=result.applied,
        action="status_changed" if result.applied else (result.reason or "skipped"),
        subscription_id=result.subscription_id,
    )


def _as_str(value: Any) -> Optional[str]:
    # Cashfree sends some ids as integers
    return str(value) if value is not None else None


HANDLERS = {
    PAYMENT_SUCCESS: _handle_order_success,
    SUBSCRIPTION_PAYMENT_SUCCESS: _handle_recurring_success,
    SUBSCRIPTION_PAYMENT_FAILED: _handle_payment_failed,
    SUBSCRIPTION_STATUS_CHANGED: _handle_status_changed,
}


def process_webhook(
    ctx: BillingContext,
    raw_body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
) -> WebhookOutcome:
    """
    Authenticate and dispatch one gateway callback.

    Returns normally for every verified delivery, including ignored types and
    unknown references. Activation failures propagate so the route answers
    500 and the gateway retries.

    Raises:
        UnauthorizedError: missing headers or bad signature
        ValidationError: malformed body
        BillingDisabledError: no gateway configured
    """
    gateway = ctx.require_gateway()

    if not signature or not timestamp:
        log_event("warning", "[webhook] missing signature headers", error_code="unauthorized", logger=logger)
        raise UnauthorizedError("Missing webhook signature or timestamp")

    if not gateway.verify_webhook_signature(signature, raw_body, timestamp):
        log_event("warning", "[webhook] invalid signature", error_code="unauthorized", logger=logger)
        raise UnauthorizedError("Invalid webhook signature")

    payload = _parse_body(raw_body)
    event_type = payload["type"]
    event_id = _record_delivery(ctx, event_type, raw_body)

    handler = HANDLERS.get(event_type)
    if handler is None:
        log_event("info", "[webhook] unhandled event type", event_type=event_type, logger=logger)
        _finish_delivery(ctx, event_id)
        return WebhookOutcome(event_type, handled=False, action="ignored")

    try:
        outcome = handler(ctx, payload["data"])
    except Exception as e:
        _finish_delivery(ctx, event_id, error=f"{type(e).__name__}: {e}")
        log_event(
            "error",
            "[webhook] processing failed",
            event_type=event_type,
            error_code=getattr(e, "code", "internal_error"),
            extra={"error_message": str(e)},
            logger=logger,
        )
        raise

    _finish_delivery(ctx, event_id)
    log_event(
        "info",
        "[webhook] processed",
        subscription_id=outcome.subscription_id,
        event_type=event_type,
        extra={"action": outcome.action},
        logger=logger,
    )
    return outcome
