"""
Cashfree payment gateway implementation.

Implements PaymentGatewayClient against the Cashfree PG REST API with httpx.
Handles order/subscription/plan creation and webhook signature verification.
"""
import base64
import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from meterguard.core.errors import GatewayError
from meterguard.features.gateway.provider import (
    GatewayCustomer,
    GatewayPlanRequest,
    GatewaySubscription,
    SubscriptionPlanDetails,
)

logger = logging.getLogger(__name__)

BASE_URLS = {
    "sandbox": "https://sandbox.cashfree.com/pg",
    "production": "https://api.cashfree.com/pg",
}


def _amount(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _customer_details(customer: GatewayCustomer) -> Dict[str, str]:
    return {
        "customer_id": customer.customer_id,
        "customer_email": customer.email,
        "customer_phone": customer.phone,
        "customer_name": customer.name,
    }


def compute_webhook_signature(secret_key: str, raw_body: bytes, timestamp: str) -> str:
    """base64(HMAC-SHA256(secret, timestamp + raw_body))."""
    message = timestamp.encode("utf-8") + raw_body
    digest = hmac.new(secret_key.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class CashfreeProvider:
    """Cashfree implementation of PaymentGatewayClient."""

    def __init__(
        self,
        app_id: str,
        secret_key: str,
        *,
        environment: str = "sandbox",
        api_version: str = "2025-01-01",
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize Cashfree provider.

        Args:
            app_id: Cashfree client id (x-client-id)
            secret_key: Cashfree client secret, also the webhook signing key
            environment: "sandbox" or "production"
            api_version: Value for the x-api-version header
            timeout: Per-request timeout in seconds
            http_client: Pre-built client (tests pass one with a MockTransport)
        """
        if not app_id or not secret_key:
            raise GatewayError("CASHFREE_APP_ID and CASHFREE_SECRET_KEY must be configured")
        if environment not in BASE_URLS:
            raise GatewayError(f"Unknown Cashfree environment: {environment}")

        self.secret_key = secret_key
        self.environment = environment
        headers = {
            "x-client-id": app_id,
            "x-client-secret": secret_key,
            "x-api-version": api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if http_client is not None:
            http_client.headers.update(headers)
            if not str(http_client.base_url):
                http_client.base_url = BASE_URLS[environment]
            self._client = http_client
        else:
            self._client = httpx.Client(
                base_url=BASE_URLS[environment],
                headers=headers,
                timeout=timeout,
            )

    @classmethod
    def from_settings(cls, settings_obj) -> "CashfreeProvider":
        return cls(
            settings_obj.CASHFREE_APP_ID,
            settings_obj.CASHFREE_SECRET_KEY,
            environment=settings_obj.CASHFREE_ENVIRONMENT,
            api_version=settings_obj.CASHFREE_API_VERSION,
            timeout=settings_obj.GATEWAY_TIMEOUT_SECONDS,
        )

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = {k: v for k, v in payload.items() if v is not None}
        try:
            response = self._client.post(path, json=body)
        except httpx.TimeoutException as e:
            logger.warning("[cashfree] request timed out", extra={"path": path})
            raise GatewayError(f"Cashfree request timed out: {path}") from e
        except httpx.HTTPError as e:
            logger.warning("[cashfree] transport error", extra={"path": path, "error_message": str(e)})
            raise GatewayError(f"Cashfree request failed: {e}") from e

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning(
                "[cashfree] request rejected",
                extra={"path": path, "status": response.status_code, "error_message": message},
            )
            raise GatewayError(message)

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"Cashfree returned a non-JSON response for {path}") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return f"Cashfree request failed with HTTP {response.status_code}"

    def create_order(
        self,
        *,
        order_id: str,
        amount: Decimal,
        currency: str,
        customer: GatewayCustomer,
        return_url: str,
        note: Optional[str] = None,
    ) -> str:
        """Create a Cashfree order and return its payment_session_id."""
        data = self._post(
            "/orders",
            {
                "order_id": order_id,
                "order_amount": _amount(amount),
                "order_currency": currency,
                "customer_details": _customer_details(customer),
                "order_meta": {"return_url": return_url},
                "order_note": note,
            },
        )
        session_id = data.get("payment_session_id")
        if not session_id:
            raise GatewayError("Cashfree order response missing payment_session_id")
        return session_id

    def create_subscription(
        self,
        *,
        subscription_id: str,
        plan_details: SubscriptionPlanDetails,
        customer: GatewayCustomer,
        note: Optional[str] = None,
    ) -> GatewaySubscription:
        """Create a Cashfree subscription against an already synced plan."""
        plan_block = {
            "plan_id": plan_details.gateway_plan_id,
            "plan_name": plan_details.plan_name,
            "plan_type": plan_details.plan_type,
            "plan_amount": _amount(plan_details.amount),
            "plan_max_amount": _amount(plan_details.max_amount),
            "plan_currency": plan_details.currency,
            "plan_max_cycles": plan_details.max_cycles,
            "plan_intervals": plan_details.intervals,
            "plan_interval_type": plan_details.interval_type,
        }
        data = self._post(
            "/subscriptions",
            {
                "subscription_id": subscription_id,
                "plan_details": {k: v for k, v in plan_block.items() if v is not None},
                "customer_details": {
                    "customer_email": customer.email,
                    "customer_phone": customer.phone,
                    "customer_name": customer.name,
                },
                "subscription_note": note,
            },
        )
        gateway_id = data.get("cf_subscription_id")
        if not gateway_id:
            raise GatewayError("Cashfree subscription response missing cf_subscription_id")
        return GatewaySubscription(
            gateway_subscription_id=str(gateway_id),
            session_id=data.get("subscription_session_id"),
            status=data.get("subscription_status"),
        )

    def create_plan(self, plan: GatewayPlanRequest) -> str:
        """Create a PERIODIC plan on Cashfree and return its plan_id."""
        data = self._post(
            "/plans",
            {
                "plan_id": plan.plan_id,
                "plan_name": plan.plan_name,
                "plan_type": plan.plan_type,
                "plan_currency": plan.currency,
                "plan_recurring_amount": _amount(plan.recurring_amount),
                "plan_max_amount": _amount(plan.max_amount),
                "plan_max_cycles": plan.max_cycles,
                "plan_interval_type": plan.interval_type,
                "plan_intervals": plan.intervals,
                "plan_note": plan.note,
            },
        )
        return data.get("plan_id") or plan.plan_id

    def verify_webhook_signature(self, signature: str, raw_body: bytes, timestamp: str) -> bool:
        """Verify x-webhook-signature for a delivery."""
        if not signature or not timestamp:
            return False
        expected = compute_webhook_signature(self.secret_key, raw_body, timestamp)
        return hmac.compare_digest(expected, signature)

    def close(self) -> None:
        self._client.close()
