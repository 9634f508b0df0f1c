"""
Payment gateway protocol.

Defines the interface the billing engine needs from a payment gateway
(Cashfree today). Business logic depends only on this protocol, so tests can
swap in a fake and the provider can change without touching activation code.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol


@dataclass(frozen=True)
class GatewayCustomer:
    """Customer details sent with every order/subscription."""
    customer_id: str
    email: str
    phone: str
    name: str


@dataclass(frozen=True)
class SubscriptionPlanDetails:
    """Plan block attached to a gateway subscription."""
    gateway_plan_id: str
    plan_name: str
    amount: Decimal
    max_amount: Optional[Decimal]
    currency: str
    max_cycles: int
    intervals: Optional[int]
    interval_type: Optional[str]
    plan_type: str = "PERIODIC"


@dataclass(frozen=True)
class GatewaySubscription:
    """Result of creating a subscription on the gateway."""
    gateway_subscription_id: str
    session_id: Optional[str]
    status: Optional[str]


@dataclass(frozen=True)
class GatewayPlanRequest:
    """Fields needed to register a recurring plan with the gateway."""
    plan_id: str
    plan_name: str
    currency: str
    recurring_amount: Decimal
    max_amount: Decimal
    max_cycles: int
    intervals: int
    interval_type: str
    note: str
    plan_type: str = "PERIODIC"


class PaymentGatewayClient(Protocol):
    """
    Protocol for payment gateways.

    Every remote call may raise GatewayError (meterguard.core.errors) with the
    best message the gateway returned. Timeouts are GatewayErrors too.
    """

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
        """
        Create a one-time order.

        Returns:
            Payment session id the client uses to open checkout
        """
        ...

    def create_subscription(
        self,
        *,
        subscription_id: str,
        plan_details: SubscriptionPlanDetails,
        customer: GatewayCustomer,
        note: Optional[str] = None,
    ) -> GatewaySubscription:
        """Create a recurring subscription against a synced plan."""
        ...

    def create_plan(self, plan: GatewayPlanRequest) -> str:
        """
        Register a recurring plan.

        Returns:
            Gateway-side plan id
        """
        ...

    def verify_webhook_signature(self, signature: str, raw_body: bytes, timestamp: str) -> bool:
        """Check a webhook signature over the exact delivered bytes."""
        ...

    def close(self) -> None:
        ...
