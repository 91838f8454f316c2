"""
Payment strategies

One handler per PaymentMethod, all behind ``authorize(checkout) -> Receipt``.
Synchronous handlers settle immediately; the hosted handler only opens a
provider session and the order is created later from the webhook.
"""
import json
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import stripe

import config
from carts import CartLine
from errors import PaymentDeclinedError, ProviderError, ValidationError, WebhookSignatureError
from logs import get_logger
from schemas import CardDetails, PaymentMethod, PaymentStatus

log = get_logger(__name__)


@dataclass
class Checkout:
    """Everything a payment handler needs to know about one checkout attempt."""
    user_id: str
    email: Optional[str]
    name: Optional[str]
    lines: List[CartLine]
    billing_address: Optional[Dict[str, Any]] = None
    card_data: Optional[Dict[str, Any]] = None
    coupon: Optional[str] = None
    token: Optional[str] = None

    @property
    def subtotal(self) -> float:
        return round(sum(line.price * line.qty for line in self.lines), 2)


@dataclass
class Receipt:
    method: PaymentMethod
    payment_status: PaymentStatus
    message: str
    card_details: Optional[CardDetails] = None
    # hosted only
    redirect_url: Optional[str] = None
    session_id: Optional[str] = None


class PaymentStrategy:
    method: PaymentMethod

    def authorize(self, checkout: Checkout) -> Receipt:
        raise NotImplementedError


class CashOnDelivery(PaymentStrategy):
    method = PaymentMethod.COD

    def authorize(self, checkout: Checkout) -> Receipt:
        return Receipt(
            method=self.method,
            payment_status=PaymentStatus.PENDING,
            message="Order placed successfully! Payment will be collected on delivery.",
        )


class SimulatedCard(PaymentStrategy):
    method = PaymentMethod.CARD

    def __init__(self, rng: random.Random, success_rate: float = config.CARD_SUCCESS_RATE):
        self.rng = rng
        self.success_rate = success_rate

    def authorize(self, checkout: Checkout) -> Receipt:
        card = checkout.card_data or {}
        number = str(card.get("cardNumber") or "").replace(" ", "")
        if not number or not card.get("cvv"):
            raise ValidationError("Invalid card details")
        if self.rng.random() >= self.success_rate:
            raise PaymentDeclinedError("Payment failed. Please try again or use a different card.")
        return Receipt(
            method=self.method,
            payment_status=PaymentStatus.PAID,
            message="Payment successful! Order placed successfully.",
            card_details=CardDetails(
                card_type=card.get("cardType"),
                last_four=number[-4:],
                cardholder_name=card.get("cardholderName"),
            ),
        )


class SimulatedUpi(PaymentStrategy):
    method = PaymentMethod.UPI

    def __init__(self, rng: random.Random, success_rate: float = config.UPI_SUCCESS_RATE):
        self.rng = rng
        self.success_rate = success_rate

    def authorize(self, checkout: Checkout) -> Receipt:
        if self.rng.random() >= self.success_rate:
            raise PaymentDeclinedError("UPI payment failed. Please try again.")
        return Receipt(
            method=self.method,
            payment_status=PaymentStatus.PAID,
            message="UPI payment successful! Order placed successfully.",
        )


# Hosted checkout (Stripe)

SHIPPING_OPTIONS = [
    {
        "shipping_rate_data": {
            "type": "fixed_amount",
            "fixed_amount": {"amount": 0, "currency": config.CURRENCY},
            "display_name": "Free shipping",
            "delivery_estimate": {
                "minimum": {"unit": "business_day", "value": 5},
                "maximum": {"unit": "business_day", "value": 7},
            },
        },
    },
    {
        "shipping_rate_data": {
            "type": "fixed_amount",
            "fixed_amount": {"amount": 30000, "currency": config.CURRENCY},
            "display_name": "Next day air",
            "delivery_estimate": {
                "minimum": {"unit": "business_day", "value": 1},
                "maximum": {"unit": "business_day", "value": 1},
            },
        },
    },
]


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class StripeGateway:
    """Thin wrapper around the stripe SDK so tests can swap in a fake."""

    def __init__(self, api_key: str = config.STRIPE_SECRET_KEY,
                 webhook_secret: str = config.STRIPE_WEBHOOK_SECRET):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def find_or_create_customer(self, email: Optional[str], name: Optional[str], user_id: str) -> str:
        existing = stripe.Customer.list(email=email, limit=1, api_key=self.api_key) if email else None
        if existing and existing.data:
            return existing.data[0].id
        customer = stripe.Customer.create(name=name, email=email, metadata={"userId": user_id},
                                          api_key=self.api_key)
        return customer.id

    def create_session(self, **params) -> Dict[str, str]:
        session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        return {"id": session.id, "url": session.url}

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise ProviderError("Webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            log.warning("webhook_signature_invalid", error=str(e))
            raise WebhookSignatureError()
        except ValueError as e:
            log.warning("webhook_payload_invalid", error=str(e))
            raise WebhookSignatureError()
        return json.loads(payload)


class HostedCheckout(PaymentStrategy):
    method = PaymentMethod.HOSTED

    def __init__(self, gateway: StripeGateway, client_url: str = config.CLIENT_URL,
                 currency: str = config.CURRENCY, shipping_countries: Optional[List[str]] = None):
        self.gateway = gateway
        self.client_url = client_url
        self.currency = currency
        self.shipping_countries = shipping_countries or config.SHIPPING_COUNTRIES

    def line_items(self, checkout: Checkout) -> List[dict]:
        return [
            {
                "price_data": {
                    "currency": self.currency,
                    "product_data": {
                        "name": line.display_name,
                        "images": [line.image] if line.image else [],
                        "description": f"size: {line.size}",
                        "metadata": {"productId": line.product_id, "size": str(line.size)},
                    },
                    "unit_amount": to_minor_units(line.price),
                },
                "quantity": line.qty,
            }
            for line in checkout.lines
        ]

    def authorize(self, checkout: Checkout) -> Receipt:
        if not checkout.token:
            raise ValueError("hosted checkout needs a pending checkout token")
        try:
            customer_id = self.gateway.find_or_create_customer(checkout.email, checkout.name, checkout.user_id)
            session = self.gateway.create_session(
                line_items=self.line_items(checkout),
                phone_number_collection={"enabled": True},
                billing_address_collection="required",
                shipping_address_collection={"allowed_countries": self.shipping_countries},
                shipping_options=SHIPPING_OPTIONS,
                mode="payment",
                metadata={
                    "checkout_token": checkout.token,
                    "cart": cart_blob(checkout.lines),
                },
                customer=customer_id,
                discounts=[{"coupon": checkout.coupon}] if checkout.coupon else [],
                success_url=f"{self.client_url}/checkout-success",
                cancel_url=f"{self.client_url}/cart",
            )
        except stripe.StripeError as e:
            log.error("hosted_session_failed", user_id=checkout.user_id, error_type=type(e).__name__)
            raise ProviderError("Could not start the payment session. Please try again.")
        return Receipt(
            method=self.method,
            payment_status=PaymentStatus.PENDING,
            message="Redirecting to payment page",
            redirect_url=session["url"],
            session_id=session["id"],
        )


def cart_blob(lines: List[CartLine]) -> str:
    """Compact cart snapshot carried in the provider session metadata."""
    return json.dumps([{"productId": line.product_id, "qty": line.qty, "size": line.size} for line in lines])


def provider_payment_status(status: Optional[str]) -> PaymentStatus:
    if status in ("paid", "no_payment_required"):
        return PaymentStatus.PAID
    if status == "unpaid":
        return PaymentStatus.PENDING
    return PaymentStatus.FAILED


def build_strategies(gateway: StripeGateway, rng: random.Random) -> Dict[PaymentMethod, PaymentStrategy]:
    return {
        PaymentMethod.HOSTED: HostedCheckout(gateway),
        PaymentMethod.COD: CashOnDelivery(),
        PaymentMethod.CARD: SimulatedCard(rng),
        PaymentMethod.UPI: SimulatedUpi(rng),
    }
