"""
Payment gateway adapter for charges and refunds, and normalisation of its
webhook events.
"""
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import stripe

from turnstile.config import get_settings
from turnstile.models.refund import RefundStatus
from turnstile.services.errors import GatewayRejected, GatewayTimeout

settings = get_settings()
logger = logging.getLogger(__name__)

# Process-wide SDK configuration, set once. A retried money movement is never sent blindly.
stripe.api_key = settings.stripe_secret_key
stripe.max_network_retries = 0
stripe.default_http_client = stripe.RequestsClient(timeout=settings.gateway_timeout_seconds)

EVENT_ID_HEADER = "x-gateway-event-id"
PAYMENT_SUCCEEDED = "succeeded"


@dataclass
class GatewayRefund:
    id: str
    status: str


@dataclass
class GatewayPayment:
    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == PAYMENT_SUCCEEDED


class PaymentGateway(ABC):
    @abstractmethod
    def create_payment(self, amount_minor_units: int, metadata: dict) -> GatewayPayment:
        """
        Open a charge the buyer completes on the client side.
        Raises GatewayRejected or GatewayTimeout.
        """
        ...

    @abstractmethod
    def retrieve_payment(self, charge_ref: str) -> GatewayPayment:
        """Read a charge back from the gateway. Raises GatewayRejected or GatewayTimeout."""
        ...

    @abstractmethod
    def initiate_refund(
        self, charge_ref: str, amount_minor_units: int, metadata: dict
    ) -> GatewayRefund:
        """
        Ask the gateway to refund `amount_minor_units` of a charge.
        Raises GatewayRejected or GatewayTimeout.
        """
        ...


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: Optional[str] = None, currency: Optional[str] = None):
        self.api_key = api_key or settings.stripe_secret_key
        self.currency = currency or settings.currency

    def create_payment(self, amount_minor_units: int, metadata: dict) -> GatewayPayment:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor_units,
                currency=self.currency,
                metadata={k: str(v)[:500] for k, v in metadata.items()},
                idempotency_key=metadata.get("order_reference"),
                api_key=self.api_key
            )
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe payment creation timed out or dropped: {e}")
            raise GatewayTimeout()
        except stripe.StripeError as e:
            logger.error(f"Stripe refused payment creation: {e}")
            raise GatewayRejected(getattr(e, "user_message", None) or str(e))

        return self._payment(intent)

    def retrieve_payment(self, charge_ref: str) -> GatewayPayment:
        try:
            intent = stripe.PaymentIntent.retrieve(charge_ref, api_key=self.api_key)
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe lookup of {charge_ref} timed out or dropped: {e}")
            raise GatewayTimeout()
        except stripe.StripeError as e:
            logger.error(f"Stripe lookup of {charge_ref} failed: {e}")
            raise GatewayRejected(getattr(e, "user_message", None) or str(e))

        return self._payment(intent)

    @staticmethod
    def _payment(intent) -> GatewayPayment:
        return GatewayPayment(
            id=intent.id,
            status=intent.status,
            amount=intent.amount,
            currency=intent.currency,
            client_secret=intent.client_secret,
            metadata=dict(intent.metadata or {})
        )

    def initiate_refund(
        self, charge_ref: str, amount_minor_units: int, metadata: dict
    ) -> GatewayRefund:
        try:
            refund = stripe.Refund.create(
                payment_intent=charge_ref,
                amount=amount_minor_units,
                metadata={k: str(v)[:500] for k, v in metadata.items()},
                idempotency_key=metadata.get("refund_reference"),
                api_key=self.api_key
            )
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe refund for {charge_ref} timed out or dropped: {e}")
            raise GatewayTimeout()
        except stripe.StripeError as e:
            logger.error(f"Stripe refused refund for {charge_ref}: {e}")
            raise GatewayRejected(getattr(e, "user_message", None) or str(e))

        return GatewayRefund(id=refund.id, status=refund.status)


@dataclass
class WebhookEvent:
    event_id: str
    event_type: str
    gateway_refund_id: Optional[str]
    local_refund_reference: Optional[str]
    entity_status: Optional[str]
    error_description: Optional[str]
    payload: dict = field(default_factory=dict)

    @property
    def target_status(self) -> Optional[RefundStatus]:
        """Refund status this event asks for, or None for informational events."""
        if self.event_type == "refund.processed":
            return RefundStatus.PROCESSED
        if self.event_type == "refund.failed":
            return RefundStatus.FAILED
        if self.event_type in ("refund.updated", "charge.refund.updated"):
            if self.entity_status in ("succeeded", "processed"):
                return RefundStatus.PROCESSED
            if self.entity_status in ("failed", "canceled"):
                return RefundStatus.FAILED
        return None


def parse_webhook_event(raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
    """
    Accepts the gateway envelope {"id", "event", "payload": {"refund": {"entity"}}}
    and the Stripe envelope {"id", "type", "data": {"object"}}.
    Raises ValueError for anything else.
    """
    try:
        body = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Webhook body is not JSON: {e}")
    if not isinstance(body, dict):
        raise ValueError("Webhook body is not an object")

    if "event" in body:
        event_type = body["event"]
        entity = _dig(body, "payload", "refund", "entity")
        notes = entity.get("notes") or {}
        error_description = entity.get("error_description")
    elif "type" in body:
        event_type = body["type"]
        entity = _dig(body, "data", "object")
        notes = entity.get("metadata") or {}
        error_description = entity.get("failure_reason")
    else:
        raise ValueError("Unrecognised webhook envelope")

    if not isinstance(event_type, str):
        raise ValueError("Webhook event type missing")

    # Deliveries without an id still dedupe when the bytes repeat
    event_id = (
        body.get("id")
        or _header(headers, EVENT_ID_HEADER)
        or "sha256:" + hashlib.sha256(raw_body).hexdigest()
    )
    if not isinstance(notes, dict):
        notes = {}

    return WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        gateway_refund_id=entity.get("id"),
        local_refund_reference=notes.get("refund_reference"),
        entity_status=entity.get("status"),
        error_description=error_description,
        payload=body
    )


def _dig(body: dict, *keys: str) -> dict:
    node: Any = body
    for key in keys:
        node = node.get(key) if isinstance(node, dict) else None
    return node if isinstance(node, dict) else {}


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None
