"""Stripe webhook adapter: signature verification and event normalization."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import pydantic
import stripe
from pydantic import BaseModel, ConfigDict

from ..database.models import OwnerType, ProviderType, SubscriptionStatus
from ..exceptions import AuthenticationError, ConfigurationError, ValidationError
from .base import (
    CheckoutData,
    Confidence,
    ConnectorBase,
    EventKind,
    InvoiceData,
    NoData,
    PaymentEvent,
    SubscriptionData,
    from_unix,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

# Stripe event type -> internal kind. Anything not listed is pending.
STRIPE_EVENT_KINDS: Dict[str, EventKind] = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_FAILED,
}

# Stripe subscription status -> internal status. Unlisted statuses
# (incomplete, paused, future additions) leave the stored status unchanged.
STRIPE_SUBSCRIPTION_STATUSES: Dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

ExpandableId = Optional[Union[str, Dict[str, Any]]]


def _id_of(value: ExpandableId) -> Optional[str]:
    """Stripe references may arrive as an id or as an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def map_subscription_status(status: Optional[str]) -> Optional[SubscriptionStatus]:
    if not status:
        return None
    return STRIPE_SUBSCRIPTION_STATUSES.get(status)


# Typed views over the Stripe payloads we read. Unknown fields are ignored.
class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StripeCheckoutSession(_StripeObject):
    id: str
    customer: ExpandableId = None
    subscription: ExpandableId = None
    mode: Optional[str] = None
    metadata: Dict[str, Any] = {}


class StripeSubscriptionItem(_StripeObject):
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class StripeSubscriptionItems(_StripeObject):
    data: List[StripeSubscriptionItem] = []


class StripeSubscription(_StripeObject):
    id: str
    customer: ExpandableId = None
    status: Optional[str] = None
    metadata: Dict[str, Any] = {}
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    items: Optional[StripeSubscriptionItems] = None

    def period(self) -> Tuple[Optional[int], Optional[int]]:
        """Billing period, read from the first item on newer API versions."""
        if self.current_period_end is not None:
            return self.current_period_start, self.current_period_end
        if self.items and self.items.data:
            item = self.items.data[0]
            return item.current_period_start, item.current_period_end
        return None, None


class StripeSubscriptionDetails(_StripeObject):
    subscription: ExpandableId = None
    metadata: Dict[str, Any] = {}


class StripeInvoiceParent(_StripeObject):
    subscription_details: Optional[StripeSubscriptionDetails] = None


class StripeInvoice(_StripeObject):
    id: str
    customer: ExpandableId = None
    subscription: ExpandableId = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "myr"
    status: Optional[str] = None
    invoice_pdf: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    metadata: Dict[str, Any] = {}
    subscription_details: Optional[StripeSubscriptionDetails] = None
    parent: Optional[StripeInvoiceParent] = None

    def _details(self) -> Optional[StripeSubscriptionDetails]:
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details
        return self.subscription_details

    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return _id_of(self.subscription)
        details = self._details()
        return _id_of(details.subscription) if details else None

    def owner_metadata(self) -> Dict[str, Any]:
        details = self._details()
        if details and details.metadata:
            return details.metadata
        return self.metadata


class StripeEventData(_StripeObject):
    object: Dict[str, Any]


class StripeEventEnvelope(_StripeObject):
    id: str
    type: str
    created: int
    data: StripeEventData


def owner_from_metadata(metadata: Mapping[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Owner id and type from Stripe metadata. ``user_id`` wins over ``mosque_id``."""
    user_id = metadata.get("user_id")
    if user_id:
        return str(user_id), OwnerType.USER.value
    mosque_id = metadata.get("mosque_id")
    if mosque_id:
        return str(mosque_id), OwnerType.MOSQUE.value
    return None, None


class StripeConnector(ConnectorBase):
    """
    Verifies Stripe webhooks and maps them to PaymentEvents.

    The signature is checked with ``stripe.Webhook.construct_event`` before
    anything in the payload is trusted. The verified body is then parsed
    into typed payload models and mapped through explicit tables.
    """

    provider = ProviderType.STRIPE

    def __init__(self, webhook_secret: Optional[str], tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def verify_and_parse(
        self,
        body: bytes,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
    ) -> PaymentEvent:
        if not self.webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")

        sig_header = headers.get(SIGNATURE_HEADER) or headers.get("Stripe-Signature")
        if not sig_header:
            raise AuthenticationError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig_header,
                secret=self.webhook_secret,
                tolerance=self.tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            raise AuthenticationError("Invalid webhook signature") from e
        except ValueError as e:
            raise ValidationError("Malformed webhook payload") from e

        try:
            envelope = StripeEventEnvelope.model_validate(json.loads(body))
        except (ValueError, pydantic.ValidationError) as e:
            raise ValidationError("Malformed webhook payload") from e

        raw_payload = body.decode("utf-8") if isinstance(body, bytes) else body
        return self.to_event(envelope, raw_payload)

    def to_event(self, envelope: StripeEventEnvelope, raw_payload: str) -> PaymentEvent:
        """Map a verified Stripe event envelope onto a PaymentEvent."""
        kind = STRIPE_EVENT_KINDS.get(envelope.type, EventKind.PENDING)
        obj = envelope.data.object
        owner_hint, owner_type = None, None

        try:
            if kind == EventKind.CHECKOUT_COMPLETED:
                session = StripeCheckoutSession.model_validate(obj)
                owner_hint, owner_type = owner_from_metadata(session.metadata)
                data = CheckoutData(
                    session_id=session.id,
                    external_customer_id=_id_of(session.customer),
                    external_subscription_id=_id_of(session.subscription),
                    plan=session.metadata.get("plan"),
                )
            elif kind in (
                EventKind.SUBSCRIPTION_CREATED,
                EventKind.SUBSCRIPTION_UPDATED,
                EventKind.SUBSCRIPTION_DELETED,
            ):
                subscription = StripeSubscription.model_validate(obj)
                owner_hint, owner_type = owner_from_metadata(subscription.metadata)
                period_start, period_end = subscription.period()
                data = SubscriptionData(
                    external_subscription_id=subscription.id,
                    external_customer_id=_id_of(subscription.customer),
                    status=map_subscription_status(subscription.status),
                    provider_status=subscription.status,
                    plan=subscription.metadata.get("plan"),
                    current_period_start=from_unix(period_start),
                    current_period_end=from_unix(period_end),
                    cancel_at_period_end=subscription.cancel_at_period_end,
                    canceled_at=from_unix(subscription.canceled_at),
                    trial_start=from_unix(subscription.trial_start),
                    trial_end=from_unix(subscription.trial_end),
                )
            elif kind in (EventKind.INVOICE_PAID, EventKind.INVOICE_FAILED):
                invoice = StripeInvoice.model_validate(obj)
                owner_hint, owner_type = owner_from_metadata(invoice.owner_metadata())
                paid = kind == EventKind.INVOICE_PAID
                data = InvoiceData(
                    external_invoice_id=invoice.id,
                    external_subscription_id=invoice.subscription_id(),
                    external_customer_id=_id_of(invoice.customer),
                    amount=invoice.amount_paid if paid else invoice.amount_due,
                    currency=invoice.currency,
                    status="paid" if paid else "failed",
                    invoice_url=invoice.invoice_pdf,
                    hosted_invoice_url=invoice.hosted_invoice_url,
                )
            else:
                logger.info(f"Unhandled Stripe event type {envelope.type} ({envelope.id})")
                data = NoData()
        except pydantic.ValidationError as e:
            raise ValidationError(f"Malformed {envelope.type} payload") from e

        return PaymentEvent(
            provider=ProviderType.STRIPE,
            event_id=envelope.id,
            kind=kind,
            confidence=Confidence.VERIFIED,
            occurred_at=from_unix(envelope.created) or datetime.utcnow(),
            raw_payload=raw_payload,
            owner_hint=owner_hint,
            owner_type=owner_type,
            provider_event_type=envelope.type,
            data=data,
        )
