"""Payment provider adapters."""

from .base import (
    ConnectorBase,
    RedirectGatewayConnector,
    PaymentEvent,
    EventKind,
    Confidence,
    RedirectOutcome,
    CheckoutData,
    SubscriptionData,
    InvoiceData,
    ContributionData,
    NoData,
    ProviderStatus,
    BillRequest,
    CreatedBill,
    redirect_event_id,
    format_amount,
    parse_amount,
    parse_form,
)
from .stripe_connector import StripeConnector
from .toyyibpay_connector import ToyyibPayConnector
from .billplz_connector import BillplzConnector

__all__ = [
    # Base classes and models
    "ConnectorBase",
    "RedirectGatewayConnector",
    "PaymentEvent",
    "EventKind",
    "Confidence",
    "RedirectOutcome",
    "CheckoutData",
    "SubscriptionData",
    "InvoiceData",
    "ContributionData",
    "NoData",
    "ProviderStatus",
    "BillRequest",
    "CreatedBill",
    "redirect_event_id",
    "format_amount",
    "parse_amount",
    "parse_form",
    # Connectors
    "StripeConnector",
    "ToyyibPayConnector",
    "BillplzConnector",
]
