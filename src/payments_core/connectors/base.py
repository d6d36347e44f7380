"""Adapter interfaces and the normalized payment event model."""

import enum
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Union, Mapping, Annotated, Literal
from urllib.parse import parse_qsl

import httpx
from pydantic import BaseModel, Field

from ..database.models import ProviderType, SubscriptionStatus
from ..exceptions import ProviderAPIError, ValidationError

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    """Internal event kinds every provider notification is mapped onto."""
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    REDIRECT_CONFIRMED = "redirect_confirmed"
    REDIRECT_FAILED = "redirect_failed"
    # Not yet actionable; never treated as success or failure
    PENDING = "pending"


class Confidence(str, enum.Enum):
    """How much the notification can be trusted."""
    VERIFIED = "verified"  # cryptographically signed
    DEGRADED = "degraded"  # unsigned redirect or callback


class RedirectOutcome(str, enum.Enum):
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"


# Canonical event payloads, discriminated on ``type``
class CheckoutData(BaseModel):
    type: Literal["checkout"] = "checkout"
    session_id: str
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    plan: Optional[str] = None


class SubscriptionData(BaseModel):
    type: Literal["subscription"] = "subscription"
    external_subscription_id: str
    external_customer_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None  # None leaves the stored status as is
    provider_status: Optional[str] = None
    plan: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None


class InvoiceData(BaseModel):
    type: Literal["invoice"] = "invoice"
    external_invoice_id: str
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    amount: int = 0  # minor units
    currency: str
    status: str
    invoice_url: Optional[str] = None
    hosted_invoice_url: Optional[str] = None


class ContributionData(BaseModel):
    type: Literal["contribution"] = "contribution"
    contribution_id: str
    bill_id: str
    transaction_id: Optional[str] = None
    outcome: RedirectOutcome
    provider_status: str
    amount: Optional[int] = None  # minor units, as reported by the provider
    message: Optional[str] = None
    paid_at: Optional[datetime] = None


class NoData(BaseModel):
    type: Literal["none"] = "none"


EventData = Annotated[
    Union[CheckoutData, SubscriptionData, InvoiceData, ContributionData, NoData],
    Field(discriminator="type"),
]


class PaymentEvent(BaseModel):
    """A provider notification normalized for the ledger and the engine."""
    provider: ProviderType
    event_id: str
    kind: EventKind
    confidence: Confidence
    occurred_at: datetime
    received_at: datetime = Field(default_factory=datetime.utcnow)
    raw_payload: str
    owner_hint: Optional[str] = None
    owner_type: Optional[str] = None
    provider_event_type: Optional[str] = None
    data: EventData = Field(default_factory=NoData)


class ProviderStatus(BaseModel):
    """Current state of a bill as reported by the provider's API."""
    provider: ProviderType = Field(..., description="Provider queried")
    bill_id: str = Field(..., description="Provider bill or transaction ID")
    outcome: RedirectOutcome = Field(..., description="Mapped payment outcome")
    provider_status: str = Field(..., description="Raw status code or label from the provider")
    amount: Optional[int] = Field(None, description="Amount in minor units")
    paid_at: Optional[datetime] = Field(None, description="Payment time, if paid")
    raw_data: Optional[Dict[str, Any]] = Field(default=None, description="Raw provider response data")


class BillRequest(BaseModel):
    """A payment the payer is about to be sent to the gateway for."""
    contribution_id: str
    amount: int = Field(..., gt=0, description="Amount in minor units")
    payer_name: str
    payer_email: Optional[str] = None
    payer_mobile: Optional[str] = None
    description: str
    callback_url: str
    redirect_url: str


class CreatedBill(BaseModel):
    """A bill opened at the provider, ready for the payer."""
    provider: ProviderType
    bill_id: str = Field(..., description="Provider bill code or ID")
    payment_url: str = Field(..., description="Where to send the payer")
    raw_data: Optional[Any] = Field(default=None, description="Raw provider response data")


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert a Unix timestamp to a naive UTC datetime."""
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)


def format_amount(minor_units: Optional[int]) -> str:
    """Render minor units as a major-unit string, e.g. 5000 -> "50.00"."""
    if minor_units is None:
        return ""
    return f"{minor_units / 100:.2f}"


def parse_amount(value: Optional[str]) -> Optional[int]:
    """Parse a major-unit decimal string into minor units."""
    if value is None or str(value).strip() == "":
        return None
    try:
        return int((Decimal(str(value).strip()) * 100).to_integral_value())
    except (InvalidOperation, ValueError):
        return None


def parse_form(body: bytes) -> Dict[str, str]:
    """Decode a URL-encoded form body.

    Raises:
        ValidationError: If the body is not valid UTF-8.
    """
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationError("Callback body is not valid UTF-8") from None
    return dict(parse_qsl(text, keep_blank_values=True))


class ConnectorBase(ABC):
    """
    Minimal adapter interface. Adapters verify and normalize inbound
    notifications; they never touch persisted state.
    """

    provider: ProviderType

    @abstractmethod
    def verify_and_parse(
        self,
        body: bytes,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
    ) -> PaymentEvent:
        """
        Verify an inbound notification and map it to a PaymentEvent.

        Raises:
            AuthenticationError: The signature is missing or wrong.
            ValidationError: Required correlation fields are missing.
        """
        raise NotImplementedError


def redirect_event_id(contribution_id: str, transaction_id: str, outcome: RedirectOutcome) -> str:
    """Ledger key shared by a browser redirect and its server callback."""
    return f"{contribution_id}:{transaction_id}:{outcome.value}"


OUTCOME_KINDS: Dict[RedirectOutcome, EventKind] = {
    RedirectOutcome.SUCCESS: EventKind.REDIRECT_CONFIRMED,
    RedirectOutcome.FAILED: EventKind.REDIRECT_FAILED,
    RedirectOutcome.PENDING: EventKind.PENDING,
}


class RedirectGatewayConnector(ConnectorBase):
    """
    Shared behaviour of browser-redirect gateways.

    These providers do not sign their redirects, so every event they
    produce is ``degraded`` unless a subclass verifies a signature. The
    correlation fields below must all be present or the notification is
    rejected before anything is recorded.
    """

    REQUIRED_FIELDS = ("contribution_id", "bill_id", "status", "amount")
    SANDBOX_URL = ""
    PRODUCTION_URL = ""

    def __init__(
        self,
        is_sandbox: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        """
        Args:
            is_sandbox: Use the provider's sandbox endpoints.
            http_client: Shared client for provider API calls. A short-lived
                client is created per call when omitted.
            timeout: Request timeout in seconds.
        """
        self.is_sandbox = is_sandbox
        self._http_client = http_client
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        return self.SANDBOX_URL if self.is_sandbox else self.PRODUCTION_URL

    def _require(self, values: Mapping[str, Optional[str]]) -> None:
        missing = [name for name in self.REQUIRED_FIELDS if not values.get(name)]
        if missing:
            raise ValidationError(
                f"Missing {self.provider.value} parameters: {', '.join(missing)}"
            )

    def build_event(
        self,
        *,
        contribution_id: str,
        bill_id: str,
        outcome: RedirectOutcome,
        provider_status: str,
        amount: Optional[int],
        raw_payload: str,
        confidence: Confidence = Confidence.DEGRADED,
        transaction_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        message: Optional[str] = None,
        source: str = "callback",
    ) -> PaymentEvent:
        """Build the contribution event for a redirect or callback notification."""
        return PaymentEvent(
            provider=self.provider,
            event_id=redirect_event_id(contribution_id, bill_id, outcome),
            kind=OUTCOME_KINDS[outcome],
            confidence=confidence,
            occurred_at=paid_at or datetime.utcnow(),
            raw_payload=raw_payload,
            provider_event_type=f"{self.provider.value}.{source}",
            data=ContributionData(
                contribution_id=contribution_id,
                bill_id=bill_id,
                transaction_id=transaction_id,
                outcome=outcome,
                provider_status=provider_status,
                amount=amount,
                message=message,
                paid_at=paid_at,
            ),
        )

    @abstractmethod
    def parse_redirect(
        self,
        params: Mapping[str, str],
        expected_amount: Optional[int],
    ) -> PaymentEvent:
        """Normalize the payer's browser redirect into a PaymentEvent."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_bill_status(self, bill_id: str) -> ProviderStatus:
        """Query the provider for a bill's current status."""
        raise NotImplementedError

    @abstractmethod
    async def create_bill(self, request: BillRequest) -> CreatedBill:
        """Open a bill at the provider for a pending contribution.

        Raises:
            ConfigurationError: If the tenant credentials needed are missing.
            ProviderAPIError: If the provider call fails.
        """
        raise NotImplementedError

    async def _request(
        self,
        method: str,
        url: str,
        *,
        data: Optional[Dict[str, Any]] = None,
        auth: Optional[Any] = None,
    ) -> Any:
        """Call the provider API and decode its JSON response.

        Raises:
            ProviderAPIError: On transport errors, non-2xx responses or a
                body that is not JSON.
        """
        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    method, url, data=data, auth=auth, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, data=data, auth=auth)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.error(f"{self.provider.value} API error calling {url}: {e}")
            raise ProviderAPIError(f"{self.provider.value} API request failed") from e
        except ValueError as e:
            logger.error(f"{self.provider.value} API returned a non-JSON body from {url}")
            raise ProviderAPIError(f"{self.provider.value} API returned an invalid response") from e
