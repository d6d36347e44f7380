"""Service layer wiring adapters, the vault and the ledger to one transaction per request."""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import httpx

from .config import Settings
from .connectors import (
    BillplzConnector,
    BillRequest,
    PaymentEvent,
    ProviderStatus,
    RedirectGatewayConnector,
    StripeConnector,
    ToyyibPayConnector,
    parse_form,
)
from .database import (
    Contribution,
    ContributionRepository,
    DatabaseManager,
    EventStatus,
    PaymentEventRepository,
    ProviderType,
)
from .exceptions import DuplicateEventError, NotFoundError, ValidationError
from .ledger import EventLedger, IngestResult
from .vault import CredentialCipher, CredentialVault, MaskedCredential, ProviderCredentials, RotationResult

logger = logging.getLogger(__name__)

GATEWAY_PROVIDERS = (ProviderType.TOYYIBPAY, ProviderType.BILLPLZ)

# Ledger states an operator may need to look at
REVIEWABLE_STATUSES = (EventStatus.IGNORED, EventStatus.FAILED)

MAX_EVENT_LISTING = 500


@dataclass
class CreatedPayment:
    """A pending contribution and the provider bill the payer is sent to."""
    contribution_id: str
    provider: str
    bill_id: str
    payment_url: str
    amount: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contribution_id": self.contribution_id,
            "provider": self.provider,
            "bill_id": self.bill_id,
            "payment_url": self.payment_url,
            "amount": self.amount,
        }


def parse_provider(value: str) -> ProviderType:
    """Parse a provider wire name.

    Raises:
        ValidationError: If the provider is unknown.
    """
    try:
        return ProviderType(value)
    except ValueError:
        raise ValidationError(f"Unsupported provider: {value}") from None


def build_gateway_connector(
    provider: ProviderType,
    credentials: Optional[ProviderCredentials] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> RedirectGatewayConnector:
    """Build a redirect-gateway adapter from a tenant's decrypted credentials.

    Args:
        provider: ``toyyibpay`` or ``billplz``.
        credentials: Tenant credentials, if the tenant has any.
        http_client: Shared client for provider status lookups.

    Raises:
        ValidationError: If the provider has no redirect adapter.
    """
    is_sandbox = credentials.is_sandbox if credentials else True
    field = credentials.get if credentials else (lambda name: None)
    if provider == ProviderType.TOYYIBPAY:
        return ToyyibPayConnector(
            secret_key=field("secret_key"),
            category_code=field("category_code"),
            is_sandbox=is_sandbox,
            http_client=http_client,
        )
    if provider == ProviderType.BILLPLZ:
        return BillplzConnector(
            api_key=field("api_key"),
            x_signature_key=field("x_signature_key"),
            collection_id=field("collection_id"),
            is_sandbox=is_sandbox,
            http_client=http_client,
        )
    raise ValidationError(f"{provider.value} has no redirect integration")


class PaymentsService:
    """
    Entry point for every operation the HTTP layer and the CLI expose.

    Each public method opens its own unit of work on the injected
    ``DatabaseManager``. Ingestion runs the ledger insert and the resulting
    state change in one transaction; a duplicate that loses the insert race
    rolls that transaction back and is reported as an idempotent no-op.
    """

    def __init__(
        self,
        db: DatabaseManager,
        settings: Settings,
        cipher: Optional[CredentialCipher] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the service.

        Args:
            db: Initialized database manager.
            settings: Process settings.
            cipher: Credential cipher. Built from ``settings`` when omitted.
            http_client: Shared client for provider API calls.
        """
        self.db = db
        self.settings = settings
        self.cipher = cipher or CredentialCipher(
            settings.encryption_key,
            settings.previous_encryption_key,
            iterations=settings.kdf_iterations,
        )
        self.http_client = http_client

    # Ingestion

    async def ingest(self, event: PaymentEvent) -> IngestResult:
        """Record and apply one normalized event.

        Raises:
            PersistenceError: On a storage failure; the transaction, ledger
                insert included, has been rolled back.
            PaymentsCoreError: On any other failure except a duplicate.
        """
        try:
            async with self.db.session() as session:
                result = await EventLedger(session).ingest(event)
        except DuplicateEventError as e:
            return IngestResult.for_duplicate(e.provider, e.event_id)

        logger.info(
            f"Ingested {result.provider} event {result.event_id}: {result.status}"
            + (f" ({result.reason})" if result.reason else "")
        )
        return result

    async def handle_stripe_webhook(self, body: bytes, headers: Mapping[str, str]) -> IngestResult:
        """Verify a Stripe delivery and ingest it.

        Raises:
            ConfigurationError: If no webhook secret is configured.
            AuthenticationError: If the signature is missing or wrong.
            ValidationError: If the payload is malformed.
        """
        connector = StripeConnector(self.settings.stripe_webhook_secret)
        event = connector.verify_and_parse(body, headers)
        return await self.ingest(event)

    async def handle_gateway_callback(
        self,
        provider: ProviderType,
        body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> IngestResult:
        """Verify a redirect gateway's server callback and ingest it.

        The tenant owning the contribution decides which signature key, if
        any, the callback is checked against.

        Raises:
            AuthenticationError: If a required signature is missing or wrong.
            ValidationError: If a correlation field is missing or the body
                is not UTF-8.
            CryptoError: If the tenant's credentials cannot be decrypted.
                Nothing is recorded and the provider is expected to retry.
        """
        form = parse_form(body)
        credentials = None
        if provider == ProviderType.BILLPLZ:
            contribution_id = query.get("contribution_id") or form.get("reference_1")
            credentials = await self.find_contribution_credentials(
                provider, contribution_id, form.get("id")
            )

        connector = build_gateway_connector(provider, credentials, self.http_client)
        event = connector.verify_and_parse(body, headers, query)
        return await self.ingest(event)

    async def replay_event(self, provider: str, event_id: str) -> IngestResult:
        """Re-apply an ignored or failed ledger row.

        Raises:
            NotFoundError: If the event is not in the ledger.
        """
        async with self.db.session() as session:
            result = await EventLedger(session).replay(provider, event_id)
        logger.info(f"Replay of {provider} event {event_id}: {result.status}")
        return result

    async def list_events(self, status: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Ledger rows awaiting manual review, newest first.

        Args:
            status: ``ignored`` or ``failed``.
            limit: Maximum number of rows, capped at 500.

        Raises:
            ValidationError: If the status is not reviewable or the limit is
                not positive.
        """
        try:
            event_status = EventStatus(status)
        except ValueError:
            event_status = None
        if event_status not in REVIEWABLE_STATUSES:
            allowed = ", ".join(s.value for s in REVIEWABLE_STATUSES)
            raise ValidationError(f"Invalid event status: {status}. Must be one of: {allowed}")
        if limit < 1:
            raise ValidationError("limit must be positive")

        async with self.db.session() as session:
            records = await PaymentEventRepository(session).list_by_status(
                event_status, limit=min(limit, MAX_EVENT_LISTING)
            )
            return [record.to_dict() for record in records]

    # Contributions

    async def register_contribution(
        self,
        tenant_id: str,
        amount: int,
        provider: Optional[str] = None,
        bill_id: Optional[str] = None,
        contributor_name: Optional[str] = None,
        contribution_id: Optional[str] = None,
    ) -> Contribution:
        """Register a pending contribution awaiting payment."""
        async with self.db.session() as session:
            return await ContributionRepository(session).create(
                tenant_id=tenant_id,
                amount=amount,
                provider=provider,
                bill_id=bill_id,
                contributor_name=contributor_name,
                contribution_id=contribution_id,
            )

    async def create_payment(
        self,
        tenant_id: str,
        provider: ProviderType,
        amount: int,
        payer_name: str,
        payer_email: Optional[str] = None,
        payer_mobile: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreatedPayment:
        """Open a bill at a redirect gateway and register the pending contribution.

        The bill is created with the tenant's own credentials. The callback
        and redirect URLs carry the new contribution id, and the returned
        bill id is stored with the contribution so both can be matched.

        Args:
            tenant_id: Tenant collecting the payment.
            provider: ``toyyibpay`` or ``billplz``.
            amount: Amount in minor units.
            payer_name: Name shown on the bill.
            payer_email: Optional payer email.
            payer_mobile: Optional payer phone number.
            description: Bill description. Defaults to a contribution label.

        Returns:
            The contribution id, bill id and payment URL.

        Raises:
            ValidationError: If the provider has no bill creation, or the
                amount or payer name is invalid.
            NotFoundError: If the tenant has no active credentials.
            CryptoError: If the tenant's credentials cannot be decrypted.
            ProviderAPIError: If the provider call fails.
        """
        if provider not in GATEWAY_PROVIDERS:
            raise ValidationError(f"{provider.value} has no bill creation")
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        if not payer_name or not payer_name.strip():
            raise ValidationError("Payer name is required")

        credentials = await self.find_credentials(tenant_id, provider.value)
        if credentials is None or not credentials.is_active:
            raise NotFoundError(f"No active {provider.value} credentials for tenant {tenant_id}")

        contribution_id = str(uuid.uuid4())
        base_url = self.settings.api_base_url.rstrip("/")
        query = urlencode({"contribution_id": contribution_id})
        request = BillRequest(
            contribution_id=contribution_id,
            amount=amount,
            payer_name=payer_name.strip(),
            payer_email=payer_email,
            payer_mobile=payer_mobile,
            description=description or f"Khairat contribution for {payer_name.strip()}",
            callback_url=f"{base_url}/webhooks/{provider.value}/callback?{query}",
            redirect_url=f"{base_url}/payments/{provider.value}/redirect?{query}",
        )

        connector = build_gateway_connector(provider, credentials, self.http_client)
        bill = await connector.create_bill(request)

        contribution = await self.register_contribution(
            tenant_id=tenant_id,
            amount=amount,
            provider=provider.value,
            bill_id=bill.bill_id,
            contributor_name=request.payer_name,
            contribution_id=contribution_id,
        )
        logger.info(
            f"Created {provider.value} payment {bill.bill_id} for contribution "
            f"{contribution.id} (tenant {tenant_id})"
        )
        return CreatedPayment(
            contribution_id=contribution.id,
            provider=provider.value,
            bill_id=bill.bill_id,
            payment_url=bill.payment_url,
            amount=amount,
        )

    async def find_contribution(self, contribution_id: Optional[str], bill_id: Optional[str]) -> Optional[Contribution]:
        async with self.db.session() as session:
            return await ContributionRepository(session).get_by_compound_key(contribution_id, bill_id)

    async def find_contribution_credentials(
        self,
        provider: ProviderType,
        contribution_id: Optional[str],
        bill_id: Optional[str],
    ) -> Optional[ProviderCredentials]:
        """Credentials of the tenant owning a contribution, if both exist.

        Raises:
            CryptoError: If the tenant has credentials that cannot be decrypted.
        """
        contribution = await self.find_contribution(contribution_id, bill_id)
        if contribution is None:
            return None
        return await self.find_credentials(contribution.tenant_id, provider.value)

    # Credentials

    async def find_credentials(self, tenant_id: str, provider_type: str) -> Optional[ProviderCredentials]:
        async with self.db.session() as session:
            return await CredentialVault(session, self.cipher).find_credentials(tenant_id, provider_type)

    async def list_credentials(self, tenant_id: str) -> Dict[str, MaskedCredential]:
        async with self.db.session() as session:
            return await CredentialVault(session, self.cipher).get_masked(tenant_id)

    async def save_credentials(
        self,
        tenant_id: str,
        provider_type: str,
        fields: Dict[str, Any],
        is_active: bool = False,
        is_sandbox: bool = True,
    ) -> MaskedCredential:
        """Vault-aware upsert; masked or empty secrets keep the stored value."""
        async with self.db.session() as session:
            return await CredentialVault(session, self.cipher).upsert(
                tenant_id,
                provider_type,
                fields,
                is_active=is_active,
                is_sandbox=is_sandbox,
            )

    async def rotate_credentials(
        self,
        tenant_id: Optional[str] = None,
        provider_type: Optional[str] = None,
    ) -> List[RotationResult]:
        """Rotate one (tenant, provider) row, or every row when both are omitted.

        Raises:
            ValidationError: If only one of tenant and provider is given.
            NotFoundError: If the named row does not exist.
        """
        if bool(tenant_id) != bool(provider_type):
            raise ValidationError("tenant_id and provider must be given together")

        async with self.db.session() as session:
            vault = CredentialVault(session, self.cipher)
            if tenant_id and provider_type:
                return [await vault.rotate_credentials(tenant_id, provider_type)]
            return await vault.rotate_all()

    # Provider status

    async def fetch_payment_status(self, tenant_id: str, provider: ProviderType, bill_id: str) -> ProviderStatus:
        """Ask a redirect gateway for a bill's current status. Never mutates state.

        Raises:
            ValidationError: If the provider has no status lookup.
            NotFoundError: If the tenant has no usable credentials.
            ProviderAPIError: If the provider call fails.
        """
        if provider not in GATEWAY_PROVIDERS:
            raise ValidationError(f"{provider.value} has no status lookup")

        credentials = await self.find_credentials(tenant_id, provider.value)
        if credentials is None:
            raise NotFoundError(f"No usable {provider.value} credentials for tenant {tenant_id}")

        connector = build_gateway_connector(provider, credentials, self.http_client)
        return await connector.fetch_bill_status(bill_id)
