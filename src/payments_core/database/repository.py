"""Repository layer for credential, ledger and billing persistence."""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    ProviderCredential,
    PaymentEventRecord,
    Subscription,
    Invoice,
    Contribution,
    EventStatus,
    ContributionStatus,
    SubscriptionPlan,
    SubscriptionStatus,
    OwnerType,
    _dumps,
)

logger = logging.getLogger(__name__)


class ProviderCredentialRepository:
    """Repository for ProviderCredential rows."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get(self, tenant_id: str, provider_type: str) -> Optional[ProviderCredential]:
        """Get the credential row for a (tenant, provider) pair."""
        result = await self.session.execute(
            select(ProviderCredential).where(
                and_(
                    ProviderCredential.tenant_id == tenant_id,
                    ProviderCredential.provider_type == provider_type,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: str) -> List[ProviderCredential]:
        result = await self.session.execute(
            select(ProviderCredential)
            .where(ProviderCredential.tenant_id == tenant_id)
            .order_by(ProviderCredential.provider_type)
        )
        return list(result.scalars().all())

    async def list_all(self) -> List[ProviderCredential]:
        result = await self.session.execute(
            select(ProviderCredential).order_by(
                ProviderCredential.tenant_id, ProviderCredential.provider_type
            )
        )
        return list(result.scalars().all())

    async def create(
        self,
        tenant_id: str,
        provider_type: str,
        fields: Dict[str, Any],
        is_active: bool = False,
        is_sandbox: bool = True,
    ) -> ProviderCredential:
        """Create a new credential row.

        Args:
            tenant_id: Owning tenant.
            provider_type: Provider wire name.
            fields: Stored fields, secret values already encrypted.
            is_active: Whether the provider is enabled for the tenant.
            is_sandbox: Whether sandbox endpoints are used.

        Returns:
            Created ProviderCredential instance.
        """
        credential = ProviderCredential(
            tenant_id=tenant_id,
            provider_type=provider_type,
            is_active=is_active,
            is_sandbox=is_sandbox,
            version=1,
        )
        credential.fields = fields

        self.session.add(credential)
        await self.session.flush()

        logger.info(f"Created {provider_type} credentials for tenant {tenant_id}")
        return credential

    async def update(
        self,
        credential: ProviderCredential,
        fields: Dict[str, Any],
        is_active: bool,
        is_sandbox: bool,
    ) -> ProviderCredential:
        """Overwrite fields and flags, bumping the row version."""
        credential.fields = fields
        credential.is_active = is_active
        credential.is_sandbox = is_sandbox
        credential.version = credential.version + 1
        credential.updated_at = datetime.utcnow()

        await self.session.flush()
        logger.info(
            f"Updated {credential.provider_type} credentials for tenant "
            f"{credential.tenant_id} (version {credential.version})"
        )
        return credential

    async def update_fields_if_version(
        self,
        credential_id: str,
        expected_version: int,
        fields: Dict[str, Any],
    ) -> bool:
        """Write ``fields`` only if the row is still at ``expected_version``.

        Args:
            credential_id: Row identifier.
            expected_version: Version observed when the fields were read.
            fields: Replacement stored fields.

        Returns:
            True if the row was written, False if a concurrent update won.
        """
        result = await self.session.execute(
            update(ProviderCredential)
            .where(
                and_(
                    ProviderCredential.id == credential_id,
                    ProviderCredential.version == expected_version,
                )
            )
            .values(
                fields_json=_dumps(fields),
                version=expected_version + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class PaymentEventRepository:
    """Repository for the payment event ledger."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get(self, provider: str, provider_event_id: str) -> Optional[PaymentEventRecord]:
        """Get a ledger row by its (provider, provider event id) key."""
        result = await self.session.execute(
            select(PaymentEventRecord).where(
                and_(
                    PaymentEventRecord.provider == provider,
                    PaymentEventRecord.provider_event_id == provider_event_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def insert(
        self,
        provider: str,
        provider_event_id: str,
        kind: str,
        confidence: str,
        raw_payload: str,
        normalized_json: str,
        received_at: Optional[datetime] = None,
    ) -> PaymentEventRecord:
        """Insert a new ledger row in status ``received``.

        Raises:
            sqlalchemy.exc.IntegrityError: If the (provider, event id) pair
                already exists.
        """
        record = PaymentEventRecord(
            provider=provider,
            provider_event_id=provider_event_id,
            kind=kind,
            confidence=confidence,
            status=EventStatus.RECEIVED.value,
            raw_payload=raw_payload,
            normalized_json=normalized_json,
            received_at=received_at or datetime.utcnow(),
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def mark(
        self,
        record: PaymentEventRecord,
        status: EventStatus,
        reason: Optional[str] = None,
    ) -> PaymentEventRecord:
        """Move a ledger row to its processed status."""
        record.status = status.value
        record.status_reason = reason
        record.processed_at = datetime.utcnow()
        await self.session.flush()
        logger.debug(
            f"Ledger row {record.provider}/{record.provider_event_id} -> {status.value}"
        )
        return record

    async def list_by_status(
        self,
        status: EventStatus,
        limit: int = 100,
    ) -> List[PaymentEventRecord]:
        """List ledger rows by status, newest first."""
        result = await self.session.execute(
            select(PaymentEventRecord)
            .where(PaymentEventRecord.status == status.value)
            .order_by(PaymentEventRecord.received_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class SubscriptionRepository:
    """Repository for Subscription rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_owner(self, owner_id: str) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.owner_id == owner_id)
        )
        return result.scalar_one_or_none()

    async def find_by_external_subscription_id(
        self,
        external_subscription_id: str,
    ) -> List[Subscription]:
        """Find every subscription bound to a provider subscription id.

        More than one match means the data is inconsistent; callers treat
        that as ambiguous rather than picking one.
        """
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.external_subscription_id == external_subscription_id
            )
        )
        return list(result.scalars().all())

    async def create(
        self,
        owner_id: str,
        provider: str,
        plan: str = SubscriptionPlan.FREE.value,
        status: str = SubscriptionStatus.ACTIVE.value,
        owner_type: str = OwnerType.USER.value,
    ) -> Subscription:
        subscription = Subscription(
            owner_id=owner_id,
            owner_type=owner_type,
            provider=provider,
            plan=plan,
            status=status,
            cancel_at_period_end=False,
        )
        self.session.add(subscription)
        await self.session.flush()

        logger.info(f"Created subscription {subscription.id} for owner {owner_id}")
        return subscription

    async def save(self, subscription: Subscription) -> Subscription:
        subscription.updated_at = datetime.utcnow()
        await self.session.flush()
        return subscription


class InvoiceRepository:
    """Repository for Invoice rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_external_id(
        self,
        provider: str,
        external_invoice_id: str,
    ) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(
                and_(
                    Invoice.provider == provider,
                    Invoice.external_invoice_id == external_invoice_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        owner_id: str,
        provider: str,
        external_invoice_id: str,
        amount_paid: int,
        currency: str,
        status: str,
        external_subscription_id: Optional[str] = None,
        invoice_url: Optional[str] = None,
        hosted_invoice_url: Optional[str] = None,
    ) -> Invoice:
        """Create an invoice row.

        Args:
            owner_id: Owner of the subscription billed.
            provider: Provider wire name.
            external_invoice_id: Provider invoice id, unique per provider.
            amount_paid: Amount in minor units.
            currency: Currency code as reported by the provider.
            status: ``paid``, ``failed`` or a provider-specific label.
            external_subscription_id: Provider subscription id, if any.
            invoice_url: PDF link.
            hosted_invoice_url: Provider-hosted invoice page.

        Returns:
            Created Invoice instance.
        """
        invoice = Invoice(
            owner_id=owner_id,
            provider=provider,
            external_invoice_id=external_invoice_id,
            external_subscription_id=external_subscription_id,
            amount_paid=amount_paid,
            currency=currency,
            status=status,
            invoice_url=invoice_url,
            hosted_invoice_url=hosted_invoice_url,
        )
        self.session.add(invoice)
        await self.session.flush()

        logger.info(f"Recorded invoice {external_invoice_id} ({status}) for owner {owner_id}")
        return invoice

    async def list_by_owner(self, owner_id: str, limit: int = 100) -> List[Invoice]:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.owner_id == owner_id)
            .order_by(Invoice.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class ContributionRepository:
    """Repository for Contribution rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        tenant_id: str,
        amount: int,
        provider: Optional[str] = None,
        bill_id: Optional[str] = None,
        currency: str = "MYR",
        contributor_name: Optional[str] = None,
        contribution_id: Optional[str] = None,
    ) -> Contribution:
        """Register a pending contribution awaiting payment."""
        contribution = Contribution(
            tenant_id=tenant_id,
            provider=provider,
            bill_id=bill_id,
            amount=amount,
            currency=currency,
            contributor_name=contributor_name,
            status=ContributionStatus.PENDING.value,
        )
        if contribution_id:
            contribution.id = contribution_id

        self.session.add(contribution)
        await self.session.flush()
        return contribution

    async def get_by_id(self, contribution_id: str) -> Optional[Contribution]:
        result = await self.session.execute(
            select(Contribution).where(Contribution.id == contribution_id)
        )
        return result.scalar_one_or_none()

    async def get_by_compound_key(
        self,
        contribution_id: Optional[str],
        bill_id: Optional[str],
    ) -> Optional[Contribution]:
        """Look up a contribution strictly by (contribution id, bill id).

        Both halves must be present and both must match; there is no
        fallback to a looser lookup.

        Args:
            contribution_id: Internal contribution id.
            bill_id: Provider bill or transaction id.

        Returns:
            Contribution instance if found, None otherwise.
        """
        if not contribution_id or not bill_id:
            return None

        result = await self.session.execute(
            select(Contribution).where(
                and_(
                    Contribution.id == contribution_id,
                    Contribution.bill_id == bill_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        contribution: Contribution,
        new_status: ContributionStatus,
        paid_at: Optional[datetime] = None,
    ) -> Contribution:
        previous = contribution.status
        contribution.status = new_status.value
        if paid_at is not None:
            contribution.paid_at = paid_at
        contribution.updated_at = datetime.utcnow()

        await self.session.flush()
        logger.info(f"Contribution {contribution.id} status {previous} -> {new_status.value}")
        return contribution
