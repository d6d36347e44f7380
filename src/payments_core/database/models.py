"""SQLAlchemy models for credentials, the event ledger and billing state."""

import uuid
import json
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import (
    Boolean,
    String,
    Integer,
    DateTime,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import enum


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class ProviderType(str, enum.Enum):
    """Supported payment providers."""
    STRIPE = "stripe"
    TOYYIBPAY = "toyyibpay"
    BILLPLZ = "billplz"
    CHIP = "chip"


class EventStatus(str, enum.Enum):
    """Processing status of a ledger row."""
    RECEIVED = "received"
    APPLIED = "applied"
    IGNORED = "ignored"
    FAILED = "failed"


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle states."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


class SubscriptionPlan(str, enum.Enum):
    """Tiered subscription plans."""
    FREE = "free"
    STANDARD = "standard"
    PRO = "pro"


class OwnerType(str, enum.Enum):
    """Kind of entity owning a subscription."""
    USER = "user"
    MOSQUE = "mosque"


class ContributionStatus(str, enum.Enum):
    """Contribution payment states."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _loads(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if value:
        return json.loads(value)
    return None


def _dumps(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is not None:
        return json.dumps(value, default=str)
    return None


class ProviderCredential(Base):
    """Per-tenant provider credentials. Secret fields are stored as ciphertext."""
    __tablename__ = "provider_credentials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_sandbox: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Provider-specific fields; secret values are ciphertext
    fields_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Bumped on every write; rotation writes conditionally on it
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_type", name="uq_provider_credentials_tenant_provider"),
        Index("ix_provider_credentials_tenant_id", "tenant_id"),
    )

    @property
    def fields(self) -> Dict[str, Any]:
        """Get stored fields as dictionary."""
        return _loads(self.fields_json) or {}

    @fields.setter
    def fields(self, value: Optional[Dict[str, Any]]) -> None:
        """Set stored fields from dictionary."""
        self.fields_json = _dumps(value)


class PaymentEventRecord(Base):
    """Append-only ledger of inbound provider notifications."""
    __tablename__ = "payment_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    confidence: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=EventStatus.RECEIVED.value)
    status_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Verbatim provider payload for audit and replay
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)

    # Normalized event, used by replay
    normalized_json: Mapped[str] = mapped_column(Text, nullable=False)

    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_payment_events_provider_event_id"),
        Index("ix_payment_events_status", "status"),
        Index("ix_payment_events_received_at", "received_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert ledger row to dictionary representation."""
        return {
            "id": self.id,
            "provider": self.provider,
            "provider_event_id": self.provider_event_id,
            "kind": self.kind,
            "confidence": self.confidence,
            "status": self.status,
            "status_reason": self.status_reason,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


class Subscription(Base):
    """One subscription per subscribing entity."""
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    owner_type: Mapped[str] = mapped_column(String(20), nullable=False, default=OwnerType.USER.value)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default=ProviderType.STRIPE.value)
    plan: Mapped[str] = mapped_column(String(20), nullable=False, default=SubscriptionPlan.FREE.value)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    external_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trial_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Time of the last provider event applied to this row
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_subscriptions_status", "status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert subscription to dictionary representation."""
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "owner_type": self.owner_type,
            "provider": self.provider,
            "plan": self.plan,
            "status": self.status,
            "external_subscription_id": self.external_subscription_id,
            "current_period_start": iso(self.current_period_start),
            "current_period_end": iso(self.current_period_end),
            "cancel_at_period_end": self.cancel_at_period_end,
            "canceled_at": iso(self.canceled_at),
            "trial_start": iso(self.trial_start),
            "trial_end": iso(self.trial_end),
        }


class Invoice(Base):
    """One row per billing attempt reported by a provider."""
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    external_invoice_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    invoice_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hosted_invoice_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "external_invoice_id", name="uq_invoices_provider_external_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert invoice to dictionary representation."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "provider": self.provider,
            "external_invoice_id": self.external_invoice_id,
            "amount_paid": self.amount_paid,
            "currency": self.currency,
            "status": self.status,
            "invoice_url": self.invoice_url,
            "hosted_invoice_url": self.hosted_invoice_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Contribution(Base):
    """A contribution paid through a redirect-style gateway."""
    __tablename__ = "contributions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    bill_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="MYR")
    contributor_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ContributionStatus.PENDING.value)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_contributions_id_bill_id", "id", "bill_id"),
    )
