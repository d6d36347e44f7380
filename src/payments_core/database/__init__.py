"""Database module for reconciliation core persistence."""

from .models import (
    Base,
    ProviderCredential,
    PaymentEventRecord,
    Subscription,
    Invoice,
    Contribution,
    ProviderType,
    EventStatus,
    SubscriptionStatus,
    SubscriptionPlan,
    OwnerType,
    ContributionStatus,
)
from .session import (
    create_async_engine,
    get_async_session_factory,
    DatabaseManager,
)
from .repository import (
    ProviderCredentialRepository,
    PaymentEventRepository,
    SubscriptionRepository,
    InvoiceRepository,
    ContributionRepository,
)

__all__ = [
    # Models
    "Base",
    "ProviderCredential",
    "PaymentEventRecord",
    "Subscription",
    "Invoice",
    "Contribution",
    "ProviderType",
    "EventStatus",
    "SubscriptionStatus",
    "SubscriptionPlan",
    "OwnerType",
    "ContributionStatus",
    # Session management
    "create_async_engine",
    "get_async_session_factory",
    "DatabaseManager",
    # Repositories
    "ProviderCredentialRepository",
    "PaymentEventRepository",
    "SubscriptionRepository",
    "InvoiceRepository",
    "ContributionRepository",
]
