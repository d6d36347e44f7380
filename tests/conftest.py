"""Shared test fixtures and configuration."""

import hashlib
import hmac
import json
import os
import time
from datetime import datetime
from typing import Any, Dict, Optional

import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_CREDENTIALS_ENCRYPTION_KEY", "test-encryption-key-0123456789abcdef")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("API_KEY", "test_api_key_12345")

from payments_core.config import Settings
from payments_core.connectors.base import (
    Confidence,
    EventKind,
    PaymentEvent,
    SubscriptionData,
    InvoiceData,
    CheckoutData,
)
from payments_core.database import DatabaseManager, ProviderType, SubscriptionStatus
from payments_core.vault import CredentialCipher

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
ENCRYPTION_KEY = "test-encryption-key-0123456789abcdef"
OLD_ENCRYPTION_KEY = "old-encryption-key-fedcba9876543210"
WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_API_KEY = "test_api_key_12345"

# Low iteration count keeps the KDF fast in tests
TEST_KDF_ITERATIONS = 1_000


def sign_stripe_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event_body(
    event_id: str,
    event_type: str,
    obj: Dict[str, Any],
    created: int = 1_760_000_000,
) -> bytes:
    """Serialize a Stripe event envelope."""
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }).encode("utf-8")


def subscription_event(
    event_id: str,
    external_subscription_id: str = "sub_1",
    kind: EventKind = EventKind.SUBSCRIPTION_UPDATED,
    status: Optional[SubscriptionStatus] = SubscriptionStatus.ACTIVE,
    owner: Optional[str] = "u1",
    plan: Optional[str] = "standard",
    period_start: Optional[datetime] = datetime(2026, 10, 1),
    period_end: Optional[datetime] = datetime(2026, 11, 1),
    occurred_at: datetime = datetime(2026, 10, 1, 12, 0, 0),
    cancel_at_period_end: bool = False,
) -> PaymentEvent:
    return PaymentEvent(
        provider=ProviderType.STRIPE,
        event_id=event_id,
        kind=kind,
        confidence=Confidence.VERIFIED,
        occurred_at=occurred_at,
        raw_payload="{}",
        owner_hint=owner,
        owner_type="user" if owner else None,
        data=SubscriptionData(
            external_subscription_id=external_subscription_id,
            external_customer_id="cus_1",
            status=status,
            provider_status=status.value if status else "incomplete",
            plan=plan,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
        ),
    )


def checkout_event(
    event_id: str,
    external_subscription_id: Optional[str] = "sub_1",
    owner: Optional[str] = "u1",
    plan: Optional[str] = "pro",
    occurred_at: datetime = datetime(2026, 10, 1, 12, 0, 0),
) -> PaymentEvent:
    return PaymentEvent(
        provider=ProviderType.STRIPE,
        event_id=event_id,
        kind=EventKind.CHECKOUT_COMPLETED,
        confidence=Confidence.VERIFIED,
        occurred_at=occurred_at,
        raw_payload="{}",
        owner_hint=owner,
        owner_type="user" if owner else None,
        data=CheckoutData(
            session_id=f"cs_{event_id}",
            external_customer_id="cus_1",
            external_subscription_id=external_subscription_id,
            plan=plan,
        ),
    )


def invoice_event(
    event_id: str,
    external_invoice_id: str = "inv_1",
    external_subscription_id: Optional[str] = "sub_1",
    paid: bool = True,
    owner: Optional[str] = None,
    amount: int = 5000,
    occurred_at: datetime = datetime(2026, 10, 2, 12, 0, 0),
) -> PaymentEvent:
    return PaymentEvent(
        provider=ProviderType.STRIPE,
        event_id=event_id,
        kind=EventKind.INVOICE_PAID if paid else EventKind.INVOICE_FAILED,
        confidence=Confidence.VERIFIED,
        occurred_at=occurred_at,
        raw_payload="{}",
        owner_hint=owner,
        owner_type="user" if owner else None,
        data=InvoiceData(
            external_invoice_id=external_invoice_id,
            external_subscription_id=external_subscription_id,
            amount=amount,
            currency="myr",
            status="paid" if paid else "failed",
        ),
    )


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at an in-memory database."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        encryption_key=ENCRYPTION_KEY,
        stripe_webhook_secret=WEBHOOK_SECRET,
        admin_api_key=ADMIN_API_KEY,
        app_base_url="https://app.example.test",
        api_base_url="https://api.example.test",
        payment_result_path="/khairat/payment-result",
        kdf_iterations=TEST_KDF_ITERATIONS,
    )


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(ENCRYPTION_KEY, iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
async def db():
    """Initialized in-memory database, one per test."""
    manager = DatabaseManager(TEST_DATABASE_URL)
    await manager.initialize()
    yield manager
    await manager.shutdown()


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    """Return headers with admin authentication."""
    return {"Authorization": f"Bearer {ADMIN_API_KEY}"}
