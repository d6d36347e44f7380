"""Tests for the event ledger: dedup, status tracking and replay."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from payments_core.database import (
    EventStatus,
    Invoice,
    PaymentEventRecord,
    PaymentEventRepository,
    ProviderType,
    Subscription,
    SubscriptionRepository,
)
from payments_core.exceptions import DuplicateEventError, NotFoundError, PersistenceError
from payments_core.ledger import EventLedger, event_from_record
from payments_core.reconciliation import ReconciliationEngine
from payments_core.services import PaymentsService

from conftest import invoice_event, subscription_event


async def seed_subscription(db, owner_id="u1", external_subscription_id="sub_1", status="active"):
    async with db.session() as session:
        subscription = await SubscriptionRepository(session).create(
            owner_id=owner_id,
            provider="stripe",
            plan="standard",
            status=status,
        )
        subscription.external_subscription_id = external_subscription_id
        await session.flush()
        return subscription.id


async def ledger_row(db, provider, event_id):
    async with db.session() as session:
        return await PaymentEventRepository(session).get(provider, event_id)


async def count(db, model):
    async with db.session() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


class TestLedgerIngest:
    """Tests for first delivery and duplicates."""

    async def test_first_delivery_is_recorded_and_applied(self, db):
        event = subscription_event("evt_1")
        async with db.session() as session:
            result = await EventLedger(session).ingest(event)

        assert result.applied is True
        assert result.duplicate is False
        assert result.status == "applied"

        row = await ledger_row(db, "stripe", "evt_1")
        assert row.status == EventStatus.APPLIED.value
        assert row.kind == "subscription_updated"
        assert row.confidence == "verified"
        assert row.processed_at is not None
        assert row.raw_payload == "{}"
        assert await count(db, Subscription) == 1

    async def test_duplicate_delivery_changes_nothing(self, db):
        async with db.session() as session:
            await EventLedger(session).ingest(subscription_event("evt_1", plan="standard"))

        # Same event id, different content: the ledger key alone decides
        async with db.session() as session:
            result = await EventLedger(session).ingest(subscription_event("evt_1", plan="pro"))

        assert result.duplicate is True
        assert result.applied is False
        assert result.status == "applied"
        assert result.reason == "already recorded"
        assert await count(db, PaymentEventRecord) == 1

        async with db.session() as session:
            subscription = await SubscriptionRepository(session).get_by_owner("u1")
        assert subscription.plan == "standard"

    async def test_same_event_id_from_another_provider_is_distinct(self, db):
        first = subscription_event("evt_1")
        second = subscription_event("evt_1").model_copy(update={"provider": ProviderType.BILLPLZ})
        async with db.session() as session:
            ledger = EventLedger(session)
            await ledger.ingest(first)
            result = await ledger.ingest(second)

        assert result.duplicate is False
        assert await count(db, PaymentEventRecord) == 2

    async def test_unresolvable_event_is_ignored(self, db):
        async with db.session() as session:
            result = await EventLedger(session).ingest(invoice_event("evt_inv"))

        assert result.applied is False
        assert result.status == "ignored"
        assert "sub_1" in result.reason

        row = await ledger_row(db, "stripe", "evt_inv")
        assert row.status == EventStatus.IGNORED.value
        assert row.status_reason == result.reason
        assert await count(db, Invoice) == 0

    async def test_invalid_plan_marks_event_failed_without_mutation(self, db):
        async with db.session() as session:
            result = await EventLedger(session).ingest(subscription_event("evt_bad", plan="platinum"))

        assert result.status == "failed"
        assert "platinum" in result.reason

        row = await ledger_row(db, "stripe", "evt_bad")
        assert row.status == EventStatus.FAILED.value
        assert await count(db, Subscription) == 0


class TestLedgerRace:
    """Tests for two deliveries racing past the lookup."""

    async def test_insert_conflict_raises_duplicate(self, db):
        async with db.session() as session:
            await EventLedger(session).ingest(subscription_event("evt_1"))

        with patch.object(PaymentEventRepository, "get", AsyncMock(return_value=None)):
            with pytest.raises(DuplicateEventError) as exc_info:
                async with db.session() as session:
                    await EventLedger(session).ingest(subscription_event("evt_1", plan="pro"))

        assert exc_info.value.provider == "stripe"
        assert exc_info.value.event_id == "evt_1"

    async def test_service_reports_lost_race_as_duplicate(self, db, settings):
        service = PaymentsService(db, settings)
        await service.ingest(subscription_event("evt_1"))

        with patch.object(PaymentEventRepository, "get", AsyncMock(return_value=None)):
            result = await service.ingest(subscription_event("evt_1", plan="pro"))

        assert result.duplicate is True
        assert result.applied is False
        assert await count(db, PaymentEventRecord) == 1

        async with db.session() as session:
            subscription = await SubscriptionRepository(session).get_by_owner("u1")
        assert subscription.plan == "standard"


class TestLedgerAtomicity:
    """Tests for rollback of the ledger insert when applying fails."""

    async def test_storage_failure_rolls_back_and_redelivery_applies(self, db, settings):
        service = PaymentsService(db, settings)
        failure = OperationalError("UPDATE subscriptions", {}, Exception("database is locked"))

        with patch.object(ReconciliationEngine, "apply", AsyncMock(side_effect=failure)):
            with pytest.raises(PersistenceError):
                await service.ingest(subscription_event("evt_1"))

        assert await count(db, PaymentEventRecord) == 0
        assert await count(db, Subscription) == 0

        result = await service.ingest(subscription_event("evt_1"))
        assert result.applied is True
        assert result.duplicate is False
        assert (await ledger_row(db, "stripe", "evt_1")).status == "applied"

    async def test_unexpected_error_propagates_unchanged(self, db, settings):
        service = PaymentsService(db, settings)

        with patch.object(ReconciliationEngine, "apply", AsyncMock(side_effect=RuntimeError("boom"))):
            with pytest.raises(RuntimeError):
                await service.ingest(subscription_event("evt_1"))

        assert await count(db, PaymentEventRecord) == 0


class TestLedgerReplay:
    """Tests for replaying ignored and failed events."""

    async def test_replay_ignored_event_after_owner_appears(self, db):
        async with db.session() as session:
            first = await EventLedger(session).ingest(invoice_event("evt_inv"))
        assert first.status == "ignored"

        await seed_subscription(db, status="past_due")

        async with db.session() as session:
            result = await EventLedger(session).replay("stripe", "evt_inv")

        assert result.applied is True
        assert result.status == "applied"
        row = await ledger_row(db, "stripe", "evt_inv")
        assert row.status == EventStatus.APPLIED.value

        async with db.session() as session:
            subscription = await SubscriptionRepository(session).get_by_owner("u1")
        assert subscription.status == "active"
        assert await count(db, Invoice) == 1

    async def test_replay_applied_event_is_refused(self, db):
        async with db.session() as session:
            await EventLedger(session).ingest(subscription_event("evt_1"))
            result = await EventLedger(session).replay("stripe", "evt_1")

        assert result.applied is False
        assert result.status == "applied"
        assert "only ignored or failed" in result.reason

    async def test_replay_failed_event_fails_again(self, db):
        async with db.session() as session:
            await EventLedger(session).ingest(subscription_event("evt_bad", plan="platinum"))
        async with db.session() as session:
            result = await EventLedger(session).replay("stripe", "evt_bad")

        assert result.status == "failed"
        assert await count(db, Subscription) == 0

    async def test_replay_unknown_event(self, db):
        with pytest.raises(NotFoundError):
            async with db.session() as session:
                await EventLedger(session).replay("stripe", "evt_missing")

    async def test_event_is_rebuilt_from_record(self, db):
        event = subscription_event("evt_1", cancel_at_period_end=True)
        async with db.session() as session:
            await EventLedger(session).ingest(event)

        row = await ledger_row(db, "stripe", "evt_1")
        rebuilt = event_from_record(row)

        assert rebuilt.event_id == "evt_1"
        assert rebuilt.kind == event.kind
        assert rebuilt.data == event.data
        assert rebuilt.occurred_at == event.occurred_at
        assert rebuilt.raw_payload == event.raw_payload
