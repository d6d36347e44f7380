"""Applies normalized payment events to subscription, invoice and contribution state."""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..connectors.base import (
    CheckoutData,
    ContributionData,
    EventKind,
    InvoiceData,
    PaymentEvent,
    RedirectOutcome,
    SubscriptionData,
)
from ..database.models import (
    ContributionStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from ..database.repository import (
    ContributionRepository,
    InvoiceRepository,
    SubscriptionRepository,
)
from ..exceptions import ValidationError
from .models import ApplyOutcome, ResolvedOwner, ResolutionSource
from .resolver import OwnerResolver
from .state_machine import transition

logger = logging.getLogger(__name__)

DEFAULT_PROVISIONAL_PERIOD = timedelta(days=30)

INVOICE_STATUS_PAID = "paid"
INVOICE_STATUS_FAILED = "failed"


def validate_plan(plan: Optional[str]) -> Optional[SubscriptionPlan]:
    """Parse a plan label.

    Raises:
        ValidationError: If the plan is set but not a known tier.
    """
    if plan is None:
        return None
    try:
        return SubscriptionPlan(plan)
    except ValueError:
        valid = ", ".join(p.value for p in SubscriptionPlan)
        raise ValidationError(f"Invalid plan value: {plan}. Must be one of: {valid}") from None


class ReconciliationEngine:
    """
    Applies one event at a time inside the caller's transaction.

    Each handler validates its input before it mutates anything, so a
    ``ValidationError`` always leaves state untouched. Events that cannot
    be tied to exactly one owner or contribution are returned as ignored
    with a reason; they are never applied to a guessed target.
    """

    def __init__(
        self,
        session: AsyncSession,
        provisional_period: timedelta = DEFAULT_PROVISIONAL_PERIOD,
    ):
        self.session = session
        self.provisional_period = provisional_period
        self.resolver = OwnerResolver(session)
        self.subscriptions = SubscriptionRepository(session)
        self.invoices = InvoiceRepository(session)
        self.contributions = ContributionRepository(session)

    async def apply(self, event: PaymentEvent) -> ApplyOutcome:
        """Apply ``event`` and report whether it changed anything.

        Raises:
            ValidationError: If the event is well-formed but carries a value
                the domain rejects, such as an unknown plan.
        """
        kind = event.kind
        data = event.data

        if kind == EventKind.CHECKOUT_COMPLETED and isinstance(data, CheckoutData):
            return await self._apply_checkout(event, data)
        if kind in (EventKind.SUBSCRIPTION_CREATED, EventKind.SUBSCRIPTION_UPDATED) and isinstance(data, SubscriptionData):
            return await self._apply_subscription_change(event, data)
        if kind == EventKind.SUBSCRIPTION_DELETED and isinstance(data, SubscriptionData):
            return await self._apply_subscription_deleted(event, data)
        if kind in (EventKind.INVOICE_PAID, EventKind.INVOICE_FAILED) and isinstance(data, InvoiceData):
            return await self._apply_invoice(event, data)
        if kind in (EventKind.REDIRECT_CONFIRMED, EventKind.REDIRECT_FAILED) and isinstance(data, ContributionData):
            return await self._apply_contribution(event, data)
        if kind == EventKind.PENDING:
            return ApplyOutcome.ignored("event is not actionable yet")

        return ApplyOutcome.ignored(f"no handler for {kind.value} with {data.type} payload")

    # Subscriptions

    async def _apply_checkout(self, event: PaymentEvent, data: CheckoutData) -> ApplyOutcome:
        plan = validate_plan(data.plan)
        resolution = await self.resolver.resolve(
            event.owner_hint,
            event.owner_type,
            data.external_subscription_id,
            allow_fallback=False,
        )
        if not isinstance(resolution, ResolvedOwner):
            return ApplyOutcome.ignored(resolution.reason)

        subscription = await self._get_or_create(event, resolution, plan)
        new_binding = (
            data.external_subscription_id is not None
            and data.external_subscription_id != subscription.external_subscription_id
        )

        if subscription.status == SubscriptionStatus.CANCELED.value and not new_binding:
            # Canceled is terminal for the same external subscription
            subscription.last_event_at = event.occurred_at
            await self.subscriptions.save(subscription)
            return ApplyOutcome.done("subscription canceled; audit fields only")

        if plan is not None:
            subscription.plan = plan.value
        if new_binding and subscription.status == SubscriptionStatus.CANCELED.value:
            self._start_new_subscription(subscription)
            subscription.status = SubscriptionStatus.ACTIVE.value
        else:
            transition(subscription, SubscriptionStatus.ACTIVE)

        if new_binding or subscription.current_period_end is None:
            # Provisional window until the provider reports the real period
            subscription.current_period_start = event.occurred_at
            subscription.current_period_end = event.occurred_at + self.provisional_period
        if data.external_subscription_id:
            subscription.external_subscription_id = data.external_subscription_id
        if data.external_customer_id:
            subscription.external_customer_id = data.external_customer_id
        subscription.provider = event.provider.value
        subscription.last_event_at = event.occurred_at

        await self.subscriptions.save(subscription)
        logger.info(
            f"Checkout completed for owner {subscription.owner_id}: plan {subscription.plan}, "
            f"subscription {subscription.external_subscription_id}"
        )
        return ApplyOutcome.done()

    async def _apply_subscription_change(self, event: PaymentEvent, data: SubscriptionData) -> ApplyOutcome:
        plan = validate_plan(data.plan)
        resolution = await self.resolver.resolve(
            event.owner_hint,
            event.owner_type,
            data.external_subscription_id,
        )
        if not isinstance(resolution, ResolvedOwner):
            return ApplyOutcome.ignored(resolution.reason)

        existing = resolution.subscription
        bound = existing.external_subscription_id if existing else None
        canceled = existing is not None and existing.status == SubscriptionStatus.CANCELED.value
        is_new = bound is None or bound != data.external_subscription_id

        if is_new and bound is not None and not canceled and event.kind != EventKind.SUBSCRIPTION_CREATED:
            logger.warning(
                f"Ignoring {event.kind.value} for {data.external_subscription_id}: owner "
                f"{existing.owner_id} is bound to live subscription {bound}"
            )
            return ApplyOutcome.ignored(
                f"stale event for {data.external_subscription_id}; live subscription is {bound}"
            )

        if is_new and data.status is None:
            # Unpaid starts such as Stripe "incomplete" grant nothing
            logger.info(
                f"Subscription {data.external_subscription_id} for owner {resolution.owner_id} "
                f"has provider status {data.provider_status!r}; not bound yet"
            )
            return ApplyOutcome.ignored(
                f"provider status {data.provider_status!r} is not actionable yet"
            )

        subscription = existing
        if subscription is None:
            subscription = await self._get_or_create(event, resolution, plan, status=data.status)

        if canceled and not is_new:
            self._apply_audit_fields(subscription, event, data)
            await self.subscriptions.save(subscription)
            return ApplyOutcome.done("subscription canceled; audit fields only")

        if is_new:
            self._start_new_subscription(subscription)
            subscription.external_subscription_id = data.external_subscription_id
            if data.status is not None:
                subscription.status = data.status.value
        elif data.status is not None:
            transition(subscription, data.status)
        else:
            logger.info(
                f"Provider status {data.provider_status!r} for {data.external_subscription_id} "
                f"leaves status {subscription.status} unchanged"
            )

        if plan is not None:
            subscription.plan = plan.value
        self._apply_period(subscription, event, data)
        subscription.cancel_at_period_end = data.cancel_at_period_end
        subscription.canceled_at = data.canceled_at
        subscription.trial_start = data.trial_start
        subscription.trial_end = data.trial_end
        if data.external_customer_id:
            subscription.external_customer_id = data.external_customer_id
        subscription.provider = event.provider.value
        subscription.last_event_at = event.occurred_at

        await self.subscriptions.save(subscription)
        return ApplyOutcome.done()

    async def _apply_subscription_deleted(self, event: PaymentEvent, data: SubscriptionData) -> ApplyOutcome:
        resolution = await self.resolver.resolve(
            event.owner_hint,
            event.owner_type,
            data.external_subscription_id,
        )
        if not isinstance(resolution, ResolvedOwner):
            return ApplyOutcome.ignored(resolution.reason)

        subscription = resolution.subscription
        if subscription is None:
            return ApplyOutcome.ignored(f"owner {resolution.owner_id} has no subscription to cancel")

        bound = subscription.external_subscription_id
        if bound is not None and bound != data.external_subscription_id:
            logger.warning(
                f"Ignoring deletion of {data.external_subscription_id}: owner "
                f"{subscription.owner_id} is bound to {bound}"
            )
            return ApplyOutcome.ignored(
                f"stale event for {data.external_subscription_id}; live subscription is {bound}"
            )

        transition(subscription, SubscriptionStatus.CANCELED)
        subscription.canceled_at = event.occurred_at
        subscription.cancel_at_period_end = data.cancel_at_period_end
        if bound is None:
            subscription.external_subscription_id = data.external_subscription_id
        subscription.last_event_at = event.occurred_at

        await self.subscriptions.save(subscription)
        logger.info(f"Subscription {data.external_subscription_id} for owner {subscription.owner_id} canceled")
        return ApplyOutcome.done()

    async def _get_or_create(
        self,
        event: PaymentEvent,
        resolution: ResolvedOwner,
        plan: Optional[SubscriptionPlan],
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    ) -> Subscription:
        if resolution.subscription is not None:
            return resolution.subscription
        return await self.subscriptions.create(
            owner_id=resolution.owner_id,
            provider=event.provider.value,
            plan=(plan or SubscriptionPlan.FREE).value,
            status=status.value,
            owner_type=resolution.owner_type,
        )

    def _start_new_subscription(self, subscription: Subscription) -> None:
        """Reset per-subscription fields before binding a new external id."""
        subscription.current_period_start = None
        subscription.current_period_end = None
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.trial_start = None
        subscription.trial_end = None

    def _apply_period(self, subscription: Subscription, event: PaymentEvent, data: SubscriptionData) -> None:
        if data.current_period_end is None:
            return
        stored_end = subscription.current_period_end
        if stored_end is not None and data.current_period_end < stored_end:
            # Provider is authoritative; record the regression and apply it
            logger.warning(
                f"Period end regression for {data.external_subscription_id} from event "
                f"{event.event_id}: {stored_end.isoformat()} -> {data.current_period_end.isoformat()}"
            )
        subscription.current_period_start = data.current_period_start
        subscription.current_period_end = data.current_period_end

    def _apply_audit_fields(self, subscription: Subscription, event: PaymentEvent, data: SubscriptionData) -> None:
        if data.canceled_at is not None:
            subscription.canceled_at = data.canceled_at
        subscription.last_event_at = event.occurred_at

    # Invoices

    async def _apply_invoice(self, event: PaymentEvent, data: InvoiceData) -> ApplyOutcome:
        resolution = await self.resolver.resolve(
            event.owner_hint,
            event.owner_type,
            data.external_subscription_id,
        )
        if not isinstance(resolution, ResolvedOwner):
            return ApplyOutcome.ignored(resolution.reason)

        paid = event.kind == EventKind.INVOICE_PAID
        invoice = await self.invoices.get_by_external_id(event.provider.value, data.external_invoice_id)
        if invoice is None:
            await self.invoices.create(
                owner_id=resolution.owner_id,
                provider=event.provider.value,
                external_invoice_id=data.external_invoice_id,
                amount_paid=data.amount if paid else 0,
                currency=data.currency,
                status=data.status,
                external_subscription_id=data.external_subscription_id,
                invoice_url=data.invoice_url,
                hosted_invoice_url=data.hosted_invoice_url,
            )
        elif paid and invoice.status != INVOICE_STATUS_PAID:
            invoice.status = INVOICE_STATUS_PAID
            invoice.amount_paid = data.amount
            await self.session.flush()

        subscription = resolution.subscription
        if subscription is None:
            return ApplyOutcome.done(f"invoice recorded; owner {resolution.owner_id} has no subscription")

        bound = subscription.external_subscription_id
        if data.external_subscription_id and bound and bound != data.external_subscription_id:
            logger.warning(
                f"Invoice {data.external_invoice_id} belongs to {data.external_subscription_id}, "
                f"not live subscription {bound}; status left unchanged"
            )
            return ApplyOutcome.done("invoice recorded; status unchanged for non-live subscription")

        if subscription.status == SubscriptionStatus.CANCELED.value:
            subscription.last_event_at = event.occurred_at
            await self.subscriptions.save(subscription)
            return ApplyOutcome.done("invoice recorded; subscription canceled")

        target = SubscriptionStatus.ACTIVE if paid else SubscriptionStatus.PAST_DUE
        transition(subscription, target)
        if resolution.source == ResolutionSource.METADATA and bound is None and data.external_subscription_id:
            subscription.external_subscription_id = data.external_subscription_id
        subscription.last_event_at = event.occurred_at
        await self.subscriptions.save(subscription)
        return ApplyOutcome.done()

    # Contributions

    async def _apply_contribution(self, event: PaymentEvent, data: ContributionData) -> ApplyOutcome:
        contribution = await self.contributions.get_by_compound_key(data.contribution_id, data.bill_id)
        if contribution is None:
            logger.warning(
                f"No contribution matches {data.contribution_id} with bill {data.bill_id}"
            )
            return ApplyOutcome.ignored(
                f"no contribution {data.contribution_id} with bill {data.bill_id}"
            )
        if contribution.provider and contribution.provider != event.provider.value:
            return ApplyOutcome.ignored(
                f"contribution {contribution.id} is paid through {contribution.provider}"
            )

        if data.amount is not None and data.amount != contribution.amount:
            logger.warning(
                f"Amount mismatch for contribution {contribution.id}: expected "
                f"{contribution.amount}, provider reported {data.amount}"
            )

        current = ContributionStatus(contribution.status)
        if data.outcome == RedirectOutcome.SUCCESS:
            if current not in (ContributionStatus.PENDING, ContributionStatus.FAILED):
                return ApplyOutcome.ignored(f"contribution {contribution.id} is already {current.value}")
            await self.contributions.update_status(
                contribution,
                ContributionStatus.COMPLETED,
                paid_at=data.paid_at or event.occurred_at,
            )
            return ApplyOutcome.done()

        if data.outcome == RedirectOutcome.FAILED:
            if current != ContributionStatus.PENDING:
                return ApplyOutcome.ignored(f"contribution {contribution.id} is already {current.value}")
            await self.contributions.update_status(contribution, ContributionStatus.FAILED)
            return ApplyOutcome.done()

        return ApplyOutcome.ignored("payment still pending")
