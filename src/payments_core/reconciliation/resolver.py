"""Ordered resolution of the subscription owner an event belongs to."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import OwnerType
from ..database.repository import SubscriptionRepository
from .models import (
    Ambiguous,
    NotFound,
    OwnerResolution,
    ResolutionSource,
    ResolvedOwner,
)

logger = logging.getLogger(__name__)


class OwnerResolver:
    """
    Resolves the owner of an event in a fixed order:

    1. the owner id carried in the event metadata;
    2. the subscription already bound to the event's external subscription
       id, when fallback is allowed for the event.

    A metadata owner that conflicts with the owner bound to the external id
    is ambiguous. Nothing is ever guessed.
    """

    def __init__(self, session: AsyncSession):
        self.subscriptions = SubscriptionRepository(session)

    async def resolve(
        self,
        owner_hint: Optional[str],
        owner_type: Optional[str] = None,
        external_subscription_id: Optional[str] = None,
        allow_fallback: bool = True,
    ) -> OwnerResolution:
        """Resolve an event's owner.

        Args:
            owner_hint: Owner id from the event metadata, if any.
            owner_type: Owner kind from the metadata.
            external_subscription_id: Provider subscription id on the event.
            allow_fallback: Whether lookup by external subscription id is
                permitted when metadata is absent.

        Returns:
            ResolvedOwner, Ambiguous or NotFound.
        """
        bound = []
        if external_subscription_id:
            bound = await self.subscriptions.find_by_external_subscription_id(
                external_subscription_id
            )

        if owner_hint:
            conflicting = sorted({s.owner_id for s in bound if s.owner_id != owner_hint})
            if conflicting:
                return Ambiguous(
                    reason=(
                        f"metadata owner {owner_hint} conflicts with owner bound to "
                        f"{external_subscription_id}"
                    ),
                    candidates=tuple([owner_hint] + conflicting),
                )
            subscription = await self.subscriptions.get_by_owner(owner_hint)
            return ResolvedOwner(
                owner_id=owner_hint,
                owner_type=owner_type
                or (subscription.owner_type if subscription else OwnerType.USER.value),
                source=ResolutionSource.METADATA,
                subscription=subscription,
            )

        if not external_subscription_id or not allow_fallback:
            return NotFound("event carries no owner metadata")

        if not bound:
            return NotFound(f"no subscription bound to {external_subscription_id}")
        if len(bound) > 1:
            return Ambiguous(
                reason=f"{len(bound)} subscriptions bound to {external_subscription_id}",
                candidates=tuple(sorted(s.owner_id for s in bound)),
            )

        subscription = bound[0]
        return ResolvedOwner(
            owner_id=subscription.owner_id,
            owner_type=subscription.owner_type,
            source=ResolutionSource.EXTERNAL_SUBSCRIPTION_ID,
            subscription=subscription,
        )
