"""Allowed subscription status transitions."""

import logging
from typing import Dict, FrozenSet, Union

from ..database.models import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

S = SubscriptionStatus

# Self-transitions are allowed so that re-applying a status is a no-op.
# Canceled is terminal; a new external subscription id starts over.
ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.TRIALING: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    S.ACTIVE: frozenset({S.ACTIVE, S.PAST_DUE, S.UNPAID, S.CANCELED}),
    S.PAST_DUE: frozenset({S.PAST_DUE, S.ACTIVE, S.UNPAID, S.CANCELED}),
    S.UNPAID: frozenset({S.UNPAID, S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset({S.CANCELED}),
}


def can_transition(
    current: Union[str, SubscriptionStatus],
    target: Union[str, SubscriptionStatus],
) -> bool:
    return S(target) in ALLOWED_TRANSITIONS[S(current)]


def transition(subscription: Subscription, target: SubscriptionStatus) -> bool:
    """Move ``subscription`` to ``target`` if the transition is allowed.

    Returns:
        True if the status now equals ``target``, False if the transition
        was refused and the stored status kept.
    """
    current = S(subscription.status)
    if not can_transition(current, target):
        logger.warning(
            f"Refused subscription {subscription.id} transition "
            f"{current.value} -> {target.value}"
        )
        return False
    if current != target:
        logger.info(
            f"Subscription {subscription.id} for owner {subscription.owner_id}: "
            f"{current.value} -> {target.value}"
        )
    subscription.status = target.value
    return True
