"""Result types for owner resolution and event application."""

import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from ..database.models import Subscription


class ResolutionSource(str, enum.Enum):
    """Where a resolved owner came from."""
    METADATA = "metadata"
    EXTERNAL_SUBSCRIPTION_ID = "external_subscription_id"


@dataclass(frozen=True)
class ResolvedOwner:
    """Exactly one owner was found for the event."""
    owner_id: str
    owner_type: str
    source: ResolutionSource
    subscription: Optional[Subscription] = field(default=None, compare=False)


@dataclass(frozen=True)
class Ambiguous:
    """More than one owner claims the event; routed to manual review."""
    reason: str
    candidates: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NotFound:
    """No owner could be found; routed to manual review."""
    reason: str


OwnerResolution = Union[ResolvedOwner, Ambiguous, NotFound]


class ApplyStatus(str, enum.Enum):
    APPLIED = "applied"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ApplyOutcome:
    """What the engine did with an event."""
    status: ApplyStatus
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.status == ApplyStatus.APPLIED

    @classmethod
    def done(cls, reason: Optional[str] = None) -> "ApplyOutcome":
        return cls(ApplyStatus.APPLIED, reason)

    @classmethod
    def ignored(cls, reason: str) -> "ApplyOutcome":
        return cls(ApplyStatus.IGNORED, reason)
