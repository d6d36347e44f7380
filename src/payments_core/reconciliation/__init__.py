"""Reconciliation of provider events into subscription and contribution state.

This module provides:
- Ordered, fail-closed owner resolution for subscription events
- The subscription status state machine
- The engine that applies normalized events inside one transaction
"""

from .models import (
    ResolutionSource,
    ResolvedOwner,
    Ambiguous,
    NotFound,
    OwnerResolution,
    ApplyStatus,
    ApplyOutcome,
)
from .state_machine import ALLOWED_TRANSITIONS, can_transition, transition
from .resolver import OwnerResolver
from .engine import ReconciliationEngine, DEFAULT_PROVISIONAL_PERIOD, validate_plan

__all__ = [
    # Models
    "ResolutionSource",
    "ResolvedOwner",
    "Ambiguous",
    "NotFound",
    "OwnerResolution",
    "ApplyStatus",
    "ApplyOutcome",
    # State machine
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "transition",
    # Core components
    "OwnerResolver",
    "ReconciliationEngine",
    "DEFAULT_PROVISIONAL_PERIOD",
    "validate_plan",
]
