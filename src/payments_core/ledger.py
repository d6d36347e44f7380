"""Append-only record of every provider event the core has accepted."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .connectors.base import PaymentEvent
from .database.models import EventStatus, PaymentEventRecord
from .database.repository import PaymentEventRepository
from .exceptions import DuplicateEventError, NotFoundError, ValidationError
from .reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

REPLAYABLE_STATUSES = frozenset({EventStatus.IGNORED.value, EventStatus.FAILED.value})


@dataclass
class IngestResult:
    """What happened to one delivery of a provider event."""
    provider: str
    event_id: str
    applied: bool
    duplicate: bool
    status: str
    reason: Optional[str] = None

    @classmethod
    def for_duplicate(cls, provider: str, event_id: str, status: Optional[str] = None) -> "IngestResult":
        return cls(
            provider=provider,
            event_id=event_id,
            applied=False,
            duplicate=True,
            status=status or EventStatus.APPLIED.value,
            reason="already recorded",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "event_id": self.event_id,
            "applied": self.applied,
            "duplicate": self.duplicate,
            "status": self.status,
            "reason": self.reason,
        }


def event_from_record(record: PaymentEventRecord) -> PaymentEvent:
    """Rebuild the normalized event stored on a ledger row."""
    data = json.loads(record.normalized_json)
    data["raw_payload"] = record.raw_payload
    return PaymentEvent.model_validate(data)


class EventLedger:
    """
    Records each (provider, event id) at most once and applies it through
    the reconciliation engine in the caller's transaction.

    The session must belong to a single unit of work (see
    ``DatabaseManager.session``). A duplicate detected at insert time raises
    ``DuplicateEventError`` so the caller's transaction rolls back cleanly;
    callers report it to the provider as success.
    """

    def __init__(self, session: AsyncSession, engine: Optional[ReconciliationEngine] = None):
        self.session = session
        self.events = PaymentEventRepository(session)
        self.engine = engine or ReconciliationEngine(session)

    async def ingest(self, event: PaymentEvent) -> IngestResult:
        """Record ``event`` on first sight and apply it.

        Returns:
            IngestResult. ``duplicate`` is True when the event was already
            recorded, in which case nothing was changed.

        Raises:
            DuplicateEventError: If a concurrent delivery recorded the same
                event between the lookup and the insert.
        """
        provider = event.provider.value
        existing = await self.events.get(provider, event.event_id)
        if existing is not None:
            logger.info(f"Duplicate {provider} event {event.event_id} ({existing.status})")
            return IngestResult.for_duplicate(provider, event.event_id, existing.status)

        try:
            record = await self.events.insert(
                provider=provider,
                provider_event_id=event.event_id,
                kind=event.kind.value,
                confidence=event.confidence.value,
                raw_payload=event.raw_payload,
                normalized_json=event.model_dump_json(exclude={"raw_payload"}),
                received_at=event.received_at,
            )
        except IntegrityError as e:
            logger.info(f"Lost insert race for {provider} event {event.event_id}")
            raise DuplicateEventError(provider, event.event_id) from e

        return await self._apply(record, event)

    async def replay(self, provider: str, event_id: str) -> IngestResult:
        """Re-apply a recorded event that was ignored or failed.

        Raises:
            NotFoundError: If no ledger row exists for the key.
        """
        record = await self.events.get(provider, event_id)
        if record is None:
            raise NotFoundError(f"No {provider} event {event_id} in the ledger")

        if record.status not in REPLAYABLE_STATUSES:
            return IngestResult(
                provider=provider,
                event_id=event_id,
                applied=False,
                duplicate=False,
                status=record.status,
                reason=f"event is {record.status}; only ignored or failed events are replayed",
            )

        logger.info(f"Replaying {provider} event {event_id} (was {record.status})")
        return await self._apply(record, event_from_record(record))

    async def _apply(self, record: PaymentEventRecord, event: PaymentEvent) -> IngestResult:
        provider = event.provider.value
        try:
            outcome = await self.engine.apply(event)
        except ValidationError as e:
            # Raised before any mutation, so the row can be kept as failed
            logger.warning(f"{provider} event {event.event_id} failed: {e.reason}")
            await self.events.mark(record, EventStatus.FAILED, e.reason)
            return IngestResult(
                provider=provider,
                event_id=event.event_id,
                applied=False,
                duplicate=False,
                status=EventStatus.FAILED.value,
                reason=e.reason,
            )

        status = EventStatus.APPLIED if outcome.applied else EventStatus.IGNORED
        if not outcome.applied:
            logger.warning(f"{provider} event {event.event_id} ignored: {outcome.reason}")
        await self.events.mark(record, status, outcome.reason)
        return IngestResult(
            provider=provider,
            event_id=event.event_id,
            applied=outcome.applied,
            duplicate=False,
            status=status.value,
            reason=outcome.reason,
        )
