"""Gateway delivery-status ingestion.

Applies forward-only status transitions to tracking records and hands the
expensive follow-up work (scoring, scheduling) to the task queue so the
webhook can acknowledge quickly.

Transition rules, per record:
    sent → delivered → read      forward only
    sent → read                  collapsed: delivered_at := read time
    any  → failed                terminal; nothing leaves ``failed``
    same status again            duplicate, no-op
    backwards                    stale, no-op
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Dict, Iterator, Protocol

from pydantic import ValidationError

from app.types.tracking import (
    STATUS_RANK,
    MessageStatus,
    MessageTrackingRecord,
    MessageType,
    StatusEvent,
)

_LOGGER = logging.getLogger(__name__)

# CAS retries when another writer changes the row between read and update
MAX_CAS_ATTEMPTS = 3


class IngestResult(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNKNOWN_MESSAGE = "unknown_message"


class TaskQueue(Protocol):
    # Blocking broker publishes; the ingestor runs them in a worker thread.
    def enqueue_evaluation(self, message_id: str) -> None: ...
    def enqueue_derisk(self, message_id: str) -> None: ...


def plan_transition(record: MessageTrackingRecord, event: StatusEvent) -> tuple[IngestResult, Dict[str, Any]]:
    """Return the outcome and the column values to write for ``event``."""
    current, new = record.status, event.status
    if current == new:
        return IngestResult.DUPLICATE, {}
    if current == MessageStatus.FAILED:
        return IngestResult.STALE, {}
    if new == MessageStatus.FAILED:
        return IngestResult.APPLIED, {"status": MessageStatus.FAILED}
    if STATUS_RANK[new] < STATUS_RANK[current]:
        return IngestResult.STALE, {}

    if new == MessageStatus.DELIVERED:
        return IngestResult.APPLIED, {"status": new, "delivered_at": event.occurred_at}

    # new == READ
    delivered_at = record.delivered_at or event.occurred_at
    return IngestResult.APPLIED, {
        "status": new,
        "delivered_at": delivered_at,
        # clock skew between callbacks must not break delivered <= read
        "read_at": max(event.occurred_at, delivered_at),
    }


class StatusIngestor:
    def __init__(self, store, tasks: TaskQueue):
        self.store = store
        self.tasks = tasks

    async def ingest(self, event: StatusEvent) -> IngestResult:
        for _ in range(MAX_CAS_ATTEMPTS):
            record = await self.store.get(event.message_id)
            if record is None:
                _LOGGER.info("Status %s for unknown message_id=%s ignored", event.status.value, event.message_id)
                return IngestResult.UNKNOWN_MESSAGE

            result, values = plan_transition(record, event)
            if result is IngestResult.DUPLICATE and self._evaluation_owed(record):
                # Redelivery after a failed enqueue; evaluation is idempotent.
                await asyncio.to_thread(self.tasks.enqueue_evaluation, record.message_id)
            if result is not IngestResult.APPLIED:
                _LOGGER.info(
                    "Status %s for message_id=%s (booking_id=%s) is %s; stored status %s",
                    event.status.value, event.message_id, record.booking_id, result.value, record.status.value,
                )
                return result

            updated = await self.store.transition_status(event.message_id, record.status, **values)
            if updated is not None:
                _LOGGER.info(
                    "Status transition message_id=%s booking_id=%s %s -> %s at %s",
                    event.message_id, updated.booking_id, record.status.value,
                    updated.status.value, event.occurred_at.isoformat(),
                )
                await self._after_transition(record, updated, event)
                return IngestResult.APPLIED
        # Someone else kept winning; whatever they wrote already covers this event.
        _LOGGER.warning("Gave up applying %s to message_id=%s after %d CAS attempts",
                        event.status.value, event.message_id, MAX_CAS_ATTEMPTS)
        return IngestResult.STALE

    @staticmethod
    def _evaluation_owed(record: MessageTrackingRecord) -> bool:
        return (
            record.message_type == MessageType.CONFIRMATION
            and record.status == MessageStatus.DELIVERED
            and not record.follow_up_scheduled
        )

    async def _after_transition(self, before: MessageTrackingRecord, after: MessageTrackingRecord, event: StatusEvent) -> None:
        is_confirmation = after.message_type == MessageType.CONFIRMATION

        if after.status == MessageStatus.DELIVERED and is_confirmation:
            await asyncio.to_thread(self.tasks.enqueue_evaluation, after.message_id)
        elif after.status == MessageStatus.READ:
            await self.store.mark_booking_read(after.booking_id, after.read_at, confirmation=is_confirmation)
            if is_confirmation:
                await asyncio.to_thread(self.tasks.enqueue_derisk, after.message_id)
        elif after.status == MessageStatus.FAILED:
            _LOGGER.warning(
                "Message %s for booking %s failed after %s: %s",
                after.message_id, after.booking_id, before.status.value, event.errors or "no details",
            )


# ──────────────────────────────────────────────────────────────────────────
# Webhook payload parsing
# ──────────────────────────────────────────────────────────────────────────

def iter_status_events(payload: Dict[str, Any]) -> Iterator[StatusEvent]:
    """Yield a ``StatusEvent`` per status in a gateway webhook body.

    Malformed statuses are logged and skipped so one bad entry does not
    drop the rest of the batch.
    """
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            if change.get("field", "messages") != "messages":
                continue
            value = change.get("value") or {}
            for status in value.get("statuses") or []:
                try:
                    yield StatusEvent(
                        message_id=status.get("id", ""),
                        status=status.get("status"),
                        occurred_at=status.get("timestamp"),
                        recipient_id=status.get("recipient_id"),
                        conversation_id=(status.get("conversation") or {}).get("id"),
                        errors=status.get("errors") or [],
                    )
                except ValidationError as exc:
                    _LOGGER.warning("Skipping malformed status %s: %s", status.get("id"), exc)


async def ingest_payload(ingestor: StatusIngestor, payload: Dict[str, Any]) -> Dict[str, int]:
    """Ingest every status of a webhook body; returns counts per result."""
    counts: Dict[str, int] = {r.value: 0 for r in IngestResult}
    for event in iter_status_events(payload):
        result = await ingestor.ingest(event)
        counts[result.value] += 1
    return counts
