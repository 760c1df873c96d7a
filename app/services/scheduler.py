"""
Escalation scheduler: owns the two-tier read-check timers.

    confirmation delivered, unread
        └─ schedule_read_check(T)      tier "reminder"
              └─ on_fire → dispatch → schedule_escalation(T+Δ)
                                             └─ on_fire → dispatch → terminal

Timers are written as an intent on the tracking row (``follow_up_scheduled``
+ ``next_check_*``) *before* the workflow scheduler is called. A firing
claims that intent atomically, so a re-issued timer and the original cannot
both act, and it decides from the row as it is at fire time, never from
what was known when the timer was set. Intents the scheduler never
delivered are re-issued by ``sweep_orphans``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from app.errors import ScheduleError, TransientScheduleError
from app.services import risk_scoring
from app.types.tracking import MessageType, Tier

_LOGGER = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleResult(str, enum.Enum):
    SCHEDULED = "scheduled"
    ALREADY_SCHEDULED = "already_scheduled"
    REJECTED = "rejected"


class FireResult(str, enum.Enum):
    ACTED = "acted"
    NO_ACTION = "no_action"
    NOT_PENDING = "not_pending"
    ABORTED_READ = "aborted_read"
    SKIPPED_COST = "skipped_cost"
    UNKNOWN_BOOKING = "unknown_booking"


class SchedulerBackend(Protocol):
    def schedule_at(self, when: datetime, message_id: str, tier: Tier) -> None:
        """Run ``on_fire(message_id, tier)`` at or after ``when``.

        Raises ``TransientScheduleError`` when the scheduler is unreachable.
        """


class EscalationScheduler:
    def __init__(
        self,
        store,
        backend: SchedulerBackend,
        dispatcher,
        gate,
        notifier,
        *,
        escalation_delay: timedelta = timedelta(hours=4),
        max_attempts: int = 5,
        retry_wait=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.backend = backend
        self.dispatcher = dispatcher
        self.gate = gate
        self.notifier = notifier
        self.escalation_delay = escalation_delay
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_random_exponential(multiplier=1, max=30)
        self.clock = clock

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    async def schedule_read_check(self, message_id: str, delay: timedelta) -> ScheduleResult:
        record = await self._record_for_scheduling(message_id, delay)
        if record.follow_up_scheduled:
            return ScheduleResult.ALREADY_SCHEDULED
        due = self.clock() + delay
        if await self.store.write_read_check_intent(message_id, due) is None:
            return ScheduleResult.ALREADY_SCHEDULED
        await self._submit(due, message_id, Tier.REMINDER, record.booking_id)
        _LOGGER.info("Read check for message_id=%s booking_id=%s due %s",
                     message_id, record.booking_id, due.isoformat())
        return ScheduleResult.SCHEDULED

    async def schedule_escalation(self, message_id: str, delay: Optional[timedelta] = None) -> ScheduleResult:
        delay = delay if delay is not None else self.escalation_delay
        record = await self._record_for_scheduling(message_id, delay)
        if record.escalation_triggered:
            _LOGGER.info("Escalation for message_id=%s rejected: pipeline already escalated", message_id)
            return ScheduleResult.REJECTED
        due = self.clock() + delay
        if await self.store.write_escalation_intent(message_id, due) is None:
            _LOGGER.info("Escalation for message_id=%s rejected: escalated or a tier is pending", message_id)
            return ScheduleResult.REJECTED
        await self._submit(due, message_id, Tier.ESCALATION, record.booking_id)
        _LOGGER.info("Escalation for message_id=%s booking_id=%s due %s",
                     message_id, record.booking_id, due.isoformat())
        return ScheduleResult.SCHEDULED

    async def _record_for_scheduling(self, message_id: str, delay: timedelta):
        if delay <= timedelta(0):
            raise ScheduleError(f"delay must be positive, got {delay}", message_id=message_id)
        record = await self.store.get(message_id)
        if record is None:
            raise ScheduleError("no tracking record", message_id=message_id)
        return record

    async def _submit(self, due: datetime, message_id: str, tier: Tier, booking_id: str) -> None:
        try:
            async for attempt in AsyncRetrying(
                wait=self.retry_wait,
                stop=stop_after_attempt(self.max_attempts),
                retry=retry_if_exception_type(TransientScheduleError),
                reraise=True,
            ):
                with attempt:
                    await asyncio.to_thread(self.backend.schedule_at, due, message_id, tier)
        except TransientScheduleError as exc:
            # The intent stays on the row; the orphan sweep will re-issue it.
            await asyncio.to_thread(
                self.notifier.alert_operator, "schedule_exhausted",
                f"{tier.value} timer not accepted after {self.max_attempts} attempts: {exc}",
                message_id=message_id, booking_id=booking_id,
            )
            raise ScheduleError(
                f"scheduler unreachable after {self.max_attempts} attempts",
                message_id=message_id, booking_id=booking_id,
            ) from exc

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------
    async def on_fire(self, message_id: str, tier: Tier) -> FireResult:
        now = self.clock()
        record = await self.store.claim_check(message_id, tier)
        if record is None:
            _LOGGER.info("%s check for message_id=%s not pending; duplicate or stale timer",
                         tier.value, message_id)
            return FireResult.NOT_PENDING
        try:
            return await self._act(record, tier, now)
        finally:
            # The escalation tier is the last one whatever it decided.
            if tier == Tier.ESCALATION and await self.store.mark_escalation_triggered(message_id):
                _LOGGER.info("Escalation pipeline closed for message_id=%s booking_id=%s",
                             message_id, record.booking_id)

    async def _act(self, record, tier: Tier, now: datetime) -> FireResult:
        message_id = record.message_id
        if record.read_at is not None:
            _LOGGER.info("Message %s was read at %s; %s check aborted",
                         message_id, record.read_at.isoformat(), tier.value)
            return FireResult.ABORTED_READ

        context = await self.store.load_risk_context(record.booking_id, record.conversation_id)
        if context is None:
            _LOGGER.warning("Booking %s for message_id=%s not found; %s check dropped",
                            record.booking_id, message_id, tier.value)
            return FireResult.UNKNOWN_BOOKING

        assessment = risk_scoring.score(context, record, now)
        await self.store.record_risk(message_id, record.booking_id, assessment.score)

        if self.dispatcher.would_message_customer(assessment) and not self.gate.is_send_allowed(
            context, MessageType.REMINDER, now
        ):
            _LOGGER.info("Skipping %s tier for booking_id=%s message_id=%s to save costs",
                         tier.value, record.booking_id, message_id)
            return FireResult.SKIPPED_COST

        entry = await self.dispatcher.dispatch(context, record, assessment, tier, now)

        if tier == Tier.REMINDER:
            try:
                await self.schedule_escalation(message_id)
            except ScheduleError as exc:
                _LOGGER.error("Escalation for message_id=%s not scheduled: %s", message_id, exc)

        return FireResult.ACTED if entry is not None else FireResult.NO_ACTION

    # ------------------------------------------------------------------
    # Outbox reconciliation
    # ------------------------------------------------------------------
    async def sweep_orphans(self, grace: timedelta, limit: int = 100) -> int:
        """Re-issue timers whose intent is overdue by more than ``grace``."""
        now = self.clock()
        reissued = 0
        for record in await self.store.find_orphaned_checks(now - grace, limit=limit):
            tier = record.next_check_tier
            # Push the due time forward first so the next sweep skips it.
            if await self.store.reschedule_check(record.message_id, tier, now) is None:
                continue
            try:
                await self._submit(now, record.message_id, tier, record.booking_id)
            except ScheduleError as exc:
                _LOGGER.error("Orphan sweep stopped: %s", exc)
                break
            _LOGGER.warning("Re-issued orphaned %s check for message_id=%s (was due %s)",
                            tier.value, record.message_id, record.next_check_at.isoformat())
            reissued += 1
        return reissued
