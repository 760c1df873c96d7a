"""
Message status store: data access for ``message_tracking`` and the booking
fields the prevention pipeline owns.

Every mutation that other writers can race on is a compare-and-swap
``UPDATE ... WHERE <expected state> RETURNING``; a ``None`` result means the
expected state no longer holds and the caller decides what that means.
No business rules live here.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.types.tracking import (
    BookingRiskContext,
    ClientProfile,
    MessageStatus,
    MessageTrackingRecord,
    MessageType,
    PreventionActionLogEntry,
    Tier,
)
from db.db import Booking, Conversation, MessageTracking

_LOGGER = logging.getLogger(__name__)


def _snapshot(row: MessageTracking | None) -> MessageTrackingRecord | None:
    return MessageTrackingRecord.model_validate(row) if row is not None else None


class MessageStatusStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession], timezone: str = "UTC"):
        self._sessions = session_maker
        self.timezone = timezone

    # ── reads ────────────────────────────────────────────────────────────
    async def get(self, message_id: str) -> MessageTrackingRecord | None:
        async with self._sessions() as s:
            return _snapshot(await s.get(MessageTracking, message_id))

    async def load_risk_context(
        self, booking_id: str, conversation_id: Optional[str] = None
    ) -> BookingRiskContext | None:
        async with self._sessions() as s:
            booking = await s.get(Booking, booking_id)
            if booking is None:
                return None
            window = None
            if conversation_id:
                conv = await s.get(Conversation, conversation_id)
                window = conv.service_window_expires_at if conv else None
            return BookingRiskContext(
                booking_id=booking.booking_id,
                appointment_time=booking.appointment_time,
                service_value=float(booking.service.price or 0),
                service_name=booking.service.name,
                client=ClientProfile.model_validate(booking.client),
                conversation_id=conversation_id,
                session_window_expires_at=window,
                timezone=self.timezone,
                prevention_actions=[
                    PreventionActionLogEntry.model_validate(e)
                    for e in booking.prevention_actions or []
                ],
            )

    async def find_orphaned_checks(self, cutoff: datetime, limit: int = 100) -> list[MessageTrackingRecord]:
        """Records whose owed timer should have fired before ``cutoff``."""
        async with self._sessions() as s:
            stmt = (
                select(MessageTracking)
                .where(
                    MessageTracking.next_check_tier.is_not(None),
                    MessageTracking.next_check_at <= cutoff,
                )
                .order_by(MessageTracking.next_check_at)
                .limit(limit)
            )
            res = await s.execute(stmt)
            return [_snapshot(r) for r in res.scalars()]

    # ── inserts ──────────────────────────────────────────────────────────
    async def create(
        self,
        message_id: str,
        booking_id: str,
        message_type: MessageType,
        sent_at: datetime,
        conversation_id: Optional[str] = None,
    ) -> MessageTrackingRecord:
        row = MessageTracking(
            message_id=message_id,
            booking_id=booking_id,
            conversation_id=conversation_id,
            message_type=message_type.value,
            status=MessageStatus.SENT.value,
            sent_at=sent_at,
            follow_up_scheduled=False,
            follow_up_sent_count=0,
            risk_score=0,
            escalation_triggered=False,
        )
        async with self._sessions() as s, s.begin():
            s.add(row)
        return _snapshot(row)

    # ── compare-and-swap updates ─────────────────────────────────────────
    async def _cas(self, stmt) -> MessageTrackingRecord | None:
        async with self._sessions() as s, s.begin():
            res = await s.execute(stmt.returning(MessageTracking))
            return _snapshot(res.scalar_one_or_none())

    async def transition_status(
        self, message_id: str, expected: MessageStatus, **values: Any
    ) -> MessageTrackingRecord | None:
        """Apply ``values`` only if the row still has status ``expected``."""
        values = {k: (v.value if isinstance(v, MessageStatus) else v) for k, v in values.items()}
        return await self._cas(
            update(MessageTracking)
            .where(
                MessageTracking.message_id == message_id,
                MessageTracking.status == expected.value,
            )
            .values(**values)
        )

    async def write_read_check_intent(self, message_id: str, due_at: datetime) -> MessageTrackingRecord | None:
        return await self._cas(
            update(MessageTracking)
            .where(
                MessageTracking.message_id == message_id,
                MessageTracking.follow_up_scheduled.is_(False),
            )
            .values(
                follow_up_scheduled=True,
                next_check_tier=Tier.REMINDER.value,
                next_check_at=due_at,
            )
        )

    async def write_escalation_intent(self, message_id: str, due_at: datetime) -> MessageTrackingRecord | None:
        return await self._cas(
            update(MessageTracking)
            .where(
                MessageTracking.message_id == message_id,
                MessageTracking.escalation_triggered.is_(False),
                MessageTracking.next_check_tier.is_(None),
            )
            .values(next_check_tier=Tier.ESCALATION.value, next_check_at=due_at)
        )

    async def claim_check(self, message_id: str, tier: Tier) -> MessageTrackingRecord | None:
        """Clear the owed timer for ``tier``; only one firing wins the claim."""
        return await self._cas(
            update(MessageTracking)
            .where(
                MessageTracking.message_id == message_id,
                MessageTracking.next_check_tier == tier.value,
            )
            .values(next_check_tier=None, next_check_at=None)
        )

    async def reschedule_check(self, message_id: str, tier: Tier, due_at: datetime) -> MessageTrackingRecord | None:
        return await self._cas(
            update(MessageTracking)
            .where(
                MessageTracking.message_id == message_id,
                MessageTracking.next_check_tier == tier.value,
            )
            .values(next_check_at=due_at)
        )

    async def mark_escalation_triggered(self, message_id: str) -> bool:
        rec = await self._cas(
            update(MessageTracking)
            .where(
                MessageTracking.message_id == message_id,
                MessageTracking.escalation_triggered.is_(False),
            )
            .values(escalation_triggered=True)
        )
        return rec is not None

    # ── booking-side writes ──────────────────────────────────────────────
    async def record_risk(self, message_id: str, booking_id: str, score: int) -> None:
        async with self._sessions() as s, s.begin():
            await s.execute(
                update(MessageTracking)
                .where(MessageTracking.message_id == message_id)
                .values(risk_score=score)
            )
            await s.execute(
                update(Booking)
                .where(Booking.booking_id == booking_id)
                .values(no_show_risk_score=score)
            )

    async def mark_booking_read(self, booking_id: str, read_at: datetime, confirmation: bool) -> None:
        values: dict[str, Any] = {"last_engagement_at": read_at}
        if confirmation:
            values["confirmation_read"] = True
        async with self._sessions() as s, s.begin():
            await s.execute(
                update(Booking).where(Booking.booking_id == booking_id).values(**values)
            )

    async def append_action(
        self,
        booking_id: str,
        entry: PreventionActionLogEntry,
        *,
        message_id: str,
        tier: Tier,
        increment_follow_up: bool = False,
        trigger_escalation: bool = False,
        track_sent: Optional[Sequence[Any]] = None,
    ) -> bool:
        """Append ``entry`` and apply its counters in one transaction.

        Returns False (and writes nothing) when the same action is already
        logged for ``message_id``/``tier``, or when ``trigger_escalation`` is
        requested but escalation was already triggered.
        ``track_sent`` is ``(message_id, message_type, sent_at)`` of an
        outbound message to start tracking alongside the entry.
        """
        async with self._sessions() as s, s.begin():
            booking = await s.scalar(
                select(Booking).where(Booking.booking_id == booking_id).with_for_update(of=Booking)
            )
            if booking is None:
                _LOGGER.warning("append_action: booking %s missing (message_id=%s)", booking_id, message_id)
                return False
            logged = [PreventionActionLogEntry.model_validate(e) for e in booking.prevention_actions or []]
            if any(e.matches(entry.action, message_id, tier) for e in logged):
                return False

            if trigger_escalation:
                res = await s.execute(
                    update(MessageTracking)
                    .where(
                        MessageTracking.message_id == message_id,
                        MessageTracking.escalation_triggered.is_(False),
                    )
                    .values(escalation_triggered=True)
                )
                if res.rowcount == 0:
                    return False
            if increment_follow_up:
                await s.execute(
                    update(MessageTracking)
                    .where(MessageTracking.message_id == message_id)
                    .values(follow_up_sent_count=MessageTracking.follow_up_sent_count + 1)
                )
            if track_sent is not None:
                sent_id, sent_type, sent_at = track_sent
                s.add(MessageTracking(
                    message_id=sent_id,
                    booking_id=booking_id,
                    message_type=sent_type.value,
                    status=MessageStatus.SENT.value,
                    sent_at=sent_at,
                ))

            booking.prevention_actions = [*(booking.prevention_actions or []), entry.model_dump(mode="json")]
        return True
