"""Entry points the workers call: confirmation sending, evaluation on
delivery, and de-risking on read."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from app.errors import SendFailure
from app.services import risk_scoring
from app.services.scheduler import EscalationScheduler, ScheduleResult
from app.types.tracking import MessageStatus, MessageTrackingRecord, MessageType, RiskAssessment

_LOGGER = logging.getLogger(__name__)


def compose_confirmation(context, business_name: str) -> str:
    when = context.local_appointment_time()
    return (
        f"Hi {context.client.first_name or 'there'}! Your {context.service_name} appointment "
        f"is booked for {when:%d/%m/%Y} at {when:%H:%M}. Reply to this message if you need "
        f"to change anything.\n\n{business_name}"
    )


class NoShowPrevention:
    def __init__(self, store, gateway, scheduler: EscalationScheduler, *,
                 read_check_delay: timedelta = timedelta(hours=2), business_name: str = "the salon"):
        self.store = store
        self.gateway = gateway
        self.scheduler = scheduler
        self.read_check_delay = read_check_delay
        self.business_name = business_name

    async def send_confirmation(self, booking_id: str, conversation_id: Optional[str] = None) -> Optional[MessageTrackingRecord]:
        """Send the booking confirmation and start tracking its receipts."""
        context = await self.store.load_risk_context(booking_id, conversation_id)
        if context is None:
            _LOGGER.warning("Confirmation for unknown booking_id=%s skipped", booking_id)
            return None
        text = compose_confirmation(context, self.business_name)
        try:
            message_id = await asyncio.to_thread(self.gateway.send, context.client.phone, text)
        except SendFailure as exc:
            _LOGGER.error("Confirmation for booking_id=%s not sent: %s", booking_id, exc)
            raise
        record = await self.store.create(
            message_id, booking_id, MessageType.CONFIRMATION,
            sent_at=self.scheduler.clock(), conversation_id=conversation_id,
        )
        _LOGGER.info("Confirmation %s sent for booking_id=%s", message_id, booking_id)
        return record

    async def _assess(self, message_id: str) -> tuple[Optional[MessageTrackingRecord], Optional[RiskAssessment]]:
        record = await self.store.get(message_id)
        if record is None or record.message_type != MessageType.CONFIRMATION:
            return record, None
        context = await self.store.load_risk_context(record.booking_id, record.conversation_id)
        if context is None:
            _LOGGER.warning("Booking %s for message_id=%s not found", record.booking_id, message_id)
            return record, None
        assessment = risk_scoring.score(context, record, self.scheduler.clock())
        await self.store.record_risk(message_id, record.booking_id, assessment.score)
        _LOGGER.info("Risk for booking_id=%s via message_id=%s: %s (%s) %s",
                     record.booking_id, message_id, assessment.score, assessment.level, assessment.factors)
        return record, assessment

    async def evaluate(self, message_id: str) -> Optional[ScheduleResult]:
        """Score a delivered confirmation and arm the read check if unread."""
        record, assessment = await self._assess(message_id)
        if assessment is None:
            return None
        if record.status == MessageStatus.DELIVERED and record.read_at is None:
            return await self.scheduler.schedule_read_check(message_id, self.read_check_delay)
        return None

    async def derisk(self, message_id: str) -> Optional[RiskAssessment]:
        """Re-score after a read; pending timers see ``read_at`` and stand down."""
        _, assessment = await self._assess(message_id)
        return assessment
