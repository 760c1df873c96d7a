"""Maps a risk assessment to one prevention action and records it.

Critical/high risk hands the booking to a human (manager notification);
medium/low risk sends the customer a reminder. Every action is appended to
the booking's ``prevention_actions`` log, which is also what makes dispatch
idempotent: an action already logged for the same message and tier is not
repeated.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from app.errors import SendFailure
from app.services.risk_scoring import recommended_actions
from app.types.tracking import (
    BookingRiskContext,
    MessageTrackingRecord,
    MessageType,
    PreventionActionLogEntry,
    RiskAssessment,
    Tier,
)

_LOGGER = logging.getLogger(__name__)

READ_REMINDER = "read_reminder"
URGENT_REMINDER = "urgent_reminder"
MANAGER_INTERVENTION = "manager_intervention"
REMINDER_SEND_FAILED = "reminder_send_failed"

_REMINDER_ACTION = {Tier.REMINDER: READ_REMINDER, Tier.ESCALATION: URGENT_REMINDER}
_REMINDER_MESSAGE_TYPE = {Tier.REMINDER: MessageType.REMINDER, Tier.ESCALATION: MessageType.ESCALATION}


def compose_reminder(context: BookingRiskContext, tier: Tier, business_name: str) -> str:
    when = context.local_appointment_time()
    name = context.client.first_name or "there"
    if tier == Tier.REMINDER:
        return (
            f"Hi {name}! Just making sure you saw your appointment confirmation for "
            f"{context.service_name} on {when:%d/%m/%Y} at {when:%H:%M}.\n\n"
            "We're looking forward to seeing you! If you need to make any changes, "
            f"just reply to this message.\n\n{business_name}"
        )
    return (
        f"Hi {name}, we haven't heard back about your {context.service_name} appointment "
        f"on {when:%d/%m/%Y} at {when:%H:%M}. Please reply YES to confirm you're coming, "
        "or let us know if you need to reschedule so we can offer the slot to someone else.\n\n"
        f"{business_name}"
    )


class ActionDispatcher:
    def __init__(self, store, gateway, notifier, business_name: str = "the salon"):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.business_name = business_name

    @staticmethod
    def would_message_customer(assessment: RiskAssessment) -> bool:
        return assessment.level in ("low", "medium")

    async def dispatch(
        self,
        context: BookingRiskContext,
        tracking: MessageTrackingRecord,
        assessment: RiskAssessment,
        tier: Tier,
        now: datetime,
    ) -> Optional[PreventionActionLogEntry]:
        """Act on ``assessment``; ``None`` means nothing new was done."""
        if self.would_message_customer(assessment):
            return await self._remind(context, tracking, assessment, tier, now)
        return await self._intervene(context, tracking, assessment, tier, now)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _already_logged(context: BookingRiskContext, action: str, message_id: str, tier: Tier) -> bool:
        return any(e.matches(action, message_id, tier) for e in context.prevention_actions)

    @staticmethod
    def _entry(action: str, assessment: RiskAssessment, tracking: MessageTrackingRecord,
               tier: Tier, now: datetime, **extra: Any) -> PreventionActionLogEntry:
        metadata: Dict[str, Any] = {
            "message_id": tracking.message_id,
            "tier": tier.value,
            "risk_level": assessment.level,
            "factors": assessment.factors,
        }
        metadata.update(extra)
        return PreventionActionLogEntry(
            action=action, timestamp=now, risk_score_at_time=assessment.score, metadata=metadata
        )

    async def _intervene(self, context, tracking, assessment, tier, now, reason="high_no_show_risk"):
        if self._already_logged(context, MANAGER_INTERVENTION, tracking.message_id, tier):
            return None
        entry = self._entry(MANAGER_INTERVENTION, assessment, tracking, tier, now, reason=reason)
        claimed = await self.store.append_action(
            context.booking_id, entry, message_id=tracking.message_id, tier=tier, trigger_escalation=True
        )
        if not claimed:
            _LOGGER.info("Escalation already triggered for message_id=%s booking_id=%s",
                         tracking.message_id, context.booking_id)
            return None
        _LOGGER.warning("Manager intervention for booking_id=%s (message_id=%s, risk %s/%s)",
                        context.booking_id, tracking.message_id, assessment.score, assessment.level)
        # The claim is committed; the notification is best-effort.
        await asyncio.to_thread(self.notifier.notify_manager, context, assessment, reason)
        return entry

    async def _remind(self, context, tracking, assessment, tier, now):
        action = _REMINDER_ACTION[tier]
        if self._already_logged(context, action, tracking.message_id, tier):
            return None
        text = compose_reminder(context, tier, self.business_name)
        try:
            sent_id = await asyncio.to_thread(self.gateway.send, context.client.phone, text)
        except SendFailure as exc:
            return await self._send_failed(context, tracking, assessment, tier, now, exc)

        entry = self._entry(action, assessment, tracking, tier, now, sent_message_id=sent_id)
        appended = await self.store.append_action(
            context.booking_id, entry,
            message_id=tracking.message_id, tier=tier,
            increment_follow_up=True,
            track_sent=(sent_id, _REMINDER_MESSAGE_TYPE[tier], now),
        )
        if not appended:
            _LOGGER.warning("%s for message_id=%s was recorded concurrently; sent %s not logged",
                            action, tracking.message_id, sent_id)
            return None
        _LOGGER.info("Sent %s %s for booking_id=%s (message_id=%s)",
                     action, sent_id, context.booking_id, tracking.message_id)
        return entry

    async def _send_failed(self, context, tracking, assessment, tier, now, exc: SendFailure):
        retried = any(
            e.action == REMINDER_SEND_FAILED and e.metadata.get("message_id") == tracking.message_id
            for e in context.prevention_actions
        )
        _LOGGER.error("Reminder send failed for booking_id=%s message_id=%s tier=%s: %s",
                      context.booking_id, tracking.message_id, tier.value, exc)
        entry = self._entry(REMINDER_SEND_FAILED, assessment, tracking, tier, now, error=str(exc))
        await self.store.append_action(context.booking_id, entry, message_id=tracking.message_id, tier=tier)

        # No later tier will retry: hand over to a human.
        if retried or tier == Tier.ESCALATION:
            await asyncio.to_thread(
                self.notifier.alert_operator, "send_failure", str(exc),
                message_id=tracking.message_id, booking_id=context.booking_id,
            )
            critical = assessment.model_copy(
                update={"level": "critical", "recommended_actions": recommended_actions("critical")}
            )
            return await self._intervene(context, tracking, critical, tier, now, reason="reminder_undeliverable")
        return entry
