"""Manager notifications and operator alerts.

Both are best-effort: a failed notification is logged and swallowed so it
never undoes the state change that triggered it.
"""

from __future__ import annotations

import logging
from typing import Optional

from app.errors import SendFailure
from app.types.tracking import BookingRiskContext, RiskAssessment

_LOGGER = logging.getLogger(__name__)


class ManagerNotifier:
    def __init__(self, gateway, manager_phone: Optional[str]):
        self.gateway = gateway
        self.manager_phone = manager_phone

    def _send(self, text: str) -> bool:
        if not self.manager_phone:
            _LOGGER.warning("MANAGER_PHONE not configured; notification dropped: %s", text)
            return False
        try:
            self.gateway.send(self.manager_phone, text)
        except SendFailure as exc:
            _LOGGER.error("Manager notification failed: %s", exc)
            return False
        return True

    def notify_manager(self, context: BookingRiskContext, assessment: RiskAssessment, reason: str = "high_no_show_risk") -> bool:
        client = context.client
        text = (
            f"No-show alert ({reason}): {client.first_name or 'client'} "
            f"{client.phone or ''} - {context.service_name} at "
            f"{context.local_appointment_time():%d/%m %H:%M}. Risk {assessment.score} "
            f"({assessment.level}), potential loss {assessment.potential_revenue_loss:.2f}. "
            f"Please call: {', '.join(assessment.recommended_actions)}."
        )
        return self._send(text)

    def alert_operator(
        self, kind: str, detail: str, *, message_id: Optional[str] = None, booking_id: Optional[str] = None
    ) -> bool:
        _LOGGER.error(
            "Operator alert %s (message_id=%s booking_id=%s): %s", kind, message_id, booking_id, detail
        )
        return self._send(f"[ops] {kind}: {detail} (message {message_id}, booking {booking_id})")
