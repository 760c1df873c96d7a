"""Decides whether a paid (templated) customer message is worth sending."""

from __future__ import annotations

import logging
from datetime import datetime

from app.types.tracking import BookingRiskContext, MessageType

_LOGGER = logging.getLogger(__name__)


class CostGate:
    def __init__(self, high_value_threshold: float = 100):
        self.high_value_threshold = high_value_threshold

    def is_send_allowed(self, context: BookingRiskContext, message_type: MessageType, now: datetime) -> bool:
        # Free-form messages inside the session window bill at standard rates.
        if context.session_window_active(now):
            return True
        if context.service_value > self.high_value_threshold or context.client.is_vip:
            return True
        _LOGGER.info(
            "Cost gate: %s for booking %s outside session window, not high-value/VIP",
            message_type.value, context.booking_id,
        )
        return False
