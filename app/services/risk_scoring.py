"""No-show risk scoring.

Additive weighted-sum model over a booking and its confirmation message's
tracking record. Everything here is pure: the only clock is the ``now``
argument.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from app.types.tracking import BookingRiskContext, MessageTrackingRecord, RiskAssessment, RiskLevel

MESSAGE_NOT_READ = 35
FIRST_TIME_CUSTOMER = 25
APPOINTMENT_WITHIN_24H = 15
WEEKEND_APPOINTMENT = 10
HIGH_VALUE_SERVICE = -15
REPEAT_CUSTOMER_BONUS = -20
RECENT_NO_SHOW_HISTORY = 30

HIGH_VALUE_THRESHOLD = 100
LOYAL_VISIT_COUNT = 5

_RECOMMENDED: Dict[str, List[str]] = {
    "critical": ["immediate_phone_call", "manager_intervention", "offer_reschedule_incentive"],
    "high": ["urgent_reminder", "confirm_attendance_request", "highlight_cancellation_policy"],
    "medium": ["gentle_reminder", "service_excitement_message"],
    "low": ["standard_pre_appointment_reminder"],
}


def risk_level(score: int) -> RiskLevel:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 35:
        return "medium"
    return "low"


def recommended_actions(level: RiskLevel) -> List[str]:
    return list(_RECOMMENDED[level])


def is_weekend(when: datetime) -> bool:
    # Saturday=5, Sunday=6; ``when`` must already be in the salon's timezone
    return when.weekday() >= 5


def risk_factors(context: BookingRiskContext, tracking: MessageTrackingRecord, now: datetime) -> Dict[str, int]:
    client = context.client
    return {
        "message_not_read": MESSAGE_NOT_READ if tracking.read_at is None else 0,
        "first_time_customer": FIRST_TIME_CUSTOMER if client.visit_count == 0 else 0,
        "appointment_within_24h": APPOINTMENT_WITHIN_24H if context.hours_until(now) < 24 else 0,
        "weekend_appointment": WEEKEND_APPOINTMENT if is_weekend(context.local_appointment_time()) else 0,
        "high_value_service": HIGH_VALUE_SERVICE if context.service_value > HIGH_VALUE_THRESHOLD else 0,
        "repeat_customer_bonus": REPEAT_CUSTOMER_BONUS if client.visit_count > LOYAL_VISIT_COUNT else 0,
        "recent_no_show_history": RECENT_NO_SHOW_HISTORY if client.no_show_count > 0 else 0,
    }


def score(context: BookingRiskContext, tracking: MessageTrackingRecord, now: datetime) -> RiskAssessment:
    """Score ``context`` against ``tracking`` as of ``now``."""
    factors = risk_factors(context, tracking, now)
    total = max(0, min(100, sum(factors.values())))
    level = risk_level(total)
    return RiskAssessment(
        score=total,
        level=level,
        factors=factors,
        recommended_actions=recommended_actions(level),
        potential_revenue_loss=context.service_value,
    )
