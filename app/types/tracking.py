"""Pydantic models shared by the webhook, the workers and the services.

Like every contract module here these classes are framework-agnostic: they
never import FastAPI, Celery or the database layer, so tests can build them
directly.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class MessageStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Forward-only ordering; FAILED sits outside it and is terminal.
STATUS_RANK = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.READ: 2,
}


class MessageType(str, enum.Enum):
    CONFIRMATION = "confirmation"
    REMINDER = "reminder"
    FOLLOW_UP = "follow_up"
    ESCALATION = "escalation"


class Tier(str, enum.Enum):
    """Escalation tiers, in firing order."""

    REMINDER = "reminder"
    ESCALATION = "escalation"


RiskLevel = Literal["low", "medium", "high", "critical"]


def _require_aware(v: Optional[datetime]) -> Optional[datetime]:
    if v is not None and v.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return v


# ──────────────────────────────
# Gateway → ingestion
# ──────────────────────────────


class StatusEvent(BaseModel):
    """One delivery-status callback from the messaging gateway."""

    message_id: str
    status: MessageStatus
    occurred_at: datetime
    recipient_id: Optional[str] = None
    conversation_id: Optional[str] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("message_id")
    def _non_empty(cls, v):  # noqa: N805
        if not v or not v.strip():
            raise ValueError("message_id must be a non-empty string")
        return v

    @field_validator("occurred_at", mode="before")
    def _from_unix(cls, v):  # noqa: N805
        # The gateway sends unix seconds as a string.
        if isinstance(v, (int, float)) or (isinstance(v, str) and v.isdigit()):
            return datetime.fromtimestamp(int(v), tz=timezone.utc)
        return v

    @field_validator("occurred_at")
    def _aware(cls, v):  # noqa: N805
        return _require_aware(v)


# ──────────────────────────────
# Store snapshots
# ──────────────────────────────


class MessageTrackingRecord(BaseModel):
    """Immutable snapshot of one ``message_tracking`` row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    message_id: str
    booking_id: str
    conversation_id: Optional[str] = None
    message_type: MessageType
    status: MessageStatus
    sent_at: datetime
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    follow_up_scheduled: bool = False
    follow_up_sent_count: int = 0
    risk_score: int = 0
    escalation_triggered: bool = False
    next_check_tier: Optional[Tier] = None
    next_check_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _read_implies_delivered(self):  # noqa: N805
        if self.read_at is not None:
            if self.delivered_at is None or self.delivered_at > self.read_at:
                raise ValueError("read_at requires an earlier or equal delivered_at")
        return self


class ClientProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    first_name: str = ""
    phone: Optional[str] = None
    visit_count: int = 0
    no_show_count: int = 0
    is_vip: bool = False


class PreventionActionLogEntry(BaseModel):
    """One append-only entry of a booking's ``prevention_actions`` log."""

    action: str
    timestamp: datetime
    risk_score_at_time: int
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def matches(self, action: str, message_id: str, tier: Tier | str) -> bool:
        tier_value = tier.value if isinstance(tier, Tier) else tier
        return (
            self.action == action
            and self.metadata.get("message_id") == message_id
            and self.metadata.get("tier") == tier_value
        )


class BookingRiskContext(BaseModel):
    """Read-only view of a booking composed from booking, client and service rows."""

    booking_id: str
    appointment_time: datetime
    service_value: float = 0.0
    service_name: str = ""
    client: ClientProfile = Field(default_factory=ClientProfile)
    conversation_id: Optional[str] = None
    session_window_expires_at: Optional[datetime] = None
    prevention_actions: List[PreventionActionLogEntry] = Field(default_factory=list)
    # salon timezone; calendar dates and message times are local to it
    timezone: str = "UTC"

    @field_validator("appointment_time", "session_window_expires_at")
    def _aware(cls, v):  # noqa: N805
        return _require_aware(v)

    @field_validator("timezone")
    def _validate_tz(cls, v):  # noqa: N805
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"timezone '{v}' is not a valid Olson timezone string")
        return v

    def local_appointment_time(self) -> datetime:
        return self.appointment_time.astimezone(ZoneInfo(self.timezone))

    def hours_until(self, now: datetime) -> float:
        return (self.appointment_time - now).total_seconds() / 3600

    def session_window_active(self, now: datetime) -> bool:
        if self.session_window_expires_at is None:
            return False
        return self.session_window_expires_at > now


class RiskAssessment(BaseModel):
    score: int = Field(ge=0, le=100)
    level: RiskLevel
    factors: Dict[str, int]
    recommended_actions: List[str]
    potential_revenue_loss: float = 0.0
