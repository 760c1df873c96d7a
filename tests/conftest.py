"""In-memory collaborators for the service tests.

``FakeStore`` mirrors the compare-and-swap contract of
``db.store.MessageStatusStore`` so the services can be exercised without
Postgres; the SQL store itself is covered by ``test_store.py`` when
DATABASE_URL is set.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from tenacity import wait_none

from app.errors import SendFailure, TransientScheduleError
from app.services.cost_gate import CostGate
from app.services.dispatcher import ActionDispatcher
from app.services.ingestion import StatusIngestor
from app.services.prevention import NoShowPrevention
from app.services.scheduler import EscalationScheduler
from app.types.tracking import (
    BookingRiskContext,
    ClientProfile,
    MessageStatus,
    MessageTrackingRecord,
    MessageType,
    PreventionActionLogEntry,
    Tier,
)

# Wednesday morning
NOW = datetime(2026, 10, 14, 8, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeStore:
    def __init__(self):
        self.records: dict[str, dict[str, Any]] = {}
        self.bookings: dict[str, dict[str, Any]] = {}
        self.windows: dict[str, Optional[datetime]] = {}
        self.timezone = "UTC"

    # ── test helpers ─────────────────────────────────────────────────────
    def add_booking(self, booking_id="b1", *, appointment_time, service_value=50.0, service_name="Haircut",
                    first_name="Maria", phone="+4917712345678", visit_count=0, no_show_count=0, is_vip=False):
        self.bookings[booking_id] = {
            "appointment_time": appointment_time,
            "service_value": service_value,
            "service_name": service_name,
            "client": ClientProfile(first_name=first_name, phone=phone, visit_count=visit_count,
                                    no_show_count=no_show_count, is_vip=is_vip),
            "prevention_actions": [],
            "no_show_risk_score": 0,
            "confirmation_read": False,
            "last_engagement_at": None,
        }

    def add_record(self, message_id="m1", booking_id="b1", *, message_type=MessageType.CONFIRMATION,
                   status=MessageStatus.SENT, sent_at=NOW, conversation_id=None, **fields):
        self.records[message_id] = {
            "message_id": message_id,
            "booking_id": booking_id,
            "conversation_id": conversation_id,
            "message_type": message_type,
            "status": status,
            "sent_at": sent_at,
            "delivered_at": None,
            "read_at": None,
            "follow_up_scheduled": False,
            "follow_up_sent_count": 0,
            "risk_score": 0,
            "escalation_triggered": False,
            "next_check_tier": None,
            "next_check_at": None,
            **fields,
        }

    def record(self, message_id="m1") -> MessageTrackingRecord:
        return MessageTrackingRecord(**self.records[message_id])

    def actions(self, booking_id="b1") -> list[PreventionActionLogEntry]:
        return [PreventionActionLogEntry.model_validate(e) for e in self.bookings[booking_id]["prevention_actions"]]

    # ── store contract ───────────────────────────────────────────────────
    async def get(self, message_id):
        return self.record(message_id) if message_id in self.records else None

    async def load_risk_context(self, booking_id, conversation_id=None):
        b = self.bookings.get(booking_id)
        if b is None:
            return None
        return BookingRiskContext(
            booking_id=booking_id,
            appointment_time=b["appointment_time"],
            service_value=b["service_value"],
            service_name=b["service_name"],
            client=b["client"],
            conversation_id=conversation_id,
            session_window_expires_at=self.windows.get(conversation_id) if conversation_id else None,
            prevention_actions=self.actions(booking_id),
            timezone=self.timezone,
        )

    async def find_orphaned_checks(self, cutoff, limit=100):
        due = [r for r in self.records.values()
               if r["next_check_tier"] is not None and r["next_check_at"] <= cutoff]
        due.sort(key=lambda r: r["next_check_at"])
        return [MessageTrackingRecord(**r) for r in due[:limit]]

    async def create(self, message_id, booking_id, message_type, sent_at, conversation_id=None):
        if message_id in self.records:
            raise ValueError(f"duplicate message_id {message_id}")
        self.add_record(message_id, booking_id, message_type=message_type, sent_at=sent_at,
                        conversation_id=conversation_id)
        return self.record(message_id)

    def _cas(self, message_id, predicate, **values):
        rec = self.records.get(message_id)
        if rec is None or not predicate(rec):
            return None
        rec.update(values)
        return MessageTrackingRecord(**rec)

    async def transition_status(self, message_id, expected, **values):
        return self._cas(message_id, lambda r: r["status"] == expected, **values)

    async def write_read_check_intent(self, message_id, due_at):
        return self._cas(message_id, lambda r: not r["follow_up_scheduled"],
                         follow_up_scheduled=True, next_check_tier=Tier.REMINDER, next_check_at=due_at)

    async def write_escalation_intent(self, message_id, due_at):
        return self._cas(message_id, lambda r: not r["escalation_triggered"] and r["next_check_tier"] is None,
                         next_check_tier=Tier.ESCALATION, next_check_at=due_at)

    async def claim_check(self, message_id, tier):
        return self._cas(message_id, lambda r: r["next_check_tier"] == tier,
                         next_check_tier=None, next_check_at=None)

    async def reschedule_check(self, message_id, tier, due_at):
        return self._cas(message_id, lambda r: r["next_check_tier"] == tier, next_check_at=due_at)

    async def mark_escalation_triggered(self, message_id):
        return self._cas(message_id, lambda r: not r["escalation_triggered"], escalation_triggered=True) is not None

    async def record_risk(self, message_id, booking_id, score):
        self.records[message_id]["risk_score"] = score
        self.bookings[booking_id]["no_show_risk_score"] = score

    async def mark_booking_read(self, booking_id, read_at, confirmation):
        self.bookings[booking_id]["last_engagement_at"] = read_at
        if confirmation:
            self.bookings[booking_id]["confirmation_read"] = True

    async def append_action(self, booking_id, entry, *, message_id, tier, increment_follow_up=False,
                            trigger_escalation=False, track_sent=None):
        if any(e.matches(entry.action, message_id, tier) for e in self.actions(booking_id)):
            return False
        rec = self.records[message_id]
        if trigger_escalation:
            if rec["escalation_triggered"]:
                return False
            rec["escalation_triggered"] = True
        if increment_follow_up:
            rec["follow_up_sent_count"] += 1
        if track_sent is not None:
            sent_id, sent_type, sent_at = track_sent
            self.add_record(sent_id, booking_id, message_type=sent_type, sent_at=sent_at)
        self.bookings[booking_id]["prevention_actions"].append(entry.model_dump(mode="json"))
        return True


class FakeGateway:
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.failures = 0

    def send(self, to, body):
        if self.failures:
            self.failures -= 1
            raise SendFailure(f"gateway down for {to}")
        message_id = f"out-{len(self.sent) + 1}"
        self.sent.append((message_id, to, body))
        return message_id


class FakeNotifier:
    def __init__(self):
        self.managed: list[tuple[str, int, str]] = []
        self.alerts: list[tuple[str, Optional[str]]] = []

    def notify_manager(self, context, assessment, reason="high_no_show_risk"):
        self.managed.append((context.booking_id, assessment.score, reason))
        return True

    def alert_operator(self, kind, detail, *, message_id=None, booking_id=None):
        self.alerts.append((kind, message_id))
        return True


class FakeBackend:
    def __init__(self):
        self.scheduled: list[tuple[datetime, str, Tier]] = []
        self.transient_failures = 0
        self.attempts = 0

    def schedule_at(self, when, message_id, tier):
        self.attempts += 1
        if self.transient_failures:
            self.transient_failures -= 1
            raise TransientScheduleError("broker unreachable", message_id=message_id)
        self.scheduled.append((when, message_id, tier))


class FakeTasks:
    def __init__(self):
        self.evaluations: list[str] = []
        self.derisks: list[str] = []

    def enqueue_evaluation(self, message_id):
        self.evaluations.append(message_id)

    def enqueue_derisk(self, message_id):
        self.derisks.append(message_id)


@pytest.fixture
def pipeline():
    clock = Clock()
    store = FakeStore()
    gateway = FakeGateway()
    notifier = FakeNotifier()
    backend = FakeBackend()
    tasks = FakeTasks()
    dispatcher = ActionDispatcher(store, gateway, notifier, business_name="Salon Test")
    scheduler = EscalationScheduler(
        store, backend, dispatcher, CostGate(100), notifier,
        escalation_delay=timedelta(hours=4), max_attempts=3, retry_wait=wait_none(), clock=clock,
    )
    prevention = NoShowPrevention(store, gateway, scheduler, read_check_delay=timedelta(hours=2),
                                  business_name="Salon Test")
    return SimpleNamespace(
        clock=clock, store=store, gateway=gateway, notifier=notifier, backend=backend, tasks=tasks,
        dispatcher=dispatcher, scheduler=scheduler, prevention=prevention,
        ingestor=StatusIngestor(store, tasks),
    )
