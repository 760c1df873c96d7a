from datetime import datetime, timedelta, timezone

import pytest

from app.errors import ScheduleError
from app.services.dispatcher import MANAGER_INTERVENTION, READ_REMINDER, URGENT_REMINDER
from app.services.scheduler import FireResult, ScheduleResult
from app.types.tracking import MessageStatus, MessageType, StatusEvent, Tier
from tests.conftest import NOW

TWO_HOURS = timedelta(hours=2)


def _delivered(p, message_id="m1"):
    p.store.records[message_id].update(status=MessageStatus.DELIVERED, delivered_at=NOW)


@pytest.fixture
def medium(pipeline):
    """Returning customer, unread, appointment tonight, inside the session window: 50 points."""
    pipeline.store.add_booking(appointment_time=NOW + timedelta(hours=10), visit_count=2)
    pipeline.store.windows["c1"] = NOW + timedelta(hours=24)
    pipeline.store.add_record(conversation_id="c1")
    _delivered(pipeline)
    return pipeline


@pytest.fixture
def high(pipeline):
    """First-time customer, unread, appointment in 10 hours, weekday, value 50: 75 points."""
    pipeline.store.add_booking(appointment_time=NOW + timedelta(hours=10), visit_count=0)
    pipeline.store.add_record()
    _delivered(pipeline)
    return pipeline


async def _fire_due(p, tier):
    when, message_id, scheduled_tier = p.backend.scheduled[-1]
    assert scheduled_tier is tier
    p.clock.now = when
    return await p.scheduler.on_fire(message_id, tier)


@pytest.mark.asyncio
async def test_schedule_read_check_writes_intent_once(medium):
    p = medium
    assert await p.scheduler.schedule_read_check("m1", TWO_HOURS) is ScheduleResult.SCHEDULED
    assert await p.scheduler.schedule_read_check("m1", TWO_HOURS) is ScheduleResult.ALREADY_SCHEDULED

    rec = p.store.record()
    assert rec.follow_up_scheduled
    assert rec.next_check_tier is Tier.REMINDER
    assert p.backend.scheduled == [(NOW + TWO_HOURS, "m1", Tier.REMINDER)]


@pytest.mark.asyncio
async def test_read_before_fire_aborts_without_sending(high):
    p = high
    await p.prevention.evaluate("m1")
    assert p.store.record().follow_up_scheduled

    await p.ingestor.ingest(StatusEvent(message_id="m1", status="read", occurred_at=NOW + timedelta(minutes=30)))

    assert await _fire_due(p, Tier.REMINDER) is FireResult.ABORTED_READ
    assert p.gateway.sent == []
    assert p.notifier.managed == []
    assert p.store.record().follow_up_sent_count == 0


@pytest.mark.asyncio
async def test_reminder_then_escalation_then_rejected(medium):
    p = medium
    await p.scheduler.schedule_read_check("m1", TWO_HOURS)

    assert await _fire_due(p, Tier.REMINDER) is FireResult.ACTED
    rec = p.store.record()
    assert rec.follow_up_sent_count == 1
    assert not rec.escalation_triggered
    assert rec.next_check_tier is Tier.ESCALATION
    assert p.backend.scheduled[-1][0] == NOW + TWO_HOURS + timedelta(hours=4)

    assert await _fire_due(p, Tier.ESCALATION) is FireResult.ACTED
    rec = p.store.record()
    assert rec.follow_up_sent_count == 2
    assert rec.escalation_triggered
    assert [a.action for a in p.store.actions()] == [READ_REMINDER, URGENT_REMINDER]

    assert await p.scheduler.schedule_escalation("m1") is ScheduleResult.REJECTED
    assert len(p.backend.scheduled) == 2


@pytest.mark.asyncio
async def test_sent_reminders_are_tracked(medium):
    p = medium
    await p.scheduler.schedule_read_check("m1", TWO_HOURS)
    await _fire_due(p, Tier.REMINDER)

    sent_id, to, body = p.gateway.sent[0]
    assert to == "+4917712345678"
    assert "Haircut" in body and "Salon Test" in body
    assert p.store.record(sent_id).message_type == MessageType.REMINDER
    assert p.store.actions()[0].metadata["sent_message_id"] == sent_id


@pytest.mark.asyncio
async def test_high_risk_hands_over_to_manager(high):
    p = high
    # high-risk bookings never message the customer, so the cost gate is not consulted
    await p.scheduler.schedule_read_check("m1", TWO_HOURS)

    assert await _fire_due(p, Tier.REMINDER) is FireResult.ACTED

    rec = p.store.record()
    assert rec.escalation_triggered
    assert rec.risk_score == 75
    assert rec.follow_up_sent_count == 0
    assert p.gateway.sent == []
    assert p.notifier.managed == [("b1", 75, "high_no_show_risk")]
    assert [a.action for a in p.store.actions()] == [MANAGER_INTERVENTION]
    # next tier refused: pipeline already escalated
    assert len(p.backend.scheduled) == 1
    assert rec.next_check_tier is None


@pytest.mark.asyncio
async def test_duplicate_timer_is_a_noop(medium):
    p = medium
    await p.scheduler.schedule_read_check("m1", TWO_HOURS)
    assert await _fire_due(p, Tier.REMINDER) is FireResult.ACTED
    assert await p.scheduler.on_fire("m1", Tier.REMINDER) is FireResult.NOT_PENDING
    assert len(p.gateway.sent) == 1


@pytest.mark.asyncio
async def test_cost_gate_skips_tier_outside_window(pipeline):
    p = pipeline
    p.store.add_booking(appointment_time=NOW + timedelta(hours=10), visit_count=2, service_value=50)
    p.store.add_record()  # no conversation, so no open session window
    _delivered(p)
    await p.scheduler.schedule_read_check("m1", TWO_HOURS)

    assert await _fire_due(p, Tier.REMINDER) is FireResult.SKIPPED_COST
    rec = p.store.record()
    assert p.gateway.sent == []
    assert rec.follow_up_sent_count == 0
    assert rec.next_check_tier is None
    assert len(p.backend.scheduled) == 1


@pytest.mark.asyncio
async def test_vip_gets_paid_reminder_outside_window(pipeline):
    p = pipeline
    p.store.add_booking(appointment_time=NOW + timedelta(hours=10), visit_count=2, is_vip=True)
    p.store.add_record()
    _delivered(p)
    await p.scheduler.schedule_read_check("m1", TWO_HOURS)

    assert await _fire_due(p, Tier.REMINDER) is FireResult.ACTED
    assert len(p.gateway.sent) == 1


@pytest.mark.asyncio
async def test_transient_scheduler_failures_are_retried(medium):
    p = medium
    p.backend.transient_failures = 2
    assert await p.scheduler.schedule_read_check("m1", TWO_HOURS) is ScheduleResult.SCHEDULED
    assert p.backend.attempts == 3
    assert p.notifier.alerts == []


@pytest.mark.asyncio
async def test_exhausted_retries_alert_and_keep_intent(medium):
    p = medium
    p.backend.transient_failures = 99

    with pytest.raises(ScheduleError):
        await p.scheduler.schedule_read_check("m1", TWO_HOURS)

    assert p.backend.attempts == 3
    assert p.notifier.alerts == [("schedule_exhausted", "m1")]
    rec = p.store.record()
    assert rec.follow_up_scheduled and rec.next_check_tier is Tier.REMINDER


@pytest.mark.asyncio
async def test_invalid_delay_is_not_retried(medium):
    p = medium
    with pytest.raises(ScheduleError) as info:
        await p.scheduler.schedule_read_check("m1", timedelta(0))
    assert info.value.retryable is False
    assert p.backend.attempts == 0
    assert not p.store.record().follow_up_scheduled


@pytest.mark.asyncio
async def test_sweep_reissues_orphaned_intent_once(medium):
    p = medium
    p.backend.transient_failures = 99
    with pytest.raises(ScheduleError):
        await p.scheduler.schedule_read_check("m1", TWO_HOURS)
    p.backend.transient_failures = 0

    p.clock.advance(hours=3)
    assert await p.scheduler.sweep_orphans(timedelta(minutes=15)) == 1
    assert p.backend.scheduled == [(p.clock.now, "m1", Tier.REMINDER)]
    assert await p.scheduler.sweep_orphans(timedelta(minutes=15)) == 0

    assert await p.scheduler.on_fire("m1", Tier.REMINDER) is FireResult.ACTED


@pytest.mark.asyncio
async def test_evaluate_records_risk_and_schedules(high):
    p = high
    assert await p.prevention.evaluate("m1") is ScheduleResult.SCHEDULED
    assert p.store.record().risk_score == 75
    assert p.store.bookings["b1"]["no_show_risk_score"] == 75


@pytest.mark.asyncio
async def test_derisk_lowers_booking_score(high):
    p = high
    await p.prevention.evaluate("m1")
    p.store.records["m1"].update(status=MessageStatus.READ, read_at=NOW + timedelta(minutes=1))

    assessment = await p.prevention.derisk("m1")
    assert assessment.score == 40
    assert p.store.bookings["b1"]["no_show_risk_score"] == 40


@pytest.mark.asyncio
async def test_send_confirmation_starts_tracking(pipeline):
    p = pipeline
    p.store.add_booking(appointment_time=NOW + timedelta(hours=30))

    record = await p.prevention.send_confirmation("b1", "c1")

    assert record.message_type == MessageType.CONFIRMATION
    assert record.status == MessageStatus.SENT
    assert record.conversation_id == "c1"
    assert p.gateway.sent[0][0] == record.message_id


@pytest.mark.asyncio
async def test_reminder_is_scored_and_worded_in_salon_time(pipeline):
    p = pipeline
    p.store.timezone = "America/Los_Angeles"
    # Friday 18:00 local, Saturday 01:00 UTC
    p.store.add_booking(appointment_time=datetime(2026, 10, 17, 1, 0, tzinfo=timezone.utc), visit_count=2)
    p.store.windows["c1"] = NOW + timedelta(hours=24)
    p.store.add_record(conversation_id="c1")
    _delivered(p)
    await p.scheduler.schedule_read_check("m1", TWO_HOURS)

    assert await _fire_due(p, Tier.REMINDER) is FireResult.ACTED
    assert p.store.record().risk_score == 35
    assert "16/10/2026 at 18:00" in p.gateway.sent[0][2]


@pytest.mark.asyncio
async def test_skipped_escalation_tier_still_closes_pipeline(medium):
    p = medium
    await p.scheduler.schedule_read_check("m1", TWO_HOURS)
    assert await _fire_due(p, Tier.REMINDER) is FireResult.ACTED

    # session window closed between the two tiers
    p.store.windows["c1"] = None
    assert await _fire_due(p, Tier.ESCALATION) is FireResult.SKIPPED_COST

    assert p.store.record().escalation_triggered
    assert await p.scheduler.schedule_escalation("m1") is ScheduleResult.REJECTED
    assert len(p.backend.scheduled) == 2
    assert len(p.gateway.sent) == 1


@pytest.mark.asyncio
async def test_read_before_escalation_tier_closes_pipeline(medium):
    p = medium
    await p.scheduler.schedule_read_check("m1", TWO_HOURS)
    await _fire_due(p, Tier.REMINDER)
    await p.ingestor.ingest(StatusEvent(message_id="m1", status="read", occurred_at=NOW + timedelta(hours=3)))

    assert await _fire_due(p, Tier.ESCALATION) is FireResult.ABORTED_READ
    assert p.store.record().escalation_triggered
    assert await p.scheduler.schedule_escalation("m1") is ScheduleResult.REJECTED
