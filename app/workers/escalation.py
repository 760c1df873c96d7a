"""Celery tasks for the no-show prevention pipeline, plus the Celery-backed
task queue and workflow-scheduler adapters the services are given.

Tasks are *synchronous* functions so they run under Celery's default prefork
pool; each one runs its async body with ``asyncio.run`` against a fresh
engine that is disposed before the task returns.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from kombu.exceptions import OperationalError
from sqlalchemy.pool import NullPool

from app.celery_app import celery_app
from app.errors import ScheduleError, TransientScheduleError
from app.types.tracking import Tier
from app.wiring import Pipeline, build_pipeline
from config import settings
from db.db import create_engine, make_session_maker

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class CeleryTaskQueue:
    """Hands ingestion follow-ups to the evaluation queue."""

    def enqueue_evaluation(self, message_id: str) -> None:
        celery_app.send_task("app.workers.escalation.evaluate", args=[message_id])

    def enqueue_derisk(self, message_id: str) -> None:
        celery_app.send_task("app.workers.escalation.derisk", args=[message_id])


class CelerySchedulerBackend:
    """Workflow scheduler: an ETA task that calls ``fire_check``."""

    def schedule_at(self, when: datetime, message_id: str, tier: Tier) -> None:
        try:
            celery_app.send_task(
                "app.workers.escalation.fire_check",
                args=[message_id, tier.value],
                eta=when,
                retry=False,
            )
        except OperationalError as exc:
            raise TransientScheduleError(f"broker unreachable: {exc}", message_id=message_id) from exc


def _run(body: Callable[[Pipeline], Awaitable[T]]) -> T:
    async def _main() -> T:
        engine = create_engine(settings.DATABASE_URL, poolclass=NullPool)
        try:
            pipeline = build_pipeline(
                make_session_maker(engine), tasks=CeleryTaskQueue(), backend=CelerySchedulerBackend()
            )
            return await body(pipeline)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.escalation.send_confirmation", bind=True, max_retries=3)
def send_confirmation(self, booking_id: str, conversation_id: Optional[str] = None):  # noqa: D401
    """Send a booking confirmation and start tracking it."""
    try:
        record = _run(lambda p: p.prevention.send_confirmation(booking_id, conversation_id))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
    return record.message_id if record else None


@celery_app.task(name="app.workers.escalation.evaluate", bind=True, max_retries=3)
def evaluate(self, message_id: str):  # noqa: D401
    """Score a delivered confirmation and arm its read check."""
    try:
        result = _run(lambda p: p.prevention.evaluate(message_id))
    except ScheduleError as exc:
        # Alert already raised; the intent row is picked up by the sweep.
        _LOGGER.error("Read check for message_id=%s not scheduled: %s", message_id, exc)
        return "schedule_error"
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
    return result.value if result else None


@celery_app.task(name="app.workers.escalation.derisk", bind=True, max_retries=3)
def derisk(self, message_id: str):  # noqa: D401
    """Re-score a booking after its confirmation was read."""
    try:
        assessment = _run(lambda p: p.prevention.derisk(message_id))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
    return assessment.score if assessment else None


@celery_app.task(name="app.workers.escalation.fire_check", bind=True, max_retries=3)
def fire_check(self, message_id: str, tier: str):  # noqa: D401
    """Timer callback: re-read state and act on one escalation tier."""
    try:
        result = _run(lambda p: p.scheduler.on_fire(message_id, Tier(tier)))
    except Exception as exc:  # noqa: BLE001
        # A retry after the claim is a no-op; the tier fails safe to no reminder.
        raise self.retry(exc=exc, countdown=30)
    _LOGGER.info("fire_check message_id=%s tier=%s -> %s", message_id, tier, result.value)
    return result.value


@celery_app.task(name="app.workers.escalation.sweep_orphans", bind=True)
def sweep_orphans(self):  # noqa: D401
    """Re-issue read checks whose timers never fired."""
    grace = timedelta(minutes=settings.ORPHAN_GRACE_MINUTES)
    try:
        return _run(lambda p: p.scheduler.sweep_orphans(grace))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
