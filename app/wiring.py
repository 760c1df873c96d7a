"""Builds the pipeline objects from settings.

Each caller (the FastAPI lifespan, every Celery task run) constructs its own
``Pipeline`` around its own session factory; collaborators can be swapped
for fakes by passing them in.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from config import settings
from app.services.cost_gate import CostGate
from app.services.dispatcher import ActionDispatcher
from app.services.ingestion import StatusIngestor, TaskQueue
from app.services.prevention import NoShowPrevention
from app.services.scheduler import EscalationScheduler, SchedulerBackend
from app.utils.notify import ManagerNotifier
from app.utils.sms import TelnyxGateway
from db.store import MessageStatusStore


@dataclass
class Pipeline:
    store: MessageStatusStore
    ingestor: StatusIngestor
    scheduler: EscalationScheduler
    dispatcher: ActionDispatcher
    prevention: NoShowPrevention


def build_pipeline(session_maker, *, tasks: TaskQueue, backend: SchedulerBackend,
                   gateway=None, notifier=None) -> Pipeline:
    store = MessageStatusStore(session_maker, timezone=settings.DEFAULT_TIMEZONE)
    gateway = gateway or TelnyxGateway(settings.TELNYX_API_KEY, settings.TELNYX_FROM_NUMBER)
    notifier = notifier or ManagerNotifier(gateway, settings.MANAGER_PHONE)
    dispatcher = ActionDispatcher(store, gateway, notifier, business_name=settings.BUSINESS_NAME)
    scheduler = EscalationScheduler(
        store, backend, dispatcher, CostGate(settings.HIGH_VALUE_THRESHOLD), notifier,
        escalation_delay=timedelta(minutes=settings.ESCALATION_DELAY_MINUTES),
        max_attempts=settings.SCHEDULE_MAX_ATTEMPTS,
    )
    prevention = NoShowPrevention(
        store, gateway, scheduler,
        read_check_delay=timedelta(minutes=settings.READ_CHECK_DELAY_MINUTES),
        business_name=settings.BUSINESS_NAME,
    )
    return Pipeline(store, StatusIngestor(store, tasks), scheduler, dispatcher, prevention)
