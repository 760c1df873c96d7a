"""One-shot orphan sweep for deployments without Celery beat.
Run via Railway schedule every few minutes:
    python -m app.scripts.sweep_orphaned_checks
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from app.wiring import build_pipeline
from app.workers.escalation import CelerySchedulerBackend, CeleryTaskQueue
from config import settings
from db.db import create_engine, make_session_maker

_LOGGER = logging.getLogger(__name__)


async def main() -> int:
    engine = create_engine(settings.DATABASE_URL)
    try:
        pipeline = build_pipeline(
            make_session_maker(engine), tasks=CeleryTaskQueue(), backend=CelerySchedulerBackend()
        )
        return await pipeline.scheduler.sweep_orphans(
            timedelta(minutes=settings.ORPHAN_GRACE_MINUTES)
        )
    finally:
        await engine.dispose()


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=settings.LOG_LEVEL)
    _LOGGER.info("[CRON] sweep_orphaned_checks: job started")
    try:
        count = asyncio.run(main())
        _LOGGER.info("[CRON] sweep_orphaned_checks: re-issued %d checks", count)
    except Exception:
        _LOGGER.exception("[CRON] sweep_orphaned_checks: job failed")
        raise
