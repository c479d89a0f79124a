# imaps/core/scheduler.py
# 单进程部署（不跑 Celery beat）时，在 API 进程内定时消费重算队列
from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from imaps.core.config import get_settings
from imaps.db.session import get_session_maker
from imaps.services.recalc_queue_service import RecalcQueueService
from imaps.services.snapshot_recalc_service import SnapshotRecalcService

log = logging.getLogger("imaps.scheduler")

_scheduler: Optional[AsyncIOScheduler] = None


async def _job_drain_queue(recalc: SnapshotRecalcService) -> None:
    await RecalcQueueService().drain(get_session_maker(), recalc)


def init_scheduler(recalc: SnapshotRecalcService) -> Optional[AsyncIOScheduler]:
    global _scheduler
    settings = get_settings()
    if not settings.ENABLE_RECALC_SCHEDULER:
        return None
    _scheduler = AsyncIOScheduler(timezone=settings.SCHEDULER_TIMEZONE)
    _scheduler.add_job(
        _job_drain_queue,
        "interval",
        minutes=5,
        args=[recalc],
        id="recalc-queue-drain",
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    log.info("recalc queue scheduler started (every 5 min)")
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
    _scheduler = None
