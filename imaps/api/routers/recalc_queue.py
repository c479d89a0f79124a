# imaps/api/routers/recalc_queue.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaps.api.deps import get_maker, get_queue_service, get_recalc_service, get_session
from imaps.models.enums import RecalcStatus
from imaps.schemas.recalc_queue import (
    DrainIn,
    DrainOut,
    RecalcQueueListOut,
    RecalcQueueRowOut,
    RequeueIn,
    RequeueOut,
)
from imaps.services.recalc_queue_service import RecalcQueueService
from imaps.services.snapshot_recalc_service import SnapshotRecalcService

router = APIRouter(prefix="/recalc-queue", tags=["recalc-queue"])


@router.get("", response_model=RecalcQueueListOut)
async def list_queue(
    status: Optional[RecalcStatus] = Query(None),
    company_code: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
    queue: RecalcQueueService = Depends(get_queue_service),
):
    rows = await queue.list_rows(
        session,
        status=status.value if status else None,
        company_code=company_code,
        limit=limit,
    )
    return RecalcQueueListOut(
        counts=await queue.count_by_status(session),
        rows=[RecalcQueueRowOut.model_validate(r) for r in rows],
    )


@router.post("/drain", response_model=DrainOut)
async def drain_queue(
    body: Optional[DrainIn] = None,
    maker: async_sessionmaker[AsyncSession] = Depends(get_maker),
    queue: RecalcQueueService = Depends(get_queue_service),
    svc: SnapshotRecalcService = Depends(get_recalc_service),
):
    """立即消费一批（运维 / 测试用；常规由 beat 每 5 分钟触发）。"""
    report = await queue.drain(maker, svc, limit=body.limit if body else None)
    return DrainOut(
        claimed=report.claimed,
        done=report.done,
        retried=report.retried,
        failed=report.failed,
        errors=report.errors,
    )


@router.post("/requeue-failed", response_model=RequeueOut)
async def requeue_failed(
    body: Optional[RequeueIn] = None,
    maker: async_sessionmaker[AsyncSession] = Depends(get_maker),
    queue: RecalcQueueService = Depends(get_queue_service),
):
    async with maker() as session:
        async with session.begin():
            n = await queue.requeue_failed(session, ids=body.ids if body else None)
    return RequeueOut(requeued=n)
