# imaps/api/routers/snapshots.py
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaps.api.deps import get_maker, get_queue_service, get_recalc_service, get_session
from imaps.api.errors import NotFoundError
from imaps.models.enums import CalculationMethod, ItemType
from imaps.schemas.snapshot import RecalculateIn, RecalculateOut, SnapshotListOut, SnapshotOut
from imaps.services.recalc_queue_service import RecalcQueueService
from imaps.services.snapshot_recalc_service import RecalcRequest, SnapshotRecalcService

router = APIRouter(prefix="/snapshots", tags=["snapshots"])


@router.get("/{company_code}/{item_type}/{item_code}", response_model=SnapshotListOut)
async def list_snapshots(
    company_code: int,
    item_type: ItemType,
    item_code: str,
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    session: AsyncSession = Depends(get_session),
    svc: SnapshotRecalcService = Depends(get_recalc_service),
):
    rows = await svc.snapshots_in_range(
        session,
        company_code=company_code,
        item_type=item_type.value,
        item_code=item_code,
        date_from=date_from,
        date_to=date_to,
    )
    return SnapshotListOut(
        company_code=company_code,
        item_type=item_type.value,
        item_code=item_code,
        rows=[SnapshotOut.model_validate(r) for r in rows],
    )


@router.get("/{company_code}/{item_type}/{item_code}/latest", response_model=SnapshotOut)
async def latest_snapshot(
    company_code: int,
    item_type: ItemType,
    item_code: str,
    session: AsyncSession = Depends(get_session),
    svc: SnapshotRecalcService = Depends(get_recalc_service),
):
    row = await svc.latest_snapshot(
        session, company_code=company_code, item_type=item_type.value, item_code=item_code
    )
    if row is None:
        raise NotFoundError(f"没有快照：{company_code}/{item_type.value}/{item_code}")
    return SnapshotOut.model_validate(row)


@router.post("/recalculate", response_model=RecalculateOut)
async def recalculate(
    body: RecalculateIn,
    maker: async_sessionmaker[AsyncSession] = Depends(get_maker),
    svc: SnapshotRecalcService = Depends(get_recalc_service),
    queue: RecalcQueueService = Depends(get_queue_service),
):
    """
    手工重算：inline 直接 upsert(from_date) + 级联并返回结果；queue 只入队。
    """
    req = RecalcRequest(
        company_code=body.company_code,
        item_type=body.item_type.value,
        item_code=body.item_code,
        recalc_date=body.from_date,
        item_name=body.item_name,
        uom=body.uom,
        reason=body.reason,
    )
    out = RecalculateOut(
        mode=body.mode,
        company_code=req.company_code,
        item_type=req.item_type,
        item_code=req.item_code,
        from_date=req.recalc_date,
    )

    if body.mode == "queue":
        async with maker() as session:
            async with session.begin():
                row = await queue.enqueue(session, req)
                out.queue_id = row.id
        return out

    outcome = await svc.recalculate_item(maker, req, method=CalculationMethod.MANUAL)
    out.operation = outcome.snapshot.operation
    out.closing_balance = outcome.snapshot.figures.closing
    out.cascaded = outcome.cascaded
    return out
