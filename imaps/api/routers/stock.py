# imaps/api/routers/stock.py
from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from imaps.api.deps import get_session, get_stock_checker
from imaps.schemas.stock_check import (
    BalanceChangeCheckIn,
    BalanceChangeCheckOut,
    BatchStockCheckIn,
    BatchStockCheckOut,
    StockCheckIn,
    StockCheckOut,
)
from imaps.services.stock_checker import StockCheckItem, StockChecker

router = APIRouter(prefix="/stock", tags=["stock"])


@router.post("/check-availability", response_model=StockCheckOut)
async def check_availability(
    body: StockCheckIn,
    session: AsyncSession = Depends(get_session),
    checker: StockChecker = Depends(get_stock_checker),
):
    """
    出库前检查：snapshot_date 当天或之前最近一条快照的期末 >= qty_requested。

    不足时仍返回 200（available=false + shortfall），由调用方决定是否拦截。
    """
    result = await checker.check_availability(
        session,
        company_code=body.company_code,
        item_code=body.item_code,
        item_type=body.item_type.value,
        qty_requested=body.qty_requested,
        snapshot_date=body.snapshot_date,
    )
    return StockCheckOut.model_validate(asdict(result))


@router.post("/check", response_model=BatchStockCheckOut)
async def check_batch(
    body: BatchStockCheckIn,
    session: AsyncSession = Depends(get_session),
    checker: StockChecker = Depends(get_stock_checker),
):
    batch = await checker.check_batch_availability(
        session,
        company_code=body.company_code,
        items=[
            StockCheckItem(ln.item_type.value, ln.item_code, ln.qty_requested) for ln in body.items
        ],
        snapshot_date=body.snapshot_date,
    )
    return BatchStockCheckOut(
        all_available=batch.all_available,
        results=[StockCheckOut.model_validate(asdict(r)) for r in batch.results],
    )


@router.post("/check-balance-change", response_model=BalanceChangeCheckOut)
async def check_balance_change(
    body: BalanceChangeCheckIn,
    session: AsyncSession = Depends(get_session),
    checker: StockChecker = Depends(get_stock_checker),
):
    """改 / 删入库明细前检查：结余（及之后各快照日）不会变负。"""
    result = await checker.check_balance_wont_go_negative(
        session,
        company_code=body.company_code,
        item_code=body.item_code,
        item_type=body.item_type.value,
        old_qty=body.old_qty,
        new_qty=body.new_qty,
        snapshot_date=body.snapshot_date,
        exclude_transaction_id=body.exclude_transaction_id,
        source=body.source,
    )
    return BalanceChangeCheckOut.model_validate(asdict(result))
