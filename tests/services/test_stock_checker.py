from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from imaps.api.errors import InsufficientStock, ValidationFailed
from imaps.services.snapshot_recalc_service import RecalcRequest
from imaps.services.stock_checker import StockCheckItem, StockChecker
from tests.factories import (
    COMPANY,
    D1,
    D2,
    D3,
    ITEM_CODE,
    ITEM_TYPE,
    add_incoming,
    add_outgoing,
)

pytestmark = pytest.mark.asyncio


async def _seed(maker, recalc, moves):
    """moves: [(kind, day, qty)]，写台账后逐日重算。"""
    for kind, day, qty in moves:
        if kind == "in":
            await add_incoming(maker, qty=qty, day=day)
        else:
            await add_outgoing(maker, qty=qty, day=day)
    for day in sorted({d for _, d, _ in moves}):
        await recalc.recalculate_item(maker, RecalcRequest(COMPANY, ITEM_TYPE, ITEM_CODE, day))


async def _check(session, qty, day, checker=None):
    return await (checker or StockChecker()).check_availability(
        session,
        company_code=COMPANY,
        item_code=ITEM_CODE,
        item_type=ITEM_TYPE,
        qty_requested=qty,
        snapshot_date=day,
    )


async def test_availability_reports_exact_shortfall(async_session_maker, recalc, session):
    await _seed(async_session_maker, recalc, [("in", D1, "100"), ("out", D2, "30")])

    ok = await _check(session, "70", D2)
    assert ok.available
    assert ok.current_stock == Decimal("70")
    assert ok.shortfall == Decimal("0")
    assert ok.as_of_date == D2

    short = await _check(session, "70.001", D2)
    assert not short.available
    assert short.shortfall == Decimal("0.001")


async def test_current_stock_uses_latest_snapshot_on_or_before(async_session_maker, recalc, session):
    await _seed(async_session_maker, recalc, [("in", D1, "100"), ("out", D3, "30")])

    # D2 没有快照：取 D1
    r = await _check(session, "1", D2)
    assert (r.current_stock, r.as_of_date) == (Decimal("100"), D1)

    # D1 之前：没有快照按 0
    r = await _check(session, "1", D1 - timedelta(days=1))
    assert (r.current_stock, r.available, r.shortfall) == (Decimal("0"), False, Decimal("1"))
    assert r.as_of_date is None


@pytest.mark.parametrize("qty", ["0", "-1"])
async def test_non_positive_request_is_rejected(session, qty):
    with pytest.raises(ValidationFailed):
        await _check(session, qty, D1)


async def test_batch_aggregates_duplicate_items(async_session_maker, recalc, session):
    await _seed(async_session_maker, recalc, [("in", D1, "50")])

    batch = await StockChecker().check_batch_availability(
        session,
        company_code=COMPANY,
        items=[
            StockCheckItem(ITEM_TYPE, ITEM_CODE, "30"),
            StockCheckItem(ITEM_TYPE, ITEM_CODE, "25"),
            StockCheckItem("FERT", "FG-404", "1"),
        ],
        snapshot_date=D1,
    )

    assert not batch.all_available
    by_code = {r.item_code: r for r in batch.results}
    assert by_code[ITEM_CODE].qty_requested == Decimal("55")
    assert by_code[ITEM_CODE].shortfall == Decimal("5")
    assert by_code["FG-404"].current_stock == Decimal("0")

    with pytest.raises(ValidationFailed):
        await StockChecker().check_batch_availability(
            session, company_code=COMPANY, items=[], snapshot_date=D1
        )


async def test_ensure_available_raises(async_session_maker, recalc, session):
    await _seed(async_session_maker, recalc, [("in", D1, "10")])
    checker = StockChecker()

    ok = await checker.ensure_available(
        session,
        company_code=COMPANY,
        item_code=ITEM_CODE,
        item_type=ITEM_TYPE,
        qty_requested="10",
        snapshot_date=D1,
    )
    assert ok.available

    with pytest.raises(InsufficientStock) as ei:
        await checker.ensure_available(
            session,
            company_code=COMPANY,
            item_code=ITEM_CODE,
            item_type=ITEM_TYPE,
            qty_requested="12.5",
            snapshot_date=D1,
        )
    assert ei.value.shortfall == Decimal("2.5")
    assert ei.value.details[0]["short_qty"] == "2.500"


async def _balance_change(session, old, new, day, *, checker=None, exclude=None):
    return await (checker or StockChecker(forward_scan=True)).check_balance_wont_go_negative(
        session,
        company_code=COMPANY,
        item_code=ITEM_CODE,
        item_type=ITEM_TYPE,
        old_qty=old,
        new_qty=new,
        snapshot_date=day,
        exclude_transaction_id=exclude,
    )


async def test_balance_change_same_day(async_session_maker, recalc, session):
    await _seed(async_session_maker, recalc, [("in", D1, "100")])

    r = await _balance_change(session, "100", "60", D1)
    assert r.available
    assert r.projected_stock == Decimal("60")

    r = await _balance_change(session, "100", "0", D1)
    assert r.available
    assert r.projected_stock == Decimal("0")


async def test_forward_scan_rejects_future_negative(async_session_maker, recalc, session):
    """
    01-01 入 100，01-02 出 70（期末 30），01-03 出 20（期末 10）。
    把 01-01 入库改成 80：当天 80 没问题，但 01-03 会变成 -10。
    """
    await _seed(
        async_session_maker,
        recalc,
        [("in", D1, "100"), ("out", D2, "70"), ("out", D3, "20")],
    )

    r = await _balance_change(session, "100", "80", D1)
    assert not r.available
    assert r.projected_stock == Decimal("80")
    assert r.shortfall == Decimal("10")
    assert r.first_negative_date == D3
    assert r.scanned_days == 3

    # 不做向后扫描时只看当天
    same_day_only = await _balance_change(
        session, "100", "80", D1, checker=StockChecker(forward_scan=False)
    )
    assert same_day_only.available
    assert same_day_only.scanned_days == 0


async def test_forward_scan_reports_first_negative_day(async_session_maker, recalc, session):
    await _seed(
        async_session_maker,
        recalc,
        [("in", D1, "100"), ("out", D2, "90"), ("out", D3, "5")],
    )

    r = await _balance_change(session, "100", "85", D1)
    assert not r.available
    assert r.first_negative_date == D2
    assert r.shortfall == Decimal("10")


async def test_exclude_transaction_id_uses_stored_qty(async_session_maker, recalc, session):
    line_id = await add_incoming(async_session_maker, qty="100", day=D1)
    await recalc.recalculate_item(
        async_session_maker, RecalcRequest(COMPANY, ITEM_TYPE, ITEM_CODE, D1)
    )

    # 调用方给错了 old_qty（10），以库里的 100 为准
    r = await _balance_change(session, "10", "0", D1, exclude=line_id)
    assert r.old_qty == Decimal("100")
    assert r.projected_stock == Decimal("0")
    assert r.available


async def test_negative_quantities_are_rejected(session):
    with pytest.raises(ValidationFailed):
        await _balance_change(session, "-1", "0", D1)
