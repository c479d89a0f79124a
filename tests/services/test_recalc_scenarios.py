from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from imaps.models.enums import LedgerSource
from imaps.services.movement_write_service import MovementLine
from imaps.services.snapshot_store import SnapshotKey
from tests.factories import COMPANY, D1, D2, D3, ITEM_CODE, ITEM_TYPE, figures, snapshot, snapshots

pytestmark = pytest.mark.asyncio


def _line(qty, **kw) -> MovementLine:
    return MovementLine(ITEM_TYPE, ITEM_CODE, qty, item_name="Resin PP", uom="KG", **kw)


async def _incoming(writer, wms_id, day, qty):
    return await writer.record_document(
        source=LedgerSource.INCOMING,
        company_code=COMPANY,
        wms_id=wms_id,
        trx_date=day,
        lines=[_line(qty)],
    )


async def _outgoing(writer, wms_id, day, qty):
    return await writer.record_document(
        source=LedgerSource.OUTGOING,
        company_code=COMPANY,
        wms_id=wms_id,
        trx_date=day,
        lines=[_line(qty)],
    )


def _assert_chain(rows) -> None:
    for prev, cur in zip(rows, rows[1:]):
        assert cur.opening_balance == prev.closing_balance, (prev, cur)
    for r in rows:
        assert r.closing_balance == (
            r.opening_balance
            + r.incoming_qty
            + r.production_qty
            - r.outgoing_qty
            - r.material_usage_qty
            + r.adjustment_qty
        ), r


async def test_incoming_outgoing_edit_delete_adjust(writer, async_session_maker):
    """
    同一物料 2024-01-01 ~ 01-03 的完整流程：

      01-01 入 100        → 01-01 期末 100
      01-02 出 30         → 01-02 期末 70
      入库改成 60（回溯） → 01-01 期末 60；01-02 期初 60 期末 30
      删除出库            → 01-02 = {60, 出 0, 60}
      01-03 GAIN 10       → 01-03 = {期初 60, 调整 +10, 期末 70}
    """
    maker = async_session_maker

    inc = await _incoming(writer, "IN-1", D1, 100)
    row = await snapshot(maker, D1)
    assert figures(row) == (Decimal("0"), Decimal("100"), Decimal("0"), Decimal("100"))

    out = await _outgoing(writer, "OUT-1", D2, 30)
    row = await snapshot(maker, D2)
    assert figures(row) == (Decimal("100"), Decimal("0"), Decimal("30"), Decimal("70"))

    await writer.update_line_qty(source=LedgerSource.INCOMING, line_id=inc.line_ids[0], new_qty=60)
    assert (await snapshot(maker, D1)).closing_balance == Decimal("60")
    row = await snapshot(maker, D2)
    assert (row.opening_balance, row.closing_balance) == (Decimal("60"), Decimal("30"))

    await writer.delete_line(source=LedgerSource.OUTGOING, line_id=out.line_ids[0])
    row = await snapshot(maker, D2)
    assert (row.opening_balance, row.outgoing_qty, row.closing_balance) == (
        Decimal("60"),
        Decimal("0"),
        Decimal("60"),
    )

    await writer.record_document(
        source=LedgerSource.ADJUSTMENT,
        company_code=COMPANY,
        wms_id="ADJ-1",
        trx_date=D3,
        lines=[_line(10, adjustment_type="GAIN")],
    )
    row = await snapshot(maker, D3)
    assert (row.opening_balance, row.adjustment_qty, row.closing_balance) == (
        Decimal("60"),
        Decimal("10"),
        Decimal("70"),
    )

    _assert_chain(await snapshots(maker))


async def test_backdated_document_cascades_over_quiet_days(writer, async_session_maker):
    """01-01 入 100，01-10 出 10；回溯到 01-03 出 20：01-10 必须跟着变，中间空档日不补行。"""
    d10 = D1 + timedelta(days=9)
    await _incoming(writer, "IN-1", D1, 100)
    await _outgoing(writer, "OUT-10", d10, 10)
    assert (await snapshot(async_session_maker, d10)).closing_balance == Decimal("90")

    await _outgoing(writer, "OUT-3", D3, 20)

    rows = await snapshots(async_session_maker)
    assert [r.snapshot_date for r in rows] == [D1, D3, d10]
    assert [r.closing_balance for r in rows] == [Decimal("100"), Decimal("80"), Decimal("70")]
    _assert_chain(rows)


async def test_chain_holds_after_mixed_sequence(writer, async_session_maker):
    """各类单据、回溯、改数量、删除混合之后，链条与算术都成立。"""
    days = [D1 + timedelta(days=i) for i in range(8)]

    await _incoming(writer, "IN-A", days[0], "500.125")
    out = await _outgoing(writer, "OUT-A", days[2], "120.5")
    mu = await writer.record_document(
        source=LedgerSource.MATERIAL_USAGE,
        company_code=COMPANY,
        wms_id="MU-A",
        trx_date=days[4],
        lines=[_line("33.333")],
        work_order_number="WO-1",
    )
    await writer.record_document(
        source=LedgerSource.MATERIAL_USAGE,
        company_code=COMPANY,
        wms_id="MU-R",
        trx_date=days[5],
        lines=[_line("3.333")],
        reversal=True,
    )
    await writer.record_document(
        source=LedgerSource.ADJUSTMENT,
        company_code=COMPANY,
        wms_id="ADJ-A",
        trx_date=days[6],
        lines=[_line("0.001", adjustment_type="LOSS")],
    )
    # 回溯
    await _incoming(writer, "IN-B", days[1], "0.875")
    await writer.update_line_qty(
        source=LedgerSource.MATERIAL_USAGE, line_id=mu.line_ids[0], new_qty="30"
    )
    await writer.delete_document(source=LedgerSource.OUTGOING, document_id=out.document_id)

    rows = await snapshots(async_session_maker)
    _assert_chain(rows)
    # 500.125 + 0.875 - 30 + 3.333 - 0.001
    assert rows[-1].closing_balance == Decimal("474.332")


async def test_beginning_balance_then_movements(writer, async_session_maker):
    await writer.set_beginning_balance(
        company_code=COMPANY,
        item_type=ITEM_TYPE,
        item_code=ITEM_CODE,
        qty=40,
        balance_date=D1,
        item_name="Resin PP",
        uom="KG",
    )
    await _outgoing(writer, "OUT-1", D2, 15)

    rows = await snapshots(async_session_maker)
    assert [(r.opening_balance, r.closing_balance) for r in rows] == [
        (Decimal("40"), Decimal("40")),
        (Decimal("40"), Decimal("25")),
    ]

    # 期初数量变化：从期初日起整体重算
    await writer.set_beginning_balance(
        company_code=COMPANY,
        item_type=ITEM_TYPE,
        item_code=ITEM_CODE,
        qty=50,
        balance_date=D1,
    )
    rows = await snapshots(async_session_maker)
    assert [r.closing_balance for r in rows] == [Decimal("50"), Decimal("35")]


async def test_beginning_balance_moved_to_later_date(writer, async_session_maker):
    """期初从 01-01 挪到 01-03：01-01 失去期初归零，01-03 新增一行以新期初开账。"""
    for qty, day in ((100, D1), (50, D3)):
        await writer.set_beginning_balance(
            company_code=COMPANY,
            item_type=ITEM_TYPE,
            item_code=ITEM_CODE,
            qty=qty,
            balance_date=day,
            item_name="Resin PP",
            uom="KG",
        )

    rows = await snapshots(async_session_maker)
    assert [(r.snapshot_date, r.opening_balance, r.closing_balance) for r in rows] == [
        (D1, Decimal("0"), Decimal("0")),
        (D3, Decimal("50"), Decimal("50")),
    ]


async def test_production_for_finished_goods(writer, async_session_maker):
    key = SnapshotKey(COMPANY, "FERT", "FG-001")
    await writer.record_document(
        source=LedgerSource.PRODUCTION,
        company_code=COMPANY,
        wms_id="PO-1",
        trx_date=D1,
        lines=[MovementLine("FERT", "FG-001", 25, item_name="Chair", uom="PCS")],
    )
    await writer.record_document(
        source=LedgerSource.PRODUCTION,
        company_code=COMPANY,
        wms_id="PO-1R",
        trx_date=D2,
        lines=[MovementLine("FERT", "FG-001", 5)],
        reversal=True,
    )

    rows = await snapshots(async_session_maker, key)
    assert [(r.production_qty, r.closing_balance) for r in rows] == [
        (Decimal("25"), Decimal("25")),
        (Decimal("-5"), Decimal("20")),
    ]
    # 冲销单没带名称：沿用已有名称
    assert rows[1].item_name == "Chair"
