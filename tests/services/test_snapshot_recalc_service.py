from __future__ import annotations

from collections import Counter
from datetime import date, timedelta
from decimal import Decimal

import pytest

from imaps.api.errors import ValidationFailed
from imaps.models.enums import CalculationMethod
from imaps.services.balance_calculator import Movements
from imaps.services.ledger_reader import ItemMeta
from imaps.services.snapshot_recalc_service import (
    RecalcRequest,
    SnapshotItem,
    SnapshotRecalcService,
)
from imaps.services.snapshot_store import INSERT, UPDATE
from tests.factories import COMPANY, ITEM_CODE, ITEM_TYPE, KEY, snapshot, snapshots

pytestmark = pytest.mark.asyncio

DAY = date(2024, 3, 1)


class FakeLedger:
    """内存台账：{date: Movements}，并记录每天被读了几次。"""

    def __init__(self) -> None:
        self.moves: dict[date, Movements] = {}
        self.seeds: dict[date, Decimal] = {}
        self.reads: Counter = Counter()

    def put(self, day: date, **values) -> None:
        self.moves[day] = Movements.of(**values)

    async def sum_movements(self, session, *, company_code, item_type, item_code, day):
        self.reads[day] += 1
        return self.moves.get(day, Movements())

    async def beginning_balance_on(self, session, *, company_code, item_type, item_code, day):
        return self.seeds.get(day)

    async def movement_dates(self, session, *, company_code, item_type, item_code, from_date):
        return sorted(d for d in set(self.moves) | set(self.seeds) if d >= from_date)

    async def resolve_item_meta(self, session, *, company_code, item_type, item_code):
        return ItemMeta("Resin PP", "KG")


def _req(day: date, **kw) -> RecalcRequest:
    return RecalcRequest(COMPANY, ITEM_TYPE, ITEM_CODE, day, **kw)


def _assert_chain(rows) -> None:
    """相邻两条快照：后一条期初 == 前一条期末；每条自身算术成立。"""
    for prev, cur in zip(rows, rows[1:]):
        assert cur.opening_balance == prev.closing_balance, (prev, cur)
    for r in rows:
        assert r.closing_balance == (
            r.opening_balance + r.inbound_qty - r.outbound_qty + r.adjustment_qty
        ), r


async def _upsert(svc: SnapshotRecalcService, maker, day: date, **kw):
    async with maker() as session:
        async with session.begin():
            return await svc.upsert_snapshot(
                session,
                company_code=COMPANY,
                item_type=ITEM_TYPE,
                item_code=ITEM_CODE,
                snapshot_date=day,
                **kw,
            )


async def test_first_snapshot_opens_at_zero(async_session_maker):
    ledger = FakeLedger()
    ledger.put(DAY, incoming=100)
    svc = SnapshotRecalcService(ledger=ledger)

    result = await _upsert(svc, async_session_maker, DAY, item_name="Resin PP", uom="KG")

    assert result.operation == INSERT
    row = await snapshot(async_session_maker, DAY)
    assert row.opening_balance == Decimal("0")
    assert row.incoming_qty == Decimal("100")
    assert row.closing_balance == Decimal("100")
    assert row.calculation_method == CalculationMethod.TRANSACTION.value
    assert (row.item_name, row.uom) == ("Resin PP", "KG")


async def test_upsert_is_idempotent(async_session_maker):
    ledger = FakeLedger()
    ledger.put(DAY, incoming="12.345", outgoing="2.005")
    svc = SnapshotRecalcService(ledger=ledger)

    first = await _upsert(svc, async_session_maker, DAY)
    before = await snapshots(async_session_maker)
    second = await _upsert(svc, async_session_maker, DAY)
    after = await snapshots(async_session_maker)

    assert (first.operation, second.operation) == (INSERT, UPDATE)
    assert first.figures == second.figures
    assert len(before) == len(after) == 1
    assert after[0].closing_balance == Decimal("10.340")


async def test_empty_name_does_not_overwrite_existing(async_session_maker):
    ledger = FakeLedger()
    ledger.put(DAY, incoming=1)
    svc = SnapshotRecalcService(ledger=ledger)

    await _upsert(svc, async_session_maker, DAY, item_name="Resin PP", uom="KG")
    await _upsert(svc, async_session_maker, DAY, item_name="", uom="")
    row = await snapshot(async_session_maker, DAY)
    assert (row.item_name, row.uom) == ("Resin PP", "KG")

    await _upsert(svc, async_session_maker, DAY, item_name="Resin PP-2")
    row = await snapshot(async_session_maker, DAY)
    assert (row.item_name, row.uom) == ("Resin PP-2", "KG")


async def test_cascade_skips_gaps_and_rereads_ledger(async_session_maker):
    """
    快照只在 D1 / D5 / D9 有行；改 D1 后级联两行，空档日不补行，
    每个级联日都重新读台账（D9 台账在级联前被改过，结果必须反映出来）。
    """
    d1, d5, d9 = DAY, DAY + timedelta(days=4), DAY + timedelta(days=8)
    ledger = FakeLedger()
    ledger.put(d1, incoming=100)
    ledger.put(d5, outgoing=30)
    ledger.put(d9, adjustment=5)
    svc = SnapshotRecalcService(ledger=ledger)

    for d in (d1, d5, d9):
        await svc.recalculate_item(async_session_maker, _req(d))
    assert [r.closing_balance for r in await snapshots(async_session_maker)] == [
        Decimal("100"),
        Decimal("70"),
        Decimal("75"),
    ]

    ledger.put(d1, incoming=60)
    ledger.put(d9, adjustment=-5)
    ledger.reads.clear()

    outcome = await svc.recalculate_item(async_session_maker, _req(d1))

    rows = await snapshots(async_session_maker)
    assert [r.snapshot_date for r in rows] == [d1, d5, d9]
    assert [r.closing_balance for r in rows] == [Decimal("60"), Decimal("30"), Decimal("25")]
    _assert_chain(rows)
    assert outcome.cascaded == 2
    assert [r.calculation_method for r in rows] == [
        CalculationMethod.TRANSACTION.value,
        CalculationMethod.CASCADE.value,
        CalculationMethod.CASCADE.value,
    ]
    assert ledger.reads == Counter({d1: 1, d5: 1, d9: 1})


async def test_cascade_runs_to_the_end_even_when_closing_is_unchanged(async_session_maker):
    days = [DAY + timedelta(days=i) for i in range(5)]
    ledger = FakeLedger()
    for d in days:
        ledger.put(d, incoming=1)
    svc = SnapshotRecalcService(ledger=ledger)
    for d in days:
        await svc.recalculate_item(async_session_maker, _req(d))

    ledger.reads.clear()
    outcome = await svc.recalculate_item(async_session_maker, _req(days[0]))

    assert outcome.cascaded == 4
    assert set(ledger.reads) == set(days)


async def test_cascade_from_date_without_rows_returns_zero(async_session_maker):
    svc = SnapshotRecalcService(ledger=FakeLedger())
    async with async_session_maker() as session:
        async with session.begin():
            n = await svc.cascade_from_date(
                session,
                company_code=COMPANY,
                item_type=ITEM_TYPE,
                item_code=ITEM_CODE,
                from_date=DAY,
            )
    assert n == 0


async def test_recalc_writes_later_movement_days_without_rows(async_session_maker):
    """D3 有台账但从没单独重算过：从 D1 重算时 D3 行一并写出，D2 空档仍不补行。"""
    d1, d2, d3 = DAY, DAY + timedelta(days=1), DAY + timedelta(days=2)
    ledger = FakeLedger()
    ledger.put(d1, incoming=5)
    ledger.put(d3, incoming=100)
    svc = SnapshotRecalcService(ledger=ledger)

    outcome = await svc.recalculate_item(async_session_maker, _req(d1))

    rows = await snapshots(async_session_maker)
    assert [(r.snapshot_date, r.opening_balance, r.closing_balance) for r in rows] == [
        (d1, Decimal("0"), Decimal("5")),
        (d3, Decimal("5"), Decimal("105")),
    ]
    assert outcome.cascaded == 1
    assert rows[1].calculation_method == CalculationMethod.CASCADE.value
    assert (rows[1].item_name, rows[1].uom) == ("Resin PP", "KG")
    assert d2 not in ledger.reads


async def test_cascade_from_date_fills_movement_days_only_when_asked(async_session_maker):
    ledger = FakeLedger()
    ledger.put(DAY, incoming=7)
    svc = SnapshotRecalcService(ledger=ledger)

    async with async_session_maker() as session:
        async with session.begin():
            kw = dict(company_code=COMPANY, item_type=ITEM_TYPE, item_code=ITEM_CODE, from_date=DAY)
            assert await svc.cascade_from_date(session, **kw) == 0
            assert await svc.cascade_from_date(session, fill_movement_days=True, **kw) == 1

    assert (await snapshot(async_session_maker, DAY)).closing_balance == Decimal("7")


async def test_backdated_insert_between_existing_rows(async_session_maker):
    """在 D1 与 D9 之间补一天 D5：D5 期初取 D1，D9 期初改取 D5。"""
    d1, d5, d9 = DAY, DAY + timedelta(days=4), DAY + timedelta(days=8)
    ledger = FakeLedger()
    ledger.put(d1, incoming=50)
    ledger.put(d9, outgoing=10)
    svc = SnapshotRecalcService(ledger=ledger)
    await svc.recalculate_item(async_session_maker, _req(d1))
    await svc.recalculate_item(async_session_maker, _req(d9))

    ledger.put(d5, material_usage=15)
    await svc.recalculate_item(async_session_maker, _req(d5))

    rows = await snapshots(async_session_maker)
    assert [(r.snapshot_date, r.opening_balance, r.closing_balance) for r in rows] == [
        (d1, Decimal("0"), Decimal("50")),
        (d5, Decimal("50"), Decimal("35")),
        (d9, Decimal("35"), Decimal("25")),
    ]


async def test_beginning_balance_seeds_the_chain(async_session_maker):
    d1, d2 = DAY, DAY + timedelta(days=1)
    ledger = FakeLedger()
    ledger.seeds[d1] = Decimal("40")
    ledger.put(d2, outgoing=15)
    svc = SnapshotRecalcService(ledger=ledger)

    await svc.recalculate_item(async_session_maker, _req(d1))
    await svc.recalculate_item(async_session_maker, _req(d2))

    rows = await snapshots(async_session_maker)
    assert [(r.opening_balance, r.closing_balance) for r in rows] == [
        (Decimal("40"), Decimal("40")),
        (Decimal("40"), Decimal("25")),
    ]


async def test_recalculate_item_resolves_missing_meta(async_session_maker):
    ledger = FakeLedger()
    ledger.put(DAY, incoming=3)
    svc = SnapshotRecalcService(ledger=ledger)

    await svc.recalculate_item(async_session_maker, _req(DAY))

    row = await snapshot(async_session_maker, DAY)
    assert (row.item_name, row.uom) == ("Resin PP", "KG")


async def test_negative_closing_is_written(async_session_maker):
    ledger = FakeLedger()
    ledger.put(DAY, outgoing=5)
    svc = SnapshotRecalcService(ledger=ledger)

    result = await _upsert(svc, async_session_maker, DAY)

    assert result.figures.is_negative
    assert (await snapshot(async_session_maker, DAY)).closing_balance == Decimal("-5")


@pytest.mark.parametrize("item_type, item_code", [("XXX", "RM-001"), ("ROH", ""), ("ROH", "  ")])
async def test_invalid_key_is_rejected(async_session_maker, item_type, item_code):
    svc = SnapshotRecalcService(ledger=FakeLedger())
    async with async_session_maker() as session:
        with pytest.raises(ValidationFailed):
            await svc.upsert_snapshot(
                session,
                company_code=COMPANY,
                item_type=item_type,
                item_code=item_code,
                snapshot_date=DAY,
            )


async def test_rebuild_item_fills_missing_movement_days(async_session_maker):
    """重算曾经失败：D3 有台账但没有快照行，rebuild 会补上并修正其后的行。"""
    d1, d3, d5 = DAY, DAY + timedelta(days=2), DAY + timedelta(days=4)
    ledger = FakeLedger()
    ledger.put(d1, incoming=100)
    ledger.put(d5, outgoing=10)
    svc = SnapshotRecalcService(ledger=ledger)
    await svc.recalculate_item(async_session_maker, _req(d1))
    await svc.recalculate_item(async_session_maker, _req(d5))

    ledger.put(d3, outgoing=40)
    async with async_session_maker() as session:
        async with session.begin():
            report = await svc.rebuild_item(
                session,
                company_code=COMPANY,
                item_type=ITEM_TYPE,
                item_code=ITEM_CODE,
                from_date=d1,
            )

    assert report.dates == [d1, d3, d5]
    rows = await snapshots(async_session_maker)
    assert [r.closing_balance for r in rows] == [Decimal("100"), Decimal("60"), Decimal("50")]
    assert {r.calculation_method for r in rows} == {CalculationMethod.MANUAL.value}
    _assert_chain(rows)


async def test_upsert_items_snapshot_isolates_failures(async_session_maker):
    ledger = FakeLedger()
    ledger.put(DAY, incoming=5)
    svc = SnapshotRecalcService(ledger=ledger)

    async with async_session_maker() as session:
        async with session.begin():
            outcomes = await svc.upsert_items_snapshot(
                session,
                company_code=COMPANY,
                items=[
                    SnapshotItem(ITEM_TYPE, ITEM_CODE, "Resin PP", "KG"),
                    SnapshotItem("NOPE", "X-1"),
                    SnapshotItem("FERT", "FG-001", "Chair", "PCS"),
                ],
                snapshot_date=DAY,
            )

    assert [o.status for o in outcomes] == ["SUCCESS", "ERROR", "SUCCESS"]
    assert outcomes[0].operation == INSERT
    assert outcomes[0].closing_balance == "5.000"
    assert "item_type" in outcomes[1].message
    assert (await snapshot(async_session_maker, DAY)).closing_balance == Decimal("5")


async def test_snapshots_in_range_and_latest(async_session_maker):
    ledger = FakeLedger()
    days = [DAY + timedelta(days=i) for i in range(4)]
    for d in days:
        ledger.put(d, incoming=1)
    svc = SnapshotRecalcService(ledger=ledger)
    for d in days:
        await svc.recalculate_item(async_session_maker, _req(d))

    async with async_session_maker() as session:
        rows = await svc.snapshots_in_range(
            session,
            company_code=COMPANY,
            item_type=ITEM_TYPE,
            item_code=ITEM_CODE,
            date_from=days[1],
            date_to=days[2],
        )
        latest = await svc.latest_snapshot(
            session, company_code=COMPANY, item_type=ITEM_TYPE, item_code=ITEM_CODE
        )
        with pytest.raises(ValidationFailed):
            await svc.snapshots_in_range(
                session,
                company_code=COMPANY,
                item_type=ITEM_TYPE,
                item_code=ITEM_CODE,
                date_from=days[2],
                date_to=days[1],
            )

    assert [r.snapshot_date for r in rows] == days[1:3]
    assert latest.snapshot_date == days[-1]
    assert latest.closing_balance == Decimal("4")
    assert KEY.item_code == latest.item_code
