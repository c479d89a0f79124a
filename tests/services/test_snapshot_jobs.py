from __future__ import annotations

from datetime import date

import pytest

from imaps.jobs.snapshot import build_parser, run_rebuild, run_recalc, run_verify
from imaps.models import StockDailySnapshot
from imaps.models.enums import CalculationMethod
from imaps.services.snapshot_store import SnapshotStore
from tests.factories import (
    COMPANY,
    D1,
    D2,
    D3,
    ITEM_CODE,
    ITEM_TYPE,
    KEY,
    add_incoming,
    add_outgoing,
    set_column,
    snapshot,
    snapshots,
)


def _args(db_url: str, *argv: str):
    return build_parser().parse_args(["--database-url", db_url, *argv])


def _key_args(cmd: str, day: date) -> list[str]:
    return [
        cmd,
        "--company",
        str(COMPANY),
        "--item-type",
        ITEM_TYPE,
        "--item-code",
        ITEM_CODE,
        "--from",
        day.isoformat(),
    ]


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_parser_parses_key_and_date():
    args = build_parser().parse_args(_key_args("recalc", D2))
    assert (args.cmd, args.company, args.item_type, args.item_code) == (
        "recalc",
        COMPANY,
        ITEM_TYPE,
        ITEM_CODE,
    )
    assert args.from_date == D2
    assert args.func is run_recalc


def test_parser_rejects_bad_date():
    with pytest.raises(SystemExit):
        build_parser().parse_args(
            ["rebuild", "--company", "1", "--item-type", "ROH", "--item-code", "X", "--from", "01/02/2024"]
        )


@pytest.fixture
def db_url(async_engine) -> str:
    return async_engine.url.render_as_string(hide_password=False)


@pytest.mark.asyncio
async def test_recalc_then_rebuild(db_url, async_session_maker):
    await add_incoming(async_session_maker, qty="10", day=D1)
    await add_outgoing(async_session_maker, qty="4", day=D3)

    out = await run_recalc(_args(db_url, *_key_args("recalc", D1)))
    assert (out["operation"], out["closing_balance"], out["cascaded"]) == ("INSERT", "10.000", 1)
    # 01-03 没单独重算过，但有台账变动，recalc 一并写出
    d3 = await snapshot(async_session_maker, D3)
    assert d3.closing_balance == 6

    await set_column(async_session_maker, StockDailySnapshot, d3.id, closing_balance=99)
    out = await run_rebuild(_args(db_url, *_key_args("rebuild", D1)))
    assert out["dates"] == [D1.isoformat(), D3.isoformat()]
    rows = await snapshots(async_session_maker)
    assert [r.closing_balance for r in rows] == [10, 6]
    assert {r.calculation_method for r in rows} == {CalculationMethod.MANUAL.value}


@pytest.mark.asyncio
async def test_rebuild_takes_the_item_lock(db_url, async_session_maker, monkeypatch):
    taken = []

    async def _lock(self, session, key):
        taken.append(key)

    monkeypatch.setattr(SnapshotStore, "lock", _lock)
    await add_incoming(async_session_maker, qty="10", day=D1)

    await run_rebuild(_args(db_url, *_key_args("rebuild", D1)))

    assert taken == [KEY]
    assert (await snapshot(async_session_maker, D1)).closing_balance == 10


@pytest.mark.asyncio
async def test_verify_reports_and_fixes(db_url, async_session_maker):
    await add_incoming(async_session_maker, qty="10", day=D1)
    await run_rebuild(_args(db_url, *_key_args("rebuild", D1)))
    row = await snapshot(async_session_maker, D1)
    await set_column(async_session_maker, StockDailySnapshot, row.id, closing_balance=3)

    out = await run_verify(_args(db_url, "verify"))
    assert [b["kind"] for b in out["breaks"]] == ["ARITHMETIC", "STALE"]
    assert out["repaired_keys"] == []

    out = await run_verify(_args(db_url, "verify", "--company", str(COMPANY), "--fix"))
    assert out["repaired_keys"] == [f"{COMPANY}/{ITEM_TYPE}/{ITEM_CODE}"]
    assert (await snapshot(async_session_maker, D1)).closing_balance == 10
