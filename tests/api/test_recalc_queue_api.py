from __future__ import annotations

from decimal import Decimal

import pytest

from imaps.services.recalc_queue_service import RecalcQueueService
from imaps.services.snapshot_recalc_service import RecalcRequest
from tests.factories import COMPANY, D1, D2, ITEM_CODE, ITEM_TYPE, add_incoming, snapshot

pytestmark = pytest.mark.asyncio


async def _enqueue(maker, day, item_code=ITEM_CODE):
    async with maker() as session:
        async with session.begin():
            row = await RecalcQueueService().enqueue(
                session, RecalcRequest(COMPANY, ITEM_TYPE, item_code, day, reason="api test")
            )
            return row.id


async def test_list_and_drain(client, async_session_maker):
    await add_incoming(async_session_maker, qty="12.5", day=D1)
    await _enqueue(async_session_maker, D1)
    await _enqueue(async_session_maker, D2, item_code="RM-002")

    r = await client.get("/recalc-queue")
    assert r.status_code == 200
    data = r.json()
    assert data["counts"]["PENDING"] == 2
    assert {row["item_code"] for row in data["rows"]} == {ITEM_CODE, "RM-002"}
    assert all(row["reason"] == "api test" for row in data["rows"])

    r = await client.post("/recalc-queue/drain", json={"limit": 1})
    assert r.status_code == 200, r.text
    assert r.json()["claimed"] == 1

    r = await client.post("/recalc-queue/drain")
    assert r.json()["done"] == 1

    r = await client.get("/recalc-queue", params={"status": "DONE"})
    assert len(r.json()["rows"]) == 2
    assert (await snapshot(async_session_maker, D1)).closing_balance == Decimal("12.5")


async def test_drain_limit_is_validated(client):
    r = await client.post("/recalc-queue/drain", json={"limit": 0})
    assert r.status_code == 422
    assert r.json()["details"][0]["path"] == "limit"


async def test_requeue_failed(client, async_session_maker):
    row_id = await _enqueue(async_session_maker, D1)
    async with async_session_maker() as session:
        async with session.begin():
            await RecalcQueueService().dead_letter(
                session, RecalcRequest(COMPANY, ITEM_TYPE, "RM-009", D1), error="boom", attempts=5
            )

    r = await client.get("/recalc-queue", params={"status": "FAILED"})
    failed = r.json()["rows"]
    assert [row["item_code"] for row in failed] == ["RM-009"]
    assert failed[0]["error_message"] == "boom"

    r = await client.post("/recalc-queue/requeue-failed", json={"ids": [failed[0]["id"]]})
    assert r.status_code == 200
    assert r.json() == {"requeued": 1}

    r = await client.get("/recalc-queue")
    counts = r.json()["counts"]
    assert counts["PENDING"] == 2
    assert counts["FAILED"] == 0
    assert row_id in {row["id"] for row in r.json()["rows"]}


async def test_unknown_status_filter_is_rejected(client):
    r = await client.get("/recalc-queue", params={"status": "LOST"})
    assert r.status_code == 422
