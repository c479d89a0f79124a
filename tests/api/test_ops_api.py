from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from tests.factories import COMPANY, D1, ITEM_CODE, ITEM_TYPE, add_incoming

pytestmark = pytest.mark.asyncio


async def test_healthz(client):
    r = await client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


async def test_metrics_exports_recalc_and_http_series(client, async_session_maker):
    await add_incoming(async_session_maker, qty="1", day=D1)
    await client.post(
        "/snapshots/recalculate",
        json={
            "company_code": COMPANY,
            "item_type": ITEM_TYPE,
            "item_code": ITEM_CODE,
            "from_date": str(D1),
        },
    )

    r = await client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    body = r.text
    assert "imaps_snapshot_upserts_total" in body
    assert "imaps_recalc_seconds" in body
    sample = REGISTRY.get_sample_value(
        "http_requests_total", {"method": "POST", "path": "/snapshots/recalculate", "code": "200"}
    )
    assert sample is not None and sample >= 1
