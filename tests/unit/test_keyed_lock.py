from __future__ import annotations

import asyncio

import pytest

from imaps.core.locks import KeyedLock
from imaps.services.snapshot_store import SnapshotKey

pytestmark = pytest.mark.asyncio


async def test_same_key_is_serialized():
    locks = KeyedLock()
    order: list[str] = []

    async def worker(name: str):
        async with locks.hold("k"):
            order.append(f"{name}:in")
            await asyncio.sleep(0.01)
            order.append(f"{name}:out")

    await asyncio.gather(worker("a"), worker("b"))

    # 不允许交错：a 进 / a 出 / b 进 / b 出
    assert order in (
        ["a:in", "a:out", "b:in", "b:out"],
        ["b:in", "b:out", "a:in", "a:out"],
    )
    assert len(locks) == 0


async def test_different_keys_run_concurrently():
    locks = KeyedLock()
    both_inside = asyncio.Event()
    inside = 0

    async def worker(key: str):
        nonlocal inside
        async with locks.hold(key):
            inside += 1
            if inside == 2:
                both_inside.set()
            await asyncio.wait_for(both_inside.wait(), timeout=1)

    await asyncio.gather(worker("x"), worker("y"))
    assert both_inside.is_set()


async def test_registry_released_after_exception():
    locks = KeyedLock()
    with pytest.raises(RuntimeError):
        async with locks.hold("boom"):
            assert locks.is_locked("boom")
            raise RuntimeError("x")
    assert not locks.is_locked("boom")
    assert len(locks) == 0


async def test_snapshot_key_lock_id_is_stable():
    a = SnapshotKey(1310, "ROH", "RM-001")
    b = SnapshotKey(1310, "ROH", "RM-001")
    c = SnapshotKey(1310, "ROH", "RM-002")

    assert a.advisory_lock_id == b.advisory_lock_id
    assert a.advisory_lock_id != c.advisory_lock_id
    assert -(2**63) <= a.advisory_lock_id < 2**63
    assert str(a) == "1310/ROH/RM-001"
