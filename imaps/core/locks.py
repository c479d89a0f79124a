# imaps/core/locks.py
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager
from typing import Dict, Tuple


class KeyedLock:
    """
    进程内按 key 互斥：同 key 串行，不同 key 完全并行。

    用完即回收（引用计数归零删除），字典不会随 key 数量无限增长。
    跨进程互斥由数据库侧（PG advisory lock）负责，这里只管同进程内的并发任务。
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock, refs = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, refs + 1)
        try:
            async with lock:
                yield
        finally:
            lock, refs = self._locks[key]
            if refs <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, refs - 1)

    def is_locked(self, key: Hashable) -> bool:
        entry = self._locks.get(key)
        return bool(entry and entry[0].locked())

    def __len__(self) -> int:
        return len(self._locks)
