# imaps/services/recalc_dispatcher.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaps.core.config import get_settings
from imaps.metrics import RECALC_INFLIGHT, RECALC_RESULTS
from imaps.services.recalc_queue_service import RecalcQueueService
from imaps.services.snapshot_recalc_service import RecalcRequest, SnapshotRecalcService

log = logging.getLogger("imaps.recalc.dispatch")

MODES = ("inline", "background", "queue")


class RecalcDispatcher:
    """
    单据提交之后触发快照重算的唯一入口。

    - inline      直接 await（测试 / CLI / 批量导入）
    - background  asyncio 任务 + 信号量限流；失败指数退避重试，用尽后写 FAILED 队列行（死信）
    - queue       只写 PENDING 队列行，由 beat / 调度器消费

    任何模式下重算失败都不会反向影响已提交的单据；dispatch 本身不抛重算异常。
    后台任务都登记在 _tasks 中，关停时 wait_idle() 等它们收尾。
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        recalc: Optional[SnapshotRecalcService] = None,
        queue: Optional[RecalcQueueService] = None,
        mode: Optional[str] = None,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        s = get_settings()
        self.session_maker = session_maker
        self.recalc = recalc or SnapshotRecalcService()
        self.queue = queue or RecalcQueueService()
        self.mode = (mode or s.RECALC_MODE).lower()
        if self.mode not in MODES:
            raise ValueError(f"unknown RECALC_MODE: {self.mode}")
        self.max_attempts = max_attempts if max_attempts is not None else s.RECALC_MAX_ATTEMPTS
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else s.RECALC_BACKOFF_BASE_SECONDS
        )
        self._semaphore = asyncio.Semaphore(max_concurrency or s.RECALC_MAX_CONCURRENCY)
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def dispatch(self, requests: Iterable[RecalcRequest]) -> None:
        requests = _dedupe(requests)
        if not requests:
            return

        if self.mode == "inline":
            for req in requests:
                await self.run_with_retry(req)
        elif self.mode == "background":
            for req in requests:
                self._spawn(req)
        else:
            await self._enqueue(requests)

    async def run_with_retry(self, request: RecalcRequest) -> bool:
        """重试直到成功或用尽；返回是否成功。最终失败写死信并记 error 日志。"""
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.recalc.recalculate_item(self.session_maker, request, mode=self.mode)
                RECALC_RESULTS.labels(self.mode, "ok").inc()
                return True
            except Exception as exc:
                last_error = exc
                log.warning(
                    "recalc attempt %d/%d failed key=%s from=%s: %s",
                    attempt,
                    self.max_attempts,
                    request.key,
                    request.recalc_date,
                    exc,
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_base_seconds * (2 ** (attempt - 1)))

        RECALC_RESULTS.labels(self.mode, "failed").inc()
        log.error(
            "recalc gave up key=%s from=%s attempts=%d reason=%s error=%r",
            request.key,
            request.recalc_date,
            self.max_attempts,
            request.reason,
            last_error,
        )
        await self._dead_letter(request, last_error)
        return False

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _spawn(self, request: RecalcRequest) -> None:
        task = asyncio.create_task(self._guarded(request), name=f"recalc:{request.key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, request: RecalcRequest) -> None:
        async with self._semaphore:
            RECALC_INFLIGHT.inc()
            try:
                await self.run_with_retry(request)
            finally:
                RECALC_INFLIGHT.dec()

    async def _enqueue(self, requests: list[RecalcRequest]) -> None:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    for req in requests:
                        await self.queue.enqueue(session, req)
        except Exception:
            # 入队失败同样不影响已提交的单据；一致性校验会兜底发现
            log.exception(
                "enqueue failed keys=%s",
                ", ".join(f"{r.key}@{r.recalc_date}" for r in requests),
            )

    async def _dead_letter(self, request: RecalcRequest, error: Optional[BaseException]) -> None:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    await self.queue.dead_letter(
                        session,
                        request,
                        error=f"{type(error).__name__}: {error}" if error else "unknown",
                        attempts=self.max_attempts,
                    )
        except Exception:
            log.exception("dead-letter write failed key=%s from=%s", request.key, request.recalc_date)


def _dedupe(requests: Iterable[RecalcRequest]) -> list[RecalcRequest]:
    """同一物料只保留最早日期（从最早一天级联即覆盖后面的日期），保持首次出现的顺序。"""
    earliest: dict = {}
    for req in requests:
        cur = earliest.get(req.key)
        if cur is None or req.recalc_date < cur.recalc_date:
            earliest[req.key] = req
    return list(earliest.values())
