# imaps/services/recalc_queue_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaps.core.config import get_settings
from imaps.metrics import QUEUE_ROWS
from imaps.models import SnapshotRecalcQueue
from imaps.models.enums import CalculationMethod, RecalcStatus
from imaps.services.snapshot_recalc_service import RecalcRequest, SnapshotRecalcService

log = logging.getLogger("imaps.recalc_queue")

# error_message 列不截断会把整段 traceback 塞进去
_MAX_ERROR_LEN = 2000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DrainReport:
    claimed: int = 0
    done: int = 0
    retried: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class RecalcQueueService:
    """
    snapshot_recalc_queue 的读写与消费。

    - enqueue：同一物料只保留一条 PENDING；重复入队时 recalc_date 取更早者、priority 取更大者
    - claim：priority DESC, queued_at ASC 取一批 PENDING 置为 PROCESSING（PG 上 SKIP LOCKED）
    - 失败：attempts < max 时回到 PENDING 并按指数退避设置 next_attempt_at；否则 FAILED
    """

    def __init__(
        self,
        *,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        backdated_priority: Optional[int] = None,
    ) -> None:
        s = get_settings()
        self.max_attempts = max_attempts if max_attempts is not None else s.RECALC_MAX_ATTEMPTS
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else s.RECALC_BACKOFF_BASE_SECONDS
        )
        self.backdated_priority = (
            backdated_priority if backdated_priority is not None else s.RECALC_BACKDATED_PRIORITY
        )

    def priority_for(self, recalc_date: date, *, today: Optional[date] = None) -> int:
        """回溯单据（日期早于今天）优先：它后面的快照都是脏的。"""
        today = today or _utcnow().date()
        return self.backdated_priority if recalc_date < today else 0

    # ------------------------------------------------------------------
    # 入队
    # ------------------------------------------------------------------
    async def enqueue(
        self,
        session: AsyncSession,
        request: RecalcRequest,
        *,
        priority: Optional[int] = None,
        today: Optional[date] = None,
    ) -> SnapshotRecalcQueue:
        prio = priority if priority is not None else self.priority_for(request.recalc_date, today=today)

        stmt = (
            sa.select(SnapshotRecalcQueue)
            .where(
                SnapshotRecalcQueue.company_code == request.company_code,
                SnapshotRecalcQueue.item_type == request.item_type,
                SnapshotRecalcQueue.item_code == request.item_code,
                SnapshotRecalcQueue.status == RecalcStatus.PENDING.value,
            )
            .order_by(SnapshotRecalcQueue.id.asc())
            .limit(1)
            .with_for_update()
        )
        existing = (await session.execute(stmt)).scalars().first()
        if existing is not None:
            if request.recalc_date < existing.recalc_date:
                existing.recalc_date = request.recalc_date
            existing.priority = max(existing.priority, prio)
            if request.item_name and not existing.item_name:
                existing.item_name = request.item_name
            if request.uom and not existing.uom:
                existing.uom = request.uom
            await session.flush()
            log.debug("enqueue merged id=%s key=%s date=%s", existing.id, request.key, existing.recalc_date)
            return existing

        row = SnapshotRecalcQueue(
            company_code=request.company_code,
            item_type=request.item_type,
            item_code=request.item_code,
            item_name=request.item_name or "",
            uom=request.uom or "",
            recalc_date=request.recalc_date,
            status=RecalcStatus.PENDING.value,
            priority=prio,
            reason=request.reason or None,
            attempts=0,
            queued_at=_utcnow(),
        )
        session.add(row)
        await session.flush()
        QUEUE_ROWS.labels(RecalcStatus.PENDING.value).inc()
        log.info("enqueued id=%s key=%s date=%s prio=%s", row.id, request.key, row.recalc_date, prio)
        return row

    async def dead_letter(
        self,
        session: AsyncSession,
        request: RecalcRequest,
        *,
        error: str,
        attempts: int,
    ) -> SnapshotRecalcQueue:
        """后台重算用尽重试后直接写一条 FAILED 记录，供人工或 requeue 处理。"""
        now = _utcnow()
        row = SnapshotRecalcQueue(
            company_code=request.company_code,
            item_type=request.item_type,
            item_code=request.item_code,
            item_name=request.item_name or "",
            uom=request.uom or "",
            recalc_date=request.recalc_date,
            status=RecalcStatus.FAILED.value,
            priority=0,
            reason=request.reason or "background recalculation failed",
            attempts=attempts,
            queued_at=now,
            completed_at=now,
            error_message=error[:_MAX_ERROR_LEN],
        )
        session.add(row)
        await session.flush()
        QUEUE_ROWS.labels(RecalcStatus.FAILED.value).inc()
        return row

    async def requeue_failed(
        self, session: AsyncSession, *, ids: Optional[Sequence[int]] = None
    ) -> int:
        """FAILED → PENDING（attempts 清零）。"""
        stmt = (
            sa.update(SnapshotRecalcQueue)
            .where(SnapshotRecalcQueue.status == RecalcStatus.FAILED.value)
            .values(
                status=RecalcStatus.PENDING.value,
                attempts=0,
                next_attempt_at=None,
                error_message=None,
                completed_at=None,
            )
        )
        if ids:
            stmt = stmt.where(SnapshotRecalcQueue.id.in_(list(ids)))
        result = await session.execute(stmt)
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # 消费
    # ------------------------------------------------------------------
    async def claim_batch(
        self,
        session: AsyncSession,
        *,
        limit: int,
        now: Optional[datetime] = None,
    ) -> list[SnapshotRecalcQueue]:
        now = now or _utcnow()
        stmt = (
            sa.select(SnapshotRecalcQueue)
            .where(
                SnapshotRecalcQueue.status == RecalcStatus.PENDING.value,
                sa.or_(
                    SnapshotRecalcQueue.next_attempt_at.is_(None),
                    SnapshotRecalcQueue.next_attempt_at <= now,
                ),
            )
            .order_by(
                SnapshotRecalcQueue.priority.desc(),
                SnapshotRecalcQueue.queued_at.asc(),
                SnapshotRecalcQueue.id.asc(),
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        rows = list((await session.execute(stmt)).scalars().all())
        for row in rows:
            row.status = RecalcStatus.PROCESSING.value
            row.started_at = now
            row.attempts = (row.attempts or 0) + 1
        await session.flush()
        return rows

    async def mark_done(self, session: AsyncSession, row_id: int) -> None:
        await session.execute(
            sa.update(SnapshotRecalcQueue)
            .where(SnapshotRecalcQueue.id == row_id)
            .values(status=RecalcStatus.DONE.value, completed_at=_utcnow(), error_message=None)
        )
        QUEUE_ROWS.labels(RecalcStatus.DONE.value).inc()

    async def mark_failed_attempt(
        self,
        session: AsyncSession,
        row_id: int,
        *,
        attempts: int,
        error: str,
        now: Optional[datetime] = None,
    ) -> str:
        """返回新状态：PENDING（稍后重试）或 FAILED。"""
        now = now or _utcnow()
        if attempts >= self.max_attempts:
            values = {
                "status": RecalcStatus.FAILED.value,
                "completed_at": now,
                "error_message": error[:_MAX_ERROR_LEN],
            }
        else:
            delay = self.backoff_base_seconds * (2 ** (attempts - 1))
            values = {
                "status": RecalcStatus.PENDING.value,
                "next_attempt_at": now + timedelta(seconds=delay),
                "error_message": error[:_MAX_ERROR_LEN],
            }
        await session.execute(
            sa.update(SnapshotRecalcQueue).where(SnapshotRecalcQueue.id == row_id).values(**values)
        )
        QUEUE_ROWS.labels(values["status"]).inc()
        return values["status"]

    async def drain(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        recalc: SnapshotRecalcService,
        *,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> DrainReport:
        """
        取一批 PENDING 逐条重算。

        认领、重算、回写状态各自一个事务：某条失败不影响已认领的其它行。
        """
        limit = limit or get_settings().RECALC_QUEUE_BATCH_SIZE
        report = DrainReport()

        async with session_maker() as session:
            async with session.begin():
                claimed = await self.claim_batch(session, limit=limit, now=now)
                jobs = [
                    (
                        row.id,
                        row.attempts,
                        RecalcRequest(
                            company_code=row.company_code,
                            item_type=row.item_type,
                            item_code=row.item_code,
                            recalc_date=row.recalc_date,
                            item_name=row.item_name or "",
                            uom=row.uom or "",
                            reason=row.reason or "",
                        ),
                    )
                    for row in claimed
                ]
        report.claimed = len(jobs)
        if not jobs:
            return report

        for row_id, attempts, request in jobs:
            try:
                await recalc.recalculate_item(
                    session_maker, request, method=CalculationMethod.QUEUE, mode="queue"
                )
            except Exception as exc:
                msg = f"{type(exc).__name__}: {exc}"
                log.warning(
                    "queue recalc failed id=%s key=%s date=%s attempt=%s: %s",
                    row_id,
                    request.key,
                    request.recalc_date,
                    attempts,
                    msg,
                )
                async with session_maker() as session:
                    async with session.begin():
                        status = await self.mark_failed_attempt(
                            session, row_id, attempts=attempts, error=msg, now=now
                        )
                if status == RecalcStatus.FAILED.value:
                    report.failed += 1
                    log.error(
                        "queue row dead id=%s key=%s date=%s attempts=%s error=%s",
                        row_id,
                        request.key,
                        request.recalc_date,
                        attempts,
                        msg,
                    )
                else:
                    report.retried += 1
                report.errors.append(f"{row_id}: {msg}")
                continue

            async with session_maker() as session:
                async with session.begin():
                    await self.mark_done(session, row_id)
            report.done += 1

        log.info(
            "queue drain claimed=%d done=%d retried=%d failed=%d",
            report.claimed,
            report.done,
            report.retried,
            report.failed,
        )
        return report

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    async def list_rows(
        self,
        session: AsyncSession,
        *,
        status: Optional[str] = None,
        company_code: Optional[int] = None,
        limit: int = 100,
    ) -> Sequence[SnapshotRecalcQueue]:
        stmt = sa.select(SnapshotRecalcQueue)
        if status:
            stmt = stmt.where(SnapshotRecalcQueue.status == status)
        if company_code is not None:
            stmt = stmt.where(SnapshotRecalcQueue.company_code == company_code)
        stmt = stmt.order_by(
            SnapshotRecalcQueue.priority.desc(),
            SnapshotRecalcQueue.queued_at.asc(),
            SnapshotRecalcQueue.id.asc(),
        ).limit(limit)
        return (await session.execute(stmt)).scalars().all()

    async def count_by_status(self, session: AsyncSession) -> dict[str, int]:
        stmt = sa.select(SnapshotRecalcQueue.status, sa.func.count()).group_by(
            SnapshotRecalcQueue.status
        )
        counts = {s.value: 0 for s in RecalcStatus}
        for status, n in (await session.execute(stmt)).all():
            counts[status] = int(n)
        return counts
