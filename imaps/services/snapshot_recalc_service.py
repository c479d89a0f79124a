# imaps/services/snapshot_recalc_service.py
from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaps.api.errors import ValidationFailed
from imaps.core.locks import KeyedLock
from imaps.metrics import CASCADE_ROWS, NEGATIVE_BALANCES, RECALC_LATENCY, SNAPSHOT_UPSERTS
from imaps.models import StockDailySnapshot
from imaps.models.enums import CalculationMethod, ItemType
from imaps.services.balance_calculator import SnapshotFigures, compute_snapshot
from imaps.services.ledger_reader import LedgerPort, LedgerReader
from imaps.services.snapshot_store import SnapshotKey, SnapshotStore

log = logging.getLogger("imaps.recalc")

_ITEM_TYPES = {t.value for t in ItemType}


@dataclass(frozen=True)
class RecalcRequest:
    """一次“某物料从某日起重算”的请求（调度器 / 队列的工作单元）。"""

    company_code: int
    item_type: str
    item_code: str
    recalc_date: date
    item_name: str = ""
    uom: str = ""
    reason: str = ""

    @property
    def key(self) -> SnapshotKey:
        return SnapshotKey(self.company_code, self.item_type, self.item_code)


@dataclass(frozen=True)
class SnapshotResult:
    key: SnapshotKey
    snapshot_date: date
    figures: SnapshotFigures
    operation: str


@dataclass(frozen=True)
class RecalcOutcome:
    key: SnapshotKey
    from_date: date
    snapshot: SnapshotResult
    cascaded: int


@dataclass(frozen=True)
class SnapshotItem:
    item_type: str
    item_code: str
    item_name: str = ""
    uom: str = ""


@dataclass
class ItemUpsertOutcome:
    item_type: str
    item_code: str
    status: str
    operation: Optional[str] = None
    closing_balance: Optional[str] = None
    message: Optional[str] = None


@dataclass
class RebuildReport:
    key: SnapshotKey
    from_date: date
    dates: list[date] = field(default_factory=list)


def _validate_key(item_type: str, item_code: str) -> None:
    if not item_code or not str(item_code).strip():
        raise ValidationFailed("item_code 不能为空", field="item_code")
    if item_type not in _ITEM_TYPES:
        raise ValidationFailed(f"未知的 item_type: {item_type}", field="item_type")


class SnapshotRecalcService:
    """
    快照重算编排：

      upsert_snapshot     单日：前一条快照的期末 + 当日台账 → 写当日
      cascade_from_date   级联：from_date（含）起所有已存在的快照，按日期升序逐条重写，
                          期初取内存中上一条刚算出的期末，每一天都重新读台账；
                          fill_movement_days=True 时台账变动日没有行的也一并写入
      recalculate_item    upsert + 级联，在同一事务、同一 per-key 锁内完成（调度器的工作单元）

    重算（recalculate_item）之后的每个台账变动日都会有快照行；无变动的空档日不补行，前序查找天然跳过空档。
    级联无条件走到最后一行，不做“期末没变就提前结束”的优化。
    """

    def __init__(
        self,
        ledger: Optional[LedgerPort] = None,
        store: Optional[SnapshotStore] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.ledger: LedgerPort = ledger or LedgerReader()
        self.store = store or SnapshotStore()
        self.locks = locks or KeyedLock()

    # ------------------------------------------------------------------
    # 单日 upsert
    # ------------------------------------------------------------------
    async def upsert_snapshot(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        snapshot_date: date,
        item_name: str = "",
        uom: str = "",
        method: str = CalculationMethod.TRANSACTION,
    ) -> SnapshotResult:
        _validate_key(item_type, item_code)
        key = SnapshotKey(company_code, item_type, item_code)

        prior = await self.store.prior(session, key, snapshot_date)
        figures = await self._figures_for(
            session, key, snapshot_date, prior.closing_balance if prior is not None else 0
        )
        operation = await self.store.upsert(
            session,
            key,
            snapshot_date,
            figures,
            item_name=item_name,
            uom=uom,
            method=str(method),
        )
        self._observe_write(key, snapshot_date, figures, method=str(method), operation=operation)
        return SnapshotResult(key, snapshot_date, figures, operation)

    # ------------------------------------------------------------------
    # 向后级联
    # ------------------------------------------------------------------
    async def cascade_from_date(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        from_date: date,
        method: str = CalculationMethod.CASCADE,
        fill_movement_days: bool = False,
        item_name: str = "",
        uom: str = "",
    ) -> int:
        """
        返回重写的行数；from_date 之后没有快照（也没有要补的变动日）返回 0。

        fill_movement_days=True 时，from_date 起有台账变动但还没有快照行的日期一并写入：
        合并后的重算请求日期被提前、期初日后移时，较晚的变动日不会因为没有行而被跳过。
        """
        _validate_key(item_type, item_code)
        key = SnapshotKey(company_code, item_type, item_code)

        days = {r.snapshot_date for r in await self.store.rows_from(session, key, from_date, inclusive=True)}
        if fill_movement_days:
            days.update(
                await self.ledger.movement_dates(
                    session,
                    company_code=company_code,
                    item_type=item_type,
                    item_code=item_code,
                    from_date=from_date,
                )
            )
        if not days:
            return 0
        ordered = sorted(days)

        prior = await self.store.prior(session, key, ordered[0])
        running = prior.closing_balance if prior is not None else 0

        for day in ordered:
            figures = await self._figures_for(session, key, day, running)
            operation = await self.store.upsert(
                session, key, day, figures, item_name=item_name, uom=uom, method=str(method)
            )
            self._observe_write(key, day, figures, method=str(method), operation=operation)
            running = figures.closing

        CASCADE_ROWS.observe(len(ordered))
        log.debug("cascade key=%s from=%s rows=%d closing=%s", key, from_date, len(ordered), running)
        return len(ordered)

    # ------------------------------------------------------------------
    # 工作单元
    # ------------------------------------------------------------------
    async def recalculate_item(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        request: RecalcRequest,
        *,
        method: str = CalculationMethod.TRANSACTION,
        mode: str = "inline",
    ) -> RecalcOutcome:
        """
        upsert(recalc_date) + cascade(recalc_date 之后的已有行与台账变动日)，一个事务提交。

        进程内 KeyedLock 包住整个事务（提交后才放锁），PG 上再加事务级 advisory lock，
        同一物料的两次重算不会交错读写。
        """
        key = request.key
        started = time.perf_counter()
        async with self.locks.hold(key):
            async with session_maker() as session:
                async with session.begin():
                    await self.store.lock(session, key)

                    item_name, uom = request.item_name, request.uom
                    if not item_name or not uom:
                        meta = await self._resolve_meta(session, key)
                        item_name = item_name or meta[0]
                        uom = uom or meta[1]

                    result = await self.upsert_snapshot(
                        session,
                        company_code=key.company_code,
                        item_type=key.item_type,
                        item_code=key.item_code,
                        snapshot_date=request.recalc_date,
                        item_name=item_name,
                        uom=uom,
                        method=method,
                    )
                    cascaded = await self.cascade_from_date(
                        session,
                        company_code=key.company_code,
                        item_type=key.item_type,
                        item_code=key.item_code,
                        from_date=request.recalc_date + timedelta(days=1),
                        fill_movement_days=True,
                        item_name=item_name,
                        uom=uom,
                    )
        RECALC_LATENCY.labels(mode).observe(time.perf_counter() - started)
        log.info(
            "recalc done key=%s from=%s op=%s closing=%s cascaded=%d",
            key,
            request.recalc_date,
            result.operation,
            result.figures.closing,
            cascaded,
        )
        return RecalcOutcome(key, request.recalc_date, result, cascaded)

    async def rebuild_item(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        from_date: date,
        method: str = CalculationMethod.MANUAL,
    ) -> RebuildReport:
        """
        修复用：from_date 起“有台账变动的日期 ∪ 已有快照的日期”逐日 upsert。

        整段按 MANUAL 重写，用于重算曾经失败、行缺失或被改坏之后的修复。
        调用方负责事务与加锁。
        """
        key = SnapshotKey(company_code, item_type, item_code)
        days = set(
            await self.ledger.movement_dates(
                session,
                company_code=company_code,
                item_type=item_type,
                item_code=item_code,
                from_date=from_date,
            )
        )
        days.update(r.snapshot_date for r in await self.store.rows_from(session, key, from_date))

        meta = await self._resolve_meta(session, key)
        report = RebuildReport(key, from_date)
        for day in sorted(days):
            await self.upsert_snapshot(
                session,
                company_code=company_code,
                item_type=item_type,
                item_code=item_code,
                snapshot_date=day,
                item_name=meta[0],
                uom=meta[1],
                method=method,
            )
            report.dates.append(day)
        log.info("rebuild key=%s from=%s days=%d", key, from_date, len(report.dates))
        return report

    # ------------------------------------------------------------------
    # 批量（一张单据的全部物料）
    # ------------------------------------------------------------------
    async def upsert_items_snapshot(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        items: Sequence[SnapshotItem],
        snapshot_date: date,
        method: str = CalculationMethod.TRANSACTION,
    ) -> list[ItemUpsertOutcome]:
        """
        逐个物料 upsert，单个失败不影响其余；返回每个物料的 SUCCESS / ERROR。

        PG 上每个物料包一层 SAVEPOINT，失败只回滚自己。
        """
        outcomes: list[ItemUpsertOutcome] = []
        postgres = session.get_bind().dialect.name == "postgresql"
        for item in items:
            try:
                scope = session.begin_nested() if postgres else contextlib.nullcontext()
                async with scope:
                    result = await self.upsert_snapshot(
                        session,
                        company_code=company_code,
                        item_type=item.item_type,
                        item_code=item.item_code,
                        snapshot_date=snapshot_date,
                        item_name=item.item_name,
                        uom=item.uom,
                        method=method,
                    )
            except Exception as exc:
                log.warning(
                    "batch upsert failed company=%s item=%s/%s date=%s: %s",
                    company_code,
                    item.item_type,
                    item.item_code,
                    snapshot_date,
                    exc,
                )
                outcomes.append(
                    ItemUpsertOutcome(item.item_type, item.item_code, "ERROR", message=str(exc))
                )
                continue
            outcomes.append(
                ItemUpsertOutcome(
                    item.item_type,
                    item.item_code,
                    "SUCCESS",
                    operation=result.operation,
                    closing_balance=str(result.figures.closing),
                )
            )
        return outcomes

    # ------------------------------------------------------------------
    # 读
    # ------------------------------------------------------------------
    async def latest_snapshot(
        self, session: AsyncSession, *, company_code: int, item_type: str, item_code: str
    ) -> Optional[StockDailySnapshot]:
        return await self.store.latest(session, SnapshotKey(company_code, item_type, item_code))

    async def snapshots_in_range(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> Sequence[StockDailySnapshot]:
        if date_from and date_to and date_from > date_to:
            raise ValidationFailed("date_from 不能晚于 date_to", field="date_from")
        return await self.store.in_range(
            session,
            SnapshotKey(company_code, item_type, item_code),
            date_from=date_from,
            date_to=date_to,
        )

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    async def _figures_for(
        self, session: AsyncSession, key: SnapshotKey, day: date, prior_closing
    ) -> SnapshotFigures:
        movements = await self.ledger.sum_movements(
            session,
            company_code=key.company_code,
            item_type=key.item_type,
            item_code=key.item_code,
            day=day,
        )
        seed = await self.ledger.beginning_balance_on(
            session,
            company_code=key.company_code,
            item_type=key.item_type,
            item_code=key.item_code,
            day=day,
        )
        return compute_snapshot(prior_closing, movements, seed=seed)

    async def _resolve_meta(self, session: AsyncSession, key: SnapshotKey) -> tuple[str, str]:
        meta = await self.ledger.resolve_item_meta(
            session,
            company_code=key.company_code,
            item_type=key.item_type,
            item_code=key.item_code,
        )
        return meta.item_name, meta.uom

    def _observe_write(
        self, key: SnapshotKey, day: date, figures: SnapshotFigures, *, method: str, operation: str
    ) -> None:
        SNAPSHOT_UPSERTS.labels(method, operation).inc()
        if figures.is_negative:
            NEGATIVE_BALANCES.labels(key.item_type).inc()
            log.warning(
                "negative closing balance key=%s date=%s closing=%s", key, day, figures.closing
            )
