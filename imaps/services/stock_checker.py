# imaps/services/stock_checker.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from imaps.api.errors import InsufficientStock, ValidationFailed
from imaps.core.config import get_settings
from imaps.metrics import STOCK_CHECKS
from imaps.models.enums import LedgerSource
from imaps.services.balance_calculator import ZERO, q3
from imaps.services.ledger_reader import LedgerReader
from imaps.services.snapshot_store import SnapshotKey, SnapshotStore

log = logging.getLogger("imaps.stock_check")


@dataclass
class StockCheckResult:
    item_type: str
    item_code: str
    qty_requested: Decimal
    current_stock: Decimal
    available: bool
    shortfall: Decimal
    as_of_date: Optional[date] = None


@dataclass
class BatchStockCheckResult:
    results: list[StockCheckResult] = field(default_factory=list)

    @property
    def all_available(self) -> bool:
        return all(r.available for r in self.results)


@dataclass
class BalanceChangeCheckResult:
    item_type: str
    item_code: str
    old_qty: Decimal
    new_qty: Decimal
    current_stock: Decimal
    projected_stock: Decimal
    available: bool
    shortfall: Decimal
    first_negative_date: Optional[date] = None
    scanned_days: int = 0


@dataclass(frozen=True)
class StockCheckItem:
    item_type: str
    item_code: str
    qty_requested: Any


class StockChecker:
    """
    库存检查（只读快照，不读台账明细）。

    当前结余 = snapshot_date 当天或之前最近一条快照的期末；没有快照按 0。
    快照是异步维护的缓存：刚提交、还没重算完的单据在这里看不到。
    """

    def __init__(
        self,
        store: Optional[SnapshotStore] = None,
        ledger: Optional[LedgerReader] = None,
        *,
        forward_scan: Optional[bool] = None,
    ) -> None:
        self.store = store or SnapshotStore()
        self.ledger = ledger or LedgerReader()
        self.forward_scan = (
            get_settings().STOCK_CHECK_FORWARD_SCAN if forward_scan is None else forward_scan
        )

    async def current_stock(
        self, session: AsyncSession, key: SnapshotKey, day: date
    ) -> tuple[Decimal, Optional[date]]:
        row = await self.store.as_of(session, key, day)
        if row is None:
            return ZERO, None
        return q3(row.closing_balance), row.snapshot_date

    # ------------------------------------------------------------------
    # 出库前检查
    # ------------------------------------------------------------------
    async def check_availability(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_code: str,
        item_type: str,
        qty_requested: Any,
        snapshot_date: date,
    ) -> StockCheckResult:
        requested = q3(qty_requested)
        if requested <= 0:
            raise ValidationFailed("qty_requested 必须大于 0", field="qty_requested")

        key = SnapshotKey(company_code, item_type, item_code)
        current, as_of = await self.current_stock(session, key, snapshot_date)
        available = current >= requested
        shortfall = max(ZERO, requested - current)

        STOCK_CHECKS.labels("availability", str(available).lower()).inc()
        return StockCheckResult(
            item_type=item_type,
            item_code=item_code,
            qty_requested=requested,
            current_stock=current,
            available=available,
            shortfall=q3(shortfall),
            as_of_date=as_of,
        )

    async def check_batch_availability(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        items: Sequence[StockCheckItem],
        snapshot_date: date,
    ) -> BatchStockCheckResult:
        """
        同一单据的多行逐行检查（同一物料多行时按合计数量检查一次）。
        """
        if not items:
            raise ValidationFailed("items 不能为空", field="items")

        totals: dict[tuple[str, str], Decimal] = {}
        for it in items:
            k = (it.item_type, it.item_code)
            totals[k] = totals.get(k, ZERO) + q3(it.qty_requested)

        batch = BatchStockCheckResult()
        for (item_type, item_code), qty in totals.items():
            batch.results.append(
                await self.check_availability(
                    session,
                    company_code=company_code,
                    item_code=item_code,
                    item_type=item_type,
                    qty_requested=qty,
                    snapshot_date=snapshot_date,
                )
            )
        return batch

    async def ensure_available(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_code: str,
        item_type: str,
        qty_requested: Any,
        snapshot_date: date,
    ) -> StockCheckResult:
        """check_availability 的强制版：不足直接抛 InsufficientStock。"""
        result = await self.check_availability(
            session,
            company_code=company_code,
            item_code=item_code,
            item_type=item_type,
            qty_requested=qty_requested,
            snapshot_date=snapshot_date,
        )
        if not result.available:
            raise InsufficientStock(
                item_type=item_type,
                item_code=item_code,
                current_stock=result.current_stock,
                requested=result.qty_requested,
                shortfall=result.shortfall,
                snapshot_date=snapshot_date,
            )
        return result

    # ------------------------------------------------------------------
    # 改 / 删入库前检查
    # ------------------------------------------------------------------
    async def check_balance_wont_go_negative(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_code: str,
        item_type: str,
        old_qty: Any,
        new_qty: Any,
        snapshot_date: date,
        exclude_transaction_id: Optional[int] = None,
        source: LedgerSource = LedgerSource.INCOMING,
    ) -> BalanceChangeCheckResult:
        """
        入库数量 old_qty → new_qty（删除即 new_qty=0）后结余是否仍 >= 0。

          projected = 当前结余 - old_qty + new_qty

        forward_scan 打开时，snapshot_date 起每一条已存在快照都套用同样的差额，
        取最小值判断；任何一天会变负都拒绝，并报告第一天。
        exclude_transaction_id 指向被改的入库明细：找到时以库里的数量为 old_qty。
        """
        old = q3(old_qty)
        new = q3(new_qty)
        if old < 0 or new < 0:
            raise ValidationFailed("数量不能为负", field="new_qty" if new < 0 else "old_qty")

        key = SnapshotKey(company_code, item_type, item_code)

        if exclude_transaction_id is not None:
            line = await self.ledger.find_item_row(session, source, exclude_transaction_id)
            if (
                line is not None
                and not line.deleted
                and (line.company_code, line.item_type, line.item_code)
                == (company_code, item_type, item_code)
            ):
                if line.qty != old:
                    log.info(
                        "old_qty overridden by stored row source=%s id=%s given=%s stored=%s",
                        source,
                        exclude_transaction_id,
                        old,
                        line.qty,
                    )
                old = line.qty

        delta = new - old
        current, _ = await self.current_stock(session, key, snapshot_date)
        projected = q3(current + delta)

        lowest = projected
        first_negative: Optional[date] = snapshot_date if projected < 0 else None
        scanned = 0
        if self.forward_scan:
            for row in await self.store.rows_from(session, key, snapshot_date, inclusive=True):
                scanned += 1
                p = q3(row.closing_balance) + delta
                if p < lowest:
                    lowest = p
                if p < 0 and first_negative is None:
                    first_negative = row.snapshot_date

        available = lowest >= 0
        shortfall = q3(max(ZERO, -lowest))

        STOCK_CHECKS.labels("balance_change", str(available).lower()).inc()
        return BalanceChangeCheckResult(
            item_type=item_type,
            item_code=item_code,
            old_qty=old,
            new_qty=new,
            current_stock=current,
            projected_stock=projected,
            available=available,
            shortfall=shortfall,
            first_negative_date=first_negative,
            scanned_days=scanned,
        )
