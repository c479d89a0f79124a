# imaps/services/ledger_reader.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from imaps.models import (
    AdjustmentItem,
    BeginningBalance,
    IncomingGoodItem,
    MaterialUsage,
    MaterialUsageItem,
    OutgoingGoodItem,
    ProductionOutput,
    ProductionOutputItem,
    StockDailySnapshot,
)
from imaps.models.enums import AdjustmentType, LedgerSource
from imaps.services.balance_calculator import Movements, q3


@dataclass(frozen=True)
class ItemMeta:
    item_name: str = ""
    uom: str = ""


@dataclass(frozen=True)
class LedgerLine:
    """单条台账明细的最小视图（库存检查 / 写入服务定位旧数量用）。"""

    source: LedgerSource
    id: int
    company_code: int
    item_type: str
    item_code: str
    qty: Decimal
    trx_date: date
    deleted: bool


class LedgerPort(Protocol):
    """重算服务依赖的台账读接口；测试可替换成内存实现。"""

    async def sum_movements(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        day: date,
    ) -> Movements: ...

    async def beginning_balance_on(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        day: date,
    ) -> Optional[Decimal]: ...

    async def movement_dates(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        from_date: date,
    ) -> list[date]: ...

    async def resolve_item_meta(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
    ) -> ItemMeta: ...


def _zero_sum(expr) -> sa.ColumnElement:
    return sa.func.coalesce(sa.func.sum(expr), 0)


class LedgerReader:
    """
    台账读取（只读，无副作用）。

    口径：
      incoming        = Σ incoming_good_items.qty
      outgoing        = Σ outgoing_good_items.qty
      material_usage  = Σ material_usage_items.qty（单头 reversal 取反：退料）
      production      = Σ production_output_items.qty（单头 reversal 取反：冲销）
      adjustment      = Σ GAIN - Σ LOSS

    所有来源都排除 deleted_at 非空的明细；领料 / 产出还排除单头已删除的。
    边角料入 / 出就是 item_type='SCRAP' 的入库 / 出库明细，不单独成表。
    """

    # ------------------------------------------------------------------
    # 单日汇总
    # ------------------------------------------------------------------
    async def sum_movements(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        day: date,
    ) -> Movements:
        incoming = sa.select(_zero_sum(IncomingGoodItem.qty)).where(
            IncomingGoodItem.company_code == company_code,
            IncomingGoodItem.item_type == item_type,
            IncomingGoodItem.item_code == item_code,
            IncomingGoodItem.trx_date == day,
            IncomingGoodItem.deleted_at.is_(None),
        )

        outgoing = sa.select(_zero_sum(OutgoingGoodItem.qty)).where(
            OutgoingGoodItem.company_code == company_code,
            OutgoingGoodItem.item_type == item_type,
            OutgoingGoodItem.item_code == item_code,
            OutgoingGoodItem.trx_date == day,
            OutgoingGoodItem.deleted_at.is_(None),
        )

        material_usage = (
            sa.select(
                _zero_sum(
                    sa.case(
                        (MaterialUsage.reversal.is_(True), -MaterialUsageItem.qty),
                        else_=MaterialUsageItem.qty,
                    )
                )
            )
            .select_from(MaterialUsageItem)
            .join(MaterialUsage, MaterialUsage.id == MaterialUsageItem.material_usage_id)
            .where(
                MaterialUsage.company_code == company_code,
                MaterialUsage.trx_date == day,
                MaterialUsage.deleted_at.is_(None),
                MaterialUsageItem.item_type == item_type,
                MaterialUsageItem.item_code == item_code,
                MaterialUsageItem.deleted_at.is_(None),
            )
        )

        production = (
            sa.select(
                _zero_sum(
                    sa.case(
                        (ProductionOutput.reversal.is_(True), -ProductionOutputItem.qty),
                        else_=ProductionOutputItem.qty,
                    )
                )
            )
            .select_from(ProductionOutputItem)
            .join(ProductionOutput, ProductionOutput.id == ProductionOutputItem.production_output_id)
            .where(
                ProductionOutput.company_code == company_code,
                ProductionOutput.trx_date == day,
                ProductionOutput.deleted_at.is_(None),
                ProductionOutputItem.item_type == item_type,
                ProductionOutputItem.item_code == item_code,
                ProductionOutputItem.deleted_at.is_(None),
            )
        )

        adjustment = sa.select(
            _zero_sum(
                sa.case(
                    (AdjustmentItem.adjustment_type == AdjustmentType.GAIN.value, AdjustmentItem.qty),
                    (AdjustmentItem.adjustment_type == AdjustmentType.LOSS.value, -AdjustmentItem.qty),
                    else_=0,
                )
            )
        ).where(
            AdjustmentItem.company_code == company_code,
            AdjustmentItem.item_type == item_type,
            AdjustmentItem.item_code == item_code,
            AdjustmentItem.trx_date == day,
            AdjustmentItem.deleted_at.is_(None),
        )

        # 一次往返取回五个来源
        stmt = sa.select(
            incoming.scalar_subquery().label("incoming"),
            outgoing.scalar_subquery().label("outgoing"),
            material_usage.scalar_subquery().label("material_usage"),
            production.scalar_subquery().label("production"),
            adjustment.scalar_subquery().label("adjustment"),
        )
        row = (await session.execute(stmt)).mappings().one()
        return Movements.of(**row)

    # ------------------------------------------------------------------
    # 期初
    # ------------------------------------------------------------------
    async def beginning_balance_on(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        day: date,
    ) -> Optional[Decimal]:
        """期初日正好是 day 时返回期初数量，否则 None。"""
        stmt = sa.select(BeginningBalance.qty).where(
            BeginningBalance.company_code == company_code,
            BeginningBalance.item_type == item_type,
            BeginningBalance.item_code == item_code,
            BeginningBalance.balance_date == day,
            BeginningBalance.deleted_at.is_(None),
        )
        qty = (await session.execute(stmt.limit(1))).scalar_one_or_none()
        return None if qty is None else q3(qty)

    async def beginning_balances(
        self,
        session: AsyncSession,
        *,
        company_code: Optional[int] = None,
    ) -> dict[tuple[int, str, str], tuple[date, Decimal]]:
        """未删除的期初：{(company, item_type, item_code): (balance_date, qty)}。"""
        stmt = sa.select(
            BeginningBalance.company_code,
            BeginningBalance.item_type,
            BeginningBalance.item_code,
            BeginningBalance.balance_date,
            BeginningBalance.qty,
        ).where(BeginningBalance.deleted_at.is_(None))
        if company_code is not None:
            stmt = stmt.where(BeginningBalance.company_code == company_code)
        rows = (await session.execute(stmt)).all()
        return {(r[0], r[1], r[2]): (r[3], q3(r[4])) for r in rows}

    # ------------------------------------------------------------------
    # 有变动的日期（修复 / 重建用）
    # ------------------------------------------------------------------
    async def movement_dates(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        from_date: date,
    ) -> list[date]:
        """from_date（含）之后所有有台账记录的日期，升序去重；含期初日。"""

        def _direct(model):
            return sa.select(model.trx_date.label("d")).where(
                model.company_code == company_code,
                model.item_type == item_type,
                model.item_code == item_code,
                model.trx_date >= from_date,
                model.deleted_at.is_(None),
            )

        def _via_header(item_model, header_model, fk):
            return (
                sa.select(header_model.trx_date.label("d"))
                .select_from(item_model)
                .join(header_model, header_model.id == fk)
                .where(
                    header_model.company_code == company_code,
                    header_model.trx_date >= from_date,
                    header_model.deleted_at.is_(None),
                    item_model.item_type == item_type,
                    item_model.item_code == item_code,
                    item_model.deleted_at.is_(None),
                )
            )

        seed = sa.select(BeginningBalance.balance_date.label("d")).where(
            BeginningBalance.company_code == company_code,
            BeginningBalance.item_type == item_type,
            BeginningBalance.item_code == item_code,
            BeginningBalance.balance_date >= from_date,
            BeginningBalance.deleted_at.is_(None),
        )

        union = sa.union(
            _direct(IncomingGoodItem),
            _direct(OutgoingGoodItem),
            _direct(AdjustmentItem),
            _via_header(MaterialUsageItem, MaterialUsage, MaterialUsageItem.material_usage_id),
            _via_header(
                ProductionOutputItem, ProductionOutput, ProductionOutputItem.production_output_id
            ),
            seed,
        ).subquery()
        rows = (await session.execute(sa.select(union.c.d).order_by(union.c.d))).scalars().all()
        return list(rows)

    # ------------------------------------------------------------------
    # 物料名称 / 单位
    # ------------------------------------------------------------------
    async def resolve_item_meta(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
    ) -> ItemMeta:
        """
        级联时调用方没给名称 / 单位，按顺序找：
          最近的入库明细 → 最近的出库明细 → 期初 → 最近的快照
        都找不到返回空串（空串不会覆盖库里已有的值）。
        """
        for model in (IncomingGoodItem, OutgoingGoodItem):
            stmt = (
                sa.select(model.item_name, model.uom)
                .where(
                    model.company_code == company_code,
                    model.item_type == item_type,
                    model.item_code == item_code,
                    model.deleted_at.is_(None),
                )
                .order_by(model.trx_date.desc(), model.id.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).first()
            if row is not None and row.item_name:
                return ItemMeta(row.item_name, row.uom or "")

        stmt = (
            sa.select(BeginningBalance.item_name, BeginningBalance.uom)
            .where(
                BeginningBalance.company_code == company_code,
                BeginningBalance.item_type == item_type,
                BeginningBalance.item_code == item_code,
                BeginningBalance.deleted_at.is_(None),
            )
            .limit(1)
        )
        row = (await session.execute(stmt)).first()
        if row is not None and row.item_name:
            return ItemMeta(row.item_name, row.uom or "")

        stmt = (
            sa.select(StockDailySnapshot.item_name, StockDailySnapshot.uom)
            .where(
                StockDailySnapshot.company_code == company_code,
                StockDailySnapshot.item_type == item_type,
                StockDailySnapshot.item_code == item_code,
            )
            .order_by(StockDailySnapshot.snapshot_date.desc())
            .limit(1)
        )
        row = (await session.execute(stmt)).first()
        if row is not None:
            return ItemMeta(row.item_name or "", row.uom or "")
        return ItemMeta()

    # ------------------------------------------------------------------
    # 定位单条明细
    # ------------------------------------------------------------------
    async def find_item_row(
        self,
        session: AsyncSession,
        source: LedgerSource,
        row_id: int,
    ) -> Optional[LedgerLine]:
        """按来源 + 明细 id 取一条明细（含已删除的，由调用方判断 deleted）。"""
        if source in (LedgerSource.INCOMING, LedgerSource.OUTGOING, LedgerSource.ADJUSTMENT):
            model = {
                LedgerSource.INCOMING: IncomingGoodItem,
                LedgerSource.OUTGOING: OutgoingGoodItem,
                LedgerSource.ADJUSTMENT: AdjustmentItem,
            }[source]
            stmt = sa.select(
                model.id,
                model.company_code,
                model.item_type,
                model.item_code,
                model.qty,
                model.trx_date,
                model.deleted_at.is_not(None).label("deleted"),
            ).where(model.id == row_id)
        elif source in (LedgerSource.MATERIAL_USAGE, LedgerSource.PRODUCTION):
            if source is LedgerSource.MATERIAL_USAGE:
                item, header, fk = MaterialUsageItem, MaterialUsage, MaterialUsageItem.material_usage_id
            else:
                item, header, fk = (
                    ProductionOutputItem,
                    ProductionOutput,
                    ProductionOutputItem.production_output_id,
                )
            stmt = (
                sa.select(
                    item.id,
                    header.company_code,
                    item.item_type,
                    item.item_code,
                    item.qty,
                    header.trx_date,
                    sa.or_(item.deleted_at.is_not(None), header.deleted_at.is_not(None)).label(
                        "deleted"
                    ),
                )
                .select_from(item)
                .join(header, header.id == fk)
                .where(item.id == row_id)
            )
        else:
            return None

        row = (await session.execute(stmt)).first()
        if row is None:
            return None
        return LedgerLine(
            source=source,
            id=row.id,
            company_code=row.company_code,
            item_type=row.item_type,
            item_code=row.item_code,
            qty=q3(row.qty),
            trx_date=row.trx_date,
            deleted=bool(row.deleted),
        )
