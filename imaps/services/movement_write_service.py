# imaps/services/movement_write_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, NamedTuple, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaps.api.errors import BizError, InsufficientStock, NotFoundError, ValidationFailed
from imaps.core.config import get_settings
from imaps.core.tx import serializable_tx
from imaps.models import (
    Adjustment,
    AdjustmentItem,
    BeginningBalance,
    IncomingGood,
    IncomingGoodItem,
    MaterialUsage,
    MaterialUsageItem,
    OutgoingGood,
    OutgoingGoodItem,
    ProductionOutput,
    ProductionOutputItem,
)
from imaps.models.enums import AdjustmentType, ItemType, LedgerSource
from imaps.services.balance_calculator import ZERO, q3
from imaps.services.recalc_dispatcher import RecalcDispatcher
from imaps.services.snapshot_recalc_service import RecalcRequest
from imaps.services.stock_checker import StockChecker

log = logging.getLogger("imaps.movements")

_ITEM_TYPES = {t.value for t in ItemType}
_PRODUCTION_TYPES = {ItemType.FERT.value, ItemType.HALB.value, ItemType.SCRAP.value}


class _Tables(NamedTuple):
    header: Any
    item: Any
    fk: str
    # 明细行是否冗余了 company_code / trx_date
    denormalized: bool


_SOURCES: dict[LedgerSource, _Tables] = {
    LedgerSource.INCOMING: _Tables(IncomingGood, IncomingGoodItem, "incoming_good_id", True),
    LedgerSource.OUTGOING: _Tables(OutgoingGood, OutgoingGoodItem, "outgoing_good_id", True),
    LedgerSource.MATERIAL_USAGE: _Tables(
        MaterialUsage, MaterialUsageItem, "material_usage_id", False
    ),
    LedgerSource.PRODUCTION: _Tables(
        ProductionOutput, ProductionOutputItem, "production_output_id", False
    ),
    LedgerSource.ADJUSTMENT: _Tables(Adjustment, AdjustmentItem, "adjustment_id", True),
}


@dataclass(frozen=True)
class MovementLine:
    item_type: str
    item_code: str
    qty: Any
    item_name: str = ""
    uom: str = ""
    adjustment_type: Optional[str] = None
    ppkek_number: Optional[str] = None


@dataclass
class WriteResult:
    document_id: Optional[int]
    line_ids: list[int] = field(default_factory=list)
    requests: list[RecalcRequest] = field(default_factory=list)


def _stock_sign(source: LedgerSource, *, reversal: bool = False, adjustment_type: Any = None) -> int:
    """一行明细对库存的方向：+1 增加，-1 减少。"""
    if source is LedgerSource.ADJUSTMENT:
        return 1 if adjustment_type == AdjustmentType.GAIN.value else -1
    sign = -1 if source.reduces_stock else 1
    return -sign if reversal else sign


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MovementWriteService:
    """
    台账写入（新增 / 改数量 / 软删除 / 期初）。

    固定流程：
      1) SERIALIZABLE 事务 + 超时内：校验 → 会让库存减少的变动先做库存检查 → 写明细
      2) 提交之后：把受影响的 (物料, 日期) 交给调度器重算快照

    第 2 步失败不回滚第 1 步；调度器自己负责重试 / 死信。
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        dispatcher: RecalcDispatcher,
        *,
        checker: Optional[StockChecker] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.session_maker = session_maker
        self.dispatcher = dispatcher
        self.checker = checker or StockChecker()
        self.timeout = timeout if timeout is not None else get_settings().WRITE_TX_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # 新增单据
    # ------------------------------------------------------------------
    async def record_document(
        self,
        *,
        source: LedgerSource,
        company_code: int,
        wms_id: str,
        trx_date: date,
        lines: Sequence[MovementLine],
        reversal: bool = False,
        work_order_number: Optional[str] = None,
        ppkek_number: Optional[str] = None,
        enforce_stock: bool = True,
    ) -> WriteResult:
        tables = self._tables(source)
        self._validate_document(source, wms_id=wms_id, trx_date=trx_date, lines=lines)
        if reversal and source not in (LedgerSource.MATERIAL_USAGE, LedgerSource.PRODUCTION):
            raise ValidationFailed("只有领料 / 产出单支持冲销", field="reversal")

        async with serializable_tx(self.session_maker, timeout=self.timeout) as session:
            dup = await session.execute(
                sa.select(tables.header.id).where(
                    tables.header.company_code == company_code,
                    tables.header.wms_id == wms_id,
                )
            )
            if dup.first() is not None:
                raise BizError(
                    f"单据已存在：{wms_id}", code="DUPLICATE_DOCUMENT", status=409,
                    context={"company_code": company_code, "wms_id": wms_id},
                )

            if enforce_stock:
                reductions: dict[tuple[str, str], Decimal] = {}
                for ln in lines:
                    sign = _stock_sign(source, reversal=reversal, adjustment_type=ln.adjustment_type)
                    if sign < 0:
                        k = (ln.item_type, ln.item_code)
                        reductions[k] = reductions.get(k, ZERO) + q3(ln.qty)
                for (item_type, item_code), qty in reductions.items():
                    await self._ensure_reduction_ok(
                        session,
                        company_code=company_code,
                        item_type=item_type,
                        item_code=item_code,
                        reduction=qty,
                        day=trx_date,
                    )

            header_kw: dict[str, Any] = {
                "wms_id": wms_id,
                "company_code": company_code,
                "trx_date": trx_date,
            }
            if source in (LedgerSource.INCOMING, LedgerSource.OUTGOING):
                header_kw["ppkek_number"] = ppkek_number
            if source is LedgerSource.MATERIAL_USAGE:
                header_kw["work_order_number"] = work_order_number
            if source in (LedgerSource.MATERIAL_USAGE, LedgerSource.PRODUCTION):
                header_kw["reversal"] = reversal
            header = tables.header(**header_kw)
            session.add(header)
            await session.flush()

            items = []
            for ln in lines:
                kw: dict[str, Any] = {
                    tables.fk: header.id,
                    "item_type": ln.item_type,
                    "item_code": ln.item_code,
                    "item_name": ln.item_name or "",
                    "uom": ln.uom or "",
                    "qty": q3(ln.qty),
                }
                if tables.denormalized:
                    kw["company_code"] = company_code
                    kw["trx_date"] = trx_date
                if source is LedgerSource.ADJUSTMENT:
                    kw["adjustment_type"] = ln.adjustment_type
                if source is LedgerSource.MATERIAL_USAGE:
                    kw["ppkek_number"] = ln.ppkek_number
                items.append(tables.item(**kw))
            session.add_all(items)
            await session.flush()

            result = WriteResult(
                document_id=header.id,
                line_ids=[it.id for it in items],
                requests=self._requests(
                    company_code, trx_date, lines, reason=f"{source.value} {wms_id} created"
                ),
            )

        log.info(
            "document recorded source=%s company=%s wms_id=%s date=%s lines=%d",
            source,
            company_code,
            wms_id,
            trx_date,
            len(lines),
        )
        await self.dispatcher.dispatch(result.requests)
        return result

    # ------------------------------------------------------------------
    # 改数量
    # ------------------------------------------------------------------
    async def update_line_qty(
        self,
        *,
        source: LedgerSource,
        line_id: int,
        new_qty: Any,
        enforce_stock: bool = True,
    ) -> WriteResult:
        tables = self._tables(source)
        new = q3(new_qty)
        if new <= 0:
            raise ValidationFailed("数量必须大于 0（删除请走删除接口）", field="qty")

        async with serializable_tx(self.session_maker, timeout=self.timeout) as session:
            line, header = await self._load_line(session, tables, line_id)
            company_code, trx_date = header.company_code, header.trx_date
            old = q3(line.qty)
            sign = _stock_sign(
                source,
                reversal=bool(getattr(header, "reversal", False)),
                adjustment_type=getattr(line, "adjustment_type", None),
            )
            reduction = -sign * (new - old)

            if enforce_stock and reduction > 0:
                await self._ensure_reduction_ok(
                    session,
                    company_code=company_code,
                    item_type=line.item_type,
                    item_code=line.item_code,
                    reduction=reduction,
                    day=trx_date,
                    source=source,
                    line_id=line.id,
                    old_qty=old,
                    new_qty=new,
                )

            line.qty = new
            await session.flush()
            result = WriteResult(
                document_id=header.id,
                line_ids=[line.id],
                requests=[
                    RecalcRequest(
                        company_code=company_code,
                        item_type=line.item_type,
                        item_code=line.item_code,
                        recalc_date=trx_date,
                        item_name=line.item_name or "",
                        uom=line.uom or "",
                        reason=f"{source.value} line {line.id} qty {old} -> {new}",
                    )
                ],
            )

        log.info("line qty updated source=%s id=%s %s -> %s", source, line_id, old, new)
        await self.dispatcher.dispatch(result.requests)
        return result

    # ------------------------------------------------------------------
    # 软删除
    # ------------------------------------------------------------------
    async def delete_line(
        self, *, source: LedgerSource, line_id: int, enforce_stock: bool = True
    ) -> WriteResult:
        tables = self._tables(source)
        async with serializable_tx(self.session_maker, timeout=self.timeout) as session:
            line, header = await self._load_line(session, tables, line_id)
            await self._check_removal(session, source, header, [line], enforce_stock=enforce_stock)
            line.deleted_at = _utcnow()
            await session.flush()
            result = WriteResult(
                document_id=header.id,
                line_ids=[line.id],
                requests=self._requests(
                    header.company_code,
                    header.trx_date,
                    [line],
                    reason=f"{source.value} line {line.id} deleted",
                ),
            )

        log.info("line deleted source=%s id=%s", source, line_id)
        await self.dispatcher.dispatch(result.requests)
        return result

    async def delete_document(
        self, *, source: LedgerSource, document_id: int, enforce_stock: bool = True
    ) -> WriteResult:
        tables = self._tables(source)
        async with serializable_tx(self.session_maker, timeout=self.timeout) as session:
            header = await session.get(tables.header, document_id)
            if header is None or header.deleted_at is not None:
                raise NotFoundError(f"单据不存在：{source.value}#{document_id}")
            lines = (
                (
                    await session.execute(
                        sa.select(tables.item).where(
                            getattr(tables.item, tables.fk) == document_id,
                            tables.item.deleted_at.is_(None),
                        )
                    )
                )
                .scalars()
                .all()
            )
            await self._check_removal(session, source, header, lines, enforce_stock=enforce_stock)

            now = _utcnow()
            header.deleted_at = now
            for ln in lines:
                ln.deleted_at = now
            await session.flush()
            result = WriteResult(
                document_id=header.id,
                line_ids=[ln.id for ln in lines],
                requests=self._requests(
                    header.company_code,
                    header.trx_date,
                    lines,
                    reason=f"{source.value} {header.wms_id} deleted",
                ),
            )

        log.info("document deleted source=%s id=%s lines=%d", source, document_id, len(result.line_ids))
        await self.dispatcher.dispatch(result.requests)
        return result

    # ------------------------------------------------------------------
    # 期初
    # ------------------------------------------------------------------
    async def set_beginning_balance(
        self,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        qty: Any,
        balance_date: date,
        item_name: str = "",
        uom: str = "",
        remarks: Optional[str] = None,
    ) -> WriteResult:
        """
        每个物料只有一条有效期初：已存在则改数量 / 日期，从新旧日期中较早者重算。
        """
        amount = q3(qty)
        if amount < 0:
            raise ValidationFailed("期初数量不能为负", field="qty")
        if item_type not in _ITEM_TYPES:
            raise ValidationFailed(f"未知的 item_type: {item_type}", field="item_type")

        async with serializable_tx(self.session_maker, timeout=self.timeout) as session:
            row = (
                await session.execute(
                    sa.select(BeginningBalance).where(
                        BeginningBalance.company_code == company_code,
                        BeginningBalance.item_type == item_type,
                        BeginningBalance.item_code == item_code,
                        BeginningBalance.deleted_at.is_(None),
                    )
                )
            ).scalars().first()

            recalc_from = balance_date
            if row is None:
                row = BeginningBalance(
                    company_code=company_code,
                    item_type=item_type,
                    item_code=item_code,
                    item_name=item_name or "",
                    uom=uom or "",
                    qty=amount,
                    balance_date=balance_date,
                    remarks=remarks,
                )
                session.add(row)
            else:
                recalc_from = min(row.balance_date, balance_date)
                row.qty = amount
                row.balance_date = balance_date
                if item_name:
                    row.item_name = item_name
                if uom:
                    row.uom = uom
                if remarks is not None:
                    row.remarks = remarks
            await session.flush()

            result = WriteResult(
                document_id=row.id,
                requests=[
                    RecalcRequest(
                        company_code=company_code,
                        item_type=item_type,
                        item_code=item_code,
                        recalc_date=recalc_from,
                        item_name=row.item_name,
                        uom=row.uom,
                        reason="beginning balance set",
                    )
                ],
            )

        log.info(
            "beginning balance set company=%s item=%s/%s qty=%s date=%s",
            company_code,
            item_type,
            item_code,
            amount,
            balance_date,
        )
        await self.dispatcher.dispatch(result.requests)
        return result

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    @staticmethod
    def _tables(source: LedgerSource) -> _Tables:
        try:
            return _SOURCES[LedgerSource(source)]
        except (KeyError, ValueError):
            raise ValidationFailed(f"不支持的来源：{source}", field="source") from None

    @staticmethod
    def _validate_document(
        source: LedgerSource, *, wms_id: str, trx_date: date, lines: Sequence[MovementLine]
    ) -> None:
        if not wms_id:
            raise ValidationFailed("wms_id 不能为空", field="wms_id")
        if trx_date > date.today():
            raise ValidationFailed("交易日期不能晚于今天", field="trx_date")
        if not lines:
            raise ValidationFailed("单据至少需要一行明细", field="lines")
        for i, ln in enumerate(lines):
            path = f"lines[{i}]"
            if not ln.item_code:
                raise ValidationFailed("item_code 不能为空", field=f"{path}.item_code")
            if ln.item_type not in _ITEM_TYPES:
                raise ValidationFailed(f"未知的 item_type: {ln.item_type}", field=f"{path}.item_type")
            if q3(ln.qty) <= 0:
                raise ValidationFailed("数量必须大于 0", field=f"{path}.qty")
            if source is LedgerSource.PRODUCTION and ln.item_type not in _PRODUCTION_TYPES:
                raise ValidationFailed(
                    "产出只允许 FERT / HALB / SCRAP", field=f"{path}.item_type"
                )
            if source is LedgerSource.ADJUSTMENT and ln.adjustment_type not in (
                AdjustmentType.GAIN.value,
                AdjustmentType.LOSS.value,
            ):
                raise ValidationFailed(
                    "adjustment_type 必须是 GAIN 或 LOSS", field=f"{path}.adjustment_type"
                )

    @staticmethod
    async def _load_line(session: AsyncSession, tables: _Tables, line_id: int):
        line = await session.get(tables.item, line_id)
        if line is None or line.deleted_at is not None:
            raise NotFoundError(f"明细不存在：{tables.item.__tablename__}#{line_id}")
        header = await session.get(tables.header, getattr(line, tables.fk))
        if header is None or header.deleted_at is not None:
            raise NotFoundError(f"单据不存在：{tables.header.__tablename__}#{getattr(line, tables.fk)}")
        return line, header

    async def _check_removal(
        self,
        session: AsyncSession,
        source: LedgerSource,
        header: Any,
        lines: Sequence[Any],
        *,
        enforce_stock: bool,
    ) -> None:
        """删除会让库存减少的明细（入库 / 产出 / 退料 / GAIN）前检查不会变负。"""
        if not enforce_stock:
            return
        reversal = bool(getattr(header, "reversal", False))
        for ln in lines:
            sign = _stock_sign(
                source, reversal=reversal, adjustment_type=getattr(ln, "adjustment_type", None)
            )
            if sign > 0:
                await self._ensure_reduction_ok(
                    session,
                    company_code=header.company_code,
                    item_type=ln.item_type,
                    item_code=ln.item_code,
                    reduction=q3(ln.qty),
                    day=header.trx_date,
                    source=source,
                    line_id=ln.id,
                    old_qty=q3(ln.qty),
                    new_qty=ZERO,
                )

    async def _ensure_reduction_ok(
        self,
        session: AsyncSession,
        *,
        company_code: int,
        item_type: str,
        item_code: str,
        reduction: Decimal,
        day: date,
        source: Optional[LedgerSource] = None,
        line_id: Optional[int] = None,
        old_qty: Optional[Decimal] = None,
        new_qty: Optional[Decimal] = None,
    ) -> None:
        """
        库存将减少 reduction：当前结余（及之后各快照日）扣掉后不能为负。

        改 / 删入库明细时传真实的 old/new 与明细 id，其余情形按 old=reduction, new=0 计算。
        """
        if source is LedgerSource.INCOMING and line_id is not None:
            check = await self.checker.check_balance_wont_go_negative(
                session,
                company_code=company_code,
                item_code=item_code,
                item_type=item_type,
                old_qty=old_qty,
                new_qty=new_qty,
                snapshot_date=day,
                exclude_transaction_id=line_id,
                source=source,
            )
        else:
            check = await self.checker.check_balance_wont_go_negative(
                session,
                company_code=company_code,
                item_code=item_code,
                item_type=item_type,
                old_qty=reduction,
                new_qty=ZERO,
                snapshot_date=day,
            )
        if not check.available:
            raise InsufficientStock(
                item_type=item_type,
                item_code=item_code,
                current_stock=check.current_stock,
                requested=q3(reduction),
                shortfall=check.shortfall,
                snapshot_date=check.first_negative_date or day,
            )

    @staticmethod
    def _requests(
        company_code: int, trx_date: date, lines: Sequence[Any], *, reason: str
    ) -> list[RecalcRequest]:
        seen: dict[tuple[str, str], RecalcRequest] = {}
        for ln in lines:
            k = (ln.item_type, ln.item_code)
            if k in seen:
                continue
            seen[k] = RecalcRequest(
                company_code=company_code,
                item_type=ln.item_type,
                item_code=ln.item_code,
                recalc_date=trx_date,
                item_name=getattr(ln, "item_name", "") or "",
                uom=getattr(ln, "uom", "") or "",
                reason=reason,
            )
        return list(seen.values())
