# imaps/services/snapshot_store.py
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from imaps.models import StockDailySnapshot
from imaps.services.balance_calculator import SnapshotFigures

INSERT = "INSERT"
UPDATE = "UPDATE"


@dataclass(frozen=True)
class SnapshotKey:
    company_code: int
    item_type: str
    item_code: str

    @property
    def advisory_lock_id(self) -> int:
        """稳定的 63 位有符号整数（跨进程一致，不能用内置 hash）。"""
        raw = f"{self.company_code}|{self.item_type}|{self.item_code}".encode("utf-8")
        return int.from_bytes(hashlib.blake2b(raw, digest_size=8).digest(), "big", signed=True)

    def __str__(self) -> str:
        return f"{self.company_code}/{self.item_type}/{self.item_code}"


def _dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


class SnapshotStore:
    """
    stock_daily_snapshot 的读写（只被重算服务 / 库存检查使用）。

    读取一律 populate_existing：同一会话里刚被 Core upsert 改过的行，
    identity map 里的旧对象必须被刷新。
    """

    def _key_filter(self, key: SnapshotKey) -> list[sa.ColumnElement]:
        return [
            StockDailySnapshot.company_code == key.company_code,
            StockDailySnapshot.item_type == key.item_type,
            StockDailySnapshot.item_code == key.item_code,
        ]

    async def _scalars(self, session: AsyncSession, stmt) -> Sequence[StockDailySnapshot]:
        stmt = stmt.execution_options(populate_existing=True)
        return (await session.execute(stmt)).scalars().all()

    async def _first(self, session: AsyncSession, stmt) -> Optional[StockDailySnapshot]:
        rows = await self._scalars(session, stmt.limit(1))
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # 读
    # ------------------------------------------------------------------
    async def get(
        self, session: AsyncSession, key: SnapshotKey, day: date
    ) -> Optional[StockDailySnapshot]:
        stmt = sa.select(StockDailySnapshot).where(
            *self._key_filter(key), StockDailySnapshot.snapshot_date == day
        )
        return await self._first(session, stmt)

    async def prior(
        self, session: AsyncSession, key: SnapshotKey, day: date
    ) -> Optional[StockDailySnapshot]:
        """day 之前（不含）最近的一条快照。中间空档日不会有行，直接跳过。"""
        stmt = (
            sa.select(StockDailySnapshot)
            .where(*self._key_filter(key), StockDailySnapshot.snapshot_date < day)
            .order_by(StockDailySnapshot.snapshot_date.desc())
        )
        return await self._first(session, stmt)

    async def as_of(
        self, session: AsyncSession, key: SnapshotKey, day: date
    ) -> Optional[StockDailySnapshot]:
        """day 当天或之前最近的一条快照（库存检查的“当前结余”）。"""
        stmt = (
            sa.select(StockDailySnapshot)
            .where(*self._key_filter(key), StockDailySnapshot.snapshot_date <= day)
            .order_by(StockDailySnapshot.snapshot_date.desc())
        )
        return await self._first(session, stmt)

    async def latest(self, session: AsyncSession, key: SnapshotKey) -> Optional[StockDailySnapshot]:
        stmt = (
            sa.select(StockDailySnapshot)
            .where(*self._key_filter(key))
            .order_by(StockDailySnapshot.snapshot_date.desc())
        )
        return await self._first(session, stmt)

    async def rows_from(
        self,
        session: AsyncSession,
        key: SnapshotKey,
        from_date: date,
        *,
        inclusive: bool = True,
    ) -> Sequence[StockDailySnapshot]:
        """from_date 之后的全部快照，按日期升序。"""
        cond = (
            StockDailySnapshot.snapshot_date >= from_date
            if inclusive
            else StockDailySnapshot.snapshot_date > from_date
        )
        stmt = (
            sa.select(StockDailySnapshot)
            .where(*self._key_filter(key), cond)
            .order_by(StockDailySnapshot.snapshot_date.asc())
        )
        return await self._scalars(session, stmt)

    async def in_range(
        self,
        session: AsyncSession,
        key: SnapshotKey,
        *,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> Sequence[StockDailySnapshot]:
        stmt = sa.select(StockDailySnapshot).where(*self._key_filter(key))
        if date_from is not None:
            stmt = stmt.where(StockDailySnapshot.snapshot_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(StockDailySnapshot.snapshot_date <= date_to)
        return await self._scalars(session, stmt.order_by(StockDailySnapshot.snapshot_date.asc()))

    async def rows_for_company(
        self, session: AsyncSession, *, company_code: Optional[int] = None
    ) -> Sequence[StockDailySnapshot]:
        """按 key、日期排序的整表扫描（一致性校验用）。"""
        stmt = sa.select(StockDailySnapshot)
        if company_code is not None:
            stmt = stmt.where(StockDailySnapshot.company_code == company_code)
        stmt = stmt.order_by(
            StockDailySnapshot.company_code,
            StockDailySnapshot.item_type,
            StockDailySnapshot.item_code,
            StockDailySnapshot.snapshot_date,
        )
        return await self._scalars(session, stmt)

    # ------------------------------------------------------------------
    # 写
    # ------------------------------------------------------------------
    async def upsert(
        self,
        session: AsyncSession,
        key: SnapshotKey,
        day: date,
        figures: SnapshotFigures,
        *,
        item_name: str = "",
        uom: str = "",
        method: str,
    ) -> str:
        """
        按唯一键 insert-or-update，返回 INSERT / UPDATE。

        - 数字列整行覆盖（重复执行结果不变）
        - item_name / uom 传空串时保留库里原值
        - updated_at / calculated_at 显式刷新（ON CONFLICT 不走 onupdate）
        """
        existed = (
            await session.execute(
                sa.select(StockDailySnapshot.id).where(
                    *self._key_filter(key), StockDailySnapshot.snapshot_date == day
                )
            )
        ).first() is not None

        insert = pg_insert if _dialect_name(session) == "postgresql" else sqlite_insert
        table = StockDailySnapshot.__table__
        values = {
            "company_code": key.company_code,
            "item_type": key.item_type,
            "item_code": key.item_code,
            "item_name": item_name or "",
            "uom": uom or "",
            "snapshot_date": day,
            "calculation_method": method,
            "calculated_at": sa.func.now(),
            **figures.as_columns(),
        }
        stmt = insert(table).values(**values)
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=["company_code", "item_type", "item_code", "snapshot_date"],
            set_={
                **{col: excluded[col] for col in figures.as_columns()},
                "item_name": sa.case(
                    (excluded.item_name != "", excluded.item_name), else_=table.c.item_name
                ),
                "uom": sa.case((excluded.uom != "", excluded.uom), else_=table.c.uom),
                "calculation_method": excluded.calculation_method,
                "calculated_at": sa.func.now(),
                "updated_at": sa.func.now(),
            },
        )
        await session.execute(stmt)
        return UPDATE if existed else INSERT

    async def lock(self, session: AsyncSession, key: SnapshotKey) -> None:
        """
        跨进程的 per-key 互斥：PG 事务级 advisory lock，提交 / 回滚自动释放。
        其他方言只靠进程内 KeyedLock。
        """
        if _dialect_name(session) != "postgresql":
            return
        await session.execute(
            sa.text("SELECT pg_advisory_xact_lock(:k)"), {"k": key.advisory_lock_id}
        )
