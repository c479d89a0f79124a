# imaps/models/stock_daily_snapshot.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from imaps.db.base import Base
from imaps.models._mixins import QTY, TimestampMixin


class StockDailySnapshot(Base, TimestampMixin):
    """
    每日结余快照（报表 / 库存检查读取的物化缓存），只由重算服务写入。

    粒度： (company_code, item_type, item_code, snapshot_date)

    口径：
      closing = opening + (incoming + production) - (outgoing + material_usage) + adjustment
      opening(d) = closing(上一条快照)；无前序快照为 0；期初日取期初数量

    只会被重算覆盖，从不物理删除。
    """

    __tablename__ = "stock_daily_snapshot"

    # SQLite 只有 INTEGER PRIMARY KEY 才自增
    id: Mapped[int] = mapped_column(
        sa.BigInteger().with_variant(sa.Integer, "sqlite"), primary_key=True, autoincrement=True
    )

    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    item_type: Mapped[str] = mapped_column(sa.String(10), nullable=False)
    item_code: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    item_name: Mapped[str] = mapped_column(sa.String(200), nullable=False, default="")
    uom: Mapped[str] = mapped_column(sa.String(20), nullable=False, default="")
    snapshot_date: Mapped[date] = mapped_column(sa.Date, nullable=False)

    opening_balance: Mapped[Decimal] = mapped_column(QTY, nullable=False, server_default=sa.text("0"))
    incoming_qty: Mapped[Decimal] = mapped_column(QTY, nullable=False, server_default=sa.text("0"))
    outgoing_qty: Mapped[Decimal] = mapped_column(QTY, nullable=False, server_default=sa.text("0"))
    material_usage_qty: Mapped[Decimal] = mapped_column(
        QTY, nullable=False, server_default=sa.text("0")
    )
    production_qty: Mapped[Decimal] = mapped_column(QTY, nullable=False, server_default=sa.text("0"))
    # 有符号：GAIN - LOSS
    adjustment_qty: Mapped[Decimal] = mapped_column(QTY, nullable=False, server_default=sa.text("0"))
    closing_balance: Mapped[Decimal] = mapped_column(QTY, nullable=False, server_default=sa.text("0"))

    calculation_method: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "company_code",
            "item_type",
            "item_code",
            "snapshot_date",
            name="uk_stock_snapshot",
        ),
        sa.Index("ix_stock_snapshot_company_date", "company_code", "snapshot_date"),
        sa.Index("ix_stock_snapshot_item_date", "item_code", "snapshot_date"),
    )

    @property
    def inbound_qty(self) -> Decimal:
        return self.incoming_qty + self.production_qty

    @property
    def outbound_qty(self) -> Decimal:
        return self.outgoing_qty + self.material_usage_qty

    def __repr__(self) -> str:
        return (
            f"<Snapshot c={self.company_code} {self.item_type}/{self.item_code} "
            f"d={self.snapshot_date} open={self.opening_balance} "
            f"in={self.inbound_qty} out={self.outbound_qty} adj={self.adjustment_qty} "
            f"close={self.closing_balance}>"
        )
