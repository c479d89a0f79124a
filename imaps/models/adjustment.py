# imaps/models/adjustment.py
from __future__ import annotations

from datetime import date
from typing import List

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imaps.db.base import Base
from imaps.models._mixins import LedgerLineMixin, SoftDeleteMixin, TimestampMixin


class Adjustment(Base, TimestampMixin, SoftDeleteMixin):
    """库存调整单头（盘点差异 / 手工纠偏）。"""

    __tablename__ = "adjustments"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    wms_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    trx_date: Mapped[date] = mapped_column(sa.Date, nullable=False)

    items: Mapped[List["AdjustmentItem"]] = relationship(
        back_populates="adjustment", lazy="selectin"
    )

    __table_args__ = (
        sa.UniqueConstraint("company_code", "wms_id", name="uq_adjustments_company_wms"),
    )


class AdjustmentItem(Base, LedgerLineMixin):
    """
    调整明细：qty 恒为正，adjustment_type 决定方向（GAIN + / LOSS -）。
    """

    __tablename__ = "adjustment_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    adjustment_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("adjustments.id"), nullable=False
    )
    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    trx_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    adjustment_type: Mapped[str] = mapped_column(sa.String(8), nullable=False)

    adjustment: Mapped[Adjustment] = relationship(back_populates="items")

    __table_args__ = (
        sa.CheckConstraint("qty > 0", name="chk_adjustment_items_qty"),
        sa.CheckConstraint("adjustment_type IN ('GAIN', 'LOSS')", name="chk_adjustment_items_type"),
        sa.Index(
            "ix_adjustment_items_key_date", "company_code", "item_type", "item_code", "trx_date"
        ),
    )
