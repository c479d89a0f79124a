# imaps/models/material_usage.py
from __future__ import annotations

from datetime import date
from typing import List

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imaps.db.base import Base
from imaps.models._mixins import LedgerLineMixin, SoftDeleteMixin, TimestampMixin


class MaterialUsage(Base, TimestampMixin, SoftDeleteMixin):
    """
    领料单头（生产投料，减少库存）。

    reversal=True 表示退料：明细数量回到库存。
    单头或明细任一软删除，该明细都不参与结余。
    """

    __tablename__ = "material_usages"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    wms_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    trx_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    work_order_number: Mapped[str | None] = mapped_column(sa.String(50), nullable=True)
    reversal: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)

    items: Mapped[List["MaterialUsageItem"]] = relationship(
        back_populates="material_usage", lazy="selectin"
    )

    __table_args__ = (
        sa.UniqueConstraint("company_code", "wms_id", name="uq_material_usages_company_wms"),
        sa.Index("ix_material_usages_company_date", "company_code", "trx_date"),
    )


class MaterialUsageItem(Base, LedgerLineMixin):
    __tablename__ = "material_usage_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    material_usage_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("material_usages.id"), nullable=False
    )
    ppkek_number: Mapped[str | None] = mapped_column(sa.String(50), nullable=True)

    material_usage: Mapped[MaterialUsage] = relationship(back_populates="items")

    __table_args__ = (
        sa.CheckConstraint("qty > 0", name="chk_material_usage_items_qty"),
        sa.Index("ix_material_usage_items_usage_id", "material_usage_id"),
        sa.Index("ix_material_usage_items_item", "item_type", "item_code"),
    )
