# imaps/models/production_output.py
from __future__ import annotations

from datetime import date
from typing import List

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imaps.db.base import Base
from imaps.models._mixins import LedgerLineMixin, SoftDeleteMixin, TimestampMixin


class ProductionOutput(Base, TimestampMixin, SoftDeleteMixin):
    """
    生产产出单头（FERT / HALB / SCRAP 入库）。

    reversal=True 表示冲销：明细数量从库存扣回。
    """

    __tablename__ = "production_outputs"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    wms_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    trx_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    reversal: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)

    items: Mapped[List["ProductionOutputItem"]] = relationship(
        back_populates="production_output", lazy="selectin"
    )

    __table_args__ = (
        sa.UniqueConstraint("company_code", "wms_id", name="uq_production_outputs_company_wms"),
        sa.Index("ix_production_outputs_company_date", "company_code", "trx_date"),
    )


class ProductionOutputItem(Base, LedgerLineMixin):
    __tablename__ = "production_output_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    production_output_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("production_outputs.id"), nullable=False
    )

    production_output: Mapped[ProductionOutput] = relationship(back_populates="items")

    __table_args__ = (
        sa.CheckConstraint("qty > 0", name="chk_production_output_items_qty"),
        sa.CheckConstraint(
            "item_type IN ('FERT', 'HALB', 'SCRAP')", name="chk_production_output_items_type"
        ),
        sa.Index("ix_production_output_items_output_id", "production_output_id"),
        sa.Index("ix_production_output_items_item", "item_type", "item_code"),
    )
