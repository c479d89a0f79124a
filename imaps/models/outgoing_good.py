# imaps/models/outgoing_good.py
from __future__ import annotations

from datetime import date
from typing import List

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imaps.db.base import Base
from imaps.models._mixins import LedgerLineMixin, SoftDeleteMixin, TimestampMixin


class OutgoingGood(Base, TimestampMixin, SoftDeleteMixin):
    """
    出库单头（含边角料出库、资本货物出库）。
    """

    __tablename__ = "outgoing_goods"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    wms_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    trx_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    ppkek_number: Mapped[str | None] = mapped_column(sa.String(50), nullable=True)

    items: Mapped[List["OutgoingGoodItem"]] = relationship(
        back_populates="outgoing_good", lazy="selectin"
    )

    __table_args__ = (
        sa.UniqueConstraint("company_code", "wms_id", name="uq_outgoing_goods_company_wms"),
        sa.Index("ix_outgoing_goods_company_date", "company_code", "trx_date"),
    )


class OutgoingGoodItem(Base, LedgerLineMixin):
    """
    出库明细。company_code / trx_date 冗余自单头，台账汇总只扫本表。
    """

    __tablename__ = "outgoing_good_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    outgoing_good_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("outgoing_goods.id"), nullable=False
    )
    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    trx_date: Mapped[date] = mapped_column(sa.Date, nullable=False)

    outgoing_good: Mapped[OutgoingGood] = relationship(back_populates="items")

    __table_args__ = (
        sa.CheckConstraint("qty > 0", name="chk_outgoing_good_items_qty"),
        sa.Index(
            "ix_outgoing_good_items_key_date", "company_code", "item_type", "item_code", "trx_date"
        ),
    )
