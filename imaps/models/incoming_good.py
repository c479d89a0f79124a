# imaps/models/incoming_good.py
from __future__ import annotations

from datetime import date
from typing import List

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imaps.db.base import Base
from imaps.models._mixins import LedgerLineMixin, SoftDeleteMixin, TimestampMixin


class IncomingGood(Base, TimestampMixin, SoftDeleteMixin):
    """
    入库单头（含边角料入库：明细 item_type='SCRAP'）。
    """

    __tablename__ = "incoming_goods"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    wms_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    trx_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    ppkek_number: Mapped[str | None] = mapped_column(sa.String(50), nullable=True)

    items: Mapped[List["IncomingGoodItem"]] = relationship(
        back_populates="incoming_good", lazy="selectin"
    )

    __table_args__ = (
        sa.UniqueConstraint("company_code", "wms_id", name="uq_incoming_goods_company_wms"),
        sa.Index("ix_incoming_goods_company_date", "company_code", "trx_date"),
    )


class IncomingGoodItem(Base, LedgerLineMixin):
    """
    入库明细。company_code / trx_date 冗余自单头，台账汇总只扫本表。
    """

    __tablename__ = "incoming_good_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    incoming_good_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("incoming_goods.id"), nullable=False
    )
    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    trx_date: Mapped[date] = mapped_column(sa.Date, nullable=False)

    incoming_good: Mapped[IncomingGood] = relationship(back_populates="items")

    __table_args__ = (
        sa.CheckConstraint("qty > 0", name="chk_incoming_good_items_qty"),
        sa.Index(
            "ix_incoming_good_items_key_date", "company_code", "item_type", "item_code", "trx_date"
        ),
    )
