# imaps/models/beginning_balance.py
from __future__ import annotations

from datetime import date
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from imaps.db.base import Base
from imaps.models._mixins import QTY, SoftDeleteMixin, TimestampMixin


class BeginningBalance(Base, TimestampMixin, SoftDeleteMixin):
    """
    期初库存（切换上线时的截止日结余）。

    balance_date 当天的快照期初 = qty；截止日之前不追踪历史。
    每个 (company, item_type, item_code) 只允许一条未删除记录。
    """

    __tablename__ = "beginning_balances"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    item_type: Mapped[str] = mapped_column(sa.String(10), nullable=False)
    item_code: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    item_name: Mapped[str] = mapped_column(sa.String(200), nullable=False, default="")
    uom: Mapped[str] = mapped_column(sa.String(20), nullable=False, default="")
    qty: Mapped[Decimal] = mapped_column(QTY, nullable=False, default=Decimal("0"))
    balance_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    remarks: Mapped[str | None] = mapped_column(sa.String(500), nullable=True)

    __table_args__ = (
        sa.CheckConstraint("qty >= 0", name="chk_beginning_balances_qty"),
        sa.Index(
            "uq_beginning_balances_key_active",
            "company_code",
            "item_type",
            "item_code",
            unique=True,
            postgresql_where=sa.text("deleted_at IS NULL"),
            sqlite_where=sa.text("deleted_at IS NULL"),
        ),
    )
