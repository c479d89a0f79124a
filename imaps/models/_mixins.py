# imaps/models/_mixins.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

# 数量统一 NUMERIC(15,3)
QTY = sa.Numeric(15, 3)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class SoftDeleteMixin:
    # 非空即视为删除；所有结余计算都必须排除
    deleted_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class LedgerLineMixin(TimestampMixin, SoftDeleteMixin):
    """单据明细行的公共列：物料维度 + 非负数量（方向由来源表决定）。"""

    item_type: Mapped[str] = mapped_column(sa.String(10), nullable=False)
    item_code: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    item_name: Mapped[str] = mapped_column(sa.String(200), nullable=False, default="")
    uom: Mapped[str] = mapped_column(sa.String(20), nullable=False, default="")
    qty: Mapped[Decimal] = mapped_column(QTY, nullable=False)
