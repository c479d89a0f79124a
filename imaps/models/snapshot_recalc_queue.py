# imaps/models/snapshot_recalc_queue.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from imaps.db.base import Base


class SnapshotRecalcQueue(Base):
    """
    快照重算队列（延迟处理 / 批量导入 / 后台重试的死信）。

    状态机：PENDING -> PROCESSING -> DONE
                                 \\-> PENDING（重试，next_attempt_at 退避）
                                 \\-> FAILED（attempts 用尽，死信）
    优先级：数值越大越先处理；同优先级按 queued_at 先进先出。
    """

    __tablename__ = "snapshot_recalc_queue"

    # SQLite 只有 INTEGER PRIMARY KEY 才自增
    id: Mapped[int] = mapped_column(
        sa.BigInteger().with_variant(sa.Integer, "sqlite"), primary_key=True, autoincrement=True
    )

    company_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    item_type: Mapped[str] = mapped_column(sa.String(10), nullable=False)
    item_code: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    item_name: Mapped[str] = mapped_column(sa.String(200), nullable=False, default="")
    uom: Mapped[str] = mapped_column(sa.String(20), nullable=False, default="")
    recalc_date: Mapped[date] = mapped_column(sa.Date, nullable=False)

    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="PENDING")
    priority: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    reason: Mapped[Optional[str]] = mapped_column(sa.String(500), nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    queued_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'DONE', 'FAILED')",
            name="chk_snapshot_recalc_queue_status",
        ),
        sa.Index("ix_recalc_queue_status", "status", "priority", "queued_at"),
        sa.Index("ix_recalc_queue_key", "company_code", "item_type", "item_code", "recalc_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<RecalcQueue id={self.id} c={self.company_code} {self.item_type}/{self.item_code} "
            f"d={self.recalc_date} status={self.status} prio={self.priority} attempts={self.attempts}>"
        )
