"""imaps baseline: ledger source tables, beginning balances, daily snapshot, recalc queue

Revision ID: a1c0e3f2b001
Revises:
Create Date: 2024-01-01 00:00:00

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c0e3f2b001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


QTY = sa.Numeric(15, 3)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _deleted_at() -> sa.Column:
    return sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True)


def _line_columns() -> list[sa.Column]:
    return [
        sa.Column("item_type", sa.String(10), nullable=False),
        sa.Column("item_code", sa.String(50), nullable=False),
        sa.Column("item_name", sa.String(200), nullable=False, server_default=""),
        sa.Column("uom", sa.String(20), nullable=False, server_default=""),
        sa.Column("qty", QTY, nullable=False),
        *_timestamps(),
        _deleted_at(),
    ]


def _header(name: str, *extra: sa.Column) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("wms_id", sa.String(100), nullable=False),
        sa.Column("company_code", sa.Integer, nullable=False),
        sa.Column("trx_date", sa.Date, nullable=False),
        *extra,
        *_timestamps(),
        _deleted_at(),
        sa.UniqueConstraint("company_code", "wms_id", name=f"uq_{name}_company_wms"),
    )


def upgrade() -> None:
    # ---- 入库 / 出库 ----
    for kind in ("incoming", "outgoing"):
        header = f"{kind}_goods"
        items = f"{kind}_good_items"
        _header(header, sa.Column("ppkek_number", sa.String(50), nullable=True))
        op.create_index(f"ix_{header}_company_date", header, ["company_code", "trx_date"])
        op.create_table(
            items,
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column(f"{kind}_good_id", sa.Integer, sa.ForeignKey(f"{header}.id"), nullable=False),
            sa.Column("company_code", sa.Integer, nullable=False),
            sa.Column("trx_date", sa.Date, nullable=False),
            *_line_columns(),
            sa.CheckConstraint("qty > 0", name=f"chk_{items}_qty"),
        )
        op.create_index(
            f"ix_{items}_key_date", items, ["company_code", "item_type", "item_code", "trx_date"]
        )

    # ---- 领料 ----
    _header(
        "material_usages",
        sa.Column("work_order_number", sa.String(50), nullable=True),
        sa.Column("reversal", sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_material_usages_company_date", "material_usages", ["company_code", "trx_date"])
    op.create_table(
        "material_usage_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "material_usage_id", sa.Integer, sa.ForeignKey("material_usages.id"), nullable=False
        ),
        sa.Column("ppkek_number", sa.String(50), nullable=True),
        *_line_columns(),
        sa.CheckConstraint("qty > 0", name="chk_material_usage_items_qty"),
    )
    op.create_index("ix_material_usage_items_usage_id", "material_usage_items", ["material_usage_id"])
    op.create_index("ix_material_usage_items_item", "material_usage_items", ["item_type", "item_code"])

    # ---- 产出 ----
    _header(
        "production_outputs",
        sa.Column("reversal", sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index(
        "ix_production_outputs_company_date", "production_outputs", ["company_code", "trx_date"]
    )
    op.create_table(
        "production_output_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "production_output_id",
            sa.Integer,
            sa.ForeignKey("production_outputs.id"),
            nullable=False,
        ),
        *_line_columns(),
        sa.CheckConstraint("qty > 0", name="chk_production_output_items_qty"),
        sa.CheckConstraint(
            "item_type IN ('FERT', 'HALB', 'SCRAP')", name="chk_production_output_items_type"
        ),
    )
    op.create_index(
        "ix_production_output_items_output_id", "production_output_items", ["production_output_id"]
    )
    op.create_index(
        "ix_production_output_items_item", "production_output_items", ["item_type", "item_code"]
    )

    # ---- 调整 ----
    _header("adjustments")
    op.create_table(
        "adjustment_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("adjustment_id", sa.Integer, sa.ForeignKey("adjustments.id"), nullable=False),
        sa.Column("company_code", sa.Integer, nullable=False),
        sa.Column("trx_date", sa.Date, nullable=False),
        sa.Column("adjustment_type", sa.String(8), nullable=False),
        *_line_columns(),
        sa.CheckConstraint("qty > 0", name="chk_adjustment_items_qty"),
        sa.CheckConstraint("adjustment_type IN ('GAIN', 'LOSS')", name="chk_adjustment_items_type"),
    )
    op.create_index(
        "ix_adjustment_items_key_date",
        "adjustment_items",
        ["company_code", "item_type", "item_code", "trx_date"],
    )

    # ---- 期初 ----
    op.create_table(
        "beginning_balances",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("company_code", sa.Integer, nullable=False),
        sa.Column("item_type", sa.String(10), nullable=False),
        sa.Column("item_code", sa.String(50), nullable=False),
        sa.Column("item_name", sa.String(200), nullable=False, server_default=""),
        sa.Column("uom", sa.String(20), nullable=False, server_default=""),
        sa.Column("qty", QTY, nullable=False, server_default=sa.text("0")),
        sa.Column("balance_date", sa.Date, nullable=False),
        sa.Column("remarks", sa.String(500), nullable=True),
        *_timestamps(),
        _deleted_at(),
        sa.CheckConstraint("qty >= 0", name="chk_beginning_balances_qty"),
    )
    op.create_index(
        "uq_beginning_balances_key_active",
        "beginning_balances",
        ["company_code", "item_type", "item_code"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
        sqlite_where=sa.text("deleted_at IS NULL"),
    )

    # ---- 每日快照 ----
    op.create_table(
        "stock_daily_snapshot",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer, "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("company_code", sa.Integer, nullable=False),
        sa.Column("item_type", sa.String(10), nullable=False),
        sa.Column("item_code", sa.String(50), nullable=False),
        sa.Column("item_name", sa.String(200), nullable=False, server_default=""),
        sa.Column("uom", sa.String(20), nullable=False, server_default=""),
        sa.Column("snapshot_date", sa.Date, nullable=False),
        sa.Column("opening_balance", QTY, nullable=False, server_default=sa.text("0")),
        sa.Column("incoming_qty", QTY, nullable=False, server_default=sa.text("0")),
        sa.Column("outgoing_qty", QTY, nullable=False, server_default=sa.text("0")),
        sa.Column("material_usage_qty", QTY, nullable=False, server_default=sa.text("0")),
        sa.Column("production_qty", QTY, nullable=False, server_default=sa.text("0")),
        sa.Column("adjustment_qty", QTY, nullable=False, server_default=sa.text("0")),
        sa.Column("closing_balance", QTY, nullable=False, server_default=sa.text("0")),
        sa.Column("calculation_method", sa.String(16), nullable=False),
        sa.Column(
            "calculated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "company_code", "item_type", "item_code", "snapshot_date", name="uk_stock_snapshot"
        ),
    )
    op.create_index(
        "ix_stock_snapshot_company_date", "stock_daily_snapshot", ["company_code", "snapshot_date"]
    )
    op.create_index(
        "ix_stock_snapshot_item_date", "stock_daily_snapshot", ["item_code", "snapshot_date"]
    )

    # ---- 重算队列 ----
    op.create_table(
        "snapshot_recalc_queue",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer, "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("company_code", sa.Integer, nullable=False),
        sa.Column("item_type", sa.String(10), nullable=False),
        sa.Column("item_code", sa.String(50), nullable=False),
        sa.Column("item_name", sa.String(200), nullable=False, server_default=""),
        sa.Column("uom", sa.String(20), nullable=False, server_default=""),
        sa.Column("recalc_date", sa.Date, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("priority", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column(
            "queued_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'DONE', 'FAILED')",
            name="chk_snapshot_recalc_queue_status",
        ),
    )
    op.create_index(
        "ix_recalc_queue_status", "snapshot_recalc_queue", ["status", "priority", "queued_at"]
    )
    op.create_index(
        "ix_recalc_queue_key",
        "snapshot_recalc_queue",
        ["company_code", "item_type", "item_code", "recalc_date"],
    )


def downgrade() -> None:
    op.drop_table("snapshot_recalc_queue")
    op.drop_table("stock_daily_snapshot")
    op.drop_index("uq_beginning_balances_key_active", table_name="beginning_balances")
    op.drop_table("beginning_balances")
    op.drop_table("adjustment_items")
    op.drop_table("adjustments")
    op.drop_table("production_output_items")
    op.drop_table("production_outputs")
    op.drop_table("material_usage_items")
    op.drop_table("material_usages")
    op.drop_table("outgoing_good_items")
    op.drop_table("outgoing_goods")
    op.drop_table("incoming_good_items")
    op.drop_table("incoming_goods")
