# imaps/schemas/snapshot.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from imaps.models.enums import ItemType


class _Base(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore", populate_by_name=True)


class SnapshotOut(_Base):
    """
    每日结余快照行。

    incoming / outgoing 为报表口径的合计（入库+产出 / 出库+领料），明细列一并返回。
    """

    company_code: int
    item_type: str
    item_code: str
    item_name: str
    uom: str
    snapshot_date: date

    opening_balance: Decimal
    incoming_qty: Decimal
    outgoing_qty: Decimal
    material_usage_qty: Decimal
    production_qty: Decimal
    adjustment_qty: Decimal
    closing_balance: Decimal

    inbound_qty: Decimal
    outbound_qty: Decimal

    calculation_method: str
    calculated_at: Optional[datetime] = None

    model_config = _Base.model_config | {
        "json_schema_extra": {
            "example": {
                "company_code": 1310,
                "item_type": "ROH",
                "item_code": "RM-001",
                "item_name": "Resin",
                "uom": "KG",
                "snapshot_date": "2024-01-02",
                "opening_balance": "100.000",
                "incoming_qty": "0.000",
                "outgoing_qty": "30.000",
                "material_usage_qty": "0.000",
                "production_qty": "0.000",
                "adjustment_qty": "0.000",
                "closing_balance": "70.000",
                "inbound_qty": "0.000",
                "outbound_qty": "30.000",
                "calculation_method": "TRANSACTION",
            }
        }
    }


class SnapshotListOut(_Base):
    company_code: int
    item_type: str
    item_code: str
    rows: list[SnapshotOut] = Field(default_factory=list)


class RecalculateIn(_Base):
    """手工触发：从 from_date 起 upsert + 级联。"""

    company_code: Annotated[int, Field(ge=1)]
    item_type: ItemType
    item_code: Annotated[str, Field(min_length=1, max_length=50)]
    from_date: date
    item_name: Annotated[str, Field(max_length=200)] = ""
    uom: Annotated[str, Field(max_length=20)] = ""
    mode: Literal["inline", "queue"] = "inline"
    reason: Annotated[str, Field(max_length=500)] = "manual"


class RecalculateOut(_Base):
    mode: str
    company_code: int
    item_type: str
    item_code: str
    from_date: date
    operation: Optional[str] = None
    closing_balance: Optional[Decimal] = None
    cascaded: int = 0
    queue_id: Optional[int] = None


__all__ = ["SnapshotOut", "SnapshotListOut", "RecalculateIn", "RecalculateOut"]
