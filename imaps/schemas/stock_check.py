# imaps/schemas/stock_check.py
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from imaps.models.enums import ItemType, LedgerSource

Qty = Annotated[Decimal, Field(max_digits=15, decimal_places=3)]


class _Base(BaseModel):
    """允许 ORM / dataclass 输出、忽略多余字段"""

    model_config = ConfigDict(from_attributes=True, extra="ignore")


# ========= 单物料可用量 =========
class StockCheckIn(_Base):
    company_code: Annotated[int, Field(ge=1)]
    item_type: ItemType
    item_code: Annotated[str, Field(min_length=1, max_length=50)]
    qty_requested: Annotated[Qty, Field(gt=0)]
    snapshot_date: date

    @field_validator("item_code")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("item_code 不能为空")
        return v


class StockCheckOut(_Base):
    item_type: str
    item_code: str
    qty_requested: Decimal
    current_stock: Decimal
    available: bool
    shortfall: Decimal
    as_of_date: Optional[date] = None


# ========= 批量 =========
class BatchStockCheckLine(_Base):
    item_type: ItemType
    item_code: Annotated[str, Field(min_length=1, max_length=50)]
    qty_requested: Annotated[Qty, Field(gt=0)]


class BatchStockCheckIn(_Base):
    company_code: Annotated[int, Field(ge=1)]
    snapshot_date: date
    items: Annotated[list[BatchStockCheckLine], Field(min_length=1)]


class BatchStockCheckOut(_Base):
    all_available: bool
    results: list[StockCheckOut] = Field(default_factory=list)


# ========= 改 / 删入库 =========
class BalanceChangeCheckIn(_Base):
    company_code: Annotated[int, Field(ge=1)]
    item_type: ItemType
    item_code: Annotated[str, Field(min_length=1, max_length=50)]
    old_qty: Annotated[Qty, Field(ge=0)]
    new_qty: Annotated[Qty, Field(ge=0)]
    snapshot_date: date
    exclude_transaction_id: Optional[int] = Field(default=None, ge=1)
    source: LedgerSource = LedgerSource.INCOMING


class BalanceChangeCheckOut(_Base):
    item_type: str
    item_code: str
    old_qty: Decimal
    new_qty: Decimal
    current_stock: Decimal
    projected_stock: Decimal
    available: bool
    shortfall: Decimal
    first_negative_date: Optional[date] = None
    scanned_days: int = 0


__all__ = [
    "StockCheckIn",
    "StockCheckOut",
    "BatchStockCheckLine",
    "BatchStockCheckIn",
    "BatchStockCheckOut",
    "BalanceChangeCheckIn",
    "BalanceChangeCheckOut",
]
