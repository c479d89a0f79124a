# imaps/services/balance_calculator.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

# 与 NUMERIC(15,3) 一致
QTY_SCALE = Decimal("0.001")
ZERO = Decimal("0.000")


def q3(value: Any) -> Decimal:
    """
    数量统一成 3 位小数的 Decimal。

    float 先转 str 再进 Decimal，避免二进制误差被带进账里；None 视为 0。
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, float):
        d = Decimal(str(value))
    else:
        d = Decimal(value)
    return d.quantize(QTY_SCALE, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Movements:
    """
    某物料某日的台账汇总（全部已排除软删除行）。

    incoming / production 为入库方向，outgoing / material_usage 为出库方向，
    冲销单已在汇总时取反；adjustment 有符号（GAIN - LOSS）。
    """

    incoming: Decimal = ZERO
    outgoing: Decimal = ZERO
    material_usage: Decimal = ZERO
    production: Decimal = ZERO
    adjustment: Decimal = ZERO

    @classmethod
    def of(cls, **values: Any) -> "Movements":
        return cls(**{k: q3(v) for k, v in values.items()})

    @property
    def inbound(self) -> Decimal:
        return self.incoming + self.production

    @property
    def outbound(self) -> Decimal:
        return self.outgoing + self.material_usage

    @property
    def net(self) -> Decimal:
        return self.inbound - self.outbound + self.adjustment

    @property
    def is_empty(self) -> bool:
        return not any(
            (self.incoming, self.outgoing, self.material_usage, self.production, self.adjustment)
        )


@dataclass(frozen=True)
class SnapshotFigures:
    """一行快照的全部数字（写库前的纯值对象）。"""

    opening: Decimal
    incoming: Decimal
    outgoing: Decimal
    material_usage: Decimal
    production: Decimal
    adjustment: Decimal
    closing: Decimal

    @property
    def is_negative(self) -> bool:
        return self.closing < 0

    def as_columns(self) -> dict[str, Decimal]:
        return {
            "opening_balance": self.opening,
            "incoming_qty": self.incoming,
            "outgoing_qty": self.outgoing,
            "material_usage_qty": self.material_usage,
            "production_qty": self.production,
            "adjustment_qty": self.adjustment,
            "closing_balance": self.closing,
        }

    @classmethod
    def from_row(cls, row: Any) -> "SnapshotFigures":
        return cls(
            opening=q3(row.opening_balance),
            incoming=q3(row.incoming_qty),
            outgoing=q3(row.outgoing_qty),
            material_usage=q3(row.material_usage_qty),
            production=q3(row.production_qty),
            adjustment=q3(row.adjustment_qty),
            closing=q3(row.closing_balance),
        )


def compute_snapshot(
    prior_closing: Any,
    movements: Movements,
    *,
    seed: Optional[Any] = None,
) -> SnapshotFigures:
    """
    单日结余计算（纯函数，不碰数据库）：

      opening = seed（该日正好是期初日）否则 prior_closing
      closing = opening + (incoming + production) - (outgoing + material_usage) + adjustment

    结果允许为负，是否拒绝由库存检查决定；负数照常落库，由重算服务记告警。
    """
    opening = q3(seed) if seed is not None else q3(prior_closing)
    closing = q3(opening + movements.inbound - movements.outbound + movements.adjustment)
    return SnapshotFigures(
        opening=opening,
        incoming=q3(movements.incoming),
        outgoing=q3(movements.outgoing),
        material_usage=q3(movements.material_usage),
        production=q3(movements.production),
        adjustment=q3(movements.adjustment),
        closing=closing,
    )
