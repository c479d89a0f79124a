# imaps/models/enums.py
from __future__ import annotations

from enum import StrEnum


class ItemType(StrEnum):
    """
    物料分类（海关保税区口径）：

    - ROH     原材料
    - HALB    半成品 / WIP
    - FERT    成品
    - HIBE    资本货物（HIBE_M 机器 / HIBE_E 设备 / HIBE_T 工具）
    - SCRAP   边角料 / 废料
    """

    ROH = "ROH"
    HALB = "HALB"
    FERT = "FERT"
    HIBE = "HIBE"
    HIBE_M = "HIBE_M"
    HIBE_E = "HIBE_E"
    HIBE_T = "HIBE_T"
    SCRAP = "SCRAP"


class AdjustmentType(StrEnum):
    GAIN = "GAIN"
    LOSS = "LOSS"


class RecalcStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


class CalculationMethod(StrEnum):
    """
    快照行最近一次由谁写入：

    - TRANSACTION  单据提交后的单日 upsert
    - CASCADE      回溯单据引发的向后级联
    - QUEUE        队列消费
    - MANUAL       手工 / 对账修复
    """

    TRANSACTION = "TRANSACTION"
    CASCADE = "CASCADE"
    QUEUE = "QUEUE"
    MANUAL = "MANUAL"


class LedgerSource(StrEnum):
    """台账来源表（库存变动的出处）。"""

    INCOMING = "INCOMING"
    OUTGOING = "OUTGOING"
    MATERIAL_USAGE = "MATERIAL_USAGE"
    PRODUCTION = "PRODUCTION"
    ADJUSTMENT = "ADJUSTMENT"
    BEGINNING = "BEGINNING"

    @property
    def reduces_stock(self) -> bool:
        return self in (LedgerSource.OUTGOING, LedgerSource.MATERIAL_USAGE)
