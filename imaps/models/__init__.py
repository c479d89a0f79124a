# imaps/models/__init__.py
from imaps.models.adjustment import Adjustment, AdjustmentItem
from imaps.models.beginning_balance import BeginningBalance
from imaps.models.incoming_good import IncomingGood, IncomingGoodItem
from imaps.models.material_usage import MaterialUsage, MaterialUsageItem
from imaps.models.outgoing_good import OutgoingGood, OutgoingGoodItem
from imaps.models.production_output import ProductionOutput, ProductionOutputItem
from imaps.models.snapshot_recalc_queue import SnapshotRecalcQueue
from imaps.models.stock_daily_snapshot import StockDailySnapshot

__all__ = [
    "Adjustment",
    "AdjustmentItem",
    "BeginningBalance",
    "IncomingGood",
    "IncomingGoodItem",
    "MaterialUsage",
    "MaterialUsageItem",
    "OutgoingGood",
    "OutgoingGoodItem",
    "ProductionOutput",
    "ProductionOutputItem",
    "SnapshotRecalcQueue",
    "StockDailySnapshot",
]
