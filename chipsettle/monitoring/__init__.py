from chipsettle.monitoring.models import (
    AdjustmentType,
    AuditEntry,
    AutoCorrection,
    BalanceSample,
    ManualAdjustment,
    MonitorState,
    PlayerCorrection,
    SettlementWarning,
    WarningCode,
    WarningStatus,
)
from chipsettle.monitoring.monitor import WarningMonitor, classify, split_by_chips

__all__ = [
    "AdjustmentType",
    "AuditEntry",
    "AutoCorrection",
    "BalanceSample",
    "ManualAdjustment",
    "MonitorState",
    "PlayerCorrection",
    "SettlementWarning",
    "WarningCode",
    "WarningStatus",
    "WarningMonitor",
    "classify",
    "split_by_chips",
]
