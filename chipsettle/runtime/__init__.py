"""
Component wiring for callers that want the whole pipeline.
"""

from chipsettle.runtime.context import SettlementContext, SettlementRun

__all__ = [
    "SettlementContext",
    "SettlementRun",
]
