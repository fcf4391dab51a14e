"""
Session data sources.
"""

from chipsettle.sources.base import SessionDataSource
from chipsettle.sources.bounded import BoundedReader
from chipsettle.sources.memory import InMemorySource
from chipsettle.sources.snapshot import JsonSnapshotSource

__all__ = [
    "SessionDataSource",
    "BoundedReader",
    "InMemorySource",
    "JsonSnapshotSource",
]
