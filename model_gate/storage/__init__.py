"""
Persistence for the usage ledger and the approval queue.
"""

from .interface import ApprovalStore, UsageStore
from .memory import MemoryApprovalStore, MemoryUsageStore
from .repository import SqliteApprovalStore, SqliteUsageStore

__all__ = [
    "ApprovalStore",
    "UsageStore",
    "MemoryApprovalStore",
    "MemoryUsageStore",
    "SqliteApprovalStore",
    "SqliteUsageStore",
]
