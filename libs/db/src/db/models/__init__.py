"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the transaction-sync models used by ``finance_sync``.
"""

from .finance import (
    Base,
    FsCategoryMapping,
    FsCategoryRule,
    FsRecurringExclusion,
    FsSyncEvent,
    FsTransaction,
)

__all__ = [
    "Base",
    "FsCategoryMapping",
    "FsCategoryRule",
    "FsRecurringExclusion",
    "FsSyncEvent",
    "FsTransaction",
]
