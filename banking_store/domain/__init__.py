"""
Domain package for the banking stage results store.

Exports the stored record shapes, observation events and query result models.
Keep this package focused on data definitions and validation concerns.
"""

from banking_store.domain.models import (
    AccountUse,
    BlockObservation,
    BlockRecord,
    BlockSummary,
    LockedAccount,
    SlotRange,
    TransactionErrorEntry,
    TransactionObservation,
    TransactionRecord,
    TransactionWithBlock,
)

__all__ = [
    "AccountUse",
    "BlockObservation",
    "BlockRecord",
    "BlockSummary",
    "LockedAccount",
    "SlotRange",
    "TransactionErrorEntry",
    "TransactionObservation",
    "TransactionRecord",
    "TransactionWithBlock",
]
