"""
Utilities package for the banking stage results store.

Exports shared helpers for logging and profiling.
Keep this package lightweight and free of domain-specific logic.
"""

from banking_store.utils.logging import configure_logging, get_logger
from banking_store.utils.profiler import ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
]
