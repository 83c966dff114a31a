"""
Banking stage results store - storage and query engine for banking-stage monitoring.

Records, per submitted transaction, whether and when it was observed, confirmed
or dropped with an error, and aggregates per-block statistics (compute-unit
usage, lock contention, error counts) in PostgreSQL:

- Ingest writer with idempotent, field-level upsert of out-of-order observations
- Analytical store with slot/time clustered tables and a partial error index
- Versioned schema migrations and an out-of-band clustering pass
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

from banking_store.config import Settings, get_settings
from banking_store.domain.models import (
    BlockObservation,
    BlockRecord,
    BlockSummary,
    SlotRange,
    TransactionObservation,
    TransactionRecord,
    TransactionWithBlock,
)
from banking_store.errors import (
    ConflictError,
    NotFoundError,
    SchemaError,
    StoreError,
    ValidationError,
)
from banking_store.infrastructure.migrations import apply_migrations
from banking_store.ingest.collector import ObservationCollector
from banking_store.ingest.writer import IngestWriter, WriteResult
from banking_store.store.maintenance import MaintenanceReport, run_cluster_pass
from banking_store.store.queries import AnalyticalStore, RecordStream
from banking_store.utils.logging import configure_logging, get_logger

__all__ = [
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Domain
    "BlockObservation",
    "BlockRecord",
    "BlockSummary",
    "SlotRange",
    "TransactionObservation",
    "TransactionRecord",
    "TransactionWithBlock",
    # Errors
    "StoreError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "SchemaError",
    # Ingest
    "IngestWriter",
    "WriteResult",
    "ObservationCollector",
    # Store
    "AnalyticalStore",
    "RecordStream",
    "MaintenanceReport",
    "apply_migrations",
    "run_cluster_pass",
    # Logging
    "configure_logging",
    "get_logger",
]
