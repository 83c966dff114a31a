"""Ingest side: observation upserts and the in-process collector buffer."""

from banking_store.ingest.collector import CollectorStats, ObservationCollector
from banking_store.ingest.writer import IngestWriter, WriteResult

__all__ = ["CollectorStats", "IngestWriter", "ObservationCollector", "WriteResult"]
