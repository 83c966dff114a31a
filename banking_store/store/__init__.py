"""Read side: query API, async streaming and clustering maintenance."""

from banking_store.store.maintenance import MaintenanceReport, run_cluster_pass
from banking_store.store.queries import AnalyticalStore, RecordStream

__all__ = ["AnalyticalStore", "MaintenanceReport", "RecordStream", "run_cluster_pass"]
