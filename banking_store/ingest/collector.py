"""
In-process observation buffer sitting between the upstream collector and the
ingest writer.

Transaction notifications for the same key are folded together in memory and
only written once the key's first notification slot has fallen
`flush_slot_lag` slots behind the newest block seen, which turns a burst of
notifications into a single upsert. Banking-stage error events are counted
per slot; when that slot's block statistics arrive, the count fills
`banking_stage_errors` unless the caller already supplied it.

Error events that arrive after their slot's block was written, or for slots
more than `flush_slot_lag` behind the newest block, cannot be attributed any
more. They are logged, counted in `CollectorStats`, and dropped.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from banking_store.domain.models import BlockObservation, TransactionObservation
from banking_store.ingest.writer import IngestWriter, WriteResult
from banking_store.utils.logging import get_logger

log = get_logger(__name__)


def fold_observations(
    current: TransactionObservation, update: TransactionObservation
) -> TransactionObservation:
    """Apply `update` onto `current` with the writer's merge rule."""
    changes = update.provided_fields()
    if current.utc_timestamp is None and update.utc_timestamp is not None:
        changes["utc_timestamp"] = update.utc_timestamp
    return current.model_copy(update=changes)


@dataclass(frozen=True)
class CollectorStats:
    """Point-in-time counters for dashboards."""

    blocks_recorded: int = 0
    error_events: int = 0
    late_error_events: int = 0
    expired_error_slots: int = 0
    last_block_errors: int = 0
    transactions_flushed: int = 0


class ObservationCollector:
    """
    Buffers transaction observations and per-slot error counts.

    Parameters
    ----------
    writer : IngestWriter
        Destination for flushed observations.
    flush_slot_lag : int, optional
        How many slots behind the newest block a transaction's first
        notification must be before it is flushed. Also bounds how long
        error counts for a slot without a block are kept. Defaults to settings.
    """

    def __init__(self, writer: IngestWriter, flush_slot_lag: Optional[int] = None) -> None:
        self.writer = writer
        self.flush_slot_lag = (
            flush_slot_lag if flush_slot_lag is not None else writer.settings.ingest_flush_slot_lag
        )
        self._lock = threading.Lock()
        self._pending: dict[tuple[str, int], TransactionObservation] = {}
        self._errors_by_slot: defaultdict[int, int] = defaultdict(int)
        self._written_slots: set[int] = set()
        self._counters: dict[str, int] = dict.fromkeys(CollectorStats.__dataclass_fields__, 0)
        self.latest_slot = 0

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def stats(self) -> CollectorStats:
        with self._lock:
            return CollectorStats(**self._counters)

    def errors_for_slot(self, slot: int) -> int:
        with self._lock:
            return self._errors_by_slot.get(slot, 0)

    def _horizon(self) -> int:
        return self.latest_slot - self.flush_slot_lag

    def add_transaction(
        self, observation: TransactionObservation, error_slot: Optional[int] = None
    ) -> None:
        """
        Buffer a transaction notification.

        `error_slot` marks the notification as a banking-stage error seen at
        that slot, counted towards the slot's `banking_stage_errors`.
        """
        with self._lock:
            existing = self._pending.get(observation.key)
            self._pending[observation.key] = (
                observation if existing is None else fold_observations(existing, observation)
            )
            if error_slot is None:
                return
            self._counters["error_events"] += 1
            if error_slot in self._written_slots or error_slot < self._horizon():
                self._counters["late_error_events"] += 1
                late = True
            else:
                self._errors_by_slot[error_slot] += 1
                late = False
        if late:
            log.warning(
                "Dropping banking stage error for an already recorded slot",
                extra={"slot": error_slot, "latest_slot": self.latest_slot},
            )

    def add_block(self, observation: BlockObservation) -> WriteResult:
        """
        Write a block's statistics, then flush transactions that are now old enough.

        The slot's error count is only released once the write succeeded, so a
        failed call can be retried with the same observation.
        """
        with self._lock:
            counted = self._errors_by_slot.get(observation.slot)
        if observation.banking_stage_errors is None and counted is not None:
            observation = observation.model_copy(update={"banking_stage_errors": counted})
        result = self.writer.record_blocks([observation])[0]
        with self._lock:
            remaining = self._errors_by_slot.pop(observation.slot, 0)
            # events counted while the write was in flight
            missed = max(remaining - (counted or 0), 0)
            self._counters["late_error_events"] += missed
            self._written_slots.add(observation.slot)
            self.latest_slot = max(self.latest_slot, observation.slot)
            self._counters["blocks_recorded"] += 1
            self._counters["last_block_errors"] = observation.banking_stage_errors or 0
        if missed:
            log.warning(
                "Banking stage errors arrived while their block was written",
                extra={"slot": observation.slot, "count": missed},
            )
        self.flush_ready()
        return result

    def _expire_slots(self) -> None:
        with self._lock:
            horizon = self._horizon()
            self._written_slots = {slot for slot in self._written_slots if slot >= horizon}
            expired = [slot for slot in self._errors_by_slot if slot < horizon]
            for slot in expired:
                del self._errors_by_slot[slot]
            self._counters["expired_error_slots"] += len(expired)
        if expired:
            log.warning(
                "Dropping error counts for slots without a block",
                extra={"slots": expired, "latest_slot": self.latest_slot},
            )

    def _take(self, ready_only: bool) -> list[TransactionObservation]:
        with self._lock:
            if ready_only:
                keys = [
                    key
                    for key in self._pending
                    if self.latest_slot > key[1] + self.flush_slot_lag
                ]
            else:
                keys = list(self._pending)
            return [self._pending.pop(key) for key in keys]

    def _write(self, batch: list[TransactionObservation]) -> list[WriteResult]:
        if not batch:
            return []
        try:
            results = self.writer.record_transactions(batch)
        except Exception:
            # Put the batch back so a later flush can retry it.
            with self._lock:
                for obs in batch:
                    existing = self._pending.get(obs.key)
                    self._pending[obs.key] = obs if existing is None else fold_observations(obs, existing)
            raise
        with self._lock:
            self._counters["transactions_flushed"] += len(results)
        log.info(
            "Flushed transaction observations",
            extra={"count": len(results), "latest_slot": self.latest_slot},
        )
        return results

    def flush_ready(self) -> list[WriteResult]:
        """
        Write every buffered transaction whose first slot is older than the lag
        and forget error counts for slots that fell behind it.
        """
        self._expire_slots()
        return self._write(self._take(ready_only=True))

    def flush_all(self) -> list[WriteResult]:
        """Write everything still buffered (e.g. on shutdown)."""
        return self._write(self._take(ready_only=False))


__all__ = ["CollectorStats", "ObservationCollector", "fold_observations"]
