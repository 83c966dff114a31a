from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from banking_store.domain.models import BlockObservation, TransactionObservation
from banking_store.ingest.collector import ObservationCollector, fold_observations
from banking_store.ingest.writer import WriteResult

SIG_A = "A" * 88
SIG_B = "B" * 88
T1 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 1, 12, 1, tzinfo=timezone.utc)
FLUSH_LAG = 10


class _FakeWriter:
    def __init__(self, fail_next: bool = False) -> None:
        self.settings = SimpleNamespace(ingest_flush_slot_lag=300)
        self.transactions: list[TransactionObservation] = []
        self.blocks: list[BlockObservation] = []
        self.fail_next = fail_next

    def record_transactions(self, observations):
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("store unavailable")
        self.transactions.extend(observations)
        return [WriteResult(key=obs.key, inserted=True) for obs in observations]

    def record_blocks(self, observations):
        self.blocks.extend(observations)
        return [WriteResult(key=obs.key, inserted=True) for obs in observations]


def _tx(signature: str = SIG_A, slot: int = 100, **fields) -> TransactionObservation:
    return TransactionObservation(signature=signature, first_notification_slot=slot, **fields)


def test_fold_applies_non_null_fields_and_keeps_first_timestamp():
    first = _tx(utc_timestamp=T1, cu_requested=200, is_confirmed=False)
    later = _tx(utc_timestamp=T2, is_confirmed=True, processed_slot=101)

    folded = fold_observations(first, later)

    assert folded.utc_timestamp == T1
    assert folded.cu_requested == 200
    assert folded.is_confirmed is True
    assert folded.processed_slot == 101


def test_fold_adopts_timestamp_when_first_had_none():
    folded = fold_observations(_tx(is_executed=True), _tx(utc_timestamp=T2))
    assert folded.utc_timestamp == T2
    assert folded.is_executed is True


def test_default_lag_comes_from_writer_settings():
    assert ObservationCollector(_FakeWriter()).flush_slot_lag == 300


def test_notifications_for_same_key_are_buffered_as_one():
    collector = ObservationCollector(_FakeWriter(), flush_slot_lag=FLUSH_LAG)
    collector.add_transaction(_tx(utc_timestamp=T1))
    collector.add_transaction(_tx(is_confirmed=True))
    collector.add_transaction(_tx(slot=101, utc_timestamp=T1))

    assert collector.pending_count == 2


def test_block_flushes_only_transactions_older_than_lag():
    writer = _FakeWriter()
    collector = ObservationCollector(writer, flush_slot_lag=FLUSH_LAG)
    collector.add_transaction(_tx(SIG_A, 100, utc_timestamp=T1))
    collector.add_transaction(_tx(SIG_B, 105, utc_timestamp=T1))

    collector.add_block(BlockObservation(slot=111))

    assert [obs.key for obs in writer.transactions] == [(SIG_A, 100)]
    assert collector.pending_count == 1
    assert collector.latest_slot == 111


def test_error_events_fill_block_error_count():
    writer = _FakeWriter()
    collector = ObservationCollector(writer, flush_slot_lag=FLUSH_LAG)
    collector.add_transaction(_tx(SIG_A, 100, errors="AccountInUse"), error_slot=100)
    collector.add_transaction(_tx(SIG_B, 100, errors="AccountInUse"), error_slot=100)
    assert collector.errors_for_slot(100) == 2

    collector.add_block(BlockObservation(slot=100, total_cu_used=5))

    assert writer.blocks[0].banking_stage_errors == 2
    assert writer.blocks[0].total_cu_used == 5
    assert collector.errors_for_slot(100) == 0


def test_explicit_block_error_count_wins_over_counted_one():
    writer = _FakeWriter()
    collector = ObservationCollector(writer, flush_slot_lag=FLUSH_LAG)
    collector.add_transaction(_tx(errors="x"), error_slot=100)

    collector.add_block(BlockObservation(slot=100, banking_stage_errors=7))

    assert writer.blocks[0].banking_stage_errors == 7


def test_flush_all_drains_the_buffer():
    writer = _FakeWriter()
    collector = ObservationCollector(writer, flush_slot_lag=FLUSH_LAG)
    collector.add_transaction(_tx(SIG_A, 100, utc_timestamp=T1))
    collector.add_transaction(_tx(SIG_B, 100, utc_timestamp=T1))

    results = collector.flush_all()

    assert len(results) == 2
    assert collector.pending_count == 0
    assert collector.flush_all() == []


def test_failed_flush_keeps_observations_buffered():
    writer = _FakeWriter(fail_next=True)
    collector = ObservationCollector(writer, flush_slot_lag=FLUSH_LAG)
    collector.add_transaction(_tx(utc_timestamp=T1, cu_requested=10))

    with pytest.raises(RuntimeError):
        collector.flush_all()
    assert collector.pending_count == 1

    collector.flush_all()
    assert writer.transactions[0].cu_requested == 10
    assert writer.transactions[0].utc_timestamp == T1


class _FlakyBlockWriter(_FakeWriter):
    def __init__(self) -> None:
        super().__init__()
        self.fail_blocks = 1

    def record_blocks(self, observations):
        if self.fail_blocks:
            self.fail_blocks -= 1
            raise RuntimeError("store unavailable")
        return super().record_blocks(observations)


def test_error_count_survives_a_failed_block_write():
    writer = _FlakyBlockWriter()
    collector = ObservationCollector(writer, flush_slot_lag=FLUSH_LAG)
    collector.add_transaction(_tx(errors="AccountInUse"), error_slot=100)

    with pytest.raises(RuntimeError):
        collector.add_block(BlockObservation(slot=100))
    assert collector.errors_for_slot(100) == 1

    collector.add_block(BlockObservation(slot=100))

    assert writer.blocks[0].banking_stage_errors == 1
    assert collector.errors_for_slot(100) == 0


def test_error_after_block_is_written_is_dropped_not_buffered():
    writer = _FakeWriter()
    collector = ObservationCollector(writer, flush_slot_lag=FLUSH_LAG)
    collector.add_block(BlockObservation(slot=100))

    collector.add_transaction(_tx(errors="AccountInUse"), error_slot=100)
    collector.add_block(BlockObservation(slot=1_000))
    collector.flush_all()

    assert collector.errors_for_slot(100) == 0
    assert [b.banking_stage_errors for b in writer.blocks] == [None, None]
    assert collector.stats.late_error_events == 1
    assert writer.transactions[0].errors == "AccountInUse"


def test_error_counts_for_slots_without_block_expire():
    collector = ObservationCollector(_FakeWriter(), flush_slot_lag=FLUSH_LAG)
    collector.add_transaction(_tx(SIG_A, 50, errors="x"), error_slot=50)
    collector.add_transaction(_tx(SIG_B, 95, errors="x"), error_slot=95)

    collector.add_block(BlockObservation(slot=100))

    assert collector.errors_for_slot(50) == 0
    assert collector.errors_for_slot(95) == 1
    assert collector.stats.expired_error_slots == 1

    collector.add_transaction(_tx(SIG_A, 60, errors="x"), error_slot=60)
    assert collector.errors_for_slot(60) == 0
    assert collector.stats.late_error_events == 1


def test_stats_track_blocks_errors_and_flushes():
    collector = ObservationCollector(_FakeWriter(), flush_slot_lag=FLUSH_LAG)
    collector.add_transaction(_tx(SIG_A, 100, utc_timestamp=T1), error_slot=100)
    collector.add_transaction(_tx(SIG_B, 100, utc_timestamp=T1), error_slot=100)
    collector.add_block(BlockObservation(slot=100))
    collector.add_block(BlockObservation(slot=111))

    stats = collector.stats

    assert stats.blocks_recorded == 2
    assert stats.error_events == 2
    assert stats.last_block_errors == 0
    assert stats.transactions_flushed == 2
