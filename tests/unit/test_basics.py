from time import sleep

import pytest

from banking_store import config
from banking_store.config import Settings
from banking_store.domain.models import BlockObservation, TransactionObservation, parse_model
from banking_store.infrastructure.db_factory import build_dsn, qualified_table
from banking_store.utils import profiler
from scripts import generate_data


def test_get_settings_defaults():
    settings = config.get_settings()
    assert settings.db_host == "localhost"
    assert settings.db_port == 5432
    assert settings.db_schema == "banking_stage_results"
    assert settings.ingest_conflict_policy in ("ignore", "raise")
    assert settings.ingest_retry_attempts > 0
    assert settings.query_batch_size > 0


def test_settings_reject_unsafe_schema_name():
    with pytest.raises(Exception):
        Settings(db_schema="public; drop")


def test_build_dsn_uses_settings():
    settings = Settings(db_user="u", db_password="p", db_host="h", db_port=6543, db_name="d")
    assert build_dsn(settings) == "postgresql://u:p@h:6543/d"


def test_build_dsn_passes_tls_options():
    settings = Settings(
        db_user="u",
        db_password="p",
        db_host="h",
        db_port=5432,
        db_name="d",
        db_sslmode="verify-full",
        db_sslrootcert="/etc/ssl/ca.pem",
    )
    assert build_dsn(settings) == (
        "postgresql://u:p@h:5432/d?sslmode=verify-full&sslrootcert=%2Fetc%2Fssl%2Fca.pem"
    )


def test_settings_reject_unknown_sslmode():
    with pytest.raises(Exception):
        Settings(db_sslmode="sometimes")


def test_qualified_table_quotes_identifiers():
    assert qualified_table("banking_stage_results", "blocks") == '"banking_stage_results"."blocks"'
    with pytest.raises(ValueError):
        qualified_table("Banking", "blocks")
    with pytest.raises(ValueError):
        qualified_table("ok", 'blocks"--')


def test_profile_block_measures_time():
    with profiler.profile_block("sleep") as stats:
        sleep(0.05)
    assert stats.duration_seconds >= 0.05
    assert isinstance(stats.cpu_percent, float)
    assert stats.rss_after_bytes is not None
    assert stats.as_dict()["label"] == "sleep"


def test_profile_block_without_resource_sampling():
    with profiler.profile_block("quiet", sample_resources=False) as stats:
        pass
    assert stats.cpu_percent is None
    assert stats.rss_before_bytes is None


def test_generated_observations_are_valid_and_deterministic():
    blocks, transactions = generate_data._generate_observations(
        slots=5, txs_per_slot=4, seed=123, start_slot=1_000
    )
    again, _ = generate_data._generate_observations(
        slots=5, txs_per_slot=4, seed=123, start_slot=1_000
    )

    assert blocks == again
    assert [b["slot"] for b in blocks] == list(range(1_000, 1_005))
    assert len(transactions) >= 20

    for raw in blocks:
        block = parse_model(BlockObservation, raw)
        assert block.total_cu_used <= block.total_cu_requested
    for raw in transactions:
        parse_model(TransactionObservation, raw)

    first_seen = [t for t in transactions if "utc_timestamp" in t]
    assert len(first_seen) == 20
