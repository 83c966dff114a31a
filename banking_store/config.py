"""
Configuration settings for the banking stage results store.

Uses Pydantic Settings to load environment variables for database connections,
logging, ingestion retry/conflict behaviour, query batching and maintenance.
TLS options (`DB_SSLMODE`, `DB_SSLROOTCERT`, ...) are passed through to the DSN.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("banking_stage", alias="DB_NAME")
    db_schema: str = Field(
        "banking_stage_results", alias="DB_SCHEMA", pattern=r"^[a-z_][a-z0-9_]*$"
    )
    db_statement_timeout_ms: int = Field(30_000, alias="DB_STATEMENT_TIMEOUT_MS", ge=0)
    db_pool_min_size: int = Field(1, alias="DB_POOL_MIN_SIZE", ge=1)
    db_pool_max_size: int = Field(10, alias="DB_POOL_MAX_SIZE", ge=1)
    db_sslmode: Optional[
        Literal["disable", "allow", "prefer", "require", "verify-ca", "verify-full"]
    ] = Field(None, alias="DB_SSLMODE")
    db_sslrootcert: Optional[str] = Field(None, alias="DB_SSLROOTCERT")
    db_sslcert: Optional[str] = Field(None, alias="DB_SSLCERT")
    db_sslkey: Optional[str] = Field(None, alias="DB_SSLKEY")
    db_sslpassword: Optional[str] = Field(None, alias="DB_SSLPASSWORD")

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Ingestion
    ingest_retry_attempts: int = Field(5, alias="INGEST_RETRY_ATTEMPTS", ge=1)
    ingest_retry_max_wait_seconds: float = Field(
        10.0, alias="INGEST_RETRY_MAX_WAIT_SECONDS", ge=0
    )
    ingest_conflict_policy: Literal["ignore", "raise"] = Field(
        "ignore", alias="INGEST_CONFLICT_POLICY"
    )
    ingest_flush_slot_lag: int = Field(300, alias="INGEST_FLUSH_SLOT_LAG", ge=0)

    # Queries and maintenance
    query_batch_size: int = Field(1_000, alias="QUERY_BATCH_SIZE", ge=1)
    maintenance_lock_timeout_ms: int = Field(5_000, alias="MAINTENANCE_LOCK_TIMEOUT_MS", ge=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]
