"""
Domain models for the banking stage results store.

Defines the stored row shapes (`TransactionRecord`, `BlockRecord`), the partial
observation events the ingest writer accepts, and the typed payloads that are
serialised into the JSON text columns. The column layout matches the
`banking_stage_results` schema created by `banking_store.infrastructure.migrations`.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator

from banking_store.errors import ValidationError

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE58_CHARS = frozenset(BASE58_ALPHABET)

# Base58 of a 64-byte signature spans 64..88 chars, of a 32-byte hash/pubkey 32..44.
SIGNATURE_MIN_LEN, SIGNATURE_MAX_LEN = 64, 88
HASH_MIN_LEN, HASH_MAX_LEN = 32, 44

# Slots and counters are stored as BIGINT
BIGINT_MAX = 2**63 - 1

TRANSACTION_MERGE_FIELDS: tuple[str, ...] = (
    "errors",
    "is_executed",
    "is_confirmed",
    "cu_requested",
    "prioritization_fees",
    "accounts_used",
    "processed_slot",
    "supp_infos",
)
TRANSACTION_COLUMNS: tuple[str, ...] = (
    "signature",
    "first_notification_slot",
    "utc_timestamp",
) + TRANSACTION_MERGE_FIELDS

BLOCK_MERGE_FIELDS: tuple[str, ...] = (
    "block_hash",
    "leader_identity",
    "successful_transactions",
    "processed_transactions",
    "banking_stage_errors",
    "total_cu_used",
    "total_cu_requested",
    "heavily_writelocked_accounts",
    "heavily_readlocked_accounts",
    "supp_infos",
)
BLOCK_COLUMNS: tuple[str, ...] = ("slot",) + BLOCK_MERGE_FIELDS

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def _check_base58(value: str, min_len: int, max_len: int, what: str) -> str:
    if not min_len <= len(value) <= max_len:
        raise ValueError(f"{what} must be {min_len}-{max_len} characters, got {len(value)}")
    bad = set(value) - _BASE58_CHARS
    if bad:
        raise ValueError(f"{what} contains non-base58 characters: {''.join(sorted(bad))}")
    return value


def _to_json_text(value: Any) -> Any:
    """Serialise typed payloads into the JSON text stored in free-form columns."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if isinstance(value, (list, tuple)):
        return json.dumps(
            [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in value]
        )
    return json.dumps(value, default=str)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_model(model_cls: Type[_ModelT], data: Mapping[str, Any]) -> _ModelT:
    """
    Validate `data` into `model_cls`, translating pydantic failures into the
    store's ValidationError so callers only deal with one exception family.
    """
    try:
        return model_cls.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(f"{model_cls.__name__}: {first['msg']}", field=field) from exc


# --------------------------------------------------------------------------- payloads


class TransactionErrorEntry(BaseModel):
    """One banking-stage rejection reason seen for a transaction at a slot."""

    error: str
    slot: int = Field(..., ge=0, le=BIGINT_MAX)
    count: int = Field(1, ge=1)


class AccountUse(BaseModel):
    """An account referenced by a transaction and whether it was write-locked."""

    key: str
    writable: bool


class LockedAccount(BaseModel):
    """A heavily contended account within a block."""

    key: str
    cu_requested: int = Field(0, ge=0, le=BIGINT_MAX)
    cu_consumed: int = Field(0, ge=0, le=BIGINT_MAX)


# --------------------------------------------------------------------------- observations


class _TransactionFields(BaseModel):
    errors: Optional[str] = None
    is_executed: Optional[bool] = None
    is_confirmed: Optional[bool] = None
    cu_requested: Optional[int] = Field(None, ge=0, le=BIGINT_MAX)
    prioritization_fees: Optional[int] = Field(None, ge=0, le=BIGINT_MAX)
    accounts_used: Optional[str] = None
    processed_slot: Optional[int] = Field(None, ge=0, le=BIGINT_MAX)
    supp_infos: Optional[str] = None

    @field_validator("errors", "accounts_used", "supp_infos", mode="before")
    @classmethod
    def _serialise_payloads(cls, value: Any) -> Any:
        return _to_json_text(value)


class TransactionObservation(_TransactionFields):
    """
    A partial observation of a transaction, keyed by signature and the slot of
    its first notification. `None` fields carry no information and never
    overwrite stored values. `utc_timestamp` defaults to the time of the write
    when the row is created and is ignored once a row exists.
    """

    signature: str
    first_notification_slot: int = Field(..., ge=0, le=BIGINT_MAX)
    utc_timestamp: Optional[datetime] = None

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("signature")
    @classmethod
    def _check_signature(cls, value: str) -> str:
        return _check_base58(value, SIGNATURE_MIN_LEN, SIGNATURE_MAX_LEN, "signature")

    @field_validator("utc_timestamp")
    @classmethod
    def _normalise_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def key(self) -> tuple[str, int]:
        return (self.signature, self.first_notification_slot)

    def provided_fields(self) -> dict[str, Any]:
        """Merge fields that carry a value in this observation."""
        return {
            name: getattr(self, name)
            for name in TRANSACTION_MERGE_FIELDS
            if getattr(self, name) is not None
        }


class _BlockFields(BaseModel):
    block_hash: Optional[str] = None
    leader_identity: Optional[str] = None
    successful_transactions: Optional[int] = Field(None, ge=0, le=BIGINT_MAX)
    processed_transactions: Optional[int] = Field(None, ge=0, le=BIGINT_MAX)
    banking_stage_errors: Optional[int] = Field(None, ge=0, le=BIGINT_MAX)
    total_cu_used: Optional[int] = Field(None, ge=0, le=BIGINT_MAX)
    total_cu_requested: Optional[int] = Field(None, ge=0, le=BIGINT_MAX)
    heavily_writelocked_accounts: Optional[str] = None
    heavily_readlocked_accounts: Optional[str] = None
    supp_infos: Optional[str] = None

    @field_validator(
        "heavily_writelocked_accounts", "heavily_readlocked_accounts", "supp_infos", mode="before"
    )
    @classmethod
    def _serialise_payloads(cls, value: Any) -> Any:
        return _to_json_text(value)


class BlockObservation(_BlockFields):
    """A partial set of statistics for one slot."""

    slot: int = Field(..., ge=0, le=BIGINT_MAX)

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("block_hash", "leader_identity")
    @classmethod
    def _check_hashes(cls, value: Optional[str], info: pydantic.ValidationInfo) -> Optional[str]:
        if value is None:
            return value
        return _check_base58(value, HASH_MIN_LEN, HASH_MAX_LEN, info.field_name)

    @property
    def key(self) -> tuple[int]:
        return (self.slot,)

    def provided_fields(self) -> dict[str, Any]:
        return {
            name: getattr(self, name) for name in BLOCK_MERGE_FIELDS if getattr(self, name) is not None
        }


# --------------------------------------------------------------------------- stored rows


class TransactionRecord(_TransactionFields):
    """A row of `transaction_infos` as read back from the store."""

    signature: str
    first_notification_slot: int
    utc_timestamp: datetime

    model_config = {"frozen": True}

    @field_validator("signature", mode="before")
    @classmethod
    def _strip_padding(cls, value: Any) -> Any:
        # CHAR(88) pads shorter signatures with spaces
        return value.rstrip() if isinstance(value, str) else value

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TransactionRecord":
        return cls.model_validate({name: row[name] for name in TRANSACTION_COLUMNS})

    @property
    def key(self) -> tuple[str, int]:
        return (self.signature, self.first_notification_slot)


class BlockRecord(_BlockFields):
    """A row of `blocks` as read back from the store."""

    slot: int

    model_config = {"frozen": True}

    @field_validator("block_hash", "leader_identity", mode="before")
    @classmethod
    def _strip_padding(cls, value: Any) -> Any:
        return value.rstrip() if isinstance(value, str) else value

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BlockRecord":
        return cls.model_validate({name: row[name] for name in BLOCK_COLUMNS})

    @property
    def cu_within_budget(self) -> Optional[bool]:
        """`total_cu_used <= total_cu_requested`, or None when either is unknown."""
        if self.total_cu_used is None or self.total_cu_requested is None:
            return None
        return self.total_cu_used <= self.total_cu_requested


# --------------------------------------------------------------------------- query shapes


class SlotRange(BaseModel):
    """Inclusive slot interval `[start, end]`."""

    start: int = Field(..., ge=0, le=BIGINT_MAX)
    end: int = Field(..., ge=0, le=BIGINT_MAX)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _ordered(self) -> "SlotRange":
        if self.start > self.end:
            raise ValueError(f"slot range start {self.start} is after end {self.end}")
        return self

    def __contains__(self, slot: int) -> bool:
        return self.start <= slot <= self.end


class BlockSummary(BaseModel):
    """Aggregate block statistics over a slot range."""

    slot_range: SlotRange
    blocks: int = 0
    blocks_with_errors: int = 0
    banking_stage_errors: int = 0
    successful_transactions: int = 0
    processed_transactions: int = 0
    total_cu_used: int = 0
    total_cu_requested: int = 0

    model_config = {"frozen": True}


class TransactionWithBlock(BaseModel):
    """A transaction with its soft block reference resolved (block may be absent)."""

    transaction: TransactionRecord
    block: Optional[BlockRecord] = None

    model_config = {"frozen": True}


__all__ = [
    "BASE58_ALPHABET",
    "TRANSACTION_COLUMNS",
    "TRANSACTION_MERGE_FIELDS",
    "BLOCK_COLUMNS",
    "BLOCK_MERGE_FIELDS",
    "parse_model",
    "TransactionErrorEntry",
    "AccountUse",
    "LockedAccount",
    "TransactionObservation",
    "BlockObservation",
    "TransactionRecord",
    "BlockRecord",
    "SlotRange",
    "BlockSummary",
    "TransactionWithBlock",
]
