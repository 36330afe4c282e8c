"""
Pydantic models for on-chain market accounts and the local market mirror.

Usage:
    - MarketSnapshot parses the decoded market account returned by the chain gateway.
      Field names arrive camelCase; extra='ignore' so new account fields never crash us.
    - Chain integers are u64/u128 (often serialized as decimal or hex strings).
      They are coerced to signed 64-bit and rejected loudly if they don't fit,
      since PostgreSQL BIGINT is the storage type.
    - Chain status representations are mapped to our market_status enum via CHAIN_STATUS_MAP.
    - MarketRecord is one row of the markets table.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


# ---------------------------------------------------------------------------
# Status normalization
# ---------------------------------------------------------------------------

class MarketStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    SETTLED = "settled"


CHAIN_STATUS_MAP: dict[str, MarketStatus] = {
    "inactive": MarketStatus.INACTIVE,
    "uninitialized": MarketStatus.INACTIVE,
    "active": MarketStatus.ACTIVE,
    "open": MarketStatus.ACTIVE,
    "settled": MarketStatus.SETTLED,
    "resolved": MarketStatus.SETTLED,
}

# Discriminant order of the program's MarketStatus enum
_CHAIN_STATUS_BY_INDEX = (MarketStatus.INACTIVE, MarketStatus.ACTIVE, MarketStatus.SETTLED)


def map_chain_status(raw: Any) -> MarketStatus:
    """
    Map the chain's status representation to MarketStatus.

    Anchor serializes unit enum variants as {"active": {}}; gateways may also send
    the bare variant name or its discriminant.
    """
    if isinstance(raw, MarketStatus):
        return raw
    if isinstance(raw, dict) and len(raw) == 1:
        raw = next(iter(raw))
    if isinstance(raw, bool):
        raise ValueError(f"Unrecognized market status: {raw!r}")
    if isinstance(raw, int):
        if 0 <= raw < len(_CHAIN_STATUS_BY_INDEX):
            return _CHAIN_STATUS_BY_INDEX[raw]
        raise ValueError(f"Unrecognized market status discriminant: {raw}")
    if isinstance(raw, str) and raw.lower() in CHAIN_STATUS_MAP:
        return CHAIN_STATUS_MAP[raw.lower()]
    raise ValueError(f"Unrecognized market status: {raw!r}")


def to_int64(value: Any, field: str = "value") -> int:
    """
    Convert a chain integer (int, decimal string, or 0x-prefixed hex string) to a
    Python int that fits PostgreSQL BIGINT. Raises ValueError instead of truncating.
    """
    if isinstance(value, bool):
        raise ValueError(f"{field}: expected integer, got bool")
    if isinstance(value, int):
        result = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{field}: expected integer, got {value}")
        result = int(value)
    elif isinstance(value, str):
        s = value.strip()
        result = int(s, 16) if s.lower().startswith("0x") else int(s)
    else:
        raise ValueError(f"{field}: expected integer, got {type(value).__name__}")

    if not INT64_MIN <= result <= INT64_MAX:
        raise ValueError(f"{field}: {result} does not fit in a signed 64-bit integer")
    return result


# ---------------------------------------------------------------------------
# On-chain snapshot
# ---------------------------------------------------------------------------

class MarketSnapshot(BaseModel):
    """
    Decoded market account, as returned by ChainGateway.fetch_market().
    """
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    market_id: int
    authority: str
    question: str = ""
    options: List[str] = Field(default_factory=list)
    probs: List[float] = Field(default_factory=list)
    votes: List[int] = Field(default_factory=list)
    liquidity_parameter: int = 0
    mint: str
    tvl: int = 0
    status: MarketStatus = MarketStatus.INACTIVE
    winning_outcome: Optional[int] = None
    updated_at: int = 0

    @field_validator("market_id", "liquidity_parameter", "tvl", "updated_at", mode="before")
    @classmethod
    def _coerce_int(cls, v: Any, info) -> int:
        return to_int64(v, info.field_name)

    @field_validator("votes", mode="before")
    @classmethod
    def _coerce_votes(cls, v: Any) -> list[int]:
        return [to_int64(x, "votes") for x in (v or [])]

    @field_validator("status", mode="before")
    @classmethod
    def _map_status(cls, v: Any) -> MarketStatus:
        return map_chain_status(v)

    @model_validator(mode="after")
    def _check_settlement(self) -> "MarketSnapshot":
        if self.status is MarketStatus.SETTLED and self.winning_outcome is None:
            raise ValueError(f"Market {self.market_id} is settled but has no winning outcome")
        return self

    @property
    def record_id(self) -> str:
        return str(self.market_id)

    @property
    def winning_option(self) -> Optional[int]:
        """Only meaningful once settled; the account keeps a placeholder otherwise."""
        if self.status is MarketStatus.SETTLED:
            return self.winning_outcome
        return None

    def padded_probs(self) -> list[float]:
        """Probs parallel to options; accounts that were never revealed start uniform."""
        if len(self.probs) == len(self.options):
            return list(self.probs)
        if not self.options:
            return []
        return [1.0 / len(self.options)] * len(self.options)

    def padded_votes(self) -> list[int]:
        if len(self.votes) == len(self.options):
            return list(self.votes)
        return [0] * len(self.options)


# ---------------------------------------------------------------------------
# Local mirror
# ---------------------------------------------------------------------------

class MarketRecord(BaseModel):
    """One row of the markets table."""
    model_config = ConfigDict(extra="ignore")

    id: str
    authority: str
    question: str
    options: List[str]
    probs: List[float]
    votes: List[int]
    liquidity_parameter: int
    mint: str
    tvl: int
    status: MarketStatus
    winning_option: Optional[int] = None
    num_buy_events: int = 0
    num_sell_events: int = 0
    market_updated_at: int = 0

    last_reveal_probs_event_timestamp: Optional[datetime] = None
    last_buy_shares_event_timestamp: Optional[datetime] = None
    last_sell_shares_event_timestamp: Optional[datetime] = None
    last_init_market_stats_event_timestamp: Optional[datetime] = None
    last_market_settled_event_timestamp: Optional[datetime] = None

    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def last_trade_timestamp(self) -> Optional[datetime]:
        stamps = [
            t for t in (self.last_buy_shares_event_timestamp, self.last_sell_shares_event_timestamp)
            if t is not None
        ]
        return max(stamps) if stamps else None
