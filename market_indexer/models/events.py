"""
Program event shapes and the queue job envelope.

The chain gateway streams decoded program events as camelCase JSON. EventSource wraps
each one in a QueueJob; the Reconciler decodes it back into one of the concrete event
models below via decode_event(). A kind outside EventKind is UnknownEventKindError
(logged and dropped); a known kind with a bad payload is a pydantic ValidationError
(retried, then dead-lettered).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from market_indexer.models.market import to_int64


class EventKind(str, Enum):
    REVEAL_PROBS = "revealProbsEvent"
    BUY_SHARES = "buySharesEvent"
    SELL_SHARES = "sellSharesEvent"
    INIT_MARKET_STATS = "initMarketStatsEvent"
    MARKET_SETTLED = "marketSettledEvent"


# Transaction status code the program emits for a failed trade
FAILED_TX_STATUS = 0


class UnknownEventKindError(ValueError):
    """Raised when a job names an event kind this service does not consume."""


class MalformedEventError(ValueError):
    """Raised when an event decodes but contradicts the market it refers to."""


class _ChainEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    market_id: int

    @field_validator("market_id", mode="before")
    @classmethod
    def _coerce_market_id(cls, v: Any) -> int:
        return to_int64(v, "market_id")

    @property
    def record_id(self) -> str:
        return str(self.market_id)


class RevealProbsEvent(_ChainEvent):
    kind: Literal[EventKind.REVEAL_PROBS] = EventKind.REVEAL_PROBS
    probs: List[float]
    votes: List[int]

    @field_validator("votes", mode="before")
    @classmethod
    def _coerce_votes(cls, v: Any) -> list[int]:
        return [to_int64(x, "votes") for x in (v or [])]


class _TradeEvent(_ChainEvent):
    status: int
    amount: int = 0
    tvl: int

    @field_validator("status", "amount", "tvl", mode="before")
    @classmethod
    def _coerce_int(cls, v: Any, info) -> int:
        return to_int64(v, info.field_name)

    @property
    def succeeded(self) -> bool:
        return self.status != FAILED_TX_STATUS


class BuySharesEvent(_TradeEvent):
    kind: Literal[EventKind.BUY_SHARES] = EventKind.BUY_SHARES


class SellSharesEvent(_TradeEvent):
    kind: Literal[EventKind.SELL_SHARES] = EventKind.SELL_SHARES


class InitMarketStatsEvent(_ChainEvent):
    kind: Literal[EventKind.INIT_MARKET_STATS] = EventKind.INIT_MARKET_STATS


class MarketSettledEvent(_ChainEvent):
    kind: Literal[EventKind.MARKET_SETTLED] = EventKind.MARKET_SETTLED
    winning_outcome: int
    probs: List[float]
    votes: List[int]

    @field_validator("votes", mode="before")
    @classmethod
    def _coerce_votes(cls, v: Any) -> list[int]:
        return [to_int64(x, "votes") for x in (v or [])]


ChainEvent = Annotated[
    Union[RevealProbsEvent, BuySharesEvent, SellSharesEvent, InitMarketStatsEvent, MarketSettledEvent],
    Field(discriminator="kind"),
]

_chain_event_adapter: TypeAdapter[ChainEvent] = TypeAdapter(ChainEvent)


# ---------------------------------------------------------------------------
# Queue envelope
# ---------------------------------------------------------------------------

class QueueJob(BaseModel):
    """
    What EventSource enqueues and the Reconciler consumes.
    Serialized with camelCase keys (eventKind, occurredAt) inside the arq job.
    """
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    event_kind: str
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    signature: Optional[str] = None     # transaction signature, when the gateway provides one

    def to_message(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @property
    def job_id(self) -> Optional[str]:
        """Deterministic arq job id so the same transaction's event is enqueued once."""
        if not self.signature:
            return None
        return f"{self.event_kind}:{self.signature}"


def decode_event(job: QueueJob) -> ChainEvent:
    """Decode a job's payload into its concrete event model."""
    try:
        kind = EventKind(job.event_kind)
    except ValueError:
        raise UnknownEventKindError(f"Unknown event kind: {job.event_kind}") from None
    return _chain_event_adapter.validate_python({**job.payload, "kind": kind})
