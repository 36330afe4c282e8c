"""
SQLAlchemy ORM models mirroring the PostgreSQL schema.

The market_status ENUM is created automatically by metadata.create_all() if it
doesn't already exist. Its declaration order matters: PostgreSQL compares enum
values by position, so GREATEST(status, ...) gives forward-only transitions
inactive → active → settled.

Tables:
    markets           local mirror of on-chain market accounts
    price_samples     durable backing for the Redis price fast list
    processed_events  idempotency keys for counter-bearing events
"""

from datetime import datetime, timezone

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Column,
    DateTime,
    Double,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    text,
)

from market_indexer.core.database import Base

# ---------------------------------------------------------------------------
# PostgreSQL ENUM types (auto-created if not present)
# ---------------------------------------------------------------------------

market_status_enum = Enum(
    "inactive", "active", "settled",
    name="market_status",
)


# ---------------------------------------------------------------------------
# Markets
# ---------------------------------------------------------------------------

class Market(Base):
    """
    One on-chain prediction market.
    id is the program's numeric market id rendered as a string.
    options, probs and votes are parallel arrays.
    """
    __tablename__ = "markets"

    id = Column(Text, primary_key=True)
    authority = Column(Text, nullable=False)
    question = Column(Text, nullable=False)
    options = Column(ARRAY(Text), nullable=False)
    probs = Column(ARRAY(Double), nullable=False)
    votes = Column(ARRAY(BigInteger), nullable=False)
    liquidity_parameter = Column(BigInteger, nullable=False, default=0)
    mint = Column(Text, nullable=False)
    tvl = Column(BigInteger, nullable=False, default=0)
    status = Column(market_status_enum, nullable=False, default="inactive")
    winning_option = Column(Integer)              # set iff status = 'settled'
    num_buy_events = Column(BigInteger, nullable=False, default=0)
    num_sell_events = Column(BigInteger, nullable=False, default=0)
    market_updated_at = Column(BigInteger, nullable=False, default=0)  # chain unix timestamp

    last_reveal_probs_event_timestamp = Column(DateTime(timezone=True))
    last_buy_shares_event_timestamp = Column(DateTime(timezone=True))
    last_sell_shares_event_timestamp = Column(DateTime(timezone=True))
    last_init_market_stats_event_timestamp = Column(DateTime(timezone=True))
    last_market_settled_event_timestamp = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=text("NOW()"), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=text("NOW()"), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index(
            "idx_active_markets_reveal",
            "last_reveal_probs_event_timestamp",
            postgresql_where=text("status = 'active'"),
        ),
    )


# ---------------------------------------------------------------------------
# Price history
# ---------------------------------------------------------------------------

class PriceSample(Base):
    """
    One revealed probability for one option of a market.
    Trimmed to the newest PRICE_HISTORY_MAX_ENTRIES rows per market on insert.
    At most one sample per (market, option, timestamp), so a redelivered event
    cannot store a reveal twice.
    """
    __tablename__ = "price_samples"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    market_id = Column(Text, ForeignKey("markets.id", ondelete="CASCADE"), nullable=False)
    option_index = Column(Integer, nullable=False, default=0)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    prob = Column(Double, nullable=False)

    __table_args__ = (
        Index("idx_price_samples_recent", "market_id", text("timestamp DESC")),
        UniqueConstraint("market_id", "option_index", "timestamp", name="uq_price_samples_sample"),
    )


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------

class ProcessedEvent(Base):
    """
    Transaction signatures of buy/sell events already applied.
    A second delivery with the same (signature, event_kind) is skipped.
    """
    __tablename__ = "processed_events"

    signature = Column(Text, primary_key=True)
    event_kind = Column(Text, primary_key=True)
    market_id = Column(Text, nullable=False)
    processed_at = Column(DateTime(timezone=True), server_default=text("NOW()"), nullable=False)
