"""
Markets endpoints — served from PostgreSQL through the MarketCache read-through.

GET  /markets                    - paginated list, sortable by whitelisted fields
GET  /markets/{market_id}        - single market; fetched from chain and created if unknown locally
POST /markets/cache/invalidate   - drop cache entries for one market, or all of them

64-bit chain integers (tvl, votes, liquidity_parameter, market_updated_at) are
returned as strings so JS clients don't lose precision.
"""

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from market_indexer.api.deps import get_services
from market_indexer.core.services import Services
from market_indexer.models.market import MarketRecord
from market_indexer.services.chain import ChainRpcError
from market_indexer.services.markets import SORT_FIELDS, MarketNotFoundError

router = APIRouter()

LIST_ENDPOINT = "markets:list"
DETAIL_ENDPOINT = "markets:detail"


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class MarketResponse(BaseModel):
    id: str
    authority: str
    question: str
    options: List[str]
    probs: List[float]
    votes: List[str]
    liquidity_parameter: str
    mint: str
    tvl: str
    status: str                         # "inactive" | "active" | "settled"
    winning_option: Optional[int] = None
    num_buy_events: int
    num_sell_events: int
    market_updated_at: str              # chain clock (unix seconds)
    last_reveal_probs_event_timestamp: Optional[datetime] = None
    last_buy_shares_event_timestamp: Optional[datetime] = None
    last_sell_shares_event_timestamp: Optional[datetime] = None
    last_init_market_stats_event_timestamp: Optional[datetime] = None
    last_market_settled_event_timestamp: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class MarketListResponse(BaseModel):
    markets: List[MarketResponse]
    count: int
    total: int
    limit: int
    offset: int


class InvalidateResponse(BaseModel):
    invalidated: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _record_to_response(record: MarketRecord) -> MarketResponse:
    return MarketResponse(
        id=record.id,
        authority=record.authority,
        question=record.question,
        options=record.options,
        probs=record.probs,
        votes=[str(v) for v in record.votes],
        liquidity_parameter=str(record.liquidity_parameter),
        mint=record.mint,
        tvl=str(record.tvl),
        status=record.status.value,
        winning_option=record.winning_option,
        num_buy_events=record.num_buy_events,
        num_sell_events=record.num_sell_events,
        market_updated_at=str(record.market_updated_at),
        last_reveal_probs_event_timestamp=record.last_reveal_probs_event_timestamp,
        last_buy_shares_event_timestamp=record.last_buy_shares_event_timestamp,
        last_sell_shares_event_timestamp=record.last_sell_shares_event_timestamp,
        last_init_market_stats_event_timestamp=record.last_init_market_stats_event_timestamp,
        last_market_settled_event_timestamp=record.last_market_settled_event_timestamp,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/", response_model=MarketListResponse)
async def list_markets(
    sort_by: str = Query(default="createdAt", alias="sortBy"),
    order: Literal["asc", "desc"] = Query(default="desc"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    services: Services = Depends(get_services),
) -> MarketListResponse:
    """
    List markets. sortBy is one of: createdAt, updatedAt, marketUpdatedAt, tvl,
    numBuyEvents, numSellEvents, question, status.
    """
    if sort_by not in SORT_FIELDS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid sortBy '{sort_by}'. Allowed: {', '.join(SORT_FIELDS)}",
        )

    params = {"sortBy": sort_by, "order": order, "limit": limit, "offset": offset}
    cached = await services.cache.get(LIST_ENDPOINT, params)
    if cached is not None:
        return MarketListResponse.model_validate(cached)

    records, total = await services.store.list_markets(sort_by, order, limit, offset)
    response = MarketListResponse(
        markets=[_record_to_response(r) for r in records],
        count=len(records),
        total=total,
        limit=limit,
        offset=offset,
    )
    await services.cache.set(LIST_ENDPOINT, params, response.model_dump(mode="json"))
    return response


@router.post("/cache/invalidate", response_model=InvalidateResponse)
async def invalidate_cache(
    market_id: Optional[str] = Query(default=None, alias="marketId"),
    services: Services = Depends(get_services),
) -> InvalidateResponse:
    """Drop cached entries for one market (plus all lists), or everything when marketId is omitted."""
    if market_id is None:
        return InvalidateResponse(invalidated=await services.cache.clear())
    return InvalidateResponse(invalidated=await services.cache.invalidate(market_id))


@router.get("/{market_id}", response_model=MarketResponse)
async def get_market(
    market_id: str,
    services: Services = Depends(get_services),
) -> MarketResponse:
    """
    Get a single market by its on-chain id. Unknown ids are fetched from the
    chain and created locally; 404 only if the chain has no such market.
    """
    if not market_id.isdigit():
        raise HTTPException(status_code=400, detail="Market id must be a non-negative integer")

    params = {"id": market_id}
    cached = await services.cache.get(DETAIL_ENDPOINT, params)
    if cached is not None:
        return MarketResponse.model_validate(cached)

    try:
        record, _ = await services.reconciler.ensure_market_exists(market_id)
    except (ChainRpcError, MarketNotFoundError, ValueError):
        raise HTTPException(status_code=404, detail=f"Market '{market_id}' not found")

    response = _record_to_response(record)
    await services.cache.set(DETAIL_ENDPOINT, params, response.model_dump(mode="json"))
    return response
