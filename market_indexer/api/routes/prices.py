"""
Price history endpoints — served by PriceStore (Redis fast list, Postgres fallback).

GET /prices/markets                      - ids of markets with price data
GET /prices/markets/{market_id}?option=  - history, newest first, led by the 0.5 prior
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from market_indexer.api.deps import get_services
from market_indexer.core.services import Services
from market_indexer.services.markets import MarketNotFoundError

router = APIRouter()


class PricePointResponse(BaseModel):
    timestamp: datetime
    prob: float
    option: Optional[int] = None


class PriceHistoryResponse(BaseModel):
    market_id: str
    option: Optional[int] = None
    prices: List[PricePointResponse]


class PriceMarketsResponse(BaseModel):
    market_ids: List[str]
    count: int


@router.get("/markets", response_model=PriceMarketsResponse)
async def list_price_markets(services: Services = Depends(get_services)) -> PriceMarketsResponse:
    ids = sorted(await services.prices.market_ids())
    return PriceMarketsResponse(market_ids=ids, count=len(ids))


@router.get("/markets/{market_id}", response_model=PriceHistoryResponse)
async def get_price_history(
    market_id: str,
    option: Optional[int] = Query(default=None, ge=0, description="Restrict to one option index"),
    services: Services = Depends(get_services),
) -> PriceHistoryResponse:
    try:
        if option is None:
            points = await services.prices.read(market_id)
        else:
            points = await services.prices.read_option(market_id, option)
    except MarketNotFoundError:
        raise HTTPException(status_code=404, detail=f"Market '{market_id}' not found")

    return PriceHistoryResponse(
        market_id=market_id,
        option=option,
        prices=[PricePointResponse(**p.model_dump()) for p in points],
    )
