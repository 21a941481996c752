"""
Query API

FastAPI service for historical chart data and journal calculators.

HTTP Endpoints:
- GET  /                       - Health check
- GET  /health                 - Detailed health status
- GET  /historical/{symbol}    - One day of 1-minute candles plus summary stats
- GET  /market-status          - Whether the US equity session is open
- POST /calculate-days         - Days needed to compound a balance to a goal
"""

import logging
import math
import os
from contextlib import asynccontextmanager
from datetime import date as date_type, datetime, timedelta
from typing import Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel
import uvicorn

from dataflow.adapters.polygon_rest import (
    HistoricalDataError,
    PolygonRestClient,
    PolygonRestConfig,
    is_market_open,
)
from dataflow.candle_aggregation.aggregator import compute_summary_stats, to_fixed
from schemas.feed_messages import parse_price

logger = logging.getLogger(__name__)

TRADING_DAYS_PER_YEAR = 252


# Response models (Pydantic)
class ChartPoint(BaseModel):
    """Single candlestick point: x = epoch ms, y = [open, high, low, close]"""
    x: int
    y: list[float]


class StatsResponse(BaseModel):
    currentPrice: str
    change: str
    changePercent: str


class HistoricalResponse(BaseModel):
    """One day of minute candles for a symbol"""
    symbol: str
    date: str
    count: int
    data: list[ChartPoint]
    stats: StatsResponse


class CalculateDaysRequest(BaseModel):
    starting_amount: Optional[Union[float, str]] = None
    return_percentage: Optional[Union[float, str]] = None
    goal_amount: Optional[Union[float, str]] = None


class CalculateDaysResponse(BaseModel):
    days: int
    trading_days: int
    years: str
    months: str
    target_date: str


# Global Polygon client
polygon_client: Optional[PolygonRestClient] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for the Polygon HTTP client"""
    global polygon_client

    logger.info("Starting Query API...")
    polygon_client = PolygonRestClient(PolygonRestConfig.from_env())

    yield

    await polygon_client.close()
    polygon_client = None
    logger.info("Query API shutdown complete")


app = FastAPI(
    title="Polygon Feed - Query API",
    description="Historical chart data and trading journal calculators",
    version="1.0.0",
    lifespan=lifespan,
)


def get_polygon() -> PolygonRestClient:
    if polygon_client is None:
        raise HTTPException(status_code=503, detail="Polygon client unavailable")
    return polygon_client


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "status": "running",
        "service": "query-api",
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/health")
async def health():
    """Detailed health status"""
    return {
        "status": "healthy",
        "service": "query-api",
        "polygon_client": polygon_client is not None,
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/market-status")
async def market_status():
    return {"open": is_market_open()}


@app.get("/historical/{symbol}")
async def get_historical(
    symbol: str,
    date: Optional[str] = Query(default=None, description="Trading day as YYYY-MM-DD"),
    polygon: PolygonRestClient = Depends(get_polygon),
) -> HistoricalResponse:
    """
    Fetch one day of 1-minute candles for a symbol.

    Raises:
        400: Missing or malformed date
        404: No bars for this symbol and date
        500: Upstream request failed
    """
    if not symbol or not date:
        raise HTTPException(status_code=400, detail="Symbol and date are required")

    try:
        datetime.strptime(date, "%Y-%m-%d")
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date '{date}'. Expected YYYY-MM-DD")

    symbol = symbol.upper()

    try:
        candles = await polygon.get_minute_bars(symbol, date)
    except HistoricalDataError as e:
        logger.error(f"Historical fetch failed for {symbol} {date}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch historical data")

    if not candles:
        raise HTTPException(
            status_code=404,
            detail="No data available for this symbol and date",
        )

    stats = compute_summary_stats(candles)

    logger.info(f"Served {len(candles)} candles for {symbol} {date}")

    return HistoricalResponse(
        symbol=symbol,
        date=date,
        count=len(candles),
        data=[ChartPoint(**candle.to_chart_point()) for candle in candles],
        stats=StatsResponse(**stats.to_dict()),
    )


@app.post("/calculate-days")
async def calculate_days(request: CalculateDaysRequest) -> CalculateDaysResponse:
    """
    Days of compounding at a fixed daily return to grow a balance to a goal.

    calendar days = ceil(log(goal / start) / log(1 + rate)); trading days
    assume 5 of every 7 days, years assume 252 trading days.
    """
    if not request.starting_amount or not request.return_percentage or not request.goal_amount:
        raise HTTPException(status_code=400, detail="Missing required parameters")

    start = parse_price(request.starting_amount)
    goal = parse_price(request.goal_amount)
    rate = parse_price(request.return_percentage) / 100

    if any(math.isnan(v) or math.isinf(v) for v in (start, goal, rate)):
        raise HTTPException(status_code=400, detail="All inputs must be valid numbers")
    if start <= 0 or goal <= 0 or rate <= 0:
        raise HTTPException(status_code=400, detail="All values must be positive numbers")
    if start >= goal:
        raise HTTPException(
            status_code=400,
            detail="Goal amount must be greater than starting amount",
        )

    days = math.ceil(math.log(goal / start) / math.log(1 + rate))
    trading_days = math.ceil(days * (5 / 7))
    years = trading_days / TRADING_DAYS_PER_YEAR
    months = years * 12
    target_date = date_type.today() + timedelta(days=days)

    return CalculateDaysResponse(
        days=days,
        trading_days=trading_days,
        years=to_fixed(years, 2),
        months=to_fixed(months, 1),
        target_date=target_date.isoformat(),
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    port = int(os.getenv("PORT", "8001"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting Query API on {host}:{port}")

    uvicorn.run(app, host=host, port=port)
