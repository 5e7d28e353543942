from __future__ import annotations

import os
import time
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import httpx
from fastapi import APIRouter, HTTPException

logger = logging.getLogger(__name__)

# ---------- Config ----------
COINGECKO_BASE_URL = os.getenv("COINGECKO_BASE_URL", "https://api.coingecko.com/api/v3").rstrip("/")
COINGECKO_API_KEY = os.getenv("COINGECKO_API_KEY", "")
HTTP_TIMEOUT_SECS = float(os.getenv("MARKET_HTTP_TIMEOUT_SECS", "5"))
CACHE_TTL_SEC = int(os.getenv("MARKET_CACHE_TTL_SEC", "60"))

# chart range -> days; the free API tier stops at 365
TIMEFRAME_DAYS = {
    "1D": 1,
    "5D": 5,
    "1M": 30,
    "6M": 180,
    "1A": 365,
    "5A": 365,
    "MAX": 365,
}

# ---------- Simple memory cache ----------
class _Cache:
    def __init__(self):
        self.data: Dict[str, Tuple[float, object]] = {}

    def get(self, key: str):
        hit = self.data.get(key)
        if not hit:
            return None
        ts, val = hit
        if time.time() - ts > CACHE_TTL_SEC:
            return None
        return val

    def set(self, key: str, val: object):
        self.data[key] = (time.time(), val)

    def clear(self):
        self.data.clear()

class UnknownCoin(LookupError):
    """The API answered but knows no price for the coin."""

_cache = _Cache()

def _client() -> httpx.Client:
    headers = {"x-cg-demo-api-key": COINGECKO_API_KEY} if COINGECKO_API_KEY else None
    return httpx.Client(base_url=COINGECKO_BASE_URL, timeout=HTTP_TIMEOUT_SECS, headers=headers)


def get_spot_price(coin_id: str, vs: str = "usd") -> Optional[Dict[str, Optional[float]]]:
    """
    GET /simple/price?ids=COIN&vs_currencies=usd&include_24hr_change=true
    Returns {"price", "change_24h"}, or None when the API fails.
    Raises UnknownCoin when the API answers without a price for the coin.
    """
    key = f"simple:{coin_id}:{vs}"
    cached = _cache.get(key)
    if cached is not None:
        return cached
    try:
        with _client() as c:
            r = c.get("/simple/price", params={
                "ids": coin_id, "vs_currencies": vs, "include_24hr_change": "true",
            })
            r.raise_for_status()
            data = r.json().get(coin_id)
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("[market] price fetch failed for %s: %s", coin_id, e)
        return None
    if not data or data.get(vs) is None:
        raise UnknownCoin(coin_id)
    change = data.get(f"{vs}_24h_change")
    out = {
        "price": float(data[vs]),
        "change_24h": round(float(change), 4) if change is not None else None,
    }
    _cache.set(key, out)
    return out


def get_price_history(coin_id: str, timeframe: str = "1M", vs: str = "usd") -> List[Dict]:
    """[{date, value}] points from /coins/{id}/market_chart; empty list on failure."""
    days = TIMEFRAME_DAYS.get(timeframe.upper(), 30)
    key = f"chart:{coin_id}:{vs}:{days}"
    cached = _cache.get(key)
    if cached is not None:
        return cached
    try:
        with _client() as c:
            r = c.get(f"/coins/{coin_id}/market_chart", params={"vs_currency": vs, "days": days})
            r.raise_for_status()
            prices = r.json().get("prices") or []
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("[market] chart fetch failed for %s (%s): %s", coin_id, timeframe, e)
        return []
    points = []
    for ts_ms, value in prices:
        points.append({
            "date": datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).isoformat(),
            "value": float(value),
        })
    _cache.set(key, points)
    return points


router = APIRouter(prefix="/markets", tags=["markets"])


@router.get("/{coin_id}/price")
def price(coin_id: str):
    try:
        p = get_spot_price(coin_id)
    except UnknownCoin:
        raise HTTPException(status_code=404, detail=f"Unknown coin {coin_id}")
    if p is None:
        raise HTTPException(status_code=502, detail=f"Unable to fetch price for {coin_id}")
    return {"coin_id": coin_id, **p}


@router.get("/{coin_id}/chart")
def chart(coin_id: str, timeframe: str = "1M"):
    if timeframe.upper() not in TIMEFRAME_DAYS:
        raise HTTPException(status_code=400, detail=f"unknown timeframe '{timeframe}'")
    return {"coin_id": coin_id, "timeframe": timeframe.upper(), "items": get_price_history(coin_id, timeframe)}
