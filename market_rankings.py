import os, time, math, logging, requests
from typing import List, Dict, Optional

logger = logging.getLogger(__name__)

BASE = os.getenv("COINGECKO_BASE_URL", "https://api.coingecko.com/api/v3").rstrip("/")
TTL = int(os.getenv("RANKINGS_CACHE_TTL", "60"))
PER_PAGE = int(os.getenv("RANKINGS_PER_PAGE", "100"))
_cache = {"ts": 0.0, "items": []}

def _to_f(v):
    try:
        x = float(v)
        return 0.0 if math.isnan(x) or math.isinf(x) else x
    except (TypeError, ValueError):
        return 0.0

def fetch_rankings(ids: Optional[List[str]] = None, vs: str = "usd") -> List[Dict]:
    """Coins ranked by market cap; the unfiltered listing is cached for TTL seconds."""
    now = time.time()
    if not ids and _cache["items"] and now - _cache["ts"] < TTL:
        return list(_cache["items"])

    params = {
        "vs_currency": vs,
        "order": "market_cap_desc",
        "per_page": PER_PAGE,
        "page": 1,
        "price_change_percentage": "24h",
    }
    if ids:
        params["ids"] = ",".join(i.strip().lower() for i in ids if i.strip())
    resp = requests.get(f"{BASE}/coins/markets", params=params, timeout=7)
    resp.raise_for_status()
    arr = resp.json()
    if isinstance(arr, dict):
        arr = arr.get("items") or arr.get("data") or []

    items = []
    for x in arr:
        cid = str(x.get("id", ""))
        if not cid:
            continue
        chg = x.get("price_change_percentage_24h")
        items.append({
            "id": cid,
            "symbol": str(x.get("symbol", "")).upper(),
            "name": x.get("name") or cid,
            "image": x.get("image"),
            "price": _to_f(x.get("current_price")),
            "market_cap": _to_f(x.get("market_cap")),
            "volume_24h": _to_f(x.get("total_volume")),
            "change_pct_24h": None if chg is None else round(_to_f(chg), 4),
        })

    items.sort(key=lambda i: (i["market_cap"], i["volume_24h"]), reverse=True)
    ranked = [{"rank": idx, **it} for idx, it in enumerate(items, start=1)]

    if not ids:
        _cache["ts"] = now
        _cache["items"] = list(ranked)
    logger.debug("[market] fetched %d ranked coins", len(ranked))
    return ranked
