import httpx
import pytest
import requests

import market_price
import market_rankings


class _Resp:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def json(self):
        return self._payload


def _mock_coingecko(handler):
    def _client():
        return httpx.Client(base_url=market_price.COINGECKO_BASE_URL, transport=httpx.MockTransport(handler))
    return _client


class TestSpotPrice:
    def test_price_and_cache(self, client, monkeypatch):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            assert request.url.params["ids"] == "bitcoin"
            return httpx.Response(200, json={"bitcoin": {"usd": 65000.5, "usd_24h_change": -1.23449}})

        monkeypatch.setattr(market_price, "_client", _mock_coingecko(handler))
        r = client.get("/markets/bitcoin/price")
        assert r.status_code == 200
        assert r.json() == {"coin_id": "bitcoin", "price": 65000.5, "change_24h": -1.2345}
        client.get("/markets/bitcoin/price")
        assert len(calls) == 1

    def test_upstream_failure_is_502(self, client, monkeypatch):
        monkeypatch.setattr(market_price, "_client", _mock_coingecko(lambda req: httpx.Response(500)))
        assert client.get("/markets/bitcoin/price").status_code == 502

    def test_unknown_coin_is_404(self, client, monkeypatch):
        monkeypatch.setattr(market_price, "_client", _mock_coingecko(lambda req: httpx.Response(200, json={})))
        with pytest.raises(market_price.UnknownCoin):
            market_price.get_spot_price("nope")
        assert client.get("/markets/nope/price").status_code == 404


class TestChart:
    def test_timeframe_maps_to_days(self, client, monkeypatch):
        seen = {}

        def handler(request):
            seen["days"] = request.url.params["days"]
            return httpx.Response(200, json={"prices": [[1700000000000, 1.5], [1700003600000, 2.5]]})

        monkeypatch.setattr(market_price, "_client", _mock_coingecko(handler))
        r = client.get("/markets/ethereum/chart", params={"timeframe": "6m"})
        assert r.status_code == 200
        body = r.json()
        assert seen["days"] == "180"
        assert body["timeframe"] == "6M"
        assert [p["value"] for p in body["items"]] == [1.5, 2.5]
        assert body["items"][0]["date"].startswith("2023-11-14")

    def test_unknown_timeframe(self, client):
        assert client.get("/markets/ethereum/chart", params={"timeframe": "2W"}).status_code == 400


class TestRankings:
    PAYLOAD = [
        {"id": "ethereum", "symbol": "eth", "name": "Ethereum", "current_price": 3000,
         "market_cap": 3.6e11, "total_volume": 1e10, "price_change_percentage_24h": 1.234567},
        {"id": "bitcoin", "symbol": "btc", "name": "Bitcoin", "current_price": 65000,
         "market_cap": 1.2e12, "total_volume": 3e10, "price_change_percentage_24h": None},
        {"id": "", "symbol": "bad"},
    ]

    def test_sorted_by_market_cap_and_cached(self, client, monkeypatch):
        calls = []

        def fake_get(url, params=None, timeout=None):
            calls.append(params)
            return _Resp(self.PAYLOAD)

        monkeypatch.setattr(market_rankings.requests, "get", fake_get)
        items = client.get("/markets").json()["items"]
        assert [(i["rank"], i["id"], i["symbol"]) for i in items] == [(1, "bitcoin", "BTC"), (2, "ethereum", "ETH")]
        assert items[1]["change_pct_24h"] == pytest.approx(1.2346)
        assert items[0]["change_pct_24h"] is None

        client.get("/markets")
        assert len(calls) == 1

    def test_filter_by_ids_bypasses_cache(self, monkeypatch):
        calls = []

        def fake_get(url, params=None, timeout=None):
            calls.append(params)
            return _Resp(self.PAYLOAD[:1])

        monkeypatch.setattr(market_rankings.requests, "get", fake_get)
        market_rankings.fetch_rankings(["Ethereum "])
        market_rankings.fetch_rankings(["ethereum"])
        assert len(calls) == 2
        assert calls[0]["ids"] == "ethereum"

    def test_upstream_failure_is_502(self, client, monkeypatch):
        monkeypatch.setattr(market_rankings.requests, "get", lambda *a, **kw: _Resp([], status=503))
        assert client.get("/markets").status_code == 502
