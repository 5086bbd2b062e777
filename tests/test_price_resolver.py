"""
Tests for the price resolution cascade.

Covers source fallback, per-source retries, stale fallback from last known
prices, failed ids, and the HTTP sources' response normalization.
"""

import pytest
from unittest.mock import Mock, patch

from core.exceptions import CriticalDataUnavailable
from core.price_resolver import STALE_SOURCE, PriceResolver, fetch_prices_with_fallback
from core.price_sources import (
    BinanceTickerSource,
    CoinGeckoSource,
    CryptoCompareSource,
    build_default_sources,
)
from core.retry import RetryPolicy
from tests.helpers import HOUR_MS, T0, StubSource

SYMBOLS = {"bitcoin": "BTC", "ethereum": "ETH", "solana": "SOL"}
NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0.0)


def _response(payload=None, status_error=None, bad_json=False):
    response = Mock()
    response.raise_for_status.side_effect = status_error
    if bad_json:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload
    return response


class TestCascade:
    """Source ordering and fallback"""

    def test_primary_resolves_everything(self):
        primary = StubSource("coingecko", {"bitcoin": 50000.0, "ethereum": 3000.0})
        secondary = StubSource("cryptocompare", {"bitcoin": 1.0})

        result = PriceResolver([primary, secondary], NO_WAIT).resolve(["bitcoin", "ethereum"], SYMBOLS)

        assert result.prices["bitcoin"].price == 50000.0
        assert result.prices["ethereum"].source == "coingecko"
        assert result.failed_ids == []
        assert result.stats.source == "coingecko"
        assert result.stats.fetched_count == 2
        assert secondary.calls == []

    def test_secondary_only_asked_for_missing_ids(self):
        primary = StubSource("coingecko", {"bitcoin": 50000.0})
        secondary = StubSource("cryptocompare", {"ethereum": 3000.0, "bitcoin": 1.0})

        result = PriceResolver([primary, secondary], NO_WAIT).resolve(["bitcoin", "ethereum"], SYMBOLS)

        assert secondary.calls == [["ethereum"]]
        assert result.prices["bitcoin"].source == "coingecko"
        assert result.prices["ethereum"].source == "cryptocompare"

    def test_failed_source_retried_then_skipped(self):
        primary = StubSource("coingecko", {"bitcoin": 50000.0}, failures=5)
        secondary = StubSource("cryptocompare", {"bitcoin": 49900.0})

        result = PriceResolver([primary, secondary], NO_WAIT).resolve(["bitcoin"], SYMBOLS)

        assert len(primary.calls) == 3
        assert result.stats.attempts == {"coingecko": 3, "cryptocompare": 1}
        assert result.stats.source == "cryptocompare"
        assert result.prices["bitcoin"].price == 49900.0

    def test_transient_failure_counts_retries(self):
        primary = StubSource("coingecko", {"bitcoin": 50000.0}, failures=1)

        result = PriceResolver([primary], NO_WAIT).resolve(["bitcoin"], SYMBOLS)

        assert result.stats.retries == 1
        assert result.stats.attempts["coingecko"] == 2
        assert result.prices["bitcoin"].price == 50000.0

    def test_backoff_delays_between_attempts(self):
        primary = StubSource("coingecko", {}, failures=3)

        with patch('time.sleep') as mock_sleep:
            PriceResolver([primary], RetryPolicy(max_attempts=3, base_delay=5.0)).resolve(["bitcoin"], SYMBOLS)

        assert [c.args[0] for c in mock_sleep.call_args_list] == [10.0, 15.0]

    def test_duplicate_ids_requested_once(self):
        primary = StubSource("coingecko", {"bitcoin": 50000.0})

        result = PriceResolver([primary], NO_WAIT).resolve(["bitcoin", "bitcoin", ""], SYMBOLS)

        assert primary.calls == [["bitcoin"]]
        assert list(result.prices) == ["bitcoin"]

    def test_empty_request_touches_no_source(self):
        primary = StubSource("coingecko", {})
        result = PriceResolver([primary], NO_WAIT).resolve([], SYMBOLS)
        assert primary.calls == []
        assert result.prices == {} and result.failed_ids == []


class TestStaleFallback:
    """Last-known prices when every source misses"""

    def test_stale_price_used_with_age(self):
        dead = StubSource("coingecko", {}, failures=10)
        last_known = {"bitcoin": (48000.0, T0)}

        result = PriceResolver([dead], NO_WAIT).resolve(
            ["bitcoin"], SYMBOLS, last_known=last_known, now_ms=T0 + 2 * HOUR_MS
        )

        info = result.prices["bitcoin"]
        assert info.price == 48000.0
        assert info.is_stale
        assert info.source == STALE_SOURCE
        assert info.stale_ms == 2 * HOUR_MS
        assert result.stats.stale_count == 1
        assert result.stats.source is None

    def test_asset_without_history_is_failed_not_zero(self):
        primary = StubSource("coingecko", {"bitcoin": 50000.0})

        result = PriceResolver([primary], NO_WAIT).resolve(
            ["bitcoin", "solana"], SYMBOLS, last_known={"solana": (0.0, T0)}, now_ms=T0
        )

        assert "solana" not in result.prices
        assert result.failed_ids == ["solana"]

    def test_every_asset_lands_in_exactly_one_bucket(self):
        primary = StubSource("coingecko", {"bitcoin": 50000.0})
        last_known = {"ethereum": (3000.0, T0)}

        result = fetch_prices_with_fallback(
            ["bitcoin", "ethereum", "solana"], SYMBOLS, last_known=last_known,
            sources=[primary], retry_policy=NO_WAIT, now_ms=T0,
        )

        assert set(result.prices) | set(result.failed_ids) == {"bitcoin", "ethereum", "solana"}
        assert not set(result.prices) & set(result.failed_ids)
        assert all(info.price > 0 for info in result.prices.values())


class TestHttpSources:
    """Response normalization of the real sources (requests.get mocked)"""

    def test_coingecko_parses_prices_and_skips_invalid(self):
        payload = {
            "bitcoin": {"usd": 50000, "usd_24h_change": 2.5},
            "ethereum": {"usd": 0},
            "solana": {"usd": "n/a"},
        }
        with patch('core.price_sources.requests.get', return_value=_response(payload)) as mock_get:
            prices = CoinGeckoSource(api_key="demo").fetch(["bitcoin", "ethereum", "solana"], SYMBOLS)

        assert list(prices) == ["bitcoin"]
        assert prices["bitcoin"].change_24h == 2.5
        assert mock_get.call_args.kwargs["headers"] == {"x-cg-demo-api-key": "demo"}
        assert mock_get.call_args.kwargs["params"]["ids"] == "bitcoin,ethereum,solana"

    def test_coingecko_http_error_raises(self):
        from requests.exceptions import HTTPError

        with patch('core.price_sources.requests.get', return_value=_response(status_error=HTTPError("429"))):
            with pytest.raises(HTTPError):
                CoinGeckoSource().fetch(["bitcoin"], SYMBOLS)

    def test_invalid_json_raises_critical(self):
        with patch('core.price_sources.requests.get', return_value=_response(bad_json=True)):
            with pytest.raises(CriticalDataUnavailable):
                CoinGeckoSource().fetch(["bitcoin"], SYMBOLS)

    def test_coingecko_chunks_large_requests(self):
        ids = [f"coin-{i}" for i in range(120)]
        payload = {asset_id: {"usd": 1.0} for asset_id in ids}

        with patch('core.price_sources.requests.get', return_value=_response(payload)) as mock_get:
            prices = CoinGeckoSource().fetch(ids, {})

        assert mock_get.call_count == 3
        assert len(prices) == 120

    def test_cryptocompare_maps_symbols_back_to_ids(self):
        payload = {"RAW": {"BTC": {"USD": {"PRICE": 50100.0, "CHANGEPCT24HOUR": -1.2}}}}
        with patch('core.price_sources.requests.get', return_value=_response(payload)) as mock_get:
            prices = CryptoCompareSource().fetch(["bitcoin", "ethereum"], SYMBOLS)

        assert mock_get.call_args.kwargs["params"]["fsyms"] == "BTC,ETH"
        assert prices["bitcoin"].price == 50100.0
        assert prices["bitcoin"].change_24h == -1.2
        assert "ethereum" not in prices

    def test_cryptocompare_error_response_raises(self):
        payload = {"Response": "Error", "Message": "rate limit"}
        with patch('core.price_sources.requests.get', return_value=_response(payload)):
            with pytest.raises(CriticalDataUnavailable):
                CryptoCompareSource().fetch(["bitcoin"], SYMBOLS)

    def test_binance_uses_stable_coin_pairs(self):
        payload = [{"symbol": "BTCUSDT", "price": "50200.5"}, {"symbol": "ETHBTC", "price": "0.05"}]
        with patch('core.price_sources.requests.get', return_value=_response(payload)):
            prices = BinanceTickerSource(quote_asset="USDT").fetch(["bitcoin", "ethereum"], SYMBOLS)

        assert prices["bitcoin"].price == 50200.5
        assert prices["bitcoin"].change_24h == 0.0
        assert "ethereum" not in prices


class TestBuildDefaultSources:

    def test_order_and_keys_from_settings(self, monkeypatch):
        monkeypatch.setenv("CG_KEY", "secret")
        sources = build_default_sources(
            {"order": ["binance", "coingecko"], "timeout_seconds": 3, "api_key_env": {"coingecko": "CG_KEY"}},
            stable_coin="USDC",
        )

        assert [s.name for s in sources] == ["binance", "coingecko"]
        assert sources[0].quote_asset == "USDC"
        assert sources[1].api_key == "secret"
        assert sources[1].timeout == 3.0

    def test_defaults(self):
        assert [s.name for s in build_default_sources()] == ["coingecko", "cryptocompare", "binance"]
