"""
HTTP price feeds used by the price resolver.

Each source normalizes its own response shape into ``PriceInfo`` keyed by
asset id. Sources raise on transport or payload errors; retrying and
falling back is the resolver's job.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import requests

from core.exceptions import CriticalDataUnavailable
from core.models import PriceInfo, parse_price

logger = logging.getLogger(__name__)

COINGECKO_URL = "https://api.coingecko.com/api/v3/simple/price"
CRYPTOCOMPARE_URL = "https://min-api.cryptocompare.com/data/pricemultifull"
BINANCE_TICKER_URL = "https://api.binance.com/api/v3/ticker/price"

DEFAULT_TIMEOUT_SECONDS = 8.0


def _chunks(items: Sequence[str], size: int) -> List[List[str]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _change(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class PriceSource:
    """
    Base class for a price feed.

    Subclasses implement ``_fetch_chunk``. Requests for many assets are split
    into chunks which are fetched concurrently; the call fails only if every
    chunk fails.
    """
    name = "base"
    chunk_size = 50

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS, max_workers: int = 4):
        self.timeout = timeout
        self.max_workers = max_workers

    def fetch(self, asset_ids: Sequence[str], symbol_map: Mapping[str, str]) -> Dict[str, PriceInfo]:
        keys = self._request_keys(asset_ids, symbol_map)
        if not keys:
            return {}

        chunks = _chunks(keys, self.chunk_size)
        if len(chunks) == 1:
            return self._fetch_chunk(chunks[0], asset_ids, symbol_map)

        results: Dict[str, PriceInfo] = {}
        errors: List[Exception] = []
        workers = min(self.max_workers, len(chunks))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self._fetch_chunk, chunk, asset_ids, symbol_map): idx
                for idx, chunk in enumerate(chunks)
            }
            for future in as_completed(futures):
                try:
                    results.update(future.result())
                except Exception as exc:
                    logger.warning(f"{self.name}: chunk {futures[future]} failed: {exc}")
                    errors.append(exc)

        if errors and len(errors) == len(chunks):
            raise errors[-1]
        return results

    def _request_keys(self, asset_ids: Sequence[str], symbol_map: Mapping[str, str]) -> List[str]:
        return list(asset_ids)

    def _fetch_chunk(
        self, keys: List[str], asset_ids: Sequence[str], symbol_map: Mapping[str, str]
    ) -> Dict[str, PriceInfo]:
        raise NotImplementedError

    def _get(self, url: str, params: Optional[dict] = None, headers: Optional[dict] = None):
        response = requests.get(url, params=params, headers=headers or {}, timeout=self.timeout)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise CriticalDataUnavailable(f"{self.name}: invalid JSON", exc)


class CoinGeckoSource(PriceSource):
    """Primary source, queried by CoinGecko asset id."""
    name = "coingecko"

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key

    def _fetch_chunk(self, keys, asset_ids, symbol_map):
        params = {"ids": ",".join(keys), "vs_currencies": "usd", "include_24hr_change": "true"}
        headers = {"x-cg-demo-api-key": self.api_key} if self.api_key else None
        data = self._get(COINGECKO_URL, params=params, headers=headers)
        if not isinstance(data, dict):
            raise CriticalDataUnavailable(f"{self.name}: unexpected payload type {type(data).__name__}")

        result = {}
        for asset_id in keys:
            entry = data.get(asset_id)
            if not isinstance(entry, dict):
                continue
            price = parse_price(entry.get("usd"))
            if price is None:
                continue
            result[asset_id] = PriceInfo(price=price, change_24h=_change(entry.get("usd_24h_change")), source=self.name)
        return result


class CryptoCompareSource(PriceSource):
    """Secondary source, queried by ticker symbol."""
    name = "cryptocompare"

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key

    def _request_keys(self, asset_ids, symbol_map):
        symbols = []
        for asset_id in asset_ids:
            symbol = symbol_map.get(asset_id)
            if symbol and symbol.upper() not in symbols:
                symbols.append(symbol.upper())
        return symbols

    def _fetch_chunk(self, keys, asset_ids, symbol_map):
        headers = {"authorization": f"Apikey {self.api_key}"} if self.api_key else None
        params = {"fsyms": ",".join(keys), "tsyms": "USD"}
        data = self._get(CRYPTOCOMPARE_URL, params=params, headers=headers)
        if not isinstance(data, dict):
            raise CriticalDataUnavailable(f"{self.name}: unexpected payload type {type(data).__name__}")
        raw = data.get("RAW") or {}
        if not raw and data.get("Response") == "Error":
            raise CriticalDataUnavailable(f"{self.name}: {data.get('Message', 'error response')}")

        wanted = set(asset_ids)
        ids_by_symbol: Dict[str, List[str]] = {}
        for asset_id, symbol in symbol_map.items():
            if asset_id in wanted and symbol:
                ids_by_symbol.setdefault(symbol.upper(), []).append(asset_id)

        result = {}
        for symbol, quote in raw.items():
            usd = quote.get("USD") if isinstance(quote, dict) else None
            if not isinstance(usd, dict):
                continue
            price = parse_price(usd.get("PRICE"))
            if price is None:
                continue
            for asset_id in ids_by_symbol.get(symbol.upper(), []):
                result[asset_id] = PriceInfo(
                    price=price, change_24h=_change(usd.get("CHANGEPCT24HOUR")), source=self.name
                )
        return result


class BinanceTickerSource(PriceSource):
    """Last-resort source: the public Binance ticker list against a stable coin."""
    name = "binance"

    def __init__(self, quote_asset: str = "USDT", **kwargs):
        super().__init__(**kwargs)
        self.quote_asset = quote_asset.upper()

    def fetch(self, asset_ids, symbol_map):
        if not any(symbol_map.get(asset_id) for asset_id in asset_ids):
            return {}

        tickers = self._get(BINANCE_TICKER_URL)
        if not isinstance(tickers, list):
            raise CriticalDataUnavailable(f"{self.name}: unexpected payload type {type(tickers).__name__}")
        prices_by_pair = {}
        for ticker in tickers:
            if isinstance(ticker, dict) and ticker.get("symbol"):
                prices_by_pair[ticker["symbol"]] = ticker.get("price")

        result = {}
        for asset_id in asset_ids:
            symbol = symbol_map.get(asset_id)
            if not symbol:
                continue
            price = parse_price(prices_by_pair.get(f"{symbol.upper()}{self.quote_asset}"))
            if price is not None:
                result[asset_id] = PriceInfo(price=price, change_24h=0.0, source=self.name)
        return result


SOURCE_TYPES = {
    CoinGeckoSource.name: CoinGeckoSource,
    CryptoCompareSource.name: CryptoCompareSource,
    BinanceTickerSource.name: BinanceTickerSource,
}

DEFAULT_SOURCE_ORDER = ("coingecko", "cryptocompare", "binance")


def build_default_sources(settings: Optional[Mapping] = None, stable_coin: str = "USDT") -> List[PriceSource]:
    """
    Build the ordered source cascade from the ``price_sources`` block of app.yaml.

    Credentials are read from the environment variables named in the block.
    """
    settings = settings or {}
    timeout = float(settings.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS))
    order: Iterable[str] = settings.get("order") or DEFAULT_SOURCE_ORDER
    key_envs = settings.get("api_key_env") or {}

    sources: List[PriceSource] = []
    for name in order:
        source_type = SOURCE_TYPES.get(name)
        if source_type is None:
            logger.warning(f"Unknown price source '{name}' in config, skipping")
            continue
        if source_type is BinanceTickerSource:
            sources.append(BinanceTickerSource(quote_asset=stable_coin, timeout=timeout))
            continue
        env_name = key_envs.get(name)
        api_key = os.getenv(env_name) if env_name else None
        sources.append(source_type(api_key=api_key, timeout=timeout))
    return sources
