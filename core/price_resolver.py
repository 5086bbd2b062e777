"""
Price Resolver: multi-source cascade with retries and stale fallback.

Every requested asset ends up in exactly one place: the price map (fresh or
stale) or the failed list. An asset is never given a made-up price.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from core.models import FetchStats, PriceInfo, utc_now_ms
from core.price_sources import PriceSource, build_default_sources
from core.retry import RetryPolicy, attempt_with_policy

logger = logging.getLogger(__name__)

STALE_SOURCE = "stale"

# asset_id -> (price, epoch ms of that observation)
LastKnown = Mapping[str, Tuple[float, int]]


@dataclass
class ResolutionResult:
    """Partial-success result of one resolution pass"""
    prices: Dict[str, PriceInfo] = field(default_factory=dict)
    failed_ids: List[str] = field(default_factory=list)
    stats: FetchStats = field(default_factory=FetchStats)

    def to_dict(self) -> Dict:
        return {
            "prices": {asset_id: info.to_dict() for asset_id, info in self.prices.items()},
            "failedIds": list(self.failed_ids),
            "stats": self.stats.to_dict(),
        }


class PriceResolver:
    """
    Resolve current prices through an ordered list of sources.

    Sources are tried one after another, each under the retry policy, and
    each one is only asked for the ids its predecessors left unresolved.
    """

    def __init__(
        self,
        sources: Optional[Sequence[PriceSource]] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.sources = list(sources) if sources is not None else build_default_sources()
        self.retry_policy = retry_policy or RetryPolicy()

    def resolve(
        self,
        asset_ids: Sequence[str],
        symbol_map: Mapping[str, str],
        last_known: Optional[LastKnown] = None,
        now_ms: Optional[int] = None,
    ) -> ResolutionResult:
        """
        Resolve prices for ``asset_ids``.

        Args:
            asset_ids: Asset identifiers to price
            symbol_map: asset_id -> ticker symbol, for symbol-based sources
            last_known: asset_id -> (price, timestamp_ms) used as stale fallback
            now_ms: Current time for stale age computation

        Returns:
            ResolutionResult with prices, failed_ids and stats
        """
        result = ResolutionResult()
        unresolved = [asset_id for asset_id in dict.fromkeys(asset_ids) if asset_id]
        if not unresolved:
            return result

        last_known = last_known or {}
        stats = result.stats

        for source in self.sources:
            if not unresolved:
                break

            pending = list(unresolved)

            def _report(attempt: int, exc: BaseException, name: str = source.name) -> None:
                logger.warning(
                    f"{name} attempt {attempt}/{self.retry_policy.max_attempts} failed: {exc}"
                )

            outcome = attempt_with_policy(
                lambda src=source, ids=pending: src.fetch(ids, symbol_map),
                self.retry_policy,
                on_failure=_report,
            )
            stats.attempts[source.name] = outcome.attempts
            if not outcome.succeeded:
                logger.warning(f"{source.name} exhausted {outcome.attempts} attempts, falling back")
                continue

            stats.retries += outcome.retries
            fetched: Dict[str, PriceInfo] = outcome.value or {}
            resolved_now = [asset_id for asset_id in pending if asset_id in fetched]
            for asset_id in resolved_now:
                result.prices[asset_id] = fetched[asset_id]
            unresolved = [asset_id for asset_id in unresolved if asset_id not in fetched]

            if resolved_now and stats.source is None:
                stats.source = source.name
            logger.debug(f"{source.name} resolved {len(resolved_now)}/{len(pending)} assets")

        now = now_ms if now_ms is not None else utc_now_ms()
        for asset_id in unresolved:
            known = last_known.get(asset_id)
            price = known[0] if known else None
            if price is not None and price > 0:
                stale_ms = max(0, now - int(known[1] or 0))
                result.prices[asset_id] = PriceInfo(
                    price=float(price),
                    change_24h=0.0,
                    source=STALE_SOURCE,
                    is_stale=True,
                    stale_ms=stale_ms,
                )
                stats.stale_count += 1
                logger.warning(f"Using stale price for {asset_id} ({round(stale_ms / 60000)} min old)")
            else:
                result.failed_ids.append(asset_id)
                logger.error(f"No price and no history for {asset_id}; excluded from this iteration")

        stats.fetched_count = len(result.prices)
        return result


def fetch_prices_with_fallback(
    asset_ids: Sequence[str],
    symbol_map: Mapping[str, str],
    last_known: Optional[LastKnown] = None,
    sources: Optional[Sequence[PriceSource]] = None,
    retry_policy: Optional[RetryPolicy] = None,
    now_ms: Optional[int] = None,
) -> ResolutionResult:
    """Functional entry point: build a resolver and run one pass."""
    resolver = PriceResolver(sources=sources, retry_policy=retry_policy)
    return resolver.resolve(asset_ids, symbol_map, last_known=last_known, now_ms=now_ms)
