"""
Cycle Investor Runner: Main Loop

Drives cycles from opening to completion.

Flow per run:
1. For every active cycle with an iteration due, run the iteration
   (price cascade + sell rules + iteration record)
2. Execute sells through the exchange gateway and close the positions
3. Mark the surviving positions of the cycle to market
4. Feed closed positions into the calibration
5. Complete cycles whose iterations are done
6. Watchdog: check open positions left behind by completed cycles
"""

import json
import logging
import os
import signal
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from core.calibration import (
    CALIBRATED_CATEGORIES,
    CalibrationState,
    build_calibration_report,
    observe,
    rebuild,
)
from core.config import InvestConfig
from core.cycle_manager import complete_cycle, create_cycle, latest_prices
from core.exceptions import CycleCompletedError, StaleCycleVersionError
from core.exchange_gateway import ExchangeGateway
from core.iteration_engine import IterationEngine, IterationResult, has_iteration_due
from core.models import AssetSnapshot, Cycle, Position, iso_to_ms, utc_now_ms
from core.position_manager import (
    PositionManager,
    calculate_available_capital,
    close_position,
    create_position,
    record_iteration_hold,
    select_investment_targets,
    update_position_pnl,
)
from core.price_resolver import PriceResolver
from core.price_sources import build_default_sources
from core.retry import RetryPolicy
from infra.metrics import IterationStats, MetricsRecorder
from infra.scheduler import IterationScheduler
from infra.state_store import CalibrationStore, CycleStore, PositionStore

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000


class CycleInvestLoop:
    """
    Main cycle loop orchestrator.

    Responsibilities:
    - Load and validate config
    - Open cycles and their positions
    - Run due iterations and act on their sell decisions
    - Keep calibration current with every closed position
    """

    def __init__(
        self,
        config_dir: str = "config",
        resolver: Optional[PriceResolver] = None,
        gateway: Optional[ExchangeGateway] = None,
    ):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {str(error).splitlines()[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")

        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/cycle-investor.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

        self.config = InvestConfig.from_mapping(self.policy_config.get("invest"))
        cycle_cfg = self.policy_config.get("cycle", {}) or {}
        self.default_duration_ms = int(float(cycle_cfg.get("default_duration_hours", 12)) * HOUR_MS)
        self.loop_interval_seconds = float((self.app_config.get("loop", {}) or {}).get("interval_seconds", 60))

        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()

        state_cfg = self.app_config.get("state", {}) or {}
        self.cycle_store = CycleStore(state_cfg.get("cycles_file"))
        self.position_store = PositionStore(state_cfg.get("positions_file"))
        self.calibration_store = CalibrationStore(state_cfg.get("calibration_file"))

        sources_cfg = self.app_config.get("price_sources", {}) or {}
        self.resolver = resolver or PriceResolver(
            sources=build_default_sources(sources_cfg, stable_coin=self.config.stable_coin),
            retry_policy=RetryPolicy(
                max_attempts=int(sources_cfg.get("max_retries", 3)),
                base_delay=float(sources_cfg.get("retry_delay_seconds", 5)),
            ),
        )
        self.gateway = gateway or ExchangeGateway()
        self.exchange_keys = self._load_exchange_keys(self.app_config.get("exchange", {}) or {})

        self.engine = IterationEngine(self.cycle_store, self.resolver, self.config, metrics=self.metrics)
        self.position_manager = PositionManager(self.config)
        self._scheduler: Optional[IterationScheduler] = None
        self._running = True

        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(
            f"Initialized CycleInvestLoop in {self.config.mode} mode on {self.config.exchange} "
            f"(capital={self.config.capital_total}, per_cycle={self.config.capital_per_cycle})"
        )

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received, stopping after the current run")
        self._running = False
        if self._scheduler is not None:
            self._scheduler.stop()

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def _load_exchange_keys(exchange_cfg: Mapping[str, Any]) -> Dict[str, str]:
        keys = {}
        for field_name, env_key in (("apiKey", "api_key_env"), ("apiSecret", "api_secret_env")):
            env_name = exchange_cfg.get(env_key)
            if env_name and os.getenv(env_name):
                keys[field_name] = os.environ[env_name]
        return keys

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    def open_cycle(
        self,
        snapshot: Sequence[Any],
        duration_ms: Optional[int] = None,
        now_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Open a cycle over ``snapshot`` and invest in the selected targets.

        Args:
            snapshot: AssetSnapshot objects or raw asset dicts
            duration_ms: Cycle length (defaults to policy cycle.default_duration_hours)
            now_ms: Cycle start time

        Returns:
            Dict with the cycle, the selection and opened/failed positions
        """
        now = now_ms if now_ms is not None else utc_now_ms()
        assets = [a if isinstance(a, AssetSnapshot) else AssetSnapshot.from_dict(a) for a in snapshot]
        cycle = self.cycle_store.save_cycle(create_cycle(assets, duration_ms or self.default_duration_ms, now))

        positions = self.position_store.get_positions()
        selection = select_investment_targets(cycle.snapshot, self.config, positions)
        summary: Dict[str, Any] = {
            "cycle": cycle.to_dict(),
            "selection": selection.to_dict(),
            "opened": [],
            "failed": [],
        }
        if not selection.should_invest:
            logger.info(f"Cycle {cycle.id}: not investing ({selection.reason})")
            return summary

        available = calculate_available_capital(positions, self.config.capital_total)
        if available + 1e-9 < selection.cycle_capital:
            summary["selection"]["shouldInvest"] = False
            summary["selection"]["reason"] = (
                f"Available capital {available:.2f} below cycle capital {selection.cycle_capital:.2f}"
            )
            logger.warning(f"Cycle {cycle.id}: {summary['selection']['reason']}")
            return summary

        opened: List[Position] = []
        for target in selection.selected:
            order = self.gateway.place_order(
                target.symbol, "BUY", target.capital_usd, self.config, self.exchange_keys,
                reference_price=target.entry_price,
                client_order_id=f"{cycle.id}:{target.asset_id}:entry",
            )
            if not order.success:
                self.metrics.record_order_failure("buy")
                logger.warning(f"BUY {target.symbol} failed: {order.error}")
                summary["failed"].append({"assetId": target.asset_id, "error": order.error})
                continue
            position = create_position(target, cycle.id, self.config, now_ms=now, exchange_order_id=order.order_id)
            opened.append(position)
            logger.info(
                f"Opened {position.symbol}: {position.units:.8f} units @ {position.entry_price} "
                f"(${position.capital_usd:.2f}, TP {position.take_profit_price:.6f}, SL {position.stop_loss_price:.6f})"
            )

        if opened:
            self.position_store.update(lambda stored: stored + opened)
        self.metrics.record_open_positions(sum(1 for p in positions if p.is_open) + len(opened))
        summary["opened"] = [p.to_dict() for p in opened]
        return summary

    # ------------------------------------------------------------------
    # Iterating
    # ------------------------------------------------------------------

    def run_cycle(self, now_ms: Optional[int] = None) -> List[IterationResult]:
        """One pass over all active cycles plus the orphan watchdog."""
        now = now_ms if now_ms is not None else utc_now_ms()
        results = []
        active_ids = []

        for cycle in self.cycle_store.load_active_cycles():
            try:
                result = self._process_cycle(cycle, now)
            except (StaleCycleVersionError, CycleCompletedError) as e:
                logger.warning(f"Cycle {cycle.id} skipped: {e}")
                self.metrics.observe_iteration(IterationStats("skipped", cycle.id, 0, 0, 0, 0.0))
                continue
            except Exception as e:
                logger.exception(f"Cycle {cycle.id} iteration failed: {e}")
                self.metrics.observe_iteration(IterationStats("error", cycle.id, 0, 0, 0, 0.0))
                active_ids.append(cycle.id)
                continue
            if result is not None:
                results.append(result)
                if result.cycle is not None and result.cycle.is_completed:
                    continue
            active_ids.append(cycle.id)

        self._run_watchdog(active_ids, now)

        open_count = sum(1 for p in self.position_store.get_positions() if p.is_open)
        self.metrics.record_open_positions(open_count)
        return results

    def _process_cycle(self, cycle: Cycle, now: int) -> Optional[IterationResult]:
        if not has_iteration_due(cycle, now):
            if cycle.iterations_complete:
                self._complete(cycle, now)
            return None

        start = time.monotonic()
        result = self.engine.execute_iteration(cycle.id, self.position_store.get_positions(), now_ms=now)
        closed = self._execute_sells(result)
        self._mark_survivors(result, {p.id for p in closed})
        self._observe_closed(closed)

        if result.cycle is not None and result.cycle.iterations_complete:
            result.cycle = self._complete(result.cycle, now)

        self.metrics.observe_iteration(IterationStats(
            status="ok",
            cycle_id=cycle.id,
            iteration_number=result.iteration_number,
            to_sell=len(result.to_sell),
            closed=len(closed),
            duration_seconds=time.monotonic() - start,
        ))
        return result

    def _execute_sells(self, result: IterationResult) -> List[Position]:
        """
        Sell every position flagged by the iteration.

        A failed order leaves the position open; the next iteration or the
        watchdog evaluates it again.
        """
        closed = []
        for order in result.to_sell:
            position = order.position
            exit_result = self.gateway.place_order(
                position.symbol, "SELL", position.units * order.current_price, self.config, self.exchange_keys,
                reference_price=order.current_price,
                client_order_id=f"{position.id}:exit",
            )
            if not exit_result.success:
                self.metrics.record_order_failure("sell")
                logger.warning(f"SELL {position.symbol} failed, position stays open: {exit_result.error}")
                continue

            exit_price = exit_result.average_price or order.current_price
            closed.append(close_position(position, exit_price, order.decision.rule, self.config))
            self.metrics.record_position_closed(order.decision.rule)

        if closed:
            self._apply_position_updates({p.id: p for p in closed})
        return closed

    def _mark_survivors(self, result: IterationResult, closed_ids: set) -> None:
        updates = {}
        for position in self.position_store.get_positions():
            if not position.is_open or position.cycle_id != result.cycle_id or position.id in closed_ids:
                continue
            price = result.prices.get(position.asset_id)
            if price is None:
                continue
            updates[position.id] = record_iteration_hold(position, price)
        if updates:
            self._apply_position_updates(updates)

    def _apply_position_updates(self, updates: Mapping[str, Position]) -> None:
        def merge(stored: List[Position]) -> List[Position]:
            # a position closed by another writer stays closed
            return [updates.get(p.id, p) if p.is_open else p for p in stored]

        self.position_store.update(merge)

    def _observe_closed(self, closed: Sequence[Position]) -> None:
        for position in closed:
            state = self.calibration_store.update(lambda s, p=position: observe(s, p))
            entry = state.category(position.classification)
            if entry is not None:
                self.metrics.record_calibration_samples(position.classification.value, entry.samples)

    def _complete(self, cycle: Cycle, now: int) -> Cycle:
        completed = complete_cycle(cycle, latest_prices(cycle), now_ms=now)
        return self.cycle_store.save_cycle(completed, expected_version=cycle.version)

    def _run_watchdog(self, active_cycle_ids: Sequence[str], now: int) -> List[Position]:
        """
        Close orphaned open positions.

        Orphans of completed cycles are always sold. Orphans of unknown cycles
        are sold only when TP/SL/max-hold trips, otherwise marked to market.
        """
        positions = self.position_store.get_positions()
        orphans = self.position_manager.find_orphans(positions, active_cycle_ids)
        if not orphans:
            return []

        symbol_map = {p.asset_id: p.symbol for p in orphans}
        last_known = {}
        for p in orphans:
            mark = p.current_price if p.current_price else p.entry_price
            observed_at = iso_to_ms(p.opened_at)
            if mark and mark > 0 and observed_at is not None:
                # age counts from opening, an upper bound on the last mark
                last_known[p.asset_id] = (mark, observed_at)
        resolution = self.resolver.resolve(list(symbol_map), symbol_map, last_known=last_known, now_ms=now)
        prices = {asset_id: info.price for asset_id, info in resolution.prices.items()}
        signals = {
            s.position_id: s
            for s in self.position_manager.evaluate_positions(
                orphans, prices, active_cycle_ids, self.cycle_store.list_completed_ids()
            )
        }

        updates: Dict[str, Position] = {}
        closed = []
        for position in orphans:
            price = prices.get(position.asset_id)
            if price is None:
                continue
            exit_signal = signals.get(position.id)
            if exit_signal is not None:
                order = self.gateway.place_order(
                    position.symbol, "SELL", position.units * price, self.config, self.exchange_keys,
                    reference_price=price, client_order_id=f"{position.id}:exit",
                )
                if order.success:
                    closed_position = close_position(
                        position, order.average_price or price, exit_signal.reason, self.config
                    )
                    updates[position.id] = closed_position
                    closed.append(closed_position)
                    self.metrics.record_position_closed(exit_signal.reason)
                    continue
                self.metrics.record_order_failure("sell")
                logger.warning(f"Watchdog SELL {position.symbol} failed: {order.error}")
            updates[position.id] = update_position_pnl(position, price)

        if updates:
            self._apply_position_updates(updates)
        self._observe_closed(closed)
        return closed

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def rebuild_calibration(self) -> CalibrationState:
        """Replace the stored calibration with a replay of all closed positions."""
        closed = [p for p in self.position_store.get_positions() if not p.is_open]
        state = self.calibration_store.update(lambda _: rebuild(closed))
        for category in CALIBRATED_CATEGORIES:
            entry = state.category(category)
            if entry is not None:
                self.metrics.record_calibration_samples(category.value, entry.samples)
        return state

    def calibration_report(self) -> Dict[str, Any]:
        return build_calibration_report(self.calibration_store.load())

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """Run the loop on an IterationScheduler until a stop signal arrives."""
        interval = float(interval_seconds) if interval_seconds else self.loop_interval_seconds
        logger.info(f"Starting continuous loop (interval={interval}s)")
        self._scheduler = IterationScheduler(self.run_cycle, interval, name="CycleInvestLoop")
        if self._running:
            self._scheduler.run_blocking()
        logger.info("Cycle loop stopped cleanly.")


def _load_snapshot(path: str) -> List[dict]:
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("snapshot") or data.get("assets") or []
    return list(data)


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Cycle investment engine")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between runs (default: app.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--open-cycle", metavar="SNAPSHOT_JSON", help="Open a cycle from a snapshot file and exit")
    parser.add_argument("--duration-hours", type=float, default=None, help="Duration of the cycle to open")
    parser.add_argument("--rebuild-calibration", action="store_true", help="Rebuild calibration from closed positions")
    parser.add_argument("--report", action="store_true", help="Print the calibration report")

    args = parser.parse_args()

    loop = CycleInvestLoop(config_dir=args.config_dir)

    if args.open_cycle:
        duration_ms = int(args.duration_hours * HOUR_MS) if args.duration_hours else None
        summary = loop.open_cycle(_load_snapshot(args.open_cycle), duration_ms=duration_ms)
        print(json.dumps({k: summary[k] for k in ("selection", "opened", "failed")}, indent=2))
        return
    if args.rebuild_calibration:
        loop.rebuild_calibration()
    if args.report:
        print(json.dumps(loop.calibration_report(), indent=2))
        return
    if args.rebuild_calibration:
        return

    if args.once:
        loop.run_cycle()
    else:
        loop.run_forever(interval_seconds=args.interval)


if __name__ == "__main__":
    main()
