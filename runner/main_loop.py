"""
Runner: Trading Service

Wires the decision pipeline to its collaborators and runs three periodic
loops:
1. Tick: evaluate every symbol (in parallel) through the TradingCyclePipeline
2. Monitor: feed current prices to open positions (trailing stops, exits)
3. Reaper: cancel live confirmations whose TTL has passed

Also exposes the administrative operations: pause/resume, circuit breaker
trip/reset, pending order confirmation and manual close.
"""

import argparse
import logging
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.circuit_breaker import CircuitBreaker
from core.exceptions import ExecutionFailure, PersistenceFailure
from core.execution import PaperBroker
from core.interfaces import AccountLedger, ExecutionBroker, MarketDataFeed, PersistenceStore
from core.ledger import PaperLedger, account_state
from core.position_manager import PositionLifecycleManager
from core.position_state import CloseReason, Position, PositionState
from core.regime import RegimeClassifier
from core.risk import RiskGate
from core.sizing import PerformanceTracker, PositionSizer
from core.timeframes import TimeframeAligner
from core.trading_cycle import CycleResult, TradingCyclePipeline
from infra.alerting import AlertService
from infra.market_feed import CsvReplayFeed
from infra.metrics import MetricsRecorder
from infra.retry import RetryPolicy
from infra.state_store import StateStore
from runner.scheduler import PeriodicTask
from strategy.ensemble import SignalEnsemble
from strategy.registry import StrategyRegistry
from tools.config_validator import validate_all_configs

logger = logging.getLogger(__name__)


def setup_logging(log_cfg: Optional[Dict[str, Any]]) -> None:
    log_cfg = log_cfg or {}
    log_file = log_cfg.get("file", "logs/trader.log")
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
    )


class TradingService:
    """
    Main service orchestrator.

    Collaborators may be injected (tests, live deployments); anything not
    injected is built from the config files. LIVE mode has no built-in
    broker or ledger and refuses to start without them.
    """

    def __init__(
        self,
        config_dir: str = "config",
        feed: Optional[MarketDataFeed] = None,
        broker: Optional[ExecutionBroker] = None,
        ledger: Optional[AccountLedger] = None,
        store: Optional[PersistenceStore] = None,
        alert_service: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.config_dir = Path(config_dir)
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")
        strategies_config = self._load_yaml("strategies.yaml").get("strategies", {})

        self.mode = self.app_config["app"]["mode"].upper()
        self.symbols: List[str] = list(self.app_config["symbols"])
        loop_cfg = self.app_config.get("loop", {}) or {}
        self.tick_seconds = float(loop_cfg.get("tick_seconds", 30))
        self.monitor_seconds = float(loop_cfg.get("monitor_seconds", 5))
        self.reaper_seconds = float(loop_cfg.get("reaper_seconds", 15))
        self.jitter_pct = float(loop_cfg.get("jitter_pct", 0))
        self.max_workers = int(loop_cfg.get("max_workers", 4))
        persistence_cfg = self.app_config.get("persistence", {}) or {}
        paper_cfg = self.app_config.get("paper", {}) or {}
        metrics_cfg = self.app_config.get("metrics", {}) or {}

        if self.mode == "LIVE" and (broker is None or ledger is None):
            raise ValueError("LIVE mode requires an injected ExecutionBroker and AccountLedger")

        # Infrastructure
        self.store = store or StateStore(persistence_cfg.get("state_file"))
        self.alert_service = alert_service or AlertService.from_config(self.app_config.get("alerts"))
        self.metrics = metrics or MetricsRecorder(
            enabled=bool(metrics_cfg.get("enabled", False)),
            port=int(metrics_cfg.get("port", 9100)),
        )

        # Decision components
        self.circuit_breaker = CircuitBreaker(self.store, self.alert_service, self.metrics)
        sizing_cfg = self.policy_config.get("sizing", {}) or {}
        self.tracker = PerformanceTracker(int(sizing_cfg.get("max_history", 100)))
        self.sizer = PositionSizer(sizing_cfg, self.tracker)
        self.ensemble = SignalEnsemble(self.policy_config.get("ensemble"), self.tracker)
        self.regime_classifier = RegimeClassifier(self.policy_config.get("regime"))
        self.aligner = TimeframeAligner(self.policy_config.get("timeframes"))
        self.strategy_registry = StrategyRegistry(
            config_path=self.config_dir / "strategies.yaml",
            strategies_config=strategies_config,
        )

        self.ledger = ledger or PaperLedger(float(paper_cfg.get("starting_balance_usd", 10_000)))
        stops_cfg = self.policy_config.get("stops", {}) or {}
        history = max(int(stops_cfg.get("history_candles", 0)), self.aligner.min_candles)
        self.feed = feed or CsvReplayFeed(
            paper_cfg.get("candles_dir", "data/candles"),
            start_index=history,
            default_spread_bps=float(paper_cfg.get("default_spread_bps", 5.0)),
        )
        self.broker = broker or PaperBroker(slippage_bps=float(paper_cfg.get("slippage_bps", 0.0)))

        self.lifecycle = PositionLifecycleManager(
            store=self.store,
            broker=self.broker,
            config=self.policy_config.get("lifecycle"),
            circuit_breaker=self.circuit_breaker,
            alert_service=self.alert_service,
            metrics=self.metrics,
            live=self.mode == "LIVE",
            retry_policy=RetryPolicy.from_config(persistence_cfg),
        )
        self.risk_gate = RiskGate(
            self.policy_config.get("risk"),
            self.circuit_breaker,
            has_active_position=self.lifecycle.has_active_position,
            alert_service=self.alert_service,
            metrics=self.metrics,
        )
        self.pipeline = TradingCyclePipeline(
            feed=self.feed,
            ledger=self.ledger,
            regime_classifier=self.regime_classifier,
            aligner=self.aligner,
            strategy_registry=self.strategy_registry,
            ensemble=self.ensemble,
            sizer=self.sizer,
            risk_gate=self.risk_gate,
            lifecycle=self.lifecycle,
            circuit_breaker=self.circuit_breaker,
            config=stops_cfg,
            metrics=self.metrics,
        )

        # Wiring
        if isinstance(self.ledger, PaperLedger):
            self.lifecycle.add_open_listener(self.ledger.on_position_opened)
            self.lifecycle.add_close_listener(self.ledger.on_position_closed)
        self.lifecycle.add_close_listener(self._record_outcome)
        self.lifecycle.add_close_listener(self._observe_account)
        self.circuit_breaker.add_trip_listener(self._flatten_on_trip)

        restored = self.lifecycle.restore()
        if isinstance(self.ledger, PaperLedger):
            self.ledger.sync_open_positions(
                p for p in restored if p.state in (PositionState.OPEN, PositionState.MONITORING)
            )

        self._paused = threading.Event()
        self._stopped = threading.Event()
        self._tick_lock = threading.Lock()
        self._tick = 0
        self._tasks: List[PeriodicTask] = []

        logger.info(
            f"Initialized TradingService in {self.mode} mode: {len(self.symbols)} symbols, "
            f"{len(restored)} restored positions, breaker={'TRIPPED' if self.circuit_breaker.tripped else 'clear'}"
        )

    def _load_yaml(self, filename: str) -> dict:
        with open(self.config_dir / filename) as f:
            return yaml.safe_load(f) or {}

    # ─── Loops ────────────────────────────────────────────────────────────

    def run_tick(self) -> List[CycleResult]:
        """Evaluate every symbol once. Symbols run in parallel; each resolves to a CycleResult."""
        with self._tick_lock:
            self._tick += 1
            tick = self._tick

        if self._paused.is_set():
            logger.info(f"Tick {tick}: paused, no new decisions")
            results = [CycleResult(symbol, tick, False, no_trade_reason="paused") for symbol in self.symbols]
            for _ in results:
                self.metrics.record_tick_outcome("paused")
            return results

        try:
            self.risk_gate.observe(account_state(self.ledger))
        except Exception as exc:
            logger.error(f"Tick {tick}: account state unavailable for the daily-loss latch: {exc}")

        started = time.monotonic()
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="tick") as pool:
            results = list(pool.map(lambda s: self.pipeline.evaluate(s, tick), self.symbols))
        elapsed = time.monotonic() - started

        self.metrics.observe_tick_duration(elapsed)
        self.metrics.record_open_positions(self.lifecycle.active_count())
        decisions = [r for r in results if r.success]
        skipped = {r.symbol: r.no_trade_reason for r in results if not r.success}
        logger.info(f"Tick {tick}: {len(decisions)} decision(s) in {elapsed:.2f}s; no trade: {skipped}")

        if isinstance(self.feed, CsvReplayFeed):
            self.feed.advance()
        return results

    def monitor_positions(self) -> List[Position]:
        """Push current prices into every monitored position."""
        updated: List[Position] = []
        for position in self.lifecycle.positions({PositionState.MONITORING}):
            price = self._price_for(position.symbol)
            if price is None:
                logger.debug(f"Monitor: no price for {position.symbol}, skipping this pass")
                continue
            try:
                result = self.lifecycle.on_price(position.symbol, price)
            except (ExecutionFailure, PersistenceFailure) as exc:
                logger.error(f"Monitor: {position.id} {position.symbol} failed: {exc}")
                continue
            if result is not None:
                updated.append(result)
        return updated

    def reap_expired(self) -> List[Position]:
        return self.lifecycle.reap_expired()

    def start(self, tick_seconds: Optional[float] = None) -> None:
        self.metrics.start()
        self._stopped.clear()
        self._tasks = [
            PeriodicTask("tick-loop", tick_seconds or self.tick_seconds, self.run_tick, jitter_pct=self.jitter_pct),
            PeriodicTask("monitor-loop", self.monitor_seconds, self.monitor_positions),
            PeriodicTask("reaper", self.reaper_seconds, self.reap_expired, run_immediately=False),
        ]
        for task in self._tasks:
            task.start()

    def stop(self) -> None:
        self._stopped.set()
        for task in self._tasks:
            task.stop()
        self._tasks = []
        logger.info("Trading service stopped cleanly.")

    def run_forever(self, tick_seconds: Optional[float] = None) -> None:
        self.start(tick_seconds)
        try:
            while not self._stopped.wait(1.0):
                pass
        finally:
            self.stop()

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping after current work")
        logger.warning("=" * 80)
        self._stopped.set()

    # ─── Admin operations ─────────────────────────────────────────────────

    def pause(self) -> None:
        """Stop new decisions; monitoring and exits continue."""
        self._paused.set()
        logger.warning("Trading PAUSED: no new decisions until resume()")

    def resume(self) -> None:
        self._paused.clear()
        logger.warning("Trading RESUMED")

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def trip_circuit_breaker(self, reason: str) -> List[Position]:
        """Trip the breaker; returns the positions closed by the emergency flatten."""
        results = self.circuit_breaker.trip(reason)
        return [p for r in results if isinstance(r, list) for p in r]

    def reset_circuit_breaker(self) -> None:
        self.circuit_breaker.reset()

    def confirm_pending_order(self, position_id: str, token: str, approve: bool) -> Position:
        return self.lifecycle.confirm_pending(position_id, token, approve)

    def close_position(self, position_id: str, price: Optional[float] = None) -> Position:
        position = self.lifecycle.get(position_id)
        if price is None and position is not None:
            price = self._price_for(position.symbol) or position.entry_price
        return self.lifecycle.close(position_id, price, CloseReason.MANUAL)

    def status(self) -> Dict[str, Any]:
        account = self.pipeline.account()
        return {
            "mode": self.mode,
            "paused": self.paused,
            "tick": self._tick,
            "circuit_breaker": self.circuit_breaker.snapshot(),
            "positions": [p.to_dict() for p in self.lifecycle.positions()],
            "account": {
                "balance_usd": account.balance_usd,
                "daily_realized_pnl": account.daily_realized_pnl,
                "drawdown_pct": account.current_drawdown_pct,
                "open_exposure_usd": account.open_exposure_usd,
            },
            "risk_level": self.risk_gate.risk_level(account),
            "daily_halt": self.risk_gate.is_daily_halted(),
            "performance": self.sizer.stats(),
        }

    # ─── Internals ────────────────────────────────────────────────────────

    def _price_for(self, symbol: str) -> Optional[float]:
        try:
            return self.feed.get_snapshot(symbol).price
        except Exception as exc:
            logger.debug(f"Price lookup failed for {symbol}: {exc}")
            return None

    def _flatten_on_trip(self, reason: str) -> List[Position]:
        logger.critical(f"Flattening all positions: {reason}")
        return self.lifecycle.flatten_all(self._price_for)

    def _record_outcome(self, position: Position) -> None:
        self.sizer.record_outcome(position.realized_pnl or 0.0)

    def _observe_account(self, _position: Position) -> None:
        self.risk_gate.observe(account_state(self.ledger))


def main():
    """Entry point"""
    parser = argparse.ArgumentParser(description="Regime-aware trading service")
    parser.add_argument("--once", action="store_true", help="Run one tick and monitor pass, then exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks (default: app.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args()

    with open(Path(args.config_dir) / "app.yaml") as f:
        setup_logging((yaml.safe_load(f) or {}).get("logging"))

    service = TradingService(config_dir=args.config_dir)
    signal.signal(signal.SIGINT, service._handle_stop)
    signal.signal(signal.SIGTERM, service._handle_stop)

    if args.once:
        service.run_tick()
        service.monitor_positions()
        service.reap_expired()
    else:
        service.run_forever(tick_seconds=args.interval)


if __name__ == "__main__":
    main()
