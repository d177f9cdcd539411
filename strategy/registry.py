"""
Strategy Registry

Manages loading and execution of the alpha models.

Architecture:
- Load strategies from config/strategies.yaml (or an already-parsed dict)
- Instantiate classes via STRATEGY_CLASSES
- Enforce enabled/disabled toggles and regime eligibility
- Collect normalized signals for the SignalEnsemble

Strategies default to disabled; only enabled strategies are evaluated.
"""

from typing import Any, Dict, List, Optional, Type
from pathlib import Path
import yaml
import logging

from strategy.base_strategy import Strategy, StrategyContext, StrategySignal
from strategy.carry import CarryStrategy
from strategy.cycle import CycleStrategy
from strategy.factor import FactorStrategy
from strategy.mean_reversion import MeanReversionStrategy
from strategy.momentum import MomentumStrategy
from strategy.multi_timeframe import MultiTimeframeStrategy

logger = logging.getLogger(__name__)


DEFAULT_STRATEGIES: Dict[str, Dict[str, Any]] = {
    "mean_reversion": {
        "enabled": True,
        "type": "mean_reversion",
        "eligible_regimes": ["ranging", "trending"],
    },
    "momentum": {
        "enabled": True,
        "type": "momentum",
        "eligible_regimes": ["trending", "volatile"],
    },
    "multi_timeframe": {
        "enabled": True,
        "type": "multi_timeframe",
    },
}


class StrategyRegistry:
    """
    Central registry for all alpha models.

    Responsibilities:
    1. Load strategy configurations
    2. Instantiate strategy objects
    3. Track enabled/disabled status
    4. Run every enabled model against a context and collect its signal
    """

    # Map strategy type to class
    STRATEGY_CLASSES: Dict[str, Type[Strategy]] = {
        "mean_reversion": MeanReversionStrategy,
        "momentum": MomentumStrategy,
        "cycle": CycleStrategy,
        "carry": CarryStrategy,
        "multi_timeframe": MultiTimeframeStrategy,
        "factor": FactorStrategy,
    }

    def __init__(self, config_path: Optional[Path] = None, strategies_config: Optional[Dict[str, Any]] = None):
        """
        Args:
            config_path: Path to strategies.yaml (defaults to config/strategies.yaml)
            strategies_config: Parsed `strategies` mapping; takes precedence over the file
        """
        if config_path is None:
            config_path = Path(__file__).parent.parent / "config" / "strategies.yaml"

        self.config_path = Path(config_path)
        self.strategies: Dict[str, Strategy] = {}
        self._load_strategies(strategies_config)

    def _read_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            logger.warning(f"Strategy config not found at {self.config_path}, using defaults")
            return {}
        with open(self.config_path, "r") as f:
            config = yaml.safe_load(f) or {}
        return config.get("strategies", {}) or {}

    def _load_strategies(self, strategies_config: Optional[Dict[str, Any]] = None) -> None:
        if strategies_config is None:
            strategies_config = self._read_config()

        if not strategies_config:
            logger.warning("No strategies defined in config, using built-in defaults")
            strategies_config = DEFAULT_STRATEGIES

        loaded_count = 0
        enabled_count = 0

        for strategy_name, strategy_config in strategies_config.items():
            strategy_config = strategy_config or {}
            strategy_type = strategy_config.get("type", strategy_name)

            if strategy_type not in self.STRATEGY_CLASSES:
                logger.warning(
                    f"Strategy type '{strategy_type}' not found in STRATEGY_CLASSES, "
                    f"skipping '{strategy_name}'"
                )
                continue

            try:
                strategy = self.STRATEGY_CLASSES[strategy_type](name=strategy_name, config=strategy_config)
            except Exception as e:
                logger.error(f"Failed to load strategy '{strategy_name}': {e}", exc_info=True)
                continue

            self.strategies[strategy_name] = strategy
            loaded_count += 1
            if strategy.enabled:
                enabled_count += 1
                logger.info(f"Loaded and ENABLED strategy: {strategy_name} ({strategy_type})")
            else:
                logger.info(f"Loaded but DISABLED strategy: {strategy_name} ({strategy_type})")

        logger.info(
            f"Strategy registry initialized: {loaded_count} strategies loaded, "
            f"{enabled_count} enabled"
        )

        if enabled_count == 0:
            logger.warning("No strategies enabled! The ensemble will always abstain.")

    def get_enabled_strategies(self) -> List[Strategy]:
        return [s for s in self.strategies.values() if s.enabled]

    def get_strategy(self, name: str) -> Optional[Strategy]:
        return self.strategies.get(name)

    def list_strategies(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "enabled": strategy.enabled,
                "type": strategy.__class__.__name__,
                "family": strategy.family,
                "weight": strategy.weight,
                "eligible_regimes": strategy.eligible_regimes,
            }
            for name, strategy in self.strategies.items()
        }

    def collect_signals(self, context: StrategyContext) -> List[StrategySignal]:
        """
        Run every enabled strategy against the context.

        Returns:
            Signals from strategies that had an opinion; failing models are dropped
        """
        signals: List[StrategySignal] = []
        for strategy in self.get_enabled_strategies():
            result = strategy.run(context)
            if result is not None:
                signals.append(result)

        logger.debug(
            f"{context.symbol}: {len(signals)} signals from "
            f"{len(self.get_enabled_strategies())} enabled strategies"
        )
        return signals

    def reload(self) -> None:
        """Reload strategy configurations from disk."""
        logger.info("Reloading strategy registry")
        self.strategies.clear()
        self._load_strategies()

    def __repr__(self) -> str:
        return (
            f"StrategyRegistry({len(self.strategies)} strategies, "
            f"{len(self.get_enabled_strategies())} enabled)"
        )
