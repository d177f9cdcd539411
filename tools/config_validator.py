"""
Configuration Validation Module

Validates app.yaml, policy.yaml and strategies.yaml against Pydantic schemas.
Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

REGIMES = ("crisis", "volatile", "ranging", "trending", "off")


# ===== App Schema =====
class AppSection(BaseModel):
    mode: Literal["PAPER", "LIVE"] = Field(description="PAPER fills immediately, LIVE requires confirmation")


class LoopConfig(BaseModel):
    tick_seconds: float = Field(gt=0, description="Decision tick interval")
    monitor_seconds: float = Field(gt=0, description="Position monitor interval")
    reaper_seconds: float = Field(gt=0, description="Expired confirmation sweep interval")
    jitter_pct: float = Field(default=0.0, ge=0, le=50, description="Random delay added to each tick (%)")
    max_workers: int = Field(default=4, gt=0, description="Parallel symbol evaluations")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file: str = "logs/trader.log"


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: Optional[str] = None
    escalation_webhook_url: Optional[str] = None
    min_severity: Literal["info", "warning", "critical"] = "warning"
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)
    escalation_seconds: float = Field(default=120.0, ge=0)
    escalation_severity_boost: int = Field(default=1, ge=0, le=2)


class PersistenceConfig(BaseModel):
    state_file: str = Field(min_length=1)
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=0.1, ge=0)
    max_delay_seconds: float = Field(default=2.0, ge=0)

    @model_validator(mode="after")
    def validate_delays(self) -> "PersistenceConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class PaperConfig(BaseModel):
    starting_balance_usd: float = Field(gt=0)
    candles_dir: str = Field(min_length=1)
    default_spread_bps: float = Field(default=5.0, ge=0)
    slippage_bps: float = Field(default=0.0, ge=0)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection
    symbols: List[str] = Field(min_length=1)
    loop: LoopConfig
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    persistence: PersistenceConfig
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    paper: Optional[PaperConfig] = None

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError("symbols must be unique")
        return v

    @model_validator(mode="after")
    def validate_paper_section(self) -> "AppSchema":
        if self.app.mode == "PAPER" and self.paper is None:
            raise ValueError("paper section is required in PAPER mode")
        return self


# ===== Policy Schema =====
class RegimeProfileConfig(BaseModel):
    size_multiplier: float = Field(ge=0, le=2)
    stop_multiplier: float = Field(ge=0, le=5)


class RegimeConfig(BaseModel):
    atr_period: int = Field(default=14, gt=1)
    spread_off_bps: float = Field(gt=0, description="Spread at/above which trading is off")
    crisis_volatility: float = Field(gt=0)
    volatile_volatility: float = Field(gt=0)
    ranging_volatility: float = Field(gt=0)
    profiles: Dict[str, RegimeProfileConfig] = Field(default_factory=dict)

    @field_validator("profiles")
    @classmethod
    def validate_profile_names(cls, v: Dict[str, RegimeProfileConfig]) -> Dict[str, RegimeProfileConfig]:
        for name, profile in v.items():
            if name not in REGIMES:
                raise ValueError(f"unknown regime '{name}'")
            if name in ("crisis", "off") and profile.size_multiplier > 0:
                raise ValueError(f"regime '{name}' must have size_multiplier 0")
        return v

    @model_validator(mode="after")
    def validate_order(self) -> "RegimeConfig":
        if not (self.ranging_volatility < self.volatile_volatility < self.crisis_volatility):
            raise ValueError("volatility thresholds must satisfy ranging < volatile < crisis")
        return self


class TimeframesConfig(BaseModel):
    resample_factors: Dict[Literal["higher", "medium", "lower"], int] = Field(default_factory=dict)
    ema_fast: int = Field(default=12, gt=0)
    ema_slow: int = Field(default=26, gt=0)
    rsi_period: int = Field(default=14, gt=1)
    adx_period: int = Field(default=14, gt=1)
    adx_threshold: float = Field(default=20.0, ge=0, le=100)
    confidence_cap: float = Field(default=0.9, gt=0, le=1)

    @model_validator(mode="after")
    def validate_emas(self) -> "TimeframesConfig":
        if self.ema_fast >= self.ema_slow:
            raise ValueError("ema_fast must be < ema_slow")
        if any(f < 1 for f in self.resample_factors.values()):
            raise ValueError("resample factors must be >= 1")
        return self


class EnsembleConfig(BaseModel):
    vote_threshold: float = Field(default=0.1, ge=0, lt=1)
    min_families: int = Field(default=2, ge=2)
    override_score: float = Field(default=0.5, gt=0, le=1)
    override_confidence: float = Field(default=0.6, gt=0, le=1)
    override_penalty: float = Field(default=0.8, gt=0, le=1)
    override_confidence_cap: float = Field(default=0.6, gt=0, le=1)
    min_trades_for_gate: int = Field(default=20, ge=1)
    win_rate_window: int = Field(default=20, ge=1)
    win_rate_floor: float = Field(default=0.55, ge=0, le=1)
    degraded_confidence_factor: float = Field(default=0.5, ge=0, le=1)
    min_confidence: float = Field(default=0.3, ge=0, le=1)


class SizingConfig(BaseModel):
    kelly_fraction: float = Field(gt=0, le=1, description="Safety fraction of full Kelly")
    max_position_pct: float = Field(gt=0, le=100, description="Per-trade ceiling, % of balance")
    min_trade_usd: float = Field(ge=0)
    min_history: int = Field(default=10, ge=0)
    blend_window: int = Field(default=50, ge=1)
    history_weight: float = Field(default=0.7, ge=0, le=1)
    max_history: int = Field(default=100, ge=1)


class RiskConfig(BaseModel):
    """Risk management parameters"""
    min_reward_risk: float = Field(gt=0, description="Minimum reward:risk")
    max_daily_loss_usd: float = Field(gt=0, description="Daily realized loss halt (USD)")
    max_drawdown_pct: float = Field(gt=0, le=100, description="Max drawdown %")
    max_exposure_pct: float = Field(gt=0, le=100, description="Max open exposure, % of balance")
    max_open_positions: int = Field(default=10, gt=0)
    warning_utilization: float = Field(default=0.8, gt=0, le=1)
    repeat_alert_threshold: int = Field(default=3, ge=1)


class StopsConfig(BaseModel):
    atr_period: int = Field(default=14, gt=1)
    stop_atr_multiple: float = Field(gt=0)
    target_rr: float = Field(gt=0)
    history_candles: int = Field(default=0, ge=0)


class LifecycleConfig(BaseModel):
    confirmation_ttl_seconds: float = Field(gt=0)
    trailing_fraction: float = Field(default=0.5, gt=0, lt=1)
    fee_bps: float = Field(default=10.0, ge=0)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    regime: RegimeConfig
    timeframes: TimeframesConfig = Field(default_factory=TimeframesConfig)
    ensemble: EnsembleConfig = Field(default_factory=EnsembleConfig)
    sizing: SizingConfig
    risk: RiskConfig
    stops: StopsConfig
    lifecycle: LifecycleConfig

    @model_validator(mode="after")
    def validate_cross_section(self) -> "PolicySchema":
        if self.stops.target_rr < self.risk.min_reward_risk:
            raise ValueError(
                f"stops.target_rr ({self.stops.target_rr}) is below risk.min_reward_risk "
                f"({self.risk.min_reward_risk}); every proposal would be denied"
            )
        if self.sizing.max_position_pct > self.risk.max_exposure_pct:
            raise ValueError("sizing.max_position_pct must not exceed risk.max_exposure_pct")
        return self


# ===== Strategies Schema =====
class StrategyEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    type: Literal["mean_reversion", "momentum", "cycle", "carry", "multi_timeframe", "factor"]
    family: Optional[str] = None
    weight: float = Field(default=1.0, gt=0)
    eligible_regimes: List[str] = Field(default_factory=list)
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("eligible_regimes")
    @classmethod
    def validate_regimes(cls, v: List[str]) -> List[str]:
        for regime in v:
            if regime not in REGIMES:
                raise ValueError(f"unknown regime '{regime}'")
        return v


class StrategiesSchema(BaseModel):
    strategies: Dict[str, StrategyEntry] = Field(min_length=1)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    raw_lines = file_path.read_text().splitlines()
    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'>' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}" for idx in range(start, end)
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"{filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"]) or "(root)"
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping ({e})")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_strategies(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "strategies.yaml", StrategiesSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """Logical consistency checks across files (run only after schemas pass)."""
    errors: List[str] = []
    strategies = load_yaml_file(config_dir / "strategies.yaml").get("strategies", {})
    enabled = {name: cfg for name, cfg in strategies.items() if cfg.get("enabled")}
    if not enabled:
        errors.append("strategies.yaml: no strategy is enabled; the ensemble would always abstain")

    families = {cfg.get("family") or cfg.get("type") for cfg in enabled.values()}
    override_only = len(families) < 2
    if enabled and override_only:
        logger.warning("Fewer than two strategy families enabled; only single-model overrides can trade")

    app = load_yaml_file(config_dir / "app.yaml")
    loop = app.get("loop", {})
    if loop.get("monitor_seconds", 0) > loop.get("tick_seconds", 0):
        errors.append("app.yaml: loop.monitor_seconds should not exceed loop.tick_seconds")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))
    all_errors.extend(validate_strategies(config_path))

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nAll configuration files are valid!\n")
        sys.exit(0)
