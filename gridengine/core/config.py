"""Configuration management for gridengine.

Two kinds of configuration live here:

- Run configuration (bot parameters, live/backtest/optimizer sections), read
  from a JSON file into frozen pydantic models. Every numeric bot parameter
  declares its valid range with ``Field(ge=..., le=...)``; the optimizer reads
  those ranges as search bounds and the strategy engine enforces them.
- Process settings (logging, database, file locations), read from the
  environment / ``.env`` with pydantic-settings.
"""

import json
import math
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gridengine.core.errors import InvalidConfiguration

# =============================================================================
# Bot parameters
# =============================================================================


class BotSideConfig(BaseModel):
    """Grid/DCA parameters for one position side."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Exposure
    total_wallet_exposure_limit: float = Field(default=1.0, ge=0.0, le=10.0)
    n_positions: int = Field(default=1, ge=1, le=100)

    # Auto-unstuck
    unstuck_threshold: float = Field(default=0.45, ge=0.0, le=1.0)
    unstuck_ema_dist: float = Field(default=0.0, ge=-0.1, le=0.5)
    unstuck_loss_allowance_pct: float = Field(default=0.01, ge=0.0, le=0.5)
    unstuck_close_pct: float = Field(default=0.05, ge=0.0, le=1.0)

    # Symbol selection
    filter_rolling_window: int = Field(default=60, ge=1, le=1440)
    filter_relative_volume_clip_pct: float = Field(default=0.5, ge=0.0, le=1.0)

    # EMA bands
    ema_span_0: float = Field(default=200.0, ge=1.0, le=10000.0)
    ema_span_1: float = Field(default=1000.0, ge=1.0, le=10000.0)

    # Entries
    entry_initial_qty_pct: float = Field(default=0.015, ge=0.001, le=1.0)
    entry_initial_ema_dist: float = Field(default=0.002, ge=-0.1, le=0.5)
    entry_grid_spacing_pct: float = Field(default=0.03, ge=0.001, le=0.5)
    entry_grid_spacing_weight: float = Field(default=1.0, ge=0.0, le=10.0)
    entry_grid_double_down_factor: float = Field(default=1.0, ge=0.0, le=10.0)
    entry_trailing_threshold_pct: float = Field(default=0.01, ge=-0.1, le=0.5)
    entry_trailing_retracement_pct: float = Field(default=0.01, ge=0.0, le=0.5)
    entry_trailing_grid_ratio: float = Field(default=0.0, ge=-1.0, le=1.0)

    # Closes
    close_grid_min_markup: float = Field(default=0.01, ge=0.0, le=0.5)
    close_grid_markup_range: float = Field(default=0.02, ge=0.0, le=1.0)
    n_close_orders: int = Field(default=5, ge=1, le=100)
    close_trailing_threshold_pct: float = Field(default=0.0, ge=-0.1, le=0.5)
    close_trailing_retracement_pct: float = Field(default=0.0, ge=0.0, le=0.5)
    close_trailing_qty_pct: float = Field(default=1.0, ge=0.0, le=1.0)
    backwards_tp: bool = False

    @property
    def wallet_exposure_limit(self) -> float:
        """Per-position share of the side's total exposure limit."""
        return self.total_wallet_exposure_limit / self.n_positions

    @property
    def enabled(self) -> bool:
        return self.total_wallet_exposure_limit > 0.0


class StrategyConfig(BaseModel):
    """Strategy engine configuration: one section per position side."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    long: BotSideConfig = Field(default_factory=BotSideConfig)
    short: BotSideConfig = Field(
        default_factory=lambda: BotSideConfig(total_wallet_exposure_limit=0.0)
    )
    # How many grid entry levels to keep resting below/above the current one
    entry_grid_depth: int = Field(default=1, ge=1, le=50)
    max_tick_age_ms: int = Field(default=60_000, ge=0, le=86_400_000)

    def side(self, name: str) -> BotSideConfig:
        if name not in ("long", "short"):
            raise KeyError(name)
        return getattr(self, name)


# =============================================================================
# Run sections
# =============================================================================


class LiveConfig(BaseModel):
    """Live execution settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    user: str = "default"
    approved_coins: List[str] = Field(default_factory=list)
    ignored_coins: List[str] = Field(default_factory=list)
    empty_means_all_approved: bool = False
    quote: str = "USDT"
    execution_delay_seconds: float = Field(default=2.0, ge=0.0)
    snapshot_refresh_seconds: float = Field(default=5.0, gt=0.0)
    leverage: float = Field(default=10.0, gt=0.0, le=125.0)
    max_n_cancellations_per_batch: int = Field(default=5, ge=1)
    max_n_creations_per_batch: int = Field(default=3, ge=1)
    minimum_coin_age_days: float = Field(default=7.0, ge=0.0)
    min_vol_24h: float = Field(default=0.0, ge=0.0)
    price_distance_threshold: float = Field(default=0.002, ge=0.0)
    time_in_force: Literal["good_till_cancelled", "post_only"] = "good_till_cancelled"
    cancel_orders_on_stop: bool = True


class SimulatorConfig(BaseModel):
    """Backtest simulator policy knobs."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    maker_fee: float = Field(default=0.0002, ge=0.0, le=0.01)
    # Which orders fill first when several are crossable on the same tick
    fill_priority: Literal["entries_first", "closes_first"] = "entries_first"
    # Liquidate when equity <= rate * position notional; 0.0 means at bankruptcy
    maintenance_margin_rate: float = Field(default=0.0, ge=0.0, le=0.5)
    qty_step: float = Field(default=0.001, gt=0.0)
    price_step: float = Field(default=0.01, gt=0.0)
    min_qty: float = Field(default=0.001, gt=0.0)
    min_cost: float = Field(default=1.0, ge=0.0)
    c_mult: float = Field(default=1.0, gt=0.0)
    inverse: bool = False
    # Tick spacing the series must keep; None takes the first two ticks' spacing
    step_ms: Optional[int] = Field(default=None, gt=0)


class BacktestConfig(BaseModel):
    """Historical data selection and starting conditions."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    exchange: str = "binance"
    symbols: List[str] = Field(default_factory=lambda: ["BTC/USDT:USDT"])
    timeframe: str = "1m"
    base_dir: str = "backtests"
    data_dir: str = "historical_data"
    start_date: str = "2024-01-01"
    end_date: str = "2024-06-01"
    starting_balance: float = Field(default=1000.0, gt=0.0)

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one symbol is required")
        return v


class OptimizerLimit(BaseModel):
    """A soft constraint on a result metric, penalized when violated."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    metric: str
    max: Optional[float] = None
    min: Optional[float] = None


class OptimizerConfig(BaseModel):
    """Population search settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    n_generations: int = Field(default=50, ge=1)
    population_size: int = Field(default=40, ge=2)
    n_cpus: int = Field(default=1, ge=1)
    seed: Optional[int] = None
    crossover_probability: float = Field(default=0.9, ge=0.0, le=1.0)
    # None means 1 / number of searched parameters
    mutation_probability: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    crossover_eta: float = Field(default=20.0, gt=0.0)
    mutation_eta: float = Field(default=20.0, gt=0.0)
    stagnation_generations: int = Field(default=10, ge=1)
    stagnation_tolerance: float = Field(default=1e-6, ge=0.0)
    min_series_length: int = Field(default=100, ge=1)
    scoring: List[str] = Field(default_factory=lambda: ["sharpe_ratio", "drawdown_worst"])
    drawdown_penalty: float = Field(default=1.0, ge=0.0)
    liquidation_penalty: float = Field(default=10.0, ge=0.0)
    limit_penalty: float = Field(default=1.0, ge=0.0)
    limits: List[OptimizerLimit] = Field(default_factory=list)
    # "long.<param>" / "short.<param>" -> [low, high]
    bounds: Dict[str, Tuple[float, float]] = Field(
        default_factory=lambda: {
            "long.entry_grid_spacing_pct": (0.005, 0.08),
            "long.entry_initial_qty_pct": (0.005, 0.05),
            "long.close_grid_min_markup": (0.002, 0.03),
        }
    )

    @model_validator(mode="after")
    def validate_scoring(self) -> "OptimizerConfig":
        if not self.scoring:
            raise ValueError("scoring needs at least one metric")
        return self


class GridEngineConfig(BaseModel):
    """Complete run configuration as stored in a JSON file."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    bot: StrategyConfig = Field(default_factory=StrategyConfig)
    live: LiveConfig = Field(default_factory=LiveConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)
    simulator: SimulatorConfig = Field(default_factory=SimulatorConfig)
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)


class UserConfig(BaseModel):
    """One exchange account entry from api-keys.json."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    exchange: str
    key: str = ""
    secret: str = ""
    passphrase: Optional[str] = None
    wallet_address: Optional[str] = None
    private_key: Optional[str] = None
    is_vault: bool = False


# =============================================================================
# Process settings
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file: str = "logs/gridengine.log"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    json_format: bool = True


class DatabaseConfig(BaseSettings):
    """Trade journal database configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    url: str = "sqlite+aiosqlite:///data/gridengine.db"
    echo: bool = False


class AppSettings(BaseSettings):
    """File locations."""

    model_config = SettingsConfigDict(
        env_prefix="GRIDENGINE_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    api_keys_path: str = "api-keys.json"
    profit_state_dir: str = "data/profit_transfer"


# =============================================================================
# Parameter ranges
# =============================================================================


def _field_bounds(field_info) -> Tuple[Optional[float], Optional[float]]:
    low: Optional[float] = None
    high: Optional[float] = None
    for meta in field_info.metadata:
        if hasattr(meta, "ge"):
            low = meta.ge
        elif hasattr(meta, "gt"):
            low = meta.gt
        if hasattr(meta, "le"):
            high = meta.le
        elif hasattr(meta, "lt"):
            high = meta.lt
    return low, high


def parameter_bounds() -> Dict[str, Tuple[float, float]]:
    """Declared (low, high) range of every numeric bot parameter."""
    bounds = {}
    for name, info in BotSideConfig.model_fields.items():
        if info.annotation is bool:
            continue
        low, high = _field_bounds(info)
        if low is None or high is None:
            continue
        bounds[name] = (float(low), float(high))
    return bounds


def integer_parameters() -> List[str]:
    return [
        name for name, info in BotSideConfig.model_fields.items() if info.annotation is int
    ]


def check_side_config(
    side: BotSideConfig, clamp: bool = False, prefix: str = ""
) -> Tuple[BotSideConfig, List[Dict[str, Any]]]:
    """Verify every parameter of ``side`` lies within its declared range.

    Models built with ``model_copy(update=...)`` or ``model_construct`` skip
    pydantic validation, so the engine calls this on every decision.

    Returns the (possibly clamped) config and a list of clamp records. Raises
    InvalidConfiguration when a value is out of range and ``clamp`` is False,
    or when a value is not a finite number.
    """
    bounds = parameter_bounds()
    ints = set(integer_parameters())
    updates: Dict[str, Any] = {}
    clamps: List[Dict[str, Any]] = []
    for name, (low, high) in bounds.items():
        value = getattr(side, name)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
            raise InvalidConfiguration(f"{prefix}{name} is not a finite number: {value!r}", field=prefix + name)
        if low <= value <= high:
            continue
        if not clamp:
            raise InvalidConfiguration(
                f"{prefix}{name}={value} outside declared range [{low}, {high}]",
                field=prefix + name,
            )
        clamped = min(max(value, low), high)
        if name in ints:
            clamped = int(round(clamped))
        updates[name] = clamped
        clamps.append({"parameter": prefix + name, "value": value, "clamped": clamped})
    if updates:
        side = side.model_copy(update=updates)
    return side, clamps


# =============================================================================
# Loading
# =============================================================================


def load_config(path: str) -> GridEngineConfig:
    """Read a JSON run configuration."""
    try:
        with open(path) as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise InvalidConfiguration(f"config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise InvalidConfiguration(f"config file is not valid JSON: {path}: {e}") from e
    return parse_config(raw)


def parse_config(raw: Dict[str, Any]) -> GridEngineConfig:
    try:
        return GridEngineConfig.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise InvalidConfiguration(f"invalid configuration: {e}", field=field or None) from e


def save_config(config: GridEngineConfig, path: str) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(config.model_dump_json(indent=2))


def load_api_keys(user: str, path: Optional[str] = None) -> UserConfig:
    """Load one user's exchange credentials from api-keys.json."""
    path = path or AppSettings().api_keys_path
    try:
        with open(path) as f:
            users = json.load(f)
    except FileNotFoundError as e:
        raise InvalidConfiguration(f"api keys file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise InvalidConfiguration(f"api keys file is not valid JSON: {path}: {e}") from e
    if user not in users:
        raise InvalidConfiguration(f"user '{user}' not found in {path}", field="user")
    try:
        return UserConfig.model_validate(users[user])
    except ValidationError as e:
        raise InvalidConfiguration(f"invalid api keys for user '{user}': {e}") from e


# Global configuration instances
logging_config = LoggingConfig()
database_config = DatabaseConfig()
