"""Configuration system: loads TOML config into typed dataclasses."""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

from basketvault.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "default.toml"

# Portfolio bounds enforced at the configuration boundary
MIN_BASKET_SIZE = 10
MAX_BASKET_SIZE = 150
MAX_FEE_BPS = 300  # 3%
MAX_SLIPPAGE_BPS = 1_000  # 10%

DEFAULT_BASKET: tuple[str, ...] = (
    "WBTC", "LINK", "UNI", "AAVE", "MKR", "LDO", "CRV", "SNX", "COMP", "GRT",
)


@dataclass
class VaultConfig:
    engine_address: str = "vault"
    base_asset: str = "WETH"
    owner: str = "owner"
    fee_collector: str = "treasury"
    basket: list[str] = field(default_factory=lambda: list(DEFAULT_BASKET))
    deposit_fee_bps: int = 100
    withdrawal_fee_bps: int = 100
    slippage_tolerance_bps: int = 100
    min_operating_reserve: int = 0  # Smallest units of the base asset
    min_unit_amount: int = 1_000  # Per-basket-asset share must exceed this


@dataclass
class QueueConfig:
    max_retry_attempts: int = 3
    cooldown_sec: int = 300
    batch_size: int = 10
    drain_interval_sec: int = 60


@dataclass
class RouterConfig:
    deadline_sec: int = 15  # Swap validity window from call time


@dataclass
class CostConfig:
    threshold: Decimal = Decimal("50")
    oracle_url: str = ""
    max_age_sec: int = 3600
    timeout_sec: int = 10


@dataclass
class MetricsConfig:
    """Configuration for in-process metrics."""

    enabled: bool = False
    prefix: str = "basketvault"


@dataclass
class SimConfig:
    """Simulated market used by ``python -m basketvault simulate``."""

    base_liquidity: int = 10_000  # Whole base units per pool
    asset_liquidity: int = 10_000  # Whole asset units per pool
    depositors: int = 3
    deposit_amount: int = 10  # Whole base units per depositor
    high_cost: Decimal = Decimal("120")
    low_cost: Decimal = Decimal("20")


@dataclass
class Config:
    log_level: str = "INFO"
    json_log: bool = False
    state_dir: str = "data"
    vault: VaultConfig = field(default_factory=VaultConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    cost: CostConfig = field(default_factory=CostConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    sim: SimConfig = field(default_factory=SimConfig)

    def portfolio(self) -> PortfolioConfig:
        """Build the validated, read-only portfolio view consumed by the core."""
        return PortfolioConfig(
            engine_address=self.vault.engine_address,
            base_asset=self.vault.base_asset,
            owner=self.vault.owner,
            fee_collector=self.vault.fee_collector,
            basket=tuple(self.vault.basket),
            deposit_fee_bps=self.vault.deposit_fee_bps,
            withdrawal_fee_bps=self.vault.withdrawal_fee_bps,
            slippage_tolerance_bps=self.vault.slippage_tolerance_bps,
            cost_threshold=self.cost.threshold,
            min_operating_reserve=self.vault.min_operating_reserve,
            min_unit_amount=self.vault.min_unit_amount,
            max_retry_attempts=self.queue.max_retry_attempts,
            cooldown_sec=self.queue.cooldown_sec,
            deadline_sec=self.router.deadline_sec,
        )


@dataclass(frozen=True)
class PortfolioConfig:
    """Read-only parameters the core consumes. Validated on construction."""

    engine_address: str = "vault"
    base_asset: str = "WETH"
    owner: str = "owner"
    fee_collector: str = "treasury"
    basket: tuple[str, ...] = DEFAULT_BASKET
    deposit_fee_bps: int = 100
    withdrawal_fee_bps: int = 100
    slippage_tolerance_bps: int = 100
    cost_threshold: Decimal = Decimal("50")
    min_operating_reserve: int = 0
    min_unit_amount: int = 1_000
    max_retry_attempts: int = 3
    cooldown_sec: int = 300
    deadline_sec: int = 15

    def __post_init__(self) -> None:
        errors = portfolio_errors(self)
        if errors:
            raise ValidationError(f"Invalid portfolio: {'; '.join(errors)}")

    @property
    def basket_size(self) -> int:
        return len(self.basket)


def portfolio_errors(p: PortfolioConfig) -> list[str]:
    """Bounds checks shared by PortfolioConfig and validate_config."""
    errors: list[str] = []
    if not (MIN_BASKET_SIZE <= len(p.basket) <= MAX_BASKET_SIZE):
        errors.append(
            f"basket size must be in [{MIN_BASKET_SIZE}, {MAX_BASKET_SIZE}], got {len(p.basket)}",
        )
    if len(set(p.basket)) != len(p.basket):
        errors.append("basket must not contain duplicate assets")
    if p.base_asset in p.basket:
        errors.append("basket must not contain the base asset")
    if not (0 <= p.deposit_fee_bps <= MAX_FEE_BPS):
        errors.append(f"deposit_fee_bps must be in [0, {MAX_FEE_BPS}]")
    if not (0 <= p.withdrawal_fee_bps <= MAX_FEE_BPS):
        errors.append(f"withdrawal_fee_bps must be in [0, {MAX_FEE_BPS}]")
    if not (0 <= p.slippage_tolerance_bps <= MAX_SLIPPAGE_BPS):
        errors.append(f"slippage_tolerance_bps must be in [0, {MAX_SLIPPAGE_BPS}]")
    if p.cost_threshold <= 0:
        errors.append("cost threshold must be > 0")
    if p.min_operating_reserve < 0:
        errors.append("min_operating_reserve must be >= 0")
    if p.min_unit_amount < 0:
        errors.append("min_unit_amount must be >= 0")
    if p.max_retry_attempts < 1:
        errors.append("max_retry_attempts must be > 0")
    if p.cooldown_sec < 0:
        errors.append("cooldown_sec must be >= 0")
    if p.deadline_sec < 1:
        errors.append("deadline_sec must be >= 1")
    if not p.engine_address or not p.fee_collector:
        errors.append("engine_address and fee_collector are required")
    return errors


def _apply_toml_section(obj: object, data: dict) -> None:  # type: ignore[type-arg]
    """Recursively apply TOML dict values onto a dataclass instance."""
    for key, value in data.items():
        if not hasattr(obj, key):
            logger.warning("Unknown config key: %s", key)
            continue
        current = getattr(obj, key)
        if isinstance(value, dict) and hasattr(current, "__dataclass_fields__"):
            _apply_toml_section(current, value)
        elif isinstance(current, Decimal):
            setattr(obj, key, Decimal(str(value)))
        elif isinstance(current, int) and not isinstance(current, bool) and isinstance(value, str):
            # Large smallest-unit amounts exceed TOML's 64-bit integers
            setattr(obj, key, int(value))
        else:
            setattr(obj, key, value)


class ConfigError(ValidationError):
    """Raised when configuration validation fails."""


def validate_config(cfg: Config) -> list[str]:
    """Validate config values and return list of errors (empty = valid)."""
    errors: list[str] = []

    # Portfolio bounds
    try:
        cfg.portfolio()
    except ValidationError as e:
        errors.append(f"vault: {e}")

    # Queue draining
    if cfg.queue.batch_size < 1:
        errors.append("queue.batch_size must be >= 1")
    if cfg.queue.drain_interval_sec < 1:
        errors.append("queue.drain_interval_sec must be >= 1")

    # Cost oracle
    if cfg.cost.max_age_sec < 1:
        errors.append("cost.max_age_sec must be >= 1")
    if cfg.cost.timeout_sec < 1:
        errors.append("cost.timeout_sec must be >= 1")

    # Simulation
    if cfg.sim.base_liquidity <= 0 or cfg.sim.asset_liquidity <= 0:
        errors.append("sim liquidity must be > 0")
    if cfg.sim.depositors < 1:
        errors.append("sim.depositors must be >= 1")

    return errors


def load_config(path: Path | None = None) -> Config:
    """Load config from TOML file, falling back to defaults."""
    cfg = Config()
    config_path = path or DEFAULT_CONFIG_PATH
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
        _apply_toml_section(cfg, data)
        logger.info("Loaded config from %s", config_path)
    else:
        logger.info("No config file at %s, using defaults", config_path)

    errors = validate_config(cfg)
    if errors:
        for err in errors:
            logger.error("Config validation error: %s", err)
        raise ConfigError(f"Invalid configuration: {'; '.join(errors)}")

    return cfg
