"""
Strategy configuration: user intent -> validated, immutable config.

Two explicit types:
- StrategyConfigInput: partial "user intent", every field optional
- StrategyConfig: fully resolved and validated, frozen for the life of a strategy

build_strategy_config() is the only path from one to the other. Invalid
input raises ConfigValidationError before any trading object exists.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from config.presets import AS_PRESETS
from core.exceptions import ConfigValidationError

logger = logging.getLogger("Config.Strategy")

_QUOTE_SUFFIX = re.compile(r"(USDT|BUSD|USDC)$")

DEFAULTS: Dict[str, Any] = {
    "symbol": "BTCUSDT",
    "order_size": 0.001,
    "max_position": 0.1,
    "min_position": -0.1,
    "tick_size": 0.01,
    "lot_size": 0.0001,
    "gamma": 0.5,
    "max_spread_multiplier": 3.0,
    "min_spread": 0.01,
    "target_inventory": 0.0,
    "update_interval_ms": 1000,
    "volatility_window": 100,
    "kappa_window": 50,
    "use_ewma": False,
    "ewma_decay": 0.94,
    "kappa_spread_multiplier": 2.0,
    "order_book_depth": 5,
    "kline_interval": "1m",
    "dry_run": True,
    "stop_loss_threshold": -1000.0,
}


class StrategyConfigInput(BaseModel):
    """Partial configuration as supplied by a user, preset or environment."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    symbol: Optional[str] = None
    base_asset: Optional[str] = None
    quote_asset: Optional[str] = None

    order_size: Optional[float] = None
    tick_size: Optional[float] = None
    lot_size: Optional[float] = None
    max_position: Optional[float] = None
    min_position: Optional[float] = None
    target_inventory: Optional[float] = None

    gamma: Optional[float] = None
    kappa: Optional[float] = None   # Fixed override; None = estimate
    sigma: Optional[float] = None   # Fixed override; None = estimate
    max_spread_multiplier: Optional[float] = None
    min_spread: Optional[float] = None

    update_interval_ms: Optional[int] = None
    volatility_window: Optional[int] = None
    kappa_window: Optional[int] = None
    use_ewma: Optional[bool] = None
    ewma_decay: Optional[float] = None
    kappa_spread_multiplier: Optional[float] = None
    order_book_depth: Optional[int] = None
    kline_interval: Optional[str] = None

    dry_run: Optional[bool] = None
    stop_loss_threshold: Optional[float] = None


class StrategyConfig(BaseModel):
    """Validated Avellaneda-Stoikov strategy configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    symbol: str
    base_asset: str
    quote_asset: str

    # Sizing & limits
    order_size: float
    tick_size: float
    lot_size: float
    max_position: float
    min_position: float
    target_inventory: float

    # Model
    gamma: float
    kappa: Optional[float] = None
    sigma: Optional[float] = None
    max_spread_multiplier: float
    min_spread: float

    # Estimation & scheduling
    update_interval_ms: int
    volatility_window: int
    kappa_window: int
    use_ewma: bool = False
    ewma_decay: float = 0.94
    kappa_spread_multiplier: float = 2.0
    order_book_depth: int = 5
    kline_interval: str = "1m"

    # Safety
    dry_run: bool
    stop_loss_threshold: float

    @model_validator(mode="after")
    def _check(self) -> "StrategyConfig":
        errors = collect_config_errors(self)
        if errors:
            raise ValueError("; ".join(errors))
        return self

    @property
    def update_interval_s(self) -> float:
        return self.update_interval_ms / 1000.0


def collect_config_errors(cfg: Any) -> List[str]:
    """Every rule violation in cfg (empty list = valid)."""
    errors = []

    if cfg.gamma <= 0:
        errors.append("Gamma must be positive")
    if cfg.order_size <= 0:
        errors.append("Order size must be positive")
    if cfg.max_position <= 0:
        errors.append("Max position must be positive")
    if cfg.min_position >= 0:
        errors.append("Min position must be negative")
    if cfg.tick_size <= 0:
        errors.append("Tick size must be positive")
    if cfg.lot_size <= 0:
        errors.append("Lot size must be positive")
    if cfg.max_spread_multiplier < 1:
        errors.append("Max spread multiplier must be at least 1")
    if cfg.min_spread < 0:
        errors.append("Min spread must be non-negative")
    if cfg.update_interval_ms <= 0:
        errors.append("Update interval must be positive")
    if cfg.volatility_window < 2:
        errors.append("Volatility window must be at least 2")
    if cfg.kappa_window < 1:
        errors.append("Kappa window must be at least 1")
    if not 0 < cfg.ewma_decay < 1:
        errors.append("EWMA decay must be between 0 and 1")
    if cfg.kappa_spread_multiplier <= 0:
        errors.append("Kappa spread multiplier must be positive")
    if cfg.order_book_depth < 1:
        errors.append("Order book depth must be at least 1")
    if cfg.kappa is not None and cfg.kappa <= 0:
        errors.append("Kappa override must be positive")
    if cfg.sigma is not None and cfg.sigma < 0:
        errors.append("Sigma override must be non-negative")
    if not cfg.min_position <= cfg.target_inventory <= cfg.max_position:
        errors.append("Target inventory must lie within [min_position, max_position]")

    return errors


def _validation_messages(exc: ValidationError) -> List[str]:
    messages = []
    for err in exc.errors():
        if err.get("type") == "value_error" and "error" in err.get("ctx", {}):
            messages.extend(str(err["ctx"]["error"]).split("; "))
        else:
            loc = ".".join(str(part) for part in err.get("loc", ()))
            messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return messages


def _as_input(intent: Union[StrategyConfigInput, Mapping[str, Any], None]) -> StrategyConfigInput:
    if intent is None:
        return StrategyConfigInput()
    if isinstance(intent, StrategyConfigInput):
        return intent
    try:
        return StrategyConfigInput(**dict(intent))
    except ValidationError as e:
        raise ConfigValidationError(_validation_messages(e)) from e


def build_strategy_config(intent: Union[StrategyConfigInput, Mapping[str, Any], None] = None) -> StrategyConfig:
    """
    Resolve defaults and validate.

    A field counts as missing only when it is None; explicit zeros are
    validated, never replaced by a default.

    Raises:
        ConfigValidationError: listing every invalid field.
    """
    given = _as_input(intent).model_dump(exclude_none=True)
    resolved = {**DEFAULTS, **given}

    symbol = resolved["symbol"].upper()
    resolved["symbol"] = symbol
    suffix = _QUOTE_SUFFIX.search(symbol)
    resolved.setdefault("base_asset", _QUOTE_SUFFIX.sub("", symbol) or symbol)
    resolved.setdefault("quote_asset", suffix.group(1) if suffix else "USDT")
    resolved.setdefault("name", f"AS-{symbol}")

    try:
        config = StrategyConfig(**resolved)
    except ValidationError as e:
        errors = _validation_messages(e)
        logger.error(f"Strategy configuration rejected: {errors}")
        raise ConfigValidationError(errors) from e

    return config


def build_strategy_config_from_preset(
    preset: str,
    overrides: Union[StrategyConfigInput, Mapping[str, Any], None] = None,
) -> StrategyConfig:
    """Layer overrides on top of a named preset."""
    if preset not in AS_PRESETS:
        raise ConfigValidationError([f"Unknown preset '{preset}'. Available: {', '.join(AS_PRESETS)}"])

    given = _as_input(overrides).model_dump(exclude_none=True)
    return build_strategy_config({**AS_PRESETS[preset], **given})
