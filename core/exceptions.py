"""
Error taxonomy for the market maker.

- ConfigValidationError: fatal, raised before any strategy object exists
- InvalidParameterError: fatal to a single quoting cycle
- ExchangeError: recoverable venue / network failure
- StopLossTriggered: fatal to the strategy instance, not the process
- IllegalTransitionError: lifecycle call from a state that does not allow it

"Not enough data yet" is NOT an error: estimators return None for that.
"""

from typing import List, Optional


class MarketMakerError(Exception):
    """Base class for all market maker errors."""


class ConfigValidationError(MarketMakerError, ValueError):
    """Strategy configuration rejected during construction."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid strategy configuration: {', '.join(self.errors)}")


class InvalidParameterError(MarketMakerError, ValueError):
    """An economic precondition of the pricing formulas does not hold (gamma<=0, kappa<=0)."""


class ExchangeError(MarketMakerError):
    """Failure talking to the exchange collaborator."""

    def __init__(self, message: str, code: Optional[str] = None, exchange: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.exchange = exchange


class StopLossTriggered(MarketMakerError):
    """Total PnL fell below the configured stop-loss threshold."""

    def __init__(self, total_pnl: float, threshold: float):
        self.total_pnl = total_pnl
        self.threshold = threshold
        super().__init__(f"Stop loss triggered: total PnL {total_pnl:.4f} < threshold {threshold:.4f}")


class IllegalTransitionError(MarketMakerError):
    """Lifecycle transition not permitted from the current state."""

    def __init__(self, current, target, action: str = ""):
        self.current = current
        self.target = target
        self.action = action
        verb = f"Cannot {action}" if action else "Illegal transition"
        super().__init__(f"{verb}: {getattr(current, 'value', current)} -> {getattr(target, 'value', target)}")
