"""
Combined sigma / kappa estimator fed by the orchestrator each cycle.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from analysis.intensity_estimator import IntensityEstimator
from analysis.volatility_estimator import VolatilityEstimator
from connectors.base import Candle, OrderBook

logger = logging.getLogger("Analysis.Estimator")


@dataclass(frozen=True)
class ParameterEstimates:
    sigma: float
    kappa: float
    kappa_source: str  # "spread" or "volatility"


class ParameterEstimator:
    """Owns one volatility and one intensity estimator for a single symbol."""

    def __init__(
        self,
        volatility_window: int = 100,
        kappa_window: int = 50,
        use_ewma: bool = False,
        ewma_decay: float = 0.94,
        kappa_spread_multiplier: float = 2.0,
    ):
        self.volatility = VolatilityEstimator(volatility_window, use_ewma, ewma_decay)
        self.intensity = IntensityEstimator(kappa_window)
        self.kappa_spread_multiplier = kappa_spread_multiplier

    @classmethod
    def from_config(cls, config) -> "ParameterEstimator":
        return cls(
            volatility_window=config.volatility_window,
            kappa_window=config.kappa_window,
            use_ewma=config.use_ewma,
            ewma_decay=config.ewma_decay,
            kappa_spread_multiplier=config.kappa_spread_multiplier,
        )

    def process_candles(self, candles: Iterable[Candle]) -> None:
        self.volatility.add_candles(candles)

    def process_price(self, price: float) -> None:
        self.volatility.add_price(price)

    def process_order_book(self, order_book: OrderBook) -> None:
        self.intensity.add_order_book(order_book)

    def get_estimates(self) -> Optional[ParameterEstimates]:
        """Current (sigma, kappa), or None while sigma is unavailable."""
        sigma = self.volatility.calculate()
        if sigma is None:
            return None

        kappa = self.intensity.calculate(self.kappa_spread_multiplier)
        if kappa is not None:
            return ParameterEstimates(sigma=sigma, kappa=kappa, kappa_source="spread")

        return ParameterEstimates(
            sigma=sigma,
            kappa=self.intensity.calculate_from_volatility(sigma),
            kappa_source="volatility",
        )

    def is_ready(self, min_volatility_samples: int = 10, min_kappa_samples: int = 5) -> bool:
        """Both estimators have enough history."""
        return (
            self.volatility.is_ready(min_volatility_samples)
            and self.intensity.is_ready(min_kappa_samples)
        )

    def reset(self) -> None:
        self.volatility.reset()
        self.intensity.reset()
