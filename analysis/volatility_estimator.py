"""
Volatility Estimator (sigma).

Rolling volatility of log-returns from a stream of prices (candle
closes or ticks). Two modes:
- Sample: Bessel-corrected standard deviation of the buffered returns
- EWMA: sigma²_t = λ·sigma²_{t-1} + (1-λ)·r_t², seeded from the sample variance

The output is in the native time unit of the input cadence (no annualization).
"""

import logging
import math
from typing import Iterable, List, Optional

import numpy as np

from connectors.base import Candle
from utils.ring_buffer import RingBuffer

logger = logging.getLogger("Analysis.Volatility")


class VolatilityEstimator:
    """
    Streaming volatility estimate over the last `window` prices.

    Usage:
        vol = VolatilityEstimator(window=100)
        for px in prices:
            vol.add_price(px)
        sigma = vol.calculate()  # None until 2 returns are buffered
    """

    MIN_RETURNS = 2

    def __init__(self, window: int = 100, use_ewma: bool = False, ewma_decay: float = 0.94):
        if window < 2:
            raise ValueError("Volatility window must hold at least 2 prices")
        if not 0.0 < ewma_decay < 1.0:
            raise ValueError("EWMA decay must be in (0, 1)")

        self.window = window
        self.use_ewma = use_ewma
        self.ewma_decay = ewma_decay

        self._prices: RingBuffer[float] = RingBuffer(window)
        self._returns: RingBuffer[float] = RingBuffer(window - 1)

        # EWMA state: running variance and the returns not yet folded into it
        self._ewma_variance: Optional[float] = None
        self._unfolded: List[float] = []

    def add_price(self, price: float) -> None:
        """Push a new price and derive the log-return against the previous one."""
        if price is None or price <= 0 or not math.isfinite(price):
            logger.warning(f"Ignoring invalid price for volatility: {price}")
            return

        prev = self._prices.peek_back()
        self._prices.push(price)

        if prev is not None:
            r = math.log(price / prev)
            self._returns.push(r)
            if self._ewma_variance is not None:
                self._unfolded.append(r)

    def add_prices(self, prices: Iterable[float]) -> None:
        for p in prices:
            self.add_price(p)

    def add_candles(self, candles: Iterable[Candle]) -> None:
        for candle in candles:
            self.add_price(candle.close)

    def calculate(self) -> Optional[float]:
        """Current sigma, or None if fewer than 2 returns are buffered."""
        returns = self._returns.to_list()
        if len(returns) < self.MIN_RETURNS:
            return None

        if self.use_ewma:
            return self._ewma_volatility(returns)
        return self._sample_std(returns)

    @staticmethod
    def _sample_std(returns: List[float]) -> float:
        return float(np.std(np.asarray(returns, dtype=float), ddof=1))

    def _ewma_volatility(self, returns: List[float]) -> float:
        lam = self.ewma_decay
        if self._ewma_variance is None:
            # Seed from the sample variance, then fold the latest return
            seed = self._sample_std(returns) ** 2
            self._ewma_variance = lam * seed + (1.0 - lam) * returns[-1] ** 2
        else:
            for r in self._unfolded:
                self._ewma_variance = lam * self._ewma_variance + (1.0 - lam) * r * r
        self._unfolded.clear()
        return math.sqrt(self._ewma_variance)

    @property
    def count(self) -> int:
        """Number of buffered returns."""
        return self._returns.size()

    def is_ready(self, min_samples: int = 10) -> bool:
        return self._returns.size() >= min_samples

    def reset(self) -> None:
        self._prices.clear()
        self._returns.clear()
        self._ewma_variance = None
        self._unfolded.clear()
