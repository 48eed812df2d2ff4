"""
Order Arrival Intensity Estimator (kappa).

Heuristic: a tight relative spread means a competitive, liquid book with
frequent arrivals, so kappa ~ 1 / (avg_relative_spread * multiplier).
When spread history is too short, kappa is derived from volatility so the
quoting loop never stalls waiting for it.
"""

import logging
from typing import Optional

import numpy as np

from connectors.base import OrderBook
from utils.ring_buffer import RingBuffer

logger = logging.getLogger("Analysis.Intensity")

KAPPA_MIN = 0.001
KAPPA_MAX = 0.5
KAPPA_DEFAULT = 0.01


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


class IntensityEstimator:
    """Rolling kappa estimate from best bid/ask snapshots."""

    MIN_SAMPLES = 5

    def __init__(self, window: int = 50):
        self.window = window
        self._spreads: RingBuffer[float] = RingBuffer(window)
        self._mids: RingBuffer[float] = RingBuffer(window)

    def add_order_book(self, order_book: OrderBook) -> None:
        """Record the relative spread of a snapshot; one-sided books are ignored."""
        if not order_book.bids or not order_book.asks:
            logger.debug(f"[{order_book.symbol}] Ignoring one-sided order book")
            return

        best_bid = order_book.bids[0].price
        best_ask = order_book.asks[0].price
        mid = (best_bid + best_ask) / 2
        if mid <= 0:
            return

        self._mids.push(mid)
        self._spreads.push((best_ask - best_bid) / mid)

    def calculate(self, spread_multiplier: float = 2.0) -> Optional[float]:
        """Kappa from the average relative spread, or None if not enough samples."""
        if self._spreads.size() < self.MIN_SAMPLES:
            return None

        avg_spread = float(np.mean(self._spreads.to_list()))
        if avg_spread <= 0:
            return None

        return _clamp(1.0 / (avg_spread * spread_multiplier), KAPPA_MIN, KAPPA_MAX)

    def calculate_from_volatility(self, sigma: float) -> float:
        """Fallback kappa used while spread history is insufficient."""
        if sigma <= 0:
            return KAPPA_DEFAULT
        return _clamp(sigma / 10.0, KAPPA_MIN, KAPPA_MAX)

    @property
    def count(self) -> int:
        return self._spreads.size()

    @property
    def last_mid(self) -> Optional[float]:
        return self._mids.peek_back()

    def is_ready(self, min_samples: int = MIN_SAMPLES) -> bool:
        return self._spreads.size() >= min_samples

    def reset(self) -> None:
        self._spreads.clear()
        self._mids.clear()
