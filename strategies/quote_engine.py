"""
Avellaneda-Stoikov Quote Engine.

Pure functions, no owned state. Key formulas:
- Reservation price: r = S - q * γ * σ²
- Optimal half-spread: δ = (1/γ) * ln(1 + γ/κ) + 0.5 * γ * σ²

Long inventory pushes r below mid (encourages selling), short inventory
pushes it above. Bids are rounded down and asks up to the tick, so
rounding never narrows the computed spread.

References:
- Avellaneda & Stoikov (2008), "High-frequency trading in a limit order book"
"""

import math
import time
from dataclasses import dataclass, field, replace
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_EVEN, Decimal
from typing import Tuple

from core.exceptions import InvalidParameterError


@dataclass(frozen=True)
class ASParameters:
    """Model parameters for one quoting cycle."""
    gamma: float           # Risk aversion
    kappa: float           # Order arrival intensity
    sigma: float           # Volatility (per input cadence)
    time_horizon: float = 1.0


@dataclass(frozen=True)
class Quote:
    """A two-sided quote. Superseded each cycle, never mutated."""
    mid_price: float
    reservation_price: float
    half_spread: float
    bid_price: float
    ask_price: float
    inventory: float
    params: ASParameters
    timestamp: float = field(default_factory=time.time)

    @property
    def spread(self) -> float:
        return self.ask_price - self.bid_price


_ROUNDING = {
    "down": ROUND_FLOOR,
    "up": ROUND_CEILING,
    "nearest": ROUND_HALF_EVEN,
}


def reservation_price(mid_price: float, inventory: float, gamma: float, sigma: float) -> float:
    """Inventory-adjusted fair value: r = S - q·γ·σ²."""
    return mid_price - inventory * gamma * sigma * sigma


def half_spread(gamma: float, kappa: float, sigma: float) -> float:
    """Optimal half-spread: δ = (1/γ)·ln(1 + γ/κ) + 0.5·γ·σ²."""
    if gamma <= 0 or kappa <= 0:
        raise InvalidParameterError(f"Kappa and gamma must be positive (gamma={gamma}, kappa={kappa})")

    term1 = (1.0 / gamma) * math.log(1.0 + gamma / kappa)
    term2 = 0.5 * gamma * sigma * sigma
    return term1 + term2


def bid_ask(reservation: float, half: float) -> Tuple[float, float]:
    return reservation - half, reservation + half


def build_quote(mid_price: float, inventory: float, params: ASParameters) -> Quote:
    """Unconstrained, unrounded AS quote."""
    r = reservation_price(mid_price, inventory, params.gamma, params.sigma)
    delta = half_spread(params.gamma, params.kappa, params.sigma)
    bid, ask = bid_ask(r, delta)
    return Quote(
        mid_price=mid_price,
        reservation_price=r,
        half_spread=delta,
        bid_price=bid,
        ask_price=ask,
        inventory=inventory,
        params=params,
    )


def apply_constraints(quote: Quote, min_spread: float, max_spread_multiplier: float) -> Quote:
    """
    Enforce bid < mid < ask, then the minimum and maximum spread.

    The side repair runs first because it can itself change the spread.
    The maximum spread never narrows below min_spread.
    """
    bid, ask, half = quote.bid_price, quote.ask_price, quote.half_spread
    mid = quote.mid_price

    # 1. Keep both sides on the correct side of mid
    if bid >= mid:
        bid = mid - half
    if ask <= mid:
        ask = mid + half

    # 2. Minimum spread
    spread = ask - bid
    if spread < min_spread:
        adjustment = (min_spread - spread) / 2
        bid -= adjustment
        ask += adjustment
        half = (ask - bid) / 2

    # 3. Maximum spread
    spread = ask - bid
    max_spread = max(quote.half_spread * max_spread_multiplier * 2, min_spread)
    if spread > max_spread:
        adjustment = (spread - max_spread) / 2
        bid += adjustment
        ask -= adjustment
        half = max_spread / 2

        # Symmetric narrowing can carry a repaired side back across mid;
        # re-anchor that side one model half-spread out, keeping the width
        if ask <= mid:
            ask = mid + quote.half_spread
            bid = ask - max_spread
        elif bid >= mid:
            bid = mid - quote.half_spread
            ask = bid + max_spread

    return replace(quote, bid_price=bid, ask_price=ask, half_spread=half)


def round_to_tick(price: float, tick_size: float, direction: str = "nearest") -> float:
    """
    Round price to a multiple of tick_size.

    Decimal arithmetic keeps tick-aligned inputs fixed (49992.13 / 0.01 must
    not floor to 4999212).
    """
    if tick_size <= 0:
        raise ValueError("Tick size must be positive")
    try:
        rounding = _ROUNDING[direction]
    except KeyError:
        raise ValueError(f"Unknown rounding direction: {direction}") from None

    tick = Decimal(str(tick_size))
    steps = (Decimal(str(price)) / tick).to_integral_value(rounding=rounding)
    return float(steps * tick)


def calculate_as(
    mid_price: float,
    inventory: float,
    params: ASParameters,
    tick_size: float,
    min_spread: float,
    max_spread_multiplier: float,
) -> Quote:
    """Full AS calculation: formulas, constraints, then tick rounding (bid down, ask up)."""
    quote = build_quote(mid_price, inventory, params)
    constrained = apply_constraints(quote, min_spread, max_spread_multiplier)

    return replace(
        constrained,
        bid_price=round_to_tick(constrained.bid_price, tick_size, "down"),
        ask_price=round_to_tick(constrained.ask_price, tick_size, "up"),
    )
