"""
Avellaneda-Stoikov Market Making Policy.

Dynamic bid/ask quoting based on:
- Inventory risk (reservation price skew)
- Volatility (sigma, from the estimator or a fixed override)
- Order arrival rate (kappa)
- Spread bounds and tick rounding
"""

import logging
from dataclasses import replace

from strategies.base import QuotingPolicy
from strategies.quote_engine import ASParameters, Quote, calculate_as

logger = logging.getLogger("Strategy.AvellanedaStoikov")


class AvellanedaStoikovPolicy(QuotingPolicy):
    """
    Avellaneda-Stoikov optimal quoting.

    Inventory is measured relative to config.target_inventory, so a
    non-zero target shifts the neutral point of the skew. The quote still
    records the raw ledger inventory.
    """

    name = "AvellanedaStoikov"

    def compute_quote(self, mid_price: float, inventory: float, params: ASParameters, config) -> Quote:
        skew_inventory = inventory - config.target_inventory

        quote = calculate_as(
            mid_price,
            skew_inventory,
            params,
            config.tick_size,
            config.min_spread,
            config.max_spread_multiplier,
        )

        if skew_inventory != inventory:
            quote = replace(quote, inventory=inventory)

        logger.debug(
            f"[{config.symbol}] mid={mid_price:.4f} r={quote.reservation_price:.4f} "
            f"δ={quote.half_spread:.6f} bid={quote.bid_price} ask={quote.ask_price} q={inventory:.6f}"
        )
        return quote
