from abc import ABC, abstractmethod
from typing import Any

from strategies.quote_engine import ASParameters, Quote


class QuotingPolicy(ABC):
    """
    Abstract pricing model plugged into the orchestrator.

    The orchestrator owns lifecycle, scheduling and order handling; a policy
    only turns (mid, inventory, parameters) into a two-sided quote.
    Implementations must be side-effect free.
    """

    name: str = "abstract"

    @abstractmethod
    def compute_quote(
        self,
        mid_price: float,
        inventory: float,
        params: ASParameters,
        config: Any,
    ) -> Quote:
        """
        Produce the quote for this cycle.

        Args:
            mid_price: Current mid price of the book.
            inventory: Signed inventory from the position ledger.
            params: Model parameters fused for this cycle.
            config: The validated StrategyConfig (tick size, spread bounds...).
        """
        pass
