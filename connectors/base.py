"""
Exchange Connector Contract.

Every venue the market maker talks to implements ExchangeConnector:
market data (order book, klines), account (position) and the order
lifecycle (place, cancel, cancel all, query).

All amounts are floats in the asset's native units. Venue-specific
precision beyond the strategy's tick/lot size is the connector's job.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"


class TimeInForce(str, Enum):
    GTC = "GTC"  # Good Till Cancel
    IOC = "IOC"  # Immediate Or Cancel
    FOK = "FOK"  # Fill Or Kill


class OrderStatus(str, Enum):
    """Order lifecycle states as reported by the venue."""
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED, OrderStatus.EXPIRED)


@dataclass(frozen=True)
class OrderBookLevel:
    price: float
    quantity: float


@dataclass
class OrderBook:
    """Order book snapshot, each side sorted best-first."""
    symbol: str
    bids: List[OrderBookLevel] = field(default_factory=list)
    asks: List[OrderBookLevel] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0].price if self.asks else None

    @property
    def mid_price(self) -> Optional[float]:
        if not self.bids or not self.asks:
            return None
        return (self.bids[0].price + self.asks[0].price) / 2


@dataclass(frozen=True)
class Candle:
    timestamp: float
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class Position:
    symbol: str
    quantity: float  # Positive = long, negative = short
    entry_price: float
    unrealized_pnl: float = 0.0


@dataclass
class Order:
    """Order as last reported by the exchange."""
    order_id: str
    symbol: str
    side: OrderSide
    status: OrderStatus
    quantity: float
    price: float
    executed_quantity: float = 0.0
    avg_price: Optional[float] = None
    order_type: OrderType = OrderType.LIMIT
    time_in_force: TimeInForce = TimeInForce.GTC
    client_order_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def fill_price(self) -> float:
        """Average execution price, falling back to the limit price."""
        return self.avg_price if self.avg_price else self.price

    @property
    def remaining_quantity(self) -> float:
        return max(0.0, self.quantity - self.executed_quantity)


class ExchangeConnector(ABC):
    """
    Abstract exchange capability consumed by the strategy core.

    Implementations must raise core.exceptions.ExchangeError for venue
    failures so the orchestrator can contain them per cycle.
    """

    name: str = "abstract"

    # ==================== Market Data ====================

    @abstractmethod
    async def get_order_book(self, symbol: str, depth: int = 5) -> OrderBook:
        """Order book for symbol, sides sorted best-first."""

    @abstractmethod
    async def get_klines(self, symbol: str, interval: str = "1m", count: int = 100) -> List[Candle]:
        """Candles ordered oldest to newest."""

    # ==================== Account ====================

    @abstractmethod
    async def get_position(self, symbol: str) -> Optional[Position]:
        """Signed position for symbol, or None if the venue reports none."""

    # ==================== Orders ====================

    @abstractmethod
    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: Optional[float] = None,
        time_in_force: TimeInForce = TimeInForce.GTC,
    ) -> Order:
        """Submit an order and return its handle."""

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> None:
        """Cancel a single order."""

    @abstractmethod
    async def cancel_all_orders(self, symbol: str) -> None:
        """Cancel every open order on symbol."""

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str) -> Optional[Order]:
        """Current status of an order, None if the venue does not know it."""

    async def close(self) -> None:
        """Release network resources. Override if the connector holds any."""
        pass
