"""
Position Ledger - inventory and PnL bookkeeping for one symbol.

Mutated ONLY by fills (apply_fill / apply_order). Tracks:
1. Signed inventory (positive = long, negative = short)
2. Weighted average entry price across partial fills and direction flips
3. Realized PnL (changes only when |inventory| shrinks)
4. Unrealized PnL against the latest mid
5. Position limits for order suppression
"""

import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

from connectors.base import ExchangeConnector, Order, OrderSide

logger = logging.getLogger("Execution.PositionLedger")

# Residual float quantities below this are treated as flat
QTY_EPSILON = 1e-12


@dataclass(frozen=True)
class TradeRecord:
    timestamp: float
    symbol: str
    side: OrderSide
    quantity: float
    price: float
    realized_pnl: float = 0.0  # PnL realized by this fill


@dataclass(frozen=True)
class PositionSnapshot:
    """Read-only view of the ledger for events and monitoring."""
    symbol: str
    inventory: float
    avg_entry_price: float
    unrealized_pnl: float
    realized_pnl: float
    total_pnl: float
    inventory_ratio: float
    is_max_long: bool
    is_max_short: bool
    total_buy_volume: float
    total_sell_volume: float
    trade_count: int


class PositionLedger:
    """
    Single-writer inventory ledger.

    Only the orchestrator feeds it, one cycle at a time, so no locking.
    """

    def __init__(
        self,
        exchange: Optional[ExchangeConnector],
        symbol: str,
        max_position: float,
        min_position: float,
        target_inventory: float = 0.0,
    ):
        self.exchange = exchange
        self.symbol = symbol
        self.max_position = max_position
        self.min_position = min_position
        self.target_inventory = target_inventory

        self._inventory: float = 0.0
        self._avg_entry_price: float = 0.0
        self._unrealized_pnl: float = 0.0
        self._realized_pnl: float = 0.0
        self._total_buy_volume: float = 0.0
        self._total_sell_volume: float = 0.0
        self._trades: List[TradeRecord] = []

    @classmethod
    def from_config(cls, exchange: Optional[ExchangeConnector], config) -> "PositionLedger":
        return cls(
            exchange,
            symbol=config.symbol,
            max_position=config.max_position,
            min_position=config.min_position,
            target_inventory=config.target_inventory,
        )

    # ==================== Properties ====================

    @property
    def inventory(self) -> float:
        return self._inventory

    @property
    def average_entry_price(self) -> float:
        return self._avg_entry_price

    @property
    def unrealized_pnl(self) -> float:
        return self._unrealized_pnl

    @property
    def realized_pnl(self) -> float:
        return self._realized_pnl

    @property
    def total_pnl(self) -> float:
        return self._realized_pnl + self._unrealized_pnl

    @property
    def total_buy_volume(self) -> float:
        return self._total_buy_volume

    @property
    def total_sell_volume(self) -> float:
        return self._total_sell_volume

    @property
    def inventory_deviation(self) -> float:
        return abs(self._inventory - self.target_inventory)

    @property
    def inventory_ratio(self) -> float:
        """Signed fraction of the relevant limit (+1 = max long, -1 = max short)."""
        if self._inventory >= 0:
            return self._inventory / self.max_position
        return self._inventory / abs(self.min_position)

    @property
    def is_max_long(self) -> bool:
        return self._inventory >= self.max_position

    @property
    def is_max_short(self) -> bool:
        return self._inventory <= self.min_position

    @property
    def trades(self) -> Tuple[TradeRecord, ...]:
        return tuple(self._trades)

    # ==================== Sync ====================

    async def initialize(self) -> None:
        """
        Load the starting position from the exchange.

        Any failure falls back to flat: a missing snapshot must not
        prevent the strategy from starting.
        """
        try:
            position = await self.exchange.get_position(self.symbol) if self.exchange else None
            if position is not None:
                self._inventory = self._snap(position.quantity)
                self._avg_entry_price = position.entry_price if self._inventory != 0 else 0.0
            else:
                self._inventory = 0.0
                self._avg_entry_price = 0.0
            logger.info(
                f"[{self.symbol}] Position loaded: qty={self._inventory:.6f} "
                f"entry={self._avg_entry_price:.4f}"
            )
        except Exception as e:
            logger.error(f"[{self.symbol}] Failed to load position, starting flat: {e}")
            self._inventory = 0.0
            self._avg_entry_price = 0.0

        self._realized_pnl = 0.0
        self._unrealized_pnl = 0.0

    # ==================== Fills ====================

    def apply_order(self, order: Order, quantity: Optional[float] = None) -> Optional[TradeRecord]:
        """
        Apply an exchange order's execution.

        Args:
            order: Order as reported by the exchange.
            quantity: Portion to apply (defaults to the full executed quantity).
        """
        qty = order.executed_quantity if quantity is None else quantity
        if qty <= QTY_EPSILON:
            return None
        return self.apply_fill(order.side, qty, order.fill_price)

    def apply_fill(self, side: OrderSide, quantity: float, price: float) -> TradeRecord:
        """Book one fill and return its trade record."""
        if quantity <= 0:
            raise ValueError(f"Fill quantity must be positive, got {quantity}")
        side = OrderSide(side)

        if side == OrderSide.BUY:
            self._total_buy_volume += quantity
            realized = self._handle_buy(quantity, price)
        else:
            self._total_sell_volume += quantity
            realized = self._handle_sell(quantity, price)

        record = TradeRecord(
            timestamp=time.time(),
            symbol=self.symbol,
            side=side,
            quantity=quantity,
            price=price,
            realized_pnl=realized,
        )
        self._trades.append(record)

        logger.info(
            f"[{self.symbol}] Fill {side.value} {quantity} @ {price} -> "
            f"inv={self._inventory:.6f} avg={self._avg_entry_price:.4f} realized={self._realized_pnl:.4f}"
        )
        return record

    def _handle_buy(self, quantity: float, price: float) -> float:
        q = self._inventory
        if q >= 0:
            # Extend (or open) a long
            new_q = q + quantity
            self._avg_entry_price = (q * self._avg_entry_price + quantity * price) / new_q
            self._inventory = self._snap(new_q)
            return 0.0

        # Cover a short, possibly flipping long
        covered = min(quantity, abs(q))
        realized = covered * (self._avg_entry_price - price)
        self._realized_pnl += realized
        self._inventory = self._snap(q + quantity)

        if self._inventory > 0:
            self._avg_entry_price = price
        elif self._inventory == 0:
            self._avg_entry_price = 0.0
        return realized

    def _handle_sell(self, quantity: float, price: float) -> float:
        q = self._inventory
        if q <= 0:
            # Extend (or open) a short
            new_q = q - quantity
            notional = abs(q) * self._avg_entry_price + quantity * price
            self._avg_entry_price = notional / abs(new_q)
            self._inventory = self._snap(new_q)
            return 0.0

        # Reduce a long, possibly flipping short
        reduced = min(quantity, q)
        realized = reduced * (price - self._avg_entry_price)
        self._realized_pnl += realized
        self._inventory = self._snap(q - quantity)

        if self._inventory < 0:
            self._avg_entry_price = price
        elif self._inventory == 0:
            self._avg_entry_price = 0.0
        return realized

    @staticmethod
    def _snap(qty: float) -> float:
        return 0.0 if abs(qty) < QTY_EPSILON else qty

    # ==================== Valuation & Limits ====================

    def update_unrealized_pnl(self, mid_price: float) -> float:
        if self._inventory == 0:
            self._unrealized_pnl = 0.0
        else:
            self._unrealized_pnl = self._inventory * (mid_price - self._avg_entry_price)
        return self._unrealized_pnl

    def can_buy(self, quantity: float) -> bool:
        return self._inventory + quantity <= self.max_position + QTY_EPSILON

    def can_sell(self, quantity: float) -> bool:
        return self._inventory - quantity >= self.min_position - QTY_EPSILON

    def max_buy_quantity(self) -> float:
        return max(0.0, self.max_position - self._inventory)

    def max_sell_quantity(self) -> float:
        return max(0.0, self._inventory - self.min_position)

    def snapshot(self) -> PositionSnapshot:
        return PositionSnapshot(
            symbol=self.symbol,
            inventory=self._inventory,
            avg_entry_price=self._avg_entry_price,
            unrealized_pnl=self._unrealized_pnl,
            realized_pnl=self._realized_pnl,
            total_pnl=self.total_pnl,
            inventory_ratio=self.inventory_ratio,
            is_max_long=self.is_max_long,
            is_max_short=self.is_max_short,
            total_buy_volume=self._total_buy_volume,
            total_sell_volume=self._total_sell_volume,
            trade_count=len(self._trades),
        )

    def reset(self) -> None:
        self._inventory = 0.0
        self._avg_entry_price = 0.0
        self._unrealized_pnl = 0.0
        self._realized_pnl = 0.0
        self._total_buy_volume = 0.0
        self._total_sell_volume = 0.0
        self._trades = []
