import logging
import math
import time
from collections import defaultdict
from dataclasses import replace
from typing import Dict, List, Optional

import numpy as np

from connectors.base import (
    Candle,
    ExchangeConnector,
    Order,
    OrderBook,
    OrderBookLevel,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    TimeInForce,
)
from core.exceptions import ExchangeError

logger = logging.getLogger("Execution.Paper")

_OPEN = (OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED)


class PaperExchange(ExchangeConnector):
    """
    In-memory venue for dry runs and tests.

    Keeps its own 'exchange' state (book, candles, orders, net positions)
    with a simple matching engine: a resting limit order fills at its
    limit price as soon as the book crosses it (BUY when best ask <= price,
    SELL when best bid >= price).

    With mid_price set, unknown symbols get a synthetic book around it;
    volatility > 0 makes that mid random-walk on every book fetch.
    """

    name = "paper"

    def __init__(
        self,
        mid_price: Optional[float] = None,
        spread: float = 1.0,
        volatility: float = 0.0,
        depth_quantity: float = 1.0,
        seed: Optional[int] = None,
    ):
        self.mid_price = mid_price
        self.spread = spread
        self.volatility = volatility
        self.depth_quantity = depth_quantity
        self._rng = np.random.default_rng(seed)

        self.order_books: Dict[str, OrderBook] = {}
        self.candles: Dict[str, List[Candle]] = {}
        self.orders: Dict[str, Order] = {}
        self.positions = defaultdict(lambda: {"amount": 0.0, "entryPrice": 0.0})
        self.order_id_counter = 100000

    # ==================== Market Control ====================

    def set_order_book(self, book: OrderBook) -> None:
        symbol = book.symbol.upper()
        self.order_books[symbol] = book
        self._match(symbol)

    def set_market(self, symbol: str, bid: float, ask: float, quantity: Optional[float] = None) -> None:
        """Replace the book with a single level each side and run the matcher."""
        qty = self.depth_quantity if quantity is None else quantity
        self.set_order_book(OrderBook(
            symbol=symbol.upper(),
            bids=[OrderBookLevel(bid, qty)],
            asks=[OrderBookLevel(ask, qty)],
        ))

    def set_candles(self, symbol: str, candles: List[Candle]) -> None:
        self.candles[symbol.upper()] = list(candles)

    def set_position(self, symbol: str, quantity: float, entry_price: float) -> None:
        pos = self.positions[symbol.upper()]
        pos["amount"] = quantity
        pos["entryPrice"] = entry_price if quantity else 0.0

    def open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        return [
            replace(o) for o in self.orders.values()
            if o.status in _OPEN and (symbol is None or o.symbol == symbol.upper())
        ]

    def fill_order(self, order_id: str, quantity: Optional[float] = None, price: Optional[float] = None) -> Order:
        """Force a (partial) fill, as if a counterparty had hit the order."""
        order = self.orders.get(order_id)
        if order is None or order.status not in _OPEN:
            raise ExchangeError(f"Order {order_id} is not open", code="ORDER_NOT_OPEN", exchange=self.name)
        qty = order.remaining_quantity if quantity is None else min(quantity, order.remaining_quantity)
        self._execute(order, qty, order.price if price is None else price)
        return replace(order)

    # ==================== Market Data ====================

    def _book(self, symbol: str) -> OrderBook:
        symbol = symbol.upper()
        if symbol not in self.order_books:
            if self.mid_price is None:
                raise ExchangeError(f"No market data for {symbol}", code="NO_MARKET", exchange=self.name)
            half = self.spread / 2
            self.set_market(symbol, self.mid_price - half, self.mid_price + half)
        elif self.volatility > 0:
            book = self.order_books[symbol]
            mid = book.mid_price or self.mid_price
            if mid:
                mid *= math.exp(self.volatility * self._rng.standard_normal())
                half = self.spread / 2
                self.set_market(symbol, mid - half, mid + half)
        return self.order_books[symbol]

    async def get_order_book(self, symbol: str, depth: int = 5) -> OrderBook:
        book = self._book(symbol)
        return OrderBook(
            symbol=book.symbol,
            bids=list(book.bids[:depth]),
            asks=list(book.asks[:depth]),
            timestamp=time.time(),
        )

    async def get_klines(self, symbol: str, interval: str = "1m", count: int = 100) -> List[Candle]:
        symbol = symbol.upper()
        if symbol in self.candles:
            return self.candles[symbol][-count:]
        if self.mid_price is None:
            raise ExchangeError(f"No candles for {symbol}", code="NO_MARKET", exchange=self.name)

        # Synthetic history ending at the current mid
        if count <= 0:
            return []
        closes = [self._book(symbol).mid_price]
        for step in self._rng.standard_normal(count - 1) * self.volatility:
            closes.append(closes[-1] * math.exp(-step))
        closes.reverse()

        now = time.time()
        history = []
        prev = closes[0]
        for i, close in enumerate(closes):
            close = float(close)
            history.append(Candle(
                timestamp=now - (count - i) * 60,
                open=prev,
                high=max(prev, close),
                low=min(prev, close),
                close=close,
            ))
            prev = close
        return history

    # ==================== Account ====================

    async def get_position(self, symbol: str) -> Optional[Position]:
        symbol = symbol.upper()
        if symbol not in self.positions:
            return None
        pos = self.positions[symbol]
        return Position(symbol=symbol, quantity=pos["amount"], entry_price=pos["entryPrice"])

    # ==================== Orders ====================

    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: Optional[float] = None,
        time_in_force: TimeInForce = TimeInForce.GTC,
    ) -> Order:
        symbol = symbol.upper()
        if quantity <= 0:
            raise ExchangeError(f"Invalid quantity {quantity}", code="INVALID_QUANTITY", exchange=self.name)
        if order_type == OrderType.LIMIT and (price is None or price <= 0):
            raise ExchangeError("Limit order missing price", code="INVALID_PRICE", exchange=self.name)

        exchange_id = str(self.order_id_counter)
        self.order_id_counter += 1

        order = Order(
            order_id=exchange_id,
            symbol=symbol,
            side=OrderSide(side),
            status=OrderStatus.NEW,
            quantity=quantity,
            price=price or 0.0,
            order_type=OrderType(order_type),
            time_in_force=TimeInForce(time_in_force),
        )
        self.orders[exchange_id] = order

        if order.order_type == OrderType.MARKET:
            book = self._book(symbol)
            fill_price = book.best_ask if order.side == OrderSide.BUY else book.best_bid
            if fill_price is None:
                order.status = OrderStatus.REJECTED
                logger.warning(f"Market order {exchange_id} rejected - no liquidity on {symbol}")
            else:
                self._execute(order, quantity, fill_price)
        else:
            logger.info(f"Order {exchange_id} QUEUED: {order.side.value} {quantity} {symbol} @ {price}")
            if symbol in self.order_books:
                self._match(symbol)

        return replace(order)

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        order = self.orders.get(order_id)
        if order is None:
            raise ExchangeError(f"Unknown order {order_id}", code="UNKNOWN_ORDER", exchange=self.name)
        if order.status in _OPEN:
            order.status = OrderStatus.CANCELLED
            order.updated_at = time.time()

    async def cancel_all_orders(self, symbol: str) -> None:
        symbol = symbol.upper()
        count = 0
        for order in self.orders.values():
            if order.symbol == symbol and order.status in _OPEN:
                order.status = OrderStatus.CANCELLED
                order.updated_at = time.time()
                count += 1
        logger.info(f"Cancelled {count} open order(s) on {symbol}")

    async def get_order(self, symbol: str, order_id: str) -> Optional[Order]:
        order = self.orders.get(order_id)
        return replace(order) if order else None

    # ==================== Matching ====================

    def _match(self, symbol: str) -> None:
        book = self.order_books.get(symbol)
        if book is None:
            return
        best_bid, best_ask = book.best_bid, book.best_ask

        for order in list(self.orders.values()):
            if order.symbol != symbol or order.status not in _OPEN or order.order_type != OrderType.LIMIT:
                continue
            if order.side == OrderSide.BUY:
                crossed = best_ask is not None and best_ask <= order.price
            else:
                crossed = best_bid is not None and best_bid >= order.price
            if crossed:
                # Fill at LIMIT price (maker)
                self._execute(order, order.remaining_quantity, order.price)

    def _execute(self, order: Order, quantity: float, price: float) -> None:
        if quantity <= 0:
            return
        prev_qty = order.executed_quantity
        order.executed_quantity = prev_qty + quantity
        order.avg_price = ((order.avg_price or 0.0) * prev_qty + price * quantity) / order.executed_quantity
        order.status = (
            OrderStatus.FILLED if order.remaining_quantity <= 1e-12 else OrderStatus.PARTIALLY_FILLED
        )
        order.updated_at = time.time()

        self._update_position(order.symbol, order.side, quantity, price)
        logger.info(f"FILL {order.order_id}: {order.side.value} {quantity} {order.symbol} @ {price} ({order.status.value})")

    def _update_position(self, symbol: str, side: OrderSide, quantity: float, price: float) -> None:
        pos = self.positions[symbol]
        old_amt = pos["amount"]
        signed_qty = quantity if side == OrderSide.BUY else -quantity
        new_amt = old_amt + signed_qty

        if abs(new_amt) < 1e-12:
            new_amt = 0.0
            pos["entryPrice"] = 0.0
        elif abs(old_amt) < 1e-12 or old_amt * new_amt < 0:
            # Opening from flat, or flipping through zero
            pos["entryPrice"] = price
        elif old_amt * signed_qty > 0:
            # Increasing: weighted entry
            pos["entryPrice"] = (abs(old_amt) * pos["entryPrice"] + quantity * price) / abs(new_amt)
        # Reducing keeps the entry

        pos["amount"] = new_amt
