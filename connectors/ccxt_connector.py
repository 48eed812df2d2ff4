import logging
import re
import time
from typing import Any, Dict, List, Optional

import ccxt.async_support as ccxt

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

_QUOTE_SUFFIX = re.compile(r"(USDT|BUSD|USDC)$")

# ccxt unified status -> ours ("open" is refined by the filled amount)
STATUS_MAP = {
    "open": OrderStatus.NEW,
    "closed": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "expired": OrderStatus.EXPIRED,
    "rejected": OrderStatus.REJECTED,
}


class CCXTConnector(ExchangeConnector):
    """
    Exchange connector over ccxt (async).
    Supports: Binance, OKX, and any other ccxt exchange id.

    Every ccxt failure surfaces as ExchangeError; an unknown order id is
    reported as None, not as an error.
    """

    def __init__(
        self,
        exchange_id: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        password: Optional[str] = None,
        testnet: bool = True,
        market_type: str = "spot",
        client: Any = None,
    ):
        self.exchange_id = exchange_id.lower()
        self.name = self.exchange_id
        self.testnet = testnet
        self.market_type = market_type
        self.logger = logging.getLogger(f"Connector.{exchange_id.upper()}")

        if client is None:
            # dynamic exchange class loading
            exchange_class = getattr(ccxt, self.exchange_id)
            config = {
                "apiKey": api_key,
                "secret": api_secret,
                "enableRateLimit": True,
                "options": {"defaultType": market_type},
            }
            if password:  # Required for OKX
                config["password"] = password
            client = exchange_class(config)
            if testnet:
                client.set_sandbox_mode(True)

        self.client = client
        self.markets: Optional[Dict[str, dict]] = None
        self._symbol_cache: Dict[str, str] = {}

    # ==================== Helpers ====================

    def _error(self, action: str, e: Exception) -> ExchangeError:
        self.logger.error(f"❌ {action} failed ({self.exchange_id}): {e}")
        return ExchangeError(f"{action} failed: {e}", code=type(e).__name__, exchange=self.exchange_id)

    async def _ensure_markets(self) -> Dict[str, dict]:
        if self.markets is None:
            try:
                self.logger.info(f"Loading markets for {self.exchange_id} (Testnet: {self.testnet})...")
                self.markets = await self.client.load_markets()
            except ccxt.BaseError as e:
                raise self._error("Load markets", e) from e
        return self.markets

    def _type_matches(self, market: dict) -> bool:
        if self.market_type == "spot":
            return market.get("spot", market.get("type") == "spot")
        return market.get("type") in ("swap", "future")

    async def resolve_symbol(self, symbol: str) -> str:
        """Exchange id (BTCUSDT) -> ccxt unified symbol (BTC/USDT)."""
        if "/" in symbol:
            return symbol
        key = symbol.upper()
        if key in self._symbol_cache:
            return self._symbol_cache[key]

        markets = await self._ensure_markets()
        candidates = [m for m in markets.values() if str(m.get("id", "")).upper() == key]
        if not candidates:
            raise ExchangeError(f"Unknown symbol {symbol}", code="UNKNOWN_SYMBOL", exchange=self.exchange_id)

        preferred = [m for m in candidates if self._type_matches(m)]
        unified = (preferred or candidates)[0]["symbol"]
        self._symbol_cache[key] = unified
        return unified

    def _parse_order(self, raw: dict, symbol: str) -> Order:
        filled = float(raw.get("filled") or 0.0)
        status = STATUS_MAP.get(raw.get("status") or "open", OrderStatus.NEW)
        if status == OrderStatus.NEW and filled > 0:
            status = OrderStatus.PARTIALLY_FILLED

        tif = raw.get("timeInForce")
        timestamp = raw.get("timestamp")
        return Order(
            order_id=str(raw["id"]),
            symbol=symbol.upper(),
            side=OrderSide(str(raw.get("side", "buy")).upper()),
            status=status,
            quantity=float(raw.get("amount") or 0.0),
            price=float(raw.get("price") or 0.0),
            executed_quantity=filled,
            avg_price=float(raw["average"]) if raw.get("average") else None,
            order_type=OrderType.MARKET if raw.get("type") == "market" else OrderType.LIMIT,
            time_in_force=TimeInForce(tif) if tif in TimeInForce.__members__ else TimeInForce.GTC,
            client_order_id=raw.get("clientOrderId"),
            created_at=timestamp / 1000 if timestamp else time.time(),
        )

    # ==================== Market Data ====================

    async def get_order_book(self, symbol: str, depth: int = 5) -> OrderBook:
        unified = await self.resolve_symbol(symbol)
        try:
            raw = await self.client.fetch_order_book(unified, depth)
        except ccxt.BaseError as e:
            raise self._error("Fetch order book", e) from e

        book = OrderBook(
            symbol=symbol.upper(),
            bids=[OrderBookLevel(float(p), float(q)) for p, q, *_ in raw.get("bids", [])[:depth]],
            asks=[OrderBookLevel(float(p), float(q)) for p, q, *_ in raw.get("asks", [])[:depth]],
        )
        if raw.get("timestamp"):
            book.timestamp = raw["timestamp"] / 1000
        return book

    async def get_klines(self, symbol: str, interval: str = "1m", count: int = 100) -> List[Candle]:
        unified = await self.resolve_symbol(symbol)
        try:
            rows = await self.client.fetch_ohlcv(unified, interval, limit=count)
        except ccxt.BaseError as e:
            raise self._error("Fetch klines", e) from e

        return [
            Candle(
                timestamp=row[0] / 1000,
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5] or 0.0),
            )
            for row in rows
        ]

    # ==================== Account ====================

    async def get_position(self, symbol: str) -> Optional[Position]:
        """
        Spot: derived from the base asset balance, valued at the current mid
        (no entry price is available). Derivatives: ccxt fetch_positions.
        """
        unified = await self.resolve_symbol(symbol)
        if self.market_type == "spot":
            return await self._spot_position(symbol, unified)

        try:
            positions = await self.client.fetch_positions([unified])
        except ccxt.BaseError as e:
            raise self._error("Fetch position", e) from e

        for p in positions:
            if p.get("symbol") != unified:
                continue
            # CCXT structure: 'side': 'long'/'short', 'contracts': 1.0 (qty)
            raw_qty = float(p.get("contracts") or 0.0)
            qty = -abs(raw_qty) if p.get("side") == "short" else abs(raw_qty)
            if qty == 0:
                return None
            return Position(
                symbol=symbol.upper(),
                quantity=qty,
                entry_price=float(p.get("entryPrice") or 0.0),
                unrealized_pnl=float(p.get("unrealizedPnl") or 0.0),
            )
        return None

    async def _spot_position(self, symbol: str, unified: str) -> Optional[Position]:
        base = unified.split("/")[0] if "/" in unified else _QUOTE_SUFFIX.sub("", symbol.upper())
        try:
            balance = await self.client.fetch_balance()
        except ccxt.BaseError as e:
            raise self._error("Fetch balance", e) from e

        total = float((balance.get(base) or {}).get("total") or 0.0)
        if total == 0:
            return None

        book = await self.get_order_book(symbol, 1)
        return Position(symbol=symbol.upper(), quantity=total, entry_price=book.mid_price or 0.0)

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
        unified = await self.resolve_symbol(symbol)
        params = {"timeInForce": TimeInForce(time_in_force).value} if order_type == OrderType.LIMIT else {}
        try:
            raw = await self.client.create_order(
                unified,
                OrderType(order_type).value.lower(),
                OrderSide(side).value.lower(),
                quantity,
                price,
                params,
            )
        except ccxt.BaseError as e:
            raise self._error("Place order", e) from e

        self.logger.info(f"✅ Order Placed ({self.exchange_id}): {side.value} {quantity} {unified} @ {price}")
        order = self._parse_order(raw, symbol)
        # Some venues echo only the id on create
        if not order.quantity:
            order.quantity = quantity
        if not order.price and price:
            order.price = price
        return order

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        unified = await self.resolve_symbol(symbol)
        try:
            await self.client.cancel_order(order_id, unified)
        except ccxt.BaseError as e:
            raise self._error(f"Cancel order {order_id}", e) from e
        self.logger.info(f"🚫 Canceled {order_id} on {self.exchange_id}")

    async def cancel_all_orders(self, symbol: str) -> None:
        unified = await self.resolve_symbol(symbol)
        try:
            if self.client.has.get("cancelAllOrders"):
                await self.client.cancel_all_orders(unified)
            else:
                for raw in await self.client.fetch_open_orders(unified):
                    await self.client.cancel_order(raw["id"], unified)
        except ccxt.BaseError as e:
            raise self._error("Cancel all orders", e) from e
        self.logger.info(f"🚫 Canceled all orders on {unified} ({self.exchange_id})")

    async def get_order(self, symbol: str, order_id: str) -> Optional[Order]:
        unified = await self.resolve_symbol(symbol)
        try:
            raw = await self.client.fetch_order(order_id, unified)
        except ccxt.OrderNotFound:
            return None
        except ccxt.BaseError as e:
            raise self._error(f"Fetch order {order_id}", e) from e
        return self._parse_order(raw, symbol)

    async def close(self) -> None:
        await self.client.close()
