import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from analysis.parameter_estimator import ParameterEstimator
from config.strategy_config import StrategyConfig
from connectors.base import Order, OrderSide, OrderStatus, OrderType, TimeInForce
from core.event_channel import EventChannel
from core.events import (
    ErrorEvent,
    OrderCancelledEvent,
    OrderFilledEvent,
    OrderPlacedEvent,
    PositionChangeEvent,
    StateChangeEvent,
    UpdateEvent,
)
from core.exceptions import ExchangeError, IllegalTransitionError, InvalidParameterError, StopLossTriggered
from core.lifecycle import StrategyLifecycle, StrategyState
from execution.exchange_registry import ExchangeRegistry
from execution.position_ledger import QTY_EPSILON, PositionLedger
from strategies.avellaneda_stoikov import AvellanedaStoikovPolicy
from strategies.base import QuotingPolicy
from strategies.quote_engine import ASParameters, Quote, round_to_tick

logger = logging.getLogger("Core.Orchestrator")


@dataclass
class StrategyStats:
    total_orders_placed: int = 0
    total_orders_filled: int = 0
    total_orders_cancelled: int = 0
    total_buy_volume: float = 0.0
    total_sell_volume: float = 0.0
    realized_pnl: float = 0.0
    update_count: int = 0
    error_count: int = 0
    start_time: Optional[float] = None
    last_update_time: Optional[float] = None


@dataclass
class OrderHandle:
    """Our view of the one resting order on a side."""
    order_id: str
    side: OrderSide
    price: float
    quantity: float
    applied_quantity: float = 0.0  # Executed quantity already booked in the ledger


class MarketMakerOrchestrator:
    """
    Runs one Avellaneda-Stoikov strategy instance on one symbol.

    Owns the lifecycle FSM, the update loop, parameter fusion
    (estimates overridden by fixed sigma/kappa), stop-loss enforcement and
    per-side order reconciliation. Cycles never overlap, so the ledger and
    order handles need no locking.
    """

    # Seeds used until the estimators produce something
    DEFAULT_KAPPA = 0.01
    DEFAULT_SIGMA = 0.001

    def __init__(
        self,
        config: StrategyConfig,
        registry: ExchangeRegistry,
        exchange_name: str = "paper",
        policy: Optional[QuotingPolicy] = None,
        events: Optional[EventChannel] = None,
        estimator: Optional[ParameterEstimator] = None,
    ):
        self.config = config
        self.exchange = registry.get(exchange_name)
        self.policy = policy or AvellanedaStoikovPolicy()
        self._events = events or EventChannel()
        self.estimator = estimator or ParameterEstimator.from_config(config)
        self._ledger = PositionLedger.from_config(self.exchange, config)
        self.lifecycle = StrategyLifecycle(listener=self._on_transition)
        self.stats = StrategyStats()

        self._orders: Dict[OrderSide, Optional[OrderHandle]] = {OrderSide.BUY: None, OrderSide.SELL: None}

        self._gamma = config.gamma
        self._kappa = config.kappa if config.kappa is not None else self.DEFAULT_KAPPA
        self._sigma = config.sigma if config.sigma is not None else self.DEFAULT_SIGMA
        self._mid_price: Optional[float] = None
        self._last_quote: Optional[Quote] = None

        self._stop_signal = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

    # ==================== Accessors ====================

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> StrategyState:
        return self.lifecycle.state

    @property
    def events(self) -> EventChannel:
        return self._events

    @property
    def ledger(self) -> PositionLedger:
        return self._ledger

    @property
    def last_quote(self) -> Optional[Quote]:
        return self._last_quote

    @property
    def mid_price(self) -> Optional[float]:
        return self._mid_price

    @property
    def parameters(self) -> ASParameters:
        return ASParameters(gamma=self._gamma, kappa=self._kappa, sigma=self._sigma)

    def open_order(self, side: OrderSide) -> Optional[OrderHandle]:
        return self._orders[OrderSide(side)]

    # ==================== Lifecycle ====================

    async def initialize(self) -> None:
        """Load the starting position and move INITIALIZING -> STOPPED."""
        if self.state != StrategyState.INITIALIZING:
            raise IllegalTransitionError(self.state, StrategyState.STOPPED, "initialize")

        logger.info(
            f"Initializing {self.name} on {self.exchange.name} "
            f"(policy={self.policy.name}, dry_run={self.config.dry_run})"
        )
        try:
            await self._ledger.initialize()
        except Exception as e:
            self.lifecycle.transition(StrategyState.ERROR, "initialize")
            self._publish_error(e, f"Initialization failed: {e}", fatal=True)
            raise

        self._kappa = self.config.kappa if self.config.kappa is not None else self.DEFAULT_KAPPA
        self._sigma = self.config.sigma if self.config.sigma is not None else self.DEFAULT_SIGMA
        self.lifecycle.transition(StrategyState.STOPPED, "initialize")

    async def start(self) -> None:
        if self.state != StrategyState.STOPPED:
            raise IllegalTransitionError(self.state, StrategyState.RUNNING, "start")

        self.lifecycle.transition(StrategyState.RUNNING, "start")
        self.stats.start_time = time.time()
        logger.info(f"🚀 Starting {self.name} ({self.config.symbol}, every {self.config.update_interval_ms}ms)")

        await self._collect_initial_data()
        self._refresh_parameters()
        self._launch_loop()

    async def pause(self) -> None:
        """Halt quoting; the in-flight cycle finishes, then every order is pulled."""
        if self.state != StrategyState.RUNNING:
            raise IllegalTransitionError(self.state, StrategyState.PAUSED, "pause")

        self.lifecycle.transition(StrategyState.PAUSED, "pause")
        await self._halt_loop()
        await self._cancel_all_orders()
        logger.info(f"⏸️ {self.name} paused")

    async def resume(self) -> None:
        """Restart quoting. Ledger state and realized PnL are kept."""
        if self.state != StrategyState.PAUSED:
            raise IllegalTransitionError(self.state, StrategyState.RUNNING, "resume")

        self.lifecycle.transition(StrategyState.RUNNING, "resume")
        self._launch_loop()
        logger.info(f"▶️ {self.name} resumed")

    async def stop(self) -> None:
        """
        Stop quoting and cancel everything.

        Always reaches STOPPED: cancel failures are logged and published,
        never raised. No-op when already stopped or stopping.
        """
        if self.lifecycle.is_in(StrategyState.STOPPED, StrategyState.STOPPING):
            return
        if self.state == StrategyState.INITIALIZING:
            raise IllegalTransitionError(self.state, StrategyState.STOPPING, "stop")

        self.lifecycle.transition(StrategyState.STOPPING, "stop")
        await self._halt_loop()
        await self._cancel_all_orders()

        snap = self._ledger.snapshot()
        logger.info(
            f"🏁 {self.name} final position: inv={snap.inventory:.6f} "
            f"realized={snap.realized_pnl:.4f} unrealized={snap.unrealized_pnl:.4f} trades={snap.trade_count}"
        )
        self.lifecycle.transition(StrategyState.STOPPED, "stop")

    def _on_transition(self, previous: Optional[StrategyState], state: StrategyState) -> None:
        self._events.publish(StateChangeEvent(
            strategy=self.name,
            previous=previous.value if previous else None,
            state=state.value,
        ))

    # ==================== Scheduler ====================

    def _launch_loop(self) -> None:
        self._stop_signal = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run_loop(), name=f"mm-loop-{self.name}")

    async def _halt_loop(self) -> None:
        self._stop_signal.set()
        task, self._loop_task = self._loop_task, None
        # Called from inside the loop on stop-loss; awaiting ourselves would deadlock
        if task is None or task is asyncio.current_task():
            return
        await asyncio.wait([task])

    async def _run_loop(self) -> None:
        interval = self.config.update_interval_s
        while not self._stop_signal.is_set() and self.state == StrategyState.RUNNING:
            await self.run_cycle()

            if self.state != StrategyState.RUNNING:
                break
            try:
                await asyncio.wait_for(self._stop_signal.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.debug(f"{self.name} update loop exited ({self.state.value})")

    # ==================== Update Cycle ====================

    async def run_cycle(self) -> Optional[Quote]:
        """
        One guarded update cycle.

        Returns the quote produced, or None if the cycle was aborted.
        Failures are logged and published; only a stop-loss stops the
        strategy.
        """
        try:
            return await self._update_cycle()
        except StopLossTriggered as e:
            logger.critical(f"🛑 {self.name}: {e}")
            self._publish_error(e, str(e), fatal=True)
            await self.stop()
        except InvalidParameterError as e:
            logger.error(f"{self.name}: invalid parameters, cycle skipped: {e}")
            self._publish_error(e, f"Invalid parameters: {e}")
        except ExchangeError as e:
            logger.error(f"{self.name}: exchange error, cycle skipped: {e}")
            self._publish_error(e, f"Exchange error: {e}")
        except Exception as e:
            logger.exception(f"{self.name}: unexpected error in update cycle: {e}")
            self._publish_error(e, f"Unexpected error: {e}")
        return None

    async def _update_cycle(self) -> Quote:
        book = await self.exchange.get_order_book(self.config.symbol, self.config.order_book_depth)
        mid = book.mid_price
        if mid is None:
            raise ExchangeError(
                f"Order book for {self.config.symbol} has an empty side",
                exchange=self.exchange.name,
            )
        self._mid_price = mid

        self.estimator.process_order_book(book)
        self.estimator.process_price(mid)
        params = self._refresh_parameters()

        self._ledger.update_unrealized_pnl(mid)
        self._check_stop_loss()

        quote = self.policy.compute_quote(mid, self._ledger.inventory, params, self.config)
        self._last_quote = quote

        await self._reconcile_orders(quote)

        self._sync_stats()
        self.stats.update_count += 1
        self.stats.last_update_time = time.time()

        self._events.publish(UpdateEvent(strategy=self.name, quote=quote, position=self._ledger.snapshot()))
        return quote

    async def _collect_initial_data(self) -> None:
        """Seed sigma from klines and kappa from one book. Failures only cost warm-up time."""
        symbol = self.config.symbol
        try:
            candles = await self.exchange.get_klines(
                symbol, self.config.kline_interval, self.config.volatility_window
            )
            self.estimator.process_candles(candles)
            logger.info(f"📊 Loaded {len(candles)} {self.config.kline_interval} candles for {symbol}")
        except Exception as e:
            logger.warning(f"Could not load initial klines for {symbol}: {e}")

        try:
            book = await self.exchange.get_order_book(symbol, self.config.order_book_depth)
            self.estimator.process_order_book(book)
        except Exception as e:
            logger.warning(f"Could not load initial order book for {symbol}: {e}")

    def _refresh_parameters(self) -> ASParameters:
        """Estimator output first, then fixed overrides on top."""
        estimates = self.estimator.get_estimates()
        if estimates is not None:
            self._sigma = estimates.sigma
            self._kappa = estimates.kappa

        if self.config.sigma is not None:
            self._sigma = self.config.sigma
        if self.config.kappa is not None:
            self._kappa = self.config.kappa

        return self.parameters

    def _check_stop_loss(self) -> None:
        total = self._ledger.total_pnl
        if total < self.config.stop_loss_threshold:
            raise StopLossTriggered(total, self.config.stop_loss_threshold)

    # ==================== Reconciliation ====================

    async def _reconcile_orders(self, quote: Quote) -> None:
        if self.config.dry_run:
            logger.info(
                f"[DRY RUN] {self.config.symbol} would quote "
                f"BID {self.config.order_size} @ {quote.bid_price} / ASK {self.config.order_size} @ {quote.ask_price} "
                f"(inv={quote.inventory:.6f})"
            )
            return

        for side, price in ((OrderSide.BUY, quote.bid_price), (OrderSide.SELL, quote.ask_price)):
            try:
                await self._reconcile_side(side, price)
            except ExchangeError as e:
                logger.error(f"{self.name}: {side.value} reconciliation failed: {e}")
                self._publish_error(e, f"{side.value} reconciliation failed: {e}")

    def _side_allowed(self, side: OrderSide) -> bool:
        if side == OrderSide.BUY:
            return self._ledger.can_buy(self.config.order_size)
        return self._ledger.can_sell(self.config.order_size)

    async def _reconcile_side(self, side: OrderSide, price: float) -> None:
        handle = self._orders[side]

        if handle is not None:
            # Book whatever executed since the last cycle before deciding anything
            order = await self._sync_order(handle)
            if order is None or order.status.is_terminal:
                self._retire(handle, order)
                handle = None

        # Checked after syncing: a fill may have moved inventory
        if not self._side_allowed(side):
            if handle is not None:
                await self._cancel_order(handle)
            logger.warning(f"{self.name}: {side.value} suppressed, position limit reached (inv={self._ledger.inventory:.6f})")
            return

        if handle is None:
            await self._place_order(side, price)
        elif self._price_moved(handle.price, price):
            await self._cancel_order(handle)
            await self._place_order(side, price)

    def _price_moved(self, current: float, desired: float) -> bool:
        # Compare in tick units so float noise cannot hide a one-tick move
        return round(abs(current - desired) / self.config.tick_size, 6) >= 1

    async def _sync_order(self, handle: OrderHandle) -> Optional[Order]:
        """Fetch handle's order and book any execution the ledger has not seen."""
        order = await self.exchange.get_order(self.config.symbol, handle.order_id)
        if order is not None:
            self._book_execution(handle, order, complete=order.status == OrderStatus.FILLED)
        return order

    def _retire(self, handle: OrderHandle, order: Optional[Order]) -> None:
        """Forget a handle whose order is no longer working."""
        if order is not None and order.status == OrderStatus.FILLED:
            self.stats.total_orders_filled += 1
        if self._orders[handle.side] is handle:
            self._orders[handle.side] = None

    def _book_execution(self, handle: OrderHandle, order: Order, complete: bool = False) -> float:
        """Apply the not-yet-booked part of order's execution to the ledger."""
        executed = order.executed_quantity
        if complete and executed <= QTY_EPSILON:
            executed = order.quantity

        unapplied = executed - handle.applied_quantity
        if unapplied <= QTY_EPSILON:
            return 0.0

        self._ledger.apply_order(order, unapplied)
        handle.applied_quantity = executed
        self._sync_stats()

        self._events.publish(OrderFilledEvent(strategy=self.name, order=order, filled_quantity=unapplied))
        self._events.publish(PositionChangeEvent(strategy=self.name, position=self._ledger.snapshot()))
        return unapplied

    # ==================== Order Actions ====================

    async def _place_order(self, side: OrderSide, price: float) -> Optional[OrderHandle]:
        quantity = round_to_tick(self.config.order_size, self.config.lot_size, "down")
        if quantity <= 0:
            logger.warning(f"{self.name}: {side.value} size rounds to zero at lot {self.config.lot_size}, skipped")
            return None

        price = round_to_tick(price, self.config.tick_size, "down" if side == OrderSide.BUY else "up")

        order = await self.exchange.place_order(
            self.config.symbol, side, OrderType.LIMIT, quantity, price, TimeInForce.GTC
        )
        handle = OrderHandle(order_id=order.order_id, side=side, price=price, quantity=quantity)
        self._orders[side] = handle
        self.stats.total_orders_placed += 1

        logger.info(f"📝 {side.value} {quantity} {self.config.symbol} @ {price} (id={order.order_id})")
        self._events.publish(OrderPlacedEvent(strategy=self.name, order=order))
        return handle

    async def _cancel_order(self, handle: OrderHandle) -> None:
        await self.exchange.cancel_order(self.config.symbol, handle.order_id)
        self._orders[handle.side] = None
        self.stats.total_orders_cancelled += 1

        logger.info(f"❌ Cancelled {handle.side.value} {handle.order_id} @ {handle.price}")
        self._events.publish(OrderCancelledEvent(strategy=self.name, order_id=handle.order_id, side=handle.side))
        await self._settle_after_cancel([handle])

    async def _cancel_all_orders(self) -> None:
        """Best effort: failures are logged and published, handles are always cleared."""
        handles = [h for h in self._orders.values() if h is not None]
        try:
            await self.exchange.cancel_all_orders(self.config.symbol)
        except Exception as e:
            logger.error(f"{self.name}: cancel all failed: {e}")
            self._publish_error(e, f"Cancel all orders failed: {e}")
        else:
            self._events.publish(OrderCancelledEvent(strategy=self.name, order_id=None))
        finally:
            self._orders = {OrderSide.BUY: None, OrderSide.SELL: None}
        await self._settle_after_cancel(handles)

    async def _settle_after_cancel(self, handles) -> None:
        """Book fills that landed before the cancel took effect."""
        for handle in handles:
            try:
                order = await self._sync_order(handle)
            except Exception as e:
                logger.error(f"{self.name}: could not settle {handle.side.value} {handle.order_id}: {e}")
                self._publish_error(e, f"Settling cancelled order {handle.order_id} failed: {e}")
                continue
            if order is not None and order.status == OrderStatus.FILLED:
                self.stats.total_orders_filled += 1

    # ==================== Reporting ====================

    def _sync_stats(self) -> None:
        self.stats.total_buy_volume = self._ledger.total_buy_volume
        self.stats.total_sell_volume = self._ledger.total_sell_volume
        self.stats.realized_pnl = self._ledger.realized_pnl

    def _publish_error(self, error: BaseException, message: str, fatal: bool = False) -> None:
        self.stats.error_count += 1
        self._events.publish(ErrorEvent(strategy=self.name, error=error, message=message, fatal=fatal))

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "symbol": self.config.symbol,
            "exchange": self.exchange.name,
            "policy": self.policy.name,
            "state": self.state.value,
            "dry_run": self.config.dry_run,
            "mid_price": self._mid_price,
            "parameters": asdict(self.parameters),
            "estimator_ready": self.estimator.is_ready(),
            "position": asdict(self._ledger.snapshot()),
            "last_quote": self._last_quote,
            "open_orders": {
                side.value: asdict(handle) if handle else None for side, handle in self._orders.items()
            },
            "stats": asdict(self.stats),
        }
