"""
Integration tests for the market maker orchestrator.

Runs the real estimators, policy and ledger against the in-memory
PaperExchange:
- Reference quote and the first two placements
- Reconciliation (keep, reprice, fills, partial fills, limits)
- Stop-loss, error containment and lifecycle rules
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from config.strategy_config import build_strategy_config
from connectors.base import OrderSide, OrderStatus
from core.engine import MarketMakerOrchestrator
from core.events import (
    ErrorEvent,
    OrderFilledEvent,
    OrderPlacedEvent,
    PositionChangeEvent,
    StateChangeEvent,
    UpdateEvent,
)
from core.exceptions import ExchangeError, IllegalTransitionError, InvalidParameterError
from core.lifecycle import StrategyState
from execution.exchange_registry import ExchangeRegistry
from execution.simulated import PaperExchange
from strategies.base import QuotingPolicy

SYMBOL = "BTCUSDT"


def make_config(**overrides):
    base = {
        "symbol": SYMBOL,
        "gamma": 0.5,
        "sigma": 0.001,
        "kappa": 0.01,
        "order_size": 0.001,
        "max_position": 0.01,
        "min_position": -0.01,
        "tick_size": 0.01,
        "dry_run": False,
        "update_interval_ms": 60000,
    }
    base.update(overrides)
    return build_strategy_config(base)


async def settle():
    """Let the scheduler task run its pending cycle."""
    for _ in range(5):
        await asyncio.sleep(0)


class RaisingPolicy(QuotingPolicy):
    name = "Raising"

    def compute_quote(self, mid_price, inventory, params, config):
        raise InvalidParameterError("kappa must be positive")


@pytest.fixture
def exchange():
    ex = PaperExchange()
    ex.set_market(SYMBOL, 49999.5, 50000.5)
    return ex


@pytest.fixture
def registry(exchange):
    return ExchangeRegistry({"paper": exchange})


async def make_orchestrator(registry, **overrides):
    orch = MarketMakerOrchestrator(make_config(**overrides), registry, "paper")
    sub = orch.events.subscribe()
    await orch.initialize()
    return orch, sub


def of_type(events, cls):
    return [e for e in events if isinstance(e, cls)]


class TestReferenceScenario:

    @pytest.mark.asyncio
    async def test_first_cycle_places_one_bid_and_one_ask(self, exchange, registry):
        orch, sub = await make_orchestrator(registry)

        await orch.start()
        await settle()

        quote = orch.last_quote
        assert quote.reservation_price == 50000.0
        assert quote.half_spread == pytest.approx(7.8636515, abs=1e-6)
        assert quote.bid_price == 49992.13
        assert quote.ask_price == 50007.87

        orders = exchange.open_orders(SYMBOL)
        assert sorted(o.side for o in orders) == [OrderSide.BUY, OrderSide.SELL]
        bid = next(o for o in orders if o.side == OrderSide.BUY)
        ask = next(o for o in orders if o.side == OrderSide.SELL)
        assert bid.price == 49992.13
        assert ask.price == 50007.87
        assert bid.quantity == 0.001

        events = sub.drain()
        assert len(of_type(events, OrderPlacedEvent)) == 2
        assert len(of_type(events, UpdateEvent)) == 1
        assert orch.stats.total_orders_placed == 2
        assert orch.stats.update_count == 1

        await orch.stop()
        assert orch.state == StrategyState.STOPPED
        assert exchange.open_orders() == []


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_unchanged_prices_keep_orders(self, exchange, registry):
        orch, _ = await make_orchestrator(registry)
        await orch.run_cycle()
        first_bid = orch.open_order(OrderSide.BUY).order_id

        await orch.run_cycle()

        assert orch.open_order(OrderSide.BUY).order_id == first_bid
        assert orch.stats.total_orders_placed == 2
        assert len(exchange.open_orders(SYMBOL)) == 2

    @pytest.mark.asyncio
    async def test_price_move_of_a_tick_replaces(self, exchange, registry):
        orch, _ = await make_orchestrator(registry)
        await orch.run_cycle()
        old_bid = orch.open_order(OrderSide.BUY)

        exchange.set_market(SYMBOL, 49999.6, 50000.6)
        await orch.run_cycle()

        new_bid = orch.open_order(OrderSide.BUY)
        assert new_bid.order_id != old_bid.order_id
        assert new_bid.price == 49992.23
        assert (await exchange.get_order(SYMBOL, old_bid.order_id)).status == OrderStatus.CANCELLED
        assert orch.stats.total_orders_placed == 4
        assert orch.stats.total_orders_cancelled == 2
        assert len(exchange.open_orders(SYMBOL)) == 2

    @pytest.mark.asyncio
    async def test_fill_is_booked_and_order_refreshed(self, exchange, registry):
        orch, sub = await make_orchestrator(registry)
        await orch.run_cycle()
        filled_id = orch.open_order(OrderSide.BUY).order_id

        # Market trades down through our bid
        exchange.set_market(SYMBOL, 49980.0, 49990.0)
        await orch.run_cycle()

        assert orch.ledger.inventory == pytest.approx(0.001)
        assert orch.ledger.average_entry_price == pytest.approx(49992.13)
        assert orch.stats.total_orders_filled == 1
        assert orch.stats.total_buy_volume == pytest.approx(0.001)

        bid = orch.open_order(OrderSide.BUY)
        assert bid.order_id != filled_id
        assert bid.price < orch.mid_price

        events = sub.drain()
        fills = of_type(events, OrderFilledEvent)
        assert len(fills) == 1
        assert fills[0].filled_quantity == pytest.approx(0.001)
        assert len(of_type(events, PositionChangeEvent)) == 1

    @pytest.mark.asyncio
    async def test_partial_fills_are_booked_once(self, exchange, registry):
        orch, _ = await make_orchestrator(registry)
        await orch.run_cycle()
        bid_id = orch.open_order(OrderSide.BUY).order_id

        exchange.fill_order(bid_id, 0.0004)
        await orch.run_cycle()
        assert orch.ledger.inventory == pytest.approx(0.0004)
        assert orch.open_order(OrderSide.BUY).applied_quantity == pytest.approx(0.0004)
        assert orch.stats.total_orders_filled == 0

        # Same partial state again: nothing new to book
        await orch.run_cycle()
        assert orch.ledger.inventory == pytest.approx(0.0004)

        exchange.fill_order(bid_id)
        await orch.run_cycle()
        assert orch.ledger.inventory == pytest.approx(0.001)
        assert orch.stats.total_orders_filled == 1
        assert len(orch.ledger.trades) == 2

    @pytest.mark.asyncio
    async def test_position_limit_suppresses_side(self, exchange, registry):
        orch, _ = await make_orchestrator(registry, max_position=0.0015, min_position=-0.0015)
        await orch.run_cycle()

        exchange.fill_order(orch.open_order(OrderSide.BUY).order_id)
        await orch.run_cycle()

        assert orch.ledger.inventory == pytest.approx(0.001)
        assert orch.open_order(OrderSide.BUY) is None
        assert orch.open_order(OrderSide.SELL) is not None
        assert all(o.side == OrderSide.SELL for o in exchange.open_orders(SYMBOL))

    @pytest.mark.asyncio
    async def test_side_at_limit_is_never_placed(self, exchange, registry):
        exchange.set_position(SYMBOL, 0.0095, 50000.0)
        orch, _ = await make_orchestrator(registry)
        await orch.run_cycle()
        # 0.0095 + 0.001 > 0.01: no bid from the start
        assert orch.open_order(OrderSide.BUY) is None
        assert orch.open_order(OrderSide.SELL) is not None

    @pytest.mark.asyncio
    async def test_limit_breach_cancels_resting_order(self, exchange, registry):
        orch, _ = await make_orchestrator(registry, max_position=0.0015, min_position=-0.0015)
        await orch.run_cycle()
        resting_bid = orch.open_order(OrderSide.BUY).order_id

        # Inventory moved elsewhere; the resting bid now breaches the limit
        orch.ledger.apply_fill(OrderSide.BUY, 0.001, 50000.0)
        await orch.run_cycle()

        assert orch.open_order(OrderSide.BUY) is None
        assert (await exchange.get_order(SYMBOL, resting_bid)).status == OrderStatus.CANCELLED
        assert orch.stats.total_orders_cancelled == 1

    @pytest.mark.asyncio
    async def test_externally_cancelled_order_is_replaced(self, exchange, registry):
        orch, _ = await make_orchestrator(registry)
        await orch.run_cycle()
        ask_id = orch.open_order(OrderSide.SELL).order_id

        await exchange.cancel_order(SYMBOL, ask_id)
        await orch.run_cycle()

        assert orch.open_order(OrderSide.SELL).order_id != ask_id
        assert len(exchange.open_orders(SYMBOL)) == 2

    @pytest.mark.asyncio
    async def test_dry_run_places_nothing(self, exchange, registry):
        orch, sub = await make_orchestrator(registry, dry_run=True)
        quote = await orch.run_cycle()

        assert quote is not None
        assert exchange.orders == {}
        assert orch.stats.total_orders_placed == 0
        assert len(of_type(sub.drain(), UpdateEvent)) == 1

    @pytest.mark.asyncio
    async def test_lot_rounding_of_quantity(self, exchange, registry):
        orch, _ = await make_orchestrator(registry, order_size=0.00123, lot_size=0.0001)
        await orch.run_cycle()
        assert orch.open_order(OrderSide.BUY).quantity == pytest.approx(0.0012)


class TestFillsAroundCancels:

    async def exchange_inventory(self, exchange):
        position = await exchange.get_position(SYMBOL)
        return position.quantity if position else 0.0

    @pytest.mark.asyncio
    async def test_fill_before_pause_is_booked(self, exchange, registry):
        orch, _ = await make_orchestrator(registry)
        await orch.start()
        await settle()

        exchange.fill_order(orch.open_order(OrderSide.BUY).order_id)
        await orch.pause()

        assert orch.ledger.inventory == pytest.approx(0.001)
        assert len(orch.ledger.trades) == 1
        assert orch.stats.total_orders_filled == 1

        await orch.resume()
        await settle()
        assert orch.ledger.inventory == pytest.approx(await self.exchange_inventory(exchange))
        await orch.stop()

    @pytest.mark.asyncio
    async def test_fill_before_stop_is_booked(self, exchange, registry):
        orch, sub = await make_orchestrator(registry)
        await orch.start()
        await settle()

        exchange.fill_order(orch.open_order(OrderSide.SELL).order_id)
        await orch.stop()

        assert orch.state == StrategyState.STOPPED
        assert orch.ledger.inventory == pytest.approx(-0.001)
        assert orch.ledger.inventory == pytest.approx(await self.exchange_inventory(exchange))
        assert len(of_type(sub.drain(), OrderFilledEvent)) == 1

    @pytest.mark.asyncio
    async def test_partial_fill_booked_before_limit_cancel(self, exchange, registry):
        orch, _ = await make_orchestrator(registry, max_position=0.0015, min_position=-0.0015)
        await orch.run_cycle()
        bid_id = orch.open_order(OrderSide.BUY).order_id

        # 0.0006 + another 0.001 bid would breach 0.0015
        exchange.fill_order(bid_id, 0.0006)
        await orch.run_cycle()

        assert orch.open_order(OrderSide.BUY) is None
        assert (await exchange.get_order(SYMBOL, bid_id)).status == OrderStatus.CANCELLED
        assert orch.ledger.inventory == pytest.approx(0.0006)
        assert orch.ledger.inventory == pytest.approx(await self.exchange_inventory(exchange))

    @pytest.mark.asyncio
    async def test_fill_racing_the_cancel_is_booked(self, exchange, registry):
        orch, _ = await make_orchestrator(registry, max_position=0.0015, min_position=-0.0015)
        await orch.run_cycle()
        bid_id = orch.open_order(OrderSide.BUY).order_id
        exchange.fill_order(bid_id, 0.0006)

        real_cancel = exchange.cancel_order

        async def cancel_after_fill(symbol, order_id):
            # Counterparty hits the rest of the order just before the cancel lands
            if order_id == bid_id:
                exchange.fill_order(order_id, 0.0003)
            await real_cancel(symbol, order_id)

        exchange.cancel_order = cancel_after_fill
        await orch.run_cycle()

        assert orch.ledger.inventory == pytest.approx(0.0009)
        assert orch.ledger.inventory == pytest.approx(await self.exchange_inventory(exchange))

    @pytest.mark.asyncio
    async def test_settle_failure_does_not_block_stop(self, exchange, registry):
        orch, sub = await make_orchestrator(registry)
        await orch.start()
        await settle()
        exchange.get_order = AsyncMock(side_effect=ExchangeError("venue down"))

        await orch.stop()

        assert orch.state == StrategyState.STOPPED
        assert len(of_type(sub.drain(), ErrorEvent)) == 2


class TestErrorContainment:

    @pytest.mark.asyncio
    async def test_exchange_error_aborts_cycle_only(self, exchange, registry):
        orch, sub = await make_orchestrator(registry)
        exchange.get_order_book = AsyncMock(side_effect=ExchangeError("venue down"))

        assert await orch.run_cycle() is None

        errors = of_type(sub.drain(), ErrorEvent)
        assert len(errors) == 1
        assert isinstance(errors[0].error, ExchangeError)
        assert not errors[0].fatal
        assert orch.state == StrategyState.STOPPED  # never started; no transition
        assert orch.stats.error_count == 1

    @pytest.mark.asyncio
    async def test_one_sided_book_is_an_exchange_error(self, exchange, registry):
        orch, sub = await make_orchestrator(registry)
        exchange.set_market(SYMBOL, 49999.5, 50000.5)
        exchange.order_books[SYMBOL].asks.clear()

        assert await orch.run_cycle() is None
        assert isinstance(of_type(sub.drain(), ErrorEvent)[0].error, ExchangeError)

    @pytest.mark.asyncio
    async def test_failing_side_does_not_block_the_other(self, exchange, registry):
        real_place = exchange.place_order

        async def flaky_place(symbol, side, *args, **kwargs):
            if side == OrderSide.BUY:
                raise ExchangeError("bid rejected")
            return await real_place(symbol, side, *args, **kwargs)

        exchange.place_order = flaky_place
        orch, sub = await make_orchestrator(registry)

        quote = await orch.run_cycle()

        assert quote is not None
        assert orch.open_order(OrderSide.BUY) is None
        assert orch.open_order(OrderSide.SELL) is not None
        events = sub.drain()
        assert len(of_type(events, ErrorEvent)) == 1
        assert len(of_type(events, UpdateEvent)) == 1

    @pytest.mark.asyncio
    async def test_invalid_parameters_abort_cycle(self, exchange, registry):
        orch = MarketMakerOrchestrator(make_config(), registry, "paper", policy=RaisingPolicy())
        sub = orch.events.subscribe()
        await orch.initialize()

        assert await orch.run_cycle() is None
        errors = of_type(sub.drain(), ErrorEvent)
        assert isinstance(errors[0].error, InvalidParameterError)
        assert exchange.orders == {}

    @pytest.mark.asyncio
    async def test_loop_survives_failing_cycles(self, exchange, registry):
        orch, sub = await make_orchestrator(registry, update_interval_ms=1)
        exchange.get_order_book = AsyncMock(side_effect=ExchangeError("flaky"))

        await orch.start()
        await asyncio.sleep(0.05)

        assert orch.state == StrategyState.RUNNING
        assert len(of_type(sub.drain(), ErrorEvent)) >= 2
        await orch.stop()


class TestStopLoss:

    @pytest.mark.asyncio
    async def test_stop_loss_stops_without_placing(self, exchange, registry):
        # 0.005 BTC bought at 300000 is 1250 under water at 50000
        exchange.set_position(SYMBOL, 0.005, 300000.0)
        orch, sub = await make_orchestrator(registry, stop_loss_threshold=-1000.0)

        await orch.start()
        await settle()

        assert orch.state == StrategyState.STOPPED
        assert orch.stats.total_orders_placed == 0
        assert exchange.orders == {}

        events = sub.drain()
        fatal = [e for e in of_type(events, ErrorEvent) if e.fatal]
        assert len(fatal) == 1
        states = [e.state for e in of_type(events, StateChangeEvent)]
        assert states[-2:] == ["STOPPING", "STOPPED"]

    @pytest.mark.asyncio
    async def test_above_threshold_keeps_quoting(self, exchange, registry):
        exchange.set_position(SYMBOL, 0.005, 50100.0)
        orch, _ = await make_orchestrator(registry, stop_loss_threshold=-1000.0)

        assert await orch.run_cycle() is not None
        assert orch.stats.total_orders_placed >= 1


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_state_events_in_order(self, registry):
        orch, sub = await make_orchestrator(registry)
        await orch.start()
        await settle()
        await orch.pause()
        await orch.resume()
        await settle()
        await orch.stop()

        transitions = [(e.previous, e.state) for e in of_type(sub.drain(), StateChangeEvent)]
        assert transitions == [
            ("INITIALIZING", "STOPPED"),
            ("STOPPED", "RUNNING"),
            ("RUNNING", "PAUSED"),
            ("PAUSED", "RUNNING"),
            ("RUNNING", "STOPPING"),
            ("STOPPING", "STOPPED"),
        ]

    @pytest.mark.asyncio
    async def test_illegal_calls_raise(self, registry):
        orch = MarketMakerOrchestrator(make_config(), registry, "paper")
        with pytest.raises(IllegalTransitionError):
            await orch.start()
        with pytest.raises(IllegalTransitionError):
            await orch.stop()

        await orch.initialize()
        with pytest.raises(IllegalTransitionError):
            await orch.initialize()
        with pytest.raises(IllegalTransitionError):
            await orch.pause()
        with pytest.raises(IllegalTransitionError):
            await orch.resume()

        await orch.start()
        with pytest.raises(IllegalTransitionError):
            await orch.start()
        with pytest.raises(IllegalTransitionError):
            await orch.resume()
        await orch.stop()

    @pytest.mark.asyncio
    async def test_pause_cancels_orders_and_resume_keeps_ledger(self, exchange, registry):
        orch, _ = await make_orchestrator(registry)
        await orch.start()
        await settle()

        exchange.fill_order(orch.open_order(OrderSide.BUY).order_id)
        exchange.fill_order(orch.open_order(OrderSide.SELL).order_id)
        await orch.run_cycle()  # books the round trip
        realized = orch.ledger.realized_pnl
        assert realized > 0

        await orch.pause()
        assert orch.state == StrategyState.PAUSED
        assert exchange.open_orders() == []
        assert orch.open_order(OrderSide.BUY) is None

        await orch.resume()
        await settle()
        assert orch.state == StrategyState.RUNNING
        assert orch.ledger.realized_pnl == realized
        assert len(exchange.open_orders(SYMBOL)) == 2

        await orch.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, registry):
        orch, sub = await make_orchestrator(registry)
        await orch.start()
        await settle()
        await orch.stop()
        sub.drain()

        await orch.stop()
        assert orch.state == StrategyState.STOPPED
        assert sub.drain() == []

    @pytest.mark.asyncio
    async def test_stop_survives_cancel_failure(self, exchange, registry):
        orch, sub = await make_orchestrator(registry)
        await orch.start()
        await settle()
        exchange.cancel_all_orders = AsyncMock(side_effect=ExchangeError("cancel failed"))

        await orch.stop()

        assert orch.state == StrategyState.STOPPED
        assert orch.open_order(OrderSide.BUY) is None
        assert any(isinstance(e.error, ExchangeError) for e in of_type(sub.drain(), ErrorEvent))

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, exchange, registry):
        orch, _ = await make_orchestrator(registry)
        await orch.start()
        await settle()
        await orch.stop()

        await orch.start()
        await settle()
        assert orch.state == StrategyState.RUNNING
        assert len(exchange.open_orders(SYMBOL)) == 2
        await orch.stop()

    @pytest.mark.asyncio
    async def test_initial_data_failure_does_not_block_start(self, exchange, registry):
        exchange.get_klines = AsyncMock(side_effect=ExchangeError("no klines"))
        orch, _ = await make_orchestrator(registry)

        await orch.start()
        await settle()
        assert orch.state == StrategyState.RUNNING
        await orch.stop()


class TestParametersAndStatus:

    @pytest.mark.asyncio
    async def test_seeded_parameters_without_overrides(self, registry):
        orch = MarketMakerOrchestrator(make_config(sigma=None, kappa=None), registry, "paper")
        await orch.initialize()

        params = orch.parameters
        assert params.kappa == 0.01
        assert params.sigma == 0.001
        assert params.gamma == 0.5

    @pytest.mark.asyncio
    async def test_overrides_win_over_estimates(self, exchange, registry):
        orch, _ = await make_orchestrator(registry, sigma=0.002, kappa=0.05)
        for px in [100.0, 110.0, 90.0, 120.0]:
            orch.estimator.process_price(px)

        await orch.run_cycle()
        assert orch.parameters.sigma == 0.002
        assert orch.parameters.kappa == 0.05

    @pytest.mark.asyncio
    async def test_estimates_used_without_overrides(self, exchange, registry):
        orch, _ = await make_orchestrator(registry, sigma=None, kappa=None)
        for px in [100.0, 101.0, 99.0, 102.0]:
            orch.estimator.process_price(px)

        await orch.run_cycle()
        assert orch.parameters.sigma != 0.001
        assert orch.parameters.sigma > 0

    @pytest.mark.asyncio
    async def test_status(self, registry):
        orch, _ = await make_orchestrator(registry)
        await orch.run_cycle()

        status = orch.get_status()
        assert status["state"] == "STOPPED"
        assert status["symbol"] == SYMBOL
        assert status["exchange"] == "paper"
        assert status["policy"] == "AvellanedaStoikov"
        assert status["mid_price"] == 50000.0
        assert status["last_quote"].bid_price == 49992.13
        assert status["stats"]["total_orders_placed"] == 2
        assert status["open_orders"]["BUY"]["price"] == 49992.13
        assert status["position"]["inventory"] == 0.0
        assert status["estimator_ready"] is False

    def test_unknown_exchange(self, registry):
        with pytest.raises(ExchangeError):
            MarketMakerOrchestrator(make_config(), registry, "kraken")
