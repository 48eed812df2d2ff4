import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

# Load environment variables before settings are read
load_dotenv()

from config.settings import settings
from config.strategy_config import build_strategy_config_from_preset
from core.engine import MarketMakerOrchestrator
from core.event_channel import EventChannel, EventSubscription
from core.events import ErrorEvent, StrategyEventType
from core.exceptions import ConfigValidationError
from core.lifecycle import StrategyState
from execution.exchange_registry import build_registry
from utils.logging_config import setup_logging

# Initialize logging immediately
setup_logging(settings.LOG_LEVEL, settings.LOG_DIR)
logger = logging.getLogger("Main")


async def log_events(subscription: EventSubscription, stop_event: asyncio.Event):
    """Log every published event; a fatal error ends the run."""
    while True:
        event = await subscription.get()
        if event.type == StrategyEventType.UPDATE:
            q, p = event.quote, event.position
            logger.info(
                f"📈 {event.strategy} mid={q.mid_price:.2f} bid={q.bid_price} ask={q.ask_price} "
                f"inv={p.inventory:.6f} pnl={p.total_pnl:.4f}"
            )
        elif isinstance(event, ErrorEvent):
            logger.warning(f"{event.strategy} error: {event.message}")
            if event.fatal:
                stop_event.set()
        elif event.type == StrategyEventType.STATE_CHANGE:
            logger.info(f"{event.strategy} state: {event.previous} -> {event.state}")
            if event.state == StrategyState.STOPPED.value and event.previous == StrategyState.STOPPING.value:
                stop_event.set()
        else:
            logger.debug(f"{event.strategy} {event.type.value}")


async def run() -> int:
    try:
        config = build_strategy_config_from_preset(settings.STRATEGY_PRESET, settings.strategy_overrides())
    except ConfigValidationError as e:
        logger.critical(f"{e}")
        return 1

    registry = build_registry(settings)
    events = EventChannel()
    subscription = events.subscribe()
    stop_event = asyncio.Event()

    orchestrator = MarketMakerOrchestrator(config, registry, settings.EXCHANGE, events=events)
    logger.info(
        f"✅ {config.name} on {settings.EXCHANGE} (preset={settings.STRATEGY_PRESET}, "
        f"γ={config.gamma}, dry_run={config.dry_run})"
    )

    loop = asyncio.get_running_loop()
    if sys.platform != 'win32':
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

    event_task = asyncio.create_task(log_events(subscription, stop_event))
    try:
        await orchestrator.initialize()
        await orchestrator.start()
        await stop_event.wait()
        logger.warning("Shutdown initiated. Cleaning up...")
    finally:
        await orchestrator.stop()
        event_task.cancel()
        await asyncio.gather(event_task, return_exceptions=True)
        await registry.close_all()
        events.close()

    logger.info(f"Final status: {orchestrator.get_status()['stats']}")
    return 0


def main():
    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    try:
        exit_code = asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received. Shutting down...")
        exit_code = 0
    except Exception as e:
        logger.critical(f"Fatal startup error: {e}", exc_info=True)
        exit_code = 1
    logger.info("System process ended.")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
