import logging
from typing import Callable, Dict, List, Optional

from connectors.base import ExchangeConnector
from connectors.ccxt_connector import CCXTConnector
from core.exceptions import ExchangeError
from execution.simulated import PaperExchange

logger = logging.getLogger("Execution.Registry")

ConnectorFactory = Callable[[], ExchangeConnector]


class ExchangeRegistry:
    """
    Maps exchange names to connectors.

    An explicit value handed to each orchestrator, not a module global:
    two registries never share connectors. Factories are built lazily on
    first get() and cached for the life of the registry.
    """

    def __init__(self, connectors: Optional[Dict[str, ExchangeConnector]] = None):
        self._connectors: Dict[str, ExchangeConnector] = {}
        self._factories: Dict[str, ConnectorFactory] = {}
        for name, connector in (connectors or {}).items():
            self.register(name, connector)

    def register(self, name: str, connector: ExchangeConnector) -> None:
        self._connectors[name.lower()] = connector

    def register_factory(self, name: str, factory: ConnectorFactory) -> None:
        self._factories[name.lower()] = factory

    def get(self, name: str) -> ExchangeConnector:
        key = name.lower()
        if key not in self._connectors:
            factory = self._factories.get(key)
            if factory is None:
                raise ExchangeError(
                    f"Unknown exchange '{name}'. Available: {', '.join(self.names()) or 'none'}",
                    code="UNKNOWN_EXCHANGE",
                    exchange=name,
                )
            logger.info(f"🌐 Creating connector for {key}")
            self._connectors[key] = factory()
        return self._connectors[key]

    def names(self) -> List[str]:
        return sorted(set(self._connectors) | set(self._factories))

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._connectors or name.lower() in self._factories

    async def close_all(self) -> None:
        """Close every connector created so far. One failure does not stop the rest."""
        for name, connector in list(self._connectors.items()):
            try:
                await connector.close()
            except Exception as e:
                logger.error(f"Failed to close {name}: {e}")
        self._connectors.clear()


def build_registry(settings) -> ExchangeRegistry:
    """Registry with the paper venue plus the configured ccxt exchange, if any."""
    registry = ExchangeRegistry()
    registry.register_factory(
        "paper",
        lambda: PaperExchange(mid_price=settings.PAPER_MID_PRICE, spread=settings.PAPER_SPREAD,
                              volatility=settings.PAPER_VOLATILITY),
    )

    exchange_id = settings.EXCHANGE.lower()
    if exchange_id != "paper":
        registry.register_factory(
            exchange_id,
            lambda: CCXTConnector(
                exchange_id=exchange_id,
                api_key=settings.API_KEY,
                api_secret=settings.API_SECRET,
                password=settings.API_PASSPHRASE,
                testnet=settings.TESTNET,
                market_type=settings.MARKET_TYPE,
            ),
        )
    return registry
