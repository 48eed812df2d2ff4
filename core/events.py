from dataclasses import dataclass, field
from enum import Enum
import time
from typing import ClassVar, Optional

from connectors.base import Order, OrderSide
from execution.position_ledger import PositionSnapshot
from strategies.quote_engine import Quote


class StrategyEventType(str, Enum):
    STATE_CHANGE = "STATE_CHANGE"
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_FILLED = "ORDER_FILLED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    POSITION_CHANGE = "POSITION_CHANGE"
    UPDATE = "UPDATE"
    ERROR = "ERROR"


# kw_only=True so subclasses can add required fields after defaulted base fields
@dataclass(kw_only=True, frozen=True)
class StrategyEvent:
    """Base for every event published by a strategy instance."""
    type: ClassVar[StrategyEventType]
    strategy: str
    timestamp: float = field(default_factory=time.time)


@dataclass(kw_only=True, frozen=True)
class StateChangeEvent(StrategyEvent):
    type: ClassVar[StrategyEventType] = StrategyEventType.STATE_CHANGE
    previous: Optional[str]
    state: str


@dataclass(kw_only=True, frozen=True)
class OrderPlacedEvent(StrategyEvent):
    type: ClassVar[StrategyEventType] = StrategyEventType.ORDER_PLACED
    order: Order


@dataclass(kw_only=True, frozen=True)
class OrderFilledEvent(StrategyEvent):
    type: ClassVar[StrategyEventType] = StrategyEventType.ORDER_FILLED
    order: Order
    filled_quantity: float  # Portion applied to the ledger by this event


@dataclass(kw_only=True, frozen=True)
class OrderCancelledEvent(StrategyEvent):
    type: ClassVar[StrategyEventType] = StrategyEventType.ORDER_CANCELLED
    order_id: Optional[str]  # None = cancel-all
    side: Optional[OrderSide] = None


@dataclass(kw_only=True, frozen=True)
class PositionChangeEvent(StrategyEvent):
    type: ClassVar[StrategyEventType] = StrategyEventType.POSITION_CHANGE
    position: PositionSnapshot


@dataclass(kw_only=True, frozen=True)
class UpdateEvent(StrategyEvent):
    """Latest quote plus ledger snapshot, one per completed cycle."""
    type: ClassVar[StrategyEventType] = StrategyEventType.UPDATE
    quote: Quote
    position: PositionSnapshot


@dataclass(kw_only=True, frozen=True)
class ErrorEvent(StrategyEvent):
    type: ClassVar[StrategyEventType] = StrategyEventType.ERROR
    error: BaseException
    message: str
    fatal: bool = False  # True = the strategy instance stopped because of it
