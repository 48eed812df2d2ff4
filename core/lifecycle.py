"""
Strategy lifecycle state machine.

Transition legality is enforced here, centrally, instead of relying on
each strategy to check its own state.

    INITIALIZING -> STOPPED | ERROR
    STOPPED      -> RUNNING
    RUNNING      -> PAUSED | STOPPING
    PAUSED       -> RUNNING | STOPPING
    STOPPING     -> STOPPED
    ERROR        -> STOPPING
"""

import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

from core.exceptions import IllegalTransitionError

logger = logging.getLogger("Core.Lifecycle")


class StrategyState(str, Enum):
    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


VALID_TRANSITIONS: Dict[StrategyState, List[StrategyState]] = {
    StrategyState.INITIALIZING: [StrategyState.STOPPED, StrategyState.ERROR],
    StrategyState.STOPPED: [StrategyState.RUNNING],
    StrategyState.RUNNING: [StrategyState.PAUSED, StrategyState.STOPPING],
    StrategyState.PAUSED: [StrategyState.RUNNING, StrategyState.STOPPING],
    StrategyState.STOPPING: [StrategyState.STOPPED],
    StrategyState.ERROR: [StrategyState.STOPPING],
}

# (previous, new)
TransitionListener = Callable[[Optional[StrategyState], StrategyState], None]


class StrategyLifecycle:
    """Holds the current state and validates every transition."""

    def __init__(self, listener: Optional[TransitionListener] = None):
        self._state = StrategyState.INITIALIZING
        self._listener = listener

    @property
    def state(self) -> StrategyState:
        return self._state

    def can_transition(self, target: StrategyState) -> bool:
        return target in VALID_TRANSITIONS[self._state]

    def transition(self, target: StrategyState, action: str = "") -> None:
        """Move to target or raise IllegalTransitionError."""
        if not self.can_transition(target):
            raise IllegalTransitionError(self._state, target, action)

        previous = self._state
        self._state = target
        logger.info(f"State: {previous.value} -> {target.value}")
        if self._listener:
            self._listener(previous, target)

    def is_in(self, *states: StrategyState) -> bool:
        return self._state in states
