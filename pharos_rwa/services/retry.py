"""Retry policy and per-call lifecycle for contract calls.

Every call walks an explicit state machine::

    NOT_STARTED -> IN_FLIGHT -> SUCCESS | REVERTED | PENDING | FAILED
    PENDING -> SUCCESS | REVERTED

Only errors flagged ``retryable`` (RpcUnavailable, RpcTimeout) are retried,
with exponential backoff, and only up to ``max_attempts`` per stage.
"""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

from ..errors import PharosError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.2
    factor: float = 2.0
    max_delay: float = 5.0
    jitter_factor: float = 0.0  # 0.1 means +-10%

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-indexed)."""
        delay = min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)
        if self.jitter_factor:
            spread = delay * self.jitter_factor
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay


class CallState(str, Enum):
    NOT_STARTED = "not_started"
    IN_FLIGHT = "in_flight"
    PENDING = "pending"
    SUCCESS = "success"
    REVERTED = "reverted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({CallState.SUCCESS, CallState.REVERTED, CallState.FAILED})

_TRANSITIONS = {
    CallState.NOT_STARTED: {CallState.IN_FLIGHT},
    CallState.IN_FLIGHT: {CallState.PENDING, CallState.SUCCESS, CallState.REVERTED, CallState.FAILED},
    CallState.PENDING: {CallState.SUCCESS, CallState.REVERTED},
}


class IllegalTransition(RuntimeError):
    pass


class CallExecution:
    """Tracks one call through its states and runs its retried stages."""

    def __init__(self, name: str, policy: RetryPolicy, sleep: Callable[[float], None] = time.sleep):
        self.name = name
        self.policy = policy
        self.state = CallState.NOT_STARTED
        self.attempts = 0        # across all stages
        self.stage_attempts = 0  # in the most recent stage
        self.last_error: Optional[PharosError] = None
        self._sleep = sleep

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: CallState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, ()):
            raise IllegalTransition(f"{self.name}: {self.state.value} -> {new_state.value}")
        logger.debug(f"{self.name}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def run(self, operation: Callable[[], T], stage: str = "call", fail_on_exhaustion: bool = True) -> T:
        """Runs ``operation`` with the retry policy.

        Non-retryable errors propagate immediately and leave the state
        untouched. Exhausting the attempts re-raises the last transient
        error and, unless ``fail_on_exhaustion`` is False, moves the call to
        FAILED. Callers that must first learn whether the operation took
        effect anyway pass False and pick the next state themselves.
        """
        if self.state == CallState.NOT_STARTED:
            self.transition(CallState.IN_FLIGHT)
        if self.state != CallState.IN_FLIGHT:
            raise IllegalTransition(f"{self.name}: cannot run a stage while {self.state.value}")

        for attempt in range(1, self.policy.max_attempts + 1):
            self.attempts += 1
            self.stage_attempts = attempt
            try:
                result = operation()
            except PharosError as e:
                if not e.retryable:
                    raise
                self.last_error = e
                if attempt >= self.policy.max_attempts:
                    logger.error(f"{self.name}: {stage} failed after {attempt} attempts: {e.code}: {e}")
                    if fail_on_exhaustion:
                        self.transition(CallState.FAILED)
                    raise
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    f"{self.name}: {stage} attempt {attempt}/{self.policy.max_attempts} failed "
                    f"({e.code}: {e}). Retrying in {delay:.2f}s..."
                )
                self._sleep(delay)
            else:
                if attempt > 1:
                    logger.info(f"{self.name}: {stage} succeeded on attempt {attempt}/{self.policy.max_attempts}")
                return result
        # max_attempts >= 1, so the loop always returns or raises
        raise AssertionError("unreachable")
