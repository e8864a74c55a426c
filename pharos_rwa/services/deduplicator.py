"""Idempotency tracking for state-changing contract calls.

WARNING: records live in process memory and are lost on restart. Durable
storage of completed results belongs to an external store.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from ..auth.nonce_store import utc_now
from ..errors import AlreadyCompleted, AlreadyInFlight, IdempotencyKeyMismatch
from ..models.contract_models import ContractCallResult, DeduplicationState

logger = logging.getLogger(__name__)


@dataclass
class DeduplicationRecord:
    idempotency_key: str
    state: DeduplicationState
    first_seen_at: datetime
    completed_at: Optional[datetime] = None
    result: Optional[ContractCallResult] = None
    fingerprint: Optional[str] = None  # what the key was first used for


class CallGuard:
    """Owns the in-flight record for one key.

    Leaving a ``with`` block without calling ``complete`` releases the key
    so a later caller may try again.
    """

    def __init__(self, deduplicator: "RequestDeduplicator", key: str):
        self._deduplicator = deduplicator
        self.key = key
        self.done = False

    def complete(self, result: ContractCallResult) -> None:
        if self.done:
            raise RuntimeError(f"Guard for '{self.key}' already released")
        self._deduplicator._complete(self.key, result)
        self.done = True

    def abandon(self) -> None:
        if not self.done:
            self._deduplicator._abandon(self.key)
            self.done = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.abandon()
        return False


class RequestDeduplicator:
    def __init__(self, retention_seconds: int = 3600, clock: Callable[[], datetime] = utc_now):
        self.retention = timedelta(seconds=retention_seconds)
        self._clock = clock
        self._records: Dict[str, DeduplicationRecord] = {}
        self._cond = threading.Condition()

    def begin(self, key: str, fingerprint: Optional[str] = None) -> CallGuard:
        """Claims ``key`` for a new call.

        Raises AlreadyInFlight while another caller holds the key and
        AlreadyCompleted (carrying the result) once it has finished.
        Reusing a key for a call with a different ``fingerprint`` raises
        IdempotencyKeyMismatch instead.
        """
        now = self._clock()
        with self._cond:
            self._evict(now)
            record = self._records.get(key)
            if record is not None:
                if fingerprint and record.fingerprint and fingerprint != record.fingerprint:
                    logger.warning(f"Idempotency key {key} reused for a different call")
                    raise IdempotencyKeyMismatch(key)
                if record.state == DeduplicationState.IN_FLIGHT:
                    raise AlreadyInFlight(key)
                raise AlreadyCompleted(key, record.result)
            self._records[key] = DeduplicationRecord(
                idempotency_key=key,
                state=DeduplicationState.IN_FLIGHT,
                first_seen_at=now,
                fingerprint=fingerprint,
            )
        logger.debug(f"Call {key} is now in flight")
        return CallGuard(self, key)

    def get(self, key: str) -> Optional[DeduplicationRecord]:
        with self._cond:
            self._evict(self._clock())
            record = self._records.get(key)
            return replace(record) if record else None

    def update(self, key: str, result: ContractCallResult) -> None:
        """Replaces the result of a completed call, e.g. once a pending transaction is mined."""
        with self._cond:
            record = self._records.get(key)
            if record is None or record.state != DeduplicationState.COMPLETED:
                logger.warning(f"Attempted to update result for unknown or unfinished call: {key}")
                return
            record.result = result
        logger.info(f"Updated call {key} result to {result.status.value}")

    def wait_for(self, key: str, timeout: float) -> Optional[DeduplicationRecord]:
        """Blocks until ``key`` is no longer in flight.

        Returns the completed record, or None when the key was released
        (the call failed) or is unknown. Returns the in-flight record if
        ``timeout`` elapses first.
        """
        with self._cond:
            self._cond.wait_for(
                lambda: self._records.get(key) is None
                or self._records[key].state != DeduplicationState.IN_FLIGHT,
                timeout=timeout,
            )
            record = self._records.get(key)
            return replace(record) if record else None

    def __len__(self) -> int:
        with self._cond:
            return len(self._records)

    def _complete(self, key: str, result: ContractCallResult) -> None:
        with self._cond:
            record = self._records.get(key)
            if record is None:
                raise RuntimeError(f"No in-flight record for '{key}'")
            record.state = DeduplicationState.COMPLETED
            record.completed_at = self._clock()
            record.result = result
            self._cond.notify_all()
        logger.info(f"Call {key} completed with status {result.status.value}")

    def _abandon(self, key: str) -> None:
        with self._cond:
            record = self._records.get(key)
            if record is not None and record.state == DeduplicationState.IN_FLIGHT:
                del self._records[key]
            self._cond.notify_all()
        logger.info(f"Call {key} released without a result")

    def _evict(self, now: datetime) -> None:
        expired = [
            key for key, record in self._records.items()
            if record.completed_at is not None and now - record.completed_at > self.retention
        ]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} completed call records")
