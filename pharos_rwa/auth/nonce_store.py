"""In-memory, time-bounded store of outstanding login challenges.

One nonce per address. Issuing a new challenge replaces whatever the
address had before; consuming is atomic so a signed challenge can be
redeemed exactly once, even when the same request is replayed concurrently.
"""

import logging
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict

from ..errors import NonceAlreadyUsed, NonceExpired, NonceMismatch

logger = logging.getLogger(__name__)

NONCE_BYTES = 32


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Nonce:
    address: str
    value: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class NonceStore:
    def __init__(
        self,
        ttl_seconds: int = 300,
        max_capacity: int = 10_000,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_capacity < 1:
            raise ValueError("Nonce store capacity must be at least 1")
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_capacity = max_capacity
        self._clock = clock
        self._nonces: Dict[str, Nonce] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._nonces)

    def issue(self, address: str) -> Nonce:
        """Creates a fresh nonce for ``address``, replacing any previous one."""
        now = self._clock()
        nonce = Nonce(
            address=address,
            value=secrets.token_hex(NONCE_BYTES),
            issued_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock:
            replaced = self._nonces.pop(address, None)
            self._reap(now)
            while len(self._nonces) >= self.max_capacity:
                # dicts keep insertion order, so the first key is the oldest
                oldest = next(iter(self._nonces))
                del self._nonces[oldest]
                logger.warning(f"Nonce store at capacity ({self.max_capacity}); evicted challenge for {oldest}")
            self._nonces[address] = nonce
        if replaced is not None and not replaced.consumed:
            logger.info(f"Replaced outstanding challenge for {address}")
        logger.info(f"Issued nonce for {address}, expires at {nonce.expires_at.isoformat()}")
        return nonce

    def consume(self, address: str, value: str) -> Nonce:
        """Atomically redeems the nonce for ``address``.

        Raises NonceExpired, NonceAlreadyUsed or NonceMismatch without
        changing anything when the nonce cannot be redeemed.
        """
        now = self._clock()
        with self._lock:
            nonce = self._nonces.get(address)
            if nonce is None:
                raise NonceExpired()
            if nonce.is_expired(now):
                del self._nonces[address]
                raise NonceExpired()
            if not secrets.compare_digest(nonce.value, value):
                raise NonceMismatch()
            if nonce.consumed:
                raise NonceAlreadyUsed()
            # Kept as a tombstone until expiry so replays are reported as reuse
            nonce.consumed = True
        logger.info(f"Nonce consumed for {address}")
        return nonce

    def try_consume(self, address: str, value: str) -> bool:
        try:
            self.consume(address, value)
        except (NonceExpired, NonceAlreadyUsed, NonceMismatch):
            return False
        return True

    def get(self, address: str) -> Nonce | None:
        """Returns the unexpired nonce for ``address``, consumed or not, as a copy."""
        now = self._clock()
        with self._lock:
            nonce = self._nonces.get(address)
            if nonce is None or nonce.is_expired(now):
                return None
            return replace(nonce)

    def peek(self, address: str) -> Nonce | None:
        """Returns the live (unconsumed, unexpired) nonce for ``address``, if any."""
        now = self._clock()
        with self._lock:
            nonce = self._nonces.get(address)
            if nonce is None or nonce.consumed or nonce.is_expired(now):
                return None
            return nonce

    def sweep(self) -> int:
        """Removes expired entries. Returns how many were dropped."""
        with self._lock:
            return self._reap(self._clock())

    def _reap(self, now: datetime) -> int:
        expired = [addr for addr, nonce in self._nonces.items() if nonce.is_expired(now)]
        for addr in expired:
            del self._nonces[addr]
        if expired:
            logger.debug(f"Reaped {len(expired)} expired nonces")
        return len(expired)
