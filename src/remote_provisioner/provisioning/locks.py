"""Redis lease lock scoping mutual exclusion across workers."""

from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Optional

from ..utils.logging import get_logger
from .errors import OperationLocked

logger = get_logger(__name__)

DEFAULT_LEASE_SECONDS = 900
POLL_INTERVAL = 0.1

# Delete only if we still own the lease
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLeaseLock:
    """`SET key token NX PX ttl`; expires on its own if the holder dies."""

    def __init__(
        self,
        client: Any,
        key: str,
        ttl: float = DEFAULT_LEASE_SECONDS,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.key = key
        self.ttl = ttl
        self.token: Optional[str] = None
        self._sleep = sleep
        self._clock = clock

    @property
    def held(self) -> bool:
        return self.token is not None

    def try_acquire(self) -> bool:
        token = uuid.uuid4().hex
        if self.client.set(self.key, token, nx=True, px=int(self.ttl * 1000)):
            self.token = token
            return True
        return False

    def acquire(self, blocking_timeout: float = 0.0) -> "RedisLeaseLock":
        deadline = self._clock() + blocking_timeout
        while not self.try_acquire():
            if self._clock() >= deadline:
                raise OperationLocked(self.key)
            self._sleep(POLL_INTERVAL)
        logger.debug("🔒 Acquired lock %s", self.key)
        return self

    def release(self) -> bool:
        if self.token is None:
            return False
        token, self.token = self.token, None
        released = bool(self.client.eval(RELEASE_SCRIPT, 1, self.key, token))
        if released:
            logger.debug("🔓 Released lock %s", self.key)
        else:
            logger.warning("Lock %s expired before release", self.key)
        return released

    def __enter__(self) -> "RedisLeaseLock":
        if not self.held:
            self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class LockFactory:
    """Builds leases against one redis client with the configured TTL."""

    def __init__(self, client: Any, ttl: float = DEFAULT_LEASE_SECONDS) -> None:
        self.client = client
        self.ttl = ttl

    def __call__(self, key: str) -> RedisLeaseLock:
        return RedisLeaseLock(self.client, key, self.ttl)
