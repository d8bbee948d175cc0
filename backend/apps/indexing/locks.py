"""
Redis-backed distributed locks with heartbeat renewal.

A lock is a single key holding an opaque token:

    acquire  SET key token NX PX ttl
    extend   Lua: if GET key == token then PEXPIRE key ttl
    release  Lua: if GET key == token then DEL key

Releasing or extending with a stale token is a no-op, so a worker whose
lease expired can never delete the lock of the worker that took over.
"""
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

import redis
from django.conf import settings

from apps.indexing.errors import InfrastructureError

logger = logging.getLogger(__name__)

# Default TTLs (milliseconds)
STAGE_LOCK_TTL_MS = 60_000
INDEX_LOCK_TTL_MS = 30 * 60 * 1000
INDEX_LOCK_HEARTBEAT_MS = 25_000
USAGE_LOCK_TTL_MS = 15_000

MIN_HEARTBEAT_MS = 1_000
MAX_MISSED_HEARTBEATS = 3


RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

EXTEND_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return 0
"""


class LockError(InfrastructureError):
    """The lock store could not be reached."""
    pass


def stage_lock_key(scope: str, stage: str) -> str:
    return f"lock:{scope}:{stage}"


def index_lock_key(scope: str) -> str:
    return f"lock:index:{scope}"


def usage_lock_key(org_id: str) -> str:
    return f"lock:usage:{org_id}"


@dataclass
class Lease:
    """A held lock. `lost` flips to True if heartbeats stop succeeding."""
    key: str
    token: str
    ttl_ms: int
    lost: bool = False
    missed_heartbeats: int = 0
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _thread: Optional[threading.Thread] = field(default=None, repr=False)


class LockManager:
    """Acquire, extend and release locks on an explicitly provided Redis client."""

    def __init__(self, client: redis.Redis):
        self.client = client
        self._release = client.register_script(RELEASE_SCRIPT)
        self._extend = client.register_script(EXTEND_SCRIPT)

    def acquire(self, key: str, ttl_ms: int) -> Optional[str]:
        """
        Try to take the lock. Never blocks.

        Returns:
            The owner token, or None if someone else holds the lock.
        """
        token = uuid.uuid4().hex
        try:
            acquired = self.client.set(key, token, nx=True, px=int(ttl_ms))
        except redis.RedisError as e:
            raise LockError(f"Lock store unavailable while acquiring {key}: {e}") from e
        return token if acquired else None

    def extend(self, key: str, token: str, ttl_ms: int) -> bool:
        """Push the expiry out if `token` still owns the lock."""
        try:
            return bool(self._extend(keys=[key], args=[token, int(ttl_ms)]))
        except redis.RedisError as e:
            raise LockError(f"Lock store unavailable while extending {key}: {e}") from e

    def release(self, key: str, token: str) -> bool:
        """Delete the lock only if `token` still owns it."""
        try:
            return bool(self._release(keys=[key], args=[token]))
        except redis.RedisError as e:
            raise LockError(f"Lock store unavailable while releasing {key}: {e}") from e

    def _heartbeat(self, lease: Lease, interval_s: float, on_extend: Optional[Callable[[], None]] = None) -> None:
        while not lease._stop.wait(interval_s):
            try:
                extended = self.extend(lease.key, lease.token, lease.ttl_ms)
            except LockError as e:
                logger.warning(f"Heartbeat error for {lease.key}: {e}")
                extended = False

            if extended:
                lease.missed_heartbeats = 0
                logger.debug(f"Heartbeat extended {lease.key}")
                if on_extend is not None:
                    try:
                        on_extend()
                    except Exception:
                        logger.exception(f"Heartbeat callback failed for {lease.key}")
                continue

            lease.missed_heartbeats += 1
            logger.warning(
                f"Heartbeat missed for {lease.key} "
                f"({lease.missed_heartbeats}/{MAX_MISSED_HEARTBEATS})"
            )
            if lease.missed_heartbeats >= MAX_MISSED_HEARTBEATS:
                lease.lost = True
                logger.error(f"Lease lost for {lease.key}; another worker may take over")
                return

    @contextmanager
    def hold(
        self,
        key: str,
        ttl_ms: int,
        heartbeat_ms: Optional[int] = None,
        on_extend: Optional[Callable[[], None]] = None,
    ) -> Iterator[Optional[Lease]]:
        """
        Hold `key` for the duration of the block, renewing it in the background.

        Yields None when the lock is held elsewhere; the caller should skip
        its work in that case.

        Without `heartbeat_ms` the lease is renewed every ttl/2 (at least
        MIN_HEARTBEAT_MS). `on_extend` runs on the heartbeat thread after
        every successful renewal.

        Usage:
            with locks.hold(stage_lock_key(payload.scope, 'extract'), STAGE_LOCK_TTL_MS) as lease:
                if lease is None:
                    return
                ...
        """
        token = self.acquire(key, ttl_ms)
        if token is None:
            logger.info(f"Lock {key} held elsewhere; skipping")
            yield None
            return

        lease = Lease(key=key, token=token, ttl_ms=int(ttl_ms))
        if heartbeat_ms is not None:
            interval_ms = heartbeat_ms
        else:
            interval_ms = max(MIN_HEARTBEAT_MS, ttl_ms // 2)
        interval_s = interval_ms / 1000.0
        lease._thread = threading.Thread(
            target=self._heartbeat,
            args=(lease, interval_s, on_extend),
            name=f"heartbeat:{key}",
            daemon=True,
        )
        lease._thread.start()

        try:
            yield lease
        finally:
            lease._stop.set()
            lease._thread.join(timeout=interval_s)
            try:
                released = self.release(key, token)
                logger.debug(f"Released {key} (owned={released})")
            except LockError as e:
                # The TTL will reclaim it
                logger.warning(f"Could not release {key}: {e}")


def check_eviction_policy(client: redis.Redis) -> str:
    """
    Warn if Redis may evict lock / progress keys under memory pressure.

    Returns the configured maxmemory-policy.
    """
    config = client.config_get('maxmemory-policy')
    policy = config.get('maxmemory-policy', '')
    if policy != 'noeviction':
        logger.warning(
            f"Redis maxmemory-policy is '{policy}'; locks and progress keys may be "
            f"evicted. Set it to 'noeviction'."
        )
    else:
        logger.info("Redis maxmemory-policy is noeviction")
    return policy


def _report_policy_check(future: Future) -> None:
    error = future.exception()
    if error is not None:
        logger.error(f"Redis eviction-policy check failed: {error}")


def start_eviction_policy_check(client: redis.Redis) -> Future:
    """
    Run check_eviction_policy once in the background.

    The returned Future carries the result or the error; failures are also
    logged by a done-callback.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='redis-policy-check')
    future = executor.submit(check_eviction_policy, client)
    future.add_done_callback(_report_policy_check)
    executor.shutdown(wait=False)
    return future


def lock_ttl(name: str, default: int) -> int:
    """TTL override from settings, e.g. STAGE_LOCK_TTL_MS."""
    return int(getattr(settings, name, default))
