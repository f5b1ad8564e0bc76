"""Per-order settlement leases.

The webhook and the browser return can be served by different processes, so
the lease lives in a shared store rather than in a process-local mutex. With
``REDIS_URL`` configured the lease is a redis-py ``Lock``, whose release is an
atomic compare-and-delete. Without it the Django cache is used: ``cache.add``
only writes when the key is absent, which makes it the acquisition primitive.
Both expire after ``LOCK_TIMEOUT`` so leases of crashed holders are freed.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from functools import lru_cache

import redis
from django.conf import settings
from django.core.cache import caches
from redis.exceptions import LockError, LockNotOwnedError

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 30
DEFAULT_WAIT_SECONDS = 2.0
DEFAULT_POLL_INTERVAL = 0.05


class Lease:
    """Result of a lease request; ``acquired`` is False when the order is busy."""

    def __init__(self, key: str, token: str, acquired: bool, handle=None):
        self.key = key
        self.token = token
        self.acquired = acquired
        self.handle = handle

    def __bool__(self):
        return self.acquired

    def __repr__(self):
        state = 'held' if self.acquired else 'busy'
        return f"<Lease {self.key} {state}>"


def _settlement_conf() -> dict:
    return getattr(settings, 'SETTLEMENT', None) or {}


class SettlementLockManager:
    """Hands out short-lived exclusive leases keyed by order id, backed by the Django cache."""

    key_prefix = 'settlement-lease'

    def __init__(self, cache=None, lease_seconds=None, wait_seconds=None, poll_interval=None):
        conf = _settlement_conf()
        self.cache = cache if cache is not None else caches[conf.get('CACHE_ALIAS', 'default')]
        self.lease_seconds = lease_seconds if lease_seconds is not None else conf.get('LOCK_TIMEOUT', DEFAULT_LEASE_SECONDS)
        self.wait_seconds = wait_seconds if wait_seconds is not None else conf.get('LOCK_WAIT', DEFAULT_WAIT_SECONDS)
        self.poll_interval = poll_interval if poll_interval is not None else conf.get('LOCK_POLL_INTERVAL', DEFAULT_POLL_INTERVAL)

    def key_for(self, order_id) -> str:
        return f"{self.key_prefix}:{order_id}"

    def acquire(self, order_id, lease_duration=None) -> Lease:
        """Try to take the lease, waiting at most ``wait_seconds``."""
        key = self.key_for(order_id)
        token = uuid.uuid4().hex
        duration = lease_duration or self.lease_seconds
        deadline = time.monotonic() + max(0, self.wait_seconds)
        while True:
            if self.cache.add(key, token, timeout=duration):
                return Lease(key, token, True)
            if time.monotonic() >= deadline:
                logger.info("Settlement lease busy for order=%s", order_id)
                return Lease(key, token, False)
            time.sleep(self.poll_interval)

    def release(self, lease: Lease) -> None:
        # Only the holder may release; an expired lease may already belong to someone else.
        if not lease.acquired:
            return
        if self.cache.get(lease.key) == lease.token:
            self.cache.delete(lease.key)
        else:
            logger.warning("Settlement lease %s expired before release", lease.key)
        lease.acquired = False

    @contextmanager
    def lease(self, order_id, lease_duration=None):
        """Scoped acquisition: the lease is released on every exit path."""
        held = self.acquire(order_id, lease_duration=lease_duration)
        try:
            yield held
        finally:
            self.release(held)


class RedisSettlementLockManager(SettlementLockManager):
    """Leases held as redis-py locks; release only deletes the key if the token still matches."""

    def __init__(self, client, lease_seconds=None, wait_seconds=None, poll_interval=None):
        super().__init__(cache=client, lease_seconds=lease_seconds,
                         wait_seconds=wait_seconds, poll_interval=poll_interval)
        self.client = client

    def acquire(self, order_id, lease_duration=None) -> Lease:
        key = self.key_for(order_id)
        token = uuid.uuid4().hex
        wait = max(0, self.wait_seconds)
        lock = self.client.lock(
            key,
            timeout=lease_duration or self.lease_seconds,
            sleep=self.poll_interval,
            thread_local=False,
        )
        if lock.acquire(blocking=wait > 0, blocking_timeout=wait or None, token=token):
            return Lease(key, token, True, handle=lock)
        logger.info("Settlement lease busy for order=%s", order_id)
        return Lease(key, token, False)

    def release(self, lease: Lease) -> None:
        if not lease.acquired:
            return
        try:
            lease.handle.release()
        except LockNotOwnedError:
            logger.warning("Settlement lease %s expired before release", lease.key)
        except LockError:
            logger.exception("Could not release settlement lease %s", lease.key)
        lease.acquired = False


@lru_cache(maxsize=None)
def redis_client(url: str):
    return redis.Redis.from_url(url)


def default_lock_manager() -> SettlementLockManager:
    """Redis locks when ``REDIS_URL`` is configured, the Django cache otherwise."""
    url = getattr(settings, 'REDIS_URL', '')
    if url:
        return RedisSettlementLockManager(redis_client(url))
    return SettlementLockManager()
