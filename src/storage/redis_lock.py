# src/storage/redis_lock.py
from __future__ import annotations

import uuid
from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from pricewatch.errors import StoreUnavailable

log = structlog.get_logger("run_lock")


class RedisRunLock:
    """
    Run-level mutual exclusion: SET key <token> NX PX ttl.

    The ttl bounds how long a crashed run can block the next ones. release()
    only deletes the key while it still holds our token, so a run that
    outlived its ttl cannot free a lock another run has taken since.
    """

    def __init__(self, redis: Redis, key: str = "pricewatch:run-lock", ttl_s: float = 900.0):
        self.redis = redis
        self.key = key
        self.ttl_s = float(ttl_s)
        self._token: Optional[str] = None

    @property
    def token(self) -> Optional[str]:
        return self._token

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        try:
            ok = await self.redis.set(self.key, token, nx=True, px=int(self.ttl_s * 1000))
        except RedisError as e:
            raise StoreUnavailable(f"run lock: {e}") from e
        if not ok:
            return False
        self._token = token
        log.debug("run_lock_acquired", key=self.key, ttl_s=self.ttl_s)
        return True

    async def release(self) -> bool:
        token, self._token = self._token, None
        if token is None:
            return False
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(self.key)
                held = await pipe.get(self.key)
                if held != token:
                    log.warning("run_lock_lost", key=self.key)
                    return False
                pipe.multi()
                pipe.delete(self.key)
                await pipe.execute()
        except WatchError:
            log.warning("run_lock_lost", key=self.key)
            return False
        except RedisError as e:
            raise StoreUnavailable(f"run lock: {e}") from e
        return True

    async def extend(self) -> bool:
        """
        Push the expiry out by another ttl while we still hold the lock.
        False once it has expired or been taken; the caller must stop then.
        """
        token = self._token
        if token is None:
            return False
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(self.key)
                if await pipe.get(self.key) != token:
                    log.warning("run_lock_lost", key=self.key)
                    self._token = None
                    return False
                pipe.multi()
                pipe.pexpire(self.key, int(self.ttl_s * 1000))
                await pipe.execute()
        except WatchError:
            log.warning("run_lock_lost", key=self.key)
            self._token = None
            return False
        except RedisError as e:
            raise StoreUnavailable(f"run lock: {e}") from e
        return True
