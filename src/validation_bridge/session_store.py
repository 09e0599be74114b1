# src/validation_bridge/session_store.py

"""Server-side session persistence.

Two backends share the ``SessionStore`` interface:

- ``RedisSessionStore``: durable, shared between workers, TTL handled by
  Redis ``EX``/``EXPIRE``.
- ``MemorySessionStore``: process-local fallback. Sessions vanish on
  restart and are not shared between workers.

Stores are service objects with an explicit ``connect()``/``close()``
lifecycle, owned by the application lifespan.
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import Settings
from .errors import SessionPersistenceError

log = logging.getLogger(__name__)

RECONNECT_STEP_SECONDS = 0.1
RECONNECT_MAX_DELAY_SECONDS = 3.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10


def reconnect_delay(attempt: int, max_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS) -> Optional[float]:
    """Backoff policy for Redis connection attempts.

    ``attempt`` counts failures so far, starting at 1. Returns the delay in
    seconds before the next try, or None once ``max_attempts`` is exceeded.
    """
    if attempt < 1:
        return 0.0
    if attempt > max_attempts:
        return None
    return min(attempt * RECONNECT_STEP_SECONDS, RECONNECT_MAX_DELAY_SECONDS)


class SessionStore:
    backend = "abstract"

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def save(self, session_id: str, data: Dict[str, Any], ttl: int) -> None:
        raise NotImplementedError

    async def touch(self, session_id: str, ttl: int) -> None:
        raise NotImplementedError

    async def delete(self, session_id: str) -> None:
        raise NotImplementedError


class MemorySessionStore(SessionStore):
    backend = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def __len__(self) -> int:
        return len(self._data)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [sid for sid, (expires_at, _) in self._data.items() if expires_at <= now]
        for sid in expired:
            del self._data[sid]
        return len(expired)

    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        entry = self._data.get(session_id)
        if entry is None:
            return None
        expires_at, data = entry
        if expires_at <= self._clock():
            del self._data[session_id]
            return None
        # Callers get a copy; writes only land through save()
        return json.loads(json.dumps(data))

    async def save(self, session_id: str, data: Dict[str, Any], ttl: int) -> None:
        self.purge_expired()
        self._data[session_id] = (self._clock() + ttl, json.loads(json.dumps(data)))

    async def touch(self, session_id: str, ttl: int) -> None:
        entry = self._data.get(session_id)
        if entry is not None:
            self._data[session_id] = (self._clock() + ttl, entry[1])

    async def delete(self, session_id: str) -> None:
        self._data.pop(session_id, None)


class RedisSessionStore(SessionStore):
    backend = "redis"

    def __init__(
        self,
        url: str,
        prefix: str = "sess:",
        connect_timeout: float = 10.0,
        max_retries: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        client: Optional[aioredis.Redis] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.prefix = prefix
        self.connect_timeout = connect_timeout
        self.max_retries = max_retries
        self._client = client
        self._sleep = sleep

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}{session_id}"

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise SessionPersistenceError("Redis session store is not connected.")
        return self._client

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=self.connect_timeout,
            )

        attempt = 0
        while True:
            try:
                await self._client.ping()
                log.info("Redis session store connected (prefix=%s)", self.prefix)
                return
            except (RedisError, OSError) as e:
                attempt += 1
                delay = reconnect_delay(attempt, self.max_retries)
                if delay is None:
                    log.error("Redis connection failed after %d attempts: %s", attempt, e)
                    raise SessionPersistenceError("Could not connect to Redis session store.") from e
                log.warning("Redis connection attempt %d failed (%s), retrying in %.1fs", attempt, e, delay)
                await self._sleep(delay)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            log.info("Redis session store disconnected")

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as e:
            log.warning("Redis ping failed: %s", e)
            return False

    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.get(self._key(session_id))
        except (RedisError, OSError) as e:
            log.error("Failed to load session from Redis: %s", e)
            raise SessionPersistenceError() from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            log.warning("Discarding unreadable session record %s", self._key(session_id))
            return None

    async def save(self, session_id: str, data: Dict[str, Any], ttl: int) -> None:
        try:
            await self.client.set(self._key(session_id), json.dumps(data), ex=ttl)
        except (RedisError, OSError) as e:
            log.error("Failed to save session to Redis: %s", e)
            raise SessionPersistenceError("Failed to save session.") from e

    async def touch(self, session_id: str, ttl: int) -> None:
        try:
            await self.client.expire(self._key(session_id), ttl)
        except (RedisError, OSError) as e:
            raise SessionPersistenceError() from e

    async def delete(self, session_id: str) -> None:
        try:
            await self.client.delete(self._key(session_id))
        except (RedisError, OSError) as e:
            log.error("Failed to delete session from Redis: %s", e)
            raise SessionPersistenceError("Failed to delete session.") from e


async def create_session_store(settings: Settings) -> SessionStore:
    """Connect the configured store, falling back to memory when allowed."""
    if not settings.REDIS_URL:
        message = "No REDIS_URL configured; sessions are held in process memory and lost on restart"
        if settings.SESSION_STORE_REQUIRED:
            raise SessionPersistenceError("REDIS_URL is required when SESSION_STORE_REQUIRED is set.")
        if settings.IS_PRODUCTION:
            log.error(message)
        else:
            log.warning(message)
        return MemorySessionStore()

    store = RedisSessionStore(
        settings.REDIS_URL,
        prefix=settings.REDIS_PREFIX,
        connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        max_retries=settings.REDIS_MAX_RETRIES,
    )
    try:
        await store.connect()
    except SessionPersistenceError:
        await store.close()
        if settings.SESSION_STORE_REQUIRED:
            raise
        log.error("Redis unavailable; falling back to in-memory session store (sessions will not persist)")
        return MemorySessionStore()
    return store
