from __future__ import annotations

import logging
from typing import Generic, Protocol, TypeVar

from pydantic import TypeAdapter
from redis.exceptions import RedisError

from app.core.errors import TransportError
from app.db.redis import redis_pool
from app.models.redirect_records import (
    PendingCallback,
    PreRedirect,
    pending_callback_adapter,
    pre_redirect_adapter,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fixed slot names; one value per slot, a second save overwrites the first.
CALLBACK_KEY = "oauth_callback"
REDIRECT_STATE_KEY = "oauth_redirect_state"


class EphemeralStore(Protocol[T]):
    async def get(self) -> T | None: ...
    async def save(self, value: T) -> None: ...
    async def clear(self) -> None: ...


class InMemoryEphemeralStore(Generic[T]):
    def __init__(self) -> None:
        self._value: T | None = None

    async def get(self) -> T | None:
        return self._value

    async def save(self, value: T) -> None:
        self._value = value

    async def clear(self) -> None:
        self._value = None


class RedisEphemeralStore(Generic[T]):
    """One JSON-encoded value under a fixed Redis key.

    Redis failures surface as TransportError so callers handle them like any
    other unreachable dependency.
    """

    _PREFIX = "flowdbg:"
    # Abandoned authorization attempts should not linger forever.
    _TTL_SECONDS = 3600

    def __init__(self, redis_client, key: str, adapter: TypeAdapter[T]) -> None:
        self._redis = redis_client
        self._key = f"{self._PREFIX}{key}"
        self._adapter = adapter

    def _unavailable(self, exc: RedisError) -> TransportError:
        logger.warning("ephemeral store %s unavailable: %s", self._key, exc)
        reason = str(exc) or exc.__class__.__name__
        return TransportError(f"Ephemeral store unavailable: {reason}")

    async def get(self) -> T | None:
        try:
            raw = await self._redis.get(self._key)
        except RedisError as exc:
            raise self._unavailable(exc) from exc
        if raw is None:
            return None
        try:
            return self._adapter.validate_json(raw)
        except ValueError:
            # Unreadable record: treat as absent.
            return None

    async def save(self, value: T) -> None:
        try:
            await self._redis.setex(
                self._key, self._TTL_SECONDS, self._adapter.dump_json(value)
            )
        except RedisError as exc:
            raise self._unavailable(exc) from exc

    async def clear(self) -> None:
        try:
            await self._redis.delete(self._key)
        except RedisError as exc:
            raise self._unavailable(exc) from exc


# ---------------------------------------------------------------------------
# Module-level singletons
# ---------------------------------------------------------------------------

if redis_pool is not None:
    callback_store: EphemeralStore[PendingCallback] = RedisEphemeralStore(
        redis_pool, CALLBACK_KEY, pending_callback_adapter
    )
    redirect_store: EphemeralStore[PreRedirect] = RedisEphemeralStore(
        redis_pool, REDIRECT_STATE_KEY, pre_redirect_adapter
    )
else:
    callback_store = InMemoryEphemeralStore()
    redirect_store = InMemoryEphemeralStore()
