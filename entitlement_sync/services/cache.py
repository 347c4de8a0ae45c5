from __future__ import annotations

import json
import logging
from threading import Lock
from typing import Any, Callable

import redis

from entitlement_sync.models.subscriptions import EntitlementRecord
from entitlement_sync.observability import incr_metric, log_event


_KEY_PREFIX = "entitlements:user"
_GENERATION_PREFIX = "entitlements:generation"


def cache_key(local_user_id: str) -> str:
    return f"{_KEY_PREFIX}:{local_user_id}"


def generation_key(local_user_id: str) -> str:
    return f"{_GENERATION_PREFIX}:{local_user_id}"


class EntitlementCache:
    """Per-user entitlement views in redis.

    Fail-open: a redis outage costs a store read, never a failed event or request.

    Each view is stamped with the user's generation as read before the store query.
    `invalidate` bumps the generation, so a view computed from a read that raced a commit
    no longer matches and is treated as a miss.
    """

    def __init__(
        self,
        *,
        redis_url: str,
        ttl_seconds: int,
        enabled: bool = True,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._ttl_seconds = max(1, int(ttl_seconds))
        # Outlives any view, so an expired generation cannot re-validate a stale one.
        self._generation_ttl_seconds = self._ttl_seconds * 10
        self._enabled = enabled
        self._client_factory = client_factory or (lambda url: redis.from_url(url, decode_responses=True))
        self._client: Any = None
        self._lock = Lock()

    def _redis(self) -> Any:
        with self._lock:
            if self._client is None:
                self._client = self._client_factory(self._redis_url)
            return self._client

    def get(self, local_user_id: str) -> tuple[list[EntitlementRecord] | None, str | None]:
        """Cached records (None on a miss) and the generation token to hand back to `set`.

        The token is None when redis could not be read; `set` then skips the write.
        """
        if not self._enabled:
            return None, None
        try:
            raw, generation = self._redis().mget(cache_key(local_user_id), generation_key(local_user_id))
        except redis.RedisError as exc:
            self._failed("get", local_user_id, exc)
            return None, None
        generation = str(generation or 0)
        if raw is None:
            incr_metric("cache.miss")
            return None, generation
        try:
            cached = json.loads(raw)
            records = [EntitlementRecord(**row) for row in cached["records"]]
            stamped = cached["generation"]
        except (ValueError, TypeError, KeyError) as exc:
            self._failed("decode", local_user_id, exc)
            return None, generation
        if stamped != generation:
            incr_metric("cache.stale")
            return None, generation
        incr_metric("cache.hit")
        return records, generation

    def set(self, local_user_id: str, records: list[EntitlementRecord], *, generation: str | None) -> None:
        if not self._enabled or generation is None:
            return
        payload = json.dumps(
            {"generation": generation, "records": [record.model_dump(mode="json") for record in records]}
        )
        try:
            self._redis().setex(cache_key(local_user_id), self._ttl_seconds, payload)
        except redis.RedisError as exc:
            self._failed("set", local_user_id, exc)

    def invalidate(self, local_user_id: str, *, request_id: str | None = None) -> None:
        if not self._enabled:
            return
        try:
            client = self._redis()
            client.incr(generation_key(local_user_id))
            client.expire(generation_key(local_user_id), self._generation_ttl_seconds)
            client.delete(cache_key(local_user_id))
        except redis.RedisError as exc:
            self._failed("invalidate", local_user_id, exc, request_id=request_id)
            return
        incr_metric("cache.invalidated")

    def _failed(self, operation: str, local_user_id: str, exc: Exception, *, request_id: str | None = None) -> None:
        incr_metric("cache.errors", operation=operation)
        log_event(
            "entitlement_cache_failed",
            level=logging.WARNING,
            request_id=request_id,
            operation=operation,
            local_user_id=local_user_id,
            error=str(exc),
        )
