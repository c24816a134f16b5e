from __future__ import annotations

import json
from typing import Any

from redis.asyncio.client import Redis

from arb_agent.common import log_event
from arb_agent.trading.types import Decision, SpreadObservation, now_iso

from .helpers import serialize_for_redis as _serialize_for_redis

# Release only the guard this order still owns; an expired guard may already
# belong to a newer order for the same decision.
_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""


class RedisStorageOps:
    def _guard_key(self, guard_key: str) -> str:
        return f"{self.settings.order_guard_prefix}:{guard_key}"

    def _order_key(self, order_id: str) -> str:
        return f"{self.settings.order_record_prefix}:{order_id}"

    async def sync_config_to_redis(self, config: dict[str, Any], *, source: str) -> None:
        """Replace the cached config hash; null fields fall back to env defaults."""
        redis_client = self._require_redis()
        mapping = {str(key): _serialize_for_redis(value) for key, value in config.items() if value is not None}

        async with redis_client.pipeline(transaction=True) as pipeline:
            pipeline.delete(self.settings.redis_config_key)
            if mapping:
                pipeline.hset(self.settings.redis_config_key, mapping=mapping)
            await pipeline.execute()

        log_event(
            self._logger,
            level="info",
            event="config_synced",
            message="Runtime config synced to Redis",
            items=len(mapping),
            source=source,
        )

    async def get_runtime_config(self) -> dict[str, str]:
        return await self._require_redis().hgetall(self.settings.redis_config_key)

    async def acquire_order_guard(self, *, guard_key: str, order_id: str, ttl_seconds: int) -> bool:
        acquired = await self._require_redis().set(
            self._guard_key(guard_key),
            order_id,
            ex=max(1, ttl_seconds),
            nx=True,
        )
        return bool(acquired)

    async def get_order_guard(self, *, guard_key: str) -> dict[str, Any] | None:
        key = self._guard_key(guard_key)
        async with self._require_redis().pipeline(transaction=False) as pipeline:
            pipeline.get(key)
            pipeline.ttl(key)
            owner, ttl_seconds = await pipeline.execute()
        if owner is None:
            return None
        return {"order_id": owner, "ttl_seconds": ttl_seconds if isinstance(ttl_seconds, int) else -2}

    async def release_order_guard(self, *, guard_key: str, order_id: str) -> bool:
        deleted = await self._require_redis().eval(_COMPARE_AND_DELETE, 1, self._guard_key(guard_key), order_id)
        return bool(deleted)

    async def record_order_state(
        self,
        *,
        order_id: str,
        status: str,
        ttl_seconds: int,
        payload: dict[str, Any] | None = None,
        guard_key: str | None = None,
    ) -> None:
        """Upsert the order hash. Payload keys are stored as top-level fields so a
        later status (``failed``, ``submitted``) overwrites only what it reports;
        ``created_at`` keeps the time of the first write.
        """
        key = self._order_key(order_id)
        now = now_iso()
        mapping = {str(field): _serialize_for_redis(value) for field, value in (payload or {}).items()}
        mapping.update({"order_id": order_id, "status": status, "updated_at": now})
        if guard_key:
            mapping["guard_key"] = guard_key

        async with self._require_redis().pipeline(transaction=True) as pipeline:
            pipeline.hset(key, mapping=mapping)
            pipeline.hsetnx(key, "created_at", now)
            pipeline.expire(key, max(60, ttl_seconds))
            await pipeline.execute()

    async def record_price(self, observation: SpreadObservation) -> None:
        redis_client = self._require_redis()
        redis_key = f"{self.settings.price_prefix}:{observation.pair}:{observation.venue}"
        await redis_client.hset(
            redis_key,
            mapping={
                "pair": observation.pair,
                "venue": observation.venue,
                "venue_price": str(observation.venue_price),
                "reference_price": str(observation.reference.value),
                "reference_source": observation.reference.source,
                "raw": json.dumps(observation.quote, ensure_ascii=False, separators=(",", ":"), default=str),
                "updated_at": now_iso(),
            },
        )

    async def record_spread(
        self,
        observation: SpreadObservation,
        *,
        min_spread_bps: Any,
        extra: dict[str, Any] | None = None,
    ) -> None:
        redis_client = self._require_redis()
        redis_key = f"{self.settings.spread_prefix}:{observation.pair}:{observation.venue}"
        mapping: dict[str, str] = {
            "pair": observation.pair,
            "venue": observation.venue,
            "spread_bps": str(observation.spread_bps),
            "min_spread_bps": str(min_spread_bps),
            "direction": observation.direction.value,
            "profitable": "1" if observation.profitable else "0",
            "updated_at": now_iso(),
        }
        if extra:
            mapping.update({str(key): _serialize_for_redis(value) for key, value in extra.items()})

        await redis_client.hset(redis_key, mapping=mapping)

    async def record_decision(self, *, pair: str, decision: Decision) -> None:
        redis_client = self._require_redis()
        redis_key = f"{self.settings.decision_prefix}:{pair}"
        mapping = {key: _serialize_for_redis(value) for key, value in decision.to_dict().items()}
        mapping["pair"] = pair
        mapping["updated_at"] = now_iso()
        await redis_client.hset(redis_key, mapping=mapping)

    async def record_position(self, mapping: dict[str, Any]) -> None:
        redis_client = self._require_redis()
        payload = {key: _serialize_for_redis(value) for key, value in mapping.items()}
        payload["updated_at"] = now_iso()
        await redis_client.hset(self.settings.position_key, mapping=payload)

    async def update_heartbeat(self) -> None:
        redis_client = self._require_redis()
        await redis_client.set(self.settings.heartbeat_key, now_iso())

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
