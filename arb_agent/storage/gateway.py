from __future__ import annotations

import logging
import time
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from arb_agent.common import log_event

from .firestore_ops import FirestoreStorageOps
from .redis_ops import RedisStorageOps
from .settings import StorageSettings


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    """Redis holds the hot state the loop reads every tick; Firestore holds the
    operator-edited runtime config and the durable event/trade history.

    The config document is polled at most every ``config_refresh_seconds`` and
    mirrored into the Redis config hash only when it changed.
    """

    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None
        self._config_doc_ref: Any | None = None
        self._events_collection_ref: Any | None = None
        self._trades_collection_ref: Any | None = None
        self._pnl_daily_collection_ref: Any | None = None
        self._metrics_collection_ref: Any | None = None
        self._last_config: dict[str, Any] | None = None
        self._config_checked_at: float | None = None

    @property
    def bot_id(self) -> str:
        return self.settings.bot_id

    @property
    def run_id(self) -> str:
        return self.settings.bot_run_id

    async def connect(self) -> None:
        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
            config_key=self.settings.redis_config_key,
        )

        self._firestore = firestore.Client(project=self.settings.firestore_project_id)
        self._initialize_refs()
        await self.refresh_runtime_config(force=True)
        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore",
            config_doc=self.settings.firestore_config_doc,
            results_doc=self.settings.results_doc,
        )

    async def refresh_runtime_config(self, *, force: bool = False, now: float | None = None) -> bool:
        """Mirror the Firestore config document into Redis; returns True when it changed."""
        now = time.monotonic() if now is None else now
        if (
            not force
            and self._config_checked_at is not None
            and now - self._config_checked_at < self.settings.config_refresh_seconds
        ):
            return False

        config = await self.load_runtime_config()
        self._config_checked_at = now
        if config is None:
            if self._last_config is None:
                log_event(
                    self._logger,
                    level="warning",
                    event="config_missing",
                    message="Runtime config document does not exist; using env defaults",
                    config_doc=self.settings.firestore_config_doc,
                )
            config = {}
        if config == self._last_config:
            return False

        changed = sorted(
            key
            for key in set(config) | set(self._last_config or {})
            if config.get(key) != (self._last_config or {}).get(key)
        )
        await self.sync_config_to_redis(config, source="startup" if self._last_config is None else "refresh")
        self._last_config = config
        log_event(
            self._logger,
            level="info",
            event="runtime_config_updated",
            message="Runtime config changed",
            changed_keys=changed,
        )
        return True

    async def healthcheck(self) -> None:
        redis_client = self._require_redis()
        await redis_client.ping()
        await self.load_runtime_config()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

        if self._firestore is not None:
            self._firestore.close()
            self._firestore = None

        self._config_doc_ref = None
        self._events_collection_ref = None
        self._trades_collection_ref = None
        self._pnl_daily_collection_ref = None
        self._metrics_collection_ref = None
