from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone

from arb_agent.trading.types import to_bool, to_float, to_int


def _sanitize_bot_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


def require_document_path(path: str) -> str:
    normalized = path.strip("/")
    segments = [part for part in normalized.split("/") if part]
    if not segments or len(segments) % 2:
        raise ValueError(f"FIRESTORE_CONFIG_DOC must name a document (collection/doc/...), got {path!r}")
    return "/".join(segments)


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    redis_config_key: str
    firestore_project_id: str | None
    firestore_config_doc: str
    config_refresh_seconds: float
    bot_collection: str
    bot_id: str
    dry_run: bool
    bot_env: str
    bot_run_id: str
    bot_events_collection: str
    bot_trades_collection: str
    bot_pnl_daily_collection: str
    bot_metrics_collection: str
    firestore_publish_order_execution_events: bool
    config_schema_version: int
    heartbeat_key: str
    price_prefix: str
    spread_prefix: str
    decision_prefix: str
    position_key: str
    order_guard_prefix: str
    order_record_prefix: str

    @property
    def results_doc(self) -> str:
        return f"{self.bot_collection}/{self.bot_id}"

    @classmethod
    def from_env(cls) -> "StorageSettings":
        bot_collection = (os.getenv("BOT_COLLECTION", "bots").strip("/") or "bots")
        bot_id = _sanitize_bot_id(os.getenv("BOT_ID", "arb-agent"), "arb-agent")
        dry_run = to_bool(os.getenv("DRY_RUN"), True)
        # Dry-run results land beside live ones; the config document is shared.
        if dry_run and to_bool(os.getenv("FIRESTORE_SPLIT_DRY_RUN_RESULTS"), True):
            results_bot_id = f"{bot_id}-dryrun"
        else:
            results_bot_id = bot_id

        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            redis_config_key=os.getenv("REDIS_CONFIG_KEY", "config"),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            firestore_config_doc=require_document_path(
                os.getenv("FIRESTORE_CONFIG_DOC") or f"{bot_collection}/{bot_id}/config/runtime"
            ),
            config_refresh_seconds=max(1.0, to_float(os.getenv("CONFIG_REFRESH_SECONDS"), 15.0)),
            bot_collection=bot_collection,
            bot_id=results_bot_id,
            dry_run=dry_run,
            bot_env=os.getenv("BOT_ENV", "dev"),
            bot_run_id=os.getenv("BOT_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
            bot_events_collection=os.getenv("BOT_EVENTS_COLLECTION", "events"),
            bot_trades_collection=os.getenv("BOT_TRADES_COLLECTION", "trades"),
            bot_pnl_daily_collection=os.getenv("BOT_PNL_DAILY_COLLECTION", "pnl_daily"),
            bot_metrics_collection=os.getenv("BOT_METRICS_COLLECTION", "pair_metrics"),
            firestore_publish_order_execution_events=to_bool(
                os.getenv("FIRESTORE_PUBLISH_ORDER_EXECUTION_EVENTS"),
                True,
            ),
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            heartbeat_key=os.getenv("REDIS_HEARTBEAT_KEY", "bot:heartbeat"),
            price_prefix=os.getenv("REDIS_PRICE_PREFIX", "prices"),
            spread_prefix=os.getenv("REDIS_SPREAD_PREFIX", "spreads"),
            decision_prefix=os.getenv("REDIS_DECISION_PREFIX", "decisions"),
            position_key=os.getenv("REDIS_POSITION_KEY", "position:current"),
            order_guard_prefix=os.getenv("REDIS_ORDER_GUARD_PREFIX", "orders:guard"),
            order_record_prefix=os.getenv("REDIS_ORDER_RECORD_PREFIX", "orders:record"),
        )
