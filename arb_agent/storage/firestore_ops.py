from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from google.cloud import firestore

from arb_agent.common import guarded_call, log_event
from arb_agent.trading.types import to_float

from .helpers import firestore_safe
from .helpers import utc_day_id as _utc_day_id

NON_FILLING_STATUSES = frozenset({"failed", "skipped_duplicate", "skipped_guard"})


def pair_doc_id(pair: str) -> str:
    """Firestore ids cannot contain ``/``; ``ETH/USDC`` becomes ``ETH-USDC``."""
    doc_id = pair.strip().replace("/", "-")
    if not doc_id:
        raise ValueError("Pair symbol must not be empty.")
    return doc_id


class FirestoreStorageOps:
    async def load_runtime_config(self) -> dict[str, Any] | None:
        if self._config_doc_ref is None:
            raise RuntimeError("Firestore config document reference is not initialized.")

        snapshot = await asyncio.to_thread(self._config_doc_ref.get)
        if not snapshot.exists:
            return None
        return snapshot.to_dict() or {}

    def _stamp(self, payload: dict[str, Any]) -> dict[str, Any]:
        payload.update(
            {
                "bot_id": self.settings.bot_id,
                "run_id": self.settings.bot_run_id,
                "env": self.settings.bot_env,
                "dry_run": self.settings.dry_run,
                "schema_version": self.settings.config_schema_version,
            }
        )
        return payload

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        if self._events_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="publish_skipped",
                message="Skipping Firestore event because client is not ready",
                skipped_event=event,
            )
            return

        payload = self._stamp(
            {
                "timestamp": datetime.now(timezone.utc),
                "server_timestamp": firestore.SERVER_TIMESTAMP,
                "level": level,
                "event": event,
                "message": message,
                "details": firestore_safe(details or {}),
            }
        )

        async def write_event() -> None:
            if event_id:
                event_ref = self._events_collection_ref.document(event_id.replace("/", "_"))
                await asyncio.to_thread(event_ref.set, payload, merge=True)
            else:
                await asyncio.to_thread(self._events_collection_ref.add, payload)

        await guarded_call(
            write_event,
            logger=self._logger,
            event="publish_failed",
            message="Failed to publish Firestore event",
            level="error",
            published_event=event,
        )

    async def record_trade(self, *, trade: dict[str, Any], trade_id: str | None = None) -> None:
        """Persist one execution outcome and fold it into the pair's running totals.

        ``pnl_usd`` and ``gas_cost_usd`` are the worst-case estimates the
        decision was made on. Outcomes that never reached the venue only bump
        ``attempts``.
        """
        if self._trades_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="trade_persist_skipped",
                message="Skipping trade persistence because Firestore client is not ready",
            )
            return

        order_id = str(trade_id or trade.get("order_id") or "").strip()
        if not order_id:
            raise ValueError("Trade record needs an order_id.")

        payload = self._stamp(firestore_safe(dict(trade)))
        payload["order_id"] = order_id
        payload["recorded_at"] = firestore.SERVER_TIMESTAMP

        async def write_trade() -> bool:
            await asyncio.to_thread(self._trades_collection_ref.document(order_id).set, payload, merge=True)
            return True

        written = await guarded_call(
            write_trade,
            logger=self._logger,
            event="trade_persist_failed",
            message="Failed to persist trade record",
            level="error",
            default=False,
            trade_id=order_id,
        )
        if not written:
            return

        await guarded_call(
            lambda: self._update_pair_totals(order_id=order_id, trade=trade),
            logger=self._logger,
            event="trade_aggregate_update_failed",
            message="Failed to update pair trade totals",
            level="error",
            trade_id=order_id,
        )

    async def _update_pair_totals(self, *, order_id: str, trade: dict[str, Any]) -> None:
        if self._metrics_collection_ref is None or self._pnl_daily_collection_ref is None:
            return

        pair = str(trade.get("pair") or "unknown")
        status = str(trade.get("status") or "")
        direction = str(trade.get("direction") or "")
        filled = status not in NON_FILLING_STATUSES

        totals: dict[str, Any] = {
            "pair": pair,
            "attempts": firestore.Increment(1),
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        if filled:
            totals.update(
                {
                    "executions": firestore.Increment(1),
                    "executions_by_direction": {direction: firestore.Increment(1)},
                    "expected_pnl_usd_total": firestore.Increment(to_float(trade.get("pnl_usd"), 0.0)),
                    "gas_cost_usd_total": firestore.Increment(to_float(trade.get("gas_cost_usd"), 0.0)),
                }
            )

        latest = dict(totals)
        latest.update(
            {
                "last_order_id": order_id,
                "last_status": status,
                "last_spread_bps": str(trade.get("spread_bps") or ""),
                "run_id": self.settings.bot_run_id,
            }
        )

        day_id = _utc_day_id()
        daily = dict(totals)
        daily["day_id"] = day_id

        pair_id = pair_doc_id(pair)
        await asyncio.gather(
            asyncio.to_thread(self._metrics_collection_ref.document(pair_id).set, latest, merge=True),
            asyncio.to_thread(
                self._pnl_daily_collection_ref.document(f"{day_id}_{pair_id}").set,
                daily,
                merge=True,
            ),
        )

    def _initialize_refs(self) -> None:
        firestore_client = self._require_firestore()
        results_doc = firestore_client.document(self.settings.results_doc)

        self._config_doc_ref = firestore_client.document(self.settings.firestore_config_doc)
        self._events_collection_ref = results_doc.collection(self.settings.bot_events_collection)
        self._trades_collection_ref = results_doc.collection(self.settings.bot_trades_collection)
        self._pnl_daily_collection_ref = results_doc.collection(self.settings.bot_pnl_daily_collection)
        self._metrics_collection_ref = results_doc.collection(self.settings.bot_metrics_collection)

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
