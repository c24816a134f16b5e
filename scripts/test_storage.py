from __future__ import annotations

import logging
import os
import unittest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from google.cloud import firestore

from arb_agent.storage.firestore_ops import pair_doc_id
from arb_agent.storage.gateway import StorageGateway
from arb_agent.storage.helpers import firestore_safe, serialize_for_redis
from arb_agent.storage.redis_ops import RedisStorageOps
from arb_agent.storage.settings import StorageSettings, require_document_path
from arb_agent.trading.arbitrage import build_decision
from arb_agent.trading.types import Direction, TradeCandidate


def _settings() -> StorageSettings:
    with patch.dict(os.environ, {"BOT_ID": "arb/test", "DRY_RUN": "true"}, clear=True):
        return StorageSettings.from_env()


class _RedisOps(RedisStorageOps):
    def __init__(self, redis_client: MagicMock) -> None:
        self.settings = _settings()
        self._logger = logging.getLogger("test.storage")
        self._redis = redis_client


class StorageSettingsTests(unittest.TestCase):
    def test_dry_run_results_are_namespaced(self) -> None:
        settings = _settings()
        self.assertEqual(settings.bot_id, "arb-test-dryrun")
        self.assertEqual(settings.firestore_config_doc, "bots/arb-test/config/runtime")
        self.assertTrue(settings.bot_run_id.startswith("run-"))
        self.assertEqual(settings.results_doc, "bots/arb-test-dryrun")

    def test_config_doc_must_be_a_document_path(self) -> None:
        self.assertEqual(require_document_path("/bots/a/config/runtime/"), "bots/a/config/runtime")
        for path in ("", "bots", "bots/a/config"):
            with self.subTest(path=path):
                with self.assertRaises(ValueError):
                    require_document_path(path)


class HelperTests(unittest.TestCase):
    def test_serialize_for_redis(self) -> None:
        self.assertEqual(serialize_for_redis(True), "1")
        self.assertEqual(serialize_for_redis(Decimal("2450.5")), "2450.5")
        self.assertEqual(serialize_for_redis(Direction.NO_OP), "NO_OP")
        self.assertEqual(serialize_for_redis({"a": 1}), '{"a":1}')

    def test_firestore_safe_stringifies_wide_values(self) -> None:
        payload = firestore_safe(
            {
                "amount_out_min": 10 * 10**18,
                "amount_in": 2 * 10**18,
                "gas_used": 150_000,
                "pnl": Decimal("1.5"),
                "direction": Direction.BUY_VENUE_SELL_REFERENCE,
                "nested": [{"wei": 10**20}],
                "flag": True,
            }
        )
        self.assertEqual(payload["amount_out_min"], str(10 * 10**18))
        self.assertEqual(payload["amount_in"], 2 * 10**18)
        self.assertEqual(payload["gas_used"], 150_000)
        self.assertEqual(payload["pnl"], "1.5")
        self.assertEqual(payload["direction"], "BUY_VENUE_SELL_REFERENCE")
        self.assertEqual(payload["nested"], [{"wei": str(10**20)}])
        self.assertIs(payload["flag"], True)

    def test_pair_doc_id_replaces_slashes(self) -> None:
        self.assertEqual(pair_doc_id("ETH/USDC"), "ETH-USDC")
        with self.assertRaises(ValueError):
            pair_doc_id(" ")


class RedisOpsTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.redis = MagicMock()
        self.redis.set = AsyncMock(return_value=True)
        self.redis.eval = AsyncMock(return_value=1)
        self.redis.hset = AsyncMock()
        self.pipeline = MagicMock()
        self.pipeline.__aenter__.return_value = self.pipeline
        self.pipeline.execute = AsyncMock(return_value=[])
        self.redis.pipeline.return_value = self.pipeline
        self.ops = _RedisOps(self.redis)

    async def test_acquire_guard_uses_set_nx_with_ttl(self) -> None:
        acquired = await self.ops.acquire_order_guard(guard_key="abc", order_id="ord-1", ttl_seconds=0)

        self.assertTrue(acquired)
        self.redis.set.assert_awaited_once_with("orders:guard:abc", "ord-1", ex=1, nx=True)

    async def test_release_guard_compares_owner(self) -> None:
        released = await self.ops.release_order_guard(guard_key="abc", order_id="ord-1")

        self.assertTrue(released)
        args = self.redis.eval.await_args.args
        self.assertIn("redis.call('get', KEYS[1]) == ARGV[1]", args[0])
        self.assertEqual(args[1:], (1, "orders:guard:abc", "ord-1"))

    async def test_record_order_state_flattens_payload_and_sets_ttl(self) -> None:
        await self.ops.record_order_state(
            order_id="ord-1",
            status="pending",
            ttl_seconds=10,
            guard_key="abc",
            payload={"mode": "dry_run", "decision": {"executable": True}},
        )

        key = self.pipeline.hset.call_args.args[0]
        mapping = self.pipeline.hset.call_args.kwargs["mapping"]
        self.assertEqual(key, "orders:record:ord-1")
        self.assertEqual(mapping["status"], "pending")
        self.assertEqual(mapping["mode"], "dry_run")
        self.assertEqual(mapping["decision"], '{"executable":true}')
        self.assertEqual(mapping["guard_key"], "abc")
        self.assertEqual(self.pipeline.hsetnx.call_args.args[:2], ("orders:record:ord-1", "created_at"))
        self.pipeline.expire.assert_called_once_with("orders:record:ord-1", 60)
        self.pipeline.execute.assert_awaited_once()

    async def test_get_order_guard_reports_owner_and_ttl(self) -> None:
        self.pipeline.execute.return_value = ["ord-1", 42]

        self.assertEqual(await self.ops.get_order_guard(guard_key="abc"), {"order_id": "ord-1", "ttl_seconds": 42})
        self.pipeline.get.assert_called_once_with("orders:guard:abc")

        self.pipeline.execute.return_value = [None, -2]
        self.assertIsNone(await self.ops.get_order_guard(guard_key="abc"))

    async def test_config_sync_drops_null_fields(self) -> None:
        await self.ops.sync_config_to_redis({"min_spread_bps": 25, "reference_price_usd": None}, source="refresh")

        self.pipeline.delete.assert_called_once_with("config")
        self.assertEqual(self.pipeline.hset.call_args.kwargs["mapping"], {"min_spread_bps": "25"})

    async def test_record_decision_flattens_decision(self) -> None:
        decision = build_decision(
            TradeCandidate(
                direction=Direction.BUY_VENUE_SELL_REFERENCE,
                amount_in=5_000 * 10**6,
                amount_out_min=2_100_000_000_000_000_000,
                reference_price_usd=Decimal(2450),
                gas_used=150_000,
                gas_price_wei=20 * 10**9,
            ),
            5,
            now=datetime(2026, 3, 1, tzinfo=timezone.utc),
        )

        await self.ops.record_decision(pair="ETH/USDC", decision=decision)

        key = self.redis.hset.await_args.args[0]
        mapping = self.redis.hset.await_args.kwargs["mapping"]
        self.assertEqual(key, "decisions:ETH/USDC")
        self.assertEqual(mapping["direction"], "BUY_VENUE_SELL_REFERENCE")
        self.assertEqual(mapping["executable"], "1")
        self.assertEqual(mapping["estimated_gas_used"], "150000")

    async def test_missing_client_raises(self) -> None:
        self.ops._redis = None
        with self.assertRaises(RuntimeError):
            await self.ops.update_heartbeat()


def _gateway() -> StorageGateway:
    gateway = StorageGateway(_settings(), logging.getLogger("test.storage"))
    gateway._config_doc_ref = MagicMock()
    gateway._trades_collection_ref = MagicMock()
    gateway._metrics_collection_ref = MagicMock()
    gateway._pnl_daily_collection_ref = MagicMock()
    gateway._events_collection_ref = MagicMock()
    return gateway


def _snapshot(data: dict[str, object] | None) -> MagicMock:
    return MagicMock(exists=data is not None, to_dict=MagicMock(return_value=data))


class ConfigRefreshTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.gateway = _gateway()
        self.sync = AsyncMock()
        self.gateway.sync_config_to_redis = self.sync  # type: ignore[method-assign]

    async def test_changed_document_is_mirrored_once(self) -> None:
        self.gateway._config_doc_ref.get.return_value = _snapshot({"min_spread_bps": 25})

        self.assertTrue(await self.gateway.refresh_runtime_config(force=True, now=0.0))
        self.assertFalse(await self.gateway.refresh_runtime_config(force=True, now=1.0))

        self.sync.assert_awaited_once_with({"min_spread_bps": 25}, source="startup")

    async def test_refresh_is_rate_limited_unless_forced(self) -> None:
        self.gateway._config_doc_ref.get.return_value = _snapshot({"trade_enabled": False})
        await self.gateway.refresh_runtime_config(force=True, now=100.0)
        self.gateway._config_doc_ref.get.return_value = _snapshot({"trade_enabled": True})

        self.assertFalse(await self.gateway.refresh_runtime_config(now=105.0))
        self.assertTrue(await self.gateway.refresh_runtime_config(now=100.0 + self.gateway.settings.config_refresh_seconds))

        self.assertEqual(self.sync.await_args.args[0], {"trade_enabled": True})
        self.assertEqual(self.sync.await_args.kwargs["source"], "refresh")

    async def test_missing_document_clears_cached_config(self) -> None:
        self.gateway._config_doc_ref.get.return_value = _snapshot(None)

        self.assertTrue(await self.gateway.refresh_runtime_config(force=True, now=0.0))
        self.sync.assert_awaited_once_with({}, source="startup")


class TradeRecordTests(unittest.IsolatedAsyncioTestCase):
    def _trade(self, status: str) -> dict[str, object]:
        return {
            "order_id": "ord-1",
            "pair": "ETH/USDC",
            "status": status,
            "direction": "BUY_VENUE_SELL_REFERENCE",
            "spread_bps": "612.2",
            "gas_cost_usd": "7.35",
            "pnl_usd": "137.65",
            "amount_out_min": 2_100_000_000_000_000_000,
        }

    async def test_filled_trade_updates_pair_totals(self) -> None:
        gateway = _gateway()

        await gateway.record_trade(trade=self._trade("dry_run"), trade_id="ord-1")

        gateway._trades_collection_ref.document.assert_called_once_with("ord-1")
        stored = gateway._trades_collection_ref.document.return_value.set.call_args.args[0]
        self.assertEqual(stored["bot_id"], "arb-test-dryrun")
        self.assertEqual(stored["pnl_usd"], "137.65")

        gateway._metrics_collection_ref.document.assert_called_once_with("ETH-USDC")
        totals = gateway._metrics_collection_ref.document.return_value.set.call_args.args[0]
        self.assertIsInstance(totals["executions"], firestore.Increment)
        self.assertEqual(list(totals["executions_by_direction"]), ["BUY_VENUE_SELL_REFERENCE"])
        self.assertEqual(totals["last_order_id"], "ord-1")

        daily_id = gateway._pnl_daily_collection_ref.document.call_args.args[0]
        self.assertTrue(daily_id.endswith("_ETH-USDC"))

    async def test_failed_trade_only_counts_an_attempt(self) -> None:
        gateway = _gateway()

        await gateway.record_trade(trade=self._trade("failed"))

        totals = gateway._metrics_collection_ref.document.return_value.set.call_args.args[0]
        self.assertIn("attempts", totals)
        self.assertNotIn("executions", totals)
        self.assertNotIn("expected_pnl_usd_total", totals)

    async def test_trade_write_failure_skips_totals(self) -> None:
        gateway = _gateway()
        gateway._trades_collection_ref.document.return_value.set.side_effect = RuntimeError("unavailable")

        await gateway.record_trade(trade=self._trade("dry_run"))

        gateway._metrics_collection_ref.document.assert_not_called()


if __name__ == "__main__":
    unittest.main()
