from __future__ import annotations

import logging
import unittest
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, patch

from arb_agent.trading.arbitrage import build_decision
from arb_agent.trading.executors import (
    DryRunOrderExecutor,
    SwapServiceError,
    SwapServiceExecutor,
    swap_request_payload,
)
from arb_agent.trading.types import Direction, PairConfig, TradeCandidate, build_idempotency_key


class InMemoryOrderStore:
    def __init__(self) -> None:
        self.guards: dict[str, str] = {}
        self.records: dict[str, list[tuple[str, dict[str, Any] | None]]] = {}

    async def acquire_order_guard(self, *, guard_key: str, order_id: str, ttl_seconds: int) -> bool:
        if guard_key in self.guards:
            return False
        self.guards[guard_key] = order_id
        return True

    async def get_order_guard(self, *, guard_key: str) -> dict[str, Any] | None:
        order_id = self.guards.get(guard_key)
        return {"order_id": order_id, "ttl_seconds": 10} if order_id else None

    async def release_order_guard(self, *, guard_key: str, order_id: str) -> bool:
        if self.guards.get(guard_key) != order_id:
            return False
        del self.guards[guard_key]
        return True

    async def record_order_state(
        self,
        *,
        order_id: str,
        status: str,
        ttl_seconds: int,
        payload: dict[str, Any] | None = None,
        guard_key: str | None = None,
    ) -> None:
        self.records.setdefault(order_id, []).append((status, payload))


def _make_pair() -> PairConfig:
    return PairConfig(
        symbol="ETH/USDC",
        base_token="0x0000000000000000000000000000000000000000",
        quote_token="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        base_decimals=18,
        quote_decimals=6,
        native_decimals=18,
        base_trade_amount=10**17,
        quote_trade_amount=5_000 * 10**6,
        slippage_bps=50,
    )


def _decision(*, amount_out_min: int = 2_100_000_000_000_000_000):
    candidate = TradeCandidate(
        direction=Direction.BUY_VENUE_SELL_REFERENCE,
        amount_in=5_000 * 10**6,
        amount_out_min=amount_out_min,
        reference_price_usd=Decimal("2450"),
        gas_used=150_000,
        gas_price_wei=20 * 10**9,
    )
    return build_decision(candidate, 5, now=datetime(2026, 3, 1, tzinfo=timezone.utc))


class DryRunExecutorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = InMemoryOrderStore()
        self.executor = DryRunOrderExecutor(
            logger=logging.getLogger("test.executor"),
            order_store=self.store,
            gas_estimate=123_456,
        )
        self.pair = _make_pair()

    async def test_simulate_returns_configured_estimate(self) -> None:
        decision = _decision()
        candidate = TradeCandidate(
            direction=decision.direction,
            amount_in=decision.amount_in,
            amount_out_min=decision.amount_out_min,
            reference_price_usd=decision.reference_price_usd,
            gas_used=0,
            gas_price_wei=0,
        )
        self.assertEqual(await self.executor.simulate(candidate=candidate, pair=self.pair), 123_456)

    async def test_execute_records_and_releases_guard(self) -> None:
        decision = _decision()
        key = build_idempotency_key(pair=self.pair, decision=decision)

        result = await self.executor.execute(
            decision=decision,
            pair=self.pair,
            idempotency_key=key,
            lock_ttl_seconds=30,
        )

        self.assertEqual(result.status, "dry_run")
        self.assertIsNone(result.tx_hash)
        self.assertEqual(self.store.guards, {})
        statuses = [status for status, _ in self.store.records[result.order_id]]
        self.assertEqual(statuses, ["pending", "dry_run"])

    async def test_active_guard_skips_duplicate(self) -> None:
        decision = _decision()
        key = build_idempotency_key(pair=self.pair, decision=decision)
        self.store.guards[key] = "ord-existing"

        result = await self.executor.execute(
            decision=decision,
            pair=self.pair,
            idempotency_key=key,
            lock_ttl_seconds=30,
        )

        self.assertEqual(result.status, "skipped_duplicate")
        self.assertEqual(result.order_id, "ord-existing")
        self.assertEqual(self.store.guards[key], "ord-existing")
        self.assertEqual(self.store.records, {})

    async def test_non_executable_decision_is_refused(self) -> None:
        decision = _decision(amount_out_min=2 * 10**18)
        self.assertFalse(decision.executable)

        with self.assertRaises(ValueError):
            await self.executor.execute(
                decision=decision,
                pair=self.pair,
                idempotency_key="key",
                lock_ttl_seconds=30,
            )
        self.assertEqual(self.store.records, {})

    def test_idempotency_key_is_stable_for_same_decision(self) -> None:
        decision = _decision()
        self.assertEqual(
            build_idempotency_key(pair=self.pair, decision=decision),
            build_idempotency_key(pair=self.pair, decision=replace(decision)),
        )
        later = replace(decision, timestamp=datetime(2026, 3, 1, 0, 0, 1, tzinfo=timezone.utc))
        self.assertNotEqual(
            build_idempotency_key(pair=self.pair, decision=decision),
            build_idempotency_key(pair=self.pair, decision=later),
        )


class _FakeResponse:
    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self._body = body

    async def text(self) -> str:
        return self._body

    async def __aenter__(self) -> "_FakeResponse":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        return None


class _FakeSession:
    def __init__(self, response: _FakeResponse) -> None:
        self._response = response
        self.calls: list[tuple[str, str]] = []

    def request(self, method: str, url: str, *, json: dict[str, Any] | None = None) -> _FakeResponse:
        self.calls.append((method, url))
        return self._response

    async def close(self) -> None:
        return None


class SwapServiceExecutorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = InMemoryOrderStore()
        self.executor = SwapServiceExecutor(
            logger=logging.getLogger("test.executor"),
            service_url="https://swap.example.com/",
            order_store=self.store,
        )
        self.pair = _make_pair()

    async def test_request_decodes_json_object(self) -> None:
        session = _FakeSession(_FakeResponse(200, '{"status": "ok"}'))
        self.executor._http_session = session  # type: ignore[assignment]

        self.assertEqual(await self.executor._request("GET", "/health"), {"status": "ok"})
        self.assertEqual(session.calls, [("GET", "https://swap.example.com/health")])

    async def test_non_json_responses_raise_swap_service_error(self) -> None:
        for status in (200, 502):
            with self.subTest(status=status):
                self.executor._http_session = _FakeSession(  # type: ignore[assignment]
                    _FakeResponse(status, "<html>Bad Gateway</html>")
                )
                with self.assertRaises(SwapServiceError) as context:
                    await self.executor._request("POST", "/swap", {})
                self.assertEqual(context.exception.status, status)

    async def test_error_status_reports_service_error(self) -> None:
        self.executor._http_session = _FakeSession(  # type: ignore[assignment]
            _FakeResponse(409, '{"error": "duplicate order"}')
        )
        with self.assertRaises(SwapServiceError) as context:
            await self.executor._request("POST", "/swap", {})
        self.assertEqual(context.exception.status, 409)
        self.assertIn("duplicate order", str(context.exception))

    async def test_submit_returns_tx_hash(self) -> None:
        request = AsyncMock(return_value={"txHash": "0xabc", "gasUsed": 140_000})
        with patch.object(self.executor, "_request", request):
            result = await self.executor.execute(
                decision=_decision(),
                pair=self.pair,
                idempotency_key="key-1",
                lock_ttl_seconds=30,
            )

        self.assertEqual(result.status, "submitted")
        self.assertEqual(result.tx_hash, "0xabc")
        method, path, payload = request.await_args.args
        self.assertEqual((method, path), ("POST", "/swap"))
        self.assertEqual(payload["tokenIn"], self.pair.quote_token)
        self.assertEqual(payload["tokenOut"], self.pair.base_token)
        self.assertEqual(payload["idempotencyKey"], "key-1")
        self.assertEqual(self.store.guards, {})

    async def test_submit_failure_marks_order_failed_and_releases_guard(self) -> None:
        with patch.object(self.executor, "_request", AsyncMock(side_effect=SwapServiceError("boom", status=500))):
            with self.assertRaises(SwapServiceError):
                await self.executor.execute(
                    decision=_decision(),
                    pair=self.pair,
                    idempotency_key="key-2",
                    lock_ttl_seconds=30,
                )

        self.assertEqual(self.store.guards, {})
        (records,) = self.store.records.values()
        self.assertEqual([status for status, _ in records], ["pending", "failed"])

    async def test_missing_tx_hash_is_an_error(self) -> None:
        with patch.object(self.executor, "_request", AsyncMock(return_value={})):
            with self.assertRaises(SwapServiceError):
                await self.executor.execute(
                    decision=_decision(),
                    pair=self.pair,
                    idempotency_key="key-3",
                    lock_ttl_seconds=30,
                )

    async def test_simulate_reads_gas_used(self) -> None:
        decision = _decision()
        candidate = TradeCandidate(
            direction=Direction.SELL_VENUE_BUY_REFERENCE,
            amount_in=10**17,
            amount_out_min=240 * 10**6,
            reference_price_usd=decision.reference_price_usd,
            gas_used=0,
            gas_price_wei=0,
        )
        request = AsyncMock(return_value={"gasUsed": "151000"})
        with patch.object(self.executor, "_request", request):
            gas_used = await self.executor.simulate(candidate=candidate, pair=self.pair)

        self.assertEqual(gas_used, 151_000)
        _, path, payload = request.await_args.args
        self.assertEqual(path, "/simulate")
        self.assertEqual(payload["tokenIn"], self.pair.base_token)

    async def test_connect_requires_service_url(self) -> None:
        executor = SwapServiceExecutor(
            logger=logging.getLogger("test.executor"),
            service_url="",
            order_store=self.store,
        )
        with self.assertRaises(RuntimeError):
            await executor.connect()

    def test_no_op_has_no_swap_payload(self) -> None:
        with self.assertRaises(ValueError):
            swap_request_payload(pair=self.pair, direction=Direction.NO_OP, amount_in=1, amount_out_min=1)


if __name__ == "__main__":
    unittest.main()
