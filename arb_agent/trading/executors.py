from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from arb_agent.common import log_event, sanitize_text

from .types import (
    Decision,
    Direction,
    ExecutionResult,
    OrderGuardStore,
    PairConfig,
    TradeCandidate,
    make_order_id,
    to_int,
)

DEFAULT_DRY_RUN_GAS_ESTIMATE = 150_000


def _preview(text: str, *, limit: int = 240) -> str:
    return sanitize_text(" ".join(text.split())[:limit])


class SwapServiceError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def swap_tokens(pair: PairConfig, direction: Direction) -> tuple[str, str]:
    if direction is Direction.BUY_VENUE_SELL_REFERENCE:
        return pair.quote_token, pair.base_token
    if direction is Direction.SELL_VENUE_BUY_REFERENCE:
        return pair.base_token, pair.quote_token
    raise ValueError("NO_OP has no swap leg")


def swap_request_payload(
    *,
    pair: PairConfig,
    direction: Direction,
    amount_in: int,
    amount_out_min: int,
) -> dict[str, Any]:
    token_in, token_out = swap_tokens(pair, direction)
    return {
        "pair": pair.symbol,
        "direction": direction.value,
        "tokenIn": token_in,
        "tokenOut": token_out,
        "amountIn": str(amount_in),
        "amountOutMin": str(amount_out_min),
    }


class _GuardedExecutor:
    mode = "guarded"

    def __init__(self, *, logger: logging.Logger, order_store: OrderGuardStore | None = None) -> None:
        self._logger = logger
        self._order_store = order_store

    async def _submit(
        self,
        *,
        decision: Decision,
        pair: PairConfig,
        idempotency_key: str,
        order_id: str,
    ) -> ExecutionResult:
        raise NotImplementedError

    async def execute(
        self,
        *,
        decision: Decision,
        pair: PairConfig,
        idempotency_key: str,
        lock_ttl_seconds: int,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        if not decision.executable:
            raise ValueError("Refusing to execute a non-executable decision.")

        order_id = make_order_id(idempotency_key)
        record_ttl_seconds = max(lock_ttl_seconds * 30, 300)
        acquired_guard = False

        if self._order_store is not None:
            acquired_guard = await self._order_store.acquire_order_guard(
                guard_key=idempotency_key,
                order_id=order_id,
                ttl_seconds=lock_ttl_seconds,
            )
            if not acquired_guard:
                existing = await self._order_store.get_order_guard(guard_key=idempotency_key)
                existing_order_id = str(existing.get("order_id")) if existing else order_id
                return ExecutionResult(
                    status="skipped_duplicate",
                    tx_hash=None,
                    reason="idempotency guard is active",
                    order_id=existing_order_id,
                    idempotency_key=idempotency_key,
                    metadata={"existing_guard": existing or {}},
                )

            await self._order_store.record_order_state(
                order_id=order_id,
                status="pending",
                ttl_seconds=record_ttl_seconds,
                guard_key=idempotency_key,
                payload={"decision": decision.to_dict(), "mode": self.mode, "metadata": metadata or {}},
            )

        try:
            result = await self._submit(
                decision=decision,
                pair=pair,
                idempotency_key=idempotency_key,
                order_id=order_id,
            )
        except Exception as error:
            if self._order_store is not None:
                await self._order_store.record_order_state(
                    order_id=order_id,
                    status="failed",
                    ttl_seconds=record_ttl_seconds,
                    guard_key=idempotency_key,
                    payload={"error": str(error)},
                )
            raise
        finally:
            if acquired_guard and self._order_store is not None:
                await self._order_store.release_order_guard(guard_key=idempotency_key, order_id=order_id)

        if self._order_store is not None:
            await self._order_store.record_order_state(
                order_id=order_id,
                status=result.status,
                ttl_seconds=record_ttl_seconds,
                guard_key=idempotency_key,
                payload=result.to_dict(),
            )
        return result


class DryRunOrderExecutor(_GuardedExecutor):
    mode = "dry_run"

    def __init__(
        self,
        *,
        logger: logging.Logger,
        order_store: OrderGuardStore | None = None,
        gas_estimate: int = DEFAULT_DRY_RUN_GAS_ESTIMATE,
    ) -> None:
        super().__init__(logger=logger, order_store=order_store)
        self._gas_estimate = max(0, gas_estimate)

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def healthcheck(self) -> None:
        return None

    async def simulate(self, *, candidate: TradeCandidate, pair: PairConfig) -> int:
        return self._gas_estimate

    async def _submit(
        self,
        *,
        decision: Decision,
        pair: PairConfig,
        idempotency_key: str,
        order_id: str,
    ) -> ExecutionResult:
        log_event(
            self._logger,
            level="info",
            event="order_dry_run",
            message="Dry-run execution",
            pair=pair.symbol,
            direction=decision.direction.value,
            net_profit_usd=str(decision.net_profit_usd),
            idempotency_key=idempotency_key,
            order_id=order_id,
        )
        return ExecutionResult(
            status="dry_run",
            tx_hash=None,
            reason="DRY_RUN is enabled",
            order_id=order_id,
            idempotency_key=idempotency_key,
            metadata={"decision": decision.to_dict()},
        )


class SwapServiceExecutor(_GuardedExecutor):
    """Delegates calldata, signing and submission to an external swap service."""

    mode = "live"

    def __init__(
        self,
        *,
        logger: logging.Logger,
        service_url: str,
        api_key: str | None = None,
        order_store: OrderGuardStore | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__(logger=logger, order_store=order_store)
        self._service_url = service_url.rstrip("/")
        self._api_key = (api_key or "").strip()
        self._timeout_seconds = timeout_seconds
        self._http_session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if not self._service_url:
            raise RuntimeError("SWAP_SERVICE_URL is required when DRY_RUN is disabled.")
        if self._order_store is None:
            raise RuntimeError("Order guard store is required for live execution.")
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            headers = {"Accept": "application/json"}
            if self._api_key:
                headers["x-api-key"] = self._api_key
            self._http_session = aiohttp.ClientSession(timeout=timeout, headers=headers)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        await self._request("GET", "/health")

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("Swap service HTTP session is not initialized.")

        async with self._http_session.request(method, f"{self._service_url}{path}", json=payload) as response:
            status = response.status
            text = await response.text()

        try:
            body = json.loads(text)
        except json.JSONDecodeError as error:
            if status >= 400:
                raise SwapServiceError(
                    f"Swap service {path} failed: status={status} body={_preview(text)!r}",
                    status=status,
                ) from error
            raise SwapServiceError(
                f"Swap service {path} returned non-JSON response: body={_preview(text)!r}",
                status=status,
            ) from error

        if status >= 400:
            detail = body.get("error") if isinstance(body, dict) else body
            raise SwapServiceError(f"Swap service {path} failed: status={status} error={detail}", status=status)
        if not isinstance(body, dict):
            raise SwapServiceError(f"Swap service {path} returned {type(body).__name__}, expected an object")
        return body

    async def simulate(self, *, candidate: TradeCandidate, pair: PairConfig) -> int:
        body = await self._request(
            "POST",
            "/simulate",
            swap_request_payload(
                pair=pair,
                direction=candidate.direction,
                amount_in=candidate.amount_in,
                amount_out_min=candidate.amount_out_min,
            ),
        )
        gas_used = to_int(body.get("gasUsed"), -1)
        if gas_used < 0:
            raise SwapServiceError(f"Swap simulation returned no gas estimate: {body}")
        return gas_used

    async def _submit(
        self,
        *,
        decision: Decision,
        pair: PairConfig,
        idempotency_key: str,
        order_id: str,
    ) -> ExecutionResult:
        payload = swap_request_payload(
            pair=pair,
            direction=decision.direction,
            amount_in=decision.amount_in,
            amount_out_min=decision.amount_out_min,
        )
        payload["idempotencyKey"] = idempotency_key
        payload["orderId"] = order_id

        body = await self._request("POST", "/swap", payload)
        tx_hash = str(body.get("txHash") or "").strip()
        if not tx_hash:
            raise SwapServiceError(f"Swap service returned no transaction hash: {body}")

        log_event(
            self._logger,
            level="info",
            event="order_submitted",
            message="Swap submitted",
            pair=pair.symbol,
            direction=decision.direction.value,
            tx_hash=tx_hash,
            order_id=order_id,
        )
        return ExecutionResult(
            status="submitted",
            tx_hash=tx_hash,
            reason="swap submitted",
            order_id=order_id,
            idempotency_key=idempotency_key,
            metadata={"decision": decision.to_dict(), "gas_used": body.get("gasUsed")},
        )
