from __future__ import annotations

import logging
import time
from decimal import ROUND_DOWN, Decimal
from typing import Any, Iterable

from arb_agent.common import log_event

from .arbitrage import build_decision, evaluate_spread
from .errors import InvalidDirection
from .types import (
    Decision,
    Direction,
    ExecutionResult,
    GasPriceSource,
    OrderExecutor,
    PairConfig,
    ReferencePrice,
    RuntimeConfig,
    SpreadObservation,
    TradeCandidate,
    VenuePriceSource,
    VenueQuote,
    build_idempotency_key,
    now_iso,
)


def _floor_int(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def size_trade(pair: PairConfig, direction: Direction, venue_price: Decimal) -> tuple[int, int]:
    """Return ``(amount_in, amount_out_min)`` in smallest units for a direction.

    Buying on the venue spends the configured quote amount; selling spends the
    configured base amount. The minimum output is the venue-price conversion
    less ``pair.slippage_bps``, rounded down.
    """
    slippage = (Decimal(10_000) - Decimal(pair.slippage_bps)) / Decimal(10_000)

    if direction is Direction.BUY_VENUE_SELL_REFERENCE:
        amount_in = pair.quote_trade_amount
        quote_in = Decimal(amount_in).scaleb(-pair.quote_decimals)
        expected_base = (quote_in / venue_price).scaleb(pair.base_decimals)
        return amount_in, _floor_int(expected_base * slippage)

    if direction is Direction.SELL_VENUE_BUY_REFERENCE:
        amount_in = pair.base_trade_amount
        base_in = Decimal(amount_in).scaleb(-pair.base_decimals)
        expected_quote = (base_in * venue_price).scaleb(pair.quote_decimals)
        return amount_in, _floor_int(expected_quote * slippage)

    raise InvalidDirection("Cannot size a NO_OP trade")


class TraderEngine:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        watcher: VenuePriceSource,
        gas_oracle: GasPriceSource,
        executor: OrderExecutor,
    ) -> None:
        self._logger = logger
        self.watcher = watcher
        self.gas_oracle = gas_oracle
        self.executor = executor

    async def healthcheck(self) -> None:
        for dependency in (self.watcher, self.gas_oracle, self.executor):
            check = getattr(dependency, "healthcheck", None)
            if check is not None:
                await check()

    async def observe(
        self,
        *,
        pair: PairConfig,
        runtime_config: RuntimeConfig,
        venue: str | None = None,
        now: float | None = None,
    ) -> SpreadObservation:
        reference = self._fresh_reference(runtime_config, now)
        quote = await self.watcher.fetch_venue_price(pair, venue)
        return self._observation(pair=pair, quote=quote, reference=reference, runtime_config=runtime_config)

    async def scan(
        self,
        *,
        pair: PairConfig,
        runtime_config: RuntimeConfig,
        venues: Iterable[str],
        now: float | None = None,
    ) -> SpreadObservation:
        """Quote every venue and keep the one furthest from the reference price."""
        reference = self._fresh_reference(runtime_config, now)
        scan = await self.watcher.fetch_all_venue_prices(pair, venues)
        if not scan.quotes:
            raise RuntimeError(f"No venue returned a quote: {scan.failures}")

        observations = [
            self._observation(pair=pair, quote=quote, reference=reference, runtime_config=runtime_config)
            for quote in scan.quotes
        ]
        return max(observations, key=lambda observation: abs(observation.spread_bps))

    @staticmethod
    def _fresh_reference(runtime_config: RuntimeConfig, now: float | None) -> ReferencePrice:
        reference = runtime_config.reference_price()
        reference.ensure_fresh(
            now=time.time() if now is None else now,
            max_age_seconds=runtime_config.reference_max_age_seconds,
        )
        return reference

    @staticmethod
    def _observation(
        *,
        pair: PairConfig,
        quote: VenueQuote,
        reference: ReferencePrice,
        runtime_config: RuntimeConfig,
    ) -> SpreadObservation:
        evaluation = evaluate_spread(quote.price, reference.value, runtime_config.min_spread_bps)
        return SpreadObservation(
            pair=pair.symbol,
            venue=quote.venue,
            timestamp=now_iso(),
            venue_price=quote.price,
            reference=reference,
            evaluation=evaluation,
            quote=quote.raw,
        )

    def build_candidate(
        self,
        *,
        pair: PairConfig,
        observation: SpreadObservation,
        gas_used: int,
        gas_price_wei: int,
    ) -> TradeCandidate:
        amount_in, amount_out_min = size_trade(pair, observation.direction, observation.venue_price)
        return TradeCandidate(
            direction=observation.direction,
            amount_in=amount_in,
            amount_out_min=amount_out_min,
            reference_price_usd=observation.reference.value,
            gas_used=gas_used,
            gas_price_wei=gas_price_wei,
        )

    async def decide(
        self,
        *,
        pair: PairConfig,
        observation: SpreadObservation,
        runtime_config: RuntimeConfig,
    ) -> Decision:
        if not observation.profitable:
            raise InvalidDirection("decide() requires an observation past the spread threshold")

        # Gas is simulated against the sized trade before its price is known.
        draft = self.build_candidate(pair=pair, observation=observation, gas_used=0, gas_price_wei=0)
        gas_used = await self.executor.simulate(candidate=draft, pair=pair)
        gas_price_wei = await self.gas_oracle.gas_price_wei()

        candidate = self.build_candidate(
            pair=pair,
            observation=observation,
            gas_used=gas_used,
            gas_price_wei=gas_price_wei,
        )
        decision = build_decision(candidate, runtime_config.min_profit_usd, decimals=pair.decimals)

        log_event(
            self._logger,
            level="info",
            event="decision_built",
            message="Arbitrage decision built",
            pair=pair.symbol,
            venue=observation.venue,
            spread_bps=str(observation.spread_bps),
            direction=decision.direction.value,
            net_profit_usd=str(decision.net_profit_usd),
            executable=decision.executable,
            decision=decision.to_dict(),
        )
        return decision

    @staticmethod
    def build_idempotency_key(*, pair: PairConfig, decision: Decision) -> str:
        return build_idempotency_key(pair=pair, decision=decision)

    async def execute(
        self,
        *,
        pair: PairConfig,
        decision: Decision,
        runtime_config: RuntimeConfig,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        return await self.executor.execute(
            decision=decision,
            pair=pair,
            idempotency_key=idempotency_key,
            lock_ttl_seconds=runtime_config.order_guard_ttl_seconds,
            metadata=metadata,
        )
