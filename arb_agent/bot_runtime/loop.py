from __future__ import annotations

import asyncio
import logging

from arb_agent.common import guarded_call, log_event, wait_with_stop
from arb_agent.storage import StorageGateway
from arb_agent.trading import (
    Decision,
    ExecutionResult,
    PairConfig,
    QuoteRateLimitError,
    RuntimeConfig,
    SpreadObservation,
    StaleReferencePriceError,
    TraderEngine,
)

from .loop_helpers import (
    ExecutionGuard,
    bootstrap_dependencies,
    compute_rate_limit_backoff_seconds,
    try_resume_order_intake,
)
from .settings import AppSettings


def build_trade_record(
    *,
    pair: PairConfig,
    observation: SpreadObservation,
    decision: Decision,
    result: ExecutionResult,
    runtime_config: RuntimeConfig,
) -> dict[str, object]:
    return {
        "order_id": result.order_id,
        "idempotency_key": result.idempotency_key,
        "pair": pair.symbol,
        "venue": observation.venue,
        "status": result.status,
        "reason": result.reason,
        "tx_hash": result.tx_hash,
        "direction": decision.direction.value,
        "spread_bps": str(observation.spread_bps),
        "venue_price": str(observation.venue_price),
        "reference_price_usd": str(decision.reference_price_usd),
        "gas_cost_usd": str(decision.gas_cost_usd),
        "pnl_usd": str(decision.net_profit_usd),
        "config_schema_version": runtime_config.config_schema_version,
        "decision": decision.to_dict(),
        "metadata": result.metadata,
    }


async def _execute_decision(
    *,
    logger: logging.Logger,
    loop: asyncio.AbstractEventLoop,
    storage: StorageGateway,
    trader_engine: TraderEngine,
    guard: ExecutionGuard,
    pair: PairConfig,
    observation: SpreadObservation,
    decision: Decision,
    runtime_config: RuntimeConfig,
) -> None:
    now_time = loop.time()
    blocked = guard.blocked_reason(now_time)
    if blocked is not None:
        event, fields = blocked
        log_event(
            logger,
            level="warning",
            event=event,
            message="Execution skipped by execution guard",
            pair=pair.symbol,
            **fields,
        )
        return

    idempotency_key = trader_engine.build_idempotency_key(pair=pair, decision=decision)
    guard.record_attempt(now_time)
    try:
        result = await trader_engine.execute(
            pair=pair,
            decision=decision,
            runtime_config=runtime_config,
            idempotency_key=idempotency_key,
            metadata={"venue": observation.venue, "spread_bps": str(observation.spread_bps)},
        )
    except Exception as error:
        opened = guard.record_error(loop.time())
        log_event(
            logger,
            level="warning",
            event="execution_attempt_failed",
            message="Execution attempt failed",
            error=str(error),
            consecutive_errors=guard.consecutive_errors,
            threshold=guard.max_consecutive_errors,
        )
        if opened:
            log_event(
                logger,
                level="warning",
                event="execution_circuit_breaker_opened",
                message="Execution circuit breaker opened after repeated execution errors",
                error=str(error),
                cooldown_seconds=guard.circuit_breaker_seconds,
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="WARNING",
                    event="execution_circuit_breaker_opened",
                    message="Execution circuit breaker opened",
                    details={
                        "pair": pair.symbol,
                        "error": str(error),
                        "cooldown_seconds": guard.circuit_breaker_seconds,
                    },
                ),
                logger=logger,
                event="execution_circuit_publish_failed",
                message="Failed to publish execution circuit breaker event",
            )
        return

    guard.record_success()
    await storage.record_position(
        {
            "pair": pair.symbol,
            "status": result.status,
            "reason": result.reason,
            "direction": decision.direction.value,
            "net_profit_usd": decision.net_profit_usd,
            "order_id": result.order_id,
            "tx_hash": result.tx_hash or "",
        }
    )
    await storage.record_trade(
        trade=build_trade_record(
            pair=pair,
            observation=observation,
            decision=decision,
            result=result,
            runtime_config=runtime_config,
        ),
        trade_id=result.order_id,
    )
    if storage.settings.firestore_publish_order_execution_events:
        await storage.publish_event(
            level="INFO",
            event="order_execution",
            message="Order execution attempted",
            details={"pair": pair.symbol, "execution": result.to_dict()},
            event_id=f"order_execution:{result.order_id}",
        )


async def run_trading_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    pair: PairConfig,
    runtime_defaults: RuntimeConfig,
    trader_engine: TraderEngine,
) -> None:
    loop = asyncio.get_running_loop()
    next_tick = loop.time()

    order_intake_paused = False
    pause_reason = ""
    rate_limited_count = 0
    guard = ExecutionGuard.from_settings(app_settings)

    while not stop_event.is_set():
        transient_backoff_seconds = 0.0

        try:
            if order_intake_paused:
                recovered = await try_resume_order_intake(
                    logger=logger,
                    storage=storage,
                    trader_engine=trader_engine,
                    pause_reason=pause_reason,
                )
                if not recovered:
                    await guarded_call(
                        storage.update_heartbeat,
                        logger=logger,
                        event="order_intake_paused_heartbeat_failed",
                        message="Failed to update heartbeat while intake is paused",
                    )
                    continue

                order_intake_paused = False
                pause_reason = ""
                await guarded_call(
                    lambda: storage.publish_event(
                        level="INFO",
                        event="order_intake_resumed",
                        message="Order intake resumed after successful recovery",
                        details={"pair": pair.symbol},
                        event_id=f"order_intake_resumed:{storage.run_id}",
                    ),
                    logger=logger,
                    event="order_intake_resumed_publish_failed",
                    message="Failed to publish order_intake_resumed event",
                )

            await guarded_call(
                storage.refresh_runtime_config,
                logger=logger,
                event="config_refresh_failed",
                message="Failed to refresh runtime config; keeping the cached copy",
            )
            redis_config = await storage.get_runtime_config()
            runtime_config = RuntimeConfig.from_redis(redis_config, runtime_defaults)

            if app_settings.quote_venues:
                observation = await trader_engine.scan(
                    pair=pair,
                    runtime_config=runtime_config,
                    venues=app_settings.quote_venues,
                )
            else:
                observation = await trader_engine.observe(pair=pair, runtime_config=runtime_config)
            rate_limited_count = 0

            await storage.record_price(observation)
            await storage.record_spread(observation, min_spread_bps=runtime_config.min_spread_bps)
            await storage.update_heartbeat()

            if not observation.profitable:
                continue

            decision = await trader_engine.decide(
                pair=pair,
                observation=observation,
                runtime_config=runtime_config,
            )
            await storage.record_decision(pair=pair.symbol, decision=decision)

            if not decision.executable:
                log_event(
                    logger,
                    level="info",
                    event="opportunity_below_min_profit",
                    message="Spread passed threshold but net profit is below minimum",
                    pair=pair.symbol,
                    venue=observation.venue,
                    net_profit_usd=str(decision.net_profit_usd),
                    min_profit_usd=str(decision.min_profit_usd),
                )
                continue

            if not runtime_config.trade_enabled:
                log_event(
                    logger,
                    level="info",
                    event="opportunity_detected",
                    message="Opportunity detected while trade is disabled",
                    pair=pair.symbol,
                    venue=observation.venue,
                    direction=decision.direction.value,
                    net_profit_usd=str(decision.net_profit_usd),
                )
                continue

            await _execute_decision(
                logger=logger,
                loop=loop,
                storage=storage,
                trader_engine=trader_engine,
                guard=guard,
                pair=pair,
                observation=observation,
                decision=decision,
                runtime_config=runtime_config,
            )

        except QuoteRateLimitError as error:
            rate_limited_count += 1
            transient_backoff_seconds = max(
                app_settings.error_backoff_seconds,
                error.retry_after_seconds or 0.0,
                compute_rate_limit_backoff_seconds(rate_limited_count=rate_limited_count),
            )
            log_event(
                logger,
                level="warning",
                event=f"{error.provider}_rate_limited",
                message="Quote API rate-limited; keeping order intake active and backing off",
                error=str(error),
                backoff_seconds=round(transient_backoff_seconds, 3),
                rate_limited_count=rate_limited_count,
            )
            await guarded_call(
                storage.update_heartbeat,
                logger=logger,
                event="rate_limited_heartbeat_failed",
                message="Failed to update heartbeat during rate-limit backoff",
            )
        except StaleReferencePriceError as error:
            log_event(
                logger,
                level="warning",
                event="reference_price_stale",
                message="Skipping cycle because the reference price is stale",
                error=str(error),
                age_seconds=error.age_seconds,
                max_age_seconds=error.max_age_seconds,
            )
            await guarded_call(
                storage.update_heartbeat,
                logger=logger,
                event="stale_reference_heartbeat_failed",
                message="Failed to update heartbeat while reference price is stale",
            )
        except Exception as error:
            pause_reason = str(error)
            order_intake_paused = True

            log_event(
                logger,
                level="exception",
                event="main_loop_error",
                message="Main loop failed and order intake has been paused",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.record_position(
                    {
                        "pair": pair.symbol,
                        "status": "order_intake_paused",
                        "reason": pause_reason,
                    }
                ),
                logger=logger,
                event="main_loop_pause_position_record_failed",
                message="Failed to record paused position state",
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="order_intake_paused",
                    message="Order intake paused due to dependency or runtime error",
                    details={"error": str(error), "pair": pair.symbol},
                ),
                logger=logger,
                event="main_loop_pause_publish_failed",
                message="Failed to publish order_intake_paused event",
            )
        finally:
            next_tick += app_settings.watch_interval_seconds
            now = loop.time()
            if next_tick <= now:
                missed_cycles = int((now - next_tick) / app_settings.watch_interval_seconds) + 1
                next_tick += missed_cycles * app_settings.watch_interval_seconds

            delay_seconds = max(0.0, next_tick - now)
            if order_intake_paused:
                delay_seconds = max(delay_seconds, app_settings.error_backoff_seconds)
            if transient_backoff_seconds > 0:
                delay_seconds = max(delay_seconds, transient_backoff_seconds)

            await wait_with_stop(stop_event, delay_seconds)


__all__ = [
    "bootstrap_dependencies",
    "build_trade_record",
    "run_trading_loop",
]
