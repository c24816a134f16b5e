from __future__ import annotations

import asyncio
import contextlib
import signal

from dotenv import load_dotenv

from arb_agent.bot_runtime import AppSettings, bootstrap_dependencies, run_trading_loop, setup_logger
from arb_agent.common import guarded_call, log_event
from arb_agent.storage import StorageGateway, StorageSettings
from arb_agent.trading import (
    DryRunOrderExecutor,
    JsonRpcClient,
    PairConfig,
    QuoteWatcher,
    RuntimeConfig,
    SwapServiceExecutor,
    TraderEngine,
)


async def main() -> None:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    storage_settings = StorageSettings.from_env()
    pair = PairConfig.from_env()
    runtime_defaults = RuntimeConfig.from_env_defaults()

    storage = StorageGateway(storage_settings, logger)
    watcher = QuoteWatcher(
        logger=logger,
        api_base_url=app_settings.quote_api_url,
        api_key=app_settings.quote_api_key or None,
    )
    gas_oracle = JsonRpcClient(logger=logger, rpc_url=app_settings.rpc_url)
    if app_settings.dry_run:
        executor: DryRunOrderExecutor | SwapServiceExecutor = DryRunOrderExecutor(
            logger=logger,
            order_store=storage,
            gas_estimate=app_settings.dry_run_gas_estimate,
        )
    else:
        executor = SwapServiceExecutor(
            logger=logger,
            service_url=app_settings.swap_service_url,
            api_key=app_settings.swap_service_api_key or None,
            order_store=storage,
        )

    trader_engine = TraderEngine(
        logger=logger,
        watcher=watcher,
        gas_oracle=gas_oracle,
        executor=executor,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    await bootstrap_dependencies(
        logger=logger,
        stop_event=stop_event,
        app_settings=app_settings,
        storage=storage,
        watcher=watcher,
        gas_oracle=gas_oracle,
        executor=executor,
    )

    await storage.publish_event(
        level="INFO",
        event="bot_started",
        message="Bot process started",
        details={
            "pair": pair.symbol,
            "dry_run": app_settings.dry_run,
            "venues": list(app_settings.quote_venues),
            "watch_interval_seconds": app_settings.watch_interval_seconds,
        },
    )

    stop_reason = "signal"
    try:
        await run_trading_loop(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
            pair=pair,
            runtime_defaults=runtime_defaults,
            trader_engine=trader_engine,
        )
    except Exception:
        stop_reason = "crash"
        raise
    finally:
        await guarded_call(
            lambda: storage.publish_event(
                level="INFO",
                event="bot_stopped",
                message="Bot process stopped",
                details={"reason": stop_reason, "pair": pair.symbol},
            ),
            logger=logger,
            event="shutdown_publish_failed",
            message="Failed to publish bot_stopped event",
        )
        for name, component in (("watcher", watcher), ("gas_oracle", gas_oracle), ("executor", executor)):
            await guarded_call(
                component.close,
                logger=logger,
                event=f"shutdown_{name}_close_failed",
                message=f"Failed to close {name}",
            )
        await guarded_call(
            storage.close,
            logger=logger,
            event="shutdown_storage_close_failed",
            message="Failed to close storage",
        )

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    asyncio.run(main())
