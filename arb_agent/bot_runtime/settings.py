from __future__ import annotations

import os
from dataclasses import dataclass

from arb_agent.trading.types import to_bool, to_float, to_int


def parse_venues(value: str | None) -> tuple[str, ...]:
    venues: list[str] = []
    for part in (value or "").split(","):
        venue = part.strip()
        if venue and venue not in venues:
            venues.append(venue)
    return tuple(venues)


@dataclass(slots=True)
class AppSettings:
    watch_interval_seconds: float
    error_backoff_seconds: float
    quote_api_url: str
    quote_api_key: str
    quote_venues: tuple[str, ...]
    rpc_url: str
    swap_service_url: str
    swap_service_api_key: str
    dry_run: bool
    dry_run_gas_estimate: int
    live_execution_cooldown_seconds: float
    live_execution_window_seconds: float
    live_max_executions_per_window: int
    live_max_consecutive_execution_errors: int
    live_execution_circuit_breaker_seconds: float

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            watch_interval_seconds=max(0.05, to_float(os.getenv("WATCH_INTERVAL_SECONDS"), 5.0)),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
            quote_api_url=os.getenv("QUOTE_API_URL", "").strip(),
            quote_api_key=os.getenv("QUOTE_API_KEY", "").strip(),
            quote_venues=parse_venues(os.getenv("QUOTE_VENUES")),
            rpc_url=os.getenv("RPC_URL", "").strip(),
            swap_service_url=os.getenv("SWAP_SERVICE_URL", "").strip(),
            swap_service_api_key=os.getenv("SWAP_SERVICE_API_KEY", "").strip(),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            dry_run_gas_estimate=max(0, to_int(os.getenv("DRY_RUN_GAS_ESTIMATE"), 150_000)),
            live_execution_cooldown_seconds=max(
                0.0,
                to_float(os.getenv("LIVE_EXECUTION_COOLDOWN_SECONDS"), 5.0),
            ),
            live_execution_window_seconds=max(
                1.0,
                to_float(os.getenv("LIVE_EXECUTION_WINDOW_SECONDS"), 60.0),
            ),
            live_max_executions_per_window=max(
                1,
                to_int(os.getenv("LIVE_MAX_EXECUTIONS_PER_WINDOW"), 5),
            ),
            live_max_consecutive_execution_errors=max(
                1,
                to_int(os.getenv("LIVE_MAX_CONSECUTIVE_EXECUTION_ERRORS"), 3),
            ),
            live_execution_circuit_breaker_seconds=max(
                1.0,
                to_float(os.getenv("LIVE_EXECUTION_CIRCUIT_BREAKER_SECONDS"), 120.0),
            ),
        )
