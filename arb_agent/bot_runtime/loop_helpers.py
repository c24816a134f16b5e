from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from typing import Any, TYPE_CHECKING

from arb_agent.common import guarded_call, log_event, wait_with_stop

if TYPE_CHECKING:
    from arb_agent.storage import StorageGateway
    from arb_agent.trading import TraderEngine
    from .settings import AppSettings


def compute_rate_limit_backoff_seconds(*, rate_limited_count: int) -> float:
    if rate_limited_count <= 0:
        return 0.0
    base_seconds = min(30.0, float(2 ** max(0, rate_limited_count - 1)))
    jitter_seconds = random.uniform(0.0, max(0.1, base_seconds * 0.25))
    return min(30.0, base_seconds + jitter_seconds)


class ExecutionGuard:
    """Circuit breaker, cooldown and per-window cap for order submission.

    Times are loop-clock seconds supplied by the caller.
    """

    def __init__(
        self,
        *,
        cooldown_seconds: float,
        window_seconds: float,
        max_executions_per_window: int,
        max_consecutive_errors: int,
        circuit_breaker_seconds: float,
    ) -> None:
        self.cooldown_seconds = cooldown_seconds
        self.window_seconds = window_seconds
        self.max_executions_per_window = max_executions_per_window
        self.max_consecutive_errors = max_consecutive_errors
        self.circuit_breaker_seconds = circuit_breaker_seconds
        self.recent_executions: deque[float] = deque()
        self.last_execution_at: float | None = None
        self.consecutive_errors = 0
        self.circuit_open_until = 0.0

    @classmethod
    def from_settings(cls, app_settings: AppSettings) -> "ExecutionGuard":
        return cls(
            cooldown_seconds=app_settings.live_execution_cooldown_seconds,
            window_seconds=app_settings.live_execution_window_seconds,
            max_executions_per_window=app_settings.live_max_executions_per_window,
            max_consecutive_errors=app_settings.live_max_consecutive_execution_errors,
            circuit_breaker_seconds=app_settings.live_execution_circuit_breaker_seconds,
        )

    def blocked_reason(self, now: float) -> tuple[str, dict[str, Any]] | None:
        if self.circuit_open_until > now:
            return "execution_circuit_open", {"remaining_seconds": round(self.circuit_open_until - now, 3)}

        if (
            self.cooldown_seconds > 0
            and self.last_execution_at is not None
            and (now - self.last_execution_at) < self.cooldown_seconds
        ):
            return "execution_cooldown_active", {
                "cooldown_seconds": self.cooldown_seconds,
                "remaining_seconds": round(self.cooldown_seconds - (now - self.last_execution_at), 3),
            }

        while self.recent_executions and (now - self.recent_executions[0]) > self.window_seconds:
            self.recent_executions.popleft()
        if len(self.recent_executions) >= self.max_executions_per_window:
            return "execution_rate_limited", {
                "window_seconds": self.window_seconds,
                "max_executions": self.max_executions_per_window,
                "current_count": len(self.recent_executions),
            }
        return None

    def record_attempt(self, now: float) -> None:
        self.recent_executions.append(now)
        self.last_execution_at = now

    def record_success(self) -> None:
        self.consecutive_errors = 0

    def record_error(self, now: float) -> bool:
        """Count a failed execution; return True when this error opens the circuit."""
        self.consecutive_errors += 1
        if self.consecutive_errors < self.max_consecutive_errors:
            return False
        self.circuit_open_until = now + self.circuit_breaker_seconds
        self.consecutive_errors = 0
        return True


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    watcher: Any,
    gas_oracle: Any,
    executor: Any,
) -> None:
    components = (("watcher", watcher), ("gas_oracle", gas_oracle), ("executor", executor))
    while not stop_event.is_set():
        try:
            await storage.connect()
            for _, component in components:
                await component.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            for name, component in components:
                await guarded_call(
                    component.close,
                    logger=logger,
                    event=f"bootstrap_{name}_close_failed",
                    message=f"Failed to close {name} during bootstrap retry",
                )
            await guarded_call(
                storage.close,
                logger=logger,
                event="bootstrap_storage_close_failed",
                message="Failed to close storage during bootstrap retry",
            )
            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def try_resume_order_intake(
    *,
    logger: logging.Logger,
    storage: StorageGateway,
    trader_engine: TraderEngine,
    pause_reason: str,
) -> bool:
    try:
        await storage.healthcheck()
        await trader_engine.healthcheck()
        log_event(
            logger,
            level="info",
            event="order_intake_recovered",
            message="Order intake resumed after dependency recovery",
            reason=pause_reason,
        )
        return True
    except Exception as error:
        log_event(
            logger,
            level="warning",
            event="order_intake_still_paused",
            message="Order intake remains paused",
            reason=pause_reason,
            error=str(error),
        )
        return False


__all__ = [
    "ExecutionGuard",
    "bootstrap_dependencies",
    "compute_rate_limit_backoff_seconds",
    "try_resume_order_intake",
]
