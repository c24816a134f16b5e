"""Spread evaluation and profit accounting for venue/reference arbitrage.

Everything here is pure: no I/O, no logging, no shared state. Amounts are
integers in each asset's smallest unit; prices and profits are ``Decimal``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import InvalidDirection, InvalidInput
from .types import (
    ETH_USDC_DECIMALS,
    AssetDecimals,
    Decision,
    Direction,
    SpreadEvaluation,
    TradeCandidate,
)

BPS_PER_UNIT = Decimal(10_000)


def to_decimal(value: Any, *, label: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidInput(f"{label} must be numeric, got bool")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as error:
            raise InvalidInput(f"{label} is not a number: {value!r}") from error
    else:
        raise InvalidInput(f"{label} must be numeric, got {type(value).__name__}")

    if not result.is_finite():
        raise InvalidInput(f"{label} must be finite, got {value!r}")
    return result


def _require_positive(value: Any, *, label: str) -> Decimal:
    result = to_decimal(value, label=label)
    if result <= 0:
        raise InvalidInput(f"{label} must be positive, got {result}")
    return result


def _require_non_negative(value: Any, *, label: str) -> Decimal:
    result = to_decimal(value, label=label)
    if result < 0:
        raise InvalidInput(f"{label} must be non-negative, got {result}")
    return result


def _require_int(value: Any, *, label: str, positive: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{label} must be an integer amount, got {type(value).__name__}")
    if positive and value <= 0:
        raise InvalidInput(f"{label} must be positive, got {value}")
    if value < 0:
        raise InvalidInput(f"{label} must be non-negative, got {value}")
    return value


def _scale(amount: int, decimals: int) -> Decimal:
    return Decimal(amount).scaleb(-decimals)


def evaluate_spread(venue_price: Any, reference_price: Any, min_spread_bps: Any) -> SpreadEvaluation:
    """Compare the venue price against the reference price.

    The spread is normalised by the reference price and is positive when the
    venue is cheaper. A spread exactly at the threshold trades; a zero spread
    never does, even with a zero threshold.
    """
    venue = _require_positive(venue_price, label="venue_price")
    reference = _require_positive(reference_price, label="reference_price")
    threshold = _require_non_negative(min_spread_bps, label="min_spread_bps")

    spread_bps = (reference - venue) / reference * BPS_PER_UNIT

    if spread_bps > 0 and spread_bps >= threshold:
        return SpreadEvaluation(Direction.BUY_VENUE_SELL_REFERENCE, spread_bps, True)
    if spread_bps < 0 and spread_bps <= -threshold:
        return SpreadEvaluation(Direction.SELL_VENUE_BUY_REFERENCE, spread_bps, True)
    return SpreadEvaluation(Direction.NO_OP, spread_bps, False)


def estimate_gas_cost_usd(
    gas_used: int,
    gas_price_wei: int,
    reference_price_usd: Any,
    *,
    native_decimals: int = ETH_USDC_DECIMALS.native,
) -> Decimal:
    gas_units = _require_int(gas_used, label="gas_used")
    price_per_unit = _require_int(gas_price_wei, label="gas_price_wei")
    reference = _require_positive(reference_price_usd, label="reference_price_usd")
    return _scale(gas_units * price_per_unit, native_decimals) * reference


def compute_net_profit_usd(
    candidate: TradeCandidate,
    *,
    decimals: AssetDecimals = ETH_USDC_DECIMALS,
) -> Decimal:
    """Worst-case USD profit of a candidate trade after gas.

    Proceeds are valued at ``amount_out_min``, so the result is a lower bound.
    """
    if not isinstance(candidate.direction, Direction):
        raise InvalidInput(f"direction must be a Direction, got {candidate.direction!r}")
    if candidate.direction is Direction.NO_OP:
        raise InvalidDirection("Cannot estimate profit for a NO_OP direction")

    amount_in = _require_int(candidate.amount_in, label="amount_in", positive=True)
    amount_out_min = _require_int(candidate.amount_out_min, label="amount_out_min")
    reference = _require_positive(candidate.reference_price_usd, label="reference_price_usd")
    gas_cost_usd = estimate_gas_cost_usd(
        candidate.gas_used,
        candidate.gas_price_wei,
        reference,
        native_decimals=decimals.native,
    )

    if candidate.direction is Direction.BUY_VENUE_SELL_REFERENCE:
        base_out = _scale(amount_out_min, decimals.base)
        quote_in = _scale(amount_in, decimals.quote)
        return base_out * reference - quote_in - gas_cost_usd

    quote_out = _scale(amount_out_min, decimals.quote)
    base_in = _scale(amount_in, decimals.base)
    return quote_out - base_in * reference - gas_cost_usd


def build_decision(
    candidate: TradeCandidate,
    min_profit_usd: Any,
    *,
    decimals: AssetDecimals = ETH_USDC_DECIMALS,
    now: datetime | None = None,
) -> Decision:
    threshold = _require_non_negative(min_profit_usd, label="min_profit_usd")
    net_profit_usd = compute_net_profit_usd(candidate, decimals=decimals)
    reference = to_decimal(candidate.reference_price_usd, label="reference_price_usd")

    return Decision(
        timestamp=now or datetime.now(timezone.utc),
        direction=candidate.direction,
        amount_in=candidate.amount_in,
        amount_out_min=candidate.amount_out_min,
        reference_price_usd=reference,
        estimated_gas_used=candidate.gas_used,
        gas_price_wei=candidate.gas_price_wei,
        gas_cost_usd=estimate_gas_cost_usd(
            candidate.gas_used,
            candidate.gas_price_wei,
            reference,
            native_decimals=decimals.native,
        ),
        net_profit_usd=net_profit_usd,
        min_profit_usd=threshold,
        executable=net_profit_usd > threshold,
    )
