from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, Protocol

from .errors import StaleReferencePriceError

NATIVE_ETH_ADDRESS = "0x0000000000000000000000000000000000000000"
SEPOLIA_USDC_ADDRESS = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"

DEFAULT_REFERENCE_PRICE_USD = "2450"


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(Decimal(str(value).strip()))
    except (TypeError, ValueError, OverflowError, InvalidOperation):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def parse_decimal(value: Any, default: Decimal) -> Decimal:
    try:
        if value is None or str(value).strip() == "":
            return default
        parsed = Decimal(str(value).strip())
    except (TypeError, ValueError, InvalidOperation):
        return default
    if not parsed.is_finite():
        return default
    return parsed


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_order_id(idempotency_key: str) -> str:
    tail = datetime.now(timezone.utc).strftime("%H%M%S%f")
    return f"ord-{idempotency_key[:18]}-{tail}"


class Direction(str, Enum):
    BUY_VENUE_SELL_REFERENCE = "BUY_VENUE_SELL_REFERENCE"
    SELL_VENUE_BUY_REFERENCE = "SELL_VENUE_BUY_REFERENCE"
    NO_OP = "NO_OP"


@dataclass(slots=True, frozen=True)
class AssetDecimals:
    """Decimal places of the traded pair.

    ``base`` is the volatile asset priced in USD, ``quote`` the USD-pegged
    asset and ``native`` the currency gas is paid in.
    """

    base: int = 18
    quote: int = 6
    native: int = 18


ETH_USDC_DECIMALS = AssetDecimals()


@dataclass(slots=True, frozen=True)
class PairConfig:
    symbol: str
    base_token: str
    quote_token: str
    base_decimals: int
    quote_decimals: int
    native_decimals: int
    base_trade_amount: int
    quote_trade_amount: int
    slippage_bps: int

    @property
    def decimals(self) -> AssetDecimals:
        return AssetDecimals(
            base=self.base_decimals,
            quote=self.quote_decimals,
            native=self.native_decimals,
        )

    @classmethod
    def from_env(cls) -> "PairConfig":
        base_decimals = max(0, to_int(os.getenv("PAIR_BASE_DECIMALS"), 18))
        quote_decimals = max(0, to_int(os.getenv("PAIR_QUOTE_DECIMALS"), 6))
        return cls(
            symbol=os.getenv("PAIR_SYMBOL", "ETH/USDC"),
            base_token=os.getenv("PAIR_BASE_TOKEN", NATIVE_ETH_ADDRESS),
            quote_token=os.getenv("PAIR_QUOTE_TOKEN", SEPOLIA_USDC_ADDRESS),
            base_decimals=base_decimals,
            quote_decimals=quote_decimals,
            native_decimals=max(0, to_int(os.getenv("PAIR_NATIVE_DECIMALS"), 18)),
            # 0.1 ETH when selling on the venue, 5000 USDC when buying.
            base_trade_amount=max(1, to_int(os.getenv("PAIR_BASE_TRADE_AMOUNT"), 10 ** (base_decimals - 1))),
            quote_trade_amount=max(
                1,
                to_int(os.getenv("PAIR_QUOTE_TRADE_AMOUNT"), 5_000 * 10**quote_decimals),
            ),
            slippage_bps=min(10_000, max(0, to_int(os.getenv("PAIR_SLIPPAGE_BPS"), 50))),
        )


@dataclass(slots=True, frozen=True)
class ReferencePrice:
    value: Decimal
    observed_at: float | None
    source: str = "config"

    def age_seconds(self, now: float) -> float | None:
        if self.observed_at is None:
            return None
        return max(0.0, now - self.observed_at)

    def ensure_fresh(self, *, now: float, max_age_seconds: float) -> None:
        if max_age_seconds <= 0:
            return

        age = self.age_seconds(now)
        if age is None:
            raise StaleReferencePriceError(
                "Reference price has no observation timestamp",
                max_age_seconds=max_age_seconds,
            )
        if age > max_age_seconds:
            raise StaleReferencePriceError(
                f"Reference price is {age:.1f}s old (max {max_age_seconds:.1f}s)",
                age_seconds=age,
                max_age_seconds=max_age_seconds,
            )


@dataclass(slots=True, frozen=True)
class RuntimeConfig:
    config_schema_version: int
    min_spread_bps: Decimal
    min_profit_usd: Decimal
    reference_price_usd: Decimal
    reference_price_updated_at: float | None
    reference_max_age_seconds: float
    trade_enabled: bool
    order_guard_ttl_seconds: int

    def reference_price(self) -> ReferencePrice:
        return ReferencePrice(
            value=self.reference_price_usd,
            observed_at=self.reference_price_updated_at,
        )

    @classmethod
    def from_env_defaults(cls) -> "RuntimeConfig":
        updated_at_raw = os.getenv("REFERENCE_PRICE_UPDATED_AT")
        return cls(
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            min_spread_bps=max(Decimal(0), parse_decimal(os.getenv("MIN_SPREAD_BPS"), Decimal("50"))),
            min_profit_usd=max(Decimal(0), parse_decimal(os.getenv("MIN_PROFIT_USD"), Decimal("5"))),
            reference_price_usd=parse_decimal(
                os.getenv("REFERENCE_PRICE_USD"),
                Decimal(DEFAULT_REFERENCE_PRICE_USD),
            ),
            reference_price_updated_at=to_float(updated_at_raw, 0.0) or None,
            reference_max_age_seconds=max(0.0, to_float(os.getenv("REFERENCE_MAX_AGE_SECONDS"), 0.0)),
            trade_enabled=to_bool(os.getenv("TRADE_ENABLED"), False),
            order_guard_ttl_seconds=max(1, to_int(os.getenv("ORDER_GUARD_TTL_SECONDS"), 60)),
        )

    @classmethod
    def from_redis(cls, redis_config: dict[str, str], defaults: "RuntimeConfig") -> "RuntimeConfig":
        schema_raw = redis_config.get("schema_version") or redis_config.get("config_schema_version")
        reference_raw = redis_config.get("reference_price_usd") or redis_config.get("reference_price")

        updated_at = defaults.reference_price_updated_at
        updated_at_raw = redis_config.get("reference_price_updated_at")
        if updated_at_raw:
            updated_at = to_float(updated_at_raw, 0.0) or updated_at

        return cls(
            config_schema_version=max(1, to_int(schema_raw, defaults.config_schema_version)),
            min_spread_bps=max(
                Decimal(0),
                parse_decimal(
                    redis_config.get("min_spread_bps") or redis_config.get("min_spread"),
                    defaults.min_spread_bps,
                ),
            ),
            min_profit_usd=max(
                Decimal(0),
                parse_decimal(redis_config.get("min_profit_usd"), defaults.min_profit_usd),
            ),
            reference_price_usd=parse_decimal(reference_raw, defaults.reference_price_usd),
            reference_price_updated_at=updated_at,
            reference_max_age_seconds=max(
                0.0,
                to_float(redis_config.get("reference_max_age_seconds"), defaults.reference_max_age_seconds),
            ),
            trade_enabled=to_bool(redis_config.get("trade_enabled"), defaults.trade_enabled),
            order_guard_ttl_seconds=max(
                1,
                to_int(redis_config.get("order_guard_ttl_seconds"), defaults.order_guard_ttl_seconds),
            ),
        )


@dataclass(slots=True, frozen=True)
class SpreadEvaluation:
    direction: Direction
    spread_bps: Decimal
    profitable: bool


@dataclass(slots=True, frozen=True)
class VenueQuote:
    venue: str
    price: Decimal
    amount_in: int
    amount_out: int
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class VenueScan:
    quotes: tuple[VenueQuote, ...]
    failures: dict[str, str]

    @property
    def best_buy(self) -> VenueQuote | None:
        return min(self.quotes, key=lambda quote: quote.price, default=None)

    @property
    def best_sell(self) -> VenueQuote | None:
        return max(self.quotes, key=lambda quote: quote.price, default=None)

    @property
    def cross_venue_spread_bps(self) -> Decimal:
        buy, sell = self.best_buy, self.best_sell
        if buy is None or sell is None or buy.price <= 0:
            return Decimal(0)
        return (sell.price - buy.price) / buy.price * 10_000


@dataclass(slots=True, frozen=True)
class SpreadObservation:
    pair: str
    venue: str
    timestamp: str
    venue_price: Decimal
    reference: ReferencePrice
    evaluation: SpreadEvaluation
    quote: dict[str, Any] = field(default_factory=dict)

    @property
    def direction(self) -> Direction:
        return self.evaluation.direction

    @property
    def spread_bps(self) -> Decimal:
        return self.evaluation.spread_bps

    @property
    def profitable(self) -> bool:
        return self.evaluation.profitable


@dataclass(slots=True, frozen=True)
class TradeCandidate:
    direction: Direction
    amount_in: int
    amount_out_min: int
    reference_price_usd: Decimal
    gas_used: int
    gas_price_wei: int


@dataclass(slots=True, frozen=True)
class Decision:
    timestamp: datetime
    direction: Direction
    amount_in: int
    amount_out_min: int
    reference_price_usd: Decimal
    estimated_gas_used: int
    gas_price_wei: int
    gas_cost_usd: Decimal
    net_profit_usd: Decimal
    min_profit_usd: Decimal
    executable: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "direction": self.direction.value,
            "amount_in": str(self.amount_in),
            "amount_out_min": str(self.amount_out_min),
            "reference_price_usd": str(self.reference_price_usd),
            "estimated_gas_used": self.estimated_gas_used,
            "gas_price_wei": str(self.gas_price_wei),
            "gas_cost_usd": str(self.gas_cost_usd),
            "net_profit_usd": str(self.net_profit_usd),
            "min_profit_usd": str(self.min_profit_usd),
            "executable": self.executable,
        }


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    status: str
    tx_hash: str | None
    reason: str
    order_id: str
    idempotency_key: str
    metadata: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "tx_hash": self.tx_hash,
            "reason": self.reason,
            "order_id": self.order_id,
            "idempotency_key": self.idempotency_key,
            "metadata": dict(self.metadata),
        }


class VenuePriceSource(Protocol):
    async def fetch_venue_price(self, pair: PairConfig, venue: str | None = None) -> VenueQuote:
        ...

    async def fetch_all_venue_prices(self, pair: PairConfig, venues: Iterable[str]) -> VenueScan:
        ...


class GasPriceSource(Protocol):
    async def gas_price_wei(self) -> int:
        ...


class TradeSimulator(Protocol):
    async def simulate(self, *, candidate: TradeCandidate, pair: PairConfig) -> int:
        ...


class OrderGuardStore(Protocol):
    async def acquire_order_guard(
        self,
        *,
        guard_key: str,
        order_id: str,
        ttl_seconds: int,
    ) -> bool:
        ...

    async def get_order_guard(self, *, guard_key: str) -> dict[str, Any] | None:
        ...

    async def release_order_guard(
        self,
        *,
        guard_key: str,
        order_id: str,
    ) -> bool:
        ...

    async def record_order_state(
        self,
        *,
        order_id: str,
        status: str,
        ttl_seconds: int,
        payload: dict[str, Any] | None = None,
        guard_key: str | None = None,
    ) -> None:
        ...


class OrderExecutor(TradeSimulator, Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def healthcheck(self) -> None:
        ...

    async def execute(
        self,
        *,
        decision: Decision,
        pair: PairConfig,
        idempotency_key: str,
        lock_ttl_seconds: int,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        ...


def build_idempotency_key(*, pair: PairConfig, decision: Decision) -> str:
    fingerprint = {
        "pair": pair.symbol,
        "base_token": pair.base_token,
        "quote_token": pair.quote_token,
        "direction": decision.direction.value,
        "amount_in": str(decision.amount_in),
        "amount_out_min": str(decision.amount_out_min),
        "reference_price_usd": str(decision.reference_price_usd),
        # Identical opportunities inside the same second collapse to one order.
        "second": int(decision.timestamp.timestamp()),
    }
    encoded = json.dumps(fingerprint, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


