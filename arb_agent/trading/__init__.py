from .arbitrage import build_decision, compute_net_profit_usd, estimate_gas_cost_usd, evaluate_spread
from .engine import TraderEngine, size_trade
from .errors import ArbitrageError, InvalidDirection, InvalidInput, StaleReferencePriceError
from .executors import DryRunOrderExecutor, SwapServiceError, SwapServiceExecutor
from .rpc import JsonRpcClient, RpcError
from .types import (
    ETH_USDC_DECIMALS,
    AssetDecimals,
    Decision,
    Direction,
    ExecutionResult,
    PairConfig,
    ReferencePrice,
    RuntimeConfig,
    SpreadEvaluation,
    SpreadObservation,
    TradeCandidate,
    VenueQuote,
    VenueScan,
)
from .watcher import QuoteRateLimitError, QuoteWatcher

__all__ = [
    "ArbitrageError",
    "AssetDecimals",
    "Decision",
    "Direction",
    "DryRunOrderExecutor",
    "ETH_USDC_DECIMALS",
    "ExecutionResult",
    "InvalidDirection",
    "InvalidInput",
    "JsonRpcClient",
    "PairConfig",
    "QuoteRateLimitError",
    "QuoteWatcher",
    "ReferencePrice",
    "RpcError",
    "RuntimeConfig",
    "SpreadEvaluation",
    "SpreadObservation",
    "StaleReferencePriceError",
    "SwapServiceError",
    "SwapServiceExecutor",
    "TradeCandidate",
    "TraderEngine",
    "VenueQuote",
    "VenueScan",
    "build_decision",
    "compute_net_profit_usd",
    "estimate_gas_cost_usd",
    "evaluate_spread",
    "size_trade",
]
