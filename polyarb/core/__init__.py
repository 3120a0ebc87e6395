"""Core arbitrage types, AMM math, sizing and risk."""

from polyarb.core.errors import (
    ArbError,
    ChainError,
    ConnectorError,
    ErrorKind,
    ExecutionError,
    OracleError,
    classify_error,
)
from polyarb.core.execution import (
    ExecutionResult,
    ExecutionState,
    PendingTransaction,
    Receipt,
    TxRequest,
    Urgency,
)
from polyarb.core.risk import (
    RiskAssessment,
    RiskConfig,
    RiskManager,
    RiskMetrics,
    RiskState,
)
from polyarb.core.sizing import fractional_kelly, kelly_fraction
from polyarb.core.types import (
    ArbitragePath,
    ExecutionPriority,
    HopBreakdown,
    PathKind,
    RankedOpportunity,
    Reserves,
    RiskLevel,
    SimulationResult,
    Token,
    TradingPair,
)

__all__ = [
    # Errors
    "ArbError",
    "ChainError",
    "ConnectorError",
    "ErrorKind",
    "ExecutionError",
    "OracleError",
    "classify_error",
    # Execution
    "ExecutionResult",
    "ExecutionState",
    "PendingTransaction",
    "Receipt",
    "TxRequest",
    "Urgency",
    # Risk
    "RiskAssessment",
    "RiskConfig",
    "RiskManager",
    "RiskMetrics",
    "RiskState",
    # Sizing
    "fractional_kelly",
    "kelly_fraction",
    # Types
    "ArbitragePath",
    "ExecutionPriority",
    "HopBreakdown",
    "PathKind",
    "RankedOpportunity",
    "Reserves",
    "RiskLevel",
    "SimulationResult",
    "Token",
    "TradingPair",
]
