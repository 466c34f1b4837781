"""
Matching module.

ARCHITECTURE:
    MatchingEngine (groups, validates and orders executions)
        │
        ├── PositionTracker (one FLAT/LONG/SHORT state machine per group)
        │
        └── TradeAggregator (prices, PnL, session and holding classification)
"""
from tradebook.matching.matching_engine import MatchingEngine, MatchResult, validate_order
from tradebook.matching.position_tracker import PositionState, PositionTracker, TradeInstance
from tradebook.matching.trade_aggregator import TradeAggregator

__all__ = [
    "MatchingEngine",
    "MatchResult",
    "validate_order",
    "PositionState",
    "PositionTracker",
    "TradeInstance",
    "TradeAggregator",
]
