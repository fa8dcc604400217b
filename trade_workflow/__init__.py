"""
Trade Workflow Package.

Lifecycle state machine for trade ideas across portfolios.

Core Principles:
- One idea, many portfolios, one decision per portfolio
- The idea stage is derived from the portfolio decisions
- Pair trades move and decide as one unit
- Every command is one transaction and one audit record

Modules:
- stage_graph: allowed stage moves and their permission classes
- proposal_ledger: per-author sizing proposals with version history
- decision_engine: per-portfolio decisions and aggregate stage
- deferral: deferred ideas and resurfacing
- pair_trades: pair grouping, moves and decisions
- expressions: cross-portfolio inclusion summaries
- service: transactional command facade
- router: FastAPI endpoints

Usage:
    from trade_workflow.service import TradeWorkflowService
    from trade_workflow.router import router as workflow_router
"""

from trade_workflow.config import DecidingPolicy, WorkflowConfig
from trade_workflow.expressions import ExpressionAggregator, ExpressionSummary, TrackCounts
from trade_workflow.schemas import ActionContext
from trade_workflow.service import TradeWorkflowService
from trade_workflow.types import (
    Decision,
    DecisionOptions,
    MoveResult,
    SizingMode,
    Stage,
    TradeAction,
)

__all__ = [
    "DecidingPolicy",
    "WorkflowConfig",
    "ExpressionAggregator",
    "ExpressionSummary",
    "TrackCounts",
    "ActionContext",
    "TradeWorkflowService",
    "Decision",
    "DecisionOptions",
    "MoveResult",
    "SizingMode",
    "Stage",
    "TradeAction",
]
