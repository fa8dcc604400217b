"""
Trade Workflow - Types.

============================================================
PURPOSE
============================================================
All type definitions for the trade idea workflow.

Enums are str-valued so they store directly in String
columns and serialize unchanged over the API.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================
# IDEA LIFECYCLE STATES
# ============================================================

class Stage(str, Enum):
    """
    Trade idea lifecycle stage.

    State Machine:

        idea ⇄ working_on ⇄ modeling → deciding
                                          │
                         ┌────────────────┼────────────────┐
                         ▼                ▼                ▼
                     approved         rejected         deferred
                         │                │                │
                         └──────────► idea ◄───────────────┘

    Any non-deleted stage can move to DELETED (soft delete),
    which only restores back to IDEA.
    """

    # Open pipeline
    IDEA = "idea"
    """Initial concept."""

    WORKING_ON = "working_on"
    """Being researched."""

    MODELING = "modeling"
    """Being sized and modeled."""

    # Portfolio stages
    DECIDING = "deciding"
    """Awaiting per-portfolio decisions."""

    APPROVED = "approved"
    """At least one portfolio accepted once all decided."""

    REJECTED = "rejected"
    """No portfolio accepted once all decided."""

    DEFERRED = "deferred"
    """Parked until a calendar date."""

    # Visibility pseudo-stage
    DELETED = "deleted"
    """Soft-deleted. Represented by the trashed visibility tier."""

    def is_resolution(self) -> bool:
        """Check if stage is a decision outcome column."""
        return self in (Stage.APPROVED, Stage.REJECTED, Stage.DEFERRED)

    def is_global(self) -> bool:
        """Check if stage belongs to the open, globally-owned pipeline."""
        return self in (Stage.IDEA, Stage.WORKING_ON, Stage.MODELING)

    @classmethod
    def parse(cls, value: Any) -> "Stage":
        """
        Parse a stage name, accepting legacy aliases.

        Raises:
            ValueError: unknown stage name
        """
        if isinstance(value, Stage):
            return value
        name = str(value).strip().lower()
        name = STAGE_ALIASES.get(name, name)
        return cls(name)


STAGE_ALIASES: Dict[str, str] = {
    "discussing": Stage.WORKING_ON.value,
    "simulating": Stage.MODELING.value,
    "cancelled": Stage.DEFERRED.value,
}


# ============================================================
# IDEA ATTRIBUTES
# ============================================================

class TradeAction(str, Enum):
    """Direction of the proposed change."""
    BUY = "buy"
    SELL = "sell"
    ADD = "add"
    TRIM = "trim"

    def increases_exposure(self) -> bool:
        return self in (TradeAction.BUY, TradeAction.ADD)


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class VisibilityTier(str, Enum):
    """Soft-delete tier, orthogonal to stage."""

    ACTIVE = "active"
    """Shown in default views."""

    TRASHED = "trashed"
    """Deleted, restorable."""

    ARCHIVED = "archived"
    """Trash retention expired. Kept for history, not restorable."""


class SharingVisibility(str, Enum):
    PRIVATE = "private"
    PORTFOLIO = "portfolio"


class LegType(str, Enum):
    LONG = "long"
    SHORT = "short"


# ============================================================
# PROPOSAL TYPES
# ============================================================

class SizingMode(str, Enum):
    """How a proposal's input value resolves to a target weight."""

    ABSOLUTE_WEIGHT = "absolute_weight"
    """Target weight given directly."""

    DELTA_WEIGHT = "delta_weight"
    """Change relative to the current portfolio weight."""

    ACTIVE_WEIGHT = "active_weight"
    """Target active weight over the benchmark."""

    DELTA_BENCHMARK = "delta_benchmark"
    """Change relative to the current active weight."""

    def needs_benchmark(self) -> bool:
        return self in (SizingMode.ACTIVE_WEIGHT, SizingMode.DELTA_BENCHMARK)


class ProposalType(str, Enum):
    ANALYST = "analyst"
    PM_INITIATED = "pm_initiated"


# ============================================================
# DECISION TYPES
# ============================================================

class Decision(str, Enum):
    """Command issued by a PM against a proposal."""
    ACCEPT = "accept"
    REJECT = "reject"
    DEFER = "defer"

    @property
    def outcome(self) -> "DecisionOutcome":
        return {
            Decision.ACCEPT: DecisionOutcome.ACCEPTED,
            Decision.REJECT: DecisionOutcome.REJECTED,
            Decision.DEFER: DecisionOutcome.DEFERRED,
        }[self]


class DecisionOutcome(str, Enum):
    """Outcome recorded on a portfolio track."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DEFERRED = "deferred"


# ============================================================
# PERMISSIONS AND AUDIT
# ============================================================

class PermissionClass(str, Enum):
    """Permission class required by a stage move."""

    GLOBAL = "global"
    """Creator, assignee or collaborator."""

    PORTFOLIO = "portfolio"
    """Role-derived relationship to a linked portfolio."""


class ActorRole(str, Enum):
    ANALYST = "analyst"
    PM = "pm"
    ADMIN = "admin"
    SYSTEM = "system"


class EntityType(str, Enum):
    TRADE_IDEA = "trade_idea"
    PAIR_TRADE = "pair_trade"
    PROPOSAL = "proposal"
    PORTFOLIO_TRACK = "portfolio_track"
    LAB_LINK = "lab_link"


class ActionCategory(str, Enum):
    LIFECYCLE = "lifecycle"
    DECISION = "decision"
    PROPOSAL = "proposal"
    VISIBILITY = "visibility"
    ASSIGNMENT = "assignment"
    RELATIONSHIP = "relationship"


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    MOVE_STAGE = "move_stage"
    DELETE = "delete"
    RESTORE = "restore"
    ARCHIVE = "archive"
    ACKNOWLEDGE_RESURFACED = "acknowledge_resurfaced"
    SUBMIT_PROPOSAL = "submit_proposal"
    WITHDRAW_PROPOSAL = "withdraw_proposal"
    REQUEST_ANALYST_INPUT = "request_analyst_input"
    DECIDE = "decide"
    GROUP_LEGS = "group_legs"
    LINK_PORTFOLIO = "link_portfolio"


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class MoveResult:
    """Outcome of a stage-changing command."""

    entity_type: EntityType
    """Entity the command was issued against."""

    entity_id: str
    """Entity ID."""

    from_stage: Stage
    """Effective stage before the command."""

    to_stage: Stage
    """Effective stage after the command."""

    applied: bool = True
    """Whether anything was written."""

    requires_proposal: bool = False
    """Move into deciding is pending a sizing proposal."""

    duplicate: bool = False
    """Request id was already processed; nothing written."""

    message: str = ""
    """Human-readable detail."""


@dataclass
class BulkMoveFailure:
    entity_id: str
    error: str
    code: str


@dataclass
class BulkMoveResult:
    """Outcome of a bulk stage move. Each item commits on its own."""

    batch_id: str
    succeeded: List[MoveResult] = field(default_factory=list)
    failed: List[BulkMoveFailure] = field(default_factory=list)


@dataclass
class DecisionOptions:
    """Optional inputs to Decide."""

    override_weight: Optional[Decimal] = None
    """Accepted weight when the PM overrides the proposal."""

    override_shares: Optional[Decimal] = None
    """Accepted shares when the PM overrides the proposal."""

    reason: Optional[str] = None
    """Decision reason, recorded on reject and defer."""

    defer_until: Optional[Any] = None
    """Calendar date a deferral resurfaces on."""

    leg_overrides: Dict[str, Decimal] = field(default_factory=dict)
    """Pair decisions: accepted weight per leg id."""


@dataclass
class BoardPlacement:
    """Where a subject is displayed on the board."""

    column: Stage
    """Display column."""

    resurfaced: bool = False
    """Ready to resurface, pending acknowledgment."""

    deferred_until: Optional[datetime] = None


__all__ = [
    "Stage",
    "STAGE_ALIASES",
    "TradeAction",
    "Urgency",
    "VisibilityTier",
    "SharingVisibility",
    "LegType",
    "SizingMode",
    "ProposalType",
    "Decision",
    "DecisionOutcome",
    "PermissionClass",
    "ActorRole",
    "EntityType",
    "ActionCategory",
    "ActionType",
    "MoveResult",
    "BulkMoveFailure",
    "BulkMoveResult",
    "DecisionOptions",
    "BoardPlacement",
]
