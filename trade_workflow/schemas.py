"""
Pydantic Schemas for the Trade Idea Workflow.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from trade_workflow.types import (
    ActorRole,
    Decision,
    EntityType,
    LegType,
    SharingVisibility,
    SizingMode,
    Stage,
    TradeAction,
    Urgency,
)


# =============================================================
# COMMAND ENVELOPE
# =============================================================

class ActionContext(BaseModel):
    """
    Attribution carried by every command.

    Only actor_id and actor_role feed authorization; the rest
    is copied into the audit record.
    """
    actor_id: str = Field(..., min_length=1)
    actor_name: Optional[str] = None
    actor_email: Optional[str] = None
    actor_role: ActorRole = ActorRole.ANALYST
    request_id: Optional[str] = None
    ui_source: Optional[str] = None
    note: Optional[str] = None

    # Bulk operations
    batch_id: Optional[str] = None
    batch_index: Optional[int] = None
    batch_total: Optional[int] = None


# =============================================================
# TRADE IDEA SCHEMAS
# =============================================================

class TradeIdeaCreate(BaseModel):
    """Create a trade idea in the idea stage."""
    asset_id: str = Field(..., min_length=1)
    action: TradeAction
    urgency: Urgency = Urgency.MEDIUM
    rationale: Optional[str] = None
    primary_portfolio_id: Optional[str] = None
    assigned_to: Optional[str] = None
    collaborators: List[str] = Field(default_factory=list)
    sharing_visibility: SharingVisibility = SharingVisibility.PRIVATE


class TradeIdeaUpdate(BaseModel):
    """Editable idea fields. Stage is never edited directly."""
    rationale: Optional[str] = None
    urgency: Optional[Urgency] = None
    assigned_to: Optional[str] = None
    collaborators: Optional[List[str]] = None
    sharing_visibility: Optional[SharingVisibility] = None

    @field_validator("urgency", "sharing_visibility")
    @classmethod
    def _not_cleared(cls, v, info):
        # Omit the field to leave it unchanged; these columns always hold a value
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v


class TradeIdeaResponse(BaseModel):
    id: str
    asset_id: str
    action: str
    urgency: str
    rationale: Optional[str]
    stage: str
    visibility_tier: str
    sharing_visibility: str
    primary_portfolio_id: Optional[str]
    pair_trade_id: Optional[str]
    leg_type: Optional[str]
    created_by: str
    assigned_to: Optional[str]
    collaborators: List[str] = Field(default_factory=list)
    previous_state: Optional[Dict[str, Any]] = None
    deferred_until: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class LinkPortfolioRequest(BaseModel):
    portfolio_id: str = Field(..., min_length=1)
    lab_id: Optional[str] = None


# =============================================================
# STAGE MOVE SCHEMAS
# =============================================================

class ProposalInput(BaseModel):
    """Sizing collected while moving an idea into deciding."""
    portfolio_id: str
    sizing_mode: SizingMode
    input_value: Decimal
    notes: Optional[str] = None


class MoveStageRequest(BaseModel):
    target_stage: Stage
    deferred_until: Optional[date] = None
    proposal: Optional[ProposalInput] = None

    @field_validator("target_stage", mode="before")
    @classmethod
    def _normalize_stage(cls, v):
        return Stage.parse(v)


class BulkMoveRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)
    target_stage: Stage

    @field_validator("target_stage", mode="before")
    @classmethod
    def _normalize_stage(cls, v):
        return Stage.parse(v)


class RestoreRequest(BaseModel):
    target_stage: Optional[Stage] = None

    @field_validator("target_stage", mode="before")
    @classmethod
    def _normalize_stage(cls, v):
        return Stage.parse(v) if v is not None else None


class MoveResultResponse(BaseModel):
    entity_type: EntityType
    entity_id: str
    from_stage: Stage
    to_stage: Stage
    applied: bool
    requires_proposal: bool
    duplicate: bool
    message: str

    class Config:
        from_attributes = True


class BulkMoveFailureResponse(BaseModel):
    entity_id: str
    error: str
    code: str

    class Config:
        from_attributes = True


class BulkMoveResponse(BaseModel):
    batch_id: str
    succeeded: List[MoveResultResponse]
    failed: List[BulkMoveFailureResponse]

    class Config:
        from_attributes = True


class ArchiveResponse(BaseModel):
    archived_ideas: List[str]
    archived_pairs: List[str]


# =============================================================
# PROPOSAL SCHEMAS
# =============================================================

class ProposalCreate(BaseModel):
    trade_idea_id: str
    portfolio_id: str
    sizing_mode: SizingMode
    input_value: Decimal
    notes: Optional[str] = None
    lab_id: Optional[str] = None


class ProposalResponse(BaseModel):
    id: str
    trade_idea_id: str
    portfolio_id: str
    actor_id: str
    lab_id: Optional[str]
    pair_trade_id: Optional[str]
    sizing_mode: str
    input_value: Decimal
    resolved_weight: Optional[Decimal]
    shares: Optional[Decimal]
    sizing_context: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str]
    is_active: bool
    proposal_type: str
    analyst_input_requested: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ProposalVersionResponse(BaseModel):
    version_number: int
    sizing_mode: str
    input_value: Decimal
    resolved_weight: Optional[Decimal]
    trigger_event: str
    created_by: str
    created_at: datetime

    class Config:
        from_attributes = True


# =============================================================
# DECISION SCHEMAS
# =============================================================

class DecideRequest(BaseModel):
    decision: Decision
    override_weight: Optional[Decimal] = None
    override_shares: Optional[Decimal] = None
    reason: Optional[str] = None
    defer_until: Optional[date] = None
    leg_overrides: Dict[str, Decimal] = Field(default_factory=dict)


class PortfolioTrackResponse(BaseModel):
    id: int
    trade_idea_id: Optional[str]
    pair_trade_id: Optional[str]
    portfolio_id: str
    decision_outcome: Optional[str]
    accepted_weight: Optional[Decimal]
    accepted_shares: Optional[Decimal]
    leg_decisions: Optional[Dict[str, Any]] = None
    deferred_until: Optional[datetime]
    decided_by: Optional[str]
    decided_at: Optional[datetime]
    decision_reason: Optional[str]

    class Config:
        from_attributes = True


# =============================================================
# PAIR TRADE SCHEMAS
# =============================================================

class LegInput(BaseModel):
    asset_id: str
    action: TradeAction
    rationale: Optional[str] = None


class GroupLegsRequest(BaseModel):
    long_leg_id: str
    short_leg_id: str
    name: Optional[str] = None
    rationale: Optional[str] = None
    urgency: Urgency = Urgency.MEDIUM


class PairTradeCreate(BaseModel):
    long_leg: LegInput
    short_leg: LegInput
    name: Optional[str] = None
    rationale: Optional[str] = None
    urgency: Urgency = Urgency.MEDIUM
    primary_portfolio_id: Optional[str] = None
    assigned_to: Optional[str] = None
    collaborators: List[str] = Field(default_factory=list)


class PairLegResponse(BaseModel):
    id: str
    asset_id: str
    action: str
    leg_type: Optional[LegType]

    class Config:
        from_attributes = True


class PairTradeResponse(BaseModel):
    id: str
    name: Optional[str]
    rationale: Optional[str]
    urgency: str
    stage: str
    visibility_tier: str
    deferred_until: Optional[datetime] = None
    created_by: str
    legs: List[PairLegResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# =============================================================
# READ PROJECTIONS
# =============================================================

class TrackCountsResponse(BaseModel):
    total: int
    active: int
    committed: int
    deferred: int
    rejected: int

    class Config:
        from_attributes = True


class ExpressionSummaryResponse(BaseModel):
    trade_idea_id: str
    pair_trade_id: Optional[str]
    lab_count: int
    lab_ids: List[str]
    portfolio_ids: List[str]
    proposal_count: int
    portfolio_proposal_counts: Dict[str, int]
    track_counts: TrackCountsResponse
    needs_sizing: List[str]
    awaiting_decision: List[str]
    status_label: str

    class Config:
        from_attributes = True


class BoardPlacementResponse(BaseModel):
    column: str
    resurfaced: bool
    deferred_until: Optional[datetime] = None

    class Config:
        from_attributes = True


class AuditEventResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    actor_id: str
    actor_role: Optional[str]
    action_type: str
    action_category: str
    from_state: Optional[Dict[str, Any]]
    to_state: Optional[Dict[str, Any]]
    changed_fields: Optional[List[str]]
    request_id: Optional[str]
    ui_source: Optional[str]
    event_metadata: Optional[Dict[str, Any]] = None
    occurred_at: datetime

    class Config:
        from_attributes = True


class ResurfacingItemResponse(BaseModel):
    entity_type: EntityType
    entity_id: str
    column: Stage
    deferred_until: Optional[datetime] = None
