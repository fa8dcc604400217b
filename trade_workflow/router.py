"""
FastAPI Router for Trade Idea Workflow Endpoints.

Provides REST API for the trade idea workflow:
- Create, edit, move, delete and restore ideas
- Submit and withdraw sizing proposals
- Per-portfolio decisions
- Pair trades
- Resurfacing and expression read projections
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from core.exceptions import (
    BenchmarkUnavailable,
    Conflict,
    InvalidPair,
    InvalidTransition,
    NotFound,
    Unauthorized,
    WorkflowException,
)
from database.engine import get_session
from database.models import PairTrade
from trade_workflow.config import WorkflowConfig
from trade_workflow.schemas import (
    ActionContext,
    ArchiveResponse,
    AuditEventResponse,
    BoardPlacementResponse,
    BulkMoveRequest,
    BulkMoveResponse,
    DecideRequest,
    ExpressionSummaryResponse,
    GroupLegsRequest,
    LinkPortfolioRequest,
    MoveResultResponse,
    MoveStageRequest,
    PairTradeCreate,
    PairTradeResponse,
    PortfolioTrackResponse,
    ProposalCreate,
    ProposalResponse,
    ProposalVersionResponse,
    ResurfacingItemResponse,
    RestoreRequest,
    TradeIdeaCreate,
    TradeIdeaResponse,
    TradeIdeaUpdate,
)
from trade_workflow.service import TradeWorkflowService
from trade_workflow.types import ActorRole, DecisionOptions, EntityType, Stage

router = APIRouter(prefix="/workflow", tags=["Trade Workflow"])


# =============================================================
# HELPER: Database dependency
# =============================================================

def get_db():
    db = get_session()
    try:
        yield db
    finally:
        db.close()


# =============================================================
# HELPER: Get service instance
# =============================================================

def get_workflow_service(db: Session = Depends(get_db)) -> TradeWorkflowService:
    return TradeWorkflowService(db, config=WorkflowConfig.from_env())


def get_action_context(
    actor_id: str = Query(..., description="ID of the acting user"),
    actor_role: ActorRole = Query(ActorRole.ANALYST, description="Role of the acting user"),
    actor_name: Optional[str] = Query(None),
    request_id: Optional[str] = Query(None, description="Idempotency key"),
    ui_source: Optional[str] = Query("api"),
) -> ActionContext:
    return ActionContext(
        actor_id=actor_id,
        actor_role=actor_role,
        actor_name=actor_name,
        request_id=request_id,
        ui_source=ui_source,
    )


# =============================================================
# HELPER: Error mapping
# =============================================================

def http_error(e: WorkflowException) -> HTTPException:
    """Map a workflow failure to an HTTP error."""
    if isinstance(e, NotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, Unauthorized):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(e, (InvalidTransition, Conflict)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, (BenchmarkUnavailable, InvalidPair)):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=e.to_dict())


# =============================================================
# TRADE IDEA ENDPOINTS
# =============================================================

@router.post("/ideas", response_model=TradeIdeaResponse, status_code=status.HTTP_201_CREATED)
def create_trade_idea(
    data: TradeIdeaCreate,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Create a trade idea in the idea stage."""
    try:
        return TradeIdeaResponse.model_validate(service.create_trade_idea(data, ctx))
    except WorkflowException as e:
        raise http_error(e)


@router.get("/ideas", response_model=List[TradeIdeaResponse])
def list_trade_ideas(
    stage: Optional[str] = Query(None, description="Filter by stage"),
    include_deleted: bool = Query(False),
    portfolio_id: Optional[str] = Query(None),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """List ideas; trashed ideas are excluded unless requested."""
    stage_enum = None
    if stage:
        try:
            stage_enum = Stage.parse(stage)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid stage: {stage}")

    ideas = service.list_trade_ideas(stage=stage_enum, include_deleted=include_deleted, portfolio_id=portfolio_id)
    return [TradeIdeaResponse.model_validate(i) for i in ideas]


@router.get("/ideas/trash", response_model=List[TradeIdeaResponse])
def list_trash(service: TradeWorkflowService = Depends(get_workflow_service)):
    """Ideas in trash, restorable."""
    return [TradeIdeaResponse.model_validate(i) for i in service.list_trash()]


@router.post("/ideas/bulk-move", response_model=BulkMoveResponse)
def bulk_move_stage(
    data: BulkMoveRequest,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Move many ideas; each succeeds or fails on its own."""
    return BulkMoveResponse.model_validate(service.bulk_move_stage(data.ids, data.target_stage, ctx))


@router.get("/ideas/{idea_id}", response_model=TradeIdeaResponse)
def get_trade_idea(idea_id: str, service: TradeWorkflowService = Depends(get_workflow_service)):
    try:
        return TradeIdeaResponse.model_validate(service.get_trade_idea(idea_id))
    except WorkflowException as e:
        raise http_error(e)


@router.patch("/ideas/{idea_id}", response_model=TradeIdeaResponse)
def update_trade_idea(
    idea_id: str,
    data: TradeIdeaUpdate,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Edit rationale, urgency, assignee, collaborators or sharing."""
    try:
        return TradeIdeaResponse.model_validate(service.update_trade_idea(idea_id, data, ctx))
    except WorkflowException as e:
        raise http_error(e)


@router.post("/ideas/{idea_id}/portfolios", response_model=TradeIdeaResponse)
def link_portfolio(
    idea_id: str,
    data: LinkPortfolioRequest,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    try:
        idea = service.link_portfolio(idea_id, data.portfolio_id, ctx, lab_id=data.lab_id)
        return TradeIdeaResponse.model_validate(idea)
    except WorkflowException as e:
        raise http_error(e)


@router.post("/ideas/{idea_id}/move", response_model=MoveResultResponse)
def move_stage(
    idea_id: str,
    data: MoveStageRequest,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """
    Move an idea along one edge of the stage graph.

    A move into deciding without an active proposal returns
    requires_proposal=true and leaves the stage unchanged.
    """
    try:
        result = service.move_stage(
            idea_id,
            data.target_stage,
            ctx,
            deferred_until=data.deferred_until,
            proposal=data.proposal,
        )
        return MoveResultResponse.model_validate(result)
    except WorkflowException as e:
        raise http_error(e)


@router.delete("/ideas/{idea_id}", response_model=MoveResultResponse)
def delete_trade_idea(
    idea_id: str,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Soft delete: moves the idea to trash."""
    try:
        return MoveResultResponse.model_validate(service.delete_trade_idea(idea_id, ctx))
    except WorkflowException as e:
        raise http_error(e)


@router.post("/ideas/{idea_id}/restore", response_model=MoveResultResponse)
def restore_trade_idea(
    idea_id: str,
    data: RestoreRequest,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    try:
        result = service.restore_trade_idea(idea_id, ctx, target_stage=data.target_stage)
        return MoveResultResponse.model_validate(result)
    except WorkflowException as e:
        raise http_error(e)


@router.post("/ideas/{idea_id}/acknowledge", response_model=MoveResultResponse)
def acknowledge_resurfaced(
    idea_id: str,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Acknowledge a resurfaced deferral, restoring the original stage."""
    try:
        return MoveResultResponse.model_validate(service.acknowledge_resurfaced(idea_id, ctx))
    except WorkflowException as e:
        raise http_error(e)


@router.get("/ideas/{idea_id}/placement", response_model=BoardPlacementResponse)
def board_placement(idea_id: str, service: TradeWorkflowService = Depends(get_workflow_service)):
    try:
        return BoardPlacementResponse.model_validate(service.board_placement(idea_id))
    except WorkflowException as e:
        raise http_error(e)


@router.get("/ideas/{idea_id}/tracks", response_model=List[PortfolioTrackResponse])
def list_tracks(idea_id: str, service: TradeWorkflowService = Depends(get_workflow_service)):
    try:
        return [PortfolioTrackResponse.model_validate(t) for t in service.list_tracks(idea_id)]
    except WorkflowException as e:
        raise http_error(e)


@router.get("/ideas/{idea_id}/proposals", response_model=List[ProposalResponse])
def list_active_proposals(
    idea_id: str,
    portfolio_id: Optional[str] = Query(None),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    try:
        proposals = service.list_active_proposals(idea_id, portfolio_id)
        return [ProposalResponse.model_validate(p) for p in proposals]
    except WorkflowException as e:
        raise http_error(e)


@router.get("/ideas/{idea_id}/expressions", response_model=ExpressionSummaryResponse)
def expression_summary(idea_id: str, service: TradeWorkflowService = Depends(get_workflow_service)):
    """Portfolio/lab inclusion and pending proposals for one idea."""
    try:
        return ExpressionSummaryResponse.model_validate(service.expression_summary(idea_id))
    except WorkflowException as e:
        raise http_error(e)


@router.get("/ideas/{idea_id}/audit", response_model=List[AuditEventResponse])
def audit_trail(idea_id: str, service: TradeWorkflowService = Depends(get_workflow_service)):
    try:
        return [AuditEventResponse.model_validate(e) for e in service.audit_trail(idea_id)]
    except WorkflowException as e:
        raise http_error(e)


@router.get("/expressions", response_model=Dict[str, ExpressionSummaryResponse])
def expression_summaries(
    include_deleted: bool = Query(False),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    summaries = service.expression_summaries(include_deleted=include_deleted)
    return {k: ExpressionSummaryResponse.model_validate(v) for k, v in summaries.items()}


# =============================================================
# PROPOSAL ENDPOINTS
# =============================================================

@router.post("/proposals", response_model=ProposalResponse, status_code=status.HTTP_201_CREATED)
def submit_proposal(
    data: ProposalCreate,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Submit or replace the actor's sizing proposal for an idea in a portfolio."""
    try:
        return ProposalResponse.model_validate(service.submit_proposal(data, ctx))
    except WorkflowException as e:
        raise http_error(e)


@router.post("/proposals/{proposal_id}/withdraw", response_model=ProposalResponse)
def withdraw_proposal(
    proposal_id: str,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    try:
        return ProposalResponse.model_validate(service.withdraw_proposal(proposal_id, ctx))
    except WorkflowException as e:
        raise http_error(e)


@router.post("/proposals/{proposal_id}/request-analyst-input", response_model=ProposalResponse)
def request_analyst_input(
    proposal_id: str,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    try:
        return ProposalResponse.model_validate(service.request_analyst_input(proposal_id, ctx))
    except WorkflowException as e:
        raise http_error(e)


@router.get("/proposals/{proposal_id}/versions", response_model=List[ProposalVersionResponse])
def proposal_versions(proposal_id: str, service: TradeWorkflowService = Depends(get_workflow_service)):
    try:
        return [ProposalVersionResponse.model_validate(v) for v in service.proposal_versions(proposal_id)]
    except WorkflowException as e:
        raise http_error(e)


@router.post("/proposals/{proposal_id}/decision", response_model=PortfolioTrackResponse)
def decide(
    proposal_id: str,
    data: DecideRequest,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """
    Accept, reject or defer a proposal in its portfolio.

    Requires decision authority over the proposal's portfolio.
    """
    opts = DecisionOptions(
        override_weight=data.override_weight,
        override_shares=data.override_shares,
        reason=data.reason,
        defer_until=data.defer_until,
    )
    try:
        return PortfolioTrackResponse.model_validate(service.decide(proposal_id, data.decision, ctx, opts))
    except WorkflowException as e:
        raise http_error(e)


# =============================================================
# RESURFACING / TRASH ENDPOINTS
# =============================================================

@router.get("/resurfacing", response_model=List[ResurfacingItemResponse])
def list_ready_to_resurface(service: TradeWorkflowService = Depends(get_workflow_service)):
    """Deferred ideas and pairs whose date has arrived, pending acknowledgment."""
    items = []
    for subject in service.list_ready_to_resurface():
        entity_type = EntityType.PAIR_TRADE if isinstance(subject, PairTrade) else EntityType.TRADE_IDEA
        placement = service.scheduler.board_placement(subject)
        items.append(ResurfacingItemResponse(
            entity_type=entity_type,
            entity_id=subject.id,
            column=placement.column,
            deferred_until=placement.deferred_until,
        ))
    return items


@router.post("/trash/archive", response_model=ArchiveResponse)
def archive_stale_trash(
    older_than_days: Optional[int] = Query(None, ge=0),
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Archive entities trashed longer than the retention window."""
    try:
        return ArchiveResponse(**service.archive_stale_trash(ctx, older_than_days=older_than_days))
    except WorkflowException as e:
        raise http_error(e)


# =============================================================
# PAIR TRADE ENDPOINTS
# =============================================================

@router.post("/pairs", response_model=PairTradeResponse, status_code=status.HTTP_201_CREATED)
def create_pair_trade(
    data: PairTradeCreate,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Create both legs and their pair."""
    try:
        return PairTradeResponse.model_validate(service.create_pair_trade(data, ctx))
    except WorkflowException as e:
        raise http_error(e)


@router.post("/pairs/group", response_model=PairTradeResponse, status_code=status.HTTP_201_CREATED)
def group_legs(
    data: GroupLegsRequest,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Bind two existing ideas into a pair."""
    try:
        pair = service.group_legs(
            data.long_leg_id,
            data.short_leg_id,
            ctx,
            name=data.name,
            rationale=data.rationale,
            urgency=data.urgency.value,
        )
        return PairTradeResponse.model_validate(pair)
    except WorkflowException as e:
        raise http_error(e)


@router.get("/pairs/{pair_id}", response_model=PairTradeResponse)
def get_pair_trade(pair_id: str, service: TradeWorkflowService = Depends(get_workflow_service)):
    try:
        return PairTradeResponse.model_validate(service.get_pair_trade(pair_id))
    except WorkflowException as e:
        raise http_error(e)


@router.post("/pairs/{pair_id}/portfolios", response_model=PairTradeResponse)
def link_pair_portfolio(
    pair_id: str,
    data: LinkPortfolioRequest,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    try:
        pair = service.link_pair_portfolio(pair_id, data.portfolio_id, ctx, lab_id=data.lab_id)
        return PairTradeResponse.model_validate(pair)
    except WorkflowException as e:
        raise http_error(e)


@router.post("/pairs/{pair_id}/move", response_model=MoveResultResponse)
def move_pair_stage(
    pair_id: str,
    data: MoveStageRequest,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Move a pair; both legs follow."""
    try:
        result = service.move_pair_stage(pair_id, data.target_stage, ctx, deferred_until=data.deferred_until)
        return MoveResultResponse.model_validate(result)
    except WorkflowException as e:
        raise http_error(e)


@router.post("/pairs/{pair_id}/restore", response_model=MoveResultResponse)
def restore_pair_trade(
    pair_id: str,
    data: RestoreRequest,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    try:
        result = service.restore_pair_trade(pair_id, ctx, target_stage=data.target_stage)
        return MoveResultResponse.model_validate(result)
    except WorkflowException as e:
        raise http_error(e)


@router.post("/pairs/{pair_id}/acknowledge", response_model=MoveResultResponse)
def acknowledge_pair_resurfaced(
    pair_id: str,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    try:
        return MoveResultResponse.model_validate(service.acknowledge_pair_resurfaced(pair_id, ctx))
    except WorkflowException as e:
        raise http_error(e)


@router.post("/pairs/{pair_id}/portfolios/{portfolio_id}/decision", response_model=PortfolioTrackResponse)
def decide_pair(
    pair_id: str,
    portfolio_id: str,
    data: DecideRequest,
    ctx: ActionContext = Depends(get_action_context),
    service: TradeWorkflowService = Depends(get_workflow_service),
):
    """Decide both legs of a pair in one portfolio as one record."""
    opts = DecisionOptions(
        reason=data.reason,
        defer_until=data.defer_until,
        leg_overrides=data.leg_overrides,
    )
    try:
        track = service.decide_pair(pair_id, portfolio_id, data.decision, ctx, opts)
        return PortfolioTrackResponse.model_validate(track)
    except WorkflowException as e:
        raise http_error(e)
