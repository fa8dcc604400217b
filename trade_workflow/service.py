"""
Trade Idea Workflow Service.

This service is the command boundary of the workflow core:
- Wires the stage graph, proposal ledger, decision engine,
  deferral scheduler and pair coordinator over one session
- Runs every command in exactly one transaction
- Logs rejected commands
- Exposes the read projections
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, get_clock
from core.exceptions import NotFound, WorkflowException
from database.gateway import PersistenceGateway
from database.models import AuditEvent, PairTrade, PortfolioTrack, TradeIdea, TradeProposal, TradeProposalVersion

from .audit import AuditSink, DatabaseAuditSink
from .config import WorkflowConfig
from .decision_engine import DecisionEngine
from .deferral import DeferralScheduler
from .expressions import ExpressionAggregator, ExpressionSummary
from .ideas import TradeIdeaManager
from .pair_trades import PairTradeCoordinator
from .permissions import AccessPolicy
from .proposal_ledger import ProposalLedger
from .schemas import (
    ActionContext,
    PairTradeCreate,
    ProposalCreate,
    ProposalInput,
    TradeIdeaCreate,
    TradeIdeaUpdate,
)
from .sizing import HoldingsDataProvider, PortfolioDataProvider
from .types import (
    BoardPlacement,
    BulkMoveFailure,
    BulkMoveResult,
    Decision,
    DecisionOptions,
    EntityType,
    MoveResult,
    Stage,
)

logger = logging.getLogger(__name__)


class TradeWorkflowService:
    """Service facade for trade idea workflow commands and queries."""

    def __init__(
        self,
        db: Session,
        config: Optional[WorkflowConfig] = None,
        clock: Optional[ClockProtocol] = None,
        audit: Optional[AuditSink] = None,
        positions: Optional[PortfolioDataProvider] = None,
    ):
        self.db = db
        self.config = config or WorkflowConfig.from_env()
        self.clock = clock or get_clock()

        self.gateway = PersistenceGateway(db)
        self.audit = audit or DatabaseAuditSink(self.gateway)
        self.access = AccessPolicy(self.gateway, self.config)

        self.ledger = ProposalLedger(
            self.gateway, self.access, self.audit, self.clock,
            positions or HoldingsDataProvider(self.gateway),
        )
        self.engine = DecisionEngine(
            self.gateway, self.access, self.ledger, self.audit, self.clock, self.config
        )
        self.scheduler = DeferralScheduler(self.gateway, self.access, self.audit, self.clock, self.config)
        self.ideas = TradeIdeaManager(
            self.gateway, self.access, self.ledger, self.audit, self.clock, self.config
        )
        self.pairs = PairTradeCoordinator(
            self.gateway, self.access, self.ledger, self.engine, self.scheduler,
            self.ideas, self.audit, self.clock, self.config,
        )

    @contextmanager
    def _command(self, name: str) -> Generator[None, None, None]:
        """One command, one transaction."""
        try:
            with self.gateway.atomic():
                yield
        except WorkflowException as e:
            logger.warning(f"{name} rejected: {e.to_log_format()}")
            raise

    # =========================================================
    # TRADE IDEAS
    # =========================================================

    def create_trade_idea(self, data: TradeIdeaCreate, ctx: ActionContext) -> TradeIdea:
        with self._command("create_trade_idea"):
            return self.ideas.create(data, ctx)

    def update_trade_idea(self, idea_id: str, data: TradeIdeaUpdate, ctx: ActionContext) -> TradeIdea:
        with self._command("update_trade_idea"):
            return self.ideas.update(idea_id, data, ctx)

    def link_portfolio(
        self,
        idea_id: str,
        portfolio_id: str,
        ctx: ActionContext,
        lab_id: Optional[str] = None,
    ) -> TradeIdea:
        with self._command("link_portfolio"):
            return self.ideas.link_portfolio(idea_id, portfolio_id, ctx, lab_id=lab_id)

    def move_stage(
        self,
        idea_id: str,
        target: Stage,
        ctx: ActionContext,
        deferred_until: Optional[date] = None,
        proposal: Optional[ProposalInput] = None,
    ) -> MoveResult:
        with self._command("move_stage"):
            return self.ideas.move_stage(
                idea_id, target, ctx, deferred_until=deferred_until, proposal=proposal
            )

    def bulk_move_stage(self, idea_ids: List[str], target: Stage, ctx: ActionContext) -> BulkMoveResult:
        """
        Move many ideas. Each idea commits (or fails) on its own.

        Returns:
            BulkMoveResult with per-idea successes and failures
        """
        batch_id = ctx.batch_id or str(uuid.uuid4())
        result = BulkMoveResult(batch_id=batch_id)

        for index, idea_id in enumerate(idea_ids):
            item_ctx = ctx.model_copy(update={
                "batch_id": batch_id,
                "batch_index": index,
                "batch_total": len(idea_ids),
            })
            try:
                with self._command("bulk_move_stage"):
                    result.succeeded.append(self.ideas.move_stage(idea_id, target, item_ctx))
            except WorkflowException as e:
                result.failed.append(BulkMoveFailure(entity_id=idea_id, error=e.message, code=e.code))

        logger.info(
            f"Bulk move {batch_id}: target={Stage.parse(target).value} "
            f"succeeded={len(result.succeeded)} failed={len(result.failed)}"
        )
        return result

    def delete_trade_idea(self, idea_id: str, ctx: ActionContext) -> MoveResult:
        return self.move_stage(idea_id, Stage.DELETED, ctx)

    def restore_trade_idea(
        self,
        idea_id: str,
        ctx: ActionContext,
        target_stage: Optional[Stage] = None,
    ) -> MoveResult:
        with self._command("restore_trade_idea"):
            return self.ideas.restore(idea_id, ctx, target_stage=target_stage)

    def archive_stale_trash(self, ctx: ActionContext, older_than_days: Optional[int] = None) -> Dict[str, List[str]]:
        with self._command("archive_stale_trash"):
            return self.ideas.archive_stale_trash(ctx, older_than_days=older_than_days)

    def get_trade_idea(self, idea_id: str) -> TradeIdea:
        return self.gateway.require(TradeIdea, idea_id)

    def list_trade_ideas(
        self,
        stage: Optional[Stage] = None,
        include_deleted: bool = False,
        portfolio_id: Optional[str] = None,
    ) -> List[TradeIdea]:
        return self.ideas.list_ideas(stage=stage, include_deleted=include_deleted, portfolio_id=portfolio_id)

    def list_trash(self) -> List[TradeIdea]:
        return self.ideas.list_trash()

    # =========================================================
    # PROPOSALS
    # =========================================================

    def submit_proposal(self, data: ProposalCreate, ctx: ActionContext) -> TradeProposal:
        with self._command("submit_proposal"):
            return self.ledger.submit(
                data.trade_idea_id,
                data.portfolio_id,
                ctx,
                data.sizing_mode,
                data.input_value,
                notes=data.notes,
                lab_id=data.lab_id,
            )

    def withdraw_proposal(self, proposal_id: str, ctx: ActionContext) -> TradeProposal:
        with self._command("withdraw_proposal"):
            return self.ledger.withdraw(proposal_id, ctx)

    def request_analyst_input(self, proposal_id: str, ctx: ActionContext) -> TradeProposal:
        with self._command("request_analyst_input"):
            return self.ledger.request_analyst_input(proposal_id, ctx)

    def get_proposal(self, proposal_id: str) -> TradeProposal:
        return self.gateway.require(TradeProposal, proposal_id)

    def list_active_proposals(self, idea_id: str, portfolio_id: Optional[str] = None) -> List[TradeProposal]:
        idea = self.get_trade_idea(idea_id)
        if idea.pair_trade_id:
            return [
                p for p in self.ledger.active_for_pair(idea.pair_trade_id, portfolio_id)
                if p.trade_idea_id == idea.id
            ]
        return self.ledger.active_for_idea(idea_id, portfolio_id)

    def proposal_versions(self, proposal_id: str) -> List[TradeProposalVersion]:
        self.get_proposal(proposal_id)
        return self.ledger.versions(proposal_id)

    # =========================================================
    # DECISIONS
    # =========================================================

    def decide(
        self,
        proposal_id: str,
        decision: Decision,
        ctx: ActionContext,
        opts: Optional[DecisionOptions] = None,
    ) -> PortfolioTrack:
        with self._command("decide"):
            return self.engine.decide(proposal_id, decision, ctx, opts)

    def list_tracks(self, idea_id: str) -> List[PortfolioTrack]:
        idea = self.get_trade_idea(idea_id)
        if idea.pair_trade_id:
            return self.gateway.query(
                PortfolioTrack, PortfolioTrack.pair_trade_id == idea.pair_trade_id,
                order_by=PortfolioTrack.portfolio_id,
            )
        return self.engine.tracks(idea_id)

    # =========================================================
    # DEFERRAL
    # =========================================================

    def acknowledge_resurfaced(self, idea_id: str, ctx: ActionContext) -> MoveResult:
        with self._command("acknowledge_resurfaced"):
            return self.scheduler.acknowledge(idea_id, ctx)

    def board_placement(self, entity_id: str, entity_type: EntityType = EntityType.TRADE_IDEA) -> BoardPlacement:
        model = PairTrade if entity_type == EntityType.PAIR_TRADE else TradeIdea
        subject = self.gateway.require(model, entity_id)
        if model is TradeIdea and subject.pair_trade_id:
            subject = self.gateway.require(PairTrade, subject.pair_trade_id)
        return self.scheduler.board_placement(subject)

    def list_ready_to_resurface(self) -> List[Any]:
        return self.scheduler.list_ready()

    # =========================================================
    # PAIR TRADES
    # =========================================================

    def group_legs(
        self,
        long_leg_id: str,
        short_leg_id: str,
        ctx: ActionContext,
        name: Optional[str] = None,
        rationale: Optional[str] = None,
        urgency: str = "medium",
    ) -> PairTrade:
        with self._command("group_legs"):
            return self.pairs.group_legs(
                long_leg_id, short_leg_id, ctx, name=name, rationale=rationale, urgency=urgency
            )

    def create_pair_trade(self, data: PairTradeCreate, ctx: ActionContext) -> PairTrade:
        with self._command("create_pair_trade"):
            return self.pairs.create_pair_trade(data, ctx)

    def link_pair_portfolio(
        self,
        pair_id: str,
        portfolio_id: str,
        ctx: ActionContext,
        lab_id: Optional[str] = None,
    ) -> PairTrade:
        with self._command("link_pair_portfolio"):
            return self.pairs.link_portfolio(pair_id, portfolio_id, ctx, lab_id=lab_id)

    def move_pair_stage(
        self,
        pair_id: str,
        target: Stage,
        ctx: ActionContext,
        deferred_until: Optional[date] = None,
    ) -> MoveResult:
        with self._command("move_pair_stage"):
            return self.pairs.move_stage(pair_id, target, ctx, deferred_until=deferred_until)

    def restore_pair_trade(
        self,
        pair_id: str,
        ctx: ActionContext,
        target_stage: Optional[Stage] = None,
    ) -> MoveResult:
        with self._command("restore_pair_trade"):
            return self.pairs.restore(pair_id, ctx, target_stage=target_stage)

    def decide_pair(
        self,
        pair_id: str,
        portfolio_id: str,
        decision: Decision,
        ctx: ActionContext,
        opts: Optional[DecisionOptions] = None,
    ) -> PortfolioTrack:
        with self._command("decide_pair"):
            return self.pairs.decide(pair_id, portfolio_id, decision, ctx, opts)

    def acknowledge_pair_resurfaced(self, pair_id: str, ctx: ActionContext) -> MoveResult:
        with self._command("acknowledge_pair_resurfaced"):
            return self.pairs.acknowledge_resurfaced(pair_id, ctx)

    def get_pair_trade(self, pair_id: str) -> PairTrade:
        return self.gateway.require(PairTrade, pair_id)

    def list_pair_trades(self, include_deleted: bool = False) -> List[PairTrade]:
        return self.pairs.list_pairs(include_deleted=include_deleted)

    # =========================================================
    # READ PROJECTIONS
    # =========================================================

    def expression_summary(self, idea_id: str) -> ExpressionSummary:
        idea = self.get_trade_idea(idea_id)
        return ExpressionAggregator.for_idea(self.gateway, idea).summarize(idea)

    def expression_summaries(self, include_deleted: bool = False) -> Dict[str, ExpressionSummary]:
        return ExpressionAggregator.from_gateway(self.gateway).summarize_all(include_deleted=include_deleted)

    def audit_trail(self, entity_id: str) -> List[AuditEvent]:
        """Audit events of an entity and of its child records."""
        events = self.gateway.query(
            AuditEvent,
            (AuditEvent.entity_id == str(entity_id)) | (AuditEvent.parent_entity_id == str(entity_id)),
            order_by=AuditEvent.id,
        )
        if not events and self.gateway.get(TradeIdea, entity_id) is None \
                and self.gateway.get(PairTrade, entity_id) is None:
            raise NotFound(f"No audit trail for {entity_id}", entity_id=entity_id)
        return events


__all__ = ["TradeWorkflowService"]
