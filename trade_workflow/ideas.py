"""
Trade Workflow - Trade Idea Manager.

============================================================
PURPOSE
============================================================
Commands on single (unpaired) trade ideas.

RESPONSIBILITIES:
- Create and edit ideas
- Link ideas to portfolios and labs
- MoveStage with edge and permission validation
- Soft delete, restore and trash archival

RULES:
- A paired leg never moves on its own (InvalidPair)
- Moving into deciding needs an active proposal first;
  under the overlay policy the stage is left unchanged
- deleted is the trashed visibility tier; stage is kept
  untouched so restore returns to it

============================================================
"""

import logging
from datetime import date, timedelta
from typing import List, Optional

from sqlalchemy import or_, select

from core.clock import ClockProtocol
from core.exceptions import InvalidPair, InvalidTransition
from database.gateway import PersistenceGateway
from database.models import LabLink, PairTrade, PortfolioTrack, TradeIdea

from .audit import AuditRecord, AuditSink
from .config import DecidingPolicy, WorkflowConfig
from .linkage import ensure_lab_link, ensure_track
from .permissions import AccessPolicy
from .proposal_ledger import ProposalLedger
from .schemas import ActionContext, ProposalInput, TradeIdeaCreate, TradeIdeaUpdate
from .stage_graph import (
    TransitionGuard,
    apply_stage,
    effective_stage,
    permission_for,
    snapshot,
    stored_stage,
)
from .types import (
    ActionCategory,
    ActionType,
    EntityType,
    MoveResult,
    Stage,
    VisibilityTier,
)


logger = logging.getLogger(__name__)


class TradeIdeaManager:
    """Lifecycle commands on unpaired trade ideas."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        access: AccessPolicy,
        ledger: ProposalLedger,
        audit: AuditSink,
        clock: ClockProtocol,
        config: WorkflowConfig,
    ):
        self._gateway = gateway
        self._access = access
        self._ledger = ledger
        self._audit = audit
        self._clock = clock
        self._config = config

    # --------------------------------------------------------
    # CREATE / UPDATE
    # --------------------------------------------------------

    def create(self, data: TradeIdeaCreate, ctx: ActionContext, pair_trade_id: Optional[str] = None,
               leg_type: Optional[str] = None) -> TradeIdea:
        """Create an idea in the idea stage, linking its primary portfolio."""
        now = self._clock.now()
        idea = TradeIdea(
            asset_id=data.asset_id,
            action=data.action.value,
            urgency=data.urgency.value,
            rationale=data.rationale,
            stage=Stage.IDEA.value,
            primary_portfolio_id=data.primary_portfolio_id,
            pair_trade_id=pair_trade_id,
            leg_type=leg_type,
            created_by=ctx.actor_id,
            assigned_to=data.assigned_to,
            collaborators=list(dict.fromkeys(data.collaborators)),
            visibility_tier=VisibilityTier.ACTIVE.value,
            sharing_visibility=data.sharing_visibility.value,
            created_at=now,
            updated_at=now,
        )
        self._gateway.insert(idea)

        if data.primary_portfolio_id and not pair_trade_id:
            ensure_track(self._gateway, data.primary_portfolio_id, now, trade_idea_id=idea.id)

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.TRADE_IDEA,
            idea.id,
            ActionType.CREATE,
            ActionCategory.LIFECYCLE,
            now,
            to_state=snapshot(idea),
            changed_fields=sorted(data.model_dump(exclude_unset=True)),
            metadata={"asset_id": idea.asset_id, "action": idea.action},
        ))

        logger.info(f"Trade idea created: id={idea.id} asset={idea.asset_id} action={idea.action}")
        return idea

    def update(self, idea_id: str, data: TradeIdeaUpdate, ctx: ActionContext) -> TradeIdea:
        """
        Edit idea attributes. Stage is never edited here.

        Raises:
            Unauthorized: actor lacks the global permission class
        """
        now = self._clock.now()
        idea = self._gateway.require(TradeIdea, idea_id, for_update=True)
        self._access.require_global(idea, ctx.actor_id)

        changes = data.model_dump(exclude_unset=True)
        before = {k: getattr(idea, k) for k in changes}

        for name, value in changes.items():
            if hasattr(value, "value"):
                value = value.value
            if name == "collaborators":
                value = list(dict.fromkeys(value or []))
            setattr(idea, name, value)
        idea.updated_at = now
        self._gateway.flush()

        changed = sorted(k for k in changes if before[k] != getattr(idea, k))
        category = (
            ActionCategory.ASSIGNMENT
            if {"assigned_to", "collaborators"} & set(changed)
            else ActionCategory.LIFECYCLE
        )
        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.TRADE_IDEA,
            idea.id,
            ActionType.UPDATE,
            category,
            now,
            from_state=before,
            to_state={k: getattr(idea, k) for k in changes},
            changed_fields=changed,
        ))
        return idea

    def link_portfolio(
        self,
        idea_id: str,
        portfolio_id: str,
        ctx: ActionContext,
        lab_id: Optional[str] = None,
    ) -> TradeIdea:
        """
        Link an idea to a portfolio (and optionally a lab).

        Raises:
            InvalidPair: idea is a pair leg (link the pair)
            Unauthorized: actor is neither an owner nor related to the portfolio
        """
        now = self._clock.now()
        idea = self._gateway.require(TradeIdea, idea_id, for_update=True)
        if idea.pair_trade_id:
            raise InvalidPair(
                f"Idea {idea.id} is a leg of pair {idea.pair_trade_id}; link the pair",
                pair_trade_id=idea.pair_trade_id,
            )
        if not self._access.is_owner(idea, ctx.actor_id):
            self._access.require_relationship([portfolio_id], ctx.actor_id, idea.id)

        ensure_track(self._gateway, portfolio_id, now, trade_idea_id=idea.id)
        if lab_id:
            ensure_lab_link(self._gateway, lab_id, portfolio_id, idea.id, ctx.actor_id, now)

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.TRADE_IDEA,
            idea.id,
            ActionType.LINK_PORTFOLIO,
            ActionCategory.RELATIONSHIP,
            now,
            to_state={"portfolio_id": portfolio_id, "lab_id": lab_id},
            changed_fields=["portfolio_tracks"] + (["lab_links"] if lab_id else []),
        ))
        return idea

    # --------------------------------------------------------
    # STAGE MOVES
    # --------------------------------------------------------

    def move_stage(
        self,
        idea_id: str,
        target: Stage,
        ctx: ActionContext,
        deferred_until: Optional[date] = None,
        proposal: Optional[ProposalInput] = None,
    ) -> MoveResult:
        """
        Move an idea along one edge of the stage graph.

        Raises:
            InvalidPair: idea is a pair leg
            InvalidTransition: edge does not exist
            Unauthorized: actor lacks the edge's permission class
        """
        target = Stage.parse(target)
        idea = self._gateway.require(TradeIdea, idea_id, for_update=True)
        current = effective_stage(idea)

        if self._is_duplicate(ctx, idea.id):
            logger.info(f"Duplicate request skipped: request={ctx.request_id} idea={idea.id}")
            return MoveResult(
                EntityType.TRADE_IDEA, idea.id, current, current,
                applied=False, duplicate=True, message="Request already processed",
            )

        if idea.pair_trade_id:
            raise InvalidPair(
                f"Idea {idea.id} is a leg of pair {idea.pair_trade_id}; move the pair",
                pair_trade_id=idea.pair_trade_id,
            )

        self._validate_edge(idea, current, target, ctx)

        if target == Stage.DELETED:
            return self._soft_delete(idea, ctx)

        if current == Stage.DELETED:
            return self.restore(idea.id, ctx, target_stage=Stage.IDEA)

        if target == Stage.DECIDING:
            return self._move_to_deciding(idea, current, ctx, proposal)

        return self._apply(idea, current, target, ctx, deferred_until)

    def _is_duplicate(self, ctx: ActionContext, entity_id: str) -> bool:
        """Whether this request id already moved, deleted or restored the entity."""
        if not ctx.request_id:
            return False
        return any(
            self._audit.has_request(ctx.request_id, entity_id, action)
            for action in (ActionType.MOVE_STAGE, ActionType.DELETE, ActionType.RESTORE)
        )

    def _validate_edge(self, idea: TradeIdea, current: Stage, target: Stage, ctx: ActionContext) -> None:
        if idea.visibility_tier == VisibilityTier.ARCHIVED.value:
            raise InvalidTransition(
                f"Idea {idea.id} is archived and can no longer change",
                from_state=VisibilityTier.ARCHIVED.value,
                to_state=target.value,
            )

        allowed, reason = TransitionGuard.can_transition(current, target)
        if not allowed:
            logger.warning(f"Rejected move: idea={idea.id} {reason}")
            raise InvalidTransition(reason, from_state=current.value, to_state=target.value)

        self._access.require_for_idea(permission_for(current, target), idea, ctx.actor_id)

    def _move_to_deciding(
        self,
        idea: TradeIdea,
        current: Stage,
        ctx: ActionContext,
        proposal: Optional[ProposalInput],
    ) -> MoveResult:
        if proposal is not None:
            self._ledger.submit(
                idea.id,
                proposal.portfolio_id,
                ctx,
                proposal.sizing_mode,
                proposal.input_value,
                notes=proposal.notes,
            )

        if current == Stage.DECIDING:
            return MoveResult(
                EntityType.TRADE_IDEA, idea.id, current, current,
                applied=proposal is not None,
                message="Already deciding; decisions are taken per proposal",
            )

        if not self._ledger.active_for_idea(idea.id):
            logger.info(f"Move to deciding pending sizing: idea={idea.id}")
            return MoveResult(
                EntityType.TRADE_IDEA, idea.id, current, current,
                applied=False, requires_proposal=True,
                message="Submit a sizing proposal to move into deciding",
            )

        if self._config.deciding_policy == DecidingPolicy.OVERLAY:
            return MoveResult(
                EntityType.TRADE_IDEA, idea.id, current, current,
                applied=proposal is not None,
                message="Proposals shown in deciding; stage unchanged",
            )

        return self._apply(idea, current, Stage.DECIDING, ctx)

    def _apply(
        self,
        idea: TradeIdea,
        current: Stage,
        target: Stage,
        ctx: ActionContext,
        deferred_until: Optional[date] = None,
    ) -> MoveResult:
        now = self._clock.now()
        before = snapshot(idea)
        apply_stage(idea, target, now, deferred_until)
        self._gateway.flush()

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.TRADE_IDEA,
            idea.id,
            ActionType.MOVE_STAGE,
            ActionCategory.LIFECYCLE,
            now,
            from_state=before,
            to_state=snapshot(idea),
            changed_fields=[k for k, v in snapshot(idea).items() if before[k] != v],
        ))

        logger.info(f"Stage moved: idea={idea.id} {current.value} -> {target.value} by={ctx.actor_id}")
        return MoveResult(EntityType.TRADE_IDEA, idea.id, current, target)

    # --------------------------------------------------------
    # DELETE / RESTORE / ARCHIVE
    # --------------------------------------------------------

    def _soft_delete(self, idea: TradeIdea, ctx: ActionContext) -> MoveResult:
        now = self._clock.now()
        before = snapshot(idea)
        current = stored_stage(idea)
        self._gateway.soft_delete(idea, ctx.actor_id, now)

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.TRADE_IDEA,
            idea.id,
            ActionType.DELETE,
            ActionCategory.VISIBILITY,
            now,
            from_state=before,
            to_state=snapshot(idea),
            changed_fields=["visibility_tier", "deleted_at", "deleted_by"],
        ))

        logger.info(f"Idea trashed: id={idea.id} stage={current.value} by={ctx.actor_id}")
        return MoveResult(EntityType.TRADE_IDEA, idea.id, current, Stage.DELETED)

    def restore(self, idea_id: str, ctx: ActionContext, target_stage: Optional[Stage] = None) -> MoveResult:
        """
        Bring an idea back from trash, to its kept stage or to target_stage.

        Raises:
            InvalidPair: idea is a pair leg (restore the pair)
            InvalidTransition: idea is not trashed, is archived, or the
                target is neither its kept stage nor idea
            Unauthorized: actor lacks the global permission class
        """
        now = self._clock.now()
        idea = self._gateway.require(TradeIdea, idea_id, for_update=True)

        if self._is_duplicate(ctx, idea.id):
            return MoveResult(
                EntityType.TRADE_IDEA, idea.id, effective_stage(idea), effective_stage(idea),
                applied=False, duplicate=True, message="Request already processed",
            )
        if idea.pair_trade_id:
            raise InvalidPair(
                f"Idea {idea.id} is a leg of pair {idea.pair_trade_id}; restore the pair",
                pair_trade_id=idea.pair_trade_id,
            )
        if idea.visibility_tier != VisibilityTier.TRASHED.value:
            raise InvalidTransition(
                f"Idea {idea.id} is {idea.visibility_tier}; only trashed ideas can be restored",
                from_state=idea.visibility_tier,
            )
        self._access.require_global(idea, ctx.actor_id)

        target = restore_target(idea, target_stage)

        before = snapshot(idea)
        restore_subject(idea, target, now)
        self._gateway.flush()

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.TRADE_IDEA,
            idea.id,
            ActionType.RESTORE,
            ActionCategory.VISIBILITY,
            now,
            from_state=before,
            to_state=snapshot(idea),
            changed_fields=["visibility_tier", "deleted_at", "deleted_by", "stage"],
        ))

        logger.info(f"Idea restored: id={idea.id} -> {target.value} by={ctx.actor_id}")
        return MoveResult(EntityType.TRADE_IDEA, idea.id, Stage.DELETED, target)

    def archive_stale_trash(self, ctx: ActionContext, older_than_days: Optional[int] = None) -> dict:
        """
        Archive ideas and pairs trashed longer than the retention window.

        Archived entities are kept for history and can no longer be restored.
        """
        days = self._config.trash_retention_days if older_than_days is None else older_than_days
        now = self._clock.now()
        cutoff = now - timedelta(days=days)

        archived = {"archived_ideas": [], "archived_pairs": []}
        for model, entity_type, bucket in (
            (TradeIdea, EntityType.TRADE_IDEA, "archived_ideas"),
            (PairTrade, EntityType.PAIR_TRADE, "archived_pairs"),
        ):
            stale = self._gateway.query(
                model,
                model.visibility_tier == VisibilityTier.TRASHED.value,
                model.deleted_at <= cutoff,
                for_update=True,
            )
            for subject in stale:
                before = snapshot(subject)
                subject.visibility_tier = VisibilityTier.ARCHIVED.value
                subject.archived_at = now
                subject.updated_at = now
                self._audit.emit(AuditRecord.build(
                    ctx,
                    entity_type,
                    subject.id,
                    ActionType.ARCHIVE,
                    ActionCategory.VISIBILITY,
                    now,
                    from_state=before,
                    to_state=snapshot(subject),
                    changed_fields=["visibility_tier", "archived_at"],
                    metadata={"retention_days": days},
                ))
                archived[bucket].append(subject.id)

        self._gateway.flush()
        logger.info(
            f"Trash archived: ideas={len(archived['archived_ideas'])} "
            f"pairs={len(archived['archived_pairs'])} older_than_days={days}"
        )
        return archived

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def list_ideas(
        self,
        stage: Optional[Stage] = None,
        include_deleted: bool = False,
        portfolio_id: Optional[str] = None,
    ) -> List[TradeIdea]:
        criteria = []
        if not include_deleted:
            criteria.append(TradeIdea.visibility_tier == VisibilityTier.ACTIVE.value)
        if stage is not None:
            criteria.append(TradeIdea.stage == Stage.parse(stage).value)
        if portfolio_id:
            criteria.append(linked_to_portfolio(portfolio_id))
        return self._gateway.query(TradeIdea, *criteria, order_by=TradeIdea.created_at)

    def list_trash(self) -> List[TradeIdea]:
        return self._gateway.query(
            TradeIdea,
            TradeIdea.visibility_tier == VisibilityTier.TRASHED.value,
            order_by=TradeIdea.deleted_at,
        )


def linked_to_portfolio(portfolio_id: str):
    """
    Criterion matching ideas linked to a portfolio: primary portfolio,
    an idea track, a lab link, or (for legs) a track on their pair.
    """
    tracked_ideas = select(PortfolioTrack.trade_idea_id).where(
        PortfolioTrack.portfolio_id == portfolio_id,
        PortfolioTrack.trade_idea_id.is_not(None),
    )
    tracked_pairs = select(PortfolioTrack.pair_trade_id).where(
        PortfolioTrack.portfolio_id == portfolio_id,
        PortfolioTrack.pair_trade_id.is_not(None),
    )
    in_labs = select(LabLink.trade_idea_id).where(LabLink.portfolio_id == portfolio_id)
    return or_(
        TradeIdea.primary_portfolio_id == portfolio_id,
        TradeIdea.id.in_(tracked_ideas),
        TradeIdea.id.in_(in_labs),
        TradeIdea.pair_trade_id.in_(tracked_pairs),
    )


def restore_target(subject, requested: Optional[Stage] = None) -> Stage:
    """
    Stage a trashed idea or pair comes back to.

    Only the kept stage or idea are allowed.

    Raises:
        InvalidTransition: requested stage is neither of the two
    """
    kept = stored_stage(subject)
    if requested is None:
        return kept
    target = Stage.parse(requested)
    if target not in (kept, Stage.IDEA):
        raise InvalidTransition(
            f"Restore of {subject.id} returns to {kept.value} or idea, not {target.value}",
            from_state=Stage.DELETED.value,
            to_state=target.value,
        )
    return target


def restore_subject(subject, target: Stage, at) -> None:
    """Return a trashed idea or pair to the active tier at target stage."""
    if stored_stage(subject) != target:
        apply_stage(subject, target, at)
    subject.visibility_tier = VisibilityTier.ACTIVE.value
    subject.deleted_at = None
    subject.deleted_by = None
    subject.updated_at = at


__all__ = ["TradeIdeaManager", "linked_to_portfolio", "restore_target", "restore_subject"]
