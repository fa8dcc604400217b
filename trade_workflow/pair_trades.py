"""
Trade Workflow - Pair Trade Coordinator.

============================================================
PURPOSE
============================================================
Binds a long and a short leg into one PairTrade and runs
stage and decision commands against the pair as one unit.

INVARIANTS:
- The pair's stage is authoritative; legs mirror it
- Legs never move or get decided on their own
- A pair decision is one track row per portfolio, holding
  the sizing accepted for each leg, so one leg can never be
  accepted while its offsetting leg is rejected
- Every pair command emits one audit record for the pair

============================================================
"""

import logging
from datetime import date
from typing import Dict, List, Optional

from core.clock import ClockProtocol, as_utc
from core.exceptions import InvalidPair, InvalidTransition
from database.gateway import PersistenceGateway
from database.models import PairTrade, PortfolioTrack, TradeIdea, TradeProposal

from .audit import AuditRecord, AuditSink
from .config import DecidingPolicy, WorkflowConfig
from .decision_engine import DecisionEngine, track_state, write_track_decision
from .deferral import DeferralScheduler
from .ideas import TradeIdeaManager, restore_subject, restore_target
from .linkage import ensure_lab_link, ensure_track, tracks_for
from .permissions import AccessPolicy
from .proposal_ledger import ProposalLedger
from .schemas import ActionContext, PairTradeCreate, TradeIdeaCreate
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
    Decision,
    DecisionOptions,
    EntityType,
    LegType,
    MoveResult,
    Stage,
    VisibilityTier,
)


logger = logging.getLogger(__name__)


def mirror_legs(pair: PairTrade, at) -> None:
    """Copy the pair's lifecycle fields onto both legs."""
    for leg in pair.legs:
        leg.stage = pair.stage
        leg.previous_state = pair.previous_state
        leg.deferred_until = pair.deferred_until
        leg.updated_at = at


class PairTradeCoordinator:
    """Grouping and atomic multi-leg commands."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        access: AccessPolicy,
        ledger: ProposalLedger,
        engine: DecisionEngine,
        scheduler: DeferralScheduler,
        ideas: TradeIdeaManager,
        audit: AuditSink,
        clock: ClockProtocol,
        config: WorkflowConfig,
    ):
        self._gateway = gateway
        self._access = access
        self._ledger = ledger
        self._engine = engine
        self._scheduler = scheduler
        self._ideas = ideas
        self._audit = audit
        self._clock = clock
        self._config = config

    # --------------------------------------------------------
    # GROUPING
    # --------------------------------------------------------

    def group_legs(
        self,
        long_leg_id: str,
        short_leg_id: str,
        ctx: ActionContext,
        name: Optional[str] = None,
        rationale: Optional[str] = None,
        urgency: str = "medium",
    ) -> PairTrade:
        """
        Bind two existing ideas into a pair.

        Raises:
            InvalidPair: same idea twice, a leg already paired or deleted,
                linkage differs, a leg already decided, or stages differ
            Unauthorized: actor lacks global permission on a leg
        """
        if long_leg_id == short_leg_id:
            raise InvalidPair("A pair needs two distinct legs")

        now = self._clock.now()
        long_leg = self._gateway.require(TradeIdea, long_leg_id, for_update=True)
        short_leg = self._gateway.require(TradeIdea, short_leg_id, for_update=True)
        legs = (long_leg, short_leg)

        for leg in legs:
            if leg.pair_trade_id:
                raise InvalidPair(
                    f"Idea {leg.id} already belongs to pair {leg.pair_trade_id}",
                    pair_trade_id=leg.pair_trade_id,
                )
            if leg.visibility_tier != VisibilityTier.ACTIVE.value:
                raise InvalidPair(f"Idea {leg.id} is deleted and cannot be paired")

        linkage = self._access.linked_portfolios(long_leg)
        if linkage != self._access.linked_portfolios(short_leg):
            raise InvalidPair(
                f"Legs {long_leg.id} and {short_leg.id} are linked to different portfolios",
                context={"long": linkage, "short": self._access.linked_portfolios(short_leg)},
            )

        for leg in legs:
            if any(t.decision_outcome for t in tracks_for(self._gateway, trade_idea_id=leg.id)):
                raise InvalidPair(f"Idea {leg.id} already has portfolio decisions")

        stage = stored_stage(long_leg)
        if stage != stored_stage(short_leg) or stage.is_resolution():
            raise InvalidPair(
                f"Legs must share one open stage ({long_leg.stage} vs {short_leg.stage})"
            )

        for leg in legs:
            self._access.require_global(leg, ctx.actor_id)

        pair = PairTrade(
            name=name,
            rationale=rationale,
            urgency=urgency.value if hasattr(urgency, "value") else urgency,
            stage=stage.value,
            visibility_tier=VisibilityTier.ACTIVE.value,
            created_by=ctx.actor_id,
            created_at=now,
            updated_at=now,
        )
        self._gateway.insert(pair)

        for leg, leg_type in ((long_leg, LegType.LONG), (short_leg, LegType.SHORT)):
            leg.pair_trade_id = pair.id
            leg.leg_type = leg_type.value
            leg.updated_at = now
        self._gateway.flush()
        self._gateway.session.refresh(pair, ["legs"])

        for portfolio_id in linkage:
            ensure_track(self._gateway, portfolio_id, now, pair_trade_id=pair.id)

        # Open leg proposals move under the pair
        for leg in legs:
            for proposal in self._ledger.active_for_idea(leg.id):
                proposal.pair_trade_id = pair.id
                proposal.sizing_context = {
                    **(proposal.sizing_context or {}),
                    "pair_trade_id": pair.id,
                    "leg_type": leg.leg_type,
                }
        self._gateway.flush()

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.PAIR_TRADE,
            pair.id,
            ActionType.GROUP_LEGS,
            ActionCategory.RELATIONSHIP,
            now,
            to_state=snapshot(pair),
            changed_fields=["pair_trade_id", "leg_type"],
            metadata={"long_leg_id": long_leg.id, "short_leg_id": short_leg.id, "portfolios": linkage},
        ))

        logger.info(f"Pair grouped: pair={pair.id} long={long_leg.id} short={short_leg.id}")
        return pair

    def create_pair_trade(self, data: PairTradeCreate, ctx: ActionContext) -> PairTrade:
        """Create both legs and their pair in one command."""
        now = self._clock.now()
        pair = PairTrade(
            name=data.name,
            rationale=data.rationale,
            urgency=data.urgency.value,
            stage=Stage.IDEA.value,
            visibility_tier=VisibilityTier.ACTIVE.value,
            created_by=ctx.actor_id,
            created_at=now,
            updated_at=now,
        )
        self._gateway.insert(pair)

        for leg_input, leg_type in ((data.long_leg, LegType.LONG), (data.short_leg, LegType.SHORT)):
            self._ideas.create(
                TradeIdeaCreate(
                    asset_id=leg_input.asset_id,
                    action=leg_input.action,
                    urgency=data.urgency,
                    rationale=leg_input.rationale or data.rationale,
                    primary_portfolio_id=data.primary_portfolio_id,
                    assigned_to=data.assigned_to,
                    collaborators=data.collaborators,
                ),
                ctx,
                pair_trade_id=pair.id,
                leg_type=leg_type.value,
            )
        self._gateway.session.refresh(pair, ["legs"])

        if data.primary_portfolio_id:
            ensure_track(self._gateway, data.primary_portfolio_id, now, pair_trade_id=pair.id)

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.PAIR_TRADE,
            pair.id,
            ActionType.CREATE,
            ActionCategory.LIFECYCLE,
            now,
            to_state=snapshot(pair),
            changed_fields=["stage", "legs"],
            metadata={"legs": [leg.id for leg in pair.legs]},
        ))

        logger.info(f"Pair trade created: id={pair.id} legs={[leg.id for leg in pair.legs]}")
        return pair

    def link_portfolio(
        self,
        pair_id: str,
        portfolio_id: str,
        ctx: ActionContext,
        lab_id: Optional[str] = None,
    ) -> PairTrade:
        """Link the pair, and through it both legs, to a portfolio."""
        now = self._clock.now()
        pair = self._gateway.require(PairTrade, pair_id, for_update=True)

        if not all(self._access.is_owner(leg, ctx.actor_id) for leg in pair.legs):
            self._access.require_relationship([portfolio_id], ctx.actor_id, pair.id)

        ensure_track(self._gateway, portfolio_id, now, pair_trade_id=pair.id)
        if lab_id:
            for leg in pair.legs:
                ensure_lab_link(self._gateway, lab_id, portfolio_id, leg.id, ctx.actor_id, now)

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.PAIR_TRADE,
            pair.id,
            ActionType.LINK_PORTFOLIO,
            ActionCategory.RELATIONSHIP,
            now,
            to_state={"portfolio_id": portfolio_id, "lab_id": lab_id},
            changed_fields=["portfolio_tracks"] + (["lab_links"] if lab_id else []),
        ))
        return pair

    # --------------------------------------------------------
    # STAGE MOVES
    # --------------------------------------------------------

    def move_stage(
        self,
        pair_id: str,
        target: Stage,
        ctx: ActionContext,
        deferred_until: Optional[date] = None,
    ) -> MoveResult:
        """
        Move a pair (and both legs) along one edge of the stage graph.

        Raises:
            InvalidTransition: edge does not exist or pair is archived
            Unauthorized: actor lacks the permission class on the pair
        """
        target = Stage.parse(target)
        pair = self._gateway.require(PairTrade, pair_id, for_update=True)
        current = effective_stage(pair)

        if ctx.request_id and any(
            self._audit.has_request(ctx.request_id, pair.id, action)
            for action in (ActionType.MOVE_STAGE, ActionType.DELETE, ActionType.RESTORE)
        ):
            return MoveResult(
                EntityType.PAIR_TRADE, pair.id, current, current,
                applied=False, duplicate=True, message="Request already processed",
            )

        if pair.visibility_tier == VisibilityTier.ARCHIVED.value:
            raise InvalidTransition(
                f"Pair {pair.id} is archived and can no longer change",
                from_state=VisibilityTier.ARCHIVED.value,
            )

        allowed, reason = TransitionGuard.can_transition(current, target)
        if not allowed:
            logger.warning(f"Rejected move: pair={pair.id} {reason}")
            raise InvalidTransition(reason, from_state=current.value, to_state=target.value)

        self._access.require_for_pair(permission_for(current, target), pair, ctx.actor_id)

        if target == Stage.DELETED:
            return self._soft_delete(pair, current, ctx)

        if current == Stage.DELETED:
            return self.restore(pair.id, ctx, target_stage=Stage.IDEA)

        if target == Stage.DECIDING:
            if current == Stage.DECIDING:
                return MoveResult(
                    EntityType.PAIR_TRADE, pair.id, current, current,
                    applied=False, message="Already deciding; decisions are taken per portfolio",
                )
            if not self._ledger.active_for_pair(pair.id):
                return MoveResult(
                    EntityType.PAIR_TRADE, pair.id, current, current,
                    applied=False, requires_proposal=True,
                    message="Submit leg proposals to move the pair into deciding",
                )
            if self._config.deciding_policy == DecidingPolicy.OVERLAY:
                return MoveResult(
                    EntityType.PAIR_TRADE, pair.id, current, current,
                    applied=False, message="Proposals shown in deciding; stage unchanged",
                )

        now = self._clock.now()
        before = snapshot(pair)
        apply_stage(pair, target, now, deferred_until)
        mirror_legs(pair, now)
        self._gateway.flush()

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.PAIR_TRADE,
            pair.id,
            ActionType.MOVE_STAGE,
            ActionCategory.LIFECYCLE,
            now,
            from_state=before,
            to_state=snapshot(pair),
            changed_fields=[k for k, v in snapshot(pair).items() if before[k] != v],
            metadata={"legs": [leg.id for leg in pair.legs]},
        ))

        logger.info(f"Pair moved: pair={pair.id} {current.value} -> {target.value} by={ctx.actor_id}")
        return MoveResult(EntityType.PAIR_TRADE, pair.id, current, target)

    def _soft_delete(self, pair: PairTrade, current: Stage, ctx: ActionContext) -> MoveResult:
        now = self._clock.now()
        before = snapshot(pair)
        self._gateway.soft_delete(pair, ctx.actor_id, now)
        for leg in pair.legs:
            self._gateway.soft_delete(leg, ctx.actor_id, now)

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.PAIR_TRADE,
            pair.id,
            ActionType.DELETE,
            ActionCategory.VISIBILITY,
            now,
            from_state=before,
            to_state=snapshot(pair),
            changed_fields=["visibility_tier", "deleted_at", "deleted_by"],
            metadata={"legs": [leg.id for leg in pair.legs]},
        ))

        logger.info(f"Pair trashed: pair={pair.id} by={ctx.actor_id}")
        return MoveResult(EntityType.PAIR_TRADE, pair.id, current, Stage.DELETED)

    def restore(self, pair_id: str, ctx: ActionContext, target_stage: Optional[Stage] = None) -> MoveResult:
        """
        Bring a pair and its legs back from trash.

        Raises:
            InvalidTransition: pair is not trashed, is archived, or the
                target is neither its kept stage nor idea
            Unauthorized: actor lacks global permission on a leg
        """
        now = self._clock.now()
        pair = self._gateway.require(PairTrade, pair_id, for_update=True)

        if pair.visibility_tier != VisibilityTier.TRASHED.value:
            raise InvalidTransition(
                f"Pair {pair.id} is {pair.visibility_tier}; only trashed pairs can be restored",
                from_state=pair.visibility_tier,
            )
        self._access.require_global_pair(pair, ctx.actor_id)

        target = restore_target(pair, target_stage)

        before = snapshot(pair)
        restore_subject(pair, target, now)
        for leg in pair.legs:
            restore_subject(leg, target, now)
        mirror_legs(pair, now)
        self._gateway.flush()

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.PAIR_TRADE,
            pair.id,
            ActionType.RESTORE,
            ActionCategory.VISIBILITY,
            now,
            from_state=before,
            to_state=snapshot(pair),
            changed_fields=["visibility_tier", "deleted_at", "deleted_by", "stage"],
            metadata={"legs": [leg.id for leg in pair.legs]},
        ))

        logger.info(f"Pair restored: pair={pair.id} -> {target.value}")
        return MoveResult(EntityType.PAIR_TRADE, pair.id, Stage.DELETED, target)

    def acknowledge_resurfaced(self, pair_id: str, ctx: ActionContext) -> MoveResult:
        pair = self._gateway.require(PairTrade, pair_id, for_update=True)
        result = self._scheduler.acknowledge_subject(
            pair,
            EntityType.PAIR_TRADE,
            ctx,
            lambda permission: self._access.require_for_pair(permission, pair, ctx.actor_id),
        )
        mirror_legs(pair, self._clock.now())
        self._gateway.flush()
        return result

    # --------------------------------------------------------
    # DECISIONS
    # --------------------------------------------------------

    def decide(
        self,
        pair_id: str,
        portfolio_id: str,
        decision: Decision,
        ctx: ActionContext,
        opts: Optional[DecisionOptions] = None,
    ) -> PortfolioTrack:
        """
        Decide both legs of a pair in one portfolio, as one record.

        Raises:
            InvalidPair: portfolio not linked, or accept without an
                active proposal on both legs
            Unauthorized: actor has no decision authority over the portfolio
            InvalidTransition: pair is deleted
        """
        opts = opts or DecisionOptions()
        decision = Decision(decision)
        now = self._clock.now()

        pair = self._gateway.require(PairTrade, pair_id, for_update=True)
        if pair.visibility_tier != VisibilityTier.ACTIVE.value:
            raise InvalidTransition(f"Cannot decide on deleted pair {pair.id}", from_state=pair.visibility_tier)

        self._access.require_decision_authority(portfolio_id, ctx.actor_id)

        if portfolio_id not in self._access.linked_pair_portfolios(pair):
            raise InvalidPair(
                f"Portfolio {portfolio_id} is not linked to pair {pair.id}",
                pair_trade_id=pair.id,
            )

        proposals = self._ledger.active_for_pair(pair.id, portfolio_id)
        by_leg = self._latest_by_leg(proposals)

        leg_decisions = None
        if decision == Decision.ACCEPT:
            missing = [leg.id for leg in pair.legs if leg.id not in by_leg]
            if missing:
                raise InvalidPair(
                    f"Both legs need an active proposal in {portfolio_id} before acceptance",
                    pair_trade_id=pair.id,
                    context={"missing_legs": missing},
                )
            leg_decisions = self._leg_decisions(pair, by_leg, opts)

        track = ensure_track(self._gateway, portfolio_id, now, pair_trade_id=pair.id)
        before = track_state(track)

        write_track_decision(track, decision, ctx.actor_id, now, opts)
        track.leg_decisions = leg_decisions

        for proposal in by_leg.values():
            self._ledger.snapshot(proposal, f"decision_{decision.outcome.value}", ctx.actor_id)
        if decision == Decision.REJECT:
            self._ledger.deactivate(proposals, now)

        self._gateway.flush()

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.PORTFOLIO_TRACK,
            track.id,
            ActionType.DECIDE,
            ActionCategory.DECISION,
            now,
            from_state=before,
            to_state=track_state(track),
            changed_fields=[k for k, v in track_state(track).items() if before.get(k) != v],
            metadata={
                "portfolio_id": portfolio_id,
                "decision": decision.value,
                "reason": opts.reason,
                "proposal_ids": [p.id for p in by_leg.values()],
            },
            parent=(EntityType.PAIR_TRADE, pair.id),
        ))

        logger.info(
            f"Pair decision recorded: pair={pair.id} portfolio={portfolio_id} "
            f"outcome={track.decision_outcome} by={ctx.actor_id}"
        )

        self._engine.recompute_aggregate(
            pair,
            tracks_for(self._gateway, pair_trade_id=pair.id),
            EntityType.PAIR_TRADE,
            ctx,
            now,
        )
        mirror_legs(pair, now)
        self._gateway.flush()
        return track

    @staticmethod
    def _latest_by_leg(proposals: List[TradeProposal]) -> Dict[str, TradeProposal]:
        """Most recently updated active proposal per leg."""
        latest: Dict[str, TradeProposal] = {}
        for proposal in proposals:
            held = latest.get(proposal.trade_idea_id)
            if held is None or as_utc(proposal.updated_at) >= as_utc(held.updated_at):
                latest[proposal.trade_idea_id] = proposal
        return latest

    @staticmethod
    def _leg_decisions(pair: PairTrade, by_leg: Dict[str, TradeProposal], opts: DecisionOptions) -> dict:
        decisions = {}
        for leg in pair.legs:
            proposal = by_leg[leg.id]
            weight = opts.leg_overrides.get(leg.id, proposal.resolved_weight)
            decisions[leg.id] = {
                "leg_type": leg.leg_type,
                "asset_id": leg.asset_id,
                "proposal_id": proposal.id,
                "accepted_weight": str(weight) if weight is not None else None,
                "accepted_shares": str(proposal.shares) if proposal.shares is not None else None,
            }
        return decisions

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def list_pairs(self, include_deleted: bool = False) -> List[PairTrade]:
        criteria = []
        if not include_deleted:
            criteria.append(PairTrade.visibility_tier == VisibilityTier.ACTIVE.value)
        return self._gateway.query(PairTrade, *criteria, order_by=PairTrade.created_at)


__all__ = ["mirror_legs", "PairTradeCoordinator"]
