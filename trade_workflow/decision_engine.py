"""
Trade Workflow - Decision Engine.

============================================================
PURPOSE
============================================================
Turns per-portfolio accept/reject/defer decisions into an
aggregate idea stage.

FLOW (one transaction):
1. Resolve proposal -> (idea, portfolio)
2. Check decision authority over the portfolio
3. Write the portfolio track
4. Re-read all tracks of the idea
5. All decided -> approved if any accepted, else rejected
   (applied from deciding or a resolution; any stage under overlay)
6. Audit the decision, and the stage change if any

INVARIANTS:
- Authority is portfolio-scoped
- Re-decision is allowed and re-derives the aggregate
- The idea row is version-bumped on every decision, so two
  concurrent decisions on one idea cannot both commit a
  stale aggregate
- Leg proposals are decided through the pair

============================================================
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, List, Optional

from core.clock import ClockProtocol, utc_midnight
from core.exceptions import InvalidPair, InvalidTransition
from database.gateway import PersistenceGateway
from database.models import PortfolioTrack, TradeIdea, TradeProposal

from .audit import AuditRecord, AuditSink
from .config import DecidingPolicy, WorkflowConfig
from .linkage import ensure_track, tracks_for
from .permissions import AccessPolicy
from .proposal_ledger import ProposalLedger
from .schemas import ActionContext
from .stage_graph import apply_stage, snapshot, stored_stage
from .types import (
    ActionCategory,
    ActionType,
    Decision,
    DecisionOptions,
    DecisionOutcome,
    EntityType,
    Stage,
    VisibilityTier,
)


logger = logging.getLogger(__name__)


# ============================================================
# AGGREGATE DERIVATION
# ============================================================

def derive_aggregate_stage(outcomes: Iterable[Optional[str]]) -> Optional[Stage]:
    """
    Aggregate stage from per-portfolio outcomes.

    Returns:
        APPROVED if every portfolio decided and at least one accepted,
        REJECTED if every portfolio decided and none accepted,
        None while any portfolio is undecided (stage unchanged)
    """
    outcomes = list(outcomes)
    if not outcomes or any(o is None for o in outcomes):
        return None
    if any(o == DecisionOutcome.ACCEPTED.value for o in outcomes):
        return Stage.APPROVED
    return Stage.REJECTED


def track_state(track: PortfolioTrack) -> dict:
    return {
        "decision_outcome": track.decision_outcome,
        "accepted_weight": track.accepted_weight,
        "accepted_shares": track.accepted_shares,
        "deferred_until": track.deferred_until,
        "decision_reason": track.decision_reason,
        "leg_decisions": track.leg_decisions,
    }


def write_track_decision(
    track: PortfolioTrack,
    decision: Decision,
    actor_id: str,
    at: datetime,
    opts: DecisionOptions,
    accepted_weight: Optional[Decimal] = None,
    accepted_shares: Optional[Decimal] = None,
) -> None:
    """Overwrite a track with a decision. Fields not set by the outcome are cleared."""
    track.decision_outcome = decision.outcome.value
    track.accepted_weight = accepted_weight if decision == Decision.ACCEPT else None
    track.accepted_shares = accepted_shares if decision == Decision.ACCEPT else None
    track.deferred_until = (
        utc_midnight(opts.defer_until) if decision == Decision.DEFER and opts.defer_until else None
    )
    track.decision_reason = opts.reason
    track.decided_by = actor_id
    track.decided_at = at
    track.updated_at = at


# ============================================================
# DECISION ENGINE
# ============================================================

class DecisionEngine:
    """Per-portfolio decisions and aggregate stage derivation."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        access: AccessPolicy,
        ledger: ProposalLedger,
        audit: AuditSink,
        clock: ClockProtocol,
        config: Optional[WorkflowConfig] = None,
    ):
        self._gateway = gateway
        self._access = access
        self._ledger = ledger
        self._audit = audit
        self._clock = clock
        self._config = config or WorkflowConfig()

    def decide(
        self,
        proposal_id: str,
        decision: Decision,
        ctx: ActionContext,
        opts: Optional[DecisionOptions] = None,
    ) -> PortfolioTrack:
        """
        Accept, reject or defer a proposal in its portfolio.

        Raises:
            NotFound: proposal or idea vanished
            InvalidPair: proposal belongs to a pair leg
            Unauthorized: actor has no decision authority over the portfolio
            InvalidTransition: idea deleted, or accepting an inactive proposal
        """
        opts = opts or DecisionOptions()
        decision = Decision(decision)
        now = self._clock.now()

        proposal = self._gateway.require(TradeProposal, proposal_id, for_update=True)
        idea = self._gateway.require(TradeIdea, proposal.trade_idea_id, for_update=True)

        if proposal.pair_trade_id or idea.pair_trade_id:
            raise InvalidPair(
                f"Proposal {proposal.id} sizes a leg of pair "
                f"{proposal.pair_trade_id or idea.pair_trade_id}; decide the pair instead",
                pair_trade_id=proposal.pair_trade_id or idea.pair_trade_id,
            )

        if idea.visibility_tier != VisibilityTier.ACTIVE.value:
            raise InvalidTransition(
                f"Cannot decide on deleted idea {idea.id}",
                from_state=idea.visibility_tier,
            )

        self._access.require_decision_authority(proposal.portfolio_id, ctx.actor_id)

        if decision == Decision.ACCEPT and not proposal.is_active:
            raise InvalidTransition(
                f"Proposal {proposal.id} is no longer active and cannot be accepted",
                to_state=DecisionOutcome.ACCEPTED.value,
            )

        track = ensure_track(self._gateway, proposal.portfolio_id, now, trade_idea_id=idea.id)
        before = track_state(track)

        write_track_decision(
            track,
            decision,
            ctx.actor_id,
            now,
            opts,
            accepted_weight=(
                opts.override_weight if opts.override_weight is not None else proposal.resolved_weight
            ),
            accepted_shares=(
                opts.override_shares if opts.override_shares is not None else proposal.shares
            ),
        )
        track.proposal_id = proposal.id

        self._ledger.snapshot(proposal, f"decision_{decision.outcome.value}", ctx.actor_id)
        if decision == Decision.REJECT:
            self._ledger.deactivate([proposal], now)

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
                "portfolio_id": track.portfolio_id,
                "proposal_id": proposal.id,
                "decision": decision.value,
                "reason": opts.reason,
            },
            parent=(EntityType.TRADE_IDEA, idea.id),
        ))

        logger.info(
            f"Decision recorded: idea={idea.id} portfolio={track.portfolio_id} "
            f"outcome={track.decision_outcome} by={ctx.actor_id}"
        )

        self.recompute_aggregate(
            idea,
            tracks_for(self._gateway, trade_idea_id=idea.id),
            EntityType.TRADE_IDEA,
            ctx,
            now,
        )
        return track

    def recompute_aggregate(
        self,
        subject: Any,
        tracks: List[PortfolioTrack],
        entity_type: EntityType,
        ctx: ActionContext,
        at: datetime,
    ) -> Optional[Stage]:
        """
        Re-derive and persist the aggregate stage of an idea or pair.

        The subject row is always touched so its version advances.

        Returns:
            The new stage when it changed, otherwise None
        """
        current = stored_stage(subject)
        target = derive_aggregate_stage(t.decision_outcome for t in tracks)
        subject.updated_at = at

        if target is None or target == current:
            self._gateway.flush()
            logger.debug(f"Aggregate unchanged: {subject.id} stage={current.value}")
            return None

        if not self.aggregate_applies(current):
            self._gateway.flush()
            logger.info(
                f"Aggregate held: {entity_type.value}={subject.id} would be {target.value} "
                f"but is in {current.value}"
            )
            return None

        before = snapshot(subject)
        apply_stage(subject, target, at)
        self._gateway.flush()

        self._audit.emit(AuditRecord.build(
            ctx,
            entity_type,
            subject.id,
            ActionType.MOVE_STAGE,
            ActionCategory.LIFECYCLE,
            at,
            from_state=before,
            to_state=snapshot(subject),
            changed_fields=["stage"],
            metadata={"trigger": "aggregate_decision", "portfolios": len(tracks)},
        ))

        logger.info(f"Aggregate stage: {entity_type.value}={subject.id} {current.value} -> {target.value}")
        return target

    def aggregate_applies(self, current: Stage) -> bool:
        """
        Whether a derived aggregate may replace the current stage.

        Under apply_on_proposal the aggregate only resolves a subject
        that is in deciding (or already resolved); decisions taken
        earlier are recorded on the tracks and the stage is left alone.
        The overlay policy never moves subjects into deciding, so the
        aggregate applies from any open stage.
        """
        if self._config.deciding_policy == DecidingPolicy.OVERLAY:
            return True
        return current == Stage.DECIDING or current.is_resolution()

    def tracks(self, idea_id: str) -> List[PortfolioTrack]:
        return tracks_for(self._gateway, trade_idea_id=idea_id)


__all__ = [
    "derive_aggregate_stage",
    "track_state",
    "write_track_decision",
    "DecisionEngine",
]
