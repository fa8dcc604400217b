"""
Trade Workflow - Proposal Ledger.

============================================================
PURPOSE
============================================================
Captures per-portfolio sizing proposals.

RESPONSIBILITIES:
- Resolve sizing input to a target weight (and shares)
- Upsert on (idea, portfolio, actor): one active row per key
- Snapshot a proposal before it is replaced or decided
- Withdraw and analyst-input requests

INVARIANTS:
- At most one active proposal per (idea, portfolio, actor)
- Proposals are deactivated, never deleted
- Leg proposals share the pair's portfolio linkage

============================================================
"""

import logging
from decimal import Decimal
from typing import List, Optional

from core.clock import ClockProtocol
from core.exceptions import Forbidden, InvalidPair, InvalidTransition
from database.gateway import PersistenceGateway
from database.models import PairTrade, TradeIdea, TradeProposal, TradeProposalVersion

from .audit import AuditRecord, AuditSink
from .linkage import ensure_lab_link, ensure_track, find_track
from .permissions import AccessPolicy
from .schemas import ActionContext
from .sizing import PortfolioDataProvider, size_proposal
from .types import (
    ActionCategory,
    ActionType,
    EntityType,
    ProposalType,
    SizingMode,
    VisibilityTier,
)


logger = logging.getLogger(__name__)


def proposal_state(proposal: TradeProposal) -> dict:
    return {
        "sizing_mode": proposal.sizing_mode,
        "input_value": proposal.input_value,
        "resolved_weight": proposal.resolved_weight,
        "shares": proposal.shares,
        "notes": proposal.notes,
        "is_active": proposal.is_active,
        "proposal_type": proposal.proposal_type,
    }


class ProposalLedger:
    """Create, replace and withdraw sizing proposals."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        access: AccessPolicy,
        audit: AuditSink,
        clock: ClockProtocol,
        positions: PortfolioDataProvider,
    ):
        self._gateway = gateway
        self._access = access
        self._audit = audit
        self._clock = clock
        self._positions = positions

    # --------------------------------------------------------
    # SUBMIT
    # --------------------------------------------------------

    def submit(
        self,
        idea_id: str,
        portfolio_id: str,
        ctx: ActionContext,
        sizing_mode: SizingMode,
        input_value: Decimal,
        notes: Optional[str] = None,
        lab_id: Optional[str] = None,
    ) -> TradeProposal:
        """
        Submit (or replace) the actor's proposal for an idea in a portfolio.

        Raises:
            NotFound: idea does not exist
            InvalidTransition: idea is not in the active tier
            InvalidPair: leg proposal for a portfolio outside the pair's linkage
            BenchmarkUnavailable: benchmark-relative mode without benchmark data
        """
        now = self._clock.now()
        idea = self._gateway.require(TradeIdea, idea_id)

        if idea.visibility_tier != VisibilityTier.ACTIVE.value:
            raise InvalidTransition(
                f"Cannot size deleted idea {idea.id}",
                from_state=idea.visibility_tier,
            )

        if idea.pair_trade_id:
            pair = self._gateway.require(PairTrade, idea.pair_trade_id)
            if portfolio_id not in self._access.linked_pair_portfolios(pair):
                raise InvalidPair(
                    f"Portfolio {portfolio_id} is not linked to pair {pair.id}; "
                    f"link the pair before sizing its legs",
                    pair_trade_id=pair.id,
                )
        else:
            ensure_track(self._gateway, portfolio_id, now, trade_idea_id=idea.id)

        if lab_id:
            ensure_lab_link(self._gateway, lab_id, portfolio_id, idea.id, ctx.actor_id, now)

        position = self._positions.position(portfolio_id, idea.asset_id)
        sizing = size_proposal(idea.action, sizing_mode, Decimal(input_value), position)

        sizing_context = dict(sizing.context)
        if idea.pair_trade_id:
            sizing_context["pair_trade_id"] = idea.pair_trade_id
            sizing_context["leg_type"] = idea.leg_type

        proposal_type = (
            ProposalType.PM_INITIATED
            if self._access.has_decision_authority(portfolio_id, ctx.actor_id)
            else ProposalType.ANALYST
        )

        key = {
            "trade_idea_id": idea.id,
            "portfolio_id": portfolio_id,
            "actor_id": ctx.actor_id,
            "is_active": True,
        }
        existing = self._gateway.first(
            TradeProposal,
            *[getattr(TradeProposal, k) == v for k, v in key.items()],
            for_update=True,
        )
        from_state = proposal_state(existing) if existing else None
        if existing is not None:
            self.snapshot(existing, "replaced", ctx.actor_id)

        fields = {
            "sizing_mode": SizingMode(sizing_mode).value,
            "input_value": Decimal(input_value),
            "resolved_weight": sizing.resolved_weight,
            "shares": sizing.target_shares,
            "sizing_context": sizing_context,
            "notes": notes,
            "lab_id": lab_id or (existing.lab_id if existing else None),
            "pair_trade_id": idea.pair_trade_id,
            "proposal_type": proposal_type.value,
            "updated_at": now,
        }
        if existing is None:
            fields["created_at"] = now

        proposal, created = self._gateway.upsert(TradeProposal, key, fields)

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.PROPOSAL,
            proposal.id,
            ActionType.SUBMIT_PROPOSAL,
            ActionCategory.PROPOSAL,
            now,
            from_state=from_state,
            to_state=proposal_state(proposal),
            changed_fields=sorted(fields) if created else _changed(from_state, proposal),
            metadata={"portfolio_id": portfolio_id, "created": created},
            parent=(EntityType.TRADE_IDEA, idea.id),
        ))

        logger.info(
            f"Proposal {'created' if created else 'replaced'}: id={proposal.id} idea={idea.id} "
            f"portfolio={portfolio_id} actor={ctx.actor_id} weight={sizing.resolved_weight}"
        )
        return proposal

    # --------------------------------------------------------
    # WITHDRAW / ANALYST INPUT
    # --------------------------------------------------------

    def withdraw(self, proposal_id: str, ctx: ActionContext) -> TradeProposal:
        """
        Deactivate the actor's own undecided proposal.

        Raises:
            NotFound: proposal does not exist
            Forbidden: not the author, or the portfolio already decided
        """
        now = self._clock.now()
        proposal = self._gateway.require(TradeProposal, proposal_id, for_update=True)

        if proposal.actor_id != ctx.actor_id:
            raise Forbidden(
                f"Only the author may withdraw proposal {proposal.id}",
                actor_id=ctx.actor_id,
                required="proposal_author",
            )

        track = find_track(
            self._gateway,
            proposal.portfolio_id,
            trade_idea_id=proposal.trade_idea_id,
            pair_trade_id=proposal.pair_trade_id,
        )
        if track is not None and track.decision_outcome is not None:
            raise Forbidden(
                f"Portfolio {proposal.portfolio_id} already decided ({track.decision_outcome}); "
                f"proposal {proposal.id} can no longer be withdrawn",
                actor_id=ctx.actor_id,
                required="undecided_track",
            )

        if not proposal.is_active:
            return proposal

        from_state = proposal_state(proposal)
        proposal.is_active = False
        proposal.updated_at = now
        self._gateway.flush()

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.PROPOSAL,
            proposal.id,
            ActionType.WITHDRAW_PROPOSAL,
            ActionCategory.PROPOSAL,
            now,
            from_state=from_state,
            to_state=proposal_state(proposal),
            changed_fields=["is_active"],
            parent=(EntityType.TRADE_IDEA, proposal.trade_idea_id),
        ))

        logger.info(f"Proposal withdrawn: id={proposal.id} actor={ctx.actor_id}")
        return proposal

    def request_analyst_input(self, proposal_id: str, ctx: ActionContext) -> TradeProposal:
        """
        Flag the actor's own PM-initiated proposal as needing analyst input.

        Raises:
            Forbidden: not the author, or not a pm_initiated proposal
        """
        now = self._clock.now()
        proposal = self._gateway.require(TradeProposal, proposal_id, for_update=True)

        if proposal.actor_id != ctx.actor_id:
            raise Forbidden(
                f"Only the author may request analyst input on proposal {proposal.id}",
                actor_id=ctx.actor_id,
            )
        if proposal.proposal_type != ProposalType.PM_INITIATED.value:
            raise Forbidden(
                "Analyst input can only be requested on PM-initiated proposals",
                actor_id=ctx.actor_id,
                required=ProposalType.PM_INITIATED.value,
            )

        proposal.analyst_input_requested = True
        proposal.analyst_input_requested_at = now
        proposal.updated_at = now
        self._gateway.flush()

        self._audit.emit(AuditRecord.build(
            ctx,
            EntityType.PROPOSAL,
            proposal.id,
            ActionType.REQUEST_ANALYST_INPUT,
            ActionCategory.PROPOSAL,
            now,
            to_state={"analyst_input_requested": True},
            changed_fields=["analyst_input_requested", "analyst_input_requested_at"],
            parent=(EntityType.TRADE_IDEA, proposal.trade_idea_id),
        ))
        return proposal

    # --------------------------------------------------------
    # VERSIONS
    # --------------------------------------------------------

    def snapshot(self, proposal: TradeProposal, trigger_event: str, actor_id: str) -> TradeProposalVersion:
        """Write the next numbered snapshot of a proposal."""
        count = len(self._gateway.query(
            TradeProposalVersion, TradeProposalVersion.proposal_id == proposal.id
        ))
        version = TradeProposalVersion(
            proposal_id=proposal.id,
            version_number=count + 1,
            sizing_mode=proposal.sizing_mode,
            input_value=proposal.input_value,
            resolved_weight=proposal.resolved_weight,
            shares=proposal.shares,
            sizing_context=proposal.sizing_context,
            notes=proposal.notes,
            trigger_event=trigger_event,
            created_by=actor_id,
            created_at=self._clock.now(),
        )
        return self._gateway.insert(version)

    def versions(self, proposal_id: str) -> List[TradeProposalVersion]:
        return self._gateway.query(
            TradeProposalVersion,
            TradeProposalVersion.proposal_id == proposal_id,
            order_by=TradeProposalVersion.version_number,
        )

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def active_for_idea(self, idea_id: str, portfolio_id: Optional[str] = None) -> List[TradeProposal]:
        criteria = [TradeProposal.trade_idea_id == idea_id, TradeProposal.is_active.is_(True)]
        if portfolio_id:
            criteria.append(TradeProposal.portfolio_id == portfolio_id)
        return self._gateway.query(TradeProposal, *criteria, order_by=TradeProposal.created_at)

    def active_for_pair(self, pair_id: str, portfolio_id: Optional[str] = None) -> List[TradeProposal]:
        criteria = [TradeProposal.pair_trade_id == pair_id, TradeProposal.is_active.is_(True)]
        if portfolio_id:
            criteria.append(TradeProposal.portfolio_id == portfolio_id)
        return self._gateway.query(TradeProposal, *criteria, order_by=TradeProposal.created_at)

    def deactivate(self, proposals: List[TradeProposal], at) -> None:
        for proposal in proposals:
            proposal.is_active = False
            proposal.updated_at = at
        self._gateway.flush()


def _changed(before: Optional[dict], proposal: TradeProposal) -> List[str]:
    after = proposal_state(proposal)
    if before is None:
        return sorted(after)
    return sorted(k for k, v in after.items() if before.get(k) != v)


__all__ = ["ProposalLedger", "proposal_state"]
