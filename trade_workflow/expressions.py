"""
Trade Workflow - Expression Aggregator.

============================================================
PURPOSE
============================================================
Read-side projection answering, per idea: how many
portfolios and labs is it in, and what is pending there.

- Pure: computed from persisted rows only, no counters
- Paired legs report their pair's tracks and proposals
- Trashed ideas are excluded unless asked for

============================================================
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from database.gateway import PersistenceGateway
from database.models import LabLink, PairTrade, PortfolioTrack, TradeIdea, TradeProposal

from .types import DecisionOutcome, VisibilityTier


logger = logging.getLogger(__name__)


# ============================================================
# SUMMARY TYPES
# ============================================================

@dataclass
class TrackCounts:
    """Decision state across linked portfolios."""

    total: int = 0
    """Linked portfolios."""

    active: int = 0
    """Undecided."""

    committed: int = 0
    """Accepted."""

    deferred: int = 0
    rejected: int = 0


@dataclass
class ExpressionSummary:
    """Cross-portfolio and lab inclusion of one idea."""

    trade_idea_id: str
    pair_trade_id: Optional[str] = None
    lab_count: int = 0
    lab_ids: List[str] = field(default_factory=list)
    portfolio_ids: List[str] = field(default_factory=list)
    proposal_count: int = 0
    portfolio_proposal_counts: Dict[str, int] = field(default_factory=dict)
    track_counts: TrackCounts = field(default_factory=TrackCounts)
    needs_sizing: List[str] = field(default_factory=list)
    awaiting_decision: List[str] = field(default_factory=list)

    @property
    def status_label(self) -> str:
        if not self.lab_ids:
            return "Not in lab"
        noun = "lab" if len(self.lab_ids) == 1 else "labs"
        return f"In {len(self.lab_ids)} {noun}"


# ============================================================
# AGGREGATOR
# ============================================================

class ExpressionAggregator:
    """Projection over ideas, pairs, proposals, tracks and lab links."""

    def __init__(
        self,
        ideas: Iterable[TradeIdea],
        pairs: Iterable[PairTrade] = (),
        proposals: Iterable[TradeProposal] = (),
        tracks: Iterable[PortfolioTrack] = (),
        lab_links: Iterable[LabLink] = (),
    ):
        self._ideas = list(ideas)
        self._pairs = {p.id: p for p in pairs}

        self._legs_by_pair: Dict[str, List[TradeIdea]] = defaultdict(list)
        for idea in self._ideas:
            if idea.pair_trade_id:
                self._legs_by_pair[idea.pair_trade_id].append(idea)

        self._idea_tracks: Dict[str, List[PortfolioTrack]] = defaultdict(list)
        self._pair_tracks: Dict[str, List[PortfolioTrack]] = defaultdict(list)
        for track in tracks:
            if track.pair_trade_id:
                self._pair_tracks[track.pair_trade_id].append(track)
            else:
                self._idea_tracks[track.trade_idea_id].append(track)

        self._idea_proposals: Dict[str, List[TradeProposal]] = defaultdict(list)
        self._pair_proposals: Dict[str, List[TradeProposal]] = defaultdict(list)
        for proposal in proposals:
            if not proposal.is_active:
                continue
            if proposal.pair_trade_id:
                self._pair_proposals[proposal.pair_trade_id].append(proposal)
            else:
                self._idea_proposals[proposal.trade_idea_id].append(proposal)

        self._links: Dict[str, List[LabLink]] = defaultdict(list)
        for link in lab_links:
            self._links[link.trade_idea_id].append(link)

    @classmethod
    def from_gateway(cls, gateway: PersistenceGateway) -> "ExpressionAggregator":
        """Load the full row set through the gateway."""
        return cls(
            ideas=gateway.query(TradeIdea, order_by=TradeIdea.created_at),
            pairs=gateway.query(PairTrade),
            proposals=gateway.query(TradeProposal, TradeProposal.is_active.is_(True)),
            tracks=gateway.query(PortfolioTrack),
            lab_links=gateway.query(LabLink),
        )

    @classmethod
    def for_idea(cls, gateway: PersistenceGateway, idea: TradeIdea) -> "ExpressionAggregator":
        """Load only the rows one idea's summary reads: the idea, or its pair and both legs."""
        pair_id = idea.pair_trade_id
        if pair_id:
            members = gateway.query(TradeIdea, TradeIdea.pair_trade_id == pair_id, order_by=TradeIdea.created_at)
            return cls(
                ideas=members,
                pairs=gateway.query(PairTrade, PairTrade.id == pair_id),
                proposals=gateway.query(
                    TradeProposal, TradeProposal.pair_trade_id == pair_id, TradeProposal.is_active.is_(True)
                ),
                tracks=gateway.query(PortfolioTrack, PortfolioTrack.pair_trade_id == pair_id),
                lab_links=gateway.query(LabLink, LabLink.trade_idea_id.in_([m.id for m in members])),
            )
        return cls(
            ideas=[idea],
            proposals=gateway.query(
                TradeProposal, TradeProposal.trade_idea_id == idea.id, TradeProposal.is_active.is_(True)
            ),
            tracks=gateway.query(PortfolioTrack, PortfolioTrack.trade_idea_id == idea.id),
            lab_links=gateway.query(LabLink, LabLink.trade_idea_id == idea.id),
        )

    def summarize(self, idea: TradeIdea) -> ExpressionSummary:
        """Summary for one idea (a leg reports its pair)."""
        pair_id = idea.pair_trade_id
        if pair_id:
            members = self._legs_by_pair.get(pair_id) or [idea]
            tracks = self._pair_tracks.get(pair_id, [])
            proposals = self._pair_proposals.get(pair_id, [])
        else:
            members = [idea]
            tracks = self._idea_tracks.get(idea.id, [])
            proposals = self._idea_proposals.get(idea.id, [])

        links = [link for member in members for link in self._links.get(member.id, [])]

        outcomes: Dict[str, Optional[str]] = {}
        for member in members:
            if member.primary_portfolio_id:
                outcomes.setdefault(member.primary_portfolio_id, None)
        for link in links:
            outcomes.setdefault(link.portfolio_id, None)
        for track in tracks:
            outcomes[track.portfolio_id] = track.decision_outcome

        counts = TrackCounts(total=len(outcomes))
        for outcome in outcomes.values():
            if outcome is None:
                counts.active += 1
            elif outcome == DecisionOutcome.ACCEPTED.value:
                counts.committed += 1
            elif outcome == DecisionOutcome.DEFERRED.value:
                counts.deferred += 1
            elif outcome == DecisionOutcome.REJECTED.value:
                counts.rejected += 1

        pending: Dict[str, int] = defaultdict(int)
        for proposal in proposals:
            if outcomes.get(proposal.portfolio_id) is None:
                pending[proposal.portfolio_id] += 1

        undecided = sorted(pid for pid, outcome in outcomes.items() if outcome is None)

        return ExpressionSummary(
            trade_idea_id=idea.id,
            pair_trade_id=pair_id,
            lab_count=len(outcomes),
            lab_ids=sorted({link.lab_id for link in links}),
            portfolio_ids=sorted(outcomes),
            proposal_count=sum(pending.values()),
            portfolio_proposal_counts=dict(sorted(pending.items())),
            track_counts=counts,
            needs_sizing=[pid for pid in undecided if not pending.get(pid)],
            awaiting_decision=[pid for pid in undecided if pending.get(pid)],
        )

    def summarize_all(self, include_deleted: bool = False) -> Dict[str, ExpressionSummary]:
        """Summaries keyed by idea id, trashed ideas excluded by default."""
        return {
            idea.id: self.summarize(idea)
            for idea in self._ideas
            if include_deleted or idea.visibility_tier == VisibilityTier.ACTIVE.value
        }


__all__ = ["TrackCounts", "ExpressionSummary", "ExpressionAggregator"]
