"""
Tests for the proposal ledger.

Tests cover:
- Resolved weight and shares on submission
- Upsert per (idea, portfolio, actor) with version snapshots
- Proposal type from decision authority
- Withdraw and analyst-input rules
- Zero writes on a failed submission
"""

from decimal import Decimal

import pytest

from core.exceptions import BenchmarkUnavailable, Forbidden, InvalidTransition, NotFound
from database.models import LabLink, PortfolioTrack, TradeProposal
from trade_workflow.schemas import ProposalCreate
from trade_workflow.types import Decision, SizingMode, Stage


def proposal(idea_id, portfolio_id="P1", mode=SizingMode.DELTA_WEIGHT, value="0.5", **kwargs):
    return ProposalCreate(
        trade_idea_id=idea_id,
        portfolio_id=portfolio_id,
        sizing_mode=mode,
        input_value=Decimal(value),
        **kwargs,
    )


# =============================================================
# TEST: Submission
# =============================================================

class TestSubmitProposal:
    """Test proposal submission."""

    def test_delta_weight_resolves_against_holding(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        result = service.submit_proposal(proposal(idea.id), analyst_ctx)

        assert result.resolved_weight == Decimal("3.5")
        assert result.shares == Decimal("350")
        assert result.is_active
        assert result.proposal_type == "analyst"
        assert Decimal(result.sizing_context["delta_weight"]) == Decimal("0.5")
        assert result.sizing_context["direction_conflict"] is False

    def test_benchmark_modes(self, service, make_idea, analyst_ctx, other_analyst_ctx):
        idea = make_idea()
        active = service.submit_proposal(
            proposal(idea.id, mode=SizingMode.ACTIVE_WEIGHT, value="1.0"), analyst_ctx
        )
        relative = service.submit_proposal(
            proposal(idea.id, mode=SizingMode.DELTA_BENCHMARK, value="0.5"), other_analyst_ctx
        )
        assert active.resolved_weight == Decimal("3.0")
        assert relative.resolved_weight == Decimal("3.5")

    def test_resubmission_replaces_in_place(self, service, make_idea, analyst_ctx):
        """Two submissions by one actor leave one active row with the latest weight."""
        idea = make_idea()
        first = service.submit_proposal(proposal(idea.id), analyst_ctx)
        second = service.submit_proposal(
            proposal(idea.id, mode=SizingMode.ABSOLUTE_WEIGHT, value="4.0"), analyst_ctx
        )

        assert second.id == first.id
        active = service.list_active_proposals(idea.id, "P1")
        assert len(active) == 1
        assert active[0].resolved_weight == Decimal("4.0")

        versions = service.proposal_versions(first.id)
        assert [v.trigger_event for v in versions] == ["replaced"]
        assert versions[0].resolved_weight == Decimal("3.5")

    def test_one_active_proposal_per_actor(self, service, make_idea, analyst_ctx, pm_ctx):
        idea = make_idea()
        service.submit_proposal(proposal(idea.id), analyst_ctx)
        service.submit_proposal(proposal(idea.id), pm_ctx)

        active = service.list_active_proposals(idea.id, "P1")
        assert sorted(p.actor_id for p in active) == ["analyst-1", "pm-1"]

    def test_proposal_type_from_decision_authority(self, service, make_idea, pm_ctx):
        idea = make_idea()
        result = service.submit_proposal(proposal(idea.id), pm_ctx)
        assert result.proposal_type == "pm_initiated"

    def test_missing_benchmark_writes_nothing(self, service, make_idea, analyst_ctx, db):
        idea = make_idea(primary_portfolio_id=None)

        with pytest.raises(BenchmarkUnavailable):
            service.submit_proposal(
                proposal(idea.id, portfolio_id="P2", mode=SizingMode.ACTIVE_WEIGHT, value="1.0"),
                analyst_ctx,
            )

        assert db.query(TradeProposal).count() == 0
        assert db.query(PortfolioTrack).filter_by(trade_idea_id=idea.id).count() == 0

    def test_submission_links_portfolio(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.submit_proposal(proposal(idea.id, portfolio_id="P2", mode=SizingMode.ABSOLUTE_WEIGHT), analyst_ctx)
        assert [t.portfolio_id for t in service.list_tracks(idea.id)] == ["P1", "P2"]

    def test_lab_link_recorded(self, service, make_idea, analyst_ctx, db):
        idea = make_idea()
        service.submit_proposal(proposal(idea.id, lab_id="lab-1"), analyst_ctx)
        link = db.query(LabLink).filter_by(trade_idea_id=idea.id).one()
        assert (link.lab_id, link.portfolio_id) == ("lab-1", "P1")

    def test_deleted_idea_cannot_be_sized(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.delete_trade_idea(idea.id, analyst_ctx)
        with pytest.raises(InvalidTransition):
            service.submit_proposal(proposal(idea.id), analyst_ctx)

    def test_unknown_idea(self, service, analyst_ctx):
        with pytest.raises(NotFound):
            service.submit_proposal(proposal("missing-idea"), analyst_ctx)

    def test_submission_is_audited(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        result = service.submit_proposal(proposal(idea.id), analyst_ctx)

        events = [e for e in service.audit_trail(idea.id) if e.action_type == "submit_proposal"]
        assert len(events) == 1
        assert events[0].entity_id == result.id
        assert events[0].parent_entity_id == idea.id
        assert events[0].action_category == "proposal"


# =============================================================
# TEST: Withdraw
# =============================================================

class TestWithdrawProposal:
    """Test proposal withdrawal."""

    def test_author_withdraws(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        result = service.submit_proposal(proposal(idea.id), analyst_ctx)

        withdrawn = service.withdraw_proposal(result.id, analyst_ctx)
        assert withdrawn.is_active is False
        assert service.list_active_proposals(idea.id) == []

    def test_withdraw_twice_is_noop(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        result = service.submit_proposal(proposal(idea.id), analyst_ctx)
        service.withdraw_proposal(result.id, analyst_ctx)

        again = service.withdraw_proposal(result.id, analyst_ctx)
        assert again.is_active is False
        events = [e for e in service.audit_trail(idea.id) if e.action_type == "withdraw_proposal"]
        assert len(events) == 1

    def test_only_author_may_withdraw(self, service, make_idea, analyst_ctx, pm_ctx):
        idea = make_idea()
        result = service.submit_proposal(proposal(idea.id), analyst_ctx)

        with pytest.raises(Forbidden):
            service.withdraw_proposal(result.id, pm_ctx)
        assert service.get_proposal(result.id).is_active

    def test_decided_portfolio_blocks_withdraw(self, service, make_idea, analyst_ctx, pm_ctx):
        idea = make_idea()
        result = service.submit_proposal(proposal(idea.id), analyst_ctx)
        service.decide(result.id, Decision.ACCEPT, pm_ctx)

        with pytest.raises(Forbidden):
            service.withdraw_proposal(result.id, analyst_ctx)


# =============================================================
# TEST: Analyst Input
# =============================================================

class TestRequestAnalystInput:
    """Test analyst-input requests on PM proposals."""

    def test_pm_flags_own_proposal(self, service, make_idea, pm_ctx):
        idea = make_idea()
        result = service.submit_proposal(proposal(idea.id), pm_ctx)

        flagged = service.request_analyst_input(result.id, pm_ctx)
        assert flagged.analyst_input_requested is True
        assert flagged.analyst_input_requested_at is not None

    def test_analyst_proposal_cannot_be_flagged(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        result = service.submit_proposal(proposal(idea.id), analyst_ctx)
        with pytest.raises(Forbidden):
            service.request_analyst_input(result.id, analyst_ctx)

    def test_only_author_may_flag(self, service, make_idea, pm_ctx, analyst_ctx):
        idea = make_idea()
        result = service.submit_proposal(proposal(idea.id), pm_ctx)
        with pytest.raises(Forbidden):
            service.request_analyst_input(result.id, analyst_ctx)


# =============================================================
# TEST: Move Into Deciding
# =============================================================

class TestMoveIntoDeciding:
    """Test the proposal gate on moving into deciding."""

    def test_deciding_with_proposal(self, service, deciding_idea):
        assert service.get_trade_idea(deciding_idea.id).stage == Stage.DECIDING.value
        active = service.list_active_proposals(deciding_idea.id)
        assert len(active) == 1
        assert active[0].resolved_weight == Decimal("3.5")
