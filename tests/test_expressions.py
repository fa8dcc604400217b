"""
Tests for the expression aggregator.
"""

from decimal import Decimal
from types import SimpleNamespace

from trade_workflow.expressions import ExpressionAggregator
from trade_workflow.schemas import LegInput, PairTradeCreate, ProposalCreate
from trade_workflow.types import Decision, SizingMode, TradeAction


def idea(id, primary_portfolio_id=None, pair_trade_id=None, visibility_tier="active"):
    return SimpleNamespace(
        id=id,
        primary_portfolio_id=primary_portfolio_id,
        pair_trade_id=pair_trade_id,
        visibility_tier=visibility_tier,
    )


def track(portfolio_id, outcome=None, trade_idea_id=None, pair_trade_id=None):
    return SimpleNamespace(
        portfolio_id=portfolio_id,
        decision_outcome=outcome,
        trade_idea_id=trade_idea_id,
        pair_trade_id=pair_trade_id,
    )


def proposal(portfolio_id, trade_idea_id, pair_trade_id=None, is_active=True):
    return SimpleNamespace(
        portfolio_id=portfolio_id,
        trade_idea_id=trade_idea_id,
        pair_trade_id=pair_trade_id,
        is_active=is_active,
    )


def lab_link(lab_id, portfolio_id, trade_idea_id):
    return SimpleNamespace(lab_id=lab_id, portfolio_id=portfolio_id, trade_idea_id=trade_idea_id)


# =============================================================
# TEST: Projection
# =============================================================

class TestSummarize:
    """Test the per-idea projection over plain rows."""

    def test_three_portfolio_scenario(self):
        """
        P1 undecided with two proposals, P2 accepted, P3 linked
        through a lab with only a withdrawn proposal.
        """
        i1 = idea("i1", primary_portfolio_id="P1")
        aggregator = ExpressionAggregator(
            ideas=[i1],
            proposals=[
                proposal("P1", "i1"),
                proposal("P1", "i1"),
                proposal("P2", "i1"),
                proposal("P3", "i1", is_active=False),
            ],
            tracks=[
                track("P1", trade_idea_id="i1"),
                track("P2", "accepted", trade_idea_id="i1"),
            ],
            lab_links=[lab_link("L1", "P3", "i1")],
        )

        summary = aggregator.summarize(i1)

        assert summary.lab_count == 3
        assert summary.portfolio_ids == ["P1", "P2", "P3"]
        assert summary.proposal_count == 2
        assert summary.portfolio_proposal_counts == {"P1": 2}
        assert summary.track_counts.total == 3
        assert summary.track_counts.active == 2
        assert summary.track_counts.committed == 1
        assert summary.needs_sizing == ["P3"]
        assert summary.awaiting_decision == ["P1"]
        assert summary.lab_ids == ["L1"]
        assert summary.status_label == "In 1 lab"

    def test_outcome_counts(self):
        i1 = idea("i1")
        aggregator = ExpressionAggregator(
            ideas=[i1],
            tracks=[
                track("P1", "rejected", trade_idea_id="i1"),
                track("P2", "deferred", trade_idea_id="i1"),
            ],
        )
        counts = aggregator.summarize(i1).track_counts
        assert (counts.total, counts.active, counts.rejected, counts.deferred) == (2, 0, 1, 1)

    def test_unlinked_idea(self):
        i1 = idea("i1")
        summary = ExpressionAggregator(ideas=[i1]).summarize(i1)

        assert summary.lab_count == 0
        assert summary.portfolio_ids == []
        assert summary.status_label == "Not in lab"

    def test_plural_label(self):
        i1 = idea("i1", primary_portfolio_id="P1")
        aggregator = ExpressionAggregator(
            ideas=[i1],
            lab_links=[lab_link("L1", "P1", "i1"), lab_link("L2", "P2", "i1")],
        )
        assert aggregator.summarize(i1).status_label == "In 2 labs"

    def test_leg_reports_pair(self):
        long_leg = idea("i2", primary_portfolio_id="P1", pair_trade_id="pr1")
        short_leg = idea("i3", primary_portfolio_id="P1", pair_trade_id="pr1")
        aggregator = ExpressionAggregator(
            ideas=[long_leg, short_leg],
            pairs=[SimpleNamespace(id="pr1")],
            proposals=[proposal("P1", "i2", "pr1"), proposal("P1", "i3", "pr1")],
            tracks=[track("P1", pair_trade_id="pr1")],
        )

        summary = aggregator.summarize(short_leg)
        assert summary.pair_trade_id == "pr1"
        assert summary.proposal_count == 2
        assert summary.awaiting_decision == ["P1"]

    def test_summarize_all_skips_trash(self):
        aggregator = ExpressionAggregator(
            ideas=[idea("i1"), idea("i2", visibility_tier="trashed")],
        )
        assert list(aggregator.summarize_all()) == ["i1"]
        assert sorted(aggregator.summarize_all(include_deleted=True)) == ["i1", "i2"]


# =============================================================
# TEST: Through the Service
# =============================================================

class TestExpressionSummaryService:
    """Test the projection over persisted rows."""

    def test_summary_follows_commands(self, service, make_idea, analyst_ctx, pm_ctx):
        idea_row = make_idea()
        submitted = service.submit_proposal(
            ProposalCreate(
                trade_idea_id=idea_row.id,
                portfolio_id="P1",
                sizing_mode=SizingMode.ABSOLUTE_WEIGHT,
                input_value=Decimal("2.5"),
            ),
            analyst_ctx,
        )
        service.link_portfolio(idea_row.id, "P2", analyst_ctx, lab_id="L7")

        summary = service.expression_summary(idea_row.id)
        assert summary.portfolio_ids == ["P1", "P2"]
        assert summary.awaiting_decision == ["P1"]
        assert summary.needs_sizing == ["P2"]
        assert summary.lab_ids == ["L7"]

        service.decide(submitted.id, Decision.ACCEPT, pm_ctx)
        summary = service.expression_summary(idea_row.id)
        assert summary.track_counts.committed == 1
        assert summary.awaiting_decision == []
        assert summary.proposal_count == 0

    def test_summaries_exclude_trashed(self, service, make_idea, analyst_ctx):
        kept = make_idea()
        trashed = make_idea(asset_id="MSFT")
        service.delete_trade_idea(trashed.id, analyst_ctx)

        summaries = service.expression_summaries()
        assert kept.id in summaries
        assert trashed.id not in summaries

    def test_scoped_load_matches_full_load(self, service, make_idea, analyst_ctx):
        single = make_idea()
        make_idea(asset_id="NVDA", primary_portfolio_id="P2")
        service.link_portfolio(single.id, "P3", analyst_ctx, lab_id="L1")
        pair = service.create_pair_trade(
            PairTradeCreate(
                name="Long AAPL / Short MSFT",
                long_leg=LegInput(asset_id="AAPL", action=TradeAction.BUY),
                short_leg=LegInput(asset_id="MSFT", action=TradeAction.SELL),
                primary_portfolio_id="P1",
            ),
            analyst_ctx,
        )
        leg = pair.legs[1]
        service.submit_proposal(
            ProposalCreate(
                trade_idea_id=leg.id,
                portfolio_id="P1",
                sizing_mode=SizingMode.ABSOLUTE_WEIGHT,
                input_value=Decimal("0.5"),
            ),
            analyst_ctx,
        )

        full = ExpressionAggregator.from_gateway(service.gateway)
        for row in (single, leg):
            scoped = ExpressionAggregator.for_idea(service.gateway, row)
            assert scoped.summarize(row) == full.summarize(row)
