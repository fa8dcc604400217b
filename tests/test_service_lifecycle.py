"""
Tests for idea lifecycle commands through the service.

Tests cover:
- Creation, editing and permission classes
- Soft delete, restore and archival
- Request idempotency and bulk moves
- Deciding policies
- Transaction conflicts across sessions, and configuration
"""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from core.exceptions import Conflict, InvalidConfigError, InvalidTransition, NotFound, Unauthorized
from database.models import Portfolio, PortfolioTrack, TradeProposal
from trade_workflow.audit import InMemoryAuditSink
from trade_workflow.config import DecidingPolicy, WorkflowConfig
from trade_workflow.schemas import ActionContext, ProposalCreate, ProposalInput, TradeIdeaCreate, TradeIdeaUpdate
from trade_workflow.service import TradeWorkflowService
from trade_workflow.types import Decision, SizingMode, Stage, TradeAction


@pytest.fixture
def two_services(file_session_factory, config, clock):
    """Two services on separate sessions over one database file."""
    sessions = [file_session_factory(), file_session_factory()]
    yield [TradeWorkflowService(session, config=config, clock=clock) for session in sessions]
    for session in sessions:
        session.close()


# =============================================================
# TEST: Creation and Editing
# =============================================================

class TestCreateAndUpdate:
    """Test creation and attribute edits."""

    def test_create_links_primary_portfolio(self, service, make_idea, db):
        idea = make_idea()

        assert idea.stage == "idea"
        assert idea.visibility_tier == "active"
        assert db.query(PortfolioTrack).filter_by(trade_idea_id=idea.id).one().portfolio_id == "P1"

        events = service.audit_trail(idea.id)
        assert [e.action_type for e in events] == ["create"]
        assert events[0].actor_id == "analyst-1"
        assert events[0].ui_source == "test"

    def test_create_without_portfolio(self, service, make_idea):
        idea = make_idea(primary_portfolio_id=None)
        assert service.list_tracks(idea.id) == []

    def test_update_rationale(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.update_trade_idea(idea.id, TradeIdeaUpdate(rationale="Margin expansion"), analyst_ctx)

        event = service.audit_trail(idea.id)[-1]
        assert service.get_trade_idea(idea.id).rationale == "Margin expansion"
        assert event.action_type == "update"
        assert event.action_category == "lifecycle"
        assert event.changed_fields == ["rationale"]

    def test_reassignment_is_assignment_category(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.update_trade_idea(idea.id, TradeIdeaUpdate(assigned_to="analyst-2"), analyst_ctx)
        assert service.audit_trail(idea.id)[-1].action_category == "assignment"

    def test_outsider_cannot_edit(self, service, make_idea, outsider_ctx):
        idea = make_idea()
        with pytest.raises(Unauthorized):
            service.update_trade_idea(idea.id, TradeIdeaUpdate(rationale="x"), outsider_ctx)

    def test_required_fields_cannot_be_cleared(self, service, make_idea, analyst_ctx):
        idea = make_idea()

        with pytest.raises(ValidationError):
            TradeIdeaUpdate(urgency=None)
        with pytest.raises(ValidationError):
            TradeIdeaUpdate(sharing_visibility=None)

        service.update_trade_idea(idea.id, TradeIdeaUpdate(rationale=None, assigned_to=None), analyst_ctx)
        edited = service.get_trade_idea(idea.id)
        assert edited.urgency == "medium"
        assert edited.sharing_visibility == "private"


# =============================================================
# TEST: Stage Moves
# =============================================================

class TestMoveStage:
    """Test stage moves on single ideas."""

    def test_creator_moves(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        result = service.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)

        assert (result.from_stage, result.to_stage, result.applied) == (Stage.IDEA, Stage.WORKING_ON, True)
        assert service.get_trade_idea(idea.id).stage == "working_on"

    def test_legacy_stage_name(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.move_stage(idea.id, "discussing", analyst_ctx)
        assert service.get_trade_idea(idea.id).stage == "working_on"

    def test_outsider_rejected_and_nothing_written(self, service, make_idea, outsider_ctx):
        idea = make_idea()
        with pytest.raises(Unauthorized):
            service.move_stage(idea.id, Stage.WORKING_ON, outsider_ctx)

        assert service.get_trade_idea(idea.id).stage == "idea"
        assert [e.action_type for e in service.audit_trail(idea.id)] == ["create"]

    def test_assignee_and_collaborator_move(self, service, make_idea, other_analyst_ctx, pm_ctx):
        idea = make_idea(assigned_to="analyst-2", collaborators=["pm-1"])

        service.move_stage(idea.id, Stage.WORKING_ON, other_analyst_ctx)
        service.move_stage(idea.id, Stage.MODELING, pm_ctx)
        assert service.get_trade_idea(idea.id).stage == "modeling"

    def test_member_of_linked_portfolio_may_defer(self, service, deciding_idea, other_analyst_ctx):
        """analyst-2 did not create the idea but belongs to P1."""
        service.move_stage(deciding_idea.id, Stage.DEFERRED, other_analyst_ctx)
        assert service.get_trade_idea(deciding_idea.id).stage == "deferred"

    def test_invalid_edge(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        with pytest.raises(InvalidTransition) as exc_info:
            service.move_stage(idea.id, Stage.APPROVED, analyst_ctx)
        assert exc_info.value.context["from_state"] == "idea"
        assert exc_info.value.context["to_state"] == "approved"

    def test_deciding_requires_proposal(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)
        service.move_stage(idea.id, Stage.MODELING, analyst_ctx)

        result = service.move_stage(idea.id, Stage.DECIDING, analyst_ctx)

        assert result.requires_proposal is True
        assert result.applied is False
        assert service.get_trade_idea(idea.id).stage == "modeling"

    def test_filter_by_stage(self, service, make_idea, analyst_ctx):
        moved = make_idea()
        make_idea(asset_id="MSFT")
        service.move_stage(moved.id, Stage.WORKING_ON, analyst_ctx)

        assert [i.id for i in service.list_trade_ideas(stage=Stage.WORKING_ON)] == [moved.id]
        assert len(service.list_trade_ideas(portfolio_id="P1")) == 2

    def test_portfolio_filter_follows_links(self, service, make_idea, analyst_ctx):
        primary = make_idea(primary_portfolio_id="P2")
        linked = make_idea(asset_id="MSFT")
        service.link_portfolio(linked.id, "P2", analyst_ctx)
        in_lab = make_idea(asset_id="NVDA", primary_portfolio_id=None)
        service.link_portfolio(in_lab.id, "P2", analyst_ctx, lab_id="L1")
        make_idea(asset_id="TSLA")

        listed = {i.id for i in service.list_trade_ideas(portfolio_id="P2")}
        assert listed == {primary.id, linked.id, in_lab.id}


# =============================================================
# TEST: Delete, Restore, Archive
# =============================================================

class TestSoftDelete:
    """Test the visibility tier lifecycle."""

    def test_delete_keeps_stage(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)

        result = service.delete_trade_idea(idea.id, analyst_ctx)

        trashed = service.get_trade_idea(idea.id)
        assert result.to_stage == Stage.DELETED
        assert trashed.visibility_tier == "trashed"
        assert trashed.stage == "working_on"
        assert trashed.deleted_by == "analyst-1"
        assert service.list_trade_ideas() == []
        assert [i.id for i in service.list_trash()] == [idea.id]

    def test_restore_returns_to_kept_stage(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)
        service.delete_trade_idea(idea.id, analyst_ctx)

        result = service.restore_trade_idea(idea.id, analyst_ctx)

        restored = service.get_trade_idea(idea.id)
        assert result.to_stage == Stage.WORKING_ON
        assert restored.visibility_tier == "active"
        assert restored.deleted_at is None

    def test_restore_keeps_rationale_proposals_and_tracks(self, service, deciding_idea, analyst_ctx, pm_ctx):
        idea_id = deciding_idea.id
        service.update_trade_idea(idea_id, TradeIdeaUpdate(rationale="Services growth"), analyst_ctx)
        service.link_portfolio(idea_id, "P2", analyst_ctx)
        in_p2 = service.submit_proposal(
            ProposalCreate(
                trade_idea_id=idea_id,
                portfolio_id="P2",
                sizing_mode=SizingMode.ABSOLUTE_WEIGHT,
                input_value=Decimal("2.0"),
            ),
            analyst_ctx,
        )
        service.decide(in_p2.id, Decision.ACCEPT, pm_ctx)

        def outcomes():
            return {t.portfolio_id: (t.decision_outcome, t.accepted_weight) for t in service.list_tracks(idea_id)}

        proposals_before = sorted(p.id for p in service.list_active_proposals(idea_id))
        outcomes_before = outcomes()
        assert len(proposals_before) == 2
        assert outcomes_before["P2"] == ("accepted", Decimal("2.0"))

        service.delete_trade_idea(idea_id, analyst_ctx)
        service.restore_trade_idea(idea_id, analyst_ctx)

        restored = service.get_trade_idea(idea_id)
        assert restored.stage == "deciding"
        assert restored.rationale == "Services growth"
        assert sorted(p.id for p in service.list_active_proposals(idea_id)) == proposals_before
        assert outcomes() == outcomes_before

    def test_restore_only_to_kept_stage_or_idea(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)
        service.delete_trade_idea(idea.id, analyst_ctx)

        for target in (Stage.APPROVED, Stage.REJECTED, Stage.DECIDING, Stage.MODELING, Stage.DELETED):
            with pytest.raises(InvalidTransition):
                service.restore_trade_idea(idea.id, analyst_ctx, target_stage=target)

        trashed = service.get_trade_idea(idea.id)
        assert (trashed.stage, trashed.visibility_tier) == ("working_on", "trashed")

        result = service.restore_trade_idea(idea.id, analyst_ctx, target_stage=Stage.IDEA)
        assert result.to_stage == Stage.IDEA
        assert service.get_trade_idea(idea.id).stage == "idea"

    def test_move_out_of_trash_goes_to_idea(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)
        service.delete_trade_idea(idea.id, analyst_ctx)

        result = service.move_stage(idea.id, Stage.IDEA, analyst_ctx)
        assert result.from_stage == Stage.DELETED
        assert service.get_trade_idea(idea.id).stage == "idea"

    def test_trash_only_exits_to_idea(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.delete_trade_idea(idea.id, analyst_ctx)
        with pytest.raises(InvalidTransition):
            service.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)

    def test_delete_and_restore_are_audited(self, service, make_idea, analyst_ctx):
        idea = make_idea()
        service.delete_trade_idea(idea.id, analyst_ctx)
        service.restore_trade_idea(idea.id, analyst_ctx)

        events = service.audit_trail(idea.id)
        assert [e.action_type for e in events] == ["create", "delete", "restore"]
        assert all(e.action_category == "visibility" for e in events[1:])

    def test_archive_after_retention(self, service, make_idea, analyst_ctx, clock):
        stale = make_idea()
        recent = make_idea(asset_id="MSFT")
        service.delete_trade_idea(stale.id, analyst_ctx)
        clock.advance(days=20)
        service.delete_trade_idea(recent.id, analyst_ctx)
        clock.advance(days=11)

        result = service.archive_stale_trash(analyst_ctx)

        assert result == {"archived_ideas": [stale.id], "archived_pairs": []}
        assert service.get_trade_idea(stale.id).visibility_tier == "archived"
        assert service.get_trade_idea(recent.id).visibility_tier == "trashed"

        with pytest.raises(InvalidTransition):
            service.restore_trade_idea(stale.id, analyst_ctx)
        service.restore_trade_idea(recent.id, analyst_ctx)


# =============================================================
# TEST: Idempotency and Bulk
# =============================================================

class TestIdempotencyAndBulk:
    """Test request ids and bulk moves."""

    def test_repeated_request_is_skipped(self, service, make_idea):
        idea = make_idea()
        ctx = ActionContext(actor_id="analyst-1", request_id="req-1")

        first = service.move_stage(idea.id, Stage.WORKING_ON, ctx)
        second = service.move_stage(idea.id, Stage.WORKING_ON, ctx)

        assert first.applied
        assert second.duplicate is True
        assert second.applied is False
        moves = [e for e in service.audit_trail(idea.id) if e.action_type == "move_stage"]
        assert len(moves) == 1
        assert moves[0].request_id == "req-1"

    def test_bulk_move_partial_failure(self, service, make_idea, analyst_ctx, pm_ctx):
        mine = [make_idea(), make_idea(asset_id="MSFT")]
        theirs = make_idea(ctx=pm_ctx)

        result = service.bulk_move_stage([mine[0].id, theirs.id, mine[1].id], Stage.WORKING_ON, analyst_ctx)

        assert [r.entity_id for r in result.succeeded] == [mine[0].id, mine[1].id]
        assert len(result.failed) == 1
        assert result.failed[0].entity_id == theirs.id
        assert result.failed[0].code == "unauthorized"
        assert service.get_trade_idea(mine[1].id).stage == "working_on"
        assert service.get_trade_idea(theirs.id).stage == "idea"

    def test_bulk_move_records_batch(self, service, make_idea, analyst_ctx):
        ideas = [make_idea(), make_idea(asset_id="MSFT")]
        result = service.bulk_move_stage([i.id for i in ideas], Stage.WORKING_ON, analyst_ctx)

        for index, idea in enumerate(ideas):
            move = service.audit_trail(idea.id)[-1]
            assert move.event_metadata["batch_id"] == result.batch_id
            assert move.event_metadata["batch_index"] == index
            assert move.event_metadata["batch_total"] == 2


# =============================================================
# TEST: Deciding Policy
# =============================================================

class TestOverlayPolicy:
    """Test the overlay deciding policy."""

    def test_overlay_leaves_stage(self, db, clock, make_idea, analyst_ctx):
        overlay = TradeWorkflowService(
            db,
            config=WorkflowConfig(deciding_policy=DecidingPolicy.OVERLAY, local_timezone="UTC"),
            clock=clock,
        )
        idea = make_idea()
        overlay.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)
        overlay.move_stage(idea.id, Stage.MODELING, analyst_ctx)

        result = overlay.move_stage(
            idea.id,
            Stage.DECIDING,
            analyst_ctx,
            proposal=ProposalInput(portfolio_id="P1", sizing_mode=SizingMode.ABSOLUTE_WEIGHT, input_value=Decimal("2")),
        )

        assert result.applied is True
        assert result.to_stage == Stage.MODELING
        assert overlay.get_trade_idea(idea.id).stage == "modeling"
        assert len(overlay.list_active_proposals(idea.id)) == 1

    def test_overlay_resolves_from_open_stage(self, db, clock, make_idea, analyst_ctx, pm_ctx):
        overlay = TradeWorkflowService(
            db,
            config=WorkflowConfig(deciding_policy=DecidingPolicy.OVERLAY, local_timezone="UTC"),
            clock=clock,
        )
        idea = make_idea()
        overlay.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)
        overlay.move_stage(idea.id, Stage.MODELING, analyst_ctx)
        overlay.move_stage(
            idea.id,
            Stage.DECIDING,
            analyst_ctx,
            proposal=ProposalInput(portfolio_id="P1", sizing_mode=SizingMode.ABSOLUTE_WEIGHT, input_value=Decimal("2")),
        )

        overlay.decide(overlay.list_active_proposals(idea.id)[0].id, Decision.ACCEPT, pm_ctx)

        assert overlay.get_trade_idea(idea.id).stage == "approved"


# =============================================================
# TEST: Transactions
# =============================================================

class TestTransactions:
    """Test conflict mapping and rollback."""

    def test_integrity_error_is_conflict(self, service):
        with pytest.raises(Conflict):
            with service.gateway.atomic():
                service.gateway.insert(Portfolio(id="P1", name="Duplicate"))

        assert service.gateway.get(Portfolio, "P1").name == "Core Equity"

    def test_racing_proposal_hits_active_index(self, two_services, analyst_ctx):
        first, second = two_services
        idea = first.create_trade_idea(
            TradeIdeaCreate(asset_id="AAPL", action=TradeAction.BUY, primary_portfolio_id="P1"), analyst_ctx
        )

        # Both writers see no active proposal before either commits
        assert second.ledger.active_for_idea(idea.id, "P1") == []
        first.submit_proposal(
            ProposalCreate(
                trade_idea_id=idea.id,
                portfolio_id="P1",
                sizing_mode=SizingMode.ABSOLUTE_WEIGHT,
                input_value=Decimal("1.0"),
            ),
            analyst_ctx,
        )

        with pytest.raises(Conflict):
            with second.gateway.atomic():
                second.gateway.insert(TradeProposal(
                    trade_idea_id=idea.id,
                    portfolio_id="P1",
                    actor_id="analyst-1",
                    sizing_mode="absolute_weight",
                    input_value=Decimal("2.0"),
                ))

        assert [p.input_value for p in second.list_active_proposals(idea.id)] == [Decimal("1.0")]

    def test_stale_idea_version_is_conflict(self, two_services, analyst_ctx):
        first, second = two_services
        idea = first.create_trade_idea(
            TradeIdeaCreate(asset_id="AAPL", action=TradeAction.BUY, primary_portfolio_id="P1"), analyst_ctx
        )
        stale = second.get_trade_idea(idea.id)

        first.update_trade_idea(idea.id, TradeIdeaUpdate(rationale="First"), analyst_ctx)

        with pytest.raises(Conflict):
            with second.gateway.atomic():
                stale.rationale = "Second"
                second.gateway.flush()

        assert second.get_trade_idea(idea.id).rationale == "First"

    def test_concurrent_decisions_cannot_both_miss_resolution(self, two_services, analyst_ctx, pm_ctx):
        """Each session decides the last-but-one portfolio from its own view."""
        first, second = two_services
        idea = first.create_trade_idea(
            TradeIdeaCreate(asset_id="AAPL", action=TradeAction.BUY, primary_portfolio_id="P1"), analyst_ctx
        )
        first.link_portfolio(idea.id, "P2", analyst_ctx)
        first.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)
        first.move_stage(idea.id, Stage.MODELING, analyst_ctx)
        proposals = {}
        for portfolio_id in ("P1", "P2"):
            proposals[portfolio_id] = first.submit_proposal(
                ProposalCreate(
                    trade_idea_id=idea.id,
                    portfolio_id=portfolio_id,
                    sizing_mode=SizingMode.ABSOLUTE_WEIGHT,
                    input_value=Decimal("1.0"),
                ),
                analyst_ctx,
            )
        first.move_stage(idea.id, Stage.DECIDING, analyst_ctx)

        second.get_trade_idea(idea.id)
        first.decide(proposals["P1"].id, Decision.ACCEPT, pm_ctx)

        with pytest.raises(Conflict):
            second.decide(proposals["P2"].id, Decision.REJECT, pm_ctx)

        second.decide(proposals["P2"].id, Decision.REJECT, pm_ctx)
        assert second.get_trade_idea(idea.id).stage == "approved"

    def test_audit_trail_of_unknown_entity(self, service):
        with pytest.raises(NotFound):
            service.audit_trail("missing")

    def test_in_memory_audit_sink(self, db, config, clock):
        sink = InMemoryAuditSink()
        service = TradeWorkflowService(db, config=config, clock=clock, audit=sink)
        ctx = ActionContext(actor_id="analyst-1", request_id="req-9")

        idea = service.create_trade_idea(TradeIdeaCreate(asset_id="AAPL", action=TradeAction.BUY), ctx)
        service.move_stage(idea.id, Stage.WORKING_ON, ctx)
        repeated = service.move_stage(idea.id, Stage.WORKING_ON, ctx)

        assert repeated.duplicate is True
        assert [r.action_type for r in sink.for_entity(idea.id)] == ["create", "move_stage"]
        assert sink.records[1].to_state["stage"] == "working_on"


# =============================================================
# TEST: Configuration
# =============================================================

class TestWorkflowConfig:
    """Test configuration validation."""

    def test_defaults(self):
        config = WorkflowConfig()
        assert config.deciding_policy == DecidingPolicy.APPLY_ON_PROPOSAL
        assert config.decision_roles == ["pm"]
        assert config.trash_retention_days == 30

    def test_policy_from_string(self):
        assert WorkflowConfig(deciding_policy="overlay").deciding_policy == DecidingPolicy.OVERLAY

    def test_unknown_policy(self):
        with pytest.raises(InvalidConfigError):
            WorkflowConfig(deciding_policy="bogus")

    def test_unknown_zone(self):
        with pytest.raises(InvalidConfigError):
            WorkflowConfig(local_timezone="Mars/Olympus_Mons")

    def test_negative_retention(self):
        with pytest.raises(InvalidConfigError):
            WorkflowConfig(trash_retention_days=-1)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_DECIDING_POLICY", "OVERLAY")
        monkeypatch.setenv("WORKFLOW_DECISION_ROLES", "pm, admin")
        monkeypatch.setenv("WORKFLOW_LOCAL_TIMEZONE", "Europe/London")
        monkeypatch.setenv("WORKFLOW_TRASH_RETENTION_DAYS", "7")

        config = WorkflowConfig.from_env()

        assert config.deciding_policy == DecidingPolicy.OVERLAY
        assert config.decision_roles == ["pm", "admin"]
        assert config.local_timezone == "Europe/London"
        assert config.trash_retention_days == 7

    def test_from_env_bad_retention(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_TRASH_RETENTION_DAYS", "soon")
        with pytest.raises(InvalidConfigError):
            WorkflowConfig.from_env()
