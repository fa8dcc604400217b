"""
Shared fixtures for the trade workflow tests.

Every test gets a fresh in-memory SQLite database seeded with:
- Portfolios P1, P2, P3 (P1 holds AAPL at 3.0% vs a 2.0% benchmark)
- pm-1: pm in every portfolio
- pm-2: pm in P1 only
- analyst-1 / analyst-2: analysts in every portfolio
- outsider: no membership anywhere

file_session_factory holds the same seed in a SQLite file for
tests that need two sessions on separate connections.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.clock import MockClock
from database.engine import create_all_tables, create_database_engine, create_session_factory
from database.models import Portfolio, PortfolioHolding, PortfolioMember
from trade_workflow.config import WorkflowConfig
from trade_workflow.schemas import ActionContext, ProposalInput, TradeIdeaCreate
from trade_workflow.service import TradeWorkflowService
from trade_workflow.types import ActorRole, SizingMode, Stage, TradeAction


START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================
# SEED DATA
# =============================================================

def seed_reference_data(session) -> None:
    session.add_all([
        Portfolio(id="P1", name="Core Equity", total_value=Decimal("1000000"), benchmark_id="SPX"),
        Portfolio(id="P2", name="Growth", total_value=Decimal("500000")),
        Portfolio(id="P3", name="Income"),
    ])
    session.flush()

    for portfolio_id in ("P1", "P2", "P3"):
        session.add_all([
            PortfolioMember(portfolio_id=portfolio_id, actor_id="pm-1", role="pm"),
            PortfolioMember(portfolio_id=portfolio_id, actor_id="analyst-1", role="analyst"),
            PortfolioMember(portfolio_id=portfolio_id, actor_id="analyst-2", role="analyst"),
        ])
    session.add(PortfolioMember(portfolio_id="P1", actor_id="pm-2", role="pm"))

    session.add_all([
        PortfolioHolding(
            portfolio_id="P1",
            asset_id="AAPL",
            weight=Decimal("3.0"),
            shares=Decimal("300"),
            benchmark_weight=Decimal("2.0"),
            price=Decimal("100"),
        ),
        PortfolioHolding(
            portfolio_id="P1",
            asset_id="MSFT",
            weight=Decimal("1.0"),
            shares=Decimal("25"),
            benchmark_weight=Decimal("1.5"),
            price=Decimal("400"),
        ),
    ])
    session.commit()


# =============================================================
# DATABASE
# =============================================================

@pytest.fixture
def engine():
    engine = create_database_engine("sqlite:///:memory:")
    create_all_tables(engine)

    session = create_session_factory(engine)()
    seed_reference_data(session)
    session.close()

    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """Seeded SQLite file, so two sessions use two real connections."""
    engine = create_database_engine(f"sqlite:///{tmp_path / 'workflow.db'}")
    create_all_tables(engine)

    factory = create_session_factory(engine)
    session = factory()
    seed_reference_data(session)
    session.close()

    yield factory
    engine.dispose()


# =============================================================
# WORKFLOW
# =============================================================

@pytest.fixture
def clock():
    return MockClock(START)


@pytest.fixture
def config():
    return WorkflowConfig(local_timezone="UTC")


@pytest.fixture
def service(db, config, clock):
    return TradeWorkflowService(db, config=config, clock=clock)


@pytest.fixture
def analyst_ctx():
    return ActionContext(actor_id="analyst-1", actor_role=ActorRole.ANALYST, ui_source="test")


@pytest.fixture
def other_analyst_ctx():
    return ActionContext(actor_id="analyst-2", actor_role=ActorRole.ANALYST, ui_source="test")


@pytest.fixture
def pm_ctx():
    return ActionContext(actor_id="pm-1", actor_role=ActorRole.PM, ui_source="test")


@pytest.fixture
def outsider_ctx():
    return ActionContext(actor_id="outsider", ui_source="test")


@pytest.fixture
def make_idea(service, analyst_ctx):
    """Factory creating an idea owned by analyst-1."""

    def _make(asset_id="AAPL", action=TradeAction.BUY, primary_portfolio_id="P1", ctx=None, **kwargs):
        data = TradeIdeaCreate(
            asset_id=asset_id,
            action=action,
            primary_portfolio_id=primary_portfolio_id,
            **kwargs,
        )
        return service.create_trade_idea(data, ctx or analyst_ctx)

    return _make


@pytest.fixture
def deciding_idea(service, make_idea, analyst_ctx):
    """AAPL buy idea in P1, moved into deciding with a delta_weight +0.5 proposal."""
    idea = make_idea()
    service.move_stage(idea.id, Stage.WORKING_ON, analyst_ctx)
    service.move_stage(idea.id, Stage.MODELING, analyst_ctx)
    service.move_stage(
        idea.id,
        Stage.DECIDING,
        analyst_ctx,
        proposal=ProposalInput(
            portfolio_id="P1",
            sizing_mode=SizingMode.DELTA_WEIGHT,
            input_value=Decimal("0.5"),
        ),
    )
    return idea
