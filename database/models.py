"""
Database ORM Models - Trade Idea Workflow.

============================================================
WORKFLOW SCHEMA
============================================================

Tables:
- trade_ideas: candidate position changes moving through the pipeline
- pair_trades: coordination record binding a long and a short leg
- trade_proposals: per-portfolio sizing recommendations
- trade_proposal_versions: snapshots of proposals before replacement
- portfolio_tracks: per-portfolio decision records
- trade_lab_idea_links: lab inclusion of ideas
- portfolios / portfolio_members / portfolio_holdings: reference data
  used for authority checks and sizing arithmetic
- audit_events: append-only audit trail

All timestamps are UTC. Date-only fields are stored as UTC
midnight of the intended calendar date.

============================================================
"""

from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Boolean, Numeric,
    DateTime, JSON, ForeignKey, Index, UniqueConstraint, CheckConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .engine import Base


# =============================================================
# HELPER FUNCTIONS
# =============================================================

def generate_uuid() -> str:
    """Generate a new UUID."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")
AutoId = BigInteger().with_variant(Integer(), "sqlite")
Weight = Numeric(18, 6)


# =============================================================
# 1. PAIR TRADES TABLE
# =============================================================

class PairTrade(Base):
    """
    Coordination record binding exactly two legs.

    The pair's stage is authoritative for both legs.
    """
    __tablename__ = "pair_trades"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(200), nullable=True)
    rationale = Column(Text, nullable=True)
    urgency = Column(String(10), nullable=False, default="medium")

    # Lifecycle
    stage = Column(String(20), nullable=False, default="idea", index=True)
    previous_state = Column(JSONType, nullable=True)  # snapshot taken on deferral
    deferred_until = Column(DateTime(timezone=True), nullable=True)

    # Soft delete tier
    visibility_tier = Column(String(10), nullable=False, default="active", index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    deleted_by = Column(String(100), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    version = Column(Integer, nullable=False, default=1)

    legs = relationship(
        "TradeIdea",
        back_populates="pair_trade",
        order_by="TradeIdea.leg_type",
    )

    __mapper_args__ = {"version_id_col": version}


# =============================================================
# 2. TRADE IDEAS TABLE
# =============================================================

class TradeIdea(Base):
    """
    One proposed change to a position.

    Mutated only by workflow commands. Never hard-deleted:
    deletion moves visibility_tier to trashed.
    """
    __tablename__ = "trade_ideas"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    asset_id = Column(String(64), nullable=False, index=True)
    action = Column(String(10), nullable=False)  # buy, sell, add, trim
    urgency = Column(String(10), nullable=False, default="medium")
    rationale = Column(Text, nullable=True)

    # Lifecycle
    stage = Column(String(20), nullable=False, default="idea", index=True)
    previous_state = Column(JSONType, nullable=True)
    deferred_until = Column(DateTime(timezone=True), nullable=True)

    # Linkage
    primary_portfolio_id = Column(String(64), nullable=True, index=True)
    pair_trade_id = Column(String(36), ForeignKey("pair_trades.id"), nullable=True, index=True)
    leg_type = Column(String(10), nullable=True)  # long, short

    # People
    created_by = Column(String(100), nullable=False)
    assigned_to = Column(String(100), nullable=True)
    collaborators = Column(JSONType, nullable=False, default=list)

    # Visibility
    visibility_tier = Column(String(10), nullable=False, default="active", index=True)
    sharing_visibility = Column(String(20), nullable=False, default="private")
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    deleted_by = Column(String(100), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    version = Column(Integer, nullable=False, default=1)

    pair_trade = relationship("PairTrade", back_populates="legs")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_trade_ideas_tier_stage", "visibility_tier", "stage"),
    )


# =============================================================
# 3. TRADE PROPOSALS TABLE
# =============================================================

class TradeProposal(Base):
    """
    One actor's sizing recommendation for one idea in one portfolio.

    At most one active row per (trade_idea_id, portfolio_id, actor_id).
    Deactivated on rejection or withdrawal, never deleted.
    """
    __tablename__ = "trade_proposals"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    trade_idea_id = Column(String(36), ForeignKey("trade_ideas.id"), nullable=False, index=True)
    portfolio_id = Column(String(64), nullable=False, index=True)
    actor_id = Column(String(100), nullable=False)
    lab_id = Column(String(64), nullable=True)
    pair_trade_id = Column(String(36), ForeignKey("pair_trades.id"), nullable=True, index=True)

    # Sizing
    sizing_mode = Column(String(20), nullable=False)
    input_value = Column(Weight, nullable=False)
    resolved_weight = Column(Weight, nullable=True)
    shares = Column(Weight, nullable=True)  # target shares when price data exists
    sizing_context = Column(JSONType, nullable=False, default=dict)

    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    proposal_type = Column(String(20), nullable=False, default="analyst")
    analyst_input_requested = Column(Boolean, nullable=False, default=False)
    analyst_input_requested_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index(
            "uq_trade_proposals_active_author",
            "trade_idea_id", "portfolio_id", "actor_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("idx_trade_proposals_active", "trade_idea_id", "is_active"),
    )


# =============================================================
# 4. PROPOSAL VERSIONS TABLE
# =============================================================

class TradeProposalVersion(Base):
    """Numbered snapshot of a proposal, written before it changes."""
    __tablename__ = "trade_proposal_versions"

    id = Column(AutoId, primary_key=True, autoincrement=True)
    proposal_id = Column(String(36), ForeignKey("trade_proposals.id"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)

    sizing_mode = Column(String(20), nullable=False)
    input_value = Column(Weight, nullable=False)
    resolved_weight = Column(Weight, nullable=True)
    shares = Column(Weight, nullable=True)
    sizing_context = Column(JSONType, nullable=True)
    notes = Column(Text, nullable=True)

    trigger_event = Column(String(50), nullable=False)
    created_by = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("proposal_id", "version_number", name="uq_proposal_version"),
    )


# =============================================================
# 5. PORTFOLIO TRACKS TABLE
# =============================================================

class PortfolioTrack(Base):
    """
    Decision record for one idea (or one pair) within one portfolio.

    Exactly one of trade_idea_id / pair_trade_id is set. A pair
    decision is recorded once against the pair, never per leg.
    """
    __tablename__ = "portfolio_tracks"

    id = Column(AutoId, primary_key=True, autoincrement=True)
    trade_idea_id = Column(String(36), ForeignKey("trade_ideas.id"), nullable=True, index=True)
    pair_trade_id = Column(String(36), ForeignKey("pair_trades.id"), nullable=True, index=True)
    portfolio_id = Column(String(64), nullable=False, index=True)

    decision_outcome = Column(String(10), nullable=True)  # accepted, rejected, deferred
    accepted_weight = Column(Weight, nullable=True)
    accepted_shares = Column(Weight, nullable=True)
    leg_decisions = Column(JSONType, nullable=True)  # pair tracks: per-leg sizing accepted
    deferred_until = Column(DateTime(timezone=True), nullable=True)
    decided_by = Column(String(100), nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    decision_reason = Column(Text, nullable=True)
    proposal_id = Column(String(36), ForeignKey("trade_proposals.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("trade_idea_id", "portfolio_id", name="uq_track_idea_portfolio"),
        UniqueConstraint("pair_trade_id", "portfolio_id", name="uq_track_pair_portfolio"),
        CheckConstraint(
            "(trade_idea_id IS NULL) <> (pair_trade_id IS NULL)",
            name="ck_track_single_subject",
        ),
    )


# =============================================================
# 6. LAB LINKS TABLE
# =============================================================

class LabLink(Base):
    """Inclusion of an idea in a portfolio's trade lab."""
    __tablename__ = "trade_lab_idea_links"

    id = Column(AutoId, primary_key=True, autoincrement=True)
    lab_id = Column(String(64), nullable=False, index=True)
    portfolio_id = Column(String(64), nullable=False)
    trade_idea_id = Column(String(36), ForeignKey("trade_ideas.id"), nullable=False, index=True)
    created_by = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("lab_id", "trade_idea_id", name="uq_lab_link"),
    )


# =============================================================
# 7. PORTFOLIO REFERENCE TABLES
# =============================================================

class Portfolio(Base):
    """Portfolio reference data."""
    __tablename__ = "portfolios"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    total_value = Column(Numeric(20, 2), nullable=True)
    benchmark_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class PortfolioMember(Base):
    """Role-derived relationship between an actor and a portfolio."""
    __tablename__ = "portfolio_members"

    id = Column(AutoId, primary_key=True, autoincrement=True)
    portfolio_id = Column(String(64), ForeignKey("portfolios.id"), nullable=False, index=True)
    actor_id = Column(String(100), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # pm, analyst, viewer

    __table_args__ = (
        UniqueConstraint("portfolio_id", "actor_id", name="uq_portfolio_member"),
    )


class PortfolioHolding(Base):
    """
    Current position and benchmark weight of an asset in a portfolio.

    Weights are percentages (3.0 == 3%).
    """
    __tablename__ = "portfolio_holdings"

    id = Column(AutoId, primary_key=True, autoincrement=True)
    portfolio_id = Column(String(64), ForeignKey("portfolios.id"), nullable=False, index=True)
    asset_id = Column(String(64), nullable=False)
    weight = Column(Weight, nullable=False, default=0)
    shares = Column(Weight, nullable=False, default=0)
    benchmark_weight = Column(Weight, nullable=True)
    price = Column(Weight, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("portfolio_id", "asset_id", name="uq_portfolio_holding"),
    )


# =============================================================
# 8. AUDIT EVENTS TABLE
# =============================================================

class AuditEvent(Base):
    """
    Append-only audit trail.

    One row per state change, attributable to an actor.
    """
    __tablename__ = "audit_events"

    id = Column(AutoId, primary_key=True, autoincrement=True)

    entity_type = Column(String(30), nullable=False)
    entity_id = Column(String(64), nullable=False)
    parent_entity_type = Column(String(30), nullable=True)
    parent_entity_id = Column(String(64), nullable=True)

    actor_id = Column(String(100), nullable=False)
    actor_name = Column(String(200), nullable=True)
    actor_email = Column(String(200), nullable=True)
    actor_role = Column(String(20), nullable=True)

    action_type = Column(String(50), nullable=False)
    action_category = Column(String(30), nullable=False)
    from_state = Column(JSONType, nullable=True)
    to_state = Column(JSONType, nullable=True)
    changed_fields = Column(JSONType, nullable=True)

    request_id = Column(String(64), nullable=True, index=True)
    ui_source = Column(String(30), nullable=True)
    event_metadata = Column("metadata", JSONType, nullable=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index("idx_audit_events_entity", "entity_type", "entity_id", "occurred_at"),
    )


# =============================================================
# EXPORTS
# =============================================================

__all__ = [
    "generate_uuid",
    "utc_now",
    "PairTrade",
    "TradeIdea",
    "TradeProposal",
    "TradeProposalVersion",
    "PortfolioTrack",
    "LabLink",
    "Portfolio",
    "PortfolioMember",
    "PortfolioHolding",
    "AuditEvent",
]
