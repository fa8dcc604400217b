"""
Database Package Initialization.

============================================================
WORKFLOW DATABASE PERSISTENCE LAYER
============================================================

This package provides the persisted entity set behind the
trade idea workflow: SQLAlchemy engine and sessions, the
ORM models, and the Persistence Gateway.

REQUIRED:
- Every command runs in one explicit transaction
- Every failure raises hard exceptions
- Concurrent-write losses surface as Conflict

============================================================
"""

# Core engine and session management
from .engine import (
    # Declarative base
    Base,

    # Engine creation
    DEFAULT_DATABASE_URL,
    get_database_url,
    create_database_engine,
    get_engine,

    # Session management
    create_session_factory,
    get_session_factory,
    get_session,
    configure,

    # Database initialization
    create_all_tables,
    initialize_database,

    # Exceptions
    DatabasePersistenceError,
    DatabaseInitializationError,
)

# ORM Models
from .models import (
    PairTrade,
    TradeIdea,
    TradeProposal,
    TradeProposalVersion,
    PortfolioTrack,
    LabLink,
    Portfolio,
    PortfolioMember,
    PortfolioHolding,
    AuditEvent,
)

# Gateway
from .gateway import PersistenceGateway


# =============================================================
# PACKAGE VERSION
# =============================================================

__version__ = "1.0.0"


# =============================================================
# ALL EXPORTS
# =============================================================

__all__ = [
    # Version
    "__version__",

    # Engine
    "Base",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "get_engine",
    "create_session_factory",
    "get_session_factory",
    "get_session",
    "configure",
    "create_all_tables",
    "initialize_database",

    # Exceptions
    "DatabasePersistenceError",
    "DatabaseInitializationError",

    # Models
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

    # Gateway
    "PersistenceGateway",
]
