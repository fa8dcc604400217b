#!/usr/bin/env python3
"""
Trade Idea Workflow - Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Serves the trade workflow API.

- Creates tables on startup
- Log level from LOG_LEVEL
- Database from WORKFLOW_DATABASE_URL / DATABASE_URL

============================================================
USAGE
============================================================
Direct execution:
    python app.py

With uvicorn:
    uvicorn app:app --host 0.0.0.0 --port 8000

============================================================
"""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database.engine import initialize_database
from trade_workflow.router import router as workflow_router


logger = logging.getLogger(__name__)


# ============================================================
# LOGGING
# ============================================================

def setup_logging(level: str = "INFO") -> None:
    """Configure root logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ============================================================
# APPLICATION
# ============================================================

def create_app(init_db: bool = True) -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title="Trade Idea Workflow API",
        description="Trade idea lifecycle, sizing proposals and per-portfolio decisions.",
        version="1.0.0",
    )

    # CORS (Allow local frontend development)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(workflow_router)

    @app.get("/")
    def root():
        return {"status": "ok", "message": "Trade Workflow API is running"}

    if init_db:
        @app.on_event("startup")
        def startup() -> None:
            initialize_database()
            logger.info("Trade workflow database initialized")

    return app


setup_logging(os.getenv("LOG_LEVEL", "INFO"))
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
