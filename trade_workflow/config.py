"""
Trade Workflow - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the trade idea workflow.

Values come from the environment (.env is loaded by the
database engine at import time) with safe defaults.

============================================================
"""

import os
from dataclasses import dataclass, field
from datetime import tzinfo
from enum import Enum
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.exceptions import InvalidConfigError


# ============================================================
# DECIDING POLICY
# ============================================================

class DecidingPolicy(str, Enum):
    """How a move into the deciding column is applied."""

    APPLY_ON_PROPOSAL = "apply_on_proposal"
    """Stage changes to deciding once at least one active proposal exists."""

    OVERLAY = "overlay"
    """Stage is left unchanged; active proposals are shown as an overlay."""


# ============================================================
# WORKFLOW CONFIGURATION
# ============================================================

@dataclass
class WorkflowConfig:
    """Top-level workflow configuration."""

    deciding_policy: DecidingPolicy = DecidingPolicy.APPLY_ON_PROPOSAL
    """Behavior of MoveStage(target=deciding)."""

    decision_roles: List[str] = field(default_factory=lambda: ["pm"])
    """Portfolio membership roles that carry decision authority."""

    local_timezone: Optional[str] = None
    """IANA zone for local calendar dates. Host zone when None."""

    trash_retention_days: int = 30
    """Days an entity stays restorable in trash before archival."""

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            InvalidConfigError: on any invalid value
        """
        if not isinstance(self.deciding_policy, DecidingPolicy):
            try:
                self.deciding_policy = DecidingPolicy(self.deciding_policy)
            except ValueError:
                raise InvalidConfigError(
                    "deciding_policy",
                    self.deciding_policy,
                    f"must be one of {[p.value for p in DecidingPolicy]}",
                )

        if not self.decision_roles:
            raise InvalidConfigError("decision_roles", self.decision_roles, "must not be empty")

        if self.trash_retention_days < 0:
            raise InvalidConfigError(
                "trash_retention_days", self.trash_retention_days, "must be >= 0"
            )

        # Fails fast on unknown zone names
        self.zone()

    def zone(self) -> Optional[tzinfo]:
        """Resolved local zone, or None for the host zone."""
        if not self.local_timezone:
            return None
        try:
            return ZoneInfo(self.local_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise InvalidConfigError(
                "local_timezone", self.local_timezone, "unknown IANA time zone"
            )

    @classmethod
    def from_env(cls) -> "WorkflowConfig":
        """Create configuration from environment variables."""
        roles = os.getenv("WORKFLOW_DECISION_ROLES", "pm")
        retention = os.getenv("WORKFLOW_TRASH_RETENTION_DAYS", "30")

        try:
            retention_days = int(retention)
        except ValueError:
            raise InvalidConfigError("WORKFLOW_TRASH_RETENTION_DAYS", retention, "must be an integer")

        return cls(
            deciding_policy=os.getenv("WORKFLOW_DECIDING_POLICY", "apply_on_proposal").lower(),
            decision_roles=[r.strip() for r in roles.split(",") if r.strip()],
            local_timezone=os.getenv("WORKFLOW_LOCAL_TIMEZONE") or None,
            trash_retention_days=retention_days,
        )


__all__ = ["DecidingPolicy", "WorkflowConfig"]
