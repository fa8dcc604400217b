"""
Trade Workflow - Stage Graph.

============================================================
PURPOSE
============================================================
Defines the legal stage transitions of a trade idea (or a
pair trade) and the permission class each move requires.

STATE MACHINE:

    idea ⇄ working_on ⇄ modeling ──► deciding ──┐ (re-decision)
                                        │ ▲─────┘
                         ┌──────────────┼──────────────┐
                         ▼              ▼              ▼
                     approved       rejected       deferred
                         └──────────► idea ◄───────────┘

    Any non-deleted stage ──► deleted ──► idea (restore)

INVARIANTS:
- Only edges listed in VALID_TRANSITIONS are legal
- deciding → deciding is the only self-edge
- deleted is a visibility tier, not a stored stage
- previous_state and deferred_until are cleared on leaving deferred

============================================================
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Optional, Set, Tuple

from core.clock import utc_midnight

from .types import PermissionClass, Stage, VisibilityTier


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[Stage, Set[Stage]] = {
    Stage.IDEA: {
        Stage.WORKING_ON,
        Stage.DELETED,
    },
    Stage.WORKING_ON: {
        Stage.IDEA,
        Stage.MODELING,
        Stage.DELETED,
    },
    Stage.MODELING: {
        Stage.WORKING_ON,
        Stage.DECIDING,
        Stage.DELETED,
    },
    Stage.DECIDING: {
        Stage.DECIDING,
        Stage.APPROVED,
        Stage.REJECTED,
        Stage.DEFERRED,
        Stage.DELETED,
    },
    # Resolutions reopen only to idea
    Stage.APPROVED: {Stage.IDEA, Stage.DELETED},
    Stage.REJECTED: {Stage.IDEA, Stage.DELETED},
    Stage.DEFERRED: {Stage.IDEA, Stage.DELETED},
    # Restore only
    Stage.DELETED: {Stage.IDEA},
}

# Permission class by target stage
PERMISSION_CLASS: Dict[Stage, PermissionClass] = {
    Stage.IDEA: PermissionClass.GLOBAL,
    Stage.WORKING_ON: PermissionClass.GLOBAL,
    Stage.MODELING: PermissionClass.GLOBAL,
    Stage.DELETED: PermissionClass.GLOBAL,
    Stage.DECIDING: PermissionClass.PORTFOLIO,
    Stage.APPROVED: PermissionClass.PORTFOLIO,
    Stage.REJECTED: PermissionClass.PORTFOLIO,
    Stage.DEFERRED: PermissionClass.PORTFOLIO,
}


def permission_for(from_stage: Stage, to_stage: Stage) -> PermissionClass:
    """
    Permission class required for a move.

    Restore out of deleted is a global-class move.
    """
    if from_stage == Stage.DELETED:
        return PermissionClass.GLOBAL
    return PERMISSION_CLASS[to_stage]


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for stage transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(from_state: Stage, to_state: Stage) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Args:
            from_state: Current effective stage
            to_state: Target stage

        Returns:
            Tuple of (allowed, reason)
        """
        valid_targets = VALID_TRANSITIONS.get(from_state, set())

        if to_state in valid_targets:
            return True, "Valid transition"

        if from_state == to_state:
            return False, f"Already in {from_state.value}"

        if from_state == Stage.DELETED:
            return False, "Deleted entities can only be restored to idea"

        if from_state.is_resolution():
            return False, f"Resolved stage {from_state.value} can only reopen to idea"

        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"


# ============================================================
# STAGE HELPERS
# ============================================================

def stored_stage(subject: Any) -> Stage:
    """Stored stage of an idea or pair, normalizing legacy names."""
    return Stage.parse(subject.stage)


def effective_stage(subject: Any) -> Stage:
    """Stage as seen by the graph: DELETED whenever not in the active tier."""
    if subject.visibility_tier != VisibilityTier.ACTIVE.value:
        return Stage.DELETED
    return stored_stage(subject)


def snapshot(subject: Any) -> Dict[str, Any]:
    """Audit/restore snapshot of the lifecycle fields."""
    return {
        "stage": subject.stage,
        "visibility_tier": subject.visibility_tier,
        "deferred_until": subject.deferred_until,
    }


def apply_stage(
    subject: Any,
    target: Stage,
    at: datetime,
    deferred_until: Optional[date] = None,
) -> None:
    """
    Write a stage change onto an idea or pair.

    Entering deferred captures previous_state; leaving it
    clears previous_state and deferred_until.
    """
    current = stored_stage(subject)

    if target == Stage.DEFERRED:
        if current != Stage.DEFERRED:
            subject.previous_state = {
                "stage": current.value,
                "captured_at": at.isoformat(),
            }
        subject.deferred_until = utc_midnight(deferred_until) if deferred_until else None
    elif current == Stage.DEFERRED:
        subject.previous_state = None
        subject.deferred_until = None

    subject.stage = target.value
    subject.updated_at = at

    logger.debug(f"Stage applied: {subject.id} {current.value} -> {target.value}")


__all__ = [
    "VALID_TRANSITIONS",
    "PERMISSION_CLASS",
    "permission_for",
    "TransitionGuard",
    "stored_stage",
    "effective_stage",
    "snapshot",
    "apply_stage",
]
