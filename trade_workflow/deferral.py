"""
Trade Workflow - Deferral Scheduler.

============================================================
PURPOSE
============================================================
Date-boundary resurfacing of deferred ideas and pairs.

RULE (calendar dates only, time of day ignored):

    ready := stage == deferred
             AND deferred_until is set
             AND local_today >= calendar date of deferred_until (UTC)

A ready subject is never mutated automatically. It is shown
in its original column as "resurfaced" until acknowledged.
Acknowledging is the only write: it restores the stage from
previous_state (default idea) and clears the deferral fields.

============================================================
"""

import logging
from datetime import date
from typing import Any, Callable, List, Optional

from core.clock import ClockProtocol, as_utc, calendar_date_of
from core.exceptions import InvalidPair, InvalidTransition
from database.gateway import PersistenceGateway
from database.models import PairTrade, TradeIdea

from .audit import AuditRecord, AuditSink
from .config import WorkflowConfig
from .permissions import AccessPolicy
from .schemas import ActionContext
from .stage_graph import PERMISSION_CLASS, apply_stage, snapshot, stored_stage
from .types import (
    ActionCategory,
    ActionType,
    BoardPlacement,
    EntityType,
    MoveResult,
    Stage,
    VisibilityTier,
)


logger = logging.getLogger(__name__)


def resurface_stage(subject: Any) -> Stage:
    """Column a deferred subject returns to: previous_state.stage, else idea."""
    previous = subject.previous_state or {}
    name = previous.get("stage")
    if not name:
        return Stage.IDEA
    try:
        return Stage.parse(name)
    except ValueError:
        logger.warning(f"Unknown previous stage {name!r} on {subject.id}, resurfacing to idea")
        return Stage.IDEA


class DeferralScheduler:
    """Evaluates and acknowledges deferral resurfacing."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        access: AccessPolicy,
        audit: AuditSink,
        clock: ClockProtocol,
        config: WorkflowConfig,
    ):
        self._gateway = gateway
        self._access = access
        self._audit = audit
        self._clock = clock
        self._config = config

    # --------------------------------------------------------
    # READ SIDE
    # --------------------------------------------------------

    def local_today(self) -> date:
        return self._clock.local_today(self._config.zone())

    def is_ready_to_resurface(self, subject: Any, today: Optional[date] = None) -> bool:
        if subject.visibility_tier != VisibilityTier.ACTIVE.value:
            return False
        if stored_stage(subject) != Stage.DEFERRED or subject.deferred_until is None:
            return False
        today = today or self.local_today()
        return today >= calendar_date_of(subject.deferred_until)

    def board_placement(self, subject: Any, today: Optional[date] = None) -> BoardPlacement:
        """Display column of an idea or pair."""
        deferred_until = as_utc(subject.deferred_until)
        if subject.visibility_tier != VisibilityTier.ACTIVE.value:
            return BoardPlacement(column=Stage.DELETED, deferred_until=deferred_until)
        if self.is_ready_to_resurface(subject, today):
            return BoardPlacement(
                column=resurface_stage(subject),
                resurfaced=True,
                deferred_until=deferred_until,
            )
        return BoardPlacement(column=stored_stage(subject), deferred_until=deferred_until)

    def list_ready(self, today: Optional[date] = None) -> List[Any]:
        """Deferred ideas (unpaired) and pairs that are ready to resurface."""
        today = today or self.local_today()
        ideas = self._gateway.query(
            TradeIdea,
            TradeIdea.stage == Stage.DEFERRED.value,
            TradeIdea.visibility_tier == VisibilityTier.ACTIVE.value,
            TradeIdea.pair_trade_id.is_(None),
            TradeIdea.deferred_until.is_not(None),
            order_by=TradeIdea.deferred_until,
        )
        pairs = self._gateway.query(
            PairTrade,
            PairTrade.stage == Stage.DEFERRED.value,
            PairTrade.visibility_tier == VisibilityTier.ACTIVE.value,
            PairTrade.deferred_until.is_not(None),
            order_by=PairTrade.deferred_until,
        )
        return [s for s in [*ideas, *pairs] if self.is_ready_to_resurface(s, today)]

    # --------------------------------------------------------
    # ACKNOWLEDGE
    # --------------------------------------------------------

    def acknowledge(self, idea_id: str, ctx: ActionContext) -> MoveResult:
        """
        Acknowledge a resurfaced idea, restoring its original stage.

        Raises:
            InvalidPair: idea is a pair leg
            InvalidTransition: idea is not ready to resurface
            Unauthorized: actor lacks the permission class of the restored stage
        """
        idea = self._gateway.require(TradeIdea, idea_id, for_update=True)
        if idea.pair_trade_id:
            raise InvalidPair(
                f"Idea {idea.id} is a leg of pair {idea.pair_trade_id}; acknowledge the pair",
                pair_trade_id=idea.pair_trade_id,
            )
        return self.acknowledge_subject(
            idea,
            EntityType.TRADE_IDEA,
            ctx,
            lambda permission: self._access.require_for_idea(permission, idea, ctx.actor_id),
        )

    def acknowledge_subject(
        self,
        subject: Any,
        entity_type: EntityType,
        ctx: ActionContext,
        authorize: Callable,
    ) -> MoveResult:
        """Acknowledge an idea or pair. Authorization is delegated to the caller."""
        if not self.is_ready_to_resurface(subject):
            raise InvalidTransition(
                f"{entity_type.value} {subject.id} is not ready to resurface",
                from_state=subject.stage,
            )

        target = resurface_stage(subject)
        authorize(PERMISSION_CLASS[target])

        now = self._clock.now()
        before = snapshot(subject)
        apply_stage(subject, target, now)
        self._gateway.flush()

        self._audit.emit(AuditRecord.build(
            ctx,
            entity_type,
            subject.id,
            ActionType.ACKNOWLEDGE_RESURFACED,
            ActionCategory.LIFECYCLE,
            now,
            from_state=before,
            to_state=snapshot(subject),
            changed_fields=["stage", "previous_state", "deferred_until"],
        ))

        logger.info(f"Resurfaced: {entity_type.value}={subject.id} deferred -> {target.value}")
        return MoveResult(
            entity_type=entity_type,
            entity_id=subject.id,
            from_stage=Stage.DEFERRED,
            to_stage=target,
            message="Resurfaced deferral acknowledged",
        )


__all__ = ["resurface_stage", "DeferralScheduler"]
