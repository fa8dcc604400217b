"""
Trade Workflow - Access Policy.

============================================================
PURPOSE
============================================================
Answers who may do what to an idea, a pair or a portfolio.

PERMISSION CLASSES:
- Global: creator, assignee or collaborator of the idea
- Portfolio: role-derived membership in a linked portfolio
- Decision authority: membership with a decision role
  (scoped to one portfolio)

Authorization uses actor_id only. Roles come from
portfolio_members, never from the command envelope.

============================================================
"""

import logging
from typing import Iterable, List, Optional, Set

from core.exceptions import Unauthorized
from database.gateway import PersistenceGateway
from database.models import PairTrade, PortfolioMember, PortfolioTrack, TradeIdea

from .config import WorkflowConfig
from .types import PermissionClass


logger = logging.getLogger(__name__)


class AccessPolicy:
    """Permission checks over persisted membership and linkage."""

    def __init__(self, gateway: PersistenceGateway, config: WorkflowConfig):
        self._gateway = gateway
        self._config = config

    # --------------------------------------------------------
    # LINKAGE
    # --------------------------------------------------------

    def linked_portfolios(self, idea: TradeIdea) -> List[str]:
        """
        Portfolios an idea is linked to: its tracks plus its
        primary portfolio. A leg shares its pair's linkage.
        """
        if idea.pair_trade_id:
            pair = self._gateway.require(PairTrade, idea.pair_trade_id)
            return self.linked_pair_portfolios(pair)

        ids: Set[str] = {
            t.portfolio_id
            for t in self._gateway.query(PortfolioTrack, PortfolioTrack.trade_idea_id == idea.id)
        }
        if idea.primary_portfolio_id:
            ids.add(idea.primary_portfolio_id)
        return sorted(ids)

    def linked_pair_portfolios(self, pair: PairTrade) -> List[str]:
        ids: Set[str] = {
            t.portfolio_id
            for t in self._gateway.query(PortfolioTrack, PortfolioTrack.pair_trade_id == pair.id)
        }
        for leg in pair.legs:
            if leg.primary_portfolio_id:
                ids.add(leg.primary_portfolio_id)
        return sorted(ids)

    # --------------------------------------------------------
    # GLOBAL CLASS
    # --------------------------------------------------------

    @staticmethod
    def is_owner(idea: TradeIdea, actor_id: str) -> bool:
        """Creator, assignee or collaborator."""
        if actor_id in (idea.created_by, idea.assigned_to):
            return True
        return actor_id in (idea.collaborators or [])

    def require_global(self, idea: TradeIdea, actor_id: str) -> None:
        if not self.is_owner(idea, actor_id):
            logger.warning(f"Global permission denied: idea={idea.id} actor={actor_id}")
            raise Unauthorized(
                f"Actor {actor_id} is not the creator, assignee or a collaborator of idea {idea.id}",
                actor_id=actor_id,
                required=PermissionClass.GLOBAL.value,
            )

    def require_global_pair(self, pair: PairTrade, actor_id: str) -> None:
        """Every leg must grant the global class."""
        for leg in pair.legs:
            if not self.is_owner(leg, actor_id):
                logger.warning(f"Global permission denied: pair={pair.id} leg={leg.id} actor={actor_id}")
                raise Unauthorized(
                    f"Actor {actor_id} lacks global permission on leg {leg.id} of pair {pair.id}",
                    actor_id=actor_id,
                    required=PermissionClass.GLOBAL.value,
                )

    # --------------------------------------------------------
    # PORTFOLIO CLASS
    # --------------------------------------------------------

    def role_in(self, portfolio_id: str, actor_id: str) -> Optional[str]:
        member = self._gateway.first(
            PortfolioMember,
            PortfolioMember.portfolio_id == portfolio_id,
            PortfolioMember.actor_id == actor_id,
        )
        return member.role if member else None

    def has_relationship(self, portfolio_ids: Iterable[str], actor_id: str) -> bool:
        return any(self.role_in(pid, actor_id) for pid in portfolio_ids)

    def require_relationship(self, portfolio_ids: Iterable[str], actor_id: str, subject_id: str) -> None:
        portfolio_ids = list(portfolio_ids)
        if not self.has_relationship(portfolio_ids, actor_id):
            logger.warning(f"Portfolio permission denied: subject={subject_id} actor={actor_id}")
            raise Unauthorized(
                f"Actor {actor_id} has no relationship to any portfolio linked to {subject_id}",
                actor_id=actor_id,
                required=PermissionClass.PORTFOLIO.value,
            )

    def has_decision_authority(self, portfolio_id: str, actor_id: str) -> bool:
        return self.role_in(portfolio_id, actor_id) in self._config.decision_roles

    def require_decision_authority(self, portfolio_id: str, actor_id: str) -> None:
        if not self.has_decision_authority(portfolio_id, actor_id):
            logger.warning(f"Decision authority denied: portfolio={portfolio_id} actor={actor_id}")
            raise Unauthorized(
                f"Actor {actor_id} has no decision authority over portfolio {portfolio_id}",
                actor_id=actor_id,
                required="decision_authority",
            )

    # --------------------------------------------------------
    # STAGE MOVES
    # --------------------------------------------------------

    def require_for_idea(self, permission: PermissionClass, idea: TradeIdea, actor_id: str) -> None:
        if permission == PermissionClass.GLOBAL:
            self.require_global(idea, actor_id)
        else:
            self.require_relationship(self.linked_portfolios(idea), actor_id, idea.id)

    def require_for_pair(self, permission: PermissionClass, pair: PairTrade, actor_id: str) -> None:
        if permission == PermissionClass.GLOBAL:
            self.require_global_pair(pair, actor_id)
        else:
            self.require_relationship(self.linked_pair_portfolios(pair), actor_id, pair.id)


__all__ = ["AccessPolicy"]
