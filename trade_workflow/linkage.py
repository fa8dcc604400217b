"""
Trade Workflow - Portfolio Linkage.

Helpers that find or create the per-portfolio records tying
an idea (or a pair) to a portfolio: decision tracks and lab
links.
"""

import logging
from datetime import datetime
from typing import List, Optional

from database.gateway import PersistenceGateway
from database.models import LabLink, PortfolioTrack


logger = logging.getLogger(__name__)


def find_track(
    gateway: PersistenceGateway,
    portfolio_id: str,
    trade_idea_id: Optional[str] = None,
    pair_trade_id: Optional[str] = None,
    for_update: bool = False,
) -> Optional[PortfolioTrack]:
    if pair_trade_id:
        owner = PortfolioTrack.pair_trade_id == pair_trade_id
    else:
        owner = PortfolioTrack.trade_idea_id == trade_idea_id
    return gateway.first(
        PortfolioTrack,
        owner,
        PortfolioTrack.portfolio_id == portfolio_id,
        for_update=for_update,
    )


def ensure_track(
    gateway: PersistenceGateway,
    portfolio_id: str,
    at: datetime,
    trade_idea_id: Optional[str] = None,
    pair_trade_id: Optional[str] = None,
) -> PortfolioTrack:
    """Get or create an undecided track."""
    key = {"pair_trade_id": pair_trade_id} if pair_trade_id else {"trade_idea_id": trade_idea_id}
    track = find_track(gateway, portfolio_id, for_update=True, **key)
    if track is not None:
        return track

    track = PortfolioTrack(portfolio_id=portfolio_id, created_at=at, updated_at=at, **key)
    gateway.insert(track)
    logger.info(f"Portfolio linked: {key} portfolio={portfolio_id}")
    return track


def tracks_for(
    gateway: PersistenceGateway,
    trade_idea_id: Optional[str] = None,
    pair_trade_id: Optional[str] = None,
    for_update: bool = False,
) -> List[PortfolioTrack]:
    if pair_trade_id:
        owner = PortfolioTrack.pair_trade_id == pair_trade_id
    else:
        owner = PortfolioTrack.trade_idea_id == trade_idea_id
    return gateway.query(
        PortfolioTrack, owner, order_by=PortfolioTrack.portfolio_id, for_update=for_update
    )


def ensure_lab_link(
    gateway: PersistenceGateway,
    lab_id: str,
    portfolio_id: str,
    trade_idea_id: str,
    actor_id: str,
    at: datetime,
) -> LabLink:
    link = gateway.first(
        LabLink,
        LabLink.lab_id == lab_id,
        LabLink.trade_idea_id == trade_idea_id,
    )
    if link is not None:
        return link

    link = LabLink(
        lab_id=lab_id,
        portfolio_id=portfolio_id,
        trade_idea_id=trade_idea_id,
        created_by=actor_id,
        created_at=at,
    )
    return gateway.insert(link)


__all__ = ["find_track", "ensure_track", "tracks_for", "ensure_lab_link"]
