"""
Trade Workflow - Sizing.

============================================================
PURPOSE
============================================================
Resolves a proposal's sizing input into a target portfolio
weight, and derives share counts where prices are known.

SIZING MODES (one resolver per mode):
- absolute_weight: resolved = input
- delta_weight:    resolved = current + input
- active_weight:   resolved = benchmark + input
- delta_benchmark: resolved = benchmark + (current_active + input)

Weights are percentages (3.0 == 3%). Share counts round
toward zero to whole lots.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Dict, Optional, Tuple

from core.exceptions import BenchmarkUnavailable
from database.gateway import PersistenceGateway
from database.models import Portfolio, PortfolioHolding

from .types import SizingMode, TradeAction


logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


# ============================================================
# POSITION DATA
# ============================================================

@dataclass
class PositionSnapshot:
    """Current position of one asset in one portfolio."""

    portfolio_id: str
    asset_id: str

    current_weight: Decimal = ZERO
    """Current portfolio weight (%)."""

    benchmark_weight: Optional[Decimal] = None
    """Benchmark weight (%), None when the portfolio has no benchmark data."""

    current_shares: Decimal = ZERO
    price: Optional[Decimal] = None
    portfolio_value: Optional[Decimal] = None

    @property
    def current_active_weight(self) -> Optional[Decimal]:
        if self.benchmark_weight is None:
            return None
        return self.current_weight - self.benchmark_weight

    @property
    def has_pricing(self) -> bool:
        return bool(self.price) and bool(self.portfolio_value) and self.price > 0


class PortfolioDataProvider(ABC):
    """Source of current and benchmark weights."""

    @abstractmethod
    def position(self, portfolio_id: str, asset_id: str) -> PositionSnapshot:
        """Position of an asset, zero weight when not held."""


class HoldingsDataProvider(PortfolioDataProvider):
    """Reads portfolio_holdings and portfolios through the gateway."""

    def __init__(self, gateway: PersistenceGateway):
        self._gateway = gateway

    def position(self, portfolio_id: str, asset_id: str) -> PositionSnapshot:
        holding = self._gateway.first(
            PortfolioHolding,
            PortfolioHolding.portfolio_id == portfolio_id,
            PortfolioHolding.asset_id == asset_id,
        )
        portfolio = self._gateway.get(Portfolio, portfolio_id)
        value = _dec(portfolio.total_value) if portfolio else None

        if holding is None:
            return PositionSnapshot(portfolio_id, asset_id, portfolio_value=value)

        return PositionSnapshot(
            portfolio_id=portfolio_id,
            asset_id=asset_id,
            current_weight=_dec(holding.weight) or ZERO,
            benchmark_weight=_dec(holding.benchmark_weight),
            current_shares=_dec(holding.shares) or ZERO,
            price=_dec(holding.price),
            portfolio_value=value,
        )


class StaticDataProvider(PortfolioDataProvider):
    """In-memory positions keyed by (portfolio_id, asset_id)."""

    def __init__(self, positions: Optional[Dict[Tuple[str, str], PositionSnapshot]] = None):
        self._positions = dict(positions or {})

    def add(self, snapshot: PositionSnapshot) -> None:
        self._positions[(snapshot.portfolio_id, snapshot.asset_id)] = snapshot

    def position(self, portfolio_id: str, asset_id: str) -> PositionSnapshot:
        return self._positions.get(
            (portfolio_id, asset_id),
            PositionSnapshot(portfolio_id, asset_id),
        )


def _dec(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ============================================================
# WEIGHT RESOLVERS
# ============================================================

def _require_benchmark(position: PositionSnapshot) -> Decimal:
    if position.benchmark_weight is None:
        raise BenchmarkUnavailable(
            f"No benchmark weight for {position.asset_id} in portfolio {position.portfolio_id}",
            portfolio_id=position.portfolio_id,
            asset_id=position.asset_id,
        )
    return position.benchmark_weight


def _absolute(value: Decimal, position: PositionSnapshot) -> Decimal:
    return value


def _delta(value: Decimal, position: PositionSnapshot) -> Decimal:
    return position.current_weight + value


def _active(value: Decimal, position: PositionSnapshot) -> Decimal:
    return _require_benchmark(position) + value


def _delta_benchmark(value: Decimal, position: PositionSnapshot) -> Decimal:
    benchmark = _require_benchmark(position)
    return benchmark + (position.current_active_weight + value)


SIZING_RESOLVERS: Dict[SizingMode, Callable[[Decimal, PositionSnapshot], Decimal]] = {
    SizingMode.ABSOLUTE_WEIGHT: _absolute,
    SizingMode.DELTA_WEIGHT: _delta,
    SizingMode.ACTIVE_WEIGHT: _active,
    SizingMode.DELTA_BENCHMARK: _delta_benchmark,
}


def resolve_weight(mode: SizingMode, value: Decimal, position: PositionSnapshot) -> Decimal:
    """
    Resolve an input value to a target weight.

    Raises:
        BenchmarkUnavailable: mode needs a benchmark that is absent
    """
    return SIZING_RESOLVERS[SizingMode(mode)](_dec(value), position)


# ============================================================
# SHARE SIZING
# ============================================================

def round_to_lot(shares: Decimal, lot_size: int = 1) -> Decimal:
    """Round toward zero to a whole number of lots."""
    lot = Decimal(lot_size)
    return (shares / lot).to_integral_value(rounding=ROUND_DOWN) * lot


def weight_to_shares(weight: Decimal, position: PositionSnapshot, lot_size: int = 1) -> Optional[Decimal]:
    if not position.has_pricing:
        return None
    raw = weight / HUNDRED * position.portfolio_value / position.price
    return round_to_lot(raw, lot_size)


def is_direction_conflict(action: TradeAction, delta_weight: Decimal) -> bool:
    """
    A buy/add that reduces exposure, or a sell/trim that
    increases it. A zero change never conflicts.
    """
    if delta_weight == ZERO:
        return False
    if TradeAction(action).increases_exposure():
        return delta_weight < ZERO
    return delta_weight > ZERO


@dataclass
class SizingResult:
    """Resolved sizing for one proposal."""

    resolved_weight: Decimal
    delta_weight: Decimal
    target_shares: Optional[Decimal] = None
    delta_shares: Optional[Decimal] = None
    direction_conflict: bool = False
    context: Dict[str, Any] = field(default_factory=dict)


def size_proposal(
    action: TradeAction,
    mode: SizingMode,
    value: Decimal,
    position: PositionSnapshot,
    lot_size: int = 1,
) -> SizingResult:
    """
    Resolve weight, shares and direction for a proposal.

    Raises:
        BenchmarkUnavailable: mode needs a benchmark that is absent
    """
    resolved = resolve_weight(mode, value, position)
    delta = resolved - position.current_weight

    target_shares = weight_to_shares(resolved, position, lot_size)
    delta_shares = weight_to_shares(delta, position, lot_size)
    conflict = is_direction_conflict(action, delta)

    if conflict:
        logger.info(
            f"Direction conflict: {action} {position.asset_id} in {position.portfolio_id} "
            f"resolves to delta {delta}"
        )

    context = {
        "sizing_mode": SizingMode(mode).value,
        "input_value": str(value),
        "current_weight": str(position.current_weight),
        "benchmark_weight": (
            str(position.benchmark_weight) if position.benchmark_weight is not None else None
        ),
        "resolved_weight": str(resolved),
        "delta_weight": str(delta),
        "target_shares": str(target_shares) if target_shares is not None else None,
        "delta_shares": str(delta_shares) if delta_shares is not None else None,
        "direction_conflict": conflict,
    }

    return SizingResult(
        resolved_weight=resolved,
        delta_weight=delta,
        target_shares=target_shares,
        delta_shares=delta_shares,
        direction_conflict=conflict,
        context=context,
    )


__all__ = [
    "PositionSnapshot",
    "PortfolioDataProvider",
    "HoldingsDataProvider",
    "StaticDataProvider",
    "SIZING_RESOLVERS",
    "resolve_weight",
    "round_to_lot",
    "weight_to_shares",
    "is_direction_conflict",
    "SizingResult",
    "size_proposal",
]
