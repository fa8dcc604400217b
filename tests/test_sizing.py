"""
Tests for proposal sizing.

Tests cover:
- Weight resolution per sizing mode
- Benchmark availability
- Share rounding and direction conflicts
- Position lookup from portfolio holdings
"""

from decimal import Decimal

import pytest

from core.exceptions import BenchmarkUnavailable
from database.gateway import PersistenceGateway
from trade_workflow.sizing import (
    HoldingsDataProvider,
    PositionSnapshot,
    StaticDataProvider,
    is_direction_conflict,
    resolve_weight,
    round_to_lot,
    size_proposal,
    weight_to_shares,
)
from trade_workflow.types import SizingMode, TradeAction


@pytest.fixture
def position():
    return PositionSnapshot(
        portfolio_id="P1",
        asset_id="AAPL",
        current_weight=Decimal("3.0"),
        benchmark_weight=Decimal("2.0"),
        price=Decimal("100"),
        portfolio_value=Decimal("1000000"),
    )


# =============================================================
# TEST: Weight Resolution
# =============================================================

class TestResolveWeight:
    """Test resolution of each sizing mode."""

    def test_absolute_weight(self, position):
        assert resolve_weight(SizingMode.ABSOLUTE_WEIGHT, Decimal("4.25"), position) == Decimal("4.25")

    def test_delta_weight(self, position):
        """Current 3.0 plus 0.5."""
        assert resolve_weight(SizingMode.DELTA_WEIGHT, Decimal("0.5"), position) == Decimal("3.5")

    def test_active_weight(self, position):
        """Benchmark 2.0 plus active 1.0."""
        assert resolve_weight(SizingMode.ACTIVE_WEIGHT, Decimal("1.0"), position) == Decimal("3.0")

    def test_delta_benchmark(self, position):
        """Benchmark 2.0 plus (current active 1.0 plus 0.5)."""
        assert position.current_active_weight == Decimal("1.0")
        assert resolve_weight(SizingMode.DELTA_BENCHMARK, Decimal("0.5"), position) == Decimal("3.5")

    def test_mode_given_as_string(self, position):
        assert resolve_weight("delta_weight", Decimal("-1"), position) == Decimal("2.0")

    @pytest.mark.parametrize("mode", [SizingMode.ACTIVE_WEIGHT, SizingMode.DELTA_BENCHMARK])
    def test_benchmark_modes_need_benchmark(self, mode):
        position = PositionSnapshot("P2", "AAPL", current_weight=Decimal("1.0"))
        with pytest.raises(BenchmarkUnavailable) as exc_info:
            resolve_weight(mode, Decimal("1.0"), position)
        assert exc_info.value.context["portfolio_id"] == "P2"
        assert exc_info.value.context["asset_id"] == "AAPL"

    @pytest.mark.parametrize("mode", [SizingMode.ABSOLUTE_WEIGHT, SizingMode.DELTA_WEIGHT])
    def test_plain_modes_ignore_benchmark(self, mode):
        position = PositionSnapshot("P2", "AAPL")
        assert resolve_weight(mode, Decimal("1.0"), position) == Decimal("1.0")


# =============================================================
# TEST: Shares and Direction
# =============================================================

class TestShares:
    """Test share sizing."""

    def test_round_toward_zero(self):
        assert round_to_lot(Decimal("123.9")) == Decimal("123")
        assert round_to_lot(Decimal("-12.7")) == Decimal("-12")

    def test_round_to_lot_size(self):
        assert round_to_lot(Decimal("127"), lot_size=10) == Decimal("120")

    def test_weight_to_shares(self, position):
        """3.5% of 1,000,000 at 100 per share."""
        assert weight_to_shares(Decimal("3.5"), position) == Decimal("350")

    def test_no_pricing_no_shares(self):
        assert weight_to_shares(Decimal("3.5"), PositionSnapshot("P3", "AAPL")) is None


class TestDirectionConflict:
    """Test direction conflict detection."""

    def test_buy_that_reduces_exposure(self):
        assert is_direction_conflict(TradeAction.BUY, Decimal("-0.5"))

    def test_sell_that_increases_exposure(self):
        assert is_direction_conflict(TradeAction.SELL, Decimal("0.5"))

    def test_consistent_directions(self):
        assert not is_direction_conflict(TradeAction.ADD, Decimal("0.5"))
        assert not is_direction_conflict(TradeAction.TRIM, Decimal("-0.5"))

    def test_zero_change_never_conflicts(self):
        assert not is_direction_conflict(TradeAction.SELL, Decimal("0"))


class TestSizeProposal:
    """Test the full sizing result."""

    def test_sizing_context(self, position):
        result = size_proposal(TradeAction.BUY, SizingMode.DELTA_WEIGHT, Decimal("0.5"), position)

        assert result.resolved_weight == Decimal("3.5")
        assert result.delta_weight == Decimal("0.5")
        assert result.target_shares == Decimal("350")
        assert result.delta_shares == Decimal("50")
        assert result.direction_conflict is False
        assert result.context["sizing_mode"] == "delta_weight"
        assert result.context["resolved_weight"] == "3.5"
        assert result.context["benchmark_weight"] == "2.0"

    def test_conflict_is_flagged_not_raised(self, position):
        result = size_proposal(TradeAction.BUY, SizingMode.ABSOLUTE_WEIGHT, Decimal("2.0"), position)
        assert result.direction_conflict is True
        assert result.context["direction_conflict"] is True


# =============================================================
# TEST: Position Providers
# =============================================================

class TestDataProviders:
    """Test position lookups."""

    def test_holdings_provider_reads_holding(self, db):
        provider = HoldingsDataProvider(PersistenceGateway(db))
        snapshot = provider.position("P1", "AAPL")

        assert snapshot.current_weight == Decimal("3.0")
        assert snapshot.benchmark_weight == Decimal("2.0")
        assert snapshot.portfolio_value == Decimal("1000000")
        assert snapshot.has_pricing

    def test_holdings_provider_unheld_asset(self, db):
        provider = HoldingsDataProvider(PersistenceGateway(db))
        snapshot = provider.position("P2", "AAPL")

        assert snapshot.current_weight == Decimal("0")
        assert snapshot.benchmark_weight is None
        assert snapshot.portfolio_value == Decimal("500000")
        assert not snapshot.has_pricing

    def test_static_provider(self, position):
        provider = StaticDataProvider()
        provider.add(position)
        assert provider.position("P1", "AAPL") is position
        assert provider.position("P9", "AAPL").current_weight == Decimal("0")
