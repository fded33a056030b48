"""Tests for positions, trades, the portfolio ledger and impermanent loss."""
from datetime import datetime

import pytest

from yield_engine.backtest.impermanent_loss import (
    apply_il,
    calculate_il,
    calculate_il_for_price_change,
)
from yield_engine.backtest.portfolio import (
    Portfolio,
    Position,
    PositionKind,
    Trade,
    TradeSide,
)


def _spot(units=1.0, price=2000.0, **kwargs):
    return Position.create("s1-ETH", "s1", "ETH", units, price, **kwargs)


def _lp(notional=10_000.0, price=2000.0, **kwargs):
    return Position.create("s2-ETH", "s2", "ETH", notional, price, kind=PositionKind.LP, **kwargs)


class TestPosition:
    def test_create_defaults(self):
        pos = _spot(2.0)
        assert pos.current_price == 2000.0
        assert pos.cost_basis == pytest.approx(4000.0)
        assert _lp().cost_basis == pytest.approx(10_000.0)

    def test_entry_price_is_write_once(self):
        pos = _spot().update_price(2500.0).update_price(1800.0)
        assert pos.entry_price == 2000.0
        assert pos.current_price == 1800.0

    def test_values_by_kind(self):
        assert _spot(2.0).update_price(2500.0).market_value() == pytest.approx(5000.0)
        assert _lp().update_price(4000.0).market_value() == pytest.approx(10_000.0)

    def test_net_value_subtracts_debt(self):
        pos = _lp(30_000.0, borrowed_amount=20_000.0, collateral_amount=10_000.0)
        assert pos.net_value() == pytest.approx(10_000.0)
        assert pos.is_leveraged()

    def test_kind_accepts_string(self):
        assert Position.create("p", "s", "ETH", 1.0, 1.0, kind="hedged").kind is PositionKind.HEDGED

    @pytest.mark.parametrize("kwargs", [
        {"amount": -1.0},
        {"entry_price": 0.0},
        {"borrowed_amount": -5.0},
    ])
    def test_validation(self, kwargs):
        base = dict(id="p", strategy_id="s", asset="ETH", amount=1.0, entry_price=1.0)
        base.update(kwargs)
        with pytest.raises(ValueError):
            Position.create(**base)

    def test_to_dict_is_serializable(self):
        import json

        d = _spot(opened_at=datetime(2024, 1, 1)).to_dict()
        assert d["kind"] == "spot"
        json.dumps(d)

    @pytest.mark.parametrize("pos", [
        _spot(2.0).update_price(2500.0),
        _lp(price=2000.0).update_price(1500.0),
        _lp(30_000.0, borrowed_amount=20_000.0, collateral_amount=10_000.0),
        Position.create("h", "s", "ETH", 5_000.0, 2000.0, kind="hedged", cost_basis=4_000.0),
    ])
    def test_rebuild_from_fields_preserves_values(self, pos):
        from dataclasses import asdict

        rebuilt = Position.create(**asdict(pos))
        assert rebuilt == pos
        assert rebuilt.market_value() == pytest.approx(pos.market_value())
        assert rebuilt.unrealized_pnl() == pytest.approx(pos.unrealized_pnl())


class TestTrade:
    def test_costs(self):
        trade = Trade("s1", "ETH", "buy", 2.0, 2000.0, datetime(2024, 1, 1))
        assert trade.side is TradeSide.BUY
        costed = trade.with_costs(5.0, 4.0)
        assert costed.total_cost() == pytest.approx(4009.0)
        assert trade.fees == 0.0

    def test_rejects_non_positive_price(self):
        with pytest.raises(ValueError):
            Trade("s1", "ETH", TradeSide.SELL, 1.0, 0.0, datetime(2024, 1, 1))


class TestPortfolio:
    def test_add_update_close_cash_flows(self):
        pf = Portfolio(100_000.0)
        pos = _spot(10.0)
        pf.add_position(pos)
        assert pf.cash == pytest.approx(80_000.0)
        assert pf.total_value() == pytest.approx(100_000.0)

        pf.update_position(pos.with_amount(15.0))
        assert pf.cash == pytest.approx(70_000.0)

        pf.mark_position(pf.get_position("s1-ETH").update_price(2200.0))
        assert pf.cash == pytest.approx(70_000.0)
        assert pf.total_value() == pytest.approx(70_000.0 + 15 * 2200.0)

        pf.close_position("s1-ETH")
        assert pf.cash == pytest.approx(103_000.0)
        assert pf.positions == []

    def test_leveraged_position_pays_only_equity(self):
        pf = Portfolio(50_000.0)
        pf.add_position(_lp(30_000.0, borrowed_amount=20_000.0))
        assert pf.cash == pytest.approx(40_000.0)
        assert pf.gross_exposure() == pytest.approx(30_000.0)

    def test_duplicate_add_rejected(self):
        pf = Portfolio(1000.0)
        pf.add_position(_spot(0.1))
        with pytest.raises(ValueError):
            pf.add_position(_spot(0.1))

    def test_positions_for_strategies(self):
        pf = Portfolio(100_000.0)
        pf.add_position(_spot(1.0))
        pf.add_position(_lp())
        assert [p.id for p in pf.positions_for(["s2"])] == ["s2-ETH"]

    def test_debit_and_credit(self):
        pf = Portfolio(1000.0)
        pf.debit(25.0, "gas")
        pf.credit(5.0, "yield")
        assert pf.cash == pytest.approx(980.0)

    def test_rejects_non_positive_capital(self):
        with pytest.raises(ValueError):
            Portfolio(0.0)


class TestImpermanentLoss:
    def test_two_x_move(self):
        assert calculate_il(100.0, 200.0) == pytest.approx(-5.7191, abs=1e-4)

    def test_symmetric_in_log_space(self):
        assert calculate_il(100.0, 50.0) == pytest.approx(calculate_il(100.0, 200.0))

    def test_no_move_no_loss(self):
        assert calculate_il(2000.0, 2000.0) == pytest.approx(0.0)

    def test_relative_change(self):
        assert calculate_il_for_price_change(100.0) == pytest.approx(calculate_il(1.0, 2.0))
        with pytest.raises(ValueError):
            calculate_il_for_price_change(-100.0)

    def test_apply(self):
        assert apply_il(10_000.0, -5.0) == pytest.approx(9_500.0)
