"""
Tests for RebalanceEngine used directly, below the vault's guard and transaction.
"""
import pytest

from core.exceptions import BufferAlreadyActive, ConfigurationError, InsufficientDefenseCapital
from core.regime import Regime, RegimeTransition


@pytest.fixture
def engine(vault):
    return vault.engine


class TestCheck:
    def test_check_reports_target(self, engine, pool):
        pool.set_tick(-60)
        check = engine.check()
        assert check.needed
        assert (check.current_regime, check.target_regime, check.tick) == (Regime.NORMAL, Regime.DEFEND, -60)

    def test_check_is_side_effect_free(self, engine, pool, vault):
        pool.set_tick(-60)
        before = vault.snapshot()
        engine.check()
        engine.check()
        assert vault.snapshot() == before


class TestDeploy:
    def test_below_buffer_needs_token0(self, engine, pool):
        pool.set_tick(-500)
        event = engine.deploy_buffer(engine.read_slot0())
        assert event.amount1 == 0
        assert event.amount0 > 0

    def test_inside_buffer_needs_both(self, engine, pool):
        pool.set_tick(-250)
        event = engine.deploy_buffer(engine.read_slot0())
        assert event.amount0 > 0 and event.amount1 > 0

    def test_missing_token0_below_buffer(self, engine, pool, vault):
        vault.withdraw_treasury(vault.access.owner, "0xcold", vault.treasury.balance0, 0)
        pool.set_tick(-500)
        with pytest.raises(InsufficientDefenseCapital) as exc:
            engine.deploy_buffer(engine.read_slot0())
        assert exc.value.asset == "token0"

    def test_second_deploy_rejected(self, engine, pool):
        pool.set_tick(-60)
        engine.deploy_buffer(engine.read_slot0())
        with pytest.raises(BufferAlreadyActive):
            engine.deploy_buffer(engine.read_slot0())

    def test_expected_amounts_match_withdrawal(self, engine, pool):
        pool.set_tick(-60)
        engine.deploy_buffer(engine.read_slot0())
        pool.set_tick(-20)
        slot0 = engine.read_slot0()
        expected = engine.expected_amounts(slot0, engine.positions.buffer)
        removed = engine.remove_buffer(slot0)
        assert expected == {"amount0": removed.amount0, "amount1": removed.amount1}


class TestApply:
    def test_unknown_action(self, engine):
        row = RegimeTransition(Regime.NORMAL, Regime.DEFEND, "escalate", "at_or_below", "deploy_buffer")
        rogue = RegimeTransition(row.source, row.target, row.threshold, row.comparison, "liquidate")  # type: ignore[arg-type]
        with pytest.raises(ConfigurationError):
            engine.apply(rogue, engine.read_slot0())
