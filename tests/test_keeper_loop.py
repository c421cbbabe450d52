"""
Integration tests for the keeper loop in PAPER mode (and LIVE against the mock pool).
"""
import copy
import json

import pytest

from backtest.mock_pool import MockPool, MockTokenLedger
from backtest.replay import SimClock
from core.exceptions import ConfigurationError
from core.pool import pool_key_from_config
from core.regime import Regime
from runner.keeper_loop import KeeperLoop, deviation_bps
from tests.helpers import APP_CONFIG, DEFENSE_CONFIG, OWNER, write_configs


def app_config(tmp_path, **sections):
    cfg = copy.deepcopy(APP_CONFIG)
    cfg["state"] = {
        "backend": "json",
        "path": str(tmp_path / "data" / "vault_state.json"),
        "audit_log": str(tmp_path / "logs" / "audit.jsonl"),
        "lock_file": str(tmp_path / "data" / "keeper.pid"),
    }
    for name, values in sections.items():
        cfg[name].update(values)
    return cfg


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("STATE_FILE", raising=False)
    monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)


@pytest.fixture
def sim_clock():
    return SimClock(1_000_000.0)


def make_loop(tmp_path, clock, app=None, defense=None, **kwargs):
    config_dir = write_configs(tmp_path / "config", app=app or app_config(tmp_path), defense=defense)
    loop = KeeperLoop(config_dir=str(config_dir), clock=clock, install_signal_handlers=False, **kwargs)
    return loop


@pytest.fixture
def loop(tmp_path, sim_clock):
    keeper = make_loop(tmp_path, sim_clock)
    yield keeper
    keeper.shutdown()


def test_deviation_bps():
    assert deviation_bps(0) == 0.0
    assert deviation_bps(-60) < 0
    assert round(deviation_bps(100), 1) == 100.5


class TestPolling:
    def test_quiet_poll(self, loop):
        stats = loop.poll_once()
        assert stats.status == "no_change"
        assert stats.regime == "normal"
        assert loop.health_status()["ok"]

    def test_depeg_triggers_rebalance(self, loop):
        loop.pool.set_tick(-60)
        stats = loop.poll_once()

        assert stats.status == "rebalanced"
        assert loop.vault.active_regime is Regime.DEFEND
        assert loop.vault.positions.buffer_active
        assert loop.metrics.outcome_snapshot() == {"deploy_buffer": 1}

    def test_cooldown_refusal_is_skipped(self, loop, sim_clock):
        loop.pool.set_tick(-60)
        loop.poll_once()
        sim_clock.advance(10)
        loop.pool.set_tick(-20)

        stats = loop.poll_once()
        assert stats.status == "skipped"
        assert loop.vault.active_regime is Regime.DEFEND
        assert loop.audit.get_recent(1, kind="poll")[0]["error"] == "CooldownActive"

        sim_clock.advance(300)
        assert loop.poll_once().status == "rebalanced"
        assert loop.vault.active_regime is Regime.NORMAL

    def test_read_failure_counts_against_health(self, loop):
        loop.pool.fail_next("get_slot0")
        stats = loop.poll_once()

        assert stats.status == "failed"
        assert loop.state_store.load()["consecutive_failures"] == 1
        assert loop.audit.get_recent(1, kind="poll")[0]["error"] == "PoolDataUnavailable"

        assert loop.poll_once().status == "no_change"
        assert loop.state_store.load()["consecutive_failures"] == 0

    def test_auto_collect_fees(self, tmp_path, sim_clock):
        loop = make_loop(tmp_path, sim_clock, app=app_config(tmp_path, keeper={"auto_collect_fees": True}))
        try:
            before = loop.vault.treasury.balance0
            loop.pool.accrue_fees(loop.vault.positions.core.position_id, 1_000, 2_000)
            loop.poll_once()
            assert loop.vault.treasury.balance0 == before + 1_000
        finally:
            loop.shutdown()


class TestSubmissionGuards:
    def test_dry_run_never_submits(self, tmp_path, sim_clock):
        loop = make_loop(tmp_path, sim_clock, app=app_config(tmp_path, app={"dry_run": True}))
        try:
            loop.pool.set_tick(-60)
            assert loop.poll_once().status == "skipped"
            assert loop.vault.active_regime is Regime.NORMAL
            assert loop.audit.get_recent(1, kind="poll")[0]["mode"] == "PAPER/DRY_RUN"
        finally:
            loop.shutdown()

    def test_gas_cap_defers(self, tmp_path, sim_clock):
        loop = make_loop(
            tmp_path, sim_clock,
            app=app_config(tmp_path, keeper={"max_fee_gwei": 50}),
            gas_price_source=lambda: 120.0,
        )
        try:
            loop.pool.set_tick(-60)
            assert loop.poll_once().status == "skipped"
            assert loop.vault.active_regime is Regime.NORMAL
            assert loop.audit.get_recent(1, kind="poll")[0]["error"] == "GasTooHigh"
        finally:
            loop.shutdown()


class TestLifecycle:
    def test_invalid_config_refuses_to_start(self, tmp_path, sim_clock):
        app = app_config(tmp_path, keeper={"address": "0xstranger"})
        with pytest.raises(ConfigurationError):
            make_loop(tmp_path, sim_clock, app=app)

    def test_live_requires_pool(self, tmp_path, sim_clock):
        with pytest.raises(ConfigurationError):
            make_loop(tmp_path, sim_clock, app=app_config(tmp_path, app={"mode": "LIVE"}))

    def test_failed_startup_releases_lock(self, tmp_path, sim_clock):
        with pytest.raises(ConfigurationError):
            make_loop(tmp_path, sim_clock, app=app_config(tmp_path, app={"mode": "LIVE"}))
        assert not (tmp_path / "data" / "keeper.pid").exists()

        keeper = make_loop(tmp_path, sim_clock)
        assert keeper.instance_lock.acquired
        keeper.shutdown()

    def test_state_is_persisted(self, loop, tmp_path):
        loop.pool.set_tick(-60)
        loop.poll_once()

        saved = json.loads((tmp_path / "data" / "vault_state.json").read_text())
        assert saved["rebalances"] == 1
        assert saved["vault"]["regime"] == loop.vault.to_state()["regime"]

        kinds = {entry["kind"] for entry in loop.audit.get_recent(20)}
        assert kinds == {"event", "poll"}

    def test_live_restores_saved_vault(self, tmp_path, sim_clock):
        key = pool_key_from_config(DEFENSE_CONFIG["pool"])
        tokens = MockTokenLedger()
        pool = MockPool(tokens, key)
        app = app_config(tmp_path, app={"mode": "LIVE"})

        first = make_loop(tmp_path, sim_clock, app=app, pool=pool, tokens=tokens)
        first.vault.set_cooldown(OWNER, 900)
        first.shutdown()

        second = make_loop(tmp_path, sim_clock, app=app, pool=pool, tokens=tokens)
        try:
            assert second.vault.access.cooldown.min_interval == 900
        finally:
            second.shutdown()

    def test_next_sleep_bounds(self, loop):
        assert loop.next_sleep(elapsed=5.0, interval=30.0) == 25.0
        assert loop.next_sleep(elapsed=45.0, interval=30.0) == 1.0
        loop.jitter_pct = 10.0
        for _ in range(50):
            assert 22.0 <= loop.next_sleep(elapsed=5.0, interval=30.0) <= 28.0
