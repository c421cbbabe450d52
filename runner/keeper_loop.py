"""
PegSentinel Runner: Keeper Loop

Polls the defended pool and submits auto_rebalance() when the regime needs to
change.

Flow per poll:
1. Read the pool tick and log its deviation from the target price
2. Ask the vault whether a regime transition is due
3. Skip submission in dry-run mode or while gas is above the configured cap
4. Submit auto_rebalance(); cooldown and no-change refusals are routine
5. Optionally sweep core fees into the treasury
6. Persist vault state, record metrics, audit the poll
"""

import random
import signal
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional
import logging

from backtest.mock_pool import build_paper_vault
from core.audit_log import AuditLogger
from core.events import EventLog
from core.exceptions import ConfigurationError, CooldownActive, DefenseError, NoRegimeChange
from core.pool import PoolClient, TokenLedger, build_gateway
from core.vault import PegDefenseVault, build_vault
from infra.alerting import AlertService, AlertSeverity
from infra.healthcheck import HealthServer, keeper_status
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder, PollStats
from infra.state_store import create_state_store_from_config
from tools.config_validator import load_yaml_file, validate_all_configs

logger = logging.getLogger(__name__)

TICK_BASE = 1.0001


def price_at_tick(tick: int) -> float:
    return TICK_BASE ** tick


def deviation_bps(tick: int, target_price: float = 1.0) -> float:
    """Signed deviation of the pool price from target, in basis points."""
    return (price_at_tick(tick) / target_price - 1.0) * 10_000


class KeeperLoop:
    """
    Keeper process orchestrator.

    Responsibilities:
    - Load and validate config
    - Build (PAPER) or wire (LIVE) the vault
    - Run periodic polls, never dying on a single failed poll
    - Persist state, emit metrics, alerts and audit entries
    """

    def __init__(
        self,
        config_dir: str = "config",
        pool: Optional[PoolClient] = None,
        tokens: Optional[TokenLedger] = None,
        gas_price_source: Optional[Callable[[], float]] = None,
        clock: Optional[Callable[[], float]] = None,
        install_signal_handlers: bool = True,
    ):
        self.config_dir = Path(config_dir)
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if lines:
                    logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ConfigurationError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = load_yaml_file(self.config_dir / "app.yaml")
        self.defense_config = load_yaml_file(self.config_dir / "defense.yaml")

        app_cfg = self.app_config.get("app", {}) or {}
        self.mode = str(app_cfg.get("mode", "PAPER")).upper()
        self.dry_run = bool(app_cfg.get("dry_run", True))

        log_file = app_cfg.get("log_file")
        handlers: list = [logging.StreamHandler()]
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        logging.basicConfig(
            level=getattr(logging, str(app_cfg.get("log_level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )
        logger.info(f"Starting PegSentinel keeper in mode={self.mode}, dry_run={self.dry_run}")

        keeper_cfg = self.app_config.get("keeper", {}) or {}
        self.keeper_address = str(keeper_cfg["address"])
        self.poll_seconds = float(keeper_cfg.get("poll_seconds", 30))
        self.jitter_pct = max(0.0, min(float(keeper_cfg.get("jitter_pct", 0.0)), 50.0))
        self.target_price = float(keeper_cfg.get("target_price", 1.0))
        max_fee = keeper_cfg.get("max_fee_gwei")
        self.max_fee_gwei = float(max_fee) if max_fee is not None else None
        self.auto_collect_fees = bool(keeper_cfg.get("auto_collect_fees", False))
        self.persist_state = bool(keeper_cfg.get("persist_state", True))
        self.gas_price_source = gas_price_source

        state_cfg = self.app_config.get("state", {}) or {}
        lock_path = Path(state_cfg.get("lock_file", "data/keeper.pid"))
        self.instance_lock = SingleInstanceLock(lock_path.stem, lock_dir=str(lock_path.parent))
        if not self.instance_lock.acquire():
            logger.error("=" * 80)
            logger.error("ANOTHER KEEPER IS ALREADY RUNNING")
            logger.error(f"If you're sure no other keeper is running, remove {lock_path}")
            logger.error("=" * 80)
            raise RuntimeError("Another keeper instance is already running")

        self.pool = pool
        self.tokens = tokens
        try:
            self._start_services(state_cfg, clock, install_signal_handlers)
        except Exception:
            self.instance_lock.release()
            raise

    def _start_services(
        self,
        state_cfg: Dict[str, Any],
        clock: Optional[Callable[[], float]],
        install_signal_handlers: bool,
    ) -> None:
        self.state_store = create_state_store_from_config(state_cfg)
        self.audit = AuditLogger(audit_file=state_cfg.get("audit_log") or "logs/audit.jsonl")

        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()
        self.alerts = AlertService.from_config(monitoring_cfg, dry_run=self.dry_run)

        self.events = EventLog()
        self.events.subscribe(self.audit.log_event)
        self.events.subscribe(self.metrics.record_event)
        self.events.subscribe(self.alerts.on_event)

        self.vault = self._build_vault(clock)
        self.metrics.record_treasury(self.vault.treasury.state.balance0, self.vault.treasury.state.balance1)

        self._last_poll_at: Optional[float] = None
        self._consecutive_failures = int(self.state_store.get("consecutive_failures", 0) or 0)

        self.health_server: Optional[HealthServer] = None
        if monitoring_cfg.get("healthcheck_enabled", False):
            self.health_server = HealthServer(int(monitoring_cfg.get("healthcheck_port", 8080)), self.health_status)
            self.health_server.start()

        self._running = True
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(
            f"Keeper ready: keeper={self.keeper_address} regime={self.vault.active_regime} "
            f"state={self.state_store._backend.describe()}"
        )

    def _build_vault(self, clock: Optional[Callable[[], float]]) -> PegDefenseVault:
        if self.mode == "PAPER":
            vault, self.pool, self.tokens = build_paper_vault(self.defense_config, events=self.events, clock=clock)
            return vault

        if self.pool is None or self.tokens is None:
            raise ConfigurationError("LIVE mode requires a pool client and a token ledger")
        gateway = build_gateway(self.defense_config, self.pool, self.tokens)

        saved = self.state_store.load_vault() if self.persist_state else None
        if saved:
            return PegDefenseVault.from_state(saved, gateway, events=self.events, clock=clock)
        return build_vault(self.defense_config, gateway, events=self.events, clock=clock)

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received, stopping after current poll")
        self._running = False

    def shutdown(self) -> None:
        self._running = False
        if self.health_server:
            self.health_server.stop()
        if self.persist_state:
            self.state_store.save_vault(self.vault.to_state())
        self.instance_lock.release()
        logger.info("Keeper stopped")

    def health_status(self) -> Dict[str, Any]:
        return keeper_status(
            last_poll_at=self._last_poll_at,
            regime=str(self.vault.active_regime),
            consecutive_failures=self._consecutive_failures,
            max_poll_age=self.poll_seconds * 3,
        )

    def _gas_too_high(self) -> bool:
        if self.max_fee_gwei is None or self.gas_price_source is None:
            return False
        gas = float(self.gas_price_source())
        if gas > self.max_fee_gwei:
            logger.info(f"Gas {gas:.1f} gwei above cap {self.max_fee_gwei:.1f}; deferring rebalance")
            return True
        return False

    def poll_once(self) -> PollStats:
        """
        Run one poll.

        Returns:
            PollStats with status "rebalanced", "no_change", "skipped" or "failed"
        """
        started = time.monotonic()
        ts = datetime.now(timezone.utc)
        status = "no_change"
        action: Optional[str] = None
        error: Optional[str] = None
        tick: Optional[int] = None
        deviation: Optional[float] = None

        try:
            check = self.vault.needs_rebalance()
            tick = check.tick
            deviation = deviation_bps(tick, self.target_price)
            logger.info(
                f"Poll: tick={tick} price={price_at_tick(tick):.6f} deviation={deviation:+.1f}bps "
                f"regime={check.current_regime} target={check.target_regime}"
            )

            if check.needed:
                if self.dry_run:
                    logger.info(f"DRY_RUN: would rebalance {check.current_regime} -> {check.target_regime}")
                    status = "skipped"
                elif self._gas_too_high():
                    status = "skipped"
                    error = "GasTooHigh"
                else:
                    status, action, error = self._submit_rebalance()

            if self.auto_collect_fees and not self.dry_run and status != "failed":
                self._collect_fees()
        except DefenseError as e:
            status = "failed"
            error = type(e).__name__
            logger.error(f"Poll failed: {e}")

        self._record_poll(ts, status, tick, action, error, deviation, started)
        return PollStats(
            status=status,
            tick=tick if tick is not None else 0,
            regime=str(self.vault.active_regime),
            duration_seconds=time.monotonic() - started,
        )

    def _submit_rebalance(self):
        try:
            outcome = self.vault.auto_rebalance(self.keeper_address)
        except (CooldownActive, NoRegimeChange) as e:
            logger.info(f"Rebalance not submitted: {e}")
            self.metrics.record_rebalance(type(e).__name__)
            return "skipped", None, type(e).__name__
        except DefenseError as e:
            logger.error(f"Rebalance failed: {e}")
            self.metrics.record_rebalance(type(e).__name__)
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "Rebalance failed",
                f"{type(e).__name__}: {e}",
                {"regime": str(self.vault.active_regime), "keeper": self.keeper_address},
            )
            return "failed", None, type(e).__name__

        logger.info(f"Rebalanced {outcome.from_regime} -> {outcome.to_regime} via {outcome.action} at tick {outcome.tick}")
        self.metrics.record_rebalance(outcome.action)
        return "rebalanced", outcome.action, None

    def _collect_fees(self) -> None:
        try:
            collected = self.vault.collect_fees(self.keeper_address)
        except DefenseError as e:
            logger.warning(f"Fee collection failed: {e}")
            return
        if collected is not None:
            logger.info(f"Collected core fees: {collected.amount0}/{collected.amount1}")

    def _record_poll(self, ts, status, tick, action, error, deviation, started) -> None:
        self._last_poll_at = time.time()
        if status == "failed":
            self._consecutive_failures += 1
            self.state_store.update("failure", error=error, tick=tick)
            if self._consecutive_failures >= 3:
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    "Keeper failing repeatedly",
                    f"{self._consecutive_failures} consecutive failed polls (last: {error})",
                )
        else:
            self._consecutive_failures = 0
            self.state_store.update("rebalance" if status == "rebalanced" else "poll", status=status, tick=tick, action=action)

        if self.persist_state:
            self.state_store.save_vault(self.vault.to_state())

        duration = time.monotonic() - started
        mode = self.mode if not self.dry_run else f"{self.mode}/DRY_RUN"
        self.audit.log_poll(
            ts,
            mode=mode,
            tick=tick,
            regime=str(self.vault.active_regime),
            status=status,
            action=action,
            error=error,
            deviation_bps=deviation,
            treasury=self.vault.treasury.state.to_dict(),
            duration_seconds=duration,
        )
        self.metrics.observe_poll(PollStats(status, tick if tick is not None else 0, str(self.vault.active_regime), duration))

    def next_sleep(self, elapsed: float, interval: Optional[float] = None) -> float:
        """Seconds to sleep after a poll that took `elapsed`, with +/- jitter."""
        interval = max(float(interval or self.poll_seconds), 1.0)
        jitter = random.uniform(-1.0, 1.0) * (self.jitter_pct / 100.0) * interval
        return max(1.0, interval - elapsed + jitter)

    def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        interval = float(interval_seconds) if interval_seconds else self.poll_seconds
        logger.info(f"Starting keeper loop (interval={interval}s, jitter={self.jitter_pct:.1f}%)")

        try:
            while self._running:
                start = time.monotonic()
                try:
                    self.poll_once()
                except Exception as e:
                    # Unexpected errors never stop the keeper; the next poll retries
                    self._consecutive_failures += 1
                    logger.exception(f"Unhandled error in poll: {e}")
                elapsed = time.monotonic() - start
                sleep_for = self.next_sleep(elapsed, interval)
                logger.debug(f"Poll took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
                time.sleep(sleep_for)
        finally:
            self.shutdown()


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="PegSentinel keeper")
    parser.add_argument("--once", action="store_true", help="Poll once and exit")
    parser.add_argument("--interval", type=float, help="Seconds between polls (default: keeper.poll_seconds)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    loop = KeeperLoop(config_dir=args.config_dir)

    if args.once:
        stats = loop.poll_once()
        loop.shutdown()
        return 0 if stats.status != "failed" else 1
    loop.run_forever(interval_seconds=args.interval)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
