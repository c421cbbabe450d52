"""
PegSentinel Core: Peg Defense Vault

Public face of the system. Wires the ledgers, the regime detector, the fee
policy and the rebalance engine together and exposes the operator, keeper
and swap-path operations.

Every mutating call runs as:

    reentrancy guard -> authorization -> StateTransaction(body)

so a call either commits all of its ledger changes and events or none.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, Optional
import logging

from core.access import AccessGate, CooldownState
from core.events import (
    ConfigUpdated,
    EventLog,
    EventRecord,
    FeesCollected,
    RegimeChanged,
    TreasuryFunded,
    TreasuryWithdrawn,
)
from core.exceptions import (
    BufferAlreadyActive,
    ConfigurationError,
    ExternalCallFailed,
    NoRegimeChange,
)
from core.fee_policy import FeeCurve, FeeHook, FeePolicy, FeeQuote
from core.pool import PoolCall, PoolGateway, PoolOperation, Slot0
from core.positions import PositionLedger
from core.ranges import RangeConfig, RangeLedger, Thresholds
from core.rebalance_engine import RebalanceCheck, RebalanceEngine, RegimeState
from core.regime import Regime, RegimeDetector, RegimeSignal, transition_between
from core.transaction import ReentrancyGuard, StateTransaction
from core.treasury import TreasuryLedger, TreasuryState

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass(frozen=True)
class RebalanceOutcome:
    """Result of a committed regime transition"""
    from_regime: Regime
    to_regime: Regime
    tick: int
    action: str
    event: EventRecord
    forced: bool = False


class PegDefenseVault:
    """
    Owner of the core and buffer positions and of the treasury.

    Example:
        vault = PegDefenseVault(gateway, ranges, FeePolicy(), AccessGate("0xowner", ["0xkeeper"], 300))
        check = vault.needs_rebalance()
        if check.needed:
            vault.auto_rebalance("0xkeeper")
    """

    def __init__(
        self,
        gateway: PoolGateway,
        ranges: RangeLedger,
        fee_policy: FeePolicy,
        access: AccessGate,
        positions: Optional[PositionLedger] = None,
        treasury: Optional[TreasuryLedger] = None,
        regime: Regime = Regime.NORMAL,
        events: Optional[EventLog] = None,
        reuse_buffer_position: bool = False,
        owner_operations: Iterable[PoolOperation] = (PoolOperation.APPROVE,),
    ):
        if ranges.tick_spacing != gateway.pool_key.tick_spacing:
            raise ConfigurationError(
                f"range tick spacing {ranges.tick_spacing} != pool tick spacing {gateway.pool_key.tick_spacing}"
            )
        self.gateway = gateway
        self.ranges = ranges
        self.fee_policy = fee_policy
        self.access = access
        self.positions = positions or PositionLedger()
        self.treasury = treasury or TreasuryLedger()
        self.events = events or EventLog()
        self.owner_operations = frozenset(owner_operations)
        self.detector = RegimeDetector()
        self.guard = ReentrancyGuard()
        self.engine = RebalanceEngine(
            gateway,
            ranges,
            self.positions,
            self.treasury,
            regime=RegimeState(regime),
            reuse_buffer_position=reuse_buffer_position,
        )
        self.fee_hook = FeeHook(fee_policy, self.get_current_tick, lambda: self.active_regime)
        self._participants = [self.gateway, self.engine.regime, self.access, self.ranges, self.positions, self.treasury]

        logger.info(
            f"PegDefenseVault initialized: regime={regime} core=[{ranges.core.tick_lower}, {ranges.core.tick_upper}] "
            f"buffer=[{ranges.buffer.tick_lower}, {ranges.buffer.tick_upper}] "
            f"thresholds=({ranges.thresholds.escalate}, {ranges.thresholds.deescalate})"
        )

    @property
    def active_regime(self) -> Regime:
        return self.engine.regime.active

    @contextmanager
    def _mutation(self, caller: str, action: str) -> Iterator[StateTransaction]:
        with self.guard.hold(action):
            self.access.require(caller, action)
            with StateTransaction(self._participants, self.events, label=action) as tx:
                yield tx

    # ===== Reads =====
    def get_current_tick(self) -> int:
        return self.engine.current_tick()

    def needs_rebalance(self) -> RebalanceCheck:
        """Side-effect free: would auto_rebalance() change the regime right now?"""
        return self.engine.check()

    def explain(self) -> RegimeSignal:
        """Regime decision for the live tick, with a human-readable reason."""
        return self.detector.detect(self.get_current_tick(), self.active_regime, self.ranges.thresholds)

    def preview_fee(self, tick: int, toward_peg: bool) -> int:
        return self.fee_policy.preview_fee(tick, toward_peg, self.active_regime)

    def quote_fee(self, zero_for_one: bool) -> FeeQuote:
        return self.fee_hook.before_swap(zero_for_one)

    def before_swap(self, zero_for_one: bool) -> int:
        """Fee override for the next swap, in the pool's millionths."""
        return self.quote_fee(zero_for_one).fee_pips

    # ===== Keeper operations =====
    def auto_rebalance(self, caller: str) -> RebalanceOutcome:
        """
        Move to the regime the live tick calls for.

        Raises:
            NotAuthorized, ReentrantCall, CooldownActive, NoRegimeChange,
            InsufficientDefenseCapital, BufferAlreadyActive, BufferNotActive,
            PoolDataUnavailable, ExternalCallFailed
        """
        with self._mutation(caller, "auto_rebalance") as tx:
            self.access.check_cooldown()
            slot0 = self.engine.read_slot0()
            check = self.engine.check(slot0)
            if not check.needed:
                raise NoRegimeChange(check.current_regime, check.tick)
            transition = transition_between(check.current_regime, check.target_regime)
            event = self.engine.apply(transition, slot0)
            return self._commit_regime(tx, event, transition.target, transition.action, slot0, caller, forced=False)

    def collect_fees(self, caller: str) -> Optional[FeesCollected]:
        """Sweep core fees into the treasury. No accrued fees is a successful no-op."""
        with self._mutation(caller, "collect_fees") as tx:
            event = self.engine.collect_core_fees(self.engine.read_slot0())
            if event is not None:
                tx.emit(event)
            return event

    # ===== Owner overrides =====
    def force_deploy_buffer(self, caller: str) -> RebalanceOutcome:
        with self._mutation(caller, "force_deploy_buffer") as tx:
            slot0 = self.engine.read_slot0()
            event = self.engine.deploy_buffer(slot0)
            return self._commit_regime(tx, event, Regime.DEFEND, "deploy_buffer", slot0, caller, forced=True)

    def force_remove_buffer(self, caller: str) -> RebalanceOutcome:
        with self._mutation(caller, "force_remove_buffer") as tx:
            slot0 = self.engine.read_slot0()
            event = self.engine.remove_buffer(slot0)
            return self._commit_regime(tx, event, Regime.NORMAL, "remove_buffer", slot0, caller, forced=True)

    def initialize_core(self, caller: str, amount0: int, amount1: int):
        """Mint the permanent core position from treasury funds."""
        with self._mutation(caller, "initialize_core") as tx:
            slot0 = self.engine.read_slot0()
            before = self.treasury.state.to_dict()
            meta = self.engine.initialize_core(slot0, amount0, amount1)
            tx.emit(ConfigUpdated("core_position", None, meta.to_dict(), caller))
            logger.info(f"Treasury after core mint: {before} -> {self.treasury.state.to_dict()}")
            return meta

    def _commit_regime(
        self,
        tx: StateTransaction,
        event: EventRecord,
        target: Regime,
        action: str,
        slot0: Slot0,
        caller: str,
        forced: bool,
    ) -> RebalanceOutcome:
        source = self.active_regime
        tx.emit(event)
        self.engine.regime.active = target
        self.access.reset_cooldown()
        if source != target:
            tx.emit(RegimeChanged(source, target, slot0.tick, caller, forced=forced))
        logger.info(f"Regime {source} -> {target} at tick {slot0.tick} ({action}, caller={caller}, forced={forced})")
        return RebalanceOutcome(source, target, slot0.tick, action, event, forced)

    # ===== Configuration =====
    def set_ranges(self, caller: str, core: RangeConfig, buffer: RangeConfig) -> None:
        with self._mutation(caller, "set_ranges") as tx:
            if self.positions.buffer_active and buffer != self.ranges.buffer:
                raise BufferAlreadyActive("buffer range cannot change while the buffer is deployed")
            if self.positions.core is not None and core != self.ranges.core:
                raise ConfigurationError("core range is fixed once the core position exists")
            before = {"core": self.ranges.core.to_dict(), "buffer": self.ranges.buffer.to_dict()}
            self.ranges.set_ranges(core, buffer)
            tx.emit(ConfigUpdated("ranges", before, {"core": core.to_dict(), "buffer": buffer.to_dict()}, caller))

    def set_thresholds(self, caller: str, escalate: int, deescalate: int) -> None:
        with self._mutation(caller, "set_thresholds") as tx:
            before = self.ranges.thresholds.to_dict()
            thresholds = Thresholds(escalate=escalate, deescalate=deescalate)
            self.ranges.set_thresholds(thresholds)
            tx.emit(ConfigUpdated("thresholds", before, thresholds.to_dict(), caller))

    def set_cooldown(self, caller: str, seconds: float) -> None:
        with self._mutation(caller, "set_cooldown") as tx:
            before = self.access.cooldown.min_interval
            self.access.set_cooldown(seconds)
            tx.emit(ConfigUpdated("cooldown_seconds", before, float(seconds), caller))

    def set_fee_curve(self, caller: str, regime: Regime, curve: FeeCurve) -> None:
        with self._mutation(caller, "set_fee_curve") as tx:
            regime = Regime.from_value(regime)
            before = self.fee_policy.curve_for(regime).to_dict()
            self.fee_policy.set_curve(regime, curve)
            tx.emit(ConfigUpdated(f"fee_curve.{regime}", before, curve.to_dict(), caller))

    def set_keeper(self, caller: str, keeper: str, enabled: bool) -> None:
        with self._mutation(caller, "set_keeper") as tx:
            before = keeper in self.access.keepers
            self.access.set_keeper(keeper, enabled)
            tx.emit(ConfigUpdated(f"keeper.{keeper}", before, bool(enabled), caller))

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        with self._mutation(caller, "transfer_ownership") as tx:
            before = self.access.owner
            self.access.transfer_ownership(new_owner)
            tx.emit(ConfigUpdated("owner", before, new_owner, caller))

    # ===== Treasury movement =====
    def fund(self, caller: str, amount0: int, amount1: int) -> TreasuryState:
        """Pull tokens from the caller into the treasury."""
        with self._mutation(caller, "fund") as tx:
            before = self.treasury.state.to_dict()
            after = self.treasury.credit(amount0, amount1)
            self.gateway.pull(caller, amount0, amount1)
            tx.emit(TreasuryFunded(caller, amount0, amount1, before, after.to_dict()))
            return after

    def withdraw_treasury(self, caller: str, recipient: str, amount0: int, amount1: int) -> TreasuryState:
        """Send undeployed treasury funds to `recipient`."""
        with self._mutation(caller, "withdraw_treasury") as tx:
            before = self.treasury.state.to_dict()
            after = self.treasury.debit(amount0, amount1)
            self.gateway.push(recipient, amount0, amount1)
            tx.emit(TreasuryWithdrawn(caller, recipient, amount0, amount1, before, after.to_dict()))
            return after

    def execute(self, caller: str, call: PoolCall) -> Any:
        """Owner escape hatch, limited to the operations in `owner_operations`."""
        with self._mutation(caller, "execute"):
            if call.operation not in self.owner_operations:
                raise ExternalCallFailed(
                    call.operation.value, PermissionError("operation not permitted for direct execution")
                )
            logger.info(f"Owner execute: {call.operation.value} {call.params}")
            return self.gateway.execute(call)

    # ===== State =====
    def snapshot(self) -> Dict[str, Any]:
        """Read-only view of the vault (no pool reads)."""
        return {
            "regime": str(self.active_regime),
            "positions": self.positions.to_dict(),
            "treasury": self.treasury.state.to_dict(),
            "ranges": self.ranges.to_dict(),
            "cooldown": {
                "last_action_at": self.access.cooldown.last_action_at,
                "min_interval": self.access.cooldown.min_interval,
                "remaining": self.access.cooldown_remaining(),
            },
            "owner": self.access.owner,
            "keepers": sorted(self.access.keepers),
            "fee_curves": {str(regime): curve.to_dict() for regime, curve in self.fee_policy.curves().items()},
            "busy": self.guard.busy,
        }

    def to_state(self) -> Dict[str, Any]:
        """Everything needed to rebuild the vault with from_state()."""
        return {
            "version": STATE_VERSION,
            "regime": self.active_regime.name,
            "positions": self.positions.to_dict(),
            "treasury": self.treasury.state.to_dict(),
            "ranges": self.ranges.to_dict(),
            "cooldown": {
                "last_action_at": self.access.cooldown.last_action_at,
                "min_interval": self.access.cooldown.min_interval,
            },
            "owner": self.access.owner,
            "keepers": sorted(self.access.keepers),
            "fee_curves": {regime.name: curve.to_dict() for regime, curve in self.fee_policy.curves().items()},
            "peg_tick": self.fee_policy.peg_tick,
            "reuse_buffer_position": self.engine.reuse_buffer_position,
            "owner_operations": sorted(op.value for op in self.owner_operations),
        }

    @classmethod
    def from_state(
        cls,
        state: Dict[str, Any],
        gateway: PoolGateway,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> "PegDefenseVault":
        version = state.get("version", STATE_VERSION)
        if version != STATE_VERSION:
            raise ConfigurationError(f"Unsupported vault state version {version}")

        cooldown = state.get("cooldown", {})
        access = AccessGate(
            owner=state["owner"],
            keepers=state.get("keepers", []),
            cooldown_seconds=float(cooldown.get("min_interval", 0.0)),
            clock=clock,
        )
        access.restore(CooldownState(cooldown.get("last_action_at"), float(cooldown.get("min_interval", 0.0))))

        curves = {Regime.from_value(name): FeeCurve.from_dict(data) for name, data in state.get("fee_curves", {}).items()}
        vault = cls(
            gateway=gateway,
            ranges=RangeLedger.from_dict(state["ranges"]),
            fee_policy=FeePolicy(curves or None, peg_tick=int(state.get("peg_tick", 0))),
            access=access,
            positions=PositionLedger.from_dict(state.get("positions", {})),
            treasury=TreasuryLedger(TreasuryState.from_dict(state.get("treasury", {}))),
            regime=Regime.from_value(state.get("regime", "NORMAL")),
            events=events,
            reuse_buffer_position=bool(state.get("reuse_buffer_position", False)),
            owner_operations=[PoolOperation(op) for op in state.get("owner_operations", [PoolOperation.APPROVE.value])],
        )
        logger.info(f"Vault restored from state: regime={vault.active_regime} treasury={vault.treasury.state.to_dict()}")
        return vault


def build_vault(
    defense_cfg: Dict[str, Any],
    gateway: PoolGateway,
    events: Optional[EventLog] = None,
    clock: Optional[Callable[[], float]] = None,
) -> PegDefenseVault:
    """
    Build a fresh vault from a validated defense.yaml dict.

    Args:
        defense_cfg: Parsed defense.yaml (see tools/config_validator.py)
        gateway: Pool gateway for the defended pool
        events: Event log to publish into (a new one if omitted)
        clock: Injectable time source for the cooldown

    Returns:
        PegDefenseVault in the NORMAL regime with an empty treasury
    """
    ranges_cfg = defense_cfg["ranges"]
    ranges = RangeLedger(
        tick_spacing=int(defense_cfg["pool"]["tick_spacing"]),
        core=RangeConfig.from_dict(ranges_cfg["core"]),
        buffer=RangeConfig.from_dict(ranges_cfg["buffer"]),
        thresholds=Thresholds.from_dict(defense_cfg["thresholds"]),
    )
    curves = {
        Regime.from_value(name): FeeCurve.from_dict(data)
        for name, data in (defense_cfg.get("fee_curves") or {}).items()
    }
    roles = defense_cfg["roles"]
    access = AccessGate(
        owner=roles["owner"],
        keepers=roles.get("keepers", []),
        cooldown_seconds=float(defense_cfg.get("cooldown_seconds", 0)),
        clock=clock,
    )
    vault_cfg = defense_cfg.get("vault", {})
    return PegDefenseVault(
        gateway=gateway,
        ranges=ranges,
        fee_policy=FeePolicy(curves or None, peg_tick=int(defense_cfg.get("peg_tick", 0))),
        access=access,
        events=events,
        reuse_buffer_position=bool(vault_cfg.get("reuse_buffer_position", False)),
        owner_operations=[PoolOperation(op) for op in vault_cfg.get("owner_operations", ["approve"])],
    )
