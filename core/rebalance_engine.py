"""
PegSentinel Core: Rebalance Engine

Executes regime transitions against the pool:

- deploy_buffer: mint (or top up) the buffer position from treasury capital
- remove_buffer: withdraw the whole buffer and its fees back into the treasury
- collect_core_fees: sweep accrued core fees into the treasury

Methods validate what they can before touching the pool. Pool calls and
ledger updates are not atomic on their own: the caller runs them inside a
StateTransaction that includes the gateway, so a failure after a pool call
(e.g. an overcharged mint) reverts the pool side too. Authorization,
cooldown and reentrancy are the caller's job (see core/vault.py).
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional
import logging

from core.events import BufferDeployed, BufferRemoved, EventRecord, FeesCollected
from core.exceptions import (
    BufferAlreadyActive,
    BufferNotActive,
    ConfigurationError,
    ExternalCallFailed,
    InsufficientDefenseCapital,
    InsufficientFunds,
)
from core.liquidity_math import (
    get_amounts_for_liquidity,
    get_liquidity_for_amounts,
    get_sqrt_ratio_at_tick,
    required_assets,
)
from core.pool import PoolGateway, Slot0, TokenDelta
from core.positions import PositionLedger, PositionMeta
from core.ranges import RangeConfig, RangeLedger
from core.regime import Regime, RegimeTransition, find_transition
from core.treasury import TreasuryLedger

logger = logging.getLogger(__name__)


class RegimeState:
    """Active regime holder that can join a StateTransaction"""

    def __init__(self, regime: Regime = Regime.NORMAL):
        self.active = regime

    def snapshot(self) -> Regime:
        return self.active

    def restore(self, regime: Regime) -> None:
        self.active = regime


@dataclass(frozen=True)
class RebalanceCheck:
    """Answer of needs_rebalance()"""
    needed: bool
    current_regime: Regime
    target_regime: Regime
    tick: int


class RebalanceEngine:
    """
    Buffer lifecycle and fee sweeps.

    The engine owns no state of its own beyond the RegimeState; positions and
    treasury are shared with the vault so a transaction can snapshot them.
    """

    def __init__(
        self,
        gateway: PoolGateway,
        ranges: RangeLedger,
        positions: PositionLedger,
        treasury: TreasuryLedger,
        regime: Optional[RegimeState] = None,
        reuse_buffer_position: bool = False,
    ):
        self.gateway = gateway
        self.ranges = ranges
        self.positions = positions
        self.treasury = treasury
        self.regime = regime or RegimeState()
        self.reuse_buffer_position = reuse_buffer_position
        self._actions: Dict[str, Callable[[Slot0], EventRecord]] = {
            "deploy_buffer": self.deploy_buffer,
            "remove_buffer": self.remove_buffer,
        }

    # ===== Reads =====
    def read_slot0(self) -> Slot0:
        return self.gateway.read_slot0()

    def current_tick(self) -> int:
        return self.read_slot0().tick

    def check(self, slot0: Optional[Slot0] = None) -> RebalanceCheck:
        slot0 = slot0 or self.read_slot0()
        active = self.regime.active
        transition = find_transition(slot0.tick, active, self.ranges.thresholds)
        target = transition.target if transition else active
        return RebalanceCheck(
            needed=transition is not None,
            current_regime=active,
            target_regime=target,
            tick=slot0.tick,
        )

    # ===== Transitions =====
    def apply(self, transition: RegimeTransition, slot0: Slot0) -> EventRecord:
        """Run the action attached to a transition-table row."""
        try:
            action = self._actions[transition.action]
        except KeyError:
            raise ConfigurationError(f"No handler for transition action {transition.action!r}") from None
        logger.info(f"Applying {transition.source} -> {transition.target}: {transition.action} at tick {slot0.tick}")
        return action(slot0)

    def deploy_buffer(self, slot0: Slot0) -> BufferDeployed:
        """
        Mint the buffer position with as much liquidity as the treasury funds.

        Which asset is needed follows from where the price sits relative to
        the buffer range: below it only token0, above it only token1, inside
        it both.

        Raises:
            BufferAlreadyActive: a buffer is already recorded
            InsufficientDefenseCapital: the treasury cannot fund any liquidity
        """
        if self.positions.buffer_active:
            raise BufferAlreadyActive(f"buffer {self.positions.buffer.position_id} is already active")

        rng = self.ranges.buffer
        sqrt_a = get_sqrt_ratio_at_tick(rng.tick_lower)
        sqrt_b = get_sqrt_ratio_at_tick(rng.tick_upper)
        needs0, needs1 = required_assets(slot0.sqrt_price_x96, sqrt_a, sqrt_b)
        budget0 = self.treasury.balance0 if needs0 else 0
        budget1 = self.treasury.balance1 if needs1 else 0

        if needs0 and budget0 == 0:
            raise InsufficientDefenseCapital("token0", budget0)
        if needs1 and budget1 == 0:
            raise InsufficientDefenseCapital("token1", budget1)

        liquidity = get_liquidity_for_amounts(slot0.sqrt_price_x96, sqrt_a, sqrt_b, budget0, budget1)
        if liquidity <= 0:
            asset = "token0" if needs0 else "token1"
            raise InsufficientDefenseCapital(asset, budget0 if needs0 else budget1)

        before = self.treasury.state.to_dict()
        reuse_id = self._reusable_buffer_id(rng)
        if reuse_id is not None:
            delta = self.gateway.increase(reuse_id, liquidity, budget0, budget1)
            position_id = reuse_id
        else:
            result = self.gateway.mint(rng.tick_lower, rng.tick_upper, liquidity, budget0, budget1)
            position_id, delta = result.position_id, result.delta

        self._check_within_budget(delta, budget0, budget1)
        self.treasury.debit(delta.amount0, delta.amount1)
        self.positions.set_buffer(PositionMeta(position_id, rng.tick_lower, rng.tick_upper, liquidity))

        logger.info(
            f"Buffer deployed: id={position_id} [{rng.tick_lower}, {rng.tick_upper}] L={liquidity} "
            f"paid=({delta.amount0}, {delta.amount1}) reused={reuse_id is not None}"
        )
        return BufferDeployed(
            position_id=position_id,
            tick_lower=rng.tick_lower,
            tick_upper=rng.tick_upper,
            liquidity=liquidity,
            amount0=delta.amount0,
            amount1=delta.amount1,
            treasury_before=before,
            treasury_after=self.treasury.state.to_dict(),
            tick=slot0.tick,
            reused=reuse_id is not None,
        )

    def remove_buffer(self, slot0: Slot0) -> BufferRemoved:
        """
        Withdraw the full buffer and its earned fees into the treasury and
        clear the record.

        The amount withdrawn is the liquidity the pool actually reports; a
        mismatch with the ledger is logged and the pool figure wins.

        Raises:
            BufferNotActive: there is no buffer to remove
        """
        buffer = self.positions.buffer
        if buffer is None or not buffer.active:
            raise BufferNotActive("no active buffer position")

        info = self.gateway.read_position(buffer.position_id)
        actual = info.liquidity if info is not None else 0
        if actual != buffer.liquidity:
            logger.warning(
                f"Buffer {buffer.position_id} liquidity drift: ledger={buffer.liquidity} pool={actual}; "
                f"withdrawing pool figure"
            )

        before = self.treasury.state.to_dict()
        delta = self.gateway.decrease(buffer.position_id, actual) if actual > 0 else TokenDelta()
        fees = self.gateway.collect(buffer.position_id) if info is not None else TokenDelta()
        self.treasury.credit(delta.amount0 + fees.amount0, delta.amount1 + fees.amount1)
        if not fees.is_zero:
            self.treasury.record_fees_collected(fees.amount0, fees.amount1)
        self.positions.clear_buffer()

        logger.info(
            f"Buffer removed: id={buffer.position_id} L={actual} received=({delta.amount0}, {delta.amount1}) "
            f"fees=({fees.amount0}, {fees.amount1})"
        )
        return BufferRemoved(
            position_id=buffer.position_id,
            liquidity=actual,
            ledger_liquidity=buffer.liquidity,
            amount0=delta.amount0,
            amount1=delta.amount1,
            treasury_before=before,
            treasury_after=self.treasury.state.to_dict(),
            tick=slot0.tick,
            fees0=fees.amount0,
            fees1=fees.amount1,
        )

    # ===== Core position =====
    def initialize_core(self, slot0: Slot0, amount0: int, amount1: int) -> PositionMeta:
        """Mint the permanent core position from treasury funds (once)."""
        if self.positions.core is not None:
            raise ConfigurationError(f"core position {self.positions.core.position_id} already exists")
        if not self.treasury.can_cover(amount0, amount1):
            raise InsufficientFunds(amount0, amount1, self.treasury.balance0, self.treasury.balance1)

        rng = self.ranges.core
        sqrt_a = get_sqrt_ratio_at_tick(rng.tick_lower)
        sqrt_b = get_sqrt_ratio_at_tick(rng.tick_upper)
        liquidity = get_liquidity_for_amounts(slot0.sqrt_price_x96, sqrt_a, sqrt_b, amount0, amount1)
        if liquidity <= 0:
            raise InsufficientDefenseCapital("token0/token1", amount0 + amount1)

        result = self.gateway.mint(rng.tick_lower, rng.tick_upper, liquidity, amount0, amount1)
        self._check_within_budget(result.delta, amount0, amount1)
        self.treasury.debit(result.delta.amount0, result.delta.amount1)
        meta = PositionMeta(result.position_id, rng.tick_lower, rng.tick_upper, liquidity)
        self.positions.set_core(meta)
        logger.info(
            f"Core position minted: id={meta.position_id} [{rng.tick_lower}, {rng.tick_upper}] "
            f"L={liquidity} paid=({result.delta.amount0}, {result.delta.amount1})"
        )
        return meta

    def collect_core_fees(self, slot0: Slot0) -> Optional[FeesCollected]:
        """Sweep core fees into the treasury. Returns None when nothing accrued."""
        core = self.positions.core
        if core is None:
            logger.debug("No core position; nothing to collect")
            return None

        delta = self.gateway.collect(core.position_id)
        if delta.is_zero:
            logger.debug(f"No fees accrued on core position {core.position_id}")
            return None

        before = self.treasury.state.to_dict()
        self.treasury.credit(delta.amount0, delta.amount1)
        self.treasury.record_fees_collected(delta.amount0, delta.amount1)
        logger.info(f"Fees collected from {core.position_id}: ({delta.amount0}, {delta.amount1})")
        return FeesCollected(
            position_id=core.position_id,
            amount0=delta.amount0,
            amount1=delta.amount1,
            treasury_before=before,
            treasury_after=self.treasury.state.to_dict(),
            tick=slot0.tick,
        )

    # ===== Internals =====
    def _reusable_buffer_id(self, rng: RangeConfig) -> Optional[str]:
        if not self.reuse_buffer_position or not self.positions.last_buffer_id:
            return None
        info = self.gateway.read_position(self.positions.last_buffer_id)
        if info is None or info.tick_lower != rng.tick_lower or info.tick_upper != rng.tick_upper:
            logger.debug(f"Previous buffer {self.positions.last_buffer_id} not reusable; minting fresh")
            return None
        return info.position_id

    @staticmethod
    def _check_within_budget(delta: TokenDelta, budget0: int, budget1: int) -> None:
        if delta.amount0 > budget0 or delta.amount1 > budget1:
            raise ExternalCallFailed(
                "mint",
                ValueError(f"pool charged ({delta.amount0}, {delta.amount1}) over max ({budget0}, {budget1})"),
            )

    def expected_amounts(self, slot0: Slot0, meta: PositionMeta) -> Dict[str, int]:
        """Token amounts a position would return if withdrawn at the current price."""
        amount0, amount1 = get_amounts_for_liquidity(
            slot0.sqrt_price_x96,
            get_sqrt_ratio_at_tick(meta.tick_lower),
            get_sqrt_ratio_at_tick(meta.tick_upper),
            meta.liquidity,
        )
        return {"amount0": amount0, "amount1": amount1}
