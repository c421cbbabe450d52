"""
PegSentinel Backtest: Mock Pool

In-memory concentrated-liquidity pool and token ledger.
Implements the same interfaces as a live pool client (PoolClient /
TokenLedger) so the vault, the keeper's PAPER mode and the tests run
against identical code paths.

Pattern: exact integer amounts via core.liquidity_math. Amounts paid into
the pool round up, amounts paid out round down.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import copy
import logging

from core.liquidity_math import get_amounts_for_liquidity, get_sqrt_ratio_at_tick
from core.pool import MintResult, PoolKey, PositionInfo, Slot0, TokenDelta, build_gateway, pool_key_from_config
from core.vault import build_vault

logger = logging.getLogger(__name__)


class MockTokenLedger:
    """
    Balance book for any number of tokens.

    Tests seed balances with `mint()`; `fail_next_transfer()` makes the next
    transfer of a token raise before moving anything.
    """

    def __init__(self, initial_balances: Optional[Dict[Tuple[str, str], int]] = None):
        self.balances: Dict[Tuple[str, str], int] = dict(initial_balances or {})
        self.allowances: Dict[Tuple[str, str, str], int] = {}
        self._failures: Dict[str, Exception] = {}

    def mint(self, token: str, holder: str, amount: int) -> None:
        self.balances[(token, holder)] = self.balance_of(token, holder) + amount

    def balance_of(self, token: str, holder: str) -> int:
        return self.balances.get((token, holder), 0)

    def fail_next_transfer(self, token: str, error: Optional[Exception] = None) -> None:
        self._failures[token] = error or RuntimeError(f"injected transfer failure for {token}")

    def transfer(self, token: str, sender: str, recipient: str, amount: int) -> None:
        if token in self._failures:
            raise self._failures.pop(token)
        if amount < 0:
            raise ValueError(f"negative transfer amount {amount}")
        available = self.balance_of(token, sender)
        if amount > available:
            raise ValueError(f"{sender} has {available} {token}, cannot send {amount}")
        self.balances[(token, sender)] = available - amount
        self.balances[(token, recipient)] = self.balance_of(token, recipient) + amount

    def approve(self, token: str, owner: str, spender: str, amount: int) -> None:
        self.allowances[(token, owner, spender)] = amount

    def allowance(self, token: str, owner: str, spender: str) -> int:
        return self.allowances.get((token, owner, spender), 0)

    def snapshot(self) -> Tuple[Dict, Dict]:
        return dict(self.balances), dict(self.allowances)

    def restore(self, snapshot: Tuple[Dict, Dict]) -> None:
        balances, allowances = snapshot
        self.balances = dict(balances)
        self.allowances = dict(allowances)


@dataclass
class MockPosition:
    """Simulated position with uncollected fees"""
    position_id: str
    owner: str
    tick_lower: int
    tick_upper: int
    liquidity: int = 0
    tokens_owed0: int = 0
    tokens_owed1: int = 0

    def info(self) -> PositionInfo:
        return PositionInfo(self.position_id, self.tick_lower, self.tick_upper, self.liquidity)


class MockPool:
    """
    Simulated pool for tests, replays and PAPER mode.

    Implements the PoolClient interface:
    - get_slot0(pool_id) -> Slot0
    - get_position(position_id) -> PositionInfo | None
    - mint_position / increase_liquidity / decrease_liquidity / collect / burn

    Simulation controls:
    - set_tick(): move the price
    - accrue_fees(): credit uncollected fees to a position
    - fail_next(): make the next call of an operation raise
    - on(): register a callback run mid-operation (after the pool updated
      itself, before returning), e.g. to attempt a re-entrant vault call

    Reverts like a chain: an operation that raises (including from its
    callback) leaves positions and token balances as they were, and
    snapshot()/restore() let the vault's transaction revert a whole call.
    """

    def __init__(self, tokens: MockTokenLedger, pool_key: PoolKey, tick: int = 0, address: str = "0xpool"):
        self.tokens = tokens
        self.pool_key = pool_key
        self.address = address
        self.positions: Dict[str, MockPosition] = {}
        self.calls: List[str] = []
        self._next_id = 1
        self._failures: Dict[str, Exception] = {}
        self._callbacks: Dict[str, Callable[[], None]] = {}
        self.set_tick(tick)
        logger.info(f"MockPool initialized: pool={pool_key.pool_id[:10]}... tick={tick}")

    # ===== Simulation controls =====
    def set_tick(self, tick: int) -> None:
        self.tick = tick
        self.sqrt_price_x96 = get_sqrt_ratio_at_tick(tick)

    def accrue_fees(self, position_id: str, amount0: int, amount1: int) -> None:
        """Pretend swaps paid fees to a position (tokens appear in pool custody)."""
        position = self._position(position_id)
        self.tokens.mint(self.pool_key.currency0, self.address, amount0)
        self.tokens.mint(self.pool_key.currency1, self.address, amount1)
        position.tokens_owed0 += amount0
        position.tokens_owed1 += amount1

    def fail_next(self, operation: str, error: Optional[Exception] = None) -> None:
        self._failures[operation] = error or RuntimeError(f"injected {operation} failure")

    def on(self, operation: str, callback: Optional[Callable[[], None]]) -> None:
        if callback is None:
            self._callbacks.pop(operation, None)
        else:
            self._callbacks[operation] = callback

    def snapshot(self) -> Dict[str, Any]:
        return {
            "positions": copy.deepcopy(self.positions),
            "next_id": self._next_id,
            "tokens": self.tokens.snapshot(),
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.positions = copy.deepcopy(snapshot["positions"])
        self._next_id = snapshot["next_id"]
        self.tokens.restore(snapshot["tokens"])

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self._failures:
            raise self._failures.pop(operation)

    @contextmanager
    def _operation(self, operation: str) -> Iterator[None]:
        self._enter(operation)
        saved = self.snapshot()
        try:
            yield
        except Exception:
            self.restore(saved)
            logger.debug(f"MockPool reverted {operation}")
            raise

    def _callback(self, operation: str) -> None:
        callback = self._callbacks.get(operation)
        if callback is not None:
            callback()

    def _position(self, position_id: str) -> MockPosition:
        try:
            return self.positions[position_id]
        except KeyError:
            raise KeyError(f"unknown position {position_id}") from None

    def _amounts(self, position: MockPosition, liquidity: int, round_up: bool) -> Tuple[int, int]:
        return get_amounts_for_liquidity(
            self.sqrt_price_x96,
            get_sqrt_ratio_at_tick(position.tick_lower),
            get_sqrt_ratio_at_tick(position.tick_upper),
            liquidity,
            round_up=round_up,
        )

    # ===== PoolClient =====
    def get_slot0(self, pool_id: str) -> Slot0:
        self._enter("get_slot0")
        if pool_id != self.pool_key.pool_id:
            raise KeyError(f"unknown pool {pool_id}")
        return Slot0(sqrt_price_x96=self.sqrt_price_x96, tick=self.tick, lp_fee=self.pool_key.fee)

    def get_position(self, position_id: str) -> Optional[PositionInfo]:
        self._enter("get_position")
        position = self.positions.get(position_id)
        return position.info() if position else None

    def mint_position(
        self, owner: str, tick_lower: int, tick_upper: int, liquidity: int,
        amount0_max: int, amount1_max: int,
    ) -> MintResult:
        with self._operation("mint"):
            if liquidity <= 0:
                raise ValueError("liquidity must be positive")
            if tick_lower >= tick_upper or tick_lower % self.pool_key.tick_spacing or tick_upper % self.pool_key.tick_spacing:
                raise ValueError(f"invalid range [{tick_lower}, {tick_upper}]")
            position = MockPosition(f"pos-{self._next_id}", owner, tick_lower, tick_upper)
            delta = self._add(position, liquidity, amount0_max, amount1_max)
            self._next_id += 1
            self.positions[position.position_id] = position
            self._callback("mint")
        return MintResult(position.position_id, liquidity, delta)

    def increase_liquidity(self, position_id: str, liquidity: int, amount0_max: int, amount1_max: int) -> TokenDelta:
        with self._operation("increase_liquidity"):
            if liquidity <= 0:
                raise ValueError("liquidity must be positive")
            delta = self._add(self._position(position_id), liquidity, amount0_max, amount1_max)
            self._callback("increase_liquidity")
        return delta

    def _add(self, position: MockPosition, liquidity: int, amount0_max: int, amount1_max: int) -> TokenDelta:
        amount0, amount1 = self._amounts(position, liquidity, round_up=True)
        if amount0 > amount0_max or amount1 > amount1_max:
            raise ValueError(f"price slippage: need ({amount0}, {amount1}), max ({amount0_max}, {amount1_max})")
        if self.tokens.balance_of(self.pool_key.currency0, position.owner) < amount0 or \
                self.tokens.balance_of(self.pool_key.currency1, position.owner) < amount1:
            raise ValueError(f"{position.owner} cannot pay ({amount0}, {amount1})")
        if amount0:
            self.tokens.transfer(self.pool_key.currency0, position.owner, self.address, amount0)
        if amount1:
            self.tokens.transfer(self.pool_key.currency1, position.owner, self.address, amount1)
        position.liquidity += liquidity
        return TokenDelta(amount0, amount1)

    def decrease_liquidity(
        self, position_id: str, liquidity: int, amount0_min: int = 0, amount1_min: int = 0,
    ) -> TokenDelta:
        with self._operation("decrease_liquidity"):
            position = self._position(position_id)
            if liquidity <= 0 or liquidity > position.liquidity:
                raise ValueError(f"cannot remove {liquidity} of {position.liquidity} liquidity")
            amount0, amount1 = self._amounts(position, liquidity, round_up=False)
            if amount0 < amount0_min or amount1 < amount1_min:
                raise ValueError(f"price slippage: got ({amount0}, {amount1}), min ({amount0_min}, {amount1_min})")
            position.liquidity -= liquidity
            if amount0:
                self.tokens.transfer(self.pool_key.currency0, self.address, position.owner, amount0)
            if amount1:
                self.tokens.transfer(self.pool_key.currency1, self.address, position.owner, amount1)
            self._callback("decrease_liquidity")
        return TokenDelta(amount0, amount1)

    def collect(self, position_id: str) -> TokenDelta:
        with self._operation("collect"):
            position = self._position(position_id)
            amount0, amount1 = position.tokens_owed0, position.tokens_owed1
            position.tokens_owed0 = position.tokens_owed1 = 0
            if amount0:
                self.tokens.transfer(self.pool_key.currency0, self.address, position.owner, amount0)
            if amount1:
                self.tokens.transfer(self.pool_key.currency1, self.address, position.owner, amount1)
            self._callback("collect")
        return TokenDelta(amount0, amount1)

    def burn(self, position_id: str) -> None:
        with self._operation("burn"):
            position = self._position(position_id)
            if position.liquidity or position.tokens_owed0 or position.tokens_owed1:
                raise ValueError(f"position {position_id} is not empty")
            del self.positions[position_id]


def build_paper_vault(defense_cfg: Dict, events=None, clock=None):
    """
    Vault wired to a MockPool and seeded from the `paper` section of defense.yaml.

    Seeding mints the owner's wallet balances, funds the treasury and, if
    configured, mints the core position, exactly as an operator would.

    Returns:
        (vault, pool, tokens)
    """
    paper = defense_cfg.get("paper") or {}
    pool_key = pool_key_from_config(defense_cfg["pool"])
    tokens = MockTokenLedger()
    pool = MockPool(tokens, pool_key, tick=int(paper.get("start_tick", 0)))
    gateway = build_gateway(defense_cfg, pool, tokens)
    vault = build_vault(defense_cfg, gateway, events=events, clock=clock)

    owner = vault.access.owner
    fund0, fund1 = int(paper.get("fund_amount0", 0)), int(paper.get("fund_amount1", 0))
    tokens.mint(pool_key.currency0, owner, int(paper.get("owner_balance0", fund0)))
    tokens.mint(pool_key.currency1, owner, int(paper.get("owner_balance1", fund1)))
    if fund0 or fund1:
        vault.fund(owner, fund0, fund1)
    core0, core1 = int(paper.get("core_amount0", 0)), int(paper.get("core_amount1", 0))
    if core0 or core1:
        vault.initialize_core(owner, core0, core1)

    logger.info(f"Paper vault ready: tick={pool.tick} treasury={vault.treasury.state.to_dict()}")
    return vault, pool, tokens
