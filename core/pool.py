"""
PegSentinel Core: Pool Gateway

Collaborator interfaces for the external liquidity pool and token ledger,
and the only path through which the vault touches them.

External mutations are an explicit, closed set of PoolOperation commands
checked against an allowlist; token approvals are further restricted to
allowlisted spenders. There is no opaque call-anything escape hatch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Protocol
import hashlib
import logging

from core.exceptions import DefenseError, ExternalCallFailed, PoolDataUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolKey:
    """Identifies a pool: token pair, fee tier, tick spacing and hook address"""
    currency0: str
    currency1: str
    fee: int
    tick_spacing: int
    hooks: str = ""

    @property
    def pool_id(self) -> str:
        raw = f"{self.currency0}|{self.currency1}|{self.fee}|{self.tick_spacing}|{self.hooks}"
        return "0x" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Slot0:
    sqrt_price_x96: int
    tick: int
    protocol_fee: int = 0
    lp_fee: int = 0


@dataclass(frozen=True)
class PositionInfo:
    position_id: str
    tick_lower: int
    tick_upper: int
    liquidity: int


@dataclass(frozen=True)
class TokenDelta:
    """Token amounts moved by one pool call (always non-negative)"""
    amount0: int = 0
    amount1: int = 0

    @property
    def is_zero(self) -> bool:
        return self.amount0 == 0 and self.amount1 == 0


@dataclass(frozen=True)
class MintResult:
    position_id: str
    liquidity: int
    delta: TokenDelta


class PoolClient(Protocol):
    """Price source and position-mutation primitives of the pool"""

    def get_slot0(self, pool_id: str) -> Slot0: ...

    def get_position(self, position_id: str) -> Optional[PositionInfo]: ...

    def mint_position(
        self, owner: str, tick_lower: int, tick_upper: int, liquidity: int,
        amount0_max: int, amount1_max: int,
    ) -> MintResult: ...

    def increase_liquidity(
        self, position_id: str, liquidity: int, amount0_max: int, amount1_max: int,
    ) -> TokenDelta: ...

    def decrease_liquidity(
        self, position_id: str, liquidity: int, amount0_min: int = 0, amount1_min: int = 0,
    ) -> TokenDelta: ...

    def collect(self, position_id: str) -> TokenDelta: ...

    def burn(self, position_id: str) -> None: ...


class TokenLedger(Protocol):
    """Asset-transfer primitive"""

    def balance_of(self, token: str, holder: str) -> int: ...

    def transfer(self, token: str, sender: str, recipient: str, amount: int) -> None: ...

    def approve(self, token: str, owner: str, spender: str, amount: int) -> None: ...

    def allowance(self, token: str, owner: str, spender: str) -> int: ...


class PoolOperation(Enum):
    MINT = "mint"
    INCREASE = "increase_liquidity"
    DECREASE = "decrease_liquidity"
    COLLECT = "collect"
    BURN = "burn"
    APPROVE = "approve"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


ALL_OPERATIONS: FrozenSet[PoolOperation] = frozenset(PoolOperation)


@dataclass(frozen=True)
class PoolCall:
    """One allowlisted command against the pool or token ledger"""
    operation: PoolOperation
    params: Dict[str, Any] = field(default_factory=dict)


class PoolGateway:
    """
    Mediates every read and write between the vault and its collaborators.

    - Reads failing in the pool surface as PoolDataUnavailable
    - Writes failing in the pool surface as ExternalCallFailed
    - Errors raised by the vault itself (e.g. a re-entrant call bubbling back
      through a pool callback) propagate unchanged
    """

    def __init__(
        self,
        pool: PoolClient,
        tokens: TokenLedger,
        pool_key: PoolKey,
        vault_address: str,
        allowed_operations: Iterable[PoolOperation] = ALL_OPERATIONS,
        approved_spenders: Iterable[str] = (),
    ):
        self.pool = pool
        self.tokens = tokens
        self.pool_key = pool_key
        self.vault_address = vault_address
        self.allowed_operations = frozenset(allowed_operations)
        self.approved_spenders = frozenset(approved_spenders)
        self._dispatch: Dict[PoolOperation, Callable[..., Any]] = {
            PoolOperation.MINT: self._mint,
            PoolOperation.INCREASE: self._increase,
            PoolOperation.DECREASE: self._decrease,
            PoolOperation.COLLECT: self._collect,
            PoolOperation.BURN: self._burn,
            PoolOperation.APPROVE: self._approve,
        }
        logger.info(
            f"PoolGateway initialized: pool={pool_key.pool_id[:10]}... "
            f"allowed={sorted(op.value for op in self.allowed_operations)} "
            f"spenders={len(self.approved_spenders)}"
        )

    # ===== Reads =====
    def read_slot0(self) -> Slot0:
        try:
            return self.pool.get_slot0(self.pool_key.pool_id)
        except DefenseError:
            raise
        except Exception as e:
            raise PoolDataUnavailable("get_slot0", e) from e

    def read_position(self, position_id: str) -> Optional[PositionInfo]:
        try:
            return self.pool.get_position(position_id)
        except DefenseError:
            raise
        except Exception as e:
            raise PoolDataUnavailable("get_position", e) from e

    # ===== Transaction participation =====
    def snapshot(self) -> Any:
        """
        Pool-side state to revert to if the enclosing vault call fails.

        A live chain reverts the whole call by itself, so only collaborators
        that can snapshot themselves (the in-memory pool) return anything.
        """
        snapshot = getattr(self.pool, "snapshot", None)
        return snapshot() if callable(snapshot) else None

    def restore(self, snapshot: Any) -> None:
        if snapshot is not None:
            self.pool.restore(snapshot)
            logger.info("Reverted pool-side effects of the failed call")

    # ===== Writes =====
    def execute(self, call: PoolCall) -> Any:
        """Run one allowlisted command."""
        if call.operation not in self.allowed_operations:
            raise ExternalCallFailed(call.operation.value, PermissionError("operation not allowlisted"))
        handler = self._dispatch[call.operation]
        logger.debug(f"Pool call: {call.operation.value} {call.params}")
        try:
            return handler(**call.params)
        except DefenseError:
            raise
        except Exception as e:
            logger.warning(f"Pool call {call.operation.value} failed: {e}")
            raise ExternalCallFailed(call.operation.value, e) from e

    def mint(self, tick_lower: int, tick_upper: int, liquidity: int, amount0_max: int, amount1_max: int) -> MintResult:
        return self.execute(PoolCall(PoolOperation.MINT, {
            "tick_lower": tick_lower, "tick_upper": tick_upper, "liquidity": liquidity,
            "amount0_max": amount0_max, "amount1_max": amount1_max,
        }))

    def increase(self, position_id: str, liquidity: int, amount0_max: int, amount1_max: int) -> TokenDelta:
        return self.execute(PoolCall(PoolOperation.INCREASE, {
            "position_id": position_id, "liquidity": liquidity,
            "amount0_max": amount0_max, "amount1_max": amount1_max,
        }))

    def decrease(self, position_id: str, liquidity: int) -> TokenDelta:
        return self.execute(PoolCall(PoolOperation.DECREASE, {"position_id": position_id, "liquidity": liquidity}))

    def collect(self, position_id: str) -> TokenDelta:
        return self.execute(PoolCall(PoolOperation.COLLECT, {"position_id": position_id}))

    def pull(self, sender: str, amount0: int, amount1: int) -> None:
        """Move a token pair from `sender` into the vault."""
        self._transfer_pair(sender, self.vault_address, amount0, amount1)

    def push(self, recipient: str, amount0: int, amount1: int) -> None:
        """Move a token pair from the vault to `recipient`."""
        self._transfer_pair(self.vault_address, recipient, amount0, amount1)

    def _transfer_pair(self, sender: str, recipient: str, amount0: int, amount1: int) -> None:
        # Either both legs land or neither does
        moved = []
        try:
            for token, amount in ((self.pool_key.currency0, amount0), (self.pool_key.currency1, amount1)):
                if amount:
                    self.tokens.transfer(token, sender, recipient, amount)
                    moved.append((token, amount))
        except Exception as e:
            for token, amount in reversed(moved):
                self.tokens.transfer(token, recipient, sender, amount)
            logger.warning(f"Transfer {sender} -> {recipient} failed after {len(moved)} leg(s): {e}")
            if isinstance(e, DefenseError):
                raise
            raise ExternalCallFailed("transfer", e) from e

    def _mint(self, tick_lower, tick_upper, liquidity, amount0_max, amount1_max) -> MintResult:
        return self.pool.mint_position(self.vault_address, tick_lower, tick_upper, liquidity, amount0_max, amount1_max)

    def _increase(self, position_id, liquidity, amount0_max, amount1_max) -> TokenDelta:
        return self.pool.increase_liquidity(position_id, liquidity, amount0_max, amount1_max)

    def _decrease(self, position_id, liquidity, amount0_min=0, amount1_min=0) -> TokenDelta:
        return self.pool.decrease_liquidity(position_id, liquidity, amount0_min, amount1_min)

    def _collect(self, position_id) -> TokenDelta:
        return self.pool.collect(position_id)

    def _burn(self, position_id) -> None:
        self.pool.burn(position_id)

    def _approve(self, token, spender, amount) -> None:
        if token not in (self.pool_key.currency0, self.pool_key.currency1):
            raise PermissionError(f"token {token} is not part of the defended pair")
        if spender not in self.approved_spenders:
            raise PermissionError(f"spender {spender} is not allowlisted")
        self.tokens.approve(token, self.vault_address, spender, int(amount))


def pool_key_from_config(pool_cfg: Dict[str, Any]) -> PoolKey:
    """Build a PoolKey from the `pool` section of defense.yaml."""
    return PoolKey(
        currency0=str(pool_cfg["currency0"]),
        currency1=str(pool_cfg["currency1"]),
        fee=int(pool_cfg.get("fee", 0)),
        tick_spacing=int(pool_cfg["tick_spacing"]),
        hooks=str(pool_cfg.get("hooks", "")),
    )


def build_gateway(defense_cfg: Dict[str, Any], pool: PoolClient, tokens: TokenLedger) -> PoolGateway:
    """Wire a gateway from defense.yaml and live (or mock) collaborators."""
    vault_cfg = defense_cfg.get("vault", {})
    allowed = vault_cfg.get("allowed_operations")
    return PoolGateway(
        pool=pool,
        tokens=tokens,
        pool_key=pool_key_from_config(defense_cfg["pool"]),
        vault_address=str(vault_cfg.get("address", "0xvault")),
        allowed_operations=[PoolOperation(op) for op in allowed] if allowed else ALL_OPERATIONS,
        approved_spenders=vault_cfg.get("approved_spenders", []),
    )
