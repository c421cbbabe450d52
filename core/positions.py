"""
PegSentinel Core: Position Ledger

Typed record store for the two logical pool positions owned by the vault:

- core: permanent at-peg position, minted once, active for the vault's lifetime
- buffer: defensive position, minted on each Defend transition and cleared on
  each Normal transition

No business logic lives here beyond the two invariants above.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionMeta:
    """Metadata for one pool position"""
    position_id: str  # opaque handle minted by the pool
    tick_lower: int
    tick_upper: int
    liquidity: int
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionMeta":
        return cls(
            position_id=str(data["position_id"]),
            tick_lower=int(data["tick_lower"]),
            tick_upper=int(data["tick_upper"]),
            liquidity=int(data["liquidity"]),
            active=bool(data.get("active", True)),
        )


@dataclass(frozen=True)
class LedgerSnapshot:
    core: Optional[PositionMeta]
    buffer: Optional[PositionMeta]
    last_buffer_id: Optional[str]


class PositionLedger:
    """
    Holds the core and buffer PositionMeta records.

    Invariants:
    - core.active is always True once the core position is recorded
    - a recorded buffer is always active; an inactive buffer is cleared
    """

    def __init__(self):
        self._core: Optional[PositionMeta] = None
        self._buffer: Optional[PositionMeta] = None
        # Handle of the most recently cleared buffer, kept only for optional reuse
        self._last_buffer_id: Optional[str] = None

    @property
    def core(self) -> Optional[PositionMeta]:
        return self._core

    @property
    def buffer(self) -> Optional[PositionMeta]:
        return self._buffer

    @property
    def last_buffer_id(self) -> Optional[str]:
        return self._last_buffer_id

    @property
    def buffer_active(self) -> bool:
        return self._buffer is not None and self._buffer.active

    def set_core(self, meta: PositionMeta) -> None:
        if not meta.active:
            raise ValueError("core position must be active")
        if self._core is not None and (
            self._core.tick_lower != meta.tick_lower or self._core.tick_upper != meta.tick_upper
        ):
            raise ValueError("core position range cannot change once recorded")
        self._core = meta
        logger.debug(f"Core position recorded: {meta.position_id} L={meta.liquidity}")

    def set_buffer(self, meta: PositionMeta) -> None:
        if not meta.active:
            raise ValueError("buffer position must be active when recorded; use clear_buffer()")
        self._buffer = meta
        logger.debug(
            f"Buffer position recorded: {meta.position_id} "
            f"[{meta.tick_lower}, {meta.tick_upper}] L={meta.liquidity}"
        )

    def clear_buffer(self) -> Optional[PositionMeta]:
        """Drop the buffer record and return what it was."""
        cleared = self._buffer
        if cleared is not None:
            self._last_buffer_id = cleared.position_id
            logger.debug(f"Buffer position cleared: {cleared.position_id}")
        self._buffer = None
        return cleared

    def get_active_positions(self) -> List[PositionMeta]:
        return [meta for meta in (self._core, self._buffer) if meta is not None and meta.active]

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(core=self._core, buffer=self._buffer, last_buffer_id=self._last_buffer_id)

    def restore(self, snapshot: LedgerSnapshot) -> None:
        self._core = snapshot.core
        self._buffer = snapshot.buffer
        self._last_buffer_id = snapshot.last_buffer_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "core": self._core.to_dict() if self._core else None,
            "buffer": self._buffer.to_dict() if self._buffer else None,
            "last_buffer_id": self._last_buffer_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionLedger":
        ledger = cls()
        if data.get("core"):
            ledger.set_core(PositionMeta.from_dict(data["core"]))
        if data.get("buffer"):
            ledger.set_buffer(PositionMeta.from_dict(data["buffer"]))
        ledger._last_buffer_id = data.get("last_buffer_id")
        return ledger
