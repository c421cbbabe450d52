"""
PegSentinel Core: Treasury Ledger

Undeployed capital held by the vault plus lifetime fee totals. Grows from fee
collection and buffer removal, shrinks when the buffer is deployed.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
import logging

from core.exceptions import InsufficientFunds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TreasuryState:
    balance0: int = 0
    balance1: int = 0
    total_fees_collected0: int = 0
    total_fees_collected1: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TreasuryState":
        return cls(**{key: int(data.get(key, 0)) for key in cls.__dataclass_fields__})


def _require_non_negative(amount0: int, amount1: int) -> None:
    if amount0 < 0 or amount1 < 0:
        raise ValueError(f"amounts must be non-negative, got ({amount0}, {amount1})")


class TreasuryLedger:
    """Balance bookkeeping; never goes negative, fee counters never decrease."""

    def __init__(self, state: Optional[TreasuryState] = None):
        self._state = state or TreasuryState()

    @property
    def state(self) -> TreasuryState:
        return self._state

    @property
    def balance0(self) -> int:
        return self._state.balance0

    @property
    def balance1(self) -> int:
        return self._state.balance1

    def credit(self, amount0: int, amount1: int) -> TreasuryState:
        _require_non_negative(amount0, amount1)
        s = self._state
        self._state = TreasuryState(
            balance0=s.balance0 + amount0,
            balance1=s.balance1 + amount1,
            total_fees_collected0=s.total_fees_collected0,
            total_fees_collected1=s.total_fees_collected1,
        )
        logger.debug(f"Treasury credit ({amount0}, {amount1}) -> ({self.balance0}, {self.balance1})")
        return self._state

    def debit(self, amount0: int, amount1: int) -> TreasuryState:
        """Remove both amounts or nothing."""
        _require_non_negative(amount0, amount1)
        s = self._state
        if amount0 > s.balance0 or amount1 > s.balance1:
            raise InsufficientFunds(amount0, amount1, s.balance0, s.balance1)
        self._state = TreasuryState(
            balance0=s.balance0 - amount0,
            balance1=s.balance1 - amount1,
            total_fees_collected0=s.total_fees_collected0,
            total_fees_collected1=s.total_fees_collected1,
        )
        logger.debug(f"Treasury debit ({amount0}, {amount1}) -> ({self.balance0}, {self.balance1})")
        return self._state

    def can_cover(self, amount0: int, amount1: int) -> bool:
        return amount0 <= self._state.balance0 and amount1 <= self._state.balance1

    def record_fees_collected(self, amount0: int, amount1: int) -> TreasuryState:
        """Bump lifetime fee counters (balances are credited separately)."""
        _require_non_negative(amount0, amount1)
        s = self._state
        self._state = TreasuryState(
            balance0=s.balance0,
            balance1=s.balance1,
            total_fees_collected0=s.total_fees_collected0 + amount0,
            total_fees_collected1=s.total_fees_collected1 + amount1,
        )
        return self._state

    def snapshot(self) -> TreasuryState:
        return self._state

    def restore(self, state: TreasuryState) -> None:
        self._state = state
