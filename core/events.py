"""
PegSentinel Core: Event Records

Notifications emitted on every regime change, buffer deploy/remove, fee
collection, treasury movement and configuration change. Each record carries
the triggering tick and before/after amounts, so observers can rebuild
history without replaying ledger state.
"""

from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional
import logging
import time

logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class EventRecord:
    """Mixin giving every event a name and a JSON-friendly dict form"""

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, **_plain(asdict(self))}


@dataclass(frozen=True)
class RegimeChanged(EventRecord):
    from_regime: Any
    to_regime: Any
    tick: int
    caller: str
    forced: bool = False
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class BufferDeployed(EventRecord):
    position_id: str
    tick_lower: int
    tick_upper: int
    liquidity: int
    amount0: int
    amount1: int
    treasury_before: Dict[str, int]
    treasury_after: Dict[str, int]
    tick: int
    reused: bool = False
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class BufferRemoved(EventRecord):
    position_id: str
    liquidity: int
    ledger_liquidity: int
    amount0: int
    amount1: int
    treasury_before: Dict[str, int]
    treasury_after: Dict[str, int]
    tick: int
    fees0: int = 0  # fees the buffer earned while deployed, included in treasury_after
    fees1: int = 0
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class FeesCollected(EventRecord):
    position_id: str
    amount0: int
    amount1: int
    treasury_before: Dict[str, int]
    treasury_after: Dict[str, int]
    tick: int
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TreasuryFunded(EventRecord):
    caller: str
    amount0: int
    amount1: int
    treasury_before: Dict[str, int]
    treasury_after: Dict[str, int]
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TreasuryWithdrawn(EventRecord):
    caller: str
    recipient: str
    amount0: int
    amount1: int
    treasury_before: Dict[str, int]
    treasury_after: Dict[str, int]
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ConfigUpdated(EventRecord):
    key: str
    before: Any
    after: Any
    caller: str
    at: float = field(default_factory=time.time)


class EventLog:
    """Bounded in-memory history with synchronous subscribers."""

    MAX_HISTORY = 500

    def __init__(self, max_history: Optional[int] = None):
        self._history: Deque[EventRecord] = deque(maxlen=max_history or self.MAX_HISTORY)
        self._subscribers: List[Callable[[EventRecord], None]] = []

    def subscribe(self, callback: Callable[[EventRecord], None]) -> None:
        self._subscribers.append(callback)

    def publish(self, event: EventRecord) -> None:
        self._history.append(event)
        logger.info(f"EVENT {event.name}: {event.to_dict()}")
        for callback in self._subscribers:
            try:
                callback(event)
            except Exception as e:
                # Observers must never undo a committed state change
                logger.error(f"Event subscriber failed for {event.name}: {e}")

    def history(self, name: Optional[str] = None) -> List[EventRecord]:
        if name is None:
            return list(self._history)
        return [event for event in self._history if event.name == name]

    def last(self, name: Optional[str] = None) -> Optional[EventRecord]:
        events = self.history(name)
        return events[-1] if events else None
