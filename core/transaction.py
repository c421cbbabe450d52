"""
PegSentinel Core: Transactions

All-or-nothing execution for mutating vault calls:

- ReentrancyGuard: a busy flag acquired on entry and always released on exit;
  a nested entry fails fast with ReentrantCall
- StateTransaction: snapshots every participant, restores them all if the
  body raises, and publishes buffered events only on commit
"""

from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Protocol, Tuple
import logging

from core.events import EventLog, EventRecord
from core.exceptions import ReentrantCall

logger = logging.getLogger(__name__)


class Snapshottable(Protocol):
    def snapshot(self) -> Any: ...

    def restore(self, snapshot: Any) -> None: ...


class ReentrancyGuard:
    """Scoped busy flag around each mutating entry point."""

    def __init__(self):
        self._in_flight: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    @contextmanager
    def hold(self, action: str) -> Iterator[None]:
        if self._in_flight is not None:
            logger.warning(f"Rejected re-entrant {action} during {self._in_flight}")
            raise ReentrantCall(action, self._in_flight)
        self._in_flight = action
        try:
            yield
        finally:
            self._in_flight = None


class StateTransaction:
    """
    Unit of work over a fixed set of snapshottable participants.

    Usage:
        with StateTransaction([ledger, treasury], events) as tx:
            ...mutate...
            tx.emit(SomeEvent(...))
    """

    def __init__(self, participants: List[Snapshottable], events: Optional[EventLog] = None, label: str = ""):
        self._participants = participants
        self._events = events
        self._label = label
        self._snapshots: List[Tuple[Snapshottable, Any]] = []
        self._pending: List[EventRecord] = []

    def emit(self, event: EventRecord) -> None:
        self._pending.append(event)

    def __enter__(self) -> "StateTransaction":
        self._snapshots = [(participant, participant.snapshot()) for participant in self._participants]
        self._pending = []
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            for participant, snapshot in reversed(self._snapshots):
                participant.restore(snapshot)
            logger.info(
                f"Rolled back {self._label or 'transaction'}: {exc_type.__name__}: {exc_val} "
                f"({len(self._pending)} event(s) discarded)"
            )
            self._pending = []
            return False

        if self._events is not None:
            for event in self._pending:
                self._events.publish(event)
        self._pending = []
        return False
