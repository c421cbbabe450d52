"""
PegSentinel Core: Regime Detection

Maps (current tick, active regime, thresholds) to the target regime.

The output depends on the active regime as well as the tick, which is what
produces hysteresis: a tick sitting between `escalate` and `deescalate`
never changes the regime. Transitions are rows of an explicit table, so a
further tier is a new enum member plus new rows, not new branches.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Literal, Optional, Tuple
import logging

from core.ranges import Thresholds

logger = logging.getLogger(__name__)


class Regime(Enum):
    NORMAL = 0
    DEFEND = 1

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_value(cls, value) -> "Regime":
        """Accept an enum member, its integer value or its (case-insensitive) name."""
        if isinstance(value, Regime):
            return value
        if isinstance(value, int):
            return cls(value)
        normalized = str(value).strip().upper()
        try:
            return cls[normalized]
        except KeyError:
            raise ValueError(f"Unknown regime: {value!r}") from None


@dataclass(frozen=True)
class RegimeTransition:
    """One row of the regime transition table"""
    source: Regime
    target: Regime
    threshold: Literal["escalate", "deescalate"]
    comparison: Literal["at_or_below", "at_or_above"]
    action: Literal["deploy_buffer", "remove_buffer"]

    def triggered(self, tick: int, thresholds: Thresholds) -> bool:
        level = getattr(thresholds, self.threshold)
        if self.comparison == "at_or_below":
            return tick <= level
        return tick >= level


TRANSITIONS: Dict[Regime, Tuple[RegimeTransition, ...]] = {
    Regime.NORMAL: (
        RegimeTransition(Regime.NORMAL, Regime.DEFEND, "escalate", "at_or_below", "deploy_buffer"),
    ),
    Regime.DEFEND: (
        RegimeTransition(Regime.DEFEND, Regime.NORMAL, "deescalate", "at_or_above", "remove_buffer"),
    ),
}


def find_transition(current_tick: int, active_regime: Regime, thresholds: Thresholds) -> Optional[RegimeTransition]:
    """First table row for `active_regime` whose trigger fires, or None."""
    for transition in TRANSITIONS.get(active_regime, ()):
        if transition.triggered(current_tick, thresholds):
            return transition
    return None


def determine_regime(current_tick: int, active_regime: Regime, thresholds: Thresholds) -> Regime:
    """Pure, side-effect free regime decision."""
    transition = find_transition(current_tick, active_regime, thresholds)
    return transition.target if transition else active_regime


def transition_between(source: Regime, target: Regime) -> RegimeTransition:
    """Table row moving `source` to `target` (used by operator overrides)."""
    for transition in TRANSITIONS.get(source, ()):
        if transition.target == target:
            return transition
    raise KeyError(f"No transition from {source} to {target}")


@dataclass
class RegimeSignal:
    """Regime decision with context for logging"""
    active: Regime
    target: Regime
    tick: int
    timestamp: datetime
    reason: str

    @property
    def changed(self) -> bool:
        return self.active != self.target


class RegimeDetector:
    """
    Thin stateless wrapper around determine_regime() that explains itself.

    Rules:
    - Normal -> Defend when tick <= escalate
    - Defend -> Normal when tick >= deescalate
    - Anything else keeps the active regime
    """

    def detect(self, current_tick: int, active_regime: Regime, thresholds: Thresholds) -> RegimeSignal:
        transition = find_transition(current_tick, active_regime, thresholds)
        if transition:
            level = getattr(thresholds, transition.threshold)
            reason = (
                f"tick {current_tick} {transition.comparison.replace('_', ' ')} "
                f"{transition.threshold} {level}: {transition.action}"
            )
            target = transition.target
        elif thresholds.in_band(current_tick):
            reason = f"tick {current_tick} inside hysteresis band ({thresholds.escalate}, {thresholds.deescalate})"
            target = active_regime
        else:
            reason = f"tick {current_tick} consistent with {active_regime}"
            target = active_regime

        logger.debug(f"Regime: {active_regime} -> {target} | {reason}")

        return RegimeSignal(
            active=active_regime,
            target=target,
            tick=current_tick,
            timestamp=datetime.now(timezone.utc),
            reason=reason,
        )
