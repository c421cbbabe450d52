"""
PegSentinel Core: Range Ledger

Tick ranges for the core (at-peg) and buffer (defensive) positions plus the
escalate/de-escalate thresholds. Pure configuration: every write is
validated, so an invalid combination never reaches runtime state.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Tuple
import logging

from core.exceptions import ConfigurationError
from core.liquidity_math import MAX_TICK, MIN_TICK

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RangeConfig:
    """A [tick_lower, tick_upper) price range"""
    tick_lower: int
    tick_upper: int

    def validate(self, tick_spacing: int, label: str = "range") -> None:
        if self.tick_lower >= self.tick_upper:
            raise ConfigurationError(
                f"{label}: tick_lower ({self.tick_lower}) must be < tick_upper ({self.tick_upper})"
            )
        if self.tick_lower < MIN_TICK or self.tick_upper > MAX_TICK:
            raise ConfigurationError(f"{label}: ticks must lie within [{MIN_TICK}, {MAX_TICK}]")
        if self.tick_lower % tick_spacing or self.tick_upper % tick_spacing:
            raise ConfigurationError(
                f"{label}: ticks ({self.tick_lower}, {self.tick_upper}) "
                f"must be multiples of tick spacing {tick_spacing}"
            )

    def contains(self, tick: int) -> bool:
        return self.tick_lower <= tick < self.tick_upper

    def overlaps(self, other: "RangeConfig") -> bool:
        return self.tick_lower < other.tick_upper and other.tick_lower < self.tick_upper

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RangeConfig":
        return cls(tick_lower=int(data["tick_lower"]), tick_upper=int(data["tick_upper"]))


@dataclass(frozen=True)
class Thresholds:
    """Hysteresis pair: enter Defend at or below `escalate`, leave at or above `deescalate`"""
    escalate: int
    deescalate: int

    def validate(self) -> None:
        if self.deescalate <= self.escalate:
            raise ConfigurationError(
                f"thresholds: deescalate ({self.deescalate}) must be > escalate ({self.escalate})"
            )

    def in_band(self, tick: int) -> bool:
        """True while the tick sits strictly inside the hysteresis gap."""
        return self.escalate < tick < self.deescalate

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Thresholds":
        return cls(escalate=int(data["escalate"]), deescalate=int(data["deescalate"]))


class RangeLedger:
    """
    Validated holder of the core range, buffer range and thresholds.

    The two ranges must not overlap: the buffer sits next to the core range
    on the side the peg is expected to fail toward.
    """

    def __init__(self, tick_spacing: int, core: RangeConfig, buffer: RangeConfig, thresholds: Thresholds):
        if tick_spacing <= 0:
            raise ConfigurationError(f"tick_spacing must be positive, got {tick_spacing}")
        self.tick_spacing = tick_spacing
        self._validate_ranges(core, buffer)
        thresholds.validate()
        self._core = core
        self._buffer = buffer
        self._thresholds = thresholds

    @property
    def core(self) -> RangeConfig:
        return self._core

    @property
    def buffer(self) -> RangeConfig:
        return self._buffer

    @property
    def thresholds(self) -> Thresholds:
        return self._thresholds

    def _validate_ranges(self, core: RangeConfig, buffer: RangeConfig) -> None:
        core.validate(self.tick_spacing, "core")
        buffer.validate(self.tick_spacing, "buffer")
        if core.overlaps(buffer):
            raise ConfigurationError(
                f"buffer range [{buffer.tick_lower}, {buffer.tick_upper}] overlaps "
                f"core range [{core.tick_lower}, {core.tick_upper}]"
            )

    def set_ranges(self, core: RangeConfig, buffer: RangeConfig) -> None:
        self._validate_ranges(core, buffer)
        self._core = core
        self._buffer = buffer
        logger.info(
            f"Ranges updated: core=[{core.tick_lower}, {core.tick_upper}] "
            f"buffer=[{buffer.tick_lower}, {buffer.tick_upper}]"
        )

    def set_thresholds(self, thresholds: Thresholds) -> None:
        thresholds.validate()
        self._thresholds = thresholds
        logger.info(f"Thresholds updated: escalate={thresholds.escalate} deescalate={thresholds.deescalate}")

    def snapshot(self) -> Tuple[RangeConfig, RangeConfig, Thresholds]:
        return self._core, self._buffer, self._thresholds

    def restore(self, snapshot: Tuple[RangeConfig, RangeConfig, Thresholds]) -> None:
        self._core, self._buffer, self._thresholds = snapshot

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick_spacing": self.tick_spacing,
            "core": self._core.to_dict(),
            "buffer": self._buffer.to_dict(),
            "thresholds": self._thresholds.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RangeLedger":
        return cls(
            tick_spacing=int(data["tick_spacing"]),
            core=RangeConfig.from_dict(data["core"]),
            buffer=RangeConfig.from_dict(data["buffer"]),
            thresholds=Thresholds.from_dict(data["thresholds"]),
        )
