"""
PegSentinel Core: Fee Policy

Directional dynamic fee: trades that push the price back toward the peg get a
discount, trades that push it further away pay a surcharge roughly eight
times steeper. Single source of truth for the fee charged on every swap and
for off-path previews.

Units: fees are hundredths of a percent (denominator 10,000), so 30 = 0.30%.
Rounding: the slope adjustment is truncated before it is applied, so neither
the surcharge nor the discount ever exceeds its exact rational value.
"""

from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional
import logging

from core.exceptions import ConfigurationError
from core.regime import Regime

logger = logging.getLogger(__name__)

FEE_DENOMINATOR = 10_000
PIPS_PER_FEE_UNIT = 100  # pool fee units are millionths
SLOPE_SCALE = 1_000


@dataclass(frozen=True)
class FeeCurve:
    """Piecewise-linear fee curve configuration"""
    base_fee: int = 30  # 0.30%
    min_fee: int = 5  # 0.05%
    max_fee: int = 1000  # 10%
    dead_zone_ticks: int = 5
    toward_slope_milli: int = 625  # fee units per 1000 ticks of excess deviation
    away_slope_milli: int = 5000

    def validate(self) -> None:
        if not (0 <= self.min_fee <= self.base_fee <= self.max_fee <= FEE_DENOMINATOR):
            raise ConfigurationError(
                f"fee curve: require 0 <= min_fee ({self.min_fee}) <= base_fee ({self.base_fee}) "
                f"<= max_fee ({self.max_fee}) <= {FEE_DENOMINATOR}"
            )
        if self.dead_zone_ticks < 0:
            raise ConfigurationError(f"fee curve: dead_zone_ticks must be >= 0, got {self.dead_zone_ticks}")
        if self.toward_slope_milli < 0 or self.away_slope_milli < 0:
            raise ConfigurationError("fee curve: slopes must be >= 0")
        if self.away_slope_milli < self.toward_slope_milli:
            raise ConfigurationError(
                f"fee curve: away slope ({self.away_slope_milli}) must be >= "
                f"toward slope ({self.toward_slope_milli})"
            )

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeeCurve":
        return cls(**{key: int(value) for key, value in data.items()})


@dataclass(frozen=True)
class FeeQuote:
    """Fee decision with the inputs that produced it"""
    fee: int
    toward_peg: bool
    deviation: int
    raw_fee: int  # before clamping to [min_fee, max_fee]
    regime: Regime = Regime.NORMAL

    @property
    def fee_pct(self) -> float:
        return self.fee * 100.0 / FEE_DENOMINATOR

    @property
    def fee_pips(self) -> int:
        return self.fee * PIPS_PER_FEE_UNIT


def is_toward_peg(current_tick: int, zero_for_one: bool, peg_tick: int = 0) -> bool:
    """
    Whether a swap moves the price back toward the peg.

    A zero_for_one swap sells token0 and lowers the tick; the opposite side
    raises it. At the peg itself every trade moves away.
    """
    if current_tick > peg_tick:
        return zero_for_one
    if current_tick < peg_tick:
        return not zero_for_one
    return False


class FeePolicy:
    """
    Pure fee function with one curve per regime.

    A regime without its own curve falls back to the Normal curve.
    """

    def __init__(self, curves: Optional[Dict[Regime, FeeCurve]] = None, peg_tick: int = 0):
        curves = dict(curves or {})
        curves.setdefault(Regime.NORMAL, FeeCurve())
        for curve in curves.values():
            curve.validate()
        self._curves = curves
        self.peg_tick = peg_tick
        normal = curves[Regime.NORMAL]
        logger.info(
            f"FeePolicy initialized: base={normal.base_fee} min={normal.min_fee} max={normal.max_fee} "
            f"dead_zone={normal.dead_zone_ticks} slopes(toward/away)="
            f"{normal.toward_slope_milli}/{normal.away_slope_milli} regimes={sorted(str(r) for r in curves)}"
        )

    def curve_for(self, regime: Regime = Regime.NORMAL) -> FeeCurve:
        return self._curves.get(regime, self._curves[Regime.NORMAL])

    def set_curve(self, regime: Regime, curve: FeeCurve) -> None:
        curve.validate()
        self._curves[regime] = curve
        logger.info(f"Fee curve for {regime} updated: {curve.to_dict()}")

    def curves(self) -> Dict[Regime, FeeCurve]:
        return dict(self._curves)

    def deviation(self, current_tick: int) -> int:
        return abs(current_tick - self.peg_tick)

    def _raw_fee(self, curve: FeeCurve, deviation: int, toward_peg: bool) -> int:
        if deviation <= curve.dead_zone_ticks:
            return curve.base_fee
        excess = deviation - curve.dead_zone_ticks
        if toward_peg:
            return curve.base_fee - excess * curve.toward_slope_milli // SLOPE_SCALE
        return curve.base_fee + excess * curve.away_slope_milli // SLOPE_SCALE

    def preview_fee(self, current_tick: int, toward_peg: bool, regime: Regime = Regime.NORMAL) -> int:
        """Fee rate (hundredths of a percent) for a trade at current_tick."""
        return self.quote_direction(current_tick, toward_peg, regime).fee

    def quote_direction(self, current_tick: int, toward_peg: bool, regime: Regime = Regime.NORMAL) -> FeeQuote:
        curve = self.curve_for(regime)
        deviation = self.deviation(current_tick)
        raw = self._raw_fee(curve, deviation, toward_peg)
        fee = max(curve.min_fee, min(curve.max_fee, raw))
        return FeeQuote(fee=fee, toward_peg=toward_peg, deviation=deviation, raw_fee=raw, regime=regime)

    def quote(self, current_tick: int, zero_for_one: bool, regime: Regime = Regime.NORMAL) -> FeeQuote:
        """Fee quote for a swap side, deriving the direction from the tick."""
        toward = is_toward_peg(current_tick, zero_for_one, self.peg_tick)
        return self.quote_direction(current_tick, toward, regime)


class FeeHook:
    """
    Per-swap entry point of the policy layer.

    Reads the live tick and the active regime at call time, so the fee always
    follows whatever the execution layer last committed.
    """

    def __init__(
        self,
        policy: FeePolicy,
        tick_source: Callable[[], int],
        regime_source: Callable[[], Regime],
    ):
        self.policy = policy
        self._tick_source = tick_source
        self._regime_source = regime_source

    def before_swap(self, zero_for_one: bool) -> FeeQuote:
        tick = self._tick_source()
        regime = self._regime_source()
        quote = self.policy.quote(tick, zero_for_one, regime)
        logger.debug(
            f"Swap fee: tick={tick} zero_for_one={zero_for_one} toward={quote.toward_peg} "
            f"dev={quote.deviation} fee={quote.fee} ({quote.fee_pct:.2f}%) regime={regime}"
        )
        return quote
