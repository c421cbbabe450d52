"""
PegSentinel Backtest: Scenario Replay

Drives a tick sequence through a vault backed by the MockPool and records,
per step, the regime, the buffer, the treasury and the quoted fees.

Usage:
    python -m backtest.replay --ticks data/depeg.csv --config-dir config
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
import argparse
import csv
import json
import logging

from backtest.mock_pool import MockPool, build_paper_vault
from core.events import EventLog
from core.exceptions import DefenseError
from core.regime import Regime
from core.vault import PegDefenseVault
from tools.config_validator import load_yaml_file, validate_all_configs

logger = logging.getLogger(__name__)


class SimClock:
    """Manually advanced clock for cooldown-aware replays"""

    def __init__(self, start: float = 0.0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


@dataclass
class ReplayStep:
    index: int
    tick: int
    regime_before: str
    regime_after: str
    action: Optional[str] = None
    error: Optional[str] = None
    buffer_liquidity: int = 0
    treasury: Dict[str, int] = field(default_factory=dict)
    fee_away: int = 0
    fee_toward: int = 0


@dataclass
class ReplayResult:
    steps: List[ReplayStep]

    @property
    def regimes(self) -> List[str]:
        return [step.regime_after for step in self.steps]

    @property
    def transitions(self) -> int:
        return sum(1 for step in self.steps if step.regime_before != step.regime_after)

    def summary(self) -> Dict[str, Any]:
        errors: Dict[str, int] = {}
        for step in self.steps:
            if step.error:
                errors[step.error] = errors.get(step.error, 0) + 1
        last = self.steps[-1] if self.steps else None
        return {
            "steps": len(self.steps),
            "transitions": self.transitions,
            "defend_steps": sum(1 for step in self.steps if step.regime_after == str(Regime.DEFEND)),
            "max_fee_away": max((step.fee_away for step in self.steps), default=0),
            "min_fee_toward": min((step.fee_toward for step in self.steps), default=0),
            "errors": errors,
            "final_regime": last.regime_after if last else None,
            "final_treasury": last.treasury if last else {},
        }


class ScenarioReplay:
    """
    Replays ticks against a vault.

    Each step moves the pool to the tick, advances the clock and lets the
    caller (normally a keeper) attempt auto_rebalance() when it is needed.
    Expected refusals (cooldown, insufficient capital...) are recorded, not raised.
    """

    def __init__(
        self,
        vault: PegDefenseVault,
        pool: MockPool,
        caller: str,
        clock: Optional[SimClock] = None,
        step_seconds: float = 0.0,
    ):
        self.vault = vault
        self.pool = pool
        self.caller = caller
        self.clock = clock
        self.step_seconds = step_seconds
        self._index = 0

    def step(self, tick: int) -> ReplayStep:
        if self.clock is not None and self._index:
            self.clock.advance(self.step_seconds)
        self.pool.set_tick(tick)
        before = self.vault.active_regime
        result = ReplayStep(index=self._index, tick=tick, regime_before=str(before), regime_after=str(before))

        check = self.vault.needs_rebalance()
        if check.needed:
            try:
                outcome = self.vault.auto_rebalance(self.caller)
                result.action = outcome.action
            except DefenseError as e:
                result.error = type(e).__name__
                logger.info(f"Step {self._index} tick={tick}: rebalance refused: {e}")

        buffer = self.vault.positions.buffer
        result.regime_after = str(self.vault.active_regime)
        result.buffer_liquidity = buffer.liquidity if buffer else 0
        result.treasury = self.vault.treasury.state.to_dict()
        result.fee_away = self.vault.preview_fee(tick, toward_peg=False)
        result.fee_toward = self.vault.preview_fee(tick, toward_peg=True)
        self._index += 1
        return result

    def run(self, ticks: Iterable[int]) -> ReplayResult:
        steps = [self.step(int(tick)) for tick in ticks]
        result = ReplayResult(steps)
        logger.info(f"Replay complete: {result.summary()}")
        return result


def load_ticks(path: Path) -> List[int]:
    """
    Read a tick series: either one integer per line or a CSV with a `tick` column.
    """
    text = Path(path).read_text().strip()
    if not text:
        return []
    first = text.splitlines()[0]
    if "tick" in first.lower():
        return [int(row["tick"]) for row in csv.DictReader(text.splitlines())]
    return [int(line.split(",")[0]) for line in text.splitlines() if line.strip()]


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a tick series against a paper vault")
    parser.add_argument("--ticks", required=True, help="Tick series (one per line or CSV with a tick column)")
    parser.add_argument("--config-dir", default="config", help="Directory containing defense.yaml")
    parser.add_argument("--step-seconds", type=float, default=60.0, help="Simulated seconds between ticks")
    parser.add_argument("--caller", help="Address submitting rebalances (default: first keeper)")
    parser.add_argument("--output", help="Write per-step results as JSON to this path")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    errors = validate_all_configs(args.config_dir)
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        return 1

    defense_cfg = load_yaml_file(Path(args.config_dir) / "defense.yaml")
    clock = SimClock()
    vault, pool, _ = build_paper_vault(defense_cfg, events=EventLog(), clock=clock)
    keepers = sorted(vault.access.keepers)
    caller = args.caller or (keepers[0] if keepers else vault.access.owner)

    replay = ScenarioReplay(vault, pool, caller, clock=clock, step_seconds=args.step_seconds)
    result = replay.run(load_ticks(Path(args.ticks)))

    print(json.dumps(result.summary(), indent=2))
    if args.output:
        Path(args.output).write_text(json.dumps([asdict(step) for step in result.steps], indent=2))
        logger.info(f"Wrote {len(result.steps)} steps to {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
