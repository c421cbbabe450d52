"""
Configuration Validation Module

Validates app.yaml and defense.yaml against Pydantic schemas.
Ensures config files are correct before the keeper (or a replay) starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationInfo, field_validator, ValidationError

from core.exceptions import ConfigurationError
from core.fee_policy import FEE_DENOMINATOR, FeeCurve
from core.liquidity_math import MAX_TICK, MIN_TICK
from core.pool import PoolOperation
from core.ranges import RangeConfig
from core.regime import Regime

logger = logging.getLogger(__name__)

POOL_OPERATIONS = {op.value for op in PoolOperation}


# ===== App Schema =====
class AppConfig(BaseModel):
    """Process-level settings"""
    mode: str = Field(pattern="^(PAPER|LIVE)$", description="PAPER runs against the in-memory pool")
    dry_run: bool = Field(default=True, description="Log decisions but never submit rebalances")
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_file: Optional[str] = Field(default="logs/keeper.log", description="Log file path (None = console only)")


class KeeperConfig(BaseModel):
    """Keeper polling loop"""
    address: str = Field(min_length=1, description="Address the keeper submits from")
    poll_seconds: float = Field(gt=0, description="Seconds between polls")
    jitter_pct: float = Field(default=0.0, ge=0, le=50, description="Random +/- jitter on the poll interval")
    target_price: float = Field(default=1.0, gt=0, description="Peg price used for deviation logging")
    max_fee_gwei: Optional[float] = Field(default=None, gt=0, description="Skip submission above this gas price")
    auto_collect_fees: bool = Field(default=False, description="Sweep core fees after each successful poll")
    persist_state: bool = Field(default=True, description="Save vault state after each mutation")


class MonitoringConfig(BaseModel):
    """Metrics, health endpoint and alerting"""
    metrics_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9100, ge=1, le=65535)
    healthcheck_enabled: bool = Field(default=False)
    healthcheck_port: int = Field(default=8080, ge=1, le=65535)
    alerts_enabled: bool = Field(default=False)
    alert_webhook_url: Optional[str] = Field(default=None)
    alert_min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    alert_dedupe_seconds: float = Field(default=60.0, ge=0)


class StateConfig(BaseModel):
    """Persistence"""
    backend: str = Field(default="json", pattern="^(json|sqlite)$")
    path: str = Field(default="data/vault_state.json", min_length=1)
    audit_log: Optional[str] = Field(default="logs/audit.jsonl")
    lock_file: str = Field(default="data/keeper.pid", min_length=1)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppConfig
    keeper: KeeperConfig
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    state: StateConfig = Field(default_factory=StateConfig)


# ===== Defense Schema =====
class PoolConfig(BaseModel):
    """Defended pool key"""
    currency0: str = Field(min_length=1)
    currency1: str = Field(min_length=1)
    fee: int = Field(default=0, ge=0, le=1_000_000, description="Static LP fee in millionths")
    tick_spacing: int = Field(gt=0, le=16384)
    hooks: str = Field(default="")

    @field_validator('currency1')
    @classmethod
    def validate_distinct(cls, v: str, info: ValidationInfo) -> str:
        if v == info.data.get('currency0'):
            raise ValueError("currency0 and currency1 must differ")
        return v


class RangeSchema(BaseModel):
    tick_lower: int = Field(ge=MIN_TICK, le=MAX_TICK)
    tick_upper: int = Field(ge=MIN_TICK, le=MAX_TICK)

    @field_validator('tick_upper')
    @classmethod
    def validate_order(cls, v: int, info: ValidationInfo) -> int:
        lower = info.data.get('tick_lower')
        if lower is not None and v <= lower:
            raise ValueError(f"tick_upper ({v}) must be > tick_lower ({lower})")
        return v


class RangesConfig(BaseModel):
    core: RangeSchema
    buffer: RangeSchema


class ThresholdsConfig(BaseModel):
    escalate: int = Field(description="Enter Defend at or below this tick")
    deescalate: int = Field(description="Return to Normal at or above this tick")

    @field_validator('deescalate')
    @classmethod
    def validate_hysteresis(cls, v: int, info: ValidationInfo) -> int:
        escalate = info.data.get('escalate')
        if escalate is not None and v <= escalate:
            raise ValueError(f"deescalate ({v}) must be > escalate ({escalate})")
        return v


class FeeCurveConfig(BaseModel):
    """Directional fee curve (fee units: hundredths of a percent)"""
    base_fee: int = Field(ge=0, le=FEE_DENOMINATOR)
    min_fee: int = Field(ge=0, le=FEE_DENOMINATOR)
    max_fee: int = Field(ge=0, le=FEE_DENOMINATOR)
    dead_zone_ticks: int = Field(default=5, ge=0)
    toward_slope_milli: int = Field(default=625, ge=0)
    away_slope_milli: int = Field(default=5000, ge=0)


class RolesConfig(BaseModel):
    owner: str = Field(min_length=1)
    keepers: List[str] = Field(default_factory=list)


class VaultConfig(BaseModel):
    address: str = Field(default="0xvault", min_length=1)
    reuse_buffer_position: bool = Field(default=False, description="Top up the last buffer handle instead of minting")
    allowed_operations: List[str] = Field(default_factory=lambda: sorted(POOL_OPERATIONS))
    owner_operations: List[str] = Field(default_factory=lambda: ["approve"])
    approved_spenders: List[str] = Field(default_factory=list)

    @field_validator('allowed_operations', 'owner_operations')
    @classmethod
    def validate_operations(cls, v: List[str]) -> List[str]:
        unknown = sorted(set(v) - POOL_OPERATIONS)
        if unknown:
            raise ValueError(f"unknown pool operations {unknown}; expected a subset of {sorted(POOL_OPERATIONS)}")
        return v


class PaperConfig(BaseModel):
    """Seeding of the in-memory pool for PAPER mode and replays"""
    start_tick: int = Field(default=0, ge=MIN_TICK, le=MAX_TICK)
    owner_balance0: Optional[int] = Field(default=None, ge=0)
    owner_balance1: Optional[int] = Field(default=None, ge=0)
    fund_amount0: int = Field(default=0, ge=0)
    fund_amount1: int = Field(default=0, ge=0)
    core_amount0: int = Field(default=0, ge=0)
    core_amount1: int = Field(default=0, ge=0)


class DefenseSchema(BaseModel):
    """Complete defense configuration schema"""
    pool: PoolConfig
    ranges: RangesConfig
    thresholds: ThresholdsConfig
    cooldown_seconds: float = Field(ge=0)
    peg_tick: int = Field(default=0, ge=MIN_TICK, le=MAX_TICK)
    fee_curves: Dict[str, FeeCurveConfig]
    roles: RolesConfig
    vault: VaultConfig = Field(default_factory=VaultConfig)
    paper: Optional[PaperConfig] = None

    @field_validator('fee_curves')
    @classmethod
    def validate_curve_regimes(cls, v: Dict[str, FeeCurveConfig]) -> Dict[str, FeeCurveConfig]:
        for name in v:
            try:
                Regime.from_value(name)
            except ValueError:
                raise ValueError(f"unknown regime {name!r} in fee_curves") from None
        if not any(Regime.from_value(name) == Regime.NORMAL for name in v):
            raise ValueError("fee_curves must define a 'normal' curve")
        return v


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)

    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except Exception:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))

    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    snippet = "\n".join(snippet_lines)
    problem = getattr(error, "problem", str(error))

    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Args:
        file_path: Path to YAML file

    Returns:
        Parsed YAML as dict

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except Exception as e:
        errors.append(f"{filename}: Unexpected error - {e}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """
    Validate app.yaml against schema.

    Args:
        config_dir: Path to config directory

    Returns:
        List of error messages (empty if valid)
    """
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_defense(config_dir: Path) -> List[str]:
    """
    Validate defense.yaml against schema.

    Args:
        config_dir: Path to config directory

    Returns:
        List of error messages (empty if valid)
    """
    return _validate_file(config_dir, "defense.yaml", DefenseSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Perform logical consistency checks across configuration files.

    Detects:
    - Ranges off the tick-spacing grid, or core and buffer overlapping
    - Fee curves whose bounds contradict each other
    - A keeper address that holds no role
    - Paper seeding that spends more than it mints
    - Monitoring settings that cannot work together

    Args:
        config_dir: Path to config directory

    Returns:
        List of sanity check error messages (empty if all pass)
    """
    errors = []

    try:
        app = load_yaml_file(config_dir / "app.yaml")
        defense = load_yaml_file(config_dir / "defense.yaml")

        # === RANGE CHECKS ===
        spacing = defense["pool"]["tick_spacing"]
        core = RangeConfig.from_dict(defense["ranges"]["core"])
        buffer = RangeConfig.from_dict(defense["ranges"]["buffer"])
        for label, rng in (("core", core), ("buffer", buffer)):
            try:
                rng.validate(spacing, f"ranges.{label}")
            except ConfigurationError as e:
                errors.append(f"INVALID: {e}")
        if core.overlaps(buffer):
            errors.append(
                f"CONTRADICTION: ranges.buffer [{buffer.tick_lower}, {buffer.tick_upper}] overlaps "
                f"ranges.core [{core.tick_lower}, {core.tick_upper}]. The buffer must sit beside the core range."
            )

        thresholds = defense["thresholds"]
        if not core.contains(thresholds["deescalate"]) and thresholds["deescalate"] != core.tick_upper:
            errors.append(
                f"UNSAFE: thresholds.deescalate ({thresholds['deescalate']}) lies outside the core range "
                f"[{core.tick_lower}, {core.tick_upper}]; the buffer would be removed with the price off-peg."
            )

        # === FEE CURVE CHECKS ===
        for name, curve in defense.get("fee_curves", {}).items():
            try:
                FeeCurve.from_dict(curve).validate()
            except (ConfigurationError, TypeError) as e:
                errors.append(f"INVALID: fee_curves.{name}: {e}")

        # === ROLE CHECKS ===
        keeper_address = app["keeper"]["address"]
        roles = defense["roles"]
        if keeper_address != roles["owner"] and keeper_address not in roles.get("keepers", []):
            errors.append(
                f"CONTRADICTION: keeper.address ({keeper_address}) is neither the owner nor a keeper in "
                f"defense.yaml roles; every auto_rebalance would be rejected."
            )

        # === PAPER SEEDING CHECKS ===
        paper = defense.get("paper") or {}
        for side in ("0", "1"):
            fund = paper.get(f"fund_amount{side}", 0)
            balance = paper.get(f"owner_balance{side}")
            core_amount = paper.get(f"core_amount{side}", 0)
            if balance is not None and fund > balance:
                errors.append(
                    f"UNSAFE: paper.fund_amount{side} ({fund}) exceeds paper.owner_balance{side} ({balance})."
                )
            if core_amount > fund:
                errors.append(
                    f"UNSAFE: paper.core_amount{side} ({core_amount}) exceeds paper.fund_amount{side} ({fund}); "
                    f"the core position is minted from the treasury."
                )

        # === MONITORING CHECKS ===
        monitoring = app.get("monitoring") or {}
        if monitoring.get("alerts_enabled") and not (
            monitoring.get("alert_webhook_url") or os.getenv("ALERT_WEBHOOK_URL")
        ):
            errors.append(
                "MISSING: monitoring.alerts_enabled=true but no alert_webhook_url (or ALERT_WEBHOOK_URL env)."
            )
        if (
            monitoring.get("metrics_enabled")
            and monitoring.get("healthcheck_enabled")
            and monitoring.get("metrics_port", 9100) == monitoring.get("healthcheck_port", 8080)
        ):
            errors.append("CONTRADICTION: monitoring.metrics_port and healthcheck_port are the same.")

        if app["app"]["mode"] == "LIVE" and app["app"].get("dry_run") is False and not roles.get("keepers"):
            errors.append("MISSING: LIVE mode submitting rebalances but roles.keepers is empty.")

    except Exception as e:
        errors.append(f"Sanity check failed: {e}")

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)

    Example:
        errors = validate_all_configs("config")
        if errors:
            for error in errors:
                print(f"ERROR: {error}")
            sys.exit(1)
    """
    config_path = Path(config_dir)

    all_errors = []

    # Schema validation
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_defense(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
