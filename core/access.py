"""
PegSentinel Core: Access Gate

Owner/keeper authorization and the rebalance cooldown timer.

Roles:
- owner: everything (configuration, overrides, treasury movement)
- keeper: auto_rebalance and collect_fees only

The cooldown is the only rate limit in the system. It bounds capital churn
from tick noise; it does not provide fairness between keepers.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Set
import logging
import time

from core.exceptions import ConfigurationError, CooldownActive, NotAuthorized

logger = logging.getLogger(__name__)


class Role(Enum):
    OWNER = "owner"
    KEEPER = "keeper"


# action -> roles allowed to perform it
ACTION_ROLES: Dict[str, FrozenSet[Role]] = {
    "auto_rebalance": frozenset({Role.OWNER, Role.KEEPER}),
    "collect_fees": frozenset({Role.OWNER, Role.KEEPER}),
    "force_deploy_buffer": frozenset({Role.OWNER}),
    "force_remove_buffer": frozenset({Role.OWNER}),
    "set_ranges": frozenset({Role.OWNER}),
    "set_thresholds": frozenset({Role.OWNER}),
    "set_cooldown": frozenset({Role.OWNER}),
    "set_fee_curve": frozenset({Role.OWNER}),
    "set_keeper": frozenset({Role.OWNER}),
    "transfer_ownership": frozenset({Role.OWNER}),
    "fund": frozenset({Role.OWNER}),
    "withdraw_treasury": frozenset({Role.OWNER}),
    "execute": frozenset({Role.OWNER}),
    "initialize_core": frozenset({Role.OWNER}),
}


@dataclass
class CooldownState:
    last_action_at: Optional[float] = None  # epoch seconds; None = never acted
    min_interval: float = 0.0

    def next_eligible_at(self) -> float:
        if self.last_action_at is None:
            return 0.0
        return self.last_action_at + self.min_interval


class AccessGate:
    """Role checks plus cooldown bookkeeping."""

    def __init__(
        self,
        owner: str,
        keepers: Iterable[str] = (),
        cooldown_seconds: float = 0.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        if not owner:
            raise ConfigurationError("owner address is required")
        if cooldown_seconds < 0:
            raise ConfigurationError(f"cooldown must be >= 0, got {cooldown_seconds}")
        self._owner = owner
        self._keepers: Set[str] = set(keepers)
        self.cooldown = CooldownState(min_interval=float(cooldown_seconds))
        self._clock = clock or time.time
        logger.info(
            f"AccessGate initialized: owner={owner} keepers={len(self._keepers)} "
            f"cooldown={self.cooldown.min_interval:.0f}s"
        )

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def keepers(self) -> FrozenSet[str]:
        return frozenset(self._keepers)

    def now(self) -> float:
        return self._clock()

    def roles_of(self, caller: str) -> FrozenSet[Role]:
        roles = set()
        if caller == self._owner:
            roles.add(Role.OWNER)
        if caller in self._keepers:
            roles.add(Role.KEEPER)
        return frozenset(roles)

    def require(self, caller: str, action: str) -> None:
        allowed = ACTION_ROLES.get(action)
        if allowed is None:
            raise NotAuthorized(caller, action)
        if not (self.roles_of(caller) & allowed):
            logger.warning(f"Rejected {action} from unauthorized caller {caller}")
            raise NotAuthorized(caller, action)

    def set_keeper(self, keeper: str, enabled: bool) -> None:
        if enabled:
            self._keepers.add(keeper)
        else:
            self._keepers.discard(keeper)
        logger.info(f"Keeper {keeper} {'enabled' if enabled else 'disabled'}")

    def transfer_ownership(self, new_owner: str) -> None:
        if not new_owner:
            raise ConfigurationError("new owner address is required")
        logger.info(f"Ownership transferred: {self._owner} -> {new_owner}")
        self._owner = new_owner

    # ===== Cooldown =====
    def set_cooldown(self, seconds: float) -> None:
        if seconds < 0:
            raise ConfigurationError(f"cooldown must be >= 0, got {seconds}")
        self.cooldown.min_interval = float(seconds)
        logger.info(f"Cooldown set to {seconds:.0f}s")

    def cooldown_remaining(self, now: Optional[float] = None) -> float:
        now = self.now() if now is None else now
        return max(0.0, self.cooldown.next_eligible_at() - now)

    def check_cooldown(self, now: Optional[float] = None) -> None:
        now = self.now() if now is None else now
        remaining = self.cooldown_remaining(now)
        if remaining > 0:
            raise CooldownActive(self.cooldown.next_eligible_at(), remaining)

    def reset_cooldown(self, now: Optional[float] = None) -> None:
        self.cooldown.last_action_at = self.now() if now is None else now

    def snapshot(self) -> CooldownState:
        return CooldownState(self.cooldown.last_action_at, self.cooldown.min_interval)

    def restore(self, state: CooldownState) -> None:
        self.cooldown = CooldownState(state.last_action_at, state.min_interval)
