"""Shared exception types for peg defense logic.

Every error aborts the triggering call with no state change. The keeper
treats PreconditionError and ResourceError as expected, recoverable outcomes.
"""

from typing import Optional


class DefenseError(Exception):
    """Base class for all vault errors."""


class ConfigurationError(DefenseError, ValueError):
    """Invalid ranges, thresholds, fee curve or cooldown; rejected at write time."""


# ===== Precondition errors =====
class PreconditionError(DefenseError):
    """Expected, recoverable condition reported back to the caller."""


class CooldownActive(PreconditionError):
    def __init__(self, next_eligible_at: float, remaining_seconds: float):
        super().__init__(
            f"CooldownActive: next rebalance allowed at {next_eligible_at:.0f} "
            f"({remaining_seconds:.0f}s remaining)"
        )
        self.next_eligible_at = next_eligible_at
        self.remaining_seconds = remaining_seconds


class NoRegimeChange(PreconditionError):
    def __init__(self, regime, tick: int):
        super().__init__(f"NoRegimeChange: regime={regime} tick={tick}")
        self.regime = regime
        self.tick = tick


class BufferAlreadyActive(PreconditionError):
    def __init__(self, message: str = "BufferAlreadyActive"):
        super().__init__(message)


class BufferNotActive(PreconditionError):
    def __init__(self, message: str = "BufferNotActive"):
        super().__init__(message)


class ReentrantCall(PreconditionError):
    def __init__(self, action: str, in_flight: Optional[str] = None):
        super().__init__(f"ReentrantCall: {action} while {in_flight or 'another call'} is in flight")
        self.action = action
        self.in_flight = in_flight


# ===== Resource errors =====
class ResourceError(DefenseError):
    """Recoverable by funding the treasury."""


class InsufficientFunds(ResourceError):
    def __init__(self, requested0: int, requested1: int, available0: int, available1: int):
        super().__init__(
            f"InsufficientFunds: requested ({requested0}, {requested1}) "
            f"available ({available0}, {available1})"
        )
        self.requested = (requested0, requested1)
        self.available = (available0, available1)


class InsufficientDefenseCapital(ResourceError):
    def __init__(self, asset: str, balance: int):
        super().__init__(f"InsufficientDefenseCapital: {asset} balance={balance}")
        self.asset = asset
        self.balance = balance


# ===== Authorization =====
class NotAuthorized(DefenseError):
    def __init__(self, caller: str, action: str):
        super().__init__(f"NotAuthorized: {caller} may not {action}")
        self.caller = caller
        self.action = action


# ===== External collaborators =====
class ExternalCallFailed(DefenseError):
    """The pool rejected a position mutation or the command is not allowlisted."""

    def __init__(self, operation: str, original: Optional[Exception] = None):
        detail = f": {original}" if original else ""
        super().__init__(f"ExternalCallFailed[{operation}]{detail}")
        self.operation = operation
        self.original = original


class PoolDataUnavailable(DefenseError, RuntimeError):
    """Raised when the pool price cannot be read safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original
