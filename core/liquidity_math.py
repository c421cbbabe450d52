"""
PegSentinel Core: Liquidity Math

Exact integer tick/sqrt-price conversion and liquidity <-> token amount
conversions for concentrated-liquidity ranges (Q64.96 fixed point).

Amounts owed *to* the pool round up, amounts paid *by* the pool round down,
so liquidity derived from a budget never costs more than that budget.
"""

import math
from typing import Tuple

MIN_TICK = -887272
MAX_TICK = 887272
Q96 = 2 ** 96

# Precomputed 1/sqrt(1.0001)^(2^i) in Q128.128, one per bit of |tick|
_TICK_RATIO_FACTORS = (
    (0x2, 0xfff97272373d413259a46990580e213a),
    (0x4, 0xfff2e50f5f656932ef12357cf3c7fdcc),
    (0x8, 0xffe5caca7e10e4e61c3624eaa0941cd0),
    (0x10, 0xffcb9843d60f6159c9db58835c926644),
    (0x20, 0xff973b41fa98c081472e6896dfb254c0),
    (0x40, 0xff2ea16466c96a3843ec78b326b52861),
    (0x80, 0xfe5dee046a99a2a811c461f1969c3053),
    (0x100, 0xfcbe86c7900a88aedcffc83b479aa3a4),
    (0x200, 0xf987a7253ac413176f2b074cf7815e54),
    (0x400, 0xf3392b0822b70005940c7a398e4b70f3),
    (0x800, 0xe7159475a2c29b7443b29c7fa6e889d9),
    (0x1000, 0xd097f3bdfd2022b8845ad8f792aa5825),
    (0x2000, 0xa9f746462d870fdf8a65dc1f90e061e5),
    (0x4000, 0x70d869a156d2a1b890bb3df62baf32f7),
    (0x8000, 0x31be135f97d08fd981231505542fcfa6),
    (0x10000, 0x9aa508b5b7a84e1c677de54f3e99bc9),
    (0x20000, 0x5d6af8dedb81196699c329225ee604),
    (0x40000, 0x2216e584f5fa1ea926041bedfe98),
    (0x80000, 0x48a170391f7dc42444e8fa2),
)

_MAX_UINT256 = 2 ** 256 - 1


def get_sqrt_ratio_at_tick(tick: int) -> int:
    """Return sqrt(1.0001^tick) * 2^96, matching the pool's TickMath exactly."""
    if tick < MIN_TICK or tick > MAX_TICK:
        raise ValueError(f"Tick {tick} out of bounds [{MIN_TICK}, {MAX_TICK}]")

    abs_tick = abs(tick)
    ratio = 0xfffcb933bd6fad37aa2d162d1a594001 if abs_tick & 0x1 else 1 << 128
    for bit, factor in _TICK_RATIO_FACTORS:
        if abs_tick & bit:
            ratio = (ratio * factor) >> 128

    if tick > 0:
        ratio = _MAX_UINT256 // ratio

    # Q128.128 -> Q64.96, rounding up
    return (ratio >> 32) + (0 if ratio % (1 << 32) == 0 else 1)


def tick_to_price(tick: int) -> float:
    """Human-readable token1/token0 price for logging."""
    return math.pow(1.0001, tick)


def _div_round_up(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def _ordered(sqrt_a: int, sqrt_b: int) -> Tuple[int, int]:
    return (sqrt_a, sqrt_b) if sqrt_a <= sqrt_b else (sqrt_b, sqrt_a)


# ===== Liquidity from amounts (round down) =====
def get_liquidity_for_amount0(sqrt_a: int, sqrt_b: int, amount0: int) -> int:
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    if sqrt_a == sqrt_b or amount0 <= 0:
        return 0
    intermediate = sqrt_a * sqrt_b // Q96
    return amount0 * intermediate // (sqrt_b - sqrt_a)


def get_liquidity_for_amount1(sqrt_a: int, sqrt_b: int, amount1: int) -> int:
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    if sqrt_a == sqrt_b or amount1 <= 0:
        return 0
    return amount1 * Q96 // (sqrt_b - sqrt_a)


def get_liquidity_for_amounts(
    sqrt_price: int, sqrt_a: int, sqrt_b: int, amount0: int, amount1: int
) -> int:
    """
    Maximum liquidity for a range that the given budgets can fund at sqrt_price.

    Below the range only token0 counts, above it only token1, inside it the
    scarcer side binds.
    """
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    if sqrt_price <= sqrt_a:
        return get_liquidity_for_amount0(sqrt_a, sqrt_b, amount0)
    if sqrt_price < sqrt_b:
        liquidity0 = get_liquidity_for_amount0(sqrt_price, sqrt_b, amount0)
        liquidity1 = get_liquidity_for_amount1(sqrt_a, sqrt_price, amount1)
        return min(liquidity0, liquidity1)
    return get_liquidity_for_amount1(sqrt_a, sqrt_b, amount1)


# ===== Amounts from liquidity =====
def get_amount0_for_liquidity(sqrt_a: int, sqrt_b: int, liquidity: int, round_up: bool = False) -> int:
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    numerator = liquidity * Q96 * (sqrt_b - sqrt_a)
    if round_up:
        return _div_round_up(_div_round_up(numerator, sqrt_b), sqrt_a)
    return numerator // sqrt_b // sqrt_a


def get_amount1_for_liquidity(sqrt_a: int, sqrt_b: int, liquidity: int, round_up: bool = False) -> int:
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    numerator = liquidity * (sqrt_b - sqrt_a)
    if round_up:
        return _div_round_up(numerator, Q96)
    return numerator // Q96


def get_amounts_for_liquidity(
    sqrt_price: int,
    sqrt_a: int,
    sqrt_b: int,
    liquidity: int,
    round_up: bool = False,
) -> Tuple[int, int]:
    """Token amounts represented by `liquidity` in [sqrt_a, sqrt_b] at sqrt_price."""
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    amount0 = amount1 = 0
    if sqrt_price <= sqrt_a:
        amount0 = get_amount0_for_liquidity(sqrt_a, sqrt_b, liquidity, round_up)
    elif sqrt_price < sqrt_b:
        amount0 = get_amount0_for_liquidity(sqrt_price, sqrt_b, liquidity, round_up)
        amount1 = get_amount1_for_liquidity(sqrt_a, sqrt_price, liquidity, round_up)
    else:
        amount1 = get_amount1_for_liquidity(sqrt_a, sqrt_b, liquidity, round_up)
    return amount0, amount1


def required_assets(sqrt_price: int, sqrt_a: int, sqrt_b: int) -> Tuple[bool, bool]:
    """Which tokens (token0, token1) a position over [sqrt_a, sqrt_b] holds at sqrt_price."""
    sqrt_a, sqrt_b = _ordered(sqrt_a, sqrt_b)
    if sqrt_price <= sqrt_a:
        return True, False
    if sqrt_price < sqrt_b:
        return True, True
    return False, True
