"""
Deterministic 18-decimal fixed-point arithmetic. Pure integer math, no floats.

Every value is an int scaled by SCALE (1.0 == 10**18). Division truncates
toward zero, like signed fixed-point on a fixed-width machine, so results
are identical on every platform and for every caller.

exp2 and log2 are series approximations, not exact:
  - exp2 uses a 20-term Taylor series for the fractional part and a bit
    shift for the integer part. Inputs above 192.0 saturate at 2**192.
  - log2 normalises into [1, 2) and uses the odd-power atanh series
    truncated after the z**8 term (relative error around 1e-6 near 2).
Both approximations are part of the pricing contract. Do not swap them for
math.exp/math.log: trade outcomes must be reproducible bit for bit.
"""

from outcome_amm.errors import DivisionByZero, DomainError


SCALE = 10 ** 18
HALF = SCALE // 2

LN2 = 693147180559945309               # ln(2) * 1e18
LOG2_E = 1442695040888963407           # log2(e) * 1e18
TWO_OVER_LN2 = 2 * SCALE * SCALE // LN2

EXP2_MAX_INPUT = 192 * SCALE
EXP2_TERMS = 20

# (shift, shift * SCALE) pairs for log2 normalisation, largest first.
_LOG2_SHIFTS = [(s, s * SCALE) for s in (128, 64, 32, 16, 8, 4, 2, 1)]


# ---------------------------------------------------------------------------
# Basic operations
# ---------------------------------------------------------------------------

def _quo(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


def mul(x: int, y: int) -> int:
    """x * y in fixed point."""
    return _quo(x * y, SCALE)


def div(x: int, y: int) -> int:
    """x / y in fixed point. Raises DivisionByZero if y == 0."""
    if y == 0:
        raise DivisionByZero("fixed-point division by zero")
    return _quo(x * SCALE, y)


# ---------------------------------------------------------------------------
# Exponential and logarithms
# ---------------------------------------------------------------------------

def exp2(x: int) -> int:
    """
    2**x in fixed point.

    Negative inputs are the reciprocal of exp2(-x). Inputs beyond 192.0 are
    clamped, so very large exponents saturate instead of growing without
    bound. Callers that need the asymptote check the threshold themselves.
    """
    if x < 0:
        positive = exp2(-x)
        if positive == 0:
            return 0
        return SCALE * SCALE // positive

    if x > EXP2_MAX_INPUT:
        x = EXP2_MAX_INPUT

    int_part = x // SCALE
    frac = x % SCALE

    # 2**frac == e**(frac * ln2)
    y = mul(frac, LN2)
    res = SCALE
    term = SCALE
    for i in range(1, EXP2_TERMS + 1):
        term = term * y // SCALE // i
        res += term
        if term == 0:
            break

    return (1 << int_part) * res


def log2(x: int) -> int:
    """log2(x) in fixed point. Raises DomainError for x <= 0."""
    if x <= 0:
        raise DomainError(f"log2 undefined for {x}")

    res = 0
    value = x

    for shift, add in _LOG2_SHIFTS:
        if value >= (SCALE << shift):
            value >>= shift
            res += add
    while value >= 2 * SCALE:
        # beyond 2**255, only reachable with unbounded Python ints
        value >>= 1
        res += SCALE
    while value < SCALE:
        value <<= 1
        res -= SCALE

    # value is now in [1, 2). log2(v) = 2/ln2 * atanh(z), z = (v-1)/(v+1)
    z = div(value - SCALE, value + SCALE)
    z2 = mul(z, z)
    z4 = mul(z2, z2)
    z6 = mul(z4, z2)
    z8 = mul(z6, z2)
    w = SCALE + z2 // 3 + z4 // 5 + z6 // 7 + z8 // 9
    return res + mul(mul(z, w), TWO_OVER_LN2)


def ln(x: int) -> int:
    """Natural log in fixed point."""
    return mul(log2(x), LN2)
