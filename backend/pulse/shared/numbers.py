import math


def round_half_up(value: float, ndigits: int = 0) -> float | int:
    """Round with halves going up (2.5 -> 3, -2.5 -> -2); builtin ``round`` goes to even."""
    if ndigits == 0:
        return math.floor(value + 0.5)
    scale = 10**ndigits
    return math.floor(value * scale + 0.5) / scale
