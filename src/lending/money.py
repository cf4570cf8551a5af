from __future__ import annotations

import math


def round_half_up(value: float, digits: int = 0) -> float:
    """Round with ties going up (``2.5 -> 3``, ``0.125 -> 0.13``), unlike built-in ``round``."""
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


def to_whole(value: float) -> int:
    return math.floor(value + 0.5)
