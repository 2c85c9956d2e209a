from __future__ import annotations

from pygame.math import Vector3


def _clamp_value(value: float, min_value: float, max_value: float) -> float:
    return max(min_value, min(max_value, value))


def _cosine_between(a: Vector3, b: Vector3) -> float:
    len_a = a.length()
    len_b = b.length()
    if len_a == 0.0 or len_b == 0.0:
        return 0.0
    return a.dot(b) / (len_a * len_b)
