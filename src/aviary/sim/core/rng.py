from __future__ import annotations

import random

from pygame.math import Vector3


class DeterministicRng:
    def __init__(self, seed: int):
        self._seed = seed
        self._random = random.Random(seed)

    @property
    def seed(self) -> int:
        return self._seed

    def reseed(self, seed: int) -> None:
        self._seed = seed
        self._random.seed(seed)

    def next_float(self) -> float:
        return self._random.random()

    def next_range(self, low: float, high: float) -> float:
        return self._random.uniform(low, high)

    def next_point(self, low: float, high: float) -> Vector3:
        return Vector3(
            self.next_range(low, high),
            self.next_range(low, high),
            self.next_range(low, high),
        )
