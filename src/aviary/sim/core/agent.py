from __future__ import annotations

from dataclasses import dataclass, field

from pygame.math import Vector3


@dataclass(slots=True)
class ForceAccumulators:
    barycenter: Vector3 = field(default_factory=Vector3)
    direction: Vector3 = field(default_factory=Vector3)
    attraction: Vector3 = field(default_factory=Vector3)
    repulsion: Vector3 = field(default_factory=Vector3)
    count_att: int = 0
    count_rep: int = 0


@dataclass(slots=True)
class Agent:
    id: int
    label: str
    species: str
    position: Vector3
    heading: Vector3
    birth_step: int
    alive: bool = True
    forces: ForceAccumulators = field(default_factory=ForceAccumulators)
    neighbors: tuple[int, ...] = ()
