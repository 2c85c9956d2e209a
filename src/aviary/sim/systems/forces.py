from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Set, Tuple

from pygame.math import Vector3

from ..core.agent import Agent, ForceAccumulators
from ..core.errors import ConfigurationError, IndexCorruptionError, StepOrderError
from ..core.species import Species
from ..utils.math3d import _clamp_value, _cosine_between

if TYPE_CHECKING:
    from ..core.world import World

WALL_EPSILON = 1e-6


@dataclass(frozen=True, slots=True)
class FrozenAgent:
    position: Vector3
    heading: Vector3
    species: str


FrozenState = Dict[int, FrozenAgent]


@dataclass(slots=True)
class ForceResult:
    heading: Vector3
    position: Vector3
    neighbors: Tuple[int, ...]
    forces: ForceAccumulators
    candidates: int = 0


def take_snapshot(agents: Iterable[Agent]) -> FrozenState:
    return {
        agent.id: FrozenAgent(Vector3(agent.position), Vector3(agent.heading), agent.species)
        for agent in agents
        if agent.alive
    }


def repulsion_damping(distance: float, view_zone: float) -> float:
    """
    Scale applied to one neighbor's repulsion: log(min(d, v)) / log(v).

    The result is negative or above one depending on which side of 1.0 the
    view zone lies. A view zone of exactly 1.0 has no defined ratio and
    leaves the repulsion undamped.
    """
    if view_zone == 1.0 or view_zone <= 0.0:
        return 1.0
    return math.log(min(distance, view_zone)) / math.log(view_zone)


def is_visible(position: Vector3, heading: Vector3, point: Vector3, species: Species) -> bool:
    offset = point - position
    distance = offset.length()
    if distance > species.view_zone:
        return False
    if species.full_circle_view or distance == 0.0:
        return True
    return _cosine_between(heading, offset) > species.angle_of_view


def contain(position: Vector3, heading: Vector3, low: Vector3, high: Vector3) -> Tuple[Vector3, Vector3]:
    """Reflect `heading` off the walls it would cross and return the next position and heading."""
    start = Vector3(position)
    reflected = Vector3(heading)
    for axis in range(3):
        projected = start[axis] + reflected[axis]
        if projected <= low[axis] + WALL_EPSILON:
            start[axis] = low[axis] + WALL_EPSILON
            reflected[axis] = -reflected[axis]
        elif projected >= high[axis] - WALL_EPSILON:
            start[axis] = high[axis] - WALL_EPSILON
            reflected[axis] = -reflected[axis]
    moved = start + reflected
    for axis in range(3):
        moved[axis] = _clamp_value(moved[axis], low[axis], high[axis])
    return moved, reflected


class OctreeNeighborhood:
    def __init__(self, world: "World") -> None:
        self._world = world

    def candidates(self, agent_id: int, position: Vector3, half_width: float, frozen: FrozenState) -> List[int]:
        return self._world.index.query_around(position, half_width)


class GreedyNeighborhood:
    """Every live agent is a candidate; the visibility test does all the filtering."""

    def __init__(self, world: "World") -> None:
        self._world = world

    def candidates(self, agent_id: int, position: Vector3, half_width: float, frozen: FrozenState) -> List[int]:
        return list(frozen)


NEIGHBORHOODS: Dict[str, Callable[["World"], object]] = {
    "octree": OctreeNeighborhood,
    "greedy": GreedyNeighborhood,
}


def build_neighborhood(tag: str, world: "World"):
    factory = NEIGHBORHOODS.get(str(tag).lower().strip())
    if factory is None:
        raise ConfigurationError(f"Unknown forces kind: {tag!r} (expected one of {sorted(NEIGHBORHOODS)})")
    return factory(world)


class ForceModel:
    """
    Two-phase steering: `compute` every agent against the frozen state taken
    by `begin_step`, then `commit` each result. No commit is accepted until
    every agent of the frozen state has been computed.
    """

    def __init__(self, world: "World", neighborhood) -> None:
        self._world = world
        self.neighborhood = neighborhood
        self._frozen: FrozenState | None = None
        self._computed: Set[int] = set()

    @property
    def frozen(self) -> FrozenState | None:
        return self._frozen

    def begin_step(self, frozen: FrozenState) -> None:
        if self._frozen is not None:
            raise StepOrderError("begin_step called while another step is in flight")
        self._frozen = frozen
        self._computed.clear()

    def end_step(self) -> None:
        self._frozen = None
        self._computed.clear()

    def compute(self, agent_id: int) -> ForceResult:
        frozen = self._frozen
        if frozen is None:
            raise StepOrderError("compute called outside of a step")
        me = frozen[agent_id]
        species = self._species(me.species)
        view_zone = species.view_zone
        candidates = self.neighborhood.candidates(agent_id, me.position, view_zone, frozen)
        forces = ForceAccumulators()
        visible: List[int] = []

        # Ascending id keeps float accumulation identical whatever the search returned.
        for other_id in sorted(candidates):
            if other_id == agent_id:
                continue
            other = frozen.get(other_id)
            if other is None:
                raise IndexCorruptionError(f"neighbor search returned unknown agent {other_id}")
            if not is_visible(me.position, me.heading, other.position, species):
                continue
            visible.append(other_id)
            same_species = other.species == me.species
            offset = me.position - other.position
            distance = offset.length()
            if distance > 0.0:
                scale = 1.0 / (distance * distance)
                if not same_species:
                    scale *= self._species(other.species).fear_factor
                forces.repulsion += offset * (scale * repulsion_damping(distance, view_zone))
            forces.count_rep += 1
            if same_species:
                forces.barycenter += other.position
                forces.direction += other.heading
                forces.count_att += 1

        if forces.count_att > 0:
            forces.barycenter /= forces.count_att
            forces.direction /= forces.count_att
            forces.attraction = forces.barycenter - me.position
        if forces.count_rep > 0:
            forces.repulsion /= forces.count_rep

        forces.direction *= species.direction_factor
        forces.attraction *= species.attraction_factor
        forces.repulsion *= species.repulsion_factor
        heading = me.heading * species.inertia
        heading += forces.direction
        heading += forces.attraction
        heading += forces.repulsion

        if self._world.normalize_mode:
            length = heading.length()
            if length > 0.0:
                heading /= length
            length = _clamp_value(length, species.min_speed, species.max_speed)
            heading *= species.speed_factor * length
        else:
            heading *= species.speed_factor

        position, heading = contain(me.position, heading, self._world.low, self._world.high)
        self._computed.add(agent_id)
        return ForceResult(
            heading=heading,
            position=position,
            neighbors=tuple(visible),
            forces=forces,
            candidates=len(candidates),
        )

    def commit(self, agent: Agent, result: ForceResult) -> None:
        frozen = self._frozen
        if frozen is None:
            raise StepOrderError("commit called outside of a step")
        if len(self._computed) != len(frozen):
            raise StepOrderError(
                f"commit of agent {agent.id} before all forces were computed "
                f"({len(self._computed)}/{len(frozen)})"
            )
        agent.heading = result.heading
        agent.position = result.position
        agent.forces = result.forces
        agent.neighbors = result.neighbors
        self._world.index.relocate(agent.id, agent.position, agent.heading)

    def _species(self, name: str) -> Species:
        try:
            return self._world.species.get(name)
        except KeyError as exc:
            raise StepOrderError(f"species {name!r} disappeared during a step") from exc
