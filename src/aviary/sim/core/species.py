from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Set

from ..systems.probability import ConstantProbability, DeathProbability, Probability
from .config import parse_float, parse_int
from .errors import ConfigurationError
from .rng import DeterministicRng

logger = logging.getLogger(__name__)

DEFAULT_SPECIES = "default"
FULL_CIRCLE = -1.0


# Closed option table; `count` is applied by the world since it spawns agents.
SPECIES_PARAMETERS: Dict[str, Callable[[object], object]] = {
    "count": parse_int,
    "view_zone": parse_float,
    "angle_of_view": parse_float,
    "speed_factor": parse_float,
    "max_speed": parse_float,
    "min_speed": parse_float,
    "direction_factor": parse_float,
    "attraction_factor": parse_float,
    "repulsion_factor": parse_float,
    "inertia": parse_float,
    "fear_factor": parse_float,
}


@dataclass(slots=True)
class Species:
    name: str
    # Distance at which other agents are seen.
    view_zone: float = 0.15
    # Cosine of the half-angle of the perception cone; -1 sees all around.
    angle_of_view: float = 0.0
    speed_factor: float = 0.3
    max_speed: float = 1.0
    min_speed: float = 0.04
    direction_factor: float = 0.1
    attraction_factor: float = 0.5
    repulsion_factor: float = 0.001
    inertia: float = 1.1
    # Repulsion this species exerts on agents of other species.
    fear_factor: float = 1.0
    color: tuple[float, float, float] = (1.0, 0.0, 0.0)
    reproduce_probability: Probability = field(default_factory=lambda: ConstantProbability(1.0))
    death_probability: Probability = field(default_factory=DeathProbability)
    members: Set[int] = field(default_factory=set)
    _next_serial: int = 0

    @property
    def population(self) -> int:
        return len(self.members)

    @property
    def full_circle_view(self) -> bool:
        return self.angle_of_view <= FULL_CIRCLE

    def allocate_label(self) -> str:
        label = f"{self.name}.{self._next_serial:x}"
        self._next_serial += 1
        return label

    def register(self, agent_id: int) -> None:
        self.members.add(agent_id)

    def unregister(self, agent_id: int) -> None:
        self.members.discard(agent_id)

    def set(self, key: str, value: object) -> object:
        """Parse and apply one option; returns the parsed value."""
        normalized = key.lower().strip()
        parser = SPECIES_PARAMETERS.get(normalized)
        if parser is None:
            raise ConfigurationError(f"Unknown species parameter {key!r}")
        try:
            parsed = parser(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid value {value!r} for species parameter {key!r}") from exc
        if normalized != "count":
            setattr(self, normalized, parsed)
        return parsed


class SpeciesRegistry:
    def __init__(self, rng: DeterministicRng) -> None:
        self._rng = rng
        self._species: Dict[str, Species] = {}

    def __iter__(self) -> Iterator[Species]:
        return iter(list(self._species.values()))

    def __len__(self) -> int:
        return len(self._species)

    def __contains__(self, name: str) -> bool:
        return name in self._species

    def names(self) -> List[str]:
        return list(self._species)

    def get(self, name: str) -> Species:
        return self._species[name]

    def get_or_create(self, name: str) -> Species:
        species = self._species.get(name)
        if species is None:
            color = (self._rng.next_float(), self._rng.next_float(), self._rng.next_float())
            species = Species(name=name, color=color)
            self._species[name] = species
            logger.info("New species %s", name)
        return species

    def delete(self, name: str) -> Species | None:
        """Drop a species; the caller owns removing its members from the rest of the world."""
        if name == DEFAULT_SPECIES:
            logger.warning("The %s species cannot be deleted", DEFAULT_SPECIES)
            return None
        species = self._species.pop(name, None)
        if species is not None:
            logger.info("Deleted species %s (%d members)", name, species.population)
        return species

    def set_parameter(self, name: str, key: str, value: object) -> object | None:
        species = self.get_or_create(name)
        try:
            parsed = species.set(key, value)
        except ConfigurationError as exc:
            logger.warning("Ignoring parameter for species %s: %s", name, exc)
            return None
        logger.debug("Set %s of %s to %s", key, name, parsed)
        return parsed
