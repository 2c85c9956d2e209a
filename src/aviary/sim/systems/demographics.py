from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from ..core.agent import Agent
from .probability import Probability

if TYPE_CHECKING:
    from ..core.world import World

logger = logging.getLogger(__name__)


@dataclass
class DemographicOutcome:
    parents: List[int] = field(default_factory=list)
    dead: List[int] = field(default_factory=list)


class DemographicManager:
    """
    Stochastic births and deaths, evaluated once per step.

    A manager governs every agent, or only the agents of `species` when one
    is given. Unless overridden here, each agent's probabilities come from
    its species. Death pre-empts reproduction: an agent drawn for death is
    not considered for reproduction in the same step.
    """

    def __init__(
        self,
        species: Optional[str] = None,
        reproduce_probability: Optional[Probability] = None,
        death_probability: Optional[Probability] = None,
    ) -> None:
        self.species = species
        self.reproduce_probability = reproduce_probability
        self.death_probability = death_probability
        self.current_date = 0
        self.birthdays: Dict[int, int] = {}

    def governs(self, agent: Agent) -> bool:
        return self.species is None or agent.species == self.species

    def register(self, agent: Agent) -> None:
        if self.governs(agent):
            self.birthdays[agent.id] = self.current_date

    def unregister(self, agent_id: int) -> None:
        self.birthdays.pop(agent_id, None)

    def age_of(self, agent_id: int) -> int:
        return self.current_date - self.birthdays[agent_id]

    def evaluate(self, world: World) -> DemographicOutcome:
        """Draw each governed agent's fate without touching the population."""
        outcome = DemographicOutcome()
        rng = world.rng
        for agent_id in sorted(self.birthdays):
            agent = world.agent(agent_id)
            species = world.species.get(agent.species)
            age = self.current_date - self.birthdays[agent_id]
            death = self.death_probability or species.death_probability
            if rng.next_float() < death(species, agent, age):
                outcome.dead.append(agent_id)
                continue
            reproduce = self.reproduce_probability or species.reproduce_probability
            if rng.next_float() < reproduce(species, agent, age):
                outcome.parents.append(agent_id)
        return outcome

    def check(self, world: World) -> Tuple[int, int]:
        outcome = self.evaluate(world)
        births = 0
        for parent_id in outcome.parents:
            world.create_agent(world.agent(parent_id).species)
            births += 1
        for agent_id in outcome.dead:
            world.remove_agent(agent_id)
        self.current_date += 1
        if births or outcome.dead:
            logger.debug(
                "Demographics (%s) date=%d births=%d deaths=%d",
                self.species or "all species",
                self.current_date,
                births,
                len(outcome.dead),
            )
        return births, len(outcome.dead)
