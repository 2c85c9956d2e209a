from __future__ import annotations

import logging
import time
from time import perf_counter
from typing import Any, Dict, Iterable, List, Optional

from pygame.math import Vector3

from ..systems import metrics as metrics_system
from ..systems.demographics import DemographicManager
from ..systems.forces import ForceModel, build_neighborhood, take_snapshot
from ..systems.probability import Probability, build_probability
from ..systems.topology import TopologyEvents, TopologyListener
from ..types.metrics import StepMetrics
from ..types.snapshot import Snapshot, SnapshotBounds, SnapshotMetadata
from .agent import Agent
from .config import ProbabilityConfig, SimulationConfig, parse_bool, parse_float, parse_int
from .errors import ConfigurationError, StepOrderError
from .octree import Octree
from .rng import DeterministicRng
from .species import DEFAULT_SPECIES, Species, SpeciesRegistry

logger = logging.getLogger(__name__)

_IDLE = "idle"
_FORCES = "forces"
_DEMOGRAPHICS = "demographics"


class World:
    SIMULATION_PARAMETERS = ("max_steps", "area", "sleep_time", "normalize_mode", "random_seed", "forces")

    def __init__(self, config: SimulationConfig, listeners: Iterable[TopologyListener] = ()):
        self._config = config
        self._listeners: List[TopologyListener] = list(listeners)
        self._setup()

    def _setup(self) -> None:
        config = self._config
        self.max_steps = config.max_steps
        self.sleep_time = config.sleep_time
        self.normalize_mode = config.normalize_mode
        self.area = float(config.area)
        self.forces_kind = config.forces
        self._rng = DeterministicRng(config.random_seed)
        self._index = Octree(self.low, self.high, capacity=config.max_particles_per_cell)
        self._species = SpeciesRegistry(self._rng)
        self._agents: Dict[int, Agent] = {}
        self._managers: List[DemographicManager] = []
        self._events = TopologyEvents()
        self._next_id = 0
        self._step = 0
        self._phase = _IDLE
        self._looping = False
        self._metrics: StepMetrics | None = None
        try:
            neighborhood = build_neighborhood(config.forces, self)
        except ConfigurationError as exc:
            logger.warning("%s; using the octree neighbor search", exc)
            neighborhood = build_neighborhood("octree", self)
            self.forces_kind = "octree"
        self._force_model = ForceModel(self, neighborhood)
        self._species.get_or_create(DEFAULT_SPECIES)
        for name, species_config in config.species.items():
            self._apply_species_config(name, species_config)
        if config.demographics.enabled:
            self._install_demographics()
        self._bootstrap_population()

    @property
    def config(self) -> SimulationConfig:
        return self._config

    @property
    def rng(self) -> DeterministicRng:
        return self._rng

    @property
    def index(self) -> Octree:
        return self._index

    @property
    def species(self) -> SpeciesRegistry:
        return self._species

    @property
    def force_model(self) -> ForceModel:
        return self._force_model

    @property
    def managers(self) -> List[DemographicManager]:
        return list(self._managers)

    @property
    def agents(self) -> List[Agent]:
        return [self._agents[agent_id] for agent_id in sorted(self._agents)]

    @property
    def step_count(self) -> int:
        return self._step

    @property
    def metrics(self) -> StepMetrics | None:
        return self._metrics

    @property
    def low(self) -> Vector3:
        return Vector3(-self.area, -self.area, -self.area)

    @property
    def high(self) -> Vector3:
        return Vector3(self.area, self.area, self.area)

    @property
    def is_looping(self) -> bool:
        return self._looping

    def agent(self, agent_id: int) -> Agent:
        return self._agents[agent_id]

    def add_listener(self, listener: TopologyListener) -> None:
        self._listeners.append(listener)

    def reset(self) -> None:
        """Rebuild the world from its configuration; listeners with an `on_reset` hook hear about it first."""
        if self._phase != _IDLE:
            raise StepOrderError("the world cannot be reset during a step")
        for listener in self._listeners:
            on_reset = getattr(listener, "on_reset", None)
            if on_reset is not None:
                on_reset()
        self._setup()

    def populations(self) -> Dict[str, int]:
        return {species.name: species.population for species in sorted(self._species, key=lambda s: s.name)}

    # Agents and species

    def create_agent(
        self,
        species_name: str = DEFAULT_SPECIES,
        position: Optional[Vector3] = None,
        heading: Optional[Vector3] = None,
    ) -> Agent:
        if self._phase == _FORCES:
            raise StepOrderError("agents cannot be created while forces are being computed")
        species = self._species.get_or_create(species_name)
        if position is None:
            position = self._rng.next_point(-self.area, self.area)
        if heading is None:
            heading = Vector3(self._rng.next_float(), self._rng.next_float(), self._rng.next_float())
        agent = Agent(
            id=self._next_id,
            label=species.allocate_label(),
            species=species.name,
            position=Vector3(position),
            heading=Vector3(heading),
            birth_step=self._step,
        )
        self._next_id += 1
        self._agents[agent.id] = agent
        species.register(agent.id)
        self._index.insert(agent.id, agent.position, agent.heading)
        for manager in self._managers:
            manager.register(agent)
        self._events.agent_created(agent.id, species.name)
        return agent

    def remove_agent(self, agent_id: int) -> None:
        if self._phase == _FORCES:
            raise StepOrderError("agents cannot be removed while forces are being computed")
        agent = self._agents.pop(agent_id)
        agent.alive = False
        self._species.get(agent.species).unregister(agent_id)
        self._index.remove(agent_id)
        for manager in self._managers:
            manager.unregister(agent_id)
        self._events.agent_removed(agent_id)

    def ensure_population(self, species_name: str, count: int) -> None:
        species = self._species.get_or_create(species_name)
        while species.population < count:
            self.create_agent(species_name)

    def delete_species(self, name: str) -> None:
        if self._phase != _IDLE:
            raise StepOrderError(f"species {name!r} cannot be deleted during a step")
        if name == DEFAULT_SPECIES or name not in self._species:
            self._species.delete(name)
            return
        for agent_id in sorted(self._species.get(name).members):
            self.remove_agent(agent_id)
        self._managers = [manager for manager in self._managers if manager.species != name]
        self._species.delete(name)

    def set_species_parameter(self, name: str, key: str, value: object) -> bool:
        parsed = self._species.set_parameter(name, key, value)
        if parsed is None:
            return False
        if key.lower().strip() == "count":
            self.ensure_population(name, int(parsed))  # type: ignore[arg-type]
        return True

    def set_parameter(self, key: str, value: object) -> bool:
        """Apply one simulation-level setting; bad keys or values are logged and ignored."""
        normalized = key.lower().strip()
        try:
            if normalized == "max_steps":
                self.max_steps = parse_int(value)
            elif normalized == "area":
                self.resize(parse_float(value))
            elif normalized == "sleep_time":
                self.sleep_time = parse_int(value)
            elif normalized == "normalize_mode":
                self.normalize_mode = parse_bool(value)
            elif normalized == "random_seed":
                self._rng.reseed(parse_int(value))
            elif normalized == "forces":
                self.set_forces(str(value))
            else:
                raise ConfigurationError(f"Unknown simulation parameter {key!r}")
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring simulation parameter %s=%r: %s", key, value, exc)
            return False
        return True

    def configure(self, attribute: str, value: Any = None) -> bool:
        """
        Route a flat configuration attribute.

        `species.<name>` creates the species, `species.<name>.<key>` sets one
        of its parameters, anything else is a simulation-level parameter.
        """
        if attribute.startswith("species."):
            rest = attribute[len("species."):]
            name, _, key = rest.partition(".")
            if not key:
                self._species.get_or_create(name)
                return True
            return self.set_species_parameter(name, key, value)
        return self.set_parameter(attribute, value)

    def set_forces(self, kind: str) -> None:
        if self._phase != _IDLE:
            raise StepOrderError("the neighbor search cannot change during a step")
        self._force_model.neighborhood = build_neighborhood(kind, self)
        self.forces_kind = kind
        logger.info("Forces are now computed with the %s neighbor search", kind)

    def resize(self, area: float) -> None:
        if self._phase != _IDLE:
            raise StepOrderError("the simulation bounds cannot change during a step")
        if area <= 0:
            raise ValueError(f"area must be positive, got {area}")
        self.area = float(area)
        self._index.resize(self.low, self.high)

    def add_demographic_manager(self, manager: DemographicManager) -> DemographicManager:
        self._managers.append(manager)
        for agent in self.agents:
            manager.register(agent)
        return manager

    # Stepping

    def step(self) -> StepMetrics:
        if self._phase != _IDLE:
            raise StepOrderError("step called re-entrantly")
        start = perf_counter()
        births = 0
        deaths = 0
        neighbor_checks = 0
        agents = self.agents
        force_model = self._force_model

        self._phase = _FORCES
        force_model.begin_step(take_snapshot(agents))
        try:
            results = []
            for agent in agents:
                result = force_model.compute(agent.id)
                neighbor_checks += result.candidates
                results.append(result)
            for agent, result in zip(agents, results):
                force_model.commit(agent, result)
                self._events.agent_moved(
                    agent.id, agent.position.x, agent.position.y, agent.position.z, result.neighbors
                )
        finally:
            force_model.end_step()
            self._phase = _IDLE

        self._phase = _DEMOGRAPHICS
        try:
            for manager in self._managers:
                born, died = manager.check(self)
                births += born
                deaths += died
        finally:
            self._phase = _IDLE

        self._step += 1
        self._events.drain(self._listeners)
        elapsed_ms = (perf_counter() - start) * 1000.0
        metrics = metrics_system.create_metrics(
            self._step, births, deaths, neighbor_checks, elapsed_ms, self.populations()
        )
        self._metrics = metrics
        logger.debug(
            "Step %d population=%d births=%d deaths=%d neighbor_checks=%d",
            metrics.step,
            metrics.population,
            births,
            deaths,
            neighbor_checks,
        )
        return metrics

    def loop(self, max_steps: Optional[int] = None) -> int:
        """Step until `stop_loop` is called or the step limit is reached; returns steps run."""
        limit = self.max_steps if max_steps is None else max_steps
        ran = 0
        self._looping = True
        try:
            while self._looping:
                self.step()
                ran += 1
                if limit > 0 and ran >= limit:
                    break
                if self.sleep_time > 0:
                    time.sleep(self.sleep_time / 1000.0)
        finally:
            self._looping = False
        return ran

    def stop_loop(self) -> None:
        self._looping = False

    def snapshot(self) -> Snapshot:
        metrics = self._metrics
        if metrics is None:
            metrics = metrics_system.create_metrics(self._step, 0, 0, 0, 0.0, self.populations())
        return Snapshot(
            step=self._step,
            metrics=metrics,
            agents=[self._agent_snapshot(agent) for agent in self.agents],
            species=[self._species_snapshot(species) for species in sorted(self._species, key=lambda s: s.name)],
            bounds=SnapshotBounds(low=tuple(self.low), high=tuple(self.high)),
            metadata=SnapshotMetadata(
                area=self.area,
                seed=self._rng.seed,
                normalize_mode=self.normalize_mode,
                forces=self.forces_kind,
                config_version=self._config.config_version,
            ),
        )

    # Internals

    def _apply_species_config(self, name: str, species_config) -> None:
        species = self._species.get_or_create(name)
        for key, value in species_config.parameters.items():
            if key.lower().strip() == "count":
                continue
            self._species.set_parameter(name, key, value)
        reproduce = self._build_probability(species_config.reproduce, f"{name}.reproduce")
        if reproduce is not None:
            species.reproduce_probability = reproduce
        death = self._build_probability(species_config.death, f"{name}.death")
        if death is not None:
            species.death_probability = death

    def _install_demographics(self) -> None:
        demographics = self._config.demographics
        reproduce = self._build_probability(demographics.reproduce, "demographics.reproduce")
        death = self._build_probability(demographics.death, "demographics.death")
        if demographics.per_species:
            for name in sorted(self._species.names()):
                self._managers.append(DemographicManager(name, reproduce, death))
        else:
            self._managers.append(DemographicManager(None, reproduce, death))

    @staticmethod
    def _build_probability(config: ProbabilityConfig | None, where: str) -> Probability | None:
        if config is None:
            return None
        try:
            return build_probability(config.kind, **config.params)
        except ConfigurationError as exc:
            logger.warning("Ignoring probability %s: %s", where, exc)
            return None

    def _bootstrap_population(self) -> None:
        for name, species_config in self._config.species.items():
            self.ensure_population(name, species_config.count)
        # Creation events of the initial population are delivered before the first step.
        self._events.drain(self._listeners)

    def _agent_snapshot(self, agent: Agent) -> Dict[str, Any]:
        forces = agent.forces
        return {
            "id": agent.id,
            "label": agent.label,
            "species": agent.species,
            "x": agent.position.x,
            "y": agent.position.y,
            "z": agent.position.z,
            "hx": agent.heading.x,
            "hy": agent.heading.y,
            "hz": agent.heading.z,
            "speed": agent.heading.length(),
            "age": self._step - agent.birth_step,
            "direction": tuple(forces.direction),
            "attraction": tuple(forces.attraction),
            "repulsion": tuple(forces.repulsion),
            "neighbors": list(agent.neighbors),
        }

    @staticmethod
    def _species_snapshot(species: Species) -> Dict[str, Any]:
        return {
            "name": species.name,
            "population": species.population,
            "color": species.color,
            "view_zone": species.view_zone,
            "angle_of_view": species.angle_of_view,
        }
