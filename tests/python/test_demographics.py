from __future__ import annotations

from aviary.sim.core.config import DemographicsConfig, ProbabilityConfig, SimulationConfig, SpeciesConfig
from aviary.sim.core.world import World
from aviary.sim.systems.demographics import DemographicManager
from aviary.sim.systems.probability import ConstantProbability


def _world(**species_counts: int) -> World:
    config = SimulationConfig(
        random_seed=11,
        sleep_time=0,
        species={name: SpeciesConfig(count=count) for name, count in species_counts.items()},
    )
    return World(config)


def _assert_consistent(world: World) -> None:
    ids = {agent.id for agent in world.agents}
    assert len(world.index) == len(ids)
    assert all(agent_id in world.index for agent_id in ids)
    assert sum(world.populations().values()) == len(ids)
    for species in world.species:
        assert species.members <= ids
    world.index.check_integrity()


def test_marked_agent_dies_without_births():
    world = _world(default=3)
    doomed = world.species.get_or_create("doomed")
    doomed.death_probability = ConstantProbability(1.0)
    doomed.reproduce_probability = ConstantProbability(0.0)
    marked = world.create_agent("doomed")
    world.add_demographic_manager(DemographicManager("doomed"))

    metrics = world.step()

    assert metrics.population == 3
    assert metrics.births == 0
    assert metrics.deaths == 1
    assert marked.id not in {agent.id for agent in world.agents}
    assert not marked.alive
    _assert_consistent(world)


def test_death_pre_empts_reproduction():
    world = _world(default=10)
    world.add_demographic_manager(
        DemographicManager(
            reproduce_probability=ConstantProbability(1.0),
            death_probability=ConstantProbability(1.0),
        )
    )

    metrics = world.step()

    assert metrics.births == 0
    assert metrics.deaths == 10
    assert world.agents == []
    _assert_consistent(world)


def test_certain_reproduction_doubles_the_population():
    world = _world(default=4, finch=3)
    world.add_demographic_manager(DemographicManager(death_probability=ConstantProbability(0.0)))

    metrics = world.step()

    assert metrics.births == 7
    assert metrics.deaths == 0
    assert world.populations() == {"default": 8, "finch": 6}
    _assert_consistent(world)


def test_population_is_conserved_across_steps():
    world = _world(default=30)
    world.add_demographic_manager(
        DemographicManager(
            reproduce_probability=ConstantProbability(0.2),
            death_probability=ConstantProbability(0.2),
        )
    )

    population = len(world.agents)
    for _ in range(10):
        metrics = world.step()
        population += metrics.births - metrics.deaths
        assert metrics.population == population
        assert len(world.agents) == population
    _assert_consistent(world)


def test_evaluate_does_not_touch_the_population():
    world = _world(default=5)
    manager = world.add_demographic_manager(DemographicManager(death_probability=ConstantProbability(1.0)))

    outcome = manager.evaluate(world)

    assert outcome.dead == [0, 1, 2, 3, 4]
    assert outcome.parents == []
    assert len(world.agents) == 5
    assert manager.current_date == 0


def test_species_manager_only_governs_its_species():
    world = _world(default=2, finch=2)
    manager = world.add_demographic_manager(
        DemographicManager("finch", death_probability=ConstantProbability(1.0))
    )

    world.step()

    assert world.populations() == {"default": 2, "finch": 0}
    assert manager.birthdays == {}


def test_ages_count_manager_steps():
    world = _world(default=1)
    manager = world.add_demographic_manager(
        DemographicManager(
            reproduce_probability=ConstantProbability(0.0),
            death_probability=ConstantProbability(0.0),
        )
    )
    for _ in range(3):
        world.step()
    child = world.create_agent()

    assert manager.age_of(0) == 3
    assert manager.age_of(child.id) == 0
    world.remove_agent(child.id)
    assert child.id not in manager.birthdays


def test_config_installs_one_manager_per_species():
    config = SimulationConfig(
        random_seed=2,
        sleep_time=0,
        demographics=DemographicsConfig(
            enabled=True,
            per_species=True,
            death=ProbabilityConfig(kind="constant", params={"p": 0.0}),
        ),
        species={"starling": SpeciesConfig(count=2), "hawk": SpeciesConfig(count=1)},
    )
    world = World(config)

    assert [manager.species for manager in world.managers] == ["default", "hawk", "starling"]
    metrics = world.step()
    assert metrics.births == 3
    assert world.populations() == {"default": 0, "hawk": 2, "starling": 4}


def test_demographics_are_off_by_default():
    world = _world(default=5)
    assert world.managers == []
    for _ in range(3):
        metrics = world.step()
        assert metrics.births == metrics.deaths == 0


def test_population_is_conserved_per_species():
    world = _world(finch=25, wren=15)
    managers = {
        name: world.add_demographic_manager(
            DemographicManager(
                name,
                reproduce_probability=ConstantProbability(0.15),
                death_probability=ConstantProbability(0.25),
            )
        )
        for name in ("finch", "wren")
    }

    for _ in range(8):
        before = world.populations()
        outcomes = {}
        for name, manager in managers.items():
            births, deaths = manager.check(world)
            outcomes[name] = births - deaths
        after = world.populations()
        for name, delta in outcomes.items():
            assert after[name] - before[name] == delta
        assert after["default"] == before["default"]
    _assert_consistent(world)
