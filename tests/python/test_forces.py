from __future__ import annotations

import math

import pytest
from pygame.math import Vector3
from pytest import approx

from aviary.sim.core.config import SimulationConfig
from aviary.sim.core.errors import ConfigurationError, StepOrderError
from aviary.sim.core.species import Species
from aviary.sim.core.world import World
from aviary.sim.systems.forces import (
    WALL_EPSILON,
    GreedyNeighborhood,
    build_neighborhood,
    contain,
    is_visible,
    repulsion_damping,
    take_snapshot,
)
from aviary.sim.utils.math3d import _cosine_between


def _empty_world(**overrides) -> World:
    config = SimulationConfig(random_seed=3, sleep_time=0, species={}, **overrides)
    return World(config)


def _compute_all(world: World):
    model = world.force_model
    model.begin_step(take_snapshot(world.agents))
    try:
        return {agent.id: model.compute(agent.id) for agent in world.agents}
    finally:
        model.end_step()


def test_repulsion_damping_follows_log_ratio():
    assert repulsion_damping(0.1, 0.15) == approx(math.log(0.1) / math.log(0.15))
    assert repulsion_damping(0.1, 0.15) > 1.0
    # Beyond the view zone the ratio saturates at one.
    assert repulsion_damping(0.5, 0.15) == approx(1.0)


def test_repulsion_damping_sign_flips_above_unit_view_zone():
    assert repulsion_damping(0.5, 2.0) == approx(-1.0)
    assert repulsion_damping(0.5, 1.0) == 1.0
    assert repulsion_damping(0.5, 0.0) == 1.0


def test_visibility_cone_boundary_is_strict():
    heading = Vector3(1, 0, 0)
    point = Vector3(0.1, 0.1, 0.0)
    cosine = _cosine_between(heading, point)
    species = Species(name="s", view_zone=0.5, angle_of_view=cosine)

    assert not is_visible(Vector3(), heading, point, species)
    species.angle_of_view = cosine - 1e-9
    assert is_visible(Vector3(), heading, point, species)


def test_visibility_distance_boundary_is_inclusive():
    species = Species(name="s", view_zone=0.5, angle_of_view=-1.0)

    assert is_visible(Vector3(), Vector3(1, 0, 0), Vector3(0.5, 0, 0), species)
    assert not is_visible(Vector3(), Vector3(1, 0, 0), Vector3(0.5000001, 0, 0), species)
    assert is_visible(Vector3(), Vector3(1, 0, 0), Vector3(-0.3, 0, 0), species)


def test_zero_heading_sees_only_with_wide_cone():
    species = Species(name="s", view_zone=1.0, angle_of_view=0.0)
    assert not is_visible(Vector3(), Vector3(), Vector3(0.2, 0, 0), species)
    species.angle_of_view = -0.5
    assert is_visible(Vector3(), Vector3(), Vector3(0.2, 0, 0), species)


def test_coincident_point_is_always_visible():
    species = Species(name="s", view_zone=0.1, angle_of_view=0.9)
    assert is_visible(Vector3(0.2, 0.2, 0.2), Vector3(1, 0, 0), Vector3(0.2, 0.2, 0.2), species)


def test_contain_reflects_heading_at_wall():
    low = Vector3(-1, -1, -1)
    high = Vector3(1, 1, 1)

    position, heading = contain(Vector3(0.9, 0.0, 0.0), Vector3(0.3, 0.1, 0.0), low, high)

    assert heading.x == approx(-0.3)
    assert heading.y == approx(0.1)
    assert position.x == approx(1.0 - WALL_EPSILON - 0.3)
    assert position.y == approx(0.1)


def test_contain_keeps_position_inside_after_reflection():
    low = Vector3(-1, -1, -1)
    high = Vector3(1, 1, 1)

    # A heading longer than the cube would overshoot the opposite wall without the final clamp.
    position, heading = contain(Vector3(-0.99, 0.99, 0.0), Vector3(-5.0, 5.0, 0.0), low, high)

    assert heading.x == approx(5.0)
    assert heading.y == approx(-5.0)
    for axis in range(3):
        assert low[axis] <= position[axis] <= high[axis]


def test_two_agents_push_apart_with_strong_repulsion():
    world = _empty_world()
    for key, value in {
        "angle_of_view": -1,
        "repulsion_factor": 1.0,
        "attraction_factor": 0.0,
        "view_zone": 0.15,
    }.items():
        assert world.set_species_parameter("default", key, value)
    world.create_agent(position=Vector3(-0.05, 0, 0), heading=Vector3())
    world.create_agent(position=Vector3(0.05, 0, 0), heading=Vector3())
    before = world.agent(0).position.distance_to(world.agent(1).position)

    world.step()

    after = world.agent(0).position.distance_to(world.agent(1).position)
    assert after > before
    assert world.agent(0).position.x < -0.05
    assert world.agent(1).position.x > 0.05
    assert world.agent(0).neighbors == (1,)


def test_normalize_mode_clamps_speed():
    world = _empty_world()
    world.set_species_parameter("default", "view_zone", 0.0)
    world.create_agent(position=Vector3(), heading=Vector3(5.0, 0, 0))
    world.create_agent(position=Vector3(0.5, 0.5, 0.5), heading=Vector3(0.001, 0, 0))

    results = _compute_all(world)

    species = world.species.get("default")
    assert results[0].heading.length() == approx(species.speed_factor * species.max_speed)
    assert results[1].heading.length() == approx(species.speed_factor * species.min_speed)


def test_unnormalized_heading_scales_by_speed_factor():
    world = _empty_world(normalize_mode=False)
    world.set_species_parameter("default", "view_zone", 0.0)
    world.create_agent(position=Vector3(), heading=Vector3(0.5, 0, 0))

    results = _compute_all(world)

    species = world.species.get("default")
    assert results[0].heading.x == approx(0.5 * species.inertia * species.speed_factor)


def test_coincident_agents_produce_finite_results():
    world = _empty_world()
    world.set_species_parameter("default", "angle_of_view", -1)
    world.create_agent(position=Vector3(0.3, 0.3, 0.3), heading=Vector3(0.1, 0, 0))
    world.create_agent(position=Vector3(0.3, 0.3, 0.3), heading=Vector3(0, 0.1, 0))

    results = _compute_all(world)

    for result in results.values():
        assert result.forces.count_rep == 1
        for axis in range(3):
            assert math.isfinite(result.heading[axis])
            assert math.isfinite(result.position[axis])
            assert result.forces.repulsion[axis] == 0.0


def test_fear_factor_scales_cross_species_repulsion():
    repulsions = []
    for fear in (1.0, 10.0):
        world = _empty_world()
        world.set_species_parameter("prey", "angle_of_view", -1)
        world.set_species_parameter("hawk", "fear_factor", fear)
        world.create_agent("prey", position=Vector3(0, 0, 0), heading=Vector3(0.1, 0, 0))
        world.create_agent("hawk", position=Vector3(0.1, 0, 0), heading=Vector3(0.1, 0, 0))
        result = _compute_all(world)[0]
        assert result.forces.count_att == 0
        assert result.forces.count_rep == 1
        assert result.forces.attraction == Vector3()
        repulsions.append(result.forces.repulsion.x)

    assert repulsions[0] < 0.0
    assert repulsions[1] == approx(repulsions[0] * 10.0)


def test_same_species_attraction_points_to_barycenter():
    world = _empty_world()
    world.set_species_parameter("default", "angle_of_view", -1)
    world.set_species_parameter("default", "view_zone", 0.5)
    world.create_agent(position=Vector3(0, 0, 0), heading=Vector3(0.1, 0, 0))
    world.create_agent(position=Vector3(0.2, 0, 0), heading=Vector3(0, 0.1, 0))
    world.create_agent(position=Vector3(0, 0.2, 0), heading=Vector3(0, 0, 0.1))

    forces = _compute_all(world)[0].forces

    species = world.species.get("default")
    assert forces.count_att == 2
    assert forces.barycenter.x == approx(0.1)
    assert forces.barycenter.y == approx(0.1)
    assert forces.attraction.x == approx(0.1 * species.attraction_factor)
    assert forces.direction.y == approx(0.05 * species.direction_factor)


def test_commit_before_all_computed_is_rejected():
    world = _empty_world()
    world.create_agent(position=Vector3(0.1, 0, 0))
    world.create_agent(position=Vector3(-0.1, 0, 0))
    model = world.force_model

    model.begin_step(take_snapshot(world.agents))
    try:
        result = model.compute(0)
        with pytest.raises(StepOrderError):
            model.commit(world.agent(0), result)
        with pytest.raises(StepOrderError):
            model.begin_step(take_snapshot(world.agents))
    finally:
        model.end_step()

    assert world.agent(0).position == Vector3(0.1, 0, 0)


def test_compute_outside_step_is_rejected():
    world = _empty_world()
    world.create_agent()
    with pytest.raises(StepOrderError):
        world.force_model.compute(0)


def test_agents_cannot_be_created_while_forces_run():
    world = _empty_world()
    world.create_agent()

    class SpawningNeighborhood(GreedyNeighborhood):
        def candidates(self, agent_id, position, half_width, frozen):
            world.create_agent()
            return super().candidates(agent_id, position, half_width, frozen)

    world.force_model.neighborhood = SpawningNeighborhood(world)
    with pytest.raises(StepOrderError):
        world.step()
    assert len(world.agents) == 1
    assert world.force_model.frozen is None


def test_unknown_neighborhood_is_a_configuration_error():
    world = _empty_world()
    with pytest.raises(ConfigurationError):
        build_neighborhood("quadtree", world)
    assert isinstance(build_neighborhood(" Greedy ", world), GreedyNeighborhood)
