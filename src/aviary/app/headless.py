from __future__ import annotations

import argparse
import csv
import json
import logging
import math
from pathlib import Path
from typing import Optional

from ..sim.core.config import SimulationConfig
from ..sim.core.world import World
from ..sim.types.metrics import StepMetrics

logger = logging.getLogger(__name__)

_BASIC_HEADER = [
    "step",
    "population",
    "births",
    "deaths",
    "neighbor_checks",
    "step_ms",
]

_DETAILED_EXTRA = [
    "neighbor_checks_per_agent",
    "avg_visible",
    "avg_speed",
    "octree_leaves",
    "octree_depth",
]


def _format_basic_row(metrics: StepMetrics, step_ms: float) -> list[object]:
    return [
        metrics.step,
        metrics.population,
        metrics.births,
        metrics.deaths,
        metrics.neighbor_checks,
        f"{step_ms:.3f}",
    ]


def _format_detailed_row(world: World, metrics: StepMetrics, step_ms: float, species: list[str]) -> list[object]:
    population = metrics.population
    if population <= 0:
        neighbor_checks_per_agent = 0.0
        avg_visible = 0.0
        avg_speed = 0.0
    else:
        neighbor_checks_per_agent = metrics.neighbor_checks / population
        visible_sum = 0
        speed_sum = 0.0
        for agent in world.agents:
            visible_sum += len(agent.neighbors)
            speed_sum += agent.heading.length()
        avg_visible = visible_sum / population
        avg_speed = speed_sum / population
    leaves = world.index.leaf_count()
    row = _format_basic_row(metrics, step_ms)
    row.extend(
        [
            f"{neighbor_checks_per_agent:.4f}",
            f"{avg_visible:.4f}",
            f"{avg_speed:.6f}",
            leaves,
            world.index.depth(),
        ]
    )
    row.extend(metrics.species_populations.get(name, 0) for name in species)
    return row


def _percentile(sorted_values: list[float], percentile: float) -> float:
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    pos = (len(sorted_values) - 1) * percentile
    low = int(math.floor(pos))
    high = int(math.ceil(pos))
    if low == high:
        return float(sorted_values[low])
    weight = pos - low
    return float(sorted_values[low] + (sorted_values[high] - sorted_values[low]) * weight)


def _summary_stats(values: list[float]) -> dict[str, float]:
    if not values:
        return {"min": 0.0, "max": 0.0, "avg": 0.0, "p50": 0.0, "p90": 0.0, "p99": 0.0}
    sorted_values = sorted(values)
    return {
        "min": float(sorted_values[0]),
        "max": float(sorted_values[-1]),
        "avg": float(sum(values) / len(values)),
        "p50": _percentile(sorted_values, 0.50),
        "p90": _percentile(sorted_values, 0.90),
        "p99": _percentile(sorted_values, 0.99),
    }


def load_run_config(config_path: Optional[Path], seed: Optional[int]) -> SimulationConfig:
    config = SimulationConfig.from_yaml(config_path) if config_path else SimulationConfig()
    if seed is not None:
        config.random_seed = seed
    return config


def run_headless(
    steps: Optional[int],
    seed: Optional[int],
    log_path: Optional[Path],
    deterministic_log: bool = False,
    log_format: str = "detailed",
    summary_path: Optional[Path] = None,
    config_path: Optional[Path] = None,
) -> World:
    config = load_run_config(config_path, seed)
    world = World(config)
    if steps is None:
        steps = config.max_steps if config.max_steps > 0 else 1000

    log_mode = log_format.lower().strip()
    if log_mode not in {"basic", "detailed"}:
        raise ValueError(f"Unknown log format: {log_format}")

    # Columns are fixed by the species known at startup (config plus default).
    species = sorted(world.species.names())
    unlisted: set[str] = set()
    writer = None
    csv_file = None
    if log_path:
        csv_file = Path(log_path).open("w", newline="")
        writer = csv.writer(csv_file)
        if log_mode == "detailed":
            writer.writerow(_BASIC_HEADER + _DETAILED_EXTRA + [f"pop_{name}" for name in species])
        else:
            writer.writerow(_BASIC_HEADER)

    step_ms_series: list[float] = []
    population_series: list[float] = []
    neighbor_series: list[float] = []
    births_total = 0
    deaths_total = 0

    logger.info("Running %d steps with seed %d", steps, config.random_seed)
    try:
        for _ in range(steps):
            metrics = world.step()
            step_ms = 0.0 if deterministic_log else metrics.step_duration_ms
            births_total += metrics.births
            deaths_total += metrics.deaths
            if summary_path:
                step_ms_series.append(step_ms)
                population_series.append(float(metrics.population))
                neighbor_series.append(float(metrics.neighbor_checks))
            if writer:
                if log_mode == "detailed":
                    late = set(metrics.species_populations) - set(species) - unlisted
                    if late:
                        logger.warning("Species created mid-run have no CSV column: %s", ", ".join(sorted(late)))
                        unlisted |= late
                    writer.writerow(_format_detailed_row(world, metrics, step_ms, species))
                else:
                    writer.writerow(_format_basic_row(metrics, step_ms))
    finally:
        if csv_file:
            csv_file.close()

    if summary_path:
        summary = {
            "steps": steps,
            "seed": config.random_seed,
            "log_format": log_mode,
            "deterministic_log": deterministic_log,
            "births": births_total,
            "deaths": deaths_total,
            "final_populations": world.populations(),
            "step_ms": _summary_stats(step_ms_series),
            "population": _summary_stats(population_series),
            "neighbor_checks": _summary_stats(neighbor_series),
        }
        Path(summary_path).write_text(json.dumps(summary, indent=2))
    return world


def main() -> None:
    parser = argparse.ArgumentParser(description="Headless flocking simulation")
    parser.add_argument("--steps", type=int, default=None, help="Steps to run (defaults to max_steps or 1000).")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--config", type=Path, default=None, help="YAML simulation configuration")
    parser.add_argument("--log", type=Path, default=None, help="CSV file to write metrics")
    parser.add_argument(
        "--log-format",
        choices=["basic", "detailed"],
        default="detailed",
        help=(
            "CSV format to write when --log is provided (detailed adds one population column "
            "per species known at startup)."
        ),
    )
    parser.add_argument(
        "--summary",
        type=Path,
        default=None,
        help="Optional JSON file to write summary stats for the run.",
    )
    parser.add_argument(
        "--deterministic-log",
        action="store_true",
        help="Write deterministic CSV (step_ms is forced to 0.000 so identical seeds match).",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_headless(
        args.steps,
        args.seed,
        args.log,
        deterministic_log=args.deterministic_log,
        log_format=args.log_format,
        summary_path=args.summary,
        config_path=args.config,
    )


if __name__ == "__main__":
    main()
