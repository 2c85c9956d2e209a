from __future__ import annotations

from typing import Dict

from ..types.metrics import StepMetrics


def create_metrics(
    step: int,
    births: int,
    deaths: int,
    neighbor_checks: int,
    duration_ms: float,
    populations: Dict[str, int],
) -> StepMetrics:
    return StepMetrics(
        step=step,
        population=sum(populations.values()),
        births=births,
        deaths=deaths,
        neighbor_checks=neighbor_checks,
        species_populations=dict(populations),
        step_duration_ms=duration_ms,
    )
