from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass(slots=True)
class StepMetrics:
    step: int
    population: int
    births: int
    deaths: int
    neighbor_checks: int
    species_populations: Dict[str, int] = field(default_factory=dict)
    step_duration_ms: float = 0.0
