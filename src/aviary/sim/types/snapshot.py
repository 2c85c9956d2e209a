from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from .metrics import StepMetrics


@dataclass(slots=True)
class Snapshot:
    step: int
    metrics: StepMetrics
    agents: List[Dict[str, Any]]
    species: List[Dict[str, Any]]
    bounds: "SnapshotBounds"
    metadata: "SnapshotMetadata"


@dataclass(slots=True)
class SnapshotBounds:
    low: tuple[float, float, float]
    high: tuple[float, float, float]


@dataclass(slots=True)
class SnapshotMetadata:
    area: float
    seed: int
    normalize_mode: bool
    forces: str
    config_version: str
