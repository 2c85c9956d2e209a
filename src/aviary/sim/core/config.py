from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


def parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
    elif isinstance(value, (int, float)):
        return bool(value)
    raise ValueError(f"expected a boolean, got {value!r}")


def parse_int(value: object) -> int:
    if isinstance(value, bool):
        raise ValueError(f"expected an integer, got {value!r}")
    if isinstance(value, str):
        return int(float(value.strip()))
    return int(value)  # type: ignore[arg-type]


def parse_float(value: object) -> float:
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got {value!r}")
    if isinstance(value, str):
        return float(value.strip())
    return float(value)  # type: ignore[arg-type]


def parse_positive_float(value: object) -> float:
    parsed = parse_float(value)
    if parsed <= 0:
        raise ValueError(f"expected a positive number, got {value!r}")
    return parsed


def parse_positive_int(value: object) -> int:
    parsed = parse_int(value)
    if parsed < 1:
        raise ValueError(f"expected a positive integer, got {value!r}")
    return parsed


def parse_str(value: object) -> str:
    if value is None or isinstance(value, (dict, list)):
        raise ValueError(f"expected a string, got {value!r}")
    return str(value).strip()


@dataclass
class ProbabilityConfig:
    kind: str = "constant"
    params: Dict[str, float] = field(default_factory=dict)


@dataclass
class SpeciesConfig:
    count: int = 0
    # Passed through Species.set, so unknown keys are reported and skipped there.
    parameters: Dict[str, Any] = field(default_factory=dict)
    reproduce: Optional[ProbabilityConfig] = None
    death: Optional[ProbabilityConfig] = None


@dataclass
class DemographicsConfig:
    enabled: bool = False
    per_species: bool = False
    # Overrides for every governed agent; species-level curves apply otherwise.
    reproduce: Optional[ProbabilityConfig] = None
    death: Optional[ProbabilityConfig] = None


@dataclass
class SimulationConfig:
    max_steps: int = 0
    # Half-width of the simulated cube: positions live in [-area, area] on every axis.
    area: float = 1.0
    sleep_time: int = 20
    normalize_mode: bool = True
    random_seed: int = 1
    max_particles_per_cell: int = 10
    forces: str = "octree"
    config_version: str = "v1"
    demographics: DemographicsConfig = field(default_factory=DemographicsConfig)
    species: Dict[str, SpeciesConfig] = field(default_factory=lambda: {"default": SpeciesConfig(count=100)})

    @staticmethod
    def from_yaml(path: Path) -> "SimulationConfig":
        data = yaml.safe_load(Path(path).read_text()) or {}
        return load_config(data)


def _probability(raw: Any) -> Optional[ProbabilityConfig]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        params = {k: v for k, v in raw.items() if k != "kind"}
        return ProbabilityConfig(kind=str(raw.get("kind", "constant")), params=params)
    try:
        return ProbabilityConfig(kind="constant", params={"p": parse_float(raw)})
    except (TypeError, ValueError):
        logger.warning("Ignoring probability entry %r: expected a number or a mapping", raw)
        return None


def _parsed(where: str, parser: Callable[[object], Any], value: object, default: Any) -> Any:
    try:
        return parser(value)
    except (TypeError, ValueError) as exc:
        logger.warning("Ignoring %s=%r, keeping %r: %s", where, value, default, exc)
        return default


def _species(name: str, raw: Dict[str, Any] | None) -> SpeciesConfig:
    raw = dict(raw or {})
    count = _parsed(f"species.{name}.count", parse_int, raw.pop("count", 0), 0)
    reproduce = _probability(raw.pop("reproduce", None))
    death = _probability(raw.pop("death", None))
    return SpeciesConfig(count=count, parameters=raw, reproduce=reproduce, death=death)


# Text values from YAML go through the same parsers the world applies at runtime.
SIMULATION_PARSERS: Dict[str, Callable[[object], Any]] = {
    "max_steps": parse_int,
    "area": parse_positive_float,
    "sleep_time": parse_int,
    "normalize_mode": parse_bool,
    "random_seed": parse_int,
    "max_particles_per_cell": parse_positive_int,
    "forces": parse_str,
    "config_version": parse_str,
}


def load_config(raw: dict) -> SimulationConfig:
    defaults = SimulationConfig()
    sim_values = {}
    for key, value in raw.items():
        if key in {"species", "demographics"}:
            continue
        parser = SIMULATION_PARSERS.get(key)
        if parser is None:
            logger.warning("Ignoring unknown simulation setting %r", key)
            continue
        sim_values[key] = _parsed(key, parser, value, getattr(defaults, key))

    demographics_raw = dict(raw.get("demographics", {}) or {})
    demographics = DemographicsConfig(
        enabled=_parsed("demographics.enabled", parse_bool, demographics_raw.get("enabled", False), False),
        per_species=_parsed("demographics.per_species", parse_bool, demographics_raw.get("per_species", False), False),
        reproduce=_probability(demographics_raw.get("reproduce")),
        death=_probability(demographics_raw.get("death")),
    )
    species_raw = raw.get("species")
    if species_raw is None:
        return SimulationConfig(demographics=demographics, **sim_values)
    species = {str(name): _species(str(name), values) for name, values in species_raw.items()}
    return SimulationConfig(demographics=demographics, species=species, **sim_values)
