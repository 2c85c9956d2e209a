from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any, Callable, Dict

from ..core.errors import ConfigurationError

if TYPE_CHECKING:
    from ..core.agent import Agent
    from ..core.species import Species


class Probability:
    """Per-step event probability for one agent of a given age (in steps)."""

    def __call__(self, species: "Species", agent: "Agent", age: int) -> float:
        raise NotImplementedError


class ConstantProbability(Probability):
    def __init__(self, p: float) -> None:
        self.p = float(p)

    def __call__(self, species: "Species", agent: "Agent", age: int) -> float:
        return self.p

    def __repr__(self) -> str:
        return f"ConstantProbability({self.p})"


class SigmoidProbability(Probability):
    def __init__(self, lam: float = 1.0, threshold: float = 0.0) -> None:
        self.lam = float(lam)
        self.threshold = float(threshold)

    def value(self, x: float) -> float:
        exponent = -self.lam * (x - self.threshold)
        # math.exp overflows past ~709; the sigmoid is already 0 there.
        if exponent > 700.0:
            return 0.0
        return 1.0 / (1.0 + math.exp(exponent))

    def __call__(self, species: "Species", agent: "Agent", age: int) -> float:
        return self.value(age)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(lam={self.lam}, threshold={self.threshold})"


class DeathProbability(SigmoidProbability):
    """Age-driven death curve, centered on the average life expectancy."""

    def __init__(self, threshold: float = 80.0, lam: float = 0.3) -> None:
        super().__init__(lam=lam, threshold=threshold)


_FACTORIES: Dict[str, Callable[..., Probability]] = {
    "constant": ConstantProbability,
    "sigmoid": SigmoidProbability,
    "death": DeathProbability,
}


def build_probability(tag: str, **params: Any) -> Probability:
    factory = _FACTORIES.get(tag.lower().strip())
    if factory is None:
        raise ConfigurationError(f"Unknown probability kind: {tag!r} (expected one of {sorted(_FACTORIES)})")
    try:
        return factory(**params)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid parameters for {tag!r} probability: {params}") from exc
