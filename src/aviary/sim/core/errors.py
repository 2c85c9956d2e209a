from __future__ import annotations


class ConfigurationError(ValueError):
    """Unknown or unparsable configuration entry; callers log it and keep the previous value."""


class StepOrderError(RuntimeError):
    """Raised when state is mutated across the compute/commit boundary of a step."""


class IndexCorruptionError(RuntimeError):
    """The octree no longer agrees with the agents it indexes."""
