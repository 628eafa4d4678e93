"""
Dynamic Batch Optimization Profile

Only the batch dimension of the single network input varies; channel,
height and width come from the parsed input shape.
"""

import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OptimizationProfile:
    """Defines min/opt/max shapes for a dynamic input."""
    name: str
    min_shape: Tuple[int, ...]
    opt_shape: Tuple[int, ...]
    max_shape: Tuple[int, ...]


@dataclass(frozen=True)
class BatchProfile:
    """Caller-supplied (min, opt, max) batch sizes."""
    min_batch: int = 1
    opt_batch: int = 1
    max_batch: int = 1

    def __post_init__(self):
        for value in (self.min_batch, self.opt_batch, self.max_batch):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f"Batch sizes must be positive integers, got {self.as_tuple()}")
        if not self.min_batch <= self.opt_batch <= self.max_batch:
            raise ValueError(
                f"Batch sizes must satisfy min <= opt <= max, got {self.as_tuple()}"
            )

    @classmethod
    def from_sequence(cls, batches: Sequence[int]) -> "BatchProfile":
        if len(batches) != 3:
            raise ValueError(f"Expected (min, opt, max) batch sizes, got {list(batches)}")
        return cls(*(int(b) for b in batches))

    def as_tuple(self) -> Tuple[int, int, int]:
        return (self.min_batch, self.opt_batch, self.max_batch)

    def shapes(self, name: str, input_shape: Sequence[int]) -> OptimizationProfile:
        """Expand to full NCHW shapes for the given input."""
        input_shape = tuple(input_shape)
        if len(input_shape) != 4:
            raise ValueError(f"Expected NCHW network input, got shape {input_shape}")
        chw = input_shape[1:]
        if any(d <= 0 for d in chw):
            raise ValueError(f"Input {name} must have static C/H/W, got {input_shape}")

        return OptimizationProfile(
            name=name,
            min_shape=(self.min_batch,) + chw,
            opt_shape=(self.opt_batch,) + chw,
            max_shape=(self.max_batch,) + chw,
        )


def configure_profile(builder, config, network_input, batch_profile: BatchProfile):
    """
    Create the optimization profile for input 0 and attach it to `config`.

    Returns:
        (trt profile, OptimizationProfile) so the caller can reuse the
        profile for INT8 calibration.
    """
    shapes = batch_profile.shapes(network_input.name, network_input.shape)

    profile = builder.create_optimization_profile()
    profile.set_shape(shapes.name, shapes.min_shape, shapes.opt_shape, shapes.max_shape)

    if not profile:
        raise ValueError(f"Invalid optimization profile for input {shapes.name}: {shapes}")

    config.add_optimization_profile(profile)

    logger.info(f"Added optimization profile for {shapes.name}:")
    logger.info(f"  min: {shapes.min_shape}")
    logger.info(f"  opt: {shapes.opt_shape}")
    logger.info(f"  max: {shapes.max_shape}")

    return profile, shapes
