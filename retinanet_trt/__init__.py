"""
RetinaNet TensorRT Engine

Compiles RetinaNet-style detectors into TensorRT plans with:
- Fused decode + NMS plugins (axis-aligned or rotated boxes)
- Dynamic batch optimization profile
- FP32/FP16/INT8 precision with entropy calibration
- Engine replay over caller-owned device buffers
"""

__version__ = "0.1.0"

from .tensorrt.builder import BuildConfig, CompiledPlan, EngineBuilder, Precision
from .tensorrt.engine import Engine, EngineState
from .tensorrt.graph import DetectionConfig
from .tensorrt.profile import BatchProfile

__all__ = [
    # Build
    "BuildConfig",
    "BatchProfile",
    "DetectionConfig",
    "Precision",
    "EngineBuilder",
    "CompiledPlan",
    # Runtime
    "Engine",
    "EngineState",
]
