"""
TensorRT build and runtime module.

Provides:
- EngineBuilder: Build detection plans from ONNX
- Engine: Run compiled plans
- Graph fusion: decode/NMS plugin injection
- Profiles: dynamic batch optimization profiles
"""

from .builder import (
    BuildConfig,
    CompiledPlan,
    EngineBuilder,
    Precision,
    build_engine_from_config,
)
from .engine import Engine, EngineState
from .graph import DetectionConfig, FusedOutputs, OUTPUT_NAMES, count_scales, fuse_detection_outputs
from .plugins import AXIS_ALIGNED, ROTATED, DetectionPlugins, PluginVariant, select_variant
from .profile import BatchProfile, OptimizationProfile, configure_profile

__all__ = [
    "BuildConfig",
    "CompiledPlan",
    "EngineBuilder",
    "Precision",
    "build_engine_from_config",
    "Engine",
    "EngineState",
    "DetectionConfig",
    "FusedOutputs",
    "OUTPUT_NAMES",
    "count_scales",
    "fuse_detection_outputs",
    "AXIS_ALIGNED",
    "ROTATED",
    "DetectionPlugins",
    "PluginVariant",
    "select_variant",
    "BatchProfile",
    "OptimizationProfile",
    "configure_profile",
]
