"""
Fused Detection Plugins

The decode and NMS stages run as TensorRT plugins:
- Decode: per-scale score/box maps + anchors -> candidate detections
- NMS: concatenated candidates -> bounded, ranked final detections

Axis-aligned and rotated boxes use different plugin pairs. The pair is
picked once per build from the `rotated` flag.
"""

import ctypes
import logging
from pathlib import Path
from typing import List, NamedTuple, Sequence

import numpy as np

try:
    import tensorrt as trt
    TRT_AVAILABLE = True
except ImportError:
    TRT_AVAILABLE = False


logger = logging.getLogger(__name__)

PLUGIN_VERSION = "1"


class PluginVariant(NamedTuple):
    """Creator names for one decode/NMS plugin pair."""
    name: str
    decode: str
    nms: str


AXIS_ALIGNED = PluginVariant("axis_aligned", "RetinaNetDecode", "RetinaNetNMS")
ROTATED = PluginVariant("rotated", "RetinaNetDecodeRotate", "RetinaNetNMSRotate")


def select_variant(rotated: bool) -> PluginVariant:
    return ROTATED if rotated else AXIS_ALIGNED


def load_plugin_libraries(paths: Sequence[str]) -> List[str]:
    """
    Load plugin shared libraries so their creators self-register.

    Must run before parsing a network that uses the plugins and before
    deserializing a plan that contains them.

    Returns:
        Paths that were loaded, in order
    """
    loaded = []
    for path in paths:
        lib_path = Path(path)
        if not lib_path.exists():
            raise FileNotFoundError(f"Plugin library not found: {path}")
        logger.info(f"Loading plugin library: {lib_path}")
        ctypes.CDLL(str(lib_path))
        loaded.append(str(lib_path))
    return loaded


class DetectionPlugins:
    """
    Creates decode/NMS plugin instances for one variant.

    Example:
        plugins = DetectionPlugins(select_variant(rotated=False))
        decode = plugins.decode(0.05, 1000, anchors[0], 8)
        nms = plugins.nms(0.5, 100)
    """

    def __init__(self, variant: PluginVariant, namespace: str = ""):
        if not TRT_AVAILABLE:
            raise RuntimeError("TensorRT is not installed")

        self.variant = variant
        self.namespace = namespace
        self._registry = trt.get_plugin_registry()

    def _creator(self, name: str):
        creator = self._registry.get_plugin_creator(name, PLUGIN_VERSION, self.namespace)
        if creator is None:
            raise RuntimeError(
                f"Plugin creator {name} (version {PLUGIN_VERSION}) is not registered; "
                "load its plugin library first"
            )
        return creator

    def _create(self, name: str, fields: List["trt.PluginField"]):
        plugin = self._creator(name).create_plugin(
            name=name,
            field_collection=trt.PluginFieldCollection(fields),
        )
        if plugin is None:
            raise RuntimeError(f"Failed to create plugin {name}")
        return plugin

    def decode(self, score_thresh: float, top_n: int, anchors: Sequence[float], scale: int):
        """Create a decode plugin for one feature-map scale."""
        fields = [
            trt.PluginField("score_thresh", np.array([score_thresh], dtype=np.float32),
                            trt.PluginFieldType.FLOAT32),
            trt.PluginField("top_n", np.array([top_n], dtype=np.int32),
                            trt.PluginFieldType.INT32),
            trt.PluginField("anchors", np.asarray(anchors, dtype=np.float32),
                            trt.PluginFieldType.FLOAT32),
            trt.PluginField("scale", np.array([scale], dtype=np.int32),
                            trt.PluginFieldType.INT32),
        ]
        return self._create(self.variant.decode, fields)

    def nms(self, nms_thresh: float, detections_per_im: int):
        """Create the NMS plugin fed by all scales."""
        fields = [
            trt.PluginField("nms_thresh", np.array([nms_thresh], dtype=np.float32),
                            trt.PluginFieldType.FLOAT32),
            trt.PluginField("detections_per_im", np.array([detections_per_im], dtype=np.int32),
                            trt.PluginFieldType.INT32),
        ]
        return self._create(self.variant.nms, fields)
