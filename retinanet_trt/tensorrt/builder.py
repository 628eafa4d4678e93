"""
TensorRT Engine Builder

Builds serialized detection plans from ONNX models with:
- FP32/FP16/INT8 precision support
- Dynamic batch optimization profile
- Fused decode + NMS plugins replacing the raw head outputs
- Entropy calibration for INT8
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from ..preprocessing.pipeline import ImageStream, find_images
from .graph import DetectionConfig, fuse_detection_outputs
from .plugins import DetectionPlugins, load_plugin_libraries, select_variant
from .profile import BatchProfile, configure_profile

try:
    import tensorrt as trt
    TRT_AVAILABLE = True
except ImportError:
    TRT_AVAILABLE = False


logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_SIZE = 1 << 30


class Precision(Enum):
    """Supported precision modes."""
    FP32 = "FP32"
    FP16 = "FP16"
    INT8 = "INT8"

    @classmethod
    def parse(cls, value: Union[str, "Precision"]) -> "Precision":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValueError(
                f"Unsupported precision {value!r}; expected one of FP32, FP16, INT8"
            ) from None

    def builder_flags(self) -> Tuple[str, ...]:
        """BuilderFlag names to set. INT8 also allows FP16 kernels."""
        return {
            Precision.FP32: (),
            Precision.FP16: ("FP16",),
            Precision.INT8: ("FP16", "INT8"),
        }[self]

    @property
    def requires_calibration(self) -> bool:
        return self is Precision.INT8


@dataclass
class BuildConfig:
    """TensorRT engine build configuration."""
    batch: BatchProfile = field(default_factory=BatchProfile)
    precision: Precision = Precision.FP16
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    workspace_size: int = DEFAULT_WORKSPACE_SIZE
    verbose: bool = False

    # INT8 calibration
    calibration_images: List[str] = field(default_factory=list)
    model_name: str = ""
    calibration_table: str = ""

    # Shared libraries registering the decode/NMS plugin creators
    plugin_libraries: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.batch, BatchProfile):
            self.batch = BatchProfile.from_sequence(self.batch)
        self.precision = Precision.parse(self.precision)
        if self.workspace_size <= 0:
            raise ValueError(f"workspace_size must be positive, got {self.workspace_size}")

        if self.precision.requires_calibration:
            if len(self.calibration_images) < self.batch.opt_batch and not self.calibration_table:
                raise ValueError(
                    f"INT8 needs at least {self.batch.opt_batch} calibration images "
                    f"(opt batch) or an existing calibration table, got {len(self.calibration_images)}"
                )
            if not self.calibration_table and not self.model_name:
                raise ValueError("INT8 needs a model name or a calibration table to name the cache")

    @classmethod
    def from_dict(cls, cfg: Dict) -> "BuildConfig":
        """Create from a parsed YAML/dict configuration."""
        batch = cfg.get("batch") or {}
        calib = cfg.get("calibration") or {}

        images = list(calib.get("images", []))
        if calib.get("image_dir"):
            images.extend(find_images(calib["image_dir"]))

        return cls(
            batch=BatchProfile(
                min_batch=batch.get("min", 1),
                opt_batch=batch.get("opt", 1),
                max_batch=batch.get("max", 1),
            ),
            precision=cfg.get("precision", "FP16"),
            detection=DetectionConfig(**(cfg.get("detection") or {})),
            workspace_size=int(cfg.get("workspace_size_gb", 1.0) * (1 << 30)),
            verbose=cfg.get("verbose", False),
            calibration_images=images,
            model_name=calib.get("model_name", ""),
            calibration_table=calib.get("table", ""),
            plugin_libraries=list(cfg.get("plugin_libraries") or []),
        )

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "BuildConfig":
        import yaml

        with open(config_path) as f:
            return cls.from_dict(yaml.safe_load(f) or {})


@dataclass(frozen=True)
class CompiledPlan:
    """Serialized engine plan. Opaque bytes; valid only for the GPU/TensorRT that built it."""
    data: bytes
    precision: Optional[Precision] = None

    def __len__(self):
        return len(self.data)

    def save(self, path: Union[str, Path]):
        logger.info(f"Writing to {path}...")
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.data)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "CompiledPlan":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Engine plan not found: {path}")
        return cls(path.read_bytes())


class EngineBuilder:
    """
    Builds a detection plan from an ONNX model.

    Example:
        config = BuildConfig(
            batch=BatchProfile(1, 4, 8),
            precision="INT8",
            detection=DetectionConfig(anchors=anchors),
            calibration_images=images,
            model_name="retinanet_rn50fpn",
        )
        plan = EngineBuilder(config).build(onnx_bytes)
        plan.save("retinanet.plan")
    """

    def __init__(self, config: Optional[BuildConfig] = None, trt_logger=None):
        if not TRT_AVAILABLE:
            raise RuntimeError("TensorRT is not installed")

        self.config = config or BuildConfig()

        if trt_logger is None:
            from .logger import TensorRTLogger
            trt_logger = TensorRTLogger(self.config.verbose)
        self.trt_logger = trt_logger

        load_plugin_libraries(self.config.plugin_libraries)

    def _parse_onnx(self, builder, onnx_model: bytes):
        """Parse ONNX model into a TensorRT network."""
        network_flags = 1 << int(trt.NetworkDefinitionCreationFlag.EXPLICIT_BATCH)
        network = builder.create_network(network_flags)
        parser = trt.OnnxParser(network, self.trt_logger)

        if not parser.parse(onnx_model):
            for i in range(parser.num_errors):
                logger.error(f"ONNX parse error: {parser.get_error(i)}")
            raise RuntimeError("Failed to parse ONNX model")

        logger.info(f"  Inputs: {network.num_inputs}")
        logger.info(f"  Outputs: {network.num_outputs}")
        logger.info(f"  Layers: {network.num_layers}")

        return network, parser

    def _configure_builder(self, builder):
        """Workspace and precision flags."""
        config = builder.create_builder_config()
        config.set_memory_pool_limit(trt.MemoryPoolType.WORKSPACE, self.config.workspace_size)

        for flag in self.config.precision.builder_flags():
            config.set_flag(getattr(trt.BuilderFlag, flag))
            logger.info(f"Enabled {flag} kernels")

        return config

    def _create_calibrator(self, stream):
        from .calibrator import EntropyCalibrator

        return EntropyCalibrator(stream, self.config.model_name, self.config.calibration_table)

    @contextmanager
    def _calibration(self, config, profile, input_shape):
        """Calibrator bound to `config` for the duration of the compile call."""
        if not self.config.precision.requires_calibration:
            yield None
            return

        # Calibration runs at the profile's opt shape
        config.set_calibration_profile(profile)
        stream = ImageStream(
            self.config.batch.opt_batch,
            (self.config.batch.opt_batch,) + tuple(input_shape[1:]),
            self.config.calibration_images,
        )
        calibrator = self._create_calibrator(stream)
        config.int8_calibrator = calibrator
        try:
            yield calibrator
        finally:
            config.int8_calibrator = None
            calibrator.release()

    def build(self, onnx_model: bytes) -> CompiledPlan:
        """
        Build the serialized plan.

        Args:
            onnx_model: Serialized ONNX model

        Returns:
            CompiledPlan holding the engine bytes
        """
        precision = self.config.precision
        logger.info(f"Building {precision.value} core model...")

        builder = trt.Builder(self.trt_logger)
        # The parser owns the weights and must outlive build_serialized_network
        network, parser = self._parse_onnx(builder, onnx_model)
        config = self._configure_builder(builder)

        network_input = network.get_input(0)
        input_shape = tuple(network_input.shape)
        profile, _ = configure_profile(builder, config, network_input, self.config.batch)

        plugins = DetectionPlugins(select_variant(self.config.detection.rotated))
        fuse_detection_outputs(network, input_shape, self.config.detection, plugins)

        with self._calibration(config, profile, input_shape):
            logger.info("Applying optimizations and building TRT CUDA engine...")
            serialized = builder.build_serialized_network(network, config)

        if serialized is None:
            raise RuntimeError("Failed to build TensorRT engine")

        logger.info("Engine build complete!")
        return CompiledPlan(bytes(serialized), precision)

    def build_from_file(self, onnx_path: Union[str, Path]) -> CompiledPlan:
        onnx_path = Path(onnx_path)
        if not onnx_path.exists():
            raise FileNotFoundError(f"ONNX model not found: {onnx_path}")
        logger.info(f"Parsing ONNX model: {onnx_path}")
        return self.build(onnx_path.read_bytes())


def build_engine_from_config(config_path: Union[str, Path]) -> CompiledPlan:
    """Build a plan from a YAML configuration file."""
    import yaml

    with open(config_path) as f:
        cfg = yaml.safe_load(f)

    model = cfg.get("model", {})
    if "onnx_path" not in model:
        raise ValueError(f"{config_path}: model.onnx_path is required")

    plan = EngineBuilder(BuildConfig.from_dict(cfg)).build_from_file(model["onnx_path"])

    if model.get("output_path"):
        plan.save(model["output_path"])

    return plan
