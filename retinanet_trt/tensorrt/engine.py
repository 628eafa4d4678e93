"""
TensorRT Detection Engine

Replays a compiled detection plan:
- Deserialize plan bytes into an engine
- Execution context on optimization profile 0, bound to one CUDA stream
- Synchronous inference over caller-owned device buffers
- Shape-derived metadata (input size, max detections)

One Engine serves one caller thread at a time; separate Engine
instances have separate streams. Engines retain the device's primary
CUDA context and make it current only around their own device calls.
"""

import time
import logging
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Dict, List, Sequence, Tuple, Union

from .builder import CompiledPlan
from .plugins import load_plugin_libraries

try:
    import tensorrt as trt
    import pycuda.driver as cuda
    TRT_AVAILABLE = True
except ImportError:
    TRT_AVAILABLE = False


logger = logging.getLogger(__name__)


class EngineState(Enum):
    """Lifecycle of an Engine."""
    UNLOADED = "unloaded"
    LOADED = "loaded"
    READY = "ready"
    DESTROYED = "destroyed"


class Engine:
    """
    Detection engine wrapper.

    Example:
        with Engine.load("retinanet.plan") as engine:
            height, width = engine.get_input_size()
            engine.infer([d_input, d_scores, d_boxes, d_classes], batch=1)

    Buffers are device addresses in engine IO order: inputs first, then
    the scores, boxes and classes outputs.
    """

    def __init__(
        self,
        plan: Union[bytes, CompiledPlan],
        verbose: bool = False,
        device_id: int = 0,
        plugin_libraries: Sequence[str] = (),
        trt_logger=None,
    ):
        if not TRT_AVAILABLE:
            raise RuntimeError("TensorRT/PyCUDA not available")

        self.state = EngineState.UNLOADED
        self.device_id = device_id
        self.last_latency_ms = 0.0

        self._cuda_context = None
        self._runtime = None
        self._engine = None
        self._context = None
        self._stream = None

        if trt_logger is None:
            from .logger import TensorRTLogger
            trt_logger = TensorRTLogger(verbose)
        self.trt_logger = trt_logger

        load_plugin_libraries(plugin_libraries)

        data = plan.data if isinstance(plan, CompiledPlan) else plan
        try:
            self._load(data)
            self._prepare()
        except Exception:
            self.destroy()
            raise

        logger.info(f"Loaded TensorRT engine ({len(data)} bytes)")
        logger.info(f"  IO tensors: {self._engine.num_io_tensors}")

    @classmethod
    def load(cls, path: Union[str, Path], **kwargs) -> "Engine":
        """Load engine from a plan file."""
        return cls(CompiledPlan.load(path), **kwargs)

    @classmethod
    def from_plan(cls, plan: CompiledPlan, **kwargs) -> "Engine":
        return cls(plan, **kwargs)

    def _load(self, data: bytes):
        if not data:
            raise RuntimeError("Engine plan is empty")

        cuda.init()
        # Engines on one device share its primary context
        self._cuda_context = cuda.Device(self.device_id).retain_primary_context()

        with self._activated():
            self._runtime = trt.Runtime(self.trt_logger)
            self._engine = self._runtime.deserialize_cuda_engine(data)
        if self._engine is None:
            raise RuntimeError(
                "Failed to deserialize engine plan (truncated, or built for another GPU/TensorRT version)"
            )
        self.state = EngineState.LOADED

    def _prepare(self):
        with self._activated():
            self._context = self._engine.create_execution_context()
            if self._context is None:
                raise RuntimeError("Failed to create execution context")

            self._stream = cuda.Stream()
            self._context.set_optimization_profile_async(0, self._stream.handle)
        self.state = EngineState.READY

    @contextmanager
    def _activated(self):
        """Make this engine's CUDA context current for the enclosed device calls."""
        self._cuda_context.push()
        try:
            yield
        finally:
            self._cuda_context.pop()

    def _require_ready(self, operation: str):
        if self.state is not EngineState.READY:
            raise RuntimeError(f"Cannot {operation}: engine is {self.state.value}")

    def _tensor_name(self, index: int) -> str:
        return self._engine.get_tensor_name(index)

    def infer(self, buffers: Sequence[int], batch: int = 1):
        """
        Run the plan on device buffers and wait for completion.

        Args:
            buffers: One device address per IO tensor, in engine IO order
            batch: Batch size of the input buffers
        """
        self._require_ready("infer")

        num_tensors = self._engine.num_io_tensors
        if len(buffers) != num_tensors:
            raise ValueError(f"Engine has {num_tensors} IO tensors but {len(buffers)} buffers were given")
        if batch < 1:
            raise ValueError(f"batch must be positive, got {batch}")

        start_time = time.perf_counter()

        with self._activated():
            for i in range(num_tensors):
                name = self._tensor_name(i)
                if self._engine.get_tensor_mode(name) == trt.TensorIOMode.INPUT:
                    shape = list(self._engine.get_tensor_shape(name))
                    if shape[0] == -1:
                        shape[0] = batch
                        if not self._context.set_input_shape(name, shape):
                            raise ValueError(f"Batch {batch} is outside the engine profile for {name}")
                self._context.set_tensor_address(name, int(buffers[i]))

            if not self._context.execute_async_v3(stream_handle=self._stream.handle):
                raise RuntimeError("Failed to enqueue inference")

            try:
                self._stream.synchronize()
            except cuda.Error as e:
                raise RuntimeError(f"Inference failed on device: {e}") from e

        self.last_latency_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(f"Inference batch {batch}: {self.last_latency_ms:.2f}ms")

    def get_input_size(self) -> Tuple[int, int]:
        """(height, width) of the network input."""
        self._require_ready("read input size")
        dims = self._engine.get_tensor_shape(self._tensor_name(0))
        return (dims[2], dims[3])

    def get_max_detections(self) -> int:
        """Detection-count axis of the first output."""
        self._require_ready("read max detections")
        dims = self._engine.get_tensor_shape(self._tensor_name(1))
        return dims[1]

    def get_max_batch_size(self) -> int:
        self._require_ready("read max batch size")
        return 1

    def get_stride(self) -> int:
        self._require_ready("read stride")
        return 1

    def get_profile_batch_range(self) -> Tuple[int, int, int]:
        """(min, opt, max) batch of profile 0 for the first input."""
        self._require_ready("read profile")
        min_shape, opt_shape, max_shape = self._engine.get_tensor_profile_shape(self._tensor_name(0), 0)
        return (min_shape[0], opt_shape[0], max_shape[0])

    def get_binding_info(self) -> Dict[str, List[Dict]]:
        """Get input/output binding information in engine IO order."""
        self._require_ready("read bindings")
        info = {"inputs": [], "outputs": []}

        for i in range(self._engine.num_io_tensors):
            name = self._tensor_name(i)
            binding = {
                "index": i,
                "name": name,
                "shape": tuple(self._engine.get_tensor_shape(name)),
                "dtype": str(self._engine.get_tensor_dtype(name)),
            }

            if self._engine.get_tensor_mode(name) == trt.TensorIOMode.INPUT:
                info["inputs"].append(binding)
            else:
                info["outputs"].append(binding)

        return info

    def destroy(self):
        """Release stream, context, engine, runtime and CUDA context, in that order."""
        if self.state is EngineState.DESTROYED:
            return

        if self._cuda_context is not None:
            with self._activated():
                self._release_trt_objects()
            self._cuda_context.detach()
            self._cuda_context = None
        else:
            self._release_trt_objects()

        self.state = EngineState.DESTROYED

    def _release_trt_objects(self):
        self._stream = None
        self._context = None
        self._engine = None
        self._runtime = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.destroy()

    def __del__(self):
        if getattr(self, "state", EngineState.DESTROYED) is not EngineState.DESTROYED:
            self.destroy()
