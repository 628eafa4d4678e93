"""
INT8 Calibration for TensorRT

Entropy calibration (IInt8EntropyCalibrator2) fed by an ImageStream.
Batches are drawn at the profile's opt batch size; scale factors are
cached in a calibration table so later builds can skip the image pass.
"""

import os
import logging
from typing import List, Optional, Sequence

import numpy as np
import tensorrt as trt
import pycuda.driver as cuda


logger = logging.getLogger(__name__)


def calibration_table_name(
    model_name: str,
    calibration_table: str,
    input_shape: Sequence[int],
    batch_size: int,
) -> str:
    """Cache path: the explicit table if given, else derived from model and input."""
    if calibration_table:
        return calibration_table
    if not model_name:
        raise ValueError("Either a calibration table or a model name is required for INT8")
    return f"Int8CalibrationTable_{model_name}{input_shape[2]}x{input_shape[3]}_{batch_size}"


class EntropyCalibrator(trt.IInt8EntropyCalibrator2):
    """
    Entropy calibration (IInt8EntropyCalibrator2).

    Uses KL divergence to find optimal scale factors. Call `release()`
    once the engine has been built to free the device buffer.
    """

    def __init__(self, stream, model_name: str = "", calibration_table: str = "", device_id: int = 0):
        super().__init__()

        self.stream = stream
        self.cache_file = calibration_table_name(
            model_name, calibration_table, stream.input_shape, stream.batch_size
        )

        cuda.init()
        self._cuda_context = cuda.Device(device_id).retain_primary_context()
        self._cuda_context.push()

        self.device_input = None
        self.batch_allocation_size = 0
        self.released = False

        logger.info(
            f"INT8 calibrator: {len(stream)} batches of {stream.batch_size}, table {self.cache_file}"
        )

    def get_batch_size(self) -> int:
        return self.stream.batch_size

    def get_batch(self, names: List[str]) -> Optional[List[int]]:
        """
        Get next calibration batch.

        Args:
            names: List of input tensor names

        Returns:
            List of device pointers or None if no more batches
        """
        batch = self.stream.next()
        if batch is None:
            return None

        data = np.ascontiguousarray(batch, dtype=np.float32)
        if self.device_input is None or data.nbytes > self.batch_allocation_size:
            if self.device_input is not None:
                self.device_input.free()
            self.device_input = cuda.mem_alloc(data.nbytes)
            self.batch_allocation_size = data.nbytes

        cuda.memcpy_htod(self.device_input, data)

        if self.stream.current_batch % 10 == 0:
            logger.info(f"Calibration progress: {self.stream.current_batch}/{len(self.stream)}")

        return [int(self.device_input)]

    def read_calibration_cache(self) -> Optional[bytes]:
        """Read cached calibration data."""
        if os.path.exists(self.cache_file):
            logger.info(f"Reading calibration cache: {self.cache_file}")
            with open(self.cache_file, "rb") as f:
                return f.read()
        return None

    def write_calibration_cache(self, cache):
        """Write calibration data to cache."""
        logger.info(f"Writing calibration cache: {self.cache_file}")
        with open(self.cache_file, "wb") as f:
            f.write(cache)

    def release(self):
        """Free the device buffer, then pop and detach the primary CUDA context."""
        if self.released:
            return
        if self.device_input is not None:
            self.device_input.free()
            self.device_input = None
        self._cuda_context.pop()
        self._cuda_context.detach()
        self.released = True
