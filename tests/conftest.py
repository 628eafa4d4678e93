"""
Pytest Configuration and Fixtures

Provides shared fixtures for the detection engine tests. TensorRT and
CUDA objects are replaced with fakes/mocks so tests run without a GPU.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest


# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "gpu: marks tests as requiring GPU")
    config.addinivalue_line("markers", "slow: marks tests as slow running")
    config.addinivalue_line("markers", "integration: marks integration tests")


# =============================================================================
# Fake network definition
# =============================================================================

class FakeTensor:
    def __init__(self, name, shape):
        self.name = name
        self.shape = tuple(shape)

    def __repr__(self):
        return f"FakeTensor({self.name!r}, {self.shape})"


class FakeLayer:
    def __init__(self, kind, inputs, outputs, plugin=None):
        self.kind = kind
        self.name = kind
        self.inputs = list(inputs)
        self.outputs = list(outputs)
        self.plugin = plugin

    @property
    def num_outputs(self):
        return len(self.outputs)

    def get_output(self, index):
        return self.outputs[index]


class FakePlugin:
    def __init__(self, kind, **params):
        self.kind = kind
        self.params = params


class FakePlugins:
    """Records decode/NMS plugin requests."""

    def __init__(self):
        self.decode_calls = []
        self.nms_calls = []

    def decode(self, score_thresh, top_n, anchors, scale):
        self.decode_calls.append((score_thresh, top_n, list(anchors), scale))
        return FakePlugin("decode", score_thresh=score_thresh, top_n=top_n,
                          anchors=list(anchors), scale=scale)

    def nms(self, nms_thresh, detections_per_im):
        self.nms_calls.append((nms_thresh, detections_per_im))
        return FakePlugin("nms", nms_thresh=nms_thresh, detections_per_im=detections_per_im)


class FakeNetwork:
    """
    Minimal INetworkDefinition stand-in.

    Decode layers emit (N, top_n) scores/classes and (N, top_n, 4) boxes;
    the NMS layer emits (N, D) scores/classes and (N, D, 4) boxes.
    """

    def __init__(self, input_shape, outputs, nms_outputs=3, default_top_n=1000, default_detections=100):
        self.inputs = [FakeTensor("input", input_shape)]
        self.outputs = list(outputs)
        self.layers = []
        self.nms_outputs = nms_outputs
        self.default_top_n = default_top_n
        self.default_detections = default_detections

    @property
    def num_inputs(self):
        return len(self.inputs)

    @property
    def num_outputs(self):
        return len(self.outputs)

    @property
    def num_layers(self):
        return len(self.layers)

    def get_input(self, index):
        return self.inputs[index]

    def get_output(self, index):
        return self.outputs[index]

    def mark_output(self, tensor):
        self.outputs.append(tensor)

    def unmark_output(self, tensor):
        self.outputs.remove(tensor)

    def add_plugin_v2(self, inputs, plugin):
        batch = self.inputs[0].shape[0]
        idx = len(self.layers)
        if len(inputs) == 2:
            top_n = plugin.params["top_n"] if isinstance(plugin, FakePlugin) else self.default_top_n
            outputs = [
                FakeTensor(f"decode_scores_{idx}", (batch, top_n)),
                FakeTensor(f"decode_boxes_{idx}", (batch, top_n, 4)),
                FakeTensor(f"decode_classes_{idx}", (batch, top_n)),
            ]
            kind = "decode"
        else:
            dets = (plugin.params["detections_per_im"] if isinstance(plugin, FakePlugin)
                    else self.default_detections)
            outputs = [
                FakeTensor(f"nms_out_{idx}_0", (batch, dets)),
                FakeTensor(f"nms_out_{idx}_1", (batch, dets, 4)),
                FakeTensor(f"nms_out_{idx}_2", (batch, dets)),
            ][:self.nms_outputs]
            kind = "nms"
        layer = FakeLayer(kind, inputs, outputs, plugin)
        self.layers.append(layer)
        return layer

    def add_concatenation(self, tensors):
        first = tensors[0].shape
        total = sum(t.shape[1] for t in tensors)
        out = FakeTensor(f"concat_{len(self.layers)}", (first[0], total) + first[2:])
        layer = FakeLayer("concat", tensors, [out])
        self.layers.append(layer)
        return layer


def make_head_outputs(input_shape, strides, num_anchors=9, num_classes=80):
    """Class maps for every stride, then box maps, as an ONNX export lays them out."""
    batch, _, height, width = input_shape
    class_maps = [
        FakeTensor(f"cls_{i}", (batch, num_anchors * num_classes, height // s, width // s))
        for i, s in enumerate(strides)
    ]
    box_maps = [
        FakeTensor(f"box_{i}", (batch, num_anchors * 4, height // s, width // s))
        for i, s in enumerate(strides)
    ]
    return class_maps + box_maps


@pytest.fixture
def make_network():
    """Factory for fake parsed detection networks."""
    def _make(input_shape=(-1, 3, 512, 512), strides=(8, 16, 32), **kwargs):
        return FakeNetwork(input_shape, make_head_outputs(input_shape, strides), **kwargs)
    return _make


@pytest.fixture
def fake_plugins():
    return FakePlugins()


@pytest.fixture
def anchors_3():
    """One 4-value anchor set per scale."""
    return [
        [-12.0, -12.0, 19.0, 19.0],
        [-24.0, -24.0, 39.0, 39.0],
        [-48.0, -48.0, 79.0, 79.0],
    ]


# =============================================================================
# Mocked TensorRT / CUDA
# =============================================================================

@pytest.fixture
def mock_trt(monkeypatch):
    """Replace the tensorrt module used by the builder and plugin modules."""
    from retinanet_trt.tensorrt import builder, plugins

    trt_mock = MagicMock(name="tensorrt")
    trt_mock.Builder.return_value.build_serialized_network.return_value = b"serialized-plan"

    monkeypatch.setattr(builder, "trt", trt_mock, raising=False)
    monkeypatch.setattr(builder, "TRT_AVAILABLE", True)
    monkeypatch.setattr(plugins, "trt", trt_mock, raising=False)
    monkeypatch.setattr(plugins, "TRT_AVAILABLE", True)
    return trt_mock


class FakeCudaError(Exception):
    pass


INPUT_MODE = "INPUT"
OUTPUT_MODE = "OUTPUT"


def make_fake_trt_engine(tensors, profile_batches=(1, 1, 1)):
    """
    MagicMock ICudaEngine over an ordered list of (name, shape) IO tensors.

    The first tensor is the input, the rest are outputs.
    """
    names = [name for name, _ in tensors]
    shapes = dict(tensors)

    engine = MagicMock(name="ICudaEngine")
    engine.num_io_tensors = len(tensors)
    engine.get_tensor_name.side_effect = lambda i: names[i]
    engine.get_tensor_shape.side_effect = lambda name: shapes[name]
    engine.get_tensor_mode.side_effect = lambda name: INPUT_MODE if name == names[0] else OUTPUT_MODE
    engine.get_tensor_dtype.side_effect = lambda name: "DataType.FLOAT"

    chw = tuple(shapes[names[0]][1:])
    engine.get_tensor_profile_shape.side_effect = lambda name, profile: [
        (b,) + chw for b in profile_batches
    ]

    context = engine.create_execution_context.return_value
    context.execute_async_v3.return_value = True
    context.set_input_shape.return_value = True
    return engine


@pytest.fixture
def detection_tensors():
    """IO tensors of a 512x512 engine with 100 detections per image."""
    return [
        ("input", (-1, 3, 512, 512)),
        ("scores", (-1, 100)),
        ("boxes", (-1, 100, 4)),
        ("classes", (-1, 100)),
    ]


@pytest.fixture
def mock_runtime(monkeypatch, detection_tensors):
    """Replace tensorrt and pycuda in the engine module."""
    from retinanet_trt.tensorrt import engine as engine_module

    trt_mock = MagicMock(name="tensorrt")
    trt_mock.TensorIOMode.INPUT = INPUT_MODE
    cuda_mock = MagicMock(name="pycuda.driver")
    cuda_mock.Error = FakeCudaError
    cuda_mock.Stream.return_value.handle = 0xC0FFEE

    fake_engine = make_fake_trt_engine(detection_tensors, profile_batches=(1, 4, 8))
    trt_mock.Runtime.return_value.deserialize_cuda_engine.return_value = fake_engine

    monkeypatch.setattr(engine_module, "trt", trt_mock, raising=False)
    monkeypatch.setattr(engine_module, "cuda", cuda_mock, raising=False)
    monkeypatch.setattr(engine_module, "TRT_AVAILABLE", True)

    return {"trt": trt_mock, "cuda": cuda_mock, "engine": fake_engine}


@pytest.fixture
def trt_logger():
    return MagicMock(name="TensorRTLogger")


# =============================================================================
# Image Fixtures
# =============================================================================

@pytest.fixture
def calibration_images(tmp_path):
    """Five small BGR images on disk."""
    cv2 = pytest.importorskip("cv2")
    paths = []
    for i in range(5):
        img = np.full((48 + i * 8, 64, 3), 40 * i, dtype=np.uint8)
        path = tmp_path / f"calib_{i}.png"
        cv2.imwrite(str(path), img)
        paths.append(str(path))
    return paths


# =============================================================================
# Skip Conditions
# =============================================================================

@pytest.fixture
def requires_tensorrt():
    """Skip if TensorRT not available."""
    pytest.importorskip("tensorrt")
