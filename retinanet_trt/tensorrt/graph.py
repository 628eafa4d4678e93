"""
Detection Head Fusion

Rewrites a parsed detection network so it ends in the fused plugins:
- One decode plugin per feature-map scale
- Concatenation of per-scale candidates
- One NMS plugin whose outputs replace every original network output

Parsed networks expose 2*S outputs: S class maps followed by S box maps,
paired by index.
"""

import logging
from dataclasses import dataclass, field
from typing import List, NamedTuple, Sequence, Tuple

logger = logging.getLogger(__name__)

OUTPUT_NAMES = ("scores", "boxes", "classes")


@dataclass
class DetectionConfig:
    """Parameters of the fused decode/NMS stages."""
    score_thresh: float = 0.05
    top_n: int = 1000
    anchors: List[List[float]] = field(default_factory=list)
    rotated: bool = False
    nms_thresh: float = 0.5
    detections_per_im: int = 100

    def __post_init__(self):
        if not 0.0 <= self.score_thresh <= 1.0:
            raise ValueError(f"score_thresh must be in [0, 1], got {self.score_thresh}")
        if not 0.0 <= self.nms_thresh <= 1.0:
            raise ValueError(f"nms_thresh must be in [0, 1], got {self.nms_thresh}")
        if self.top_n < 1:
            raise ValueError(f"top_n must be positive, got {self.top_n}")
        if self.detections_per_im < 1:
            raise ValueError(f"detections_per_im must be positive, got {self.detections_per_im}")
        self.anchors = [[float(a) for a in scale] for scale in self.anchors]


class FusedOutputs(NamedTuple):
    """Network outputs after fusion, in marking order."""
    scores: object
    boxes: object
    classes: object


@dataclass
class _ScaleHead:
    class_map: object
    box_map: object
    anchors: List[float]
    scale: int


def count_scales(num_outputs: int) -> int:
    """Number of detection scales behind `num_outputs` parsed outputs."""
    if num_outputs == 0 or num_outputs % 2:
        raise ValueError(
            f"Expected an even, non-zero number of network outputs "
            f"(class maps then box maps), got {num_outputs}"
        )
    return num_outputs // 2


def _plan_heads(
    outputs: Sequence,
    input_shape: Tuple[int, ...],
    anchors: Sequence[Sequence[float]],
) -> List[_ScaleHead]:
    """Pair class/box maps and compute strides. Does not touch the network."""
    num_scales = count_scales(len(outputs))

    if len(anchors) != num_scales:
        raise ValueError(
            f"Network has {num_scales} detection scales but {len(anchors)} anchor sets were given"
        )
    if len(input_shape) != 4:
        raise ValueError(f"Expected NCHW network input, got shape {tuple(input_shape)}")
    input_height = input_shape[2]
    if input_height <= 0:
        raise ValueError(f"Network input height must be static, got shape {tuple(input_shape)}")

    heads = []
    for i in range(num_scales):
        class_map = outputs[i]
        box_map = outputs[num_scales + i]
        class_shape = tuple(class_map.shape)
        box_shape = tuple(box_map.shape)

        if len(class_shape) != 4 or class_shape[2] <= 0:
            raise ValueError(f"Class map {i} has no usable height: {class_shape}")
        if class_shape[2:] != box_shape[2:]:
            raise ValueError(
                f"Scale {i}: class map {class_shape} and box map {box_shape} differ spatially"
            )
        if not anchors[i]:
            raise ValueError(f"Anchor set {i} is empty")

        heads.append(_ScaleHead(
            class_map=class_map,
            box_map=box_map,
            anchors=list(anchors[i]),
            scale=input_height // class_shape[2],
        ))
    return heads


def fuse_detection_outputs(network, input_shape, detection: DetectionConfig, plugins) -> FusedOutputs:
    """
    Replace the network outputs with decode + NMS plugin outputs.

    Args:
        network: TensorRT network definition holding 2*S parsed outputs
        input_shape: Shape of network input 0 (N, C, H, W)
        detection: Decode/NMS parameters
        plugins: Factory with decode(...) and nms(...) for the selected variant

    Returns:
        The committed (scores, boxes, classes) output tensors
    """
    originals = [network.get_output(i) for i in range(network.num_outputs)]
    heads = _plan_heads(originals, tuple(input_shape), detection.anchors)

    logger.info("Building accelerated plugins...")

    scores, boxes, classes = [], [], []
    for i, head in enumerate(heads):
        plugin = plugins.decode(detection.score_thresh, detection.top_n, head.anchors, head.scale)
        layer = network.add_plugin_v2(inputs=[head.class_map, head.box_map], plugin=plugin)
        if layer is None:
            raise RuntimeError(f"Failed to add decode plugin for scale {i}")
        layer.name = f"decode_{i}"
        scores.append(layer.get_output(0))
        boxes.append(layer.get_output(1))
        classes.append(layer.get_output(2))
        logger.debug(f"Decode scale {i}: stride {head.scale}, {len(head.anchors)} anchor values")

    concat = []
    for name, tensors in zip(OUTPUT_NAMES, (scores, boxes, classes)):
        layer = network.add_concatenation(tensors)
        if layer is None:
            raise RuntimeError(f"Failed to concatenate {name} across scales")
        layer.name = f"concat_{name}"
        concat.append(layer.get_output(0))

    nms = network.add_plugin_v2(
        inputs=concat,
        plugin=plugins.nms(detection.nms_thresh, detection.detections_per_im),
    )
    if nms is None or nms.num_outputs != len(OUTPUT_NAMES):
        raise RuntimeError("NMS plugin must produce scores, boxes and classes")
    nms.name = "nms"

    fused = FusedOutputs(*(nms.get_output(i) for i in range(len(OUTPUT_NAMES))))

    # Commit: the output set is replaced wholesale
    for output in originals:
        network.unmark_output(output)
    for name, output in zip(OUTPUT_NAMES, fused):
        output.name = name
        network.mark_output(output)

    logger.info(f"Fused {len(heads)} scales into outputs {', '.join(OUTPUT_NAMES)}")
    return fused
