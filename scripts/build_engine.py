#!/usr/bin/env python3
"""
Build Detection Engine Script

Builds a TensorRT plan with fused decode/NMS plugins from an ONNX detector.

Usage:
    python scripts/build_engine.py --onnx models/retinanet.onnx --output engines/retinanet.plan \
        --anchors anchors.json --plugin build/libretinanet_plugins.so
    python scripts/build_engine.py --onnx models/retinanet.onnx --precision INT8 --batch 1 4 8 \
        --anchors anchors.json --calib-dir data/calibration --model-name retinanet_rn50fpn
    python scripts/build_engine.py --config configs/retinanet_build.yaml
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from retinanet_trt.preprocessing.pipeline import find_images
from retinanet_trt.tensorrt.builder import BuildConfig, EngineBuilder, build_engine_from_config
from retinanet_trt.tensorrt.graph import DetectionConfig
from retinanet_trt.tensorrt.profile import BatchProfile


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Build TensorRT detection engine from ONNX model")

    # Input/Output
    parser.add_argument("--onnx", type=str, help="Path to ONNX model")
    parser.add_argument("--output", type=str, help="Output plan path")
    parser.add_argument("--config", type=str, help="YAML configuration file")

    # Build options
    parser.add_argument("--precision", type=str, default="FP16",
                        choices=["FP32", "FP16", "INT8", "fp32", "fp16", "int8"],
                        help="Precision mode")
    parser.add_argument("--batch", type=int, nargs=3, default=[1, 1, 1],
                        metavar=("MIN", "OPT", "MAX"),
                        help="Dynamic batch sizes")
    parser.add_argument("--workspace", type=float, default=1.0,
                        help="Workspace size in GB")
    parser.add_argument("--plugin", type=str, action="append", default=[],
                        help="Plugin library to load (repeatable)")

    # Detection head
    parser.add_argument("--anchors", type=str, required=False,
                        help="JSON file with one anchor list per scale")
    parser.add_argument("--score-thresh", type=float, default=0.05)
    parser.add_argument("--top-n", type=int, default=1000,
                        help="Candidates kept per scale")
    parser.add_argument("--nms-thresh", type=float, default=0.5)
    parser.add_argument("--detections", type=int, default=100,
                        help="Detections per image")
    parser.add_argument("--rotated", action="store_true",
                        help="Use rotated-box plugins")

    # INT8 calibration
    parser.add_argument("--calib-images", type=str, nargs="*", default=[],
                        help="Calibration image files")
    parser.add_argument("--calib-dir", type=str,
                        help="Calibration image directory")
    parser.add_argument("--calib-table", type=str, default="",
                        help="Calibration table file")
    parser.add_argument("--model-name", type=str, default="",
                        help="Model name used to name the calibration table")

    parser.add_argument("--verbose", action="store_true",
                        help="Verbose output")

    return parser.parse_args(argv)


def load_anchors(path: str):
    with open(path) as f:
        anchors = json.load(f)
    if not isinstance(anchors, list) or not all(isinstance(a, list) for a in anchors):
        raise ValueError(f"{path}: expected a list of anchor lists, one per scale")
    return anchors


def build_from_args(args):
    """Build plan from command line arguments."""
    if not args.onnx:
        raise ValueError("--onnx is required when not using --config")
    if not args.anchors:
        raise ValueError("--anchors is required when not using --config")

    output_path = args.output
    if not output_path:
        output_path = str(Path(args.onnx).with_suffix(f".{args.precision.lower()}.plan"))

    images = list(args.calib_images)
    if args.calib_dir:
        images.extend(find_images(args.calib_dir))

    build_config = BuildConfig(
        batch=BatchProfile(*args.batch),
        precision=args.precision,
        detection=DetectionConfig(
            score_thresh=args.score_thresh,
            top_n=args.top_n,
            anchors=load_anchors(args.anchors),
            rotated=args.rotated,
            nms_thresh=args.nms_thresh,
            detections_per_im=args.detections,
        ),
        workspace_size=int(args.workspace * (1 << 30)),
        verbose=args.verbose,
        calibration_images=images,
        model_name=args.model_name,
        calibration_table=args.calib_table,
        plugin_libraries=args.plugin,
    )

    logger.info(f"  ONNX: {args.onnx}")
    logger.info(f"  Precision: {build_config.precision.value}")
    logger.info(f"  Batch (min, opt, max): {build_config.batch.as_tuple()}")

    plan = EngineBuilder(build_config).build_from_file(args.onnx)
    plan.save(output_path)
    return output_path


def main(argv=None):
    args = parse_args(argv)

    try:
        if args.config:
            build_engine_from_config(args.config)
        else:
            build_from_args(args)
    except Exception as e:
        logger.error(f"Build failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
