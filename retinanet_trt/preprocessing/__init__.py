"""Calibration image preprocessing."""

from .pipeline import ImageStream, PreprocessConfig, find_images, preprocess_image

__all__ = ["ImageStream", "PreprocessConfig", "find_images", "preprocess_image"]
